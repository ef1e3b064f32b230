"""
Pipeline steps: definitions and the subprocess runner.

Each step is an external program with a hard wall-clock timeout. A step that
overruns is killed and reported as failed. By convention a step prints one
JSON object on its last stdout line; the runner keeps it as the step output.
"""

import json
import logging
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


@dataclass
class PipelineStep:
    id: str
    label: str
    module: Optional[str] = None       # run as `python -m module`
    command: Optional[List[str]] = None
    args: List[str] = field(default_factory=list)
    critical: bool = False
    timeout_sec: float = 60.0
    executes_trades: bool = False

    @classmethod
    def from_config(cls, raw: Dict[str, Any]) -> "PipelineStep":
        return cls(
            id=raw["id"],
            label=raw.get("label") or raw["id"],
            module=raw.get("module"),
            command=list(raw["command"]) if raw.get("command") else None,
            args=list(raw.get("args") or []),
            critical=bool(raw.get("critical", False)),
            timeout_sec=float(raw.get("timeout_sec", 60.0)),
            executes_trades=bool(raw.get("executes_trades", False)),
        )

    def argv(self, config_dir: Optional[str] = None) -> List[str]:
        if self.module:
            argv = [sys.executable, "-m", self.module, *self.args]
            if config_dir:
                argv.extend(["--config-dir", str(config_dir)])
            return argv
        if not self.command:
            raise ValueError(f"step {self.id!r} has neither module nor command")
        return [*self.command, *self.args]


@dataclass
class StepResult:
    step_id: str
    success: bool
    duration_ms: int
    error: Optional[str] = None
    output: Any = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_output(stdout: str) -> Any:
    """Last stdout line as JSON if it parses, else the tail of stdout."""
    text = (stdout or "").strip()
    if not text:
        return None
    last_line = text.splitlines()[-1]
    try:
        return json.loads(last_line)
    except ValueError:
        return text[-OUTPUT_TAIL_CHARS:]


def run_step(step: PipelineStep, config_dir: Optional[str] = None, cwd: Optional[str] = None) -> StepResult:
    """Run ``step`` to completion or until its timeout; never raises."""
    started = time.monotonic()
    try:
        argv = step.argv(config_dir)
    except ValueError as e:
        logger.error(f"[{step.id}] not runnable: {e}")
        return StepResult(step.id, False, 0, error=str(e))
    logger.info(f"[{step.id}] {step.label}: {' '.join(argv[:4])}{' ...' if len(argv) > 4 else ''}")

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        # subprocess.run kills the child when the timeout expires
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=step.timeout_sec, cwd=cwd)
    except subprocess.TimeoutExpired:
        logger.error(f"[{step.id}] timed out after {step.timeout_sec:.0f}s; killed")
        return StepResult(step.id, False, elapsed_ms(), error=f"timeout after {step.timeout_sec:.0f}s")
    except OSError as e:
        logger.error(f"[{step.id}] failed to start: {e}")
        return StepResult(step.id, False, elapsed_ms(), error=f"spawn failed: {e}")

    output = _parse_output(proc.stdout)
    if proc.returncode != 0:
        error = None
        if isinstance(output, dict):
            error = output.get("error")
        error = error or (proc.stderr or "").strip()[-500:] or f"exit code {proc.returncode}"
        logger.warning(f"[{step.id}] failed (exit {proc.returncode}): {error}")
        return StepResult(step.id, False, elapsed_ms(), error=error, output=output)

    result = StepResult(step.id, True, elapsed_ms(), output=output)
    logger.info(f"[{step.id}] ok in {result.duration_ms}ms")
    return result
