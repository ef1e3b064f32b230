"""
Tests for pipeline step definitions and the subprocess step runner.
"""
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from runner.steps import PipelineStep, run_step


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPipelineStep:
    """Test step construction"""

    def test_module_argv_appends_config_dir(self):
        step = PipelineStep.from_config({"id": "collect", "module": "core.market_data", "args": ["-v"]})
        assert step.argv("cfg") == [sys.executable, "-m", "core.market_data", "-v", "--config-dir", "cfg"]
        assert step.label == "collect"

    def test_command_argv(self):
        step = PipelineStep.from_config({"id": "x", "command": ["echo", "hi"], "args": ["there"]})
        assert step.argv("cfg") == ["echo", "hi", "there"]

    def test_missing_target(self):
        with pytest.raises(ValueError):
            PipelineStep(id="x", label="X").argv()

    def test_defaults(self):
        step = PipelineStep.from_config({"id": "trade", "module": "core.execution", "executes_trades": True})
        assert not step.critical
        assert step.timeout_sec == 60.0
        assert step.executes_trades


class TestRunStep:
    """Test run_step() outcomes"""

    def test_success_parses_last_json_line(self):
        step = PipelineStep(id="a", label="A", command=["tool"])
        with patch("runner.steps.subprocess.run",
                   return_value=_completed(stdout='log line\n{"ok": true, "symbols": 3}\n')):
            result = run_step(step)
        assert result.success
        assert result.output == {"ok": True, "symbols": 3}
        assert result.error is None

    def test_non_json_output_kept_as_text(self):
        step = PipelineStep(id="a", label="A", command=["tool"])
        with patch("runner.steps.subprocess.run", return_value=_completed(stdout="done\n")):
            result = run_step(step)
        assert result.success
        assert result.output == "done"

    def test_failure_prefers_json_error(self):
        step = PipelineStep(id="a", label="A", command=["tool"])
        with patch("runner.steps.subprocess.run",
                   return_value=_completed(1, stdout='{"ok": false, "error": "no snapshots"}', stderr="trace")):
            result = run_step(step)
        assert not result.success
        assert result.error == "no snapshots"

    def test_failure_falls_back_to_stderr(self):
        step = PipelineStep(id="a", label="A", command=["tool"])
        with patch("runner.steps.subprocess.run", return_value=_completed(2, stderr="Traceback: bad\n")):
            result = run_step(step)
        assert result.error == "Traceback: bad"

    def test_failure_without_output(self):
        step = PipelineStep(id="a", label="A", command=["tool"])
        with patch("runner.steps.subprocess.run", return_value=_completed(3)):
            result = run_step(step)
        assert result.error == "exit code 3"

    def test_timeout_reported(self):
        step = PipelineStep(id="slow", label="Slow", command=["tool"], timeout_sec=5)
        with patch("runner.steps.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="tool", timeout=5)):
            result = run_step(step)
        assert not result.success
        assert result.error == "timeout after 5s"

    def test_spawn_failure(self):
        step = PipelineStep(id="a", label="A", command=["/nonexistent/binary"])
        result = run_step(step)
        assert not result.success
        assert result.error.startswith("spawn failed")

    def test_step_without_target_fails_cleanly(self):
        with patch("runner.steps.subprocess.run") as run:
            result = run_step(PipelineStep(id="x", label="X"))
        run.assert_not_called()
        assert not result.success
        assert "neither module nor command" in result.error

    def test_real_timeout_kills_child(self):
        """A child that overruns its wall-clock budget is killed"""
        step = PipelineStep(
            id="sleepy", label="Sleepy",
            command=[sys.executable, "-c", "import time; time.sleep(30)"],
            timeout_sec=0.5,
        )
        result = run_step(step)
        assert not result.success
        assert "timeout" in result.error
        assert result.duration_ms < 10000

    def test_passes_timeout_and_cwd(self, tmp_path):
        step = PipelineStep(id="a", label="A", command=["tool"], timeout_sec=12)
        run = MagicMock(return_value=_completed(stdout="{}"))
        with patch("runner.steps.subprocess.run", run):
            run_step(step, cwd=str(tmp_path))
        _, kwargs = run.call_args
        assert kwargs["timeout"] == 12
        assert kwargs["cwd"] == str(tmp_path)
