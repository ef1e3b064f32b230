"""
Status/Control Channel

Filesystem IPC between the workers (runner, position monitor) and whoever
supervises them (dashboard, tools/botctl.py).

- Status: the worker atomically republishes a JSON snapshot of itself.
  Readers never observe a torn write.
- Control: a single-slot mailbox. The supervisor writes ``{command, timestamp}``,
  the worker consumes it (read-then-delete). Last write wins; a command is
  delivered at most once.
- Liveness: a status that claims running/idle but names a dead pid is
  reported as stopped.
"""
import errno
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

COMMAND_STOP = "stop"
COMMAND_RUN_NOW = "run-now"
VALID_COMMANDS = (COMMAND_STOP, COMMAND_RUN_NOW)

LIVE_STATES = ("running", "idle")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def atomic_write_json(path: PathLike, payload: Dict[str, Any]) -> bool:
    """
    Write ``payload`` as JSON via temp file + rename.

    The temp file lives in the target directory and is unique per writer, so
    concurrent writers never share a temp path. If the atomic path fails we
    fall back to a direct write: a possibly torn file is better than a stale
    status, and readers already treat unparsable files as absent.

    Returns:
        True if the atomic rename succeeded
    """
    target = Path(path)
    temp_path = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=target.parent,
            prefix=f".{target.name}.{os.getpid()}.",
            suffix=".tmp",
        )
        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
        os.replace(temp_path, target)
        return True
    except Exception as e:
        logger.warning(f"Atomic write to {target} failed ({e}); falling back to direct write")
        if temp_path:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
        try:
            with open(target, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
        except Exception as direct_err:
            logger.error(f"Direct write to {target} failed: {direct_err}")
        return False


def read_json(path: PathLike) -> Optional[Dict[str, Any]]:
    """Parsed JSON object, or None if missing, unreadable or not an object."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug(f"Ignoring unreadable JSON file {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def safe_unlink(path: PathLike) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")


def is_pid_alive(pid: Any) -> bool:
    """Check if a process with given PID is running (signal 0)."""
    try:
        pid = int(pid)
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except OSError as e:
        # EPERM: exists but owned by someone else
        return e.errno == errno.EPERM


class StatusChannel:
    """
    Status file + control mailbox for one worker.

    Usage (worker side):
        channel.publish(status.to_dict())
        cmd = channel.consume_command()

    Usage (supervisor side):
        channel.send_command("stop")
        status = channel.read_status()
    """

    def __init__(self, name: str, status_path: PathLike, control_path: PathLike):
        self.name = name
        self.status_path = Path(status_path)
        self.control_path = Path(control_path)

    def publish(self, status: Dict[str, Any]) -> None:
        payload = dict(status)
        payload["updated_at"] = utc_now_iso()
        atomic_write_json(self.status_path, payload)

    def read_status(self) -> Optional[Dict[str, Any]]:
        """
        Read the last published status, applying the liveness override.

        Returns:
            Status dict, or None if nothing (valid) was ever published
        """
        status = read_json(self.status_path)
        if status is None:
            return None
        if status.get("state") in LIVE_STATES and not is_pid_alive(status.get("pid")):
            status["state"] = "stopped"
            status["stop_reason"] = "process not found"
        return status

    def is_alive(self) -> bool:
        status = self.read_status()
        return bool(status and status.get("state") in LIVE_STATES)

    def send_command(self, command: str) -> None:
        if command not in VALID_COMMANDS:
            raise ValueError(f"Unknown command {command!r}; expected one of {VALID_COMMANDS}")
        atomic_write_json(self.control_path, {"command": command, "timestamp": utc_now_iso()})
        logger.info(f"Sent '{command}' to {self.name}")

    def consume_command(self) -> Optional[str]:
        """
        Take the pending command, if any. The file is deleted whether or not
        it parsed, so a malformed command cannot wedge the mailbox.
        """
        if not self.control_path.exists():
            return None
        data = read_json(self.control_path)
        safe_unlink(self.control_path)
        if data is None:
            logger.warning(f"Discarded malformed control file for {self.name}")
            return None
        command = data.get("command")
        if command not in VALID_COMMANDS:
            logger.warning(f"Discarded unknown command {command!r} for {self.name}")
            return None
        logger.info(f"{self.name} received command '{command}'")
        return command

    def clear_command(self) -> None:
        safe_unlink(self.control_path)


def channel_for(worker: str, config: Optional[Dict[str, Any]] = None) -> StatusChannel:
    """Channel for ``worker`` ("runner" or "monitor") under ``runtime.status_dir``."""
    runtime = (config or {}).get("runtime", {}) or {}
    status_dir = Path(runtime.get("status_dir", "data/run"))
    return StatusChannel(
        worker,
        status_dir / f"{worker}-status.json",
        status_dir / f"{worker}-control.json",
    )
