"""
Tests for the status/control channel.

Covers atomic status publishing, the liveness override and the single-slot
command mailbox.
"""
import json
import os
from unittest.mock import patch

import pytest

from infra.status_channel import (
    COMMAND_RUN_NOW,
    COMMAND_STOP,
    StatusChannel,
    atomic_write_json,
    channel_for,
    is_pid_alive,
    read_json,
)


@pytest.fixture
def channel(tmp_path):
    return StatusChannel("runner", tmp_path / "runner-status.json", tmp_path / "runner-control.json")


class TestAtomicWrite:
    """Test temp-file + rename writes"""

    def test_writes_and_leaves_no_temp_files(self, tmp_path):
        """Successful write leaves only the target file"""
        target = tmp_path / "nested" / "status.json"
        assert atomic_write_json(target, {"state": "running"})
        assert read_json(target) == {"state": "running"}
        assert os.listdir(target.parent) == ["status.json"]

    def test_falls_back_to_direct_write(self, tmp_path):
        """A failed rename still produces the file"""
        target = tmp_path / "status.json"
        with patch("infra.status_channel.os.replace", side_effect=OSError("cross-device")):
            assert atomic_write_json(target, {"state": "idle"}) is False
        assert read_json(target) == {"state": "idle"}
        assert os.listdir(tmp_path) == ["status.json"]

    def test_read_json_tolerates_garbage(self, tmp_path):
        """Missing, unparsable and non-object files read as None"""
        assert read_json(tmp_path / "missing.json") is None
        (tmp_path / "bad.json").write_text("{not json")
        assert read_json(tmp_path / "bad.json") is None
        (tmp_path / "list.json").write_text("[1, 2]")
        assert read_json(tmp_path / "list.json") is None


class TestStatus:
    """Test status publish/read"""

    def test_publish_adds_updated_at(self, channel):
        """Published status carries updated_at"""
        channel.publish({"state": "running", "pid": os.getpid()})
        status = channel.read_status()
        assert status["state"] == "running"
        assert "updated_at" in status

    def test_read_status_none_when_never_published(self, channel):
        """No status file means no status"""
        assert channel.read_status() is None
        assert not channel.is_alive()

    def test_live_process_is_alive(self, channel):
        """A running status with our own pid is alive"""
        channel.publish({"state": "running", "pid": os.getpid()})
        assert channel.is_alive()

    def test_dead_pid_reported_stopped(self, channel):
        """A running status naming a dead pid reads as stopped"""
        channel.publish({"state": "running", "pid": 999999})
        with patch("infra.status_channel.is_pid_alive", return_value=False):
            status = channel.read_status()
            assert not channel.is_alive()
        assert status["state"] == "stopped"
        assert status["stop_reason"] == "process not found"

    def test_terminal_states_untouched(self, channel):
        """Stopped/error states are reported as written"""
        channel.publish({"state": "error", "pid": 999999, "stop_reason": "boom"})
        with patch("infra.status_channel.is_pid_alive", return_value=False):
            status = channel.read_status()
        assert status["state"] == "error"
        assert status["stop_reason"] == "boom"

    def test_is_pid_alive(self):
        """Own pid is alive; junk pids are not"""
        assert is_pid_alive(os.getpid())
        assert not is_pid_alive(None)
        assert not is_pid_alive("abc")
        assert not is_pid_alive(0)


class TestControlMailbox:
    """Test command delivery"""

    def test_command_delivered_once(self, channel):
        """A command is consumed exactly once"""
        channel.send_command(COMMAND_STOP)
        assert channel.consume_command() == COMMAND_STOP
        assert channel.consume_command() is None
        assert not channel.control_path.exists()

    def test_last_write_wins(self, channel):
        """A second command replaces an unconsumed first one"""
        channel.send_command(COMMAND_RUN_NOW)
        channel.send_command(COMMAND_STOP)
        assert channel.consume_command() == COMMAND_STOP

    def test_unknown_command_rejected_on_send(self, channel):
        """send_command() refuses commands outside the vocabulary"""
        with pytest.raises(ValueError):
            channel.send_command("reboot")
        assert not channel.control_path.exists()

    def test_malformed_file_discarded(self, channel):
        """Garbage in the mailbox is deleted and ignored"""
        channel.control_path.write_text("not json at all")
        assert channel.consume_command() is None
        assert not channel.control_path.exists()

    def test_unknown_command_discarded(self, channel):
        """An unknown command written by hand is deleted and ignored"""
        channel.control_path.write_text(json.dumps({"command": "explode"}))
        assert channel.consume_command() is None
        assert not channel.control_path.exists()

    def test_clear_command(self, channel):
        """clear_command() empties the mailbox"""
        channel.send_command(COMMAND_STOP)
        channel.clear_command()
        assert channel.consume_command() is None


class TestChannelFor:
    """Test path layout"""

    def test_paths_under_status_dir(self, tmp_path):
        """Paths follow <status_dir>/<worker>-{status,control}.json"""
        ch = channel_for("monitor", {"runtime": {"status_dir": str(tmp_path)}})
        assert ch.status_path == tmp_path / "monitor-status.json"
        assert ch.control_path == tmp_path / "monitor-control.json"

    def test_default_status_dir(self):
        """Default status dir is data/run"""
        ch = channel_for("runner")
        assert str(ch.status_path).replace("\\", "/") == "data/run/runner-status.json"
