"""Tests for bhyve_machine.console module."""

from __future__ import annotations

import signal
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from bhyve_machine.console import ConsoleLogger, read_pid
from bhyve_machine.exceptions import ExternalToolFailed, MachineError, ResourceBusy
from bhyve_machine.executor import CommandResult
from bhyve_machine.models import ConsoleSession


class TestFindFreeDevice:
    def test_first_device_when_idle(self, fake_host):
        assert ConsoleLogger(fake_host.executor).find_free_device() == "/dev/nmdm0"
        assert fake_host.executor.commands("fuser") == [["fuser", "/dev/nmdm0A"]]

    def test_skips_devices_in_use(self, fake_host):
        fake_host.busy_devices = ["/dev/nmdm0A", "/dev/nmdm1A"]
        assert ConsoleLogger(fake_host.executor).find_free_device() == "/dev/nmdm2"

    def test_exhausted(self, fake_host):
        fake_host.busy_devices = [f"/dev/nmdm{idx}A" for idx in range(100)]
        with pytest.raises(ResourceBusy, match="could not find a free nmdm device") as exc:
            ConsoleLogger(fake_host.executor).find_free_device()
        assert exc.value.retryable is True
        assert len(fake_host.executor.commands("fuser")) == 100

    def test_probe_failure_is_surfaced(self, fake_executor):
        fake_executor.handler = lambda argv, _input: CommandResult(argv=argv, returncode=1, stderr="fuser: denied")
        with pytest.raises(ExternalToolFailed):
            ConsoleLogger(fake_executor).find_free_device()


class TestStart:
    def test_spawns_logger_under_daemon(self, tmp_path, fake_executor):
        session = ConsoleSession(device="/dev/nmdm4", pid_file=tmp_path / "nmdm.pid", log_file=tmp_path / "console.log")
        ConsoleLogger(fake_executor).start(session)
        assert fake_executor.calls == [
            [
                "/usr/sbin/daemon",
                "-f",
                "-p",
                str(tmp_path / "nmdm.pid"),
                sys.executable,
                "-m",
                "bhyve_machine.nmdm",
                "/dev/nmdm4B",
                str(tmp_path / "console.log"),
            ]
        ]


class TestStop:
    def test_missing_pid_file_means_stopped(self, tmp_path, fake_executor):
        with patch("bhyve_machine.console.os.kill") as mock_kill:
            assert ConsoleLogger(fake_executor).stop(tmp_path / "nmdm.pid") is False
        mock_kill.assert_not_called()

    def test_garbled_pid_file_means_stopped(self, tmp_path, fake_executor):
        pid_file = tmp_path / "nmdm.pid"
        pid_file.write_text("not-a-pid\n")
        assert read_pid(pid_file) is None
        with patch("bhyve_machine.console.os.kill") as mock_kill:
            assert ConsoleLogger(fake_executor).stop(pid_file) is False
        mock_kill.assert_not_called()

    def test_kills_and_removes_pid_file(self, tmp_path, fake_executor):
        pid_file = tmp_path / "nmdm.pid"
        pid_file.write_text("4242\n")
        with patch("bhyve_machine.console.os.kill") as mock_kill:
            assert ConsoleLogger(fake_executor).stop(pid_file) is True
        mock_kill.assert_called_once_with(4242, signal.SIGKILL)
        assert not pid_file.exists()

    def test_dead_process(self, tmp_path, fake_executor):
        pid_file = tmp_path / "nmdm.pid"
        pid_file.write_text("4242\n")
        with patch("bhyve_machine.console.os.kill", side_effect=ProcessLookupError):
            assert ConsoleLogger(fake_executor).stop(pid_file) is False
        assert not pid_file.exists()

    def test_permission_denied(self, tmp_path, fake_executor):
        pid_file = tmp_path / "nmdm.pid"
        pid_file.write_text("1\n")
        with patch("bhyve_machine.console.os.kill", side_effect=PermissionError("not permitted")):
            with pytest.raises(MachineError, match="Cannot signal console logger 1"):
                ConsoleLogger(fake_executor).stop(pid_file)


class TestIsAlive:
    def test_states(self, tmp_path, fake_executor):
        logger = ConsoleLogger(fake_executor)
        pid_file = tmp_path / "nmdm.pid"
        assert logger.is_alive(pid_file) is False
        pid_file.write_text("4242")
        with patch("bhyve_machine.console.os.kill") as mock_kill:
            assert logger.is_alive(pid_file) is True
        mock_kill.assert_called_once_with(4242, 0)
        with patch("bhyve_machine.console.os.kill", side_effect=ProcessLookupError):
            assert logger.is_alive(Path(pid_file)) is False
