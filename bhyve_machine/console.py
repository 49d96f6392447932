"""Serial console logging over nmdm device pairs."""

from __future__ import annotations

import os
import signal
import sys
from pathlib import Path
from typing import Optional

from bhyve_machine.constants import DAEMON, FUSER, NMDM_PROBE_LIMIT, NMDM_PROBE_SLEEP
from bhyve_machine.exceptions import MachineError, ResourceBusy
from bhyve_machine.executor import Executor
from bhyve_machine.models import ConsoleSession
from bhyve_machine.retry import RetryPolicy
from bhyve_machine.utils import log, read_record


def read_pid(pid_file: Path) -> Optional[int]:
    raw = read_record(pid_file)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        log("DEBUG", f"Failed to parse console logger pid {raw!r}")
        return None


class ConsoleLogger:
    """Supervises the detached process copying a guest console to a file.

    The logger is tracked only through its PID file, so any process can stop
    a logger started by another.
    """

    probe_policy = RetryPolicy(tries=NMDM_PROBE_LIMIT, delay=NMDM_PROBE_SLEEP)

    def __init__(self, executor: Executor, device_prefix: str = "/dev/nmdm") -> None:
        self.executor = executor
        self.device_prefix = device_prefix

    def find_free_device(self) -> str:
        """Return the first /dev/nmdmN whose "A" end nobody holds open."""

        def probe(attempt: int) -> Optional[str]:
            device = f"{self.device_prefix}{attempt - 1}"
            log("DEBUG", f"checking nmdm: {device}A")
            result = self.executor.check(FUSER, [device + "A"], privileged=True)
            if not result.stdout.split():
                log("DEBUG", f"using {device}")
                return device
            log("DEBUG", f"can't use {device}, trying next device")
            return None

        device = self.probe_policy.poll(probe)
        if device is None:
            raise ResourceBusy(
                f"could not find a free nmdm device in {self.probe_policy.tries} candidates"
            )
        return device

    def start(self, session: ConsoleSession) -> None:
        """Spawn the logger for ``session.host_end`` under daemon(8)."""
        log("DEBUG", f"Logging {session.host_end} to {session.log_file}")
        self.executor.check(
            DAEMON,
            [
                "-f",
                "-p",
                str(session.pid_file),
                sys.executable,
                "-m",
                "bhyve_machine.nmdm",
                session.host_end,
                str(session.log_file),
            ],
        )

    def is_alive(self, pid_file: Path) -> bool:
        pid = read_pid(pid_file)
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def stop(self, pid_file: Path) -> bool:
        """SIGKILL the logger. Returns False when it was already stopped."""
        pid = read_pid(pid_file)
        if pid is None:
            log("DEBUG", "Could not get pid file for console logger, assuming stopped")
            return False
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            log("DEBUG", f"Console logger {pid} already gone")
            pid_file.unlink(missing_ok=True)
            return False
        except PermissionError as exc:
            raise MachineError(f"Cannot signal console logger {pid}: {exc}") from exc
        pid_file.unlink(missing_ok=True)
        return True
