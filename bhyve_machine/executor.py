"""Host command execution for bhyve-machine.

Every host-mutating operation goes through :class:`Executor`. ``run`` never
raises on a non-zero exit status; callers decide whether that is an error,
or use ``check`` to turn it into :class:`ExternalToolFailed`.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from bhyve_machine.constants import SUDO_COMMAND
from bhyve_machine.exceptions import ExternalToolFailed
from bhyve_machine.utils import log


@dataclass
class CommandResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined."""
        return self.stdout + self.stderr


class Executor:
    """Runs external programs, optionally escalated through sudo."""

    def __init__(self, sudo: Optional[str] = None) -> None:
        self.sudo = SUDO_COMMAND if sudo is None else sudo

    def argv(self, program: str, args: Sequence[str] = (), privileged: bool = False) -> List[str]:
        argv = [program, *args]
        if privileged and self.sudo:
            argv.insert(0, self.sudo)
        return argv

    def run(
        self,
        program: str,
        args: Sequence[str] = (),
        privileged: bool = False,
        input: Optional[str] = None,
    ) -> CommandResult:
        argv = self.argv(program, args, privileged)
        log("DEBUG", f"EXEC: {' '.join(argv)}")
        try:
            proc = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as exc:
            result = CommandResult(argv=argv, returncode=127, stderr=str(exc))
        else:
            result = CommandResult(
                argv=argv,
                returncode=proc.returncode,
                stdout=proc.stdout or "",
                stderr=proc.stderr or "",
            )
        log("DEBUG", f"STDOUT: {result.stdout}")
        log("DEBUG", f"STDERR: {result.stderr}")
        return result

    def check(
        self,
        program: str,
        args: Sequence[str] = (),
        privileged: bool = False,
        input: Optional[str] = None,
    ) -> CommandResult:
        result = self.run(program, args, privileged=privileged, input=input)
        if not result.ok:
            raise ExternalToolFailed(result)
        return result
