"""Host capability checks for bhyve-machine."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from typing import List, Sequence

from bhyve_machine.constants import KLDSTAT, REQUIRED_COMMANDS, REQUIRED_KMODS
from bhyve_machine.exceptions import MissingRequirement
from bhyve_machine.executor import Executor
from bhyve_machine.utils import log


@dataclass
class RuntimeInfo:
    missing_commands: List[str] = field(default_factory=list)
    missing_kmods: List[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not self.missing_commands and not self.missing_kmods


def _missing_commands(commands: Sequence[str]) -> List[str]:
    return [name for name in commands if shutil.which(name) is None]


def _kmod_loaded(executor: Executor, kmod: str) -> bool:
    return executor.run(KLDSTAT, ["-q", "-m", kmod]).ok


def detect_runtime(executor: Executor) -> RuntimeInfo:
    """Report missing tools and kernel modules without raising."""
    commands = list(REQUIRED_COMMANDS)
    if executor.sudo:
        commands.insert(0, executor.sudo)
    info = RuntimeInfo(
        missing_commands=_missing_commands(commands),
        missing_kmods=[kmod for kmod in REQUIRED_KMODS if not _kmod_loaded(executor, kmod)],
    )
    for name in info.missing_commands:
        log("DEBUG", f"{name} not found on PATH")
    for kmod in info.missing_kmods:
        log("DEBUG", f"kernel module {kmod} is not loaded")
    return info


def require_runtime(executor: Executor) -> RuntimeInfo:
    info = detect_runtime(executor)
    if info.missing_commands:
        raise MissingRequirement(f"{', '.join(info.missing_commands)} not installed")
    if info.missing_kmods:
        raise MissingRequirement(
            f"kernel modules not loaded: {', '.join(info.missing_kmods)} (try: kldload {' '.join(info.missing_kmods)})"
        )
    return info
