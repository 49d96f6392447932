"""grub-bhyve handoff: load the guest kernel before bhyve starts."""

from __future__ import annotations

import os
from pathlib import Path

from bhyve_machine.constants import GRUB_BANNER, GRUB_BHYVE, GRUB_COMMANDS, RETRY_COUNT, RETRY_SLEEP
from bhyve_machine.exceptions import BootLoaderExhausted
from bhyve_machine.executor import Executor
from bhyve_machine.retry import RetryPolicy
from bhyve_machine.utils import log, strip_control_chars


def write_device_map(device_map: Path, disk_path: Path, cd_path: Path) -> None:
    """Map (hd0) to the guest disk and (cd0) to the boot image."""
    with open(device_map, "w") as handle:
        handle.write(f"(hd0) {disk_path}\n")
        handle.write(f"(cd0) {cd_path}\n")
        handle.flush()
        os.fsync(handle.fileno())


class BootLoader:
    policy = RetryPolicy(tries=RETRY_COUNT, delay=RETRY_SLEEP)

    def __init__(self, executor: Executor) -> None:
        self.executor = executor

    def boot(self, device_map: Path, memory_mb: int, vm_name: str) -> None:
        """Feed the kernel/initrd/boot commands until grub answers with its banner.

        Raises :class:`BootLoaderExhausted` when no attempt shows the banner.
        """
        script = "".join(f"{line}\n" for line in GRUB_COMMANDS)
        args = ["-m", str(device_map), "-r", "cd0", "-M", f"{memory_mb}M", vm_name]
        for attempt in self.policy.attempts():
            result = self.executor.run(GRUB_BHYVE, args, privileged=True, input=script)
            log("DEBUG", f"grub-bhyve: {strip_control_chars(result.output)}")
            if GRUB_BANNER in result.output:
                log("DEBUG", "grub-bhyve: looks OK")
                return
            log("DEBUG", f"grub-bhyve attempt {attempt}/{self.policy.tries} failed")
        raise BootLoaderExhausted(
            f"grub-bhyve did not load {vm_name} after {self.policy.tries} attempts"
        )
