"""Custom exceptions for bhyve-machine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from bhyve_machine.executor import CommandResult


class MachineError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    retryable = False


class ExternalToolFailed(MachineError):
    """A host command exited non-zero outside of a retry loop."""

    def __init__(self, result: "CommandResult") -> None:
        self.result = result
        message = f"{' '.join(result.argv)} exited with status {result.returncode}"
        detail = (result.stderr or result.stdout).strip()
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ResourceBusy(MachineError):
    retryable = True


class NotFound(MachineError):
    pass


class HostNotRunning(MachineError):
    pass


class MissingRequirement(MachineError):
    pass


class OperationTimeout(MachineError):
    retryable = True


class BootLoaderExhausted(OperationTimeout):
    """The boot loader never printed its banner within the retry budget."""


class DestroyExhausted(OperationTimeout):
    """The VM device node survived every destroy attempt."""
