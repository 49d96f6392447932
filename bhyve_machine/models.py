"""Data models for bhyve-machine."""

from __future__ import annotations

import getpass
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from bhyve_machine.constants import (
    CACHE_DIR_NAME,
    DEFAULT_ENGINE_PORT,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_USER,
    ISO_NAME,
    MACHINES_DIR_NAME,
    VM_NAME_PREFIX,
)


class VMState(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class VMIdentity:
    """Operator + machine name; the bhyve VM name is derived, never stored."""

    username: str
    machine_name: str

    @classmethod
    def current(cls, machine_name: str) -> "VMIdentity":
        return cls(username=getpass.getuser(), machine_name=machine_name)

    @property
    def vm_name(self) -> str:
        return f"{VM_NAME_PREFIX}{self.username}-{self.machine_name}"


@dataclass(frozen=True)
class VMConfig:
    machine_name: str
    store_path: Path
    disk_size: int  # bytes
    memory_mb: int
    cpus: int
    bridge: str
    subnet: str
    dhcp_range: str
    mac_address: str
    boot2docker_url: Optional[str] = None
    ssh_user: str = DEFAULT_SSH_USER
    ssh_port: int = DEFAULT_SSH_PORT
    engine_port: int = DEFAULT_ENGINE_PORT

    @property
    def machine_dir(self) -> Path:
        return self.store_path / MACHINES_DIR_NAME / self.machine_name

    @property
    def boot_image_path(self) -> Path:
        return self.machine_dir / ISO_NAME

    @property
    def cached_boot_image(self) -> Path:
        return self.store_path / CACHE_DIR_NAME / ISO_NAME


@dataclass(frozen=True)
class NetworkResource:
    """A tap device bound to a bridge, owned by one VM while it runs."""

    tap: str
    bridge: str


@dataclass(frozen=True)
class ConsoleSession:
    device: str  # e.g. /dev/nmdm0; the guest gets the "A" end, the logger the "B" end
    pid_file: Path
    log_file: Path

    @property
    def guest_end(self) -> str:
        return self.device + "A"

    @property
    def host_end(self) -> str:
        return self.device + "B"


@dataclass(frozen=True)
class LeaseRecord:
    mac_address: str
    ip_address: str
    expiry: Optional[str] = None
    hostname: Optional[str] = None
