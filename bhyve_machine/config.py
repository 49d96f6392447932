"""Configuration resolution and the per-machine record for bhyve-machine."""

from __future__ import annotations

import argparse
import ipaddress
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from bhyve_machine.constants import (
    DEFAULT_BRIDGE,
    DEFAULT_CPU_COUNT,
    DEFAULT_DHCP_RANGE,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_MEM_SIZE_MB,
    DEFAULT_STORE_PATH,
    DEFAULT_SUBNET,
    MACHINE_CONFIG_NAME,
    MACHINES_DIR_NAME,
    VM_NAME_RE,
)
from bhyve_machine.exceptions import MachineError, NotFound
from bhyve_machine.models import VMConfig
from bhyve_machine.utils import ensure_directory, get_env, is_valid_mac, log, parse_int, random_mac

# flag dest -> (environment variable, default)
CREATE_OPTIONS: Dict[str, tuple] = {
    "disk_size": ("BHYVE_DISK_SIZE", str(DEFAULT_DISK_SIZE_MB)),
    "mem_size": ("BHYVE_MEM_SIZE", str(DEFAULT_MEM_SIZE_MB)),
    "cpus": ("BHYVE_CPUS", str(DEFAULT_CPU_COUNT)),
    "bridge": ("BHYVE_BRIDGE", DEFAULT_BRIDGE),
    "subnet": ("BHYVE_SUBNET", DEFAULT_SUBNET),
    "dhcp_range": ("BHYVE_DHCPRANGE", DEFAULT_DHCP_RANGE),
    "boot2docker_url": ("BHYVE_BOOT2DOCKERURL", None),
}


def _option(args: argparse.Namespace, dest: str) -> Optional[str]:
    value = getattr(args, dest, None)
    if value is not None:
        return str(value)
    env_name, default = CREATE_OPTIONS[dest]
    return get_env(env_name, default)


def validate_machine_name(name: str) -> str:
    if not name or not VM_NAME_RE.match(name):
        raise MachineError(
            f"Invalid machine name '{name}'. Use letters, digits, '.', '_' or '-'"
        )
    return name


def validate_network(subnet: str, dhcp_range: str) -> None:
    try:
        network = ipaddress.ip_interface(subnet).network
    except ValueError:
        raise MachineError(f"Invalid subnet '{subnet}'. Expected an interface address like 192.168.8.1/24")
    if network.version != 4:
        raise MachineError(f"Subnet must be IPv4 (got '{subnet}')")
    parts = [part.strip() for part in dhcp_range.split(",")]
    if len(parts) != 2:
        raise MachineError(f"Invalid DHCP range '{dhcp_range}'. Expected 'start,end'")
    try:
        start, end = (ipaddress.ip_address(part) for part in parts)
    except ValueError:
        raise MachineError(f"Invalid DHCP range '{dhcp_range}'. Expected two IPv4 addresses")
    if start not in network or end not in network:
        raise MachineError(f"DHCP range {dhcp_range} is outside subnet {network}")
    if start > end:
        raise MachineError(f"DHCP range {dhcp_range} starts after it ends")


def resolve_store_path(args: argparse.Namespace) -> Path:
    raw = getattr(args, "store_path", None)
    return Path(raw).expanduser() if raw else DEFAULT_STORE_PATH


def parse_env(args: argparse.Namespace) -> VMConfig:
    """Build a fresh VMConfig from CLI flags, falling back to BHYVE_* variables."""
    machine_name = getattr(args, "name", None) or get_env("BHYVE_MACHINE_NAME", "default")
    machine_name = validate_machine_name(machine_name.strip())

    disk_mb = parse_int("BHYVE_DISK_SIZE", _option(args, "disk_size"), min_val=64)
    memory_mb = parse_int("BHYVE_MEM_SIZE", _option(args, "mem_size"), min_val=64)
    cpus = parse_int("BHYVE_CPUS", _option(args, "cpus"), min_val=1, max_val=256)

    bridge = (_option(args, "bridge") or "").strip()
    if not bridge:
        raise MachineError("BHYVE_BRIDGE must not be empty")
    subnet = (_option(args, "subnet") or "").strip()
    dhcp_range = (_option(args, "dhcp_range") or "").strip()
    validate_network(subnet, dhcp_range)

    url = _option(args, "boot2docker_url")
    if url is not None:
        url = url.strip() or None

    return VMConfig(
        machine_name=machine_name,
        store_path=resolve_store_path(args),
        disk_size=disk_mb * 1024 * 1024,
        memory_mb=memory_mb,
        cpus=cpus,
        bridge=bridge,
        subnet=subnet,
        dhcp_range=dhcp_range,
        mac_address=random_mac(),
        boot2docker_url=url,
    )


def machine_config_path(store_path: Path, machine_name: str) -> Path:
    return store_path / MACHINES_DIR_NAME / machine_name / MACHINE_CONFIG_NAME


def save_machine_config(cfg: VMConfig) -> Path:
    """Record the requested configuration so later commands see the same MAC."""
    path = machine_config_path(cfg.store_path, cfg.machine_name)
    ensure_directory(path.parent)
    data: Dict[str, Any] = {
        "machine_name": cfg.machine_name,
        "disk_size": cfg.disk_size,
        "memory_mb": cfg.memory_mb,
        "cpus": cfg.cpus,
        "bridge": cfg.bridge,
        "subnet": cfg.subnet,
        "dhcp_range": cfg.dhcp_range,
        "mac_address": cfg.mac_address,
        "boot2docker_url": cfg.boot2docker_url,
        "ssh_user": cfg.ssh_user,
        "ssh_port": cfg.ssh_port,
        "engine_port": cfg.engine_port,
    }
    path.write_text(yaml.safe_dump(data, sort_keys=False, default_flow_style=False))
    log("DEBUG", f"Saved machine config {path}")
    return path


def load_machine_config(store_path: Path, machine_name: str) -> VMConfig:
    path = machine_config_path(store_path, machine_name)
    if not path.exists():
        raise NotFound(f"Machine '{machine_name}' does not exist (no {path})")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise MachineError(f"{path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise MachineError(f"{path} should contain a YAML mapping")
    try:
        cfg = VMConfig(store_path=store_path, **data)
    except TypeError as exc:
        raise MachineError(f"{path} is not a valid machine config: {exc}")
    if not is_valid_mac(cfg.mac_address):
        raise MachineError(f"{path} has an invalid MAC address '{cfg.mac_address}'")
    return cfg
