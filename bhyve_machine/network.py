"""Host networking for bhyve-machine: bridge, NAT and tap devices."""

from __future__ import annotations

import fcntl
import ipaddress
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from bhyve_machine.constants import IFCONFIG, NGCTL, SYSCTL, TAP_ALLOCATION_TRIES, TAP_NAME_RE
from bhyve_machine.exceptions import ExternalToolFailed, MachineError, NotFound
from bhyve_machine.executor import Executor
from bhyve_machine.models import NetworkResource
from bhyve_machine.utils import ensure_directory, log

_LOCALHOST = ipaddress.ip_network("127.0.0.0/8")

Interfaces = Dict[str, List[ipaddress.IPv4Address]]


def parse_ifconfig(output: str) -> Interfaces:
    """Map interface names to their IPv4 addresses, in listing order."""
    interfaces: Interfaces = {}
    current: Optional[str] = None
    for line in output.splitlines():
        if not line.strip():
            continue
        if not line[0].isspace():
            current = line.split(":", 1)[0]
            interfaces[current] = []
            continue
        words = line.split()
        if current is None or words[0] != "inet" or len(words) < 2:
            continue
        try:
            interfaces[current].append(ipaddress.IPv4Address(words[1]))
        except ValueError:
            log("DEBUG", f"Failed to parse address {words[1]}")
    return interfaces


def find_uplink(interfaces: Interfaces, subnet: str) -> Optional[Tuple[str, ipaddress.IPv4Address]]:
    """First interface holding an IPv4 address outside loopback and ``subnet``."""
    ours = ipaddress.ip_interface(subnet).network
    for name, addrs in interfaces.items():
        candidate = None
        for addr in addrs:
            if addr in _LOCALHOST or addr in ours:
                continue
            log("DEBUG", f"Interface {name} has address {addr} and looks like a good candidate")
            candidate = addr
        if candidate is not None:
            return name, candidate
    return None


def next_tap_name(interfaces: Interfaces) -> str:
    """tapN+1 for the highest existing tapN; gaps are never reused."""
    numbers = []
    for name in interfaces:
        match = TAP_NAME_RE.match(name)
        if match:
            numbers.append(int(match.group(1)))
    next_num = max(numbers) + 1 if numbers else 0
    log("DEBUG", f"nexttap: {next_num}")
    return f"tap{next_num}"


@contextmanager
def host_lock(bridge: str, lock_dir: Path) -> Iterator[None]:
    """Serialize shared-infrastructure provisioning across processes."""
    ensure_directory(lock_dir)
    lock_path = lock_dir / f"{bridge}.lock"
    with open(lock_path, "a") as handle:
        log("DEBUG", f"Acquiring provisioning lock {lock_path}")
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


class NetworkProvisioner:
    def __init__(self, executor: Executor) -> None:
        self.executor = executor

    def list_interfaces(self) -> Interfaces:
        return parse_ifconfig(self.executor.check(IFCONFIG).stdout)

    def ensure_ip_forwarding(self) -> bool:
        """Enable IPv4 forwarding if it is off. Returns True when it was changed."""
        log("DEBUG", "Checking IP forwarding")
        result = self.executor.check(SYSCTL, ["-n", "net.inet.ip.forwarding"])
        try:
            enabled = int(result.stdout.strip())
        except ValueError:
            raise MachineError(f"Unexpected sysctl output: {result.stdout.strip()!r}")
        if enabled:
            return False
        log("DEBUG", "IP forwarding not enabled, enabling")
        self.executor.check(SYSCTL, ["net.inet.ip.forwarding=1"], privileged=True)
        return True

    def ensure_bridge(self, bridge: str, subnet: str) -> bool:
        """Create ``bridge`` with NAT to the uplink unless it already exists.

        Returns True when the host was changed. A partially created bridge is
        not rolled back if a later step fails.
        """
        interfaces = self.list_interfaces()
        if bridge in interfaces:
            log("DEBUG", f"Interface {bridge} exists, assuming network setup properly")
            return False

        uplink = find_uplink(interfaces, subnet)
        if uplink is None:
            raise NotFound(f"No uplink interface with an IPv4 address outside {subnet} found")
        iface, addr = uplink
        log("INFO", f"Setting up {subnet} on {bridge}, aliased to {addr} on {iface}")

        self._ifconfig(bridge, "create")
        self._ifconfig(bridge, subnet)
        self._ifconfig(bridge, "up")

        nat_node = f"{iface}_NAT"
        self._ngctl("mkpeer", f"{iface}:", "nat", "lower", "in")
        self._ngctl("name", f"{iface}:lower", nat_node)
        self._ngctl("connect", f"{iface}:", f"{nat_node}:", "upper", "out")
        self._ngctl("msg", f"{nat_node}:", "setdlt", "1")
        self._ngctl("msg", f"{nat_node}:", "setaliasaddr", str(addr))
        return True

    def allocate_tap(self, bridge: str) -> NetworkResource:
        """Create the next tap device and attach it to ``bridge``.

        The host interface list is rescanned for each attempt, so a tap
        created concurrently by someone else pushes us to the next number.
        """
        for attempt in range(1, TAP_ALLOCATION_TRIES + 1):
            tap = next_tap_name(self.list_interfaces())
            result = self.executor.run(IFCONFIG, [tap, "create"], privileged=True)
            if result.ok:
                break
            if attempt == TAP_ALLOCATION_TRIES or tap not in self.list_interfaces():
                raise ExternalToolFailed(result)
            log("DEBUG", f"{tap} appeared concurrently, rescanning")

        self._ifconfig(bridge, "addm", tap)
        self._ifconfig(tap, "up")
        log("DEBUG", f"Allocated {tap} on {bridge}")
        return NetworkResource(tap=tap, bridge=bridge)

    def release_tap(self, tap: str) -> None:
        self._ifconfig(tap, "destroy")

    def _ifconfig(self, *args: str) -> None:
        self.executor.check(IFCONFIG, args, privileged=True)

    def _ngctl(self, *args: str) -> None:
        self.executor.check(NGCTL, args, privileged=True)
