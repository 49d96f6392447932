"""dnsmasq management for the shared VM bridge."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from bhyve_machine.constants import (
    DHCP_BASE_OPTIONS,
    DHCP_CONF_NAME,
    DHCP_LEASE_NAME,
    DHCP_PID_NAME,
    DNSMASQ,
)
from bhyve_machine.executor import Executor
from bhyve_machine.models import LeaseRecord
from bhyve_machine.utils import ensure_directory, file_exists, is_valid_mac, log


def parse_lease_line(line: str) -> Optional[LeaseRecord]:
    """Parse a dnsmasq lease line.

    dnsmasq writes ``<expiry> <mac> <ip> <hostname> <client-id>``; the
    address is the field following the MAC, so lines without the leading
    expiry are read the same way.
    """
    words = line.split()
    for idx, word in enumerate(words[:-1]):
        if is_valid_mac(word.lower()):
            expiry = words[idx - 1] if idx > 0 else None
            hostname = words[idx + 2] if len(words) > idx + 2 else None
            return LeaseRecord(
                mac_address=word.lower(),
                ip_address=words[idx + 1],
                expiry=expiry,
                hostname=hostname,
            )
    return None


class DHCPService:
    """One dnsmasq instance per bridge, with its files under ``state_dir``."""

    def __init__(self, state_dir: Path, executor: Executor) -> None:
        self.state_dir = state_dir
        self.executor = executor
        self.conf_file = state_dir / DHCP_CONF_NAME
        self.pid_file = state_dir / DHCP_PID_NAME
        self.lease_file = state_dir / DHCP_LEASE_NAME

    def render_config(self, bridge: str, dhcp_range: str) -> str:
        lines = list(DHCP_BASE_OPTIONS)
        lines.append("")
        lines.append(f"interface={bridge}")
        lines.append(f"dhcp-range={dhcp_range}")
        return "\n".join(lines) + "\n"

    def ensure_config(self, bridge: str, dhcp_range: str) -> bool:
        """Write the config once; an existing file is never rewritten."""
        if file_exists(self.conf_file):
            log("DEBUG", f"DHCP config {self.conf_file} already present")
            return False
        log("DEBUG", "Writing DHCP server config")
        ensure_directory(self.state_dir)
        self.conf_file.write_text(self.render_config(bridge, dhcp_range))
        return True

    def ensure_running(self, bridge: str, dhcp_range: str) -> bool:
        """Launch dnsmasq unless its PID file exists. Returns True if launched.

        The PID file is taken at face value; a stale one left by a crashed
        daemon keeps us from restarting it.
        """
        self.ensure_config(bridge, dhcp_range)
        if file_exists(self.pid_file):
            log("DEBUG", f"DHCP server already running ({self.pid_file})")
            return False
        log("INFO", f"Starting DHCP server on {bridge}")
        self.executor.check(
            DNSMASQ,
            [
                "-i",
                bridge,
                "-C",
                str(self.conf_file),
                "-x",
                str(self.pid_file),
                "-l",
                str(self.lease_file),
            ],
            privileged=True,
        )
        return True


def read_leases(lease_file: Path) -> List[LeaseRecord]:
    """Parsed lease records; a missing lease file reads as empty."""
    try:
        text = lease_file.read_text()
    except FileNotFoundError:
        return []
    records = []
    for line in text.splitlines():
        record = parse_lease_line(line)
        if record is not None:
            records.append(record)
    return records


def lookup_lease(lease_file: Path, mac_address: str) -> Optional[str]:
    """IP leased to ``mac_address``, or None when the file or entry is absent."""
    target = mac_address.lower()
    for record in read_leases(lease_file):
        if record.mac_address == target:
            log("DEBUG", f"Found our MAC, IP is: {record.ip_address}")
            return record.ip_address
    return None
