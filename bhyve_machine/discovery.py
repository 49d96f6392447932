"""Find a guest's DHCP address and wait for its SSH daemon."""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Optional

from bhyve_machine.constants import LEASE_WAIT_SLEEP, LEASE_WAIT_TRIES, SSH_WAIT_SLEEP, SSH_WAIT_TRIES
from bhyve_machine.dhcp import lookup_lease
from bhyve_machine.exceptions import OperationTimeout
from bhyve_machine.retry import RetryPolicy
from bhyve_machine.utils import log

LEASE_POLICY = RetryPolicy(tries=LEASE_WAIT_TRIES, delay=LEASE_WAIT_SLEEP)
SSH_POLICY = RetryPolicy(tries=SSH_WAIT_TRIES, delay=SSH_WAIT_SLEEP)


def wait_for_address(lease_file: Path, mac_address: str, policy: RetryPolicy = LEASE_POLICY) -> str:
    """Poll the lease file until ``mac_address`` has an address.

    A missing lease file and a missing entry both mean "not leased yet".
    """
    log("INFO", "Waiting for VM to come online...")

    def probe(attempt: int) -> Optional[str]:
        ip = lookup_lease(lease_file, mac_address)
        if ip is None:
            log("DEBUG", f"Not there yet {attempt}/{policy.tries}")
        return ip

    ip = policy.poll(probe)
    if ip is None:
        raise OperationTimeout(
            f"machine didn't return an IP after {int(policy.bound)} seconds, aborting"
        )
    log("DEBUG", f"Got an ip: {ip}")
    return ip


def ssh_banner_ready(host: str, port: int, timeout: float = 2.0) -> bool:
    """True once something on ``host:port`` greets us with an SSH banner."""
    try:
        with socket.create_connection((host, port), timeout=timeout) as conn:
            conn.settimeout(timeout)
            banner = conn.recv(256)
    except OSError:
        return False
    return banner.startswith(b"SSH-")


def wait_for_ssh(host: str, port: int, policy: RetryPolicy = SSH_POLICY) -> None:
    log("DEBUG", f"Waiting for SSH on {host}:{port}")

    def probe(attempt: int) -> Optional[bool]:
        if ssh_banner_ready(host, port):
            return True
        log("DEBUG", f"SSH not ready {attempt}/{policy.tries}")
        return None

    if policy.poll(probe) is None:
        raise OperationTimeout(
            f"SSH on {host}:{port} not reachable after {int(policy.bound)} seconds"
        )
