"""Shared test fixtures and a simulated bhyve host."""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from bhyve_machine.executor import CommandResult, Executor
from bhyve_machine.models import VMConfig, VMIdentity


def unsudo(argv: List[str]) -> List[str]:
    return argv[1:] if argv and argv[0] == "sudo" else argv


class FakeExecutor(Executor):
    """Records every argv and answers through ``handler(argv, input)``."""

    def __init__(self, handler: Optional[Callable[[List[str], Optional[str]], CommandResult]] = None) -> None:
        super().__init__(sudo="sudo")
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.handler = handler or (lambda argv, _input: CommandResult(argv=argv, returncode=0))

    def run(self, program, args=(), privileged=False, input=None):
        argv = self.argv(program, args, privileged)
        self.calls.append(argv)
        self.inputs.append(input)
        return self.handler(argv, input)

    def commands(self, program: str) -> List[List[str]]:
        """Calls of ``program`` with any sudo prefix removed."""
        return [unsudo(argv) for argv in self.calls if unsudo(argv)[0] == program]


class FakeHost:
    """Just enough of a FreeBSD host to drive a full VM lifecycle."""

    def __init__(self, root: Path) -> None:
        self.interfaces: Dict[str, List[str]] = {"em0": ["10.0.1.8"], "lo0": ["127.0.0.1"]}
        self.vmm_dir = root / "vmm"
        self.vmm_dir.mkdir()
        self.lease_file = root / "store" / "bhyve.leases"
        self.forwarding = 1
        self.busy_devices: List[str] = []
        self.grub_ok = True
        self.lease_pool = ipaddress.ip_address("192.168.8.10")
        self.next_pid = 4000
        self.executor = FakeExecutor(self.handle)

    def listing(self) -> str:
        lines = []
        for name, addrs in self.interfaces.items():
            lines.append(f"{name}: flags=8843<UP,BROADCAST,RUNNING,SIMPLEX,MULTICAST> metric 0 mtu 1500")
            lines.append("\toptions=80000<LINKSTATE>")
            for addr in addrs:
                lines.append(f"\tinet {addr} netmask 0xffffff00 broadcast 255.255.255.255")
        return "\n".join(lines) + "\n"

    def handle(self, argv: List[str], _input: Optional[str]) -> CommandResult:
        cmd = unsudo(argv)
        prog = cmd[0]
        ok = CommandResult(argv=argv, returncode=0)
        if prog == "ifconfig":
            return self._ifconfig(argv, cmd[1:])
        if prog == "sysctl":
            if cmd[1] == "-n":
                return CommandResult(argv=argv, returncode=0, stdout=f"{self.forwarding}\n")
            self.forwarding = 1
            return ok
        if prog == "dnsmasq":
            Path(cmd[cmd.index("-x") + 1]).write_text("99\n")
            return ok
        if prog == "fuser":
            device = cmd[1]
            busy = " 1234" if device in self.busy_devices else ""
            return CommandResult(argv=argv, returncode=0, stdout=busy, stderr=f"{device}:")
        if prog == "/usr/local/sbin/grub-bhyve":
            out = "GNU GRUB  version 2.00\n" if self.grub_ok else "error: no such device\n"
            return CommandResult(argv=argv, returncode=0, stdout=out)
        if prog == "/usr/sbin/daemon":
            return self._daemon(argv, cmd)
        if prog == "bhyvectl":
            name = cmd[-1].split("=", 1)[1]
            (self.vmm_dir / name).unlink(missing_ok=True)
            return ok
        if prog == "ssh-keygen":
            key = Path(cmd[cmd.index("-f") + 1])
            key.write_text("PRIVATE\n")
            key.with_name(key.name + ".pub").write_text("ssh-rsa AAAA test@host\n")
            return ok
        return ok

    def _ifconfig(self, argv: List[str], args: List[str]) -> CommandResult:
        if not args:
            return CommandResult(argv=argv, returncode=0, stdout=self.listing())
        name, verb = args[0], args[1]
        if verb == "create":
            if name in self.interfaces:
                return CommandResult(argv=argv, returncode=1, stderr="ifconfig: SIOCIFCREATE2: File exists")
            self.interfaces[name] = []
        elif verb == "destroy":
            if name not in self.interfaces:
                return CommandResult(argv=argv, returncode=1, stderr=f"ifconfig: interface {name} does not exist")
            del self.interfaces[name]
        elif "/" in verb:
            self.interfaces[name].append(verb.split("/")[0])
        return CommandResult(argv=argv, returncode=0)

    def _daemon(self, argv: List[str], cmd: List[str]) -> CommandResult:
        if "-p" in cmd:
            Path(cmd[cmd.index("-p") + 1]).write_text(f"{self.next_pid}\n")
            self.next_pid += 1
            return CommandResult(argv=argv, returncode=0)
        vm_name = cmd[-1]
        (self.vmm_dir / vm_name).write_text("")
        mac = next(arg.split("mac=", 1)[1] for arg in cmd if "mac=" in arg)
        self.lease_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lease_file, "a") as handle:
            handle.write(f"1700000000 {mac} {self.lease_pool} guest *\n")
        self.lease_pool += 1
        return CommandResult(argv=argv, returncode=0)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("bhyve_machine.retry.time.sleep", lambda _seconds: None)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_host(tmp_path) -> FakeHost:
    return FakeHost(tmp_path)


@pytest.fixture
def default_vm_config(tmp_path) -> VMConfig:
    return VMConfig(
        machine_name="dev",
        store_path=tmp_path / "store",
        disk_size=16384 * 1024 * 1024,
        memory_mb=1024,
        cpus=1,
        bridge="bridge0",
        subnet="192.168.8.1/24",
        dhcp_range="192.168.8.10,192.168.8.254",
        mac_address="58:9c:fc:0a:0b:0c",
    )


@pytest.fixture
def identity() -> VMIdentity:
    return VMIdentity(username="alice", machine_name="dev")


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


_PARSE_ENV_VARS = [
    "BHYVE_DISK_SIZE",
    "BHYVE_MEM_SIZE",
    "BHYVE_CPUS",
    "BHYVE_BRIDGE",
    "BHYVE_SUBNET",
    "BHYVE_DHCPRANGE",
    "BHYVE_BOOT2DOCKERURL",
    "BHYVE_MACHINE_NAME",
    "BHYVE_STORE_PATH",
    "BHYVE_DEBUG",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every variable parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
