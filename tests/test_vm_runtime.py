"""End-to-end lifecycle scenarios for bhyve_machine.vm on a simulated host."""

from __future__ import annotations

import dataclasses
import ipaddress
from unittest.mock import patch

import pytest

from bhyve_machine.models import VMIdentity, VMState
from bhyve_machine.vm import VMManager


@pytest.fixture
def mgr(default_vm_config, identity, fake_host):
    manager = VMManager(default_vm_config, executor=fake_host.executor, identity=identity)
    manager.vmm_dir = fake_host.vmm_dir
    cached = default_vm_config.cached_boot_image
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"boot2docker")
    return manager


def provision_and_create(manager):
    manager.pre_create_check()
    manager.create()


@pytest.fixture(autouse=True)
def quiet_guest():
    with patch("bhyve_machine.vm.wait_for_ssh"), patch("bhyve_machine.vm.require_runtime"), patch(
        "bhyve_machine.console.os.kill"
    ) as mock_kill:
        yield mock_kill


class TestCreate:
    def test_fresh_host(self, mgr, fake_host):
        provision_and_create(mgr)

        assert fake_host.interfaces["bridge0"] == ["192.168.8.1"]
        assert fake_host.executor.commands("ifconfig").count(["ifconfig", "bridge0", "create"]) == 1
        assert [name for name in fake_host.interfaces if name.startswith("tap")] == ["tap0"]
        assert mgr.dhcp.conf_file.exists()
        assert mgr.get_state() == VMState.RUNNING

        ip = ipaddress.ip_address(mgr.get_ip())
        assert ipaddress.ip_address("192.168.8.10") <= ip <= ipaddress.ip_address("192.168.8.254")
        assert mgr.get_url() == f"tcp://{ip}:2376"

        assert mgr.iso_path.read_bytes() == b"boot2docker"
        assert mgr.disk_path.stat().st_size == mgr.cfg.disk_size
        assert (mgr.vm_dir / "id_rsa.pub").exists()

    def test_second_machine_shares_bridge(self, mgr, fake_host, default_vm_config):
        provision_and_create(mgr)
        conf = mgr.dhcp.conf_file.read_text()

        other = VMManager(
            dataclasses.replace(default_vm_config, machine_name="web", mac_address="58:9c:fc:0a:0b:0d"),
            executor=fake_host.executor,
            identity=VMIdentity("alice", "web"),
        )
        other.vmm_dir = fake_host.vmm_dir
        provision_and_create(other)

        assert fake_host.executor.commands("ifconfig").count(["ifconfig", "bridge0", "create"]) == 1
        assert len(fake_host.executor.commands("dnsmasq")) == 1
        assert mgr.dhcp.conf_file.read_text() == conf
        assert sorted(name for name in fake_host.interfaces if name.startswith("tap")) == ["tap0", "tap1"]
        assert other.get_ip() != mgr.get_ip()


class TestLifecycle:
    def test_restart(self, mgr, fake_host):
        provision_and_create(mgr)
        mgr.restart()

        assert mgr.get_state() == VMState.RUNNING
        assert len(fake_host.executor.commands("bhyvectl")) == 1
        launches = [cmd for cmd in fake_host.executor.commands("/usr/sbin/daemon") if "-t" in cmd]
        assert len(launches) == 2
        assert [name for name in fake_host.interfaces if name.startswith("tap")] == ["tap0"]

    def test_stop_then_start(self, mgr, fake_host, quiet_guest):
        provision_and_create(mgr)
        mgr.stop()
        assert mgr.get_state() == VMState.STOPPED
        assert not any(name.startswith("tap") for name in fake_host.interfaces)
        assert quiet_guest.call_count == 1

        mgr.start()
        assert mgr.get_state() == VMState.RUNNING

    def test_remove(self, mgr, fake_host):
        provision_and_create(mgr)
        mgr.remove()
        assert mgr.get_state() == VMState.STOPPED
        assert not mgr.disk_path.exists()
        assert "bridge0" in fake_host.interfaces

    def test_create_scans_host_once_for_the_bridge(self, mgr, fake_host):
        provision_and_create(mgr)
        # one listing for the bridge check, one for the tap allocation
        assert fake_host.executor.commands("ifconfig").count(["ifconfig"]) == 2

