"""VM lifecycle management for bhyve-machine.

Runtime state is never cached between operations: a VM is running exactly
when its device node exists under /dev/vmm. Resources a running VM holds
(tap device, console logger) are found again through small record files in
the machine directory, so any process can tear down a VM another started.
"""

from __future__ import annotations

import time
from typing import List, Optional

from bhyve_machine.bootloader import BootLoader, write_device_map
from bhyve_machine.console import ConsoleLogger
from bhyve_machine.constants import (
    BHYVE,
    BHYVECTL,
    CONSOLE_LOG_NAME,
    DAEMON,
    DEVICE_MAP_NAME,
    DISK_NAME,
    NMDM_PID_NAME,
    NMDM_RECORD_NAME,
    RETRY_COUNT,
    RETRY_SLEEP,
    SSH_KEY_NAME,
    TAP_RECORD_NAME,
    VMM_DEVICE_DIR,
)
from bhyve_machine.dhcp import DHCPService, lookup_lease
from bhyve_machine.discovery import LEASE_POLICY, SSH_POLICY, wait_for_address, wait_for_ssh
from bhyve_machine.disk import build_key_bundle, create_raw_disk, fetch_boot_image, generate_ssh_key
from bhyve_machine.exceptions import (
    DestroyExhausted,
    ExternalToolFailed,
    HostNotRunning,
    MachineError,
    NotFound,
    OperationTimeout,
)
from bhyve_machine.executor import Executor
from bhyve_machine.models import ConsoleSession, NetworkResource, VMConfig, VMIdentity, VMState
from bhyve_machine.network import NetworkProvisioner, host_lock
from bhyve_machine.retry import RetryPolicy
from bhyve_machine.runtime import require_runtime
from bhyve_machine.utils import ensure_directory, file_exists, log, read_record, strip_control_chars


class VMManager:
    def __init__(
        self,
        vm_config: VMConfig,
        executor: Optional[Executor] = None,
        identity: Optional[VMIdentity] = None,
        auto_kill_on_failure: bool = False,
    ) -> None:
        self.cfg = vm_config
        self.executor = executor or Executor()
        self.identity = identity or VMIdentity.current(vm_config.machine_name)
        self.auto_kill_on_failure = auto_kill_on_failure
        self.vmm_dir = VMM_DEVICE_DIR
        self.network = NetworkProvisioner(self.executor)
        self.dhcp = DHCPService(self.cfg.store_path, self.executor)
        self.console = ConsoleLogger(self.executor)
        self.boot_loader = BootLoader(self.executor)
        self.destroy_policy = RetryPolicy(tries=RETRY_COUNT, delay=RETRY_SLEEP)
        self.lease_policy = LEASE_POLICY
        self.ssh_policy = SSH_POLICY
        self.ip_address: Optional[str] = None

        self.vm_dir = self.cfg.machine_dir
        self.disk_path = self.vm_dir / DISK_NAME
        self.iso_path = self.cfg.boot_image_path
        self.device_map = self.vm_dir / DEVICE_MAP_NAME
        self.nmdm_pid_file = self.vm_dir / NMDM_PID_NAME
        self.console_log = self.vm_dir / CONSOLE_LOG_NAME
        self.tap_record = self.vm_dir / TAP_RECORD_NAME
        self.nmdm_record = self.vm_dir / NMDM_RECORD_NAME
        self.ssh_key = self.vm_dir / SSH_KEY_NAME

    @property
    def vm_name(self) -> str:
        return self.identity.vm_name

    # -- queries ---------------------------------------------------------

    def get_state(self) -> VMState:
        if file_exists(self.vmm_dir / self.vm_name):
            log("DEBUG", "STATE: running")
            return VMState.RUNNING
        return VMState.STOPPED

    def get_ip(self) -> str:
        if self.get_state() != VMState.RUNNING:
            raise HostNotRunning(f"Host {self.cfg.machine_name} is not running")
        if self.ip_address:
            log("DEBUG", f"Returning saved IP {self.ip_address}")
            return self.ip_address
        log("DEBUG", "getting IP from DHCP lease")
        ip = lookup_lease(self.dhcp.lease_file, self.cfg.mac_address)
        if ip is None:
            raise NotFound(f"No DHCP lease for {self.cfg.mac_address}")
        self.ip_address = ip
        return ip

    def get_ssh_hostname(self) -> str:
        return self.get_ip()

    def get_url(self) -> str:
        return f"tcp://{self.get_ip()}:{self.cfg.engine_port}"

    # -- host provisioning -----------------------------------------------

    def pre_create_check(self) -> None:
        require_runtime(self.executor)
        self.network.ensure_ip_forwarding()
        self.provision_host()

    def provision_host(self) -> None:
        """Bridge, NAT and dnsmasq, shared by every VM on the bridge."""
        with host_lock(self.cfg.bridge, self.cfg.store_path):
            self.network.ensure_bridge(self.cfg.bridge, self.cfg.subnet)
            self.dhcp.ensure_running(self.cfg.bridge, self.cfg.dhcp_range)

    # -- lifecycle -------------------------------------------------------

    def create(self) -> None:
        """Build disk and boot image, then start. Expects pre_create_check to have run."""
        ensure_directory(self.vm_dir)
        fetch_boot_image(self.iso_path, self.cfg.boot2docker_url, self.cfg.cached_boot_image)
        public_key = generate_ssh_key(self.executor, self.ssh_key)
        create_raw_disk(
            self.disk_path,
            self.cfg.disk_size,
            lambda: build_key_bundle(public_key.read_bytes()),
        )
        log("INFO", f"Starting {self.cfg.machine_name}...")
        self.start()

    def start(self) -> None:
        if self.get_state() == VMState.RUNNING:
            log("INFO", f"{self.vm_name} is already running")
            self._await_ready()
            return

        # reclaim whatever an earlier failed start left behind
        self._release_tap()
        self.console.stop(self.nmdm_pid_file)
        self.nmdm_record.unlink(missing_ok=True)

        write_device_map(self.device_map, self.disk_path, self.iso_path)
        self.boot_loader.boot(self.device_map, self.cfg.memory_mb, self.vm_name)

        session = ConsoleSession(
            device=self.console.find_free_device(),
            pid_file=self.nmdm_pid_file,
            log_file=self.console_log,
        )
        self.console.start(session)
        self.nmdm_record.write_text(session.device + "\n")

        resource = self.network.allocate_tap(self.cfg.bridge)
        self.tap_record.write_text(resource.tap + "\n")

        self._spawn_hypervisor(resource, session)
        self._await_ready()

    def stop(self) -> None:
        log("INFO", f"Stopping {self.cfg.machine_name}...")
        self.kill()

    def kill(self) -> None:
        """Tear down everything this VM holds; safe on an already-absent VM.

        Tap release and logger shutdown run even when destroying the VM ran
        out of retries; that failure is raised afterwards.
        """
        destroy_error: Optional[DestroyExhausted] = None
        try:
            self._destroy_vm()
        except DestroyExhausted as exc:
            log("WARN", str(exc))
            destroy_error = exc
        self._release_tap()
        self.console.stop(self.nmdm_pid_file)
        self.nmdm_record.unlink(missing_ok=True)
        self.ip_address = None
        if destroy_error is not None:
            raise destroy_error

    def restart(self) -> None:
        if self.get_state() == VMState.RUNNING:
            self.stop()
        self.start()

    def remove(self) -> None:
        try:
            self.kill()
        except MachineError as exc:
            log("DEBUG", f"Failed to kill {self.cfg.machine_name}, perhaps already dead? ({exc})")
        self.disk_path.unlink(missing_ok=True)

    # -- internals -------------------------------------------------------

    def bhyve_args(self, resource: NetworkResource, session: ConsoleSession) -> List[str]:
        return [
            "-A",
            "-H",
            "-P",
            "-s",
            "0:0,hostbridge",
            "-s",
            "1:0,lpc",
            "-s",
            f"2:0,virtio-net,{resource.tap},mac={self.cfg.mac_address}",
            "-s",
            f"3:0,virtio-blk,{self.disk_path}",
            "-s",
            "4:0,virtio-rnd,/dev/random",
            "-s",
            f"5:0,ahci-cd,{self.iso_path}",
            "-l",
            f"com1,{session.guest_end}",
            "-c",
            str(self.cfg.cpus),
            "-m",
            f"{self.cfg.memory_mb}M",
            self.vm_name,
        ]

    def _spawn_hypervisor(self, resource: NetworkResource, session: ConsoleSession) -> None:
        """Launch bhyve under daemon(8); returns once the daemon has forked."""
        log("DEBUG", f"RAM size: {self.cfg.memory_mb}")
        bhyve_argv = self.executor.argv(BHYVE, self.bhyve_args(resource, session), privileged=True)
        result = self.executor.check(DAEMON, ["-t", self.vm_name, "-f", *bhyve_argv])
        log("DEBUG", f"bhyve: {strip_control_chars(result.output)}")

    def _await_ready(self) -> None:
        try:
            self.ip_address = wait_for_address(
                self.dhcp.lease_file, self.cfg.mac_address, self.lease_policy
            )
            wait_for_ssh(self.ip_address, self.cfg.ssh_port, self.ssh_policy)
        except OperationTimeout:
            if self.auto_kill_on_failure:
                log("WARN", f"{self.cfg.machine_name} did not come up; tearing it down")
                self.kill()
            else:
                log("WARN", f"{self.cfg.machine_name} did not come up but is left running; use kill to reclaim it")
            raise
        log("SUCCESS", f"{self.cfg.machine_name} is running at {self.ip_address}")

    def _destroy_vm(self) -> None:
        node = self.vmm_dir / self.vm_name
        for attempt in self.destroy_policy.attempts():
            if not file_exists(node):
                return
            log("DEBUG", f"Destroying {self.vm_name} (attempt {attempt}/{self.destroy_policy.tries})")
            self.executor.run(BHYVECTL, ["--destroy", f"--vm={self.vm_name}"], privileged=True)
        time.sleep(self.destroy_policy.delay)
        if file_exists(node):
            raise DestroyExhausted(
                f"failed to kill {self.vm_name} after {self.destroy_policy.tries} attempts"
            )

    def _release_tap(self) -> None:
        tap = read_record(self.tap_record)
        if tap is None:
            log("DEBUG", "No tap device recorded")
            return
        try:
            self.network.release_tap(tap)
        except ExternalToolFailed as exc:
            log("WARN", f"Could not destroy {tap}: {exc}")
        self.tap_record.unlink(missing_ok=True)
