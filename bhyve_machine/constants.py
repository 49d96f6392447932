"""Global constants and path configuration for bhyve-machine."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_STORE_PATH = Path(os.environ.get("BHYVE_STORE_PATH", str(Path.home() / ".bhyve-machine")))
MACHINES_DIR_NAME = "machines"
CACHE_DIR_NAME = "cache"
MACHINE_CONFIG_NAME = "machine.yaml"

# Per-VM artifacts, relative to the machine directory.
DISK_NAME = "guest.img"
ISO_NAME = "boot2docker.iso"
DEVICE_MAP_NAME = "device.map"
NMDM_PID_NAME = "nmdm.pid"
CONSOLE_LOG_NAME = "console.log"
TAP_RECORD_NAME = "tap"
NMDM_RECORD_NAME = "nmdm"
SSH_KEY_NAME = "id_rsa"

# Shared DHCP service state, relative to the store root (one per bridge).
DHCP_LEASE_NAME = "bhyve.leases"
DHCP_CONF_NAME = "dnsmasq.conf"
DHCP_PID_NAME = "dnsmasq.pid"

VMM_DEVICE_DIR = Path("/dev/vmm")
VM_NAME_PREFIX = "bhyve-machine-"

DEFAULT_DISK_SIZE_MB = 16384
DEFAULT_MEM_SIZE_MB = 1024
DEFAULT_CPU_COUNT = 1
DEFAULT_BRIDGE = "bridge0"
DEFAULT_SUBNET = "192.168.8.1/24"
DEFAULT_DHCP_RANGE = "192.168.8.10,192.168.8.254"
DEFAULT_SSH_USER = "docker"
DEFAULT_SSH_PORT = 22
DEFAULT_ENGINE_PORT = 2376

# Retry shapes: tries x fixed sleep (seconds).
RETRY_COUNT = 16
RETRY_SLEEP = 0.1
NMDM_PROBE_LIMIT = 100  # ceiling on probed nmdm indices, not a kernel limit
NMDM_PROBE_SLEEP = 1.0
LEASE_WAIT_TRIES = 60
LEASE_WAIT_SLEEP = 2.0
SSH_WAIT_TRIES = 60
SSH_WAIT_SLEEP = 2.0
TAP_ALLOCATION_TRIES = 3

# Locally administered OUI used for guest NICs.
MAC_OUI_PREFIX = "58:9c:fc"
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
TAP_NAME_RE = re.compile(r"^tap(\d+)$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

SUDO_COMMAND = os.environ.get("BHYVE_SUDO", "sudo")
IFCONFIG = "ifconfig"
NGCTL = "ngctl"
SYSCTL = "sysctl"
KLDSTAT = "kldstat"
FUSER = "fuser"
DNSMASQ = "dnsmasq"
DAEMON = "/usr/sbin/daemon"
BHYVE = "bhyve"
BHYVECTL = "bhyvectl"
GRUB_BHYVE = "/usr/local/sbin/grub-bhyve"
SSH_KEYGEN = "ssh-keygen"

REQUIRED_COMMANDS = ("grub-bhyve", "dnsmasq", "bhyve", "bhyvectl", "ngctl", "fuser")
REQUIRED_KMODS = ("vmm", "nmdm", "ng_ether")

GRUB_BANNER = "GNU GRUB"
GRUB_COMMANDS = (
    "linux (cd0)/boot/vmlinuz waitusb=5:LABEL=boot2docker-data base norestore noembed",
    "initrd (cd0)/boot/initrd.img",
    "boot",
)

DHCP_BASE_OPTIONS = (
    "port=0",
    "domain-needed",
    "no-resolv",
    "except-interface=lo0",
    "bind-interfaces",
    "local-service",
    "dhcp-authoritative",
)

KEY_BUNDLE_MAGIC = "boot2docker, please format-me"

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = any(
    os.environ.get(name, "").lower() in TRUTHY for name in ("LOG_VERBOSE", "BHYVE_DEBUG")
)
