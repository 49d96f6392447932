"""CLI entry points for bhyve-machine."""

from __future__ import annotations

import argparse
import dataclasses
import shutil
from typing import Callable, Dict, List, Optional

from bhyve_machine.config import (
    load_machine_config,
    machine_config_path,
    parse_env,
    resolve_store_path,
    save_machine_config,
)
from bhyve_machine.exceptions import MachineError
from bhyve_machine.models import VMConfig
from bhyve_machine.utils import get_env, get_env_bool, log, set_verbose
from bhyve_machine.vm import VMManager


def show_config(cfg: VMConfig) -> None:
    """Print the resolved machine configuration."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="bhyve-machine: single-VM lifecycle on a bhyve host")
    parser.add_argument("--store-path", dest="store_path", help="State directory (BHYVE_STORE_PATH)")
    parser.add_argument("--name", help="Machine name (BHYVE_MACHINE_NAME, default: 'default')")
    parser.add_argument("--debug", action="store_true", help="Log every host command")
    parser.add_argument(
        "--auto-kill",
        action="store_true",
        help="Tear the VM down when it fails to come online during start",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Provision and start a new machine")
    create.add_argument("--bhyve-disk-size", dest="disk_size", type=int, help="Size of disk for host in MB")
    create.add_argument("--bhyve-mem-size", dest="mem_size", type=int, help="Size of memory for host in MB")
    create.add_argument("--bhyve-cpus", dest="cpus", type=int, help="Number of CPUs in VM")
    create.add_argument("--bhyve-bridge", dest="bridge", help="Name of bridge interface")
    create.add_argument("--bhyve-subnet", dest="subnet", help="IP subnet to use")
    create.add_argument("--bhyve-dhcprange", dest="dhcp_range", help="DHCP Range to use")
    create.add_argument("--bhyve-boot2docker-url", dest="boot2docker_url", help="URL for boot2docker.iso")

    for name, help_text in (
        ("start", "Start the machine"),
        ("stop", "Stop the machine"),
        ("kill", "Forcefully stop the machine and reclaim its resources"),
        ("restart", "Stop (if running) and start the machine"),
        ("remove", "Kill the machine and delete its disk"),
        ("status", "Print Running or Stopped"),
        ("ip", "Print the machine's IP address"),
        ("url", "Print the docker engine URL"),
        ("show-config", "Print the stored machine configuration"),
    ):
        sub.add_parser(name, help=help_text)
    return parser


def _create(args: argparse.Namespace) -> int:
    cfg = parse_env(args)
    if machine_config_path(cfg.store_path, cfg.machine_name).exists():
        raise MachineError(f"Machine '{cfg.machine_name}' already exists")
    log("INFO", f"Machine: {cfg.machine_name} | Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | MAC: {cfg.mac_address}")
    mgr = VMManager(cfg, auto_kill_on_failure=args.auto_kill)
    mgr.pre_create_check()
    save_machine_config(cfg)
    mgr.create()
    print(mgr.get_url())
    return 0


def _remove(mgr: VMManager) -> None:
    mgr.remove()
    shutil.rmtree(mgr.vm_dir, ignore_errors=True)
    log("SUCCESS", f"Removed {mgr.cfg.machine_name}")


ACTIONS: Dict[str, Callable[[VMManager], None]] = {
    "start": lambda mgr: mgr.start(),
    "stop": lambda mgr: mgr.stop(),
    "kill": lambda mgr: mgr.kill(),
    "restart": lambda mgr: mgr.restart(),
    "remove": _remove,
    "status": lambda mgr: print(mgr.get_state().value),
    "ip": lambda mgr: print(mgr.get_ip()),
    "url": lambda mgr: print(mgr.get_url()),
    "show-config": lambda mgr: show_config(mgr.cfg),
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug or get_env_bool("BHYVE_DEBUG", False):
        set_verbose(True)

    try:
        if args.command == "create":
            return _create(args)
        name = args.name or get_env("BHYVE_MACHINE_NAME", "default")
        cfg = load_machine_config(resolve_store_path(args), name)
        mgr = VMManager(cfg, auto_kill_on_failure=args.auto_kill)
        ACTIONS[args.command](mgr)
        return 0
    except MachineError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
