"""CLI entry points for ssh-lab."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from sshlab.config import load_labs, parse_env
from sshlab.constants import (
    BOOT_WAIT_SECONDS,
    FAIL2BAN_BANTIME,
    FAIL2BAN_FINDTIME,
    FAIL2BAN_MAXRETRY,
    KNOCK_SEQUENCE,
    LAB_PASSWORD,
    LAB_USER,
)
from sshlab.exceptions import ConfigError, LabError
from sshlab.images import image_filename
from sshlab.lab import REQUIRED_TOOLS, LabProvisioner, check_dependencies
from sshlab.models import LabConfig, ProcessState, VMProcessHandle
from sshlab.supervisor import VMSupervisor
from sshlab.utils import find_tool, kvm_available, log, validate_disk_size


def list_labs(config_path: Optional[Path] = None) -> None:
    """Print available lab variants."""
    labs = load_labs(config_path)
    if not labs:
        log("WARN", "No labs found")
        return
    max_key = max(len(k) for k in labs)
    for key in sorted(labs):
        info = labs[key] or {}
        count = len(info.get("instances") or [])
        print(f"  {key:<{max_key}}  {info.get('description', '')}  (instances={count})")


def show_config(cfg: LabConfig) -> None:
    """Print the resolved lab configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name == "ssh_pubkey" and value:
            print(f"  {field.name}: {value[:40]}...")
        elif isinstance(value, list) and value and dataclasses.is_dataclass(value[0]):
            print(f"  {field.name}:")
            for i, item in enumerate(value):
                print(f"    [{i}]:")
                for sub_field in dataclasses.fields(item):
                    print(f"      {sub_field.name}: {getattr(item, sub_field.name)}")
        else:
            print(f"  {field.name}: {value}")


def apply_overrides(cfg: LabConfig, args: argparse.Namespace) -> None:
    if args.memory is not None:
        if args.memory < 128:
            raise ConfigError(f"--memory must be >= 128 (got {args.memory})")
        for inst in cfg.instances:
            inst.memory_mb = args.memory
    if args.disk_size:
        cfg.disk_size = validate_disk_size(args.disk_size)
    if args.workspace:
        cfg.workspace_dir = Path(args.workspace)
    if args.on_failure:
        cfg.on_failure = args.on_failure


def print_plan(cfg: LabConfig) -> None:
    log("INFO", f"Lab: {cfg.lab_name} ({len(cfg.instances)} instance(s))")
    log("INFO", f"Base image: {cfg.image_dir / image_filename(cfg.image_url)}")
    for inst in cfg.instances:
        log(
            "INFO",
            f"  {inst.name}: role={inst.role}, memory={inst.memory_mb} MiB, "
            f"ssh=localhost:{inst.ssh_port}, disk={cfg.disk_size or 'base size'}",
        )
    for candidates, _ in REQUIRED_TOOLS:
        found = find_tool(candidates)
        if found:
            log("SUCCESS", f"{candidates[0]:<20} {found}")
        else:
            log("ERROR", f"{candidates[0]:<20} NOT FOUND")
    if kvm_available():
        log("SUCCESS", "KVM:                 available (/dev/kvm)")
    else:
        log("WARN", "KVM:                 NOT available (will use TCG, much slower)")


def print_status(cfg: LabConfig) -> int:
    supervisor = VMSupervisor(cfg.log_dir, cfg.state_dir)
    running = 0
    for inst in cfg.instances:
        state = supervisor.status(inst.name)
        if state is ProcessState.RUNNING:
            running += 1
            log("SUCCESS", f"{inst.name}: running (PID {supervisor.running_pid(inst.name)}, port {inst.ssh_port})")
        else:
            log("INFO", f"{inst.name}: stopped")
    return 0 if running == len(cfg.instances) else 3


def print_startup_banner(cfg: LabConfig, handles: List[VMProcessHandle]) -> None:
    """Print access information once every VM has been launched."""
    knock = " ".join(str(port) for port in KNOCK_SEQUENCE)
    knock_close = " ".join(str(port) for port in reversed(KNOCK_SEQUENCE))
    lines: List[str] = [f"  {cfg.lab_name}: VM(s) booting (wait ~{BOOT_WAIT_SECONDS}s for boot + package install)"]
    for handle in handles:
        inst = next(i for i in cfg.instances if i.name == handle.instance_name)
        detail = f", internal {inst.internal_ip}" if inst.internal_ip else ""
        lines.append(f"  {inst.name} ({inst.role}{detail})")
        lines.append(f"    SSH:  ssh -p {handle.ssh_port} {LAB_USER}@localhost")
        lines.append(f"    Log:  {handle.log_path}")
    lines.append(f"  User: {LAB_USER}  Pass: {LAB_PASSWORD}")
    lines.append(f"  Knock open:  knock <target> {knock}")
    lines.append(f"  Knock close: knock <target> {knock_close}")
    lines.append(
        f"  fail2ban:    maxretry={FAIL2BAN_MAXRETRY} bantime={FAIL2BAN_BANTIME}s findtime={FAIL2BAN_FINDTIME}s"
    )

    max_len = max(len(line) for line in lines)
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * (max_len + 2)}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * (max_len + 2)}{reset}", flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision the SSH hardening lab VMs")
    parser.add_argument("lab", nargs="?", default=None, help="Lab variant to run (default: ssh-lab)")
    parser.add_argument("--labs-file", type=Path, default=None, help="Alternative lab definitions YAML")
    parser.add_argument("--list-labs", action="store_true", help="List available labs and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and tools, then exit")
    parser.add_argument("--status", action="store_true", help="Report whether the lab VMs are running")
    parser.add_argument("--memory", type=int, default=None, help="Guest memory in MiB (overrides QLAB_MEMORY)")
    parser.add_argument("--disk-size", default=None, help="Overlay capacity, e.g. 30G (overrides QLAB_DISK_SIZE)")
    parser.add_argument("--workspace", default=None, help="Workspace directory (overrides WORKSPACE_DIR)")
    parser.add_argument(
        "--on-failure",
        choices=("keep", "stop"),
        default=None,
        help="What to do with already launched VMs when a sibling fails (default: keep)",
    )
    args = parser.parse_args(argv)

    try:
        if args.list_labs:
            list_labs(args.labs_file)
            return 0
        cfg = parse_env(args.lab, args.labs_file)
        apply_overrides(cfg, args)
    except LabError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0
    if args.status:
        return print_status(cfg)
    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== Environment Checks ===")
        print_plan(cfg)
        try:
            check_dependencies()
        except LabError as exc:
            log("ERROR", str(exc))
            return 1
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return 0

    print_plan(cfg)
    provisioner = LabProvisioner(cfg)
    try:
        handles = provisioner.run()
    except LabError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    print_startup_banner(cfg, handles)
    return 0
