"""Detached QEMU process launch and tracking for ssh-lab."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from sshlab.constants import LAUNCH_GRACE_SECONDS, QEMU_BINARY
from sshlab.exceptions import LaunchFailure, MissingEngine
from sshlab.models import LabInstance, OverlayDisk, ProcessState, SeedMedia, VMProcessHandle, pid_alive
from sshlab.utils import ensure_directory, kvm_available, log, port_in_use, require_tool, tail_file

INSTALL_HINT = "sudo apt install qemu-kvm"


def _qemu_escape(path: Path) -> str:
    """Escape a path for use inside a comma-separated QEMU option value."""
    return str(path).replace(",", ",,")


class VMSupervisor:
    """Start VMs as independent background processes, one pidfile per instance name."""

    def __init__(
        self,
        log_dir: Path,
        state_dir: Path,
        extra_args: Optional[List[str]] = None,
        qemu_binary: str = QEMU_BINARY,
    ) -> None:
        self.log_dir = log_dir
        self.state_dir = state_dir
        self.extra_args = list(extra_args or [])
        self.qemu_binary = qemu_binary
        self._kvm_available = kvm_available()

    def log_path(self, name: str) -> Path:
        return self.log_dir / f"{name}.log"

    def pidfile(self, name: str) -> Path:
        return self.state_dir / f"{name}.pid"

    def running_pid(self, name: str) -> Optional[int]:
        """PID recorded for ``name`` if that process is still alive; stale pidfiles are removed."""
        path = self.pidfile(name)
        try:
            pid = int(path.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            log("WARN", f"Ignoring unreadable pidfile {path}")
            path.unlink(missing_ok=True)
            return None
        if pid_alive(pid):
            return pid
        log("DEBUG", f"Removing stale pidfile {path} (PID {pid})")
        path.unlink(missing_ok=True)
        return None

    def status(self, name: str) -> ProcessState:
        return ProcessState.RUNNING if self.running_pid(name) else ProcessState.STOPPED

    def build_command(self, binary: str, instance: LabInstance, overlay: OverlayDisk, seed: SeedMedia) -> List[str]:
        cmd = [binary, "-name", instance.name, "-m", str(instance.memory_mb)]
        if self._kvm_available:
            cmd += ["-enable-kvm", "-cpu", "host"]
        else:
            cmd += ["-cpu", "max"]
        cmd += [
            "-drive",
            f"file={_qemu_escape(overlay.path)},format=qcow2,if=virtio",
            "-drive",
            f"file={_qemu_escape(seed.path)},format=raw,if=virtio,readonly=on",
        ]
        cmd += instance.extra_net_args
        cmd += ["-nographic"]
        cmd += self.extra_args
        return cmd

    def check_available(self, instance: LabInstance) -> None:
        """Refuse an instance whose previous VM is still alive or whose host port is taken.

        A running VM owns its overlay disk and seed volume, so this has to pass
        before either is rebuilt.
        """
        existing = self.running_pid(instance.name)
        if existing is not None:
            raise LaunchFailure(
                f"{instance.name} is already running (PID {existing}); stop it before provisioning again"
            )
        if port_in_use(instance.ssh_port):
            raise LaunchFailure(f"Host port {instance.ssh_port} for {instance.name} is already in use")

    def launch(self, instance: LabInstance, overlay: OverlayDisk, seed: SeedMedia) -> VMProcessHandle:
        """Start ``instance`` in the background and return without waiting for boot."""
        binary = require_tool((self.qemu_binary,), MissingEngine, hint=INSTALL_HINT)
        self.check_available(instance)
        if not self._kvm_available:
            log("WARN", f"{instance.name}: /dev/kvm not available, running in software emulation (TCG)")

        log_path = self.log_path(instance.name)
        cmd = self.build_command(binary, instance, overlay, seed)
        log("INFO", f"Starting VM {instance.name} (SSH on port {instance.ssh_port}, log {log_path})")
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            ensure_directory(self.log_dir)
            ensure_directory(self.state_dir)
            log_file = open(log_path, "wb")
        except OSError as exc:
            raise LaunchFailure(f"Cannot prepare log for {instance.name}: {exc}") from exc
        with log_file:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                raise LaunchFailure(f"Could not start {binary}: {exc}") from exc

        handle = VMProcessHandle(
            instance_name=instance.name,
            pid=proc.pid,
            log_path=log_path,
            ssh_port=instance.ssh_port,
            pidfile=self.pidfile(instance.name),
            process=proc,
        )
        self._assert_running(handle)
        try:
            handle.pidfile.write_text(f"{proc.pid}\n")
        except OSError as exc:
            # Never leave a VM running without a pidfile.
            self.stop(handle)
            raise LaunchFailure(f"Cannot record PID for {instance.name} in {handle.pidfile}: {exc}") from exc
        log("SUCCESS", f"VM {instance.name} started (PID {proc.pid})")
        return handle

    def _assert_running(self, handle: VMProcessHandle) -> None:
        time.sleep(LAUNCH_GRACE_SECONDS)
        if handle.poll() is ProcessState.RUNNING:
            return
        code = handle.process.returncode if handle.process is not None else None
        output = tail_file(handle.log_path)
        if output:
            log("ERROR", f"{handle.instance_name} output:\n{output}")
        raise LaunchFailure(f"{handle.instance_name} exited prematurely (code {code}); see {handle.log_path}")

    def stop(self, handle: VMProcessHandle, timeout: float = 10.0) -> None:
        """Terminate a VM launched by this supervisor."""
        if handle.poll() is ProcessState.RUNNING:
            log("INFO", f"Stopping VM {handle.instance_name} (PID {handle.pid})")
            try:
                if handle.process is not None:
                    handle.process.terminate()
                    try:
                        handle.process.wait(timeout=timeout)
                    except subprocess.TimeoutExpired:
                        handle.process.kill()
                        handle.process.wait()
                else:
                    os.kill(handle.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
        try:
            handle.pidfile.unlink(missing_ok=True)
        except OSError as exc:
            log("WARN", f"Could not remove pidfile {handle.pidfile}: {exc}")
        handle.state = ProcessState.STOPPED
