"""Data models for ssh-lab."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from sshlab.constants import GUEST_SSH_PORT


class ImageState(str, Enum):
    MISSING = "missing"
    DOWNLOADING = "downloading"
    PRESENT = "present"


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


@dataclass
class BaseImage:
    url: str
    path: Path
    sha256: Optional[str] = None
    state: ImageState = ImageState.MISSING

    def refresh(self) -> ImageState:
        """Re-derive the state from the filesystem (a download in flight is left alone)."""
        if self.state is not ImageState.DOWNLOADING:
            self.state = ImageState.PRESENT if self.path.is_file() else ImageState.MISSING
        return self.state


@dataclass
class LabInstance:
    name: str
    role: str
    ssh_port: int
    memory_mb: int
    internal_ip: Optional[str] = None
    mac_address: Optional[str] = None
    extra_net_args: List[str] = field(default_factory=list)

    @property
    def ssh_forward(self) -> PortForward:
        return PortForward(host_port=self.ssh_port, guest_port=GUEST_SSH_PORT)


@dataclass(frozen=True)
class CloudInitDocument:
    instance_name: str
    meta_data: str
    user_data: str


@dataclass(frozen=True)
class SeedMedia:
    path: Path
    label: str


@dataclass(frozen=True)
class OverlayDisk:
    path: Path
    backing: Path
    size: Optional[str] = None


@dataclass(frozen=True)
class SegmentAssignment:
    instance_name: str
    mac: str
    ip: str
    prefix_len: int


@dataclass
class NetworkTopology:
    endpoint: Optional[str]
    assignments: Dict[str, SegmentAssignment] = field(default_factory=dict)

    @property
    def isolated(self) -> bool:
        return self.endpoint is not None

    def for_instance(self, name: str) -> Optional[SegmentAssignment]:
        return self.assignments.get(name)


@dataclass
class VMProcessHandle:
    instance_name: str
    pid: int
    log_path: Path
    ssh_port: int
    pidfile: Path
    state: ProcessState = ProcessState.STARTING
    process: Optional[subprocess.Popen] = None

    def poll(self) -> ProcessState:
        if self.process is not None:
            code = self.process.poll()
            if code is None:
                self.state = ProcessState.RUNNING
            else:
                self.state = ProcessState.STOPPED if code == 0 else ProcessState.CRASHED
            return self.state
        self.state = ProcessState.RUNNING if pid_alive(self.pid) else ProcessState.STOPPED
        return self.state


@dataclass
class LabConfig:
    lab_name: str
    description: str
    instances: List[LabInstance]
    image_url: str
    image_sha256: Optional[str]
    workspace_dir: Path
    lab_dir: Path
    ssh_pubkey: Optional[str]
    allow_missing_key: bool
    disk_size: Optional[str]
    download_retries: int
    preflight: bool
    on_failure: str
    extra_args: List[str] = field(default_factory=list)

    @property
    def image_dir(self) -> Path:
        return self.workspace_dir / "images"

    @property
    def log_dir(self) -> Path:
        return self.workspace_dir / "logs"

    @property
    def state_dir(self) -> Path:
        return self.workspace_dir / "state"

    @property
    def multi_instance(self) -> bool:
        return len(self.instances) > 1


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
