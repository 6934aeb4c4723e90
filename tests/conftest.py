"""Shared test fixtures: lab configs and a fake QEMU/genisoimage toolchain."""

from __future__ import annotations

import io
import json
import subprocess
from pathlib import Path
from typing import Dict, List
from unittest.mock import MagicMock, patch

import pytest
import requests

from sshlab.models import LabConfig, LabInstance

FAKE_PASSWORD_HASH = "$2b$12$abcdefghijklmnopqrstuuVw7Qyq8bV8q9yG2J0m9x7c4Yk3Xv1e."
PUBKEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFakeKeyForTests student@host"


def make_config(tmp_path: Path, instances: List[LabInstance], **overrides) -> LabConfig:
    values = dict(
        lab_name="ssh-lab" if len(instances) == 1 else "ssh-lab-duo",
        description="test lab",
        instances=instances,
        image_url="https://example.com/images/base.img",
        image_sha256=None,
        workspace_dir=tmp_path / ".qlab",
        lab_dir=tmp_path / "lab",
        ssh_pubkey=PUBKEY,
        allow_missing_key=False,
        disk_size=None,
        download_retries=1,
        preflight=True,
        on_failure="keep",
        extra_args=[],
    )
    values.update(overrides)
    return LabConfig(**values)


@pytest.fixture
def single_config(tmp_path) -> LabConfig:
    return make_config(tmp_path, [LabInstance(name="ssh-lab", role="standalone", ssh_port=2234, memory_mb=1024)])


@pytest.fixture
def duo_config(tmp_path) -> LabConfig:
    return make_config(
        tmp_path,
        [
            LabInstance(name="ssh-lab-server", role="server", ssh_port=2235, memory_mb=1024),
            LabInstance(name="ssh-lab-client", role="client", ssh_port=2236, memory_mb=768),
        ],
    )


class FakeResponse:
    def __init__(self, payload: bytes, status_code: int = 200, fail_after: int = -1):
        self._buf = io.BytesIO(payload)
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Not Found"
        self.headers = {"Content-Length": str(len(payload))}
        self.fail_after = fail_after
        self.closed = False

    def iter_content(self, chunk_size: int = 1024):
        sent = 0
        while True:
            if 0 <= self.fail_after <= sent:
                raise requests.ConnectionError("connection reset")
            chunk = self._buf.read(min(chunk_size, 4))
            if not chunk:
                return
            sent += len(chunk)
            yield chunk

    def close(self):
        self.closed = True


class FakeToolchain:
    """Stands in for genisoimage, qemu-img and qemu-system-x86_64."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.missing: set = set()
        self.popen_calls: List[List[str]] = []
        self.next_pid = 4000
        self.exit_code = None

    def find_tool(self, candidates):
        for name in candidates:
            if name not in self.missing:
                return f"/usr/bin/{name}"
        return None

    def require_tool(self, candidates, error_cls=None, hint=""):
        found = self.find_tool(candidates)
        if found is None:
            raise error_cls(f"{' or '.join(candidates)} not found")
        return found

    def run(self, cmd, check=True, **kwargs):
        self.calls.append(list(cmd))
        tool = Path(cmd[0]).name
        if tool in ("genisoimage", "mkisofs"):
            Path(cmd[cmd.index("-output") + 1]).write_bytes(b"CD001 cidata")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        if tool == "qemu-img" and cmd[1] == "info":
            path = Path(cmd[-1])
            info: Dict[str, object] = {"format": "qcow2", "filename": str(path)}
            if path.suffix == ".qcow2" and path.exists():
                meta = json.loads(path.read_text())
                info["full-backing-filename"] = meta["backing"]
                info["virtual-size"] = meta["size"]
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(info), stderr="")
        if tool == "qemu-img" and cmd[1] == "create":
            target = Path(cmd[8])
            size = cmd[9] if len(cmd) > 9 else "base"
            target.write_text(json.dumps({"backing": cmd[5], "size": size}))
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        raise AssertionError(f"unexpected command {cmd}")

    def popen(self, cmd, stdout=None, **kwargs):
        self.popen_calls.append(list(cmd))
        if stdout is not None:
            stdout.write(b"SeaBIOS booting...\n")
        proc = MagicMock()
        proc.pid = self.next_pid
        self.next_pid += 1
        proc.poll.return_value = self.exit_code
        proc.returncode = self.exit_code
        return proc

    def commands(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if Path(c[0]).name == tool]


@pytest.fixture
def toolchain():
    fake = FakeToolchain()
    with (
        patch("sshlab.seed.require_tool", side_effect=fake.require_tool),
        patch("sshlab.seed.run", side_effect=fake.run),
        patch("sshlab.disks.require_tool", side_effect=fake.require_tool),
        patch("sshlab.disks.run", side_effect=fake.run),
        patch("sshlab.supervisor.require_tool", side_effect=fake.require_tool),
        patch("sshlab.supervisor.subprocess.Popen", side_effect=fake.popen),
        patch("sshlab.supervisor.port_in_use", return_value=False),
        patch("sshlab.supervisor.kvm_available", return_value=True),
        patch("sshlab.supervisor.time.sleep"),
        patch("sshlab.lab.find_tool", side_effect=fake.find_tool),
        patch("sshlab.lab.hash_password", return_value=FAKE_PASSWORD_HASH),
    ):
        yield fake


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


# All environment variables that parse_env() reads, cleared for a clean slate.
_PARSE_ENV_VARS = [
    "QLAB_LAB",
    "QLAB_LABS_FILE",
    "QLAB_MEMORY",
    "QLAB_DISK_SIZE",
    "QLAB_CLOUD_IMAGE_URL",
    "QLAB_CLOUD_IMAGE_SHA256",
    "QLAB_SSH_PUB_KEY",
    "QLAB_SSH_PUB_KEY_FILE",
    "QLAB_ALLOW_MISSING_KEY",
    "QLAB_ON_FAILURE",
    "QLAB_DOWNLOAD_RETRIES",
    "QLAB_PREFLIGHT",
    "QLAB_EXTRA_ARGS",
    "QLAB_LAB_DIR",
    "WORKSPACE_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("QLAB_SSH_PUB_KEY", PUBKEY)
