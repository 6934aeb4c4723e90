"""Copy-on-write overlay disks layered on the shared base image."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Dict, Optional

from sshlab.constants import OVERLAY_FORMAT, QEMU_IMG
from sshlab.exceptions import DiskCreationFailure, MissingDiskTool
from sshlab.models import BaseImage, ImageState, OverlayDisk
from sshlab.utils import ensure_directory, log, require_tool, run

INSTALL_HINT = "sudo apt install qemu-utils"


def detect_image_format(path: Path) -> str:
    """Return the on-disk format reported by ``qemu-img info``."""
    info = image_info(path)
    return str(info.get("format", "raw"))


def image_info(path: Path) -> Dict[str, object]:
    qemu_img = require_tool((QEMU_IMG,), MissingDiskTool, hint=INSTALL_HINT)
    try:
        result = run([qemu_img, "info", "--force-share", "--output=json", str(path)], capture_output=True)
    except subprocess.CalledProcessError as exc:
        raise DiskCreationFailure(f"qemu-img info failed for {path}: {(exc.stderr or '').strip()}") from exc
    try:
        return json.loads(result.stdout)
    except ValueError as exc:
        raise DiskCreationFailure(f"Unreadable qemu-img info output for {path}") from exc


def create_overlay(base: BaseImage, target: Path, size: Optional[str] = None) -> OverlayDisk:
    """Replace ``target`` with a fresh overlay backed by ``base``.

    Removing the previous overlay is how a re-run throws away all guest-side
    state. The base image is only ever referenced as a read-only backing file.
    """
    if base.refresh() is not ImageState.PRESENT:
        raise DiskCreationFailure(f"Base image is not present: {base.path}")
    qemu_img = require_tool((QEMU_IMG,), MissingDiskTool, hint=INSTALL_HINT)

    backing = base.path.resolve()
    backing_format = detect_image_format(backing)
    try:
        ensure_directory(target.parent)
        if target.exists():
            log("INFO", f"Removing previous overlay disk {target}")
            target.unlink()
    except OSError as exc:
        raise DiskCreationFailure(f"Cannot reset overlay {target}: {exc}") from exc

    cmd = [
        qemu_img,
        "create",
        "-f",
        OVERLAY_FORMAT,
        "-b",
        str(backing),
        "-F",
        backing_format,
        str(target),
    ]
    if size:
        cmd.append(size)
    log("INFO", f"Creating overlay disk {target} (backing: {backing.name}{', size ' + size if size else ''})")
    try:
        run(cmd, capture_output=True)
    except subprocess.CalledProcessError as exc:
        target.unlink(missing_ok=True)
        raise DiskCreationFailure(f"qemu-img create failed for {target}: {(exc.stderr or '').strip()}") from exc
    except OSError as exc:
        raise DiskCreationFailure(f"Could not run {qemu_img}: {exc}") from exc
    log("SUCCESS", f"Overlay disk ready: {target}")
    return OverlayDisk(path=target, backing=backing, size=size)
