"""Cloud-init seed volume (NoCloud ``cidata`` ISO) authoring."""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path

from sshlab.constants import ISO_TOOLS, META_DATA_NAME, SEED_VOLUME_LABEL, USER_DATA_NAME
from sshlab.exceptions import MediaBuildFailure, MissingMediaTool
from sshlab.models import CloudInitDocument, SeedMedia
from sshlab.utils import ensure_directory, log, require_tool, run

INSTALL_HINT = "sudo apt install genisoimage"


def build_seed(document: CloudInitDocument, output: Path) -> SeedMedia:
    """Pack one document into a read-only volume at ``output``.

    Entry names and the volume label are fixed, so two instances must never
    share an output path. Any file already at ``output`` is replaced.
    """
    tool = require_tool(ISO_TOOLS, MissingMediaTool, hint=INSTALL_HINT)
    log("INFO", f"Creating cloud-init ISO for {document.instance_name}: {output}")
    try:
        ensure_directory(output.parent)
    except OSError as exc:
        raise MediaBuildFailure(f"Cannot create {output.parent}: {exc}") from exc

    with tempfile.TemporaryDirectory(prefix="sshlab-seed-") as tmpdir:
        tmp = Path(tmpdir)
        user_data = tmp / USER_DATA_NAME
        meta_data = tmp / META_DATA_NAME
        user_data.write_text(document.user_data, encoding="utf-8")
        meta_data.write_text(document.meta_data, encoding="utf-8")
        staged = output.with_name(f".{output.name}.part")
        cmd = [
            tool,
            "-output",
            str(staged),
            "-volid",
            SEED_VOLUME_LABEL,
            "-joliet",
            "-rock",
            str(user_data),
            str(meta_data),
        ]
        try:
            run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            staged.unlink(missing_ok=True)
            raise MediaBuildFailure(
                f"{Path(tool).name} failed for {document.instance_name}: {(exc.stderr or '').strip()}"
            ) from exc
        except OSError as exc:
            raise MediaBuildFailure(f"Could not run {tool}: {exc}") from exc
        try:
            os.replace(staged, output)
        except OSError as exc:
            staged.unlink(missing_ok=True)
            raise MediaBuildFailure(f"Cannot write seed volume {output}: {exc}") from exc
    log("SUCCESS", f"Created cloud-init ISO: {output}")
    return SeedMedia(path=output, label=SEED_VOLUME_LABEL)
