"""Base image cache for ssh-lab.

The cloud image is fetched once into ``<workspace>/images`` and shared,
read-only, by every overlay disk of every run. A transfer is written to a
temporary file next to the destination and only renamed into place once it
has completed (and, if a digest was configured, verified), so an interrupted
download never leaves a file that looks Present.
"""

from __future__ import annotations

import hashlib
import os
import stat
import tempfile
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests

from sshlab.constants import DOWNLOAD_TIMEOUT, USER_AGENT
from sshlab.exceptions import IntegrityFailure, TransferFailure
from sshlab.models import BaseImage, ImageState
from sshlab.utils import ensure_directory, log

CHUNK_SIZE = 1024 * 256  # 256 KiB


def image_filename(url: str) -> str:
    name = Path(urlparse(url).path).name
    return name or "base-image.img"


def _print_progress(downloaded: int, total_bytes: Optional[int], start_time: float) -> None:
    elapsed = time.time() - start_time
    speed = downloaded / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / (1024 * 1024)
    if total_bytes:
        total_mb = total_bytes / (1024 * 1024)
        pct = downloaded * 100 / total_bytes
        bar_len = 30
        filled = min(bar_len, int(bar_len * downloaded / total_bytes))
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
            f"({speed / (1024 * 1024):.1f} MiB/s)",
            end="",
            flush=True,
        )
    else:
        print(f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)", end="", flush=True)


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    sha256: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> None:
    """Stream ``url`` into ``destination``, publishing it only on full success.

    A session created here is closed before returning; a caller-supplied one is
    left open.
    """
    log("INFO", f"{label}: {url}")
    if session is not None:
        _stream_to_file(session, url, destination, sha256)
        return
    owned = requests.Session()
    try:
        _stream_to_file(owned, url, destination, sha256)
    finally:
        owned.close()


def _stream_to_file(session: requests.Session, url: str, destination: Path, sha256: Optional[str]) -> None:
    session.headers["User-Agent"] = USER_AGENT
    try:
        response = session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT, allow_redirects=True)
    except requests.RequestException as exc:
        raise TransferFailure(f"Failed to download {url}: {exc}") from exc
    if response.status_code >= 400:
        response.close()
        raise TransferFailure(f"HTTP error downloading {url}: {response.status_code} {response.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total and total.isdigit() else None
    digest = hashlib.sha256()
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".part", dir=destination.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as tmp:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                tmp.write(chunk)
                digest.update(chunk)
                downloaded += len(chunk)
                _print_progress(downloaded, total_bytes, start_time)
        print(flush=True)
        if total_bytes is not None and downloaded != total_bytes:
            raise TransferFailure(f"Incomplete download of {url}: got {downloaded} of {total_bytes} bytes")
        if sha256 and digest.hexdigest().lower() != sha256.lower():
            raise IntegrityFailure(
                f"Checksum mismatch for {url}: expected {sha256.lower()}, got {digest.hexdigest()}"
            )
        os.replace(tmp_path, destination)
    except requests.RequestException as exc:
        tmp_path.unlink(missing_ok=True)
        raise TransferFailure(f"Failed to download {url}: {exc}") from exc
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise TransferFailure(f"Failed to store {destination}: {exc}") from exc
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    finally:
        response.close()

    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def download_file_with_retry(
    url: str,
    destination: Path,
    label: str = "Downloading",
    retries: int = 3,
    sha256: Optional[str] = None,
    backoff: float = 2.0,
) -> None:
    """Retry transient transfer failures with exponential backoff."""
    attempt = 1
    while True:
        try:
            download_file(url, destination, label=label, sha256=sha256)
            return
        except IntegrityFailure:
            raise
        except TransferFailure as exc:
            if attempt >= retries:
                raise
            delay = backoff ** attempt
            log("WARN", f"{exc} (attempt {attempt}/{retries}); retrying in {delay:.0f}s")
            time.sleep(delay)
            attempt += 1


class ImageCache:
    """Make sure one shared base image is Present before any overlay is built."""

    def __init__(self, image: BaseImage, retries: int = 3) -> None:
        self.image = image
        self.retries = retries

    def ensure(self) -> BaseImage:
        image = self.image
        if image.refresh() is ImageState.PRESENT:
            log("SUCCESS", f"Cloud image already downloaded: {image.path}")
            return image

        if not image.sha256:
            log("WARN", "No QLAB_CLOUD_IMAGE_SHA256 set; trusting the image source without verification")
        log("INFO", "Downloading cloud image (this may take a few minutes)")
        image.state = ImageState.DOWNLOADING
        try:
            download_file_with_retry(
                image.url,
                image.path,
                label="Downloading base image",
                retries=self.retries,
                sha256=image.sha256,
            )
        finally:
            image.state = ImageState.MISSING
            image.refresh()
        self._mark_read_only(image.path)
        log("SUCCESS", f"Cloud image downloaded: {image.path}")
        return image

    @staticmethod
    def _mark_read_only(path: Path) -> None:
        try:
            path.chmod(stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
        except OSError as exc:
            log("WARN", f"Could not mark {path} read-only: {exc}")
