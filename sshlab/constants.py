"""Global constants and path configuration for ssh-lab."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_LABS_PATH = PACKAGE_DIR / "labs.yaml"
TEMPLATES_DIR = PACKAGE_DIR / "templates"

DEFAULT_LAB = "ssh-lab"
DEFAULT_WORKSPACE_DIR = ".qlab"
DEFAULT_LAB_DIR = "lab"
DEFAULT_CLOUD_IMAGE_URL = (
    "https://cloud-images.ubuntu.com/minimal/releases/jammy/release/ubuntu-22.04-minimal-cloudimg-amd64.img"
)
DEFAULT_MEMORY_MB = 1024
DEFAULT_DOWNLOAD_RETRIES = 3
DOWNLOAD_TIMEOUT = 60
USER_AGENT = "ssh-lab/0.1"

# Guest account created by every role template
LAB_USER = "labuser"
LAB_PASSWORD = "labpass"
GUEST_SSH_PORT = 22
BOOT_WAIT_SECONDS = 60

# Emitted into the guest configuration only; never enforced on the host
KNOCK_SEQUENCE = (7000, 8000, 9000)
FAIL2BAN_MAXRETRY = 3
FAIL2BAN_BANTIME = 3600
FAIL2BAN_FINDTIME = 600

# Isolated inter-VM segment defaults
INTERNAL_SUBNET = "192.168.100.0/24"
INTERNAL_FIRST_HOST = 10
MAC_PREFIX = "52:54:00:aa:00"
MAC_FIRST_OCTET = 0x10
MCAST_ENDPOINT = "230.0.0.1:1234"

SEED_VOLUME_LABEL = "cidata"
USER_DATA_NAME = "user-data"
META_DATA_NAME = "meta-data"

QEMU_BINARY = "qemu-system-x86_64"
QEMU_IMG = "qemu-img"
ISO_TOOLS = ("genisoimage", "mkisofs")
OVERLAY_FORMAT = "qcow2"
LAUNCH_GRACE_SECONDS = 0.5

TOKEN_RE = re.compile(r"__QLAB_[A-Z0-9_]+__")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
INSTANCE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")
TRUTHY = {"1", "true", "yes", "on"}
ROLES = ("standalone", "server", "client")
FAILURE_POLICIES = ("keep", "stop")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
