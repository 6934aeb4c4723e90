"""Configuration loading and environment variable parsing for ssh-lab."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from sshlab.constants import (
    DEFAULT_CLOUD_IMAGE_URL,
    DEFAULT_DOWNLOAD_RETRIES,
    DEFAULT_LAB,
    DEFAULT_LAB_DIR,
    DEFAULT_LABS_PATH,
    DEFAULT_MEMORY_MB,
    DEFAULT_WORKSPACE_DIR,
    FAILURE_POLICIES,
    INSTANCE_NAME_RE,
    ROLES,
    SHA256_RE,
)
from sshlab.exceptions import ConfigError
from sshlab.models import LabConfig, LabInstance
from sshlab.utils import get_env, get_env_bool, log, parse_int_env, validate_disk_size


def load_labs(config_path: Optional[Path] = None) -> Dict[str, dict]:
    if config_path is None:
        config_path = DEFAULT_LABS_PATH
    if not config_path.exists():
        raise ConfigError(f"Lab definitions missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Lab definitions in {config_path} are not valid YAML: {exc}") from exc
    labs = data.get("labs") if isinstance(data, dict) else None
    if not isinstance(labs, dict):
        raise ConfigError(f"{config_path} must contain a 'labs' mapping")
    return labs


def load_lab(lab: str, config_path: Optional[Path] = None) -> dict:
    labs = load_labs(config_path)
    if lab not in labs:
        available_list = "\n    ".join(sorted(labs))
        raise ConfigError(
            f"Unknown lab '{lab}'.\n"
            f"  Available labs:\n"
            f"    {available_list}\n"
            f"  Use --list-labs to see details."
        )
    return labs[lab]


def build_instances(lab: str, definition: dict, memory_override: Optional[int]) -> List[LabInstance]:
    entries = definition.get("instances")
    if not isinstance(entries, list) or not entries:
        raise ConfigError(f"Lab '{lab}' declares no instances")

    instances: List[LabInstance] = []
    seen_ports: Dict[int, str] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError(f"Lab '{lab}': instance entries must be mappings")
        name = str(entry.get("name", "")).strip()
        if not INSTANCE_NAME_RE.match(name):
            raise ConfigError(f"Lab '{lab}': invalid instance name '{name}' (use lowercase letters, digits, '-')")
        role = str(entry.get("role", "standalone")).strip()
        if role not in ROLES:
            raise ConfigError(f"Lab '{lab}': unknown role '{role}' for {name}. Supported: {', '.join(ROLES)}")
        try:
            ssh_port = int(entry["ssh_port"])
        except (KeyError, TypeError, ValueError):
            raise ConfigError(f"Lab '{lab}': instance {name} needs an integer ssh_port")
        if not (1 <= ssh_port <= 65535):
            raise ConfigError(f"Lab '{lab}': ssh_port {ssh_port} for {name} out of range (1-65535)")
        if ssh_port in seen_ports:
            raise ConfigError(
                f"Port conflict: {name} ssh_port={ssh_port} collides with {seen_ports[ssh_port]}. "
                "Each instance needs a unique port."
            )
        seen_ports[ssh_port] = name
        if memory_override is not None:
            memory_mb = memory_override
        else:
            try:
                memory_mb = int(entry.get("memory", DEFAULT_MEMORY_MB))
            except (TypeError, ValueError):
                raise ConfigError(f"Lab '{lab}': memory for {name} must be an integer (MiB)")
        instances.append(LabInstance(name=name, role=role, ssh_port=ssh_port, memory_mb=memory_mb))

    names = [inst.name for inst in instances]
    if len(set(names)) != len(names):
        raise ConfigError(f"Lab '{lab}': instance names must be unique")
    if len(instances) == 1 and instances[0].role != "standalone":
        raise ConfigError(f"Lab '{lab}': a single-instance lab must use the standalone role")
    if len(instances) > 1:
        if any(inst.role == "standalone" for inst in instances):
            raise ConfigError(f"Lab '{lab}': multi-instance labs use the server and client roles")
        if not any(inst.role == "server" for inst in instances):
            raise ConfigError(f"Lab '{lab}': multi-instance labs need a server instance")
    return instances


def read_ssh_pubkey() -> Optional[str]:
    key = get_env("QLAB_SSH_PUB_KEY")
    if key is not None and key.strip():
        return key.strip()
    key_file = get_env("QLAB_SSH_PUB_KEY_FILE")
    if key_file:
        path = Path(key_file).expanduser()
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read QLAB_SSH_PUB_KEY_FILE {path}: {exc}")
        if not content:
            raise ConfigError(f"QLAB_SSH_PUB_KEY_FILE {path} is empty")
        return content.splitlines()[0].strip()
    return None


def parse_env(lab: Optional[str] = None, labs_file: Optional[Path] = None) -> LabConfig:
    lab_name = lab or get_env("QLAB_LAB", DEFAULT_LAB) or DEFAULT_LAB
    labs_env = get_env("QLAB_LABS_FILE")
    if labs_file is None and labs_env:
        labs_file = Path(labs_env)
    definition = load_lab(lab_name, labs_file)

    memory_override: Optional[int] = None
    if get_env("QLAB_MEMORY") is not None:
        memory_override = parse_int_env("QLAB_MEMORY", str(DEFAULT_MEMORY_MB), min_val=128)
    instances = build_instances(lab_name, definition, memory_override)

    disk_size_raw = (get_env("QLAB_DISK_SIZE") or "").strip()
    disk_size = validate_disk_size(disk_size_raw) if disk_size_raw else None

    image_url = (get_env("QLAB_CLOUD_IMAGE_URL") or "").strip() or DEFAULT_CLOUD_IMAGE_URL
    if not image_url.startswith(("http://", "https://")):
        raise ConfigError(f"QLAB_CLOUD_IMAGE_URL must start with http:// or https:// (got '{image_url}')")
    image_sha256 = (get_env("QLAB_CLOUD_IMAGE_SHA256") or "").strip() or None
    if image_sha256 and not SHA256_RE.match(image_sha256):
        raise ConfigError("QLAB_CLOUD_IMAGE_SHA256 must be 64 hexadecimal characters")

    on_failure = (get_env("QLAB_ON_FAILURE") or "keep").strip().lower()
    if on_failure not in FAILURE_POLICIES:
        raise ConfigError(f"Unsupported QLAB_ON_FAILURE '{on_failure}'. Expected one of {', '.join(FAILURE_POLICIES)}")

    workspace_dir = Path(get_env("WORKSPACE_DIR", DEFAULT_WORKSPACE_DIR) or DEFAULT_WORKSPACE_DIR)
    lab_dir = Path(get_env("QLAB_LAB_DIR", DEFAULT_LAB_DIR) or DEFAULT_LAB_DIR)

    ssh_pubkey = read_ssh_pubkey()
    allow_missing_key = get_env_bool("QLAB_ALLOW_MISSING_KEY", False)
    if ssh_pubkey is None and allow_missing_key:
        log("WARN", "QLAB_SSH_PUB_KEY not set; the guest will accept password login only")

    try:
        extra_args = shlex.split(get_env("QLAB_EXTRA_ARGS") or "")
    except ValueError as exc:
        raise ConfigError(f"Cannot parse QLAB_EXTRA_ARGS: {exc}")

    return LabConfig(
        lab_name=lab_name,
        description=str(definition.get("description", "")),
        instances=instances,
        image_url=image_url,
        image_sha256=image_sha256,
        workspace_dir=workspace_dir,
        lab_dir=lab_dir,
        ssh_pubkey=ssh_pubkey,
        allow_missing_key=allow_missing_key,
        disk_size=disk_size,
        download_retries=parse_int_env("QLAB_DOWNLOAD_RETRIES", str(DEFAULT_DOWNLOAD_RETRIES), min_val=1, max_val=10),
        preflight=get_env_bool("QLAB_PREFLIGHT", True),
        on_failure=on_failure,
        extra_args=extra_args,
    )
