"""First-boot configuration synthesis for ssh-lab.

Role templates are literal text with ``__QLAB_<NAME>__`` placeholders. They
are never parsed before substitution; a template declares the tokens it
needs simply by containing them. Rendering fails with ``TemplateError`` when
a declared token has no value, so a sealed document never carries an
unresolved placeholder.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Set

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from sshlab.constants import ROLES, TEMPLATES_DIR, TOKEN_RE
from sshlab.exceptions import ConfigError, TemplateError
from sshlab.models import CloudInitDocument
from sshlab.utils import log

META_DATA_TEMPLATE = "instance-id: __QLAB_INSTANCE_NAME__-001\nlocal-hostname: __QLAB_HOSTNAME__\n"

CLOUD_CONFIG_HEADER = "#cloud-config"


def token(name: str) -> str:
    return f"__QLAB_{name.upper()}__"


@dataclass(frozen=True)
class SubstitutionValues:
    """Per-instance values spliced into a role template."""

    instance_name: str
    hostname: str
    ssh_pub_key: Optional[str] = None
    password_hash: Optional[str] = None
    internal_ip: Optional[str] = None
    internal_prefix: Optional[int] = None
    mac_address: Optional[str] = None
    server_ip: Optional[str] = None

    def tokens(self, allow_missing_key: bool = False) -> Dict[str, str]:
        """Map placeholder -> value for every value that is set.

        Unset values are left out so that ``render_template`` reports them
        instead of silently splicing an empty string. The one exception is
        the public key when ``allow_missing_key`` is given.
        """
        raw: Dict[str, Optional[str]] = {
            "instance_name": self.instance_name,
            "hostname": self.hostname,
            "ssh_pub_key": self.ssh_pub_key,
            "password_hash": self.password_hash,
            "internal_ip": self.internal_ip,
            "internal_mac": self.mac_address,
            "server_ip": self.server_ip,
        }
        if self.internal_ip and self.internal_prefix is not None:
            raw["internal_cidr"] = f"{self.internal_ip}/{self.internal_prefix}"
        if raw["ssh_pub_key"] is None and allow_missing_key:
            raw["ssh_pub_key"] = ""

        values: Dict[str, str] = {}
        for name, value in raw.items():
            if value is None:
                continue
            check_value(name, value)
            values[token(name)] = value
        return values


def check_value(name: str, value: str) -> None:
    """Reject values that would corrupt the surrounding template text."""
    if TOKEN_RE.search(value):
        raise ConfigError(f"Value for {name} contains a template placeholder: {value!r}")
    if "\n" in value or "\r" in value:
        raise ConfigError(f"Value for {name} must be a single line")
    if '"' in value:
        raise ConfigError(f"Value for {name} must not contain double quotes")


def declared_tokens(template: str) -> Set[str]:
    return set(TOKEN_RE.findall(template))


def render_template(template: str, values: Mapping[str, str]) -> str:
    missing = declared_tokens(template) - set(values)
    if missing:
        raise TemplateError(f"No value for template placeholder(s): {', '.join(sorted(missing))}")
    rendered = TOKEN_RE.sub(lambda match: values[match.group(0)], template)
    leftover = TOKEN_RE.search(rendered)
    if leftover:  # pragma: no cover - values are checked for placeholders above
        raise TemplateError(f"Unresolved placeholder after rendering: {leftover.group(0)}")
    return rendered


def load_role_template(role: str, templates_dir: Optional[Path] = None) -> str:
    if role not in ROLES:
        raise ConfigError(f"Unknown role '{role}'. Supported: {', '.join(ROLES)}")
    path = (templates_dir or TEMPLATES_DIR) / f"{role}.user-data"
    if not path.is_file():
        raise TemplateError(f"Role template missing: {path}")
    return path.read_text(encoding="utf-8")


def validate_user_data(user_data: str, instance_name: str) -> None:
    first_line = user_data.split("\n", 1)[0].strip()
    if first_line != CLOUD_CONFIG_HEADER:
        raise TemplateError(f"user-data for {instance_name} must start with {CLOUD_CONFIG_HEADER}")
    try:
        parsed = yaml.safe_load(user_data)
    except yaml.YAMLError as exc:
        raise TemplateError(f"user-data for {instance_name} is not valid YAML: {exc}") from exc
    if not isinstance(parsed, dict):
        raise TemplateError(
            f"user-data for {instance_name} should contain a YAML mapping, got {type(parsed).__name__}"
        )


def render_document(
    role: str,
    values: SubstitutionValues,
    allow_missing_key: bool = False,
    templates_dir: Optional[Path] = None,
) -> CloudInitDocument:
    """Render the (meta-data, user-data) pair for one instance."""
    if values.ssh_pub_key is None:
        if not allow_missing_key:
            raise ConfigError(
                "No SSH public key provided (set QLAB_SSH_PUB_KEY or QLAB_SSH_PUB_KEY_FILE, "
                "or QLAB_ALLOW_MISSING_KEY=1 to continue without one)"
            )
        log("WARN", f"{values.instance_name}: no SSH public key; only password login will work")

    tokens = values.tokens(allow_missing_key=allow_missing_key)
    template = load_role_template(role, templates_dir)
    user_data = render_template(template, tokens)
    meta_data = render_template(META_DATA_TEMPLATE, tokens)
    validate_user_data(user_data, values.instance_name)
    log("DEBUG", f"Rendered {role} cloud-init for {values.instance_name}")
    return CloudInitDocument(instance_name=values.instance_name, meta_data=meta_data, user_data=user_data)
