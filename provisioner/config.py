"""Desired-state configuration loader (YAML)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from provisioner.errors import ConfigError

DEFAULT_CONFIG_FILE = "publishers.yaml"
DEFAULT_STATE_DIR = Path.home() / ".npa-provisioner"


@dataclass
class PollSettings:
    poll_interval: float
    max_attempts: int


@dataclass
class AwsSettings:
    subnet_ids: list[str]
    region: str | None = None
    profile: str | None = None
    executor_role_arn: str | None = None
    security_group_ids: list[str] = field(default_factory=list)
    instance_type: str = "t3.medium"
    ami_id: str | None = None
    ami_name_filter: str = "Netskope Private Access Publisher*"
    ami_owner: str = "aws-marketplace"
    instance_profile: str | None = None
    root_volume_size: int = 32
    key_name: str | None = None
    kms_key_id: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class ProvisionerConfig:
    base_name: str
    keys: list[str]
    aws: AwsSettings
    app: str = "npa"
    tenant_url: str | None = None
    name_overrides: dict[str, str] = field(default_factory=dict)
    install_cloudwatch_agent: bool = False
    document_name: str = "NPA-RegisterPublisher"
    registration_command: str = "/home/ubuntu/npa_publisher_wizard -token"
    readiness: PollSettings = field(default_factory=lambda: PollSettings(15, 40))
    registration: PollSettings = field(default_factory=lambda: PollSettings(10, 60))
    termination: PollSettings = field(default_factory=lambda: PollSettings(10, 30))
    max_parallel: int = 4
    state_dir: Path = DEFAULT_STATE_DIR
    lock_timeout: float = 300


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name}: expected a mapping")
    return value


def _str_list(value, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ConfigError(f"{field_name}: expected a list of non-empty strings")
    return list(value)


def _positive_int(value, field_name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{field_name}: expected a positive integer, got {value!r}")
    return value


def _positive_number(value, field_name: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{field_name}: expected a positive number, got {value!r}")
    return float(value)


def _poll(raw: dict, name: str, default: PollSettings) -> PollSettings:
    section = _section(raw, name)
    return PollSettings(
        poll_interval=_positive_number(section.get("poll_interval"), f"{name}.poll_interval", default.poll_interval),
        max_attempts=_positive_int(section.get("max_attempts"), f"{name}.max_attempts", default.max_attempts),
    )


def _publisher_keys(section: dict) -> tuple[list[str], dict[str, str]]:
    """Return (keys, name_overrides) from the ``publishers`` section."""
    given = [k for k in ("count", "keys", "units") if section.get(k) is not None]
    if len(given) > 1:
        raise ConfigError(f"publishers: use only one of count/keys/units, got {', '.join(given)}")

    if section.get("units") is not None:
        units = section["units"]
        if not isinstance(units, dict):
            raise ConfigError("publishers.units: expected a mapping of key -> settings")
        overrides = {}
        for key, settings in units.items():
            settings = settings or {}
            if not isinstance(settings, dict):
                raise ConfigError(f"publishers.units.{key}: expected a mapping")
            if settings.get("name"):
                overrides[str(key)] = str(settings["name"])
        return [str(k) for k in units], overrides

    if section.get("keys") is not None:
        keys = _str_list(section["keys"], "publishers.keys")
        if len(set(keys)) != len(keys):
            raise ConfigError("publishers.keys: keys must be unique")
        return keys, {}

    count = section.get("count", 1)
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ConfigError(f"publishers.count: expected a non-negative integer, got {count!r}")
    return [f"pub-{i}" for i in range(1, count + 1)], {}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def parse_config(raw: dict) -> ProvisionerConfig:
    if not isinstance(raw, dict):
        raise ConfigError("configuration root must be a mapping")

    publishers = _section(raw, "publishers")
    base_name = publishers.get("base_name")
    if not base_name or not isinstance(base_name, str):
        raise ConfigError("publishers.base_name is required")
    keys, overrides = _publisher_keys(publishers)

    aws_raw = _section(raw, "aws")
    subnet_ids = _str_list(aws_raw.get("subnet_ids"), "aws.subnet_ids")
    if not subnet_ids:
        raise ConfigError("aws.subnet_ids: at least one subnet is required")
    tags = aws_raw.get("tags") or {}
    if not isinstance(tags, dict):
        raise ConfigError("aws.tags: expected a mapping")

    aws = AwsSettings(
        subnet_ids=subnet_ids,
        region=aws_raw.get("region"),
        profile=aws_raw.get("profile"),
        executor_role_arn=aws_raw.get("executor_role_arn"),
        security_group_ids=_str_list(aws_raw.get("security_group_ids"), "aws.security_group_ids"),
        instance_type=aws_raw.get("instance_type", "t3.medium"),
        ami_id=aws_raw.get("ami_id"),
        ami_name_filter=aws_raw.get("ami_name_filter", "Netskope Private Access Publisher*"),
        ami_owner=aws_raw.get("ami_owner", "aws-marketplace"),
        instance_profile=aws_raw.get("instance_profile"),
        root_volume_size=_positive_int(aws_raw.get("root_volume_size"), "aws.root_volume_size", 32),
        key_name=aws_raw.get("key_name"),
        kms_key_id=aws_raw.get("kms_key_id"),
        tags={str(k): str(v) for k, v in tags.items()},
    )

    tenant = _section(raw, "tenant")
    bootstrap = _section(raw, "bootstrap")
    registration = _section(raw, "registration")

    return ProvisionerConfig(
        base_name=base_name,
        keys=keys,
        aws=aws,
        app=raw.get("app", "npa"),
        tenant_url=os.environ.get("NETSKOPE_TENANT_URL") or tenant.get("url"),
        name_overrides=overrides,
        install_cloudwatch_agent=bool(bootstrap.get("install_cloudwatch_agent", False)),
        document_name=registration.get("document_name", "NPA-RegisterPublisher"),
        registration_command=registration.get("command", "/home/ubuntu/npa_publisher_wizard -token"),
        readiness=_poll(raw, "readiness", PollSettings(15, 40)),
        registration=_poll(raw, "registration", PollSettings(10, 60)),
        termination=_poll(raw, "termination", PollSettings(10, 30)),
        max_parallel=_positive_int(raw.get("max_parallel"), "max_parallel", 4),
        state_dir=Path(raw.get("state_dir") or DEFAULT_STATE_DIR).expanduser(),
        lock_timeout=_positive_number(raw.get("lock_timeout"), "lock_timeout", 300),
    )


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> ProvisionerConfig:
    """Read and validate the desired-state YAML at *path*."""
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text())
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    return parse_config(raw or {})
