"""Broker configuration.

Immutable configuration dataclasses, loaded from an optional TOML file
(``neptune-broker.toml``) with environment variables layered on top.

Example:
    >>> from neptune_broker.config import load_config
    >>> config = load_config()
    >>> config.validate("preprovision")
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, TypeAlias

from neptune_broker.constants import DEFAULT_INTERVAL
from neptune_broker.exceptions import ConfigurationError

Mode: TypeAlias = Literal["api", "preprovision"]
RawConfig: TypeAlias = dict[str, Any]

PROJECT_CONFIG_NAME = "neptune-broker.toml"

_ENV_FIELDS: dict[str, str] = {
    "REGION": "region",
    "BROKER_DB": "database_url",
    "ACCOUNTNUMBER": "account_id",
    "NAME_PREFIX": "name_prefix",
    "SECURITY_GROUP_ID": "security_group_id",
    "SUBNET_GROUP_NAME": "subnet_group_name",
    "KMS_KEY_ID": "kms_key_id",
    "BROKER_TIMEZONE": "timezone",
}

_PLAN_ENV_PREFIX = "PROVISION_"


@dataclass(frozen=True, slots=True)
class PlanConfig:
    """A sizing tier and the number of unclaimed instances to keep ready.

    Args:
        name: Plan identifier used by claimants (e.g. "small").
        instance_class: Neptune DB instance class for this plan.
        description: Human readable summary returned by ``plans()``.
        minimum: Unclaimed instances to keep provisioned. 0 disables it.
    """

    name: str
    instance_class: str
    description: str = ""
    minimum: int = 0


DEFAULT_PLANS: Mapping[str, PlanConfig] = MappingProxyType({
    "small": PlanConfig(
        name="small",
        instance_class="db.r4.large",
        description="Small DB Instance - 2vCPU, 15.25 GiB RAM - $245/mo",
    ),
})


@dataclass(frozen=True, slots=True)
class BrokerConfig:
    """Broker configuration.

    Args:
        region: AWS region for Neptune and IAM calls.
        database_url: SQLAlchemy URL of the pool store.
        account_id: AWS account number used in ARNs. Resolved via STS if empty.
        name_prefix: Prefix of generated instance names.
        security_group_id: VPC security group attached to every cluster.
        subnet_group_name: DB subnet group for clusters and instances.
        kms_key_id: KMS key for storage encryption.
        timezone: Zone in which creation timestamps are reported.
        interval: Seconds between preprovisioner cycles in loop mode.
        plans: Plan catalog keyed by plan name.
    """

    region: str = ""
    database_url: str = ""
    account_id: str = ""
    name_prefix: str = ""
    security_group_id: str = ""
    subnet_group_name: str = ""
    kms_key_id: str = ""
    timezone: str = "America/Denver"
    interval: int = DEFAULT_INTERVAL
    plans: Mapping[str, PlanConfig] = field(default_factory=lambda: DEFAULT_PLANS, hash=False)

    def plan(self, name: str) -> PlanConfig | None:
        return self.plans.get(name)

    def validate(self, mode: Mode = "api") -> None:
        """Raise ConfigurationError naming the first missing setting."""
        required = ["REGION", "BROKER_DB"]
        if mode == "preprovision":
            required += ["NAME_PREFIX", "SECURITY_GROUP_ID", "SUBNET_GROUP_NAME", "KMS_KEY_ID"]

        for env_name in required:
            if not getattr(self, _ENV_FIELDS[env_name]):
                raise ConfigurationError(f"Missing {env_name} environment variable")

        for plan in self.plans.values():
            if plan.minimum < 0:
                raise ConfigurationError(f"Plan '{plan.name}' has a negative minimum")

    @property
    def async_database_url(self) -> str:
        """``database_url`` with an async driver selected."""
        url = self.database_url
        for scheme in ("postgres://", "postgresql://"):
            if url.startswith(scheme):
                return "postgresql+asyncpg://" + url.removeprefix(scheme)
        if url.startswith("sqlite://"):
            return "sqlite+aiosqlite://" + url.removeprefix("sqlite://")
        return url


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def _from_env(env: Mapping[str, str]) -> RawConfig:
    broker = {attr: env[var] for var, attr in _ENV_FIELDS.items() if env.get(var)}
    if env.get("PROVISION_INTERVAL"):
        broker["interval"] = _parse_int("PROVISION_INTERVAL", env["PROVISION_INTERVAL"])

    plans: RawConfig = {}
    for var, value in env.items():
        if var.startswith(_PLAN_ENV_PREFIX) and var != "PROVISION_INTERVAL" and value:
            plans[var.removeprefix(_PLAN_ENV_PREFIX).lower()] = {"minimum": _parse_int(var, value)}

    return {"broker": broker, "plans": plans}


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'") from None


def _build_plans(raw: RawConfig) -> dict[str, PlanConfig]:
    plans = dict(DEFAULT_PLANS)
    for name, values in raw.items():
        base = plans.get(name)
        if base is None:
            if "instance_class" not in values:
                raise ConfigurationError(f"Plan '{name}' missing 'instance_class' field")
            base = PlanConfig(name=name, instance_class=values["instance_class"])
        try:
            plans[name] = replace(base, **values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid settings for plan '{name}': {e}") from None
    return plans


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> BrokerConfig:
    """Build a BrokerConfig from TOML and environment variables.

    Args:
        path: TOML file. Defaults to ``neptune-broker.toml`` in the cwd.
        env: Environment mapping. Defaults to ``os.environ``.
    """
    file_cfg = _read_toml(path or Path.cwd() / PROJECT_CONFIG_NAME)
    merged = _deep_merge(file_cfg, _from_env(os.environ if env is None else env))

    broker = dict(merged.get("broker", {}))
    unknown = set(broker) - (set(BrokerConfig.__dataclass_fields__) - {"plans"})
    if unknown:
        raise ConfigurationError(f"Unknown broker settings: {', '.join(sorted(unknown))}")

    plans = _build_plans(merged.get("plans", {}))
    return BrokerConfig(**broker, plans=MappingProxyType(plans))
