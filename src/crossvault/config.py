"""
Replication configuration — which secrets go where, and for whom.

Loaded from YAML and validated up front: an entry naming an unknown
domain, an empty path, or a target key declared twice fails the whole
load, before any reconciliation pass starts.

Example:
    provider:
      type: aws
    domains:
      source-account: {account_id: "111111111111", role: CrossVaultReader}
      dest-account: {account_id: "222222222222", role: CrossVaultWriter}
    targets:
      - source: {domain: source-account, path: /vault/creds}
        destination: {domain: dest-account, path: /replica/creds, key: alias/replica}
        consumers: [svc-a]
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from . import CROSSVAULT_HOME
from .backends import available_providers
from .errors import ConfigError
from .models import DomainConfig, RemovalPolicy, ReplicationTarget, SecretRef

DEFAULT_HOME = Path(CROSSVAULT_HOME).expanduser()


class SecretLocation(BaseModel):
    """``source`` or ``destination`` block of a target entry."""

    domain: str = Field(min_length=1)
    path: str
    key: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _non_empty_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("path must not be empty")
        return v


class TargetConfig(BaseModel):
    source: SecretLocation
    destination: SecretLocation
    consumers: list[str] = Field(default_factory=list)

    @field_validator("consumers")
    @classmethod
    def _non_empty_consumers(cls, v: list[str]) -> list[str]:
        if any(not tag or not tag.strip() for tag in v):
            raise ValueError("consumer tags must be non-empty strings")
        return v


class DomainEntry(BaseModel):
    account_id: str = Field(min_length=1)
    role: str = "CrossVaultReplicator"
    region: Optional[str] = None
    partition: str = "aws"
    external_id: Optional[str] = None

    @field_validator("account_id", mode="before")
    @classmethod
    def _account_as_text(cls, v: Any) -> Any:
        # YAML reads an unquoted account id as an int.
        return str(v) if isinstance(v, int) else v


class ProviderConfig(BaseModel):
    type: str = "aws"
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _registered(cls, v: str) -> str:
        if v not in available_providers():
            raise ValueError(f"unknown provider '{v}' (available: {', '.join(available_providers())})")
        return v


class Settings(BaseModel):
    """Engine tunables."""

    state_path: Path = DEFAULT_HOME / "state.json"
    audit_path: Path = DEFAULT_HOME / "audit.log"
    max_attempts: int = Field(default=4, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    deadline_seconds: float = Field(default=120.0, gt=0)
    lease_minutes: int = Field(default=15, ge=15, le=720)
    refresh_skew_seconds: int = Field(default=60, ge=0)
    consumer_tag_key: str = Field(default="consumer", min_length=1)
    removal_policy: RemovalPolicy = RemovalPolicy.REVOKE
    workers: int = Field(default=4, ge=1)

    @property
    def refresh_skew(self) -> timedelta:
        return timedelta(seconds=self.refresh_skew_seconds)


class ReplicationConfig(BaseModel):
    """Complete replication configuration."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    settings: Settings = Field(default_factory=Settings)
    domains: dict[str, DomainEntry] = Field(default_factory=dict)
    targets: list[TargetConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _resolve_references(self) -> ReplicationConfig:
        seen: set[tuple[str, str, str, str]] = set()
        for index, target in enumerate(self.targets):
            for role, loc in (("source", target.source), ("destination", target.destination)):
                if loc.domain not in self.domains:
                    raise ValueError(f"targets[{index}].{role}: unknown domain '{loc.domain}'")
            key = (target.source.domain, target.source.path, target.destination.domain, target.destination.path)
            if key in seen:
                raise ValueError(f"targets[{index}]: duplicate target {key}")
            seen.add(key)
            if (target.source.domain, target.source.path) == (target.destination.domain, target.destination.path):
                raise ValueError(f"targets[{index}]: source and destination are the same secret")
        return self

    def resolved_domains(self) -> dict[str, DomainConfig]:
        return {
            name: DomainConfig(name=name, **entry.model_dump())
            for name, entry in self.domains.items()
        }

    def replication_targets(self) -> list[ReplicationTarget]:
        """Targets in declaration order."""
        return [
            ReplicationTarget(
                source=SecretRef(domain=t.source.domain, path=t.source.path),
                dest_domain=t.destination.domain,
                dest_path=t.destination.path,
                consumer_tags=frozenset(t.consumers),
                dest_key_ref=t.destination.key,
            )
            for t in self.targets
        ]

    def provider_options(self) -> dict[str, Any]:
        """Provider constructor options, with per-domain regions for AWS."""
        options = dict(self.provider.options)
        if self.provider.type == "aws":
            regions = {n: d.region for n, d in self.domains.items() if d.region}
            if regions:
                options.setdefault("regions", regions)
        return options


def parse_config(data: dict[str, Any]) -> ReplicationConfig:
    """Validate an already-decoded configuration mapping.

    Raises:
        ConfigError: On any validation failure.
    """
    try:
        return ReplicationConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def load_config(path: Path) -> ReplicationConfig:
    """Load and validate a YAML configuration file.

    Raises:
        ConfigError: If the file is missing, not YAML, or invalid.
    """
    path = Path(path).expanduser()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return parse_config(data)
