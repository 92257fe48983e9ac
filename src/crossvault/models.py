"""
Pydantic models for the replication engine.

Secrets, targets, grants, policy documents and replication records.
Anything that carries plaintext or credential material uses pydantic's
``SecretBytes`` / ``SecretStr`` so it never shows up in a repr or a log
line.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretBytes, SecretStr, field_validator

from .errors import FailureKind, InvariantViolation


# ---------------------------------------------------------------------------
# Domains and references
# ---------------------------------------------------------------------------

class DomainConfig(BaseModel):
    """A trust domain (an isolated account) resolved from configuration."""

    model_config = ConfigDict(frozen=True)

    name: str
    account_id: str = Field(min_length=1)
    role: str = "CrossVaultReplicator"
    region: Optional[str] = None
    partition: str = "aws"
    external_id: Optional[str] = None

    @property
    def root_principal(self) -> str:
        """The domain's own root identity."""
        return f"arn:{self.partition}:iam::{self.account_id}:root"

    @property
    def role_arn(self) -> str:
        return f"arn:{self.partition}:iam::{self.account_id}:role/{self.role}"


class SecretRef(BaseModel):
    """Identity of a secret: (domain, path)."""

    model_config = ConfigDict(frozen=True)

    domain: str
    path: str

    def __str__(self) -> str:
        return f"{self.domain}:{self.path}"


class TargetKey(BaseModel):
    """Key of a replication: (source secret, destination domain, destination path)."""

    model_config = ConfigDict(frozen=True)

    source: SecretRef
    dest_domain: str
    dest_path: str

    def __str__(self) -> str:
        return f"{self.source}->{self.dest_domain}:{self.dest_path}"


class Secret(BaseModel):
    """A secret as read from a source vault.

    ``value`` is transient: it lives only for the duration of a pass and
    is never persisted or logged by the engine.
    """

    domain: str
    path: str
    version: str
    value: SecretBytes
    key_ref: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)
    binary: bool = False

    @property
    def ref(self) -> SecretRef:
        return SecretRef(domain=self.domain, path=self.path)


class ReplicationTarget(BaseModel):
    """Desired replication of one source secret into one destination."""

    model_config = ConfigDict(frozen=True)

    source: SecretRef
    dest_domain: str
    dest_path: str
    consumer_tags: frozenset[str] = Field(default_factory=frozenset)
    dest_key_ref: Optional[str] = None

    @property
    def key(self) -> TargetKey:
        return TargetKey(source=self.source, dest_domain=self.dest_domain, dest_path=self.dest_path)


# ---------------------------------------------------------------------------
# Grants and policy documents
# ---------------------------------------------------------------------------

class PolicyScope(str, Enum):
    """Which destination resource a policy document protects."""

    KEY = "key"
    SECRET = "secret"


class GrantCondition(BaseModel):
    """A tag condition evaluated by the external service, never by us."""

    model_config = ConfigDict(frozen=True)

    operator: str = "StringEquals"
    key: str
    values: tuple[str, ...]

    @field_validator("values")
    @classmethod
    def _sort_values(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(v)))

    @property
    def canonical(self) -> tuple[str, str, tuple[str, ...]]:
        return (self.operator, self.key, self.values)


_NO_CONDITION: tuple[str, str, tuple[str, ...]] = ("", "", ())


class Grant(BaseModel):
    """A single Allow statement: principal, actions, resource, optional condition."""

    model_config = ConfigDict(frozen=True)

    principal: str
    actions: frozenset[str]
    resource_scope: str = "*"
    condition: Optional[GrantCondition] = None

    @property
    def canonical_key(self) -> tuple:
        """Ordering key; equal keys mean semantically identical grants."""
        cond = self.condition.canonical if self.condition else _NO_CONDITION
        return (self.principal, tuple(sorted(self.actions)), self.resource_scope, cond)

    @property
    def identity_key(self) -> tuple:
        """(principal, resource, condition): at most one action set per document."""
        cond = self.condition.canonical if self.condition else _NO_CONDITION
        return (self.principal, self.resource_scope, cond)

    @property
    def is_root_admin(self) -> bool:
        """Unconditional wildcard grant to an account root identity."""
        return (
            self.condition is None
            and self.principal.endswith(":root")
            and any(a == "*" or a.endswith(":*") for a in self.actions)
        )


class PolicyDocument(BaseModel):
    """Grants for one key or one secret.

    ``opaque`` holds statements of the observed document the engine does
    not model (Deny, NotAction, service principals, compound conditions).
    They are carried through writes verbatim and never diffed.
    """

    model_config = ConfigDict(frozen=True)

    grants: tuple[Grant, ...] = ()
    opaque: tuple[str, ...] = ()

    def canonical(self) -> PolicyDocument:
        """De-duplicated grants in canonical order."""
        unique = {g.canonical_key: g for g in self.grants}
        ordered = tuple(unique[k] for k in sorted(unique))
        return PolicyDocument(grants=ordered, opaque=self.opaque)

    def check_invariants(self) -> None:
        """Reject two grants sharing (principal, resource, condition) with different actions.

        Raises:
            InvariantViolation: On the first conflicting pair.
        """
        seen: dict[tuple, frozenset[str]] = {}
        for grant in self.grants:
            actions = seen.setdefault(grant.identity_key, grant.actions)
            if actions != grant.actions:
                raise InvariantViolation(
                    f"Conflicting action sets for principal {grant.principal} "
                    f"on {grant.resource_scope}"
                )

    @property
    def keys(self) -> set[tuple]:
        return {g.canonical_key for g in self.grants}


class PolicyPatch(BaseModel):
    """Minimal change turning an observed document into the desired one."""

    model_config = ConfigDict(frozen=True)

    to_add: tuple[Grant, ...] = ()
    to_remove: tuple[Grant, ...] = ()
    retained: tuple[Grant, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


class RemovalPolicy(str, Enum):
    """What happens to observed grants absent from the desired document."""

    REVOKE = "revoke"
    RETAIN = "retain"


class ValueDiff(str, Enum):
    UNCHANGED = "unchanged"
    NEEDS_UPDATE = "needs_update"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class ScopedCredential(BaseModel):
    """Short-lived, domain-scoped credential. Replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True)

    domain: str
    purpose: str
    access_key_id: str
    secret_access_key: SecretStr
    session_token: SecretStr
    expires_at: datetime

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


# ---------------------------------------------------------------------------
# Reconciliation state
# ---------------------------------------------------------------------------

class ReconcileState(str, Enum):
    """States of one reconciliation pass."""

    PENDING = "Pending"
    READING = "Reading"
    PLANNING = "Planning"
    PLANNED = "Planned"
    APPLYING = "Applying"
    SYNCED = "Synced"
    FAILED = "Failed"
    RETRYING = "Retrying"


class ReplicationStatus(str, Enum):
    """Outcome of the last pass recorded for a target."""

    SYNCED = "synced"
    FAILED = "failed"


class ReplicationRecord(BaseModel):
    """Durable record of the last replicated versions for one target key."""

    target_key: TargetKey
    last_source_version: Optional[str] = None
    last_dest_version: Optional[str] = None
    last_applied_policy_hash: Optional[str] = None
    status: Optional[ReplicationStatus] = None
    last_failure: Optional[FailureKind] = None
    last_attempt_at: Optional[datetime] = None
    attempt_count: int = 0
