"""
Error taxonomy for replication passes.

Every failure a pass can end in is one of these classes. Each carries a
``kind`` (reported as the target's ``Failed(kind)`` status) and whether
the Reconciler may retry it within the same invocation.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Terminal failure categories reported per target."""

    TRUST_DENIED = "TrustDenied"
    TRUST_EXPIRED = "TrustExpired"
    NOT_FOUND = "NotFound"
    ACCESS_DENIED = "AccessDenied"
    THROTTLED = "Throttled"
    INCONSISTENT = "Inconsistent"
    INVARIANT_VIOLATION = "InvariantViolation"
    WRITE_ERROR = "WriteError"
    ALREADY_IN_PROGRESS = "AlreadyInProgress"
    TIMEOUT = "Timeout"


class ConfigError(ValueError):
    """Configuration failed validation before any pass started."""


class ReplicationError(Exception):
    """Base class for every failure raised inside a replication pass."""

    kind: FailureKind = FailureKind.INVARIANT_VIOLATION
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)


class TrustDenied(ReplicationError):
    """The delegated-trust exchange was rejected.

    Args:
        message: Detail from the trust service.
        permanent: True when no trust relationship exists at all. A
            permanent denial is never retried.
    """

    kind = FailureKind.TRUST_DENIED

    def __init__(self, message: str = "", permanent: bool = True) -> None:
        super().__init__(message)
        self.permanent = permanent
        self.retryable = not permanent


class TrustExpired(ReplicationError):
    """A cached lease went stale and could not be refreshed."""

    kind = FailureKind.TRUST_EXPIRED
    retryable = True


class NotFound(ReplicationError):
    kind = FailureKind.NOT_FOUND


class AccessDenied(ReplicationError):
    kind = FailureKind.ACCESS_DENIED


class Throttled(ReplicationError):
    kind = FailureKind.THROTTLED
    retryable = True


class Inconsistent(ReplicationError):
    """The source secret's version moved while it was being replicated.

    Args:
        message: What moved.
        mid_apply: True when detected after planning, just before the value
            write. Such a pass is abandoned without in-pass retry.
    """

    kind = FailureKind.INCONSISTENT

    def __init__(self, message: str = "", mid_apply: bool = False) -> None:
        super().__init__(message)
        self.mid_apply = mid_apply
        self.retryable = not mid_apply


class InvariantViolation(ReplicationError):
    """Malformed input or a planner defect. Fatal, never retried."""

    kind = FailureKind.INVARIANT_VIOLATION


class WriteError(ReplicationError):
    """A destination write failed for a transient reason."""

    kind = FailureKind.WRITE_ERROR
    retryable = True


class AlreadyInProgress(ReplicationError):
    """Another pass holds the lease on this target key."""

    kind = FailureKind.ALREADY_IN_PROGRESS


class ReconcileTimeout(ReplicationError):
    """The pass deadline expired."""

    kind = FailureKind.TIMEOUT


class StateError(RuntimeError):
    """The replication state file is unreadable or corrupt."""
