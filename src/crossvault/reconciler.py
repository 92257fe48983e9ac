"""
Reconciler — drives one replication pass per target.

    Pending -> Reading -> Planning -> Applying -> Synced
                  \\          \\           \\
                   +----------+-----------+--> Failed(kind) -> Retrying -> Reading

Destination writes always land in the same order: key policy, secret
creation, secret resource policy, secret value, then the replication
record. Policy therefore exists before the value it protects, and a
retry never reorders anything. Each pass holds the target key's lease
and honours a deadline; a timed-out pass never writes its record.

Usage:
    reconciler = Reconciler.from_config(load_config(path))
    results = reconciler.reconcile_all(config.replication_targets())
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from .audit import audit_event
from .backends.base import Provider, SecretMetadata, create_provider
from .config import ReplicationConfig
from .credentials import CredentialBroker
from .drift import apply_patch, diff, diff_value
from .errors import (
    FailureKind,
    Inconsistent,
    InvariantViolation,
    NotFound,
    ReconcileTimeout,
    ReplicationError,
    TrustExpired,
)
from .models import (
    DomainConfig,
    PolicyDocument,
    PolicyPatch,
    PolicyScope,
    ReconcileState,
    RemovalPolicy,
    ReplicationRecord,
    ReplicationStatus,
    ReplicationTarget,
    Secret,
    TargetKey,
    ValueDiff,
)
from .planner import PolicyPlanner
from .policy import policy_hash
from .reader import SecretReader
from .state_store import ReplicationStateStore

logger = logging.getLogger("crossvault.reconciler")

READ_PURPOSE = "read"
WRITE_PURPOSE = "write"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass for one target.

    Attributes:
        target_key: Which replication this is.
        state: Final state (Synced, Planned, or Failed).
        failure: Failure kind when ``state`` is Failed.
        failed_stage: State the pass was in when it last failed. Planning
            observes the destination under a read credential, so a domain
            refusing all trust fails there; a refused write credential
            fails in Applying.
        error: Message of the last failure.
        transitions: Every state entered, in order.
        attempts: Attempts made within this invocation.
        writes: Destination writes performed, in order.
        key_patch: Planned key policy patch (None if no key is managed).
        secret_patch: Planned secret resource policy patch.
        value_diff: Whether the value needed replicating.
        source_version: Source version read.
        dest_version: Destination version after the pass.
        dry_run: Whether Applying was skipped.
    """

    target_key: TargetKey
    state: ReconcileState = ReconcileState.PENDING
    failure: Optional[FailureKind] = None
    failed_stage: Optional[ReconcileState] = None
    error: Optional[str] = None
    transitions: list[ReconcileState] = field(default_factory=lambda: [ReconcileState.PENDING])
    attempts: int = 0
    writes: list[str] = field(default_factory=list)
    key_patch: Optional[PolicyPatch] = None
    secret_patch: Optional[PolicyPatch] = None
    value_diff: Optional[ValueDiff] = None
    source_version: Optional[str] = None
    dest_version: Optional[str] = None
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.state in (ReconcileState.SYNCED, ReconcileState.PLANNED)


@dataclass
class _ObservedDestination:
    meta: Optional[SecretMetadata]
    key_policy: Optional[PolicyDocument]
    secret_policy: PolicyDocument


def request_token(key: TargetKey, source_version: str, dest_version: Optional[str] = None) -> str:
    """Idempotency token for one value write.

    Stable across retries of the same write, but distinct once the
    destination has moved on, so an out-of-band overwrite is repaired
    rather than swallowed as a duplicate.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"crossvault:{key}:{source_version}:{dest_version or '-'}"))


class Reconciler:
    """Replication state machine with retry, backoff and deadlines.

    Args:
        provider: Service backend.
        broker: Credential broker shared by all passes.
        store: Replication state store (the Reconciler is its only writer).
        domains: Resolved domains by name.
        planner: Policy planner.
        removal_policy: Fate of grants that left the configuration.
        max_attempts: Attempt cap per invocation.
        base_delay: Backoff base in seconds.
        max_delay: Backoff ceiling in seconds.
        deadline_seconds: Per-pass deadline.
        audit_log: JSONL audit log path, or None.
        sleep: Sleep function (injectable for tests).
        monotonic: Monotonic clock for deadlines.
        clock: Wall clock for record timestamps.
    """

    def __init__(
        self,
        provider: Provider,
        broker: CredentialBroker,
        store: ReplicationStateStore,
        domains: Mapping[str, DomainConfig],
        planner: Optional[PolicyPlanner] = None,
        removal_policy: RemovalPolicy = RemovalPolicy.REVOKE,
        max_attempts: int = 4,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        deadline_seconds: float = 120.0,
        audit_log: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._provider = provider
        self._broker = broker
        self._store = store
        self._domains = dict(domains)
        self._planner = planner or PolicyPlanner()
        self._reader = SecretReader(provider)
        self._removal_policy = removal_policy
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._deadline_seconds = deadline_seconds
        self._audit_log = audit_log
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(
        cls,
        config: ReplicationConfig,
        provider: Optional[Provider] = None,
        store: Optional[ReplicationStateStore] = None,
        **overrides,
    ) -> Reconciler:
        """Wire a Reconciler from validated configuration."""
        settings = config.settings
        provider = provider or create_provider(config.provider.type, config.provider_options())
        domains = config.resolved_domains()
        broker = CredentialBroker(
            provider.trust_exchange(),
            domains,
            lease_minutes=settings.lease_minutes,
            refresh_skew=settings.refresh_skew,
        )
        kwargs = {
            "planner": PolicyPlanner(settings.consumer_tag_key),
            "removal_policy": settings.removal_policy,
            "max_attempts": settings.max_attempts,
            "base_delay": settings.base_delay,
            "max_delay": settings.max_delay,
            "deadline_seconds": settings.deadline_seconds,
            "audit_log": settings.audit_path,
        }
        kwargs.update(overrides)
        return cls(
            provider,
            broker,
            store or ReplicationStateStore(settings.state_path),
            domains,
            **kwargs,
        )

    @property
    def store(self) -> ReplicationStateStore:
        return self._store

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def reconcile(
        self,
        target: ReplicationTarget,
        dry_run: bool = False,
        blocking: bool = True,
    ) -> ReconcileResult:
        """Run one pass for ``target``.

        Args:
            target: Replication to reconcile.
            dry_run: Stop after Planning; no destination or record writes.
            blocking: Wait for a concurrent pass on the same key instead of
                failing with AlreadyInProgress.
        """
        result = ReconcileResult(target_key=target.key, dry_run=dry_run)
        deadline = self._monotonic() + self._deadline_seconds
        try:
            with self._store.lease(
                target.key,
                blocking=blocking,
                timeout=self._deadline_seconds if blocking else None,
            ):
                self._run(target, result, deadline, dry_run)
        except ReplicationError as exc:
            self._fail(result, exc)
        self._audit(result)
        return result

    def reconcile_all(
        self,
        targets: Iterable[ReplicationTarget],
        dry_run: bool = False,
        blocking: bool = True,
        workers: int = 4,
    ) -> list[ReconcileResult]:
        """Reconcile every target concurrently; results in input order.

        One target's failure, expected or not, never affects another.
        """
        targets = list(targets)
        if not targets:
            return []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crossvault") as pool:
            futures = [pool.submit(self._reconcile_isolated, t, dry_run, blocking) for t in targets]
            return [f.result() for f in futures]

    def _reconcile_isolated(self, target: ReplicationTarget, dry_run: bool, blocking: bool) -> ReconcileResult:
        try:
            return self.reconcile(target, dry_run=dry_run, blocking=blocking)
        except Exception as exc:
            logger.exception("Unexpected failure reconciling %s", target.key)
            result = ReconcileResult(target_key=target.key, dry_run=dry_run)
            self._fail(result, InvariantViolation(f"{type(exc).__name__}: {exc}"))
            return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _run(self, target: ReplicationTarget, result: ReconcileResult, deadline: float, dry_run: bool) -> None:
        record = self._store.get(target.key)
        attempt = 0
        while True:
            attempt += 1
            result.attempts = attempt
            try:
                self._attempt(target, record, result, deadline, dry_run)
                return
            except ReconcileTimeout as exc:
                self._fail(result, exc)
                return
            except ReplicationError as exc:
                self._fail(result, exc)
                if not exc.retryable or attempt >= self._max_attempts:
                    if not dry_run:
                        self._record_failure(target, record, result)
                    return
                if isinstance(exc, TrustExpired):
                    self._broker.invalidate(target.source.domain, READ_PURPOSE)
                    self._broker.invalidate(target.dest_domain, READ_PURPOSE)
                    self._broker.invalidate(target.dest_domain, WRITE_PURPOSE)
                self._transition(result, ReconcileState.RETRYING)
                try:
                    self._backoff(attempt, deadline)
                except ReconcileTimeout as timeout:
                    self._fail(result, timeout)
                    return

    def _attempt(
        self,
        target: ReplicationTarget,
        record: Optional[ReplicationRecord],
        result: ReconcileResult,
        deadline: float,
        dry_run: bool,
    ) -> None:
        result.failure = None
        result.error = None

        # -- Reading ----------------------------------------------------
        self._transition(result, ReconcileState.READING)
        self._check_deadline(deadline)
        source_cred = self._broker.acquire(target.source.domain, READ_PURPOSE)
        secret = self._read_source(target, source_cred)
        result.source_version = secret.version

        # -- Planning ---------------------------------------------------
        self._transition(result, ReconcileState.PLANNING)
        dest_domain = self._domains.get(target.dest_domain)
        if dest_domain is None:
            raise InvariantViolation(f"Destination domain {target.dest_domain} is not configured")
        desired_key = (
            self._planner.plan(target.consumer_tags, dest_domain, PolicyScope.KEY)
            if target.dest_key_ref else None
        )
        desired_secret = self._planner.plan(target.consumer_tags, dest_domain, PolicyScope.SECRET)

        self._check_deadline(deadline)
        observe_cred = self._broker.acquire(target.dest_domain, READ_PURPOSE)
        observed = self._observe_destination(
            target,
            self._provider.secret_store(observe_cred),
            self._provider.key_service(observe_cred),
        )

        root = dest_domain.root_principal
        key_patch = (
            diff(observed.key_policy, desired_key, self._removal_policy, protected_principal=root)
            if desired_key is not None else None
        )
        secret_patch = diff(observed.secret_policy, desired_secret, self._removal_policy, protected_principal=root)
        result.key_patch = key_patch
        result.secret_patch = secret_patch

        dest_version = observed.meta.version if observed.meta else None
        observed_source_version = None
        if record is not None and dest_version is not None and dest_version == record.last_dest_version:
            observed_source_version = record.last_source_version
        value_diff = diff_value(observed_source_version, secret.version)
        result.value_diff = value_diff
        result.dest_version = dest_version

        if dry_run:
            self._transition(result, ReconcileState.PLANNED)
            return

        # -- Applying ---------------------------------------------------
        self._transition(result, ReconcileState.APPLYING)
        key_document = (
            apply_patch(observed.key_policy, key_patch)
            if key_patch is not None and not key_patch.is_empty else None
        )
        secret_document = apply_patch(observed.secret_policy, secret_patch) if not secret_patch.is_empty else None

        if key_document is None and secret_document is None and observed.meta is not None \
                and value_diff is ValueDiff.UNCHANGED:
            dest_store = key_service = None
        else:
            self._check_deadline(deadline)
            dest_cred = self._broker.acquire(target.dest_domain, WRITE_PURPOSE)
            dest_store = self._provider.secret_store(dest_cred)
            key_service = self._provider.key_service(dest_cred)
        if key_document is not None:
            self._check_deadline(deadline)
            key_service.put_key_policy(target.dest_key_ref, key_document)
            result.writes.append("key_policy")

        if observed.meta is None:
            self._check_deadline(deadline)
            dest_store.create_secret(target.dest_path, target.dest_key_ref, secret.tags)
            result.writes.append("create_secret")

        if secret_document is not None:
            self._check_deadline(deadline)
            dest_store.put_resource_policy(target.dest_path, secret_document)
            result.writes.append("secret_policy")

        if value_diff is ValueDiff.NEEDS_UPDATE:
            self._check_deadline(deadline)
            source_cred = self._broker.acquire(target.source.domain, READ_PURPOSE)
            current = self._reader.current_version(target.source.domain, target.source.path, source_cred)
            if current != secret.version:
                raise Inconsistent(
                    f"Source {target.source} moved from {secret.version} to {current} before apply",
                    mid_apply=True,
                )
            dest_version = dest_store.put_secret_value(
                target.dest_path,
                secret.value.get_secret_value(),
                secret.binary,
                request_token(target.key, secret.version, observed.meta.version if observed.meta else None),
            )
            result.writes.append("secret_value")

        self._check_deadline(deadline)
        self._store.put(ReplicationRecord(
            target_key=target.key,
            last_source_version=result.source_version,
            last_dest_version=dest_version,
            last_applied_policy_hash=policy_hash(desired_key, desired_secret),
            status=ReplicationStatus.SYNCED,
            last_attempt_at=self._clock(),
            attempt_count=(record.attempt_count if record else 0) + result.attempts,
        ))
        result.dest_version = dest_version
        self._transition(result, ReconcileState.SYNCED)
        logger.info(
            "Synced %s at source version %s (%d write(s))",
            target.key, result.source_version, len(result.writes),
        )

    def _read_source(self, target: ReplicationTarget, credential) -> Secret:
        """Read the source; a read race gets one immediate re-read."""
        try:
            return self._reader.read(target.source.domain, target.source.path, credential)
        except Inconsistent:
            logger.info("Source %s changed during read; re-reading once", target.source)
            return self._reader.read(target.source.domain, target.source.path, credential)

    def _observe_destination(self, target: ReplicationTarget, dest_store, key_service) -> _ObservedDestination:
        try:
            meta = dest_store.describe_secret(target.dest_path)
        except NotFound:
            meta = None
        secret_policy = (
            dest_store.get_resource_policy(target.dest_path) if meta is not None else PolicyDocument()
        )
        key_policy = key_service.get_key_policy(target.dest_key_ref) if target.dest_key_ref else None
        return _ObservedDestination(meta=meta, key_policy=key_policy, secret_policy=secret_policy)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, result: ReconcileResult, state: ReconcileState) -> None:
        logger.debug("%s: %s -> %s", result.target_key, result.state.value, state.value)
        result.state = state
        result.transitions.append(state)

    def _fail(self, result: ReconcileResult, exc: ReplicationError) -> None:
        if result.state is not ReconcileState.FAILED:
            result.failed_stage = result.state
        result.failure = exc.kind
        result.error = str(exc)
        self._transition(result, ReconcileState.FAILED)
        logger.warning(
            "%s failed in %s: %s",
            result.target_key,
            result.failed_stage.value if result.failed_stage else "?",
            exc,
        )

    def _check_deadline(self, deadline: float) -> None:
        if self._monotonic() >= deadline:
            raise ReconcileTimeout(f"Pass deadline of {self._deadline_seconds}s expired")

    def _backoff(self, attempt: int, deadline: float) -> None:
        delay = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
        delay *= 1 + random.random() * 0.1
        if self._monotonic() + delay >= deadline:
            raise ReconcileTimeout("Pass deadline expires before the next retry")
        logger.debug("Backing off %.2fs before attempt %d", delay, attempt + 1)
        self._sleep(delay)

    def _record_failure(
        self,
        target: ReplicationTarget,
        record: Optional[ReplicationRecord],
        result: ReconcileResult,
    ) -> None:
        base = record or ReplicationRecord(target_key=target.key)
        self._store.put(base.model_copy(update={
            "status": ReplicationStatus.FAILED,
            "last_failure": result.failure,
            "last_attempt_at": self._clock(),
            "attempt_count": base.attempt_count + result.attempts,
        }))

    def _audit(self, result: ReconcileResult) -> None:
        if result.state is ReconcileState.SYNCED:
            event, detail = "RECONCILE_SYNCED", f"Synced at source version {result.source_version}"
        elif result.state is ReconcileState.PLANNED:
            event, detail = "RECONCILE_PLANNED", "Dry run planned"
        else:
            event = "RECONCILE_FAILED"
            detail = f"Failed({result.failure.value if result.failure else '?'}): {result.error}"
        try:
            audit_event(
                self._audit_log,
                event,
                str(result.target_key),
                detail,
                metadata={
                    "writes": list(result.writes),
                    "attempts": result.attempts,
                    "source_version": result.source_version,
                    "dest_version": result.dest_version,
                    "failure": result.failure.value if result.failure else None,
                    "dry_run": result.dry_run,
                },
            )
        except OSError as exc:
            logger.warning("Could not write audit entry for %s to %s: %s", result.target_key, self._audit_log, exc)
