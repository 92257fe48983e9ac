"""
In-memory provider — a vault, key service and trust exchange in one process.

Holds any number of domains. Secrets are versioned, keys carry policies,
and trust must be granted per domain before credentials are issued.
Tests drive it directly: inject faults per operation, hook calls to
simulate concurrent source updates, and inspect the write log.

Usage:
    cloud = MemoryCloud()
    cloud.trust("source", "dest")
    cloud.put_secret("source", "/vault/creds", b"hunter2")
    provider = MemoryProvider(cloud=cloud)
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from ..errors import AccessDenied, NotFound, TrustDenied, TrustExpired
from ..models import DomainConfig, PolicyDocument, ScopedCredential
from . import base
from .base import KeyService, Provider, SecretMetadata, SecretStore, SecretValue, TrustExchange

logger = logging.getLogger("crossvault.backends.memory")

WRITE_OPERATIONS = frozenset({
    "create_secret",
    "put_secret_value",
    "put_resource_policy",
    "put_key_policy",
})


@dataclass
class _StoredSecret:
    versions: dict[str, bytes] = field(default_factory=dict)
    current: Optional[str] = None
    key_ref: Optional[str] = None
    tags: dict[str, str] = field(default_factory=dict)
    policy: PolicyDocument = field(default_factory=PolicyDocument)
    binary: bool = False
    tokens: dict[str, str] = field(default_factory=dict)
    counter: int = 0


class MemoryCloud:
    """Shared state behind every MemoryProvider client.

    Args:
        clock: Returns the current UTC time; used for credential expiry.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._trusted: set[str] = set()
        self._denied: dict[str, bool] = {}
        self._secrets: dict[tuple[str, str], _StoredSecret] = {}
        self._keys: dict[tuple[str, str], PolicyDocument] = {}
        self._faults: dict[str, list[Exception]] = defaultdict(list)
        self._hooks: dict[str, list[Callable[[str, str], None]]] = defaultdict(list)
        self.writes: list[tuple[str, str, str]] = []
        self.calls: list[tuple[str, str, str]] = []
        self.exchanges = 0

    # -- setup ---------------------------------------------------------------

    def trust(self, *domains: str) -> None:
        """Allow credentials to be issued for these domains."""
        with self._lock:
            for d in domains:
                self._trusted.add(d)
                self._denied.pop(d, None)

    def deny(self, domain: str, permanent: bool = True) -> None:
        """Refuse trust exchanges for ``domain``."""
        with self._lock:
            self._trusted.discard(domain)
            self._denied[domain] = permanent

    def put_secret(
        self,
        domain: str,
        path: str,
        value: Union[bytes, str],
        version: Optional[str] = None,
        key_ref: Optional[str] = None,
        tags: Optional[dict[str, str]] = None,
    ) -> str:
        """Write a new current version directly (outside any credential)."""
        with self._lock:
            stored = self._secrets.setdefault((domain, path), _StoredSecret())
            if key_ref is not None:
                stored.key_ref = key_ref
            if tags is not None:
                stored.tags = dict(tags)
            stored.binary = isinstance(value, bytes)
            raw = value if isinstance(value, bytes) else value.encode()
            return self._new_version(stored, raw, version)

    def create_key(self, domain: str, key_ref: str, policy: Optional[PolicyDocument] = None) -> None:
        with self._lock:
            self._keys[(domain, key_ref)] = policy or PolicyDocument()

    def set_resource_policy(self, domain: str, path: str, doc: PolicyDocument) -> None:
        with self._lock:
            self._secret(domain, path).policy = doc

    def inject(self, operation: str, exc: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``exc``."""
        with self._lock:
            self._faults[operation].extend([exc] * times)

    def on(self, operation: str, callback: Callable[[str, str], None]) -> None:
        """Run ``callback(domain, resource)`` before every ``operation`` call."""
        with self._lock:
            self._hooks[operation].append(callback)

    # -- inspection ----------------------------------------------------------

    def writes_for(self, domain: str) -> list[tuple[str, str]]:
        return [(op, res) for d, op, res in self.writes if d == domain]

    def current_value(self, domain: str, path: str) -> Optional[bytes]:
        stored = self._secret(domain, path)
        return stored.versions.get(stored.current) if stored.current else None

    def current_version(self, domain: str, path: str) -> Optional[str]:
        return self._secret(domain, path).current

    def key_policy(self, domain: str, key_ref: str) -> PolicyDocument:
        return self._keys[(domain, key_ref)]

    def resource_policy(self, domain: str, path: str) -> PolicyDocument:
        return self._secret(domain, path).policy

    def has_secret(self, domain: str, path: str) -> bool:
        return (domain, path) in self._secrets

    # -- internals -----------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def _secret(self, domain: str, path: str) -> _StoredSecret:
        try:
            return self._secrets[(domain, path)]
        except KeyError:
            raise NotFound(f"Secret {path} not found in {domain}") from None

    def _new_version(self, stored: _StoredSecret, raw: bytes, version: Optional[str] = None) -> str:
        stored.counter += 1
        marker = version or f"v{stored.counter}"
        stored.versions[marker] = raw
        stored.current = marker
        return marker

    def call(self, operation: str, credential: Optional[ScopedCredential], domain: str, resource: str) -> None:
        """Bookkeeping, hooks, fault injection and authorization for one call."""
        with self._lock:
            hooks = list(self._hooks.get(operation, ()))
        for hook in hooks:
            hook(domain, resource)
        with self._lock:
            self.calls.append((domain, operation, resource))
            queued = self._faults.get(operation)
            if queued:
                logger.debug("Injected fault on %s in %s: %s", operation, domain, queued[0])
                raise queued.pop(0)
            if credential is not None:
                if credential.domain != domain:
                    raise AccessDenied(f"Credential for {credential.domain} used in {domain}")
                if credential.expired(self._clock()):
                    raise TrustExpired(f"Credential for {domain} expired")
                if operation in WRITE_OPERATIONS and credential.purpose != "write":
                    raise AccessDenied(f"{operation} needs a write credential in {domain}")
            if operation in WRITE_OPERATIONS:
                self.writes.append((domain, operation, resource))

    @property
    def lock(self) -> threading.RLock:
        return self._lock


class MemoryTrustExchange(TrustExchange):
    def __init__(self, cloud: MemoryCloud) -> None:
        self._cloud = cloud

    def assume_identity(self, domain: DomainConfig, session_tag: str, duration_seconds: int) -> ScopedCredential:
        self._cloud.call("assume_identity", None, domain.name, domain.role_arn)
        with self._cloud.lock:
            self._cloud.exchanges += 1
            if domain.name in self._cloud._denied:
                raise TrustDenied(
                    f"{domain.role_arn} does not trust this caller",
                    permanent=self._cloud._denied[domain.name],
                )
            if domain.name not in self._cloud._trusted:
                raise TrustDenied(f"No trust relationship with {domain.name}", permanent=True)
        return ScopedCredential(
            domain=domain.name,
            purpose=session_tag,
            access_key_id=f"MEM{secrets.token_hex(8).upper()}",
            secret_access_key=secrets.token_hex(20),
            session_token=secrets.token_hex(32),
            expires_at=self._cloud.now() + timedelta(seconds=duration_seconds),
        )


class MemorySecretStore(SecretStore):
    def __init__(self, cloud: MemoryCloud, credential: ScopedCredential) -> None:
        self._cloud = cloud
        self._cred = credential
        self._domain = credential.domain

    def describe_secret(self, path: str) -> SecretMetadata:
        self._cloud.call("describe_secret", self._cred, self._domain, path)
        with self._cloud.lock:
            stored = self._cloud._secret(self._domain, path)
            return SecretMetadata(
                path=path, version=stored.current, key_ref=stored.key_ref, tags=dict(stored.tags),
            )

    def get_secret_value(self, path: str) -> SecretValue:
        self._cloud.call("get_secret_value", self._cred, self._domain, path)
        with self._cloud.lock:
            stored = self._cloud._secret(self._domain, path)
            if stored.current is None:
                raise NotFound(f"Secret {path} in {self._domain} has no value")
            return SecretValue(
                version=stored.current,
                value=stored.versions[stored.current],
                binary=stored.binary,
            )

    def create_secret(self, path: str, key_ref: Optional[str], tags: dict[str, str]) -> None:
        self._cloud.call("create_secret", self._cred, self._domain, path)
        with self._cloud.lock:
            self._cloud._secrets.setdefault(
                (self._domain, path), _StoredSecret(key_ref=key_ref, tags=dict(tags)),
            )

    def put_secret_value(self, path: str, value: bytes, binary: bool, request_token: str) -> str:
        self._cloud.call("put_secret_value", self._cred, self._domain, path)
        with self._cloud.lock:
            stored = self._cloud._secret(self._domain, path)
            if request_token in stored.tokens:
                return stored.tokens[request_token]
            stored.binary = binary
            version = self._cloud._new_version(stored, bytes(value))
            stored.tokens[request_token] = version
            return version

    def get_resource_policy(self, path: str) -> PolicyDocument:
        self._cloud.call("get_resource_policy", self._cred, self._domain, path)
        with self._cloud.lock:
            return self._cloud._secret(self._domain, path).policy

    def put_resource_policy(self, path: str, doc: PolicyDocument) -> None:
        self._cloud.call("put_resource_policy", self._cred, self._domain, path)
        with self._cloud.lock:
            self._cloud._secret(self._domain, path).policy = doc


class MemoryKeyService(KeyService):
    def __init__(self, cloud: MemoryCloud, credential: ScopedCredential) -> None:
        self._cloud = cloud
        self._cred = credential
        self._domain = credential.domain

    def get_key_policy(self, key_ref: str) -> PolicyDocument:
        self._cloud.call("get_key_policy", self._cred, self._domain, key_ref)
        with self._cloud.lock:
            try:
                return self._cloud._keys[(self._domain, key_ref)]
            except KeyError:
                raise NotFound(f"Key {key_ref} not found in {self._domain}") from None

    def put_key_policy(self, key_ref: str, doc: PolicyDocument) -> None:
        self._cloud.call("put_key_policy", self._cred, self._domain, key_ref)
        with self._cloud.lock:
            if (self._domain, key_ref) not in self._cloud._keys:
                raise NotFound(f"Key {key_ref} not found in {self._domain}")
            self._cloud._keys[(self._domain, key_ref)] = doc


@base.register_provider("memory")
class MemoryProvider(Provider):
    """Provider over a MemoryCloud.

    Args:
        cloud: Shared state. A fresh one is created if omitted.
        trusted: Domains to trust up front.
        secrets: Seed secrets, each a mapping with ``domain``, ``path``,
            ``value`` and optional ``version``, ``key``, ``tags``.
        keys: Seed keys, each a mapping with ``domain`` and ``key``.
    """

    def __init__(
        self,
        cloud: Optional[MemoryCloud] = None,
        trusted: Optional[list[str]] = None,
        secrets: Optional[list[dict[str, Any]]] = None,
        keys: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        self.cloud = cloud or MemoryCloud()
        if trusted:
            self.cloud.trust(*trusted)
        for k in keys or []:
            self.cloud.create_key(k["domain"], k["key"])
        for s in secrets or []:
            self.cloud.put_secret(
                s["domain"],
                s["path"],
                s["value"],
                version=s.get("version"),
                key_ref=s.get("key"),
                tags=s.get("tags"),
            )

    def trust_exchange(self) -> TrustExchange:
        return MemoryTrustExchange(self.cloud)

    def secret_store(self, credential: ScopedCredential) -> SecretStore:
        return MemorySecretStore(self.cloud, credential)

    def key_service(self, credential: ScopedCredential) -> KeyService:
        return MemoryKeyService(self.cloud, credential)
