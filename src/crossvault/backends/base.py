"""
Backend interfaces — the vault, key service and trust exchange we talk to.

Each provider knows how to build a secret store and a key service from a
scoped credential, and how to exchange trust for such a credential.
Providers register themselves by name; configuration picks one.

Every method raises the engine's error taxonomy (``crossvault.errors``),
never a service-specific exception.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, SecretBytes

from ..models import DomainConfig, PolicyDocument, ScopedCredential


class SecretMetadata(BaseModel):
    """Result of DescribeSecret: everything but the value."""

    path: str
    version: Optional[str] = None
    key_ref: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)


class SecretValue(BaseModel):
    """Result of GetSecretValue."""

    version: str
    value: SecretBytes
    binary: bool = False


class TrustExchange(ABC):
    """Delegated-trust exchange (assume-identity)."""

    @abstractmethod
    def assume_identity(
        self,
        domain: DomainConfig,
        session_tag: str,
        duration_seconds: int,
    ) -> ScopedCredential:
        """Exchange the caller's identity for a credential in ``domain``.

        Args:
            domain: Target domain; its ``role_arn`` is assumed.
            session_tag: Purpose tag attached to the session.
            duration_seconds: Requested lease length.

        Raises:
            TrustDenied: No trust relationship, or the exchange was refused.
            Throttled: The trust service rate-limited the call.
        """


class SecretStore(ABC):
    """Versioned key/value secret store in one domain."""

    @abstractmethod
    def describe_secret(self, path: str) -> SecretMetadata:
        """Current version, key reference and tags. Raises NotFound."""

    @abstractmethod
    def get_secret_value(self, path: str) -> SecretValue:
        """Current value and its version. Raises NotFound."""

    @abstractmethod
    def create_secret(self, path: str, key_ref: Optional[str], tags: dict[str, str]) -> None:
        """Create an empty secret (no version yet)."""

    @abstractmethod
    def put_secret_value(self, path: str, value: bytes, binary: bool, request_token: str) -> str:
        """Write a new current version and return its version marker.

        ``request_token`` makes the write idempotent: repeating it with the
        same token must not create a second version.
        """

    @abstractmethod
    def get_resource_policy(self, path: str) -> PolicyDocument:
        """Resource policy attached to the secret (empty if none)."""

    @abstractmethod
    def put_resource_policy(self, path: str, doc: PolicyDocument) -> None:
        """Replace the secret's resource policy."""


class KeyService(ABC):
    """Key-management service in one domain."""

    @abstractmethod
    def get_key_policy(self, key_ref: str) -> PolicyDocument:
        """Current key policy. Raises NotFound for an unknown key."""

    @abstractmethod
    def put_key_policy(self, key_ref: str, doc: PolicyDocument) -> None:
        """Replace the key policy."""


class Provider(ABC):
    """Factory for the three service clients."""

    name: str = "abstract"

    @abstractmethod
    def trust_exchange(self) -> TrustExchange:
        """The trust exchange for the caller's own identity."""

    @abstractmethod
    def secret_store(self, credential: ScopedCredential) -> SecretStore:
        """Secret store client bound to ``credential``."""

    @abstractmethod
    def key_service(self, credential: ScopedCredential) -> KeyService:
        """Key service client bound to ``credential``."""


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

_PROVIDERS: Dict[str, Callable[..., Provider]] = {}


def register_provider(name: str):
    """Decorator to register a provider class under ``name``."""
    def wrapper(cls):
        cls.name = name
        _PROVIDERS[name] = cls
        return cls
    return wrapper


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def create_provider(name: str, options: Optional[Dict[str, Any]] = None) -> Provider:
    """Instantiate a registered provider.

    Args:
        name: Registered provider name (e.g. 'aws', 'memory').
        options: Keyword arguments for the provider constructor.

    Raises:
        ValueError: If no provider is registered under ``name``.
    """
    factory = _PROVIDERS.get(name)
    if factory is None:
        raise ValueError(
            f"Unsupported provider: {name} (available: {', '.join(available_providers())})"
        )
    return factory(**(options or {}))
