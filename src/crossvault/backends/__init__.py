"""
Service backends — where secrets, keys and trust actually live.

Importing this package registers the built-in providers.
"""

from .base import (
    KeyService,
    Provider,
    SecretMetadata,
    SecretStore,
    SecretValue,
    TrustExchange,
    available_providers,
    create_provider,
    register_provider,
)
from . import aws, memory  # noqa: F401  (registration)

__all__ = [
    "KeyService",
    "Provider",
    "SecretMetadata",
    "SecretStore",
    "SecretValue",
    "TrustExchange",
    "available_providers",
    "create_provider",
    "register_provider",
]
