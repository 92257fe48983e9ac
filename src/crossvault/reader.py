"""
Secret Reader — a consistent snapshot of a source secret.

Reads metadata first (version, key reference, tags), then the value,
and checks that the value's version is the one the metadata reported.
A mismatch means the secret was rotated between the two calls.
"""

from __future__ import annotations

import logging

from .backends.base import Provider
from .errors import Inconsistent, NotFound
from .models import ScopedCredential, Secret

logger = logging.getLogger("crossvault.reader")


class SecretReader:
    """Pure reads against a provider's secret store. Never retries."""

    def __init__(self, provider: Provider) -> None:
        self._provider = provider

    def read(self, domain: str, path: str, credential: ScopedCredential) -> Secret:
        """Fetch value, version, key reference and tags of one secret.

        Raises:
            NotFound: No such path in ``domain`` (or it has no value yet).
            AccessDenied: The credential may not read the secret.
            Throttled: Rate-limited; the caller decides on backoff.
            Inconsistent: The version changed between metadata and value reads.
        """
        store = self._provider.secret_store(credential)
        meta = store.describe_secret(path)
        if meta.version is None:
            raise NotFound(f"Secret {path} in {domain} has no current version")

        value = store.get_secret_value(path)
        if value.version != meta.version:
            raise Inconsistent(
                f"Secret {path} in {domain} moved from {meta.version} to {value.version} during read"
            )

        logger.debug("Read %s:%s at version %s", domain, path, value.version)
        return Secret(
            domain=domain,
            path=path,
            version=value.version,
            value=value.value,
            key_ref=meta.key_ref,
            tags=meta.tags,
            binary=value.binary,
        )

    def current_version(self, domain: str, path: str, credential: ScopedCredential) -> str:
        """Version marker only; never touches the value."""
        meta = self._provider.secret_store(credential).describe_secret(path)
        if meta.version is None:
            raise NotFound(f"Secret {path} in {domain} has no current version")
        return meta.version
