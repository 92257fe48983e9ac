"""
Credential Broker — short-lived, domain-scoped credentials.

Credentials are cached per (domain, purpose) and refreshed before they
expire. Concurrent callers that need the same refresh share a single
trust exchange: the first caller performs it, the others wait on its
future. Cached credentials are immutable and replaced wholesale, so a
reader never sees a half-updated one.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from .backends.base import TrustExchange
from .errors import ReplicationError, TrustDenied, TrustExpired
from .models import DomainConfig, ScopedCredential

logger = logging.getLogger("crossvault.credentials")

CacheKey = tuple[str, str]


class CredentialBroker:
    """Acquires and caches scoped credentials.

    Args:
        exchange: Trust exchange used to obtain new credentials.
        domains: Resolved domains by name.
        lease_minutes: Requested lease length.
        refresh_skew: Refresh a cached credential this long before expiry.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        exchange: TrustExchange,
        domains: Mapping[str, DomainConfig],
        lease_minutes: int = 15,
        refresh_skew: timedelta = timedelta(seconds=60),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._exchange = exchange
        self._domains = dict(domains)
        self._lease_seconds = lease_minutes * 60
        self._skew = refresh_skew
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._cache: dict[CacheKey, ScopedCredential] = {}
        self._inflight: dict[CacheKey, Future] = {}

    def acquire(self, domain: str, purpose: str) -> ScopedCredential:
        """Return a valid credential for ``domain`` scoped to ``purpose``.

        Raises:
            TrustDenied: The exchange was refused (or the domain is unknown).
            TrustExpired: Refresh failed and the cached lease is stale.
            Throttled: The trust service rate-limited the refresh and no
                usable cached lease exists.
        """
        key = (domain, purpose)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and not self._needs_refresh(cached):
                return cached
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            try:
                return future.result()
            except ReplicationError as exc:
                return self._fallback(key, cached, exc)

        try:
            credential = self._exchange_for(domain, purpose)
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(exc)
            if isinstance(exc, ReplicationError):
                return self._fallback(key, cached, exc)
            raise

        with self._lock:
            self._cache[key] = credential
            self._inflight.pop(key, None)
        future.set_result(credential)
        logger.debug("Refreshed %s credential for %s (expires %s)", purpose, domain, credential.expires_at)
        return credential

    def invalidate(self, domain: str, purpose: str) -> None:
        """Drop a cached credential, forcing the next acquire to refresh."""
        with self._lock:
            self._cache.pop((domain, purpose), None)

    def _needs_refresh(self, credential: ScopedCredential) -> bool:
        return self._clock() + self._skew >= credential.expires_at

    def _exchange_for(self, domain: str, purpose: str) -> ScopedCredential:
        resolved = self._domains.get(domain)
        if resolved is None:
            raise TrustDenied(f"Unknown domain: {domain}", permanent=True)
        return self._exchange.assume_identity(resolved, purpose, self._lease_seconds)

    def _fallback(
        self,
        key: CacheKey,
        cached: Optional[ScopedCredential],
        exc: ReplicationError,
    ) -> ScopedCredential:
        """Decide what a failed refresh means for the caller."""
        if isinstance(exc, TrustDenied) and exc.permanent:
            with self._lock:
                self._cache.pop(key, None)
            raise exc
        if cached is None:
            raise exc
        if not cached.expired(self._clock()):
            logger.warning(
                "Refresh of %s credential for %s failed (%s); using cached lease until %s",
                key[1], key[0], exc.kind.value, cached.expires_at,
            )
            return cached
        raise TrustExpired(f"Lease for {key[0]}/{key[1]} expired and refresh failed: {exc}") from exc
