"""Shared test fixtures for crossvault."""

from __future__ import annotations

from pathlib import Path

import pytest

from crossvault.backends.memory import MemoryCloud, MemoryProvider
from crossvault.credentials import CredentialBroker
from crossvault.models import DomainConfig, Grant, PolicyDocument, ReplicationTarget, SecretRef
from crossvault.reconciler import Reconciler
from crossvault.state_store import ReplicationStateStore

SOURCE = "source"
DEST = "dest"
SOURCE_PATH = "/vault/creds"
DEST_PATH = "/replica/creds"
DEST_KEY = "alias/replica"


@pytest.fixture
def domains() -> dict[str, DomainConfig]:
    return {
        SOURCE: DomainConfig(name=SOURCE, account_id="111111111111", role="CrossVaultReader"),
        DEST: DomainConfig(name=DEST, account_id="222222222222", role="CrossVaultWriter"),
    }


@pytest.fixture
def cloud(domains) -> MemoryCloud:
    """Two trusted domains, a source secret at v1 and a destination key."""
    c = MemoryCloud()
    c.trust(SOURCE, DEST)
    c.put_secret(SOURCE, SOURCE_PATH, "s3cret-v1", version="v1", key_ref="alias/source")
    default_key_policy = PolicyDocument(grants=(
        Grant(principal=domains[DEST].root_principal, actions=frozenset({"kms:*"})),
    ))
    c.create_key(DEST, DEST_KEY, default_key_policy)
    return c


@pytest.fixture
def provider(cloud) -> MemoryProvider:
    return MemoryProvider(cloud=cloud)


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "state.json"


@pytest.fixture
def store(state_path: Path) -> ReplicationStateStore:
    return ReplicationStateStore(state_path)


@pytest.fixture
def target() -> ReplicationTarget:
    return ReplicationTarget(
        source=SecretRef(domain=SOURCE, path=SOURCE_PATH),
        dest_domain=DEST,
        dest_path=DEST_PATH,
        consumer_tags=frozenset({"svc-a"}),
        dest_key_ref=DEST_KEY,
    )


@pytest.fixture
def make_reconciler(provider, domains, store, tmp_path):
    """Build a Reconciler over the memory provider; kwargs override defaults."""
    def factory(**kwargs) -> Reconciler:
        broker = kwargs.pop("broker", None) or CredentialBroker(provider.trust_exchange(), domains)
        kwargs.setdefault("sleep", lambda seconds: None)
        kwargs.setdefault("audit_log", tmp_path / "audit.log")
        return Reconciler(provider, broker, kwargs.pop("store", store), domains, **kwargs)
    return factory
