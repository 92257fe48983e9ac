"""Tests for the secret reader."""

from __future__ import annotations

import pytest

from crossvault.credentials import CredentialBroker
from crossvault.errors import AccessDenied, Inconsistent, NotFound, Throttled
from crossvault.reader import SecretReader

from conftest import SOURCE, SOURCE_PATH


@pytest.fixture
def credential(provider, domains):
    return CredentialBroker(provider.trust_exchange(), domains).acquire(SOURCE, "read")


@pytest.fixture
def reader(provider) -> SecretReader:
    return SecretReader(provider)


class TestRead:
    def test_reads_value_and_metadata(self, reader, credential) -> None:
        secret = reader.read(SOURCE, SOURCE_PATH, credential)
        assert secret.version == "v1"
        assert secret.value.get_secret_value() == b"s3cret-v1"
        assert secret.key_ref == "alias/source"
        assert secret.binary is False
        assert "s3cret" not in repr(secret)

    def test_binary_secret(self, cloud, reader, credential) -> None:
        cloud.put_secret(SOURCE, "/vault/blob", b"\x00\x01", version="b1")
        secret = reader.read(SOURCE, "/vault/blob", credential)
        assert secret.binary is True
        assert secret.value.get_secret_value() == b"\x00\x01"

    def test_missing_path(self, reader, credential) -> None:
        with pytest.raises(NotFound):
            reader.read(SOURCE, "/nope", credential)

    def test_access_denied_propagates(self, cloud, reader, credential) -> None:
        cloud.inject("get_secret_value", AccessDenied("no read"))
        with pytest.raises(AccessDenied):
            reader.read(SOURCE, SOURCE_PATH, credential)

    def test_throttled_not_retried(self, cloud, reader, credential) -> None:
        cloud.inject("describe_secret", Throttled("slow down"))
        with pytest.raises(Throttled):
            reader.read(SOURCE, SOURCE_PATH, credential)
        assert [c for c in cloud.calls if c[1] == "describe_secret"] == [(SOURCE, "describe_secret", SOURCE_PATH)]

    def test_version_change_between_calls(self, cloud, reader, credential) -> None:
        """A rotation between metadata and value reads is detected."""
        cloud.on("get_secret_value", lambda domain, path: cloud.put_secret(domain, path, "rotated"))
        with pytest.raises(Inconsistent) as info:
            reader.read(SOURCE, SOURCE_PATH, credential)
        assert info.value.retryable
        assert not info.value.mid_apply

    def test_current_version_only(self, cloud, reader, credential) -> None:
        assert reader.current_version(SOURCE, SOURCE_PATH, credential) == "v1"
        assert not [c for c in cloud.calls if c[1] == "get_secret_value"]
