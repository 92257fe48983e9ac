"""
AWS provider — Secrets Manager, KMS and STS via boto3.

The caller's ambient AWS identity (environment variables,
~/.aws/credentials, or an instance profile) performs the STS
AssumeRole exchange; every other client is built from the resulting
scoped credential.

Service errors are translated into the engine's error taxonomy here so
nothing above this module ever sees a botocore exception.
"""

from __future__ import annotations

import json
import logging
from datetime import timezone
from typing import Any, Optional

from ..errors import (
    AccessDenied,
    NotFound,
    ReplicationError,
    Throttled,
    TrustDenied,
    TrustExpired,
    WriteError,
)
from ..models import DomainConfig, PolicyDocument, ScopedCredential
from .. import policy as policy_codec
from . import base
from .base import KeyService, Provider, SecretMetadata, SecretStore, SecretValue, TrustExchange

logger = logging.getLogger("crossvault.backends.aws")

CURRENT_STAGE = "AWSCURRENT"
MANAGED_BY_TAG = {"Key": "ManagedBy", "Value": "crossvault"}

_THROTTLE_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "LimitExceededException",
})
_EXPIRED_CODES = frozenset({"ExpiredToken", "ExpiredTokenException", "RequestExpired"})
_DENIED_CODES = frozenset({"AccessDenied", "AccessDeniedException", "UnauthorizedOperation"})
_NOT_FOUND_CODES = frozenset({"ResourceNotFoundException", "NotFoundException"})


def _boto3() -> Any:
    """Import boto3 on first use.

    Raises:
        RuntimeError: If boto3 is not installed.
    """
    try:
        import boto3
    except ImportError:
        raise RuntimeError(
            "AWS provider requires boto3: pip install 'crossvault[aws]'"
        )
    return boto3


def _error_code(exc: Exception) -> Optional[str]:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code")
    return None


def translate(exc: Exception, operation: str, write: bool = False) -> ReplicationError:
    """Map a boto3/botocore exception to the error taxonomy.

    Args:
        exc: Exception raised by a boto3 client call.
        operation: Operation name, for the message.
        write: Whether the call was a destination write; unknown
            failures of writes are WriteError (retryable).
    """
    code = _error_code(exc)
    message = f"{operation}: {code or type(exc).__name__}: {exc}"
    if code in _NOT_FOUND_CODES:
        return NotFound(message)
    if code in _THROTTLE_CODES:
        return Throttled(message)
    if code in _EXPIRED_CODES:
        return TrustExpired(message)
    if code in _DENIED_CODES:
        return AccessDenied(message)
    if write:
        return WriteError(message)
    if code is None:
        # Connection-level failure, no service response: transient.
        return Throttled(message)
    return AccessDenied(message)


class _CredentialClient:
    """Builds boto3 clients from a scoped credential."""

    service: str = ""

    def __init__(self, credential: ScopedCredential, region: Optional[str]) -> None:
        self._cred = credential
        self._region = region
        self._client_obj: Any = None

    def _client(self) -> Any:
        if self._client_obj is None:
            self._client_obj = _boto3().client(
                self.service,
                region_name=self._region,
                aws_access_key_id=self._cred.access_key_id,
                aws_secret_access_key=self._cred.secret_access_key.get_secret_value(),
                aws_session_token=self._cred.session_token.get_secret_value(),
            )
        return self._client_obj


class AWSTrustExchange(TrustExchange):
    """STS AssumeRole with a purpose session tag."""

    def __init__(self, region: Optional[str] = None) -> None:
        self._region = region
        self._sts: Any = None

    def _client(self) -> Any:
        if self._sts is None:
            self._sts = _boto3().client("sts", region_name=self._region)
        return self._sts

    def assume_identity(self, domain: DomainConfig, session_tag: str, duration_seconds: int) -> ScopedCredential:
        kwargs: dict[str, Any] = {
            "RoleArn": domain.role_arn,
            "RoleSessionName": f"crossvault-{session_tag}",
            "DurationSeconds": duration_seconds,
            "Tags": [{"Key": "purpose", "Value": session_tag}],
        }
        if domain.external_id:
            kwargs["ExternalId"] = domain.external_id

        logger.debug("Assuming %s for %s", domain.role_arn, session_tag)
        try:
            response = self._client().assume_role(**kwargs)
        except Exception as exc:
            code = _error_code(exc)
            if code in _DENIED_CODES:
                raise TrustDenied(f"AssumeRole {domain.role_arn}: {code}", permanent=True) from exc
            if code in _THROTTLE_CODES:
                raise Throttled(f"AssumeRole {domain.role_arn}: {code}") from exc
            raise TrustDenied(f"AssumeRole {domain.role_arn}: {exc}", permanent=False) from exc

        creds = response["Credentials"]
        expires = creds["Expiration"]
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return ScopedCredential(
            domain=domain.name,
            purpose=session_tag,
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expires_at=expires,
        )


class AWSSecretStore(_CredentialClient, SecretStore):
    """Secrets Manager client bound to a scoped credential."""

    service = "secretsmanager"

    def describe_secret(self, path: str) -> SecretMetadata:
        try:
            response = self._client().describe_secret(SecretId=path)
        except Exception as exc:
            raise translate(exc, "DescribeSecret") from exc
        current = next(
            (v for v, stages in response.get("VersionIdsToStages", {}).items() if CURRENT_STAGE in stages),
            None,
        )
        return SecretMetadata(
            path=path,
            version=current,
            key_ref=response.get("KmsKeyId"),
            tags={t["Key"]: t["Value"] for t in response.get("Tags", [])},
        )

    def get_secret_value(self, path: str) -> SecretValue:
        try:
            response = self._client().get_secret_value(SecretId=path, VersionStage=CURRENT_STAGE)
        except Exception as exc:
            raise translate(exc, "GetSecretValue") from exc
        if "SecretBinary" in response:
            return SecretValue(version=response["VersionId"], value=response["SecretBinary"], binary=True)
        return SecretValue(
            version=response["VersionId"],
            value=response.get("SecretString", "").encode(),
            binary=False,
        )

    def create_secret(self, path: str, key_ref: Optional[str], tags: dict[str, str]) -> None:
        kwargs: dict[str, Any] = {
            "Name": path,
            "Tags": [{"Key": k, "Value": v} for k, v in sorted(tags.items())] + [MANAGED_BY_TAG],
        }
        if key_ref:
            kwargs["KmsKeyId"] = key_ref
        try:
            self._client().create_secret(**kwargs)
        except Exception as exc:
            if _error_code(exc) == "ResourceExistsException":
                return
            raise translate(exc, "CreateSecret", write=True) from exc

    def put_secret_value(self, path: str, value: bytes, binary: bool, request_token: str) -> str:
        kwargs: dict[str, Any] = {"SecretId": path, "ClientRequestToken": request_token}
        if binary:
            kwargs["SecretBinary"] = value
        else:
            kwargs["SecretString"] = value.decode()
        try:
            response = self._client().put_secret_value(**kwargs)
        except Exception as exc:
            raise translate(exc, "PutSecretValue", write=True) from exc
        return response["VersionId"]

    def get_resource_policy(self, path: str) -> PolicyDocument:
        try:
            response = self._client().get_resource_policy(SecretId=path)
        except Exception as exc:
            raise translate(exc, "GetResourcePolicy") from exc
        return policy_codec.parse(response.get("ResourcePolicy"))

    def put_resource_policy(self, path: str, doc: PolicyDocument) -> None:
        try:
            self._client().put_resource_policy(
                SecretId=path,
                ResourcePolicy=json.dumps(policy_codec.render(doc)),
                BlockPublicPolicy=True,
            )
        except Exception as exc:
            raise translate(exc, "PutResourcePolicy", write=True) from exc


class AWSKeyService(_CredentialClient, KeyService):
    """KMS client bound to a scoped credential; manages the default key policy."""

    service = "kms"
    policy_name = "default"

    def get_key_policy(self, key_ref: str) -> PolicyDocument:
        try:
            response = self._client().get_key_policy(KeyId=key_ref, PolicyName=self.policy_name)
        except Exception as exc:
            raise translate(exc, "GetKeyPolicy") from exc
        return policy_codec.parse(response.get("Policy"))

    def put_key_policy(self, key_ref: str, doc: PolicyDocument) -> None:
        try:
            self._client().put_key_policy(
                KeyId=key_ref,
                PolicyName=self.policy_name,
                Policy=json.dumps(policy_codec.render(doc)),
            )
        except Exception as exc:
            raise translate(exc, "PutKeyPolicy", write=True) from exc


@base.register_provider("aws")
class AWSProvider(Provider):
    """Provider for AWS accounts.

    Args:
        region: Default region for clients. Falls back to boto3's own
            resolution (AWS_DEFAULT_REGION, profile config).
        regions: Optional per-domain region overrides.
    """

    def __init__(self, region: Optional[str] = None, regions: Optional[dict[str, str]] = None) -> None:
        self._region = region
        self._regions = dict(regions or {})

    def _region_for(self, credential: ScopedCredential) -> Optional[str]:
        return self._regions.get(credential.domain, self._region)

    def trust_exchange(self) -> TrustExchange:
        return AWSTrustExchange(self._region)

    def secret_store(self, credential: ScopedCredential) -> SecretStore:
        return AWSSecretStore(credential, self._region_for(credential))

    def key_service(self, credential: ScopedCredential) -> KeyService:
        return AWSKeyService(credential, self._region_for(credential))
