"""
Policy Planner — the grants a destination key and secret must carry.

Pure: no I/O, no clock, no randomness. Two calls with equal inputs give
equal documents, which is what makes passes idempotent.

For every consumer tag the planner emits one grant letting principals of
the destination domain that carry that tag decrypt (key) or read
(secret). The destination domain's root identity always gets an
administrative grant so the domain keeps control of its own resources.
"""

from __future__ import annotations

from typing import Iterable

from .errors import InvariantViolation
from .models import DomainConfig, Grant, GrantCondition, PolicyDocument, PolicyScope

CONSUMER_ACTIONS: dict[PolicyScope, frozenset[str]] = {
    PolicyScope.KEY: frozenset({"kms:Decrypt", "kms:DescribeKey"}),
    PolicyScope.SECRET: frozenset({"secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret"}),
}

ADMIN_ACTIONS: dict[PolicyScope, frozenset[str]] = {
    PolicyScope.KEY: frozenset({"kms:*"}),
    PolicyScope.SECRET: frozenset({"secretsmanager:*"}),
}

DEFAULT_TAG_KEY = "consumer"


class PolicyPlanner:
    """Plans canonical policy documents from consumer tags.

    Args:
        tag_key: Principal tag whose value names the consumer. Conditions
            are emitted against ``aws:PrincipalTag/<tag_key>``.
    """

    def __init__(self, tag_key: str = DEFAULT_TAG_KEY) -> None:
        if not tag_key:
            raise InvariantViolation("Consumer tag key must not be empty")
        self.tag_key = tag_key

    @property
    def condition_key(self) -> str:
        return f"aws:PrincipalTag/{self.tag_key}"

    def admin_grant(self, dest_domain: DomainConfig, scope: PolicyScope) -> Grant:
        return Grant(principal=dest_domain.root_principal, actions=ADMIN_ACTIONS[scope])

    def consumer_grant(self, tag: str, dest_domain: DomainConfig, scope: PolicyScope) -> Grant:
        return Grant(
            principal=dest_domain.root_principal,
            actions=CONSUMER_ACTIONS[scope],
            condition=GrantCondition(key=self.condition_key, values=(tag,)),
        )

    def plan(
        self,
        consumer_tags: Iterable[str],
        dest_domain: DomainConfig,
        scope: PolicyScope = PolicyScope.KEY,
    ) -> PolicyDocument:
        """Compute the desired document for one destination resource.

        Args:
            consumer_tags: Consumer tag values allowed to use the replica.
            dest_domain: Destination trust domain.
            scope: Plan the key policy or the secret resource policy.

        Returns:
            Canonical PolicyDocument.

        Raises:
            InvariantViolation: If a tag is blank or the result breaks the
                one-action-set-per-statement-identity rule.
        """
        grants = [self.admin_grant(dest_domain, scope)]
        for tag in sorted(set(consumer_tags)):
            if not tag or not tag.strip():
                raise InvariantViolation("Consumer tags must be non-empty")
            grants.append(self.consumer_grant(tag, dest_domain, scope))

        doc = PolicyDocument(grants=tuple(grants)).canonical()
        doc.check_invariants()
        return doc


def plan(
    consumer_tags: Iterable[str],
    dest_domain: DomainConfig,
    scope: PolicyScope = PolicyScope.KEY,
    tag_key: str = DEFAULT_TAG_KEY,
) -> PolicyDocument:
    """Convenience wrapper around :meth:`PolicyPlanner.plan`."""
    return PolicyPlanner(tag_key).plan(consumer_tags, dest_domain, scope)
