"""
Drift Comparator — minimal patches between observed and desired state.

Policy drift is a set difference on canonical grant tuples. Value drift
is a version-marker comparison only: plaintext is never compared.
"""

from __future__ import annotations

import logging
from typing import Optional

from .models import Grant, PolicyDocument, PolicyPatch, RemovalPolicy, ValueDiff

logger = logging.getLogger("crossvault.drift")


def diff(
    observed: PolicyDocument,
    desired: PolicyDocument,
    removal_policy: RemovalPolicy = RemovalPolicy.REVOKE,
    protected_principal: Optional[str] = None,
) -> PolicyPatch:
    """Compute the patch turning ``observed`` into ``desired``.

    The destination root's administrative grant is never removed, even
    when the desired document omits it. Only ``protected_principal`` gets
    that treatment; when it is None the root principals holding admin
    grants in ``desired`` are protected instead. Root grants of any other
    account are ordinary grants.

    An observed grant sharing principal, resource and condition with a
    desired grant is replaced, whatever the removal policy. Otherwise,
    under ``RemovalPolicy.RETAIN`` no grant is removed; stale grants are
    reported in ``retained`` instead.

    Args:
        observed: Document currently attached to the resource.
        desired: Document produced by the planner.
        removal_policy: What to do with grants absent from ``desired``.
        protected_principal: Root identity of the destination domain.

    Returns:
        PolicyPatch with grants in canonical order.
    """
    observed_by_key = {g.canonical_key: g for g in observed.grants}
    desired_by_key = {g.canonical_key: g for g in desired.grants}
    desired_identities = {g.identity_key for g in desired.grants}
    if protected_principal is not None:
        protected = {protected_principal}
    else:
        protected = {g.principal for g in desired.grants if g.is_root_admin}

    to_add = [desired_by_key[k] for k in sorted(desired_by_key.keys() - observed_by_key.keys())]

    to_remove: list[Grant] = []
    retained: list[Grant] = []
    for key in sorted(observed_by_key.keys() - desired_by_key.keys()):
        grant = observed_by_key[key]
        if grant.identity_key in desired_identities:
            to_remove.append(grant)
        elif grant.is_root_admin and grant.principal in protected:
            logger.warning(
                "Desired policy omits root grant for %s; keeping it in place",
                grant.principal,
            )
            retained.append(grant)
        elif removal_policy is RemovalPolicy.RETAIN:
            logger.warning(
                "Stale grant for %s (%s) retained for manual audit",
                grant.principal,
                ",".join(sorted(grant.actions)),
            )
            retained.append(grant)
        else:
            to_remove.append(grant)

    return PolicyPatch(to_add=tuple(to_add), to_remove=tuple(to_remove), retained=tuple(retained))


def apply_patch(observed: PolicyDocument, patch: PolicyPatch) -> PolicyDocument:
    """Observed document with the patch applied; opaque statements kept.

    Raises:
        InvariantViolation: The result holds two action sets for one
            principal, resource and condition.
    """
    removed = {g.canonical_key for g in patch.to_remove}
    kept = [g for g in observed.grants if g.canonical_key not in removed]
    document = PolicyDocument(grants=tuple(kept) + patch.to_add, opaque=observed.opaque).canonical()
    document.check_invariants()
    return document


def diff_value(observed_version: Optional[str], desired_version: str) -> ValueDiff:
    """Version-marker comparison; equal markers prove equal values."""
    if observed_version is not None and observed_version == desired_version:
        return ValueDiff.UNCHANGED
    return ValueDiff.NEEDS_UPDATE
