"""
Policy language codec.

Renders PolicyDocuments to the IAM-style JSON policy language accepted by
key and secret resource policies, parses observed documents back into
Grants, and hashes documents for the replication record.

Rendering is canonical: grants in canonical order, actions and condition
values sorted, statement ids derived from the grant itself. Equal
documents always render to identical bytes.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional, Union

from .models import Grant, GrantCondition, PolicyDocument

logger = logging.getLogger("crossvault.policy")

POLICY_VERSION = "2012-10-17"


def statement_id(grant: Grant) -> str:
    """Deterministic Sid for a grant."""
    digest = hashlib.sha256(repr(grant.canonical_key).encode()).hexdigest()[:16]
    return f"CrossVault{digest}"


def render_grant(grant: Grant) -> dict[str, Any]:
    """Render one grant as a policy statement."""
    actions = sorted(grant.actions)
    statement: dict[str, Any] = {
        "Sid": statement_id(grant),
        "Effect": "Allow",
        "Principal": "*" if grant.principal == "*" else {"AWS": grant.principal},
        "Action": actions[0] if len(actions) == 1 else actions,
        "Resource": grant.resource_scope,
    }
    if grant.condition is not None:
        statement["Condition"] = {
            grant.condition.operator: {grant.condition.key: list(grant.condition.values)}
        }
    return statement


def render(doc: PolicyDocument) -> dict[str, Any]:
    """Render a document; opaque statements follow the managed grants."""
    canonical = doc.canonical()
    statements = [render_grant(g) for g in canonical.grants]
    statements.extend(json.loads(raw) for raw in canonical.opaque)
    return {"Version": POLICY_VERSION, "Statement": statements}


def to_json(doc: PolicyDocument) -> str:
    """Canonical JSON text of a document."""
    return json.dumps(render(doc), sort_keys=True, separators=(",", ":"))


def policy_hash(*docs: Optional[PolicyDocument]) -> str:
    """SHA-256 over the canonical JSON of one or more documents."""
    h = hashlib.sha256()
    for doc in docs:
        h.update(to_json(doc).encode() if doc is not None else b"null")
        h.update(b"\n")
    return h.hexdigest()


def _as_list(value: Union[str, list, None]) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_statement(statement: dict[str, Any]) -> Optional[list[Grant]]:
    """Grants for a modelled statement, or None when it must stay opaque."""
    if statement.get("Effect") != "Allow":
        return None
    if any(k in statement for k in ("NotAction", "NotPrincipal", "NotResource")):
        return None

    principal = statement.get("Principal")
    if principal == "*":
        principals = ["*"]
    elif isinstance(principal, dict) and set(principal) == {"AWS"}:
        principals = [str(p) for p in _as_list(principal["AWS"])]
    else:
        return None

    actions = frozenset(str(a) for a in _as_list(statement.get("Action")))
    resources = [str(r) for r in _as_list(statement.get("Resource"))] or ["*"]
    if not actions or not principals:
        return None

    condition = None
    raw_condition = statement.get("Condition")
    if raw_condition:
        if len(raw_condition) != 1:
            return None
        operator, clauses = next(iter(raw_condition.items()))
        if not isinstance(clauses, dict) or len(clauses) != 1:
            return None
        key, values = next(iter(clauses.items()))
        condition = GrantCondition(
            operator=operator,
            key=key,
            values=tuple(str(v) for v in _as_list(values)),
        )

    return [
        Grant(principal=p, actions=actions, resource_scope=r, condition=condition)
        for p in principals
        for r in resources
    ]


def parse(policy: Union[str, dict, None]) -> PolicyDocument:
    """Parse an observed policy document.

    Args:
        policy: JSON text, an already-decoded dict, or None/empty for a
            resource without a policy.

    Returns:
        Canonical PolicyDocument. Statements the engine does not model are
        kept in ``opaque``.
    """
    if not policy:
        return PolicyDocument()
    data = json.loads(policy) if isinstance(policy, str) else policy

    grants: list[Grant] = []
    opaque: list[str] = []
    for statement in _as_list(data.get("Statement")):
        parsed = _parse_statement(statement)
        if parsed is None:
            logger.debug("Keeping unmodelled statement %s as-is", statement.get("Sid", "?"))
            opaque.append(json.dumps(statement, sort_keys=True))
        else:
            grants.extend(parsed)
    return PolicyDocument(grants=tuple(grants), opaque=tuple(opaque)).canonical()
