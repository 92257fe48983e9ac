"""Tests for the policy language codec."""

from __future__ import annotations

import json

from crossvault.models import Grant, GrantCondition, PolicyDocument, PolicyScope
from crossvault.planner import plan
from crossvault.policy import parse, policy_hash, render, statement_id, to_json


class TestRender:
    def test_render_shape(self, domains) -> None:
        doc = plan({"svc-a"}, domains["dest"], PolicyScope.KEY)
        rendered = render(doc)
        assert rendered["Version"] == "2012-10-17"
        assert len(rendered["Statement"]) == 2
        consumer = next(s for s in rendered["Statement"] if "Condition" in s)
        assert consumer["Effect"] == "Allow"
        assert consumer["Principal"] == {"AWS": "arn:aws:iam::222222222222:root"}
        assert consumer["Action"] == ["kms:Decrypt", "kms:DescribeKey"]
        assert consumer["Condition"] == {"StringEquals": {"aws:PrincipalTag/consumer": ["svc-a"]}}

    def test_single_action_rendered_as_string(self) -> None:
        grant = Grant(principal="arn:aws:iam::1:root", actions=frozenset({"kms:*"}))
        assert render(PolicyDocument(grants=(grant,)))["Statement"][0]["Action"] == "kms:*"

    def test_sid_is_deterministic(self) -> None:
        a = Grant(principal="p", actions=frozenset({"x", "y"}))
        b = Grant(principal="p", actions=frozenset({"y", "x"}))
        assert statement_id(a) == statement_id(b)
        assert statement_id(a).isalnum()


class TestParse:
    def test_roundtrip_of_planned_document(self, domains) -> None:
        doc = plan({"svc-a", "svc-b"}, domains["dest"], PolicyScope.SECRET)
        assert parse(to_json(doc)) == doc

    def test_empty_policy(self) -> None:
        assert parse(None) == PolicyDocument()
        assert parse("") == PolicyDocument()

    def test_multiple_principals_and_resources_expand(self) -> None:
        policy = {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"AWS": ["arn:aws:iam::1:root", "arn:aws:iam::2:root"]},
                "Action": "kms:Decrypt",
                "Resource": ["a", "b"],
            }],
        }
        doc = parse(policy)
        assert len(doc.grants) == 4
        assert {g.resource_scope for g in doc.grants} == {"a", "b"}

    def test_unmodelled_statements_are_opaque(self) -> None:
        policy = {
            "Statement": [
                {"Effect": "Deny", "Principal": "*", "Action": "kms:*", "Resource": "*"},
                {"Effect": "Allow", "Principal": {"Service": "logs.amazonaws.com"}, "Action": "kms:Encrypt"},
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": "arn:aws:iam::1:root"},
                    "Action": "kms:Decrypt",
                    "Resource": "*",
                    "Condition": {"StringEquals": {"a": "1", "b": "2"}},
                },
            ],
        }
        doc = parse(json.dumps(policy))
        assert doc.grants == ()
        assert len(doc.opaque) == 3
        assert render(doc)["Statement"][0]["Effect"] == "Deny"

    def test_condition_values_normalized(self) -> None:
        policy = {
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"AWS": "arn:aws:iam::1:root"},
                "Action": ["kms:Decrypt"],
                "Resource": "*",
                "Condition": {"StringEquals": {"aws:PrincipalTag/consumer": "svc-a"}},
            }],
        }
        grant = parse(policy).grants[0]
        assert grant.condition == GrantCondition(key="aws:PrincipalTag/consumer", values=("svc-a",))


class TestHash:
    def test_hash_stable_and_sensitive(self, domains) -> None:
        a = plan({"svc-a"}, domains["dest"])
        b = plan({"svc-b"}, domains["dest"])
        assert policy_hash(a, None) == policy_hash(plan({"svc-a"}, domains["dest"]), None)
        assert policy_hash(a, None) != policy_hash(b, None)
        assert len(policy_hash(a)) == 64
