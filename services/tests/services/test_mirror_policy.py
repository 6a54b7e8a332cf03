"""Tests for mirror policy evaluation and approval gating."""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tfregistry.services.mirror_policy_service import (
    PolicyDecision,
    check_approval,
    decide,
    evaluate_policies,
    order_policies,
)

REGISTRY = "https://registry.terraform.io"


def _policy(
    name,
    policy_type="allow",
    priority=0,
    org_name=None,
    registry=None,
    namespace=None,
    provider=None,
    requires_approval=False,
):
    return SimpleNamespace(
        name=name,
        policy_type=policy_type,
        priority=priority,
        org_name=org_name,
        upstream_registry=registry,
        namespace_pattern=namespace,
        provider_pattern=provider,
        requires_approval=requires_approval,
    )


class TestOrdering:
    def test_priority_then_org_then_name(self):
        policies = [
            _policy("b-global", priority=5),
            _policy("a-org", priority=5, org_name="default"),
            _policy("low", priority=1),
            _policy("a-global", priority=5),
        ]
        assert [p.name for p in order_policies(policies)] == [
            "a-org",
            "a-global",
            "b-global",
            "low",
        ]


class TestDecide:
    def test_no_policies_allows(self):
        decision = decide([], REGISTRY, "hashicorp", "aws")
        assert decision.allowed
        assert decision.reason == "no matching policy"

    def test_deny_wins_by_priority(self):
        policies = [
            _policy("allow-all", priority=1),
            _policy("deny-community", "deny", priority=10, namespace="community*"),
        ]
        decision = decide(policies, REGISTRY, "community-x", "foo")
        assert not decision.allowed
        assert decision.policy_name == "deny-community"

    def test_higher_priority_allow_overrides_deny(self):
        policies = [
            _policy("deny-all", "deny", priority=1),
            _policy("allow-hashicorp", priority=10, namespace="hashicorp"),
        ]
        assert decide(policies, REGISTRY, "hashicorp", "aws").allowed
        assert not decide(policies, REGISTRY, "other", "aws").allowed

    def test_registry_matches_by_host(self):
        policies = [_policy("deny-tfio", "deny", registry="registry.terraform.io")]
        assert not decide(policies, REGISTRY + "/", "hashicorp", "aws").allowed
        assert decide(policies, "https://registry.opentofu.org", "hashicorp", "aws").allowed

    def test_patterns_are_case_insensitive(self):
        policies = [_policy("deny-aws", "deny", provider="AWS")]
        assert not decide(policies, REGISTRY, "hashicorp", "aws").allowed

    def test_allow_carries_approval_flag(self):
        policies = [_policy("gated", requires_approval=True)]
        decision = decide(policies, REGISTRY, "hashicorp", "aws")
        assert decision.allowed
        assert decision.requires_approval


POLICY_SVC = "tfregistry.services.mirror_policy_service"


class TestEvaluatePolicies:
    @patch(f"{POLICY_SVC}.load_policies", new_callable=AsyncMock, return_value=[])
    async def test_mirror_requires_approval(self, mock_load):
        mirror = SimpleNamespace(
            org_name="default", upstream_registry_url=REGISTRY, requires_approval=True
        )
        decision = await evaluate_policies(AsyncMock(), mirror, "hashicorp", "aws")
        assert decision.allowed
        assert decision.requires_approval
        mock_load.assert_awaited_once()


class TestCheckApproval:
    @pytest.fixture
    def mirror(self):
        return SimpleNamespace(id=uuid.uuid4(), org_name="default", name="public")

    @pytest.fixture
    def db(self):
        db = AsyncMock()
        db.add = MagicMock()
        return db

    async def test_denied(self, db, mirror):
        assert not await check_approval(db, mirror, "ns", "p", PolicyDecision(allowed=False))

    async def test_no_approval_needed(self, db, mirror):
        assert await check_approval(db, mirror, "ns", "p", PolicyDecision(allowed=True))
        db.add.assert_not_called()

    @patch(f"{POLICY_SVC}.find_approval", new_callable=AsyncMock)
    async def test_approved(self, mock_find, db, mirror):
        mock_find.return_value = SimpleNamespace(status="approved")
        decision = PolicyDecision(allowed=True, requires_approval=True)
        assert await check_approval(db, mirror, "ns", "p", decision)
        db.add.assert_not_called()

    @patch(f"{POLICY_SVC}.find_approval", new_callable=AsyncMock, return_value=None)
    async def test_files_pending_request(self, mock_find, db, mirror):
        decision = PolicyDecision(allowed=True, requires_approval=True, reason="gated")
        assert not await check_approval(db, mirror, "ns", "p", decision)

        request = db.add.call_args.args[0]
        assert request.status == "pending"
        assert request.requested_by == "mirror-sync"
        assert request.provider_namespace == "ns"
        assert request.provider_name == "p"
        db.flush.assert_awaited_once()

    @patch(f"{POLICY_SVC}.find_approval", new_callable=AsyncMock)
    async def test_pending_request_not_duplicated(self, mock_find, db, mirror):
        mock_find.side_effect = [None, SimpleNamespace(status="pending")]
        decision = PolicyDecision(allowed=True, requires_approval=True)
        assert not await check_approval(db, mirror, "ns", "p", decision)
        db.add.assert_not_called()
