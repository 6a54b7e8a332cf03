"""Allow/deny policies and approval gating for provider mirroring."""

import fnmatch
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tfregistry.db.models import MirrorApprovalRequest, MirrorConfiguration, MirrorPolicy
from tfregistry.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class PolicyDecision:
    allowed: bool
    requires_approval: bool = False
    policy_name: str | None = None
    reason: str = ""


def _pattern_matches(pattern: str | None, value: str) -> bool:
    if not pattern or pattern == "*":
        return True
    return fnmatch.fnmatchcase(value.lower(), pattern.lower())


def _registry_matches(pattern: str | None, registry_url: str) -> bool:
    if not pattern or pattern == "*":
        return True
    host = registry_url.split("://", 1)[-1].rstrip("/").lower()
    return _pattern_matches(pattern.split("://", 1)[-1].rstrip("/"), host)


def order_policies(policies: list[MirrorPolicy]) -> list[MirrorPolicy]:
    """Highest priority first; org-scoped before global at equal priority."""
    return sorted(policies, key=lambda p: (-p.priority, p.org_name is None, p.name))


def decide(
    policies: list[MirrorPolicy],
    registry_url: str,
    namespace: str,
    provider_name: str,
) -> PolicyDecision:
    for policy in order_policies(policies):
        if not (
            _registry_matches(policy.upstream_registry, registry_url)
            and _pattern_matches(policy.namespace_pattern, namespace)
            and _pattern_matches(policy.provider_pattern, provider_name)
        ):
            continue
        if policy.policy_type == "deny":
            return PolicyDecision(
                allowed=False, policy_name=policy.name, reason=f"denied by policy {policy.name}"
            )
        return PolicyDecision(
            allowed=True,
            requires_approval=policy.requires_approval,
            policy_name=policy.name,
            reason=f"allowed by policy {policy.name}",
        )
    return PolicyDecision(allowed=True, reason="no matching policy")


async def load_policies(db: AsyncSession, org_name: str | None) -> list[MirrorPolicy]:
    """Active policies for ``org_name`` plus the global ones."""
    scope = MirrorPolicy.org_name.is_(None)
    if org_name:
        scope = or_(scope, MirrorPolicy.org_name == org_name)
    result = await db.execute(select(MirrorPolicy).where(MirrorPolicy.is_active.is_(True), scope))
    return list(result.scalars().all())


async def evaluate_policies(
    db: AsyncSession,
    mirror: MirrorConfiguration,
    namespace: str,
    provider_name: str,
) -> PolicyDecision:
    policies = await load_policies(db, mirror.org_name)
    decision = decide(policies, mirror.upstream_registry_url, namespace, provider_name)
    if mirror.requires_approval and decision.allowed:
        decision.requires_approval = True
    return decision


async def find_approval(
    db: AsyncSession,
    mirror_id,
    namespace: str,
    provider_name: str,
    statuses: tuple[str, ...] = ("approved",),
) -> MirrorApprovalRequest | None:
    """An unexpired request covering the namespace, or the specific provider."""
    now = datetime.now(UTC)
    result = await db.execute(
        select(MirrorApprovalRequest)
        .where(
            MirrorApprovalRequest.mirror_config_id == mirror_id,
            MirrorApprovalRequest.provider_namespace == namespace,
            or_(
                MirrorApprovalRequest.provider_name.is_(None),
                MirrorApprovalRequest.provider_name == provider_name,
            ),
            MirrorApprovalRequest.status.in_(statuses),
            or_(
                MirrorApprovalRequest.expires_at.is_(None),
                MirrorApprovalRequest.expires_at > now,
            ),
        )
        .order_by(MirrorApprovalRequest.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def check_approval(
    db: AsyncSession,
    mirror: MirrorConfiguration,
    namespace: str,
    provider_name: str,
    decision: PolicyDecision,
) -> bool:
    """True when mirroring may proceed.

    Files a pending request (once) when approval is required and missing.
    """
    if not decision.allowed:
        return False
    if not decision.requires_approval:
        return True
    if await find_approval(db, mirror.id, namespace, provider_name) is not None:
        return True

    if await find_approval(db, mirror.id, namespace, provider_name, ("pending",)) is None:
        db.add(
            MirrorApprovalRequest(
                mirror_config_id=mirror.id,
                org_name=mirror.org_name,
                requested_by="mirror-sync",
                provider_namespace=namespace,
                provider_name=provider_name,
                reason=decision.reason,
                status="pending",
            )
        )
        await db.flush()
        logger.info(
            "Mirror approval requested",
            mirror=mirror.name,
            provider=f"{namespace}/{provider_name}",
        )
    return False
