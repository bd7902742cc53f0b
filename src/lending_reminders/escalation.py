from __future__ import annotations

from types import MappingProxyType

from .models import EscalationSchedule, EscalationTier, NotificationSeverity, ReminderTemplate

TIER_ORDER: tuple[EscalationTier, ...] = tuple(EscalationTier)

# Only these tiers are produced by the automatic resolver.
SCHEDULED_TIERS: tuple[EscalationTier, ...] = (
    EscalationTier.FIRST,
    EscalationTier.SECOND,
    EscalationTier.THIRD,
    EscalationTier.FINAL,
)

TIER_TEMPLATES: MappingProxyType[EscalationTier, ReminderTemplate] = MappingProxyType(
    {
        EscalationTier.FIRST: "friendly",
        EscalationTier.SECOND: "firm",
        EscalationTier.THIRD: "urgent",
        EscalationTier.FINAL: "legal",
        EscalationTier.COLLECTION: "collection",
        EscalationTier.LEGAL: "legal",
    }
)

TIER_SEVERITIES: MappingProxyType[EscalationTier, NotificationSeverity] = MappingProxyType(
    {
        EscalationTier.FIRST: "low",
        EscalationTier.SECOND: "medium",
        EscalationTier.THIRD: "high",
        EscalationTier.FINAL: "high",
        EscalationTier.COLLECTION: "critical",
        EscalationTier.LEGAL: "critical",
    }
)

TIER_ESCALATION_LEVELS: MappingProxyType[EscalationTier, int] = MappingProxyType(
    {tier: index for index, tier in enumerate(TIER_ORDER, start=1)}
)


def effective_days_overdue(raw_days_overdue: int, grace_period_days: int) -> int:
    return max(0, raw_days_overdue - grace_period_days)


def resolve_tier(days_overdue: int, schedule: EscalationSchedule) -> EscalationTier:
    """Return the highest scheduled tier whose threshold has been reached.

    Falls back to ``first`` when nothing matches; callers only reach this after the
    grace period has passed, so the fallback covers misconfigured schedules.
    """
    for tier in reversed(SCHEDULED_TIERS):
        if days_overdue >= schedule.offset_for(tier):
            return tier
    return EscalationTier.FIRST


def higher_tiers(tier: EscalationTier) -> tuple[EscalationTier, ...]:
    return TIER_ORDER[tier.rank + 1 :]
