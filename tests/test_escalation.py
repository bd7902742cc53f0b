from __future__ import annotations

import pytest

from lending_reminders.escalation import (
    TIER_ESCALATION_LEVELS,
    TIER_TEMPLATES,
    effective_days_overdue,
    higher_tiers,
    resolve_tier,
)
from lending_reminders.models import EscalationSchedule, EscalationTier


@pytest.mark.parametrize(
    ("days", "expected"),
    [
        (1, EscalationTier.FIRST),
        (6, EscalationTier.FIRST),
        (7, EscalationTier.SECOND),
        (13, EscalationTier.SECOND),
        (14, EscalationTier.THIRD),
        (29, EscalationTier.THIRD),
        (30, EscalationTier.FINAL),
        (365, EscalationTier.FINAL),
    ],
)
def test_resolve_tier_with_default_schedule(days: int, expected: EscalationTier) -> None:
    assert resolve_tier(days, EscalationSchedule()) is expected


def test_resolve_tier_is_monotonic() -> None:
    schedule = EscalationSchedule(first=2, second=5, third=9, final=20)
    ranks = [resolve_tier(days, schedule).rank for days in range(0, 60)]

    assert ranks == sorted(ranks)


def test_days_before_first_threshold_fall_back_to_first() -> None:
    assert resolve_tier(1, EscalationSchedule(first=3, second=7, third=14, final=30)) is EscalationTier.FIRST


def test_effective_days_overdue_is_floored() -> None:
    assert effective_days_overdue(2, 5) == 0
    assert effective_days_overdue(10, 4) == 6


def test_higher_tiers_and_template_mapping() -> None:
    assert higher_tiers(EscalationTier.THIRD) == (
        EscalationTier.FINAL,
        EscalationTier.COLLECTION,
        EscalationTier.LEGAL,
    )
    assert higher_tiers(EscalationTier.LEGAL) == ()
    assert TIER_TEMPLATES[EscalationTier.FINAL] == "legal"
    assert TIER_ESCALATION_LEVELS[EscalationTier.FIRST] == 1
    assert TIER_ESCALATION_LEVELS[EscalationTier.LEGAL] == 6
