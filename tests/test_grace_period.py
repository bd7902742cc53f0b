from __future__ import annotations

import logging
from datetime import date, datetime, timezone

import pytest

from lending_reminders.escalation import effective_days_overdue, resolve_tier
from lending_reminders.grace_period import (
    GraceAdjustmentToggles,
    GracePeriodCalculator,
    amount_bracket_for,
    default_grace_period,
)
from lending_reminders.models import EscalationSchedule, EscalationTier, Obligation, ReminderPreferences, UserProfile
from lending_reminders.store import InMemoryObligationStore

MARCH_12 = datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc)


def _obligation(
    *,
    amount: float = 3000,
    due: date = date(2026, 3, 2),
    obligation_type: str = "non-emergency",
    obligation_id: str = "obl-1",
    status: str = "overdue",
) -> Obligation:
    return Obligation(
        obligation_id=obligation_id,
        user_id="user-1",
        amount=amount,
        borrower_name="Jane Wanjiku",
        type=obligation_type,  # type: ignore[arg-type]
        status=status,  # type: ignore[arg-type]
        expected_return_date=due,
    )


def _user(tier: str = "basic") -> UserProfile:
    return UserProfile(user_id="user-1", display_name="Amina", subscription_tier=tier)  # type: ignore[arg-type]


class _HighRisk:
    def is_high_risk(self, obligation: Obligation) -> bool:
        return True


class _BrokenRisk:
    def is_high_risk(self, obligation: Obligation) -> bool:
        raise RuntimeError("risk service unavailable")


class _BrokenObligations(InMemoryObligationStore):
    def count_repaid_by_user(self, user_id: str) -> int:
        raise RuntimeError("database unavailable")


def test_small_weekday_obligation_gets_one_extra_day() -> None:
    calculator = GracePeriodCalculator(obligations=InMemoryObligationStore())

    breakdown = calculator.calculate(_obligation(), _user(), ReminderPreferences(), now=MARCH_12)

    assert breakdown.base_days == 3
    assert breakdown.effective_days == 4
    assert breakdown.explanation() == "4 days (base 3; +1 small amount)"


def test_resolved_tier_after_grace_for_ten_and_forty_days_overdue() -> None:
    schedule = EscalationSchedule()

    assert effective_days_overdue(10, 4) == 6
    assert resolve_tier(6, schedule) is EscalationTier.FIRST
    assert effective_days_overdue(40, 4) == 36
    assert resolve_tier(36, schedule) is EscalationTier.FINAL


def test_amount_bracket_boundaries() -> None:
    assert amount_bracket_for(5000).adjustment == 1
    assert amount_bracket_for(5001).adjustment == 0
    assert amount_bracket_for(25000).adjustment == 0
    assert amount_bracket_for(100000).adjustment == -1
    assert amount_bracket_for(100001).adjustment == -2


def test_configured_grace_period_overrides_tier_default() -> None:
    calculator = GracePeriodCalculator(obligations=InMemoryObligationStore())
    preferences = ReminderPreferences.model_validate({"grace_periods": {"non_emergency": 10}})

    assert calculator.base_grace_period(_obligation(), _user("premium"), preferences) == 10
    assert calculator.base_grace_period(_obligation(), _user("premium"), ReminderPreferences()) == 5
    assert default_grace_period("enterprise", "emergency") == 3


def test_high_risk_halves_with_half_up_rounding() -> None:
    calculator = GracePeriodCalculator(
        obligations=InMemoryObligationStore(),
        risk_assessor=_HighRisk(),
        toggles=GraceAdjustmentToggles(amount=False),
    )

    breakdown = calculator.calculate(_obligation(), _user(), ReminderPreferences(), now=MARCH_12)

    # 3 * 0.5 = 1.5 rounds up to 2.
    assert breakdown.effective_days == 2


def test_loyal_lender_gets_bonus_days() -> None:
    store = InMemoryObligationStore()
    for index in range(10):
        store.add(_obligation(obligation_id=f"repaid-{index}", status="repaid"))
    calculator = GracePeriodCalculator(obligations=store, toggles=GraceAdjustmentToggles(amount=False))

    breakdown = calculator.calculate(_obligation(), _user(), ReminderPreferences(), now=MARCH_12)

    assert breakdown.effective_days == 5


def test_seasonal_and_weekend_adjustments() -> None:
    calculator = GracePeriodCalculator(obligations=InMemoryObligationStore(), toggles=GraceAdjustmentToggles(amount=False))
    december = datetime(2026, 12, 15, tzinfo=timezone.utc)
    saturday_due = date(2026, 12, 5)

    breakdown = calculator.calculate(_obligation(due=saturday_due), _user(), ReminderPreferences(), now=december)

    assert breakdown.effective_days == 3 + 3 + 1


def test_effective_grace_period_is_never_negative() -> None:
    calculator = GracePeriodCalculator(obligations=InMemoryObligationStore(), risk_assessor=_HighRisk())
    preferences = ReminderPreferences.model_validate({"grace_periods": {"emergency": 0}})

    breakdown = calculator.calculate(
        _obligation(amount=250000, obligation_type="emergency"),
        _user(),
        preferences,
        now=MARCH_12,
    )

    assert breakdown.effective_days == 0
    assert breakdown.clamped is True


@pytest.mark.parametrize("month", [3, 5, 7])
def test_no_seasonal_adjustment_outside_listed_months(month: int) -> None:
    calculator = GracePeriodCalculator(obligations=InMemoryObligationStore())
    now = datetime(2026, month, 20, tzinfo=timezone.utc)

    assert calculator.calculate_days(_obligation(), _user(), ReminderPreferences(), now=now) == 4


def test_collaborator_failures_are_logged_and_ignored(caplog: pytest.LogCaptureFixture) -> None:
    calculator = GracePeriodCalculator(obligations=_BrokenObligations(), risk_assessor=_BrokenRisk())

    with caplog.at_level(logging.WARNING, logger="lending_reminders.grace_period"):
        breakdown = calculator.calculate(_obligation(), _user(), ReminderPreferences(), now=MARCH_12)

    assert breakdown.effective_days == 4
    assert "risk lookup failed" in caplog.text
    assert "repaid count lookup failed" in caplog.text


def test_explanation_lists_adjustments() -> None:
    calculator = GracePeriodCalculator(obligations=InMemoryObligationStore())

    explanation = calculator.calculate(_obligation(), _user(), ReminderPreferences(), now=MARCH_12).to_explanation("obl-1")

    assert explanation.effective_grace_period == 4
    assert explanation.default_grace_period == 3
    assert [item.name for item in explanation.adjustments] == ["risk", "loyalty", "seasonal", "weekend", "amount"]
    assert [item.name for item in explanation.adjustments if item.applied] == ["amount"]
