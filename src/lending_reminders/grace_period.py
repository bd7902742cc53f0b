"""Effective grace period calculation for overdue obligations.

The effective grace period starts from the lender's configured (or tier default) grace
period for the obligation type and then applies, in this order: borrower risk, lender
loyalty, seasonal, weekend and amount-bracket adjustments. Later steps operate on the
running total, so the order is fixed even though each step can be switched off.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Callable, Protocol

from .models import (
    GracePeriodAdjustmentItem,
    GracePeriodExplanation,
    Obligation,
    ObligationType,
    ReminderPreferences,
    SubscriptionTier,
    UserProfile,
)
from .repositories import ObligationRepository

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIODS: MappingProxyType[SubscriptionTier, MappingProxyType[ObligationType, int]] = MappingProxyType(
    {
        "basic": MappingProxyType({"emergency": 1, "non-emergency": 3}),
        "premium": MappingProxyType({"emergency": 2, "non-emergency": 5}),
        "enterprise": MappingProxyType({"emergency": 3, "non-emergency": 7}),
    }
)

HIGH_RISK_FACTOR = Decimal("0.5")
LOYALTY_REPAID_THRESHOLD = 10
LOYALTY_BONUS_DAYS = 2
WEEKEND_BONUS_DAYS = 1

# Keyed by calendar month; evaluated against the calculation clock, not the due month.
SEASONAL_ADJUSTMENTS: MappingProxyType[int, int] = MappingProxyType({12: 3, 1: 1, 4: 2, 6: 1, 10: 1})


@dataclass(frozen=True)
class AmountBracket:
    max_amount: float | None
    adjustment: int
    label: str

    def covers(self, amount: float) -> bool:
        return self.max_amount is None or amount <= self.max_amount


AMOUNT_BRACKETS: tuple[AmountBracket, ...] = (
    AmountBracket(max_amount=5000, adjustment=1, label="small amount"),
    AmountBracket(max_amount=25000, adjustment=0, label="standard amount"),
    AmountBracket(max_amount=100000, adjustment=-1, label="large amount"),
    AmountBracket(max_amount=None, adjustment=-2, label="very large amount"),
)


class BorrowerRiskAssessor(Protocol):
    def is_high_risk(self, obligation: Obligation) -> bool: ...


class NoRiskAssessor:
    """Default assessor: no borrower is considered high risk."""

    def is_high_risk(self, obligation: Obligation) -> bool:
        return False


@dataclass(frozen=True)
class GraceAdjustmentToggles:
    risk: bool = True
    loyalty: bool = True
    seasonal: bool = True
    weekend: bool = True
    amount: bool = True


@dataclass(frozen=True)
class GraceAdjustment:
    name: str
    label: str
    delta: int
    applied: bool


@dataclass(frozen=True)
class GracePeriodBreakdown:
    base_days: int
    default_days: int
    effective_days: int
    adjustments: tuple[GraceAdjustment, ...] = field(default_factory=tuple)
    clamped: bool = False

    def explanation(self) -> str:
        text = f"{self.effective_days} day{'' if self.effective_days == 1 else 's'}"
        factors = [f"{item.delta:+d} {item.label}" for item in self.adjustments if item.applied and item.delta]
        if self.clamped:
            factors.append("floored at zero")
        if factors:
            return f"{text} (base {self.base_days}; {', '.join(factors)})"
        return text

    def to_explanation(self, obligation_id: str) -> GracePeriodExplanation:
        return GracePeriodExplanation(
            obligation_id=obligation_id,
            base_grace_period=self.base_days,
            default_grace_period=self.default_days,
            effective_grace_period=self.effective_days,
            explanation=self.explanation(),
            adjustments=[
                GracePeriodAdjustmentItem(name=item.name, label=item.label, delta=item.delta, applied=item.applied)
                for item in self.adjustments
            ],
        )


def default_grace_period(subscription_tier: SubscriptionTier, obligation_type: ObligationType) -> int:
    tier_defaults = DEFAULT_GRACE_PERIODS.get(subscription_tier, DEFAULT_GRACE_PERIODS["basic"])
    return tier_defaults[obligation_type]


def amount_bracket_for(amount: float) -> AmountBracket:
    for bracket in AMOUNT_BRACKETS:
        if bracket.covers(amount):
            return bracket
    return AMOUNT_BRACKETS[-1]


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class GracePeriodCalculator:
    def __init__(
        self,
        *,
        obligations: ObligationRepository,
        risk_assessor: BorrowerRiskAssessor | None = None,
        toggles: GraceAdjustmentToggles | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._obligations = obligations
        self._risk_assessor = risk_assessor or NoRiskAssessor()
        self._toggles = toggles or GraceAdjustmentToggles()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def base_grace_period(
        self,
        obligation: Obligation,
        user: UserProfile,
        preferences: ReminderPreferences,
    ) -> int:
        configured = preferences.grace_periods.for_type(obligation.type)
        if configured is not None:
            return configured
        return default_grace_period(user.subscription_tier, obligation.type)

    def calculate(
        self,
        obligation: Obligation,
        user: UserProfile,
        preferences: ReminderPreferences,
        *,
        now: datetime | None = None,
    ) -> GracePeriodBreakdown:
        current = now or self._clock()
        base = self.base_grace_period(obligation, user, preferences)
        running = base
        adjustments: list[GraceAdjustment] = []

        high_risk = self._toggles.risk and self._is_high_risk(obligation)
        if high_risk:
            reduced = _round_half_up(Decimal(running) * HIGH_RISK_FACTOR)
            adjustments.append(GraceAdjustment("risk", "high-risk borrower", reduced - running, True))
            running = reduced
        else:
            adjustments.append(GraceAdjustment("risk", "high-risk borrower", 0, False))

        loyal = self._toggles.loyalty and self._is_loyal_lender(obligation.user_id)
        adjustments.append(GraceAdjustment("loyalty", "loyal lender", LOYALTY_BONUS_DAYS if loyal else 0, loyal))
        if loyal:
            running += LOYALTY_BONUS_DAYS

        seasonal_delta = SEASONAL_ADJUSTMENTS.get(current.month, 0) if self._toggles.seasonal else 0
        adjustments.append(GraceAdjustment("seasonal", "seasonal adjustment", seasonal_delta, seasonal_delta != 0))
        running += seasonal_delta

        weekend = self._toggles.weekend and obligation.expected_return_date.weekday() >= 5
        adjustments.append(GraceAdjustment("weekend", "weekend due date", WEEKEND_BONUS_DAYS if weekend else 0, weekend))
        if weekend:
            running += WEEKEND_BONUS_DAYS

        if self._toggles.amount:
            bracket = amount_bracket_for(obligation.amount)
            adjustments.append(GraceAdjustment("amount", bracket.label, bracket.adjustment, True))
            running += bracket.adjustment
        else:
            adjustments.append(GraceAdjustment("amount", "amount bracket", 0, False))

        effective = max(0, running)
        return GracePeriodBreakdown(
            base_days=base,
            default_days=default_grace_period(user.subscription_tier, obligation.type),
            effective_days=effective,
            adjustments=tuple(adjustments),
            clamped=running < 0,
        )

    def calculate_days(
        self,
        obligation: Obligation,
        user: UserProfile,
        preferences: ReminderPreferences,
        *,
        now: datetime | None = None,
    ) -> int:
        return self.calculate(obligation, user, preferences, now=now).effective_days

    def _is_high_risk(self, obligation: Obligation) -> bool:
        try:
            return bool(self._risk_assessor.is_high_risk(obligation))
        except Exception:  # noqa: BLE001
            logger.warning(
                "borrower risk lookup failed for obligation %s; assuming not high risk",
                obligation.obligation_id,
                exc_info=True,
            )
            return False

    def _is_loyal_lender(self, user_id: str) -> bool:
        try:
            repaid = self._obligations.count_repaid_by_user(user_id)
        except Exception:  # noqa: BLE001
            logger.warning("repaid count lookup failed for user %s; assuming not loyal", user_id, exc_info=True)
            return False
        return repaid >= LOYALTY_REPAID_THRESHOLD
