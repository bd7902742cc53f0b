from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .escalation import SCHEDULED_TIERS, effective_days_overdue, resolve_tier
from .grace_period import GracePeriodBreakdown, GracePeriodCalculator
from .history import IdempotencyGuard
from .models import ContactWindow, EscalationTier, Obligation, ReminderPreferences, UserProfile
from .preferences import load_preferences
from .repositories import ObligationRepository, UserRepository

logger = logging.getLogger(__name__)

DEFAULT_SEND_TOLERANCE = timedelta(hours=1)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hour_in_window(hour: int, start_hour: int, end_hour: int) -> bool:
    """Return whether ``hour`` falls in the contact window.

    A regular window is ``[start_hour, end_hour)``. An overnight window (``end_hour < start_hour``)
    also admits ``end_hour`` itself. Equal start and end hours mean the lender set no restriction,
    so every hour is open.
    """
    if start_hour == end_hour:
        return True
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    # Overnight window such as 22 -> 6.
    return hour >= start_hour or hour <= end_hour


def raw_days_overdue(obligation: Obligation, now: datetime) -> int:
    return (_coerce_utc(now).date() - obligation.expected_return_date).days


@dataclass(frozen=True)
class ScheduleDecision:
    due: bool
    reason: str
    tier: EscalationTier | None = None
    scheduled_for: datetime | None = None
    grace: GracePeriodBreakdown | None = None
    raw_days_overdue: int = 0
    days_overdue: int = 0


@dataclass(frozen=True)
class DueReminder:
    user: UserProfile
    preferences: ReminderPreferences
    obligation: Obligation
    decision: ScheduleDecision


class ContactWindowScheduler:
    def __init__(
        self,
        *,
        users: UserRepository,
        obligations: ObligationRepository,
        calculator: GracePeriodCalculator,
        guard: IdempotencyGuard,
        tolerance: timedelta = DEFAULT_SEND_TOLERANCE,
        timezone_mode: str = "utc",
    ) -> None:
        self._users = users
        self._obligations = obligations
        self._calculator = calculator
        self._guard = guard
        self._tolerance = tolerance
        self._timezone_mode = timezone_mode

    def is_within_window(self, moment: datetime, window: ContactWindow) -> bool:
        local = self._to_window_time(moment, window)
        return hour_in_window(local.hour, window.start_hour, window.end_hour)

    def get_next_available_time(self, reference: datetime, window: ContactWindow) -> datetime:
        local = self._to_window_time(reference, window)
        if hour_in_window(local.hour, window.start_hour, window.end_hour):
            return _coerce_utc(reference)
        candidate = local.replace(hour=window.start_hour, minute=0, second=0, microsecond=0)
        if candidate <= local:
            candidate = candidate + timedelta(days=1)
        return candidate.astimezone(timezone.utc)

    def calculate_reminder_schedule(
        self,
        obligation: Obligation,
        preferences: ReminderPreferences,
        grace_period_days: int,
    ) -> dict[EscalationTier, datetime]:
        base = datetime.combine(obligation.expected_return_date, time.min, tzinfo=timezone.utc)
        base = base + timedelta(days=grace_period_days)
        window = preferences.preferred_contact_times
        schedule: dict[EscalationTier, datetime] = {}
        for tier in SCHEDULED_TIERS:
            target = base + timedelta(days=preferences.escalation_schedule.offset_for(tier))
            schedule[tier] = self.get_next_available_time(target, window)
        return schedule

    def should_send_reminder_now(
        self,
        *,
        user_id: str,
        obligation_id: str,
        tier: EscalationTier,
        scheduled_for: datetime,
        preferences: ReminderPreferences,
        now: datetime,
    ) -> bool:
        if not preferences.enabled:
            return False
        if not self.is_within_window(now, preferences.preferred_contact_times):
            return False
        if self._guard.check(user_id=user_id, obligation_id=obligation_id, tier=tier).already_sent:
            return False
        return abs(_coerce_utc(now) - _coerce_utc(scheduled_for)) <= self._tolerance

    def evaluate(
        self,
        user: UserProfile,
        preferences: ReminderPreferences,
        obligation: Obligation,
        now: datetime,
        *,
        enforce_schedule: bool = True,
    ) -> ScheduleDecision:
        """Decide whether a reminder is due for ``obligation`` at ``now``.

        With ``enforce_schedule`` off only the grace period, contact window and
        idempotency gates apply; the scheduled send time is reported but not enforced.
        """
        if not preferences.enabled:
            return ScheduleDecision(due=False, reason="disabled")

        grace = self._calculator.calculate(obligation, user, preferences, now=now)
        raw = raw_days_overdue(obligation, now)
        effective = effective_days_overdue(raw, grace.effective_days)
        if effective <= 0:
            return ScheduleDecision(
                due=False,
                reason="within_grace",
                grace=grace,
                raw_days_overdue=raw,
            )

        tier = resolve_tier(effective, preferences.escalation_schedule)
        scheduled_for = self.calculate_reminder_schedule(obligation, preferences, grace.effective_days)[tier]
        decision_fields = {
            "tier": tier,
            "scheduled_for": scheduled_for,
            "grace": grace,
            "raw_days_overdue": raw,
            "days_overdue": effective,
        }

        if not self.is_within_window(now, preferences.preferred_contact_times):
            return ScheduleDecision(due=False, reason="outside_window", **decision_fields)

        guard_decision = self._guard.check(user_id=user.user_id, obligation_id=obligation.obligation_id, tier=tier)
        if guard_decision.already_sent:
            return ScheduleDecision(due=False, reason="already_sent", **decision_fields)
        if guard_decision.superseded:
            return ScheduleDecision(due=False, reason="superseded", **decision_fields)

        if enforce_schedule and abs(_coerce_utc(now) - scheduled_for) > self._tolerance:
            return ScheduleDecision(due=False, reason="not_due", **decision_fields)
        return ScheduleDecision(due=True, reason="due", **decision_fields)

    def iter_candidates(self, now: datetime) -> Iterator[tuple[UserProfile, ReminderPreferences, Obligation]]:
        """Yield every active overdue obligation whose lender has reminders enabled."""
        opted_in: dict[str, tuple[UserProfile, ReminderPreferences]] = {}
        for user in self._users.list_users():
            preferences = load_preferences(user)
            if preferences.enabled:
                opted_in[user.user_id] = (user, preferences)

        for obligation in self._obligations.find_overdue(now):
            entry = opted_in.get(obligation.user_id)
            if entry is None:
                continue
            user, preferences = entry
            yield user, preferences, obligation

    def get_due_reminders(self, now: datetime) -> list[DueReminder]:
        due: list[DueReminder] = []
        for user, preferences, obligation in self.iter_candidates(now):
            try:
                decision = self.evaluate(user, preferences, obligation, now)
            except Exception:  # noqa: BLE001
                logger.exception("schedule evaluation failed for obligation %s", obligation.obligation_id)
                continue
            if decision.due:
                due.append(DueReminder(user=user, preferences=preferences, obligation=obligation, decision=decision))
        return due

    def _to_window_time(self, moment: datetime, window: ContactWindow) -> datetime:
        utc_moment = _coerce_utc(moment)
        if self._timezone_mode != "local":
            return utc_moment
        return utc_moment.astimezone(self._resolve_timezone(window.timezone))

    def _resolve_timezone(self, zone_name: str | None) -> timezone | ZoneInfo:
        if not zone_name:
            return timezone.utc
        try:
            return ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown contact window timezone %r; using UTC", zone_name)
            return timezone.utc
