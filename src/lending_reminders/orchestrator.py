from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from .dispatcher import DispatchRequest, MultiChannelDispatcher
from .history import DuplicateReminderError, IdempotencyGuard
from .models import (
    Obligation,
    OverdueObligationItem,
    OverdueSummaryResponse,
    ReminderOutcome,
    ReminderPreferences,
    RunError,
    RunMode,
    RunReport,
    UserProfile,
)
from .preferences import load_preferences
from .repositories import ObligationRepository, UserRepository
from .scheduler import ContactWindowScheduler, ScheduleDecision, raw_days_overdue
from .store import UserNotFoundError

logger = logging.getLogger(__name__)

ShouldContinue = Callable[[], bool]

_SKIP_COUNTERS = {
    "within_grace": "within_grace_count",
    "already_sent": "already_sent_count",
    "superseded": "superseded_count",
    "outside_window": "outside_window_count",
    "not_due": "not_due_count",
    "disabled": "disabled_count",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_report(mode: RunMode, run_at: datetime) -> RunReport:
    return RunReport(run_id=f"run_{secrets.token_hex(8)}", mode=mode, run_at=run_at)


class OverdueReminderService:
    """Runs reminder batches, either on the schedule or per lender on demand."""

    def __init__(
        self,
        *,
        users: UserRepository,
        obligations: ObligationRepository,
        scheduler: ContactWindowScheduler,
        guard: IdempotencyGuard,
        dispatcher: MultiChannelDispatcher,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._users = users
        self._obligations = obligations
        self._scheduler = scheduler
        self._guard = guard
        self._dispatcher = dispatcher
        self._clock = clock or _now_utc

    def process_due_reminders(
        self,
        *,
        now: datetime | None = None,
        limit: int | None = None,
        should_continue: ShouldContinue | None = None,
    ) -> RunReport:
        run_at = _coerce_utc(now or self._clock())
        report = _new_report("schedule", run_at)
        for user, preferences, obligation in self._scheduler.iter_candidates(run_at):
            if limit is not None and report.evaluated_count >= limit:
                break
            if should_continue is not None and not should_continue():
                report.cancelled = True
                break
            self._process_one(report, user, preferences, obligation, run_at, enforce_schedule=True)
        return self._finish(report)

    def process_user_obligations(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
        should_continue: ShouldContinue | None = None,
    ) -> RunReport:
        run_at = _coerce_utc(now or self._clock())
        report = _new_report("user", run_at)
        user = self._users.find_by_id(user_id)
        self._process_user(report, user, self._obligations.find_overdue_by_user(user_id, run_at), should_continue)
        return self._finish(report)

    def process_all_overdue(
        self,
        *,
        now: datetime | None = None,
        should_continue: ShouldContinue | None = None,
    ) -> RunReport:
        run_at = _coerce_utc(now or self._clock())
        report = _new_report("all_users", run_at)

        by_user: dict[str, list[Obligation]] = {}
        for obligation in self._obligations.find_overdue(run_at):
            by_user.setdefault(obligation.user_id, []).append(obligation)

        for user_id, obligations in by_user.items():
            if report.cancelled:
                break
            try:
                user = self._users.find_by_id(user_id)
            except UserNotFoundError:
                logger.warning("overdue obligations reference unknown user %s", user_id)
                report.errors.append(RunError(user_id=user_id, error="user not found"))
                continue
            self._process_user(report, user, obligations, should_continue)
        return self._finish(report)

    def get_overdue_summary(self, user_id: str, *, now: datetime | None = None) -> OverdueSummaryResponse:
        current = _coerce_utc(now or self._clock())
        self._users.find_by_id(user_id)
        obligations = self._obligations.find_overdue_by_user(user_id, current)
        items = [
            OverdueObligationItem(
                obligation_id=value.obligation_id,
                borrower_name=value.borrower_name,
                borrower_contact=value.borrower_contact,
                amount=value.amount,
                expected_return_date=value.expected_return_date,
                days_overdue=raw_days_overdue(value, current),
            )
            for value in obligations
        ]
        return OverdueSummaryResponse(
            user_id=user_id,
            total_count=len(items),
            total_amount=round(sum(value.amount for value in items), 2),
            obligations=items,
        )

    def _process_user(
        self,
        report: RunReport,
        user: UserProfile,
        obligations: Iterable[Obligation],
        should_continue: ShouldContinue | None,
    ) -> None:
        preferences = load_preferences(user)
        for obligation in obligations:
            if should_continue is not None and not should_continue():
                report.cancelled = True
                return
            try:
                if obligation.status == "pending" and obligation.mark_overdue():
                    self._obligations.save(obligation)
                    report.marked_overdue_count += 1
            except Exception as exc:  # noqa: BLE001
                logger.exception("failed to mark obligation %s overdue", obligation.obligation_id)
                report.errors.append(
                    RunError(obligation_id=obligation.obligation_id, user_id=user.user_id, error=str(exc))
                )
                continue
            self._process_one(report, user, preferences, obligation, report.run_at, enforce_schedule=False)

    def _process_one(
        self,
        report: RunReport,
        user: UserProfile,
        preferences: ReminderPreferences,
        obligation: Obligation,
        now: datetime,
        *,
        enforce_schedule: bool,
    ) -> None:
        report.evaluated_count += 1
        try:
            decision = self._scheduler.evaluate(
                user,
                preferences,
                obligation,
                now,
                enforce_schedule=enforce_schedule,
            )
            if not decision.due:
                self._record_skip(report, user, obligation, decision, decision.reason)
                return
            self._dispatch(report, user, preferences, obligation, decision, now)
        except Exception as exc:  # noqa: BLE001
            logger.exception("reminder processing failed for obligation %s", obligation.obligation_id)
            report.errors.append(RunError(obligation_id=obligation.obligation_id, user_id=user.user_id, error=str(exc)))

    def _dispatch(
        self,
        report: RunReport,
        user: UserProfile,
        preferences: ReminderPreferences,
        obligation: Obligation,
        decision: ScheduleDecision,
        now: datetime,
    ) -> None:
        tier, grace = decision.tier, decision.grace
        if tier is None or grace is None:
            raise ValueError(f"due decision for obligation {obligation.obligation_id} carries no tier or grace period")
        with self._guard.dispatch_lease(
            user_id=user.user_id,
            obligation_id=obligation.obligation_id,
            tier=tier,
            now=now,
        ) as acquired:
            if not acquired:
                self._record_skip(report, user, obligation, decision, "already_sent")
                return
            # Another run may have finished between evaluation and taking the lease.
            guard_decision = self._guard.check(
                user_id=user.user_id,
                obligation_id=obligation.obligation_id,
                tier=tier,
            )
            if not guard_decision.allowed:
                reason = "already_sent" if guard_decision.already_sent else "superseded"
                self._record_skip(report, user, obligation, decision, reason)
                return

            request = DispatchRequest(
                user=user,
                preferences=preferences,
                obligation=obligation,
                tier=tier,
                days_overdue=decision.days_overdue,
                raw_days_overdue=decision.raw_days_overdue,
                grace=grace,
            )
            try:
                result = self._dispatcher.dispatch(request, now=now)
            except DuplicateReminderError:
                self._record_skip(report, user, obligation, decision, "already_sent")
                return

        if result.dispatched:
            report.dispatched_count += 1
            tier_key = tier.value
            report.sent_by_tier[tier_key] = report.sent_by_tier.get(tier_key, 0) + 1
            status, reason = "dispatched", "sent"
        else:
            report.failed_count += 1
            status, reason = "failed", "all_channels_failed"
        report.results.append(
            ReminderOutcome(
                obligation_id=obligation.obligation_id,
                user_id=user.user_id,
                status=status,  # type: ignore[arg-type]
                reason=reason,
                tier=tier,
                days_overdue=decision.days_overdue,
                grace_period_days=grace.effective_days,
                scheduled_for=decision.scheduled_for,
                history_id=result.history.history_id,
                notification_id=result.notification_id,
            )
        )

    def _record_skip(
        self,
        report: RunReport,
        user: UserProfile,
        obligation: Obligation,
        decision: ScheduleDecision,
        reason: str,
    ) -> None:
        counter = _SKIP_COUNTERS.get(reason)
        if counter is not None:
            setattr(report, counter, getattr(report, counter) + 1)
        report.results.append(
            ReminderOutcome(
                obligation_id=obligation.obligation_id,
                user_id=user.user_id,
                status="skipped",
                reason=reason,
                tier=decision.tier,
                days_overdue=decision.days_overdue if decision.tier is not None else None,
                grace_period_days=decision.grace.effective_days if decision.grace is not None else None,
                scheduled_for=decision.scheduled_for,
            )
        )

    def _finish(self, report: RunReport) -> RunReport:
        report.finished_at = _now_utc()
        logger.info(
            "reminder run %s mode=%s evaluated=%d dispatched=%d failed=%d errors=%d cancelled=%s",
            report.run_id,
            report.mode,
            report.evaluated_count,
            report.dispatched_count,
            report.failed_count,
            len(report.errors),
            report.cancelled,
        )
        return report
