from __future__ import annotations

from datetime import date, datetime, timezone

from lending_reminders.channels import StubChannelSender
from lending_reminders.dispatcher import MultiChannelDispatcher
from lending_reminders.grace_period import GracePeriodCalculator
from lending_reminders.history import (
    IdempotencyGuard,
    InMemoryDispatchLeaseRepository,
    InMemoryReminderHistoryRepository,
)
from lending_reminders.models import CHANNELS, Obligation, UserProfile
from lending_reminders.notifications import InMemoryNotificationRepository
from lending_reminders.orchestrator import OverdueReminderService
from lending_reminders.scheduler import ContactWindowScheduler, ScheduleDecision
from lending_reminders.store import InMemoryObligationStore, InMemoryUserStore

# Thursday 12 March 2026, inside the default 09:00-18:00 UTC window.
NOW = datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc)


class _Harness:
    def __init__(self) -> None:
        self.users = InMemoryUserStore()
        self.obligations = InMemoryObligationStore()
        self.history = InMemoryReminderHistoryRepository()
        self.notifications = InMemoryNotificationRepository()
        self.leases = InMemoryDispatchLeaseRepository()
        self.calculator = GracePeriodCalculator(obligations=self.obligations)
        self.guard = IdempotencyGuard(history=self.history, leases=self.leases)
        self.scheduler = ContactWindowScheduler(
            users=self.users,
            obligations=self.obligations,
            calculator=self.calculator,
            guard=self.guard,
        )
        self.dispatcher = MultiChannelDispatcher(
            senders={channel: StubChannelSender(channel=channel) for channel in CHANNELS},
            history=self.history,
            notifications=self.notifications,
        )
        self.service = OverdueReminderService(
            users=self.users,
            obligations=self.obligations,
            scheduler=self.scheduler,
            guard=self.guard,
            dispatcher=self.dispatcher,
        )

    def add_user(self, user_id: str = "user-1", **preferences: object) -> UserProfile:
        return self.users.add(
            UserProfile(
                user_id=user_id,
                display_name="Amina",
                email=f"{user_id}@example.com",
                push_token=f"push-{user_id}",
                reminder_preferences=preferences,
            )
        )

    def add_obligation(
        self,
        obligation_id: str = "obl-1",
        *,
        user_id: str = "user-1",
        due: date = date(2026, 3, 2),
        status: str = "overdue",
    ) -> Obligation:
        return self.obligations.add(
            Obligation(
                obligation_id=obligation_id,
                user_id=user_id,
                amount=3000,
                borrower_name="Jane Wanjiku",
                status=status,  # type: ignore[arg-type]
                expected_return_date=due,
            )
        )


def test_user_run_dispatches_then_reports_already_sent() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation()

    first = harness.service.process_user_obligations("user-1", now=NOW)
    second = harness.service.process_user_obligations("user-1", now=NOW)

    assert first.dispatched_count == 1
    assert first.sent_by_tier == {"first": 1}
    assert first.results[0].status == "dispatched"
    assert first.results[0].history_id is not None
    assert second.dispatched_count == 0
    assert second.already_sent_count == 1
    assert second.results[0].reason == "already_sent"
    assert len(harness.history.list_entries(user_id="user-1")) == 1


def test_pending_obligation_is_marked_overdue_on_first_detection() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation(status="pending")

    report = harness.service.process_user_obligations("user-1", now=NOW)

    assert report.marked_overdue_count == 1
    assert harness.obligations.get("obl-1").status == "overdue"
    again = harness.service.process_user_obligations("user-1", now=NOW)
    assert again.marked_overdue_count == 0


def test_within_grace_and_outside_window_are_counted() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation("obl-recent", due=date(2026, 3, 10))
    harness.add_obligation("obl-old")

    within = harness.service.process_user_obligations("user-1", now=NOW)
    evening = harness.service.process_user_obligations("user-1", now=datetime(2026, 3, 12, 20, 0, tzinfo=timezone.utc))

    assert within.within_grace_count == 1
    assert within.dispatched_count == 1
    assert evening.within_grace_count == 1
    assert evening.outside_window_count == 1
    assert evening.dispatched_count == 0


def test_outside_window_blocks_dispatch() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation()

    report = harness.service.process_user_obligations("user-1", now=datetime(2026, 3, 12, 20, 0, tzinfo=timezone.utc))

    assert report.outside_window_count == 1
    assert report.dispatched_count == 0
    assert harness.history.list_entries() == []


def test_one_failing_obligation_does_not_stop_the_batch(monkeypatch) -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation("obl-bad")
    harness.add_obligation("obl-good", due=date(2026, 3, 3))
    real_evaluate = harness.scheduler.evaluate

    def _evaluate(user, preferences, obligation, now, **kwargs):
        if obligation.obligation_id == "obl-bad":
            raise RuntimeError("corrupt obligation")
        return real_evaluate(user, preferences, obligation, now, **kwargs)

    monkeypatch.setattr(harness.scheduler, "evaluate", _evaluate)

    report = harness.service.process_user_obligations("user-1", now=NOW)

    assert report.evaluated_count == 2
    assert report.dispatched_count == 1
    assert [error.obligation_id for error in report.errors] == ["obl-bad"]
    assert "corrupt obligation" in report.errors[0].error


def test_cancellation_stops_between_obligations() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation("obl-1")
    harness.add_obligation("obl-2", due=date(2026, 3, 3))
    calls = iter([True, False])

    report = harness.service.process_user_obligations("user-1", now=NOW, should_continue=lambda: next(calls))

    assert report.cancelled is True
    assert report.evaluated_count == 1


def test_disabled_user_is_not_reminded() -> None:
    harness = _Harness()
    harness.add_user(enabled=False)
    harness.add_obligation()

    report = harness.service.process_user_obligations("user-1", now=NOW)

    assert report.disabled_count == 1
    assert report.dispatched_count == 0


def test_due_run_sends_at_scheduled_time_and_respects_limit() -> None:
    harness = _Harness()
    harness.add_user("user-1")
    harness.add_user("user-2")
    harness.add_obligation("obl-1", user_id="user-1")
    harness.add_obligation("obl-2", user_id="user-2")
    # Raw 5 days overdue, 4 days grace: first reminder scheduled for 09:00 on 7 March.
    scheduled = datetime(2026, 3, 7, 9, 10, tzinfo=timezone.utc)

    limited = harness.service.process_due_reminders(now=scheduled, limit=1)
    full = harness.service.process_due_reminders(now=scheduled)

    assert limited.mode == "schedule"
    assert limited.evaluated_count == 1
    assert limited.dispatched_count == 1
    assert full.evaluated_count == 2
    assert full.dispatched_count == 1
    assert full.already_sent_count == 1


def test_due_run_skips_reminders_that_are_not_due_yet() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation()

    report = harness.service.process_due_reminders(now=NOW)

    assert report.not_due_count == 1
    assert report.dispatched_count == 0


def test_lower_tier_is_not_sent_after_higher_tier() -> None:
    harness = _Harness()
    harness.add_user()
    # 24 days raw, 20 after grace.
    harness.add_obligation(due=date(2026, 2, 16))
    report = harness.service.process_user_obligations("user-1", now=NOW)
    assert report.sent_by_tier == {"third": 1}

    # Widening the schedule would now resolve to a lower tier.
    harness.users.save_preferences("user-1", {"escalation_schedule": {"first": 1, "second": 30, "third": 60, "final": 90}})
    later = harness.service.process_user_obligations("user-1", now=NOW)

    assert later.superseded_count == 1
    assert later.dispatched_count == 0


def test_process_all_overdue_covers_every_user() -> None:
    harness = _Harness()
    harness.add_user("user-1")
    harness.add_user("user-2")
    harness.add_obligation("obl-1", user_id="user-1")
    harness.add_obligation("obl-2", user_id="user-2", status="pending")
    harness.add_obligation("obl-orphan", user_id="ghost")

    report = harness.service.process_all_overdue(now=NOW)

    assert report.mode == "all_users"
    assert report.dispatched_count == 2
    assert report.marked_overdue_count == 1
    assert [error.user_id for error in report.errors] == ["ghost"]


def test_overdue_summary() -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation("obl-1")
    harness.add_obligation("obl-2", due=date(2026, 3, 11))
    harness.add_obligation("obl-future", due=date(2026, 4, 1))

    summary = harness.service.get_overdue_summary("user-1", now=NOW)

    assert summary.total_count == 2
    assert summary.total_amount == 6000
    assert [item.days_overdue for item in summary.obligations] == [10, 1]


def test_due_decision_without_tier_is_reported_as_error(monkeypatch) -> None:
    harness = _Harness()
    harness.add_user()
    harness.add_obligation()
    monkeypatch.setattr(
        harness.scheduler,
        "evaluate",
        lambda user, preferences, obligation, now, **kwargs: ScheduleDecision(due=True, reason="due"),
    )

    report = harness.service.process_user_obligations("user-1", now=NOW)

    assert report.dispatched_count == 0
    assert [error.obligation_id for error in report.errors] == ["obl-1"]
    assert "carries no tier" in report.errors[0].error
    assert harness.history.list_entries() == []
