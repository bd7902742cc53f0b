from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from lending_reminders.history import (
    DuplicateReminderError,
    IdempotencyGuard,
    InMemoryDispatchLeaseRepository,
    InMemoryReminderHistoryRepository,
    SqlAlchemyDispatchLeaseRepository,
    SqlAlchemyReminderHistoryRepository,
)
from lending_reminders.models import ChannelDeliveryResult, EscalationTier, ReminderHistoryEntry

NOW = datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def history(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        return InMemoryReminderHistoryRepository()
    return SqlAlchemyReminderHistoryRepository(f"sqlite:///{tmp_path / 'history.db'}")


@pytest.fixture(params=["inmemory", "sqlite"])
def leases(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        return InMemoryDispatchLeaseRepository()
    return SqlAlchemyDispatchLeaseRepository(f"sqlite:///{tmp_path / 'leases.db'}")


def _entry(history_id: str, *, tier: EscalationTier = EscalationTier.FIRST, status: str = "sent") -> ReminderHistoryEntry:
    return ReminderHistoryEntry(
        history_id=history_id,
        user_id="user-1",
        obligation_id="obl-1",
        tier=tier,
        days_overdue=6,
        raw_days_overdue=10,
        grace_period_days=4,
        template="friendly",
        subject="Reminder",
        message="Body",
        status=status,  # type: ignore[arg-type]
        channel_results=[
            ChannelDeliveryResult(channel="email", success=True, provider_message_id="m-1", attempted_at=NOW),
        ],
        amount=3000,
        created_at=NOW,
        updated_at=NOW,
    )


def test_guard_reports_already_sent_after_sent_row(history) -> None:
    guard = IdempotencyGuard(history=history)
    assert guard.check(user_id="user-1", obligation_id="obl-1", tier=EscalationTier.FIRST).allowed is True

    history.insert(_entry("rh-1"))

    decision = guard.check(user_id="user-1", obligation_id="obl-1", tier=EscalationTier.FIRST)
    assert decision.already_sent is True
    assert decision.existing_history_id == "rh-1"
    assert guard.check(user_id="user-1", obligation_id="obl-1", tier=EscalationTier.SECOND).allowed is True


def test_failed_rows_do_not_block_retry(history) -> None:
    guard = IdempotencyGuard(history=history)
    history.insert(_entry("rh-1", status="failed"))
    history.insert(_entry("rh-2", status="failed"))

    assert guard.check(user_id="user-1", obligation_id="obl-1", tier=EscalationTier.FIRST).allowed is True


def test_lower_tier_is_superseded_by_higher_sent_tier(history) -> None:
    guard = IdempotencyGuard(history=history)
    history.insert(_entry("rh-1", tier=EscalationTier.THIRD))

    decision = guard.check(user_id="user-1", obligation_id="obl-1", tier=EscalationTier.SECOND)

    assert decision.already_sent is False
    assert decision.superseded is True
    assert decision.allowed is False


def test_second_sent_row_for_same_tier_is_rejected(history) -> None:
    history.insert(_entry("rh-1"))

    with pytest.raises(DuplicateReminderError):
        history.insert(_entry("rh-2"))


def test_update_and_list_entries(history) -> None:
    stored = history.insert(_entry("rh-1"))
    history.insert(_entry("rh-2", tier=EscalationTier.SECOND))

    history.update(stored.model_copy(update={"notification_id": "ntf-1", "status": "delivered"}))

    reloaded = history.get("rh-1")
    assert reloaded is not None
    assert reloaded.notification_id == "ntf-1"
    assert reloaded.status == "delivered"
    assert reloaded.channel_results[0].provider_message_id == "m-1"
    assert {value.history_id for value in history.list_entries(user_id="user-1")} == {"rh-1", "rh-2"}
    assert history.list_entries(user_id="someone-else") == []
    assert history.list_entries(since=NOW + timedelta(days=1)) == []


def test_lease_is_exclusive_until_released_or_expired(leases) -> None:
    assert leases.try_acquire("user-1:obl-1:first", owner="a", now=NOW, ttl_seconds=300) is True
    assert leases.try_acquire("user-1:obl-1:first", owner="b", now=NOW, ttl_seconds=300) is False
    assert leases.try_acquire("user-1:obl-1:first", owner="b", now=NOW + timedelta(seconds=301), ttl_seconds=300) is True

    leases.release("user-1:obl-1:first", owner="b")

    assert leases.try_acquire("user-1:obl-1:first", owner="c", now=NOW, ttl_seconds=300) is True


def test_dispatch_lease_context_blocks_concurrent_holder() -> None:
    guard = IdempotencyGuard(history=InMemoryReminderHistoryRepository(), leases=InMemoryDispatchLeaseRepository())
    kwargs = {"user_id": "user-1", "obligation_id": "obl-1", "tier": EscalationTier.FIRST, "now": NOW}

    with guard.dispatch_lease(**kwargs) as first:
        with guard.dispatch_lease(**kwargs) as second:
            assert first is True
            assert second is False

    with guard.dispatch_lease(**kwargs) as again:
        assert again is True
