from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from .models import (
    EscalationTier,
    NotificationEntry,
    NotificationResponse,
    Obligation,
    ReminderHistoryEntry,
    UserProfile,
)


class ObligationRepository(Protocol):
    def get(self, obligation_id: str) -> Obligation: ...

    def find_overdue_by_user(self, user_id: str, now: datetime) -> list[Obligation]: ...

    def find_overdue(self, now: datetime) -> list[Obligation]: ...

    def save(self, obligation: Obligation) -> None: ...

    def count_repaid_by_user(self, user_id: str) -> int: ...


class UserRepository(Protocol):
    def find_by_id(self, user_id: str) -> UserProfile: ...

    def list_users(self) -> list[UserProfile]: ...

    def save_preferences(self, user_id: str, preferences: dict[str, object]) -> UserProfile: ...


class ReminderHistoryRepository(Protocol):
    def reset(self) -> None: ...

    def next_id(self) -> str: ...

    def find_sent(
        self,
        *,
        user_id: str,
        obligation_id: str,
        tiers: Iterable[EscalationTier],
    ) -> ReminderHistoryEntry | None: ...

    def insert(self, entry: ReminderHistoryEntry) -> ReminderHistoryEntry: ...

    def update(self, entry: ReminderHistoryEntry) -> ReminderHistoryEntry: ...

    def get(self, history_id: str) -> ReminderHistoryEntry | None: ...

    def list_entries(
        self,
        *,
        user_id: str | None = None,
        obligation_id: str | None = None,
        since: datetime | None = None,
    ) -> list[ReminderHistoryEntry]: ...


class NotificationRepository(Protocol):
    def reset(self) -> None: ...

    def insert(self, notification: NotificationEntry) -> NotificationEntry: ...

    def get(self, notification_id: str) -> NotificationEntry | None: ...

    def list_for_user(self, user_id: str) -> list[NotificationEntry]: ...

    def list_by_ids(self, notification_ids: Iterable[str]) -> list[NotificationEntry]: ...

    def record_response(
        self,
        notification_id: str,
        *,
        response: NotificationResponse,
        responded_at: datetime,
    ) -> NotificationEntry: ...


class DispatchLeaseRepository(Protocol):
    def reset(self) -> None: ...

    def try_acquire(self, lease_key: str, *, owner: str, now: datetime, ttl_seconds: int) -> bool: ...

    def release(self, lease_key: str, *, owner: str) -> None: ...
