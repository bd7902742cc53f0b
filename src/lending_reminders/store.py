from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock

from .models import ACTIVE_OBLIGATION_STATUSES, Obligation, UserProfile


class UserNotFoundError(KeyError):
    """Raised when an operation references a user id that does not exist."""


class ObligationNotFoundError(KeyError):
    """Raised when an operation references an obligation id that does not exist."""


def _as_utc_date(now: datetime):
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(timezone.utc).date()


class InMemoryObligationStore:
    """Lending records keyed by obligation id."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._obligations: dict[str, Obligation] = {}

    def reset(self) -> None:
        with self._lock:
            self._obligations.clear()

    def add(self, obligation: Obligation) -> Obligation:
        with self._lock:
            self._obligations[obligation.obligation_id] = obligation
            return obligation

    def get(self, obligation_id: str) -> Obligation:
        with self._lock:
            obligation = self._obligations.get(obligation_id)
            if obligation is None:
                raise ObligationNotFoundError(obligation_id)
            return obligation

    def find_overdue_by_user(self, user_id: str, now: datetime) -> list[Obligation]:
        today = _as_utc_date(now)
        with self._lock:
            matches = [
                value
                for value in self._obligations.values()
                if value.user_id == user_id
                and value.status in ACTIVE_OBLIGATION_STATUSES
                and value.expected_return_date < today
            ]
        return sorted(matches, key=lambda value: (value.expected_return_date, value.obligation_id))

    def find_overdue(self, now: datetime) -> list[Obligation]:
        today = _as_utc_date(now)
        with self._lock:
            matches = [
                value
                for value in self._obligations.values()
                if value.status in ACTIVE_OBLIGATION_STATUSES and value.expected_return_date < today
            ]
        return sorted(matches, key=lambda value: (value.user_id, value.expected_return_date, value.obligation_id))

    def list_by_user(self, user_id: str) -> list[Obligation]:
        with self._lock:
            return [value for value in self._obligations.values() if value.user_id == user_id]

    def save(self, obligation: Obligation) -> None:
        with self._lock:
            self._obligations[obligation.obligation_id] = obligation

    def count_repaid_by_user(self, user_id: str) -> int:
        with self._lock:
            return sum(
                1
                for value in self._obligations.values()
                if value.user_id == user_id and value.status == "repaid"
            )


class InMemoryUserStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._users: dict[str, UserProfile] = {}

    def reset(self) -> None:
        with self._lock:
            self._users.clear()

    def add(self, user: UserProfile) -> UserProfile:
        with self._lock:
            self._users[user.user_id] = user
            return user

    def find_by_id(self, user_id: str) -> UserProfile:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            return user

    def list_users(self) -> list[UserProfile]:
        with self._lock:
            return sorted(self._users.values(), key=lambda value: value.user_id)

    def save_preferences(self, user_id: str, preferences: dict[str, object]) -> UserProfile:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.reminder_preferences = dict(preferences)
            return user
