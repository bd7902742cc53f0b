from __future__ import annotations

import json
import secrets
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterable

from sqlalchemy import Boolean, DateTime, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import NotificationEntry, NotificationResponse
from .repositories import NotificationRepository


class NotificationNotFoundError(KeyError):
    """Raised when an operation references a notification id that does not exist."""


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryNotificationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._notifications: dict[str, NotificationEntry] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._notifications.clear()

    def insert(self, notification: NotificationEntry) -> NotificationEntry:
        with self._lock:
            notification_id = notification.notification_id or f"ntf_{next(self._counter):06d}"
            stored = notification.model_copy(deep=True, update={"notification_id": notification_id})
            self._notifications[notification_id] = stored
            return stored.model_copy(deep=True)

    def get(self, notification_id: str) -> NotificationEntry | None:
        with self._lock:
            value = self._notifications.get(notification_id)
            return value.model_copy(deep=True) if value is not None else None

    def list_for_user(self, user_id: str) -> list[NotificationEntry]:
        with self._lock:
            values = [value.model_copy(deep=True) for value in self._notifications.values() if value.user_id == user_id]
        return sorted(values, key=lambda value: value.created_at, reverse=True)

    def list_by_ids(self, notification_ids: Iterable[str]) -> list[NotificationEntry]:
        wanted = set(notification_ids)
        with self._lock:
            return [value.model_copy(deep=True) for key, value in self._notifications.items() if key in wanted]

    def record_response(
        self,
        notification_id: str,
        *,
        response: NotificationResponse,
        responded_at: datetime,
    ) -> NotificationEntry:
        with self._lock:
            value = self._notifications.get(notification_id)
            if value is None:
                raise NotificationNotFoundError(notification_id)
            updated = value.model_copy(
                update={"response": response, "responded_at": _coerce_utc(responded_at), "read": True}
            )
            self._notifications[notification_id] = updated
            return updated.model_copy(deep=True)


class NotificationsBase(DeclarativeBase):
    pass


class _NotificationRow(NotificationsBase):
    __tablename__ = "reminder_notifications"

    notification_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _row_to_notification(row: _NotificationRow) -> NotificationEntry:
    return NotificationEntry(
        notification_id=row.notification_id,
        user_id=row.user_id,
        type=row.type,
        title=row.title,
        message=row.message,
        related_id=row.related_id,
        severity=row.severity,  # type: ignore[arg-type]
        read=row.read,
        response=row.response,  # type: ignore[arg-type]
        responded_at=_coerce_utc(row.responded_at) if row.responded_at is not None else None,
        meta=json.loads(row.meta_json or "{}"),
        created_at=_coerce_utc(row.created_at),
    )


class SqlAlchemyNotificationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationRow).delete()

    def insert(self, notification: NotificationEntry) -> NotificationEntry:
        notification_id = notification.notification_id or f"ntf_{secrets.token_hex(8)}"
        stored = notification.model_copy(update={"notification_id": notification_id})
        with self._session() as session:
            with session.begin():
                session.add(
                    _NotificationRow(
                        notification_id=notification_id,
                        user_id=stored.user_id,
                        type=stored.type,
                        title=stored.title,
                        message=stored.message,
                        related_id=stored.related_id,
                        severity=stored.severity,
                        read=stored.read,
                        response=stored.response,
                        responded_at=stored.responded_at,
                        meta_json=json.dumps(stored.meta, sort_keys=True, separators=(",", ":"), default=str),
                        created_at=_coerce_utc(stored.created_at),
                    )
                )
        return stored

    def get(self, notification_id: str) -> NotificationEntry | None:
        with self._session() as session:
            row = session.get(_NotificationRow, notification_id)
            return _row_to_notification(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[NotificationEntry]:
        with self._session() as session:
            rows = session.execute(
                select(_NotificationRow)
                .where(_NotificationRow.user_id == user_id)
                .order_by(_NotificationRow.created_at.desc())
            ).scalars()
            return [_row_to_notification(row) for row in rows]

    def list_by_ids(self, notification_ids: Iterable[str]) -> list[NotificationEntry]:
        wanted = sorted(set(notification_ids))
        if not wanted:
            return []
        with self._session() as session:
            rows = session.execute(
                select(_NotificationRow).where(_NotificationRow.notification_id.in_(wanted))
            ).scalars()
            return [_row_to_notification(row) for row in rows]

    def record_response(
        self,
        notification_id: str,
        *,
        response: NotificationResponse,
        responded_at: datetime,
    ) -> NotificationEntry:
        with self._session() as session:
            with session.begin():
                row = session.get(_NotificationRow, notification_id)
                if row is None:
                    raise NotificationNotFoundError(notification_id)
                row.response = response
                row.responded_at = _coerce_utc(responded_at)
                row.read = True
            return _row_to_notification(row)


def create_notification_repository(backend: str, database_url: str) -> NotificationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
