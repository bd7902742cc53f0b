from __future__ import annotations

import json
import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Iterator

from sqlalchemy import DateTime, Float, Integer, String, Text, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .escalation import higher_tiers
from .models import (
    SENT_HISTORY_STATUSES,
    ChannelDeliveryResult,
    EscalationTier,
    ReminderHistoryEntry,
    reminder_dedupe_key,
)
from .repositories import DispatchLeaseRepository, ReminderHistoryRepository

logger = logging.getLogger(__name__)


class DuplicateReminderError(RuntimeError):
    """Raised when a second sent/delivered row is written for the same user, obligation and tier."""


class ReminderHistoryNotFoundError(KeyError):
    """Raised when an operation references a history id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryReminderHistoryRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._entries: dict[str, ReminderHistoryEntry] = {}
        self._dedupe_index: dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._entries.clear()
            self._dedupe_index.clear()

    def next_id(self) -> str:
        with self._lock:
            return f"rh_{next(self._counter):06d}"

    def find_sent(
        self,
        *,
        user_id: str,
        obligation_id: str,
        tiers: Iterable[EscalationTier],
    ) -> ReminderHistoryEntry | None:
        wanted = set(tiers)
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.user_id == user_id
                    and entry.obligation_id == obligation_id
                    and entry.tier in wanted
                    and entry.status in SENT_HISTORY_STATUSES
                ):
                    return entry.model_copy(deep=True)
        return None

    def insert(self, entry: ReminderHistoryEntry) -> ReminderHistoryEntry:
        with self._lock:
            dedupe_key = entry.dedupe_key
            if dedupe_key is not None and dedupe_key in self._dedupe_index:
                raise DuplicateReminderError(dedupe_key)
            stored = entry.model_copy(deep=True)
            self._entries[stored.history_id] = stored
            if dedupe_key is not None:
                self._dedupe_index[dedupe_key] = stored.history_id
            return stored.model_copy(deep=True)

    def update(self, entry: ReminderHistoryEntry) -> ReminderHistoryEntry:
        with self._lock:
            previous = self._entries.get(entry.history_id)
            if previous is None:
                raise ReminderHistoryNotFoundError(entry.history_id)
            dedupe_key = entry.dedupe_key
            owner = self._dedupe_index.get(dedupe_key) if dedupe_key is not None else None
            if owner is not None and owner != entry.history_id:
                raise DuplicateReminderError(dedupe_key)
            stored = entry.model_copy(deep=True, update={"updated_at": _now_utc()})
            self._entries[entry.history_id] = stored
            if previous.dedupe_key is not None and previous.dedupe_key != dedupe_key:
                self._dedupe_index.pop(previous.dedupe_key, None)
            if dedupe_key is not None:
                self._dedupe_index[dedupe_key] = entry.history_id
            return stored.model_copy(deep=True)

    def get(self, history_id: str) -> ReminderHistoryEntry | None:
        with self._lock:
            entry = self._entries.get(history_id)
            return entry.model_copy(deep=True) if entry is not None else None

    def list_entries(
        self,
        *,
        user_id: str | None = None,
        obligation_id: str | None = None,
        since: datetime | None = None,
    ) -> list[ReminderHistoryEntry]:
        with self._lock:
            values = list(self._entries.values())
        result = [
            value.model_copy(deep=True)
            for value in values
            if (user_id is None or value.user_id == user_id)
            and (obligation_id is None or value.obligation_id == obligation_id)
            and (since is None or value.created_at >= _coerce_utc(since))
        ]
        return sorted(result, key=lambda value: (value.created_at, value.history_id), reverse=True)


class InMemoryDispatchLeaseRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._leases: dict[str, tuple[str, datetime]] = {}

    def reset(self) -> None:
        with self._lock:
            self._leases.clear()

    def try_acquire(self, lease_key: str, *, owner: str, now: datetime, ttl_seconds: int) -> bool:
        current = _coerce_utc(now)
        with self._lock:
            existing = self._leases.get(lease_key)
            if existing is not None and existing[0] != owner and existing[1] > current:
                return False
            self._leases[lease_key] = (owner, current + timedelta(seconds=ttl_seconds))
            return True

    def release(self, lease_key: str, *, owner: str) -> None:
        with self._lock:
            existing = self._leases.get(lease_key)
            if existing is not None and existing[0] == owner:
                del self._leases[lease_key]


class ReminderHistoryBase(DeclarativeBase):
    pass


class _ReminderHistoryRow(ReminderHistoryBase):
    __tablename__ = "reminder_history"

    history_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    obligation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    raw_days_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    template: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    channel_results_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    notification_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Only populated for sent/delivered rows; NULLs do not collide.
    dedupe_key: Mapped[str | None] = mapped_column(String(400), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DispatchLeaseRow(ReminderHistoryBase):
    __tablename__ = "reminder_dispatch_leases"

    lease_key: Mapped[str] = mapped_column(String(400), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _row_to_entry(row: _ReminderHistoryRow) -> ReminderHistoryEntry:
    return ReminderHistoryEntry(
        history_id=row.history_id,
        user_id=row.user_id,
        obligation_id=row.obligation_id,
        tier=EscalationTier(row.tier),
        days_overdue=row.days_overdue,
        raw_days_overdue=row.raw_days_overdue,
        grace_period_days=row.grace_period_days,
        template=row.template,  # type: ignore[arg-type]
        subject=row.subject,
        message=row.message,
        status=row.status,  # type: ignore[arg-type]
        channel_results=[
            ChannelDeliveryResult.model_validate(value)
            for value in json.loads(row.channel_results_json or "[]")
            if isinstance(value, dict)
        ],
        notification_id=row.notification_id,
        amount=row.amount,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _channel_results_json(entry: ReminderHistoryEntry) -> str:
    return json.dumps(
        [value.model_dump(mode="json") for value in entry.channel_results],
        sort_keys=True,
        separators=(",", ":"),
    )


class SqlAlchemyReminderHistoryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderHistoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchLeaseRow).delete()
                session.query(_ReminderHistoryRow).delete()

    def next_id(self) -> str:
        return f"rh_{secrets.token_hex(8)}"

    def find_sent(
        self,
        *,
        user_id: str,
        obligation_id: str,
        tiers: Iterable[EscalationTier],
    ) -> ReminderHistoryEntry | None:
        tier_values = [tier.value for tier in tiers]
        if not tier_values:
            return None
        with self._session() as session:
            row = session.execute(
                select(_ReminderHistoryRow)
                .where(_ReminderHistoryRow.user_id == user_id)
                .where(_ReminderHistoryRow.obligation_id == obligation_id)
                .where(_ReminderHistoryRow.tier.in_(tier_values))
                .where(_ReminderHistoryRow.status.in_(sorted(SENT_HISTORY_STATUSES)))
                .order_by(_ReminderHistoryRow.created_at.asc())
                .limit(1)
            ).scalar_one_or_none()
            return _row_to_entry(row) if row is not None else None

    def insert(self, entry: ReminderHistoryEntry) -> ReminderHistoryEntry:
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _ReminderHistoryRow(
                            history_id=entry.history_id,
                            user_id=entry.user_id,
                            obligation_id=entry.obligation_id,
                            tier=entry.tier.value,
                            days_overdue=entry.days_overdue,
                            raw_days_overdue=entry.raw_days_overdue,
                            grace_period_days=entry.grace_period_days,
                            template=entry.template,
                            subject=entry.subject,
                            message=entry.message,
                            status=entry.status,
                            channel_results_json=_channel_results_json(entry),
                            notification_id=entry.notification_id,
                            amount=entry.amount,
                            dedupe_key=entry.dedupe_key,
                            created_at=_coerce_utc(entry.created_at),
                            updated_at=_coerce_utc(entry.updated_at),
                        )
                    )
        except IntegrityError as exc:
            raise DuplicateReminderError(entry.dedupe_key or entry.history_id) from exc
        return entry

    def update(self, entry: ReminderHistoryEntry) -> ReminderHistoryEntry:
        updated_at = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_ReminderHistoryRow, entry.history_id)
                    if row is None:
                        raise ReminderHistoryNotFoundError(entry.history_id)
                    row.status = entry.status
                    row.channel_results_json = _channel_results_json(entry)
                    row.notification_id = entry.notification_id
                    row.dedupe_key = entry.dedupe_key
                    row.updated_at = updated_at
        except IntegrityError as exc:
            raise DuplicateReminderError(entry.dedupe_key or entry.history_id) from exc
        return entry.model_copy(update={"updated_at": updated_at})

    def get(self, history_id: str) -> ReminderHistoryEntry | None:
        with self._session() as session:
            row = session.get(_ReminderHistoryRow, history_id)
            return _row_to_entry(row) if row is not None else None

    def list_entries(
        self,
        *,
        user_id: str | None = None,
        obligation_id: str | None = None,
        since: datetime | None = None,
    ) -> list[ReminderHistoryEntry]:
        query = select(_ReminderHistoryRow)
        if user_id is not None:
            query = query.where(_ReminderHistoryRow.user_id == user_id)
        if obligation_id is not None:
            query = query.where(_ReminderHistoryRow.obligation_id == obligation_id)
        if since is not None:
            query = query.where(_ReminderHistoryRow.created_at >= _coerce_utc(since))
        query = query.order_by(_ReminderHistoryRow.created_at.desc(), _ReminderHistoryRow.history_id.desc())
        with self._session() as session:
            return [_row_to_entry(row) for row in session.execute(query).scalars()]


class SqlAlchemyDispatchLeaseRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderHistoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DispatchLeaseRow).delete()

    def try_acquire(self, lease_key: str, *, owner: str, now: datetime, ttl_seconds: int) -> bool:
        current = _coerce_utc(now)
        expires_at = current + timedelta(seconds=ttl_seconds)
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_DispatchLeaseRow, lease_key, with_for_update=True)
                    if row is None:
                        session.add(_DispatchLeaseRow(lease_key=lease_key, owner=owner, expires_at=expires_at))
                        return True
                    if row.owner != owner and _coerce_utc(row.expires_at) > current:
                        return False
                    row.owner = owner
                    row.expires_at = expires_at
                    return True
        except IntegrityError:
            return False

    def release(self, lease_key: str, *, owner: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_DispatchLeaseRow, lease_key)
                if row is not None and row.owner == owner:
                    session.delete(row)


def create_reminder_history_repository(backend: str, database_url: str) -> ReminderHistoryRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderHistoryRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderHistoryRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")


def create_dispatch_lease_repository(backend: str, database_url: str) -> DispatchLeaseRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDispatchLeaseRepository(database_url)
    if normalized == "inmemory":
        return InMemoryDispatchLeaseRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")


@dataclass(frozen=True)
class GuardDecision:
    already_sent: bool
    superseded: bool = False
    existing_history_id: str | None = None

    @property
    def allowed(self) -> bool:
        return not (self.already_sent or self.superseded)


class IdempotencyGuard:
    """History-backed duplicate check plus a short dispatch lease per (user, obligation, tier)."""

    def __init__(
        self,
        *,
        history: ReminderHistoryRepository,
        leases: DispatchLeaseRepository | None = None,
        lease_ttl_seconds: int = 300,
    ) -> None:
        self._history = history
        self._leases = leases
        self._lease_ttl_seconds = lease_ttl_seconds

    def check(self, *, user_id: str, obligation_id: str, tier: EscalationTier) -> GuardDecision:
        existing = self._history.find_sent(user_id=user_id, obligation_id=obligation_id, tiers=(tier,))
        if existing is not None:
            return GuardDecision(already_sent=True, existing_history_id=existing.history_id)
        higher = higher_tiers(tier)
        if higher:
            superseding = self._history.find_sent(user_id=user_id, obligation_id=obligation_id, tiers=higher)
            if superseding is not None:
                return GuardDecision(
                    already_sent=False,
                    superseded=True,
                    existing_history_id=superseding.history_id,
                )
        return GuardDecision(already_sent=False)

    @contextmanager
    def dispatch_lease(
        self,
        *,
        user_id: str,
        obligation_id: str,
        tier: EscalationTier,
        now: datetime,
    ) -> Iterator[bool]:
        """Yield True when this caller holds the dispatch lease for the tier."""
        if self._leases is None:
            yield True
            return
        lease_key = reminder_dedupe_key(user_id, obligation_id, tier)
        owner = secrets.token_hex(8)
        acquired = self._leases.try_acquire(lease_key, owner=owner, now=now, ttl_seconds=self._lease_ttl_seconds)
        if not acquired:
            logger.info("dispatch lease %s held by another run", lease_key)
        try:
            yield acquired
        finally:
            if acquired:
                self._leases.release(lease_key, owner=owner)
