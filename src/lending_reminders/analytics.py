from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from .escalation import TIER_ORDER
from .models import (
    CHANNELS,
    SENT_HISTORY_STATUSES,
    Channel,
    ChannelPerformance,
    EscalationTier,
    HistoryStatus,
    NotificationEntry,
    NotificationResponse,
    ReminderAnalyticsResponse,
    ReminderHistoryEntry,
    ReminderHistoryListResponse,
    SystemHealthResponse,
    SystemStatus,
    TierEffectiveness,
    UserReminderStatistics,
)
from .notifications import NotificationNotFoundError
from .repositories import NotificationRepository, ObligationRepository, ReminderHistoryRepository

EFFECTIVE_RESPONSES: frozenset[str] = frozenset({"repaid", "contacted"})
FAILED_HISTORY_STATUSES: frozenset[str] = frozenset({"failed", "bounced"})
# Failure-rate percentages at which system health degrades.
HEALTH_WARNING_FAILURE_RATE = 5.0
HEALTH_CRITICAL_FAILURE_RATE = 15.0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _rate(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


def _system_status(failure_rate: float) -> SystemStatus:
    if failure_rate < HEALTH_WARNING_FAILURE_RATE:
        return "healthy"
    if failure_rate < HEALTH_CRITICAL_FAILURE_RATE:
        return "warning"
    return "critical"


class ReminderAnalyticsService:
    def __init__(
        self,
        *,
        history: ReminderHistoryRepository,
        notifications: NotificationRepository,
        obligations: ObligationRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._history = history
        self._notifications = notifications
        self._obligations = obligations
        self._clock = clock or _now_utc

    def reminder_analytics(self, *, days: int = 30, now: datetime | None = None) -> ReminderAnalyticsResponse:
        current = _coerce_utc(now or self._clock())
        since = current - timedelta(days=days)
        entries = self._history.list_entries(since=since)
        sent = [value for value in entries if value.status in SENT_HISTORY_STATUSES]
        effective_ids = self._effective_history_ids(sent)

        tier_effectiveness: list[TierEffectiveness] = []
        for tier in TIER_ORDER:
            tier_entries = [value for value in sent if value.tier == tier]
            if not tier_entries:
                continue
            effective = sum(1 for value in tier_entries if value.history_id in effective_ids)
            tier_effectiveness.append(
                TierEffectiveness(
                    tier=tier,
                    total=len(tier_entries),
                    effective=effective,
                    effectiveness_rate=_rate(effective, len(tier_entries)),
                )
            )

        return ReminderAnalyticsResponse(
            since=since,
            total_reminders=len(sent),
            effective_reminders=len(effective_ids),
            recovery_rate=round(_rate(len(effective_ids), len(sent))),
            active_overdue_cases=len(self._obligations.find_overdue(current)),
            tier_effectiveness=tier_effectiveness,
            channel_performance=self._channel_performance(entries),
        )

    def user_statistics(
        self,
        user_id: str,
        *,
        days: int = 30,
        now: datetime | None = None,
    ) -> UserReminderStatistics:
        current = _coerce_utc(now or self._clock())
        since = current - timedelta(days=days)
        entries = self._history.list_entries(user_id=user_id, since=since)
        sent = [value for value in entries if value.status in SENT_HISTORY_STATUSES]

        by_tier: dict[str, int] = {}
        for value in sent:
            by_tier[value.tier.value] = by_tier.get(value.tier.value, 0) + 1

        return UserReminderStatistics(
            user_id=user_id,
            since=since,
            total_sent=len(sent),
            total_delivered=sum(1 for value in entries if value.status == "delivered"),
            total_failed=sum(1 for value in entries if value.status in FAILED_HISTORY_STATUSES),
            effective_reminders=len(self._effective_history_ids(sent)),
            by_tier=by_tier,
        )

    def system_health(self, *, now: datetime | None = None) -> SystemHealthResponse:
        current = _coerce_utc(now or self._clock())
        recent = self._history.list_entries(since=current - timedelta(hours=1))
        last_day = self._history.list_entries(since=current - timedelta(days=1))
        failed = sum(1 for value in last_day if value.status in FAILED_HISTORY_STATUSES)
        failure_rate = failed * 100 / len(last_day) if last_day else 0.0

        return SystemHealthResponse(
            checked_at=current,
            last_processed="recently" if recent else "not_recently",
            reminders_last_hour=len(recent),
            deliveries_last_day=len(last_day),
            failed_deliveries_last_day=failed,
            failure_rate=round(failure_rate, 2),
            overdue_queue_size=len(self._obligations.find_overdue(current)),
            system_status=_system_status(failure_rate),
        )

    def record_response(
        self,
        notification_id: str,
        response: NotificationResponse,
        *,
        now: datetime | None = None,
    ) -> NotificationEntry:
        if self._notifications.get(notification_id) is None:
            raise NotificationNotFoundError(notification_id)
        return self._notifications.record_response(
            notification_id,
            response=response,
            responded_at=_coerce_utc(now or self._clock()),
        )

    def list_history(
        self,
        *,
        user_id: str | None = None,
        tier: EscalationTier | None = None,
        channel: Channel | None = None,
        status: HistoryStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ReminderHistoryListResponse:
        entries = [
            value
            for value in self._history.list_entries(user_id=user_id)
            if (tier is None or value.tier == tier)
            and (status is None or value.status == status)
            and (channel is None or any(result.channel == channel for result in value.channel_results))
        ]
        start = (page - 1) * limit
        return ReminderHistoryListResponse(
            items=entries[start : start + limit],
            total=len(entries),
            page=page,
            limit=limit,
        )

    def _effective_history_ids(self, entries: list[ReminderHistoryEntry]) -> set[str]:
        by_notification = {value.notification_id: value.history_id for value in entries if value.notification_id}
        if not by_notification:
            return set()
        return {
            by_notification[notification.notification_id]
            for notification in self._notifications.list_by_ids(by_notification)
            if notification.response in EFFECTIVE_RESPONSES
        }

    def _channel_performance(self, entries: list[ReminderHistoryEntry]) -> list[ChannelPerformance]:
        totals: dict[Channel, list[int]] = {}
        for entry in entries:
            for result in entry.channel_results:
                counts = totals.setdefault(result.channel, [0, 0])
                counts[0] += 1
                if result.success:
                    counts[1] += 1
        return [
            ChannelPerformance(
                channel=channel,
                total=totals[channel][0],
                successful=totals[channel][1],
                success_rate=_rate(totals[channel][1], totals[channel][0]),
            )
            for channel in CHANNELS
            if channel in totals
        ]
