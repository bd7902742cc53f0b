from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import date, datetime, timezone

from .channels import ChannelContent, ChannelDeliveryError, ChannelReceipt, ChannelSender, mask_contact_target
from .escalation import TIER_ESCALATION_LEVELS, TIER_SEVERITIES
from .grace_period import GracePeriodBreakdown
from .history import ReminderHistoryNotFoundError
from .models import (
    Channel,
    ChannelDeliveryResult,
    EscalationTier,
    HistoryStatus,
    NotificationEntry,
    Obligation,
    ReminderHistoryEntry,
    ReminderPreferences,
    UserProfile,
)
from .repositories import NotificationRepository, ReminderHistoryRepository
from .templates import RenderedReminder, render_reminder

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DispatchRequest:
    user: UserProfile
    preferences: ReminderPreferences
    obligation: Obligation
    tier: EscalationTier
    days_overdue: int
    raw_days_overdue: int
    grace: GracePeriodBreakdown


@dataclass(frozen=True)
class DispatchResult:
    history: ReminderHistoryEntry
    notification_id: str | None

    @property
    def dispatched(self) -> bool:
        return self.history.status == "sent"

    @property
    def succeeded_channels(self) -> list[Channel]:
        return [value.channel for value in self.history.channel_results if value.success]


def history_status_for(results: list[ChannelDeliveryResult]) -> HistoryStatus:
    if any(value.delivered_at is not None for value in results):
        return "delivered"
    return "sent" if any(value.success for value in results) else "failed"


class MultiChannelDispatcher:
    """Send one reminder over every enabled channel and record the outcome.

    Channels are attempted concurrently and each attempt is bounded by
    ``channel_timeout_seconds``; one channel failing never stops the others. A history
    row is written for every dispatch and a notification is mirrored for the lender on
    a best-effort basis.
    """

    def __init__(
        self,
        *,
        senders: Mapping[Channel, ChannelSender],
        history: ReminderHistoryRepository,
        notifications: NotificationRepository,
        channel_timeout_seconds: float = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._senders = dict(senders)
        self._history = history
        self._notifications = notifications
        self._channel_timeout_seconds = channel_timeout_seconds
        self._clock = clock or _now_utc

    def dispatch(self, request: DispatchRequest, *, now: datetime | None = None) -> DispatchResult:
        current = _coerce_utc(now or self._clock())
        rendered = render_reminder(
            tier=request.tier,
            obligation=request.obligation,
            user=request.user,
            tone=request.preferences.templates.preferred_tone,
            days_overdue=request.days_overdue,
            grace=request.grace,
        )
        content = ChannelContent(
            user_id=request.user.user_id,
            obligation_id=request.obligation.obligation_id,
            tier=request.tier.value,
            subject=rendered.subject,
            body=rendered.body,
        )
        channels = request.preferences.channels.enabled_channels()
        channel_results = self._fan_out(request.user, channels, content, current)

        entry = ReminderHistoryEntry(
            history_id=self._history.next_id(),
            user_id=request.user.user_id,
            obligation_id=request.obligation.obligation_id,
            tier=request.tier,
            days_overdue=request.days_overdue,
            raw_days_overdue=request.raw_days_overdue,
            grace_period_days=request.grace.effective_days,
            template=rendered.template,
            subject=rendered.subject,
            message=rendered.body,
            status=history_status_for(channel_results),
            channel_results=channel_results,
            amount=request.obligation.amount,
            created_at=current,
            updated_at=current,
        )
        stored = self._history.insert(entry)
        logger.info(
            "reminder %s for obligation %s tier=%s status=%s channels=%d",
            stored.history_id,
            stored.obligation_id,
            stored.tier.value,
            stored.status,
            len(channel_results),
        )

        notification_id = self._mirror_notification(request, rendered, stored, current)
        if notification_id is not None:
            try:
                stored = self._history.update(stored.model_copy(update={"notification_id": notification_id}))
            except Exception:  # noqa: BLE001
                logger.warning(
                    "failed to link notification %s to reminder %s",
                    notification_id,
                    stored.history_id,
                    exc_info=True,
                )
        return DispatchResult(history=stored, notification_id=notification_id)

    def confirm_delivery(
        self,
        history_id: str,
        *,
        channel: Channel,
        delivered: bool,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> ReminderHistoryEntry:
        current = _coerce_utc(now or self._clock())
        entry = self._history.get(history_id)
        if entry is None:
            raise ReminderHistoryNotFoundError(history_id)

        updated_results: list[ChannelDeliveryResult] = []
        matched = False
        for value in entry.channel_results:
            if value.channel != channel:
                updated_results.append(value)
                continue
            matched = True
            if delivered:
                updated_results.append(value.model_copy(update={"success": True, "delivered_at": current}))
            else:
                updated_results.append(
                    value.model_copy(
                        update={
                            "success": False,
                            "delivered_at": None,
                            "error_code": "delivery_failed",
                            "error_message": error_message or "Provider reported the message as undelivered",
                        }
                    )
                )
        if not matched:
            raise ValueError(f"reminder {history_id} has no {channel} attempt")

        status = history_status_for(updated_results)
        if status == "failed" and entry.status in {"sent", "delivered"}:
            status = "bounced"
        return self._history.update(
            entry.model_copy(update={"channel_results": updated_results, "status": status, "updated_at": current})
        )

    def _fan_out(
        self,
        user: UserProfile,
        channels: list[Channel],
        content: ChannelContent,
        attempted_at: datetime,
    ) -> list[ChannelDeliveryResult]:
        results: dict[Channel, ChannelDeliveryResult] = {}
        pending: dict[Channel, tuple[str, Future[ChannelReceipt]]] = {}
        executor = ThreadPoolExecutor(max_workers=max(1, len(channels)), thread_name_prefix="reminder-channel")
        try:
            for channel in channels:
                recipient = user.contact_for(channel)
                sender = self._senders.get(channel)
                if not recipient:
                    results[channel] = ChannelDeliveryResult(
                        channel=channel,
                        success=False,
                        error_code="recipient_missing",
                        error_message=f"No {channel} contact on file",
                        attempted_at=attempted_at,
                    )
                elif sender is None:
                    results[channel] = ChannelDeliveryResult(
                        channel=channel,
                        success=False,
                        error_code="sender_unavailable",
                        error_message=f"No sender configured for {channel}",
                        recipient_masked=mask_contact_target(recipient, channel),
                        attempted_at=attempted_at,
                    )
                else:
                    pending[channel] = (recipient, executor.submit(sender.send, recipient, content))

            # A single deadline bounds every channel in the fan-out.
            finished: set[Future[ChannelReceipt]] = set()
            if pending:
                finished, _ = wait([future for _, future in pending.values()], timeout=self._channel_timeout_seconds)
            for channel, (recipient, future) in pending.items():
                results[channel] = self._collect(
                    channel, recipient, future, attempted_at, finished=future in finished
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return [results[channel] for channel in channels]

    def _collect(
        self,
        channel: Channel,
        recipient: str,
        future: Future[ChannelReceipt],
        attempted_at: datetime,
        *,
        finished: bool,
    ) -> ChannelDeliveryResult:
        masked = mask_contact_target(recipient, channel)
        if not finished:
            future.cancel()
            logger.warning("%s delivery to %s timed out after %ss", channel, masked, self._channel_timeout_seconds)
            return ChannelDeliveryResult(
                channel=channel,
                success=False,
                error_code="timeout",
                error_message=f"Channel did not respond within {self._channel_timeout_seconds}s",
                recipient_masked=masked,
                attempted_at=attempted_at,
            )
        try:
            receipt = future.result()
        except ChannelDeliveryError as exc:
            logger.warning("%s delivery to %s failed: %s", channel, masked, exc.error_code)
            return ChannelDeliveryResult(
                channel=channel,
                success=False,
                error_code=exc.error_code,
                error_message=exc.message,
                recipient_masked=masked,
                attempted_at=attempted_at,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s delivery to %s raised unexpectedly", channel, masked, exc_info=True)
            return ChannelDeliveryResult(
                channel=channel,
                success=False,
                error_code="channel_error",
                error_message=str(exc) or exc.__class__.__name__,
                recipient_masked=masked,
                attempted_at=attempted_at,
            )
        return ChannelDeliveryResult(
            channel=channel,
            success=True,
            provider_message_id=receipt.message_id,
            recipient_masked=masked,
            attempted_at=attempted_at,
        )

    def _mirror_notification(
        self,
        request: DispatchRequest,
        rendered: RenderedReminder,
        history: ReminderHistoryEntry,
        created_at: datetime,
    ) -> str | None:
        expected: date = request.obligation.expected_return_date
        notification = NotificationEntry(
            notification_id="",
            user_id=request.user.user_id,
            type=f"lending_overdue_{request.tier.value}",
            title=rendered.notification_title,
            message=rendered.notification_message,
            related_id=request.obligation.obligation_id,
            severity=TIER_SEVERITIES[request.tier],
            meta={
                "amount": request.obligation.amount,
                "borrower_name": request.obligation.borrower_name,
                "days_overdue": request.days_overdue,
                "escalation_level": TIER_ESCALATION_LEVELS[request.tier],
                "reminder_tier": request.tier.value,
                "reminder_history_id": history.history_id,
                "expected_return_date": expected.isoformat(),
            },
            created_at=created_at,
        )
        try:
            stored = self._notifications.insert(notification)
        except Exception:  # noqa: BLE001
            logger.warning(
                "failed to create notification for reminder %s",
                history.history_id,
                exc_info=True,
            )
            return None
        return stored.notification_id
