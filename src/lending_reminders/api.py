from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query, status

from .analytics import ReminderAnalyticsService
from .channels import ChannelSender, build_channel_senders
from .config import Settings, get_settings
from .dispatcher import MultiChannelDispatcher
from .grace_period import GracePeriodCalculator
from .history import (
    IdempotencyGuard,
    create_dispatch_lease_repository,
    create_reminder_history_repository,
)
from .models import (
    Channel,
    EscalationTier,
    GracePeriodDefaultsResponse,
    GracePeriodExplanation,
    HistoryStatus,
    NotificationEntry,
    NotificationResponseRequest,
    ObligationType,
    OverdueSummaryResponse,
    ReminderAnalyticsResponse,
    ReminderHistoryListResponse,
    ReminderPreferences,
    ReminderPreferencesUpdate,
    ReminderRunRequest,
    RunReport,
    SubscriptionTier,
    SystemHealthResponse,
    UserReminderStatistics,
)
from .notifications import NotificationNotFoundError, create_notification_repository
from .orchestrator import OverdueReminderService
from .preferences import PreferencesService, PreferencesValidationError, load_preferences
from .scheduler import ContactWindowScheduler
from .store import InMemoryObligationStore, InMemoryUserStore, ObligationNotFoundError, UserNotFoundError

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])

user_store = InMemoryUserStore()
obligation_store = InMemoryObligationStore()
history_repo = create_reminder_history_repository(_settings.reminder_store_backend, _settings.database_url)
lease_repo = create_dispatch_lease_repository(_settings.reminder_store_backend, _settings.database_url)
notification_repo = create_notification_repository(_settings.reminder_store_backend, _settings.database_url)
channel_senders: dict[Channel, ChannelSender] = build_channel_senders(_settings)


def _build_services(settings: Settings) -> tuple[OverdueReminderService, GracePeriodCalculator, MultiChannelDispatcher]:
    calculator = GracePeriodCalculator(obligations=obligation_store)
    guard = IdempotencyGuard(
        history=history_repo,
        leases=lease_repo,
        lease_ttl_seconds=settings.dispatch_lease_ttl_seconds,
    )
    scheduler = ContactWindowScheduler(
        users=user_store,
        obligations=obligation_store,
        calculator=calculator,
        guard=guard,
        tolerance=timedelta(minutes=settings.send_tolerance_minutes),
        timezone_mode=settings.contact_window_timezone_mode,
    )
    dispatcher = MultiChannelDispatcher(
        senders=channel_senders,
        history=history_repo,
        notifications=notification_repo,
        channel_timeout_seconds=settings.channel_timeout_seconds,
    )
    service = OverdueReminderService(
        users=user_store,
        obligations=obligation_store,
        scheduler=scheduler,
        guard=guard,
        dispatcher=dispatcher,
    )
    return service, calculator, dispatcher


reminder_service, grace_calculator, reminder_dispatcher = _build_services(_settings)
preferences_service = PreferencesService(users=user_store)
analytics_service = ReminderAnalyticsService(
    history=history_repo,
    notifications=notification_repo,
    obligations=obligation_store,
)


def reset_runtime_state_for_tests() -> None:
    user_store.reset()
    obligation_store.reset()
    history_repo.reset()
    lease_repo.reset()
    notification_repo.reset()


def _clamp_limit(limit: int | None) -> int:
    if limit is None:
        return _settings.run_limit_max
    return min(limit, _settings.run_limit_max)


@router.get("/settings/{user_id}", response_model=ReminderPreferences)
def get_reminder_settings(user_id: str) -> ReminderPreferences:
    try:
        return preferences_service.get_preferences(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc


@router.put("/settings/{user_id}", response_model=ReminderPreferences)
def update_reminder_settings(user_id: str, payload: ReminderPreferencesUpdate) -> ReminderPreferences:
    try:
        return preferences_service.update_preferences(user_id, payload)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc
    except PreferencesValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors) from exc


@router.delete("/settings/{user_id}", response_model=ReminderPreferences)
def reset_reminder_settings(user_id: str) -> ReminderPreferences:
    try:
        return preferences_service.reset_preferences(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc


@router.get("/grace-period/defaults", response_model=GracePeriodDefaultsResponse)
def get_grace_period_defaults(
    user_tier: SubscriptionTier = "basic",
    obligation_type: ObligationType = "non-emergency",
) -> GracePeriodDefaultsResponse:
    return preferences_service.default_configuration(user_tier, obligation_type)


@router.get("/grace-period/{user_id}/{obligation_id}", response_model=GracePeriodExplanation)
def get_grace_period(user_id: str, obligation_id: str) -> GracePeriodExplanation:
    try:
        user = user_store.find_by_id(user_id)
        obligation = obligation_store.get(obligation_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc
    except ObligationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"obligation not found: {obligation_id}") from exc
    if obligation.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"obligation not found: {obligation_id}")
    breakdown = grace_calculator.calculate(obligation, user, load_preferences(user))
    return breakdown.to_explanation(obligation_id)


@router.post("/run/due", response_model=RunReport)
def run_due_reminders(payload: ReminderRunRequest | None = None) -> RunReport:
    request = payload or ReminderRunRequest()
    return reminder_service.process_due_reminders(now=request.now_override, limit=_clamp_limit(request.limit))


@router.post("/run/users/{user_id}", response_model=RunReport)
def run_user_reminders(user_id: str, payload: ReminderRunRequest | None = None) -> RunReport:
    request = payload or ReminderRunRequest()
    try:
        return reminder_service.process_user_obligations(user_id, now=request.now_override)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc


@router.get("/overdue-summary/{user_id}", response_model=OverdueSummaryResponse)
def get_overdue_summary(user_id: str) -> OverdueSummaryResponse:
    try:
        return reminder_service.get_overdue_summary(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc


@router.get("/history", response_model=ReminderHistoryListResponse)
def list_reminder_history(
    user_id: str | None = None,
    tier: EscalationTier | None = None,
    channel: Channel | None = None,
    status_filter: HistoryStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> ReminderHistoryListResponse:
    return analytics_service.list_history(
        user_id=user_id,
        tier=tier,
        channel=channel,
        status=status_filter,
        page=page,
        limit=limit,
    )


@router.get("/analytics", response_model=ReminderAnalyticsResponse)
def get_reminder_analytics(days: int = Query(default=30, ge=1, le=365)) -> ReminderAnalyticsResponse:
    return analytics_service.reminder_analytics(days=days)


@router.get("/health", response_model=SystemHealthResponse)
def get_system_health() -> SystemHealthResponse:
    return analytics_service.system_health()


@router.get("/statistics/{user_id}", response_model=UserReminderStatistics)
def get_user_statistics(user_id: str, days: int = Query(default=30, ge=1, le=365)) -> UserReminderStatistics:
    try:
        user_store.find_by_id(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"user not found: {user_id}") from exc
    return analytics_service.user_statistics(user_id, days=days)


@router.post(
    "/notifications/{notification_id}/response",
    response_model=NotificationEntry,
    status_code=status.HTTP_200_OK,
)
def record_notification_response(notification_id: str, payload: NotificationResponseRequest) -> NotificationEntry:
    try:
        return analytics_service.record_response(notification_id, payload.response)
    except NotificationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"notification not found: {notification_id}") from exc
