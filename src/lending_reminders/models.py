from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ObligationType = Literal["emergency", "non-emergency"]
ObligationStatus = Literal["pending", "overdue", "repaid", "written_off"]
Channel = Literal["email", "sms", "push", "whatsapp"]
SubscriptionTier = Literal["basic", "premium", "enterprise"]
TemplateTone = Literal["professional", "friendly", "formal"]
ReminderTemplate = Literal["friendly", "firm", "urgent", "legal", "collection"]
HistoryStatus = Literal["sent", "delivered", "failed", "bounced"]
NotificationSeverity = Literal["low", "medium", "high", "critical"]
NotificationResponse = Literal["pending", "viewed", "repaid", "contacted", "disputed", "ignored", "escalated"]
RunMode = Literal["schedule", "user", "all_users"]
OutcomeStatus = Literal["dispatched", "failed", "skipped"]
SystemStatus = Literal["healthy", "warning", "critical"]

CHANNELS: tuple[Channel, ...] = ("email", "sms", "push", "whatsapp")
ACTIVE_OBLIGATION_STATUSES = frozenset({"pending", "overdue"})
SENT_HISTORY_STATUSES = frozenset({"sent", "delivered"})


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EscalationTier(str, Enum):
    """Reminder severities in ascending order of escalation."""

    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FINAL = "final"
    COLLECTION = "collection"
    LEGAL = "legal"

    @property
    def rank(self) -> int:
        return _TIER_SEQUENCE.index(self)


_TIER_SEQUENCE = list(EscalationTier)


class Obligation(BaseModel):
    obligation_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    amount: float = Field(gt=0)
    currency: str = Field(default="KES", min_length=3, max_length=3)
    borrower_name: str = Field(min_length=1, max_length=256)
    borrower_contact: str | None = Field(default=None, max_length=256)
    type: ObligationType = "non-emergency"
    status: ObligationStatus = "pending"
    expected_return_date: date
    created_at: datetime = Field(default_factory=_now_utc)

    @field_validator("borrower_name")
    @classmethod
    def _normalize_borrower_name(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("borrower_name cannot be blank")
        return normalized

    def is_reminder_eligible(self) -> bool:
        return self.status in ACTIVE_OBLIGATION_STATUSES

    def mark_overdue(self) -> bool:
        """Move ``pending`` to ``overdue``. Returns True when the status changed."""
        if self.status == "overdue":
            return False
        if self.status != "pending":
            raise ValueError(f"cannot mark obligation {self.obligation_id} overdue from status {self.status}")
        self.status = "overdue"
        return True


class UserProfile(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    display_name: str = Field(default="User", max_length=256)
    subscription_tier: SubscriptionTier = "basic"
    email: str | None = None
    phone: str | None = None
    push_token: str | None = None
    whatsapp: str | None = None
    reminder_preferences: dict[str, object] = Field(default_factory=dict)

    def contact_for(self, channel: Channel) -> str | None:
        if channel == "email":
            return self.email
        if channel == "sms":
            return self.phone
        if channel == "push":
            return self.push_token
        return self.whatsapp or self.phone


class ChannelToggles(BaseModel):
    email: bool = True
    sms: bool = False
    push: bool = True
    whatsapp: bool = False

    def enabled_channels(self) -> list[Channel]:
        return [channel for channel in CHANNELS if getattr(self, channel)]


class GracePeriods(BaseModel):
    # None means "use the system default for the user's subscription tier".
    emergency: int | None = Field(default=None, ge=0, le=30)
    non_emergency: int | None = Field(default=None, ge=0, le=30)

    def for_type(self, obligation_type: ObligationType) -> int | None:
        if obligation_type == "emergency":
            return self.emergency
        return self.non_emergency


class EscalationSchedule(BaseModel):
    first: int = Field(default=1, ge=0, le=180)
    second: int = Field(default=7, ge=0, le=180)
    third: int = Field(default=14, ge=0, le=180)
    final: int = Field(default=30, ge=0, le=180)

    @model_validator(mode="after")
    def _validate_ascending(self) -> EscalationSchedule:
        if not (self.first < self.second < self.third < self.final):
            raise ValueError(
                "escalation schedule must be strictly ascending (first < second < third < final), "
                f"got {self.first}/{self.second}/{self.third}/{self.final}"
            )
        return self

    def offset_for(self, tier: EscalationTier) -> int:
        return getattr(self, tier.value)


class ContactWindow(BaseModel):
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=18, ge=0, le=23)
    timezone: str = Field(default="UTC", min_length=1, max_length=64)

    @field_validator("timezone")
    @classmethod
    def _normalize_timezone(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("timezone cannot be blank")
        return normalized


class TemplatePreferences(BaseModel):
    preferred_tone: TemplateTone = "professional"


class ReminderPreferences(BaseModel):
    enabled: bool = True
    channels: ChannelToggles = Field(default_factory=ChannelToggles)
    grace_periods: GracePeriods = Field(default_factory=GracePeriods)
    escalation_schedule: EscalationSchedule = Field(default_factory=EscalationSchedule)
    preferred_contact_times: ContactWindow = Field(default_factory=ContactWindow)
    templates: TemplatePreferences = Field(default_factory=TemplatePreferences)


class ReminderPreferencesUpdate(BaseModel):
    enabled: bool | None = None
    channels: dict[str, bool] | None = None
    grace_periods: dict[str, int | None] | None = None
    escalation_schedule: dict[str, int] | None = None
    preferred_contact_times: dict[str, int | str] | None = None
    templates: dict[str, str] | None = None


class ChannelDeliveryResult(BaseModel):
    channel: Channel
    success: bool
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    recipient_masked: str | None = None
    attempted_at: datetime
    delivered_at: datetime | None = None


class ReminderHistoryEntry(BaseModel):
    history_id: str
    user_id: str
    obligation_id: str
    tier: EscalationTier
    days_overdue: int = Field(ge=0)
    raw_days_overdue: int = 0
    grace_period_days: int = Field(default=0, ge=0)
    template: ReminderTemplate
    subject: str = ""
    message: str = ""
    status: HistoryStatus = "sent"
    channel_results: list[ChannelDeliveryResult] = Field(default_factory=list)
    notification_id: str | None = None
    amount: float = 0.0
    created_at: datetime = Field(default_factory=_now_utc)
    updated_at: datetime = Field(default_factory=_now_utc)

    @property
    def dedupe_key(self) -> str | None:
        if self.status not in SENT_HISTORY_STATUSES:
            return None
        return reminder_dedupe_key(self.user_id, self.obligation_id, self.tier)


def reminder_dedupe_key(user_id: str, obligation_id: str, tier: EscalationTier) -> str:
    return f"{user_id}:{obligation_id}:{tier.value}"


class NotificationEntry(BaseModel):
    notification_id: str
    user_id: str
    type: str
    title: str
    message: str
    related_id: str
    severity: NotificationSeverity = "medium"
    read: bool = False
    response: NotificationResponse = "pending"
    responded_at: datetime | None = None
    meta: dict[str, object] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now_utc)


class GracePeriodAdjustmentItem(BaseModel):
    name: str
    label: str
    delta: int
    applied: bool


class GracePeriodExplanation(BaseModel):
    obligation_id: str
    base_grace_period: int
    default_grace_period: int
    effective_grace_period: int
    explanation: str
    adjustments: list[GracePeriodAdjustmentItem]


class GracePeriodDefaultsResponse(BaseModel):
    user_tier: SubscriptionTier
    obligation_type: ObligationType
    default_grace_period: int
    all_defaults: dict[str, dict[str, int]]
    seasonal_adjustments: dict[int, int]
    amount_brackets: list[dict[str, float | int | None]]


class ReminderRunRequest(BaseModel):
    now_override: datetime | None = None
    limit: int | None = Field(default=None, ge=1, le=5000)


class RunError(BaseModel):
    obligation_id: str | None = None
    user_id: str | None = None
    error: str


class ReminderOutcome(BaseModel):
    obligation_id: str
    user_id: str
    status: OutcomeStatus
    reason: str
    tier: EscalationTier | None = None
    days_overdue: int | None = None
    grace_period_days: int | None = None
    scheduled_for: datetime | None = None
    history_id: str | None = None
    notification_id: str | None = None


class RunReport(BaseModel):
    run_id: str
    mode: RunMode
    run_at: datetime
    finished_at: datetime | None = None
    evaluated_count: int = 0
    dispatched_count: int = 0
    failed_count: int = 0
    sent_by_tier: dict[str, int] = Field(default_factory=dict)
    within_grace_count: int = 0
    already_sent_count: int = 0
    superseded_count: int = 0
    outside_window_count: int = 0
    not_due_count: int = 0
    disabled_count: int = 0
    marked_overdue_count: int = 0
    cancelled: bool = False
    errors: list[RunError] = Field(default_factory=list)
    results: list[ReminderOutcome] = Field(default_factory=list)


class OverdueObligationItem(BaseModel):
    obligation_id: str
    borrower_name: str
    borrower_contact: str | None = None
    amount: float
    expected_return_date: date
    days_overdue: int


class OverdueSummaryResponse(BaseModel):
    user_id: str
    total_count: int
    total_amount: float
    obligations: list[OverdueObligationItem]


class ReminderHistoryListResponse(BaseModel):
    items: list[ReminderHistoryEntry]
    total: int
    page: int
    limit: int


class NotificationResponseRequest(BaseModel):
    response: NotificationResponse


class TierEffectiveness(BaseModel):
    tier: EscalationTier
    total: int
    effective: int
    effectiveness_rate: float


class ChannelPerformance(BaseModel):
    channel: Channel
    total: int
    successful: int
    success_rate: float


class ReminderAnalyticsResponse(BaseModel):
    since: datetime
    total_reminders: int
    effective_reminders: int
    recovery_rate: int
    active_overdue_cases: int
    tier_effectiveness: list[TierEffectiveness]
    channel_performance: list[ChannelPerformance]


class UserReminderStatistics(BaseModel):
    user_id: str
    since: datetime
    total_sent: int
    total_delivered: int
    total_failed: int
    effective_reminders: int
    by_tier: dict[str, int]


class SystemHealthResponse(BaseModel):
    checked_at: datetime
    last_processed: Literal["recently", "not_recently"]
    reminders_last_hour: int
    deliveries_last_day: int
    failed_deliveries_last_day: int
    failure_rate: float
    overdue_queue_size: int
    system_status: SystemStatus
