from __future__ import annotations

import logging
from copy import deepcopy

from pydantic import ValidationError

from .grace_period import AMOUNT_BRACKETS, DEFAULT_GRACE_PERIODS, SEASONAL_ADJUSTMENTS, default_grace_period
from .models import (
    GracePeriodDefaultsResponse,
    ObligationType,
    ReminderPreferences,
    ReminderPreferencesUpdate,
    SubscriptionTier,
    UserProfile,
)
from .repositories import UserRepository

logger = logging.getLogger(__name__)

_SECTION_KEYS: dict[str, set[str]] = {
    "channels": {"email", "sms", "push", "whatsapp"},
    "grace_periods": {"emergency", "non_emergency"},
    "escalation_schedule": {"first", "second", "third", "final"},
    "preferred_contact_times": {"start_hour", "end_hour", "timezone"},
    "templates": {"preferred_tone"},
}


class PreferencesValidationError(ValueError):
    """Raised when a preferences update is rejected before it is persisted."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def _format_validation_error(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def load_preferences(user: UserProfile) -> ReminderPreferences:
    """Stored preferences merged over defaults. Unreadable stored data falls back to defaults."""
    try:
        return ReminderPreferences.model_validate(user.reminder_preferences or {})
    except ValidationError:
        logger.warning("stored reminder preferences for user %s are invalid; using defaults", user.user_id)
        return ReminderPreferences()


def _merge_update(current: dict[str, object], update: dict[str, object]) -> dict[str, object]:
    merged = deepcopy(current)
    for key, value in update.items():
        existing = merged.get(key)
        if isinstance(value, dict) and isinstance(existing, dict):
            merged[key] = {**existing, **value}
        else:
            merged[key] = value
    return merged


class PreferencesService:
    def __init__(self, *, users: UserRepository) -> None:
        self._users = users

    def get_preferences(self, user_id: str) -> ReminderPreferences:
        user = self._users.find_by_id(user_id)
        if not user.reminder_preferences:
            preferences = ReminderPreferences()
            self._users.save_preferences(user_id, preferences.model_dump(mode="json"))
            return preferences
        return load_preferences(user)

    def update_preferences(self, user_id: str, payload: ReminderPreferencesUpdate) -> ReminderPreferences:
        user = self._users.find_by_id(user_id)
        update = payload.model_dump(exclude_unset=True)
        errors = self._unknown_key_errors(update)
        if errors:
            raise PreferencesValidationError(errors)

        merged = _merge_update(dict(user.reminder_preferences or {}), update)
        try:
            preferences = ReminderPreferences.model_validate(merged)
        except ValidationError as exc:
            raise PreferencesValidationError(_format_validation_error(exc)) from exc

        self._users.save_preferences(user_id, preferences.model_dump(mode="json"))
        logger.info("reminder preferences updated for user %s", user_id)
        return preferences

    def reset_preferences(self, user_id: str) -> ReminderPreferences:
        self._users.find_by_id(user_id)
        self._users.save_preferences(user_id, {})
        return ReminderPreferences()

    def default_configuration(
        self,
        user_tier: SubscriptionTier,
        obligation_type: ObligationType,
    ) -> GracePeriodDefaultsResponse:
        return GracePeriodDefaultsResponse(
            user_tier=user_tier,
            obligation_type=obligation_type,
            default_grace_period=default_grace_period(user_tier, obligation_type),
            all_defaults={tier: dict(values) for tier, values in DEFAULT_GRACE_PERIODS.items()},
            seasonal_adjustments=dict(SEASONAL_ADJUSTMENTS),
            amount_brackets=[
                {"max_amount": bracket.max_amount, "adjustment": bracket.adjustment}
                for bracket in AMOUNT_BRACKETS
            ],
        )

    def _unknown_key_errors(self, update: dict[str, object]) -> list[str]:
        errors: list[str] = []
        for section, allowed in _SECTION_KEYS.items():
            values = update.get(section)
            if not isinstance(values, dict):
                continue
            for key in sorted(set(values) - allowed):
                errors.append(f"{section}.{key}: unknown setting")
        return errors
