from __future__ import annotations

import pytest
from pydantic import ValidationError

from lending_reminders.models import EscalationSchedule, ReminderPreferencesUpdate, UserProfile
from lending_reminders.preferences import PreferencesService, PreferencesValidationError, load_preferences
from lending_reminders.store import InMemoryUserStore, UserNotFoundError


def _service() -> tuple[PreferencesService, InMemoryUserStore]:
    users = InMemoryUserStore()
    users.add(UserProfile(user_id="user-1", display_name="Amina"))
    return PreferencesService(users=users), users


def test_ascending_schedule_is_accepted() -> None:
    schedule = EscalationSchedule(first=1, second=7, third=14, final=30)

    assert schedule.final == 30


def test_out_of_order_schedule_is_rejected() -> None:
    with pytest.raises(ValidationError, match="strictly ascending"):
        EscalationSchedule(first=7, second=1, third=14, final=30)


def test_first_read_persists_defaults() -> None:
    service, users = _service()

    preferences = service.get_preferences("user-1")

    assert preferences.enabled is True
    assert preferences.channels.enabled_channels() == ["email", "push"]
    assert users.find_by_id("user-1").reminder_preferences["escalation_schedule"] == {
        "first": 1,
        "second": 7,
        "third": 14,
        "final": 30,
    }


def test_partial_update_merges_sections() -> None:
    service, users = _service()

    updated = service.update_preferences(
        "user-1",
        ReminderPreferencesUpdate(channels={"sms": True}, preferred_contact_times={"start_hour": 22, "end_hour": 6}),
    )

    assert updated.channels.email is True
    assert updated.channels.sms is True
    assert updated.preferred_contact_times.start_hour == 22
    assert load_preferences(users.find_by_id("user-1")).channels.sms is True


def test_invalid_update_is_rejected_before_persisting() -> None:
    service, users = _service()
    service.update_preferences("user-1", ReminderPreferencesUpdate(grace_periods={"emergency": 5}))

    with pytest.raises(PreferencesValidationError) as excinfo:
        service.update_preferences(
            "user-1",
            ReminderPreferencesUpdate(escalation_schedule={"first": 7, "second": 1, "third": 14, "final": 30}),
        )

    assert "strictly ascending" in str(excinfo.value)
    stored = load_preferences(users.find_by_id("user-1"))
    assert stored.escalation_schedule.first == 1
    assert stored.grace_periods.emergency == 5


@pytest.mark.parametrize(
    "payload",
    [
        {"grace_periods": {"emergency": 31}},
        {"grace_periods": {"non_emergency": -1}},
        {"escalation_schedule": {"final": 181}},
        {"preferred_contact_times": {"start_hour": 24}},
        {"channels": {"pigeon": True}},
    ],
)
def test_out_of_range_values_are_rejected(payload: dict[str, object]) -> None:
    service, _ = _service()

    with pytest.raises(PreferencesValidationError):
        service.update_preferences("user-1", ReminderPreferencesUpdate.model_validate(payload))


def test_reset_restores_defaults() -> None:
    service, users = _service()
    service.update_preferences("user-1", ReminderPreferencesUpdate(enabled=False))

    reset = service.reset_preferences("user-1")

    assert reset.enabled is True
    assert users.find_by_id("user-1").reminder_preferences == {}


def test_unknown_user_raises() -> None:
    service, _ = _service()

    with pytest.raises(UserNotFoundError):
        service.get_preferences("missing")


def test_invalid_stored_preferences_fall_back_to_defaults() -> None:
    user = UserProfile(user_id="user-1", reminder_preferences={"escalation_schedule": {"first": 9, "second": 2}})

    assert load_preferences(user).escalation_schedule.first == 1


def test_default_configuration() -> None:
    service, _ = _service()

    defaults = service.default_configuration("premium", "emergency")

    assert defaults.default_grace_period == 2
    assert defaults.all_defaults["enterprise"]["non-emergency"] == 7
    assert defaults.seasonal_adjustments[12] == 3
    assert defaults.amount_brackets[0] == {"max_amount": 5000, "adjustment": 1}
