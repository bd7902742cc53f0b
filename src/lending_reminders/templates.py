from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from .escalation import TIER_TEMPLATES
from .grace_period import GracePeriodBreakdown
from .models import EscalationTier, Obligation, ReminderTemplate, TemplateTone, UserProfile

_GREETINGS: MappingProxyType[TemplateTone, str] = MappingProxyType(
    {"professional": "Hello {name},", "friendly": "Hi {name},", "formal": "Dear {name},"}
)
_SIGN_OFFS: MappingProxyType[TemplateTone, str] = MappingProxyType(
    {
        "professional": "Thank you for using Vault5.",
        "friendly": "Thanks, and good luck with the follow-up!",
        "formal": "Yours sincerely,\nThe Vault5 Team",
    }
)

_SUBJECTS: MappingProxyType[ReminderTemplate, str] = MappingProxyType(
    {
        "friendly": "Reminder: {borrower} is {overdue} overdue",
        "firm": "Follow-up needed: lending to {borrower} is {overdue} overdue",
        "urgent": "Urgent: lending to {borrower} is {overdue} overdue",
        "legal": "Final notice: lending to {borrower} is {overdue} overdue",
        "collection": "Collection notice: lending to {borrower}",
    }
)

_OPENINGS: MappingProxyType[ReminderTemplate, str] = MappingProxyType(
    {
        "friendly": "Just a heads-up: your lending of {amount} to {borrower} is now {overdue} overdue.",
        "firm": "Your lending of {amount} to {borrower} is still outstanding and is now {overdue} overdue. "
        "Please follow up with the borrower.",
        "urgent": "Your lending of {amount} to {borrower} is {overdue} overdue and needs your attention now. "
        "We recommend contacting the borrower today.",
        "legal": "This is the final automated reminder for your lending of {amount} to {borrower}, "
        "now {overdue} overdue. Consider formal recovery options if the borrower does not respond.",
        "collection": "Your lending of {amount} to {borrower} is {overdue} overdue and has been flagged "
        "for collection.",
    }
)

NOTIFICATION_TITLES: MappingProxyType[EscalationTier, str] = MappingProxyType(
    {
        EscalationTier.FIRST: "Lending Overdue",
        EscalationTier.SECOND: "Lending Overdue: Follow-up",
        EscalationTier.THIRD: "Urgent: Lending Overdue",
        EscalationTier.FINAL: "Final Notice: Lending Overdue",
        EscalationTier.COLLECTION: "Collection Notice",
        EscalationTier.LEGAL: "Legal Notice",
    }
)


@dataclass(frozen=True)
class RenderedReminder:
    template: ReminderTemplate
    subject: str
    body: str
    notification_title: str
    notification_message: str


def format_amount(amount: float, currency: str) -> str:
    if float(amount).is_integer():
        return f"{currency} {int(amount):,}"
    return f"{currency} {amount:,.2f}"


def format_days(days: int) -> str:
    return "1 day" if days == 1 else f"{days} days"


def render_reminder(
    *,
    tier: EscalationTier,
    obligation: Obligation,
    user: UserProfile,
    tone: TemplateTone,
    days_overdue: int,
    grace: GracePeriodBreakdown,
) -> RenderedReminder:
    template = TIER_TEMPLATES[tier]
    amount = format_amount(obligation.amount, obligation.currency)
    overdue = format_days(days_overdue)
    due_date = obligation.expected_return_date.isoformat()
    values = {"amount": amount, "borrower": obligation.borrower_name, "overdue": overdue}

    lines = [
        _GREETINGS[tone].format(name=user.display_name),
        "",
        _OPENINGS[template].format(**values),
        "",
        "Lending details:",
        f"- Borrower: {obligation.borrower_name}",
        f"- Contact: {obligation.borrower_contact or 'Not provided'}",
        f"- Amount: {amount}",
        f"- Expected return date: {due_date}",
        f"- Days overdue (after grace period): {overdue}",
        f"- Grace period applied: {grace.explanation()}",
        "",
        "If you have already been repaid, please update the lending status in your Vault5 app.",
        "",
        _SIGN_OFFS[tone],
    ]
    notification_message = (
        f"Your lending of {amount} to {obligation.borrower_name} is {overdue} overdue "
        f"(due {due_date}). Please follow up with the borrower."
    )
    return RenderedReminder(
        template=template,
        subject=_SUBJECTS[template].format(**values),
        body="\n".join(lines),
        notification_title=NOTIFICATION_TITLES[tier],
        notification_message=notification_message,
    )
