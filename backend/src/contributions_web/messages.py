from __future__ import annotations

from .records import GroupRecord

BIRTHDAY_WISH_TITLE = "🎉 Happy Birthday!"

_FORWARD_LABELS = {7: "7 days", 1: "Tomorrow", 0: "Today"}


def format_amount(amount: float) -> str:
    return f"{amount:.2f}".rstrip("0").rstrip(".")


def _day_word(days: int) -> str:
    return "day" if days == 1 else "days"


def forward_label(horizon: int) -> str:
    return _FORWARD_LABELS.get(horizon, f"{horizon} days")


def forward_notification_type(group_types: set[str]) -> str:
    if len(group_types) == 1:
        (group_type,) = group_types
        return f"{group_type}_reminder"
    return "reminder"


def forward_title(notification_type: str, horizon: int) -> str:
    urgent = horizon == 0
    if notification_type == "birthday_reminder":
        return "Birthday Reminder - Action Required" if urgent else "Birthday Reminder"
    if notification_type == "subscription_reminder":
        return "Subscription Reminder - Action Required" if urgent else "Subscription Reminder"
    if notification_type == "general_reminder":
        return "Group Reminder - Action Required" if urgent else "Group Reminder"
    return "Upcoming Deadlines - Action Required" if urgent else "Upcoming Deadlines Reminder"


def forward_message(notification_type: str, horizon: int, first_group: GroupRecord) -> str:
    label = forward_label(horizon)
    platform = first_group.subscription_platform or first_group.name
    if notification_type == "birthday_reminder":
        when = {7: "coming up", 1: "tomorrow", 0: "today"}.get(horizon, "coming up")
        return f"{label} reminder: One or more birthdays {when}. Check your email for details."
    if notification_type == "subscription_reminder":
        if horizon == 7:
            body = f"Upcoming subscription {platform} in {first_group.name}."
        else:
            body = f"Subscription {platform} in {first_group.name} is due {label.lower()}."
        return f"{label} reminder: {body} Check your email for details."
    if notification_type == "general_reminder":
        if horizon == 7:
            body = f"Upcoming deadline for {first_group.name}."
        else:
            body = f"Deadline for {first_group.name} is {label.lower()}."
        return f"{label} reminder: {body} Check your email for details."
    when = {7: "You have upcoming deadlines.", 1: "You have deadlines tomorrow.", 0: "You have deadlines today."}
    return f"{label} reminder: {when.get(horizon, 'You have upcoming deadlines.')} Check your email for details."


def overdue_title(days_overdue: int) -> str:
    if days_overdue == 1:
        return "Reminder: Overdue Contribution - 1 Day"
    return f"⚠️ Overdue Contribution - {days_overdue} Days"


def overdue_email_subject(days_overdue: int) -> str:
    return f"Overdue Contributions - {days_overdue} {_day_word(days_overdue).capitalize()}"


def overdue_message(
    *,
    group: GroupRecord,
    event_name: str,
    days_overdue: int,
) -> str:
    ago = f"{days_overdue} {_day_word(days_overdue)} ago"
    amount = f"{format_amount(group.contribution_amount)} {group.currency}"
    if group.group_type == "birthday":
        return f"{event_name} was {ago}. Please send your contribution of {amount} in {group.name}."
    if group.group_type == "subscription":
        platform = group.subscription_platform or group.name
        return (
            f"Upcoming subscription {platform} in {group.name} deadline was {ago}. "
            f"Please send your contribution of {amount}."
        )
    return f"Deadline for {group.name} was {ago}. Please send your contribution of {amount}."


def birthday_wish_message(name: str) -> str:
    return f"Happy Birthday, {name}! 🎂🎉 Wishing you a wonderful day filled with joy and celebration!"
