"""Recurrence rules and whole-day arithmetic for contribution deadlines.

Every group type maps to one rule variant. A rule answers two questions for a
reference date: when is the next occurrence (today counts) and when was the
most recent one (today counts). Day-of-month values beyond the end of a short
month clamp to its last day, so a subscription due on the 31st falls on
Feb 28 (or 29) and a Feb 29 birthday falls on Feb 28 in common years.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Union

from .records import GroupRecord

FORWARD_HORIZONS: tuple[int, ...] = (7, 1, 0)
OVERDUE_HORIZONS: tuple[int, ...] = (1, 3, 7, 14)


class DeadlineConfigError(ValueError):
    """Raised when a group's deadline configuration cannot produce a rule."""


@dataclass(frozen=True)
class BirthdayRule:
    month: int
    day: int


@dataclass(frozen=True)
class MonthlySubscriptionRule:
    day_of_month: int


@dataclass(frozen=True)
class AnnualSubscriptionRule:
    month: int
    day_of_month: int


@dataclass(frozen=True)
class GeneralDeadlineRule:
    deadline: date


DeadlineRule = Union[BirthdayRule, MonthlySubscriptionRule, AnnualSubscriptionRule, GeneralDeadlineRule]


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamped_day(year: int, month: int, day: int) -> int:
    return min(day, days_in_month(year, month))


def _on(year: int, month: int, day: int) -> date:
    return date(year, month, clamped_day(year, month, day))


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def as_date(value: date | datetime) -> date:
    """Drop any time-of-day component so day arithmetic works on midnights."""
    if isinstance(value, datetime):
        return value.date()
    return value


def days_between(reference: date | datetime, target: date | datetime) -> int:
    """Whole days from ``reference`` to ``target``; negative when target is earlier."""
    return (as_date(target) - as_date(reference)).days


def next_occurrence(rule: DeadlineRule, reference: date | datetime) -> date:
    today = as_date(reference)
    if isinstance(rule, GeneralDeadlineRule):
        return rule.deadline
    if isinstance(rule, MonthlySubscriptionRule):
        candidate = _on(today.year, today.month, rule.day_of_month)
        if candidate < today:
            year, month = _shift_month(today.year, today.month, 1)
            candidate = _on(year, month, rule.day_of_month)
        return candidate
    month, day = _annual_parts(rule)
    candidate = _on(today.year, month, day)
    if candidate < today:
        candidate = _on(today.year + 1, month, day)
    return candidate


def most_recent_occurrence(rule: DeadlineRule, reference: date | datetime) -> date:
    today = as_date(reference)
    if isinstance(rule, GeneralDeadlineRule):
        return rule.deadline
    if isinstance(rule, MonthlySubscriptionRule):
        candidate = _on(today.year, today.month, rule.day_of_month)
        if candidate > today:
            year, month = _shift_month(today.year, today.month, -1)
            candidate = _on(year, month, rule.day_of_month)
        return candidate
    month, day = _annual_parts(rule)
    candidate = _on(today.year, month, day)
    if candidate > today:
        candidate = _on(today.year - 1, month, day)
    return candidate


def _annual_parts(rule: DeadlineRule) -> tuple[int, int]:
    if isinstance(rule, BirthdayRule):
        return rule.month, rule.day
    if isinstance(rule, AnnualSubscriptionRule):
        return rule.month, rule.day_of_month
    raise DeadlineConfigError(f"unsupported deadline rule: {rule!r}")


def period_start(rule: DeadlineRule, anchor: date | datetime) -> date | None:
    anchor_day = as_date(anchor)
    if isinstance(rule, MonthlySubscriptionRule):
        return anchor_day.replace(day=1)
    if isinstance(rule, AnnualSubscriptionRule):
        return date(anchor_day.year, 1, 1)
    return None


def period_key(rule: DeadlineRule, anchor: date | datetime) -> str:
    """Key that identifies which contribution record covers an occurrence.

    Birthdays are keyed by year, subscriptions by billing period start and a
    general deadline has a single record per contributor.
    """
    if isinstance(rule, BirthdayRule):
        return str(as_date(anchor).year)
    if isinstance(rule, GeneralDeadlineRule):
        return "deadline"
    start = period_start(rule, anchor)
    if start is None:
        raise DeadlineConfigError(f"unsupported deadline rule: {rule!r}")
    return start.isoformat()


def birthday_rule(birthday: date) -> BirthdayRule:
    return BirthdayRule(month=birthday.month, day=birthday.day)


def _require_day(value: int | None, *, field: str, group: GroupRecord) -> int:
    if value is None:
        raise DeadlineConfigError(f"group {group.group_id} has no {field}")
    if not 1 <= value <= 31:
        raise DeadlineConfigError(f"group {group.group_id} has invalid {field}: {value}")
    return value


def _monthly_rule(group: GroupRecord) -> DeadlineRule | None:
    day = _require_day(group.subscription_deadline_day, field="subscription_deadline_day", group=group)
    return MonthlySubscriptionRule(day_of_month=day)


def _annual_rule(group: GroupRecord) -> DeadlineRule | None:
    day = _require_day(group.subscription_deadline_day, field="subscription_deadline_day", group=group)
    month = group.subscription_deadline_month
    if month is None or not 1 <= month <= 12:
        raise DeadlineConfigError(f"group {group.group_id} has invalid subscription_deadline_month: {month}")
    if day > days_in_month(2024, month):
        raise DeadlineConfigError(f"group {group.group_id} deadline day {day} never occurs in month {month}")
    return AnnualSubscriptionRule(month=month, day_of_month=day)


def _subscription_rule(group: GroupRecord) -> DeadlineRule | None:
    frequency = (group.subscription_frequency or "").strip().lower()
    builder = _SUBSCRIPTION_BUILDERS.get(frequency)
    if builder is None:
        raise DeadlineConfigError(
            f"group {group.group_id} has unsupported subscription_frequency: {group.subscription_frequency!r}"
        )
    return builder(group)


def _general_rule(group: GroupRecord) -> DeadlineRule | None:
    if group.deadline is None:
        return None
    return GeneralDeadlineRule(deadline=group.deadline)


_SUBSCRIPTION_BUILDERS: dict[str, Callable[[GroupRecord], DeadlineRule | None]] = {
    "monthly": _monthly_rule,
    "annual": _annual_rule,
}

_GROUP_RULE_BUILDERS: dict[str, Callable[[GroupRecord], DeadlineRule | None]] = {
    "subscription": _subscription_rule,
    "general": _general_rule,
}


def rule_for_group(group: GroupRecord) -> DeadlineRule | None:
    """Build the group-level rule; ``None`` means the group has no deadline yet.

    Birthday groups have no group-level rule: each celebrant carries their own
    :class:`BirthdayRule`.
    """
    builder = _GROUP_RULE_BUILDERS.get(group.group_type)
    if builder is None:
        raise DeadlineConfigError(f"group {group.group_id} has no group-level deadline for type {group.group_type!r}")
    return builder(group)
