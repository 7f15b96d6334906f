from __future__ import annotations

from datetime import date, datetime

import pytest

from contributions_web.deadlines import (
    AnnualSubscriptionRule,
    BirthdayRule,
    DeadlineConfigError,
    GeneralDeadlineRule,
    MonthlySubscriptionRule,
    clamped_day,
    days_between,
    most_recent_occurrence,
    next_occurrence,
    period_key,
    rule_for_group,
)
from contributions_web.records import GroupRecord


def _group(**overrides: object) -> GroupRecord:
    values: dict[str, object] = {
        "group_id": "grp-1",
        "name": "Netflix Squad",
        "group_type": "subscription",
        "contribution_amount": 1500.0,
        "currency": "NGN",
        "subscription_platform": "Netflix",
        "subscription_frequency": "monthly",
        "subscription_deadline_day": 15,
    }
    values.update(overrides)
    return GroupRecord(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("year", "month", "day", "expected"),
    [
        (2023, 2, 30, 28),
        (2024, 2, 30, 29),
        (2024, 4, 31, 30),
        (2024, 1, 31, 31),
        (2024, 6, 15, 15),
    ],
)
def test_clamped_day_never_exceeds_month_length(year: int, month: int, day: int, expected: int) -> None:
    assert clamped_day(year, month, day) == expected


def test_birthday_five_days_out_is_not_a_reminder_horizon() -> None:
    rule = BirthdayRule(month=6, day=15)
    upcoming = next_occurrence(rule, date(2024, 6, 10))
    assert upcoming == date(2024, 6, 15)
    assert days_between(date(2024, 6, 10), upcoming) == 5


def test_birthday_seven_days_out() -> None:
    rule = BirthdayRule(month=6, day=15)
    assert days_between(date(2024, 6, 8), next_occurrence(rule, date(2024, 6, 8))) == 7


def test_birthday_just_passed_is_one_day_overdue() -> None:
    rule = BirthdayRule(month=6, day=15)
    previous = most_recent_occurrence(rule, date(2024, 6, 16))
    assert previous == date(2024, 6, 15)
    assert days_between(previous, date(2024, 6, 16)) == 1


def test_today_counts_as_next_and_most_recent_occurrence() -> None:
    rule = BirthdayRule(month=6, day=15)
    assert next_occurrence(rule, date(2024, 6, 15)) == date(2024, 6, 15)
    assert most_recent_occurrence(rule, date(2024, 6, 15)) == date(2024, 6, 15)


def test_birthday_wraps_across_year_boundary() -> None:
    rule = BirthdayRule(month=1, day=3)
    assert next_occurrence(rule, date(2024, 12, 30)) == date(2025, 1, 3)
    assert most_recent_occurrence(rule, date(2025, 1, 1)) == date(2024, 1, 3)


def test_leap_day_birthday_clamps_in_common_years() -> None:
    rule = BirthdayRule(month=2, day=29)
    assert next_occurrence(rule, date(2023, 2, 20)) == date(2023, 2, 28)
    assert next_occurrence(rule, date(2024, 2, 20)) == date(2024, 2, 29)


def test_monthly_rule_advances_past_december() -> None:
    rule = MonthlySubscriptionRule(day_of_month=10)
    assert next_occurrence(rule, date(2024, 12, 20)) == date(2025, 1, 10)
    assert most_recent_occurrence(rule, date(2025, 1, 5)) == date(2024, 12, 10)


def test_monthly_rule_reclamps_for_the_following_month() -> None:
    rule = MonthlySubscriptionRule(day_of_month=31)
    assert next_occurrence(rule, date(2023, 1, 31)) == date(2023, 1, 31)
    assert next_occurrence(rule, date(2023, 2, 1)) == date(2023, 2, 28)
    assert next_occurrence(rule, date(2023, 3, 1)) == date(2023, 3, 31)
    assert most_recent_occurrence(rule, date(2023, 3, 5)) == date(2023, 2, 28)


def test_annual_rule_rolls_to_next_year() -> None:
    rule = AnnualSubscriptionRule(month=3, day_of_month=1)
    assert next_occurrence(rule, date(2024, 3, 2)) == date(2025, 3, 1)
    assert most_recent_occurrence(rule, date(2024, 2, 1)) == date(2023, 3, 1)


def test_general_rule_is_a_single_date() -> None:
    rule = GeneralDeadlineRule(deadline=date(2024, 8, 1))
    assert next_occurrence(rule, date(2024, 7, 25)) == date(2024, 8, 1)
    assert most_recent_occurrence(rule, date(2024, 8, 4)) == date(2024, 8, 1)
    assert days_between(date(2024, 7, 25), date(2024, 8, 1)) == 7


def test_days_between_ignores_time_of_day() -> None:
    assert days_between(datetime(2024, 6, 8, 23, 59), datetime(2024, 6, 15, 0, 1)) == 7
    assert days_between(date(2024, 6, 16), date(2024, 6, 15)) == -1


def test_period_keys_per_rule() -> None:
    assert period_key(BirthdayRule(month=6, day=15), date(2024, 6, 15)) == "2024"
    assert period_key(MonthlySubscriptionRule(day_of_month=31), date(2024, 2, 29)) == "2024-02-01"
    assert period_key(AnnualSubscriptionRule(month=9, day_of_month=1), date(2024, 9, 1)) == "2024-01-01"
    assert period_key(GeneralDeadlineRule(deadline=date(2024, 8, 1)), date(2024, 8, 1)) == "deadline"


def test_rule_for_group_dispatches_on_group_type() -> None:
    assert rule_for_group(_group()) == MonthlySubscriptionRule(day_of_month=15)
    assert rule_for_group(
        _group(subscription_frequency="annual", subscription_deadline_month=11, subscription_deadline_day=2)
    ) == AnnualSubscriptionRule(month=11, day_of_month=2)
    assert rule_for_group(_group(group_type="general", deadline=date(2024, 8, 1))) == GeneralDeadlineRule(
        deadline=date(2024, 8, 1)
    )


def test_general_group_without_deadline_has_no_rule() -> None:
    assert rule_for_group(_group(group_type="general", deadline=None)) is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"subscription_deadline_day": None},
        {"subscription_deadline_day": 0},
        {"subscription_deadline_day": 32},
        {"subscription_frequency": "weekly"},
        {"subscription_frequency": "annual", "subscription_deadline_month": None},
        {"subscription_frequency": "annual", "subscription_deadline_month": 2, "subscription_deadline_day": 30},
        {"group_type": "birthday"},
    ],
)
def test_malformed_deadline_configuration_raises(overrides: dict[str, object]) -> None:
    with pytest.raises(DeadlineConfigError):
        rule_for_group(_group(**overrides))


def test_period_key_rejects_unknown_rule() -> None:
    with pytest.raises(DeadlineConfigError):
        period_key(object(), date(2024, 6, 1))  # type: ignore[arg-type]
