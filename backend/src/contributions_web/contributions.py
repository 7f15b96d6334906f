from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from .deadlines import (
    DeadlineRule,
    birthday_rule,
    days_between,
    most_recent_occurrence,
    next_occurrence,
    period_key,
    rule_for_group,
)
from .directory import ContributionDirectory
from .records import ContributionStatus, GroupRecord, UserRecord

ATTEMPTED_STATUSES: frozenset[str] = frozenset({"paid", "confirmed", "not_received"})
UNSETTLED_STATUSES: frozenset[str] = frozenset({"not_paid", "not_received"})


@dataclass(frozen=True)
class Obligation:
    group: GroupRecord
    contributor_id: str
    obligee: UserRecord | None
    rule: DeadlineRule
    occurrence: date
    joined_at: date

    @property
    def period_key(self) -> str:
        return period_key(self.rule, self.occurrence)

    @property
    def obligee_id(self) -> str | None:
        return self.obligee.user_id if self.obligee is not None else None

    @property
    def amount(self) -> float:
        return self.group.contribution_amount

    @property
    def currency(self) -> str:
        return self.group.currency


@dataclass(frozen=True)
class ContributionResolution:
    obligation: Obligation
    status: ContributionStatus | None
    has_attempted: bool
    is_satisfied_for_reminder: bool
    is_overdue: bool


def is_liable(joined_at: date, occurrence: date) -> bool:
    """A member only owes occurrences that fall on or after the day they joined."""
    return joined_at <= occurrence


class ContributionStatusResolver:
    """Interprets contribution records for reminder decisions.

    Forward reminders stop as soon as any payment attempt exists. Overdue
    escalation keeps going while money has not actually changed hands, which
    includes disputed (``not_received``) payments and, unless disabled,
    payments the celebrant has not confirmed yet.
    """

    def __init__(self, directory: ContributionDirectory, *, escalate_unconfirmed: bool = True) -> None:
        self._directory = directory
        self._escalate_unconfirmed = escalate_unconfirmed

    def resolve(self, obligation: Obligation, *, as_of: date) -> ContributionResolution:
        if not is_liable(obligation.joined_at, obligation.occurrence):
            # Nothing is owed for occurrences before the contributor joined.
            return ContributionResolution(
                obligation=obligation,
                status=None,
                has_attempted=False,
                is_satisfied_for_reminder=True,
                is_overdue=False,
            )
        record = self._directory.find_contribution(
            obligation.group.group_id,
            obligation.contributor_id,
            obligee_id=obligation.obligee_id,
            period_key=obligation.period_key,
        )
        status = record.status if record is not None else None
        has_attempted = status in ATTEMPTED_STATUSES
        return ContributionResolution(
            obligation=obligation,
            status=status,
            has_attempted=has_attempted,
            is_satisfied_for_reminder=has_attempted,
            is_overdue=obligation.occurrence < as_of and self._still_owed(status),
        )

    def _still_owed(self, status: ContributionStatus | None) -> bool:
        if status is None or status in UNSETTLED_STATUSES:
            return True
        return status == "paid" and self._escalate_unconfirmed


def _birthday_contribution_key(birthday: date, contribution_date: date) -> str:
    # A payment covers the birthday nearest to the day it was made.
    rule = birthday_rule(birthday)
    upcoming = next_occurrence(rule, contribution_date)
    previous = most_recent_occurrence(rule, contribution_date)
    if days_between(previous, contribution_date) < days_between(contribution_date, upcoming):
        return period_key(rule, previous)
    return period_key(rule, upcoming)


def contribution_period_key(
    group: GroupRecord,
    *,
    obligee: UserRecord | None = None,
    contribution_date: date | None = None,
    subscription_period_start: date | None = None,
    birthday_year: int | None = None,
) -> str:
    """Key a stored contribution the same way obligations are keyed.

    Birthday contributions are keyed by the year of the birthday they pay
    for: ``birthday_year`` when given, otherwise the occurrence nearest to the
    contribution date. Subscription contributions use their billing period
    start and general contributions the group alone.
    """
    if group.group_type == "birthday":
        if obligee is None or obligee.birthday is None:
            raise ValueError("birthday contributions need a celebrant with a birthday")
        if birthday_year is not None:
            return str(birthday_year)
        if contribution_date is None:
            raise ValueError("birthday contributions need a contribution_date or birthday_year")
        return _birthday_contribution_key(obligee.birthday, contribution_date)
    if group.group_type == "general":
        return "deadline"
    rule = rule_for_group(group)
    anchor = subscription_period_start or contribution_date
    if rule is None or anchor is None:
        raise ValueError("subscription contributions need a subscription_period_start")
    return period_key(rule, anchor)
