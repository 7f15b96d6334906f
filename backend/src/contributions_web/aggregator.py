from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterator

from .contributions import ContributionStatusResolver, Obligation, is_liable
from .deadlines import (
    FORWARD_HORIZONS,
    OVERDUE_HORIZONS,
    DeadlineConfigError,
    DeadlineRule,
    birthday_rule,
    days_between,
    most_recent_occurrence,
    next_occurrence,
    rule_for_group,
)
from .directory import ContributionDirectory
from .messages import (
    forward_message,
    forward_notification_type,
    forward_title,
    overdue_email_subject,
)
from .records import ContributionStatus, GroupRecord, MembershipRecord, UserRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForwardItem:
    obligee_id: str | None
    obligee_name: str | None
    status: ContributionStatus | None
    has_paid: bool


@dataclass(frozen=True)
class GroupBucket:
    group: GroupRecord
    occurrence: date
    days_until: int
    items: tuple[ForwardItem, ...]

    @property
    def unpaid_count(self) -> int:
        return sum(1 for item in self.items if not item.has_paid)

    @property
    def paid_count(self) -> int:
        return sum(1 for item in self.items if item.has_paid)


@dataclass(frozen=True)
class OverdueItem:
    group: GroupRecord
    obligee: UserRecord | None
    occurrence: date
    days_overdue: int
    status: ContributionStatus | None

    @property
    def event_name(self) -> str:
        if self.obligee is not None:
            return f"{self.obligee.name}'s Birthday"
        if self.group.group_type == "subscription":
            return f"{self.group.subscription_platform or self.group.name} Subscription"
        return self.group.name

    @property
    def subject(self) -> str:
        """Identifies the group and celebrant this item is about."""
        if self.obligee is None:
            return self.group.group_id
        return f"{self.group.group_id}:{self.obligee.user_id}"


@dataclass(frozen=True)
class GroupError:
    group_id: str
    error: str


@dataclass
class ReminderAggregate:
    user: UserRecord
    as_of: date
    forward: dict[int, list[GroupBucket]] = field(default_factory=dict)
    overdue: dict[int, list[OverdueItem]] = field(default_factory=dict)
    errors: list[GroupError] = field(default_factory=list)


@dataclass(frozen=True)
class ReminderPayload:
    """Consolidated content for one notification and one email."""

    notification_type: str
    title: str
    message: str
    horizon: int
    group_names: tuple[str, ...]
    celebrant_names: tuple[str, ...]
    paid_count: int
    unpaid_count: int
    totals_by_currency: dict[str, float]
    items: tuple[dict[str, object], ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "notification_type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "horizon": self.horizon,
            "group_names": list(self.group_names),
            "celebrant_names": list(self.celebrant_names),
            "paid_count": self.paid_count,
            "unpaid_count": self.unpaid_count,
            "totals_by_currency": dict(self.totals_by_currency),
            "items": [dict(item) for item in self.items],
        }


def _unique(values: Iterator[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)


def consolidate_forward(horizon: int, buckets: list[GroupBucket]) -> ReminderPayload:
    if not buckets:
        raise ValueError("cannot consolidate an empty reminder bucket")
    notification_type = forward_notification_type({bucket.group.group_type for bucket in buckets})
    totals: dict[str, float] = {}
    items: list[dict[str, object]] = []
    for bucket in buckets:
        group = bucket.group
        for item in bucket.items:
            if not item.has_paid:
                totals[group.currency] = totals.get(group.currency, 0.0) + group.contribution_amount
            items.append(
                {
                    "group_id": group.group_id,
                    "group_name": group.name,
                    "group_type": group.group_type,
                    "subscription_platform": group.subscription_platform,
                    "celebrant_id": item.obligee_id,
                    "celebrant_name": item.obligee_name,
                    "deadline": bucket.occurrence.isoformat(),
                    "days_until": bucket.days_until,
                    "contribution_amount": group.contribution_amount,
                    "currency": group.currency,
                    "has_paid": item.has_paid,
                }
            )
    return ReminderPayload(
        notification_type=notification_type,
        title=forward_title(notification_type, horizon),
        message=forward_message(notification_type, horizon, buckets[0].group),
        horizon=horizon,
        group_names=_unique(bucket.group.name for bucket in buckets),
        celebrant_names=_unique(
            item.obligee_name for bucket in buckets for item in bucket.items if item.obligee_name
        ),
        paid_count=sum(bucket.paid_count for bucket in buckets),
        unpaid_count=sum(bucket.unpaid_count for bucket in buckets),
        totals_by_currency=totals,
        items=tuple(items),
    )


def consolidate_overdue(horizon: int, overdue_items: list[OverdueItem]) -> ReminderPayload:
    if not overdue_items:
        raise ValueError("cannot consolidate an empty overdue bucket")
    totals: dict[str, float] = {}
    items: list[dict[str, object]] = []
    for overdue in overdue_items:
        group = overdue.group
        totals[group.currency] = totals.get(group.currency, 0.0) + group.contribution_amount
        items.append(
            {
                "group_id": group.group_id,
                "group_name": group.name,
                "group_type": group.group_type,
                "event_name": overdue.event_name,
                "subscription_platform": group.subscription_platform,
                "celebrant_id": overdue.obligee.user_id if overdue.obligee is not None else None,
                "deadline": overdue.occurrence.isoformat(),
                "days_overdue": overdue.days_overdue,
                "contribution_amount": group.contribution_amount,
                "currency": group.currency,
                "status": overdue.status or "not_paid",
            }
        )
    count = len(overdue_items)
    return ReminderPayload(
        notification_type="overdue_contribution",
        title=overdue_email_subject(horizon),
        message=f"You have {count} overdue contribution{'s' if count != 1 else ''}.",
        horizon=horizon,
        group_names=_unique(overdue.group.name for overdue in overdue_items),
        celebrant_names=_unique(
            overdue.obligee.name for overdue in overdue_items if overdue.obligee is not None
        ),
        paid_count=0,
        unpaid_count=count,
        totals_by_currency=totals,
        items=tuple(items),
    )


class ReminderAggregator:
    """Buckets one user's obligations into forward and overdue horizons."""

    def __init__(
        self,
        directory: ContributionDirectory,
        resolver: ContributionStatusResolver,
        *,
        forward_horizons: tuple[int, ...] = FORWARD_HORIZONS,
        overdue_horizons: tuple[int, ...] = OVERDUE_HORIZONS,
    ) -> None:
        self._directory = directory
        self._resolver = resolver
        self._forward_horizons = frozenset(forward_horizons)
        self._overdue_horizons = frozenset(overdue_horizons)

    def aggregate(
        self,
        user: UserRecord,
        as_of: date,
        *,
        include_forward: bool = True,
        include_overdue: bool = True,
    ) -> ReminderAggregate:
        aggregate = ReminderAggregate(user=user, as_of=as_of)
        for membership, group in self._directory.list_active_memberships(user.user_id):
            try:
                forward, overdue = self._collect_group(
                    user,
                    membership,
                    group,
                    as_of,
                    include_forward=include_forward,
                    include_overdue=include_overdue,
                )
            except DeadlineConfigError as exc:
                logger.warning("skipping group %s for user %s: %s", group.group_id, user.user_id, exc)
                aggregate.errors.append(GroupError(group_id=group.group_id, error=str(exc)))
                continue
            except Exception as exc:
                logger.exception("failed to evaluate group %s for user %s", group.group_id, user.user_id)
                aggregate.errors.append(GroupError(group_id=group.group_id, error=str(exc) or type(exc).__name__))
                continue
            for horizon, bucket in forward:
                aggregate.forward.setdefault(horizon, []).append(bucket)
            for horizon, item in overdue:
                aggregate.overdue.setdefault(horizon, []).append(item)
        return aggregate

    def _rules(self, user: UserRecord, group: GroupRecord) -> list[tuple[DeadlineRule, UserRecord | None]]:
        if group.group_type == "birthday":
            return [
                (birthday_rule(member.birthday), member)
                for member in self._directory.list_other_members(group.group_id, user.user_id)
                if member.birthday is not None
            ]
        rule = rule_for_group(group)
        if rule is None:
            return []
        return [(rule, None)]

    def _collect_group(
        self,
        user: UserRecord,
        membership: MembershipRecord,
        group: GroupRecord,
        as_of: date,
        *,
        include_forward: bool,
        include_overdue: bool,
    ) -> tuple[list[tuple[int, GroupBucket]], list[tuple[int, OverdueItem]]]:
        pending: dict[int, tuple[date, list[ForwardItem]]] = {}
        overdue: list[tuple[int, OverdueItem]] = []

        for rule, obligee in self._rules(user, group):
            if include_forward:
                upcoming = next_occurrence(rule, as_of)
                days_until = days_between(as_of, upcoming)
                if days_until in self._forward_horizons and is_liable(membership.joined_at, upcoming):
                    resolution = self._resolver.resolve(
                        Obligation(
                            group=group,
                            contributor_id=user.user_id,
                            obligee=obligee,
                            rule=rule,
                            occurrence=upcoming,
                            joined_at=membership.joined_at,
                        ),
                        as_of=as_of,
                    )
                    _, items = pending.setdefault(days_until, (upcoming, []))
                    items.append(
                        ForwardItem(
                            obligee_id=obligee.user_id if obligee is not None else None,
                            obligee_name=obligee.name if obligee is not None else None,
                            status=resolution.status,
                            has_paid=resolution.is_satisfied_for_reminder,
                        )
                    )

            if include_overdue:
                previous = most_recent_occurrence(rule, as_of)
                days_overdue = days_between(previous, as_of)
                if days_overdue in self._overdue_horizons and is_liable(membership.joined_at, previous):
                    resolution = self._resolver.resolve(
                        Obligation(
                            group=group,
                            contributor_id=user.user_id,
                            obligee=obligee,
                            rule=rule,
                            occurrence=previous,
                            joined_at=membership.joined_at,
                        ),
                        as_of=as_of,
                    )
                    if resolution.is_overdue:
                        overdue.append(
                            (
                                days_overdue,
                                OverdueItem(
                                    group=group,
                                    obligee=obligee,
                                    occurrence=previous,
                                    days_overdue=days_overdue,
                                    status=resolution.status,
                                ),
                            )
                        )
                    else:
                        logger.debug(
                            "user %s already settled %s in group %s",
                            user.user_id,
                            previous.isoformat(),
                            group.group_id,
                        )

        forward: list[tuple[int, GroupBucket]] = []
        for days_until, (occurrence, items) in pending.items():
            # A group only reminds when something in it is still unattempted.
            if any(not item.has_paid for item in items):
                forward.append(
                    (
                        days_until,
                        GroupBucket(group=group, occurrence=occurrence, days_until=days_until, items=tuple(items)),
                    )
                )
        return forward, overdue
