from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Literal

GroupType = Literal["birthday", "subscription", "general"]
SubscriptionFrequency = Literal["monthly", "annual"]
ContributionStatus = Literal["not_paid", "paid", "confirmed", "not_received"]
MembershipStatus = Literal["active", "inactive", "removed"]
GroupStatus = Literal["active", "closed"]


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    name: str
    email: str | None = None
    birthday: date | None = None
    is_verified: bool = True
    is_active: bool = True
    notify_7_days_before: bool = True
    notify_1_day_before: bool = True
    notify_same_day: bool = True
    email_reminders_enabled: bool = True
    email_overdue_enabled: bool = True
    email_birthday_enabled: bool = True

    @property
    def is_eligible(self) -> bool:
        return self.is_verified and self.is_active


@dataclass(frozen=True)
class GroupRecord:
    group_id: str
    name: str
    group_type: GroupType
    contribution_amount: float
    currency: str
    status: GroupStatus = "active"
    subscription_platform: str | None = None
    subscription_frequency: str | None = None
    subscription_deadline_day: int | None = None
    subscription_deadline_month: int | None = None
    deadline: date | None = None


@dataclass(frozen=True)
class MembershipRecord:
    group_id: str
    user_id: str
    joined_at: date
    status: MembershipStatus = "active"


@dataclass(frozen=True)
class ContributionRecord:
    group_id: str
    contributor_id: str
    status: ContributionStatus
    period_key: str
    obligee_id: str | None = None
    contribution_date: date | None = None
