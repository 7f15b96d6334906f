from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

RunKind = Literal["forward", "overdue", "birthday_wish"]
RunStatus = Literal["completed", "completed_with_errors"]
DeliveryStatus = Literal["sent", "skipped", "failed", "dry_run", "errored"]
DeliveryChannelName = Literal["in_app", "email"]
GroupTypeName = Literal["birthday", "subscription", "general"]
ContributionStatusName = Literal["not_paid", "paid", "confirmed", "not_received"]
ReliabilityRating = Literal["new", "excellent", "good", "moderate", "poor"]


class ReminderTriggerRequest(BaseModel):
    as_of: date | None = None
    dry_run: bool | None = None


class ReminderDeliveryResult(BaseModel):
    user_id: str
    kind: RunKind
    status: DeliveryStatus
    reason: str
    horizon: int | None = None
    channel: DeliveryChannelName | None = None
    group_id: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ReminderRunResponse(BaseModel):
    run_id: str
    kind: RunKind
    as_of: date
    run_at: datetime
    dry_run: bool
    users_evaluated: int
    users_notified: int
    sent_count: int
    skipped_count: int
    failed_count: int
    errored_count: int
    results: list[ReminderDeliveryResult] = Field(default_factory=list)


class ReminderRunRecordResponse(BaseModel):
    run_id: str
    kind: RunKind
    as_of: date
    dry_run: bool
    status: RunStatus
    triggered_by: str
    users_evaluated: int
    users_notified: int
    sent_count: int
    skipped_count: int
    failed_count: int
    errored_count: int
    started_at: datetime
    finished_at: datetime


class DeliveryLogItem(BaseModel):
    user_id: str
    kind: str
    horizon: int
    day: date
    channel: DeliveryChannelName
    subject: str
    delivered_at: datetime
    provider_message_id: str | None = None


class DeliveryLogResponse(BaseModel):
    items: list[DeliveryLogItem]


class UserUpsertItem(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=256)
    email: EmailStr | None = None
    birthday: date | None = None
    is_verified: bool = True
    is_active: bool = True
    notify_7_days_before: bool = True
    notify_1_day_before: bool = True
    notify_same_day: bool = True
    email_reminders_enabled: bool = True
    email_overdue_enabled: bool = True
    email_birthday_enabled: bool = True


class GroupUpsertItem(BaseModel):
    group_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=256)
    group_type: GroupTypeName = "birthday"
    contribution_amount: float = Field(default=0.0, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=8)
    status: Literal["active", "closed"] = "active"
    subscription_platform: str | None = None
    subscription_frequency: Literal["monthly", "annual"] | None = None
    subscription_deadline_day: int | None = Field(default=None, ge=1, le=31)
    subscription_deadline_month: int | None = Field(default=None, ge=1, le=12)
    deadline: date | None = None

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_deadline_config(self) -> "GroupUpsertItem":
        if self.group_type == "subscription":
            if self.subscription_frequency is None or self.subscription_deadline_day is None:
                raise ValueError("subscription groups require subscription_frequency and subscription_deadline_day")
            if self.subscription_frequency == "annual" and self.subscription_deadline_month is None:
                raise ValueError("annual subscriptions require subscription_deadline_month")
        return self


class MembershipUpsertItem(BaseModel):
    group_id: str = Field(min_length=1, max_length=64)
    user_id: str = Field(min_length=1, max_length=64)
    joined_at: date
    status: Literal["active", "inactive", "removed"] = "active"


class ContributionUpsertItem(BaseModel):
    group_id: str = Field(min_length=1, max_length=64)
    contributor_id: str = Field(min_length=1, max_length=64)
    celebrant_id: str | None = None
    status: ContributionStatusName = "not_paid"
    contribution_date: date | None = None
    subscription_period_start: date | None = None
    birthday_year: int | None = Field(default=None, ge=1900, le=9999)


class DirectoryUpsertRequest(BaseModel):
    users: list[UserUpsertItem] = Field(default_factory=list)
    groups: list[GroupUpsertItem] = Field(default_factory=list)
    memberships: list[MembershipUpsertItem] = Field(default_factory=list)
    contributions: list[ContributionUpsertItem] = Field(default_factory=list)


class DirectoryUpsertResponse(BaseModel):
    users_upserted: int
    groups_upserted: int
    memberships_upserted: int
    contributions_upserted: int


class DirectorySummaryResponse(BaseModel):
    users: int
    groups: int
    memberships: int
    contributions: int


class ReliabilityResponse(BaseModel):
    user_id: str
    as_of: date
    reliability_score: int
    on_time_rate: float
    rating: ReliabilityRating
    summary: str
    confirmed_count: int
    on_time_count: int
    late_count: int
    overdue_count: int
    pending_count: int
    groups_considered: int
