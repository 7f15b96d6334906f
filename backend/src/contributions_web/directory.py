from __future__ import annotations

from datetime import date
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, Date, Float, Integer, String, UniqueConstraint, create_engine, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .records import ContributionRecord, GroupRecord, MembershipRecord, UserRecord


class UserNotFoundError(KeyError):
    """Raised when an operation references a user id that does not exist."""


class GroupNotFoundError(KeyError):
    """Raised when an operation references a group id that does not exist."""


def _contribution_key(
    group_id: str,
    contributor_id: str,
    obligee_id: str | None,
    period_key: str,
) -> tuple[str, str, str, str]:
    return (group_id, contributor_id, obligee_id or "", period_key)


class ContributionDirectory(Protocol):
    """Read side of users, groups, memberships and contribution records."""

    def reset(self) -> None: ...

    def upsert_user(self, user: UserRecord) -> None: ...

    def upsert_group(self, group: GroupRecord) -> None: ...

    def upsert_membership(self, membership: MembershipRecord) -> None: ...

    def upsert_contribution(self, contribution: ContributionRecord) -> None: ...

    def get_user(self, user_id: str) -> UserRecord: ...

    def get_group(self, group_id: str) -> GroupRecord: ...

    def list_eligible_users(self) -> list[UserRecord]: ...

    def list_memberships(self, user_id: str) -> list[tuple[MembershipRecord, GroupRecord]]: ...

    def list_active_memberships(self, user_id: str) -> list[tuple[MembershipRecord, GroupRecord]]: ...

    def list_other_members(self, group_id: str, user_id: str) -> list[UserRecord]: ...

    def find_contribution(
        self,
        group_id: str,
        contributor_id: str,
        *,
        obligee_id: str | None,
        period_key: str,
    ) -> ContributionRecord | None: ...

    def summary(self) -> dict[str, int]: ...


class InMemoryContributionDirectory:
    def __init__(self) -> None:
        self._lock = Lock()
        self._users: dict[str, UserRecord] = {}
        self._groups: dict[str, GroupRecord] = {}
        self._memberships: dict[tuple[str, str], MembershipRecord] = {}
        self._contributions: dict[tuple[str, str, str, str], ContributionRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._users.clear()
            self._groups.clear()
            self._memberships.clear()
            self._contributions.clear()

    def upsert_user(self, user: UserRecord) -> None:
        with self._lock:
            self._users[user.user_id] = user

    def upsert_group(self, group: GroupRecord) -> None:
        with self._lock:
            self._groups[group.group_id] = group

    def upsert_membership(self, membership: MembershipRecord) -> None:
        with self._lock:
            if membership.group_id not in self._groups:
                raise GroupNotFoundError(membership.group_id)
            if membership.user_id not in self._users:
                raise UserNotFoundError(membership.user_id)
            self._memberships[(membership.group_id, membership.user_id)] = membership

    def upsert_contribution(self, contribution: ContributionRecord) -> None:
        key = _contribution_key(
            contribution.group_id,
            contribution.contributor_id,
            contribution.obligee_id,
            contribution.period_key,
        )
        with self._lock:
            if contribution.group_id not in self._groups:
                raise GroupNotFoundError(contribution.group_id)
            self._contributions[key] = contribution

    def get_user(self, user_id: str) -> UserRecord:
        with self._lock:
            user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def get_group(self, group_id: str) -> GroupRecord:
        with self._lock:
            group = self._groups.get(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    def list_eligible_users(self) -> list[UserRecord]:
        with self._lock:
            users = [user for user in self._users.values() if user.is_eligible]
        return sorted(users, key=lambda user: user.user_id)

    def list_memberships(self, user_id: str) -> list[tuple[MembershipRecord, GroupRecord]]:
        with self._lock:
            pairs = [
                (membership, self._groups[membership.group_id])
                for membership in self._memberships.values()
                if membership.user_id == user_id
            ]
        return sorted(pairs, key=lambda pair: (pair[0].joined_at, pair[0].group_id))

    def list_active_memberships(self, user_id: str) -> list[tuple[MembershipRecord, GroupRecord]]:
        return [
            (membership, group)
            for membership, group in self.list_memberships(user_id)
            if membership.status == "active" and group.status == "active"
        ]

    def list_other_members(self, group_id: str, user_id: str) -> list[UserRecord]:
        with self._lock:
            memberships = sorted(
                (
                    membership
                    for membership in self._memberships.values()
                    if membership.group_id == group_id
                    and membership.status == "active"
                    and membership.user_id != user_id
                ),
                key=lambda membership: (membership.joined_at, membership.user_id),
            )
            members = [self._users[membership.user_id] for membership in memberships]
        return [member for member in members if member.birthday is not None]

    def find_contribution(
        self,
        group_id: str,
        contributor_id: str,
        *,
        obligee_id: str | None,
        period_key: str,
    ) -> ContributionRecord | None:
        with self._lock:
            return self._contributions.get(_contribution_key(group_id, contributor_id, obligee_id, period_key))

    def summary(self) -> dict[str, int]:
        with self._lock:
            return {
                "users": len(self._users),
                "groups": len(self._groups),
                "memberships": len(self._memberships),
                "contributions": len(self._contributions),
            }


class DirectoryBase(DeclarativeBase):
    pass


class _UserRow(DirectoryBase):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_7_days_before: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_1_day_before: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_same_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_reminders_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_overdue_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    email_birthday_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _GroupRow(DirectoryBase):
    __tablename__ = "groups"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    group_type: Mapped[str] = mapped_column(String(32), nullable=False)
    contribution_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    subscription_platform: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subscription_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    subscription_deadline_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subscription_deadline_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deadline: Mapped[date | None] = mapped_column(Date, nullable=True)


class _MembershipRow(DirectoryBase):
    __tablename__ = "group_members"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    joined_at: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")


class _ContributionRow(DirectoryBase):
    __tablename__ = "contributions"
    __table_args__ = (
        UniqueConstraint("group_id", "contributor_id", "obligee_id", "period_key", name="uq_contributions_obligation"),
    )

    contribution_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    contributor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Empty string for group-level obligations so the unique constraint applies.
    obligee_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    contribution_date: Mapped[date | None] = mapped_column(Date, nullable=True)


def _user_from_row(row: _UserRow) -> UserRecord:
    return UserRecord(
        user_id=row.user_id,
        name=row.name,
        email=row.email,
        birthday=row.birthday,
        is_verified=row.is_verified,
        is_active=row.is_active,
        notify_7_days_before=row.notify_7_days_before,
        notify_1_day_before=row.notify_1_day_before,
        notify_same_day=row.notify_same_day,
        email_reminders_enabled=row.email_reminders_enabled,
        email_overdue_enabled=row.email_overdue_enabled,
        email_birthday_enabled=row.email_birthday_enabled,
    )


def _group_from_row(row: _GroupRow) -> GroupRecord:
    return GroupRecord(
        group_id=row.group_id,
        name=row.name,
        group_type=row.group_type,  # type: ignore[arg-type]
        contribution_amount=row.contribution_amount,
        currency=row.currency,
        status=row.status,  # type: ignore[arg-type]
        subscription_platform=row.subscription_platform,
        subscription_frequency=row.subscription_frequency,
        subscription_deadline_day=row.subscription_deadline_day,
        subscription_deadline_month=row.subscription_deadline_month,
        deadline=row.deadline,
    )


def _membership_from_row(row: _MembershipRow) -> MembershipRecord:
    return MembershipRecord(
        group_id=row.group_id,
        user_id=row.user_id,
        joined_at=row.joined_at,
        status=row.status,  # type: ignore[arg-type]
    )


class SqlAlchemyContributionDirectory:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DIRECTORY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DirectoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ContributionRow).delete()
                session.query(_MembershipRow).delete()
                session.query(_GroupRow).delete()
                session.query(_UserRow).delete()

    def upsert_user(self, user: UserRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_UserRow, user.user_id)
                if row is None:
                    row = _UserRow(user_id=user.user_id)
                    session.add(row)
                row.name = user.name
                row.email = user.email
                row.birthday = user.birthday
                row.is_verified = user.is_verified
                row.is_active = user.is_active
                row.notify_7_days_before = user.notify_7_days_before
                row.notify_1_day_before = user.notify_1_day_before
                row.notify_same_day = user.notify_same_day
                row.email_reminders_enabled = user.email_reminders_enabled
                row.email_overdue_enabled = user.email_overdue_enabled
                row.email_birthday_enabled = user.email_birthday_enabled

    def upsert_group(self, group: GroupRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_GroupRow, group.group_id)
                if row is None:
                    row = _GroupRow(group_id=group.group_id)
                    session.add(row)
                row.name = group.name
                row.group_type = group.group_type
                row.contribution_amount = group.contribution_amount
                row.currency = group.currency
                row.status = group.status
                row.subscription_platform = group.subscription_platform
                row.subscription_frequency = group.subscription_frequency
                row.subscription_deadline_day = group.subscription_deadline_day
                row.subscription_deadline_month = group.subscription_deadline_month
                row.deadline = group.deadline

    def upsert_membership(self, membership: MembershipRecord) -> None:
        with self._session() as session:
            with session.begin():
                if session.get(_GroupRow, membership.group_id) is None:
                    raise GroupNotFoundError(membership.group_id)
                if session.get(_UserRow, membership.user_id) is None:
                    raise UserNotFoundError(membership.user_id)
                row = session.get(_MembershipRow, (membership.group_id, membership.user_id))
                if row is None:
                    row = _MembershipRow(group_id=membership.group_id, user_id=membership.user_id)
                    session.add(row)
                row.joined_at = membership.joined_at
                row.status = membership.status

    def upsert_contribution(self, contribution: ContributionRecord) -> None:
        obligee_id = contribution.obligee_id or ""
        with self._session() as session:
            with session.begin():
                if session.get(_GroupRow, contribution.group_id) is None:
                    raise GroupNotFoundError(contribution.group_id)
                row = session.execute(
                    select(_ContributionRow).where(
                        _ContributionRow.group_id == contribution.group_id,
                        _ContributionRow.contributor_id == contribution.contributor_id,
                        _ContributionRow.obligee_id == obligee_id,
                        _ContributionRow.period_key == contribution.period_key,
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = _ContributionRow(
                        group_id=contribution.group_id,
                        contributor_id=contribution.contributor_id,
                        obligee_id=obligee_id,
                        period_key=contribution.period_key,
                    )
                    session.add(row)
                row.status = contribution.status
                row.contribution_date = contribution.contribution_date

    def get_user(self, user_id: str) -> UserRecord:
        with self._session() as session:
            row = session.get(_UserRow, user_id)
            if row is None:
                raise UserNotFoundError(user_id)
            return _user_from_row(row)

    def get_group(self, group_id: str) -> GroupRecord:
        with self._session() as session:
            row = session.get(_GroupRow, group_id)
            if row is None:
                raise GroupNotFoundError(group_id)
            return _group_from_row(row)

    def list_eligible_users(self) -> list[UserRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_UserRow)
                .where(_UserRow.is_verified.is_(True), _UserRow.is_active.is_(True))
                .order_by(_UserRow.user_id.asc())
            ).scalars()
            return [_user_from_row(row) for row in rows]

    def list_memberships(self, user_id: str) -> list[tuple[MembershipRecord, GroupRecord]]:
        with self._session() as session:
            rows = session.execute(
                select(_MembershipRow, _GroupRow)
                .join(_GroupRow, _GroupRow.group_id == _MembershipRow.group_id)
                .where(_MembershipRow.user_id == user_id)
                .order_by(_MembershipRow.joined_at.asc(), _MembershipRow.group_id.asc())
            ).all()
            return [(_membership_from_row(membership), _group_from_row(group)) for membership, group in rows]

    def list_active_memberships(self, user_id: str) -> list[tuple[MembershipRecord, GroupRecord]]:
        return [
            (membership, group)
            for membership, group in self.list_memberships(user_id)
            if membership.status == "active" and group.status == "active"
        ]

    def list_other_members(self, group_id: str, user_id: str) -> list[UserRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_UserRow)
                .join(_MembershipRow, _MembershipRow.user_id == _UserRow.user_id)
                .where(
                    _MembershipRow.group_id == group_id,
                    _MembershipRow.status == "active",
                    _MembershipRow.user_id != user_id,
                    _UserRow.birthday.is_not(None),
                )
                .order_by(_MembershipRow.joined_at.asc(), _MembershipRow.user_id.asc())
            ).scalars()
            return [_user_from_row(row) for row in rows]

    def find_contribution(
        self,
        group_id: str,
        contributor_id: str,
        *,
        obligee_id: str | None,
        period_key: str,
    ) -> ContributionRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ContributionRow).where(
                    _ContributionRow.group_id == group_id,
                    _ContributionRow.contributor_id == contributor_id,
                    _ContributionRow.obligee_id == (obligee_id or ""),
                    _ContributionRow.period_key == period_key,
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            return ContributionRecord(
                group_id=row.group_id,
                contributor_id=row.contributor_id,
                status=row.status,  # type: ignore[arg-type]
                period_key=row.period_key,
                obligee_id=row.obligee_id or None,
                contribution_date=row.contribution_date,
            )

    def summary(self) -> dict[str, int]:
        with self._session() as session:
            return {
                "users": session.execute(select(func.count()).select_from(_UserRow)).scalar_one(),
                "groups": session.execute(select(func.count()).select_from(_GroupRow)).scalar_one(),
                "memberships": session.execute(select(func.count()).select_from(_MembershipRow)).scalar_one(),
                "contributions": session.execute(select(func.count()).select_from(_ContributionRow)).scalar_one(),
            }


def create_contribution_directory(*, backend: str, database_url: str) -> ContributionDirectory:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyContributionDirectory(database_url)
    return InMemoryContributionDirectory()
