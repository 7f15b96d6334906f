from __future__ import annotations

from dataclasses import replace
from datetime import date
from pathlib import Path

import pytest

from contributions_web.aggregator import ReminderAggregator
from contributions_web.contributions import ContributionStatusResolver
from contributions_web.delivery_log import DeduplicationGate, SqlAlchemyDeliveryLog
from contributions_web.directory import (
    GroupNotFoundError,
    InMemoryContributionDirectory,
    SqlAlchemyContributionDirectory,
    UserNotFoundError,
    create_contribution_directory,
)
from contributions_web.notifier import StubEmailSender, StubNotificationDispatcher
from contributions_web.records import ContributionRecord, GroupRecord, MembershipRecord, UserRecord
from contributions_web.reminder_runs import ReminderRunner, SqlAlchemyReminderRunRepository

GROUP = GroupRecord(
    group_id="grp-g",
    name="Office",
    group_type="birthday",
    contribution_amount=5000.0,
    currency="NGN",
)


def _seed(directory: InMemoryContributionDirectory | SqlAlchemyContributionDirectory) -> None:
    directory.upsert_user(UserRecord(user_id="user-a", name="Ada", email="ada@example.com"))
    directory.upsert_user(UserRecord(user_id="user-b", name="Bola", birthday=date(1990, 6, 15)))
    directory.upsert_user(UserRecord(user_id="user-c", name="Chi", birthday=date(1991, 3, 1), is_verified=False))
    directory.upsert_group(GROUP)
    directory.upsert_membership(MembershipRecord(group_id="grp-g", user_id="user-c", joined_at=date(2022, 5, 1)))
    directory.upsert_membership(MembershipRecord(group_id="grp-g", user_id="user-b", joined_at=date(2023, 1, 1)))
    directory.upsert_membership(MembershipRecord(group_id="grp-g", user_id="user-a", joined_at=date(2023, 1, 1)))


@pytest.fixture(params=["inmemory", "sqlite"])
def directory(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "inmemory":
        return InMemoryContributionDirectory()
    return SqlAlchemyContributionDirectory(f"sqlite:///{tmp_path / 'directory.db'}")


def test_directory_reads(directory) -> None:
    _seed(directory)

    assert [user.user_id for user in directory.list_eligible_users()] == ["user-a", "user-b"]
    assert directory.get_group("grp-g") == GROUP
    assert [member.user_id for member in directory.list_other_members("grp-g", "user-a")] == ["user-c", "user-b"]
    assert [group.group_id for _, group in directory.list_active_memberships("user-a")] == ["grp-g"]
    assert directory.summary() == {"users": 3, "groups": 1, "memberships": 3, "contributions": 0}


def test_directory_contribution_upsert_replaces_status(directory) -> None:
    _seed(directory)
    record = ContributionRecord(
        group_id="grp-g",
        contributor_id="user-a",
        obligee_id="user-b",
        period_key="2024",
        status="paid",
        contribution_date=date(2024, 6, 10),
    )
    directory.upsert_contribution(record)
    directory.upsert_contribution(replace(record, status="confirmed"))

    found = directory.find_contribution("grp-g", "user-a", obligee_id="user-b", period_key="2024")
    assert found is not None
    assert found.status == "confirmed"
    assert directory.find_contribution("grp-g", "user-a", obligee_id="user-c", period_key="2024") is None
    assert directory.summary()["contributions"] == 1


def test_directory_general_contribution_has_no_obligee(directory) -> None:
    _seed(directory)
    directory.upsert_group(
        GroupRecord(
            group_id="grp-trip",
            name="Trip Fund",
            group_type="general",
            contribution_amount=20000.0,
            currency="NGN",
            deadline=date(2024, 8, 1),
        )
    )
    directory.upsert_contribution(
        ContributionRecord(group_id="grp-trip", contributor_id="user-a", period_key="deadline", status="not_paid")
    )

    found = directory.find_contribution("grp-trip", "user-a", obligee_id=None, period_key="deadline")
    assert found is not None
    assert found.obligee_id is None


def test_directory_rejects_unknown_references(directory) -> None:
    _seed(directory)
    with pytest.raises(GroupNotFoundError):
        directory.upsert_membership(MembershipRecord(group_id="grp-x", user_id="user-a", joined_at=date(2024, 1, 1)))
    with pytest.raises(UserNotFoundError):
        directory.upsert_membership(MembershipRecord(group_id="grp-g", user_id="ghost", joined_at=date(2024, 1, 1)))
    with pytest.raises(UserNotFoundError):
        directory.get_user("ghost")

    directory.reset()
    assert directory.summary() == {"users": 0, "groups": 0, "memberships": 0, "contributions": 0}


def test_forward_run_over_database_backends_is_idempotent(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'reminders.db'}"
    directory = SqlAlchemyContributionDirectory(url)
    _seed(directory)
    dispatcher = StubNotificationDispatcher(enabled=True)
    runner_kwargs = {
        "directory": directory,
        "aggregator": ReminderAggregator(directory, ContributionStatusResolver(directory)),
        "gate": DeduplicationGate(SqlAlchemyDeliveryLog(url)),
        "dispatcher": dispatcher,
        "email_sender": StubEmailSender(enabled=True),
        "run_repository": SqlAlchemyReminderRunRepository(url),
    }

    first = ReminderRunner(**runner_kwargs).run_forward_reminders(date(2024, 6, 8))
    second = ReminderRunner(**runner_kwargs).run_forward_reminders(date(2024, 6, 8))

    assert first.sent_count == 2
    assert second.sent_count == 0
    assert len(dispatcher.delivered) == 1


def test_factory_selects_backend(tmp_path: Path) -> None:
    assert isinstance(create_contribution_directory(backend="inmemory", database_url=""), InMemoryContributionDirectory)
    assert isinstance(
        create_contribution_directory(backend="postgres", database_url=f"sqlite:///{tmp_path / 'd.db'}"),
        SqlAlchemyContributionDirectory,
    )
    with pytest.raises(RuntimeError):
        create_contribution_directory(backend="postgres", database_url="")
