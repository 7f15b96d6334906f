from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, HTTPException

from .aggregator import ReminderAggregator
from .config import Settings, get_settings
from .contributions import ContributionStatusResolver, contribution_period_key
from .delivery_log import DeduplicationGate, DeliveryLog, create_delivery_log
from .directory import (
    ContributionDirectory,
    GroupNotFoundError,
    UserNotFoundError,
    create_contribution_directory,
)
from .models import (
    DeliveryLogItem,
    DeliveryLogResponse,
    DirectorySummaryResponse,
    DirectoryUpsertRequest,
    DirectoryUpsertResponse,
    ReliabilityResponse,
    ReminderRunRecordResponse,
    ReminderRunResponse,
    ReminderTriggerRequest,
)
from .notifier import (
    EmailSender,
    HttpEmailSender,
    HttpNotificationDispatcher,
    NotificationDispatcher,
    StubEmailSender,
    StubNotificationDispatcher,
)
from .records import ContributionRecord, GroupRecord, MembershipRecord, UserRecord
from .reliability import compute_reliability
from .reminder_runs import (
    ReminderRunRecord,
    ReminderRunner,
    ReminderRunRepository,
    create_reminder_run_repository,
)

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/contributions", tags=["contributions"])


class AsOfOverrideNotAllowedError(ValueError):
    """Raised when a live run asks to override today's date without permission."""


def _create_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notifier_sender_type == "http":
        return HttpNotificationDispatcher(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotificationDispatcher(enabled=settings.notifier_enabled)


def _create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "http":
        return HttpEmailSender(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender(enabled=settings.email_enabled)


directory: ContributionDirectory = create_contribution_directory(
    backend=_settings.directory_store_backend,
    database_url=_settings.database_url,
)
delivery_log: DeliveryLog = create_delivery_log(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
run_repository: ReminderRunRepository = create_reminder_run_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
notification_dispatcher: NotificationDispatcher = _create_dispatcher(_settings)
email_sender: EmailSender = _create_email_sender(_settings)


def build_runner(settings: Settings) -> ReminderRunner:
    resolver = ContributionStatusResolver(
        directory,
        escalate_unconfirmed=settings.reminder_escalate_unconfirmed,
    )
    return ReminderRunner(
        directory=directory,
        aggregator=ReminderAggregator(directory, resolver),
        gate=DeduplicationGate(delivery_log),
        dispatcher=notification_dispatcher,
        email_sender=email_sender,
        run_repository=run_repository,
        timezone_name=settings.reminder_timezone,
    )


def reset_runtime_state_for_tests() -> None:
    directory.reset()
    delivery_log.reset()
    run_repository.reset()
    for sender in (notification_dispatcher, email_sender):
        reset = getattr(sender, "reset", None)
        if callable(reset):
            reset()


def _resolve_trigger(payload: ReminderTriggerRequest | None) -> tuple[date | None, bool]:
    request = payload or ReminderTriggerRequest()
    dry_run = _settings.reminder_dry_run_default if request.dry_run is None else request.dry_run
    if request.as_of is not None and not dry_run and not _settings.reminder_allow_live_as_of_override:
        raise AsOfOverrideNotAllowedError(
            "as_of override requires dry_run or REMINDER_ALLOW_LIVE_AS_OF_OVERRIDE=true"
        )
    return request.as_of, dry_run


def _run_response(record: ReminderRunRecord) -> ReminderRunRecordResponse:
    return ReminderRunRecordResponse(
        run_id=record.run_id,
        kind=record.kind,  # type: ignore[arg-type]
        as_of=record.as_of,
        dry_run=record.dry_run,
        status=record.status,  # type: ignore[arg-type]
        triggered_by=record.triggered_by,
        users_evaluated=record.users_evaluated,
        users_notified=record.users_notified,
        sent_count=record.sent_count,
        skipped_count=record.skipped_count,
        failed_count=record.failed_count,
        errored_count=record.errored_count,
        started_at=record.started_at,
        finished_at=record.finished_at,
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Reminder triggers
# ---------------------------------------------------------------------------


@router.post("/admin/trigger-reminders", response_model=ReminderRunResponse)
def trigger_reminders(payload: ReminderTriggerRequest | None = None) -> ReminderRunResponse:
    try:
        as_of, dry_run = _resolve_trigger(payload)
    except AsOfOverrideNotAllowedError as exc:
        raise HTTPException(403, str(exc)) from exc
    return build_runner(_settings).run_forward_reminders(as_of, dry_run=dry_run, triggered_by="admin")


@router.post("/admin/trigger-overdue-reminders", response_model=ReminderRunResponse)
def trigger_overdue_reminders(payload: ReminderTriggerRequest | None = None) -> ReminderRunResponse:
    try:
        as_of, dry_run = _resolve_trigger(payload)
    except AsOfOverrideNotAllowedError as exc:
        raise HTTPException(403, str(exc)) from exc
    return build_runner(_settings).run_overdue_escalation(as_of, dry_run=dry_run, triggered_by="admin")


@router.post("/admin/birthdays/trigger-birthday-wishes", response_model=ReminderRunResponse)
def trigger_birthday_wishes(payload: ReminderTriggerRequest | None = None) -> ReminderRunResponse:
    try:
        as_of, dry_run = _resolve_trigger(payload)
    except AsOfOverrideNotAllowedError as exc:
        raise HTTPException(403, str(exc)) from exc
    return build_runner(_settings).run_birthday_wishes(as_of, dry_run=dry_run, triggered_by="admin")


@router.get("/admin/reminders/runs/latest", response_model=ReminderRunRecordResponse)
def get_latest_run(kind: str | None = None) -> ReminderRunRecordResponse:
    record = run_repository.get_latest_run(kind=kind)
    if record is None:
        raise HTTPException(404, "no reminder runs recorded")
    return _run_response(record)


@router.get("/admin/reminders/runs/{run_id}", response_model=ReminderRunRecordResponse)
def get_run(run_id: str) -> ReminderRunRecordResponse:
    record = run_repository.get_run(run_id)
    if record is None:
        raise HTTPException(404, f"reminder run not found: {run_id}")
    return _run_response(record)


@router.get("/admin/reminders/deliveries", response_model=DeliveryLogResponse)
def list_deliveries(user_id: str | None = None) -> DeliveryLogResponse:
    return DeliveryLogResponse(
        items=[
            DeliveryLogItem(
                user_id=record.key.user_id,
                kind=record.key.kind,
                horizon=record.key.horizon,
                day=record.key.day,
                channel=record.key.channel,
                subject=record.key.subject,
                delivered_at=record.delivered_at,
                provider_message_id=record.provider_message_id,
            )
            for record in delivery_log.list_deliveries(user_id=user_id)
        ]
    )


# ---------------------------------------------------------------------------
# Directory administration
# ---------------------------------------------------------------------------


def _resolve_directory_payload(
    payload: DirectoryUpsertRequest,
) -> tuple[list[UserRecord], list[GroupRecord], list[MembershipRecord], list[ContributionRecord]]:
    """Build every record and check every reference before anything is written."""
    users = {user.user_id: UserRecord(**user.model_dump()) for user in payload.users}
    groups: dict[str, GroupRecord] = {}
    for group in payload.groups:
        values = group.model_dump()
        values["currency"] = values["currency"] or _settings.default_currency
        groups[group.group_id] = GroupRecord(**values)

    def find_user(user_id: str) -> UserRecord:
        return users[user_id] if user_id in users else directory.get_user(user_id)

    def find_group(group_id: str) -> GroupRecord:
        return groups[group_id] if group_id in groups else directory.get_group(group_id)

    memberships: list[MembershipRecord] = []
    for membership in payload.memberships:
        find_group(membership.group_id)
        find_user(membership.user_id)
        memberships.append(MembershipRecord(**membership.model_dump()))

    contributions: list[ContributionRecord] = []
    for contribution in payload.contributions:
        group = find_group(contribution.group_id)
        celebrant = find_user(contribution.celebrant_id) if contribution.celebrant_id else None
        key = contribution_period_key(
            group,
            obligee=celebrant,
            contribution_date=contribution.contribution_date,
            subscription_period_start=contribution.subscription_period_start,
            birthday_year=contribution.birthday_year,
        )
        contributions.append(
            ContributionRecord(
                group_id=contribution.group_id,
                contributor_id=contribution.contributor_id,
                status=contribution.status,
                period_key=key,
                obligee_id=celebrant.user_id if celebrant is not None and group.group_type == "birthday" else None,
                contribution_date=contribution.contribution_date,
            )
        )
    return list(users.values()), list(groups.values()), memberships, contributions


@router.post("/admin/directory/upsert", response_model=DirectoryUpsertResponse)
def upsert_directory(payload: DirectoryUpsertRequest) -> DirectoryUpsertResponse:
    try:
        users, groups, memberships, contributions = _resolve_directory_payload(payload)
    except (UserNotFoundError, GroupNotFoundError) as exc:
        raise HTTPException(404, f"unknown reference: {exc.args[0]}") from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    for user in users:
        directory.upsert_user(user)
    for group in groups:
        directory.upsert_group(group)
    for membership in memberships:
        directory.upsert_membership(membership)
    for contribution in contributions:
        directory.upsert_contribution(contribution)
    logger.info(
        "directory upsert: users=%d groups=%d memberships=%d contributions=%d",
        len(payload.users),
        len(payload.groups),
        len(payload.memberships),
        len(payload.contributions),
    )
    return DirectoryUpsertResponse(
        users_upserted=len(payload.users),
        groups_upserted=len(payload.groups),
        memberships_upserted=len(payload.memberships),
        contributions_upserted=len(payload.contributions),
    )


@router.get("/admin/directory/summary", response_model=DirectorySummaryResponse)
def directory_summary() -> DirectorySummaryResponse:
    return DirectorySummaryResponse(**directory.summary())


@router.get("/admin/users/{user_id}/reliability", response_model=ReliabilityResponse)
def get_user_reliability(user_id: str, as_of: date | None = None) -> ReliabilityResponse:
    reference = as_of or build_runner(_settings).today()
    try:
        report = compute_reliability(directory, user_id, reference)
    except UserNotFoundError as exc:
        raise HTTPException(404, f"user not found: {user_id}") from exc
    return ReliabilityResponse(
        user_id=report.user_id,
        as_of=report.as_of,
        reliability_score=report.reliability_score,
        on_time_rate=report.on_time_rate,
        rating=report.rating,  # type: ignore[arg-type]
        summary=report.summary,
        confirmed_count=report.confirmed_count,
        on_time_count=report.on_time_count,
        late_count=report.late_count,
        overdue_count=report.overdue_count,
        pending_count=report.pending_count,
        groups_considered=report.groups_considered,
    )
