from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock
from typing import Callable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Boolean, Date, DateTime, Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .aggregator import GroupError, OverdueItem, ReminderAggregator, consolidate_forward, consolidate_overdue
from .deadlines import FORWARD_HORIZONS, OVERDUE_HORIZONS, as_date, birthday_rule, next_occurrence
from .delivery_log import DeduplicationGate, DeliveryChannel, DeliveryKey, ReminderKind
from .directory import ContributionDirectory
from .messages import BIRTHDAY_WISH_TITLE, birthday_wish_message, overdue_message, overdue_title
from .models import ReminderDeliveryResult, ReminderRunResponse, RunKind
from .notifier import DispatchResult, EmailSender, NotificationDispatcher, NotificationRequest
from .records import UserRecord

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown reminder timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


@dataclass(frozen=True)
class ReminderRunRecord:
    run_id: str
    kind: str
    as_of: date
    dry_run: bool
    status: str
    triggered_by: str
    users_evaluated: int
    users_notified: int
    sent_count: int
    skipped_count: int
    failed_count: int
    errored_count: int
    started_at: datetime
    finished_at: datetime


class ReminderRunRepository(Protocol):
    def reset(self) -> None: ...

    def save_run(self, record: ReminderRunRecord) -> None: ...

    def get_run(self, run_id: str) -> ReminderRunRecord | None: ...

    def get_latest_run(self, *, kind: str | None = None) -> ReminderRunRecord | None: ...


class InMemoryReminderRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._runs: dict[str, ReminderRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._runs.clear()

    def save_run(self, record: ReminderRunRecord) -> None:
        with self._lock:
            self._runs[record.run_id] = record

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def get_latest_run(self, *, kind: str | None = None) -> ReminderRunRecord | None:
        with self._lock:
            runs = [run for run in self._runs.values() if kind is None or run.kind == kind]
        if not runs:
            return None
        return max(runs, key=lambda run: run.started_at)


class ReminderRunsBase(DeclarativeBase):
    pass


class _ReminderRunRow(ReminderRunsBase):
    __tablename__ = "reminder_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    as_of: Mapped[date] = mapped_column(Date, nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)
    users_evaluated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    users_notified: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errored_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _record_from_row(row: _ReminderRunRow) -> ReminderRunRecord:
    return ReminderRunRecord(
        run_id=row.run_id,
        kind=row.kind,
        as_of=row.as_of,
        dry_run=row.dry_run,
        status=row.status,
        triggered_by=row.triggered_by,
        users_evaluated=row.users_evaluated,
        users_notified=row.users_notified,
        sent_count=row.sent_count,
        skipped_count=row.skipped_count,
        failed_count=row.failed_count,
        errored_count=row.errored_count,
        started_at=_coerce_utc(row.started_at),
        finished_at=_coerce_utc(row.finished_at),
    )


class SqlAlchemyReminderRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderRunRow).delete()

    def save_run(self, record: ReminderRunRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _ReminderRunRow(
                        run_id=record.run_id,
                        kind=record.kind,
                        as_of=record.as_of,
                        dry_run=record.dry_run,
                        status=record.status,
                        triggered_by=record.triggered_by,
                        users_evaluated=record.users_evaluated,
                        users_notified=record.users_notified,
                        sent_count=record.sent_count,
                        skipped_count=record.skipped_count,
                        failed_count=record.failed_count,
                        errored_count=record.errored_count,
                        started_at=_coerce_utc(record.started_at),
                        finished_at=_coerce_utc(record.finished_at),
                    )
                )

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRunRow, run_id)
            if row is None:
                return None
            return _record_from_row(row)

    def get_latest_run(self, *, kind: str | None = None) -> ReminderRunRecord | None:
        with self._session() as session:
            query = select(_ReminderRunRow).order_by(_ReminderRunRow.started_at.desc()).limit(1)
            if kind is not None:
                query = query.where(_ReminderRunRow.kind == kind)
            row = session.execute(query).scalar_one_or_none()
            if row is None:
                return None
            return _record_from_row(row)


def create_reminder_run_repository(*, backend: str, database_url: str) -> ReminderRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRunRepository(database_url)
    return InMemoryReminderRunRepository()


@dataclass
class _RunContext:
    kind: RunKind
    as_of: date
    dry_run: bool
    claimed: set[DeliveryKey] = field(default_factory=set)
    results: list[ReminderDeliveryResult] = field(default_factory=list)
    notified_users: set[str] = field(default_factory=set)
    users_evaluated: int = 0

    def add(self, result: ReminderDeliveryResult) -> None:
        self.results.append(result)
        if result.status in {"sent", "dry_run"}:
            self.notified_users.add(result.user_id)

    def count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)


class ReminderRunner:
    """Runs the forward, overdue and birthday-wish passes over every eligible user.

    Each user is processed independently: a failure while reading one user's
    data or evaluating one group is logged, counted and skipped. Deliveries go
    through the deduplication gate, so running a pass twice on the same day
    never delivers the same reminder twice.
    """

    def __init__(
        self,
        *,
        directory: ContributionDirectory,
        aggregator: ReminderAggregator,
        gate: DeduplicationGate,
        dispatcher: NotificationDispatcher,
        email_sender: EmailSender,
        run_repository: ReminderRunRepository,
        timezone_name: str = "UTC",
    ) -> None:
        self._directory = directory
        self._aggregator = aggregator
        self._gate = gate
        self._dispatcher = dispatcher
        self._email_sender = email_sender
        self._run_repository = run_repository
        self._timezone = _resolve_timezone(timezone_name)

    def today(self) -> date:
        return datetime.now(self._timezone).date()

    def run_forward_reminders(
        self,
        as_of: date | None = None,
        *,
        dry_run: bool = False,
        triggered_by: str = "scheduler",
    ) -> ReminderRunResponse:
        return self._run("forward", as_of, dry_run=dry_run, triggered_by=triggered_by, handler=self._forward_for_user)

    def run_overdue_escalation(
        self,
        as_of: date | None = None,
        *,
        dry_run: bool = False,
        triggered_by: str = "scheduler",
    ) -> ReminderRunResponse:
        return self._run("overdue", as_of, dry_run=dry_run, triggered_by=triggered_by, handler=self._overdue_for_user)

    def run_birthday_wishes(
        self,
        as_of: date | None = None,
        *,
        dry_run: bool = False,
        triggered_by: str = "scheduler",
    ) -> ReminderRunResponse:
        return self._run(
            "birthday_wish",
            as_of,
            dry_run=dry_run,
            triggered_by=triggered_by,
            handler=self._birthday_wish_for_user,
        )

    def _run(
        self,
        kind: RunKind,
        as_of: date | None,
        *,
        dry_run: bool,
        triggered_by: str,
        handler: Callable[[_RunContext, UserRecord], None],
    ) -> ReminderRunResponse:
        started_at = _now_utc()
        run_day = as_date(as_of) if as_of is not None else self.today()
        context = _RunContext(kind=kind, as_of=run_day, dry_run=dry_run)
        logger.info("starting %s reminder run for %s (dry_run=%s)", kind, run_day.isoformat(), dry_run)

        users = self._directory.list_eligible_users()
        for user in users:
            context.users_evaluated += 1
            try:
                handler(context, user)
            except Exception as exc:
                logger.exception("%s reminder run failed for user %s", kind, user.user_id)
                context.add(
                    ReminderDeliveryResult(
                        user_id=user.user_id,
                        kind=kind,
                        status="errored",
                        reason="user_processing_error",
                        error_message=str(exc) or type(exc).__name__,
                    )
                )

        response = ReminderRunResponse(
            run_id=f"rrun_{secrets.token_hex(8)}",
            kind=kind,
            as_of=run_day,
            run_at=started_at,
            dry_run=dry_run,
            users_evaluated=context.users_evaluated,
            users_notified=len(context.notified_users),
            sent_count=context.count("sent"),
            skipped_count=context.count("skipped"),
            failed_count=context.count("failed"),
            errored_count=context.count("errored"),
            results=context.results,
        )
        self._save_run(response, triggered_by=triggered_by)
        logger.info(
            "%s reminder run %s finished: sent=%d skipped=%d failed=%d errored=%d",
            kind,
            response.run_id,
            response.sent_count,
            response.skipped_count,
            response.failed_count,
            response.errored_count,
        )
        return response

    def _save_run(self, response: ReminderRunResponse, *, triggered_by: str) -> None:
        record = ReminderRunRecord(
            run_id=response.run_id,
            kind=response.kind,
            as_of=response.as_of,
            dry_run=response.dry_run,
            status="completed_with_errors" if response.errored_count else "completed",
            triggered_by=triggered_by,
            users_evaluated=response.users_evaluated,
            users_notified=response.users_notified,
            sent_count=response.sent_count,
            skipped_count=response.skipped_count,
            failed_count=response.failed_count,
            errored_count=response.errored_count,
            started_at=response.run_at,
            finished_at=_now_utc(),
        )
        try:
            self._run_repository.save_run(record)
        except Exception:
            logger.exception("failed to persist reminder run %s", response.run_id)

    def _forward_enabled(self, user: UserRecord, horizon: int) -> bool:
        if horizon == 7:
            return user.notify_7_days_before
        if horizon == 1:
            return user.notify_1_day_before
        if horizon == 0:
            return user.notify_same_day
        return False

    def _forward_for_user(self, context: _RunContext, user: UserRecord) -> None:
        aggregate = self._aggregator.aggregate(user, context.as_of, include_overdue=False)
        self._record_group_errors(context, user, aggregate.errors)

        for horizon in FORWARD_HORIZONS:
            buckets = aggregate.forward.get(horizon)
            if not buckets:
                continue
            if not self._forward_enabled(user, horizon):
                logger.info("user %s disabled %d-day reminders", user.user_id, horizon)
                context.add(
                    ReminderDeliveryResult(
                        user_id=user.user_id,
                        kind=context.kind,
                        status="skipped",
                        reason="preference_disabled",
                        horizon=horizon,
                    )
                )
                continue

            payload = consolidate_forward(horizon, buckets)
            single_group = buckets[0].group.group_id if len(buckets) == 1 else None
            notification = NotificationRequest(
                user_id=user.user_id,
                notification_type=payload.notification_type,
                title=payload.title,
                message=payload.message,
                group_id=single_group,
            )
            self._deliver(
                context,
                DeliveryKey(user.user_id, "forward_reminder", horizon, context.as_of, "in_app"),
                group_id=single_group,
                send=lambda: self._dispatcher.create(notification, dry_run=context.dry_run),
            )
            self._deliver_email(
                context,
                user,
                kind="forward_reminder",
                horizon=horizon,
                enabled=user.email_reminders_enabled,
                send=lambda recipient: self._email_sender.send_reminder(recipient, payload, dry_run=context.dry_run),
            )

    def _overdue_for_user(self, context: _RunContext, user: UserRecord) -> None:
        # A single same-day preference governs all overdue escalation.
        if not user.notify_same_day:
            logger.info("user %s disabled same-day reminders, skipping overdue escalation", user.user_id)
            context.add(
                ReminderDeliveryResult(
                    user_id=user.user_id,
                    kind=context.kind,
                    status="skipped",
                    reason="preference_disabled",
                )
            )
            return

        aggregate = self._aggregator.aggregate(user, context.as_of, include_forward=False)
        self._record_group_errors(context, user, aggregate.errors)

        for horizon in OVERDUE_HORIZONS:
            items = aggregate.overdue.get(horizon)
            if not items:
                continue
            for item in items:
                self._deliver_overdue_notification(context, user, horizon, item)
            payload = consolidate_overdue(horizon, items)
            self._deliver_email(
                context,
                user,
                kind="overdue_contribution",
                horizon=horizon,
                enabled=user.email_overdue_enabled,
                send=lambda recipient: self._email_sender.send_overdue(recipient, payload, dry_run=context.dry_run),
            )

    def _deliver_overdue_notification(
        self,
        context: _RunContext,
        user: UserRecord,
        horizon: int,
        item: OverdueItem,
    ) -> None:
        notification = NotificationRequest(
            user_id=user.user_id,
            notification_type="overdue_contribution",
            title=overdue_title(horizon),
            message=overdue_message(group=item.group, event_name=item.event_name, days_overdue=horizon),
            group_id=item.group.group_id,
            related_user_id=item.obligee.user_id if item.obligee is not None else None,
        )
        self._deliver(
            context,
            DeliveryKey(user.user_id, "overdue_contribution", horizon, context.as_of, "in_app", item.subject),
            group_id=item.group.group_id,
            send=lambda: self._dispatcher.create(notification, dry_run=context.dry_run),
        )

    def _birthday_wish_for_user(self, context: _RunContext, user: UserRecord) -> None:
        if user.birthday is None:
            return
        if next_occurrence(birthday_rule(user.birthday), context.as_of) != context.as_of:
            return

        notification = NotificationRequest(
            user_id=user.user_id,
            notification_type="birthday_wish",
            title=BIRTHDAY_WISH_TITLE,
            message=birthday_wish_message(user.name),
        )
        self._deliver(
            context,
            DeliveryKey(user.user_id, "birthday_wish", 0, context.as_of, "in_app"),
            group_id=None,
            send=lambda: self._dispatcher.create(notification, dry_run=context.dry_run),
        )
        self._deliver_email(
            context,
            user,
            kind="birthday_wish",
            horizon=0,
            enabled=user.email_birthday_enabled,
            send=lambda recipient: self._email_sender.send_birthday_wish(recipient, user.name, dry_run=context.dry_run),
        )

    def _record_group_errors(self, context: _RunContext, user: UserRecord, errors: list[GroupError]) -> None:
        for error in errors:
            context.add(
                ReminderDeliveryResult(
                    user_id=user.user_id,
                    kind=context.kind,
                    status="errored",
                    reason="group_evaluation_error",
                    group_id=error.group_id,
                    error_message=error.error,
                )
            )

    def _deliver_email(
        self,
        context: _RunContext,
        user: UserRecord,
        *,
        kind: ReminderKind,
        horizon: int,
        enabled: bool,
        send: Callable[[str], DispatchResult],
    ) -> None:
        if not user.email:
            reason = "no_email"
        elif not enabled:
            reason = "email_preference_disabled"
        else:
            recipient = user.email
            self._deliver(
                context,
                DeliveryKey(user.user_id, kind, horizon, context.as_of, "email"),
                group_id=None,
                send=lambda: send(recipient),
            )
            return
        context.add(
            ReminderDeliveryResult(
                user_id=user.user_id,
                kind=context.kind,
                status="skipped",
                reason=reason,
                horizon=horizon,
                channel="email",
            )
        )

    def _deliver(
        self,
        context: _RunContext,
        key: DeliveryKey,
        *,
        group_id: str | None,
        send: Callable[[], DispatchResult],
    ) -> None:
        channel: DeliveryChannel = key.channel

        def _result(status: str, reason: str, **extra: object) -> ReminderDeliveryResult:
            return ReminderDeliveryResult(
                user_id=key.user_id,
                kind=context.kind,
                status=status,  # type: ignore[arg-type]
                reason=reason,
                horizon=key.horizon,
                channel=channel,
                group_id=group_id,
                **extra,  # type: ignore[arg-type]
            )

        if key in context.claimed:
            context.add(_result("skipped", "duplicate_in_run"))
            return
        if self._gate.already_sent(key):
            logger.debug("skipping %s for user %s: already sent today", key.kind, key.user_id)
            context.add(_result("skipped", "already_sent"))
            return
        context.claimed.add(key)

        try:
            outcome = send()
        except Exception as exc:
            logger.exception("%s %s delivery raised for user %s", key.kind, channel, key.user_id)
            context.add(_result("failed", "dispatch_error", error_message=str(exc) or type(exc).__name__))
            return

        if outcome.status == "dry_run":
            context.add(_result("dry_run", "would_send"))
            return
        if outcome.status != "sent":
            logger.warning(
                "%s %s delivery failed for user %s: %s",
                key.kind,
                channel,
                key.user_id,
                outcome.error_code,
            )
            context.add(
                _result(
                    "failed",
                    "dispatch_failed",
                    error_code=outcome.error_code,
                    error_message=outcome.error_message,
                )
            )
            return

        try:
            self._gate.record_sent(key, provider_message_id=outcome.provider_message_id)
        except Exception:
            logger.exception("delivered %s to user %s but could not record it", key.kind, key.user_id)
        context.add(_result("sent", "delivered", provider_message_id=outcome.provider_message_id))
