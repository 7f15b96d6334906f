from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Literal, Protocol

from sqlalchemy import DateTime, Date, Integer, String, UniqueConstraint, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

ReminderKind = Literal["forward_reminder", "overdue_contribution", "birthday_wish"]
DeliveryChannel = Literal["in_app", "email"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DeliveryKey:
    """Structured identity of one delivered reminder.

    ``horizon`` is the day offset of the bucket (7/1/0 forward, 1/3/7/14
    overdue). ``subject`` narrows the key to one group or celebrant for
    per-item notifications and is empty for consolidated ones.
    """

    user_id: str
    kind: ReminderKind
    horizon: int
    day: date
    channel: DeliveryChannel
    subject: str = ""


@dataclass(frozen=True)
class DeliveryRecord:
    key: DeliveryKey
    delivered_at: datetime
    provider_message_id: str | None = None


class DeliveryLog(Protocol):
    def reset(self) -> None: ...

    def has_delivery(self, key: DeliveryKey) -> bool: ...

    def record_delivery(
        self,
        key: DeliveryKey,
        *,
        delivered_at: datetime,
        provider_message_id: str | None = None,
    ) -> bool: ...

    def list_deliveries(self, *, user_id: str | None = None) -> list[DeliveryRecord]: ...


class InMemoryDeliveryLog:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[DeliveryKey, DeliveryRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def has_delivery(self, key: DeliveryKey) -> bool:
        with self._lock:
            return key in self._records

    def record_delivery(
        self,
        key: DeliveryKey,
        *,
        delivered_at: datetime,
        provider_message_id: str | None = None,
    ) -> bool:
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = DeliveryRecord(
                key=key,
                delivered_at=_coerce_utc(delivered_at),
                provider_message_id=provider_message_id,
            )
            return True

    def list_deliveries(self, *, user_id: str | None = None) -> list[DeliveryRecord]:
        with self._lock:
            records = list(self._records.values())
        if user_id is not None:
            records = [record for record in records if record.key.user_id == user_id]
        return sorted(records, key=lambda record: record.delivered_at)


class DeliveryLogBase(DeclarativeBase):
    pass


class _ReminderDeliveryRow(DeliveryLogBase):
    __tablename__ = "reminder_deliveries"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "kind",
            "horizon",
            "delivery_day",
            "channel",
            "subject",
            name="uq_reminder_deliveries_key",
        ),
    )

    delivery_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    horizon: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_day: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    subject: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _key_from_row(row: _ReminderDeliveryRow) -> DeliveryKey:
    return DeliveryKey(
        user_id=row.user_id,
        kind=row.kind,  # type: ignore[arg-type]
        horizon=row.horizon,
        day=row.delivery_day,
        channel=row.channel,  # type: ignore[arg-type]
        subject=row.subject,
    )


class SqlAlchemyDeliveryLog:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DeliveryLogBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderDeliveryRow).delete()

    def has_delivery(self, key: DeliveryKey) -> bool:
        with self._session() as session:
            row = session.execute(
                select(_ReminderDeliveryRow.delivery_id).where(
                    _ReminderDeliveryRow.user_id == key.user_id,
                    _ReminderDeliveryRow.kind == key.kind,
                    _ReminderDeliveryRow.horizon == key.horizon,
                    _ReminderDeliveryRow.delivery_day == key.day,
                    _ReminderDeliveryRow.channel == key.channel,
                    _ReminderDeliveryRow.subject == key.subject,
                )
            ).first()
            return row is not None

    def record_delivery(
        self,
        key: DeliveryKey,
        *,
        delivered_at: datetime,
        provider_message_id: str | None = None,
    ) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _ReminderDeliveryRow(
                            user_id=key.user_id,
                            kind=key.kind,
                            horizon=key.horizon,
                            delivery_day=key.day,
                            channel=key.channel,
                            subject=key.subject,
                            provider_message_id=provider_message_id,
                            delivered_at=_coerce_utc(delivered_at),
                        )
                    )
        except IntegrityError:
            return False
        return True

    def list_deliveries(self, *, user_id: str | None = None) -> list[DeliveryRecord]:
        with self._session() as session:
            query = select(_ReminderDeliveryRow).order_by(_ReminderDeliveryRow.delivered_at.asc())
            if user_id is not None:
                query = query.where(_ReminderDeliveryRow.user_id == user_id)
            rows = session.execute(query).scalars()
            return [
                DeliveryRecord(
                    key=_key_from_row(row),
                    delivered_at=_coerce_utc(row.delivered_at),
                    provider_message_id=row.provider_message_id,
                )
                for row in rows
            ]


def create_delivery_log(*, backend: str, database_url: str) -> DeliveryLog:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDeliveryLog(database_url)
    return InMemoryDeliveryLog()


class DeduplicationGate:
    """At-most-once delivery per key and day.

    The gate is consulted before a message is composed and written only after
    the collaborator reports a successful send, so a failed delivery is picked
    up again by the next run.
    """

    def __init__(self, log: DeliveryLog) -> None:
        self._log = log

    def already_sent(self, key: DeliveryKey) -> bool:
        return self._log.has_delivery(key)

    def record_sent(self, key: DeliveryKey, *, provider_message_id: str | None = None) -> bool:
        return self._log.record_delivery(key, delivered_at=_now_utc(), provider_message_id=provider_message_id)
