from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

from contributions_web.delivery_log import (
    DeduplicationGate,
    DeliveryKey,
    InMemoryDeliveryLog,
    SqlAlchemyDeliveryLog,
    create_delivery_log,
)

DAY = date(2024, 6, 8)


def _key(**overrides: object) -> DeliveryKey:
    values: dict[str, object] = {
        "user_id": "user-a",
        "kind": "forward_reminder",
        "horizon": 7,
        "day": DAY,
        "channel": "in_app",
    }
    values.update(overrides)
    return DeliveryKey(**values)  # type: ignore[arg-type]


def test_gate_records_once_per_key() -> None:
    gate = DeduplicationGate(InMemoryDeliveryLog())

    assert gate.already_sent(_key()) is False
    assert gate.record_sent(_key(), provider_message_id="msg-1") is True
    assert gate.already_sent(_key()) is True
    assert gate.record_sent(_key(), provider_message_id="msg-2") is False


def test_keys_are_distinct_per_horizon_day_channel_and_subject() -> None:
    gate = DeduplicationGate(InMemoryDeliveryLog())
    gate.record_sent(_key())

    assert gate.already_sent(_key(horizon=1)) is False
    assert gate.already_sent(_key(day=date(2024, 6, 9))) is False
    assert gate.already_sent(_key(channel="email")) is False
    assert gate.already_sent(_key(kind="overdue_contribution")) is False
    assert gate.already_sent(_key(subject="grp-1:user-b")) is False
    assert gate.already_sent(_key(user_id="user-z")) is False


def test_in_memory_log_lists_deliveries_by_user() -> None:
    log = InMemoryDeliveryLog()
    log.record_delivery(_key(), delivered_at=datetime(2024, 6, 8, 9, 0), provider_message_id="msg-1")
    log.record_delivery(_key(user_id="user-b"), delivered_at=datetime(2024, 6, 8, 9, 5, tzinfo=timezone.utc))

    records = log.list_deliveries(user_id="user-a")
    assert len(records) == 1
    assert records[0].provider_message_id == "msg-1"
    assert records[0].delivered_at.tzinfo is not None
    assert len(log.list_deliveries()) == 2

    log.reset()
    assert log.list_deliveries() == []


def test_sqlalchemy_log_enforces_unique_keys(tmp_path: Path) -> None:
    log = SqlAlchemyDeliveryLog(f"sqlite:///{tmp_path / 'deliveries.db'}")

    assert log.record_delivery(_key(subject="grp-1"), delivered_at=datetime(2024, 6, 8, 9, 0)) is True
    assert log.record_delivery(_key(subject="grp-1"), delivered_at=datetime(2024, 6, 8, 9, 1)) is False
    assert log.has_delivery(_key(subject="grp-1")) is True
    assert log.has_delivery(_key()) is False

    records = log.list_deliveries(user_id="user-a")
    assert [record.key for record in records] == [_key(subject="grp-1")]
    assert records[0].delivered_at == datetime(2024, 6, 8, 9, 0, tzinfo=timezone.utc)

    log.reset()
    assert log.has_delivery(_key(subject="grp-1")) is False


def test_factory_defaults_to_in_memory() -> None:
    assert isinstance(create_delivery_log(backend="inmemory", database_url=""), InMemoryDeliveryLog)
    assert isinstance(create_delivery_log(backend="unknown", database_url=""), InMemoryDeliveryLog)


def test_factory_builds_database_log(tmp_path: Path) -> None:
    log = create_delivery_log(backend="postgres", database_url=f"sqlite:///{tmp_path / 'log.db'}")
    assert isinstance(log, SqlAlchemyDeliveryLog)
