from __future__ import annotations

import io
import json
import socket
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from contributions_web.aggregator import ReminderPayload
from contributions_web.notifier import (
    HttpEmailSender,
    HttpNotificationDispatcher,
    NotificationRequest,
    StubEmailSender,
    StubNotificationDispatcher,
    mask_email,
)


def _notification(user_id: str = "user-a") -> NotificationRequest:
    return NotificationRequest(
        user_id=user_id,
        notification_type="birthday_reminder",
        title="Birthday Reminder",
        message="7 days reminder: One or more birthdays coming up. Check your email for details.",
        group_id="grp-1",
    )


def _payload() -> ReminderPayload:
    return ReminderPayload(
        notification_type="birthday_reminder",
        title="Birthday Reminder",
        message="7 days reminder: One or more birthdays coming up. Check your email for details.",
        horizon=7,
        group_names=("Office",),
        celebrant_names=("Bola",),
        paid_count=0,
        unpaid_count=1,
        totals_by_currency={"NGN": 5000.0},
        items=({"group_id": "grp-1", "has_paid": False},),
    )


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _dispatcher() -> HttpNotificationDispatcher:
    return HttpNotificationDispatcher(base_url="https://notify.test/", api_key="test-api-key-abc123")


def _email_sender() -> HttpEmailSender:
    return HttpEmailSender(base_url="https://mail.test", api_key="test-api-key-abc123")


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_dispatcher_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"notification_id": "ntf-123"})

    result = _dispatcher().create(_notification(), dry_run=False)

    assert result.status == "sent"
    assert result.provider_message_id == "ntf-123"
    request = mock_urlopen.call_args[0][0]
    assert request.full_url == "https://notify.test/v1/notifications"
    assert request.get_header("Authorization") == "Bearer test-api-key-abc123"
    body = json.loads(request.data.decode("utf-8"))
    assert body["user_id"] == "user-a"
    assert body["type"] == "birthday_reminder"
    assert body["group_id"] == "grp-1"


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_dispatcher_dry_run_skips_network(mock_urlopen: MagicMock) -> None:
    result = _dispatcher().create(_notification(), dry_run=True)
    assert result.status == "dry_run"
    mock_urlopen.assert_not_called()


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_dispatcher_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://notify.test/v1/notifications",
        code=503,
        msg="Service Unavailable",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(b""),
    )

    result = _dispatcher().create(_notification(), dry_run=False)

    assert result.status == "failed"
    assert result.error_code == "http_503"
    assert "user-a" in (result.error_message or "")


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_dispatcher_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")
    result = _dispatcher().create(_notification(), dry_run=False)
    assert result.status == "failed"
    assert result.error_code == "connection_error"


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_dispatcher_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")
    result = _dispatcher().create(_notification(), dry_run=False)
    assert result.status == "failed"
    assert result.error_code == "timeout"


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_dispatcher_invalid_json(mock_urlopen: MagicMock) -> None:
    response = _mock_response({})
    response.read.return_value = b"<html>oops</html>"
    mock_urlopen.return_value = response
    result = _dispatcher().create(_notification(), dry_run=False)
    assert result.status == "failed"
    assert result.error_code == "invalid_response"


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_email_sender_posts_template(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "mail-9"})

    result = _email_sender().send_reminder("ada@example.com", _payload(), dry_run=False)

    assert result.status == "sent"
    assert result.provider_message_id == "mail-9"
    request = mock_urlopen.call_args[0][0]
    assert request.full_url == "https://mail.test/v1/emails/send"
    body = json.loads(request.data.decode("utf-8"))
    assert body["to"] == "ada@example.com"
    assert body["template"] == "comprehensive_reminder"
    assert body["data"]["totals_by_currency"] == {"NGN": 5000.0}


@patch("contributions_web.notifier.urllib.request.urlopen")
def test_http_email_sender_masks_recipient_on_failure(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("refused")
    result = _email_sender().send_birthday_wish("ada@example.com", "Ada", dry_run=False)
    assert result.status == "failed"
    assert "ada@example.com" not in (result.error_message or "")
    assert "a***@example.com" in (result.error_message or "")


def test_http_clients_require_base_url_and_key() -> None:
    with pytest.raises(ValueError):
        HttpNotificationDispatcher(base_url="", api_key="key")
    with pytest.raises(ValueError):
        HttpEmailSender(base_url="https://mail.test", api_key="  ")


def test_stub_dispatcher_records_and_forces_failures() -> None:
    dispatcher = StubNotificationDispatcher(enabled=True)

    sent = dispatcher.create(_notification(), dry_run=False)
    assert sent.status == "sent"
    assert sent.provider_message_id == "stub-notification-0001"
    assert dispatcher.create(_notification("user-fail"), dry_run=False).status == "failed"
    assert len(dispatcher.delivered) == 1

    disabled = StubNotificationDispatcher(enabled=False).create(_notification(), dry_run=False)
    assert disabled.error_code == "notifier_disabled"


def test_stub_email_sender_uses_templates() -> None:
    sender = StubEmailSender(enabled=True)
    sender.send_overdue("ada@example.com", _payload(), dry_run=False)
    sender.send_birthday_wish("ada@example.com", "Ada", dry_run=False)

    assert [email.template for email in sender.delivered] == ["overdue_contribution", "birthday_wish"]
    assert sender.delivered[1].subject == "Happy Birthday, Ada!"
    assert sender.send_reminder("fail@example.com", _payload(), dry_run=False).status == "failed"
    assert StubEmailSender(enabled=False).send_reminder("a@example.com", _payload(), dry_run=True).status == "dry_run"


def test_mask_email() -> None:
    assert mask_email("ada@example.com") == "a***@example.com"
    assert mask_email("a@example.com") == "*@example.com"
    assert mask_email("") == "***"
