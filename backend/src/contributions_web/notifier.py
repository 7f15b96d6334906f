from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Literal, Protocol

from .aggregator import ReminderPayload

DispatchStatus = Literal["sent", "failed", "dry_run"]


@dataclass(frozen=True)
class NotificationRequest:
    user_id: str
    notification_type: str
    title: str
    message: str
    group_id: str | None = None
    related_user_id: str | None = None


@dataclass(frozen=True)
class EmailRequest:
    recipient: str
    template: str
    subject: str
    data: dict[str, object]


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotificationDispatcher(Protocol):
    def create(self, request: NotificationRequest, *, dry_run: bool) -> DispatchResult: ...


class EmailSender(Protocol):
    def send_reminder(self, recipient: str, payload: ReminderPayload, *, dry_run: bool) -> DispatchResult: ...

    def send_overdue(self, recipient: str, payload: ReminderPayload, *, dry_run: bool) -> DispatchResult: ...

    def send_birthday_wish(self, recipient: str, name: str, *, dry_run: bool) -> DispatchResult: ...


def _reminder_email(recipient: str, payload: ReminderPayload) -> EmailRequest:
    return EmailRequest(
        recipient=recipient,
        template="comprehensive_reminder",
        subject=payload.title,
        data=payload.to_dict(),
    )


def _overdue_email(recipient: str, payload: ReminderPayload) -> EmailRequest:
    return EmailRequest(
        recipient=recipient,
        template="overdue_contribution",
        subject=payload.title,
        data=payload.to_dict(),
    )


def _birthday_email(recipient: str, name: str) -> EmailRequest:
    return EmailRequest(
        recipient=recipient,
        template="birthday_wish",
        subject=f"Happy Birthday, {name}!",
        data={"name": name},
    )


class StubNotificationDispatcher:
    """Records notifications in memory instead of delivering them."""

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self._lock = Lock()
        self.delivered: list[NotificationRequest] = []

    def create(self, request: NotificationRequest, *, dry_run: bool) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return DispatchResult(status="dry_run", attempted_at=attempted_at)

        if not self._enabled:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="In-app notification delivery is disabled",
            )

        if "fail" in request.user_id.lower():
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub dispatcher forced failure for user",
            )

        with self._lock:
            self.delivered.append(request)
            sequence = len(self.delivered)
        return DispatchResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-notification-{sequence:04d}",
        )

    def reset(self) -> None:
        with self._lock:
            self.delivered.clear()


class StubEmailSender:
    """Records emails in memory instead of delivering them."""

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self._lock = Lock()
        self.delivered: list[EmailRequest] = []

    def send_reminder(self, recipient: str, payload: ReminderPayload, *, dry_run: bool) -> DispatchResult:
        return self._send(_reminder_email(recipient, payload), dry_run=dry_run)

    def send_overdue(self, recipient: str, payload: ReminderPayload, *, dry_run: bool) -> DispatchResult:
        return self._send(_overdue_email(recipient, payload), dry_run=dry_run)

    def send_birthday_wish(self, recipient: str, name: str, *, dry_run: bool) -> DispatchResult:
        return self._send(_birthday_email(recipient, name), dry_run=dry_run)

    def reset(self) -> None:
        with self._lock:
            self.delivered.clear()

    def _send(self, email: EmailRequest, *, dry_run: bool) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return DispatchResult(status="dry_run", attempted_at=attempted_at)

        if not self._enabled:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="email_disabled",
                error_message="Email delivery is disabled",
            )

        if "fail" in email.recipient.lower():
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        with self._lock:
            self.delivered.append(email)
            sequence = len(self.delivered)
        return DispatchResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-email-{sequence:04d}",
        )


class _DispatchError(Exception):
    """Internal error raised when a delivery HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class _HttpClient:
    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def post(self, path: str, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}{path}"
        data = json.dumps(body, default=str).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _DispatchError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _DispatchError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _DispatchError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise _DispatchError(error_code="invalid_response", message="Response body is not JSON") from exc
        return parsed if isinstance(parsed, dict) else {}


class HttpNotificationDispatcher:
    """Creates in-app notifications through the application's notification service."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        self._client = _HttpClient(base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)

    def create(self, request: NotificationRequest, *, dry_run: bool) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return DispatchResult(status="dry_run", attempted_at=attempted_at)

        body: dict[str, object] = {
            "user_id": request.user_id,
            "type": request.notification_type,
            "title": request.title,
            "message": request.message,
            "group_id": request.group_id,
            "related_user_id": request.related_user_id,
        }
        try:
            response_data = self._client.post("/v1/notifications", body)
        except _DispatchError as exc:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (user: {request.user_id})",
            )
        notification_id = response_data.get("notification_id")
        return DispatchResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(notification_id) if notification_id is not None else None,
        )


class HttpEmailSender:
    """Sends templated emails through the application's mail service."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        self._client = _HttpClient(base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)

    def send_reminder(self, recipient: str, payload: ReminderPayload, *, dry_run: bool) -> DispatchResult:
        return self._send(_reminder_email(recipient, payload), dry_run=dry_run)

    def send_overdue(self, recipient: str, payload: ReminderPayload, *, dry_run: bool) -> DispatchResult:
        return self._send(_overdue_email(recipient, payload), dry_run=dry_run)

    def send_birthday_wish(self, recipient: str, name: str, *, dry_run: bool) -> DispatchResult:
        return self._send(_birthday_email(recipient, name), dry_run=dry_run)

    def _send(self, email: EmailRequest, *, dry_run: bool) -> DispatchResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return DispatchResult(status="dry_run", attempted_at=attempted_at)

        body: dict[str, object] = {
            "to": email.recipient,
            "template": email.template,
            "subject": email.subject,
            "data": email.data,
        }
        try:
            response_data = self._client.post("/v1/emails/send", body)
        except _DispatchError as exc:
            return DispatchResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_email(email.recipient)})",
            )
        message_id = response_data.get("message_id")
        return DispatchResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(message_id) if message_id is not None else None,
        )


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
