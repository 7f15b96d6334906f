from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Group Contributions Reminders"
    api_prefix: str = "/api/v1"
    directory_store_backend: str = "inmemory"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    # In-app notification delivery.
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    # Email delivery.
    email_enabled: bool = False
    email_sender_type: str = "stub"
    email_api_base_url: str = ""
    email_api_key: str = ""
    email_timeout_seconds: int = 30
    reminder_dry_run_default: bool = False
    reminder_allow_live_as_of_override: bool = False
    reminder_escalate_unconfirmed: bool = True
    reminder_timezone: str = "UTC"
    default_currency: str = "NGN"
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("CONTRIBUTIONS_APP_NAME", "Group Contributions Reminders"),
        api_prefix=os.getenv("CONTRIBUTIONS_API_PREFIX", "/api/v1"),
        directory_store_backend=_normalize_mode(
            os.getenv("DIRECTORY_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), False),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", ""),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        reminder_dry_run_default=_as_bool(os.getenv("REMINDER_DRY_RUN_DEFAULT"), False),
        reminder_allow_live_as_of_override=_as_bool(os.getenv("REMINDER_ALLOW_LIVE_AS_OF_OVERRIDE"), False),
        reminder_escalate_unconfirmed=_as_bool(os.getenv("REMINDER_ESCALATE_UNCONFIRMED"), True),
        reminder_timezone=os.getenv("REMINDER_TIMEZONE", "UTC"),
        default_currency=os.getenv("DEFAULT_CURRENCY", "NGN").strip().upper() or "NGN",
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if _is_placeholder(settings.notifier_api_key, defaults={"dev-notifier-key"}):
            issues.append("NOTIFIER_API_KEY is empty or uses a placeholder value")
    if settings.email_sender_type == "http":
        if not settings.email_api_base_url.strip():
            issues.append("EMAIL_API_BASE_URL is required when EMAIL_SENDER_TYPE=http")
        if _is_placeholder(settings.email_api_key, defaults={"dev-email-key"}):
            issues.append("EMAIL_API_KEY is empty or uses a placeholder value")
    uses_database = "postgres" in {settings.directory_store_backend, settings.reminder_store_backend}
    if uses_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when a store backend is set to postgres")
    return tuple(issues)
