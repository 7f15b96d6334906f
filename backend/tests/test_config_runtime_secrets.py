from __future__ import annotations

import os

from contributions_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_stub_senders_and_in_memory_stores() -> None:
    names = [
        "NOTIFIER_SENDER_TYPE",
        "EMAIL_SENDER_TYPE",
        "DIRECTORY_STORE_BACKEND",
        "REMINDER_STORE_BACKEND",
        "REMINDER_ESCALATE_UNCONFIRMED",
        "DEFAULT_CURRENCY",
    ]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.notifier_sender_type == "stub"
        assert settings.email_sender_type == "stub"
        assert settings.directory_store_backend == "inmemory"
        assert settings.reminder_store_backend == "inmemory"
        assert settings.reminder_escalate_unconfirmed is True
        assert settings.default_currency == "NGN"
        assert runtime_secret_issues(settings) == ()
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_unknown_modes_fall_back_to_defaults() -> None:
    previous = {
        "REMINDER_STORE_BACKEND": _set_env("REMINDER_STORE_BACKEND", "mongo"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "loud"),
        "NOTIFIER_TIMEOUT_SECONDS": _set_env("NOTIFIER_TIMEOUT_SECONDS", "soon"),
        "REMINDER_DRY_RUN_DEFAULT": _set_env("REMINDER_DRY_RUN_DEFAULT", "yes"),
    }
    try:
        settings = get_settings()
        assert settings.reminder_store_backend == "inmemory"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.notifier_timeout_seconds == 30
        assert settings.reminder_dry_run_default is True
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_http_senders_require_base_url_and_real_keys() -> None:
    previous = {
        "NOTIFIER_SENDER_TYPE": _set_env("NOTIFIER_SENDER_TYPE", "http"),
        "NOTIFIER_API_BASE_URL": _set_env("NOTIFIER_API_BASE_URL", None),
        "NOTIFIER_API_KEY": _set_env("NOTIFIER_API_KEY", "change-me"),
        "EMAIL_SENDER_TYPE": _set_env("EMAIL_SENDER_TYPE", "http"),
        "EMAIL_API_BASE_URL": _set_env("EMAIL_API_BASE_URL", "https://mail.internal"),
        "EMAIL_API_KEY": _set_env("EMAIL_API_KEY", "prod-email-key-001"),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert "NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http" in issues
        assert "NOTIFIER_API_KEY is empty or uses a placeholder value" in issues
        assert not any(issue.startswith("EMAIL_") for issue in issues)
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_postgres_backend_requires_database_url() -> None:
    previous = {
        "DIRECTORY_STORE_BACKEND": _set_env("DIRECTORY_STORE_BACKEND", "postgres"),
        "DATABASE_URL": _set_env("DATABASE_URL", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert "DATABASE_URL is required when a store backend is set to postgres" in issues
    finally:
        for name, value in previous.items():
            _restore_env(name, value)
