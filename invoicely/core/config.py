"""
Invoicely Approval Settings

Runtime settings for the approval workflow engine:
- Storage location
- Outbound email delivery
- Reminder and statistics windows
- Notification retry cap
- Service API keys

Everything is read from environment variables so replicas can be
configured identically without a settings file.
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass
class ApprovalSettings:
    """Settings consumed by the approval engine and its collaborators."""
    db_path: str = "invoicely.db"
    database_url: Optional[str] = None
    sqlite_fallback: bool = True

    email_api_url: str = ""
    email_api_key: str = ""
    email_from: str = "approvals@invoicely.app"
    email_timeout_seconds: float = 10.0

    app_base_url: str = "http://localhost:3000"
    reminder_after_hours: float = 24.0
    stats_default_days: int = 30
    notification_max_attempts: int = 5

    # Full keys of the form org_<org_id>_<secret>
    api_keys: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.reminder_after_hours < 0:
            raise ValueError("reminder_after_hours must be >= 0")
        if self.stats_default_days < 1:
            raise ValueError("stats_default_days must be >= 1")
        if self.notification_max_attempts < 1:
            raise ValueError("notification_max_attempts must be >= 1")

    @property
    def email_enabled(self) -> bool:
        return bool(self.email_api_url and self.email_api_key)

    @property
    def approvals_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/dashboard/approvals"

    @classmethod
    def from_env(cls) -> "ApprovalSettings":
        return cls(
            db_path=os.getenv("INVOICELY_DB_PATH", "invoicely.db"),
            database_url=os.getenv("DATABASE_URL") or None,
            sqlite_fallback=_env_bool("INVOICELY_DB_FALLBACK_SQLITE", True),
            email_api_url=os.getenv("EMAIL_API_URL", "").strip(),
            email_api_key=os.getenv("EMAIL_API_KEY", "").strip(),
            email_from=os.getenv("EMAIL_FROM", "approvals@invoicely.app"),
            email_timeout_seconds=_env_float("EMAIL_TIMEOUT_SECONDS", 10.0),
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
            reminder_after_hours=_env_float("APPROVAL_REMINDER_HOURS", 24.0),
            stats_default_days=_env_int("APPROVAL_STATS_DEFAULT_DAYS", 30),
            notification_max_attempts=_env_int("NOTIFICATION_MAX_ATTEMPTS", 5),
            api_keys=_env_list("INVOICELY_API_KEYS"),
        )


_SETTINGS: Optional[ApprovalSettings] = None


def get_settings() -> ApprovalSettings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = ApprovalSettings.from_env()
    return _SETTINGS
