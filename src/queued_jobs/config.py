"""Runtime configuration for the job engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class EngineSettings:
    """Run-loop and health-check limits."""

    stall_threshold: int = 3
    memory_limit_bytes: int = 134_217_728


@dataclass(slots=True)
class NotificationSettings:
    """Where stalled-job notices go; without an SMTP host they are only logged."""

    admin_email: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True

    @property
    def email_enabled(self) -> bool:
        return bool(self.admin_email and self.smtp_host)


@dataclass(slots=True)
class UserContextSettings:
    """Default principal jobs run as."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".queued_jobs.db")
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("QUEUED_JOBS_DB_PATH", ".queued_jobs.db")),
            sqlite_busy_timeout_ms=int(os.getenv("QUEUED_JOBS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                stall_threshold=int(os.getenv("QUEUED_JOBS_STALL_THRESHOLD", "3")),
                memory_limit_bytes=int(
                    os.getenv("QUEUED_JOBS_MEMORY_LIMIT_BYTES", "134217728"),
                ),
            ),
            notifications=NotificationSettings(
                admin_email=_env_optional("QUEUED_JOBS_ADMIN_EMAIL"),
                smtp_host=_env_optional("QUEUED_JOBS_SMTP_HOST"),
                smtp_port=int(os.getenv("QUEUED_JOBS_SMTP_PORT", "587")),
                smtp_user=_env_optional("QUEUED_JOBS_SMTP_USER"),
                smtp_password=_env_optional("QUEUED_JOBS_SMTP_PASSWORD"),
                smtp_use_tls=_env_bool("QUEUED_JOBS_SMTP_USE_TLS", default=True),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("QUEUED_JOBS_USER_ID", "default_user"),
                user_name=os.getenv("QUEUED_JOBS_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if self.engine.stall_threshold < 0:
            raise ValueError("QUEUED_JOBS_STALL_THRESHOLD must be >= 0.")
        if self.engine.memory_limit_bytes <= 0:
            raise ValueError("QUEUED_JOBS_MEMORY_LIMIT_BYTES must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("QUEUED_JOBS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not 0 < self.notifications.smtp_port < 65_536:
            raise ValueError(
                f"QUEUED_JOBS_SMTP_PORT must be a valid port, got {self.notifications.smtp_port}.",
            )
        if self.notifications.smtp_host and not self.notifications.admin_email:
            raise ValueError("QUEUED_JOBS_ADMIN_EMAIL is required when an SMTP host is set.")


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
