from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = "dosync.db"
    backup_name: str = "docker-compose.backup.yml"
    backup_dir: str | None = None
    backup_history: int = 10
    prune_images: bool = True
    harbor_hosts: tuple[str, ...] = field(default_factory=tuple)
    registry_timeout_s: int = 30

    # Email alerting (optional)
    enable_email: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    email_from: str | None = None
    email_to: str | None = None

    # Webhook alerting (optional)
    webhook_url: str | None = None
    slack_webhook_url: str | None = None

    # Dashboard
    dashboard_user: str = "admin"
    dashboard_password: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("DOSYNC_DB_PATH", "dosync.db"),
            backup_name=os.getenv("DOSYNC_BACKUP_NAME", "docker-compose.backup.yml"),
            backup_dir=os.getenv("DOSYNC_BACKUP_DIR") or None,
            backup_history=max(1, _env_int("DOSYNC_BACKUP_HISTORY", 10)),
            prune_images=_env_bool("DOSYNC_PRUNE_IMAGES", True),
            harbor_hosts=_env_list("DOSYNC_HARBOR_HOSTS"),
            registry_timeout_s=_env_int("DOSYNC_REGISTRY_TIMEOUT_S", 30),
            enable_email=_env_bool("DOSYNC_ENABLE_EMAIL", False),
            smtp_host=os.getenv("DOSYNC_SMTP_HOST", "smtp.gmail.com"),
            smtp_port=_env_int("DOSYNC_SMTP_PORT", 587),
            smtp_user=os.getenv("DOSYNC_SMTP_USER"),
            smtp_password=os.getenv("DOSYNC_SMTP_PASSWORD"),
            email_from=os.getenv("DOSYNC_EMAIL_FROM"),
            email_to=os.getenv("DOSYNC_EMAIL_TO"),
            webhook_url=os.getenv("DOSYNC_WEBHOOK_URL"),
            slack_webhook_url=os.getenv("DOSYNC_SLACK_WEBHOOK_URL"),
            dashboard_user=os.getenv("DOSYNC_DASHBOARD_USER", "admin"),
            dashboard_password=os.getenv("DOSYNC_DASHBOARD_PASSWORD"),
        )
