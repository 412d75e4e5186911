from __future__ import annotations

import logging
import smtplib
import socket
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import httpx

from .config import NotificationsConfig
from .settings import Settings


log = logging.getLogger(__name__)


def send_email(settings: Settings, subject: str, body: str, recipients: list[str] | None = None) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - DOSYNC_ENABLE_EMAIL=true
      - DOSYNC_SMTP_HOST / DOSYNC_SMTP_PORT
      - DOSYNC_SMTP_USER / DOSYNC_SMTP_PASSWORD
      - DOSYNC_EMAIL_FROM / DOSYNC_EMAIL_TO
    """
    to = recipients or ([settings.email_to] if settings.email_to else [])
    if not settings.enable_email:
        return False
    if not all([settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_password, settings.email_from, to]):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, to, msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.warning("email notification failed: %s", e)
        return False


def send_webhook(url: str, payload: dict[str, Any], headers: dict[str, str] | None = None, timeout_s: float = 10.0) -> bool:
    try:
        with httpx.Client(timeout=timeout_s) as client:
            resp = client.post(url, json=payload, headers=headers or {})
        if resp.status_code >= 300:
            log.warning("webhook %s answered HTTP %s", url, resp.status_code)
            return False
        return True
    except httpx.HTTPError as e:
        log.warning("webhook %s failed: %s", url, e)
        return False


_SLACK_COLORS = {"success": "good", "failure": "danger", "rollback": "warning"}


class Notifier:
    """Fans deployment events out to email, a generic webhook and Slack."""

    def __init__(self, settings: Settings, config: NotificationsConfig | None = None):
        self.settings = settings
        self.config = config or NotificationsConfig()

    def _webhook_url(self) -> str | None:
        return self.config.webhook.url or self.settings.webhook_url

    def _slack_url(self) -> str | None:
        return self.config.slack.webhook_url or self.settings.slack_webhook_url

    def _dispatch(self, event: str, service: str, subject: str, body: str, details: dict[str, Any]) -> int:
        flag = f"on_{event}"
        sent = 0

        email = self.config.email
        if (email.enabled or self.settings.enable_email) and getattr(email, flag):
            sent += send_email(self.settings, subject, body, email.recipients or None)

        url = self._webhook_url()
        if url and getattr(self.config.webhook, flag):
            payload = {
                "event": f"deployment_{event}",
                "service": service,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "details": details,
                "server": socket.gethostname(),
            }
            sent += send_webhook(url, payload, self.config.webhook.headers)

        slack = self._slack_url()
        if slack and getattr(self.config.slack, flag):
            payload = {
                "text": subject,
                "attachments": [
                    {
                        "color": _SLACK_COLORS.get(event, "good"),
                        "title": subject,
                        "text": body,
                        "fields": [{"title": k, "value": str(v), "short": True} for k, v in details.items()],
                        "footer": "dosync",
                        "ts": int(datetime.now(timezone.utc).timestamp()),
                    }
                ],
            }
            if self.config.slack.channel:
                payload["channel"] = self.config.slack.channel
            sent += send_webhook(slack, payload)
        return sent

    def deployment_succeeded(self, service: str, version: str, duration_s: float) -> int:
        return self._dispatch(
            "success",
            service,
            f"Deployed {service} {version}",
            f"Service: {service}\nVersion: {version}\nDuration: {duration_s:.1f}s",
            {"version": version, "duration_s": round(duration_s, 1)},
        )

    def deployment_failed(self, service: str, version: str, reason: str) -> int:
        return self._dispatch(
            "failure",
            service,
            f"Deployment of {service} {version} failed",
            f"Service: {service}\nVersion: {version}\nError: {reason}",
            {"version": version, "error": reason},
        )

    def rolled_back(self, service: str, from_version: str, to_version: str) -> int:
        return self._dispatch(
            "rollback",
            service,
            f"Rolled back {service} to {to_version}",
            f"Service: {service}\nFailed version: {from_version}\nRestored version: {to_version}",
            {"from_version": from_version, "to_version": to_version},
        )
