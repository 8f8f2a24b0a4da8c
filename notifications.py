"""
Operator notifications for completed backups.

Sends a Discord webhook embed and an SMTP email, and appends completed backups
to a plain-text log next to the archives.
"""
from __future__ import annotations

import html
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Optional

import requests


logger = logging.getLogger(__name__)

BACKUP_LOG_NAME = "backup_log.txt"
EMBED_COLOR = 3066993
WEBHOOK_TIMEOUT = 15
SMTP_TIMEOUT = 30


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""


@dataclass(frozen=True)
class BackupNotice:
    backup_name: str
    size: int
    storage: str
    completed_at: datetime
    browse_url: Optional[str] = None


@dataclass(frozen=True)
class EmailSettings:
    username: str
    password: str
    recipient: str
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_name: str = "Minecraft Backups"


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


class DiscordNotifier:
    def __init__(self, webhook_url: str, *, timeout: float = WEBHOOK_TIMEOUT) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    def build_payload(self, notice: BackupNotice) -> dict:
        return {
            "embeds": [
                {
                    "title": "Minecraft Backup Completed",
                    "description": "Your Minecraft world backup has been successfully created!",
                    "color": EMBED_COLOR,
                    "fields": [
                        {
                            "name": "Backup Name",
                            "value": f"`{notice.backup_name}`",
                            "inline": True,
                        },
                        {
                            "name": "Size",
                            "value": format_size(notice.size),
                            "inline": True,
                        },
                        {
                            "name": "Storage",
                            "value": notice.storage,
                            "inline": True,
                        },
                    ],
                    "footer": {"text": "Stay safe and happy mining!"},
                    "timestamp": notice.completed_at.isoformat(),
                }
            ]
        }

    def send(self, notice: BackupNotice) -> None:
        try:
            response = requests.post(
                self.webhook_url, json=self.build_payload(notice), timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as error:
            raise NotificationError(f"Discord notification failed: {error}") from error
        logger.info("Discord notification sent.")


class EmailNotifier:
    def __init__(self, settings: EmailSettings, *, smtp_factory=None) -> None:
        self.settings = settings
        self._smtp_factory = smtp_factory

    def build_message(self, notice: BackupNotice) -> EmailMessage:
        settings = self.settings
        message = EmailMessage()
        message["Subject"] = "Minecraft Backup Completed"
        message["From"] = formataddr((settings.sender_name, settings.username))
        message["To"] = settings.recipient

        lines = [
            "Your Minecraft server backup has been successfully created.",
            "",
            f"Backup name: {notice.backup_name}",
            f"Size: {format_size(notice.size)}",
            f"Storage: {notice.storage}",
            f"Completed: {notice.completed_at.isoformat()}",
        ]
        if notice.browse_url:
            lines.append(f"View backups: {notice.browse_url}")
        message.set_content("\n".join(lines) + "\n")

        link = ""
        if notice.browse_url:
            link = (
                f'<p><a href="{html.escape(notice.browse_url, quote=True)}">'
                "View backups</a></p>"
            )
        message.add_alternative(
            "<html><body>"
            "<h2>Minecraft Backup Successful</h2>"
            f"<p>Backup name: <strong>{html.escape(notice.backup_name)}</strong></p>"
            f"<p>Size: {html.escape(format_size(notice.size))}</p>"
            f"<p>Storage: {html.escape(notice.storage)}</p>"
            f"{link}"
            "</body></html>",
            subtype="html",
        )
        return message

    def _connect(self) -> smtplib.SMTP:
        settings = self.settings
        if self._smtp_factory is not None:
            return self._smtp_factory(settings.smtp_host, settings.smtp_port)
        if settings.smtp_port == 465:
            return smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT)
        return smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT)

    def send(self, notice: BackupNotice) -> None:
        message = self.build_message(notice)
        try:
            with self._connect() as smtp:
                if not isinstance(smtp, smtplib.SMTP_SSL):
                    smtp.starttls()
                smtp.login(self.settings.username, self.settings.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as error:
            raise NotificationError(f"Email notification failed: {error}") from error
        logger.info("Email notification sent to %s.", self.settings.recipient)


def append_backup_log(log_path: Path, backup_name: str, when: Optional[datetime] = None) -> None:
    timestamp = (when or datetime.now(timezone.utc)).isoformat()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{timestamp} - {backup_name}\n")
