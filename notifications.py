"""Native notification channel for medication reminders.

Reminders leave the app as e-mail: SMTP when configured, otherwise the
Mailgun HTTP API. The owner's permission decision is kept in ``app_meta`` so
it survives restarts, the way a browser remembers a site's permission.
"""
import logging
import os
import smtplib
from email.mime.text import MIMEText
from typing import Optional

import requests

from db import get_db
from reminders import PERMISSION_DEFAULT, PERMISSION_DENIED, PERMISSION_GRANTED, PERMISSION_STATUSES

logger = logging.getLogger(__name__)


def _permission_key(owner_id: Optional[int]) -> str:
    return f"notification_permission:{'local' if owner_id is None else owner_id}"


class MailNotificationPlatform:
    def __init__(self, recipient: str, owner_id: Optional[int] = None):
        self.recipient = recipient
        self.owner_id = owner_id

    def get_permission_status(self) -> str:
        with get_db() as conn:
            row = conn.execute(
                "SELECT value FROM app_meta WHERE key=?", (_permission_key(self.owner_id),)
            ).fetchone()
        if row and row["value"] in PERMISSION_STATUSES:
            return row["value"]
        return PERMISSION_DEFAULT

    def request_permission(self, allow: bool = True) -> str:
        """Record the owner's answer; a decided status is returned unchanged."""
        current = self.get_permission_status()
        if current != PERMISSION_DEFAULT:
            return current
        status = PERMISSION_GRANTED if allow else PERMISSION_DENIED
        with get_db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO app_meta (key, value) VALUES (?, ?)",
                (_permission_key(self.owner_id), status),
            )
            conn.commit()
        return status

    def show_notification(self, title: str, body: str) -> bool:
        if self.get_permission_status() != PERMISSION_GRANTED:
            return False
        if not self.recipient:
            logger.warning("Reminder notification not attempted: no NOTIFY_EMAIL recipient")
            return False
        return _send_mail(self.recipient, title, body)


def _smtp_settings():
    host = os.environ.get("SMTP_HOST", "")
    user = os.environ.get("SMTP_USER", "")
    password = os.environ.get("SMTP_PASSWORD", "")
    if not (host and user and password):
        return None
    return {
        "host": host,
        "port": int(os.environ.get("SMTP_PORT", "587")),
        "user": user,
        "password": password,
        "sender": os.environ.get("SMTP_FROM", user),
    }


def _send_smtp(settings: dict, to_email: str, subject: str, text_body: str) -> bool:
    msg = MIMEText(text_body)
    msg["Subject"] = subject
    msg["From"] = settings["sender"]
    msg["To"] = to_email
    try:
        with smtplib.SMTP(settings["host"], settings["port"], timeout=20) as s:
            s.starttls()
            s.login(settings["user"], settings["password"])
            s.sendmail(settings["sender"], [to_email], msg.as_string())
    except (smtplib.SMTPException, OSError):
        logger.exception("SMTP reminder send to %s failed", to_email)
        return False
    return True


def _send_mailgun(api_key: str, domain: str, to_email: str, subject: str, text_body: str) -> bool:
    sender = os.environ.get("MAILGUN_FROM", "") or f"no-reply@{domain}"
    try:
        resp = requests.post(
            f"https://api.mailgun.net/v3/{domain}/messages",
            auth=("api", api_key),
            data={"from": sender, "to": [to_email], "subject": subject, "text": text_body},
            timeout=15,
        )
    except requests.RequestException:
        logger.exception("Mailgun reminder send to %s failed", to_email)
        return False
    if 200 <= resp.status_code < 300:
        return True
    logger.warning(
        "Mailgun reminder send failed with status %s: %s",
        resp.status_code,
        (resp.text or "")[:200],
    )
    return False


def _send_mail(to_email: str, subject: str, text_body: str) -> bool:
    """SMTP when configured, Mailgun as fallback."""
    smtp = _smtp_settings()
    if smtp and _send_smtp(smtp, to_email, subject, text_body):
        return True
    api_key = os.environ.get("MAILGUN_API_KEY", "")
    domain = os.environ.get("MAILGUN_DOMAIN", "")
    if api_key and domain:
        return _send_mailgun(api_key, domain, to_email, subject, text_body)
    if not smtp:
        logger.warning("Reminder notification not sent: missing SMTP and Mailgun configuration")
    return False
