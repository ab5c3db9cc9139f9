import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)


class NotifyResult(BaseModel):
    success: bool
    error: Optional[str] = None


def _format_time(timestamp: datetime) -> str:
    """'2026-02-14T09:05:00' → '14 Feb 2026, 09:05'."""
    return timestamp.strftime("%d %b %Y, %H:%M")


def attendance_message(name: str, target_name: str, timestamp: datetime) -> str:
    return (
        f"Hello {name},\n\n"
        f"Your attendance has been recorded for:\n"
        f"Event: {target_name}\n"
        f"Time: {_format_time(timestamp)}\n\n"
        f"Keep up the great participation!\n\n"
        f"Best regards,\n"
        f"Event Management Team"
    )


def notify_attendance(user, target_name: str, timestamp: datetime) -> NotifyResult:
    """
    Send an attendance confirmation to the participant.
    Best effort: SMTP errors are logged and returned, never raised,
    so a check-in always stands even if the message does not go out.
    """
    if not config.SMTP_USER or not config.SMTP_PASS:
        logger.info(
            "Notifications not configured (SMTP_USER/SMTP_PASS not set), "
            "skipping attendance confirmation for %s.", user.id
        )
        return NotifyResult(success=False, error="not configured")

    if not getattr(user, "email", None):
        return NotifyResult(success=False, error="no address")

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"Attendance confirmed: {target_name}"
        msg["From"]    = config.SMTP_FROM or config.SMTP_USER
        msg["To"]      = user.email
        msg.attach(MIMEText(attendance_message(user.name, target_name, timestamp), "plain", "utf-8"))

        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as server:
            server.ehlo()
            server.starttls()
            server.login(config.SMTP_USER, config.SMTP_PASS)
            server.sendmail(msg["From"], [user.email], msg.as_string())

        logger.info("Attendance confirmation sent → %s (%s)", user.email, target_name)
        return NotifyResult(success=True)

    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send attendance confirmation to %s: %s", user.email, exc)
        return NotifyResult(success=False, error=str(exc))
