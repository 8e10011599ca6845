"""
Leave-decision email notifier.

When MAIL_SERVER is not configured the email is logged instead of sent, so
local and test deployments need no SMTP server.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Optional

from backend.services.config import MailSettings
from backend.services.runtime import log_event

logger = logging.getLogger(__name__)

RECIPIENT_SQL = "SELECT first_name, last_name, email FROM Users WHERE user_id = :user_id"
RECIPIENT_IN_ORG_SQL = RECIPIENT_SQL + " AND organization_id = :organization_id"

BODY_TEMPLATE = """Dear {name},

Your request for {leave_type} has been {decision}.

Regards,
HR Team
{company}"""


def render_leave_email(name: str, action: str, leave_type: str, company: str = "Vipraco"):
    """Return (subject, body) for an 'approve' or 'reject' decision."""
    approved = action == "approve"
    subject = f"Leave Request {'Approved' if approved else 'Rejected'}"
    body = BODY_TEMPLATE.format(
        name=name,
        leave_type=leave_type,
        decision="approved" if approved else "rejected",
        company=company,
    )
    return subject, body


class EmailNotifier:
    def __init__(self, store, mail: MailSettings, company_name: str = "Vipraco"):
        self._store = store
        self.mail = mail
        self.company_name = company_name

    def notify(self, user_id: str, action: str, leave_type: str, organization_id: Optional[str] = None) -> None:
        """Best effort: failures are logged, never raised."""
        try:
            self._notify(user_id, action, leave_type, organization_id)
        except Exception as e:
            log_event(
                logger,
                logging.ERROR,
                "leave_notification_failed",
                target_user_id=user_id,
                action=action,
                error=f"{type(e).__name__}: {str(e)[:200]}",
            )

    def _notify(self, user_id: str, action: str, leave_type: str, organization_id: Optional[str]) -> None:
        if organization_id:
            rows = self._store.fetch_all(RECIPIENT_IN_ORG_SQL, {"user_id": user_id, "organization_id": organization_id})
        else:
            rows = self._store.fetch_all(RECIPIENT_SQL, {"user_id": user_id})
        if not rows:
            log_event(logger, logging.WARNING, "leave_notification_no_recipient", target_user_id=user_id)
            return
        row = rows[0]
        name = " ".join(p for p in (row.get("first_name"), row.get("last_name")) if p)
        email = row.get("email")
        if not email:
            log_event(logger, logging.WARNING, "leave_notification_no_email", target_user_id=user_id)
            return
        subject, body = render_leave_email(name, action, leave_type, self.company_name)
        if not self.mail.enabled:
            log_event(
                logger,
                logging.INFO,
                "leave_notification_logged",
                target_user_id=user_id,
                to=email,
                subject=subject,
                body=body,
            )
            return
        self._send_smtp(to_email=email, to_name=name, subject=subject, body=body)
        log_event(logger, logging.INFO, "leave_notification_sent", target_user_id=user_id, subject=subject)

    def _send_smtp(self, *, to_email: str, to_name: str, subject: str, body: str) -> None:
        mail = self.mail
        sender = mail.default_sender or f"noreply@{mail.server}"
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email

        with smtplib.SMTP(mail.server, mail.port, timeout=30) as smtp:
            if mail.use_tls:
                smtp.starttls()
            if mail.username and mail.password:
                smtp.login(mail.username, mail.password)
            smtp.send_message(msg)
