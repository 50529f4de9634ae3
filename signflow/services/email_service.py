"""
Email Service: signing requests and rejection notices.

When SMTP is not configured, emails are logged but not sent (dev/test mode).
Every attempt is recorded in EmailLog.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
    SIGNING_BASE_URL     Prefix for links in signing requests

``NotificationSender`` is the collaborator the signing workflow talks to.
It is best-effort: both methods return False on failure and never raise,
so a failed email cannot roll back the action that triggered it.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import Flask, current_app
from markupsafe import escape

from signflow.models import db
from signflow.models.notification import EmailLog

logger = logging.getLogger(__name__)


_TEMPLATES: dict[str, dict[str, str]] = {
    "signing_request": {
        "subject": "{owner} asked you to {verb} \"{document_name}\"",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #1e293b;">{document_name}</h2>
            <p style="color: #475569; line-height: 1.6;">
                Hello {recipient_name}, you have been asked to {verb} this document.
            </p>
            <p><a href="{link}" style="background: #2563eb; color: white; padding: 10px 18px;
                  border-radius: 6px; text-decoration: none;">Open document</a></p>
            <p style="color: #94a3b8; font-size: 12px;">This link is personal. Do not forward it.</p>
        </div>
        """,
    },
    "rejection_notice": {
        "subject": "\"{document_name}\" was rejected by {recipient_name}",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #dc2626;">Document rejected</h2>
            <p style="color: #475569; line-height: 1.6;">
                {recipient_name} ({recipient_email}) rejected "{document_name}".
            </p>
            <p style="color: #475569;">Reason: {reason}</p>
        </div>
        """,
    },
}

_ROLE_VERBS = {"signer": "sign", "approver": "approve", "viewer": "view"}


class EmailService:
    """
    Email sending with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        document_id: str | None = None,
    ) -> EmailLog:
        """Send an email and log it.  Failures are recorded, not raised."""
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject[:500],
            template_name=template_name,
            status="queued",
            document_id=document_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc)

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        document_id: str | None = None,
    ) -> EmailLog:
        template = _TEMPLATES[template_name]
        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=template["subject"].format_map(_SafeDict(context)),
            html_body=template["html"].format_map(_SafeDict({k: escape(v) for k, v in context.items()})),
            template_name=template_name,
            document_id=document_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


class NotificationSender:
    """Outbound notifications used by the signing workflow."""

    def send_signing_request(self, recipient, document, signing_token: str) -> bool:
        base_url = current_app.config.get("SIGNING_BASE_URL", "").rstrip("/")
        log = EmailService.send_from_template(
            to_email=recipient.email,
            to_name=recipient.name,
            template_name="signing_request",
            context={
                "owner": document.owner_email or "A sender",
                "verb": _ROLE_VERBS.get(recipient.role, "sign"),
                "document_name": document.name,
                "recipient_name": recipient.name or recipient.email,
                "link": f"{base_url}/sign?token={signing_token}",
            },
            document_id=document.id,
        )
        return log.status == "sent"

    def send_rejection_notice(self, owner_email: str | None, document_name: str, recipient,
                              document_id: str | None = None) -> bool:
        if not owner_email:
            logger.warning("Rejection notice skipped: document owner has no email",
                           extra={"document_id": document_id})
            return False
        log = EmailService.send_from_template(
            to_email=owner_email,
            template_name="rejection_notice",
            context={
                "document_name": document_name,
                "recipient_name": recipient.name or recipient.email,
                "recipient_email": recipient.email,
                "reason": recipient.rejection_reason or "No reason given",
            },
            document_id=document_id,
        )
        return log.status == "sent"


def init_notifications(app: Flask, sender: NotificationSender | None = None) -> None:
    app.extensions["notifier"] = sender or NotificationSender()


def get_notifier() -> NotificationSender:
    return current_app.extensions["notifier"]
