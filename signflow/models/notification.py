"""
Outbound email log.

Every signing request and rejection notice is recorded here, whether it
went out over SMTP or was only logged (no MAIL_SERVER configured).
"""

from datetime import datetime, timezone

from signflow.models import db
from signflow.utils.helpers import isoformat


class EmailLog(db.Model):

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    recipient_name = db.Column(db.String(255), nullable=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True)
    status = db.Column(db.String(20), default="queued",
                       comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)

    document_id = db.Column(db.String(36), nullable=True, index=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "template_name": self.template_name,
            "status": self.status,
            "error_message": self.error_message,
            "document_id": self.document_id,
            "sent_at": isoformat(self.sent_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.subject[:40]} -> {self.recipient_email}>"
