"""
Owner-level audit trail.

Models:
    - AuditLog: immutable, append-only record of owner actions on a
      document (create, prepare, send, void, derive, delete, purge).

Recipient actions are not duplicated here; the signing-event ledger is
their source of truth.
"""

import json
from datetime import UTC, datetime

from signflow.models import db

AUDIT_ACTIONS = {
    "document.created",
    "document.prepared",
    "document.sent",
    "document.resent",
    "document.voided",
    "document.derived",
    "document.deleted",
    "document.restored",
    "document.retention_purge",
    "document.email_delivery_issue",
}


class AuditLog(db.Model):
    """
    One row per owner action.  ``diff_json`` carries the action payload
    (status change, recipients notified, purge scope).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(30), nullable=False, default="document")
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Owner id from the session token, or 'system' / 'retention'",
    )
    ip = db.Column(db.String(45), nullable=True)

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "ip": self.ip,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_audit(
    *,
    entity_id: str,
    action: str,
    actor: str = "system",
    entity_type: str = "document",
    ip: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action '{action}'")

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        ip=ip,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
