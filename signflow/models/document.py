"""
Document aggregate: Document, DocumentVersion, Recipient, SigningEvent.

One Document row is the aggregate root.  Versions, recipients and events
hang off it with ``delete-orphan`` cascades and are only ever written
through ``document_repository.save_document`` so the invariant checks and
the optimistic lock run on every commit.

Closed sets:
    Document.status      draft | sent | in_progress | completed | rejected |
                         expired | voided | cancelled | delivery_failed
    Document.signing_mode  sequential | parallel
    Recipient.role       signer | approver | viewer
    Recipient.status     pending | sent | viewed | signed | approved |
                         rejected | expired | delivery_failed
    DocumentVersion.label  original | prepared | signed_by_order_<n> | signed_final

Each is checked on assignment (``@validates``) and by a CHECK constraint,
so an unknown value raises instead of silently falling through.

Concurrency:
    ``Document.lock_version`` is the mapper's ``version_id_col``.  Every
    UPDATE of the root row carries ``WHERE lock_version = <read value>``;
    a concurrent writer that loses the race gets ``StaleDataError``, which
    the repository maps to a 409.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import validates

from signflow.models import db
from signflow.models.soft_delete import SoftDeleteMixin
from signflow.utils.helpers import isoformat

# ── Constants ─────────────────────────────────────────────────────────────────

SIGNING_MODES = ("sequential", "parallel")

DOCUMENT_STATUSES = (
    "draft", "sent", "in_progress", "completed", "rejected",
    "expired", "voided", "cancelled", "delivery_failed",
)
STICKY_STATUSES = frozenset({"voided", "cancelled"})
TERMINAL_STATUSES = frozenset({"completed", "rejected", "expired", "voided", "cancelled"})
DERIVABLE_STATUSES = frozenset({"completed", "voided", "rejected"})

RECIPIENT_ROLES = ("signer", "approver", "viewer")
RECIPIENT_STATUSES = (
    "pending", "sent", "viewed", "signed", "approved",
    "rejected", "expired", "delivery_failed",
)
COMPLETED_RECIPIENT_STATUSES = frozenset({"signed", "approved"})
CONSUMED_RECIPIENT_STATUSES = frozenset({"rejected", "expired"})

# Action a role completes the workflow with.
ROLE_COMPLETION_ACTION = {"signer": "signed", "approver": "approved"}

EVENT_ACTIONS = ("sent", "viewed", "signed", "approved", "rejected", "expired", "voided")

LABEL_ORIGINAL = "original"
LABEL_PREPARED = "prepared"
LABEL_SIGNED_FINAL = "signed_final"
_SIGNED_BY_ORDER_RE = re.compile(r"^signed_by_order_(\d+)$")

# Recipient state machine.  Terminal states have no outgoing edges.
RECIPIENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"sent", "viewed", "signed", "approved", "rejected", "expired", "delivery_failed"},
    "sent": {"viewed", "signed", "approved", "rejected", "expired", "delivery_failed"},
    "viewed": {"signed", "approved", "rejected", "expired"},
    "delivery_failed": {"sent", "viewed", "signed", "approved", "rejected", "expired"},
    "signed": set(),
    "approved": set(),
    "rejected": set(),
    "expired": set(),
}


def validate_recipient_transition(current: str, target: str) -> bool:
    """Return True if ``current`` → ``target`` is an allowed recipient move."""
    return target in RECIPIENT_TRANSITIONS.get(current, set())


def signed_by_order_label(order: int | None) -> str:
    return f"signed_by_order_{order if order is not None else 0}"


def is_signed_label(label: str | None) -> bool:
    return label == LABEL_SIGNED_FINAL or bool(_SIGNED_BY_ORDER_RE.match(label or ""))


def is_valid_label(label: str | None) -> bool:
    return label in (LABEL_ORIGINAL, LABEL_PREPARED) or is_signed_label(label)


def _utcnow():
    return datetime.now(timezone.utc)


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ── Aggregate root ───────────────────────────────────────────────────────────


class Document(SoftDeleteMixin, db.Model):
    """A document moving through a multi-party signing transaction."""

    __tablename__ = "documents"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    owner_email = db.Column(db.String(255), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    original_file_name = db.Column(db.String(255), nullable=True)

    signing_mode = db.Column(db.String(20), nullable=False, default="sequential")
    current_version = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Lineage for documents produced by derive.  No FK: the source may be purged.
    derived_from_document_id = db.Column(db.String(36), nullable=True, index=True)
    derived_from_version = db.Column(db.Integer, nullable=True)

    lock_version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    versions = db.relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentVersion.version",
    )
    recipients = db.relationship(
        "Recipient",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="Recipient.id",
    )
    events = db.relationship(
        "SigningEvent",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="SigningEvent.sequence",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    __table_args__ = (
        db.CheckConstraint(_in_list("status", DOCUMENT_STATUSES), name="ck_document_status"),
        db.CheckConstraint(_in_list("signing_mode", SIGNING_MODES), name="ck_document_signing_mode"),
        db.Index("ix_documents_owner_status", "owner_id", "status"),
    )

    @validates("status")
    def _validate_status(self, key, value):
        if value not in DOCUMENT_STATUSES:
            raise ValueError(f"Unknown document status '{value}'")
        return value

    @validates("signing_mode")
    def _validate_signing_mode(self, key, value):
        if value not in SIGNING_MODES:
            raise ValueError(f"Unknown signing mode '{value}'")
        return value

    # ── Navigation helpers ───────────────────────────────────────────────

    def get_version(self, number: int) -> DocumentVersion | None:
        return next((v for v in self.versions if v.version == number), None)

    @property
    def current(self) -> DocumentVersion | None:
        return self.get_version(self.current_version)

    def get_recipient(self, recipient_id: str) -> Recipient | None:
        return next((r for r in self.recipients if r.recipient_id == recipient_id), None)

    @property
    def participants(self) -> list[Recipient]:
        """Signers and approvers; viewers never act."""
        return [r for r in self.recipients if r.role != "viewer"]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_children: bool = True) -> dict:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "original_file_name": self.original_file_name,
            "signing_mode": self.signing_mode,
            "current_version": self.current_version,
            "status": self.status,
            "expires_at": isoformat(self.expires_at),
            "completed_at": isoformat(self.completed_at),
            "finalized_at": isoformat(self.finalized_at),
            "derived_from_document_id": self.derived_from_document_id,
            "derived_from_version": self.derived_from_version,
            "deleted_at": isoformat(self.deleted_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_children:
            data["versions"] = [v.to_dict() for v in self.versions]
            data["recipients"] = [r.to_dict() for r in self.recipients]
        return data

    def __repr__(self) -> str:
        return f"<Document {self.id} v{self.current_version} {self.status}>"


# ── Version chain ────────────────────────────────────────────────────────────


class DocumentVersion(db.Model):
    """
    Immutable entry in a document's content chain.

    Content fields (hash, size, storage pointer) never change after insert.
    ``signed_by`` is attached once, when the signing action that produced
    the version completes.  ``fields`` is only populated on ``prepared``
    versions.
    """

    __tablename__ = "document_versions"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.String(36),
        db.ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    label = db.Column(db.String(40), nullable=False)
    derived_from_version = db.Column(db.Integer, nullable=True)

    hash = db.Column(db.String(128), nullable=False)
    hash_algo = db.Column(db.String(16), nullable=False, default="sha256")
    size = db.Column(db.BigInteger, nullable=False)
    mime_type = db.Column(db.String(120), nullable=True)
    storage_bucket = db.Column(db.String(63), nullable=False)
    storage_key = db.Column(db.String(512), nullable=False)

    locked = db.Column(db.Boolean, nullable=False, default=False)
    fields = db.Column(db.JSON, nullable=False, default=list)
    signed_by = db.Column(db.JSON, nullable=False, default=list)
    change_log = db.Column(db.Text, nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    document = db.relationship("Document", back_populates="versions")

    __table_args__ = (
        db.UniqueConstraint("document_id", "version", name="uq_document_version"),
    )

    @validates("label")
    def _validate_label(self, key, value):
        if not is_valid_label(value):
            raise ValueError(f"Unknown version label '{value}'")
        return value

    def to_dict(self) -> dict:
        """Serialize.  The storage pointer stays internal."""
        return {
            "version": self.version,
            "label": self.label,
            "derived_from_version": self.derived_from_version,
            "hash": self.hash,
            "hash_algo": self.hash_algo,
            "size": self.size,
            "mime_type": self.mime_type,
            "locked": self.locked,
            "fields": list(self.fields or []),
            "signed_by": list(self.signed_by or []),
            "change_log": self.change_log,
            "sent_at": isoformat(self.sent_at),
            "expires_at": isoformat(self.expires_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<DocumentVersion {self.document_id}#{self.version} {self.label}>"


# ── Recipients ───────────────────────────────────────────────────────────────


class Recipient(db.Model):
    """A party to the signing transaction, addressed by its signing token."""

    __tablename__ = "document_recipients"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.String(36),
        db.ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_id = db.Column(
        db.String(64), nullable=False,
        comment="Caller-visible identifier, unique within the document",
    )
    email = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="signer")
    order = db.Column("signing_order", db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")

    signing_token = db.Column(db.String(64), nullable=True, unique=True, index=True)
    signed_version = db.Column(db.Integer, nullable=True)
    capture_gps_location = db.Column(db.Boolean, nullable=False, default=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    # Evidence captured with the last action (opaque to the engine)
    device = db.Column(db.JSON, nullable=True)
    location = db.Column(db.JSON, nullable=True)
    consent = db.Column(db.JSON, nullable=True)
    network = db.Column(db.JSON, nullable=True)

    document = db.relationship("Document", back_populates="recipients")

    __table_args__ = (
        db.UniqueConstraint("document_id", "recipient_id", name="uq_document_recipient"),
        db.CheckConstraint(_in_list("role", RECIPIENT_ROLES), name="ck_recipient_role"),
        db.CheckConstraint(_in_list("status", RECIPIENT_STATUSES), name="ck_recipient_status"),
    )

    @validates("role")
    def _validate_role(self, key, value):
        if value not in RECIPIENT_ROLES:
            raise ValueError(f"Unknown recipient role '{value}'")
        return value

    @validates("status")
    def _validate_status(self, key, value):
        if value not in RECIPIENT_STATUSES:
            raise ValueError(f"Unknown recipient status '{value}'")
        return value

    def to_dict(self, include_token: bool = False) -> dict:
        data = {
            "recipient_id": self.recipient_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "order": self.order,
            "status": self.status,
            "signed_version": self.signed_version,
            "capture_gps_location": self.capture_gps_location,
            "expires_at": isoformat(self.expires_at),
            "sent_at": isoformat(self.sent_at),
            "viewed_at": isoformat(self.viewed_at),
            "signed_at": isoformat(self.signed_at),
            "approved_at": isoformat(self.approved_at),
            "rejected_at": isoformat(self.rejected_at),
            "expired_at": isoformat(self.expired_at),
        }
        if include_token:
            data["signing_token"] = self.signing_token
        return data

    def __repr__(self) -> str:
        return f"<Recipient {self.recipient_id} {self.role}#{self.order} {self.status}>"


# ── Ledger ───────────────────────────────────────────────────────────────────


class SigningEvent(db.Model):
    """
    Append-only ledger entry for one recipient action.

    ``fields`` is ``[{"fieldId": ..., "fieldHash": ...}]`` sorted by
    ``fieldId``; ``fields_digest`` hashes its canonical JSON.  Rows are
    never updated; only the retention purge deletes them.
    """

    __tablename__ = "signing_events"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(
        db.String(36),
        db.ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    recipient_id = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=True)
    action = db.Column(db.String(20), nullable=False)
    order = db.Column("signing_order", db.Integer, nullable=True)

    base_version = db.Column(db.Integer, nullable=True)
    version = db.Column(db.Integer, nullable=True)

    client_timestamp = db.Column(db.DateTime(timezone=True), nullable=True)
    server_timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    ip = db.Column(db.String(45), nullable=True)
    ip_unavailable_reason = db.Column(db.String(20), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    client = db.Column(db.JSON, nullable=True)
    geo = db.Column(db.JSON, nullable=True)
    consent = db.Column(db.JSON, nullable=True)

    fields = db.Column(db.JSON, nullable=False, default=list)
    fields_digest = db.Column(db.String(64), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    document = db.relationship("Document", back_populates="events")

    __table_args__ = (
        db.UniqueConstraint("document_id", "sequence", name="uq_signing_event_sequence"),
        db.CheckConstraint(_in_list("action", EVENT_ACTIONS), name="ck_signing_event_action"),
    )

    @validates("action")
    def _validate_action(self, key, value):
        if value not in EVENT_ACTIONS:
            raise ValueError(f"Unknown signing event action '{value}'")
        return value

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "recipient_id": self.recipient_id,
            "email": self.email,
            "role": self.role,
            "action": self.action,
            "order": self.order,
            "base_version": self.base_version,
            "version": self.version,
            "client_timestamp": isoformat(self.client_timestamp),
            "server_timestamp": isoformat(self.server_timestamp),
            "ip": self.ip,
            "ip_unavailable_reason": self.ip_unavailable_reason,
            "user_agent": self.user_agent,
            "client": self.client,
            "geo": self.geo,
            "consent": self.consent,
            "fields": list(self.fields or []),
            "fields_digest": self.fields_digest,
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        return f"<SigningEvent {self.document_id}#{self.sequence} {self.action} {self.recipient_id}>"


@event.listens_for(SigningEvent, "before_update")
def _refuse_event_update(mapper, connection, target):
    raise ValueError("Signing events are append-only")
