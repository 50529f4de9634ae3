"""
Signed-field commitments.

One row per (document, version, recipient, field).  Rows are written once:
the unique key plus insert-if-absent in ``signed_fields.commit_signed_fields``
means a retried request can never replace a value that was already
committed.  The table references documents by identifier only; it is a
separate collection from the aggregate and the retention purge clears it
explicitly.
"""

from datetime import datetime, timezone

from signflow.models import db
from signflow.utils.helpers import isoformat

SIGNATURE_FIELD_TYPES = frozenset({
    "signature",
    "initials",
    "stamp",
    "image",
    "live_photo",
    "realtime_photo",
})


class SignedFieldRecord(db.Model):
    """Committed value of one field filled in one signing action."""

    __tablename__ = "signed_fields"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.String(36), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False)
    recipient_id = db.Column(db.String(64), nullable=False)
    field_id = db.Column(db.String(128), nullable=False)
    field_type = db.Column(db.String(40), nullable=True)

    value = db.Column(db.Text, nullable=False, default="",
                      comment="Canonical string form of the submitted value")
    field_value_hash = db.Column(db.String(64), nullable=False, comment="sha256(value)")
    field_hash = db.Column(db.String(64), nullable=False, comment="sha256(field_id:value), shared with the ledger event")
    payload_hash = db.Column(db.String(64), nullable=False,
                             comment="sha256 of {documentId, version, recipientId, fieldId, fieldValueHash}")
    signature_image_hash = db.Column(db.String(64), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "document_id", "version", "recipient_id", "field_id",
            name="uq_signed_field_key",
        ),
        db.Index("ix_signed_fields_document_version", "document_id", "version"),
    )

    @property
    def key(self) -> tuple:
        return (self.document_id, self.version, self.recipient_id, self.field_id)

    def to_dict(self, include_value: bool = True) -> dict:
        data = {
            "document_id": self.document_id,
            "version": self.version,
            "recipient_id": self.recipient_id,
            "field_id": self.field_id,
            "field_type": self.field_type,
            "field_value_hash": self.field_value_hash,
            "field_hash": self.field_hash,
            "payload_hash": self.payload_hash,
            "signature_image_hash": self.signature_image_hash,
            "created_at": isoformat(self.created_at),
        }
        if include_value:
            data["value"] = self.value
        return data

    def __repr__(self) -> str:
        return f"<SignedFieldRecord {self.document_id}#{self.version} {self.recipient_id}/{self.field_id}>"
