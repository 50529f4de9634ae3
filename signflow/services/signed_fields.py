"""
Signed-field commitment store.

``commit_signed_fields`` turns the fields of one signing action into
``SignedFieldRecord`` rows with insert-if-absent semantics: a key that is
already committed keeps its first value and the new one is dropped.  The
unique constraint on the key backs this up if two requests race.  The
flush here can be where the loser finds out, so callers run it inside
``document_repository.guarded_write``, which turns that into a 409.

Deletion exists for the retention purge only.  Within a request, a failed
action rolls back its records with the rest of the transaction.
"""

from __future__ import annotations

import logging

from signflow.models import db
from signflow.models.signed_field import SIGNATURE_FIELD_TYPES, SignedFieldRecord
from signflow.services.signing_ledger import compute_field_hash, normalize_field_value
from signflow.utils.hashing import canonical_json, sha256_hex

logger = logging.getLogger(__name__)


def compute_payload_hash(document_id: str, version: int, recipient_id: str,
                         field_id: str, field_value_hash: str) -> str:
    return sha256_hex(canonical_json({
        "documentId": document_id,
        "version": version,
        "recipientId": recipient_id,
        "fieldId": field_id,
        "fieldValueHash": field_value_hash,
    }))


def build_signed_field_records(
    document_id: str,
    version: int,
    recipient_id: str,
    fields: list[dict],
    event_field_hashes: dict[str, str] | None = None,
) -> list[SignedFieldRecord]:
    """Build (unsaved) records.  ``event_field_hashes`` maps fieldId → ledger hash."""
    event_field_hashes = event_field_hashes or {}
    records = []
    for field in fields:
        field_id = str(field["id"])
        value = normalize_field_value(field.get("value"))
        value_hash = sha256_hex(value)
        field_type = field.get("type")
        records.append(SignedFieldRecord(
            document_id=document_id,
            version=version,
            recipient_id=recipient_id,
            field_id=field_id,
            field_type=field_type,
            value=value,
            field_value_hash=value_hash,
            field_hash=event_field_hashes.get(field_id) or compute_field_hash(field_id, value),
            payload_hash=compute_payload_hash(document_id, version, recipient_id, field_id, value_hash),
            signature_image_hash=value_hash if field_type in SIGNATURE_FIELD_TYPES and value else None,
        ))
    return records


def commit_signed_fields(
    document_id: str,
    version: int,
    recipient_id: str,
    fields: list[dict],
    event_field_hashes: dict[str, str] | None = None,
) -> list[SignedFieldRecord]:
    """Persist records for keys not yet committed.  Returns the effective records.

    Adds to the session without committing; the caller owns the transaction.
    """
    existing = {
        r.field_id: r
        for r in SignedFieldRecord.query.filter_by(
            document_id=document_id, version=version, recipient_id=recipient_id,
        )
    }
    effective = []
    for record in build_signed_field_records(document_id, version, recipient_id, fields, event_field_hashes):
        committed = existing.get(record.field_id)
        if committed is not None:
            if committed.field_value_hash != record.field_value_hash:
                logger.warning(
                    "Signed field already committed; new value dropped",
                    extra={"document_id": document_id, "recipient_id": recipient_id, "version": version},
                )
            effective.append(committed)
            continue
        db.session.add(record)
        existing[record.field_id] = record
        effective.append(record)
    db.session.flush()
    return effective


def list_signed_fields(document_id: str, version: int | None = None,
                       recipient_id: str | None = None) -> list[SignedFieldRecord]:
    query = SignedFieldRecord.query.filter_by(document_id=document_id)
    if version is not None:
        query = query.filter_by(version=version)
    if recipient_id is not None:
        query = query.filter_by(recipient_id=recipient_id)
    return query.order_by(SignedFieldRecord.version, SignedFieldRecord.recipient_id,
                          SignedFieldRecord.field_id).all()


def delete_signed_fields(document_ids: list[str]) -> int:
    """Hard-delete every record for the given documents.  Retention purge only."""
    if not document_ids:
        return 0
    return SignedFieldRecord.query.filter(
        SignedFieldRecord.document_id.in_(document_ids)
    ).delete(synchronize_session=False)
