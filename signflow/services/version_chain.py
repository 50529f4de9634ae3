"""
Version chain manager.

Each document owns an append-only list of content versions numbered from
0 (the uploaded original).  A new version always takes
``current_version + 1``, points back at the current version, and moves the
``current_version`` pointer in the same aggregate update.

Content paths:
    add_version    streams new bytes through ``DigestingReader`` into the
                   blob store; the digest recorded is the digest of exactly
                   the bytes the store consumed.
    clone_version  server-side copy of an existing version's blob; bytes
                   are identical so the recorded digest is carried over.

Blob keys name the owner, document, version and label plus a per-write
suffix; they never depend on the digest and are fixed once recorded on
the version.  Every blob written here is registered for compensation
until the repository commits.
"""

from __future__ import annotations

import logging
import uuid
from typing import BinaryIO

from flask import current_app

from signflow.core.exceptions import (
    ConflictError,
    IntegrityError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from signflow.integrations.blob_store import get_blob_store
from signflow.models import db
from signflow.models.document import (
    DERIVABLE_STATUSES,
    LABEL_ORIGINAL,
    LABEL_PREPARED,
    Document,
    DocumentVersion,
    Recipient,
)
from signflow.services.document_repository import track_written_blob
from signflow.utils.hashing import DigestingReader, digest_stream
from signflow.utils.helpers import new_signing_token

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/pdf"


def _bucket() -> str:
    return current_app.config.get("BLOB_BUCKET", "documents")


def storage_key(document: Document, version: int, label: str) -> str:
    """Fresh key per write.  Two requests racing for the same version number
    never share an object, so compensating the loser cannot remove the
    winner's content."""
    return f"documents/{document.owner_id}/{document.id}/v{version:04d}-{label}-{uuid.uuid4().hex[:12]}"


def _next_number(document: Document) -> tuple[int, int | None]:
    if not document.versions:
        return 0, None
    return document.current_version + 1, document.current_version


def _append(document: Document, version: DocumentVersion) -> DocumentVersion:
    document.versions.append(version)
    document.current_version = version.version
    logger.info(
        "Version appended",
        extra={"document_id": document.id, "version": version.version, "label": version.label},
    )
    return version


# ── Writes ───────────────────────────────────────────────────────────────────


def add_version(
    document: Document,
    label: str,
    content: bytes | BinaryIO,
    *,
    mime_type: str | None = None,
    lock: bool = False,
    change_log: str | None = None,
    fields: list[dict] | None = None,
) -> DocumentVersion:
    """Hash-while-storing ``content`` and append it as the next version."""
    if document.id is None:
        db.session.add(document)
        db.session.flush()
    number, parent = _next_number(document)
    bucket, key = _bucket(), storage_key(document, number, label)
    mime_type = mime_type or DEFAULT_MIME_TYPE

    reader = DigestingReader(content)
    ack = get_blob_store().put(bucket, key, reader, mime_type)
    track_written_blob(bucket, key)
    if ack.size != reader.size:
        raise StorageError("Document storage acknowledged a partial write")

    return _append(document, DocumentVersion(
        version=number,
        label=label,
        derived_from_version=parent,
        hash=reader.hexdigest(),
        hash_algo=reader.algorithm,
        size=reader.size,
        mime_type=mime_type,
        storage_bucket=bucket,
        storage_key=key,
        locked=lock,
        fields=list(fields or []) if label == LABEL_PREPARED else [],
        signed_by=[],
        change_log=change_log,
    ))


def clone_version(
    document: Document,
    source: DocumentVersion,
    label: str,
    *,
    lock: bool = False,
    change_log: str | None = None,
    fields: list[dict] | None = None,
    sent_at=None,
    expires_at=None,
) -> DocumentVersion:
    """Append a version whose bytes are a server-side copy of ``source``."""
    number, parent = _next_number(document)
    bucket, key = _bucket(), storage_key(document, number, label)
    get_blob_store().copy(source.storage_bucket, source.storage_key, bucket, key)
    track_written_blob(bucket, key)

    return _append(document, DocumentVersion(
        version=number,
        label=label,
        derived_from_version=parent,
        hash=source.hash,
        hash_algo=source.hash_algo,
        size=source.size,
        mime_type=source.mime_type,
        storage_bucket=bucket,
        storage_key=key,
        locked=lock,
        fields=list(fields or []) if label == LABEL_PREPARED else [],
        signed_by=[],
        change_log=change_log,
        sent_at=sent_at,
        expires_at=expires_at,
    ))


def create_document(
    *,
    owner_id: str,
    name: str,
    content: bytes | BinaryIO,
    owner_email: str | None = None,
    file_name: str | None = None,
    mime_type: str | None = None,
) -> Document:
    """New draft document with version 0 (``original``, locked)."""
    if not (name or "").strip():
        raise ValidationError("name is required")
    document = Document(
        owner_id=owner_id,
        owner_email=owner_email,
        name=name.strip(),
        original_file_name=file_name,
        signing_mode="sequential",
        status="draft",
        current_version=0,
    )
    db.session.add(document)
    db.session.flush()
    add_version(document, LABEL_ORIGINAL, content, mime_type=mime_type, lock=True)
    return document


# ── Field layout ─────────────────────────────────────────────────────────────


def validate_field_layout(fields) -> list[dict]:
    """Check a layout: a list of objects with unique string ``id`` and a ``type``."""
    if not isinstance(fields, list):
        raise ValidationError("fields must be a list")
    seen = set()
    layout = []
    for index, field in enumerate(fields):
        if not isinstance(field, dict):
            raise ValidationError(f"fields[{index}] must be an object")
        field_id = str(field.get("id") or "").strip()
        if not field_id:
            raise ValidationError(f"fields[{index}].id is required")
        if field_id in seen:
            raise ValidationError(f"Duplicate field id '{field_id}'")
        if not isinstance(field.get("type"), str) or not field["type"]:
            raise ValidationError(f"fields[{index}].type is required")
        seen.add(field_id)
        layout.append({**field, "id": field_id})
    return layout


def prepare_document(document: Document, fields, change_log: str | None = None) -> DocumentVersion:
    """Append a ``prepared`` version carrying a new field layout."""
    if document.is_terminal:
        raise ConflictError(f"Document is already {document.status}")
    if any(r.status in ("signed", "approved") for r in document.recipients):
        raise ConflictError("Fields cannot change after a recipient has signed")
    layout = validate_field_layout(fields)
    source = document.current
    if source is None:
        raise NotFoundError("Document version")
    return clone_version(document, source, LABEL_PREPARED, fields=layout, change_log=change_log)


# ── Queries ──────────────────────────────────────────────────────────────────


def get_latest_prepared_version(document: Document) -> DocumentVersion | None:
    prepared = [v for v in document.versions if v.label == LABEL_PREPARED]
    return max(prepared, key=lambda v: v.version) if prepared else None


def build_signed_by_snapshot(recipients, version_number: int) -> list[str]:
    """Signer ids whose signature is bound at or below ``version_number``.

    Ordered by signed version, then order, then id.
    """
    signed = [
        r for r in recipients
        if r.role == "signer" and r.status == "signed"
        and r.signed_version is not None and r.signed_version <= version_number
    ]
    signed.sort(key=lambda r: (
        r.signed_version,
        r.order if r.order is not None else float("inf"),
        r.recipient_id or "",
    ))
    snapshot = []
    for r in signed:
        if r.recipient_id and r.recipient_id not in snapshot:
            snapshot.append(r.recipient_id)
    return snapshot


def open_version_content(version: DocumentVersion) -> BinaryIO:
    return get_blob_store().get(version.storage_bucket, version.storage_key)


# ── Integrity ────────────────────────────────────────────────────────────────


def verify_integrity(document: Document, version_number: int) -> dict:
    """Re-stream the stored bytes and compare with the recorded digest."""
    version = document.get_version(version_number)
    if version is None:
        raise NotFoundError("Document version", version_number)
    with open_version_content(version) as stream:
        actual, size = digest_stream(stream, version.hash_algo)
    ok = actual == version.hash and size == version.size
    if not ok:
        logger.warning(
            "Version content does not match its digest",
            extra={"document_id": document.id, "version": version_number},
        )
    return {"version": version_number, "ok": ok, "expected": version.hash, "actual": actual}


def assert_integrity(document: Document, version_number: int) -> dict:
    result = verify_integrity(document, version_number)
    if not result["ok"]:
        raise IntegrityError(version_number, result["expected"], result["actual"])
    return result


# ── Derive ───────────────────────────────────────────────────────────────────


def select_derive_source(document: Document) -> DocumentVersion:
    """Completed documents derive from their current version; voided and
    rejected ones from the latest prepared layout, else the original."""
    current = document.current
    if document.status == "completed":
        source = current
    else:
        original = next((v for v in document.versions if v.label == LABEL_ORIGINAL), None)
        source = get_latest_prepared_version(document) or original or current
    if source is None:
        raise NotFoundError("Document version")
    return source


def derive_document(source_document: Document, owner_id: str) -> Document:
    """Clone a finished document into a fresh draft with a new chain.

    Version 0 is the source content as ``original`` (locked); version 1 is
    an unlocked ``prepared`` copy with the source's last field layout.
    Recipients come back ``pending`` with new signing tokens.
    """
    if source_document.status not in DERIVABLE_STATUSES:
        raise ConflictError("Only completed, voided or rejected documents can be reused")

    source = select_derive_source(source_document)
    latest_prepared = get_latest_prepared_version(source_document)
    layout = list(latest_prepared.fields or []) if latest_prepared else []

    derived = Document(
        owner_id=owner_id,
        owner_email=source_document.owner_email,
        name=source_document.name,
        original_file_name=source_document.original_file_name,
        signing_mode=source_document.signing_mode,
        status="draft",
        current_version=0,
        derived_from_document_id=source_document.id,
        derived_from_version=source.version,
    )
    db.session.add(derived)
    db.session.flush()

    original = clone_version(
        derived, source, LABEL_ORIGINAL, lock=True,
        change_log=f"Derived from {source_document.status} document version {source.version}",
    )
    clone_version(derived, original, LABEL_PREPARED, fields=layout)

    for r in source_document.recipients:
        derived.recipients.append(Recipient(
            recipient_id=r.recipient_id,
            email=r.email,
            name=r.name,
            role=r.role,
            order=r.order,
            status="pending",
            signing_token=new_signing_token(),
            capture_gps_location=r.capture_gps_location,
        ))
    return derived
