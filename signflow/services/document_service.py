"""
Owner-facing document operations.

Thin orchestration over the version chain, the repository and the audit
log: each public function loads what it needs, mutates the aggregate,
writes one audit row and saves once.
"""

from __future__ import annotations

import logging
from typing import BinaryIO

from signflow.core.exceptions import NotFoundError
from signflow.models.audit import AuditLog, write_audit
from signflow.models.document import Document
from signflow.services import document_repository, signing_ledger, version_chain
from signflow.services.signed_fields import list_signed_fields
from signflow.utils.helpers import get_client_ip

logger = logging.getLogger(__name__)


def upload_document(*, owner_id: str, owner_email: str | None, name: str,
                    content: bytes | BinaryIO, file_name: str | None,
                    mime_type: str | None) -> Document:
    document = version_chain.create_document(
        owner_id=owner_id,
        owner_email=owner_email,
        name=name,
        content=content,
        file_name=file_name,
        mime_type=mime_type,
    )
    original = document.current
    write_audit(
        entity_id=document.id, action="document.created", actor=owner_id, ip=get_client_ip(),
        diff={"hash": original.hash, "size": original.size},
    )
    document_repository.save_document(document)
    logger.info("Document uploaded", extra={"document_id": document.id, "version": 0})
    return document


def prepare(document: Document, *, actor: str, fields, change_log: str | None = None) -> Document:
    version = version_chain.prepare_document(document, fields, change_log)
    write_audit(
        entity_id=document.id, action="document.prepared", actor=actor,
        diff={"version": version.version, "fields": len(version.fields)},
    )
    return document_repository.save_document(document)


def derive(source: Document, *, actor: str) -> Document:
    derived = version_chain.derive_document(source, actor)
    write_audit(
        entity_id=derived.id, action="document.derived", actor=actor, ip=get_client_ip(),
        diff={"source_document_id": source.id, "source_version": derived.derived_from_version},
    )
    document_repository.save_document(derived)
    logger.info(
        "Document derived",
        extra={"document_id": derived.id, "source_document_id": source.id},
    )
    return derived


def soft_delete(document: Document, *, actor: str) -> Document:
    document.soft_delete()
    write_audit(entity_id=document.id, action="document.deleted", actor=actor)
    return document_repository.save_document(document)


def restore(document: Document, *, actor: str) -> Document:
    document.restore()
    write_audit(entity_id=document.id, action="document.restored", actor=actor)
    return document_repository.save_document(document)


def audit_trail(document: Document) -> dict:
    """Ledger replay plus the owner-level audit rows."""
    records = list_signed_fields(document.id)
    owner_log = (
        AuditLog.query.filter_by(entity_type="document", entity_id=document.id)
        .order_by(AuditLog.timestamp, AuditLog.id)
        .all()
    )
    trail = signing_ledger.replay(document, records)
    return {
        "document_id": document.id,
        "events": trail,
        "consistent": all(item["consistent"] for item in trail),
        "audit_log": [entry.to_dict() for entry in owner_log],
    }


def signed_field_records(document: Document, version: int | None = None,
                         recipient_id: str | None = None) -> list[dict]:
    return [r.to_dict() for r in list_signed_fields(document.id, version, recipient_id)]


def open_content(document: Document, version_number: int | None = None):
    """Return ``(version, stream)`` for one version, the current one by default."""
    number = document.current_version if version_number is None else version_number
    version = document.get_version(number)
    if version is None:
        raise NotFoundError("Document version", number)
    return version, version_chain.open_version_content(version)
