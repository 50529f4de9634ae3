"""
Document aggregate repository.

All aggregate writes go through ``save_document``: it stamps
``updated_at`` (which also bumps the optimistic ``lock_version``), runs the
invariant checks, and commits.  Any failure rolls the session back and
deletes the blobs written during the failed action, so a half-finished
action leaves neither rows nor orphaned content behind.

Multi-step recipient actions run inside ``guarded_write`` so that a race
lost at an intermediate flush is reported the same way as one lost at
commit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from flask import Flask
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm.exc import StaleDataError

from signflow.core.exceptions import ConflictError, NotFoundError, StorageError
from signflow.integrations.blob_store import get_blob_store
from signflow.models import db
from signflow.models.document import Document, Recipient
from signflow.services.invariants import enforce_invariants
from signflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_WRITTEN_BLOBS = "signflow_written_blobs"


# ── Reads ────────────────────────────────────────────────────────────────────


def get_document(document_id: str, owner_id: str | None = None,
                 include_deleted: bool = False) -> Document:
    """Load a document.  Another owner's document is reported as missing."""
    document = db.session.get(Document, document_id)
    if document is None or (owner_id is not None and document.owner_id != owner_id):
        raise NotFoundError("Document", document_id)
    if document.is_deleted and not include_deleted:
        raise NotFoundError("Document", document_id)
    return document


def documents_query(owner_id: str, status: str | None = None, deleted: bool = False):
    """Owner's documents, newest first.  Callers paginate."""
    query = Document.query_deleted() if deleted else Document.query_active()
    query = query.filter(Document.owner_id == owner_id)
    if status:
        query = query.filter(Document.status == status)
    return query.order_by(Document.created_at.desc(), Document.id)


def get_by_signing_token(token: str) -> tuple[Document, Recipient]:
    """Resolve a signing token to exactly one (document, recipient) pair."""
    recipient = Recipient.query.filter_by(signing_token=token).first()
    if recipient is None:
        raise NotFoundError("Signing link")
    document = recipient.document
    if document is None or document.is_deleted:
        raise NotFoundError("Document")
    return document, recipient


# ── Blob compensation ────────────────────────────────────────────────────────


def track_written_blob(bucket: str, key: str) -> None:
    """Remember a blob written in this transaction for compensation."""
    db.session.info.setdefault(_WRITTEN_BLOBS, []).append((bucket, key))


def discard_written_blobs() -> None:
    """Delete blobs written by an action that did not commit."""
    written = db.session.info.pop(_WRITTEN_BLOBS, [])
    if not written:
        return
    store = get_blob_store()
    for bucket, key in written:
        try:
            store.delete(bucket, key)
        except StorageError as exc:
            logger.error("Compensating blob delete failed bucket=%s error=%s", bucket, exc)


def _rollback() -> None:
    db.session.rollback()
    discard_written_blobs()


# ── Writes ───────────────────────────────────────────────────────────────────


@contextmanager
def guarded_write(document: Document):
    """Run an aggregate mutation; any failure rolls back and compensates blobs.

    A concurrent writer can be detected at any flush inside the block (an
    autoflush before a query, or an explicit flush), not only at the final
    commit.  Both the stale ``lock_version`` and a unique-key collision
    surface as ``ConflictError``.
    """
    document_id = document.id
    try:
        yield document
    except StaleDataError as exc:
        _rollback()
        logger.warning("Concurrent update lost the race", extra={"document_id": document_id})
        raise ConflictError("The document was changed by another request; please retry") from exc
    except DBIntegrityError as exc:
        _rollback()
        logger.warning("Write conflicts with an existing record", extra={"document_id": document_id})
        raise ConflictError("The document was changed by another request; please retry") from exc
    except Exception:
        _rollback()
        raise


def save_document(document: Document) -> Document:
    """Validate and commit the aggregate in one transaction (fail-closed)."""
    with guarded_write(document):
        document.updated_at = utcnow()
        enforce_invariants(document)
        db.session.add(document)
        db.session.commit()
    db.session.info.pop(_WRITTEN_BLOBS, None)
    return document


def init_repository(app: Flask) -> None:
    """Compensate blobs left behind by requests that ended without a commit."""

    @app.teardown_request
    def _discard_uncommitted_blobs(exc):
        if db.session.info.get(_WRITTEN_BLOBS):
            db.session.rollback()
            discard_written_blobs()
