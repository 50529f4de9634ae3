"""
Retention purge.

The only path that hard-deletes documents.  Two selection modes:

    ids        explicit ``documentIds``; any status.
    retention  completed documents whose completion date
               (``completed_at``, else ``finalized_at``) is older than
               ``retentionBefore`` or ``retentionYears`` ago.

A dry run reports matches without touching anything.  A real run deletes
rows (documents with their versions, recipients and events; signed fields;
audit rows) in one commit, then removes the blobs.  Blob deletion happens
after the commit and a failed delete is logged, never rolled back.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import func, or_

from signflow.core.exceptions import AuthorizationError, ConfigurationError, StorageError, ValidationError
from signflow.integrations.blob_store import get_blob_store
from signflow.models import db
from signflow.models.audit import AuditLog, write_audit
from signflow.models.document import Document
from signflow.services.signed_fields import delete_signed_fields
from signflow.utils.helpers import isoformat, parse_datetime, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 200
MAX_LIMIT = 2000


def check_purge_token(presented: str | None) -> None:
    expected = current_app.config.get("RETENTION_PURGE_TOKEN")
    if not expected:
        raise ConfigurationError("Retention purge token is not configured")
    if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        raise AuthorizationError("Unauthorized")


def _years_ago(years: int) -> datetime:
    now = utcnow()
    try:
        return now.replace(year=now.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return now.replace(year=now.year - years, day=28)


def resolve_cutoff(retention_before=None, retention_years=None) -> datetime:
    if retention_before and retention_years:
        raise ValidationError("Provide either retentionBefore or retentionYears, not both")
    if retention_before:
        cutoff = parse_datetime(retention_before)
        if cutoff is None:
            raise ValidationError("Invalid retentionBefore date")
        return cutoff
    if retention_years is not None:
        if isinstance(retention_years, bool) or not isinstance(retention_years, (int, float)) or retention_years <= 0:
            raise ValidationError("retentionYears must be a positive number")
        return _years_ago(int(retention_years))
    raise ValidationError("retentionBefore or retentionYears is required")


def _clamp_limit(limit) -> int:
    if isinstance(limit, bool) or not isinstance(limit, (int, float)):
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def purge(
    *,
    document_ids: list[str] | None = None,
    retention_before=None,
    retention_years=None,
    dry_run: bool = False,
    limit=None,
) -> dict:
    document_ids = [str(i) for i in (document_ids or []) if i]
    cutoff = None
    if document_ids:
        if retention_before or retention_years:
            raise ValidationError("Choose either documentIds or retention criteria")
        mode = "ids"
        query = Document.query.filter(Document.id.in_(document_ids))
    else:
        mode = "retention"
        cutoff = resolve_cutoff(retention_before, retention_years)
        completion = func.coalesce(Document.completed_at, Document.finalized_at)
        query = Document.query.filter(
            or_(Document.status == "completed",
                Document.completed_at.isnot(None),
                Document.finalized_at.isnot(None)),
            completion.isnot(None),
            completion < cutoff,
        )

    total = query.count()
    result = {
        "dryRun": bool(dry_run),
        "mode": mode,
        "retentionBefore": isoformat(cutoff),
        "totalMatches": total,
    }
    if total == 0:
        return result

    if dry_run:
        sample = (
            query.order_by(Document.completed_at, Document.finalized_at, Document.id)
            .limit(_clamp_limit(limit))
            .all()
        )
        result.update({
            "sampleCount": len(sample),
            "truncated": total > len(sample),
            "sample": [
                {"id": d.id, "status": d.status, "completed_at": isoformat(d.completed_at),
                 "finalized_at": isoformat(d.finalized_at), "deleted_at": isoformat(d.deleted_at)}
                for d in sample
            ],
        })
        return result

    documents = query.all()
    purge_ids = [d.id for d in documents]
    blobs = [(v.storage_bucket, v.storage_key) for d in documents for v in d.versions]

    try:
        fields_deleted = delete_signed_fields(purge_ids)
        AuditLog.query.filter(
            AuditLog.entity_type == "document", AuditLog.entity_id.in_(purge_ids)
        ).delete(synchronize_session=False)
        for document in documents:
            db.session.delete(document)
        write_audit(
            entity_type="retention", entity_id=mode, action="document.retention_purge",
            actor="retention",
            diff={"documents": len(purge_ids), "signed_fields": fields_deleted,
                  "retention_before": isoformat(cutoff)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    store = get_blob_store()
    blob_failures = 0
    for bucket, key in blobs:
        try:
            store.delete(bucket, key)
        except StorageError as exc:
            blob_failures += 1
            logger.error("Retention blob delete failed bucket=%s error=%s", bucket, exc)

    logger.info("Retention purge completed",
                extra={"purged": len(purge_ids), "mode": mode})
    result.update({"purged": len(purge_ids), "blobFailures": blob_failures})
    return result
