"""
Soft delete mixin.

Documents are never hard-deleted by owners; ``deleted_at`` marks them as
trashed and ``query_active`` hides them.  Only the retention purge removes
rows physically.

Usage:
    doc.soft_delete()
    db.session.commit()

    Document.query_active().all()

    doc.restore()
    db.session.commit()
"""

from datetime import datetime, timezone

from signflow.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))

    @classmethod
    def query_deleted(cls):
        """Return only soft-deleted records."""
        return cls.query.filter(cls.deleted_at.isnot(None))
