"""
Soft Delete Mixin.

Adds ``is_deleted`` / ``deleted_at`` / ``deleted_by`` columns. Both stores
(sandbox plan items and governance records) mark rows as deleted instead of
removing them so links stay resolvable. Queries filter on ``is_deleted``.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    obj.soft_delete(actor_id)
    obj.restore()
"""

from datetime import datetime, timezone

from planbridge.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)
    deleted_by = db.Column(db.String(64), nullable=True)

    def soft_delete(self, actor_id=None):
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = datetime.now(timezone.utc)
        self.deleted_by = str(actor_id) if actor_id is not None else None

    def restore(self):
        """Restore a soft-deleted record."""
        self.is_deleted = False
        self.deleted_at = None
        self.deleted_by = None
