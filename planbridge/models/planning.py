"""
Planbridge
Planning sandbox models.

Models:
    - PlanItem: node of the sandbox work-breakdown tree (flat table, parent pointers)
    - PlanSyncLog: audit row per sync (inbound) or commit (outbound) run
    - PlanSnapshot: JSON copy of a project's tree, pushed before a visible sync

Hierarchy typing:
    component   → component | milestone
    milestone   → deliverable
    deliverable → task
    task        → task

A PlanItem links to at most one governance record. The link is "tagged":
exactly one of authority_milestone_id / authority_deliverable_id /
authority_task_id is set, matching item_type, and only while is_committed.
Components never link.
"""

import json

from planbridge.models import db
from planbridge.models.base import iso_or_none, new_uuid, utcnow
from planbridge.models.soft_delete import SoftDeleteMixin


__all__ = [
    "PlanItem",
    "PlanSyncLog",
    "PlanSnapshot",
    "ITEM_TYPES",
    "PLAN_STATUSES",
    "ALLOWED_CHILD_TYPES",
    "AUTHORITY_KIND_BY_TYPE",
]


# ── Constants ────────────────────────────────────────────────────────────────

ITEM_TYPES = ("component", "milestone", "deliverable", "task")
PLAN_STATUSES = {"not_started", "in_progress", "completed", "on_hold", "cancelled"}

# Parent type → child types it may hold. None = project root.
ALLOWED_CHILD_TYPES = {
    None: {"component", "milestone"},
    "component": {"component", "milestone"},
    "milestone": {"deliverable"},
    "deliverable": {"task"},
    "task": {"task"},
}

AUTHORITY_KIND_BY_TYPE = {
    "milestone": "milestone",
    "deliverable": "deliverable",
    "task": "task",
}

_AUTHORITY_COLUMNS = {
    "milestone": "authority_milestone_id",
    "deliverable": "authority_deliverable_id",
    "task": "authority_task_id",
}


# ═════════════════════════════════════════════════════════════════════════════
# 1. PlanItem
# ═════════════════════════════════════════════════════════════════════════════

class PlanItem(SoftDeleteMixin, db.Model):
    """
    Sandbox hierarchy node.

    Stored flat: the tree is rebuilt from ``parent_id`` by whoever needs it,
    so ancestor walks are dict lookups keyed by id.
    """

    __tablename__ = "plan_items"
    __table_args__ = (
        db.Index("idx_plan_item_project_parent", "project_id", "parent_id"),
        db.Index("idx_plan_item_project_type", "project_id", "item_type"),
        db.Index("idx_plan_item_auth_milestone", "authority_milestone_id"),
        db.Index("idx_plan_item_auth_deliverable", "authority_deliverable_id"),
        db.Index("idx_plan_item_auth_task", "authority_task_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    parent_id = db.Column(
        db.String(36), db.ForeignKey("plan_items.id", ondelete="SET NULL"),
        nullable=True, comment="NULL for project roots",
    )
    item_type = db.Column(
        db.String(20), nullable=False,
        comment="component | milestone | deliverable | task",
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Scheduling
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    duration_days = db.Column(db.Integer, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default="not_started",
        comment="not_started | in_progress | completed | on_hold | cancelled",
    )
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0-100")
    billable = db.Column(db.Boolean, nullable=False, default=False)

    sort_order = db.Column(db.Integer, nullable=False, default=0)
    indent_level = db.Column(db.Integer, nullable=False, default=0)

    # ── Authority link ──
    is_committed = db.Column(db.Boolean, nullable=False, default=False)
    committed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    committed_by = db.Column(db.String(64), nullable=True)
    authority_milestone_id = db.Column(db.String(36), nullable=True)
    authority_deliverable_id = db.Column(db.String(36), nullable=True)
    authority_task_id = db.Column(db.String(36), nullable=True)
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=utcnow, onupdate=utcnow,
    )

    # ── Authority link helpers ───────────────────────────────────────────

    @property
    def authority_ref(self):
        """Return ``{"type", "id"}`` for the linked governance record, or None."""
        for kind, column in _AUTHORITY_COLUMNS.items():
            value = getattr(self, column)
            if value:
                return {"type": kind, "id": value}
        return None

    def link_authority(self, kind, authority_id, actor_id=None, at=None):
        """Link this item to a governance record and mark it committed.

        Raises:
            ValueError: if ``kind`` does not match the item type (components
                never link).
        """
        expected = AUTHORITY_KIND_BY_TYPE.get(self.item_type)
        if expected is None or kind != expected:
            raise ValueError(
                f"Cannot link {self.item_type} item {self.id} to a {kind} record"
            )
        for column in _AUTHORITY_COLUMNS.values():
            setattr(self, column, None)
        setattr(self, _AUTHORITY_COLUMNS[kind], authority_id)
        self.is_committed = True
        self.committed_at = at or utcnow()
        if actor_id is not None:
            self.committed_by = str(actor_id)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "item_type": self.item_type,
            "name": self.name,
            "description": self.description,
            "start_date": iso_or_none(self.start_date),
            "end_date": iso_or_none(self.end_date),
            "duration_days": self.duration_days,
            "status": self.status,
            "progress": self.progress,
            "billable": self.billable,
            "sort_order": self.sort_order,
            "indent_level": self.indent_level,
            "is_deleted": self.is_deleted,
            "is_committed": self.is_committed,
            "committed_at": iso_or_none(self.committed_at),
            "authority_ref": self.authority_ref,
            "last_synced_at": iso_or_none(self.last_synced_at),
        }

    def __repr__(self):
        return f"<PlanItem {self.id}: {self.item_type} {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. PlanSyncLog
# ═════════════════════════════════════════════════════════════════════════════

class PlanSyncLog(db.Model):
    """One row per sync (inbound) or commit (outbound) run, success or failure."""

    __tablename__ = "plan_sync_logs"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.Integer, nullable=True, index=True)
    sync_direction = db.Column(db.String(10), nullable=False, comment="inbound | outbound")
    status = db.Column(db.String(10), nullable=False, comment="success | error")
    imported_count = db.Column(db.Integer, nullable=False, default=0)
    updated_count = db.Column(db.Integer, nullable=False, default=0)
    deleted_count = db.Column(db.Integer, nullable=False, default=0)
    committed_count = db.Column(db.Integer, nullable=False, default=0)
    skipped_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)
    triggered_by = db.Column(db.String(20), nullable=False, default="manual")
    actor_id = db.Column(db.String(64), nullable=True)
    duration_ms = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "sync_direction": self.sync_direction,
            "status": self.status,
            "imported_count": self.imported_count,
            "updated_count": self.updated_count,
            "deleted_count": self.deleted_count,
            "committed_count": self.committed_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
            "error_message": self.error_message,
            "triggered_by": self.triggered_by,
            "actor_id": self.actor_id,
            "duration_ms": self.duration_ms,
            "created_at": iso_or_none(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. PlanSnapshot
# ═════════════════════════════════════════════════════════════════════════════

class PlanSnapshot(db.Model):
    """Undo point: the whole sandbox tree of a project serialised as JSON."""

    __tablename__ = "plan_snapshots"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    reason = db.Column(db.String(50), nullable=False, default="pre_sync")
    item_count = db.Column(db.Integer, nullable=False, default=0)
    payload = db.Column(db.Text, nullable=False, comment="JSON list of PlanItem dicts")
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def items(self):
        return json.loads(self.payload) if self.payload else []

    def to_dict(self, include_items=False):
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "reason": self.reason,
            "item_count": self.item_count,
            "created_by": self.created_by,
            "created_at": iso_or_none(self.created_at),
        }
        if include_items:
            result["items"] = self.items()
        return result
