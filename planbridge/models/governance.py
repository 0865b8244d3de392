"""
Planbridge
Governance store models: the authoritative side of the reconciliation.

Models:
    - Milestone: contractual milestone; carries the baseline lock and the
      baseline copies of the scheduling fields frozen at sign-off
    - Deliverable: deliverable under a milestone
    - DeliverableTask: flat checklist entry under a deliverable (no nesting)

Architecture chain: Milestone → Deliverable → DeliverableTask

Status vocabulary is TitleCase without spaces (NotStarted, InProgress, AtRisk,
Delayed, Completed; deliverables additionally SubmittedForReview, Delivered).
Records are only ever soft-deleted.
"""

from planbridge.models import db
from planbridge.models.base import iso_or_none, new_uuid, utcnow
from planbridge.models.soft_delete import SoftDeleteMixin


__all__ = [
    "Milestone",
    "Deliverable",
    "DeliverableTask",
    "MILESTONE_STATUSES",
    "DELIVERABLE_STATUSES",
]


# ── Constants ────────────────────────────────────────────────────────────────

MILESTONE_STATUSES = {"NotStarted", "InProgress", "AtRisk", "Delayed", "Completed"}
DELIVERABLE_STATUSES = MILESTONE_STATUSES | {"SubmittedForReview", "Delivered"}


# ═════════════════════════════════════════════════════════════════════════════
# 1. Milestone
# ═════════════════════════════════════════════════════════════════════════════

class Milestone(SoftDeleteMixin, db.Model):
    """
    Authoritative milestone. Drives billing and contractual sign-off.

    Once ``baseline_locked`` is set, start/end/duration/billable are frozen
    for the milestone and for every committed sandbox item under it; changes
    go through the variation process, not through the planner.
    """

    __tablename__ = "gov_milestones"
    __table_args__ = (
        db.Index("ix_gov_milestone_project_deleted", "project_id", "is_deleted"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="NotStarted",
        comment="NotStarted | InProgress | AtRisk | Delayed | Completed",
    )
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0-100")
    billable = db.Column(db.Boolean, nullable=False, default=False)

    # ── Baseline ──
    baseline_locked = db.Column(db.Boolean, nullable=False, default=False)
    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_billable = db.Column(db.Boolean, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=utcnow, onupdate=utcnow,
    )

    deliverables = db.relationship(
        "Deliverable", backref="milestone", lazy="dynamic",
        order_by="Deliverable.created_at",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "start_date": iso_or_none(self.start_date),
            "end_date": iso_or_none(self.end_date),
            "status": self.status,
            "progress": self.progress,
            "billable": self.billable,
            "baseline_locked": self.baseline_locked,
            "baseline_start_date": iso_or_none(self.baseline_start_date),
            "baseline_end_date": iso_or_none(self.baseline_end_date),
            "baseline_billable": self.baseline_billable,
            "is_deleted": self.is_deleted,
            "created_by": self.created_by,
            "created_at": iso_or_none(self.created_at),
        }

    def __repr__(self):
        return f"<Milestone {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Deliverable
# ═════════════════════════════════════════════════════════════════════════════

class Deliverable(SoftDeleteMixin, db.Model):
    """Authoritative deliverable. Always belongs to exactly one milestone."""

    __tablename__ = "gov_deliverables"
    __table_args__ = (
        db.Index("ix_gov_deliverable_project_deleted", "project_id", "is_deleted"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    milestone_id = db.Column(
        db.String(36), db.ForeignKey("gov_milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="NotStarted",
        comment="NotStarted | InProgress | AtRisk | Delayed | SubmittedForReview | Delivered | Completed",
    )
    progress = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    tasks = db.relationship(
        "DeliverableTask", backref="deliverable", lazy="dynamic",
        order_by="DeliverableTask.sort_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "milestone_id": self.milestone_id,
            "name": self.name,
            "description": self.description,
            "start_date": iso_or_none(self.start_date),
            "due_date": iso_or_none(self.due_date),
            "status": self.status,
            "progress": self.progress,
            "is_deleted": self.is_deleted,
            "created_at": iso_or_none(self.created_at),
        }

    def __repr__(self):
        return f"<Deliverable {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. DeliverableTask: flat checklist entry
# ═════════════════════════════════════════════════════════════════════════════

class DeliverableTask(SoftDeleteMixin, db.Model):
    """Checklist entry. Tasks never nest: they point straight at a deliverable."""

    __tablename__ = "gov_deliverable_tasks"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    deliverable_id = db.Column(
        db.String(36), db.ForeignKey("gov_deliverables.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    is_complete = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "deliverable_id": self.deliverable_id,
            "name": self.name,
            "is_complete": self.is_complete,
            "sort_order": self.sort_order,
            "is_deleted": self.is_deleted,
            "created_at": iso_or_none(self.created_at),
        }

    def __repr__(self):
        return f"<DeliverableTask {self.id}: {self.name}>"
