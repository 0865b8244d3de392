"""
PlanSnapshotService: undo points for the planning sandbox.

Before a visible sync overwrites sandbox items with governance values, the
whole tree of the project is captured as a JSON blob. Restoring a snapshot
writes the captured editable fields, hierarchy position and soft-delete flag
back onto the items that still exist. Baseline-locked items only get their
freely editable fields back. Items created after the snapshot are
left alone; the next sync decides about those.

Only the newest PLAN_SNAPSHOT_RETENTION snapshots per project are kept.
"""

import json
import logging

from flask import current_app

from planbridge.core.exceptions import NotFoundError
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.planning import PlanItem, PlanSnapshot
from planbridge.services.edit_state_service import PROTECTED_FIELDS, governing_milestone_map
from planbridge.services.plan_tree import index_by_id, load_project_items
from planbridge.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

_RESTORED_FIELDS = (
    "name", "description", "start_date", "end_date", "duration_days",
    "status", "progress", "billable", "parent_id", "sort_order", "indent_level",
)
_DATE_FIELDS = ("start_date", "end_date")
_STRUCTURE_FIELDS = ("parent_id", "sort_order", "indent_level")


class PlanSnapshotService:
    """Captures, lists, restores and prunes sandbox snapshots."""

    # ── Capture ───────────────────────────────────────────────────────

    @staticmethod
    def capture(project_id: int, reason: str = "pre_sync", created_by=None) -> dict:
        """Serialise the project's tree (deleted items included) and commit it."""
        items = load_project_items(project_id, include_deleted=True)
        snapshot = PlanSnapshot(
            project_id=project_id,
            reason=reason,
            item_count=len(items),
            payload=json.dumps([i.to_dict() for i in items]),
            created_by=str(created_by) if created_by is not None else None,
        )
        db.session.add(snapshot)
        db.session.flush()
        PlanSnapshotService._prune(project_id)
        db.session.commit()
        logger.info(
            "Plan snapshot captured id=%s project=%s items=%d reason=%s",
            snapshot.id, project_id, len(items), reason,
        )
        return snapshot.to_dict()

    @staticmethod
    def _prune(project_id: int) -> int:
        keep = int(current_app.config.get("PLAN_SNAPSHOT_RETENTION", 20))
        stale = (
            PlanSnapshot.query
            .filter_by(project_id=project_id)
            .order_by(PlanSnapshot.created_at.desc(), PlanSnapshot.id.desc())
            .offset(keep)
            .all()
        )
        for snap in stale:
            db.session.delete(snap)
        if stale:
            logger.debug("Pruned %d old plan snapshot(s) project=%s", len(stale), project_id)
        return len(stale)

    # ── Query ─────────────────────────────────────────────────────────

    @staticmethod
    def list_snapshots(project_id: int, limit: int = 50) -> list[dict]:
        """Return recent snapshots for a project, newest first (no payload)."""
        q = (
            PlanSnapshot.query
            .filter_by(project_id=project_id)
            .order_by(PlanSnapshot.created_at.desc())
            .limit(limit)
        )
        return [s.to_dict() for s in q.all()]

    # ── Restore ───────────────────────────────────────────────────────

    @staticmethod
    def restore(snapshot_id: str, actor_id=None) -> dict:
        """Write a snapshot back onto the sandbox. Flushes, caller commits.

        Items that are currently baseline-locked keep their scheduling fields,
        their place in the tree and their deleted flag; only name, description,
        status and progress are written back. They are counted under
        ``locked`` instead of ``restored``.
        """
        snapshot = db.session.get(PlanSnapshot, snapshot_id)
        if snapshot is None:
            raise NotFoundError("PlanSnapshot", snapshot_id)

        current = load_project_items(snapshot.project_id, include_deleted=True)
        index = index_by_id(current)
        governing = governing_milestone_map(current, index)
        locks = governance_store.get_baseline_locks(set(governing.values()))

        restored = missing = locked_count = 0
        for row in snapshot.items():
            item: PlanItem | None = index.get(row["id"])
            if item is None:
                missing += 1
                continue
            locked = item.is_committed and locks.get(governing.get(item.id), False)
            for field in _RESTORED_FIELDS:
                if locked and (field in PROTECTED_FIELDS or field in _STRUCTURE_FIELDS):
                    continue
                value = row.get(field)
                if field in _DATE_FIELDS:
                    value = parse_date_input(value)
                setattr(item, field, value)
            if locked:
                locked_count += 1
                continue
            if row.get("is_deleted") and not item.is_deleted:
                item.soft_delete(actor_id)
            elif not row.get("is_deleted") and item.is_deleted:
                item.restore()
            restored += 1

        db.session.flush()
        logger.info(
            "Plan snapshot restored id=%s project=%s restored=%d locked=%d missing=%d",
            snapshot.id, snapshot.project_id, restored, locked_count, missing,
        )
        return {
            "snapshot_id": snapshot.id,
            "restored": restored,
            "locked": locked_count,
            "missing": missing,
        }
