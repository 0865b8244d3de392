"""
Governance Store Gateway.

All reads and writes against the authoritative governance records
(milestones, deliverables, checklist tasks) go through this class. Services
never query the ``gov_*`` tables directly.

Contract:
  - Reads return only *active* records: not soft-deleted and with every
    governance ancestor active too. A deliverable under a deleted milestone
    is invisible, which is what makes deletions cascade through the importer.
  - Writes create records or soft-delete them by id. Field edits of existing
    records belong to the governance UI, not to this gateway.
  - Writes flush but never commit; the calling service owns the commit.
  - Transport failures (``OperationalError`` / ``DBAPIError``) roll the
    session back and surface as ``StoreUnavailableError``.
  - Store-side validation failures surface as ``WriteConflictError``.

Testability: the module-level ``governance_store`` singleton can be patched
with ``patch.object(governance_store, "list_active_tasks", side_effect=...)``
to simulate a failure at a given level.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError

from planbridge.core.exceptions import (
    BaselineLockedError,
    NotFoundError,
    StoreUnavailableError,
    WriteConflictError,
)
from planbridge.models import db
from planbridge.models.governance import (
    DELIVERABLE_STATUSES,
    MILESTONE_STATUSES,
    Deliverable,
    DeliverableTask,
    Milestone,
)

logger = logging.getLogger(__name__)

_STORE = "governance"


class GovernanceStore:
    """Gateway to the authoritative governance records.

    Instantiate once at module level. Usage:
        from planbridge.integrations.governance_store import governance_store
        milestones = governance_store.list_active_milestones(project_id)
    """

    # ── Round-trip guard ─────────────────────────────────────────────────────

    @contextmanager
    def _round_trip(self, operation: str):
        """Translate driver-level failures into StoreUnavailableError."""
        try:
            yield
        except IntegrityError as exc:
            db.session.rollback()
            logger.warning("Governance store rejected %s: %s", operation, exc.orig)
            raise WriteConflictError(operation, str(exc.orig)) from exc
        except DBAPIError as exc:
            db.session.rollback()
            logger.error("Governance store round trip failed op=%s error=%s", operation, exc)
            raise StoreUnavailableError(_STORE, operation, str(exc.orig)[:300]) from exc

    # ── Reads ────────────────────────────────────────────────────────────────

    def list_active_milestones(self, project_id: int) -> list[Milestone]:
        """Return non-deleted milestones for a project."""
        stmt = (
            select(Milestone)
            .where(Milestone.project_id == project_id, Milestone.is_deleted.is_(False))
            .order_by(Milestone.created_at, Milestone.id)
        )
        with self._round_trip("list_active_milestones"):
            return list(db.session.execute(stmt).scalars().all())

    def list_active_deliverables(self, project_id: int) -> list[Deliverable]:
        """Return non-deleted deliverables whose milestone is also active."""
        stmt = (
            select(Deliverable)
            .join(Milestone, Deliverable.milestone_id == Milestone.id)
            .where(
                Deliverable.project_id == project_id,
                Deliverable.is_deleted.is_(False),
                Milestone.is_deleted.is_(False),
            )
            .order_by(Deliverable.created_at, Deliverable.id)
        )
        with self._round_trip("list_active_deliverables"):
            return list(db.session.execute(stmt).scalars().all())

    def list_active_tasks(self, project_id: int) -> list[DeliverableTask]:
        """Return non-deleted tasks whose deliverable and milestone are active."""
        stmt = (
            select(DeliverableTask)
            .join(Deliverable, DeliverableTask.deliverable_id == Deliverable.id)
            .join(Milestone, Deliverable.milestone_id == Milestone.id)
            .where(
                DeliverableTask.project_id == project_id,
                DeliverableTask.is_deleted.is_(False),
                Deliverable.is_deleted.is_(False),
                Milestone.is_deleted.is_(False),
            )
            .order_by(DeliverableTask.deliverable_id, DeliverableTask.sort_order)
        )
        with self._round_trip("list_active_tasks"):
            return list(db.session.execute(stmt).scalars().all())

    def get_milestone(self, milestone_id: str) -> Milestone | None:
        with self._round_trip("get_milestone"):
            return db.session.get(Milestone, milestone_id)

    def get_deliverable(self, deliverable_id: str) -> Deliverable | None:
        with self._round_trip("get_deliverable"):
            return db.session.get(Deliverable, deliverable_id)

    def get_task(self, task_id: str) -> DeliverableTask | None:
        with self._round_trip("get_task"):
            return db.session.get(DeliverableTask, task_id)

    def get_baseline_locks(self, milestone_ids) -> dict[str, bool]:
        """Return ``{milestone_id: baseline_locked}`` for exactly the given ids.

        One query regardless of how many ids are passed. Unknown ids are
        absent from the result (callers treat absence as unlocked).
        """
        ids = {m for m in milestone_ids if m}
        if not ids:
            return {}
        stmt = select(Milestone.id, Milestone.baseline_locked).where(Milestone.id.in_(ids))
        with self._round_trip("get_baseline_locks"):
            rows = db.session.execute(stmt).all()
        return {row[0]: bool(row[1]) for row in rows}

    def get_baselines(self, milestone_ids) -> dict[str, Milestone]:
        """Return locked milestones (with their baseline copies) keyed by id."""
        ids = {m for m in milestone_ids if m}
        if not ids:
            return {}
        stmt = select(Milestone).where(
            Milestone.id.in_(ids), Milestone.baseline_locked.is_(True),
        )
        with self._round_trip("get_baselines"):
            return {m.id: m for m in db.session.execute(stmt).scalars().all()}

    def get_max_task_sort_order(self, deliverable_id: str) -> int:
        """Current highest checklist position under a deliverable (0 when empty)."""
        stmt = select(func.max(DeliverableTask.sort_order)).where(
            DeliverableTask.deliverable_id == deliverable_id,
            DeliverableTask.is_deleted.is_(False),
        )
        with self._round_trip("get_max_task_sort_order"):
            return db.session.execute(stmt).scalar() or 0

    # ── Writes ───────────────────────────────────────────────────────────────

    @staticmethod
    def _require_name(resource: str, data: dict) -> str:
        name = (data.get("name") or "").strip()
        if not name:
            raise WriteConflictError(resource, "name is required")
        if len(name) > 255:
            raise WriteConflictError(resource, "name too long (max 255)")
        return name

    def create_milestone(self, project_id: int, data: dict, actor_id: Any = None) -> Milestone:
        """Create a milestone; baseline copies start equal to the planned values."""
        name = self._require_name("Milestone", data)
        start, end = data.get("start_date"), data.get("end_date")
        if not start or not end:
            raise WriteConflictError("Milestone", "missing start or end date")
        if start > end:
            raise WriteConflictError("Milestone", "start date is after end date")
        status = data.get("status") or "NotStarted"
        if status not in MILESTONE_STATUSES:
            raise WriteConflictError("Milestone", f"unknown status {status!r}")

        milestone = Milestone(
            project_id=project_id,
            name=name,
            description=data.get("description"),
            start_date=start,
            end_date=end,
            status=status,
            progress=data.get("progress") or 0,
            billable=bool(data.get("billable")),
            baseline_start_date=start,
            baseline_end_date=end,
            baseline_billable=bool(data.get("billable")),
            created_by=str(actor_id) if actor_id is not None else None,
        )
        with self._round_trip("create_milestone"):
            db.session.add(milestone)
            db.session.flush()
        logger.info("Milestone created id=%s project=%s", milestone.id, project_id)
        return milestone

    def create_deliverable(
        self, project_id: int, milestone_id: str, data: dict, actor_id: Any = None,
    ) -> Deliverable:
        name = self._require_name("Deliverable", data)
        milestone = self.get_milestone(milestone_id)
        if milestone is None or milestone.is_deleted:
            raise NotFoundError("Milestone", milestone_id)
        status = data.get("status") or "NotStarted"
        if status not in DELIVERABLE_STATUSES:
            raise WriteConflictError("Deliverable", f"unknown status {status!r}")

        deliverable = Deliverable(
            project_id=project_id,
            milestone_id=milestone_id,
            name=name,
            description=data.get("description"),
            start_date=data.get("start_date"),
            due_date=data.get("due_date"),
            status=status,
            progress=data.get("progress") or 0,
            created_by=str(actor_id) if actor_id is not None else None,
        )
        with self._round_trip("create_deliverable"):
            db.session.add(deliverable)
            db.session.flush()
        logger.info("Deliverable created id=%s milestone=%s", deliverable.id, milestone_id)
        return deliverable

    def create_task(
        self,
        project_id: int,
        deliverable_id: str,
        data: dict,
        sort_order: int,
        actor_id: Any = None,
    ) -> DeliverableTask:
        name = self._require_name("DeliverableTask", data)
        deliverable = self.get_deliverable(deliverable_id)
        if deliverable is None or deliverable.is_deleted:
            raise NotFoundError("Deliverable", deliverable_id)

        task = DeliverableTask(
            project_id=project_id,
            deliverable_id=deliverable_id,
            name=name,
            is_complete=bool(data.get("is_complete")),
            sort_order=sort_order,
            created_by=str(actor_id) if actor_id is not None else None,
        )
        with self._round_trip("create_task"):
            db.session.add(task)
            db.session.flush()
        logger.info(
            "DeliverableTask created id=%s deliverable=%s sort_order=%s",
            task.id, deliverable_id, sort_order,
        )
        return task

    def soft_delete_milestone(self, milestone_id: str, actor_id: Any = None) -> Milestone:
        """Soft-delete a milestone. Baseline-locked milestones cannot be deleted."""
        milestone = self.get_milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone", milestone_id)
        if milestone.baseline_locked:
            raise BaselineLockedError(
                f'Cannot delete: milestone "{milestone.name}" has a locked baseline. '
                "Raise a variation instead.",
                item_id=milestone_id,
            )
        with self._round_trip("soft_delete_milestone"):
            milestone.soft_delete(actor_id)
            db.session.flush()
        logger.info("Milestone soft-deleted id=%s by=%s", milestone_id, actor_id)
        return milestone

    def soft_delete_deliverable(self, deliverable_id: str, actor_id: Any = None) -> Deliverable:
        deliverable = self.get_deliverable(deliverable_id)
        if deliverable is None:
            raise NotFoundError("Deliverable", deliverable_id)
        self._assert_milestone_unlocked(deliverable.milestone_id, deliverable_id)
        with self._round_trip("soft_delete_deliverable"):
            deliverable.soft_delete(actor_id)
            db.session.flush()
        logger.info("Deliverable soft-deleted id=%s by=%s", deliverable_id, actor_id)
        return deliverable

    def soft_delete_task(self, task_id: str, actor_id: Any = None) -> DeliverableTask:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError("DeliverableTask", task_id)
        deliverable = self.get_deliverable(task.deliverable_id)
        if deliverable is not None:
            self._assert_milestone_unlocked(deliverable.milestone_id, task_id)
        with self._round_trip("soft_delete_task"):
            task.soft_delete(actor_id)
            db.session.flush()
        logger.info("DeliverableTask soft-deleted id=%s by=%s", task_id, actor_id)
        return task

    def _assert_milestone_unlocked(self, milestone_id: str, record_id: str) -> None:
        milestone = self.get_milestone(milestone_id)
        if milestone is not None and milestone.baseline_locked:
            raise BaselineLockedError(
                f'Cannot delete: record belongs to baselined milestone "{milestone.name}". '
                "Raise a variation instead.",
                item_id=record_id,
            )


# Module-level singleton: import this instance in services.
governance_store = GovernanceStore()
