"""
Plan Sync Service: governance store → planning sandbox.

Pulls active governance records into the sandbox tree, one level at a time:

    1. milestones    (roots of the governance chain)
    2. deliverables  (parent = sandbox item linked to the deliverable's milestone)
    3. tasks         (parent = sandbox item linked to the task's deliverable)

Each level partitions governance ids against the sandbox items already
linked to that kind of record:

    new          → create a committed sandbox item, mapped fields, next sort order
    still there  → overwrite mapped fields (governance wins), keep place in tree
    vanished     → soft-delete the sandbox item

Idempotent: a second run with no governance change reports zero counts and
writes nothing, because an item only counts as updated when a mapped field
actually differs.

Each level is committed before the next starts. A run that aborts on a
StoreUnavailableError keeps the levels already done; the next run fills the
gap. Every run, successful or not, leaves one PlanSyncLog row.

All governance reads go through
`planbridge.integrations.governance_store.governance_store`.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from planbridge.core.exceptions import NotFoundError, StoreUnavailableError
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.planning import PlanItem, PlanSyncLog
from planbridge.services import status_mapping
from planbridge.services.plan_tree import max_sort_order

logger = logging.getLogger(__name__)

_LEVELS = (
    # level key, authority kind, item type, field mapper, parent kind, parent attr
    ("milestones", "milestone", "milestone", status_mapping.milestone_fields, None, None),
    ("deliverables", "deliverable", "deliverable", status_mapping.deliverable_fields,
     "milestone", "milestone_id"),
    ("tasks", "task", "task", status_mapping.task_fields, "deliverable", "deliverable_id"),
)

_LINK_COLUMN = {
    "milestone": PlanItem.authority_milestone_id,
    "deliverable": PlanItem.authority_deliverable_id,
    "task": PlanItem.authority_task_id,
}


class _SortCounter:
    """Hands out ``max + 1, max + 2, ...`` for new items within one run."""

    def __init__(self, start: int):
        self.value = start

    def next(self) -> int:
        self.value += 1
        return self.value


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _linked_items(project_id: int, kind: str) -> dict[str, PlanItem]:
    """Sandbox items linked to ``kind`` records, keyed by governance id.

    Soft-deleted items are included so a record that is active again revives
    its old item instead of spawning a duplicate. When several items point at
    the same record the live one wins.
    """
    column = _LINK_COLUMN[kind]
    stmt = (
        select(PlanItem)
        .where(PlanItem.project_id == project_id, column.isnot(None))
        .order_by(PlanItem.is_deleted.desc(), PlanItem.created_at)
    )
    result: dict[str, PlanItem] = {}
    for item in db.session.execute(stmt).scalars():
        result[getattr(item, column.key)] = item
    return result


def _apply_fields(item: PlanItem, fields: dict) -> bool:
    """Write mapped fields onto ``item``. Returns True if anything changed."""
    changed = False
    for key, value in fields.items():
        if getattr(item, key) != value:
            setattr(item, key, value)
            changed = True
    return changed


def _sync_level(
    project_id: int,
    *,
    level: str,
    kind: str,
    item_type: str,
    field_fn,
    parent_kind: str | None,
    parent_attr: str | None,
    records: list,
    sort_counter: _SortCounter,
    now: datetime,
) -> dict:
    counts = {"imported": 0, "updated": 0, "deleted": 0, "skipped": 0}
    existing = _linked_items(project_id, kind)
    parents = _linked_items(project_id, parent_kind) if parent_kind else {}
    present_ids = set()

    for record in records:
        present_ids.add(record.id)
        fields = field_fn(record)
        item = existing.get(record.id)

        if item is not None:
            changed = _apply_fields(item, fields)
            if item.is_deleted:
                item.restore()
                changed = True
            if changed:
                item.last_synced_at = now
                counts["updated"] += 1
            continue

        parent = None
        if parent_kind:
            parent_auth_id = getattr(record, parent_attr)
            parent = parents.get(parent_auth_id)
            if parent is None or parent.is_deleted:
                err = NotFoundError(f"sandbox item for {parent_kind}", parent_auth_id)
                logger.warning(
                    "Skipping %s %s during sync: %s", kind, record.id, err,
                    extra={"project_id": project_id, "sync_direction": "inbound"},
                )
                counts["skipped"] += 1
                continue

        item = PlanItem(
            project_id=project_id,
            parent_id=parent.id if parent is not None else None,
            item_type=item_type,
            sort_order=sort_counter.next(),
            indent_level=(parent.indent_level + 1) if parent is not None else 0,
            last_synced_at=now,
            **fields,
        )
        item.link_authority(kind, record.id, at=now)
        db.session.add(item)
        existing[record.id] = item
        counts["imported"] += 1

    for auth_id, item in existing.items():
        if auth_id in present_ids or item.is_deleted:
            continue
        item.soft_delete()
        item.last_synced_at = now
        counts["deleted"] += 1

    db.session.flush()
    logger.debug("Sync level %s project=%s counts=%s", level, project_id, counts)
    return counts


def _fetch_records(kind: str, project_id: int) -> list:
    if kind == "milestone":
        return governance_store.list_active_milestones(project_id)
    if kind == "deliverable":
        return governance_store.list_active_deliverables(project_id)
    return governance_store.list_active_tasks(project_id)


def _write_sync_log(
    *,
    project_id: int,
    status: str,
    counts: dict,
    triggered_by: str,
    actor_id,
    duration_ms: int,
    error_message: str | None = None,
) -> PlanSyncLog:
    """Create and flush an inbound PlanSyncLog row. Does NOT commit."""
    log = PlanSyncLog(
        project_id=project_id,
        sync_direction="inbound",
        status=status,
        imported_count=counts.get("imported", 0),
        updated_count=counts.get("updated", 0),
        deleted_count=counts.get("deleted", 0),
        skipped_count=counts.get("skipped", 0),
        error_count=1 if status == "error" else 0,
        error_message=error_message,
        triggered_by=triggered_by,
        actor_id=str(actor_id) if actor_id is not None else None,
        duration_ms=duration_ms,
    )
    db.session.add(log)
    db.session.flush()
    return log


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def sync_from_authority(
    project_id: int,
    *,
    triggered_by: str = "manual",
    actor_id=None,
) -> dict:
    """Reconcile the sandbox tree of ``project_id`` with the governance store.

    Returns:
        {
            "imported": int, "updated": int, "deleted": int,
            "by_level": {"milestones": {...}, "deliverables": {...}, "tasks": {...}},
        }

    Raises:
        StoreUnavailableError: a round trip to either store failed. Levels
            finished before the failure stay committed.
    """
    started = time.perf_counter()
    now = datetime.now(timezone.utc)
    totals = {"imported": 0, "updated": 0, "deleted": 0, "skipped": 0}
    by_level: dict[str, dict] = {}
    current_level = "milestones"

    try:
        sort_counter = _SortCounter(max_sort_order(project_id))
        for level, kind, item_type, field_fn, parent_kind, parent_attr in _LEVELS:
            current_level = level
            records = _fetch_records(kind, project_id)
            counts = _sync_level(
                project_id,
                level=level,
                kind=kind,
                item_type=item_type,
                field_fn=field_fn,
                parent_kind=parent_kind,
                parent_attr=parent_attr,
                records=records,
                sort_counter=sort_counter,
                now=now,
            )
            db.session.commit()
            by_level[level] = counts
            for key in totals:
                totals[key] += counts[key]
    except DBAPIError as exc:
        db.session.rollback()
        err = StoreUnavailableError("sandbox", f"sync {current_level}", str(exc.orig)[:300])
        _record_failure(project_id, totals, triggered_by, actor_id, started, err)
        raise err from exc
    except StoreUnavailableError as exc:
        db.session.rollback()
        _record_failure(project_id, totals, triggered_by, actor_id, started, exc)
        raise

    duration_ms = int((time.perf_counter() - started) * 1000)
    _write_sync_log(
        project_id=project_id,
        status="success",
        counts=totals,
        triggered_by=triggered_by,
        actor_id=actor_id,
        duration_ms=duration_ms,
    )
    db.session.commit()

    logger.info(
        "Plan sync complete project=%s imported=%d updated=%d deleted=%d skipped=%d",
        project_id, totals["imported"], totals["updated"], totals["deleted"], totals["skipped"],
        extra={"project_id": project_id, "sync_direction": "inbound", "duration_ms": duration_ms},
    )
    return {
        "imported": totals["imported"],
        "updated": totals["updated"],
        "deleted": totals["deleted"],
        "by_level": by_level,
    }


def _record_failure(project_id, totals, triggered_by, actor_id, started, exc) -> None:
    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.error(
        "Plan sync aborted project=%s: %s", project_id, exc,
        extra={"project_id": project_id, "sync_direction": "inbound", "duration_ms": duration_ms},
    )
    try:
        _write_sync_log(
            project_id=project_id,
            status="error",
            counts=totals,
            triggered_by=triggered_by,
            actor_id=actor_id,
            duration_ms=duration_ms,
            error_message=str(exc)[:1000],
        )
        db.session.commit()
    except DBAPIError:
        db.session.rollback()
        logger.exception("Could not write failed-sync log row project=%s", project_id)


def get_sync_log(project_id: int, limit: int | None = None) -> list[dict]:
    """Return recent sync/commit runs for a project, newest first."""
    cap = int(current_app.config.get("PLAN_SYNC_LOG_LIMIT", 200))
    limit = min(limit or cap, cap)
    stmt = (
        select(PlanSyncLog)
        .where(PlanSyncLog.project_id == project_id)
        .order_by(PlanSyncLog.created_at.desc())
        .limit(limit)
    )
    return [row.to_dict() for row in db.session.execute(stmt).scalars().all()]
