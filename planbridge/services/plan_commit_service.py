"""
Plan Commit Service: planning sandbox → governance store.

Promotes selected sandbox items into new governance records:

    milestone    → Milestone (baseline copies seeded from the planned values)
    deliverable  → Deliverable under the governance milestone of the nearest
                   milestone ancestor
    task         → flat DeliverableTask under the nearest deliverable ancestor,
                   however deeply the task is nested; appended after the
                   deliverable's current last checklist entry

Ordering: the selection is sorted milestone → deliverable → task (and by
depth inside the task tier) so a parent always commits before its children
within one call. A non-milestone commits only if its parent is a component
or is already committed (in storage or earlier in the same call).

Outcome per item:
    skipped  already committed, or a component (never pushed)
    blocked  parent chain not ready (HierarchyViolationError)
    error    governance store refused the write (WriteConflictError / NotFoundError)

Each successful item is committed on its own; a StoreUnavailableError
aborts the run and leaves earlier items committed.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from planbridge.core.exceptions import (
    HierarchyViolationError,
    NotFoundError,
    StoreUnavailableError,
    WriteConflictError,
)
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.planning import PlanItem, PlanSyncLog
from planbridge.services import status_mapping
from planbridge.services.plan_tree import (
    index_by_id,
    iter_ancestors,
    load_project_items,
    nearest_ancestor_of_type,
)

logger = logging.getLogger(__name__)

TYPE_RANK = {"component": -1, "milestone": 0, "deliverable": 1, "task": 2}

BASELINE_FIELDS = (
    ("start_date", "baseline_start_date"),
    ("end_date", "baseline_end_date"),
    ("billable", "baseline_billable"),
)


# ═════════════════════════════════════════════════════════════════════════════
# Parent validation
# ═════════════════════════════════════════════════════════════════════════════


def _parent_block_reason(item: PlanItem, index: dict[str, PlanItem], committed_ids=()) -> str | None:
    """Why ``item`` cannot commit yet, or None when its parent is ready."""
    if item.item_type in ("milestone", "component"):
        return None
    if not item.parent_id:
        return f"{item.item_type.capitalize()} has no parent"
    parent = index.get(item.parent_id)
    if parent is None or parent.is_deleted:
        return "Parent item no longer exists"
    if parent.item_type == "component":
        return None
    if parent.is_committed or parent.id in committed_ids:
        return None
    return f"Parent '{parent.name}' must be committed first"


def _target_milestone_id(item: PlanItem, index: dict[str, PlanItem]) -> str:
    milestone = nearest_ancestor_of_type(item, "milestone", index)
    if milestone is None or milestone.is_deleted:
        raise HierarchyViolationError("Deliverable not under a valid milestone", item_id=item.id)
    if not milestone.authority_milestone_id:
        raise HierarchyViolationError(
            f"Parent '{milestone.name}' must be committed first", item_id=item.id,
        )
    return milestone.authority_milestone_id


def _target_deliverable_id(item: PlanItem, index: dict[str, PlanItem]) -> str:
    """Nearest deliverable ancestor's governance id, through any task nesting."""
    for ancestor in iter_ancestors(item, index):
        if ancestor.item_type == "task":
            continue
        if ancestor.item_type != "deliverable" or ancestor.is_deleted:
            break
        if not ancestor.authority_deliverable_id:
            raise HierarchyViolationError(
                f"Parent '{ancestor.name}' must be committed first", item_id=item.id,
            )
        return ancestor.authority_deliverable_id
    raise HierarchyViolationError("Task not under a valid deliverable", item_id=item.id)


# ═════════════════════════════════════════════════════════════════════════════
# Per-type commit
# ═════════════════════════════════════════════════════════════════════════════


def _commit_one(item: PlanItem, index: dict[str, PlanItem], actor_id, now: datetime) -> str:
    """Create the governance record for ``item`` and link it. Returns the record id."""
    if item.item_type == "milestone":
        record = governance_store.create_milestone(
            item.project_id, status_mapping.milestone_payload(item), actor_id,
        )
        item.link_authority("milestone", record.id, actor_id, at=now)
        return record.id

    if item.item_type == "deliverable":
        milestone_id = _target_milestone_id(item, index)
        record = governance_store.create_deliverable(
            item.project_id, milestone_id, status_mapping.deliverable_payload(item), actor_id,
        )
        item.link_authority("deliverable", record.id, actor_id, at=now)
        return record.id

    deliverable_id = _target_deliverable_id(item, index)
    sort_order = governance_store.get_max_task_sort_order(deliverable_id) + 1
    record = governance_store.create_task(
        item.project_id, deliverable_id, status_mapping.task_payload(item), sort_order, actor_id,
    )
    item.link_authority("task", record.id, actor_id, at=now)
    return record.id


def _write_commit_log(project_id, result, actor_id, duration_ms, status="success", error=None):
    log = PlanSyncLog(
        project_id=project_id,
        sync_direction="outbound",
        status=status,
        committed_count=result["committed"],
        skipped_count=result["skipped"],
        error_count=len(result["errors"]) + (1 if error else 0),
        error_message=error,
        triggered_by="manual",
        actor_id=str(actor_id) if actor_id is not None else None,
        duration_ms=duration_ms,
    )
    db.session.add(log)
    db.session.commit()
    return log


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def commit_selected(item_ids, actor_id=None) -> dict:
    """Commit the given sandbox items to the governance store.

    Returns:
        {
            "committed": int,
            "skipped": int,
            "errors": [{"id", "name", "reason", "kind"}],   # kind: blocked | error
            "skipped_items": [{"id", "name", "reason"}],
        }

    Raises:
        StoreUnavailableError: a round trip failed; items committed before the
            failure stay committed.
    """
    started = time.perf_counter()
    now = datetime.now(timezone.utc)
    result = {"committed": 0, "skipped": 0, "errors": [], "skipped_items": []}

    ids = list(dict.fromkeys(item_ids or []))
    if not ids:
        return result

    stmt = select(PlanItem).where(PlanItem.id.in_(ids), PlanItem.is_deleted.is_(False))
    items = list(db.session.execute(stmt).scalars().all())
    items.sort(key=lambda i: (TYPE_RANK.get(i.item_type, 3), i.indent_level, i.sort_order))
    project_ids = {i.project_id for i in items}
    log_project_id = next(iter(project_ids)) if len(project_ids) == 1 else None

    indexes = {
        pid: index_by_id(load_project_items(pid, include_deleted=True)) for pid in project_ids
    }
    committed_this_batch: set[str] = set()

    for item in items:
        item_id, name = item.id, item.name
        if item.is_committed:
            result["skipped"] += 1
            result["skipped_items"].append({"id": item_id, "name": name, "reason": "Already committed"})
            continue
        if item.item_type == "component":
            result["skipped"] += 1
            result["skipped_items"].append(
                {"id": item_id, "name": name, "reason": "Grouping node (not committed)"},
            )
            continue

        index = indexes[item.project_id]
        reason = _parent_block_reason(item, index, committed_this_batch)
        if reason:
            result["errors"].append({"id": item_id, "name": name, "reason": reason, "kind": "blocked"})
            continue

        try:
            record_id = _commit_one(item, index, actor_id, now)
            db.session.commit()
        except HierarchyViolationError as exc:
            db.session.rollback()
            result["errors"].append({"id": item_id, "name": name, "reason": str(exc), "kind": "blocked"})
            continue
        except (WriteConflictError, NotFoundError) as exc:
            db.session.rollback()
            logger.warning("Commit of %s %s rejected: %s", item.item_type, item_id, exc)
            result["errors"].append({"id": item_id, "name": name, "reason": str(exc), "kind": "error"})
            continue
        except StoreUnavailableError as exc:
            db.session.rollback()
            _abort(log_project_id, result, actor_id, started, exc)
            raise
        except DBAPIError as exc:
            db.session.rollback()
            err = StoreUnavailableError("sandbox", "commit_selected", str(exc.orig)[:300])
            _abort(log_project_id, result, actor_id, started, err)
            raise err from exc

        committed_this_batch.add(item_id)
        result["committed"] += 1
        logger.debug("Committed %s %s → %s", item.item_type, item_id, record_id)

    duration_ms = int((time.perf_counter() - started) * 1000)
    _write_commit_log(log_project_id, result, actor_id, duration_ms)
    logger.info(
        "Plan commit complete project=%s committed=%d skipped=%d errors=%d",
        log_project_id, result["committed"], result["skipped"], len(result["errors"]),
        extra={"project_id": log_project_id, "sync_direction": "outbound", "duration_ms": duration_ms},
    )
    return result


def _abort(project_id, result, actor_id, started, exc) -> None:
    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.error(
        "Plan commit aborted project=%s after %d item(s): %s", project_id, result["committed"], exc,
        extra={"project_id": project_id, "sync_direction": "outbound", "duration_ms": duration_ms},
    )
    try:
        _write_commit_log(project_id, result, actor_id, duration_ms, status="error", error=str(exc)[:1000])
    except DBAPIError:
        db.session.rollback()
        logger.exception("Could not write failed-commit log row project=%s", project_id)


def get_uncommitted_items(project_id: int) -> list[dict]:
    """Live, non-component, uncommitted items with commit readiness.

    Each dict carries ``can_commit`` and ``blocked_reason`` (None when ready).
    """
    all_items = load_project_items(project_id, include_deleted=True)
    index = index_by_id(all_items)
    result = []
    for item in all_items:
        if item.is_deleted or item.is_committed or item.item_type == "component":
            continue
        reason = _parent_block_reason(item, index)
        data = item.to_dict()
        data["can_commit"] = reason is None
        data["blocked_reason"] = reason
        result.append(data)
    return result


def get_commit_readiness(project_id: int) -> dict:
    items = get_uncommitted_items(project_id)
    can_commit = sum(1 for i in items if i["can_commit"])
    return {
        "uncommitted": len(items),
        "can_commit": can_commit,
        "blocked": len(items) - can_commit,
    }


def get_commit_summary(project_id: int) -> dict:
    """Committed / uncommitted milestone+deliverable counts and locked milestones."""
    stmt = select(PlanItem).where(
        PlanItem.project_id == project_id,
        PlanItem.is_deleted.is_(False),
        PlanItem.item_type.in_(("milestone", "deliverable")),
    )
    items = list(db.session.execute(stmt).scalars().all())
    committed = [i for i in items if i.is_committed]
    milestone_ids = {i.authority_milestone_id for i in committed if i.authority_milestone_id}
    locks = governance_store.get_baseline_locks(milestone_ids)
    return {
        "committed": len(committed),
        "uncommitted": len(items) - len(committed),
        "baseline_locked": sum(1 for locked in locks.values() if locked),
    }


def detect_baseline_changes(project_id: int) -> list[dict]:
    """Committed milestone items whose scheduling drifted from a locked baseline."""
    stmt = select(PlanItem).where(
        PlanItem.project_id == project_id,
        PlanItem.is_deleted.is_(False),
        PlanItem.item_type == "milestone",
        PlanItem.authority_milestone_id.isnot(None),
    )
    items = list(db.session.execute(stmt).scalars().all())
    baselines = governance_store.get_baselines({i.authority_milestone_id for i in items})

    changes = []
    for item in items:
        milestone = baselines.get(item.authority_milestone_id)
        if milestone is None:
            continue
        for field, baseline_field in BASELINE_FIELDS:
            current = getattr(item, field)
            baseline = getattr(milestone, baseline_field)
            if current != baseline:
                changes.append({
                    "plan_item_id": item.id,
                    "plan_item_name": item.name,
                    "milestone_id": milestone.id,
                    "field": field,
                    "current_value": current.isoformat() if hasattr(current, "isoformat") else current,
                    "baseline_value": baseline.isoformat() if hasattr(baseline, "isoformat") else baseline,
                })
    return changes
