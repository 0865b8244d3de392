"""
Flat-arena helpers for the sandbox tree.

PlanItems are loaded once per operation into an ``{id: item}`` index; every
ancestor walk is a chain of dict lookups bounded by PLAN_MAX_ANCESTOR_DEPTH,
so a corrupted parent chain (cycle) stops instead of spinning.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func, select

from planbridge.models import db
from planbridge.models.planning import PlanItem

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 100


def max_depth() -> int:
    return int(current_app.config.get("PLAN_MAX_ANCESTOR_DEPTH", DEFAULT_MAX_DEPTH))


def load_project_items(project_id: int, *, include_deleted: bool = False) -> list[PlanItem]:
    """All sandbox items of a project ordered for display."""
    stmt = select(PlanItem).where(PlanItem.project_id == project_id)
    if not include_deleted:
        stmt = stmt.where(PlanItem.is_deleted.is_(False))
    stmt = stmt.order_by(PlanItem.sort_order, PlanItem.created_at, PlanItem.id)
    return list(db.session.execute(stmt).scalars().all())


def index_by_id(items) -> dict[str, PlanItem]:
    return {item.id: item for item in items}


def iter_ancestors(item: PlanItem, index: dict[str, PlanItem]):
    """Yield the parents of ``item`` nearest first.

    Parents missing from ``index`` end the walk.
    """
    limit = max_depth()
    seen = {item.id}
    parent_id = item.parent_id
    steps = 0
    while parent_id and steps < limit:
        parent = index.get(parent_id)
        if parent is None or parent.id in seen:
            if parent is not None:
                logger.warning("Cycle in plan item parent chain at id=%s", parent_id)
            return
        seen.add(parent.id)
        yield parent
        parent_id = parent.parent_id
        steps += 1


def nearest_ancestor_of_type(item: PlanItem, item_type: str, index: dict[str, PlanItem]):
    for ancestor in iter_ancestors(item, index):
        if ancestor.item_type == item_type:
            return ancestor
    return None


def governing_milestone_id(item: PlanItem, index: dict[str, PlanItem]) -> str | None:
    """Governance milestone id whose baseline governs ``item``.

    A milestone item governs itself; deliverables and tasks inherit from the
    nearest milestone ancestor. Components are never governed and stop the
    walk.
    """
    if item.item_type == "component":
        return None
    if item.item_type == "milestone":
        return item.authority_milestone_id
    for ancestor in iter_ancestors(item, index):
        if ancestor.item_type == "milestone":
            return ancestor.authority_milestone_id
        if ancestor.item_type == "component":
            return None
    return None


def children_map(items) -> dict[str | None, list[PlanItem]]:
    result: dict[str | None, list[PlanItem]] = {}
    for item in items:
        result.setdefault(item.parent_id, []).append(item)
    return result


def iter_descendants(item: PlanItem, children: dict[str | None, list[PlanItem]]):
    """Breadth-first walk below ``item`` (``item`` itself excluded)."""
    seen = {item.id}
    queue = list(children.get(item.id, []))
    while queue:
        node = queue.pop(0)
        if node.id in seen:
            continue
        seen.add(node.id)
        yield node
        queue.extend(children.get(node.id, []))


def max_sort_order(project_id: int) -> int:
    """Current maximum ``sort_order`` across the project's live items."""
    stmt = select(func.max(PlanItem.sort_order)).where(
        PlanItem.project_id == project_id,
        PlanItem.is_deleted.is_(False),
    )
    return db.session.execute(stmt).scalar() or 0


def max_sibling_sort_order(project_id: int, parent_id: str | None) -> int:
    stmt = select(func.max(PlanItem.sort_order)).where(
        PlanItem.project_id == project_id,
        PlanItem.is_deleted.is_(False),
    )
    if parent_id is None:
        stmt = stmt.where(PlanItem.parent_id.is_(None))
    else:
        stmt = stmt.where(PlanItem.parent_id == parent_id)
    return db.session.execute(stmt).scalar() or 0
