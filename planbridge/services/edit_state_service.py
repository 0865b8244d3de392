"""
Edit-state resolution for sandbox items.

Every item is in exactly one of three states:

    unlinked  not committed; free to edit and delete
    linked    committed, governing milestone not baselined; free to edit and
              delete (deletes propagate to the governance store)
    locked    committed, governing milestone baselined; scheduling fields
              are frozen and the item cannot be deleted or re-parented

The baseline flag lives only on the governance milestone. Deliverables and
tasks inherit it from the nearest milestone ancestor in the sandbox tree.
"""

from __future__ import annotations

import logging

from planbridge.core.exceptions import BaselineLockedError, NotFoundError
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.planning import PlanItem
from planbridge.services.plan_tree import (
    governing_milestone_id,
    index_by_id,
    load_project_items,
    max_depth,
)

logger = logging.getLogger(__name__)

STATE_UNLINKED = "unlinked"
STATE_LINKED = "linked"
STATE_LOCKED = "locked"

PROTECTED_FIELDS = ("start_date", "end_date", "duration_days", "billable")

VARIATION_HINT = "Raise a variation in the governance store to change it."


def resolve_edit_state(item: PlanItem, is_milestone_baseline_locked: bool) -> dict:
    """Pure state computation for one item."""
    if not item.is_committed:
        return {"state": STATE_UNLINKED, "protected_fields": [], "can_delete": True}
    if is_milestone_baseline_locked:
        return {
            "state": STATE_LOCKED,
            "protected_fields": list(PROTECTED_FIELDS),
            "can_delete": False,
        }
    return {"state": STATE_LINKED, "protected_fields": [], "can_delete": True}


def governing_milestone_map(items, index: dict[str, PlanItem]) -> dict[str, str | None]:
    """Map every item id to the governance milestone id that governs it.

    Walks each chain at most once: results are memoised per id and pushed
    down to every item visited on the way up.
    """
    memo: dict[str, str | None] = {}
    for item in items:
        if item.id in memo:
            continue
        path = [item]
        governing = None
        node = item
        while True:
            if node.item_type == "milestone":
                governing = node.authority_milestone_id
                break
            if node.item_type == "component":
                break
            if node.parent_id in memo:
                governing = memo[node.parent_id]
                break
            parent = index.get(node.parent_id) if node.parent_id else None
            if parent is None or len(path) > max_depth() or parent in path:
                break
            path.append(parent)
            node = parent
        for visited in path:
            if visited.item_type == "component":
                memo[visited.id] = None
            elif visited.item_type == "milestone":
                memo[visited.id] = visited.authority_milestone_id
            else:
                memo[visited.id] = governing
    return memo


def get_all_with_edit_state(project_id: int) -> list[dict]:
    """Every live item of a project annotated with its edit state.

    One sandbox query, one lock query for exactly the milestone ids in use.
    """
    items = load_project_items(project_id)
    index = index_by_id(items)
    governing = governing_milestone_map(items, index)
    locks = governance_store.get_baseline_locks(set(governing.values()))

    result = []
    for item in items:
        milestone_id = governing.get(item.id)
        data = item.to_dict()
        data["governing_milestone_id"] = milestone_id
        data["edit_state"] = resolve_edit_state(item, locks.get(milestone_id, False))
        result.append(data)
    return result


def get_item_edit_state(item: PlanItem) -> dict:
    index = index_by_id(load_project_items(item.project_id, include_deleted=True))
    milestone_id = governing_milestone_id(item, index)
    locked = governance_store.get_baseline_locks([milestone_id]).get(milestone_id, False)
    state = resolve_edit_state(item, locked)
    state["governing_milestone_id"] = milestone_id
    return state


def get_item_edit_state_by_id(item_id: str) -> dict:
    item = db.session.get(PlanItem, item_id)
    if item is None:
        raise NotFoundError("PlanItem", item_id)
    return get_item_edit_state(item)


def assert_fields_writable(item: PlanItem, fields) -> None:
    """Reject writes to protected fields of a locked item.

    Raises:
        BaselineLockedError: listing the protected fields that were touched.
    """
    touched = [f for f in PROTECTED_FIELDS if f in set(fields)]
    if not touched or not item.is_committed:
        return
    state = get_item_edit_state(item)
    if state["state"] != STATE_LOCKED:
        return
    logger.info("Rejected protected-field write item=%s fields=%s", item.id, touched)
    raise BaselineLockedError(
        f'"{item.name}" is baseline-locked; {", ".join(touched)} cannot be changed here. '
        f"{VARIATION_HINT}",
        item_id=item.id,
        fields=touched,
    )


def assert_structure_mutable(item: PlanItem, action: str) -> None:
    """Reject delete / move / indent / outdent of a locked item."""
    if not item.is_committed:
        return
    state = get_item_edit_state(item)
    if state["state"] != STATE_LOCKED:
        return
    logger.info("Rejected %s of locked item=%s", action, item.id)
    raise BaselineLockedError(
        f'Cannot {action} "{item.name}": its milestone is baseline-locked. {VARIATION_HINT}',
        item_id=item.id,
    )
