"""Plan item service layer: sandbox CRUD.

Create, update, move and delete PlanItems while keeping the tree valid:
- hierarchy typing (component → component | milestone, milestone →
  deliverable, deliverable → task, task → task)
- ``indent_level`` always equals the depth of the item
- baseline-locked items keep their scheduling fields and their place

Deleting a committed (unlocked) item also soft-deletes the governance record
it is linked to, so the next sync sees nothing to re-import.

Transaction policy: functions flush, never commit. The caller (blueprint)
commits.
"""

import logging

from planbridge.core.exceptions import (
    BaselineLockedError,
    HierarchyViolationError,
    NotFoundError,
    ValidationError,
)
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.planning import ALLOWED_CHILD_TYPES, ITEM_TYPES, PLAN_STATUSES, PlanItem
from planbridge.services import edit_state_service
from planbridge.services.plan_tree import (
    children_map,
    index_by_id,
    iter_descendants,
    load_project_items,
    max_sibling_sort_order,
)
from planbridge.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "name", "description", "start_date", "end_date", "duration_days",
    "status", "progress", "billable",
)
DATE_FIELDS = ("start_date", "end_date")


# ── Validation helpers ───────────────────────────────────────────────────


def _get_item(item_id: str) -> PlanItem:
    item = db.session.get(PlanItem, item_id)
    if item is None or item.is_deleted:
        raise NotFoundError("PlanItem", item_id)
    return item


def _clean_fields(data: dict) -> dict:
    """Validate and coerce the editable fields present in ``data``."""
    cleaned = {}
    errors = {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field in DATE_FIELDS:
            try:
                value = parse_date_input(value)
            except ValueError as exc:
                errors[field] = str(exc)
                continue
        elif field == "name":
            value = (value or "").strip()
            if not value:
                errors[field] = "required"
                continue
            if len(value) > 255:
                errors[field] = "max 255 characters"
                continue
        elif field == "status":
            if value not in PLAN_STATUSES:
                errors[field] = f"must be one of {sorted(PLAN_STATUSES)}"
                continue
        elif field == "progress":
            try:
                value = int(value)
            except (TypeError, ValueError):
                errors[field] = "must be an integer"
                continue
            if not 0 <= value <= 100:
                errors[field] = "must be between 0 and 100"
                continue
        elif field == "duration_days":
            if value is not None:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    errors[field] = "must be an integer"
                    continue
                if value < 0:
                    errors[field] = "must not be negative"
                    continue
        elif field == "billable":
            if not isinstance(value, bool):
                errors[field] = "must be true or false"
                continue
        cleaned[field] = value
    if errors:
        raise ValidationError("Invalid plan item fields", details=errors)
    return cleaned


def _check_dates(start, end) -> None:
    if start and end and start > end:
        raise ValidationError("start_date must not be after end_date",
                              details={"start_date": "after end_date"})


def _check_parent_type(item_type: str, parent: PlanItem | None) -> None:
    parent_type = parent.item_type if parent is not None else None
    if item_type not in ALLOWED_CHILD_TYPES.get(parent_type, set()):
        where = f"a {parent_type}" if parent_type else "the project root"
        raise HierarchyViolationError(f"A {item_type} cannot be placed under {where}")


def _resolve_parent(project_id: int, parent_id) -> PlanItem | None:
    if not parent_id:
        return None
    parent = db.session.get(PlanItem, parent_id)
    if parent is None or parent.is_deleted or parent.project_id != project_id:
        raise NotFoundError("PlanItem", parent_id)
    return parent


# ═══════════════════════════════════════════════════════════════════════════
#  READ
# ═══════════════════════════════════════════════════════════════════════════


def list_items(project_id: int, include_deleted: bool = False) -> list[dict]:
    """Flat list of a project's items ordered by sort order."""
    return [i.to_dict() for i in load_project_items(project_id, include_deleted=include_deleted)]


# ═══════════════════════════════════════════════════════════════════════════
#  CREATE / UPDATE
# ═══════════════════════════════════════════════════════════════════════════


def create_item(project_id: int, data: dict) -> PlanItem:
    """Create an uncommitted sandbox item.

    Args:
        project_id: Owning project.
        data: {item_type, name, parent_id?, sort_order?, description?,
               start_date?, end_date?, duration_days?, status?, progress?, billable?}

    Raises:
        ValidationError: bad fields.
        HierarchyViolationError: item type not allowed under the parent.
        NotFoundError: parent does not exist in this project.
    """
    item_type = data.get("item_type")
    if item_type not in ITEM_TYPES:
        raise ValidationError(f"item_type must be one of {list(ITEM_TYPES)}",
                              details={"item_type": "invalid"})
    if not (data.get("name") or "").strip():
        raise ValidationError("name is required", details={"name": "required"})

    fields = _clean_fields(data)
    _check_dates(fields.get("start_date"), fields.get("end_date"))

    parent = _resolve_parent(project_id, data.get("parent_id"))
    _check_parent_type(item_type, parent)

    sort_order = data.get("sort_order")
    if sort_order is None:
        sort_order = max_sibling_sort_order(project_id, parent.id if parent else None) + 1

    item = PlanItem(
        project_id=project_id,
        parent_id=parent.id if parent else None,
        item_type=item_type,
        sort_order=int(sort_order),
        indent_level=(parent.indent_level + 1) if parent else 0,
        **fields,
    )
    db.session.add(item)
    db.session.flush()
    logger.info("PlanItem created id=%s type=%s project=%s", item.id, item_type, project_id)
    return item


def update_item(item_id: str, data: dict) -> PlanItem:
    """Update editable fields of an item.

    Hierarchy fields are ignored here; use :func:`move_item`. On a
    baseline-locked item, changing start/end/duration/billable raises
    BaselineLockedError and nothing is written; name, description, status
    and progress stay editable.
    """
    item = _get_item(item_id)
    fields = _clean_fields(data)

    changed = {k: v for k, v in fields.items() if getattr(item, k) != v}
    edit_state_service.assert_fields_writable(item, changed.keys())
    _check_dates(changed.get("start_date", item.start_date), changed.get("end_date", item.end_date))

    for key, value in changed.items():
        setattr(item, key, value)
    db.session.flush()
    if changed:
        logger.info("PlanItem updated id=%s fields=%s", item.id, sorted(changed))
    return item


# ═══════════════════════════════════════════════════════════════════════════
#  MOVE
# ═══════════════════════════════════════════════════════════════════════════


def move_item(item_id: str, new_parent_id=None, sort_order=None) -> PlanItem:
    """Re-parent an item (indent / outdent / drag) and fix the sub-tree depth.

    Raises:
        BaselineLockedError: the item is locked.
        HierarchyViolationError: new parent is the item itself, one of its
            descendants, or has an incompatible type.
    """
    item = _get_item(item_id)
    edit_state_service.assert_structure_mutable(item, "move")

    items = load_project_items(item.project_id)
    children = children_map(items)
    parent = _resolve_parent(item.project_id, new_parent_id)
    if parent is not None:
        if parent.id == item.id or parent.id in {d.id for d in iter_descendants(item, children)}:
            raise HierarchyViolationError("An item cannot be moved under itself", item_id=item.id)
    _check_parent_type(item.item_type, parent)

    if sort_order is None:
        if (parent.id if parent else None) == item.parent_id:
            sort_order = item.sort_order
        else:
            sort_order = max_sibling_sort_order(item.project_id, parent.id if parent else None) + 1

    item.parent_id = parent.id if parent else None
    item.sort_order = int(sort_order)
    item.indent_level = (parent.indent_level + 1) if parent else 0
    index = index_by_id(items)
    for node in iter_descendants(item, children):
        node.indent_level = index[node.parent_id].indent_level + 1
    db.session.flush()
    logger.info("PlanItem moved id=%s parent=%s", item.id, item.parent_id)
    return item


# ═══════════════════════════════════════════════════════════════════════════
#  DELETE
# ═══════════════════════════════════════════════════════════════════════════


def _soft_delete_authority(node: PlanItem, actor_id) -> bool:
    ref = node.authority_ref
    if ref is None:
        return False
    try:
        if ref["type"] == "milestone":
            governance_store.soft_delete_milestone(ref["id"], actor_id)
        elif ref["type"] == "deliverable":
            governance_store.soft_delete_deliverable(ref["id"], actor_id)
        else:
            governance_store.soft_delete_task(ref["id"], actor_id)
    except NotFoundError:
        logger.warning("Linked %s %s already gone; deleting sandbox item only", ref["type"], ref["id"])
        return False
    return True


def delete_item(item_id: str, actor_id=None) -> dict:
    """Soft-delete an item and its sub-tree.

    Linked records are soft-deleted in the governance store as well. Refused
    when the item or any committed descendant is baseline-locked.

    Returns:
        {"deleted": int, "authority_deleted": int}
    """
    item = _get_item(item_id)
    items = load_project_items(item.project_id)
    index = index_by_id(items)
    nodes = [item] + list(iter_descendants(item, children_map(items)))

    # The lock of an ancestor milestone reaches the item through index.
    governing = edit_state_service.governing_milestone_map(nodes, index)
    locks = governance_store.get_baseline_locks(set(governing.values()))
    for node in nodes:
        if node.is_committed and locks.get(governing.get(node.id), False):
            raise BaselineLockedError(
                f'Cannot delete "{node.name}": its milestone is baseline-locked. '
                f"{edit_state_service.VARIATION_HINT}",
                item_id=node.id,
            )

    authority_deleted = 0
    for node in nodes:
        if node.is_committed and _soft_delete_authority(node, actor_id):
            authority_deleted += 1
        node.soft_delete(actor_id)
    db.session.flush()
    logger.info(
        "PlanItem deleted id=%s nodes=%d authority_deleted=%d",
        item.id, len(nodes), authority_deleted,
    )
    return {"deleted": len(nodes), "authority_deleted": authority_deleted}

