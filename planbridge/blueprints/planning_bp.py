"""Planning reconciliation blueprint.

REST API over the planning sandbox and its reconciliation with the
governance store.

Endpoint groups:
  Sync                POST /api/v1/projects/<project_id>/plan/sync
                      GET  /api/v1/projects/<project_id>/plan/sync-log
  Commit              POST /api/v1/projects/<project_id>/plan/commit
                      GET  /api/v1/projects/<project_id>/plan/uncommitted
                      GET  /api/v1/projects/<project_id>/plan/commit-readiness
                      GET  /api/v1/projects/<project_id>/plan/commit-summary
                      GET  /api/v1/projects/<project_id>/plan/baseline-changes
  Sandbox items       GET/POST   /api/v1/projects/<project_id>/plan/items
                      GET        /api/v1/plan-items/<item_id>/edit-state
                      PUT/DELETE /api/v1/plan-items/<item_id>
                      POST       /api/v1/plan-items/<item_id>/move
  Undo snapshots      GET  /api/v1/projects/<project_id>/plan/snapshots
                      POST /api/v1/plan-snapshots/<snapshot_id>/restore

The acting user is taken from the ``X-Actor-Id`` header or ``actor_id`` in
the JSON body. Sync and commit services own their commits; sandbox CRUD is
committed here.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from planbridge.core.exceptions import (
    BaselineLockedError,
    HierarchyViolationError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
    WriteConflictError,
)
from planbridge.models import db
from planbridge.services import (
    edit_state_service,
    plan_commit_service,
    plan_item_service,
    plan_sync_service,
    sync_coordinator,
)
from planbridge.services.plan_snapshot_service import PlanSnapshotService
from planbridge.utils.errors import E, api_error
from planbridge.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

planning_bp = Blueprint("planning", __name__, url_prefix="/api/v1")


def _actor_id():
    actor = request.headers.get("X-Actor-Id")
    if actor:
        return actor
    data = request.get_json(silent=True) or {}
    return data.get("actor_id")


# ── Error handlers ────────────────────────────────────────────────────────────


@planning_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    db.session.rollback()
    return api_error(E.NOT_FOUND, str(error))


@planning_bp.errorhandler(HierarchyViolationError)
def _handle_hierarchy(error: HierarchyViolationError):
    db.session.rollback()
    return api_error(E.HIERARCHY_VIOLATION, str(error), details=error.details)


@planning_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    db.session.rollback()
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@planning_bp.errorhandler(BaselineLockedError)
def _handle_locked(error: BaselineLockedError):
    db.session.rollback()
    details = {"item_id": error.item_id}
    if error.fields:
        details["fields"] = error.fields
    return api_error(E.BASELINE_LOCKED, str(error), details=details)


@planning_bp.errorhandler(WriteConflictError)
def _handle_write_conflict(error: WriteConflictError):
    db.session.rollback()
    return api_error(E.WRITE_CONFLICT, str(error))


@planning_bp.errorhandler(StoreUnavailableError)
def _handle_unavailable(error: StoreUnavailableError):
    db.session.rollback()
    return api_error(
        E.STORE_UNAVAILABLE,
        f"{error.store.capitalize()} store unavailable; the operation can be retried",
        details={"operation": error.operation},
    )


@planning_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in planning_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Sync  (governance → sandbox)
# ═════════════════════════════════════════════════════════════════════════


@planning_bp.route("/projects/<int:project_id>/plan/sync", methods=["POST"])
def sync_plan(project_id):
    """Pull governance records into the sandbox.

    Body: {silent?: bool}
    Returns: {result, snapshot, show_notice, notice}
    """
    data = request.get_json(silent=True) or {}
    outcome = sync_coordinator.run_sync(
        project_id, silent=bool(data.get("silent")), actor_id=_actor_id(),
    )
    return jsonify(outcome), 200


@planning_bp.route("/projects/<int:project_id>/plan/sync-log", methods=["GET"])
def sync_log(project_id):
    limit = request.args.get("limit", type=int)
    return jsonify(plan_sync_service.get_sync_log(project_id, limit=limit)), 200


# ═════════════════════════════════════════════════════════════════════════
# Commit  (sandbox → governance)
# ═════════════════════════════════════════════════════════════════════════


@planning_bp.route("/projects/<int:project_id>/plan/commit", methods=["POST"])
def commit_plan(project_id):
    """Commit selected items.

    Body: {item_ids: [str, ...]}
    Returns: {committed, skipped, errors[], skipped_items[]}
    """
    data = request.get_json(silent=True) or {}
    item_ids = data.get("item_ids")
    if not isinstance(item_ids, list) or not item_ids:
        return api_error(E.VALIDATION_REQUIRED, "item_ids must be a non-empty list")

    # Only ids that belong to this project are considered.
    scoped = {i["id"] for i in plan_item_service.list_items(project_id)}
    foreign = [i for i in item_ids if i not in scoped]
    result = plan_commit_service.commit_selected(
        [i for i in item_ids if i in scoped], _actor_id(),
    )
    for item_id in foreign:
        result["errors"].append({
            "id": item_id, "name": None,
            "reason": "Item not found in this project", "kind": "error",
        })
    return jsonify(result), 200


@planning_bp.route("/projects/<int:project_id>/plan/uncommitted", methods=["GET"])
def uncommitted_items(project_id):
    return jsonify(plan_commit_service.get_uncommitted_items(project_id)), 200


@planning_bp.route("/projects/<int:project_id>/plan/commit-readiness", methods=["GET"])
def commit_readiness(project_id):
    return jsonify(plan_commit_service.get_commit_readiness(project_id)), 200


@planning_bp.route("/projects/<int:project_id>/plan/commit-summary", methods=["GET"])
def commit_summary(project_id):
    return jsonify(plan_commit_service.get_commit_summary(project_id)), 200


@planning_bp.route("/projects/<int:project_id>/plan/baseline-changes", methods=["GET"])
def baseline_changes(project_id):
    return jsonify(plan_commit_service.detect_baseline_changes(project_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Sandbox items
# ═════════════════════════════════════════════════════════════════════════


@planning_bp.route("/projects/<int:project_id>/plan/items", methods=["GET"])
def list_items(project_id):
    """Project tree as a flat list.

    Query params: include_deleted (bool) returns raw rows without edit state.
    """
    if request.args.get("include_deleted", "").lower() in ("1", "true", "yes"):
        return jsonify(plan_item_service.list_items(project_id, include_deleted=True)), 200
    return jsonify(edit_state_service.get_all_with_edit_state(project_id)), 200


@planning_bp.route("/projects/<int:project_id>/plan/items", methods=["POST"])
def create_item(project_id):
    data = request.get_json(silent=True) or {}
    item = plan_item_service.create_item(project_id, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict()), 201


@planning_bp.route("/plan-items/<item_id>/edit-state", methods=["GET"])
def item_edit_state(item_id):
    return jsonify(edit_state_service.get_item_edit_state_by_id(item_id)), 200


@planning_bp.route("/plan-items/<item_id>", methods=["PUT"])
def update_item(item_id):
    data = request.get_json(silent=True) or {}
    item = plan_item_service.update_item(item_id, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict()), 200


@planning_bp.route("/plan-items/<item_id>", methods=["DELETE"])
def delete_item(item_id):
    result = plan_item_service.delete_item(item_id, actor_id=_actor_id())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result), 200


@planning_bp.route("/plan-items/<item_id>/move", methods=["POST"])
def move_item(item_id):
    """Body: {parent_id: str | null, sort_order?: int}"""
    data = request.get_json(silent=True) or {}
    if "parent_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "parent_id is required (null for root)")
    item = plan_item_service.move_item(item_id, data.get("parent_id"), data.get("sort_order"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Undo snapshots
# ═════════════════════════════════════════════════════════════════════════


@planning_bp.route("/projects/<int:project_id>/plan/snapshots", methods=["GET"])
def list_snapshots(project_id):
    return jsonify(PlanSnapshotService.list_snapshots(project_id)), 200


@planning_bp.route("/plan-snapshots/<snapshot_id>/restore", methods=["POST"])
def restore_snapshot(snapshot_id):
    result = PlanSnapshotService.restore(snapshot_id, actor_id=_actor_id())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result), 200
