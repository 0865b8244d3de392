"""
Sync coordinator: "governance wins, undo keeps your edits".

A visible sync is two steps:
    1. snapshot the sandbox tree (undo point)
    2. run the importer, overwriting sandbox values unconditionally

If the importer changed or removed anything the caller gets a one-line
notice so the user knows an undo point exists. The first load of a session
runs silently: no snapshot, no notice.
"""

import logging

from planbridge.services import plan_sync_service
from planbridge.services.plan_snapshot_service import PlanSnapshotService

logger = logging.getLogger(__name__)

NOTICE_TEMPLATE = "{count} item(s) updated from the source of truth; undo available"


def _default_snapshot(project_id, actor_id):
    return PlanSnapshotService.capture(project_id, reason="pre_sync", created_by=actor_id)


def run_sync(project_id: int, *, silent: bool = False, snapshot_fn=None, actor_id=None) -> dict:
    """Snapshot (unless silent), then import from the governance store.

    Args:
        project_id: Project to reconcile.
        silent: First-load mode; skips snapshot and notice.
        snapshot_fn: ``callable(project_id, actor_id) -> dict``; defaults to
            a persisted PlanSnapshot. An exception here aborts the run before
            the sandbox is touched.
        actor_id: Who triggered the sync.

    Returns:
        {"result": <importer result>, "snapshot": dict | None,
         "show_notice": bool, "notice": str | None}
    """
    snapshot = None
    if not silent:
        snapshot = (snapshot_fn or _default_snapshot)(project_id, actor_id)

    result = plan_sync_service.sync_from_authority(
        project_id,
        triggered_by="auto" if silent else "manual",
        actor_id=actor_id,
    )

    changed = result["updated"] + result["deleted"]
    show_notice = not silent and changed > 0
    notice = NOTICE_TEMPLATE.format(count=changed) if show_notice else None
    if show_notice:
        logger.info("Sync overwrote %d sandbox item(s) project=%s", changed, project_id)
    return {"result": result, "snapshot": snapshot, "show_notice": show_notice, "notice": notice}
