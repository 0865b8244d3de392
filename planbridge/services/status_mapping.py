"""Status / field mapping between the planning sandbox and the governance store.

Two explicit frozen tables, one per direction. They are NOT inverses of each
other: the governance → sandbox direction is lossy (AtRisk and Delayed both
become ``on_hold``; SubmittedForReview becomes ``in_progress``), and
``cancelled`` has no governance equivalent so it falls back to NotStarted.
Unknown values map to the default of the target vocabulary.

Task completion is asymmetric: governance tasks carry a boolean
``is_complete``, sandbox items carry ``status`` + ``progress``.
"""

from types import MappingProxyType

AUTHORITY_DEFAULT_STATUS = "NotStarted"
SANDBOX_DEFAULT_STATUS = "not_started"

AUTHORITY_TO_SANDBOX = MappingProxyType({
    "NotStarted": "not_started",
    "InProgress": "in_progress",
    "AtRisk": "on_hold",
    "Delayed": "on_hold",
    "SubmittedForReview": "in_progress",
    "Delivered": "completed",
    "Completed": "completed",
})

SANDBOX_TO_AUTHORITY = MappingProxyType({
    "not_started": "NotStarted",
    "in_progress": "InProgress",
    "completed": "Completed",
    "on_hold": "AtRisk",
    "cancelled": "NotStarted",
})


def authority_to_sandbox_status(status: str | None) -> str:
    """Governance status → sandbox status (lossy, defaults to not_started)."""
    return AUTHORITY_TO_SANDBOX.get(status, SANDBOX_DEFAULT_STATUS)


def sandbox_to_authority_status(status: str | None) -> str:
    """Sandbox status → governance status (defaults to NotStarted)."""
    return SANDBOX_TO_AUTHORITY.get(status, AUTHORITY_DEFAULT_STATUS)


def completion_to_sandbox(is_complete: bool) -> tuple[str, int]:
    """Governance task flag → (status, progress)."""
    if is_complete:
        return "completed", 100
    return "not_started", 0


def sandbox_to_completion(status: str | None) -> bool:
    """Sandbox status → governance task flag. Only ``completed`` counts."""
    return status == "completed"


def _clamp_progress(value) -> int:
    try:
        value = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


# ── Record → sandbox field sets ──────────────────────────────────────────────
# Each returns the dict of PlanItem attributes the importer owns for that
# level. Hierarchy fields (parent_id, sort_order, indent_level) are never part
# of these: an existing item keeps its place in the tree.


def milestone_fields(milestone) -> dict:
    return {
        "name": milestone.name,
        "description": milestone.description,
        "start_date": milestone.start_date,
        "end_date": milestone.end_date,
        "status": authority_to_sandbox_status(milestone.status),
        "progress": _clamp_progress(milestone.progress),
        "billable": bool(milestone.billable),
    }


def deliverable_fields(deliverable) -> dict:
    return {
        "name": deliverable.name,
        "description": deliverable.description,
        "start_date": deliverable.start_date,
        "end_date": deliverable.due_date,
        "status": authority_to_sandbox_status(deliverable.status),
        "progress": _clamp_progress(deliverable.progress),
    }


def task_fields(task) -> dict:
    status, progress = completion_to_sandbox(bool(task.is_complete))
    return {
        "name": task.name,
        "status": status,
        "progress": progress,
    }


# ── Sandbox → record payloads (used on commit) ───────────────────────────────


def milestone_payload(item) -> dict:
    return {
        "name": item.name,
        "description": item.description,
        "start_date": item.start_date,
        "end_date": item.end_date,
        "status": sandbox_to_authority_status(item.status),
        "progress": _clamp_progress(item.progress),
        "billable": bool(item.billable),
    }


def deliverable_payload(item) -> dict:
    return {
        "name": item.name,
        "description": item.description,
        "start_date": item.start_date,
        "due_date": item.end_date,
        "status": sandbox_to_authority_status(item.status),
        "progress": _clamp_progress(item.progress),
    }


def task_payload(item) -> dict:
    return {
        "name": item.name,
        "is_complete": sandbox_to_completion(item.status),
    }
