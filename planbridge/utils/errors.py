"""Standardised API error responses.

Usage
-----
    from planbridge.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "PlanItem not found")
    return api_error(E.VALIDATION_REQUIRED, "item_ids is required")
    return api_error(E.BASELINE_LOCKED, msg, details={"fields": ["start_date"]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • PLAN_ prefix for reconciliation errors (hierarchy, locks, stores)
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Reconciliation
    HIERARCHY_VIOLATION = "PLAN_HIERARCHY_VIOLATION"
    BASELINE_LOCKED = "PLAN_BASELINE_LOCKED"
    WRITE_CONFLICT = "PLAN_WRITE_CONFLICT"
    STORE_UNAVAILABLE = "PLAN_STORE_UNAVAILABLE"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.HIERARCHY_VIOLATION: 422,
    E.BASELINE_LOCKED: 423,
    E.WRITE_CONFLICT: 409,
    E.STORE_UNAVAILABLE: 503,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (locked fields, item ids, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
