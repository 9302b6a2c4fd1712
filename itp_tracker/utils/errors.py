"""Standardised API error responses.

Usage
-----
    from itp_tracker.utils.errors import api_error, refusal_response, E

    return api_error(E.NOT_FOUND, "Lot not found")
    return api_error(E.VALIDATION_REQUIRED, "lot_id is required")
    return api_error(E.CONFORMANCE_BLOCKED, "Lot cannot be conformed",
                     details={"blocking_reasons": reasons})

Completion refusals (EVIDENCE_MISSING, WITNESS_DATA_REQUIRED, ...) keep
their own codes so the client can tell "ask the user for more input"
apart from a genuine failure.
"""

from __future__ import annotations

from flask import jsonify

from itp_tracker.core import checklist_rules as rules


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • bare upper-case codes for completion refusals (shared with the client)
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500 / 502
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"
    NCR_CREATION_FAILED = "ERR_NCR_CREATION_FAILED"

    # Conformance gate – HTTP 409
    CONFORMANCE_BLOCKED = "ERR_CONFORMANCE_BLOCKED"

    # Completion refusals – HTTP 422
    EVIDENCE_MISSING = rules.EVIDENCE_MISSING
    WITNESS_DATA_REQUIRED = rules.WITNESS_DATA_REQUIRED
    REASON_REQUIRED = rules.REASON_REQUIRED
    DESCRIPTION_REQUIRED = rules.DESCRIPTION_REQUIRED


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.NCR_CREATION_FAILED: 502,
    E.CONFORMANCE_BLOCKED: 409,
    E.EVIDENCE_MISSING: 422,
    E.WITNESS_DATA_REQUIRED: 422,
    E.REASON_REQUIRED: 422,
    E.DESCRIPTION_REQUIRED: 422,
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
        Extra structured payload (blocking reasons, missing fields, etc.).

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


def refusal_response(refusal: dict):
    """Render a refusal dict from ``checklist_rules`` as an API error."""
    return api_error(
        refusal["code"],
        refusal["error"],
        status=refusal.get("status"),
        details=refusal.get("details"),
    )
