"""
Checklist completion rules — shared by the server and the offline client.

Pure functions only: no database, no Flask, no network.  The server's
completion service and the client's checklist session both call these so a
device that is offline refuses exactly what the server would refuse.

State machine (one record per ITP instance + checklist item):

    pending ──▶ completed ──▶ pending      (toggle off, unconditional)
       │            │
       │            └──────▶ failed
       ├──────▶ not_applicable            (terminal)
       └──────▶ failed                    (terminal, auto-raises an NCR)

Refusals are returned as dicts, never raised:

    {"code": "EVIDENCE_MISSING", "error": "...", "status": 422, "details": {...}}
"""

from __future__ import annotations

from typing import Any, Mapping

# ── Constants ────────────────────────────────────────────────────────────────

POINT_TYPES = ("standard", "witness", "hold_point")
EVIDENCE_TYPES = ("none", "photo", "test", "document")
RESPONSIBLE_PARTIES = ("contractor", "subcontractor", "superintendent", "general")

PENDING = "pending"
COMPLETED = "completed"
NOT_APPLICABLE = "not_applicable"
FAILED = "failed"

COMPLETION_STATES = (PENDING, COMPLETED, NOT_APPLICABLE, FAILED)

# Items in these states count towards "ITP complete".
FINISHED_STATES = frozenset({COMPLETED, NOT_APPLICABLE})

FAILURE_SEVERITIES = ("minor", "major")

COMPLETION_TRANSITIONS = {
    PENDING:        [COMPLETED, NOT_APPLICABLE, FAILED],
    COMPLETED:      [PENDING, FAILED],
    NOT_APPLICABLE: [],
    FAILED:         [],
}

# ── Refusal codes ────────────────────────────────────────────────────────────

EVIDENCE_MISSING = "EVIDENCE_MISSING"
WITNESS_DATA_REQUIRED = "WITNESS_DATA_REQUIRED"
REASON_REQUIRED = "REASON_REQUIRED"
DESCRIPTION_REQUIRED = "DESCRIPTION_REQUIRED"

REFUSAL_CODES = frozenset({
    EVIDENCE_MISSING, WITNESS_DATA_REQUIRED, REASON_REQUIRED, DESCRIPTION_REQUIRED,
})

_REFUSAL_MESSAGES = {
    EVIDENCE_MISSING: "This item requires {evidence} evidence and none is attached. "
                      "Confirm to complete without evidence.",
    WITNESS_DATA_REQUIRED: "Witness point: record whether the witness was present "
                           "(and their name/company when present).",
    REASON_REQUIRED: "A reason is required to mark an item as not applicable.",
    DESCRIPTION_REQUIRED: "A failure description is required to mark an item as failed.",
}


def refusal(code: str, **details: Any) -> dict:
    """Build a refusal dict for *code*; *details* are passed through to callers."""
    evidence = details.get("evidence_required", "")
    return {
        "code": code,
        "error": _REFUSAL_MESSAGES[code].format(evidence=evidence),
        "status": 422,
        "details": details,
    }


def is_refusal(value: Any) -> bool:
    return isinstance(value, dict) and value.get("code") in REFUSAL_CODES


# ── State helpers ────────────────────────────────────────────────────────────


def validate_completion_transition(old_status: str, new_status: str) -> bool:
    """Return True if the completion status transition is an edge of the machine."""
    return new_status in COMPLETION_TRANSITIONS.get(old_status, [])


def state_from_flags(is_completed: bool, is_not_applicable: bool, is_failed: bool) -> str:
    """Derive the single state from the three mutually exclusive booleans."""
    flags = [bool(is_completed), bool(is_not_applicable), bool(is_failed)]
    if sum(flags) > 1:
        raise ValueError(
            "is_completed, is_not_applicable and is_failed are mutually exclusive"
        )
    if is_completed:
        return COMPLETED
    if is_not_applicable:
        return NOT_APPLICABLE
    if is_failed:
        return FAILED
    return PENDING


def flags_for_state(status: str) -> dict:
    return {
        "is_completed": status == COMPLETED,
        "is_not_applicable": status == NOT_APPLICABLE,
        "is_failed": status == FAILED,
    }


def is_finished(status: str | None) -> bool:
    return status in FINISHED_STATES


def is_test_item(item: Mapping) -> bool:
    """An item that is closed out by a test rather than an inspection."""
    return item.get("evidence_required") == "test" or bool(item.get("test_type"))


# ── Refusal checks ───────────────────────────────────────────────────────────


def _blank(text: str | None) -> bool:
    return not isinstance(text, str) or not text.strip()


def check_completion_refusal(
    item: Mapping,
    attachment_count: int,
    *,
    evidence_override: bool = False,
    witness: Mapping | None = None,
) -> dict | None:
    """Guards for pending → completed.

    Args:
        item: Checklist item dict (``point_type``, ``evidence_required``, ``id``).
        attachment_count: Attachments already on the completion.
        evidence_override: Caller already warned the user and got confirmation.
        witness: ``{"witness_present": bool, "witness_name": str, "witness_company": str}``
                 or None when no attendance data was supplied.

    Returns:
        A refusal dict, or None when the transition may proceed.
    """
    evidence_required = item.get("evidence_required") or "none"
    if evidence_required != "none" and attachment_count == 0 and not evidence_override:
        return refusal(
            EVIDENCE_MISSING,
            checklist_item_id=item.get("id"),
            evidence_required=evidence_required,
        )

    if item.get("point_type") == "witness":
        present = (witness or {}).get("witness_present")
        if present is None:
            return refusal(WITNESS_DATA_REQUIRED, checklist_item_id=item.get("id"))
        if present and _blank((witness or {}).get("witness_name")):
            return refusal(
                WITNESS_DATA_REQUIRED,
                checklist_item_id=item.get("id"),
                missing="witness_name",
            )
    return None


def check_not_applicable_refusal(item: Mapping, reason: str | None) -> dict | None:
    if _blank(reason):
        return refusal(REASON_REQUIRED, checklist_item_id=item.get("id"))
    return None


def check_failure_refusal(item: Mapping, description: str | None) -> dict | None:
    if _blank(description):
        return refusal(DESCRIPTION_REQUIRED, checklist_item_id=item.get("id"))
    return None


def witness_fields(item: Mapping, witness: Mapping | None) -> dict:
    """Witness columns to store for a completion of *item*.

    Only witness points carry attendance; ``witness_name``/``witness_company``
    stay unset when the witness was not present.
    """
    if item.get("point_type") != "witness" or not witness:
        return {"witness_present": None, "witness_name": None, "witness_company": None}
    present = bool(witness.get("witness_present"))
    return {
        "witness_present": present,
        "witness_name": (witness.get("witness_name") or "").strip() or None if present else None,
        "witness_company": (witness.get("witness_company") or "").strip() or None if present else None,
    }
