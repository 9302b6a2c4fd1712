"""
Lot conformance gate.

``evaluate`` is read-only and safe to call repeatedly; ``conform_lot``
re-runs the same checks inside its own transaction before setting the lot to
``conformed``, because the evaluation a user looked at may be stale.

Prerequisites (all must hold):
    1. itp_assigned       an ITP instance exists for the lot
    2. itp_completed      every snapshot item is completed or not_applicable
    3. has_passing_test   at least one test result with pass_fail=pass, status=verified
    4. no_open_ncrs       no NCR on the lot outside closed / closed_concession
"""

import logging
from datetime import datetime, timezone

from itp_tracker.core.checklist_rules import is_finished
from itp_tracker.core.exceptions import NotFoundError, StateTransitionError
from itp_tracker.models import db
from itp_tracker.models.project import Lot
from itp_tracker.models.test_result import TestResult
from itp_tracker.services import ncr_service
from itp_tracker.services.itp_service import find_instance_for_lot

logger = logging.getLogger(__name__)

# Lot states from which the conform commit is allowed
_CONFORMABLE_STATUSES = {"not_started", "in_progress", "awaiting_test", "completed", "ncr_raised"}


def collect_prerequisites(lot: Lot) -> dict:
    """Read the four signals fresh from the store."""
    instance = find_instance_for_lot(lot.id)
    total = completed = 0
    if instance is not None:
        items = instance.checklist_items
        statuses = {c.checklist_item_id: c.status for c in instance.completions}
        total = len(items)
        completed = sum(1 for i in items if is_finished(statuses.get(i["id"])))

    has_passing_test = db.session.query(
        TestResult.query.filter_by(lot_id=lot.id, pass_fail="pass", status="verified").exists()
    ).scalar()

    open_ncrs = ncr_service.open_ncrs_for_lot(lot.id)

    return {
        "itp_assigned": instance is not None,
        "itp_completed": instance is not None and total > 0 and completed == total,
        "itp_completed_count": completed,
        "itp_total_count": total,
        "has_passing_test": bool(has_passing_test),
        "no_open_ncrs": not open_ncrs,
        "open_ncrs": [
            {"id": n.id, "ncr_number": n.ncr_number, "status": n.status} for n in open_ncrs
        ],
    }


def decide(prereqs: dict) -> tuple[bool, list[str]]:
    """Turn prerequisites into (can_conform, blocking_reasons).

    Pure: the reasons list is empty exactly when every prerequisite holds.
    """
    reasons = []
    if not prereqs["itp_assigned"]:
        reasons.append("No ITP assigned to this lot")
    elif not prereqs["itp_completed"]:
        reasons.append(
            f"ITP checklist incomplete ({prereqs['itp_completed_count']}/"
            f"{prereqs['itp_total_count']} items completed)"
        )
    if not prereqs["has_passing_test"]:
        reasons.append("No passing verified test result")
    if not prereqs["no_open_ncrs"]:
        open_ncrs = prereqs.get("open_ncrs") or []
        if open_ncrs:
            numbers = ", ".join(n["ncr_number"] for n in open_ncrs)
            reasons.append(f"{len(open_ncrs)} open NCR(s) must be closed: {numbers}")
        else:
            reasons.append("Open NCRs must be closed")
    return not reasons, reasons


def evaluate(lot_id: int) -> dict:
    """Advisory gate result for a lot.  Never mutates state."""
    lot = db.session.get(Lot, lot_id)
    if lot is None:
        raise NotFoundError(resource="Lot", resource_id=lot_id)
    prereqs = collect_prerequisites(lot)
    can_conform, reasons = decide(prereqs)
    return {
        "lot_id": lot.id,
        "can_conform": can_conform,
        "blocking_reasons": reasons,
        "prerequisites": prereqs,
    }


def conform_lot(lot_id: int, actor: str) -> tuple[dict, None] | tuple[None, dict]:
    """Commit the lot to ``conformed`` if the gate passes right now.

    Returns:
        (lot_dict, None) on success.
        (None, gate_result) when blocked.
    """
    result = evaluate(lot_id)
    lot = db.session.get(Lot, lot_id)
    if lot.status == "conformed":
        return lot.to_dict(), None
    if lot.status not in _CONFORMABLE_STATUSES:
        raise StateTransitionError(resource="lot", from_state=lot.status, to_state="conformed")
    if not result["can_conform"]:
        logger.debug("Lot %s conform blocked: %s", lot_id, result["blocking_reasons"])
        return None, result

    lot.status = "conformed"
    lot.conformed_at = datetime.now(timezone.utc)
    lot.conformed_by = actor
    db.session.commit()
    logger.info("Lot %s conformed by %s", lot.id, actor)
    return lot.to_dict(), None
