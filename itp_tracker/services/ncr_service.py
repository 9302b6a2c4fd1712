"""
NCR service — numbering, auto-raise from failed checklist items, lifecycle.

Business logic for:
    - Number generation:  NCR-0001, NCR-0002 (project-scoped, prefix configurable)
    - Auto-raise:         one NCR per failing checklist item, flushed inside the
                          caller's transaction (the completion service commits)
    - Manual raise:       NCR against a lot without an originating item
    - Transitions:        NCR_TRANSITIONS map; closing the last open NCR of a
                          lot returns the lot to in_progress
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func

from itp_tracker.core.exceptions import NotFoundError, ValidationError
from itp_tracker.models import db
from itp_tracker.models.ncr import (
    NCR,
    NCR_CLOSED_STATUSES,
    NCR_SEVERITIES,
    validate_ncr_transition,
)
from itp_tracker.models.project import Lot

logger = logging.getLogger(__name__)

QM_APPROVER_ROLES = ("quality_manager", "admin")


# ── Code Generation ──────────────────────────────────────────────────────────


def generate_ncr_number(project_id: int) -> str:
    """Next NCR number for the project: NCR-0001, NCR-0002, ..."""
    prefix = current_app.config.get("NCR_NUMBER_PREFIX", "NCR")
    count = (
        db.session.query(func.count(NCR.id)).filter(NCR.project_id == project_id).scalar()
    ) or 0
    return f"{prefix}-{count + 1:04d}"


# ── Queries ──────────────────────────────────────────────────────────────────


def get_ncr(ncr_id: int) -> NCR:
    ncr = db.session.get(NCR, ncr_id)
    if ncr is None:
        raise NotFoundError(resource="NCR", resource_id=ncr_id)
    return ncr


def list_ncrs_for_lot(lot_id: int) -> list[NCR]:
    return NCR.query.filter_by(lot_id=lot_id).order_by(NCR.id).all()


def open_ncrs_for_lot(lot_id: int) -> list[NCR]:
    """NCRs on the lot whose status is neither closed nor closed_concession."""
    return (
        NCR.query.filter(NCR.lot_id == lot_id, NCR.status.notin_(NCR_CLOSED_STATUSES))
        .order_by(NCR.id)
        .all()
    )


# ── Creation ─────────────────────────────────────────────────────────────────


def _build_ncr(lot: Lot, *, description, category, severity, raised_by,
               checklist_item_id=None, completion_id=None) -> NCR:
    if severity not in NCR_SEVERITIES:
        raise ValidationError(
            f"Invalid severity: {severity!r}", details={"allowed": sorted(NCR_SEVERITIES)},
        )
    if not (category or "").strip():
        raise ValidationError("category is required", details={"field": "category"})

    ncr = NCR(
        project_id=lot.project_id,
        lot_id=lot.id,
        ncr_number=generate_ncr_number(lot.project_id),
        description=description.strip(),
        category=category.strip(),
        severity=severity,
        status="open",
        qm_approval_required=severity == "major",
        raised_by=raised_by,
        checklist_item_id=checklist_item_id,
        completion_id=completion_id,
    )
    db.session.add(ncr)
    if lot.status not in ("conformed", "claimed"):
        lot.status = "ncr_raised"
    return ncr


def raise_ncr_for_failure(lot: Lot, completion, item: dict, *, description: str,
                          category: str, severity: str, raised_by: str) -> NCR:
    """Create the NCR for a failed checklist item.

    Flushes but does not commit: the caller commits the completion and the NCR
    together, so a failure here leaves the completion untouched.
    """
    ncr = _build_ncr(
        lot,
        description=description,
        category=category,
        severity=severity,
        raised_by=raised_by,
        checklist_item_id=item["id"],
        completion_id=completion.id,
    )
    db.session.flush()
    logger.info("NCR %s auto-raised for lot %s item %s", ncr.ncr_number, lot.id, item["id"])
    return ncr


def create_ncr(lot_id: int, data: dict, raised_by: str) -> NCR:
    """Raise an NCR against a lot by hand (site observation, audit finding)."""
    lot = db.session.get(Lot, lot_id)
    if lot is None:
        raise NotFoundError(resource="Lot", resource_id=lot_id)
    description = (data.get("description") or "").strip()
    if not description:
        raise ValidationError("description is required", details={"field": "description"})
    ncr = _build_ncr(
        lot,
        description=description,
        category=data.get("category") or "",
        severity=data.get("severity") or "minor",
        raised_by=raised_by,
    )
    db.session.commit()
    logger.info("NCR %s raised on lot %s", ncr.ncr_number, lot.id)
    return ncr


# ── Lifecycle Transitions ────────────────────────────────────────────────────


def transition_ncr(ncr: NCR, new_status: str, *, actor: str,
                   actor_role: str | None = None) -> tuple[bool, str]:
    """
    Attempt status transition on an NCR.
    Returns (success, message).
    """
    old = ncr.status
    if not validate_ncr_transition(old, new_status):
        return False, f"Invalid transition: {old} → {new_status}"

    closing = new_status in NCR_CLOSED_STATUSES
    # Guard: major NCRs close only with QM sign-off (role-less internal calls pass)
    if closing and ncr.qm_approval_required and actor_role is not None \
            and actor_role not in QM_APPROVER_ROLES:
        return False, "Major NCR requires quality manager approval to close"

    ncr.status = new_status
    if closing:
        ncr.closed_at = datetime.now(timezone.utc)
        ncr.closed_by = actor
        db.session.flush()
        _release_lot_if_clear(ncr.lot)

    db.session.commit()
    logger.info("NCR %s transitioned: %s → %s by %s", ncr.ncr_number, old, new_status, actor)
    return True, f"NCR transitioned: {old} → {new_status}"


def _release_lot_if_clear(lot: Lot | None) -> None:
    if lot is None or lot.status != "ncr_raised":
        return
    if open_ncrs_for_lot(lot.id):
        return
    lot.status = "in_progress"
    logger.info("Lot %s back to in_progress: no open NCRs", lot.id)
