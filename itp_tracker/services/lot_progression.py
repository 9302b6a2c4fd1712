"""
Lot auto-progression driven by ITP completion state.

    not_started → in_progress      first item finished
    in_progress → awaiting_test    every non-test item finished, test items remain
    *           → completed        every item finished

Finished = completed or not_applicable.  Progression only moves forward and
never touches lots that are conformed, claimed or ncr_raised.  It runs after
the triggering write has been committed; a failure here is logged and
swallowed so the checklist write still succeeds.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from itp_tracker.core.checklist_rules import is_finished, is_test_item
from itp_tracker.models import db
from itp_tracker.models.project import LOT_LOCKED_STATUSES

logger = logging.getLogger(__name__)

_PROGRESSION_ORDER = ("not_started", "in_progress", "awaiting_test", "completed")


def target_status(items: list[dict], statuses: dict[int, str]) -> str:
    """Lot status implied by the finished/unfinished split of *items*."""
    finished = {i["id"] for i in items if is_finished(statuses.get(i["id"]))}
    if not finished:
        return "not_started"
    if len(finished) == len(items):
        return "completed"
    non_test = [i for i in items if not is_test_item(i)]
    tests_remaining = any(is_test_item(i) and i["id"] not in finished for i in items)
    if non_test and all(i["id"] in finished for i in non_test) and tests_remaining:
        return "awaiting_test"
    return "in_progress"


def update_lot_status_from_itp(instance) -> str | None:
    """Advance the instance's lot if its checklist state warrants it.

    Returns the new lot status, or None when nothing changed.
    """
    lot = instance.lot
    if lot is None or lot.status in LOT_LOCKED_STATUSES:
        return None
    if lot.status not in _PROGRESSION_ORDER:
        return None

    items = instance.checklist_items
    if not items:
        return None
    statuses = {c.checklist_item_id: c.status for c in instance.completions}
    target = target_status(items, statuses)

    if _PROGRESSION_ORDER.index(target) <= _PROGRESSION_ORDER.index(lot.status):
        return None

    old = lot.status
    try:
        lot.status = target
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Lot auto-progression failed for lot %s (%s → %s)", lot.id, old, target)
        return None
    logger.info("Lot %s auto-progressed: %s → %s", lot.id, old, target)
    return target
