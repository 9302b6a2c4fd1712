"""
Checklist completion service — the server side of the completion state machine.

Operations (one completion per ITP instance + checklist item, created lazily):
    - toggle_completion:    pending ⇄ completed (evidence + witness guards)
    - update_notes:         free text, any state, no state change
    - mark_not_applicable:  pending → not_applicable (reason required)
    - mark_failed:          pending|completed → failed, auto-raises one NCR
    - verify_completion:    hold points only, after completion
    - add_attachment:       evidence reference on the item's completion

Return conventions:
    Refusals (missing evidence / witness data / reason / description) are
    expected control flow: ``(None, refusal_dict)`` — see checklist_rules.
    Success: ``(completion_dict, None)``.
    Faults raise: NotFoundError, ValidationError, StateTransitionError,
    NcrCreationError.

Side effects run after the completion is committed and never fail the write:
lot auto-progression and the witness-point-approaching notice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from itp_tracker.core import checklist_rules as rules
from itp_tracker.core.exceptions import (
    NcrCreationError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from itp_tracker.models import db
from itp_tracker.models.itp import CompletionAttachment, ITPCompletion, ITPInstance
from itp_tracker.services import ncr_service
from itp_tracker.services.lot_progression import update_lot_status_from_itp
from itp_tracker.services.notification import NotificationService
from itp_tracker.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _load(instance_id: int, checklist_item_id: int) -> tuple[ITPInstance, dict]:
    instance = db.session.get(ITPInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="ITPInstance", resource_id=instance_id)
    item = instance.item(checklist_item_id)
    if item is None:
        raise NotFoundError(resource="ChecklistItem", resource_id=checklist_item_id)
    return instance, item


def _get_or_create(instance: ITPInstance, checklist_item_id: int) -> ITPCompletion:
    completion = instance.completion_for(checklist_item_id)
    if completion is None:
        completion = ITPCompletion(
            itp_instance_id=instance.id,
            checklist_item_id=checklist_item_id,
            status=rules.PENDING,
        )
        db.session.add(completion)
    return completion


def _status_of(completion: ITPCompletion | None) -> str:
    return completion.status if completion is not None else rules.PENDING


def _check_edge(item: dict, old: str, new: str) -> None:
    if not rules.validate_completion_transition(old, new):
        raise StateTransitionError(
            resource="checklist item",
            from_state=old,
            to_state=new,
            reason=f"item {item['id']}",
        )


def _recorded_at(data: dict) -> datetime:
    """Time the inspection happened: offline replays carry the original time."""
    try:
        recorded = parse_datetime(data.get("recorded_at"))
    except ValueError as exc:
        raise ValidationError("recorded_at must be an ISO-8601 timestamp",
                              details={"field": "recorded_at"}) from exc
    return recorded or datetime.now(timezone.utc)


def _text(value, field: str) -> str | None:
    """Free-text input: None or a string, anything else is a 422."""
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={"field": field})
    return value


def _witness_payload(data: dict) -> dict | None:
    if data.get("witness_present") is None:
        return None
    return {
        "witness_present": bool(data["witness_present"]),
        "witness_name": _text(data.get("witness_name"), "witness_name"),
        "witness_company": _text(data.get("witness_company"), "witness_company"),
    }


def _refused(refusal: dict, instance: ITPInstance) -> tuple[None, dict]:
    logger.debug("Completion refused on instance %s: %s %s",
                 instance.id, refusal["code"], refusal["details"])
    return None, refusal


def _after_write(instance: ITPInstance, item: dict, new_status: str) -> None:
    update_lot_status_from_itp(instance)
    if new_status != rules.COMPLETED:
        return
    try:
        NotificationService.notify_witness_point_approaching(instance.lot, instance, item)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Witness point notice failed for instance %s item %s",
                         instance.id, item["id"])


# ── Public API ─────────────────────────────────────────────────────────────────


def toggle_completion(instance_id: int, checklist_item_id: int, data: dict,
                      actor: str) -> tuple[dict, None] | tuple[None, dict]:
    """Move an item to ``completed`` or back to ``pending``.

    Args:
        data: ``is_completed`` (target; toggles the current state when absent),
              ``notes``, ``evidence_override``, ``witness_present``,
              ``witness_name``, ``witness_company``, ``recorded_at``.
        actor: Label stored in completed_by.

    Returns:
        (completion_dict, None) or (None, refusal) for EVIDENCE_MISSING /
        WITNESS_DATA_REQUIRED.
    """
    instance, item = _load(instance_id, checklist_item_id)
    completion = instance.completion_for(checklist_item_id)
    current = _status_of(completion)

    wants_complete = data.get("is_completed")
    if wants_complete is None:
        wants_complete = current != rules.COMPLETED
    target = rules.COMPLETED if wants_complete else rules.PENDING
    notes = _text(data.get("notes"), "notes")

    if target == current:
        # Re-submitting the current state only refreshes the notes
        completion = _get_or_create(instance, checklist_item_id)
        if notes is not None:
            completion.notes = notes
        db.session.commit()
        return completion.to_dict(), None

    _check_edge(item, current, target)

    if target == rules.COMPLETED:
        attachment_count = len(completion.attachments) if completion is not None else 0
        witness = _witness_payload(data)
        refusal = rules.check_completion_refusal(
            item,
            attachment_count,
            evidence_override=bool(data.get("evidence_override")),
            witness=witness,
        )
        if refusal:
            return _refused(refusal, instance)

        completion = _get_or_create(instance, checklist_item_id)
        completion.status = rules.COMPLETED
        completion.completed_at = _recorded_at(data)
        completion.completed_by = actor
        for field, value in rules.witness_fields(item, witness).items():
            setattr(completion, field, value)
    else:
        completion.status = rules.PENDING
        completion.completed_at = None
        completion.completed_by = None
        completion.witness_present = None
        completion.witness_name = None
        completion.witness_company = None
        completion.is_verified = False
        completion.verified_at = None
        completion.verified_by = None

    if notes is not None:
        completion.notes = notes
    db.session.commit()
    logger.info("Checklist item %s on instance %s: %s → %s by %s",
                checklist_item_id, instance.id, current, target, actor)

    _after_write(instance, item, target)
    return completion.to_dict(), None


def update_notes(instance_id: int, checklist_item_id: int, notes: str | None,
                 actor: str) -> tuple[dict, None]:
    """Replace the notes of an item without touching its state."""
    instance, _item = _load(instance_id, checklist_item_id)
    notes = _text(notes, "notes")
    completion = _get_or_create(instance, checklist_item_id)
    completion.notes = notes
    db.session.commit()
    logger.debug("Notes updated on instance %s item %s by %s", instance.id, checklist_item_id, actor)
    return completion.to_dict(), None


def mark_not_applicable(instance_id: int, checklist_item_id: int, reason: str | None,
                        actor: str) -> tuple[dict, None] | tuple[None, dict]:
    """pending → not_applicable.  The reason is stored as the notes."""
    instance, item = _load(instance_id, checklist_item_id)
    reason = _text(reason, "reason")
    completion = instance.completion_for(checklist_item_id)
    current = _status_of(completion)

    if current == rules.NOT_APPLICABLE:
        if reason and reason.strip():
            completion.notes = reason.strip()
            db.session.commit()
        return completion.to_dict(), None

    _check_edge(item, current, rules.NOT_APPLICABLE)
    refusal = rules.check_not_applicable_refusal(item, reason)
    if refusal:
        return _refused(refusal, instance)

    completion = _get_or_create(instance, checklist_item_id)
    completion.status = rules.NOT_APPLICABLE
    completion.notes = reason.strip()
    db.session.commit()
    logger.info("Checklist item %s on instance %s marked N/A by %s",
                checklist_item_id, instance.id, actor)

    _after_write(instance, item, rules.NOT_APPLICABLE)
    return completion.to_dict(), None


def mark_failed(instance_id: int, checklist_item_id: int, data: dict,
                actor: str) -> tuple[dict, None] | tuple[None, dict]:
    """→ failed, raising exactly one linked NCR.

    The completion change and the NCR insert commit together.  If the NCR
    cannot be created nothing is written and NcrCreationError is raised.

    Args:
        data: ``description`` (or ``notes``), ``category``, ``severity``.
    """
    instance, item = _load(instance_id, checklist_item_id)
    description = _text(data.get("description"), "description") or _text(data.get("notes"), "notes")
    category = (_text(data.get("category"), "category") or "").strip()
    completion = instance.completion_for(checklist_item_id)
    current = _status_of(completion)

    if current == rules.FAILED:
        # Re-submission: the NCR was raised by the first call
        return completion.to_dict(), None

    _check_edge(item, current, rules.FAILED)

    refusal = rules.check_failure_refusal(item, description)
    if refusal:
        return _refused(refusal, instance)

    severity = data.get("severity")
    if not category:
        raise ValidationError("category is required to mark an item as failed",
                              details={"field": "category"})
    if severity not in rules.FAILURE_SEVERITIES:
        raise ValidationError("severity must be minor or major",
                              details={"field": "severity", "allowed": list(rules.FAILURE_SEVERITIES)})

    try:
        completion = _get_or_create(instance, checklist_item_id)
        completion.status = rules.FAILED
        completion.notes = description.strip()
        completion.completed_at = None
        completion.completed_by = None
        completion.is_verified = False
        completion.verified_at = None
        completion.verified_by = None
        db.session.flush()

        ncr = ncr_service.raise_ncr_for_failure(
            instance.lot, completion, item,
            description=description,
            category=category,
            severity=severity,
            raised_by=actor,
        )
        completion.linked_ncr_id = ncr.id
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception("NCR auto-raise failed for instance %s item %s",
                         instance_id, checklist_item_id)
        raise NcrCreationError(checklist_item_id, str(exc)) from exc

    logger.info("Checklist item %s on instance %s failed by %s; NCR %s raised",
                checklist_item_id, instance.id, actor, ncr.ncr_number)
    _after_write(instance, item, rules.FAILED)
    return completion.to_dict(), None


def verify_completion(completion_id: int, actor: str) -> tuple[dict, None]:
    """Release a hold point.  Only completed hold points can be verified."""
    completion = db.session.get(ITPCompletion, completion_id)
    if completion is None:
        raise NotFoundError(resource="ITPCompletion", resource_id=completion_id)
    item = completion.instance.item(completion.checklist_item_id) or {}
    if item.get("point_type") != "hold_point":
        raise ValidationError("Only hold points can be verified",
                              details={"checklist_item_id": completion.checklist_item_id})
    if completion.status != rules.COMPLETED:
        raise StateTransitionError(
            resource="hold point", from_state=completion.status, to_state="verified",
            reason="complete the item before verifying it",
        )
    if completion.is_verified:
        return completion.to_dict(), None

    completion.is_verified = True
    completion.verified_at = datetime.now(timezone.utc)
    completion.verified_by = actor
    db.session.commit()
    logger.info("Hold point %s verified by %s", completion.id, actor)
    return completion.to_dict(), None


def add_attachment(instance_id: int, checklist_item_id: int, data: dict,
                   actor: str) -> dict:
    """Attach an evidence reference to the item's completion (created if absent)."""
    instance, item = _load(instance_id, checklist_item_id)
    filename = (_text(data.get("filename"), "filename") or "").strip()
    file_url = (_text(data.get("file_url"), "file_url") or "").strip()
    caption = _text(data.get("caption"), "caption")
    if not filename or not file_url:
        raise ValidationError("filename and file_url are required")

    gps = {}
    for field, limit in (("gps_latitude", 90), ("gps_longitude", 180)):
        value = data.get(field)
        if value is None:
            gps[field] = None
            continue
        try:
            value = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{field} must be a number", details={"field": field}) from exc
        if not -limit <= value <= limit:
            raise ValidationError(f"{field} out of range", details={"field": field})
        gps[field] = value

    completion = _get_or_create(instance, checklist_item_id)
    attachment = CompletionAttachment(
        filename=filename,
        file_url=file_url,
        caption=caption or f"ITP Evidence: {item['description']}",
        uploaded_by=actor,
        **gps,
    )
    completion.attachments.append(attachment)
    db.session.commit()
    logger.info("Attachment %s added to instance %s item %s", attachment.id, instance.id, checklist_item_id)
    return attachment.to_dict()


def list_attachments(completion_id: int) -> list[dict]:
    completion = db.session.get(ITPCompletion, completion_id)
    if completion is None:
        raise NotFoundError(resource="ITPCompletion", resource_id=completion_id)
    return [a.to_dict() for a in completion.attachments]
