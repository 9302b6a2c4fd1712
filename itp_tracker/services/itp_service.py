"""
ITP instance service — assignment of templates to lots and instance lookup.

An ITPInstance is created exactly once per lot.  The template is copied into
``template_snapshot`` at that moment; completions and every rule evaluated
against the instance read the snapshot.
"""

import logging

from sqlalchemy.exc import IntegrityError

from itp_tracker.core.exceptions import ConflictError, NotFoundError, ValidationError
from itp_tracker.models import db
from itp_tracker.models.itp import ChecklistTemplate, ITPInstance
from itp_tracker.models.project import Lot

logger = logging.getLogger(__name__)


def get_lot(lot_id: int) -> Lot:
    lot = db.session.get(Lot, lot_id)
    if lot is None:
        raise NotFoundError(resource="Lot", resource_id=lot_id)
    return lot


def get_instance(instance_id: int) -> ITPInstance:
    instance = db.session.get(ITPInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="ITPInstance", resource_id=instance_id)
    return instance


def find_instance_for_lot(lot_id: int) -> ITPInstance | None:
    return ITPInstance.query.filter_by(lot_id=lot_id).first()


def get_instance_for_lot(lot_id: int) -> ITPInstance:
    """Instance assigned to *lot_id*; NotFoundError when the lot has none."""
    get_lot(lot_id)
    instance = find_instance_for_lot(lot_id)
    if instance is None:
        raise NotFoundError(resource="ITPInstance for lot", resource_id=lot_id)
    return instance


def assign_template(lot_id: int, template_id: int, assigned_by: str) -> ITPInstance:
    """Bind *template_id* to *lot_id*.

    Raises:
        NotFoundError: lot or template missing.
        ValidationError: template belongs to another project.
        ConflictError: the lot already has an ITP instance.
    """
    lot = get_lot(lot_id)
    template = db.session.get(ChecklistTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="ChecklistTemplate", resource_id=template_id)
    if template.project_id != lot.project_id:
        raise ValidationError(
            "Template belongs to a different project",
            details={"template_project_id": template.project_id, "lot_project_id": lot.project_id},
        )
    if find_instance_for_lot(lot_id) is not None:
        raise ConflictError(resource="ITPInstance", field="lot_id", value=str(lot_id))

    instance = ITPInstance(
        lot_id=lot.id,
        template_id=template.id,
        template_snapshot=template.snapshot(),
        assigned_by=assigned_by,
    )
    db.session.add(instance)
    try:
        db.session.commit()
    except IntegrityError as exc:
        # Concurrent assignment won the unique lot_id race
        db.session.rollback()
        logger.warning("ITP assignment race on lot %s: %s", lot_id, exc.orig)
        raise ConflictError(resource="ITPInstance", field="lot_id", value=str(lot_id)) from exc

    logger.info("ITP template %s assigned to lot %s (instance %s)", template.id, lot.id, instance.id)
    return instance
