"""
ITP template service.

Templates are ordered checklists reused across lots of the same activity
type.  Editing a template never touches lots that already have it assigned;
see ``itp_service.assign_template``.
"""

import logging

from itp_tracker.core import checklist_rules as rules
from itp_tracker.core.exceptions import NotFoundError, ValidationError
from itp_tracker.models import db
from itp_tracker.models.itp import ChecklistItem, ChecklistTemplate
from itp_tracker.models.project import Project

logger = logging.getLogger(__name__)


def _validate_item(index: int, data: dict) -> dict:
    description = (data.get("description") or "").strip()
    if not description:
        raise ValidationError(
            "Checklist item description is required",
            details={"index": index, "field": "description"},
        )
    checks = (
        ("point_type", rules.POINT_TYPES, "standard"),
        ("evidence_required", rules.EVIDENCE_TYPES, "none"),
        ("responsible_party", rules.RESPONSIBLE_PARTIES, "contractor"),
    )
    clean = {"description": description}
    for field, allowed, default in checks:
        value = data.get(field) or default
        if value not in allowed:
            raise ValidationError(
                f"Invalid {field}: {value!r}",
                details={"index": index, "field": field, "allowed": list(allowed)},
            )
        clean[field] = value
    clean["category"] = data.get("category")
    clean["test_type"] = data.get("test_type")
    clean["acceptance_criteria"] = data.get("acceptance_criteria")
    return clean


def create_template(project_id: int, data: dict) -> ChecklistTemplate:
    """Create a template with its items.

    Items are numbered in the order given unless an explicit ``order`` is
    supplied for every item.
    """
    if db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    name = (data.get("name") or "").strip()
    activity_type = (data.get("activity_type") or "").strip()
    if not name or not activity_type:
        raise ValidationError("name and activity_type are required")

    raw_items = data.get("checklist_items") or []
    if not raw_items:
        raise ValidationError("A template needs at least one checklist item")

    explicit_order = all(i.get("order") is not None for i in raw_items)
    template = ChecklistTemplate(
        project_id=project_id,
        name=name,
        description=data.get("description"),
        activity_type=activity_type,
    )
    for index, raw in enumerate(raw_items):
        clean = _validate_item(index, raw)
        template.items.append(ChecklistItem(
            sequence_number=int(raw["order"]) if explicit_order else index + 1,
            **clean,
        ))

    db.session.add(template)
    db.session.commit()
    logger.info("ITP template created id=%s project=%s items=%d",
                template.id, project_id, len(template.items))
    return template


def list_templates(project_id: int, activity_type: str | None = None) -> list[ChecklistTemplate]:
    q = ChecklistTemplate.query.filter_by(project_id=project_id)
    if activity_type:
        q = q.filter_by(activity_type=activity_type)
    return q.order_by(ChecklistTemplate.name).all()


def get_template(template_id: int) -> ChecklistTemplate:
    template = db.session.get(ChecklistTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="ChecklistTemplate", resource_id=template_id)
    return template
