"""
ITP Tracker — Inspection & Test Plan models.

Models:
    - ChecklistTemplate:     reusable ordered checklist for an activity type
    - ChecklistItem:         one line of a template (point type, evidence requirement)
    - ITPInstance:           a template bound to one lot, with a frozen snapshot
    - ITPCompletion:         outcome of one checklist item for one instance
    - CompletionAttachment:  evidence reference (photo/document) on a completion

Architecture:
    Project ──1:N──▶ ChecklistTemplate ──1:N──▶ ChecklistItem
    Lot ──1:1──▶ ITPInstance ──1:N──▶ ITPCompletion ──1:N──▶ CompletionAttachment
    ITPCompletion ──N:1──▶ NCR   (linked_ncr, only for auto-raised failures)

The instance keeps ``template_snapshot`` (JSON) taken at assignment time.
All rules read items from the snapshot, so later template edits never alter
an instance that is already assigned.
"""

from datetime import datetime, timezone

from itp_tracker.core.checklist_rules import flags_for_state
from itp_tracker.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class ChecklistTemplate(db.Model):
    """Ordered checklist definition."""

    __tablename__ = "itp_templates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    activity_type = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "ChecklistItem", backref="template", cascade="all, delete-orphan",
        order_by="ChecklistItem.sequence_number",
    )

    def snapshot(self) -> dict:
        """Frozen copy stored on each ITPInstance at assignment time."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "activity_type": self.activity_type,
            "checklist_items": [item.to_dict() for item in self.items],
        }

    def to_dict(self):
        d = self.snapshot()
        d["project_id"] = self.project_id
        d["created_at"] = _iso(self.created_at)
        return d


class ChecklistItem(db.Model):
    """One checklist line. ``sequence_number`` defines display/enforcement order."""

    __tablename__ = "itp_checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("itp_templates.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sequence_number = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100), nullable=True)
    responsible_party = db.Column(
        db.String(30), nullable=False, default="contractor",
        comment="contractor | subcontractor | superintendent | general",
    )
    point_type = db.Column(
        db.String(20), nullable=False, default="standard",
        comment="standard | witness | hold_point",
    )
    evidence_required = db.Column(
        db.String(20), nullable=False, default="none",
        comment="none | photo | test | document",
    )
    test_type = db.Column(db.String(100), nullable=True)
    acceptance_criteria = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "order": self.sequence_number,
            "description": self.description,
            "category": self.category or self.responsible_party or "general",
            "responsible_party": self.responsible_party or "contractor",
            "point_type": self.point_type or "standard",
            "is_hold_point": self.point_type == "hold_point",
            "evidence_required": self.evidence_required or "none",
            "test_type": self.test_type,
            "acceptance_criteria": self.acceptance_criteria,
        }


class ITPInstance(db.Model):
    """A template assigned to a lot."""

    __tablename__ = "itp_instances"

    id = db.Column(db.Integer, primary_key=True)
    lot_id = db.Column(
        db.Integer, db.ForeignKey("lots.id", ondelete="CASCADE"),
        nullable=False, unique=True, index=True,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("itp_templates.id", ondelete="SET NULL"), nullable=True,
    )
    template_snapshot = db.Column(db.JSON, nullable=False)
    assigned_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    completions = db.relationship(
        "ITPCompletion", backref="instance", lazy="dynamic", cascade="all, delete-orphan",
    )

    @property
    def checklist_items(self) -> list[dict]:
        items = (self.template_snapshot or {}).get("checklist_items") or []
        return sorted(items, key=lambda i: i.get("order") or 0)

    def item(self, checklist_item_id: int) -> dict | None:
        for item in self.checklist_items:
            if item["id"] == checklist_item_id:
                return item
        return None

    def completion_for(self, checklist_item_id: int):
        return self.completions.filter_by(checklist_item_id=checklist_item_id).first()

    def to_dict(self, subcontractor_view=False):
        items = self.checklist_items
        if subcontractor_view:
            items = [i for i in items if i.get("responsible_party") == "subcontractor"]
        visible = {i["id"] for i in items}
        completions = [
            c.to_dict() for c in self.completions.order_by(ITPCompletion.id)
            if c.checklist_item_id in visible
        ]
        snapshot = self.template_snapshot or {}
        return {
            "id": self.id,
            "lot_id": self.lot_id,
            "template_id": self.template_id,
            "template": {
                "id": snapshot.get("id"),
                "name": snapshot.get("name"),
                "description": snapshot.get("description"),
                "activity_type": snapshot.get("activity_type"),
                "checklist_items": items,
            },
            "completions": completions,
            "assigned_by": self.assigned_by,
            "created_at": _iso(self.created_at),
        }


class ITPCompletion(db.Model):
    """
    Completion record — one per (itp_instance_id, checklist_item_id).

    ``status`` is the single stored state; the three booleans exposed by
    ``to_dict`` are derived from it, so they can never be true together.
    Created lazily on first mutation, never deleted.
    """

    __tablename__ = "itp_completions"

    id = db.Column(db.Integer, primary_key=True)
    itp_instance_id = db.Column(
        db.Integer, db.ForeignKey("itp_instances.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    checklist_item_id = db.Column(
        db.Integer, nullable=False,
        comment="Item id from the instance template snapshot",
    )
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | completed | not_applicable | failed",
    )
    notes = db.Column(db.Text, nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(150), nullable=True)

    # Hold points only — independent of status
    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.String(150), nullable=True)

    # Witness points only
    witness_present = db.Column(db.Boolean, nullable=True)
    witness_name = db.Column(db.String(200), nullable=True)
    witness_company = db.Column(db.String(200), nullable=True)

    linked_ncr_id = db.Column(
        db.Integer, db.ForeignKey("ncrs.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    attachments = db.relationship(
        "CompletionAttachment", backref="completion", cascade="all, delete-orphan",
        order_by="CompletionAttachment.id",
    )
    linked_ncr = db.relationship("NCR", foreign_keys=[linked_ncr_id])

    __table_args__ = (
        db.UniqueConstraint("itp_instance_id", "checklist_item_id", name="uq_completion_instance_item"),
    )

    def to_dict(self):
        d = {
            "id": self.id,
            "itp_instance_id": self.itp_instance_id,
            "checklist_item_id": self.checklist_item_id,
            "status": self.status,
            "notes": self.notes,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "is_verified": bool(self.is_verified),
            "verified_at": _iso(self.verified_at),
            "verified_by": self.verified_by,
            "witness_present": self.witness_present,
            "witness_name": self.witness_name,
            "witness_company": self.witness_company,
            "linked_ncr": (
                {"id": self.linked_ncr.id, "ncr_number": self.linked_ncr.ncr_number}
                if self.linked_ncr is not None else None
            ),
            "attachments": [a.to_dict() for a in self.attachments],
            "updated_at": _iso(self.updated_at),
        }
        d.update(flags_for_state(self.status))
        return d

    def __repr__(self):
        return f"<ITPCompletion {self.id}: item={self.checklist_item_id} [{self.status}]>"


class CompletionAttachment(db.Model):
    """Evidence reference. The blob itself lives in external file storage."""

    __tablename__ = "itp_completion_attachments"

    id = db.Column(db.Integer, primary_key=True)
    completion_id = db.Column(
        db.Integer, db.ForeignKey("itp_completions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    filename = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(1000), nullable=False)
    caption = db.Column(db.Text, nullable=True)
    gps_latitude = db.Column(db.Float, nullable=True)
    gps_longitude = db.Column(db.Float, nullable=True)
    uploaded_by = db.Column(db.String(150), nullable=True)
    uploaded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "completion_id": self.completion_id,
            "filename": self.filename,
            "file_url": self.file_url,
            "caption": self.caption,
            "gps_latitude": self.gps_latitude,
            "gps_longitude": self.gps_longitude,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": _iso(self.uploaded_at),
        }
