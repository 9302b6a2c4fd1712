"""
ITP Tracker — Project & Lot models.

Models:
    - Project:  construction project; owns lots, ITP templates and NCR numbering
    - Lot:      atomic unit of work / quality tracking inside a project

Lifecycle (Lot.status):
    not_started → in_progress → awaiting_test → completed → conformed → claimed
    any open state ──▶ ncr_raised ──▶ in_progress   (NCR raised / last NCR closed)
"""

from datetime import datetime, timezone

from itp_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

LOT_STATUSES = {
    "not_started", "in_progress", "awaiting_test", "completed",
    "ncr_raised", "conformed", "claimed",
}

# Lots in these states are never moved by ITP auto-progression.
LOT_LOCKED_STATUSES = {"conformed", "claimed", "ncr_raised"}


def _utcnow():
    return datetime.now(timezone.utc)


class Project(db.Model):
    """Construction project."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(30), nullable=True, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    lots = db.relationship("Lot", backref="project", lazy="dynamic", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


class Lot(db.Model):
    """
    Lot — the unit an ITP is inspected against.

    At most one ITPInstance per lot (unique FK on itp_instances.lot_id).
    """

    __tablename__ = "lots"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    lot_number = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text, default="")
    activity_type = db.Column(db.String(100), nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="not_started",
        comment="not_started | in_progress | awaiting_test | completed | ncr_raised | conformed | claimed",
    )
    conformed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    conformed_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    itp_instance = db.relationship("ITPInstance", backref="lot", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint("project_id", "lot_number", name="uq_lot_project_number"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "lot_number": self.lot_number,
            "description": self.description,
            "activity_type": self.activity_type,
            "status": self.status,
            "conformed_at": self.conformed_at.isoformat() if self.conformed_at else None,
            "conformed_by": self.conformed_by,
            "has_itp": self.itp_instance is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Lot {self.id}: {self.lot_number} [{self.status}]>"
