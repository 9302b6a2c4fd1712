"""
ITP Tracker — Non-Conformance Report model.

Models:
    - NCR: quality failure record, raised manually or auto-raised by a failed
           checklist item

Lifecycle:
    open → investigating → rectification → verification → closed
                                                        → closed_concession
    verification ──▶ rectification   (rectification rejected)
"""

from datetime import datetime, timezone

from itp_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NCR_STATUSES = {
    "open", "investigating", "rectification", "verification",
    "closed", "closed_concession",
}

NCR_CLOSED_STATUSES = frozenset({"closed", "closed_concession"})

NCR_SEVERITIES = {"minor", "major"}

NCR_TRANSITIONS = {
    "open":              ["investigating", "rectification", "closed", "closed_concession"],
    "investigating":     ["rectification", "closed", "closed_concession"],
    "rectification":     ["verification"],
    "verification":      ["closed", "closed_concession", "rectification"],
    "closed":            [],
    "closed_concession": [],
}


def validate_ncr_transition(old_status, new_status):
    """Return True if NCR status transition is valid."""
    return new_status in NCR_TRANSITIONS.get(old_status, [])


def is_open_status(status):
    return status not in NCR_CLOSED_STATUSES


def _utcnow():
    return datetime.now(timezone.utc)


class NCR(db.Model):
    """
    Non-conformance report.

    ``ncr_number`` is sequential per project (NCR-0001, NCR-0002, ...).
    Major NCRs require QM approval before closure.
    """

    __tablename__ = "ncrs"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    lot_id = db.Column(
        db.Integer, db.ForeignKey("lots.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    ncr_number = db.Column(db.String(30), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(10), nullable=False, default="minor", comment="minor | major")
    status = db.Column(db.String(30), nullable=False, default="open")
    qm_approval_required = db.Column(db.Boolean, nullable=False, default=False)

    # Origin — set when auto-raised from a failed checklist item
    checklist_item_id = db.Column(db.Integer, nullable=True, comment="Item id from the ITP template snapshot")
    completion_id = db.Column(db.Integer, nullable=True, comment="ITPCompletion that raised this NCR")

    raised_by = db.Column(db.String(150), nullable=True)
    closed_by = db.Column(db.String(150), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    lot = db.relationship("Lot", backref=db.backref("ncrs", lazy="dynamic"))

    __table_args__ = (
        db.UniqueConstraint("project_id", "ncr_number", name="uq_ncr_project_number"),
    )

    @property
    def is_open(self):
        return is_open_status(self.status)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "lot_id": self.lot_id,
            "ncr_number": self.ncr_number,
            "description": self.description,
            "category": self.category,
            "severity": self.severity,
            "status": self.status,
            "is_open": self.is_open,
            "qm_approval_required": self.qm_approval_required,
            "checklist_item_id": self.checklist_item_id,
            "completion_id": self.completion_id,
            "raised_by": self.raised_by,
            "closed_by": self.closed_by,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<NCR {self.ncr_number} [{self.status}]>"
