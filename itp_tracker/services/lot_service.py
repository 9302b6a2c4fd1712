"""
Project, lot and test-result service.

These are the collaborators the checklist core reads from: lots own the ITP
instance, test results feed the conformance gate.  Only what those flows need
is implemented here.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from itp_tracker.core.exceptions import ConflictError, NotFoundError, ValidationError
from itp_tracker.models import db
from itp_tracker.models.project import Lot, Project
from itp_tracker.models.test_result import TEST_PASS_FAIL, TEST_RESULT_STATUSES, TestResult
from itp_tracker.services.itp_service import get_lot

logger = logging.getLogger(__name__)


# ── Projects ─────────────────────────────────────────────────────────────────


def create_project(data: dict) -> Project:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"field": "name"})
    project = Project(name=name, code=(data.get("code") or "").strip() or None)
    db.session.add(project)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(resource="Project", field="code", value=data.get("code")) from exc
    logger.info("Project created id=%s code=%s", project.id, project.code)
    return project


def list_projects() -> list[Project]:
    return Project.query.order_by(Project.name).all()


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


# ── Lots ─────────────────────────────────────────────────────────────────────


def create_lot(project_id: int, data: dict) -> Lot:
    get_project(project_id)
    lot_number = (data.get("lot_number") or "").strip()
    if not lot_number:
        raise ValidationError("lot_number is required", details={"field": "lot_number"})
    lot = Lot(
        project_id=project_id,
        lot_number=lot_number,
        description=data.get("description", ""),
        activity_type=data.get("activity_type"),
    )
    db.session.add(lot)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(resource="Lot", field="lot_number", value=lot_number) from exc
    logger.info("Lot created id=%s number=%s project=%s", lot.id, lot.lot_number, project_id)
    return lot


def list_lots(project_id: int, status: str | None = None) -> list[Lot]:
    q = Lot.query.filter_by(project_id=project_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Lot.lot_number).all()


# ── Test results ─────────────────────────────────────────────────────────────


def record_test_result(lot_id: int, data: dict) -> TestResult:
    get_lot(lot_id)
    test_type = (data.get("test_type") or "").strip()
    pass_fail = data.get("pass_fail") or "pending"
    status = data.get("status") or "entered"
    if not test_type:
        raise ValidationError("test_type is required", details={"field": "test_type"})
    if pass_fail not in TEST_PASS_FAIL:
        raise ValidationError(f"Invalid pass_fail: {pass_fail!r}", details={"allowed": sorted(TEST_PASS_FAIL)})
    if status not in TEST_RESULT_STATUSES - {"verified"}:
        raise ValidationError(
            "Test results are recorded as requested or entered; use verify",
            details={"field": "status"},
        )
    result = TestResult(lot_id=lot_id, test_type=test_type, pass_fail=pass_fail, status=status)
    db.session.add(result)
    db.session.commit()
    logger.info("Test result %s recorded on lot %s (%s)", result.id, lot_id, pass_fail)
    return result


def verify_test_result(test_result_id: int, actor: str) -> TestResult:
    result = db.session.get(TestResult, test_result_id)
    if result is None:
        raise NotFoundError(resource="TestResult", resource_id=test_result_id)
    if result.pass_fail == "pending":
        raise ValidationError("A test result needs a pass/fail outcome before verification")
    if result.status != "verified":
        result.status = "verified"
        result.verified_at = datetime.now(timezone.utc)
        result.verified_by = actor
        db.session.commit()
        logger.info("Test result %s verified by %s", result.id, actor)
    return result


def list_test_results(lot_id: int) -> list[TestResult]:
    get_lot(lot_id)
    return TestResult.query.filter_by(lot_id=lot_id).order_by(TestResult.id).all()
