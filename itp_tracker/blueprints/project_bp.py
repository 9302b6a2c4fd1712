"""Project & lot blueprint — projects, lots, conformance and test results.

Endpoint groups:
  Projects       POST/GET /api/v1/projects
                 GET      /api/v1/projects/<project_id>
  Lots           POST/GET /api/v1/projects/<project_id>/lots
                 GET      /api/v1/lots/<lot_id>
  Conformance    GET      /api/v1/lots/<lot_id>/conformance
                 POST     /api/v1/lots/<lot_id>/conform
  Test results   POST/GET /api/v1/lots/<lot_id>/test-results
                 POST     /api/v1/test-results/<test_result_id>/verify
  Notifications  GET      /api/v1/projects/<project_id>/notifications?recipient=<role>

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from itp_tracker.middleware.permission_required import (
    current_user_label,
    current_user_role,
    require_role,
)
from itp_tracker.services import conformance_service, lot_service
from itp_tracker.services.itp_service import get_lot
from itp_tracker.services.notification import NotificationService
from itp_tracker.utils.errors import E, api_error
from itp_tracker.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

project_bp = Blueprint("project", __name__, url_prefix="/api/v1")


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ═════════════════════════════════════════════════════════════════════════
# Projects & lots
# ═════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects", methods=["POST"])
def create_project():
    project = lot_service.create_project(_body())
    return jsonify({"project": project.to_dict()}), 201


@project_bp.route("/projects", methods=["GET"])
def list_projects():
    return jsonify({"projects": [p.to_dict() for p in lot_service.list_projects()]}), 200


@project_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify({"project": lot_service.get_project(project_id).to_dict()}), 200


@project_bp.route("/projects/<int:project_id>/lots", methods=["POST"])
def create_lot(project_id):
    lot = lot_service.create_lot(project_id, _body())
    return jsonify({"lot": lot.to_dict()}), 201


@project_bp.route("/projects/<int:project_id>/lots", methods=["GET"])
def list_lots(project_id):
    lots = lot_service.list_lots(project_id, request.args.get("status"))
    return jsonify({"lots": [lot.to_dict() for lot in lots]}), 200


@project_bp.route("/lots/<int:lot_id>", methods=["GET"])
def get_lot_detail(lot_id):
    return jsonify({"lot": get_lot(lot_id).to_dict()}), 200


# ═════════════════════════════════════════════════════════════════════════
# Conformance
# ═════════════════════════════════════════════════════════════════════════


@project_bp.route("/lots/<int:lot_id>/conformance", methods=["GET"])
def lot_conformance(lot_id):
    return jsonify(conformance_service.evaluate(lot_id)), 200


@project_bp.route("/lots/<int:lot_id>/conform", methods=["POST"])
@require_role("project_manager", "quality_manager", "admin")
def conform_lot(lot_id):
    lot, blocked = conformance_service.conform_lot(lot_id, current_user_label())
    if blocked:
        return api_error(
            E.CONFORMANCE_BLOCKED,
            "Lot cannot be conformed",
            details={
                "blocking_reasons": blocked["blocking_reasons"],
                "prerequisites": blocked["prerequisites"],
            },
        )
    return jsonify({"lot": lot}), 200


# ═════════════════════════════════════════════════════════════════════════
# Test results
# ═════════════════════════════════════════════════════════════════════════


@project_bp.route("/lots/<int:lot_id>/test-results", methods=["POST"])
def record_test_result(lot_id):
    result = lot_service.record_test_result(lot_id, _body())
    return jsonify({"test_result": result.to_dict()}), 201


@project_bp.route("/lots/<int:lot_id>/test-results", methods=["GET"])
def list_test_results(lot_id):
    results = lot_service.list_test_results(lot_id)
    return jsonify({"test_results": [r.to_dict() for r in results]}), 200


@project_bp.route("/test-results/<int:test_result_id>/verify", methods=["POST"])
@require_role("quality_manager", "project_manager", "admin")
def verify_test_result(test_result_id):
    result = lot_service.verify_test_result(test_result_id, current_user_label())
    return jsonify({"test_result": result.to_dict()}), 200


# ═════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════


@project_bp.route("/projects/<int:project_id>/notifications", methods=["GET"])
def list_notifications(project_id):
    recipient = request.args.get("recipient") or current_user_role() or "all"
    items, total = NotificationService.list_for_recipient(
        recipient=recipient,
        project_id=project_id,
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@project_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify({"notification": notif.to_dict()}), 200
