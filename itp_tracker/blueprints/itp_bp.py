"""ITP blueprint — templates, assignment and the checklist completion API.

Endpoint groups:
  Templates        POST/GET /api/v1/projects/<project_id>/itp/templates
                   GET      /api/v1/itp/templates/<template_id>
  Assignment       POST     /api/v1/itp/instances
  Instance view    GET      /api/v1/lots/<lot_id>/itp[?subcontractor_view=true]
  Completion       POST     /api/v1/itp/instances/<iid>/items/<item_id>/toggle
                   PUT      /api/v1/itp/instances/<iid>/items/<item_id>/notes
                   POST     /api/v1/itp/instances/<iid>/items/<item_id>/not-applicable
                   POST     /api/v1/itp/instances/<iid>/items/<item_id>/fail
  Evidence         POST     /api/v1/itp/instances/<iid>/items/<item_id>/attachments
                   GET      /api/v1/itp/completions/<cid>/attachments
  Hold points      POST     /api/v1/itp/completions/<cid>/verify

Refusals (EVIDENCE_MISSING, WITNESS_DATA_REQUIRED, REASON_REQUIRED,
DESCRIPTION_REQUIRED) come back as 422 with the refusal code; the client
collects the missing input and re-submits.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from itp_tracker.middleware.permission_required import (
    HOLD_POINT_VERIFIER_ROLES,
    current_user_label,
    require_role,
)
from itp_tracker.services import completion_service, itp_service, ncr_service, template_service
from itp_tracker.utils.errors import E, api_error, refusal_response
from itp_tracker.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

itp_bp = Blueprint("itp", __name__, url_prefix="/api/v1")

_ITEM = "/itp/instances/<int:instance_id>/items/<int:item_id>"


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _completion_result(result: tuple):
    completion, refusal = result
    if refusal:
        return refusal_response(refusal)
    return jsonify({"completion": completion}), 200


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


@itp_bp.route("/projects/<int:project_id>/itp/templates", methods=["POST"])
def create_template(project_id):
    template = template_service.create_template(project_id, _body())
    return jsonify({"template": template.to_dict()}), 201


@itp_bp.route("/projects/<int:project_id>/itp/templates", methods=["GET"])
def list_templates(project_id):
    templates = template_service.list_templates(project_id, request.args.get("activity_type"))
    return jsonify({"templates": [t.to_dict() for t in templates]}), 200


@itp_bp.route("/itp/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify({"template": template_service.get_template(template_id).to_dict()}), 200


# ═════════════════════════════════════════════════════════════════════════
# Assignment & instance view
# ═════════════════════════════════════════════════════════════════════════


@itp_bp.route("/itp/instances", methods=["POST"])
def assign_template():
    data = _body()
    lot_id, template_id = data.get("lot_id"), data.get("template_id")
    if not lot_id or not template_id:
        return api_error(E.VALIDATION_REQUIRED, "lot_id and template_id are required")
    instance = itp_service.assign_template(int(lot_id), int(template_id), current_user_label())
    return jsonify({"instance": instance.to_dict()}), 201


@itp_bp.route("/lots/<int:lot_id>/itp", methods=["GET"])
def get_lot_itp(lot_id):
    instance = itp_service.get_instance_for_lot(lot_id)
    subcontractor_view = parse_bool(request.args.get("subcontractor_view"))
    return jsonify({"instance": instance.to_dict(subcontractor_view=subcontractor_view)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Completion state machine
# ═════════════════════════════════════════════════════════════════════════


@itp_bp.route(f"{_ITEM}/toggle", methods=["POST"])
def toggle_item(instance_id, item_id):
    return _completion_result(
        completion_service.toggle_completion(instance_id, item_id, _body(), current_user_label())
    )


@itp_bp.route(f"{_ITEM}/notes", methods=["PUT"])
def update_notes(instance_id, item_id):
    return _completion_result(
        completion_service.update_notes(instance_id, item_id, _body().get("notes"), current_user_label())
    )


@itp_bp.route(f"{_ITEM}/not-applicable", methods=["POST"])
def mark_not_applicable(instance_id, item_id):
    data = _body()
    reason = data.get("reason") or data.get("notes")
    return _completion_result(
        completion_service.mark_not_applicable(instance_id, item_id, reason, current_user_label())
    )


@itp_bp.route(f"{_ITEM}/fail", methods=["POST"])
def mark_failed(instance_id, item_id):
    completion, refusal = completion_service.mark_failed(
        instance_id, item_id, _body(), current_user_label(),
    )
    if refusal:
        return refusal_response(refusal)
    linked = completion.get("linked_ncr")
    ncr = ncr_service.get_ncr(linked["id"]).to_dict() if linked else None
    return jsonify({"completion": completion, "ncr": ncr}), 200


# ═════════════════════════════════════════════════════════════════════════
# Evidence & hold points
# ═════════════════════════════════════════════════════════════════════════


@itp_bp.route(f"{_ITEM}/attachments", methods=["POST"])
def add_attachment(instance_id, item_id):
    attachment = completion_service.add_attachment(instance_id, item_id, _body(), current_user_label())
    return jsonify({"attachment": attachment}), 201


@itp_bp.route("/itp/completions/<int:completion_id>/attachments", methods=["GET"])
def list_attachments(completion_id):
    return jsonify({"attachments": completion_service.list_attachments(completion_id)}), 200


@itp_bp.route("/itp/completions/<int:completion_id>/verify", methods=["POST"])
@require_role(*HOLD_POINT_VERIFIER_ROLES)
def verify_completion(completion_id):
    return _completion_result(completion_service.verify_completion(completion_id, current_user_label()))
