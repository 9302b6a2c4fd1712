"""NCR blueprint — non-conformance reports on lots.

Endpoint groups:
  Lot NCRs     GET/POST /api/v1/lots/<lot_id>/ncrs[?open_only=true]
  NCR detail   GET      /api/v1/ncrs/<ncr_id>
  Lifecycle    POST     /api/v1/ncrs/<ncr_id>/transition   {"status": "..."}

NCRs raised by a failed checklist item are created by the completion API
(POST .../items/<item_id>/fail), never here.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from itp_tracker.middleware.permission_required import current_user_label, current_user_role
from itp_tracker.services import ncr_service
from itp_tracker.services.itp_service import get_lot
from itp_tracker.utils.errors import E, api_error
from itp_tracker.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

ncr_bp = Blueprint("ncr", __name__, url_prefix="/api/v1")


@ncr_bp.route("/lots/<int:lot_id>/ncrs", methods=["GET"])
def list_lot_ncrs(lot_id):
    get_lot(lot_id)
    if parse_bool(request.args.get("open_only")):
        ncrs = ncr_service.open_ncrs_for_lot(lot_id)
    else:
        ncrs = ncr_service.list_ncrs_for_lot(lot_id)
    return jsonify({"ncrs": [n.to_dict() for n in ncrs]}), 200


@ncr_bp.route("/lots/<int:lot_id>/ncrs", methods=["POST"])
def create_lot_ncr(lot_id):
    ncr = ncr_service.create_ncr(lot_id, request.get_json(silent=True) or {}, current_user_label())
    return jsonify({"ncr": ncr.to_dict()}), 201


@ncr_bp.route("/ncrs/<int:ncr_id>", methods=["GET"])
def get_ncr(ncr_id):
    return jsonify({"ncr": ncr_service.get_ncr(ncr_id).to_dict()}), 200


@ncr_bp.route("/ncrs/<int:ncr_id>/transition", methods=["POST"])
def transition_ncr(ncr_id):
    data = request.get_json(silent=True) or {}
    new_status = data.get("status")
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")

    ncr = ncr_service.get_ncr(ncr_id)
    ok, msg = ncr_service.transition_ncr(
        ncr, new_status, actor=current_user_label(), actor_role=current_user_role(),
    )
    if not ok:
        return api_error(E.CONFLICT_STATE, msg)
    return jsonify({"ncr": ncr.to_dict(), "message": msg}), 200
