"""
Field user context and role decorators.

Authentication happens upstream (reverse proxy / identity provider); the
proxy forwards the resolved identity as headers:

    X-User-Id     stable user id
    X-User-Name   display name recorded on completions / NCRs
    X-User-Role   one of: superintendent, project_manager, quality_manager,
                  admin, foreman, subcontractor, ...

Usage:
    @bp.route("/api/v1/itp/completions/<int:completion_id>/verify", methods=["POST"])
    @require_role(*HOLD_POINT_VERIFIER_ROLES)
    def verify(completion_id):
        ...

When no user headers are present (internal calls, tests) the decorators
pass through; the service layer still records "system" as the actor.
"""

import functools
import logging

from flask import Flask, g, jsonify, request

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

HOLD_POINT_VERIFIER_ROLES = ("superintendent", "project_manager", "quality_manager", "admin")


def init_user_context(app: Flask):
    """Populate ``g.current_user`` from the forwarded identity headers."""

    @app.before_request
    def _load_user():
        user_id = request.headers.get("X-User-Id")
        if not user_id:
            g.current_user = None
            return
        g.current_user = {
            "id": user_id,
            "name": request.headers.get("X-User-Name") or user_id,
            "role": (request.headers.get("X-User-Role") or "").strip().lower() or None,
        }


def current_user_label() -> str:
    """Name recorded in completed_by / verified_by / raised_by columns."""
    user = getattr(g, "current_user", None)
    if not user:
        return SYSTEM_ACTOR
    return user["name"]


def current_user_role() -> str | None:
    user = getattr(g, "current_user", None)
    return user["role"] if user else None


def require_role(*roles: str):
    """
    Decorator: require the caller's role to be one of *roles*.

    Callers without identity headers fall through.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return f(*args, **kwargs)

            if user["role"] not in roles:
                logger.warning(
                    "User %s (role=%s) denied: requires one of %s on %s",
                    user["id"], user["role"], roles, f.__name__,
                )
                return jsonify({
                    "error": "Permission denied",
                    "code": "ERR_FORBIDDEN",
                    "required_any": list(roles),
                }), 403

            return f(*args, **kwargs)
        return decorated
    return decorator
