"""
ITP REST API client for job-site devices.

All outbound HTTP calls from the offline client go through this class.
Errors are split the way the checklist session needs them:

    httpx.TransportError        → ConnectivityError   (queue the write offline)
    422 with a refusal code     → (None, refusal)     (ask the user, re-submit)
    any other 4xx / 5xx         → ServerRejection     (recoverable, surfaced)

Testability: pass ``transport=httpx.MockTransport(handler)`` to drive the
client against an in-process app without a network.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from itp_tracker.client.settings import ClientSettings
from itp_tracker.core.checklist_rules import REFUSAL_CODES

logger = logging.getLogger(__name__)


class ConnectivityError(Exception):
    """The server could not be reached (DNS, refused, reset, timeout)."""


class ServerRejection(Exception):
    """The server answered with an error that is not a completion refusal.

    Attributes:
        status_code: HTTP status.
        code: Machine-readable error code from the body, if any.
        details: Structured details from the body, if any.
    """

    def __init__(self, status_code: int, message: str, code: str | None = None,
                 details: dict | None = None) -> None:
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(f"HTTP {status_code}: {message}")


def _refusal_from(body: dict) -> dict:
    return {
        "code": body["code"],
        "error": body.get("error", ""),
        "status": 422,
        "details": body.get("details") or {},
    }


class ItpApiClient:
    """Async client for the ITP tracker API.

    Usage:
        async with ItpApiClient(settings) as api:
            instance = await api.fetch_itp(lot_id)
    """

    def __init__(self, settings: ClientSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.api_base_url.rstrip("/"),
            timeout=settings.http_timeout_seconds,
            headers=settings.identity_headers(),
            transport=transport,
        )

    async def __aenter__(self) -> "ItpApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Transport ────────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, *, json: dict | None = None,
                       params: dict | None = None) -> tuple[Any, dict | None]:
        try:
            resp = await self._client.request(method, path, json=json, params=params)
        except httpx.TransportError as exc:
            logger.debug("%s %s unreachable: %s", method, path, exc)
            raise ConnectivityError(str(exc)) from exc

        body = resp.json() if resp.content else {}
        if resp.status_code == 422 and isinstance(body, dict) and body.get("code") in REFUSAL_CODES:
            return None, _refusal_from(body)
        if resp.is_error:
            body = body if isinstance(body, dict) else {}
            raise ServerRejection(
                resp.status_code,
                body.get("error") or resp.reason_phrase,
                code=body.get("code"),
                details=body.get("details"),
            )
        return body, None

    @staticmethod
    def _item_path(instance_id: int, item_id: int) -> str:
        return f"/itp/instances/{instance_id}/items/{item_id}"

    # ── Reads ────────────────────────────────────────────────────────────────

    async def ping(self) -> bool:
        """Cheap reconnect probe."""
        try:
            await self._request("GET", "/health/ready")
        except (ConnectivityError, ServerRejection):
            return False
        return True

    async def fetch_itp(self, lot_id: int, subcontractor_view: bool = False) -> dict | None:
        """Instance with template snapshot and completions; None when no ITP is assigned."""
        params = {"subcontractor_view": "true"} if subcontractor_view else None
        try:
            body, _ = await self._request("GET", f"/lots/{lot_id}/itp", params=params)
        except ServerRejection as exc:
            if exc.status_code == 404:
                return None
            raise
        return body["instance"]

    async def fetch_conformance(self, lot_id: int) -> dict:
        body, _ = await self._request("GET", f"/lots/{lot_id}/conformance")
        return body

    # ── Completion writes ────────────────────────────────────────────────────

    async def toggle(self, instance_id: int, item_id: int, payload: dict) -> tuple[dict | None, dict | None]:
        body, refusal = await self._request("POST", f"{self._item_path(instance_id, item_id)}/toggle", json=payload)
        return (body["completion"], None) if body else (None, refusal)

    async def update_notes(self, instance_id: int, item_id: int, notes: str | None) -> tuple[dict | None, dict | None]:
        body, refusal = await self._request(
            "PUT", f"{self._item_path(instance_id, item_id)}/notes", json={"notes": notes},
        )
        return (body["completion"], None) if body else (None, refusal)

    async def mark_not_applicable(self, instance_id: int, item_id: int,
                                  reason: str | None) -> tuple[dict | None, dict | None]:
        body, refusal = await self._request(
            "POST", f"{self._item_path(instance_id, item_id)}/not-applicable", json={"reason": reason},
        )
        return (body["completion"], None) if body else (None, refusal)

    async def mark_failed(self, instance_id: int, item_id: int,
                          payload: dict) -> tuple[dict | None, dict | None]:
        """Returns ({"completion": ..., "ncr": ...}, None) or (None, refusal)."""
        return await self._request("POST", f"{self._item_path(instance_id, item_id)}/fail", json=payload)

    async def add_attachment(self, instance_id: int, item_id: int, payload: dict) -> dict:
        body, _ = await self._request(
            "POST", f"{self._item_path(instance_id, item_id)}/attachments", json=payload,
        )
        return body["attachment"]
