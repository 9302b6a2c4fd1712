"""
Offline client settings.

Usage:
    settings = ClientSettings.from_env()
    settings = ClientSettings(api_base_url="http://site-server/api/v1")
"""

import os
from dataclasses import dataclass


@dataclass
class ClientSettings:
    """Settings for one device.

    The identity fields are forwarded as X-User-* headers; the server trusts
    them the same way it trusts the upstream gateway.
    """
    api_base_url: str = "http://localhost:5000/api/v1"
    offline_db_url: str = "sqlite:///itp_offline.db"
    poll_interval_seconds: float = 15.0
    http_timeout_seconds: float = 10.0
    max_sync_attempts: int = 5
    user_id: str | None = None
    user_name: str | None = None
    user_role: str | None = None

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            api_base_url=os.getenv("ITP_API_BASE_URL", cls.api_base_url),
            offline_db_url=os.getenv("ITP_OFFLINE_DB", cls.offline_db_url),
            poll_interval_seconds=float(os.getenv("ITP_POLL_INTERVAL_SECONDS", cls.poll_interval_seconds)),
            http_timeout_seconds=float(os.getenv("ITP_HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds)),
            user_id=os.getenv("ITP_USER_ID"),
            user_name=os.getenv("ITP_USER_NAME"),
            user_role=os.getenv("ITP_USER_ROLE"),
        )

    def identity_headers(self) -> dict:
        headers = {}
        if self.user_id:
            headers["X-User-Id"] = self.user_id
            headers["X-User-Name"] = self.user_name or self.user_id
        if self.user_role:
            headers["X-User-Role"] = self.user_role
        return headers
