"""
Offline-first client for job-site devices.

    ItpApiClient       httpx.AsyncClient wrapper for the REST API
    OfflineStore       cached checklists + sync queue (local SQLite)
    ChecklistSession   one lot's checklist: server-first writes, offline queue, replay
    LiveUpdatePoller   periodic refresh while the checklist is visible
"""

from itp_tracker.client.api import ConnectivityError, ItpApiClient, ServerRejection
from itp_tracker.client.offline_store import OfflineStore
from itp_tracker.client.poller import LiveUpdatePoller, has_meaningful_changes
from itp_tracker.client.session import ChecklistSession, SyncReport
from itp_tracker.client.settings import ClientSettings

__all__ = [
    "ChecklistSession",
    "ClientSettings",
    "ConnectivityError",
    "ItpApiClient",
    "LiveUpdatePoller",
    "OfflineStore",
    "ServerRejection",
    "SyncReport",
    "has_meaningful_changes",
]
