"""
Offline-first checklist session for one lot.

Every write goes to the server first.  When the server cannot be reached the
change is checked locally with the same refusal rules the server applies,
queued durably in the OfflineStore and shown immediately in the view,
labelled "(Offline)".  ``replay_pending_queue`` pushes queued changes once
the caller has decided the device is back online; the server's answer for
each entry becomes the item's state.

View model:
    server copy   last instance returned by the server (also the cached copy)
    view          server copy with pending queue entries laid on top

A session serialises its own writes and replays with an asyncio.Lock, so a
user edit never interleaves with the replay of the same lot.

Usage:
    session = ChecklistSession(lot_id, api, store, user_name="J. Site")
    await session.load()
    completion, refusal = await session.toggle(item_id, notes="checked")
    if session.pending_count and await api.ping():
        await session.replay_pending_queue()
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from itp_tracker.client.api import ConnectivityError, ItpApiClient, ServerRejection
from itp_tracker.client.offline_store import OP_PHOTO, OfflineStore
from itp_tracker.client.poller import has_meaningful_changes
from itp_tracker.core import checklist_rules as rules
from itp_tracker.core.exceptions import NotFoundError, StateTransitionError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SYNC_ATTEMPTS = 5

_WITNESS_KEYS = ("witness_present", "witness_name", "witness_company")


@dataclass
class SyncReport:
    """Outcome of one replay pass."""
    replayed: int = 0
    rejected: int = 0
    dropped: int = 0
    stopped_offline: bool = False
    remaining: int = 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _blank_completion(instance: dict, checklist_item_id: int) -> dict:
    record = {
        "id": None,
        "itp_instance_id": instance["id"],
        "checklist_item_id": checklist_item_id,
        "status": rules.PENDING,
        "notes": None,
        "completed_at": None,
        "completed_by": None,
        "is_verified": False,
        "verified_at": None,
        "verified_by": None,
        "witness_present": None,
        "witness_name": None,
        "witness_company": None,
        "linked_ncr": None,
        "attachments": [],
        "updated_at": None,
    }
    record.update(rules.flags_for_state(rules.PENDING))
    return record


def _find_completion(instance: dict, checklist_item_id: int) -> dict | None:
    for record in instance.get("completions") or []:
        if record["checklist_item_id"] == checklist_item_id:
            return record
    return None


def _put_completion(instance: dict, record: dict) -> None:
    completions = instance.setdefault("completions", [])
    for index, existing in enumerate(completions):
        if existing["checklist_item_id"] == record["checklist_item_id"]:
            completions[index] = record
            return
    completions.append(record)


def _witness_from(intent: dict) -> dict | None:
    if intent.get("witness_present") is None:
        return None
    return {key: intent.get(key) for key in _WITNESS_KEYS}


class ChecklistSession:
    """The checklist of one lot as seen by one device."""

    def __init__(self, lot_id: int, api: ItpApiClient, store: OfflineStore, *,
                 user_name: str | None = None,
                 max_sync_attempts: int = DEFAULT_MAX_SYNC_ATTEMPTS) -> None:
        self.lot_id = lot_id
        self.api = api
        self.store = store
        self.offline_label = f"{user_name or 'Current User'} (Offline)"
        self.max_sync_attempts = max_sync_attempts

        self.instance: dict | None = None
        self.showing_cached = False
        self.cached_at: datetime | None = None
        self.is_offline = False

        self._server_copy: dict | None = None
        self._lock = asyncio.Lock()
        # Bumped on every view rebuild; a poll started before a write must not land after it
        self._generation = 0

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return self.store.pending_count(self.lot_id)

    def item(self, checklist_item_id: int) -> dict:
        if self.instance is None:
            raise NotFoundError(resource="ITPInstance for lot", resource_id=self.lot_id)
        for item in self.instance["template"]["checklist_items"]:
            if item["id"] == checklist_item_id:
                return item
        raise NotFoundError(resource="ChecklistItem", resource_id=checklist_item_id)

    def completion(self, checklist_item_id: int) -> dict | None:
        if self.instance is None:
            return None
        return _find_completion(self.instance, checklist_item_id)

    def _status(self, checklist_item_id: int) -> str:
        record = self.completion(checklist_item_id)
        return record["status"] if record else rules.PENDING

    # ── View assembly ────────────────────────────────────────────────────────

    def _apply_intent(self, instance: dict, entry: dict) -> None:
        item_id = entry["checklist_item_id"]
        intent = entry["payload"]
        record = copy.deepcopy(_find_completion(instance, item_id) or _blank_completion(instance, item_id))

        status = intent.get("status")
        if status and status != record["status"]:
            record["status"] = status
            record["is_verified"] = False
            record["verified_at"] = record["verified_by"] = None
            if status == rules.COMPLETED:
                record["completed_at"] = intent.get("recorded_at")
                record["completed_by"] = self.offline_label
                item = next((i for i in instance["template"]["checklist_items"] if i["id"] == item_id), {})
                record.update(rules.witness_fields(item, _witness_from(intent)))
            else:
                record["completed_at"] = record["completed_by"] = None
                record.update(dict.fromkeys(_WITNESS_KEYS))
        if "notes" in intent:
            record["notes"] = intent["notes"]
        record.update(rules.flags_for_state(record["status"]))
        record["pending_sync"] = True
        _put_completion(instance, record)

    def _apply_photo(self, instance: dict, entry: dict) -> None:
        item_id = entry["checklist_item_id"]
        record = copy.deepcopy(_find_completion(instance, item_id) or _blank_completion(instance, item_id))
        attachment = dict(entry["payload"], id=None, completion_id=record["id"],
                          uploaded_by=self.offline_label, pending_sync=True)
        record["attachments"] = [*record.get("attachments", []), attachment]
        _put_completion(instance, record)

    def _rebuild_view(self) -> None:
        self._generation += 1
        if self._server_copy is None:
            self.instance = None
            return
        view = copy.deepcopy(self._server_copy)
        for entry in self.store.pending_entries(self.lot_id):
            if entry["operation"] == OP_PHOTO:
                self._apply_photo(view, entry)
            else:
                self._apply_intent(view, entry)
        self.instance = view

    def _adopt_server_copy(self, instance: dict) -> None:
        self._server_copy = instance
        self.cached_at = self.store.save_instance(self.lot_id, instance)
        self.showing_cached = False
        self.is_offline = False
        self._rebuild_view()

    # ── Loading & refresh ────────────────────────────────────────────────────

    async def load(self) -> dict | None:
        """Fetch the instance, falling back to the cached copy when offline.

        Returns None when the lot has no ITP (or nothing is cached offline).
        """
        try:
            instance = await self.api.fetch_itp(self.lot_id)
        except ConnectivityError:
            self.is_offline = True
            cached = self.store.load_instance(self.lot_id)
            if cached is None:
                logger.info("Lot %s offline with no cached checklist", self.lot_id)
                self._server_copy = None
                self.instance = None
                return None
            self._server_copy, self.cached_at = cached
            self.showing_cached = True
            logger.info("Lot %s offline, showing checklist cached at %s",
                        self.lot_id, self.cached_at.isoformat())
            self._rebuild_view()
            return self.instance

        if instance is None:
            self.is_offline = False
            self._server_copy = None
            self.instance = None
            return None
        self._adopt_server_copy(instance)
        return self.instance

    async def refresh(self) -> bool:
        """Re-fetch the instance and hand it to ``apply_refresh``.

        The fetched copy is discarded when the view changed while the request
        was in flight (a write was confirmed or queued), since the server may
        have answered the GET before committing that write.  Connectivity and
        server errors propagate to the caller.
        """
        if self._lock.locked():
            return False
        generation = self._generation
        fresh = await self.api.fetch_itp(self.lot_id)
        if generation != self._generation or self._lock.locked():
            logger.debug("Lot %s: discarding refresh overtaken by a local write", self.lot_id)
            return False
        return self.apply_refresh(fresh)

    def apply_refresh(self, fresh: dict | None) -> bool:
        """Adopt a polled instance when it differs meaningfully from the current one."""
        if fresh is None:
            return False
        if self._server_copy is not None and not self.showing_cached \
                and not has_meaningful_changes(self._server_copy, fresh):
            self.is_offline = False
            return False
        self._adopt_server_copy(fresh)
        return True

    def reconcile(self, record: dict) -> None:
        """Make a completion returned by the server the item's state."""
        if self._server_copy is None:
            return
        server_copy = copy.deepcopy(self._server_copy)
        _put_completion(server_copy, record)
        self._adopt_server_copy(server_copy)

    # ── Writes ───────────────────────────────────────────────────────────────

    def _has_pending(self, checklist_item_id: int) -> bool:
        return checklist_item_id in self.store.pending_item_changes(self.lot_id)

    def _queue(self, checklist_item_id: int, changes: dict) -> dict:
        self.store.queue_item_change(
            self.lot_id, self.instance["id"], checklist_item_id, changes, self.offline_label,
        )
        self._rebuild_view()
        return self.completion(checklist_item_id)

    def _check_edge(self, checklist_item_id: int, current: str, target: str) -> None:
        if not rules.validate_completion_transition(current, target):
            raise StateTransitionError(
                resource="checklist item", from_state=current, to_state=target,
                reason=f"item {checklist_item_id}",
            )

    async def _write(self, checklist_item_id: int, send, local):
        """Server first; on connectivity failure (or unsynced changes ahead) run *local*.

        *send* is a coroutine factory returning (completion, refusal);
        *local* returns (completion, refusal) using the local rules.
        """
        async with self._lock:
            self.item(checklist_item_id)
            if self._has_pending(checklist_item_id):
                # Keep this edit ordered behind the item's unsynced changes
                return local()
            try:
                completion, refusal = await send()
            except ConnectivityError:
                self.is_offline = True
                logger.info("Lot %s item %s: server unreachable, queuing change offline",
                            self.lot_id, checklist_item_id)
                return local()
            self.is_offline = False
            if completion is not None:
                self.reconcile(completion)
            return completion, refusal

    async def toggle(self, checklist_item_id: int, *, is_completed: bool | None = None,
                     notes: str | None = None, evidence_override: bool = False,
                     witness: dict | None = None) -> tuple[dict | None, dict | None]:
        """pending ⇄ completed.  Returns (completion, None) or (None, refusal)."""
        payload = {"evidence_override": evidence_override, "recorded_at": _now_iso()}
        if is_completed is not None:
            payload["is_completed"] = is_completed
        if notes is not None:
            payload["notes"] = notes
        if witness:
            payload.update({key: witness.get(key) for key in _WITNESS_KEYS})

        def local():
            item = self.item(checklist_item_id)
            current = self._status(checklist_item_id)
            wants = is_completed if is_completed is not None else current != rules.COMPLETED
            target = rules.COMPLETED if wants else rules.PENDING
            changes = {"notes": notes} if notes is not None else {}
            if target == current:
                return (self._queue(checklist_item_id, changes) if changes
                        else self.completion(checklist_item_id)), None
            self._check_edge(checklist_item_id, current, target)
            if target == rules.COMPLETED:
                record = self.completion(checklist_item_id) or {}
                refusal = rules.check_completion_refusal(
                    item,
                    len(record.get("attachments") or []),
                    evidence_override=evidence_override,
                    witness=witness if witness and witness.get("witness_present") is not None else None,
                )
                if refusal:
                    return None, refusal
                changes.update({
                    key: payload[key] for key in ("evidence_override", "recorded_at", *_WITNESS_KEYS)
                    if key in payload
                })
            changes["status"] = target
            return self._queue(checklist_item_id, changes), None

        return await self._write(
            checklist_item_id,
            lambda: self.api.toggle(self.instance["id"], checklist_item_id, payload),
            local,
        )

    async def update_notes(self, checklist_item_id: int, notes: str | None) -> tuple[dict | None, None]:
        return await self._write(
            checklist_item_id,
            lambda: self.api.update_notes(self.instance["id"], checklist_item_id, notes),
            lambda: (self._queue(checklist_item_id, {"notes": notes}), None),
        )

    async def mark_not_applicable(self, checklist_item_id: int,
                                  reason: str | None) -> tuple[dict | None, dict | None]:
        def local():
            item = self.item(checklist_item_id)
            current = self._status(checklist_item_id)
            if current == rules.NOT_APPLICABLE:
                return self.completion(checklist_item_id), None
            self._check_edge(checklist_item_id, current, rules.NOT_APPLICABLE)
            refusal = rules.check_not_applicable_refusal(item, reason)
            if refusal:
                return None, refusal
            return self._queue(checklist_item_id,
                               {"status": rules.NOT_APPLICABLE, "notes": reason.strip()}), None

        return await self._write(
            checklist_item_id,
            lambda: self.api.mark_not_applicable(self.instance["id"], checklist_item_id, reason),
            local,
        )

    async def mark_failed(self, checklist_item_id: int, description: str | None, *,
                          category: str, severity: str) -> tuple[dict | None, dict | None]:
        """→ failed.  Offline, the NCR is raised by the server when the entry replays."""
        if severity not in rules.FAILURE_SEVERITIES:
            raise ValidationError("severity must be minor or major", details={"field": "severity"})

        async def send():
            body, refusal = await self.api.mark_failed(
                self.instance["id"], checklist_item_id,
                {"description": description, "category": category, "severity": severity},
            )
            return (body["completion"], None) if body else (None, refusal)

        def local():
            item = self.item(checklist_item_id)
            current = self._status(checklist_item_id)
            if current == rules.FAILED:
                return self.completion(checklist_item_id), None
            self._check_edge(checklist_item_id, current, rules.FAILED)
            refusal = rules.check_failure_refusal(item, description)
            if refusal:
                return None, refusal
            return self._queue(checklist_item_id, {
                "status": rules.FAILED,
                "notes": description.strip(),
                "category": category,
                "severity": severity,
            }), None

        return await self._write(checklist_item_id, send, local)

    async def add_photo(self, checklist_item_id: int, filename: str, file_url: str, *,
                        caption: str | None = None, gps_latitude: float | None = None,
                        gps_longitude: float | None = None) -> dict:
        """Attach an evidence reference; queued under its own key when offline."""
        payload = {
            "filename": filename,
            "file_url": file_url,
            "caption": caption,
            "gps_latitude": gps_latitude,
            "gps_longitude": gps_longitude,
        }
        async with self._lock:
            item = self.item(checklist_item_id)
            try:
                attachment = await self.api.add_attachment(self.instance["id"], checklist_item_id, payload)
            except ConnectivityError:
                self.is_offline = True
                logger.info("Lot %s item %s: server unreachable, queuing photo offline",
                            self.lot_id, checklist_item_id)
                payload["caption"] = caption or f"ITP Evidence: {item['description']}"
                self.store.queue_photo(self.lot_id, self.instance["id"], checklist_item_id,
                                       payload, self.offline_label)
                self._rebuild_view()
                return self.completion(checklist_item_id)["attachments"][-1]

            self.is_offline = False
            server_copy = copy.deepcopy(self._server_copy)
            record = _find_completion(server_copy, checklist_item_id) \
                or _blank_completion(server_copy, checklist_item_id)
            record["id"] = attachment["completion_id"]
            record["attachments"] = [*record.get("attachments", []), attachment]
            _put_completion(server_copy, record)
            self._adopt_server_copy(server_copy)
            return attachment

    # ── Replay ───────────────────────────────────────────────────────────────

    async def _replay_item(self, entry: dict) -> tuple[dict | None, dict | None]:
        instance_id, item_id = entry["itp_instance_id"], entry["checklist_item_id"]
        intent = entry["payload"]
        status = intent.get("status")

        if status in (rules.COMPLETED, rules.PENDING):
            body = {"is_completed": status == rules.COMPLETED}
            for key in ("notes", "evidence_override", "recorded_at", *_WITNESS_KEYS):
                if key in intent:
                    body[key] = intent[key]
            return await self.api.toggle(instance_id, item_id, body)
        if status == rules.NOT_APPLICABLE:
            return await self.api.mark_not_applicable(instance_id, item_id, intent.get("notes"))
        if status == rules.FAILED:
            result, refusal = await self.api.mark_failed(instance_id, item_id, {
                "description": intent.get("notes"),
                "category": intent.get("category"),
                "severity": intent.get("severity"),
            })
            return (result["completion"], None) if result else (None, refusal)
        return await self.api.update_notes(instance_id, item_id, intent.get("notes"))

    def _reject(self, entry: dict, error: str, report: SyncReport) -> None:
        attempts = self.store.record_failure(entry["id"], error)
        if attempts >= self.max_sync_attempts:
            self.store.remove_entry(entry["id"])
            report.dropped += 1
            logger.warning("Dropping queued %s for lot %s item %s after %d attempts: %s",
                           entry["queue_key"], self.lot_id, entry["checklist_item_id"], attempts, error)
        else:
            report.rejected += 1
            logger.info("Queued %s for lot %s rejected (attempt %d/%d): %s",
                        entry["queue_key"], self.lot_id, attempts, self.max_sync_attempts, error)

    async def replay_pending_queue(self) -> SyncReport:
        """Push queued changes to the server, one entry at a time.

        Safe to call repeatedly; a no-op when nothing is queued.  A
        connectivity failure stops the pass and leaves the entry queued.
        """
        report = SyncReport()
        async with self._lock:
            entries = self.store.pending_entries(self.lot_id)
            if not entries:
                return report
            logger.info("Replaying %d queued change(s) for lot %s", len(entries), self.lot_id)

            for entry in entries:
                try:
                    if entry["operation"] == OP_PHOTO:
                        await self.api.add_attachment(
                            entry["itp_instance_id"], entry["checklist_item_id"], entry["payload"],
                        )
                        completion, refusal = None, None
                    else:
                        completion, refusal = await self._replay_item(entry)
                except ConnectivityError:
                    self.is_offline = True
                    report.stopped_offline = True
                    logger.info("Replay for lot %s stopped: server unreachable", self.lot_id)
                    break
                except ServerRejection as exc:
                    self._reject(entry, str(exc), report)
                    continue

                if refusal is not None:
                    self._reject(entry, refusal["code"], report)
                    continue
                self.store.remove_entry(entry["id"])
                report.replayed += 1
                if completion is not None:
                    self.reconcile(completion)

            if report.replayed or report.dropped:
                await self._refresh_after_replay()
            else:
                self._rebuild_view()

        report.remaining = self.pending_count
        logger.info("Replay for lot %s: %d synced, %d rejected, %d dropped, %d remaining",
                    self.lot_id, report.replayed, report.rejected, report.dropped, report.remaining)
        return report

    async def _refresh_after_replay(self) -> None:
        try:
            instance = await self.api.fetch_itp(self.lot_id)
        except (ConnectivityError, ServerRejection) as exc:
            logger.debug("Post-replay refresh for lot %s failed: %s", self.lot_id, exc)
            self._rebuild_view()
            return
        if instance is not None:
            self._adopt_server_copy(instance)

    def clear_offline_data(self) -> int:
        """Discard the cached checklist and unsynced changes for this lot."""
        dropped = self.store.clear_lot(self.lot_id)
        self.showing_cached = False
        self.cached_at = None
        self._rebuild_view()
        return dropped
