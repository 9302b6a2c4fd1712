"""
Live-update poller for an open lot checklist.

While the checklist is visible the poller re-fetches the lot's ITP instance
every ``interval`` seconds and hands it to the session, which swaps its view
only when something a user would notice changed.  Hiding the checklist
pauses polling; showing it again refreshes immediately and resumes the
interval.  Poll failures are expected on site and only logged at DEBUG.

Usage:
    poller = LiveUpdatePoller(session, interval=15)
    poller.start()              # inside a running event loop
    poller.set_visible(False)   # tab hidden / app backgrounded
    await poller.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 15.0


def _by_item(instance: dict | None) -> dict:
    return {c["checklist_item_id"]: c for c in (instance or {}).get("completions") or []}


def has_meaningful_changes(current: dict | None, fresh: dict | None) -> bool:
    """True when *fresh* differs from *current* in a way worth re-rendering.

    Compared: the number of completion records, and per completion its
    status, completed flag, verified flag and completed-at time.
    """
    old, new = _by_item(current), _by_item(fresh)
    if len(old) != len(new):
        return True
    for item_id, record in new.items():
        before = old.get(item_id)
        if before is None:
            return True
        for field in ("status", "is_completed", "is_verified", "completed_at"):
            if before.get(field) != record.get(field):
                return True
    return False


class LiveUpdatePoller:
    """Periodic refresh of one ChecklistSession."""

    def __init__(self, session, interval: float = DEFAULT_POLL_INTERVAL_SECONDS) -> None:
        self.session = session
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._visible = asyncio.Event()
        self._wake = asyncio.Event()
        self._visible.set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def visible(self) -> bool:
        return self._visible.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Live updates started for lot %s every %ss", self.session.lot_id, self.interval)

    async def stop(self) -> None:
        """Cancel the loop; no poll runs after this returns."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Live updates stopped for lot %s", self.session.lot_id)

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible.is_set():
            return
        if visible:
            self._visible.set()
        else:
            self._visible.clear()
        # Interrupt the current wait: hidden → park, visible → poll now
        self._wake.set()

    async def poll_once(self) -> bool:
        """Fetch once and apply; returns True when the session view changed."""
        try:
            return await self.session.refresh()
        except Exception as exc:
            logger.debug("Live update poll failed for lot %s: %s", self.session.lot_id, exc)
            return False

    async def _run(self) -> None:
        while True:
            await self._visible.wait()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            self._wake.clear()
            if not self._visible.is_set():
                continue
            await self.poll_once()
