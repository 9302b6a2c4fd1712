"""
Durable on-device store for the offline client.

Two tables on a local SQLite file (SQLAlchemy Core, no ORM session):

    cached_instances   last server copy of each lot's ITP instance + cached_at
    sync_queue         pending writes made while disconnected

Queue keys:
    item:<checklist_item_id>   intended resulting state of one item; a second
                               offline edit merges into and replaces the entry
    photo:<uuid>               one queued evidence reference; never overwritten

The store is synchronous: SQLite writes are local and short, so the session
calls it directly from the event loop.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa

logger = logging.getLogger(__name__)

ITEM_KEY_PREFIX = "item:"
PHOTO_KEY_PREFIX = "photo:"

OP_ITEM = "item"
OP_PHOTO = "photo"

metadata = sa.MetaData()

cached_instances = sa.Table(
    "cached_instances",
    metadata,
    sa.Column("lot_id", sa.Integer, primary_key=True),
    sa.Column("instance", sa.JSON, nullable=False),
    sa.Column("cached_at", sa.DateTime(timezone=True), nullable=False),
)

sync_queue = sa.Table(
    "sync_queue",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("lot_id", sa.Integer, nullable=False, index=True),
    sa.Column("queue_key", sa.String(80), nullable=False),
    sa.Column("itp_instance_id", sa.Integer, nullable=False),
    sa.Column("checklist_item_id", sa.Integer, nullable=False),
    sa.Column("operation", sa.String(20), nullable=False),
    sa.Column("payload", sa.JSON, nullable=False),
    sa.Column("author", sa.String(150), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("attempts", sa.Integer, nullable=False, default=0),
    sa.Column("last_error", sa.Text, nullable=True),
    sa.UniqueConstraint("lot_id", "queue_key", name="uq_sync_queue_lot_key"),
)


def _utcnow():
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def item_key(checklist_item_id: int) -> str:
    return f"{ITEM_KEY_PREFIX}{checklist_item_id}"


class OfflineStore:
    """Cached checklists and the sync queue for one device."""

    def __init__(self, url: str = "sqlite:///itp_offline.db") -> None:
        self.engine = sa.create_engine(url)
        metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # ── Cached checklists ────────────────────────────────────────────────────

    def save_instance(self, lot_id: int, instance: dict) -> datetime:
        cached_at = _utcnow()
        with self.engine.begin() as conn:
            conn.execute(cached_instances.delete().where(cached_instances.c.lot_id == lot_id))
            conn.execute(cached_instances.insert().values(
                lot_id=lot_id, instance=instance, cached_at=cached_at,
            ))
        return cached_at

    def load_instance(self, lot_id: int) -> tuple[dict, datetime] | None:
        """(instance, cached_at) for *lot_id*, or None when nothing is cached."""
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(cached_instances.c.instance, cached_instances.c.cached_at)
                .where(cached_instances.c.lot_id == lot_id)
            ).first()
        if row is None:
            return None
        return row.instance, _aware(row.cached_at)

    # ── Sync queue ───────────────────────────────────────────────────────────

    def queue_item_change(self, lot_id: int, itp_instance_id: int, checklist_item_id: int,
                          changes: dict, author: str | None) -> dict:
        """Merge *changes* into the item's pending intent, creating it if absent.

        Returns the merged payload now stored for the item.
        """
        key = item_key(checklist_item_id)
        with self.engine.begin() as conn:
            existing = conn.execute(
                sa.select(sync_queue.c.id, sync_queue.c.payload)
                .where(sync_queue.c.lot_id == lot_id, sync_queue.c.queue_key == key)
            ).first()
            if existing is None:
                payload = dict(changes)
                conn.execute(sync_queue.insert().values(
                    lot_id=lot_id,
                    queue_key=key,
                    itp_instance_id=itp_instance_id,
                    checklist_item_id=checklist_item_id,
                    operation=OP_ITEM,
                    payload=payload,
                    author=author,
                    created_at=_utcnow(),
                    attempts=0,
                ))
            else:
                payload = {**existing.payload, **changes}
                conn.execute(
                    sync_queue.update().where(sync_queue.c.id == existing.id).values(
                        payload=payload, author=author, attempts=0, last_error=None,
                    )
                )
        logger.debug("Queued change for lot %s item %s: %s", lot_id, checklist_item_id, payload)
        return payload

    def queue_photo(self, lot_id: int, itp_instance_id: int, checklist_item_id: int,
                    attachment: dict, author: str | None) -> str:
        key = f"{PHOTO_KEY_PREFIX}{uuid.uuid4()}"
        with self.engine.begin() as conn:
            conn.execute(sync_queue.insert().values(
                lot_id=lot_id,
                queue_key=key,
                itp_instance_id=itp_instance_id,
                checklist_item_id=checklist_item_id,
                operation=OP_PHOTO,
                payload=dict(attachment),
                author=author,
                created_at=_utcnow(),
                attempts=0,
            ))
        return key

    def pending_entries(self, lot_id: int) -> list[dict]:
        """Queue entries in replay order: photos first, then items, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(sync_queue)
                .where(sync_queue.c.lot_id == lot_id)
                .order_by(
                    sa.case((sync_queue.c.operation == OP_PHOTO, 0), else_=1),
                    sync_queue.c.id,
                )
            ).mappings().all()
        return [dict(row, created_at=_aware(row["created_at"])) for row in rows]

    def pending_item_changes(self, lot_id: int) -> dict[int, dict]:
        """checklist_item_id → merged intent, for overlaying onto a cached view."""
        return {
            entry["checklist_item_id"]: entry
            for entry in self.pending_entries(lot_id)
            if entry["operation"] == OP_ITEM
        }

    def pending_count(self, lot_id: int | None = None) -> int:
        query = sa.select(sa.func.count()).select_from(sync_queue)
        if lot_id is not None:
            query = query.where(sync_queue.c.lot_id == lot_id)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def record_failure(self, entry_id: int, error: str) -> int:
        """Bump the attempt counter of an entry; returns the new count."""
        with self.engine.begin() as conn:
            conn.execute(
                sync_queue.update().where(sync_queue.c.id == entry_id).values(
                    attempts=sync_queue.c.attempts + 1, last_error=error,
                )
            )
            return conn.execute(
                sa.select(sync_queue.c.attempts).where(sync_queue.c.id == entry_id)
            ).scalar_one()

    def remove_entry(self, entry_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(sync_queue.delete().where(sync_queue.c.id == entry_id))

    def clear_lot(self, lot_id: int) -> int:
        """Drop the cached checklist and every queued write for *lot_id*."""
        with self.engine.begin() as conn:
            dropped = conn.execute(sync_queue.delete().where(sync_queue.c.lot_id == lot_id)).rowcount
            conn.execute(cached_instances.delete().where(cached_instances.c.lot_id == lot_id))
        if dropped:
            logger.warning("Cleared offline data for lot %s: %d unsynced change(s) discarded",
                           lot_id, dropped)
        return dropped
