"""
ITP Tracker
Notification Service.

Central service for creating, broadcasting and querying notifications.
Integrated with checklist events (witness point approaching).
"""

import logging

from flask import current_app

from itp_tracker.core.exceptions import ValidationError
from itp_tracker.models import db
from itp_tracker.models.notification import NOTIFICATION_SEVERITIES, NOTIFICATION_TYPES, Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, title, message="", notification_type="system", severity="info",
                  project_id=None, entity_type="", entity_id=None, link_url=None,
                  recipients=None, commit=True):
        """
        Send a notification to multiple recipients (or 'all' if none given).

        Args:
            recipients: list of role names. If None, sends to 'all'.
            commit: False when the caller owns the transaction.

        Returns:
            List of created Notification instances.
        """
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification type: {notification_type!r}",
                                  details={"field": "notification_type", "allowed": sorted(NOTIFICATION_TYPES)})
        if severity not in NOTIFICATION_SEVERITIES:
            raise ValidationError(f"Unknown notification severity: {severity!r}",
                                  details={"field": "severity", "allowed": sorted(NOTIFICATION_SEVERITIES)})
        targets = recipients or ["all"]
        notifications = []
        for r in targets:
            notif = Notification(
                project_id=project_id,
                recipient=r,
                notification_type=notification_type,
                title=title,
                message=message,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
                link_url=link_url,
            )
            db.session.add(notif)
            notifications.append(notif)
        if commit:
            db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", project_id=None, unread_only=False,
                           limit=50, offset=0):
        """
        Retrieve notifications for a recipient role, newest first.
        """
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        )
        if project_id:
            q = q.filter_by(project_id=project_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()) \
                 .offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    # ── Checklist Integration Helpers ─────────────────────────────────────

    @staticmethod
    def notify_witness_point_approaching(lot, instance, completed_item):
        """Warn supervisors when the next item after *completed_item* is a witness point.

        Sent at most once per witness item: the deep link to the item doubles
        as the de-duplication key.
        """
        items = instance.checklist_items
        order = completed_item.get("order") or 0
        following = [i for i in items if (i.get("order") or 0) > order]
        if not following:
            return []
        nxt = following[0]
        if nxt.get("point_type") != "witness":
            return []

        completion = instance.completion_for(nxt["id"])
        if completion is not None and completion.status != "pending":
            return []

        link_url = f"/projects/{lot.project_id}/lots/{lot.id}?tab=itp&item={nxt['id']}"
        exists = db.session.query(
            Notification.query.filter_by(
                notification_type="witness_point_approaching",
                link_url=link_url,
            ).exists()
        ).scalar()
        if exists:
            return []

        roles = current_app.config.get("WITNESS_NOTIFY_ROLES", ("project_manager", "admin", "superintendent"))
        notifications = NotificationService.broadcast(
            title=f"Witness point approaching on lot {lot.lot_number}",
            message=(
                f"Witness point '{nxt['description']}' is next in sequence. "
                f"Arrange for the witness to attend."
            ),
            notification_type="witness_point_approaching",
            severity="warning",
            project_id=lot.project_id,
            entity_type="lot",
            entity_id=lot.id,
            link_url=link_url,
            recipients=list(roles),
        )
        logger.info("Witness point notice sent for lot %s item %s to %s",
                    lot.id, nxt["id"], ", ".join(roles))
        return notifications
