"""
Lot status auto-progression and the witness-point-approaching notice.
"""

import pytest

from itp_tracker.core.exceptions import ValidationError
from itp_tracker.models import db
from itp_tracker.models.notification import Notification
from itp_tracker.services.lot_progression import target_status
from itp_tracker.services.notification import NotificationService

BASE = "/api/v1"


def _toggle(client, inst, item_id, **body):
    body.setdefault("is_completed", True)
    return client.post(f"{BASE}/itp/instances/{inst.id}/items/{item_id}/toggle", json=body)


def _lot_status(lot):
    db.session.expire_all()
    return lot.status


class TestTargetStatus:
    ITEMS = [
        {"id": 1, "evidence_required": "none"},
        {"id": 2, "evidence_required": "photo"},
        {"id": 3, "evidence_required": "test", "test_type": "Compaction"},
    ]

    @pytest.mark.parametrize("statuses,expected", [
        ({}, "not_started"),
        ({1: "pending"}, "not_started"),
        ({1: "completed"}, "in_progress"),
        ({1: "completed", 2: "not_applicable"}, "awaiting_test"),
        ({1: "completed", 2: "completed", 3: "completed"}, "completed"),
        ({1: "failed", 2: "completed"}, "in_progress"),
    ])
    def test_target(self, statuses, expected):
        assert target_status(self.ITEMS, statuses) == expected


class TestAutoProgression:
    def test_first_finished_item_starts_lot(self, client, make_itp, lot):
        inst = make_itp({}, {})
        _toggle(client, inst, inst.checklist_items[0]["id"])
        assert _lot_status(lot) == "in_progress"

    def test_awaiting_test(self, client, make_itp, lot):
        inst = make_itp({}, {"evidence_required": "test", "test_type": "Compaction"})
        _toggle(client, inst, inst.checklist_items[0]["id"])
        assert _lot_status(lot) == "awaiting_test"

    def test_all_finished_completes_lot(self, client, make_itp, lot):
        inst = make_itp({}, {})
        _toggle(client, inst, inst.checklist_items[0]["id"])
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{inst.checklist_items[1]['id']}/not-applicable",
                    json={"reason": "n/a"})
        assert _lot_status(lot) == "completed"

    def test_never_moves_backwards(self, client, make_itp, lot):
        inst = make_itp({}, {})
        item_id = inst.checklist_items[0]["id"]
        _toggle(client, inst, item_id)
        _toggle(client, inst, item_id, is_completed=False)
        assert _lot_status(lot) == "in_progress"

    def test_ncr_raised_lot_is_left_alone(self, client, make_itp, lot):
        inst = make_itp({}, {})
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{inst.checklist_items[0]['id']}/fail",
                    json={"description": "Soft spot", "category": "materials", "severity": "minor"})
        _toggle(client, inst, inst.checklist_items[1]["id"])
        assert _lot_status(lot) == "ncr_raised"


class TestWitnessPointNotice:
    def test_notice_when_next_item_is_witness(self, client, make_itp, lot, app):
        inst = make_itp({}, {"point_type": "witness", "description": "Council inspection"})
        _toggle(client, inst, inst.checklist_items[0]["id"])

        notices = Notification.query.filter_by(notification_type="witness_point_approaching").all()
        assert sorted(n.recipient for n in notices) == sorted(app.config["WITNESS_NOTIFY_ROLES"])
        witness_id = inst.checklist_items[1]["id"]
        assert all(n.link_url.endswith(f"tab=itp&item={witness_id}") for n in notices)
        assert "Council inspection" in notices[0].message

    def test_notice_sent_once(self, client, make_itp, app):
        inst = make_itp({}, {"point_type": "witness"})
        item_id = inst.checklist_items[0]["id"]
        _toggle(client, inst, item_id)
        _toggle(client, inst, item_id, is_completed=False)
        _toggle(client, inst, item_id)
        count = Notification.query.filter_by(notification_type="witness_point_approaching").count()
        assert count == len(app.config["WITNESS_NOTIFY_ROLES"])

    def test_no_notice_for_standard_next_item(self, client, make_itp):
        inst = make_itp({}, {})
        _toggle(client, inst, inst.checklist_items[0]["id"])
        assert Notification.query.count() == 0

    def test_notifications_listed_for_role(self, client, make_itp, project):
        inst = make_itp({}, {"point_type": "witness"})
        _toggle(client, inst, inst.checklist_items[0]["id"])
        res = client.get(f"{BASE}/projects/{project.id}/notifications?recipient=superintendent")
        body = res.get_json()
        assert body["total"] == 1
        notice = body["items"][0]

        res = client.post(f"{BASE}/notifications/{notice['id']}/read")
        assert res.get_json()["notification"]["is_read"] is True

    def test_mark_read_unknown_notification(self, client):
        res = client.post(f"{BASE}/notifications/9999/read")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_unread_only_after_mark_read(self, client, make_itp, project):
        inst = make_itp({}, {"point_type": "witness"})
        _toggle(client, inst, inst.checklist_items[0]["id"])
        url = f"{BASE}/projects/{project.id}/notifications?recipient=superintendent&unread_only=true"
        notice = client.get(url).get_json()["items"][0]
        client.post(f"{BASE}/notifications/{notice['id']}/read")
        assert client.get(url).get_json()["total"] == 0


class TestBroadcast:
    def test_unknown_type_rejected(self, project):
        with pytest.raises(ValidationError) as exc_info:
            NotificationService.broadcast(title="x", notification_type="lot_exploded", project_id=project.id)
        assert exc_info.value.details["field"] == "notification_type"
        assert Notification.query.count() == 0

    def test_unknown_severity_rejected(self, project):
        with pytest.raises(ValidationError):
            NotificationService.broadcast(title="x", severity="fatal", project_id=project.id)

    def test_one_row_per_recipient(self, project):
        sent = NotificationService.broadcast(title="Site closed", project_id=project.id,
                                             recipients=["superintendent", "admin"])
        assert sorted(n.recipient for n in sent) == ["admin", "superintendent"]
        assert Notification.query.count() == 2
