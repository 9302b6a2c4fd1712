"""
Failing a checklist item raises exactly one linked NCR, atomically.
"""

from itp_tracker.models import db
from itp_tracker.models.itp import ITPCompletion
from itp_tracker.models.ncr import NCR
from itp_tracker.services import ncr_service

BASE = "/api/v1"


def _ncr_store_down(*args, **kwargs):
    raise RuntimeError("ncr store unavailable")


def _fail(client, instance, item_id, **body):
    payload = {"description": "Compaction below 95%", "category": "workmanship", "severity": "minor"}
    payload.update(body)
    return client.post(f"{BASE}/itp/instances/{instance.id}/items/{item_id}/fail", json=payload)


class TestAutoRaise:
    def test_fail_raises_linked_ncr(self, client, make_itp, lot):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]

        res = _fail(client, inst, item_id)
        assert res.status_code == 200
        body = res.get_json()
        completion, ncr = body["completion"], body["ncr"]
        assert completion["status"] == "failed"
        assert completion["is_failed"] is True
        assert completion["is_completed"] is False
        assert completion["notes"] == "Compaction below 95%"
        assert completion["linked_ncr"] == {"id": ncr["id"], "ncr_number": "NCR-0001"}
        assert ncr["status"] == "open"
        assert ncr["lot_id"] == lot.id
        assert ncr["checklist_item_id"] == item_id
        assert ncr["severity"] == "minor"
        assert ncr["qm_approval_required"] is False

    def test_lot_moves_to_ncr_raised(self, client, make_itp, lot):
        inst = make_itp({}, {})
        _fail(client, inst, inst.checklist_items[0]["id"])
        db.session.expire_all()
        assert lot.status == "ncr_raised"

    def test_major_needs_qm_approval(self, client, make_itp):
        inst = make_itp({})
        body = _fail(client, inst, inst.checklist_items[0]["id"], severity="major").get_json()
        assert body["ncr"]["qm_approval_required"] is True

    def test_completed_item_can_fail(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{item_id}/toggle", json={"is_completed": True})
        body = _fail(client, inst, item_id).get_json()
        assert body["completion"]["status"] == "failed"
        assert body["completion"]["completed_at"] is None

    def test_refail_is_idempotent(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        first = _fail(client, inst, item_id).get_json()
        second = _fail(client, inst, item_id, description="Sent twice").get_json()
        assert second["ncr"]["id"] == first["ncr"]["id"]
        assert NCR.query.count() == 1

    def test_numbers_are_sequential(self, client, make_itp):
        inst = make_itp({}, {})
        first = _fail(client, inst, inst.checklist_items[0]["id"]).get_json()["ncr"]
        second = _fail(client, inst, inst.checklist_items[1]["id"]).get_json()["ncr"]
        assert (first["ncr_number"], second["ncr_number"]) == ("NCR-0001", "NCR-0002")

    def test_description_required(self, client, make_itp):
        inst = make_itp({})
        res = _fail(client, inst, inst.checklist_items[0]["id"], description="")
        assert res.status_code == 422
        assert res.get_json()["code"] == "DESCRIPTION_REQUIRED"
        assert NCR.query.count() == 0

    def test_severity_validated(self, client, make_itp):
        inst = make_itp({})
        res = _fail(client, inst, inst.checklist_items[0]["id"], severity="catastrophic")
        assert res.status_code == 422
        assert NCR.query.count() == 0

    def test_failed_is_terminal(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        _fail(client, inst, item_id)
        res = client.post(f"{BASE}/itp/instances/{inst.id}/items/{item_id}/toggle", json={"is_completed": True})
        assert res.status_code == 409


class TestAtomicity:
    def test_ncr_failure_rolls_back_completion(self, client, make_itp, lot, monkeypatch):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]

        monkeypatch.setattr(ncr_service, "raise_ncr_for_failure", _ncr_store_down)
        res = _fail(client, inst, item_id)
        assert res.status_code == 502
        assert res.get_json()["code"] == "ERR_NCR_CREATION_FAILED"

        db.session.expire_all()
        assert ITPCompletion.query.filter_by(checklist_item_id=item_id, status="failed").count() == 0
        assert NCR.query.count() == 0
        assert lot.status == "not_started"

    def test_ncr_failure_keeps_prior_state(self, client, make_itp, monkeypatch):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{item_id}/toggle", json={"is_completed": True})

        monkeypatch.setattr(ncr_service, "raise_ncr_for_failure", _ncr_store_down)
        assert _fail(client, inst, item_id).status_code == 502

        db.session.expire_all()
        completion = ITPCompletion.query.filter_by(checklist_item_id=item_id).one()
        assert completion.status == "completed"
        assert completion.linked_ncr_id is None
