"""
Checklist completion state machine over the REST API.

    pending ⇄ completed         toggle (evidence + witness guards)
    pending → not_applicable    reason required
    pending|completed → failed  see test_ncr_auto_raise.py
    not_applicable, failed      terminal

Refusals come back as 422 with a machine code and leave state untouched;
invalid edges come back as 409.
"""

from itp_tracker.models import db
from itp_tracker.models.itp import ITPCompletion

BASE = "/api/v1"


def _item_url(instance, item_id, action):
    return f"{BASE}/itp/instances/{instance.id}/items/{item_id}/{action}"


def _toggle(client, instance, item_id, **body):
    return client.post(_item_url(instance, item_id, "toggle"), json=body)


def _completion(instance, item_id):
    return ITPCompletion.query.filter_by(itp_instance_id=instance.id, checklist_item_id=item_id).first()


class TestToggle:
    def test_complete_and_back(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]

        res = _toggle(client, inst, item_id, is_completed=True, notes="Checked levels")
        assert res.status_code == 200
        data = res.get_json()["completion"]
        assert data["status"] == "completed"
        assert data["is_completed"] is True
        assert data["is_not_applicable"] is False
        assert data["completed_at"] is not None
        assert data["notes"] == "Checked levels"

        res = _toggle(client, inst, item_id, is_completed=False)
        data = res.get_json()["completion"]
        assert data["status"] == "pending"
        assert data["completed_at"] is None
        assert data["completed_by"] is None
        assert data["notes"] == "Checked levels"

    def test_toggle_without_target_flips(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        assert _toggle(client, inst, item_id).get_json()["completion"]["is_completed"] is True
        assert _toggle(client, inst, item_id).get_json()["completion"]["is_completed"] is False

    def test_completed_by_comes_from_identity_headers(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        res = client.post(
            _item_url(inst, item_id, "toggle"), json={"is_completed": True},
            headers={"X-User-Id": "u7", "X-User-Name": "Sam Foreman", "X-User-Role": "foreman"},
        )
        assert res.get_json()["completion"]["completed_by"] == "Sam Foreman"

    def test_recompleting_keeps_original_timestamp(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        first = _toggle(client, inst, item_id, is_completed=True).get_json()["completion"]
        again = _toggle(client, inst, item_id, is_completed=True, notes="re-sent").get_json()["completion"]
        assert again["completed_at"] == first["completed_at"]
        assert again["notes"] == "re-sent"
        assert ITPCompletion.query.count() == 1

    def test_recorded_at_is_honoured(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        res = _toggle(client, inst, item_id, is_completed=True, recorded_at="2024-03-01T08:30:00Z")
        assert res.get_json()["completion"]["completed_at"].startswith("2024-03-01T08:30:00")

    def test_bad_recorded_at(self, client, make_itp):
        inst = make_itp({})
        res = _toggle(client, inst, inst.checklist_items[0]["id"], is_completed=True, recorded_at="yesterday")
        assert res.status_code == 422

    def test_unknown_item(self, client, make_itp):
        inst = make_itp({})
        assert _toggle(client, inst, 99999, is_completed=True).status_code == 404

    def test_unknown_instance(self, client):
        assert client.post(f"{BASE}/itp/instances/999/items/1/toggle", json={}).status_code == 404


class TestEvidenceGate:
    def test_photo_item_without_evidence_is_refused(self, client, make_itp):
        inst = make_itp({"evidence_required": "photo"})
        item_id = inst.checklist_items[0]["id"]

        res = _toggle(client, inst, item_id, is_completed=True)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "EVIDENCE_MISSING"
        assert body["details"]["evidence_required"] == "photo"
        # Refused before the lazy create: no record, state stays pending
        assert _completion(inst, item_id) is None

    def test_refusal_leaves_existing_record_pending(self, client, make_itp):
        inst = make_itp({"evidence_required": "photo"})
        item_id = inst.checklist_items[0]["id"]
        client.put(_item_url(inst, item_id, "notes"), json={"notes": "waiting on photo"})

        res = _toggle(client, inst, item_id, is_completed=True)
        assert res.status_code == 422
        assert _completion(inst, item_id).status == "pending"

    def test_override_completes(self, client, make_itp):
        inst = make_itp({"evidence_required": "photo"})
        item_id = inst.checklist_items[0]["id"]
        res = _toggle(client, inst, item_id, is_completed=True, evidence_override=True)
        assert res.status_code == 200
        assert res.get_json()["completion"]["is_completed"] is True

    def test_attachment_satisfies_gate(self, client, make_itp):
        inst = make_itp({"evidence_required": "photo"})
        item_id = inst.checklist_items[0]["id"]
        res = client.post(_item_url(inst, item_id, "attachments"), json={
            "filename": "subgrade.jpg", "file_url": "https://files.example/subgrade.jpg",
            "gps_latitude": -33.86, "gps_longitude": 151.2,
        })
        assert res.status_code == 201
        attachment = res.get_json()["attachment"]
        assert attachment["caption"] == "ITP Evidence: Item 1"

        res = _toggle(client, inst, item_id, is_completed=True)
        assert res.status_code == 200
        assert len(res.get_json()["completion"]["attachments"]) == 1

    def test_attachment_requires_url(self, client, make_itp):
        inst = make_itp({})
        res = client.post(_item_url(inst, inst.checklist_items[0]["id"], "attachments"),
                          json={"filename": "x.jpg"})
        assert res.status_code == 422

    def test_attachment_gps_range(self, client, make_itp):
        inst = make_itp({})
        res = client.post(_item_url(inst, inst.checklist_items[0]["id"], "attachments"), json={
            "filename": "x.jpg", "file_url": "https://files.example/x.jpg", "gps_latitude": 123,
        })
        assert res.status_code == 422


class TestWitnessGate:
    def test_witness_point_requires_attendance(self, client, make_itp):
        inst = make_itp({"point_type": "witness"})
        item_id = inst.checklist_items[0]["id"]
        res = _toggle(client, inst, item_id, is_completed=True)
        assert res.status_code == 422
        assert res.get_json()["code"] == "WITNESS_DATA_REQUIRED"

    def test_present_witness_needs_name(self, client, make_itp):
        inst = make_itp({"point_type": "witness"})
        res = _toggle(client, inst, inst.checklist_items[0]["id"], is_completed=True, witness_present=True)
        assert res.get_json()["code"] == "WITNESS_DATA_REQUIRED"

    def test_witness_recorded(self, client, make_itp):
        inst = make_itp({"point_type": "witness"})
        res = _toggle(client, inst, inst.checklist_items[0]["id"], is_completed=True,
                      witness_present=True, witness_name="R. Inspector", witness_company="Council")
        data = res.get_json()["completion"]
        assert data["witness_present"] is True
        assert data["witness_name"] == "R. Inspector"
        assert data["witness_company"] == "Council"

    def test_absent_witness_stores_no_name(self, client, make_itp):
        inst = make_itp({"point_type": "witness"})
        res = _toggle(client, inst, inst.checklist_items[0]["id"], is_completed=True,
                      witness_present=False, witness_name="ignored")
        data = res.get_json()["completion"]
        assert data["witness_present"] is False
        assert data["witness_name"] is None


class TestNotApplicable:
    def test_reason_required(self, client, make_itp):
        inst = make_itp({})
        res = client.post(_item_url(inst, inst.checklist_items[0]["id"], "not-applicable"), json={})
        assert res.status_code == 422
        assert res.get_json()["code"] == "REASON_REQUIRED"

    def test_mark_na_stores_reason(self, client, make_itp):
        inst = make_itp({})
        res = client.post(_item_url(inst, inst.checklist_items[0]["id"], "not-applicable"),
                          json={"reason": "No drainage in this lot"})
        data = res.get_json()["completion"]
        assert data["status"] == "not_applicable"
        assert data["is_not_applicable"] is True
        assert data["is_completed"] is False
        assert data["notes"] == "No drainage in this lot"

    def test_na_is_idempotent(self, client, make_itp):
        inst = make_itp({})
        url = _item_url(inst, inst.checklist_items[0]["id"], "not-applicable")
        client.post(url, json={"reason": "Out of scope"})
        res = client.post(url, json={"reason": "Out of scope"})
        assert res.status_code == 200
        assert ITPCompletion.query.count() == 1

    def test_na_is_terminal(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        client.post(_item_url(inst, item_id, "not-applicable"), json={"reason": "Out of scope"})
        res = _toggle(client, inst, item_id, is_completed=True)
        assert res.status_code == 409
        assert _completion(inst, item_id).status == "not_applicable"

    def test_completed_cannot_go_na(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        _toggle(client, inst, item_id, is_completed=True)
        res = client.post(_item_url(inst, item_id, "not-applicable"), json={"reason": "x"})
        assert res.status_code == 409


class TestNotes:
    def test_notes_do_not_change_state(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        _toggle(client, inst, item_id, is_completed=True)
        res = client.put(_item_url(inst, item_id, "notes"), json={"notes": "Levels within 10mm"})
        data = res.get_json()["completion"]
        assert data["status"] == "completed"
        assert data["notes"] == "Levels within 10mm"

    def test_notes_create_pending_record(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        res = client.put(_item_url(inst, item_id, "notes"), json={"notes": "Started"})
        assert res.get_json()["completion"]["status"] == "pending"
        assert _completion(inst, item_id) is not None


class TestHoldPointVerification:
    def _completed_hold_point(self, client, make_itp):
        inst = make_itp({"point_type": "hold_point"})
        item_id = inst.checklist_items[0]["id"]
        completion = _toggle(client, inst, item_id, is_completed=True).get_json()["completion"]
        return inst, item_id, completion

    def test_verify(self, client, make_itp):
        _inst, _item_id, completion = self._completed_hold_point(client, make_itp)
        res = client.post(f"{BASE}/itp/completions/{completion['id']}/verify",
                          headers={"X-User-Id": "s1", "X-User-Name": "Sue", "X-User-Role": "superintendent"})
        assert res.status_code == 200
        data = res.get_json()["completion"]
        assert data["is_verified"] is True
        assert data["verified_by"] == "Sue"
        assert data["is_completed"] is True

    def test_verify_is_idempotent(self, client, make_itp):
        _inst, _item_id, completion = self._completed_hold_point(client, make_itp)
        url = f"{BASE}/itp/completions/{completion['id']}/verify"
        first = client.post(url).get_json()["completion"]
        second = client.post(url).get_json()["completion"]
        assert first["verified_at"] == second["verified_at"]

    def test_verify_role_restricted(self, client, make_itp):
        _inst, _item_id, completion = self._completed_hold_point(client, make_itp)
        res = client.post(f"{BASE}/itp/completions/{completion['id']}/verify",
                          headers={"X-User-Id": "f1", "X-User-Role": "foreman"})
        assert res.status_code == 403

    def test_only_hold_points(self, client, make_itp):
        inst = make_itp({})
        item_id = inst.checklist_items[0]["id"]
        completion = _toggle(client, inst, item_id, is_completed=True).get_json()["completion"]
        res = client.post(f"{BASE}/itp/completions/{completion['id']}/verify")
        assert res.status_code == 422

    def test_pending_hold_point_cannot_be_verified(self, client, make_itp):
        inst = make_itp({"point_type": "hold_point"})
        item_id = inst.checklist_items[0]["id"]
        completion = client.put(_item_url(inst, item_id, "notes"), json={"notes": "x"}).get_json()["completion"]
        res = client.post(f"{BASE}/itp/completions/{completion['id']}/verify")
        assert res.status_code == 409

    def test_uncompleting_clears_verification(self, client, make_itp):
        inst, item_id, completion = self._completed_hold_point(client, make_itp)
        client.post(f"{BASE}/itp/completions/{completion['id']}/verify")
        data = _toggle(client, inst, item_id, is_completed=False).get_json()["completion"]
        assert data["is_verified"] is False
        assert data["verified_at"] is None
        db.session.expire_all()
        assert _completion(inst, item_id).is_verified is False
