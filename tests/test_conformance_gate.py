"""
Lot conformance gate: advisory evaluation plus the conform commit.

Prerequisites: ITP assigned, every item completed or N/A, a verified passing
test result, and no open NCRs.
"""

import itertools

import pytest

from itp_tracker.models import db
from itp_tracker.models.ncr import NCR
from itp_tracker.models.test_result import TestResult
from itp_tracker.services import conformance_service

BASE = "/api/v1"
QM = {"X-User-Id": "qm1", "X-User-Name": "Quinn QM", "X-User-Role": "quality_manager"}


def _make_passing_test(lot, status="verified"):
    result = TestResult(lot_id=lot.id, test_type="Compaction", pass_fail="pass", status=status)
    db.session.add(result)
    db.session.commit()
    return result


def _make_ncr(lot, status="open", number="NCR-0001"):
    ncr = NCR(project_id=lot.project_id, lot_id=lot.id, ncr_number=number, description="Rutting",
              category="workmanship", severity="minor", status=status)
    db.session.add(ncr)
    db.session.commit()
    return ncr


def _finish_all(client, inst):
    """Complete the first two items and mark the third N/A."""
    base = f"{BASE}/itp/instances/{inst.id}/items"
    items = inst.checklist_items
    client.post(f"{base}/{items[0]['id']}/toggle", json={"is_completed": True})
    client.post(f"{base}/{items[1]['id']}/toggle", json={"is_completed": True})
    client.post(f"{base}/{items[2]['id']}/not-applicable", json={"reason": "No services in lot"})


class TestEvaluate:
    def test_all_prerequisites_met(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        _make_passing_test(lot)

        res = client.get(f"{BASE}/lots/{lot.id}/conformance")
        assert res.status_code == 200
        body = res.get_json()
        assert body["can_conform"] is True
        assert body["blocking_reasons"] == []
        assert body["prerequisites"]["itp_completed_count"] == 3
        assert body["prerequisites"]["itp_total_count"] == 3

    def test_open_ncr_is_named(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        _make_passing_test(lot)
        _make_ncr(lot, status="investigating")

        body = client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()
        assert body["can_conform"] is False
        assert body["prerequisites"]["no_open_ncrs"] is False
        assert any("NCR-0001" in reason for reason in body["blocking_reasons"])

    def test_closed_concession_does_not_block(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        _make_passing_test(lot)
        _make_ncr(lot, status="closed_concession")
        assert client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()["can_conform"] is True

    def test_no_itp(self, client, lot):
        body = client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()
        assert body["can_conform"] is False
        assert "No ITP assigned to this lot" in body["blocking_reasons"]

    def test_incomplete_checklist(self, client, make_itp, lot):
        inst = make_itp({}, {})
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{inst.checklist_items[0]['id']}/toggle",
                    json={"is_completed": True})
        _make_passing_test(lot)
        body = client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()
        assert "ITP checklist incomplete (1/2 items completed)" in body["blocking_reasons"]

    def test_failed_item_is_not_finished(self, client, make_itp, lot):
        inst = make_itp({})
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{inst.checklist_items[0]['id']}/fail",
                    json={"description": "Soft spot", "category": "materials", "severity": "minor"})
        body = client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()
        assert body["prerequisites"]["itp_completed"] is False

    def test_unverified_test_does_not_count(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        _make_passing_test(lot, status="entered")
        body = client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()
        assert body["blocking_reasons"] == ["No passing verified test result"]

    def test_evaluate_does_not_mutate(self, client, make_itp, lot):
        make_itp({})
        client.get(f"{BASE}/lots/{lot.id}/conformance")
        client.get(f"{BASE}/lots/{lot.id}/conformance")
        db.session.expire_all()
        assert lot.status == "not_started"

    def test_unknown_lot(self, client):
        assert client.get(f"{BASE}/lots/999/conformance").status_code == 404


class TestDecide:
    _BASE = {
        "itp_assigned": True,
        "itp_completed": True,
        "itp_completed_count": 1,
        "itp_total_count": 1,
        "has_passing_test": True,
        "no_open_ncrs": True,
        "open_ncrs": [],
    }

    @pytest.mark.parametrize("flags", list(itertools.product([True, False], repeat=3)))
    def test_reasons_empty_exactly_when_conformable(self, flags):
        completed, tested, clear = flags
        prereqs = dict(self._BASE, itp_completed=completed, has_passing_test=tested, no_open_ncrs=clear)
        can_conform, reasons = conformance_service.decide(prereqs)
        assert can_conform == all(flags)
        assert (reasons == []) == can_conform

    def test_resolving_a_blocker_never_adds_one(self):
        blocked = dict(self._BASE, has_passing_test=False, no_open_ncrs=False)
        _, before = conformance_service.decide(blocked)
        _, after = conformance_service.decide(dict(blocked, has_passing_test=True))
        assert set(after) <= set(before)
        assert len(after) == len(before) - 1


class TestConformCommit:
    def test_conform_when_gate_passes(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        _make_passing_test(lot)

        res = client.post(f"{BASE}/lots/{lot.id}/conform", headers=QM)
        assert res.status_code == 200
        body = res.get_json()["lot"]
        assert body["status"] == "conformed"
        assert body["conformed_by"] == "Quinn QM"

    def test_blocked_conform_returns_reasons(self, client, make_itp, lot):
        make_itp({})
        res = client.post(f"{BASE}/lots/{lot.id}/conform", headers=QM)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFORMANCE_BLOCKED"
        assert "No passing verified test result" in body["details"]["blocking_reasons"]
        db.session.expire_all()
        assert lot.status != "conformed"

    def test_conform_role_restricted(self, client, lot):
        res = client.post(f"{BASE}/lots/{lot.id}/conform",
                          headers={"X-User-Id": "f1", "X-User-Role": "foreman"})
        assert res.status_code == 403

    def test_conformed_lot_is_locked_for_progression(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        _make_passing_test(lot)
        client.post(f"{BASE}/lots/{lot.id}/conform", headers=QM)

        item_id = inst.checklist_items[0]["id"]
        client.post(f"{BASE}/itp/instances/{inst.id}/items/{item_id}/toggle", json={"is_completed": False})
        db.session.expire_all()
        assert lot.status == "conformed"


class TestTestResultsApi:
    def _record(self, client, lot, **overrides):
        payload = {"test_type": "Compaction", "pass_fail": "pass", **overrides}
        return client.post(f"{BASE}/lots/{lot.id}/test-results", json=payload)

    def test_recorded_then_verified_result_unblocks_gate(self, client, make_itp, lot):
        inst = make_itp({}, {}, {})
        _finish_all(client, inst)
        res = self._record(client, lot)
        assert res.status_code == 201
        result_id = res.get_json()["test_result"]["id"]
        assert client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()["can_conform"] is False

        res = client.post(f"{BASE}/test-results/{result_id}/verify", headers=QM)
        assert res.status_code == 200
        body = res.get_json()["test_result"]
        assert body["status"] == "verified"
        assert body["verified_by"] == "Quinn QM"
        assert client.get(f"{BASE}/lots/{lot.id}/conformance").get_json()["can_conform"] is True

    def test_pending_outcome_cannot_be_verified(self, client, lot):
        result_id = self._record(client, lot, pass_fail="pending").get_json()["test_result"]["id"]
        res = client.post(f"{BASE}/test-results/{result_id}/verify", headers=QM)
        assert res.status_code == 422

    def test_cannot_record_as_verified(self, client, lot):
        assert self._record(client, lot, status="verified").status_code == 422

    def test_missing_test_type(self, client, lot):
        assert self._record(client, lot, test_type="  ").status_code == 422

    def test_list(self, client, lot):
        self._record(client, lot)
        self._record(client, lot, test_type="Proof roll", pass_fail="fail")
        res = client.get(f"{BASE}/lots/{lot.id}/test-results")
        assert [r["test_type"] for r in res.get_json()["test_results"]] == ["Compaction", "Proof roll"]
