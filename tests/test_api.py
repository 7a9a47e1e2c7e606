"""
HTTP surface: envelope shape, role checks and the prescribe -> verify ->
dispense flow end to end.
"""

from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm.exc import StaleDataError

from app.api.deps import get_db
from app.api.exception_handlers import register_exception_handlers
from app.core.exceptions import ConcurrentModification
from app.main import app
from app.utils.jwt import create_access_token
from app.utils.timezone import today_utc


def _auth(subject, role):
    return {"Authorization": f"Bearer {create_access_token(subject=subject, role=role)}"}


ADMIN = _auth("admin-001", "ADMIN")
DOCTOR = _auth("dr-001", "DOCTOR")
OTHER_DOCTOR = _auth("dr-002", "DOCTOR")
PHARMACIST = _auth("ph-001", "PHARMACIST")
NURSE = _auth("nu-001", "NURSE")


@pytest.fixture()
def client(session_factory):

    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _create_medicine(client, name, **extra):
    body = {"name": name, "generic_name": name, "unit_price": "1.50"}
    body.update(extra)
    r = client.post("/api/medicines", json=body, headers=ADMIN)
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _receive(client, medicine_id, qty, batch_no="LOT-1", days=200, unit_cost="0.50"):
    r = client.post("/api/inventory/batches", json={
        "medicine_id": medicine_id,
        "batch_no": batch_no,
        "expiry_date": (today_utc() + timedelta(days=days)).isoformat(),
        "quantity": qty,
        "unit_cost": unit_cost,
    }, headers=PHARMACIST)
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _prescribe(client, patient_id, *lines, headers=DOCTOR):
    return client.post("/api/prescriptions", json={
        "patient_id": patient_id,
        "lines": [{"medicine_id": m, "dosage": "1 tab", "quantity": q, "frequency": "1-0-1"}
                  for m, q in lines],
    }, headers=headers)


class TestEnvelope:

    def test_health(self, client):
        r = client.get("/")
        assert r.status_code == 200

    def test_missing_token(self, client):
        r = client.get("/api/medicines")
        assert r.status_code == 401
        body = r.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "HTTP_ERROR"

    def test_bad_token(self, client):
        r = client.get("/api/medicines", headers={"Authorization": "Bearer nonsense"})
        assert r.status_code == 401

    def test_wrong_role(self, client):
        r = client.post("/api/medicines", json={"name": "X", "generic_name": "X"}, headers=NURSE)
        assert r.status_code == 403
        assert r.json()["ok"] is False

    def test_validation_error(self, client):
        r = client.post("/api/medicines", json={"name": ""}, headers=ADMIN)
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_not_found(self, client):
        r = client.get("/api/medicines/999", headers=NURSE)
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "NOT_FOUND"

    def test_list_has_meta(self, client):
        _create_medicine(client, "Calpol")
        r = client.get("/api/medicines?q=cal", headers=NURSE)
        body = r.json()
        assert body["ok"] is True
        assert body["meta"] == {"count": 1}
        assert body["data"][0]["code"] == "MED000001"

    def test_lost_update_maps_to_conflict(self):
        bare = FastAPI()
        register_exception_handlers(bare)

        @bare.get("/stale")
        def stale():
            raise StaleDataError("UPDATE statement on table 'inventory_batches' matched 0 rows")

        @bare.get("/conflict")
        def conflict():
            raise ConcurrentModification("Record was modified by another request; reload and retry")

        with TestClient(bare) as c:
            for path in ("/stale", "/conflict"):
                r = c.get(path)
                assert r.status_code == 409
                assert r.json()["error"]["code"] == "CONCURRENT_MODIFICATION"


class TestPrescribeAndDispense:

    def test_full_flow(self, client, make_patient):
        patient = make_patient()
        med = _create_medicine(client, "Calpol", reorder_level=5)
        batch = _receive(client, med["id"], 10)
        assert batch["available_qty"] == 10
        assert batch["expiry_status"] == "Good"

        r = _prescribe(client, patient.id, (med["id"], 4))
        assert r.status_code == 201, r.text
        issued = r.json()["data"]
        rx_id = issued["prescription"]["id"]
        assert issued["prescription"]["status"] == "ACTIVE"
        qr = issued["qr_text"]

        r = client.post("/api/prescriptions/verify", json={"qr_text": qr}, headers=PHARMACIST)
        assert r.json()["data"] == {
            "valid": True,
            "expired": False,
            "dispensable": True,
            "prescription_id": rx_id,
            "status": "ACTIVE",
        }

        r = client.post(f"/api/prescriptions/{rx_id}/dispense",
                        json={"credential": {"qr_text": qr}}, headers=PHARMACIST)
        assert r.status_code == 201, r.text
        result = r.json()["data"]
        assert result["prescription_status"] == "COMPLETED"
        assert [l["quantity"] for l in result["event"]["lines"]] == [4]

        r = client.get(f"/api/inventory/medicines/{med['id']}/stock", headers=PHARMACIST)
        stock = r.json()["data"]
        assert (stock["on_hand"], stock["reserved"], stock["available"]) == (6, 0, 6)
        assert stock["stock_status"] == "Normal"

        r = client.get(f"/api/prescriptions/{rx_id}/dispense-events", headers=DOCTOR)
        assert len(r.json()["data"]) == 1

        r = client.get(f"/api/inventory/batches/{batch['id']}/movements", headers=PHARMACIST)
        assert [m["movement_type"] for m in r.json()["data"]] == ["RECEIVED", "DISPENSED"]

        r = client.get(f"/api/prescriptions/{rx_id}/pdf", headers=DOCTOR)
        assert r.status_code == 200
        assert r.headers["content-type"] == "application/pdf"
        assert r.content.startswith(b"%PDF")

    def test_safety_violation(self, client, make_patient):
        patient = make_patient(allergens=["Penicillin"])
        amox = _create_medicine(
            client, "Amoxil",
            ingredients=[{"name": "Amoxicillin", "ingredient_class": "Penicillin"}])

        r = _prescribe(client, patient.id, (amox["id"], 21))
        assert r.status_code == 422
        err = r.json()["error"]
        assert err["code"] == "SAFETY_VIOLATION"
        assert err["details"]["conflicts"][0]["type"] == "allergy"

    def test_only_doctors_prescribe(self, client, make_patient):
        patient = make_patient()
        med = _create_medicine(client, "Calpol")
        assert _prescribe(client, patient.id, (med["id"], 1), headers=PHARMACIST).status_code == 403

    def test_insufficient_stock(self, client, make_patient):
        patient = make_patient()
        med = _create_medicine(client, "Warfarin")
        _receive(client, med["id"], 2)
        issued = _prescribe(client, patient.id, (med["id"], 5)).json()["data"]

        r = client.post(f"/api/prescriptions/{issued['prescription']['id']}/dispense",
                        json={"credential": {"qr_text": issued["qr_text"]}}, headers=PHARMACIST)
        assert r.status_code == 409
        err = r.json()["error"]
        assert err["code"] == "INSUFFICIENT_STOCK"
        assert err["details"]["unavailable"][0]["available"] == 2

    def test_cancel_by_other_doctor_forbidden(self, client, make_patient):
        patient = make_patient()
        med = _create_medicine(client, "Calpol")
        rx_id = _prescribe(client, patient.id, (med["id"], 1)).json()["data"]["prescription"]["id"]

        r = client.post(f"/api/prescriptions/{rx_id}/cancel", json={"reason": "x"}, headers=OTHER_DOCTOR)
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "FORBIDDEN"

        r = client.post(f"/api/prescriptions/{rx_id}/cancel", json={"reason": "Duplicate"}, headers=DOCTOR)
        assert r.json()["data"]["status"] == "CANCELLED"

        r = client.post(f"/api/prescriptions/{rx_id}/cancel", json={"reason": "Again"}, headers=DOCTOR)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_tampered_qr_rejected(self, client, make_patient):
        patient = make_patient()
        med = _create_medicine(client, "Calpol")
        _receive(client, med["id"], 50)
        issued = _prescribe(client, patient.id, (med["id"], 5)).json()["data"]
        tampered = issued["qr_text"].replace('"quantity":5', '"quantity":50')

        r = client.post("/api/prescriptions/verify", json={"qr_text": tampered}, headers=PHARMACIST)
        assert r.json()["data"]["valid"] is False

        r = client.post(f"/api/prescriptions/{issued['prescription']['id']}/dispense",
                        json={"credential": {"qr_text": tampered}}, headers=PHARMACIST)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VERIFICATION_FAILED"

    def test_unreadable_qr_is_not_valid(self, client):
        r = client.post("/api/prescriptions/verify", json={"qr_text": "not json"}, headers=PHARMACIST)
        assert r.status_code == 200
        assert r.json()["data"] == {
            "valid": False,
            "expired": False,
            "dispensable": False,
            "prescription_id": None,
            "status": None,
        }

    def test_expiring_list(self, client, make_patient):
        patient = make_patient()
        med = _create_medicine(client, "Calpol")
        r = client.post("/api/prescriptions", json={
            "patient_id": patient.id,
            "validity_days": 3,
            "lines": [{"medicine_id": med["id"], "dosage": "1 tab", "quantity": 5}],
        }, headers=DOCTOR)
        soon = r.json()["data"]["prescription"]["id"]
        _prescribe(client, patient.id, (med["id"], 5))

        r = client.get("/api/prescriptions/expiring", headers=PHARMACIST)
        body = r.json()
        assert r.status_code == 200
        assert body["meta"] == {"count": 1}
        assert body["data"][0]["id"] == soon

        r = client.get("/api/prescriptions/expiring?days=60", headers=PHARMACIST)
        assert r.json()["meta"] == {"count": 2}


class TestInventoryEndpoints:

    def test_low_stock_and_expiring(self, client):
        med = _create_medicine(client, "Aspirin", reorder_level=20, minimum_stock=5)
        _receive(client, med["id"], 4, days=10)

        r = client.get("/api/inventory/low-stock", headers=PHARMACIST)
        rows = r.json()["data"]
        assert rows[0]["stock_status"] == "Critical"

        r = client.get("/api/inventory/expiring?days=30", headers=PHARMACIST)
        batches = r.json()["data"]
        assert batches[0]["expiry_status"] == "Expiring Soon"
        assert batches[0]["days_until_expiry"] == 10

    def test_adjust_needs_notes(self, client):
        med = _create_medicine(client, "Aspirin")
        batch = _receive(client, med["id"], 10)
        r = client.post(f"/api/inventory/batches/{batch['id']}/adjust",
                        json={"counted_qty": 8}, headers=PHARMACIST)
        assert r.status_code == 422

        r = client.post(f"/api/inventory/batches/{batch['id']}/adjust",
                        json={"counted_qty": 8, "notes": "Cycle count"}, headers=PHARMACIST)
        assert r.json()["data"]["on_hand_qty"] == 8

    def test_expire_due_admin_only(self, client):
        assert client.post("/api/inventory/expire-due", headers=PHARMACIST).status_code == 403
        r = client.post("/api/inventory/expire-due", headers=ADMIN)
        assert r.json()["data"] == {"expired_batch_ids": []}
