"""
SecureHealth Chain (SHC) - API Tests
Version: 1.0.0

HTTP surface: routing, X-Principal handling and error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from shc_config import SystemConfig
import shc_main_api
from shc_main_api import app

CUSTODIAN = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
PATIENT_A = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
PATIENT_B = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
DOCTOR = "0x90f79bf6eb2c4f870365e785982e1f101e93b906"

def as_principal(principal: str) -> dict:
    return {"X-Principal": principal}

@pytest.fixture
def client():
    shc_main_api.reset_app_state(SystemConfig(system_secret=b"shc-api-test", deployer=CUSTODIAN))
    return TestClient(app)

def register(client, principal=PATIENT_A, member_id="MEM1", payload="0xdata"):
    return client.post(
        "/api/v1/patients",
        json={"member_id": member_id, "payload": payload},
        headers=as_principal(principal)
    )

class TestHealthEndpoints:

    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["service"] == "SecureHealth Chain"

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["total_records"] == 0
        assert data["ledger_integrity"] == True

    def test_metrics(self, client):
        register(client)
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "shc_audit_events_total" in resp.text

    def test_metrics_gauges_follow_state(self, client):
        register(client)
        assert "shc_patients_registered 1.0" in client.get("/metrics").text

        client.post(
            "/api/v1/payments",
            json={"payment_id": "P1", "item_id": "I1", "item_type": "bill", "member_id": "MEM1", "amount": 100},
            headers=as_principal(PATIENT_A)
        )
        assert "shc_escrow_balance 100.0" in client.get("/metrics").text
        client.post("/api/v1/withdrawals", headers=as_principal(CUSTODIAN))
        assert "shc_escrow_balance 0.0" in client.get("/metrics").text

        shc_main_api.reset_app_state(SystemConfig(system_secret=b"shc-api-test", deployer=CUSTODIAN))
        assert "shc_patients_registered 0.0" in client.get("/metrics").text

    def test_rejection_labelled_by_endpoint(self, client):
        register(client, member_id="")
        text = client.get("/metrics").text
        assert 'shc_transitions_rejected_total{endpoint="/api/v1/patients",error="EmptyField"}' in text

class TestPatientEndpoints:

    def test_register_and_get(self, client):
        resp = register(client)
        assert resp.status_code == 201, resp.text
        assert resp.json()["primary_key"] == PATIENT_A

        resp = client.get(f"/api/v1/patients/{PATIENT_A}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["business_key"] == "MEM1"
        assert data["active"] == True
        assert data["provider_ref"] is None

    def test_missing_principal_header(self, client):
        resp = client.post("/api/v1/patients", json={"member_id": "MEM1", "payload": "0xdata"})
        assert resp.status_code == 422

    def test_zero_principal_rejected(self, client):
        resp = register(client, principal="0x0000000000000000000000000000000000000000")
        assert resp.status_code == 403
        assert resp.json() == {"error": "Unauthorized", "detail": "Invalid caller address"}
        assert client.get("/api/v1/member-ids/MEM1").json()["registered"] == False

    def test_empty_member_id(self, client):
        resp = register(client, member_id="")
        assert resp.status_code == 400
        assert resp.json() == {"error": "EmptyField", "detail": "Member ID cannot be empty"}

    def test_duplicate_member_id(self, client):
        register(client)
        resp = register(client, principal=PATIENT_B)
        assert resp.status_code == 409
        assert resp.json()["error"] == "DuplicateBusinessKey"

    def test_duplicate_principal(self, client):
        register(client)
        resp = register(client, member_id="MEM2")
        assert resp.status_code == 409
        assert resp.json() == {"error": "DuplicatePrimaryKey", "detail": "Patient already registered"}

    def test_unknown_patient(self, client):
        resp = client.get(f"/api/v1/patients/{PATIENT_B}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "RecordNotFound"

    def test_update_own_record(self, client):
        register(client)
        resp = client.put("/api/v1/patients/me", json={"payload": "0xnew"}, headers=as_principal(PATIENT_A))
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

    def test_update_unregistered(self, client):
        resp = client.put("/api/v1/patients/me", json={"payload": "0xnew"}, headers=as_principal(PATIENT_B))
        assert resp.status_code == 404

    def test_member_id_lookup(self, client):
        assert client.get("/api/v1/member-ids/MEM1").json()["registered"] == False
        register(client)
        data = client.get("/api/v1/member-ids/MEM1").json()
        assert data == {"member_id": "MEM1", "registered": True, "primary_key": PATIENT_A}

class TestProviderEndpoints:

    def test_authorize_and_assign(self, client):
        register(client)
        resp = client.post("/api/v1/providers", json={"principal": DOCTOR}, headers=as_principal(CUSTODIAN))
        assert resp.status_code == 201

        resp = client.post(
            f"/api/v1/patients/{PATIENT_A}/provider",
            json={"provider": DOCTOR},
            headers=as_principal(CUSTODIAN)
        )
        assert resp.status_code == 200
        assert client.get(f"/api/v1/patients/{PATIENT_A}").json()["provider_ref"] == DOCTOR

    def test_authorize_forbidden(self, client):
        resp = client.post("/api/v1/providers", json={"principal": DOCTOR}, headers=as_principal(PATIENT_A))
        assert resp.status_code == 403
        assert resp.json() == {"error": "Unauthorized", "detail": "Only custodian can perform this action"}

    def test_assign_unauthorized_target(self, client):
        register(client)
        resp = client.post(
            f"/api/v1/patients/{PATIENT_A}/provider",
            json={"provider": DOCTOR},
            headers=as_principal(CUSTODIAN)
        )
        assert resp.status_code == 403
        assert resp.json() == {"error": "UnauthorizedTarget", "detail": "Not an authorized provider"}

class TestPaymentEndpoints:

    def pay(self, client, payment_id="P1", item_id="I1", amount=100, principal=PATIENT_A):
        return client.post(
            "/api/v1/payments",
            json={
                "payment_id": payment_id,
                "item_id": item_id,
                "item_type": "bill",
                "member_id": "MEM1",
                "amount": amount
            },
            headers=as_principal(principal)
        )

    def test_payment_and_stats(self, client):
        assert self.pay(client).status_code == 201

        stats = client.get("/api/v1/payments/stats").json()
        assert stats == {"count_processed": 1, "amount_processed": 100, "balance": 100}

        payment = client.get("/api/v1/payments/P1").json()
        assert payment["payer"] == PATIENT_A
        assert payment["completed"] == True

    def test_zero_amount(self, client):
        resp = self.pay(client, amount=0)
        assert resp.status_code == 400
        assert resp.json()["error"] == "InsufficientPayment"

    def test_already_paid(self, client):
        self.pay(client)
        resp = self.pay(client, payment_id="P2")
        assert resp.status_code == 409
        assert resp.json() == {"error": "AlreadyPaid", "detail": "Item already paid"}

    def test_unknown_payment(self, client):
        assert client.get("/api/v1/payments/missing").status_code == 404

    def test_withdraw(self, client):
        self.pay(client)
        assert client.post("/api/v1/withdrawals", headers=as_principal(PATIENT_A)).status_code == 403

        resp = client.post("/api/v1/withdrawals", headers=as_principal(CUSTODIAN))
        assert resp.status_code == 200
        assert resp.json() == {"recipient": CUSTODIAN, "amount": 100}
        assert client.get("/api/v1/payments/stats").json()["balance"] == 0

class TestAuditEndpoint:

    def test_events_in_order(self, client):
        register(client)
        register(client, principal=PATIENT_B, member_id="MEM2")

        events = client.get("/api/v1/events").json()
        assert [e["sequence"] for e in events] == [1, 2]
        assert {e["kind"] for e in events} == {"PatientRegistered"}

    def test_filter_by_kind(self, client):
        register(client)
        assert client.get("/api/v1/events", params={"kind": "PaymentProcessed"}).json() == []

    def test_unknown_kind(self, client):
        assert client.get("/api/v1/events", params={"kind": "PaymentRefunded"}).status_code == 400

class TestDirectoryEndpoints:

    def enroll(self, client, principal=PATIENT_A, member_id="MEM1", name="Alice Doe"):
        return client.post(
            "/api/v1/directory/patients",
            json={
                "member_id": member_id,
                "patient_name": name,
                "date_of_birth": "1990-05-17",
                "blood_type": "O+"
            },
            headers=as_principal(principal)
        )

    def test_enroll_and_find(self, client):
        resp = self.enroll(client)
        assert resp.status_code == 201, resp.text
        assert resp.json()["registration_status"] == "confirmed"

        assert client.get("/api/v1/directory/patients/MEM1").json()["patient_name"] == "Alice Doe"
        assert client.get("/api/v1/member-ids/MEM1").json()["registered"] == True

    def test_enroll_missing_fields(self, client):
        resp = client.post(
            "/api/v1/directory/patients",
            json={"member_id": "MEM1"},
            headers=as_principal(PATIENT_A)
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "DirectoryError", "detail": "All fields are required"}

    def test_list_and_search(self, client):
        self.enroll(client)
        self.enroll(client, principal=PATIENT_B, member_id="MEM2", name="Bob Roe")

        listing = client.get("/api/v1/directory/patients", params={"limit": 1}).json()
        assert listing["pagination"]["total"] == 2
        assert len(listing["patients"]) == 1

        results = client.get("/api/v1/directory/patients/search", params={"q": "bob"}).json()
        assert [p["member_id"] for p in results] == ["MEM2"]
        assert client.get("/api/v1/directory/patients/search", params={"q": "b"}).status_code == 400

    def test_update_and_deactivate(self, client):
        self.enroll(client)
        resp = client.put(
            "/api/v1/directory/patients/MEM1",
            json={"emergency_contact": {"name": "Carol", "phone": "555-0100"}}
        )
        assert resp.json()["emergency_contact"] == {"name": "Carol", "phone": "555-0100"}

        resp = client.delete("/api/v1/directory/patients/MEM1", params={"reason": "moved"})
        assert resp.status_code == 200
        assert client.get("/api/v1/directory/patients/MEM1").json()["registration_status"] == "inactive"

    def test_unknown_profile(self, client):
        assert client.get("/api/v1/directory/patients/NOPE").status_code == 404

    def test_stats_and_events(self, client):
        self.enroll(client)
        stats = client.get("/api/v1/directory/stats").json()
        assert stats["total_patients"] == 1
        assert stats["blood_type_distribution"] == {"O+": 1}

        events = client.get("/api/v1/directory/events", params={"type": "registration:success"}).json()
        assert events[0]["member_id"] == "MEM1"
