"""
Tests for the HTTP layer.

Test Coverage:
1. Bearer token -> Actor, rejection of bad tokens
2. Lifecycle errors rendered as {kind, detail} with stable status codes
3. Case, bid, SLA and audit endpoints end to end
4. Internal scheduler endpoints guarded by X-Internal-Key
"""
import csv
import io

import pytest
from fastapi.testclient import TestClient

from app.auth import create_access_token
from app.database import get_db
from app.dependencies import get_audit_recorder, get_clock, get_notifier
from app.main import app


@pytest.fixture
def client(session_factory, clock, audit, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_audit_recorder] = lambda: audit
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(role, user_id=None):
    token = create_access_token(user_id or f"{role}-1", role, name=f"{role.title()} One")
    return {"Authorization": f"Bearer {token}"}


def advance(client, case_id, *steps, role="ops"):
    response = None
    for status in steps:
        response = client.post(f"/cases/{case_id}/status", json={"status": status}, headers=auth(role))
        assert response.status_code == 200, response.json()
    return response.json()


def create_case(client, **body):
    response = client.post("/cases", json=body, headers=auth("ops"))
    assert response.status_code == 201, response.json()
    return response.json()


def bidding_case(client):
    case = create_case(client, status="READY_FOR_COMPANY_REVIEW")
    advance(client, case["id"], "EPC_VERIFIED", "RMT_QUEUE")
    advance(client, case["id"], "RMT_DOCUMENT_REVIEW", "RMT_RISK_ANALYSIS", "RMT_APPROVED", role="rmt")
    advance(client, case["id"], "CWCAF_READY")
    return case


# =============================================================================
# TEST: AUTHENTICATION
# =============================================================================

class TestAuthentication:

    def test_missing_token(self, client):
        assert client.get("/cases").status_code in (401, 403)

    def test_garbage_token(self, client):
        response = client.get("/cases", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_role(self, client):
        assert client.get("/cases", headers=auth("auditor")).status_code == 401

    def test_system_role_is_not_a_login(self, client):
        assert client.get("/cases", headers=auth("system")).status_code == 401

    def test_health_is_public(self, client):
        assert client.get("/health").json()["status"] == "healthy"


# =============================================================================
# TEST: CASES
# =============================================================================

class TestCaseEndpoints:

    def test_create_and_get(self, client):
        created = create_case(client, deal_value=500000, epc_id="epc-9")

        response = client.get(f"/cases/{created['id']}", headers=auth("nbfc"))

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "LEAD_CREATED"
        assert body["epc_id"] == "epc-9"
        assert body["status_history"][0]["changed_by_role"] == "ops"

    def test_create_forbidden_for_external_role(self, client):
        response = client.post("/cases", json={}, headers=auth("epc"))
        assert response.status_code == 403
        assert response.json()["kind"] == "Forbidden"

    def test_unknown_case(self, client):
        response = client.get("/cases/missing", headers=auth("ops"))
        assert response.status_code == 404
        assert response.json() == {"kind": "NotFound", "detail": "Case missing not found"}

    def test_transition(self, client):
        case = create_case(client)
        body = advance(client, case["id"], "CREDENTIALS_CREATED")
        assert body["status"] == "CREDENTIALS_CREATED"
        assert body["version"] > case["version"]

    def test_invalid_edge_is_422(self, client):
        case = create_case(client)
        response = client.post(f"/cases/{case['id']}/status", json={"status": "DISBURSED"}, headers=auth("ops"))
        assert response.status_code == 422
        assert response.json()["kind"] == "InvalidTransition"

    def test_wrong_role_is_403(self, client):
        case = create_case(client, status="READY_FOR_COMPANY_REVIEW")
        response = client.post(f"/cases/{case['id']}/status", json={"status": "EPC_VERIFIED"},
                               headers=auth("nbfc"))
        assert response.status_code == 403
        assert response.json()["kind"] == "Forbidden"

    def test_stale_version_is_409(self, client):
        case = create_case(client)
        advance(client, case["id"], "CREDENTIALS_CREATED")

        response = client.post(
            f"/cases/{case['id']}/status",
            json={"status": "DOCS_SUBMITTED", "version": case["version"]},
            headers=auth("ops"),
        )
        assert response.status_code == 409
        assert response.json()["kind"] == "Conflict"

    def test_unknown_status_value_is_rejected(self, client):
        case = create_case(client)
        response = client.post(f"/cases/{case['id']}/status", json={"status": "FUNDED"}, headers=auth("ops"))
        assert response.status_code == 422

    def test_allowed_transitions(self, client):
        case = create_case(client, status="READY_FOR_COMPANY_REVIEW")

        epc_view = client.get(f"/cases/{case['id']}/transitions", headers=auth("epc")).json()
        nbfc_view = client.get(f"/cases/{case['id']}/transitions", headers=auth("nbfc")).json()

        assert sorted(epc_view["allowed_targets"]) == ["EPC_REJECTED", "EPC_VERIFIED"]
        assert nbfc_view["allowed_targets"] == []

    def test_list_filters_by_status(self, client):
        create_case(client)
        create_case(client, status="READY_FOR_COMPANY_REVIEW")

        body = client.get("/cases", params={"status": "READY_FOR_COMPANY_REVIEW"}, headers=auth("ops")).json()
        assert [c["status"] for c in body["cases"]] == ["READY_FOR_COMPANY_REVIEW"]

    def test_risk_assessment(self, client):
        case = create_case(client, status="READY_FOR_COMPANY_REVIEW")
        advance(client, case["id"], "EPC_VERIFIED", "RMT_QUEUE")
        advance(client, case["id"], "RMT_DOCUMENT_REVIEW", "RMT_RISK_ANALYSIS", role="rmt")

        response = client.post(
            f"/cases/{case['id']}/risk-assessment",
            json={"risk_score": 35, "risk_level": "LOW", "recommendation": "approve"},
            headers=auth("rmt"),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "RMT_APPROVED"
        assert response.json()["risk_assessment"]["riskScore"] == 35


# =============================================================================
# TEST: BIDS
# =============================================================================

class TestBidEndpoints:

    def test_bid_and_lock(self, client, notifier):
        case = bidding_case(client)

        placed = client.post(
            "/bids",
            json={"case_id": case["id"], "bid_amount": 500000, "funding_duration_days": 30},
            headers=auth("nbfc"),
        )
        assert placed.status_code == 201
        bid = placed.json()
        assert len(notifier.of("bid_placed")) == 1

        self_accept = client.post(f"/bids/{bid['id']}/accept", headers=auth("nbfc"))
        assert self_accept.status_code == 403

        accepted = client.post(f"/bids/{bid['id']}/accept", headers=auth("ops"))
        assert accepted.status_code == 200
        locked = accepted.json()["case"]
        assert locked["status"] == "COMMERCIAL_LOCKED"
        assert locked["locked_terms"]["finalAmount"] == 500000
        assert locked["locked_terms"]["finalDuration"] == 30

        again = client.post(f"/bids/{bid['id']}/accept", headers=auth("ops"))
        assert again.status_code == 409
        assert again.json()["kind"] == "AlreadyLocked"

    def test_bid_outside_bidding_stage(self, client):
        case = create_case(client)
        response = client.post(
            "/bids",
            json={"case_id": case["id"], "bid_amount": 100000, "funding_duration_days": 30},
            headers=auth("nbfc"),
        )
        assert response.status_code == 422
        assert response.json()["kind"] == "InvalidStage"

    def test_negotiate_withdraw_and_list(self, client):
        case = bidding_case(client)
        bid = client.post(
            "/bids",
            json={"case_id": case["id"], "bid_amount": 450000, "funding_duration_days": 45},
            headers=auth("nbfc"),
        ).json()

        countered = client.post(
            f"/bids/{bid['id']}/negotiate",
            json={"counter_amount": 470000, "counter_duration": 40, "message": "Closer to ask"},
            headers=auth("subcontractor"),
        )
        assert countered.status_code == 200
        assert client.get(f"/cases/{case['id']}", headers=auth("ops")).json()["status"] == "NEGOTIATION_IN_PROGRESS"

        withdrawn = client.post(f"/bids/{bid['id']}/withdraw", json={"notes": "Limit reached"},
                                headers=auth("nbfc"))
        assert withdrawn.json()["status"] == "WITHDRAWN"

        mine = client.get("/bids/mine", headers=auth("nbfc")).json()
        listed = client.get(f"/bids/case/{case['id']}", headers=auth("ops")).json()
        assert mine["count"] == 1
        assert listed["bids"][0]["status"] == "WITHDRAWN"


# =============================================================================
# TEST: SLA AND AUDIT
# =============================================================================

class TestSlaEndpoints:

    def test_dashboard_requires_management(self, client):
        assert client.get("/sla/dashboard", headers=auth("nbfc")).status_code == 403
        assert client.get("/sla/dashboard", headers=auth("ops")).status_code == 200

    def test_trackers_for_case_and_milestone(self, client):
        case = create_case(client, status="READY_FOR_COMPANY_REVIEW")

        trackers = client.get(f"/sla/case/{case['id']}", headers=auth("ops")).json()["trackers"]
        assert [t["sla_class"] for t in trackers] == ["EPC_VALIDATION"]

        response = client.post(f"/sla/{trackers[0]['id']}/milestones/day3/complete", headers=auth("ops"))
        assert response.status_code == 200
        assert response.json()["milestones"]["day3"]["status"] == "COMPLETED"

    def test_create_tracker(self, client):
        response = client.post(
            "/sla",
            json={"entity_type": "BILL", "entity_id": "bill-7", "sla_class": "BILL_VERIFICATION"},
            headers=auth("ops"),
        )
        assert response.status_code == 201
        assert response.json()["status"] == "ACTIVE"

        denied = client.post(
            "/sla",
            json={"entity_type": "BILL", "entity_id": "bill-8", "sla_class": "BILL_VERIFICATION"},
            headers=auth("epc"),
        )
        assert denied.status_code == 403


class TestAuditEndpoints:

    def test_logs_require_auditor(self, client):
        assert client.get("/audit/logs", headers=auth("rmt")).status_code == 403

    def test_entity_history(self, client):
        case = create_case(client)
        advance(client, case["id"], "CREDENTIALS_CREATED")

        body = client.get(f"/audit/entity/Case/{case['id']}", headers=auth("admin")).json()
        assert body["pagination"]["total"] == 2
        assert {log["action"] for log in body["logs"]} == {"CASE_CREATE", "CASE_STATUS_CHANGE"}

    def test_csv_export(self, client):
        create_case(client)

        response = client.get("/audit/export", params={"format": "csv"}, headers=auth("founder"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0][3] == "Action"
        assert rows[1][3] == "CASE_CREATE"

    def test_bad_export_format(self, client):
        response = client.get("/audit/export", params={"format": "xml"}, headers=auth("ops"))
        assert response.status_code == 422


# =============================================================================
# TEST: INTERNAL SCHEDULER ENDPOINTS
# =============================================================================

class TestInternalEndpoints:

    def test_missing_key(self, client):
        assert client.post("/internal/sla-tick").status_code == 422

    def test_wrong_key(self, client):
        response = client.post("/internal/sla-tick", headers={"X-Internal-Key": "guess"})
        assert response.status_code == 403

    def test_sla_tick(self, client, clock):
        create_case(client, status="READY_FOR_COMPANY_REVIEW")
        clock.advance(days=3, minutes=1)

        response = client.post("/internal/sla-tick", headers={"X-Internal-Key": "test-internal-key"})

        assert response.status_code == 200
        assert response.json()["changed"] == 1

    def test_trigger_all(self, client):
        response = client.post("/internal/trigger-all", headers={"X-Internal-Key": "test-internal-key"})
        assert set(response.json()) == {"run_date", "sla_tick", "dormancy_sweep"}
