"""
Integration tests for the Filing Workflow API
Tests end-to-end flows using FastAPI TestClient
"""

from datetime import date, datetime, timezone

import pytest
from fastapi.testclient import TestClient

from filing_workflow.api import app
from filing_workflow.api.system import FilingSystem, get_filing_system
from filing_workflow.registry_client import MockRegistryClient, RegistrySnapshot
from filing_workflow.storage import InMemoryStorage


NOW = datetime(2025, 6, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return MockRegistryClient()


@pytest.fixture
def system(registry):
    return FilingSystem(storage=InMemoryStorage(), registry=registry, clock=lambda: NOW)


@pytest.fixture
def client(system):
    """Create a test client wired to an in-memory filing system"""
    app.dependency_overrides[get_filing_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def client_id(client):
    r = client.post("/clients", json={
        "company_name": "Acme Widgets Ltd",
        "company_number": "01234567",
        "year_end": "2024-12-31",
        "accounts_due": "2025-09-30",
        "accounting_reference_day": 31,
        "accounting_reference_month": 12,
        "vat_quarter_group": "2_5_8_11",
        "user_id": "u1",
    })
    assert r.status_code == 201
    return r.json()["client_id"]


def start(client, client_id, **extra):
    body = {"client_id": client_id, "workflow_type": "LTD", "user_id": "u1", "user_name": "Jo Bloggs"}
    body.update(extra)
    r = client.post("/workflows", json=body)
    assert r.status_code == 201
    return r.json()["workflow"]


def apply(client, workflow, target, confirmed=False, **extra):
    body = {
        "target_stage": target,
        "base_stage": workflow["current_stage"],
        "base_completed": workflow["is_completed"],
        "base_version": workflow["version"],
        "confirmed": confirmed,
        "user_id": "u1",
    }
    body.update(extra)
    return client.post(f"/workflows/{workflow['id']}/stage/apply", json=body)


class TestHealthAndCatalog:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_stage_list(self, client):
        r = client.get("/workflows/stages/vat")
        assert r.status_code == 200
        assert len(r.json()["stages"]) == 11

    def test_unknown_workflow_type(self, client):
        r = client.get("/workflows/stages/paye")
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_validate_transition(self, client):
        r = client.post("/workflows/validate-transition", json={
            "current_stage": "WAITING_FOR_YEAR_END",
            "target_stage": "PAPERWORK_RECEIVED",
            "workflow_type": "LTD",
        })
        assert r.status_code == 200
        data = r.json()
        assert data["kind"] == "skip_forward"
        assert data["skipped_stages"] == ["PAPERWORK_PENDING_CHASE", "PAPERWORK_CHASED"]

    def test_classify_reconciliation(self, client):
        r = client.post("/reconciliation/classify", json={
            "tracked": {"year_end": "2024-12-31", "accounts_due": "2025-09-30"},
            "snapshot": {"year_end": "2025-12-31", "accounts_due": "2026-09-30"},
        })
        assert r.status_code == 200
        assert r.json()["outcome"] == "FORWARD_DATES"

    def test_vat_next_filing(self, client):
        r = client.get("/vat/next-filing", params={"quarter_group": "2_5_8_11", "on": "2025-06-12"})
        assert r.status_code == 200
        assert r.json()["end"] == "2025-05-31"
        assert r.json()["filing_due"] == "2025-06-30"

    def test_vat_quarter(self, client):
        r = client.get("/vat/quarter", params={"quarter_group": "1_4_7_10", "reference": "2025-11-05"})
        assert r.status_code == 200
        assert r.json()["start"] == "2025-11-01"


class TestClientFlow:

    def test_create_and_get(self, client, client_id):
        r = client.get(f"/clients/{client_id}")
        assert r.status_code == 200
        assert r.json()["accounting_reference_date"] == {"day": 31, "month": 12}

    def test_unknown_client(self, client):
        r = client.get("/clients/missing")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "NOT_FOUND"

    def test_reference_day_without_month(self, client):
        r = client.post("/clients", json={"company_name": "Acme Ltd", "accounting_reference_day": 31})
        assert r.status_code == 400

    def test_patch_client(self, client, client_id):
        r = client.patch(f"/clients/{client_id}", json={"ltd_assigned_user_id": "u9"})
        assert r.status_code == 200
        assert r.json()["ltd_assigned_user_id"] == "u9"
        assert r.json()["version"] == 2

    def test_patch_rejects_null_name(self, client, client_id):
        r = client.patch(f"/clients/{client_id}", json={"company_name": None})
        assert r.status_code == 400

        r = client.get(f"/clients/{client_id}")
        assert r.json()["company_name"] == "Acme Widgets Ltd"
        assert r.json()["version"] == 1

    def test_refresh_registry(self, client, client_id, registry):
        registry.set_snapshot(RegistrySnapshot(
            company_number="01234567", year_end=date(2025, 12, 31), accounts_due=date(2026, 9, 30),
        ))
        r = client.post(f"/clients/{client_id}/refresh-registry", json={"user_id": "u1"})
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is True
        assert data["client"]["year_end"] == "2025-12-31"

        # Deadlines now come from the registry only
        r = client.patch(f"/clients/{client_id}", json={"year_end": "2026-03-31"})
        assert r.status_code == 400

    def test_refresh_failure_is_reported(self, client, client_id, registry):
        registry.fail_with("01234567")
        r = client.post(f"/clients/{client_id}/refresh-registry", json={})
        assert r.status_code == 200
        assert r.json()["success"] is False


class TestWorkflowFlow:

    def test_start_and_get(self, client, client_id):
        workflow = start(client, client_id)
        assert workflow["period_end"] == "2024-12-31"

        r = client.get(f"/workflows/{workflow['id']}")
        assert r.status_code == 200
        assert r.json()["progress"]["current_index"] == 0

        r = client.get(f"/clients/{client_id}/workflows", params={"workflow_type": "LTD"})
        assert [w["id"] for w in r.json()["workflows"]] == [workflow["id"]]

    def test_second_open_workflow(self, client, client_id):
        start(client, client_id)
        r = client.post("/workflows", json={"client_id": client_id, "workflow_type": "LTD",
                                            "period_end": "2025-12-31"})
        assert r.status_code == 400

    def test_propose_then_apply_skip(self, client, client_id):
        workflow = start(client, client_id)

        r = client.post(f"/workflows/{workflow['id']}/stage/propose",
                        json={"target_stage": "PAPERWORK_CHASED", "user_id": "u1"})
        assert r.status_code == 200
        proposal = r.json()
        assert proposal["requires_confirmation"] is True
        assert proposal["reasons"] == ["SKIPS_STAGES"]

        r = apply(client, workflow, "PAPERWORK_CHASED")
        assert r.status_code == 428
        assert r.json()["error"]["reasons"] == ["SKIPS_STAGES"]

        r = apply(client, workflow, "PAPERWORK_CHASED", confirmed=True)
        assert r.status_code == 200
        assert r.json()["workflow"]["current_stage"] == "PAPERWORK_CHASED"

        r = client.get(f"/workflows/{workflow['id']}/history")
        assert [h["to_stage"] for h in r.json()["history"]] == ["WAITING_FOR_YEAR_END", "PAPERWORK_CHASED"]

    def test_stale_apply_conflicts(self, client, client_id):
        workflow = start(client, client_id)
        assert apply(client, workflow, "PAPERWORK_PENDING_CHASE").status_code == 200

        r = apply(client, workflow, "PAPERWORK_CHASED", confirmed=True)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "CONCURRENCY_CONFLICT"

    def test_blocked_filing(self, client, client_id, registry):
        registry.set_snapshot(RegistrySnapshot(
            company_number="01234567", year_end=date(2024, 12, 31), accounts_due=date(2025, 9, 30),
        ))
        workflow = start(client, client_id, stage="SUBMISSION_APPROVED_PARTNER")

        r = apply(client, workflow, "FILED_TO_COMPANIES_HOUSE", confirmed=True)
        assert r.status_code == 422
        assert r.json()["error"]["reconciliation"]["outcome"] == "SAME_DATES"

    def test_acknowledged_outcome_must_still_hold(self, client, client_id, registry):
        registry.fail_with("01234567")
        workflow = start(client, client_id, stage="SUBMISSION_APPROVED_PARTNER")

        r = client.post(f"/workflows/{workflow['id']}/stage/propose",
                        json={"target_stage": "FILED_TO_COMPANIES_HOUSE", "user_id": "u1"})
        proposal = r.json()
        assert proposal["reasons"] == ["RECONCILIATION_ADVISORY"]
        assert proposal["reconciliation"]["outcome"] == "LOOKUP_FAILED"

        # Registry answers by the time the user confirms, with only the year end moved
        registry.set_snapshot(RegistrySnapshot(
            company_number="01234567", year_end=date(2025, 12, 31), accounts_due=date(2025, 9, 30),
        ))
        r = apply(client, workflow, "FILED_TO_COMPANIES_HOUSE", confirmed=True,
                  reconciliation_outcome="LOOKUP_FAILED")
        assert r.status_code == 428
        assert "DIFFERENT_DATES" in r.json()["error"]["message"]
        assert client.get(f"/workflows/{workflow['id']}").json()["workflow"]["version"] == 1

        r = apply(client, workflow, "FILED_TO_COMPANIES_HOUSE", confirmed=True,
                  reconciliation_outcome="DIFFERENT_DATES")
        assert r.status_code == 200
        assert r.json()["workflow"]["current_stage"] == "FILED_TO_COMPANIES_HOUSE"

    def test_review_approval(self, client, client_id):
        workflow = start(client, client_id, stage="DISCUSS_WITH_MANAGER")

        r = client.post(f"/workflows/{workflow['id']}/review",
                        json={"approve": True, "comments": "Fine", "user_name": "Pat Manager"})
        assert r.status_code == 200
        assert r.json()["workflow"]["current_stage"] == "REVIEWED_BY_MANAGER"

        r = client.post(f"/workflows/{workflow['id']}/review", json={"approve": True})
        assert r.status_code == 400

    def test_rollover_before_companies_house_filing(self, client, client_id, registry):
        workflow = start(client, client_id, stage="WORK_IN_PROGRESS")

        r = client.post(f"/workflows/{workflow['id']}/rollover", json={"user_id": "u1"})
        assert r.status_code == 400
        assert registry.calls == 0

        r = apply(client, workflow, "FILED_TO_HMRC", confirmed=True)
        assert r.status_code == 400

    def test_file_rollover_and_reopen(self, client, client_id, registry):
        registry.set_snapshot(RegistrySnapshot(
            company_number="01234567", year_end=date(2025, 12, 31), accounts_due=date(2026, 9, 30),
        ))
        workflow = start(client, client_id, stage="SUBMISSION_APPROVED_PARTNER")

        r = apply(client, workflow, "FILED_TO_COMPANIES_HOUSE")
        assert r.status_code == 200
        workflow = r.json()["workflow"]

        r = apply(client, workflow, "FILED_TO_HMRC")
        assert r.status_code == 200
        rollover = r.json()["rollover"]
        assert rollover["closed_workflow"]["is_completed"] is True
        assert rollover["new_workflow"]["period_start"] == "2025-01-01"
        assert rollover["new_workflow"]["current_stage"] == "WAITING_FOR_YEAR_END"

        r = client.post(f"/workflows/{workflow['id']}/reopen", json={"user_name": "Jo Bloggs"})
        assert r.status_code == 200
        assert r.json()["workflow"]["current_stage"] == "FILED_TO_COMPANIES_HOUSE"
        assert r.json()["successor_workflow_id"] == rollover["new_workflow"]["id"]

    def test_rollover_registry_failure(self, client, client_id, registry):
        registry.fail_with("01234567")
        workflow = start(client, client_id, stage="FILED_TO_COMPANIES_HOUSE")

        r = client.post(f"/workflows/{workflow['id']}/rollover", json={"user_id": "u1"})
        assert r.status_code == 503
        assert r.json()["error"]["step"] == 2

        r = client.get(f"/workflows/{workflow['id']}")
        assert r.json()["workflow"]["is_completed"] is False
