"""
API integration tests for the approval and template endpoints
"""

import pytest
from fastapi.testclient import TestClient

from procurement_approvals.api_modular import create_app


@pytest.fixture
def client(engine):
    """Test client bound to the in-memory engine"""
    return TestClient(create_app(engine))


def as_user(user_id):
    return {"X-Actor-Id": user_id}


def start_vendor(client, entity_id="42"):
    response = client.post(
        "/approvals/start",
        json={"entity_type": "VENDOR", "entity_id": entity_id, "template_id": "default-vendor"},
        headers=as_user("7")
    )
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoints:

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_api_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "approvals" in response.json()["endpoints"]


class TestApprovalEndpoints:
    """Test the approval workflow endpoints"""

    def test_start_workflow(self, client):
        data = start_vendor(client)

        assert data["status"] == "IN_PROGRESS"
        assert data["current_step_index"] == 1
        assert data["initiator_id"] == "7"
        assert len(data["steps"]) == 3
        assert data["steps"][0]["approver_id"] == "officer-1"

        again = start_vendor(client)
        assert again["id"] == data["id"]

    def test_start_selects_template(self, client):
        response = client.post(
            "/approvals/start",
            json={"entity_type": "CONTRACT", "entity_id": "C-1", "entity_data": {"value": 5000}},
            headers=as_user("7")
        )

        assert response.status_code == 201
        assert response.json()["workflow_id"] == "default-contract"

    def test_missing_actor_header(self, client):
        response = client.post(
            "/approvals/start",
            json={"entity_type": "VENDOR", "entity_id": "1", "template_id": "default-vendor"}
        )
        assert response.status_code == 401

    def test_invalid_entity_type(self, client):
        response = client.post(
            "/approvals/start",
            json={"entity_type": "SPACESHIP", "entity_id": "1", "template_id": "default-vendor"},
            headers=as_user("7")
        )
        assert response.status_code == 400

    def test_unknown_template(self, client):
        response = client.post(
            "/approvals/start",
            json={"entity_type": "VENDOR", "entity_id": "1", "template_id": "nope"},
            headers=as_user("7")
        )
        assert response.status_code == 404

    def test_approve_and_reject(self, client):
        instance = start_vendor(client)
        step1 = instance["steps"][0]["id"]

        response = client.post(
            f"/approvals/{instance['id']}/steps/{step1}/approve",
            json={"comments": "ok", "signature_data": {"sig": "abc"}},
            headers=as_user("officer-1")
        )
        assert response.status_code == 200
        assert response.json()["current_step_index"] == 2

        step2 = response.json()["steps"][1]["id"]
        response = client.post(
            f"/approvals/{instance['id']}/steps/{step2}/reject",
            json={"comments": "incomplete documents"},
            headers=as_user("manager-1")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "REJECTED"

        # already decided
        response = client.post(
            f"/approvals/{instance['id']}/steps/{step2}/approve",
            json={}, headers=as_user("manager-1")
        )
        assert response.status_code == 409

    def test_stale_version_conflicts(self, client):
        instance = start_vendor(client)
        step = instance["steps"][0]

        response = client.post(
            f"/approvals/steps/{step['id']}/decision",
            json={"decision": "APPROVE", "expected_version": step["version"]},
            headers=as_user("officer-1")
        )
        assert response.status_code == 200

        response = client.post(
            f"/approvals/{instance['id']}/steps/{step['id']}/reject",
            json={"expected_version": step["version"]},
            headers=as_user("officer-1")
        )
        assert response.status_code == 409
        assert "modified concurrently" in response.json()["detail"]

    def test_wrong_approver_forbidden(self, client):
        instance = start_vendor(client)
        step1 = instance["steps"][0]["id"]

        response = client.post(
            f"/approvals/steps/{step1}/decision",
            json={"decision": "APPROVE"},
            headers=as_user("someone-else")
        )
        assert response.status_code == 403

    def test_decision_endpoint(self, client):
        instance = start_vendor(client)
        step1 = instance["steps"][0]["id"]

        response = client.post(
            f"/approvals/steps/{step1}/decision",
            json={"decision": "APPROVE", "comments": "fine"},
            headers=as_user("officer-1")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "APPROVED"

    def test_escalate(self, client):
        instance = start_vendor(client)
        step1 = instance["steps"][0]["id"]

        response = client.post(
            f"/approvals/steps/{step1}/escalate",
            json={"reason": "no response in 24h"},
            headers=as_user("ops-1")
        )
        assert response.status_code == 200
        data = response.json()
        assert data["escalated_step"]["status"] == "ESCALATED"
        assert data["new_step"]["required_role"] == 2
        assert data["new_step"]["approver_id"] == "manager-1"

    def test_status_progress_and_pending(self, client):
        instance = start_vendor(client)

        response = client.get(f"/approvals/status/{instance['id']}")
        assert response.status_code == 200
        assert response.json()["template"]["id"] == "default-vendor"

        response = client.get(f"/approvals/progress/{instance['id']}")
        assert response.status_code == 200
        assert response.json()["completion_percentage"] == 0

        response = client.get("/approvals/pending", headers=as_user("officer-1"))
        assert response.json()["count"] == 1

        assert client.get("/approvals/status/missing").status_code == 404

    def test_instances_and_entities(self, client):
        instance = start_vendor(client)

        response = client.get("/approvals/instances", params={"status": "in_progress"})
        assert response.json()["count"] == 1

        response = client.get("/approvals/entities/VENDOR/42")
        assert response.json()["id"] == instance["id"]

        assert client.get("/approvals/entities/VENDOR/43").status_code == 404

        response = client.post(
            "/approvals/entities/VENDOR/42/reset",
            json={"template_id": "default-rfq"},
            headers=as_user("7")
        )
        assert response.status_code == 201
        assert response.json()["id"] != instance["id"]

    def test_sla_breaches(self, client, clock):
        start_vendor(client)
        assert client.get("/approvals/sla/breaches").json()["count"] == 0

        clock.advance(hours=25)
        assert client.get("/approvals/sla/breaches").json()["count"] == 1


class TestTemplateEndpoints:
    """Test the workflow template endpoints"""

    template_body = {
        "name": "High Value Contracts",
        "entity_category": "CONTRACT",
        "conditions": [{"type": "VALUE_THRESHOLD", "threshold": 100000}],
        "steps": [
            {"sequence": 1, "required_role": "OFFICER", "name": "Legal Review", "sla_hours": 24},
            {"sequence": 2, "required_role": 1, "name": "Director Approval"},
        ]
    }

    def test_create_and_get(self, client):
        response = client.post("/templates", json=self.template_body, headers=as_user("admin"))
        assert response.status_code == 201
        template_id = response.json()["template_id"]

        response = client.get(f"/templates/{template_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["created_by"] == "admin"
        assert data["conditions"] == [{"type": "VALUE_THRESHOLD", "threshold": "100000"}]
        assert [s["required_role"] for s in data["steps"]] == [3, 1]

        assert client.get("/templates", params={"entity_type": "CONTRACT"}).json()["count"] == 1

    def test_builtin_template_visible(self, client):
        response = client.get("/templates/default-rfq")
        assert response.status_code == 200
        assert response.json()["is_builtin"] is True

        assert client.get("/templates/missing").status_code == 404

    def test_invalid_template(self, client):
        body = dict(self.template_body, steps=[
            {"sequence": 1, "required_role": "OFFICER"},
            {"sequence": 3, "required_role": "MANAGER"},
        ])
        response = client.post("/templates", json=body, headers=as_user("admin"))
        assert response.status_code == 400

        body = dict(self.template_body, conditions=[{"type": "MOON_PHASE"}])
        response = client.post("/templates", json=body, headers=as_user("admin"))
        assert response.status_code == 400

    def test_update_referenced_template_creates_revision(self, client):
        template_id = client.post(
            "/templates", json=self.template_body, headers=as_user("admin")
        ).json()["template_id"]
        client.post(
            "/approvals/start",
            json={"entity_type": "CONTRACT", "entity_id": "C-7", "template_id": template_id},
            headers=as_user("7")
        )

        response = client.put(
            f"/templates/{template_id}", json={"name": "High Value Contracts v2"},
            headers=as_user("admin")
        )
        assert response.status_code == 200
        assert response.json()["supersedes"] == template_id

        assert client.delete(f"/templates/{template_id}").status_code == 409

    def test_activate_deactivate_delete(self, client):
        template_id = client.post(
            "/templates", json=self.template_body, headers=as_user("admin")
        ).json()["template_id"]

        assert client.post(f"/templates/{template_id}/deactivate").json()["is_active"] is False
        assert client.post(f"/templates/{template_id}/activate").json()["is_active"] is True

        assert client.delete(f"/templates/{template_id}").status_code == 204
        assert client.delete(f"/templates/{template_id}").status_code == 404

    def test_seed_defaults(self, client):
        response = client.post("/templates/seed-defaults", headers=as_user("admin"))
        assert response.json() == {"created": 3, "total": 3}

        response = client.post("/templates/seed-defaults", headers=as_user("admin"))
        assert response.json()["created"] == 0
