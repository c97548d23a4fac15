"""Tests for the workflow HTTP endpoints."""

import asyncio

import pytest

from app.core.workflow.errors import ExecutionError
from tests.fakes import (
    SEARCH_OUTPUT,
    auth_headers,
)

GOAL = {"goal": "find 3 parks in Lisbon", "sources": ["google"]}


async def _execute(client, engine, user_id: str = "user-1", wait: bool = True) -> str:
    response = await client.post("/api/v1/workflows/execute", json=GOAL, headers=auth_headers(user_id))
    assert response.status_code == 202
    workflow_id = response.json()["workflowId"]
    if wait:
        await engine.wait(workflow_id)
    return workflow_id


class TestAuthentication:
    """Tests for bearer token handling."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        """Test requests without a token are rejected."""
        response = await client.get("/api/v1/workflows")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        """Test a malformed token is rejected."""
        response = await client.get("/api/v1/workflows", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"


class TestExecuteWorkflow:
    """Tests for planning and starting workflows."""

    @pytest.mark.asyncio
    async def test_execute_returns_plan(self, client, engine):
        """Test a goal is planned, stored, and started."""
        response = await client.post("/api/v1/workflows/execute", json=GOAL, headers=auth_headers("user-1"))

        assert response.status_code == 202
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "pending"
        assert data["totalSteps"] == 2
        assert data["usedTemplate"] is False
        assert [step["type"] for step in data["steps"]] == ["search", "summarize"]
        assert data["message"] == "Workflow started with 2 steps"

        await engine.wait(data["workflowId"])
        status = await client.get(f"/api/v1/workflows/{data['workflowId']}/status", headers=auth_headers("user-1"))
        assert status.json()["status"] == "completed"
        assert status.json()["progress"] == 100

    @pytest.mark.asyncio
    async def test_template_goal(self, client, engine):
        """Test a templated goal reports the template it used."""
        response = await client.post(
            "/api/v1/workflows/execute",
            json={"goal": "React vs Vue", "outputFormat": "comparison"},
            headers=auth_headers("user-1"),
        )

        assert response.status_code == 202
        data = response.json()
        assert data["usedTemplate"] is True
        assert data["templateId"] == "tech-comparison"
        await engine.wait(data["workflowId"])

    @pytest.mark.parametrize("goal", ["", "   "])
    @pytest.mark.asyncio
    async def test_blank_goal(self, client, goal):
        """Test a missing goal is a bad request."""
        response = await client.post(
            "/api/v1/workflows/execute",
            json={"goal": goal},
            headers=auth_headers("user-1"),
        )
        assert response.status_code == 400
        assert response.json()["detail"].startswith("goal:")

    @pytest.mark.asyncio
    async def test_unknown_template(self, client):
        """Test an unknown template id is a bad request."""
        response = await client.post(
            "/api/v1/workflows/execute",
            json={"goal": "electric cars", "templateId": "nope"},
            headers=auth_headers("user-1"),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Unknown workflow template: nope"

    @pytest.mark.asyncio
    async def test_unknown_source(self, client):
        """Test an unsupported source fails validation."""
        response = await client.post(
            "/api/v1/workflows/execute",
            json={"goal": "parks", "sources": ["altavista"]},
            headers=auth_headers("user-1"),
        )
        assert response.status_code == 400


class TestReadWorkflows:
    """Tests for listing workflows and reading status."""

    @pytest.mark.asyncio
    async def test_list_is_per_user_with_report(self, client, engine):
        """Test the list only shows the caller's runs and links reports."""
        workflow_id = await _execute(client, engine, "user-1")
        await _execute(client, engine, "user-2")

        response = await client.get("/api/v1/workflows", headers=auth_headers("user-1"))

        assert response.status_code == 200
        workflows = response.json()["workflows"]
        assert [w["id"] for w in workflows] == [workflow_id]
        assert workflows[0]["status"] == "completed"
        assert workflows[0]["report"]["title"] == workflows[0]["title"]

    @pytest.mark.asyncio
    async def test_status_not_found(self, client):
        """Test an unknown workflow is 404."""
        response = await client.get("/api/v1/workflows/missing/status", headers=auth_headers("user-1"))
        assert response.status_code == 404
        assert response.json()["detail"] == "Workflow not found"

    @pytest.mark.asyncio
    async def test_status_of_another_users_workflow(self, client, engine):
        """Test reading someone else's workflow is forbidden."""
        workflow_id = await _execute(client, engine, "user-1")

        response = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-2"))
        assert response.status_code == 403
        assert response.json()["detail"] == "Access denied"

    @pytest.mark.asyncio
    async def test_templates(self, client):
        """Test the template catalogue is listed."""
        response = await client.get("/api/v1/workflows/templates", headers=auth_headers("user-1"))

        assert response.status_code == 200
        ids = {template["id"] for template in response.json()["templates"]}
        assert "tech-comparison" in ids


class TestControlWorkflows:
    """Tests for cancel, retry, and delete."""

    @pytest.mark.asyncio
    async def test_cancel_running_workflow(self, client, engine, search_executor):
        """Test cancelling a running workflow fails it with the cancel reason."""
        search_executor.gate = asyncio.Event()
        workflow_id = await _execute(client, engine, wait=False)
        await search_executor.started.wait()

        response = await client.post(f"/api/v1/workflows/{workflow_id}/cancel", headers=auth_headers("user-1"))
        assert response.status_code == 200
        assert response.json()["message"] == "Workflow cancelled"

        search_executor.gate.set()
        await engine.wait(workflow_id)
        status = (await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))).json()
        assert status["status"] == "failed"
        assert status["errorMessage"] == "Cancelled by user"

    @pytest.mark.asyncio
    async def test_cancel_completed_workflow(self, client, engine):
        """Test a finished workflow cannot be cancelled."""
        workflow_id = await _execute(client, engine)

        response = await client.post(f"/api/v1/workflows/{workflow_id}/cancel", headers=auth_headers("user-1"))
        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot cancel workflow with status: completed"

    @pytest.mark.asyncio
    async def test_retry_failed_workflow(self, client, engine, search_executor):
        """Test a failed workflow is retried from the failed step and completes."""
        search_executor.outcomes = [ExecutionError("Web search failed with HTTP 503", retryable=True), SEARCH_OUTPUT]
        workflow_id = await _execute(client, engine)

        status = (await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))).json()
        assert status["status"] == "failed"
        assert status["failedStep"] == 0
        assert status["errorMessage"] == "Web search failed with HTTP 503"

        response = await client.post(f"/api/v1/workflows/{workflow_id}/retry", headers=auth_headers("user-1"))
        assert response.status_code == 200
        assert response.json()["message"] == "Retrying workflow from step 1"
        assert response.json()["retryFromStep"] == 0

        await engine.wait(workflow_id)
        status = (await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))).json()
        assert status["status"] == "completed"

    @pytest.mark.asyncio
    async def test_retry_requires_failed_workflow(self, client, engine):
        """Test only failed workflows can be retried."""
        workflow_id = await _execute(client, engine)

        response = await client.post(f"/api/v1/workflows/{workflow_id}/retry", headers=auth_headers("user-1"))
        assert response.status_code == 400
        assert response.json()["detail"] == "Only failed workflows can be retried"

    @pytest.mark.asyncio
    async def test_retry_another_users_workflow(self, client, engine):
        """Test ownership is checked before the retry rules."""
        workflow_id = await _execute(client, engine, "user-1")

        response = await client.post(f"/api/v1/workflows/{workflow_id}/retry", headers=auth_headers("user-2"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_delete_workflow(self, client, engine):
        """Test a deleted workflow is gone."""
        workflow_id = await _execute(client, engine)

        response = await client.delete(f"/api/v1/workflows/{workflow_id}", headers=auth_headers("user-1"))
        assert response.status_code == 200
        assert response.json()["message"] == "Workflow deleted"

        response = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_another_users_workflow(self, client, engine, search_executor):
        """Test a non-owner cannot cancel a running workflow and it keeps running."""
        search_executor.gate = asyncio.Event()
        workflow_id = await _execute(client, engine, "user-1", wait=False)
        await search_executor.started.wait()

        response = await client.post(f"/api/v1/workflows/{workflow_id}/cancel", headers=auth_headers("user-2"))
        assert response.status_code == 403
        assert response.json()["detail"] == "Access denied"

        search_executor.gate.set()
        await engine.wait(workflow_id)
        status = (await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))).json()
        assert status["status"] == "completed"

    @pytest.mark.asyncio
    async def test_delete_another_users_workflow(self, client, engine):
        """Test a non-owner cannot delete a workflow."""
        workflow_id = await _execute(client, engine, "user-1")

        response = await client.delete(f"/api/v1/workflows/{workflow_id}", headers=auth_headers("user-2"))
        assert response.status_code == 403
        assert response.json()["detail"] == "Access denied"

        response = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))
        assert response.status_code == 200

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("POST", "/api/v1/workflows/missing/cancel"),
            ("POST", "/api/v1/workflows/missing/retry"),
            ("DELETE", "/api/v1/workflows/missing"),
        ],
    )
    @pytest.mark.asyncio
    async def test_control_unknown_workflow(self, client, method, path):
        """Test controlling a workflow that does not exist is 404 for any caller."""
        response = await client.request(method, path, headers=auth_headers("user-2"))
        assert response.status_code == 404
        assert response.json()["detail"] == "Workflow not found"


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test the health endpoint reports a working database."""
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "healthy"
