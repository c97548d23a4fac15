"""Tests for the report HTTP endpoints."""

import asyncio

import pytest

from tests.fakes import auth_headers


async def _completed_report(client, engine, user_id: str = "user-1") -> str:
    response = await client.post(
        "/api/v1/workflows/execute",
        json={"goal": "find 3 parks in Lisbon", "sources": ["google"]},
        headers=auth_headers(user_id),
    )
    workflow_id = response.json()["workflowId"]
    await engine.wait(workflow_id)
    status = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers(user_id))
    return status.json()["reportId"]


class TestReports:
    """Tests for listing, reading, and deleting reports."""

    @pytest.mark.asyncio
    async def test_list_reports(self, client, engine):
        """Test a completed workflow's report is listed for its owner only."""
        report_id = await _completed_report(client, engine)

        response = await client.get("/api/v1/reports", headers=auth_headers("user-1"))
        assert response.status_code == 200
        assert [report["id"] for report in response.json()["reports"]] == [report_id]

        response = await client.get("/api/v1/reports", headers=auth_headers("user-2"))
        assert response.json()["reports"] == []

    @pytest.mark.asyncio
    async def test_get_report(self, client, engine):
        """Test a report carries its sections and source data."""
        report_id = await _completed_report(client, engine)

        response = await client.get(f"/api/v1/reports/{report_id}", headers=auth_headers("user-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["format"] == "summary"
        assert data["sections"]
        assert data["sourceData"]["workflow_query"] == "find 3 parks in Lisbon"
        assert data["sourceData"]["sources"] == [{"type": "google"}]

    @pytest.mark.asyncio
    async def test_report_not_found(self, client):
        """Test an unknown report is 404."""
        response = await client.get("/api/v1/reports/missing", headers=auth_headers("user-1"))
        assert response.status_code == 404
        assert response.json()["detail"] == "Report not found"

    @pytest.mark.asyncio
    async def test_report_of_another_user(self, client, engine):
        """Test reading someone else's report is forbidden."""
        report_id = await _completed_report(client, engine)

        response = await client.get(f"/api/v1/reports/{report_id}", headers=auth_headers("user-2"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_delete_report(self, client, engine):
        """Test deleting a report keeps the workflow but drops the link."""
        response = await client.post(
            "/api/v1/workflows/execute",
            json={"goal": "find 3 parks in Lisbon"},
            headers=auth_headers("user-1"),
        )
        workflow_id = response.json()["workflowId"]
        await engine.wait(workflow_id)
        status = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))
        report_id = status.json()["reportId"]

        response = await client.delete(f"/api/v1/reports/{report_id}", headers=auth_headers("user-1"))
        assert response.status_code == 200
        assert response.json()["message"] == "Report deleted"

        status = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))
        assert status.status_code == 200
        assert status.json()["reportId"] is None
        response = await client.get(f"/api/v1/reports/{report_id}", headers=auth_headers("user-1"))
        assert response.status_code == 404


async def _workflow_with_report(client, engine, user_id: str = "user-1"):
    response = await client.post(
        "/api/v1/workflows/execute",
        json={"goal": "find 3 parks in Lisbon", "sources": ["google"]},
        headers=auth_headers(user_id),
    )
    workflow_id = response.json()["workflowId"]
    await engine.wait(workflow_id)
    status = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers(user_id))
    return workflow_id, status.json()["reportId"]


class TestGenerateReport:
    """Tests for generating the report of a completed workflow."""

    @pytest.mark.asyncio
    async def test_existing_report_is_returned(self, client, engine):
        """Test a workflow that has a report gets the same report back."""
        workflow_id, report_id = await _workflow_with_report(client, engine)

        response = await client.post(
            "/api/v1/reports/generate",
            json={"workflowId": workflow_id},
            headers=auth_headers("user-1"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["reportId"] == report_id
        assert data["report"]["id"] == report_id
        assert data["message"] == "Report already exists for this workflow"

    @pytest.mark.asyncio
    async def test_deleted_report_is_regenerated(self, client, engine):
        """Test a new report is generated with the requested title and type."""
        workflow_id, report_id = await _workflow_with_report(client, engine)
        await client.delete(f"/api/v1/reports/{report_id}", headers=auth_headers("user-1"))

        response = await client.post(
            "/api/v1/reports/generate",
            json={"workflowId": workflow_id, "reportType": "report", "title": "Parks of Lisbon"},
            headers=auth_headers("user-1"),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Report generated successfully"
        assert data["reportId"] != report_id
        assert data["report"]["title"] == "Parks of Lisbon"
        assert data["report"]["format"] == "report"
        assert data["report"]["workflowId"] == workflow_id
        assert data["report"]["sections"]

        status = await client.get(f"/api/v1/workflows/{workflow_id}/status", headers=auth_headers("user-1"))
        assert status.json()["reportId"] == data["reportId"]

    @pytest.mark.asyncio
    async def test_workflow_must_be_completed(self, client, engine, search_executor):
        """Test a workflow that is still running cannot get a report."""
        search_executor.gate = asyncio.Event()
        response = await client.post(
            "/api/v1/workflows/execute",
            json={"goal": "find 3 parks in Lisbon"},
            headers=auth_headers("user-1"),
        )
        workflow_id = response.json()["workflowId"]
        await search_executor.started.wait()

        response = await client.post(
            "/api/v1/reports/generate",
            json={"workflowId": workflow_id},
            headers=auth_headers("user-1"),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Workflow must be completed before generating a report"

        search_executor.gate.set()
        await engine.wait(workflow_id)

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, client):
        """Test generating for a workflow that does not exist is 404."""
        response = await client.post(
            "/api/v1/reports/generate",
            json={"workflowId": "missing"},
            headers=auth_headers("user-1"),
        )
        assert response.status_code == 404
        assert response.json()["detail"] == "Workflow not found"

    @pytest.mark.asyncio
    async def test_another_users_workflow(self, client, engine):
        """Test generating for someone else's workflow is forbidden."""
        workflow_id, _ = await _workflow_with_report(client, engine, "user-1")

        response = await client.post(
            "/api/v1/reports/generate",
            json={"workflowId": workflow_id},
            headers=auth_headers("user-2"),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_workflow_id(self, client):
        """Test the workflow id is required."""
        response = await client.post("/api/v1/reports/generate", json={}, headers=auth_headers("user-1"))
        assert response.status_code == 400
