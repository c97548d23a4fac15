"""Tests for the workflow store's conditional updates."""

from datetime import (
    timedelta,
    timezone,
)

import pytest

from app.core.workflow.schema import (
    RunStatus,
    StepStatus,
)
from app.models.workflow import (
    Report,
    StepExecution,
    WorkflowRun,
    utcnow,
)


async def _create_run(database, user_id: str = "user-1", created_at=None, **fields) -> WorkflowRun:
    run = WorkflowRun(
        user_id=user_id,
        goal="find 3 parks in Lisbon",
        title="Lisbon parks",
        steps=[
            {"index": 0, "type": "search", "title": "Search"},
            {"index": 1, "type": "summarize", "title": "Summarize"},
        ],
        total_steps=2,
        created_at=created_at or utcnow(),
        **fields,
    )
    return await database.create_workflow(run)


async def _start_running(database, run: WorkflowRun) -> int:
    assert await database.claim_workflow(run.id, (RunStatus.PENDING,), run.attempt)
    return run.attempt + 1


class TestRuns:
    """Tests for storing and listing runs."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, database):
        """Test a created run can be read back with its steps."""
        run = await _create_run(database)
        stored = await database.get_workflow(run.id)

        assert stored.status == RunStatus.PENDING
        assert stored.steps[1]["type"] == "summarize"
        assert [step.title for step in stored.step_definitions()] == ["Search", "Summarize"]

    def test_timestamps_are_utc_aware(self):
        """Test new rows carry timezone-aware UTC timestamps."""
        run = WorkflowRun(user_id="user-1", goal="find 3 parks in Lisbon", title="Lisbon parks")
        execution = StepExecution(workflow_id=run.id, step_index=0, step_type="search", step_title="Search")
        report = Report(user_id="user-1", title="Lisbon parks")

        for value in (run.created_at, run.updated_at, execution.created_at, report.created_at):
            assert value.tzinfo is not None
            assert value.utcoffset() == timedelta(0)
        assert utcnow().tzinfo is timezone.utc

    @pytest.mark.asyncio
    async def test_list_is_newest_first_and_per_user(self, database):
        """Test listing only returns the user's runs, newest first."""
        now = utcnow()
        older = await _create_run(database, created_at=now - timedelta(minutes=5))
        newer = await _create_run(database, created_at=now)
        await _create_run(database, user_id="user-2")

        runs = await database.list_workflows("user-1")
        assert [run.id for run in runs] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_health_check(self, database):
        """Test the health check succeeds on a working database."""
        assert await database.health_check() is True


class TestClaimAndSteps:
    """Tests for claiming runs and recording steps."""

    @pytest.mark.asyncio
    async def test_claim_only_once(self, database):
        """Test a pending run can be claimed by exactly one caller."""
        run = await _create_run(database)

        assert await database.claim_workflow(run.id, (RunStatus.PENDING,), 0) is True
        assert await database.claim_workflow(run.id, (RunStatus.PENDING,), 0) is False

        stored = await database.get_workflow(run.id)
        assert stored.status == RunStatus.RUNNING
        assert stored.attempt == 1

    @pytest.mark.asyncio
    async def test_step_lifecycle_advances_current_step(self, database):
        """Test completing a step stores its output and moves the run on."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)

        execution = await database.start_step(run.id, attempt, 0, "search", "Search", {"query": "parks"})
        assert execution.status == StepStatus.RUNNING

        assert await database.complete_step(run.id, attempt, execution.id, 0, {"results": []}, 42) is True
        stored = await database.get_workflow(run.id)
        assert stored.current_step == 1

        executions = await database.get_step_executions(run.id)
        assert executions[0].status == StepStatus.COMPLETED
        assert executions[0].output == {"results": []}
        assert executions[0].duration_ms == 42

    @pytest.mark.asyncio
    async def test_stale_attempt_cannot_write(self, database):
        """Test writes from an older attempt are rejected."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)

        assert await database.start_step(run.id, attempt - 1, 0, "search", "Search", {}) is None
        execution = await database.start_step(run.id, attempt, 0, "search", "Search", {})
        assert await database.complete_step(run.id, attempt + 1, execution.id, 0, {}, 1) is False

    @pytest.mark.asyncio
    async def test_complete_step_requires_current_step(self, database):
        """Test a step cannot complete when the run points elsewhere."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        execution = await database.start_step(run.id, attempt, 0, "search", "Search", {})

        assert await database.complete_step(run.id, attempt, execution.id, 1, {}, 1) is False

    @pytest.mark.asyncio
    async def test_fail_step_fails_the_run(self, database):
        """Test a step failure records the error on the step and the run."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        execution = await database.start_step(run.id, attempt, 0, "search", "Search", {})

        assert await database.fail_step(run.id, attempt, execution.id, 0, "Web search failed with HTTP 503", True, 7)

        stored = await database.get_workflow(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.failed_step == 0
        assert stored.error_message == "Web search failed with HTTP 503"
        executions = await database.get_step_executions(run.id)
        assert executions[0].status == StepStatus.FAILED
        assert executions[0].retryable is True


class TestCancelAndRetry:
    """Tests for cancelling and retrying runs."""

    @pytest.mark.asyncio
    async def test_cancel_fails_open_executions(self, database):
        """Test cancelling marks the run and its running step failed."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        await database.start_step(run.id, attempt, 0, "search", "Search", {})

        assert await database.cancel_workflow(run.id, "Cancelled by user") is True
        assert await database.cancel_workflow(run.id, "Cancelled by user") is False

        stored = await database.get_workflow(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.failed_step == 0
        assert stored.error_message == "Cancelled by user"
        executions = await database.get_step_executions(run.id)
        assert executions[0].status == StepStatus.FAILED
        assert executions[0].error == "Cancelled by user"
        assert executions[0].retryable is False

    @pytest.mark.asyncio
    async def test_begin_retry_drops_replaced_failures(self, database):
        """Test a retry clears the failure and removes failed executions from the retry point."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        first = await database.start_step(run.id, attempt, 0, "search", "Search", {})
        await database.complete_step(run.id, attempt, first.id, 0, {"results": []}, 1)
        second = await database.start_step(run.id, attempt, 1, "summarize", "Summarize", {})
        await database.fail_step(run.id, attempt, second.id, 1, "timeout", True, 1)

        assert await database.begin_retry(run.id, attempt, 1) is True
        assert await database.begin_retry(run.id, attempt, 1) is False

        stored = await database.get_workflow(run.id)
        assert stored.status == RunStatus.RUNNING
        assert stored.attempt == attempt + 1
        assert stored.current_step == 1
        assert stored.error_message is None
        assert stored.failed_step is None
        executions = await database.get_step_executions(run.id)
        assert [(e.step_index, e.status) for e in executions] == [(0, StepStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_fail_workflow_leaves_failed_step_empty(self, database):
        """Test failing outside a step blames no step."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)

        assert await database.fail_workflow(run.id, attempt, "Internal error: boom") is True
        stored = await database.get_workflow(run.id)
        assert stored.failed_step is None
        assert stored.status == RunStatus.FAILED
        assert stored.error_message == "Internal error: boom"

    @pytest.mark.asyncio
    async def test_abort_fails_the_step_in_flight(self, database):
        """Test aborting an attempt fails the run at its current step."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        await database.start_step(run.id, attempt, 0, "search", "Search", {})

        assert await database.abort_workflow(run.id, attempt - 1, "Interrupted by service shutdown") is False
        assert await database.abort_workflow(run.id, attempt, "Interrupted by service shutdown") is True

        stored = await database.get_workflow(run.id)
        assert stored.status == RunStatus.FAILED
        assert stored.failed_step == 0
        assert stored.error_message == "Interrupted by service shutdown"
        executions = await database.get_step_executions(run.id)
        assert executions[0].status == StepStatus.FAILED
        assert executions[0].error == "Interrupted by service shutdown"

    @pytest.mark.asyncio
    async def test_abort_after_last_step_blames_no_step(self, database):
        """Test aborting once every step completed leaves failed_step empty."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        for index, step_type in enumerate(("search", "summarize")):
            execution = await database.start_step(run.id, attempt, index, step_type, step_type.title(), {})
            await database.complete_step(run.id, attempt, execution.id, index, {}, 1)

        assert await database.abort_workflow(run.id, attempt, "Interrupted by service shutdown") is True
        stored = await database.get_workflow(run.id)
        assert stored.current_step == 2
        assert stored.failed_step is None


class TestReports:
    """Tests for completing runs with reports."""

    @pytest.mark.asyncio
    async def test_complete_workflow_links_report(self, database):
        """Test completing a run stores the report and links it."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        report = Report(user_id="user-1", workflow_id=run.id, title="Lisbon parks")

        assert await database.complete_workflow(run.id, attempt, report) is True

        stored = await database.get_workflow(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.current_step == 2
        assert stored.report_id == report.id
        assert stored.completed_at is not None
        assert (await database.get_report(report.id)).title == "Lisbon parks"

    @pytest.mark.asyncio
    async def test_complete_workflow_rejected_when_not_running(self, database):
        """Test a report is not stored for a run that is no longer running."""
        run = await _create_run(database)
        report = Report(user_id="user-1", workflow_id=run.id, title="Lisbon parks")

        assert await database.complete_workflow(run.id, 1, report) is False
        assert await database.list_reports("user-1") == []

    @pytest.mark.asyncio
    async def test_delete_workflow_keeps_report(self, database):
        """Test deleting a run unlinks its report instead of deleting it."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        report = Report(user_id="user-1", workflow_id=run.id, title="Lisbon parks")
        await database.complete_workflow(run.id, attempt, report)

        assert await database.delete_workflow(run.id) is True
        assert await database.get_workflow(run.id) is None
        assert await database.get_step_executions(run.id) == []
        assert (await database.get_report(report.id)).workflow_id is None

    @pytest.mark.asyncio
    async def test_delete_report_unlinks_run(self, database):
        """Test deleting a report clears the run's link to it."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        report = Report(user_id="user-1", workflow_id=run.id, title="Lisbon parks")
        await database.complete_workflow(run.id, attempt, report)

        assert await database.delete_report(report.id) is True
        assert await database.delete_report(report.id) is False
        assert (await database.get_workflow(run.id)).report_id is None

    @pytest.mark.asyncio
    async def test_get_reports_by_ids(self, database):
        """Test looking up several reports at once."""
        first = Report(user_id="user-1", title="First")
        second = Report(user_id="user-1", title="Second")
        async with database.session() as session:
            session.add_all([first, second])
            await session.commit()

        found = await database.get_reports_by_ids([first.id, second.id, "missing"])
        assert set(found) == {first.id, second.id}
        assert await database.get_reports_by_ids([]) == {}

    @pytest.mark.asyncio
    async def test_attach_report_to_completed_run(self, database):
        """Test a report can be attached to a completed run that lost its own."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        await database.complete_workflow(run.id, attempt, Report(user_id="user-1", workflow_id=run.id, title="Old"))
        await database.delete_report((await database.get_workflow(run.id)).report_id)

        report = Report(user_id="user-1", workflow_id=run.id, title="New")
        stored = await database.attach_report(run.id, report)

        assert stored.id == report.id
        assert (await database.get_workflow(run.id)).report_id == report.id

    @pytest.mark.asyncio
    async def test_attach_report_keeps_existing_link(self, database):
        """Test attaching to a run that already has a report returns that report."""
        run = await _create_run(database)
        attempt = await _start_running(database, run)
        first = Report(user_id="user-1", workflow_id=run.id, title="First")
        await database.complete_workflow(run.id, attempt, first)

        stored = await database.attach_report(run.id, Report(user_id="user-1", workflow_id=run.id, title="Second"))

        assert stored.id == first.id
        assert [report.title for report in await database.list_reports("user-1")] == ["First"]

    @pytest.mark.asyncio
    async def test_attach_report_requires_completed_run(self, database):
        """Test nothing is stored for a run that is not completed."""
        run = await _create_run(database)

        assert await database.attach_report(run.id, Report(user_id="user-1", workflow_id=run.id, title="X")) is None
        assert await database.list_reports("user-1") == []
