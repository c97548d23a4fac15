"""Workflow engine: the run lifecycle state machine.

A run moves ``pending -> running -> completed | failed``; a failed run may be
retried back to ``running``. Execution happens in a background asyncio task
per run that walks the steps strictly in order. Every write the task makes
is conditioned on the run still being ``running`` under the task's attempt
number, so a cancelled, deleted, or retried run is never overwritten by a
stale task.
"""

import asyncio
import time
from functools import partial
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
)

from app.core.config import settings
from app.core.logging import logger
from app.core.workflow.errors import (
    ExecutionError,
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from app.core.workflow.executors import (
    BaseStepExecutor,
    build_step_executors,
    execute_step,
)
from app.core.workflow.report import ReportSynthesizer
from app.core.workflow.schema import (
    Depth,
    OutputFormat,
    RunStatus,
    StepContext,
    StepDefinition,
    StepStatus,
    StepType,
    WorkflowPlan,
)
from app.core.workflow.status import (
    build_workflow_status,
    latest_executions,
)
from app.models.workflow import (
    Report,
    WorkflowRun,
)
from app.schemas.workflow import WorkflowStatusResponse
from app.services.database import DatabaseService
from app.utils.retry import sleep_before_retry

CANCEL_REASON = "Cancelled by user"
SHUTDOWN_REASON = "Interrupted by service shutdown"


class WorkflowEngine:
    """Creates, runs, cancels, and retries workflow runs."""

    def __init__(
        self,
        database: DatabaseService,
        executors: Optional[Dict[StepType, BaseStepExecutor]] = None,
        synthesizer: Optional[ReportSynthesizer] = None,
        transient_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        """Initialize the engine.

        Args:
            database: The workflow store.
            executors: Step executor registry. Defaults to the built-in executors.
            synthesizer: Report synthesizer used when a run completes.
            transient_retries: In-step retries for retryable failures.
            retry_backoff: Base backoff in seconds between in-step retries.
        """
        self.database = database
        self.executors = executors if executors is not None else build_step_executors()
        self.synthesizer = synthesizer or ReportSynthesizer()
        self.transient_retries = (
            settings.STEP_TRANSIENT_RETRIES if transient_retries is None else transient_retries
        )
        self.retry_backoff = settings.STEP_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_workflow(
        self,
        user_id: str,
        goal: str,
        plan: WorkflowPlan,
        depth: Depth = Depth.STANDARD,
        output_format: OutputFormat = OutputFormat.SUMMARY,
    ) -> WorkflowRun:
        """Persist a planned run in ``pending`` state.

        Raises:
            ValueError: If the plan has no steps.
        """
        if not plan.steps:
            raise ValueError("A workflow needs at least one step")

        run = WorkflowRun(
            user_id=user_id,
            goal=goal,
            title=plan.title,
            description=plan.description,
            steps=[step.model_dump(mode="json") for step in plan.steps],
            status=RunStatus.PENDING,
            current_step=0,
            total_steps=len(plan.steps),
            sources=list(plan.sources),
            depth=depth.value,
            output_format=output_format.value,
            template_id=plan.template_id,
        )
        run = await self.database.create_workflow(run)
        logger.info(
            "workflow_created",
            workflow_id=run.id,
            user_id=user_id,
            total_steps=run.total_steps,
            template_id=run.template_id,
        )
        return run

    def start(self, workflow_id: str) -> asyncio.Task:
        """Start executing a pending run in the background."""
        return self._dispatch(workflow_id, start_from=0, attempt=None)

    async def cancel(self, workflow_id: str) -> None:
        """Cancel a pending or running workflow.

        The run becomes ``failed`` with ``Cancelled by user``; an in-flight
        step may finish but its outcome is discarded.

        Raises:
            WorkflowNotFoundError: If the run does not exist.
            InvalidTransitionError: If the run is already completed or failed.
        """
        if await self.database.cancel_workflow(workflow_id, CANCEL_REASON):
            logger.info("workflow_cancelled", workflow_id=workflow_id)
            return

        run = await self.database.get_workflow(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        raise InvalidTransitionError(f"Cannot cancel workflow with status: {run.status.value}")

    async def retry(self, workflow_id: str) -> int:
        """Resume a failed workflow from its failed step.

        Returns:
            int: The step index execution resumes from.

        Raises:
            WorkflowNotFoundError: If the run does not exist.
            InvalidTransitionError: If the run is not failed, or a concurrent
                retry won.
        """
        run = await self.database.get_workflow(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        if run.status != RunStatus.FAILED:
            raise InvalidTransitionError("Only failed workflows can be retried")

        if run.failed_step is not None:
            retry_from = run.failed_step
        else:
            retry_from = await self._first_incomplete_step(workflow_id, run.total_steps)
        retry_from = min(max(retry_from, 0), run.total_steps)

        if not await self.database.begin_retry(workflow_id, run.attempt, retry_from):
            raise InvalidTransitionError("Only failed workflows can be retried")

        logger.info("workflow_retry_started", workflow_id=workflow_id, retry_from=retry_from)
        self._dispatch(workflow_id, start_from=retry_from, attempt=run.attempt + 1)
        return retry_from

    async def delete(self, workflow_id: str) -> None:
        """Delete a run and its execution records.

        Raises:
            WorkflowNotFoundError: If the run does not exist.
        """
        if not await self.database.delete_workflow(workflow_id):
            raise WorkflowNotFoundError(workflow_id)
        logger.info("workflow_deleted", workflow_id=workflow_id)

    async def get_status(self, workflow_id: str) -> WorkflowStatusResponse:
        """Build the status view of a run.

        Raises:
            WorkflowNotFoundError: If the run does not exist.
        """
        run = await self.database.get_workflow(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        executions = await self.database.get_step_executions(workflow_id)
        report = await self.database.get_report(run.report_id) if run.report_id else None
        return build_workflow_status(run, executions, report)

    async def generate_report(
        self,
        workflow_id: str,
        output_format: Optional[OutputFormat] = None,
        title: Optional[str] = None,
    ) -> Tuple[Report, bool]:
        """Return the report of a completed run, synthesizing one if it has none.

        A run loses its report when the report is deleted; this rebuilds it from
        the stored step outputs, optionally in another format or under another title.

        Returns:
            Tuple[Report, bool]: The report and whether it was created by this call.

        Raises:
            WorkflowNotFoundError: If the run does not exist.
            InvalidTransitionError: If the run is not completed.
        """
        run = await self.database.get_workflow(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        if run.status != RunStatus.COMPLETED:
            raise InvalidTransitionError("Workflow must be completed before generating a report")

        if run.report_id:
            existing = await self.database.get_report(run.report_id)
            if existing is not None:
                return existing, False

        steps = run.step_definitions()
        results = await self._completed_outputs(workflow_id, before=run.total_steps)
        report = await self._build_report(
            run,
            steps,
            results,
            output_format.value if output_format else run.output_format,
            title or run.title,
        )
        stored = await self.database.attach_report(workflow_id, report)
        if stored is None:
            raise WorkflowNotFoundError(workflow_id)
        created = stored.id == report.id
        logger.info("report_generated", workflow_id=workflow_id, report_id=stored.id, created=created)
        return stored, created

    async def wait(self, workflow_id: str) -> None:
        """Wait for the run's background task in this process, if any."""
        task = self._tasks.get(workflow_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel and await all background tasks."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("workflow_engine_stopped", cancelled_tasks=len(tasks))

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def _dispatch(self, workflow_id: str, start_from: int, attempt: Optional[int]) -> asyncio.Task:
        """Run the step loop in a supervised background task.

        A previous task for the same run, if still alive, is left to finish:
        its attempt is stale so its next write is rejected.
        """
        previous = self._tasks.get(workflow_id)
        if previous is not None and not previous.done():
            logger.info("workflow_task_superseded", workflow_id=workflow_id)

        task = asyncio.create_task(
            self._supervise(workflow_id, start_from, attempt),
            name=f"workflow-{workflow_id}",
        )
        self._tasks[workflow_id] = task
        task.add_done_callback(partial(self._on_task_done, workflow_id))
        return task

    def _on_task_done(self, workflow_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(workflow_id) is task:
            del self._tasks[workflow_id]
        if task.cancelled():
            logger.warning("workflow_task_cancelled", workflow_id=workflow_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("workflow_task_crashed", workflow_id=workflow_id, error=str(error))

    async def _supervise(self, workflow_id: str, start_from: int, attempt: Optional[int]) -> None:
        """Claim the run if needed, execute it, and record unexpected errors as a failure.

        A cancelled task fails its attempt before re-raising, so a run is never
        left ``running`` with nothing executing it.
        """
        try:
            if attempt is None:
                attempt = await self._claim(workflow_id)
                if attempt is None:
                    return
            await self.execute_workflow(workflow_id, start_from, attempt)
        except asyncio.CancelledError:
            if attempt is not None and await self.database.abort_workflow(workflow_id, attempt, SHUTDOWN_REASON):
                logger.warning("workflow_execution_interrupted", workflow_id=workflow_id, attempt=attempt)
            raise
        except Exception as e:
            logger.exception("workflow_execution_crashed", workflow_id=workflow_id, error=str(e))
            if attempt is not None:
                await self.database.fail_workflow(workflow_id, attempt, f"Internal error: {e}")

    async def _claim(self, workflow_id: str) -> Optional[int]:
        """Move a pending run to running; returns the new attempt, or None if it is not pending."""
        run = await self.database.get_workflow(workflow_id)
        if run is None or run.status != RunStatus.PENDING:
            logger.info(
                "workflow_start_skipped",
                workflow_id=workflow_id,
                status=run.status.value if run else None,
            )
            return None
        if not await self.database.claim_workflow(workflow_id, (RunStatus.PENDING,), run.attempt):
            logger.info("workflow_start_lost_race", workflow_id=workflow_id)
            return None
        return run.attempt + 1

    async def execute_workflow(self, workflow_id: str, start_from: int, attempt: int) -> None:
        """Execute the steps of a running attempt from ``start_from`` onward.

        Stops quietly as soon as a conditioned write is rejected, which means
        the run was cancelled, deleted, or taken over by a newer attempt.
        """
        run = await self.database.get_workflow(workflow_id)
        if run is None or run.status != RunStatus.RUNNING or run.attempt != attempt:
            logger.info("workflow_execution_superseded", workflow_id=workflow_id, attempt=attempt)
            return

        steps = run.step_definitions()
        results = await self._completed_outputs(workflow_id, before=start_from)

        logger.info(
            "workflow_execution_started",
            workflow_id=workflow_id,
            attempt=attempt,
            start_from=start_from,
            total_steps=len(steps),
        )

        for step in steps[start_from:]:
            execution = await self.database.start_step(
                workflow_id, attempt, step.index, step.type.value, step.title, step.params
            )
            if execution is None:
                logger.info("workflow_execution_stopped", workflow_id=workflow_id, step_index=step.index)
                return

            context = StepContext(
                workflow_id=workflow_id,
                goal=run.goal,
                sources=run.sources,
                depth=run.depth,
                output_format=run.output_format,
                results=dict(results),
            )
            logger.info(
                "workflow_step_started",
                workflow_id=workflow_id,
                step_index=step.index,
                step_type=step.type.value,
            )

            started = time.perf_counter()
            error: Optional[ExecutionError] = None
            output: Dict[str, Any] = {}
            try:
                output = await self._run_step(workflow_id, step, context)
            except ExecutionError as e:
                error = e
            except Exception as e:
                logger.exception("workflow_step_crashed", workflow_id=workflow_id, step_index=step.index)
                error = ExecutionError(str(e) or type(e).__name__, retryable=False)
            duration_ms = int((time.perf_counter() - started) * 1000)

            if error is not None:
                applied = await self.database.fail_step(
                    workflow_id,
                    attempt,
                    execution.id,
                    step.index,
                    error.message,
                    error.retryable,
                    duration_ms,
                )
                logger.warning(
                    "workflow_step_failed",
                    workflow_id=workflow_id,
                    step_index=step.index,
                    error=error.message,
                    retryable=error.retryable,
                    applied=applied,
                )
                return

            if not await self.database.complete_step(
                workflow_id, attempt, execution.id, step.index, output, duration_ms
            ):
                logger.info("workflow_step_outcome_discarded", workflow_id=workflow_id, step_index=step.index)
                return

            results[step.index] = output
            logger.info(
                "workflow_step_completed",
                workflow_id=workflow_id,
                step_index=step.index,
                duration_ms=duration_ms,
            )

        await self._complete(run, attempt, steps, results)

    async def _run_step(self, workflow_id: str, step: StepDefinition, context: StepContext) -> Dict[str, Any]:
        """Execute one step, retrying retryable failures up to ``transient_retries`` times."""
        retries = 0
        while True:
            try:
                return await execute_step(step, context, self.executors)
            except ExecutionError as e:
                if not e.retryable or retries >= self.transient_retries:
                    raise
                retries += 1
                delay = await sleep_before_retry(retries, self.retry_backoff)
                logger.warning(
                    "workflow_step_retrying",
                    workflow_id=workflow_id,
                    step_index=step.index,
                    retry=retries,
                    delay=round(delay, 2),
                    error=e.message,
                )

    async def _completed_outputs(self, workflow_id: str, before: int) -> Dict[int, Dict[str, Any]]:
        """Outputs of steps below ``before`` whose latest execution completed."""
        executions = await self.database.get_step_executions(workflow_id)
        return {
            index: execution.output or {}
            for index, execution in latest_executions(executions).items()
            if index < before and execution.status == StepStatus.COMPLETED
        }

    async def _complete(
        self,
        run: WorkflowRun,
        attempt: int,
        steps: List[StepDefinition],
        results: Dict[int, Dict[str, Any]],
    ) -> None:
        """Synthesize the report and mark the attempt completed."""
        report = await self._build_report(run, steps, results, run.output_format, run.title)
        if await self.database.complete_workflow(run.id, attempt, report):
            logger.info("workflow_completed", workflow_id=run.id, report_id=report.id)
        else:
            logger.info("workflow_completion_discarded", workflow_id=run.id, attempt=attempt)

    async def _build_report(
        self,
        run: WorkflowRun,
        steps: List[StepDefinition],
        results: Dict[int, Dict[str, Any]],
        output_format: str,
        title: str,
    ) -> Report:
        collected = [
            {
                "step_index": step.index,
                "step_type": step.type.value,
                "title": step.title,
                "data": results[step.index],
            }
            for step in steps
            if step.index in results
        ]
        report_output = await self.synthesizer.synthesize(run.goal, title, output_format, collected)

        return Report(
            user_id=run.user_id,
            workflow_id=run.id,
            title=report_output.title,
            summary=report_output.summary,
            format=output_format,
            sections=[section.model_dump(mode="json") for section in report_output.sections],
            source_data={
                "workflow_id": run.id,
                "workflow_query": run.goal,
                "sources": [{"type": source} for source in run.sources],
            },
        )

    async def _first_incomplete_step(self, workflow_id: str, total_steps: int) -> int:
        """Lowest step index whose latest execution did not complete."""
        completed = await self._completed_outputs(workflow_id, before=total_steps)
        index = 0
        while index in completed:
            index += 1
        return index
