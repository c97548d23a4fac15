"""Status projection: derive progress and per-step status from stored records."""

from typing import (
    Dict,
    Iterable,
    Optional,
)

from app.core.workflow.schema import StepStatus
from app.models.workflow import (
    Report,
    StepExecution,
    WorkflowRun,
)
from app.schemas.workflow import (
    StepStatusView,
    WorkflowStatusResponse,
)


def latest_executions(executions: Iterable[StepExecution]) -> Dict[int, StepExecution]:
    """Map each step index to its most recently created execution."""
    latest: Dict[int, StepExecution] = {}
    for execution in sorted(executions, key=lambda e: e.created_at):
        latest[execution.step_index] = execution
    return latest


def compute_progress(completed: int, total: int) -> int:
    """Percentage of completed steps, rounded half up; 0 for an empty plan."""
    if total <= 0:
        return 0
    return int(completed * 100 / total + 0.5)


def build_workflow_status(
    run: WorkflowRun,
    executions: Iterable[StepExecution],
    report: Optional[Report] = None,
) -> WorkflowStatusResponse:
    """Project a run and its execution records into a status view.

    A step with no execution is ``pending``; otherwise it takes the status of
    its latest execution. Progress counts steps whose latest execution is
    completed.

    Args:
        run: The workflow run.
        executions: All execution records of the run.
        report: The run's report, if any.

    Returns:
        WorkflowStatusResponse: The status view.
    """
    latest = latest_executions(executions)

    steps = []
    for step in run.step_definitions():
        execution = latest.get(step.index)
        steps.append(
            StepStatusView(
                index=step.index,
                type=step.type.value,
                title=step.title,
                description=step.description,
                status=execution.status if execution else StepStatus.PENDING,
                error=execution.error if execution else None,
                retryable=execution.retryable if execution else None,
                duration_ms=execution.duration_ms if execution else None,
                has_output=bool(execution and execution.output),
            )
        )

    completed = sum(1 for view in steps if view.status == StepStatus.COMPLETED)

    return WorkflowStatusResponse(
        workflow_id=run.id,
        title=run.title,
        description=run.description,
        goal=run.goal,
        status=run.status,
        current_step=run.current_step,
        total_steps=run.total_steps,
        progress=compute_progress(completed, run.total_steps),
        steps=steps,
        sources=run.sources,
        depth=run.depth,
        output_format=run.output_format,
        error_message=run.error_message,
        failed_step=run.failed_step,
        report_id=report.id if report else run.report_id,
        report_title=report.title if report else None,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )
