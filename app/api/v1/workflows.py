"""Workflow API endpoints.

Plan and start research workflows, poll their status, and cancel, retry, or
delete them. Execution runs in the background; clients poll the status
endpoint until the run is completed or failed.
"""

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Request,
    status,
)

from app.api.v1.auth import get_current_user_id
from app.api.v1.deps import (
    get_database,
    get_engine,
    get_planner,
)
from app.core.config import settings
from app.core.limiter import limiter
from app.core.logging import logger
from app.core.workflow.engine import WorkflowEngine
from app.core.workflow.errors import (
    InvalidTransitionError,
    PlanningError,
    PlanRequestError,
    WorkflowNotFoundError,
)
from app.core.workflow.planner import WorkflowPlanner
from app.core.workflow.schema import RunStatus
from app.models.workflow import WorkflowRun
from app.schemas.workflow import (
    ActionResponse,
    ReportRef,
    RetryResponse,
    StepSummary,
    TemplateInfo,
    TemplateListResponse,
    WorkflowExecuteRequest,
    WorkflowExecuteResponse,
    WorkflowListResponse,
    WorkflowStatusResponse,
    WorkflowSummary,
)
from app.services.database import DatabaseService

router = APIRouter()


async def _get_owned_workflow(database: DatabaseService, workflow_id: str, user_id: str) -> WorkflowRun:
    """Load a run, raising 404 if it does not exist and 403 if another user owns it."""
    run = await database.get_workflow(workflow_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    if run.user_id != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return run


@router.post("/execute", response_model=WorkflowExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_execute"][0])
async def execute_workflow(
    request: Request,
    body: WorkflowExecuteRequest,
    user_id: str = Depends(get_current_user_id),
    planner: WorkflowPlanner = Depends(get_planner),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Plan a workflow for a goal and start executing it in the background.

    Args:
        request: The FastAPI request object for rate limiting.
        body: The goal and planning options.
        user_id: The authenticated user.
        planner: The workflow planner.
        engine: The workflow engine.

    Returns:
        WorkflowExecuteResponse: The created run and its planned steps.
    """
    try:
        logger.info(
            "workflow_execute_requested",
            user_id=user_id,
            depth=body.depth.value,
            output_format=body.output_format.value,
            template_id=body.template_id,
        )

        sources = [source.value for source in body.sources] if body.sources else None
        plan = await planner.plan(
            body.goal,
            sources=sources,
            depth=body.depth,
            output_format=body.output_format,
            template_id=body.template_id,
        )
        run = await engine.create_workflow(user_id, body.goal, plan, body.depth, body.output_format)
        engine.start(run.id)

        return WorkflowExecuteResponse(
            workflow_id=run.id,
            title=run.title,
            description=run.description,
            status=run.status,
            total_steps=run.total_steps,
            used_template=plan.template_id is not None,
            template_id=plan.template_id,
            steps=[
                StepSummary(
                    index=step.index,
                    type=step.type.value,
                    title=step.title,
                    description=step.description,
                )
                for step in plan.steps
            ],
            message=f"Workflow started with {run.total_steps} steps",
        )
    except HTTPException:
        raise
    except PlanRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PlanningError as e:
        logger.warning("workflow_planning_failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to plan workflow: {e}")
    except Exception as e:
        logger.exception("workflow_execute_failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("", response_model=WorkflowListResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_read"][0])
async def list_workflows(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
):
    """List the caller's workflows, newest first.

    Returns:
        WorkflowListResponse: Runs with a link to their report, if any.
    """
    try:
        runs = await database.list_workflows(user_id)
        reports = await database.get_reports_by_ids([run.report_id for run in runs if run.report_id])

        workflows = []
        for run in runs:
            report = reports.get(run.report_id) if run.report_id else None
            workflows.append(
                WorkflowSummary(
                    id=run.id,
                    title=run.title,
                    description=run.description,
                    goal=run.goal,
                    status=run.status,
                    current_step=run.current_step,
                    total_steps=run.total_steps,
                    sources=run.sources,
                    depth=run.depth,
                    output_format=run.output_format,
                    template_id=run.template_id,
                    error_message=run.error_message,
                    failed_step=run.failed_step,
                    created_at=run.created_at,
                    completed_at=run.completed_at,
                    report=ReportRef(id=report.id, title=report.title) if report else None,
                )
            )
        return WorkflowListResponse(workflows=workflows)
    except Exception as e:
        logger.exception("list_workflows_failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/templates", response_model=TemplateListResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_read"][0])
async def list_workflow_templates(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    planner: WorkflowPlanner = Depends(get_planner),
):
    """List all available workflow templates.

    Returns:
        TemplateListResponse: Templates with names, descriptions, and defaults.
    """
    templates = planner.template_registry.list_templates()
    return TemplateListResponse(templates=[TemplateInfo(**template) for template in templates])


@router.get("/{workflow_id}/status", response_model=WorkflowStatusResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_read"][0])
async def get_workflow_status(
    request: Request,
    workflow_id: str,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Get the progress and per-step status of a workflow.

    Args:
        request: The FastAPI request object for rate limiting.
        workflow_id: The workflow ID.
        user_id: The authenticated user.
        database: The workflow store.
        engine: The workflow engine.

    Returns:
        WorkflowStatusResponse: The status projection of the run.
    """
    try:
        await _get_owned_workflow(database, workflow_id, user_id)
        return await engine.get_status(workflow_id)
    except HTTPException:
        raise
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except Exception as e:
        logger.exception("get_workflow_status_failed", workflow_id=workflow_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{workflow_id}/cancel", response_model=ActionResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_control"][0])
async def cancel_workflow(
    request: Request,
    workflow_id: str,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Cancel a pending or running workflow.

    Args:
        request: The FastAPI request object for rate limiting.
        workflow_id: The workflow ID.
        user_id: The authenticated user.
        database: The workflow store.
        engine: The workflow engine.

    Returns:
        ActionResponse: Confirmation of the cancellation.
    """
    try:
        await _get_owned_workflow(database, workflow_id, user_id)
        await engine.cancel(workflow_id)

        logger.info("workflow_cancelled_via_api", workflow_id=workflow_id, user_id=user_id)
        return ActionResponse(message="Workflow cancelled")
    except HTTPException:
        raise
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("cancel_workflow_failed", workflow_id=workflow_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{workflow_id}/retry", response_model=RetryResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_control"][0])
async def retry_workflow(
    request: Request,
    workflow_id: str,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Retry a failed workflow from the step that failed.

    Args:
        request: The FastAPI request object for rate limiting.
        workflow_id: The workflow ID.
        user_id: The authenticated user.
        database: The workflow store.
        engine: The workflow engine.

    Returns:
        RetryResponse: Confirmation and the step execution resumes from.
    """
    try:
        run = await _get_owned_workflow(database, workflow_id, user_id)
        if run.status != RunStatus.FAILED:
            raise InvalidTransitionError("Only failed workflows can be retried")

        retry_from = await engine.retry(workflow_id)

        logger.info("workflow_retried_via_api", workflow_id=workflow_id, retry_from=retry_from)
        return RetryResponse(
            message=f"Retrying workflow from step {retry_from + 1}",
            retry_from_step=retry_from,
        )
    except HTTPException:
        raise
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("retry_workflow_failed", workflow_id=workflow_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{workflow_id}", response_model=ActionResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["workflow_control"][0])
async def delete_workflow(
    request: Request,
    workflow_id: str,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Delete a workflow and its step history; its report is kept.

    Args:
        request: The FastAPI request object for rate limiting.
        workflow_id: The workflow ID.
        user_id: The authenticated user.
        database: The workflow store.
        engine: The workflow engine.

    Returns:
        ActionResponse: Confirmation of the deletion.
    """
    try:
        await _get_owned_workflow(database, workflow_id, user_id)
        await engine.delete(workflow_id)

        logger.info("workflow_deleted_via_api", workflow_id=workflow_id, user_id=user_id)
        return ActionResponse(message="Workflow deleted")
    except HTTPException:
        raise
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except Exception as e:
        logger.exception("delete_workflow_failed", workflow_id=workflow_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
