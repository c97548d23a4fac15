"""Report API endpoints: generate, list, read, and delete workflow reports."""

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Request,
)

from app.api.v1.auth import get_current_user_id
from app.api.v1.deps import (
    get_database,
    get_engine,
)
from app.core.config import settings
from app.core.limiter import limiter
from app.core.logging import logger
from app.core.workflow.engine import WorkflowEngine
from app.core.workflow.errors import (
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from app.models.workflow import Report
from app.schemas.workflow import (
    ActionResponse,
    ReportGenerateRequest,
    ReportGenerateResponse,
    ReportListResponse,
    ReportResponse,
    ReportSummary,
)
from app.services.database import DatabaseService

router = APIRouter()


def _summary_fields(report: Report) -> dict:
    return {
        "id": report.id,
        "title": report.title,
        "summary": report.summary,
        "format": report.format,
        "workflow_id": report.workflow_id,
        "created_at": report.created_at,
    }


async def _get_owned_report(database: DatabaseService, report_id: str, user_id: str) -> Report:
    report = await database.get_report(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    if report.user_id != user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return report


def _report_response(report: Report) -> ReportResponse:
    return ReportResponse(
        **_summary_fields(report),
        sections=report.sections,
        source_data=report.source_data,
    )


@router.post("/generate", response_model=ReportGenerateResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["reports"][0])
async def generate_report(
    request: Request,
    body: ReportGenerateRequest,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
    engine: WorkflowEngine = Depends(get_engine),
):
    """Return the report of a completed workflow, generating it if missing.

    Args:
        request: The FastAPI request object for rate limiting.
        body: The workflow id plus optional report type and title.
        user_id: The authenticated user.
        database: The workflow store.
        engine: The workflow engine.

    Returns:
        ReportGenerateResponse: The report and whether it was just generated.
    """
    try:
        run = await database.get_workflow(body.workflow_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        if run.user_id != user_id:
            raise HTTPException(status_code=403, detail="Access denied")

        report, created = await engine.generate_report(body.workflow_id, body.report_type, body.title)
        message = "Report generated successfully" if created else "Report already exists for this workflow"
        return ReportGenerateResponse(report_id=report.id, report=_report_response(report), message=message)
    except HTTPException:
        raise
    except WorkflowNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("generate_report_failed", workflow_id=body.workflow_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("", response_model=ReportListResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["reports"][0])
async def list_reports(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
):
    """List the caller's reports, newest first."""
    try:
        reports = await database.list_reports(user_id)
        return ReportListResponse(
            reports=[ReportSummary(**_summary_fields(report)) for report in reports]
        )
    except Exception as e:
        logger.exception("list_reports_failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{report_id}", response_model=ReportResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["reports"][0])
async def get_report(
    request: Request,
    report_id: str,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
):
    """Get a full report with its sections.

    Args:
        request: The FastAPI request object for rate limiting.
        report_id: The report ID.
        user_id: The authenticated user.
        database: The workflow store.

    Returns:
        ReportResponse: The report.
    """
    try:
        report = await _get_owned_report(database, report_id, user_id)
        return _report_response(report)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("get_report_failed", report_id=report_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{report_id}", response_model=ActionResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["reports"][0])
async def delete_report(
    request: Request,
    report_id: str,
    user_id: str = Depends(get_current_user_id),
    database: DatabaseService = Depends(get_database),
):
    """Delete a report; the workflow that produced it is kept."""
    try:
        await _get_owned_report(database, report_id, user_id)
        await database.delete_report(report_id)

        logger.info("report_deleted", report_id=report_id, user_id=user_id)
        return ActionResponse(message="Report deleted")
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("delete_report_failed", report_id=report_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
