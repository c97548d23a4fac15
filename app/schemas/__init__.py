"""This file contains the schemas for the application."""

from app.schemas.workflow import (
    ActionResponse,
    ReportListResponse,
    ReportResponse,
    RetryResponse,
    TemplateListResponse,
    WorkflowExecuteRequest,
    WorkflowExecuteResponse,
    WorkflowListResponse,
    WorkflowStatusResponse,
)

__all__ = [
    "ActionResponse",
    "ReportListResponse",
    "ReportResponse",
    "RetryResponse",
    "TemplateListResponse",
    "WorkflowExecuteRequest",
    "WorkflowExecuteResponse",
    "WorkflowListResponse",
    "WorkflowStatusResponse",
]
