"""Database models for the application."""

from app.models.workflow import (
    Report,
    StepExecution,
    WorkflowRun,
)

__all__ = [
    "Report",
    "StepExecution",
    "WorkflowRun",
]
