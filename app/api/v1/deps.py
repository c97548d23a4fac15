"""Dependencies that hand the application's services to route handlers."""

from fastapi import Request

from app.core.workflow.engine import WorkflowEngine
from app.core.workflow.planner import WorkflowPlanner
from app.services.database import DatabaseService


def get_database(request: Request) -> DatabaseService:
    """The workflow store created at startup."""
    return request.app.state.database


def get_engine(request: Request) -> WorkflowEngine:
    """The workflow engine created at startup."""
    return request.app.state.engine


def get_planner(request: Request) -> WorkflowPlanner:
    """The workflow planner created at startup."""
    return request.app.state.planner
