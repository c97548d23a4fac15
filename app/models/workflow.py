"""Database tables for workflow runs, step executions, and reports."""

import uuid
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
)
from sqlmodel import (
    Field,
    SQLModel,
)

from app.core.workflow.schema import (
    RunStatus,
    StepDefinition,
    StepStatus,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class WorkflowRun(SQLModel, table=True):
    """A single execution of a planned research workflow.

    ``attempt`` is bumped every time the run is (re)started; engine writes are
    conditioned on it so a superseded task cannot touch a newer attempt.
    """

    __tablename__ = "workflow_run"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    goal: str
    title: str
    description: str = ""
    steps: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    status: RunStatus = Field(default=RunStatus.PENDING, index=True)
    current_step: int = 0
    total_steps: int = 0
    failed_step: Optional[int] = None
    error_message: Optional[str] = None
    sources: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    depth: str = "standard"
    output_format: str = "summary"
    template_id: Optional[str] = None
    attempt: int = 0
    report_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    def step_definitions(self) -> List[StepDefinition]:
        """The run's steps as validated models."""
        return [StepDefinition.model_validate(step) for step in self.steps]


class StepExecution(SQLModel, table=True):
    """Record of one attempt at executing one step of a run.

    Several records may exist for the same step index; the most recently
    created one is authoritative.
    """

    __tablename__ = "step_execution"

    id: str = Field(default_factory=_new_id, primary_key=True)
    workflow_id: str = Field(foreign_key="workflow_run.id", index=True)
    step_index: int
    step_type: str
    step_title: str
    attempt: int = 0
    status: StepStatus = Field(default=StepStatus.PENDING)
    input: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    output: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    retryable: Optional[bool] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class Report(SQLModel, table=True):
    """Report artifact produced when a workflow completes."""

    __tablename__ = "report"

    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    workflow_id: Optional[str] = Field(default=None, index=True)
    title: str
    summary: str = ""
    format: str = "summary"
    sections: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    source_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)
