"""Request and response schemas for the workflow and report API."""

from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

from app.core.workflow.schema import (
    Depth,
    OutputFormat,
    RunStatus,
    SearchSource,
    StepStatus,
)


class CamelModel(BaseModel):
    """Serializes with camelCase keys and accepts either casing on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowExecuteRequest(CamelModel):
    """Request to plan and start a research workflow.

    Attributes:
        goal: The research goal in natural language.
        sources: Search sources to use; defaults depend on the chosen plan.
        depth: How thorough the research should be.
        output_format: Shape of the final report.
        template_id: Optional template to use instead of matching.
    """

    goal: str = Field(..., description="Research goal", min_length=1, max_length=2000)
    sources: Optional[List[SearchSource]] = Field(default=None, description="Search sources")
    depth: Depth = Field(default=Depth.STANDARD)
    output_format: OutputFormat = Field(default=OutputFormat.SUMMARY)
    template_id: Optional[str] = Field(default=None, description="Workflow template id")

    @field_validator("goal")
    @classmethod
    def goal_not_blank(cls, v: str) -> str:
        """Reject goals that are only whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("Missing required field: goal")
        return v


class StepSummary(CamelModel):
    """A planned step as shown right after creation."""

    index: int
    type: str
    title: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING


class WorkflowExecuteResponse(CamelModel):
    """Response for a newly created workflow."""

    success: bool = True
    workflow_id: str
    title: str
    description: str = ""
    status: RunStatus
    total_steps: int
    used_template: bool = False
    template_id: Optional[str] = None
    steps: List[StepSummary] = Field(default_factory=list)
    message: str = ""


class ReportRef(CamelModel):
    """Link to a report from a workflow listing."""

    id: str
    title: str


class WorkflowSummary(CamelModel):
    """A workflow entry in the user's list."""

    id: str
    title: str
    description: str = ""
    goal: str
    status: RunStatus
    current_step: int
    total_steps: int
    sources: List[str] = Field(default_factory=list)
    depth: str
    output_format: str
    template_id: Optional[str] = None
    error_message: Optional[str] = None
    failed_step: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    report: Optional[ReportRef] = None


class WorkflowListResponse(CamelModel):
    """The user's workflows, newest first."""

    workflows: List[WorkflowSummary] = Field(default_factory=list)


class StepStatusView(CamelModel):
    """Per-step status derived from the latest execution record."""

    index: int
    type: str
    title: str
    description: str = ""
    status: StepStatus
    error: Optional[str] = None
    retryable: Optional[bool] = None
    duration_ms: Optional[int] = None
    has_output: bool = False


class WorkflowStatusResponse(CamelModel):
    """Progress and per-step status of a workflow."""

    workflow_id: str
    title: str
    description: str = ""
    goal: str
    status: RunStatus
    current_step: int
    total_steps: int
    progress: int
    steps: List[StepStatusView] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    depth: str
    output_format: str
    error_message: Optional[str] = None
    failed_step: Optional[int] = None
    report_id: Optional[str] = None
    report_title: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ActionResponse(CamelModel):
    """Outcome of a control action."""

    success: bool = True
    message: str


class RetryResponse(ActionResponse):
    """Outcome of a retry, with the step execution resumes from."""

    retry_from_step: int


class TemplateInfo(CamelModel):
    """A workflow template available to the planner."""

    id: str
    name: str
    description: str = ""
    default_sources: List[str] = Field(default_factory=list)
    default_format: str
    step_count: int


class TemplateListResponse(CamelModel):
    """All available workflow templates."""

    templates: List[TemplateInfo] = Field(default_factory=list)


class ReportSummary(CamelModel):
    """A report entry in the user's list."""

    id: str
    title: str
    summary: str = ""
    format: str
    workflow_id: Optional[str] = None
    created_at: datetime


class ReportResponse(ReportSummary):
    """A full report."""

    sections: List[Dict[str, Any]] = Field(default_factory=list)
    source_data: Dict[str, Any] = Field(default_factory=dict)


class ReportListResponse(CamelModel):
    """The user's reports, newest first."""

    reports: List[ReportSummary] = Field(default_factory=list)


class ReportGenerateRequest(CamelModel):
    """Request to (re)generate the report of a completed workflow."""

    workflow_id: str = Field(..., min_length=1)
    report_type: Optional[OutputFormat] = None
    title: Optional[str] = Field(default=None, max_length=200)


class ReportGenerateResponse(CamelModel):
    """The workflow's report and whether this request created it."""

    success: bool = True
    report_id: str
    report: ReportResponse
    message: str
