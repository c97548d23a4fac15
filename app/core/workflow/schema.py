"""Pydantic schemas for research workflows.

Defines the step types a plan may contain, the params each step type
accepts, the output each step executor produces, and the report artifact
assembled when a workflow completes.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
    Type,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
)
from pydantic.alias_generators import to_camel


class RunStatus(str, Enum):
    """Lifecycle status of a workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a single step execution record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepType(str, Enum):
    """Kinds of work a workflow step can perform."""

    SEARCH = "search"
    EXTRACT = "extract"
    ANALYZE = "analyze"
    AGGREGATE = "aggregate"
    SUMMARIZE = "summarize"
    GENERATE_IMAGE = "generate_image"
    GENERATE_REPORT = "generate_report"


class Depth(str, Enum):
    """How thorough a research workflow should be."""

    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"


class OutputFormat(str, Enum):
    """Shape of the final report."""

    SUMMARY = "summary"
    REPORT = "report"
    ANALYSIS = "analysis"
    COMPARISON = "comparison"
    TIMELINE = "timeline"


class SearchSource(str, Enum):
    """External search providers a search step can query."""

    GOOGLE = "google"
    WEB = "web"
    GITHUB = "github"
    PEXELS = "pexels"


class DepthConfig(BaseModel):
    """Result and step limits for a depth level."""

    max_results: int
    max_steps: int


DEPTH_CONFIG: Dict[Depth, DepthConfig] = {
    Depth.QUICK: DepthConfig(max_results=5, max_steps=3),
    Depth.STANDARD: DepthConfig(max_results=10, max_steps=5),
    Depth.DEEP: DepthConfig(max_results=20, max_steps=8),
}


# ---------------------------------------------------------------------------
# Step params
# ---------------------------------------------------------------------------


class _FlexibleModel(BaseModel):
    """Model that accepts snake_case or camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchParams(_FlexibleModel):
    """Params for a search step."""

    source: SearchSource = SearchSource.GOOGLE
    query: str = Field(..., min_length=1)
    num: int = Field(default=10, ge=1, le=50)
    sort: Optional[str] = None
    language: Optional[str] = None


class ExtractParams(_FlexibleModel):
    """Params for an extract step."""

    extraction_goal: str = Field(..., min_length=1)
    fields: List[str] = Field(default_factory=list)
    from_step: int = Field(default=0, ge=0)


class AnalyzeParams(_FlexibleModel):
    """Params for an analyze step."""

    analysis_type: str = "general"
    question: Optional[str] = None
    from_steps: List[int] = Field(default_factory=list)


class AggregateParams(_FlexibleModel):
    """Params for an aggregate step."""

    from_steps: List[int] = Field(default_factory=list)
    merge_strategy: str = "combine"


class SummarizeParams(_FlexibleModel):
    """Params for a summarize step.

    Pages are taken from ``urls`` when given, otherwise from the result
    URLs of the referenced (or all earlier) search steps.
    """

    urls: List[str] = Field(default_factory=list)
    from_steps: List[int] = Field(default_factory=list)
    max_pages: int = Field(default=3, ge=0, le=10)
    focus: Optional[str] = None


class GenerateImageParams(_FlexibleModel):
    """Params for an image generation step."""

    prompt: str = Field(..., min_length=1)
    size: str = "1024x1024"
    n: int = Field(default=1, ge=1, le=4)


class GenerateReportParams(_FlexibleModel):
    """Params for the closing generate_report step."""

    report_format: Optional[OutputFormat] = None


STEP_PARAMS: Dict[StepType, Type[BaseModel]] = {
    StepType.SEARCH: SearchParams,
    StepType.EXTRACT: ExtractParams,
    StepType.ANALYZE: AnalyzeParams,
    StepType.AGGREGATE: AggregateParams,
    StepType.SUMMARIZE: SummarizeParams,
    StepType.GENERATE_IMAGE: GenerateImageParams,
    StepType.GENERATE_REPORT: GenerateReportParams,
}

StepParams = Union[
    SearchParams,
    ExtractParams,
    AnalyzeParams,
    AggregateParams,
    SummarizeParams,
    GenerateImageParams,
    GenerateReportParams,
]


class StepDefinition(BaseModel):
    """An immutable unit of work within a workflow plan.

    Attributes:
        index: Position of the step, contiguous from 0.
        type: The step type, which selects the executor.
        title: Short human-readable title.
        description: What the step does.
        params: Type-specific params, validated by ``typed_params``.
        depends_on: Indices of earlier steps this one reads from.
    """

    index: int = Field(..., ge=0)
    type: StepType
    title: str
    description: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[int] = Field(default_factory=list)

    def typed_params(self) -> StepParams:
        """Validate ``params`` against the schema for this step type.

        Raises:
            ValidationError: If the params do not fit the schema.
        """
        return STEP_PARAMS[self.type].model_validate(self.params)


def remap_references(
    params: Dict[str, Any],
    depends_on: List[int],
    index_map: Dict[int, int],
) -> Tuple[Dict[str, Any], List[int]]:
    """Rewrite step references after steps were dropped and re-indexed.

    References to dropped steps are removed from lists. A dropped
    ``from_step`` falls back to the first surviving dependency, else 0.

    Args:
        params: The step params, possibly holding ``from_step``/``from_steps``.
        depends_on: The step's dependency indices.
        index_map: Old index to new index for every surviving step.

    Returns:
        Tuple of the rewritten params and dependency list.
    """
    new_depends_on = [index_map[i] for i in depends_on if i in index_map]
    params = dict(params)
    for key in ("from_steps", "fromSteps"):
        if isinstance(params.get(key), list):
            params[key] = [index_map[i] for i in params[key] if i in index_map]
    for key in ("from_step", "fromStep"):
        if isinstance(params.get(key), int):
            params[key] = index_map.get(params[key], new_depends_on[0] if new_depends_on else 0)
    return params, new_depends_on


def params_error(step: StepDefinition) -> Optional[str]:
    """Return a readable validation error for a step's params, or None."""
    try:
        step.typed_params()
    except ValidationError as e:
        return "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
    return None


class WorkflowPlan(BaseModel):
    """Ordered step list produced by the planner."""

    title: str
    description: str = ""
    steps: List[StepDefinition] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    template_id: Optional[str] = None
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Step outputs
# ---------------------------------------------------------------------------


class SearchOutput(_FlexibleModel):
    """Normalized results of a search step."""

    source: str
    query: str
    results: List[Dict[str, Any]] = Field(default_factory=list)
    total_results: int = 0


class ExtractOutput(_FlexibleModel):
    """Structured records pulled out of earlier results."""

    extracted: List[Dict[str, Any]] = Field(default_factory=list)
    total_extracted: int = 0
    summary: str = ""


class Finding(_FlexibleModel):
    """A single insight from an analysis step."""

    insight: str
    evidence: str = ""
    confidence: str = "medium"


class AnalyzeOutput(_FlexibleModel):
    """Insights produced by an analyze step."""

    analysis_type: str
    findings: List[Finding] = Field(default_factory=list)
    summary: str = ""
    recommendations: List[str] = Field(default_factory=list)


class AggregateOutput(_FlexibleModel):
    """Merged data from several earlier steps."""

    merge_strategy: str
    total_items: int = 0
    sources_used: int = 0
    aggregated_data: List[Any] = Field(default_factory=list)
    summary: str = ""


class SummarizeOutput(_FlexibleModel):
    """Summary of fetched pages or search snippets."""

    summary: str
    key_points: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


class ImageGenerationOutput(_FlexibleModel):
    """Images produced by an image generation step."""

    prompt: str
    images: List[str] = Field(default_factory=list)


class ReportReadyOutput(_FlexibleModel):
    """Marker output of the generate_report step."""

    ready_for_report: bool = True
    report_format: str
    data_collected: int = 0
    summary: str = ""


class StepContext(BaseModel):
    """Read-only inputs handed to a step executor.

    ``results`` maps the index of each earlier completed step to its output.
    """

    workflow_id: str
    goal: str
    sources: List[str] = Field(default_factory=list)
    depth: Depth = Depth.STANDARD
    output_format: OutputFormat = OutputFormat.SUMMARY
    results: Dict[int, Dict[str, Any]] = Field(default_factory=dict)

    def outputs_for(self, indices: List[int]) -> List[Dict[str, Any]]:
        """Outputs of the given step indices, or of every earlier step when empty."""
        if indices:
            return [self.results[i] for i in indices if self.results.get(i)]
        return [self.results[i] for i in sorted(self.results) if self.results[i]]


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


class SectionType(str, Enum):
    """Section kinds a report can contain."""

    TEXT = "text"
    TABLE = "table"
    CHART = "chart"
    LIST = "list"


class ReportSection(BaseModel):
    """One section of a report; ``content`` shape depends on ``type``."""

    id: str = ""
    type: SectionType
    title: str
    content: Any


class ReportOutput(BaseModel):
    """The artifact produced when a workflow completes."""

    title: str
    summary: str
    sections: List[ReportSection] = Field(default_factory=list)
