"""Research workflow planning and execution.

Public API:
    - WorkflowPlanner: Turns a goal into an ordered list of typed steps
    - WorkflowTemplateRegistry: YAML templates for common research tasks
    - StepType, StepDefinition, WorkflowPlan: Plan data model
    - Exceptions raised by the planner, executors, and engine

The engine lives in ``app.core.workflow.engine`` and depends on the
database models, so it is imported from there directly.
"""

from app.core.workflow.errors import (
    ExecutionError,
    InvalidTransitionError,
    PlanningError,
    PlanRequestError,
    WorkflowError,
    WorkflowNotFoundError,
)
from app.core.workflow.planner import WorkflowPlanner
from app.core.workflow.schema import (
    Depth,
    OutputFormat,
    RunStatus,
    StepDefinition,
    StepStatus,
    StepType,
    WorkflowPlan,
)
from app.core.workflow.templates import (
    WorkflowTemplateRegistry,
    workflow_template_registry,
)

__all__ = [
    "Depth",
    "ExecutionError",
    "InvalidTransitionError",
    "OutputFormat",
    "PlanningError",
    "PlanRequestError",
    "RunStatus",
    "StepDefinition",
    "StepStatus",
    "StepType",
    "WorkflowError",
    "WorkflowNotFoundError",
    "WorkflowPlan",
    "WorkflowPlanner",
    "WorkflowTemplateRegistry",
    "workflow_template_registry",
]
