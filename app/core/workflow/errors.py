"""Exceptions raised by the workflow planner, executors, and engine."""


class WorkflowError(Exception):
    """Base class for workflow errors."""


class PlanningError(WorkflowError):
    """The planner could not produce a usable plan."""


class PlanRequestError(PlanningError, ValueError):
    """The planning request itself is invalid, such as an unknown template id."""


class ExecutionError(WorkflowError):
    """A step failed to execute.

    Args:
        message: Human-readable failure reason.
        retryable: Whether re-running the same step may succeed.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class WorkflowNotFoundError(WorkflowError, KeyError):
    """No workflow run exists with the given id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Workflow not found"


class InvalidTransitionError(WorkflowError, ValueError):
    """The requested lifecycle transition is not allowed from the current status."""
