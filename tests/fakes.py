"""Test doubles and sample data shared by the test modules."""

import asyncio
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from app.core.workflow.executors import BaseStepExecutor
from app.core.workflow.schema import (
    StepContext,
    StepDefinition,
    StepType,
    WorkflowPlan,
)
from app.utils.auth import create_access_token


class FakeLLM:
    """Stand-in for LLMService that replays canned JSON replies."""

    def __init__(self, replies: Optional[List[Any]] = None, configured: bool = True):
        self.replies = list(replies or [])
        self.configured = configured
        self.calls: List[Dict[str, str]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def call_json(self, system_prompt: str, user_prompt: str) -> Any:
        self.calls.append({"system": system_prompt, "user": user_prompt})
        reply = self.replies.pop(0) if self.replies else {}
        if isinstance(reply, Exception):
            raise reply
        return reply


class ScriptedExecutor(BaseStepExecutor):
    """Executor whose outcomes are scripted per call.

    Each call pops the next outcome: a dict is returned as the output, an
    exception is raised. With ``gate`` set, every call waits for the gate
    before producing its outcome.
    """

    def __init__(
        self,
        step_type: StepType,
        outcomes: Optional[List[Any]] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.step_type = step_type
        self.outcomes = list(outcomes or [])
        self.gate = gate
        self.started = asyncio.Event()
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, step: StepDefinition, context: StepContext) -> Dict[str, Any]:
        self.calls.append({"index": step.index, "results": dict(context.results)})
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else {"step": step.index}
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def run(self, params: Any, step: StepDefinition, context: StepContext):
        raise NotImplementedError


SEARCH_OUTPUT = {
    "source": "google",
    "query": "find 3 parks in Lisbon",
    "results": [
        {
            "id": "1",
            "title": "Parque Eduardo VII",
            "url": "https://example.com/eduardo-vii",
            "snippet": "The largest park in central Lisbon.",
        },
        {
            "id": "2",
            "title": "Jardim da Estrela",
            "url": "https://example.com/estrela",
            "snippet": "A romantic garden opposite the Estrela Basilica.",
        },
    ],
    "total_results": 2,
}

SUMMARY_OUTPUT = {
    "summary": "Parque Eduardo VII, Jardim da Estrela and Parque Florestal de Monsanto are three Lisbon parks.",
    "key_points": ["Eduardo VII is central", "Estrela is a garden", "Monsanto is a forest park"],
    "sources": ["https://example.com/eduardo-vii", "https://example.com/estrela"],
}


def make_plan(*step_types: StepType, title: str = "Test workflow") -> WorkflowPlan:
    """Build a plan with one step per type, indexed in order."""
    return WorkflowPlan(
        title=title,
        steps=[
            StepDefinition(index=i, type=step_type, title=f"Step {i + 1}")
            for i, step_type in enumerate(step_types)
        ],
        sources=["google"],
    )


def auth_headers(user_id: str) -> Dict[str, str]:
    """Bearer authorization header for a user."""
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}
