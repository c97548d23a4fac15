"""Shared test fixtures for the test suite."""

import os
from typing import Dict

# Settings are read at import time, so the environment is fixed before any app import.
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-workflow-tests"
os.environ["OPENAI_API_KEY"] = ""
os.environ["SERPAPI_API_KEY"] = ""
os.environ["PEXELS_API_KEY"] = ""
os.environ["LANGFUSE_PUBLIC_KEY"] = ""
os.environ["LANGFUSE_SECRET_KEY"] = ""
os.environ["WORKFLOW_PLANNER"] = "rule"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from app.core.workflow.engine import WorkflowEngine  # noqa: E402
from app.core.workflow.executors import BaseStepExecutor  # noqa: E402
from app.core.workflow.planner import WorkflowPlanner  # noqa: E402
from app.core.workflow.report import ReportSynthesizer  # noqa: E402
from app.core.workflow.schema import StepType  # noqa: E402
from app.services.database import DatabaseService  # noqa: E402
from tests.fakes import (  # noqa: E402
    SEARCH_OUTPUT,
    SUMMARY_OUTPUT,
    FakeLLM,
    ScriptedExecutor,
)


@pytest_asyncio.fixture
async def database(tmp_path) -> DatabaseService:
    """A workflow store on a fresh SQLite file."""
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'workflows.db'}")
    await service.init_db()
    yield service
    await service.close()


@pytest.fixture
def search_executor() -> ScriptedExecutor:
    """Search executor that returns park results."""
    return ScriptedExecutor(StepType.SEARCH, outcomes=[SEARCH_OUTPUT] * 5)


@pytest.fixture
def summarize_executor() -> ScriptedExecutor:
    """Summarize executor that returns a park summary."""
    return ScriptedExecutor(StepType.SUMMARIZE, outcomes=[SUMMARY_OUTPUT] * 5)


@pytest.fixture
def executors(search_executor, summarize_executor) -> Dict[StepType, BaseStepExecutor]:
    """Executor registry with scripted search and summarize steps."""
    registry: Dict[StepType, BaseStepExecutor] = {
        step_type: ScriptedExecutor(step_type) for step_type in StepType
    }
    registry[StepType.SEARCH] = search_executor
    registry[StepType.SUMMARIZE] = summarize_executor
    return registry


@pytest_asyncio.fixture
async def engine(database, executors) -> WorkflowEngine:
    """Engine with scripted executors and offline report synthesis."""
    workflow_engine = WorkflowEngine(
        database,
        executors=executors,
        synthesizer=ReportSynthesizer(llm=FakeLLM(configured=False)),
        transient_retries=0,
        retry_backoff=0,
    )
    yield workflow_engine
    await workflow_engine.shutdown()


@pytest.fixture
def planner() -> WorkflowPlanner:
    """Rule-based planner that never calls a model."""
    return WorkflowPlanner(llm=FakeLLM(configured=False), mode="rule")


@pytest_asyncio.fixture
async def client(database, engine, planner) -> httpx.AsyncClient:
    """HTTP client bound to the app with test services on app.state."""
    from app.main import app

    app.state.database = database
    app.state.engine = engine
    app.state.planner = planner

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
