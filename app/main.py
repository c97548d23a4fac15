"""FastAPI application entry point.

Builds the workflow store, planner, and engine at startup and tears them
down on shutdown.
"""

from contextlib import asynccontextmanager

from fastapi import (
    FastAPI,
    Request,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.limiter import limiter
from app.core.logging import logger
from app.core.workflow.engine import WorkflowEngine
from app.core.workflow.executors import research_client
from app.core.workflow.planner import WorkflowPlanner
from app.core.workflow.report import ReportSynthesizer
from app.services.database import DatabaseService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    database = DatabaseService()
    await database.init_db()

    app.state.database = database
    app.state.planner = WorkflowPlanner()
    app.state.engine = WorkflowEngine(database, synthesizer=ReportSynthesizer())

    logger.info(
        "application_startup",
        project_name=settings.PROJECT_NAME,
        version=settings.VERSION,
        environment=settings.ENVIRONMENT.value,
        planner_mode=app.state.planner.mode,
    )
    yield

    await app.state.engine.shutdown()
    await research_client.close()
    await database.close()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description=settings.DESCRIPTION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return request validation failures as 400 with a readable message."""
    errors = exc.errors()
    messages = []
    for error in errors:
        message = str(error.get("msg", "Invalid request"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {message}" if location else message)

    logger.warning("request_validation_failed", path=request.url.path, errors=messages)
    return JSONResponse(
        status_code=400,
        content={"detail": "; ".join(messages) or "Invalid request"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Service information."""
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "docs": "/docs",
        "health": f"{settings.API_V1_STR}/health",
    }
