"""Async persistence for workflow runs, step executions, and reports.

Every write the workflow engine makes is a conditional update: it only
applies when the run is still in the expected status and attempt. The
boolean each such method returns tells the caller whether it won.
"""

from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Sequence,
)

from sqlalchemy import (
    case,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from app.core.config import settings
from app.core.logging import logger
from app.core.workflow.schema import (
    RunStatus,
    StepStatus,
)
from app.models.workflow import (
    Report,
    StepExecution,
    WorkflowRun,
    utcnow,
)

OPEN_RUN_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING)
OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.RUNNING)


class DatabaseService:
    """Workflow store backed by an async SQLAlchemy engine."""

    def __init__(self, database_url: Optional[str] = None):
        """Create the engine and session factory.

        Args:
            database_url: SQLAlchemy async URL. Defaults to ``settings.DATABASE_URL``.
        """
        self.database_url = database_url or settings.DATABASE_URL
        connect_args = {"check_same_thread": False} if self.database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            self.database_url,
            echo=settings.DB_ECHO,
            connect_args=connect_args,
        )
        self._session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        """Dispose of the connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; callers commit explicitly."""
        async with self._session_factory() as session:
            yield session

    async def health_check(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return False

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_workflow(self, run: WorkflowRun) -> WorkflowRun:
        """Insert a new workflow run."""
        async with self.session() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        return run

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRun]:
        """Fetch a run by id."""
        async with self.session() as session:
            return await session.get(WorkflowRun, workflow_id)

    async def list_workflows(self, user_id: str) -> List[WorkflowRun]:
        """List a user's runs, newest first."""
        async with self.session() as session:
            result = await session.execute(
                select(WorkflowRun)
                .where(WorkflowRun.user_id == user_id)
                .order_by(WorkflowRun.created_at.desc())
            )
            return list(result.scalars().all())

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a run and its executions; its report is kept but unlinked."""
        async with self.session() as session:
            await session.execute(delete(StepExecution).where(StepExecution.workflow_id == workflow_id))
            await session.execute(update(Report).where(Report.workflow_id == workflow_id).values(workflow_id=None))
            result = await session.execute(delete(WorkflowRun).where(WorkflowRun.id == workflow_id))
            await session.commit()
            return result.rowcount == 1

    async def claim_workflow(
        self,
        workflow_id: str,
        from_statuses: Sequence[RunStatus],
        expected_attempt: int,
        **values: Any,
    ) -> bool:
        """Move a run to ``running`` under a new attempt number.

        Applies only if the run is in one of ``from_statuses`` and its attempt
        still equals ``expected_attempt``.
        """
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status.in_(from_statuses),
                    WorkflowRun.attempt == expected_attempt,
                )
                .values(
                    status=RunStatus.RUNNING,
                    attempt=expected_attempt + 1,
                    updated_at=utcnow(),
                    **values,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def begin_retry(self, workflow_id: str, expected_attempt: int, retry_from: int) -> bool:
        """Reopen a failed run from ``retry_from`` and drop the failed executions it replaces."""
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.FAILED,
                    WorkflowRun.attempt == expected_attempt,
                )
                .values(
                    status=RunStatus.RUNNING,
                    attempt=expected_attempt + 1,
                    current_step=retry_from,
                    error_message=None,
                    failed_step=None,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(
                delete(StepExecution).where(
                    StepExecution.workflow_id == workflow_id,
                    StepExecution.status == StepStatus.FAILED,
                    StepExecution.step_index >= retry_from,
                )
            )
            await session.commit()
            return True

    async def cancel_workflow(self, workflow_id: str, reason: str) -> bool:
        """Fail an open run and every open execution with ``reason``.

        ``failed_step`` is taken from the run's ``current_step`` in the same
        statement so a concurrent advance cannot be missed.
        """
        now = utcnow()
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status.in_(OPEN_RUN_STATUSES),
                )
                .values(
                    status=RunStatus.FAILED,
                    error_message=reason,
                    failed_step=WorkflowRun.current_step,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(
                update(StepExecution)
                .where(
                    StepExecution.workflow_id == workflow_id,
                    StepExecution.status.in_(OPEN_STEP_STATUSES),
                )
                .values(status=StepStatus.FAILED, error=reason, retryable=False, completed_at=now)
            )
            await session.commit()
            return True

    async def fail_workflow(self, workflow_id: str, attempt: int, error_message: str) -> bool:
        """Fail a running attempt that broke outside any step.

        No step is to blame, so ``failed_step`` is left empty and a retry
        resumes from the first step that has not completed.
        """
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.RUNNING,
                    WorkflowRun.attempt == attempt,
                )
                .values(
                    status=RunStatus.FAILED,
                    error_message=error_message,
                    failed_step=None,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def abort_workflow(self, workflow_id: str, attempt: int, reason: str) -> bool:
        """Fail a running attempt whose task was cancelled, and its open executions.

        ``failed_step`` is the step in flight, or empty when every step had
        already completed.
        """
        now = utcnow()
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.RUNNING,
                    WorkflowRun.attempt == attempt,
                )
                .values(
                    status=RunStatus.FAILED,
                    error_message=reason,
                    failed_step=case(
                        (WorkflowRun.current_step < WorkflowRun.total_steps, WorkflowRun.current_step),
                        else_=None,
                    ),
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(
                update(StepExecution)
                .where(
                    StepExecution.workflow_id == workflow_id,
                    StepExecution.status.in_(OPEN_STEP_STATUSES),
                )
                .values(status=StepStatus.FAILED, error=reason, retryable=True, completed_at=now)
            )
            await session.commit()
            return True

    async def complete_workflow(self, workflow_id: str, attempt: int, report: Report) -> bool:
        """Store the report and mark the attempt completed, atomically."""
        now = utcnow()
        async with self.session() as session:
            session.add(report)
            await session.flush()
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.RUNNING,
                    WorkflowRun.attempt == attempt,
                )
                .values(
                    status=RunStatus.COMPLETED,
                    current_step=WorkflowRun.total_steps,
                    report_id=report.id,
                    completed_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.commit()
            return True

    # ------------------------------------------------------------------
    # Step executions
    # ------------------------------------------------------------------

    async def start_step(
        self,
        workflow_id: str,
        attempt: int,
        step_index: int,
        step_type: str,
        step_title: str,
        step_input: Dict[str, Any],
    ) -> Optional[StepExecution]:
        """Point the run at ``step_index`` and open a running execution for it.

        Returns:
            The new execution, or None if the attempt is no longer running.
        """
        now = utcnow()
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.RUNNING,
                    WorkflowRun.attempt == attempt,
                )
                .values(current_step=step_index, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            execution = StepExecution(
                workflow_id=workflow_id,
                step_index=step_index,
                step_type=step_type,
                step_title=step_title,
                attempt=attempt,
                status=StepStatus.RUNNING,
                input=step_input,
                created_at=now,
            )
            session.add(execution)
            await session.commit()
            await session.refresh(execution)
            return execution

    async def complete_step(
        self,
        workflow_id: str,
        attempt: int,
        execution_id: str,
        step_index: int,
        output: Dict[str, Any],
        duration_ms: int,
    ) -> bool:
        """Record a step's output and advance the run past it, atomically."""
        now = utcnow()
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.RUNNING,
                    WorkflowRun.attempt == attempt,
                    WorkflowRun.current_step == step_index,
                )
                .values(current_step=step_index + 1, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            result = await session.execute(
                update(StepExecution)
                .where(
                    StepExecution.id == execution_id,
                    StepExecution.status == StepStatus.RUNNING,
                )
                .values(
                    status=StepStatus.COMPLETED,
                    output=output,
                    duration_ms=duration_ms,
                    completed_at=now,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.commit()
            return True

    async def fail_step(
        self,
        workflow_id: str,
        attempt: int,
        execution_id: str,
        step_index: int,
        error: str,
        retryable: bool,
        duration_ms: int,
    ) -> bool:
        """Record a step failure and fail the run at that step, atomically."""
        now = utcnow()
        async with self.session() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.RUNNING,
                    WorkflowRun.attempt == attempt,
                )
                .values(
                    status=RunStatus.FAILED,
                    failed_step=step_index,
                    error_message=error,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(
                update(StepExecution)
                .where(
                    StepExecution.id == execution_id,
                    StepExecution.status == StepStatus.RUNNING,
                )
                .values(
                    status=StepStatus.FAILED,
                    error=error,
                    retryable=retryable,
                    duration_ms=duration_ms,
                    completed_at=now,
                )
            )
            await session.commit()
            return True

    async def get_step_executions(self, workflow_id: str) -> List[StepExecution]:
        """All executions of a run, oldest first."""
        async with self.session() as session:
            result = await session.execute(
                select(StepExecution)
                .where(StepExecution.workflow_id == workflow_id)
                .order_by(StepExecution.created_at, StepExecution.step_index)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def get_report(self, report_id: str) -> Optional[Report]:
        """Fetch a report by id."""
        async with self.session() as session:
            return await session.get(Report, report_id)

    async def list_reports(self, user_id: str) -> List[Report]:
        """List a user's reports, newest first."""
        async with self.session() as session:
            result = await session.execute(
                select(Report).where(Report.user_id == user_id).order_by(Report.created_at.desc())
            )
            return list(result.scalars().all())

    async def attach_report(self, workflow_id: str, report: Report) -> Optional[Report]:
        """Store ``report`` as the report of a completed run that has none.

        Returns:
            The run's report: ``report`` itself, or the one a concurrent call
            attached first. None if the run no longer exists.
        """
        async with self.session() as session:
            session.add(report)
            await session.flush()
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status == RunStatus.COMPLETED,
                    WorkflowRun.report_id.is_(None),
                )
                .values(report_id=report.id, updated_at=utcnow())
            )
            if result.rowcount == 1:
                await session.commit()
                return report
            await session.rollback()

        run = await self.get_workflow(workflow_id)
        if run is None or not run.report_id:
            return None
        return await self.get_report(run.report_id)

    async def get_reports_by_ids(self, report_ids: Sequence[str]) -> Dict[str, Report]:
        """Map report id to report for the given ids."""
        if not report_ids:
            return {}
        async with self.session() as session:
            result = await session.execute(select(Report).where(Report.id.in_(list(report_ids))))
            return {report.id: report for report in result.scalars().all()}

    async def delete_report(self, report_id: str) -> bool:
        """Delete a report and clear any run link to it."""
        async with self.session() as session:
            await session.execute(
                update(WorkflowRun).where(WorkflowRun.report_id == report_id).values(report_id=None)
            )
            result = await session.execute(delete(Report).where(Report.id == report_id))
            await session.commit()
            return result.rowcount == 1
