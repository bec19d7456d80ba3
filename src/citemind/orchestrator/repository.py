"""Persistent job store for events, the job queue and agent run audit records."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, func, select

from citemind.errors import PersistenceError
from citemind.orchestrator.models import (
    AgentRunView,
    AgentStepView,
    ArtifactView,
    ArtifactWrite,
    EventCreate,
    EventProcessingStatus,
    EventView,
    JobCreate,
    JobDetails,
    JobStatus,
    JobType,
    JobView,
    RunDetails,
    RunStatus,
    StepStatus,
    StepUsage,
)
from citemind.storage.alembic_runner import upgrade_head
from citemind.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from citemind.storage.sqlmodel_models import (
    AgentRunRecord,
    AgentStepRecord,
    EventRecord,
    JobRecord,
    ToolArtifactRecord,
)


class OrchestratorRepository:
    """Queue and audit persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Events

    def create_event(self, payload: EventCreate) -> EventView:
        """Store an inbound event in pending state."""

        event_id = payload.event_id or str(uuid4())
        with _persistence(f"store event {event_id}"), Session(self.engine) as session:
            row = EventRecord(
                event_id=event_id,
                tenant_id=payload.tenant_id,
                user_id=payload.user_id,
                event_type=payload.event_type,
                entity_type=payload.entity_type,
                entity_id=payload.entity_id,
                payload_json=_dump_json(payload.payload),
                processing_status=EventProcessingStatus.PENDING.value,
                created_at=to_db_datetime(payload.created_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def get_event(self, *, event_id: str) -> EventView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(EventRecord).where(EventRecord.event_id == event_id),
            ).one_or_none()
        return _to_event_view(row) if row is not None else None

    def claim_event(self, *, event_id: str, status: EventProcessingStatus) -> bool:
        """Move a pending event to its final routing state exactly once."""

        if status is EventProcessingStatus.PENDING:
            raise ValueError("Cannot claim an event back into pending state")
        now = utc_now()
        with _persistence(f"mark event {event_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(EventRecord)
                .where(
                    col(EventRecord.event_id) == event_id,
                    col(EventRecord.processing_status) == EventProcessingStatus.PENDING.value,
                )
                .values(
                    processing_status=status.value,
                    processed_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Jobs

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a pending job."""

        if not 1 <= payload.priority <= 9:  # noqa: PLR2004
            raise ValueError(f"Job priority must be within 1..9, got {payload.priority}")
        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with _persistence(f"enqueue {payload.job_type.value} job"), Session(self.engine) as session:
            row = JobRecord(
                job_id=job_id,
                tenant_id=payload.tenant_id,
                user_id=payload.user_id,
                event_id=payload.event_id,
                job_type=payload.job_type.value,
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                payload_json=_dump_json(payload.payload),
                meta_json=_dump_json(payload.meta),
                retry_count=0,
                max_retries=payload.max_retries,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_ready_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the most urgent pending job whose retry delay has elapsed."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobRecord)
                    .where(
                        JobRecord.status == JobStatus.PENDING.value,
                        or_(
                            col(JobRecord.retry_after).is_(None),
                            col(JobRecord.retry_after) <= now,
                        ),
                    )
                    .order_by(
                        col(JobRecord.priority).asc(),
                        col(JobRecord.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(JobRecord)
                    .where(
                        col(JobRecord.job_id) == candidate.job_id,
                        col(JobRecord.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        worker_id=worker_id,
                        started_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(JobRecord).where(JobRecord.job_id == candidate.job_id),
                ).one()
                session.commit()
                return _to_job_view(claimed)

    def complete_job(self, *, job_id: str, result: dict[str, Any] | None) -> bool:
        """Mark a running job as completed and store its result."""

        return self._finish_job(
            job_id=job_id,
            values={
                "status": JobStatus.COMPLETED.value,
                "result_json": _dump_json(result) if result is not None else None,
                "error_message": None,
            },
        )

    def fail_job(self, *, job_id: str, error_message: str) -> bool:
        """Mark a running job as permanently failed."""

        return self._finish_job(
            job_id=job_id,
            values={"status": JobStatus.FAILED.value, "error_message": error_message},
        )

    def schedule_retry(self, *, job_id: str, retry_after: datetime, error_message: str) -> bool:
        """Requeue a running job for another attempt after `retry_after`."""

        now = to_db_datetime(utc_now())
        with _persistence(f"requeue job {job_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRecord)
                .where(
                    col(JobRecord.job_id) == job_id,
                    col(JobRecord.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    retry_count=JobRecord.retry_count + 1,
                    retry_after=to_db_datetime(retry_after),
                    error_message=error_message,
                    worker_id=None,
                    started_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(JobRecord).order_by(col(JobRecord.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(JobRecord.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs_for_event(self, *, event_id: str) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRecord)
                .where(JobRecord.event_id == event_id)
                .order_by(col(JobRecord.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRecord).where(JobRecord.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return a job with every run executed for it."""

        job = self.get_job(job_id=job_id)
        if job is None:
            return None
        return JobDetails(job=job, runs=self.list_runs(job_id=job_id, limit=None))

    # Runs

    def create_run(
        self,
        *,
        org_id: str,
        job_id: str | None,
        planner: str,
        meta: dict[str, Any],
    ) -> AgentRunView:
        """Create a run in running state with zeroed totals."""

        run_id = str(uuid4())
        with _persistence(f"create run for job {job_id}"), Session(self.engine) as session:
            row = AgentRunRecord(
                run_id=run_id,
                org_id=org_id,
                job_id=job_id,
                planner=planner,
                status=RunStatus.RUNNING.value,
                cost_usd=0.0,
                tokens_in=0,
                tokens_out=0,
                steps=0,
                meta_json=_dump_json(meta),
                started_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def finalize_run(
        self,
        *,
        run_id: str,
        status: RunStatus,
        meta_updates: dict[str, Any] | None = None,
    ) -> bool:
        """Set the terminal status once; metadata updates are merged into existing meta."""

        if status is RunStatus.RUNNING:
            raise ValueError("Run can only be finalized with a terminal status")
        now = utc_now()
        with _persistence(f"finalize run {run_id}"), Session(self.engine) as session:
            row = session.exec(
                select(AgentRunRecord).where(AgentRunRecord.run_id == run_id),
            ).one_or_none()
            if row is None or row.status != RunStatus.RUNNING.value:
                return False
            meta = _load_json_dict(row.meta_json)
            meta.update(meta_updates or {})
            duration_ms = int((now - to_utc_aware(row.started_at)).total_seconds() * 1000)
            result = session.exec(
                sa_update(AgentRunRecord)
                .where(
                    col(AgentRunRecord.run_id) == run_id,
                    col(AgentRunRecord.status) == RunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    finished_at=to_db_datetime(now),
                    duration_ms=max(0, duration_ms),
                    meta_json=_dump_json(meta),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def increment_run_totals(self, *, run_id: str, usage: StepUsage) -> None:
        """Add one completed step's consumption to the run totals in a single UPDATE."""

        with _persistence(f"update totals of run {run_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRecord)
                .where(col(AgentRunRecord.run_id) == run_id)
                .values(
                    cost_usd=AgentRunRecord.cost_usd + usage.cost_usd,
                    tokens_in=AgentRunRecord.tokens_in + usage.tokens_in,
                    tokens_out=AgentRunRecord.tokens_out + usage.tokens_out,
                    steps=AgentRunRecord.steps + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise PersistenceError(f"Run not found: {run_id}")
            session.commit()

    def get_run(self, *, run_id: str) -> AgentRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentRunRecord).where(AgentRunRecord.run_id == run_id),
            ).one_or_none()
        return _to_run_view(row) if row is not None else None

    def list_runs(
        self,
        *,
        job_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = 200,
    ) -> list[AgentRunView]:
        """List runs, newest first."""

        with Session(self.engine) as session:
            statement = select(AgentRunRecord).order_by(col(AgentRunRecord.started_at).desc())
            if job_id is not None:
                statement = statement.where(AgentRunRecord.job_id == job_id)
            if since is not None:
                statement = statement.where(
                    col(AgentRunRecord.started_at) >= to_db_datetime(since),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def get_run_details(self, *, run_id: str) -> RunDetails | None:
        """Return a run with its ordered steps and their artifacts."""

        run = self.get_run(run_id=run_id)
        if run is None:
            return None
        steps = self.list_steps(run_ids=[run_id])
        return RunDetails(
            run=run,
            steps=steps,
            artifacts=self.list_artifacts(step_ids=[step.step_id for step in steps]),
        )

    # Steps

    def next_step_no(self, *, run_id: str) -> int:
        """Highest recorded step number plus one; failed steps still consume their number."""

        with Session(self.engine) as session:
            last = session.exec(
                select(func.max(AgentStepRecord.step_no)).where(AgentStepRecord.run_id == run_id),
            ).one()
        return (last or 0) + 1

    def create_step(self, *, run_id: str, step_no: int, tool: str, input_hash: str) -> str:
        """Record a step in running state before its tool is invoked."""

        step_id = str(uuid4())
        try:
            with Session(self.engine) as session:
                session.add(
                    AgentStepRecord(
                        step_id=step_id,
                        run_id=run_id,
                        step_no=step_no,
                        tool=tool,
                        input_hash=input_hash,
                        status=StepStatus.RUNNING.value,
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except IntegrityError as error:
            raise PersistenceError(
                f"Step {step_no} already recorded for run {run_id}",
            ) from error
        except SQLAlchemyError as error:
            raise PersistenceError(f"Failed to create step {step_no} of run {run_id}") from error
        return step_id

    def complete_step(self, *, step_id: str, usage: StepUsage, output_ref: str | None) -> None:
        """Store actual consumption for a step that finished successfully."""

        self._finish_step(
            step_id=step_id,
            values={
                "status": StepStatus.COMPLETED.value,
                "tokens_in": usage.tokens_in,
                "tokens_out": usage.tokens_out,
                "cost_usd": usage.cost_usd,
                "duration_ms": usage.duration_ms,
                "output_ref": output_ref,
            },
        )

    def fail_step(self, *, step_id: str, error_message: str, duration_ms: int = 0) -> None:
        self._finish_step(
            step_id=step_id,
            values={
                "status": StepStatus.FAILED.value,
                "error_message": error_message,
                "duration_ms": duration_ms,
            },
        )

    def list_steps(self, *, run_ids: list[str]) -> list[AgentStepView]:
        """Steps of the given runs ordered by run and step number."""

        if not run_ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentStepRecord)
                .where(col(AgentStepRecord.run_id).in_(run_ids))
                .order_by(col(AgentStepRecord.run_id), col(AgentStepRecord.step_no).asc()),
            ).all()
        return [_to_step_view(row) for row in rows]

    # Artifacts

    def add_artifact(self, *, step_id: str, artifact: ArtifactWrite) -> None:
        """Persist artifact reference, and content when it is stored out of line."""

        with _persistence(f"store artifact for step {step_id}"), Session(self.engine) as session:
            session.add(
                ToolArtifactRecord(
                    step_id=step_id,
                    kind=artifact.kind,
                    ref=artifact.ref,
                    size_bytes=artifact.size_bytes,
                    content=artifact.content,
                    meta_json=_dump_json(artifact.meta),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_artifacts(self, *, step_ids: list[str]) -> list[ArtifactView]:
        if not step_ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(ToolArtifactRecord)
                .where(col(ToolArtifactRecord.step_id).in_(step_ids))
                .order_by(col(ToolArtifactRecord.id).asc()),
            ).all()
        return [
            ArtifactView(
                id=row.id or 0,
                step_id=row.step_id,
                kind=row.kind,
                ref=row.ref,
                size_bytes=row.size_bytes,
                content=row.content,
                meta=_load_json_dict(row.meta_json),
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    def _finish_job(self, *, job_id: str, values: dict[str, Any]) -> bool:
        now = to_db_datetime(utc_now())
        with _persistence(f"finish job {job_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRecord)
                .where(
                    col(JobRecord.job_id) == job_id,
                    col(JobRecord.status) == JobStatus.RUNNING.value,
                )
                .values(**values, finished_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _finish_step(self, *, step_id: str, values: dict[str, Any]) -> None:
        with _persistence(f"finish step {step_id}"), Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentStepRecord)
                .where(
                    col(AgentStepRecord.step_id) == step_id,
                    col(AgentStepRecord.status) == StepStatus.RUNNING.value,
                )
                .values(**values, finished_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise PersistenceError(f"Step is not running: {step_id}")
            session.commit()


@contextmanager
def _persistence(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as error:
        raise PersistenceError(f"Failed to {action}: {error}") from error


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_event_view(row: EventRecord) -> EventView:
    return EventView(
        event_id=row.event_id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        event_type=row.event_type,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        payload=_load_json_dict(row.payload_json),
        processing_status=EventProcessingStatus(row.processing_status),
        created_at=to_utc_aware(row.created_at),
        processed_at=to_utc_aware_optional(row.processed_at),
    )


def _to_job_view(row: JobRecord) -> JobView:
    result = json.loads(row.result_json) if row.result_json else None
    return JobView(
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        event_id=row.event_id,
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        priority=row.priority,
        payload=_load_json_dict(row.payload_json),
        meta=_load_json_dict(row.meta_json),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        retry_after=to_utc_aware_optional(row.retry_after),
        worker_id=row.worker_id,
        error_message=row.error_message,
        result=result if isinstance(result, dict) else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=to_utc_aware_optional(row.started_at),
        finished_at=to_utc_aware_optional(row.finished_at),
    )


def _to_run_view(row: AgentRunRecord) -> AgentRunView:
    return AgentRunView(
        run_id=row.run_id,
        org_id=row.org_id,
        job_id=row.job_id,
        planner=row.planner,
        status=RunStatus(row.status),
        cost_usd=float(row.cost_usd),
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        steps=row.steps,
        meta=_load_json_dict(row.meta_json),
        started_at=to_utc_aware(row.started_at),
        finished_at=to_utc_aware_optional(row.finished_at),
        duration_ms=row.duration_ms,
    )


def _to_step_view(row: AgentStepRecord) -> AgentStepView:
    return AgentStepView(
        step_id=row.step_id,
        run_id=row.run_id,
        step_no=row.step_no,
        tool=row.tool,
        input_hash=row.input_hash,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        cost_usd=float(row.cost_usd),
        duration_ms=row.duration_ms,
        status=StepStatus(row.status),
        output_ref=row.output_ref,
        error_message=row.error_message,
        created_at=to_utc_aware(row.created_at),
        finished_at=to_utc_aware_optional(row.finished_at),
    )
