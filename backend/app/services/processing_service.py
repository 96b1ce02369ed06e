"""
Processing Service — run orchestration and run queries.

start_processing validates preconditions in order (project visible, no run in
progress, at least one ready source), persists the run and its five pending
stages in one transaction, commits, and hands the run to the RunSupervisor.
Nothing is written when a precondition fails.
"""

import logging

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.errors import BadRequestError, ProcessingInProgressError
from app.middleware.metrics import processing_runs_total
from app.models import ProcessingRun, ProcessingStage, Source
from app.pipeline.states import (
    STAGE_ORDER, RunStatus, StageStatus, allowed_from, can_transition, stage_position,
)
from app.services.audit_service import AuditService
from app.services.run_supervisor import RunSupervisor
from app.services.scoping import get_project_for_org, get_run_for_org

logger = logging.getLogger(__name__)


class ProcessingService:
    def __init__(self, session: AsyncSession, supervisor: RunSupervisor | None = None):
        self.session = session
        self.supervisor = supervisor

    # ── Orchestration ─────────────────────────────────────────────────────────

    async def start_processing(
        self,
        project_id: int,
        organisation_id: int,
        user_id: int,
        quality_settings: dict | None = None,
    ) -> ProcessingRun:
        project = await get_project_for_org(self.session, project_id, organisation_id)

        existing = (await self.session.execute(
            select(ProcessingRun.id)
            .where(
                ProcessingRun.project_id == project_id,
                ProcessingRun.status == RunStatus.PROCESSING.value,
            )
            .limit(1)
        )).scalar_one_or_none()
        if existing is not None:
            raise ProcessingInProgressError()

        sources = list((await self.session.execute(
            select(Source)
            .where(Source.project_id == project_id, Source.status == "ready")
            .order_by(Source.id)
        )).scalars())
        if not sources:
            raise BadRequestError("No ready sources available for processing")

        total_records = sum(s.record_count or 0 for s in sources)

        run = ProcessingRun(
            project_id=project_id,
            status=RunStatus.PROCESSING.value,
            config_snapshot={
                "targetSchema": project.target_schema,
                "qualitySettings": dict(quality_settings or {}),
                "sourceIds": [s.id for s in sources],
            },
            total_records=total_records,
            processed_records=0,
            filtered_records=0,
            error_records=0,
            created_by_id=user_id,
            started_at=utcnow(),
        )
        self.session.add(run)
        try:
            await self.session.flush()
        except IntegrityError:
            # Lost the race against a concurrent start for the same project
            await self.session.rollback()
            raise ProcessingInProgressError()

        for name in STAGE_ORDER:
            self.session.add(ProcessingStage(
                run_id=run.id,
                stage=name.value,
                status=StageStatus.PENDING.value,
                input_count=0,
                output_count=0,
            ))

        await AuditService(self.session).log_event(
            project_id=project_id,
            user_id=user_id,
            event_type="processing.started",
            event_data={"runId": run.id, "totalRecords": total_records, "sourceIds": [s.id for s in sources]},
            resource_type="processing_run",
            resource_id=run.id,
        )
        # The background task reads the run through its own session
        await self.session.commit()
        await self.session.refresh(run)

        logger.info(
            "Run %s created for project %s: %d sources, %d records",
            run.id, project_id, len(sources), total_records, extra={"run_id": run.id},
        )
        processing_runs_total.labels(status=RunStatus.PROCESSING.value).inc()

        if self.supervisor is not None:
            self.supervisor.launch(run.id)
        return run

    # ── Queries ───────────────────────────────────────────────────────────────

    async def list_runs(
        self, project_id: int, organisation_id: int, *, page: int, limit: int,
    ) -> tuple[list[ProcessingRun], int]:
        await get_project_for_org(self.session, project_id, organisation_id)

        offset = (page - 1) * limit
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.project_id == project_id)
            .order_by(ProcessingRun.created_at.desc(), ProcessingRun.id.desc())
            .offset(offset)
            .limit(limit)
        )
        runs = list(result.scalars())

        total = (await self.session.execute(
            select(func.count()).select_from(ProcessingRun).where(ProcessingRun.project_id == project_id)
        )).scalar() or 0

        return runs, total

    async def get_run(self, run_id: int, organisation_id: int) -> ProcessingRun:
        return await get_run_for_org(self.session, run_id, organisation_id)

    async def get_run_stages(self, run_id: int, organisation_id: int) -> list[ProcessingStage]:
        await get_run_for_org(self.session, run_id, organisation_id)

        result = await self.session.execute(
            select(ProcessingStage)
            .where(ProcessingStage.run_id == run_id)
            .order_by(ProcessingStage.id)
        )
        return sorted(result.scalars(), key=lambda s: (stage_position(s.stage), s.id))

    # ── Cancellation ──────────────────────────────────────────────────────────

    async def cancel_run(self, run_id: int, organisation_id: int, user_id: int | None = None) -> ProcessingRun:
        run = await get_run_for_org(self.session, run_id, organisation_id)

        if not can_transition(run.status, RunStatus.CANCELLED):
            raise BadRequestError("Can only cancel processing runs")

        cancelled = await self.session.execute(
            update(ProcessingRun)
            .where(
                ProcessingRun.id == run_id,
                ProcessingRun.status.in_(allowed_from(RunStatus.CANCELLED)),
            )
            .values(status=RunStatus.CANCELLED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount != 1:
            # Finished or failed between the read and the update
            await self.session.rollback()
            raise BadRequestError("Can only cancel processing runs")

        await AuditService(self.session).log_event(
            project_id=run.project_id,
            user_id=user_id,
            event_type="processing.cancelled",
            event_data={"runId": run_id},
            resource_type="processing_run",
            resource_id=run_id,
        )
        await self.session.commit()
        await self.session.refresh(run)

        if self.supervisor is not None and self.supervisor.cancel(run_id):
            logger.info("Run %s cancelled; background task interrupted", run_id, extra={"run_id": run_id})
        processing_runs_total.labels(status=RunStatus.CANCELLED.value).inc()
        return run
