"""
Stage Sequencer — advances one processing run through the fixed stage order.

For each stage in STAGE_ORDER:
  1. pending → processing   (started_at, input_count)
  2. run the stage handler
  3. processing → completed (completed_at, output_count)

Every transition is a conditional UPDATE that only applies while the run is
still `processing`, so a run cancelled elsewhere stops receiving stage writes
and a terminal run is never overwritten. A handler (or store) error marks the
in-flight stage and the run `failed` with the error message; it is logged here
and never propagates to the HTTP caller that started the run.
"""

import asyncio
import logging
import time
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import utcnow
from app.middleware.metrics import (
    processing_runs_total, processing_stage_duration_seconds, processing_records_total,
)
from app.models import ProcessingRun, ProcessingStage
from app.pipeline.stages import StageHandler, StageResult, build_handlers
from app.pipeline.states import STAGE_ORDER, RunStatus, StageName, StageStatus, allowed_from
from app.services.audit_service import AuditService

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


def _still_processing(run_id: int):
    return (
        select(ProcessingRun.id)
        .where(ProcessingRun.id == run_id, ProcessingRun.status == RunStatus.PROCESSING.value)
        .exists()
    )


class StageSequencer:
    """Drives a single run's stage rows and final run status."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: dict[StageName, StageHandler] | None = None,
        stage_delay: float | None = None,
    ):
        self.session_factory = session_factory
        if handlers is None:
            delay = settings.processing_stage_delay_seconds if stage_delay is None else stage_delay
            handlers = build_handlers(delay)
        self.handlers = handlers

    async def run(self, run_id: int) -> str | None:
        """Advance `run_id` through every stage. Returns the run's final status."""
        async with self.session_factory() as session:
            run = await session.get(ProcessingRun, run_id)
            if run is None:
                logger.warning("Run %s vanished before sequencing", run_id, extra={"run_id": run_id})
                return None
            if run.status != RunStatus.PROCESSING.value:
                return run.status
            project_id = run.project_id
            total_records = run.total_records or 0
            snapshot: dict[str, Any] = dict(run.config_snapshot or {})

        logger.info("Run %s started: %d records", run_id, total_records, extra={"run_id": run_id})

        input_count = total_records
        filtered = 0
        errors = 0
        for name in STAGE_ORDER:
            try:
                result = await self._advance_stage(run_id, name, input_count, snapshot)
            except asyncio.CancelledError:
                logger.info(
                    "Run %s interrupted during %s", run_id, name.value,
                    extra={"run_id": run_id, "stage": name.value},
                )
                raise
            except Exception as exc:
                logger.error(
                    "Run %s failed in stage %s: %s", run_id, name.value, exc,
                    exc_info=True, extra={"run_id": run_id, "stage": name.value},
                )
                await self._mark_failed(run_id, project_id, name, exc)
                return RunStatus.FAILED.value

            if result is None:
                status = await self._current_status(run_id)
                logger.info(
                    "Run %s left processing (%s); stopping before %s completes",
                    run_id, status, name.value, extra={"run_id": run_id, "stage": name.value},
                )
                return status

            input_count = result.output_count
            filtered += result.filtered
            errors += result.errors

        return await self._finish(run_id, project_id, total_records, filtered, errors)

    async def _advance_stage(
        self, run_id: int, name: StageName, input_count: int, snapshot: dict[str, Any],
    ) -> StageResult | None:
        """Run one stage. Returns None if the run stopped being `processing`."""
        async with self.session_factory() as session:
            started = await session.execute(
                update(ProcessingStage)
                .where(
                    ProcessingStage.run_id == run_id,
                    ProcessingStage.stage == name.value,
                    ProcessingStage.status == StageStatus.PENDING.value,
                    _still_processing(run_id),
                )
                .values(
                    status=StageStatus.PROCESSING.value,
                    started_at=utcnow(),
                    input_count=input_count,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if started.rowcount != 1:
            return None

        handler = self.handlers[name]
        logger.debug(
            "Run %s stage %s: %s (%d records in)", run_id, name.value, handler.description, input_count,
            extra={"run_id": run_id, "stage": name.value},
        )
        t0 = time.perf_counter()
        result = await handler.run(input_count, snapshot)
        processing_stage_duration_seconds.labels(stage=name.value).observe(time.perf_counter() - t0)

        async with self.session_factory() as session:
            completed = await session.execute(
                update(ProcessingStage)
                .where(
                    ProcessingStage.run_id == run_id,
                    ProcessingStage.stage == name.value,
                    _still_processing(run_id),
                )
                .values(
                    status=StageStatus.COMPLETED.value,
                    completed_at=utcnow(),
                    output_count=result.output_count,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if completed.rowcount != 1:
            return None

        logger.info(
            "Run %s stage %s completed: %d → %d",
            run_id, name.value, input_count, result.output_count,
            extra={"run_id": run_id, "stage": name.value},
        )
        return result

    async def _finish(
        self, run_id: int, project_id: int, total_records: int, filtered: int, errors: int,
    ) -> str | None:
        async with self.session_factory() as session:
            finished = await session.execute(
                update(ProcessingRun)
                .where(
                    ProcessingRun.id == run_id,
                    ProcessingRun.status.in_(allowed_from(RunStatus.COMPLETED)),
                )
                .values(
                    status=RunStatus.COMPLETED.value,
                    processed_records=total_records,
                    filtered_records=filtered,
                    error_records=errors,
                    completed_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if finished.rowcount != 1:
                await session.rollback()
                return await self._current_status(run_id)

            await AuditService(session).log_event(
                project_id=project_id,
                event_type="processing.completed",
                event_data={"runId": run_id, "processedRecords": total_records},
                resource_type="processing_run",
                resource_id=run_id,
            )
            await session.commit()

        processing_runs_total.labels(status=RunStatus.COMPLETED.value).inc()
        processing_records_total.inc(total_records)
        logger.info("Run %s completed: %d records", run_id, total_records, extra={"run_id": run_id})
        return RunStatus.COMPLETED.value

    async def _mark_failed(self, run_id: int, project_id: int, name: StageName, exc: Exception) -> None:
        stage_message = (str(exc) or type(exc).__name__)[:MAX_ERROR_MESSAGE_LENGTH]
        run_message = f"Stage '{name.value}' failed: {stage_message}"[:MAX_ERROR_MESSAGE_LENGTH]
        now = utcnow()
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(ProcessingStage)
                    .where(ProcessingStage.run_id == run_id, ProcessingStage.stage == name.value)
                    .values(status=StageStatus.FAILED.value, error_message=stage_message, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                failed = await session.execute(
                    update(ProcessingRun)
                    .where(
                        ProcessingRun.id == run_id,
                        ProcessingRun.status.in_(allowed_from(RunStatus.FAILED)),
                    )
                    .values(status=RunStatus.FAILED.value, error_message=run_message, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if failed.rowcount != 1:
                    # Already terminal (cancelled meanwhile); leave it as is
                    await session.rollback()
                    return
                await AuditService(session).log_event(
                    project_id=project_id,
                    event_type="processing.failed",
                    event_data={"runId": run_id, "stage": name.value, "error": stage_message},
                    resource_type="processing_run",
                    resource_id=run_id,
                )
                await session.commit()
        except Exception:
            logger.exception("Could not record failure of run %s", run_id, extra={"run_id": run_id})
            return
        processing_runs_total.labels(status=RunStatus.FAILED.value).inc()

    async def _current_status(self, run_id: int) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProcessingRun.status).where(ProcessingRun.id == run_id)
            )
            return result.scalar_one_or_none()
