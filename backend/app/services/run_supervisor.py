"""
Run Supervisor — owns the background task of every active processing run.

Runs execute as asyncio tasks on the server's event loop. The supervisor keeps
a handle per run id so a run can be cancelled (cancel_run) or awaited (tests,
shutdown). Task outcomes are only ever reflected in the run's own status
column; errors that escape the sequencer are logged here.
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models import ProcessingRun
from app.services.stage_sequencer import StageSequencer

logger = logging.getLogger(__name__)


class RunSupervisor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sequencer: StageSequencer | None = None,
        start_delay: float | None = None,
    ):
        self.session_factory = session_factory
        self.sequencer = sequencer or StageSequencer(session_factory)
        self.start_delay = settings.processing_start_delay_seconds if start_delay is None else start_delay
        self._tasks: dict[int, asyncio.Task] = {}

    def launch(self, run_id: int) -> asyncio.Task:
        """Schedule the sequencer for `run_id` and return immediately."""
        existing = self._tasks.get(run_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._execute(run_id), name=f"processing-run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda t, rid=run_id: self._on_done(rid, t))
        return task

    async def _execute(self, run_id: int) -> str | None:
        if self.start_delay > 0:
            await asyncio.sleep(self.start_delay)
        return await self.sequencer.run(run_id)

    def _on_done(self, run_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if task.cancelled():
            logger.info("Run %s task cancelled", run_id, extra={"run_id": run_id})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Run %s task crashed: %s", run_id, exc,
                exc_info=(type(exc), exc, exc.__traceback__), extra={"run_id": run_id},
            )

    def cancel(self, run_id: int) -> bool:
        """Interrupt the run's task. False if no task is active for it."""
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_active(self, run_id: int) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    def active_run_ids(self) -> list[int]:
        return sorted(rid for rid, task in self._tasks.items() if not task.done())

    async def wait(self, run_id: int, timeout: float | None = None) -> str | None:
        """Wait for a run's task to finish, then return the run's stored status.

        The store is the record of outcome, so this also answers for runs whose
        task already finished (or was never launched here). None if the run
        does not exist.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise asyncio.TimeoutError(f"Run {run_id} still active after {timeout}s")
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProcessingRun.status).where(ProcessingRun.id == run_id)
            )
            return result.scalar_one_or_none()

    async def shutdown(self) -> None:
        """Cancel every outstanding run task and wait for them to unwind."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d in-flight processing runs on shutdown", len(tasks))
