"""
Audit Service — project-scoped event trail and lineage.

Processing lifecycle transitions (started, completed, failed, cancelled)
each write one AuditEvent row against the run's project.
"""

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditEvent, ProcessingRun, ProcessingStage, Source, User
from app.pipeline.states import stage_position
from app.services.scoping import get_project_for_org, get_run_for_org


class AuditService:
    """Append-only audit trail scoped to projects."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_event(
        self,
        project_id: int,
        event_type: str,
        user_id: int | None = None,
        event_data: dict | None = None,
        resource_type: str | None = None,
        resource_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        """
        Write an audit entry.

        Args:
            project_id: Project the event belongs to
            event_type: e.g. "processing.started", "processing.cancelled"
            user_id: Acting user; None for events raised by the background sequencer
            event_data: Event-specific details
            resource_type: "processing_run", "source", etc.
            resource_id: The ID of the affected resource
        """
        entry = AuditEvent(
            project_id=project_id,
            user_id=user_id,
            event_type=event_type,
            event_data=event_data or {},
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_events(
        self,
        project_id: int,
        *,
        limit: int,
        offset: int,
        event_type: str | None = None,
    ) -> tuple[list[tuple[AuditEvent, str | None]], int]:
        """Newest-first page of (event, acting user's name) plus the filtered total."""
        conditions = [AuditEvent.project_id == project_id]
        if event_type:
            conditions.append(AuditEvent.event_type == event_type)

        result = await self.session.execute(
            select(AuditEvent, User.name)
            .outerjoin(User, AuditEvent.user_id == User.id)
            .where(*conditions)
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .offset(offset)
            .limit(limit)
        )
        events = [(event, user_name) for event, user_name in result.all()]

        total = (await self.session.execute(
            select(func.count()).select_from(AuditEvent).where(*conditions)
        )).scalar() or 0

        return events, total

    # ── Lineage ───────────────────────────────────────────────────────────────

    async def get_lineage(self, project_id: int, organisation_id: int) -> dict:
        """
        Project lineage graph: sources and runs as nodes, with every source
        feeding every run.
        """
        await get_project_for_org(self.session, project_id, organisation_id)

        sources = list((await self.session.execute(
            select(Source).where(Source.project_id == project_id).order_by(Source.id)
        )).scalars())
        runs = list((await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.project_id == project_id)
            .order_by(ProcessingRun.created_at.desc(), ProcessingRun.id.desc())
        )).scalars())

        nodes = [
            {"id": f"source-{s.id}", "type": "source", "label": s.name} for s in sources
        ] + [
            {"id": f"run-{r.id}", "type": "processing", "label": f"Run #{r.id}"} for r in runs
        ]
        edges = [
            {"from": f"source-{s.id}", "to": f"run-{r.id}"} for r in runs for s in sources
        ]
        return {"sources": sources, "processing_runs": runs, "nodes": nodes, "edges": edges}

    async def get_run_lineage(self, run_id: int, organisation_id: int) -> tuple[ProcessingRun, list[ProcessingStage]]:
        """The run (status, config snapshot, metrics) and its stages in pipeline order."""
        run = await get_run_for_org(self.session, run_id, organisation_id)
        await self.session.refresh(run, attribute_names=["stages"])
        stages = sorted(run.stages, key=lambda s: (stage_position(s.stage), s.id))
        return run, stages
