"""
Audit API Router — project event trail and lineage.

GET /api/audit/projects/{project_id}/audit/events
  Paginated events, newest first, with the acting user's name
GET /api/audit/projects/{project_id}/audit/lineage
  Sources and runs of a project as a lineage graph
GET /api/audit/processing/runs/{run_id}/audit/lineage
  Config snapshot, stage counts and run metrics
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, require
from app.api.responses import DEFAULT_PAGE_SIZE, clamp_pagination, paginated, success
from app.auth.context import RequestContext
from app.auth.permissions import Permission
from app.schemas.schemas import (
    AuditEventOut,
    LineageEdge,
    LineageNode,
    LineageRun,
    LineageSource,
    ProcessingStageOut,
    ProjectLineageOut,
    RunLineageOut,
    RunMetrics,
)
from app.services.audit_service import AuditService
from app.services.scoping import get_project_for_org

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/projects/{project_id}/audit/events")
async def list_audit_events(
    project_id: int = Path(..., gt=0),
    event_type: str | None = Query(None, alias="eventType", description="Filter by event type"),
    page: int = Query(1),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Return a paginated, newest-first list of a project's audit events."""
    await get_project_for_org(db, project_id, ctx.organisation_id)
    page, limit = clamp_pagination(page, limit)

    events, total = await AuditService(db).list_events(
        project_id,
        limit=limit,
        offset=(page - 1) * limit,
        event_type=event_type,
    )
    return paginated(
        [
            AuditEventOut.model_validate(event).model_copy(update={"user_name": user_name})
            for event, user_name in events
        ],
        page=page, limit=limit, total=total,
    )


@router.get("/projects/{project_id}/audit/lineage")
async def get_project_lineage(
    project_id: int = Path(..., gt=0),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
):
    lineage = await AuditService(db).get_lineage(project_id, ctx.organisation_id)
    return success(ProjectLineageOut(
        sources=[LineageSource.model_validate(s) for s in lineage["sources"]],
        processing_runs=[LineageRun.model_validate(r) for r in lineage["processing_runs"]],
        nodes=[LineageNode(**n) for n in lineage["nodes"]],
        edges=[LineageEdge.model_validate(e) for e in lineage["edges"]],
    ))


@router.get("/processing/runs/{run_id}/audit/lineage")
async def get_run_lineage(
    run_id: int = Path(..., gt=0),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
):
    run, stages = await AuditService(db).get_run_lineage(run_id, ctx.organisation_id)
    return success(RunLineageOut(
        run_id=run.id,
        status=run.status,
        config_snapshot=run.config_snapshot,
        stages=[ProcessingStageOut.model_validate(s) for s in stages],
        metrics=RunMetrics.model_validate(run),
    ))
