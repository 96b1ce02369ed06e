"""
Processing API — start, inspect and cancel pipeline runs.

POST /api/processing/projects/{project_id}/processing/start
  Validate preconditions, create the run + five pending stages, start the
  background sequencer and return the run (201)
GET  /api/processing/projects/{project_id}/processing/runs
  Paginated runs for a project, newest first
GET  /api/processing/runs/{run_id}
GET  /api/processing/runs/{run_id}/stages
  Stage rows in pipeline order
POST /api/processing/runs/{run_id}/cancel
  Cancel a processing run
"""

import logging

from fastapi import APIRouter, Body, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_run_supervisor, require
from app.api.responses import DEFAULT_PAGE_SIZE, clamp_pagination, paginated, success
from app.auth.context import RequestContext
from app.auth.permissions import Permission
from app.schemas.schemas import (
    ProcessingRunOut,
    ProcessingStageOut,
    StartProcessingRequest,
)
from app.services.processing_service import ProcessingService
from app.services.run_supervisor import RunSupervisor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/processing", tags=["processing"])


@router.post("/projects/{project_id}/processing/start", status_code=201)
async def start_processing(
    project_id: int = Path(..., gt=0),
    body: StartProcessingRequest | None = Body(None),
    ctx: RequestContext = Depends(require(Permission.PROCESSING_RUN)),
    db: AsyncSession = Depends(get_db),
    supervisor: RunSupervisor = Depends(get_run_supervisor),
):
    """Begin a processing run for the project's ready sources."""
    quality_settings = None
    if body is not None and body.quality_settings is not None:
        quality_settings = body.quality_settings.model_dump(by_alias=True, exclude_none=True)

    service = ProcessingService(db, supervisor)
    run = await service.start_processing(
        project_id,
        ctx.organisation_id,
        ctx.user_id,
        quality_settings,
    )
    logger.info("Run %s started for project %s by %s", run.id, project_id, ctx.actor)
    return success(ProcessingRunOut.model_validate(run))


@router.get("/projects/{project_id}/processing/runs")
async def list_runs(
    project_id: int = Path(..., gt=0),
    page: int = Query(1),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    ctx: RequestContext = Depends(require(Permission.PROCESSING_READ)),
    db: AsyncSession = Depends(get_db),
):
    """List a project's processing runs, newest first."""
    page, limit = clamp_pagination(page, limit)
    runs, total = await ProcessingService(db).list_runs(
        project_id, ctx.organisation_id, page=page, limit=limit,
    )
    return paginated(
        [ProcessingRunOut.model_validate(r) for r in runs],
        page=page, limit=limit, total=total,
    )


@router.get("/runs/{run_id}")
async def get_run(
    run_id: int = Path(..., gt=0),
    ctx: RequestContext = Depends(require(Permission.PROCESSING_READ)),
    db: AsyncSession = Depends(get_db),
):
    run = await ProcessingService(db).get_run(run_id, ctx.organisation_id)
    return success(ProcessingRunOut.model_validate(run))


@router.get("/runs/{run_id}/stages")
async def get_run_stages(
    run_id: int = Path(..., gt=0),
    ctx: RequestContext = Depends(require(Permission.PROCESSING_READ)),
    db: AsyncSession = Depends(get_db),
):
    stages = await ProcessingService(db).get_run_stages(run_id, ctx.organisation_id)
    return success([ProcessingStageOut.model_validate(s) for s in stages])


@router.post("/runs/{run_id}/cancel")
async def cancel_run(
    run_id: int = Path(..., gt=0),
    ctx: RequestContext = Depends(require(Permission.PROCESSING_CANCEL)),
    db: AsyncSession = Depends(get_db),
    supervisor: RunSupervisor = Depends(get_run_supervisor),
):
    """Cancel a run that is still processing."""
    run = await ProcessingService(db, supervisor).cancel_run(
        run_id, ctx.organisation_id, user_id=ctx.user_id,
    )
    logger.info("Run %s cancelled by %s", run.id, ctx.actor)
    return success(ProcessingRunOut.model_validate(run))
