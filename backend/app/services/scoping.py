"""
Tenant scoping helpers.

Every lookup by id is joined through the owning project so a caller can only
see rows belonging to their organisation. Rows from other organisations are
reported as missing rather than forbidden.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError
from app.models import Project, ProcessingRun


async def get_project_for_org(session: AsyncSession, project_id: int, organisation_id: int) -> Project:
    result = await session.execute(
        select(Project).where(
            Project.id == project_id,
            Project.organisation_id == organisation_id,
            Project.deleted_at.is_(None),
        )
    )
    project = result.scalar_one_or_none()
    if project is None:
        raise NotFoundError("Project")
    return project


async def get_run_for_org(session: AsyncSession, run_id: int, organisation_id: int) -> ProcessingRun:
    result = await session.execute(
        select(ProcessingRun)
        .join(Project, ProcessingRun.project_id == Project.id)
        .where(
            ProcessingRun.id == run_id,
            Project.organisation_id == organisation_id,
            Project.deleted_at.is_(None),
        )
    )
    run = result.scalar_one_or_none()
    if run is None:
        raise NotFoundError("Processing Run")
    return run
