"""
API Dependencies — DB session, auth context, permission guards, run supervisor.

The `get_request_context` function:
  1. Extracts the Bearer token from the Authorization header
  2. Decodes and validates the JWT
  3. Resolves role → permissions via ROLE_PERMISSIONS
  4. Returns a RequestContext scoped to the token's organisation
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, Request
from jose import ExpiredSignatureError, JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session
from app.auth.permissions import Permission
from app.auth.roles import Role, ROLE_PERMISSIONS
from app.auth.context import RequestContext
from app.auth.jwt import decode_access_token
from app.errors import UnauthorizedError
from app.services.run_supervisor import RunSupervisor

logger = logging.getLogger(__name__)


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Background run supervisor ────────────────────────────────────────────────

def get_run_supervisor(request: Request) -> RunSupervisor:
    """The process-wide supervisor created in the app lifespan."""
    return request.app.state.run_supervisor


# ── Request context (JWT authentication) ──────────────────────────────────────

async def get_request_context(request: Request) -> RequestContext:
    """Build a RequestContext for the current request by decoding the JWT."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthorizedError("No token provided")

    token = auth_header[7:]  # strip "Bearer "
    try:
        claims = decode_access_token(token)
    except ExpiredSignatureError:
        raise UnauthorizedError("Token expired", code="TOKEN_EXPIRED")
    except JWTError as e:
        logger.debug("JWT decode failed: %s", e)
        raise UnauthorizedError("Invalid token")

    try:
        user_id = int(claims["sub"])
        organisation_id = int(claims["organisation_id"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedError("Invalid token")

    try:
        role = Role(claims.get("role", "viewer"))
    except ValueError:
        role = Role.VIEWER

    return RequestContext(
        user_id=user_id,
        organisation_id=organisation_id,
        role=role,
        permissions=ROLE_PERMISSIONS.get(role, set()),
        email=claims.get("email"),
    )


# ── Permission guards ────────────────────────────────────────────────────────

def require(*perms: Permission):
    """
    FastAPI dependency that checks the caller has ALL listed permissions.

    Usage:
        @router.get("/runs/{run_id}")
        async def get_run(ctx: RequestContext = Depends(require(Permission.PROCESSING_READ))):
            ...
    """
    async def _check(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        for p in perms:
            ctx.require_permission(p)
        return ctx
    return _check
