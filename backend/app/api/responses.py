"""
Response envelope helpers.

    {"data": ..., "meta": {"timestamp", "requestId"}}
    {"data": [...], "pagination": {...}, "meta": {...}}
    {"error": {"code", "message"}}
"""

import math
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from app.middleware.request_context import get_request_id
from app.schemas.schemas import Meta, Pagination

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _meta() -> dict:
    return Meta(
        timestamp=datetime.now(timezone.utc).isoformat(),
        request_id=get_request_id() or uuid4().hex,
    ).model_dump(by_alias=True)


def _dump(item: Any) -> Any:
    if isinstance(item, BaseModel):
        return item.model_dump(by_alias=True, mode="json")
    if isinstance(item, list):
        return [_dump(i) for i in item]
    return item


def success(data: Any) -> dict:
    return {"data": _dump(data), "meta": _meta()}


def paginated(items: list, *, page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    pagination = Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_more=page < total_pages,
    )
    return {
        "data": _dump(items),
        "pagination": pagination.model_dump(by_alias=True),
        "meta": _meta(),
    }


def error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def clamp_pagination(page: int, limit: int) -> tuple[int, int]:
    """Out-of-range values are clamped rather than rejected."""
    return max(1, page), min(MAX_PAGE_SIZE, max(1, limit))
