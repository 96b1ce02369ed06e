"""
Pydantic schemas for API request/response models.

Wire format is camelCase (`totalRecords`, `configSnapshot`, ...); Python
attributes stay snake_case and are read straight off the ORM rows.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ── Envelope ──

class Meta(CamelModel):
    timestamp: str
    request_id: str


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


# ── Processing requests ──

class QualitySettings(CamelModel):
    min_length: int | None = Field(None, ge=0)
    max_length: int | None = Field(None, gt=0)
    remove_duplicates: bool | None = None
    remove_empty: bool | None = None


class StartProcessingRequest(CamelModel):
    quality_settings: QualitySettings | None = None


# ── Processing responses ──

class ProcessingRunOut(CamelModel):
    id: int
    project_id: int
    status: str
    config_snapshot: dict
    total_records: int
    processed_records: int
    filtered_records: int
    error_records: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    created_by_id: int
    created_at: datetime | None = None


class ProcessingStageOut(CamelModel):
    id: int
    run_id: int
    stage: str
    status: str
    input_count: int
    output_count: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


class RunMetrics(CamelModel):
    total_records: int
    processed_records: int
    filtered_records: int
    error_records: int


class RunLineageOut(CamelModel):
    run_id: int
    status: str
    config_snapshot: dict
    stages: list[ProcessingStageOut]
    metrics: RunMetrics


# ── Audit ──

class AuditEventOut(CamelModel):
    id: int
    project_id: int
    user_id: int | None = None
    event_type: str
    event_data: dict | None = None
    resource_type: str | None = None
    resource_id: int | None = None
    created_at: datetime | None = None
    user_name: str | None = None


class LineageSource(CamelModel):
    id: int
    name: str
    type: str
    record_count: int | None = None
    created_at: datetime | None = None


class LineageRun(CamelModel):
    id: int
    status: str
    total_records: int
    processed_records: int
    created_at: datetime | None = None
    completed_at: datetime | None = None


class LineageNode(CamelModel):
    id: str
    type: str
    label: str


class LineageEdge(CamelModel):
    from_: str = Field(alias="from")
    to: str


class ProjectLineageOut(CamelModel):
    sources: list[LineageSource]
    processing_runs: list[LineageRun]
    nodes: list[LineageNode]
    edges: list[LineageEdge]
