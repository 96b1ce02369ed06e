"""
Pipeline stage contracts.

Every stage handler implements StageHandler.run() and returns a StageResult.
The sequencer only sees the uniform interface; it looks handlers up by stage
name in a registry built from STAGE_HANDLERS.

The shipped handlers simulate work with a fixed pause and pass the record
count through unchanged. In particular QualityFilterStage does not consult
configSnapshot.qualitySettings yet, so output_count == input_count for every
stage.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from app.pipeline.states import STAGE_ORDER, StageName


@dataclass
class StageResult:
    """Uniform output from every pipeline stage."""
    output_count: int
    filtered: int = 0
    errors: int = 0


class StageHandler(ABC):
    """Base class for pipeline stage handlers."""
    stage: StageName
    description: str = ""

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds

    @abstractmethod
    async def run(self, input_count: int, config_snapshot: dict[str, Any]) -> StageResult:
        """
        Execute this stage.

        Args:
            input_count:     Records entering the stage.
            config_snapshot: The run's immutable configuration snapshot.

        Returns:
            StageResult with the number of records handed to the next stage.
        """
        ...


class SimulatedStage(StageHandler):
    """Stands in for real work: pauses, then passes every record through."""

    async def run(self, input_count: int, config_snapshot: dict[str, Any]) -> StageResult:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        return StageResult(output_count=input_count)


class ExtractionStage(SimulatedStage):
    stage = StageName.EXTRACTION
    description = "Read records from the run's ready sources"


class PiiDetectionStage(SimulatedStage):
    stage = StageName.PII_DETECTION
    description = "Apply PII handling rules (mask, redact, hash, keep)"


class MappingStage(SimulatedStage):
    stage = StageName.MAPPING
    description = "Map source fields onto the target schema"


class QualityFilterStage(SimulatedStage):
    stage = StageName.QUALITY_FILTER
    description = "Drop records failing quality settings"


class ExportStage(SimulatedStage):
    stage = StageName.EXPORT
    description = "Write processed records for export"


STAGE_HANDLERS: dict[StageName, type[StageHandler]] = {
    StageName.EXTRACTION: ExtractionStage,
    StageName.PII_DETECTION: PiiDetectionStage,
    StageName.MAPPING: MappingStage,
    StageName.QUALITY_FILTER: QualityFilterStage,
    StageName.EXPORT: ExportStage,
}


def build_handlers(delay_seconds: float = 0.0) -> dict[StageName, StageHandler]:
    """Instantiate one handler per stage, in STAGE_ORDER."""
    handlers: dict[StageName, StageHandler] = {}
    for name in STAGE_ORDER:
        handler_cls = STAGE_HANDLERS.get(name)
        if handler_cls is None:
            raise ValueError(f"No handler registered for stage '{name.value}'")
        handlers[name] = handler_cls(delay_seconds=delay_seconds)
    return handlers
