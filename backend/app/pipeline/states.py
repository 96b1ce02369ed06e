"""
Processing run / stage state vocabulary.

A run is created directly in PROCESSING and leaves it exactly once:

    processing -> completed   all five stages finished
    processing -> failed      a stage handler raised
    processing -> cancelled   explicit cancel

COMPLETED, FAILED and CANCELLED are terminal.
"""

from enum import Enum


class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageName(str, Enum):
    EXTRACTION = "extraction"
    PII_DETECTION = "pii_detection"
    MAPPING = "mapping"
    QUALITY_FILTER = "quality_filter"
    EXPORT = "export"


STAGE_ORDER: tuple[StageName, ...] = (
    StageName.EXTRACTION,
    StageName.PII_DETECTION,
    StageName.MAPPING,
    StageName.QUALITY_FILTER,
    StageName.EXPORT,
)

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING}),
    RunStatus.PROCESSING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """True if a run in `current` may move to `target`."""
    try:
        return RunStatus(target) in RUN_TRANSITIONS[RunStatus(current)]
    except ValueError:
        return False


def stage_position(stage: str) -> int:
    """Index of a stage name in STAGE_ORDER (unknown names sort last)."""
    try:
        return STAGE_ORDER.index(StageName(stage))
    except ValueError:
        return len(STAGE_ORDER)


def allowed_from(target: str) -> list[str]:
    """Statuses a run may be in for an UPDATE moving it to `target`."""
    return [
        current.value
        for current, targets in RUN_TRANSITIONS.items()
        if RunStatus(target) in targets
    ]
