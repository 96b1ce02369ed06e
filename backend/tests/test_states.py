"""Tests for the run/stage state vocabulary and stage handlers."""

import pytest

from app.pipeline.stages import STAGE_HANDLERS, SimulatedStage, build_handlers
from app.pipeline.states import (
    STAGE_ORDER,
    RunStatus,
    StageName,
    allowed_from,
    can_transition,
    stage_position,
)


class TestRunTransitions:
    @pytest.mark.parametrize("target", ["completed", "failed", "cancelled"])
    def test_processing_can_finish(self, target):
        assert can_transition("processing", target)

    @pytest.mark.parametrize("terminal", ["completed", "failed", "cancelled"])
    @pytest.mark.parametrize("target", [s.value for s in RunStatus])
    def test_terminal_states_never_move(self, terminal, target):
        assert not can_transition(terminal, target)

    def test_processing_cannot_go_back_to_pending(self):
        assert not can_transition("processing", "pending")

    def test_pending_run_cannot_be_cancelled(self):
        assert not can_transition("pending", "cancelled")

    @pytest.mark.parametrize("target", ["completed", "failed", "cancelled"])
    def test_only_processing_runs_can_finish(self, target):
        assert allowed_from(target) == ["processing"]

    def test_only_pending_runs_can_start(self):
        assert allowed_from("processing") == ["pending"]

    def test_unknown_status(self):
        assert not can_transition("processing", "archived")
        assert not can_transition("archived", "completed")


class TestStageOrder:
    def test_fixed_order(self):
        assert [s.value for s in STAGE_ORDER] == [
            "extraction", "pii_detection", "mapping", "quality_filter", "export",
        ]

    def test_stage_position(self):
        assert stage_position("extraction") == 0
        assert stage_position("export") == 4
        assert stage_position("bogus") == len(STAGE_ORDER)

    def test_every_stage_has_a_handler(self):
        assert set(STAGE_HANDLERS) == set(StageName)
        handlers = build_handlers(0)
        assert list(handlers) == list(STAGE_ORDER)
        assert all(handlers[name].stage == name for name in STAGE_ORDER)

    def test_every_handler_is_described(self):
        assert all(handler.description for handler in build_handlers(0).values())


@pytest.mark.asyncio
async def test_simulated_stage_passes_records_through():
    handler = SimulatedStage(delay_seconds=0)
    result = await handler.run(57, {"qualitySettings": {"minLength": 10}})
    assert result.output_count == 57
    assert result.filtered == 0
    assert result.errors == 0
