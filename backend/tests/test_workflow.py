"""
Tests for the build-workflow controller and the continuation poller.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
from types import SimpleNamespace

import pytest
from unittest.mock import AsyncMock

from errors import ContinuationTimeout
from models.commands import CommandName
from services.agent_channel import ChannelStatus
from services.workflow import (
    CONTINUE_MESSAGE,
    WorkflowController,
    WorkflowStep,
    denial_message,
    next_step,
    poll_until,
    stage_for_commands,
)


def _controller(max_wait: float = 1.0) -> WorkflowController:
    return WorkflowController(poll_interval=0.01, max_interval=0.02, backoff=1.5, max_wait=max_wait)


class TestStageMapping:
    def test_structure_commands(self):
        for name in ("replaceForm", "addFields", "generateForm", "addSection"):
            assert stage_for_commands([name]) == WorkflowStep.STRUCTURE

    def test_furthest_stage_wins(self):
        names = [CommandName.UPDATE_DESIGN_SETTINGS, CommandName.REPLACE_FORM, CommandName.UPDATE_FORM_STYLE]
        assert stage_for_commands(names) == WorkflowStep.DESIGN

    def test_commands_without_stage(self):
        assert stage_for_commands(["deleteFields", "updateField"]) is None
        assert stage_for_commands([]) is None

    def test_next_step(self):
        assert next_step(WorkflowStep.STRUCTURE) == WorkflowStep.STYLE
        assert next_step(WorkflowStep.CONFIRMATION) == WorkflowStep.COMPLETE
        assert next_step(WorkflowStep.COMPLETE) == WorkflowStep.COMPLETE

    def test_denial_message_names_stage(self):
        assert denial_message(WorkflowStep.STYLE) == "I don't like this style. Suggest something different."
        assert denial_message(WorkflowStep.CONFIRMATION) == (
            "I don't like this confirmation page. Suggest something different."
        )


class TestForwardOnly:
    def test_starts_at_structure(self):
        controller = _controller()
        assert controller.current_step == WorkflowStep.STRUCTURE
        assert controller.furthest_completed is None

    def test_observe_batch_advances(self):
        controller = _controller()
        assert controller.observe_batch(["replaceForm"]) == WorkflowStep.STRUCTURE
        assert controller.current_step == WorkflowStep.STYLE

    def test_never_moves_backward(self):
        controller = _controller()
        controller.observe_batch(["updateFormStyle"])
        controller.advance("structure")
        controller.observe_batch(["addFields"])
        assert controller.furthest_completed == WorkflowStep.STYLE
        assert controller.current_step == WorkflowStep.DESIGN

    def test_confirmation_completes(self):
        controller = _controller()
        controller.observe_batch(["updateThankYouPage"])
        assert controller.is_complete

    def test_restart(self):
        controller = _controller()
        controller.observe_batch(["updateDesignSettings"])
        controller.restart()
        assert controller.current_step == WorkflowStep.STRUCTURE
        assert controller.furthest_completed is None

    def test_to_dict(self):
        controller = _controller()
        controller.observe_batch(["replaceForm"])
        assert controller.to_dict() == {
            "currentStep": "style",
            "furthestCompleted": "structure",
            "continuationPending": False,
            "error": None,
        }


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_returns_immediately_when_true(self):
        assert await poll_until(lambda: "ready", max_wait=0) == "ready"

    @pytest.mark.asyncio
    async def test_times_out(self):
        assert await poll_until(lambda: False, max_wait=0.05, interval=0.01) is None

    @pytest.mark.asyncio
    async def test_waits_for_condition(self):
        calls = []

        def condition():
            calls.append(1)
            return len(calls) >= 3

        assert await poll_until(condition, max_wait=1.0, interval=0.01) is True
        assert len(calls) == 3


class TestContinueWorkflow:
    @pytest.mark.asyncio
    async def test_injects_continue_when_idle(self):
        controller = _controller()
        channel = SimpleNamespace(status=ChannelStatus.IDLE)
        inject = AsyncMock()

        task = controller.continue_workflow("structure", channel, inject)
        await task

        inject.assert_awaited_once_with(CONTINUE_MESSAGE)
        assert controller.current_step == WorkflowStep.STYLE

    @pytest.mark.asyncio
    async def test_waits_while_streaming(self):
        controller = _controller()
        channel = SimpleNamespace(status=ChannelStatus.STREAMING)
        inject = AsyncMock()

        task = controller.continue_workflow("structure", channel, inject)
        await asyncio.sleep(0.05)
        inject.assert_not_awaited()
        assert controller.continuation_pending

        channel.status = ChannelStatus.IDLE
        await task
        inject.assert_awaited_once_with(CONTINUE_MESSAGE)

    @pytest.mark.asyncio
    async def test_timeout_sets_error(self):
        controller = _controller(max_wait=0.05)
        channel = SimpleNamespace(status=ChannelStatus.SENDING)
        inject = AsyncMock()

        await controller.continue_workflow("structure", channel, inject)

        inject.assert_not_awaited()
        assert "still busy" in controller.error

    @pytest.mark.asyncio
    async def test_wait_for_idle_raises_on_timeout(self):
        controller = _controller(max_wait=0.02)
        with pytest.raises(ContinuationTimeout):
            await controller.wait_for_idle(SimpleNamespace(status=ChannelStatus.STREAMING))

    @pytest.mark.asyncio
    async def test_error_channel_aborts(self):
        controller = _controller()
        inject = AsyncMock()
        await controller.continue_workflow("structure", SimpleNamespace(status=ChannelStatus.ERROR), inject)
        inject.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_continuation_when_complete(self):
        controller = _controller()
        inject = AsyncMock()
        task = controller.continue_workflow("confirmation", SimpleNamespace(status=ChannelStatus.IDLE), inject)
        assert task is None
        assert controller.is_complete
        inject.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_earlier_label_does_not_regress(self):
        controller = _controller()
        controller.observe_batch(["updateFormStyle"])
        inject = AsyncMock()

        task = controller.continue_workflow("structure", SimpleNamespace(status=ChannelStatus.IDLE), inject)
        await task
        task = controller.continue_workflow("structure", SimpleNamespace(status=ChannelStatus.IDLE), inject)
        await task

        assert controller.furthest_completed == WorkflowStep.STYLE
        assert controller.current_step == WorkflowStep.DESIGN

    @pytest.mark.asyncio
    async def test_new_continuation_cancels_pending_one(self):
        controller = _controller()
        busy = SimpleNamespace(status=ChannelStatus.STREAMING)
        inject = AsyncMock()

        first = controller.continue_workflow("structure", busy, inject)
        second = controller.continue_workflow("style", busy, inject)
        await asyncio.sleep(0)
        assert first.cancelled()

        busy.status = ChannelStatus.IDLE
        await second
        inject.assert_awaited_once_with(CONTINUE_MESSAGE)

    @pytest.mark.asyncio
    async def test_restart_cancels_pending(self):
        controller = _controller()
        inject = AsyncMock()
        task = controller.continue_workflow("structure", SimpleNamespace(status=ChannelStatus.SENDING), inject)
        controller.restart()
        await asyncio.sleep(0)
        assert task.cancelled()
        assert not controller.continuation_pending
