"""
Build-workflow controller — the guided pipeline the assistant walks through.

    structure → style → design → confirmation → complete

A confirmed batch of commands marks the furthest stage it touched as done;
the current step is always the stage after the furthest completed one. The
controller only ever moves forward. A new free-form user request restarts
the pipeline at ``structure``.

Continuations: once a stage is done the controller asks the agent for the
next one by injecting a synthetic "Continue" message. The agent channel may
still be finishing the previous turn, so the injection waits for the channel
to become idle, polling with exponential backoff up to a deadline.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import config
from errors import ContinuationTimeout
from models.commands import CommandName
from services.agent_channel import ChannelStatus

logger = logging.getLogger(__name__)


class WorkflowStep(str, Enum):
    STRUCTURE = "structure"
    STYLE = "style"
    DESIGN = "design"
    CONFIRMATION = "confirmation"
    COMPLETE = "complete"


STEP_ORDER = [
    WorkflowStep.STRUCTURE,
    WorkflowStep.STYLE,
    WorkflowStep.DESIGN,
    WorkflowStep.CONFIRMATION,
    WorkflowStep.COMPLETE,
]

# Which stage a command completes
STAGE_COMMANDS = {
    CommandName.REPLACE_FORM: WorkflowStep.STRUCTURE,
    CommandName.ADD_FIELDS: WorkflowStep.STRUCTURE,
    CommandName.GENERATE_FORM: WorkflowStep.STRUCTURE,
    CommandName.ADD_SECTION: WorkflowStep.STRUCTURE,
    CommandName.UPDATE_FORM_STYLE: WorkflowStep.STYLE,
    CommandName.UPDATE_DESIGN_SETTINGS: WorkflowStep.DESIGN,
    CommandName.UPDATE_THANK_YOU_PAGE: WorkflowStep.CONFIRMATION,
}

STAGE_LABELS = {
    WorkflowStep.STRUCTURE: "structure",
    WorkflowStep.STYLE: "style",
    WorkflowStep.DESIGN: "design",
    WorkflowStep.CONFIRMATION: "confirmation page",
    WorkflowStep.COMPLETE: "form",
}

CONTINUE_MESSAGE = "Continue"


def _rank(step: WorkflowStep) -> int:
    return STEP_ORDER.index(step)


def next_step(step: WorkflowStep) -> WorkflowStep:
    """The step that follows ``step``; complete is terminal."""
    return STEP_ORDER[min(_rank(step) + 1, len(STEP_ORDER) - 1)]


def stage_for_commands(command_names: Iterable[Union[CommandName, str]]) -> Optional[WorkflowStep]:
    """Return the furthest stage any of the given commands belongs to."""
    stages = [
        STAGE_COMMANDS[CommandName(name)]
        for name in command_names
        if CommandName(name) in STAGE_COMMANDS
    ]
    if not stages:
        return None
    return max(stages, key=_rank)


def denial_message(stage: Optional[WorkflowStep]) -> str:
    label = STAGE_LABELS[stage] if stage else "change"
    return f"I don't like this {label}. Suggest something different."


async def poll_until(
    condition: Callable[[], Any],
    max_wait: float,
    interval: float = 0.1,
    backoff: float = 1.5,
    max_interval: float = 1.0,
) -> Any:
    """
    Await until *condition* returns a truthy value or *max_wait* elapses.

    The first check happens immediately; the delay between checks starts at
    *interval* and grows by *backoff*, capped at *max_interval*.

    Returns:
        The truthy value returned by *condition*, or None on timeout.
    """
    elapsed = 0.0
    current_interval = interval

    while True:
        result = condition()
        if result:
            return result
        if elapsed >= max_wait:
            return None
        await asyncio.sleep(current_interval)
        elapsed += current_interval
        current_interval = min(current_interval * backoff, max_interval)


class WorkflowController:
    """Forward-only stepper over the build pipeline of one form."""

    def __init__(
        self,
        poll_interval: float = config.CONTINUE_POLL_INTERVAL,
        max_interval: float = config.CONTINUE_MAX_INTERVAL,
        backoff: float = config.CONTINUE_BACKOFF,
        max_wait: float = config.CONTINUE_MAX_WAIT,
    ) -> None:
        self.furthest_completed: Optional[WorkflowStep] = None
        self.error: Optional[str] = None
        self._poll_interval = poll_interval
        self._max_interval = max_interval
        self._backoff = backoff
        self._max_wait = max_wait
        self._continuation: Optional[asyncio.Task] = None

    @property
    def current_step(self) -> WorkflowStep:
        if self.furthest_completed is None:
            return WorkflowStep.STRUCTURE
        return next_step(self.furthest_completed)

    @property
    def is_complete(self) -> bool:
        return self.current_step == WorkflowStep.COMPLETE

    @property
    def continuation_pending(self) -> bool:
        return self._continuation is not None and not self._continuation.done()

    def to_dict(self) -> dict:
        return {
            "currentStep": self.current_step.value,
            "furthestCompleted": self.furthest_completed.value if self.furthest_completed else None,
            "continuationPending": self.continuation_pending,
            "error": self.error,
        }

    def advance(self, completed_step: Union[WorkflowStep, str]) -> WorkflowStep:
        """
        Record ``completed_step`` as done unless a later stage already is.

        Returns:
            The current step after the update.
        """
        completed_step = WorkflowStep(completed_step)
        if completed_step == WorkflowStep.COMPLETE:
            completed_step = WorkflowStep.CONFIRMATION
        if self.furthest_completed is None or _rank(completed_step) > _rank(self.furthest_completed):
            self.furthest_completed = completed_step
        return self.current_step

    def observe_batch(self, command_names: Iterable[Union[CommandName, str]]) -> Optional[WorkflowStep]:
        """
        Advance from an applied batch.

        Returns:
            The stage the batch completed, or None when it touched none.
        """
        stage = stage_for_commands(command_names)
        if stage is not None:
            self.advance(stage)
        return stage

    def restart(self) -> None:
        """Start over at the structure stage (a new free-form request)."""
        self.cancel_continuation()
        self.furthest_completed = None
        self.error = None

    def cancel_continuation(self) -> None:
        if self.continuation_pending:
            self._continuation.cancel()
        self._continuation = None

    def continue_workflow(
        self,
        completed_step: Union[WorkflowStep, str],
        channel: Any,
        inject: Callable[[str], Awaitable[Any]],
    ) -> Optional[asyncio.Task]:
        """
        Advance past ``completed_step`` and prompt the agent for the next stage.

        Args:
            completed_step: The stage that was just finished.
            channel:        Anything with a ChannelStatus ``status``; the build
                            session passes itself so a send that is still
                            persisting counts as busy.
            inject:         Coroutine function that persists and sends a
                            user message on the channel.

        Returns:
            The scheduled continuation task, or None when the workflow is
            already complete.
        """
        self.advance(completed_step)
        if self.is_complete:
            return None

        self.cancel_continuation()
        self.error = None
        self._continuation = asyncio.ensure_future(self._inject_when_idle(channel, inject))
        return self._continuation

    async def wait_for_idle(self, channel: Any) -> ChannelStatus:
        """
        Wait until the channel is no longer sending or streaming.

        Raises:
            ContinuationTimeout: the channel stayed busy past the deadline.
        """
        status = await poll_until(
            lambda: channel.status not in (ChannelStatus.SENDING, ChannelStatus.STREAMING)
            and channel.status,
            max_wait=self._max_wait,
            interval=self._poll_interval,
            backoff=self._backoff,
            max_interval=self._max_interval,
        )
        if status is None:
            raise ContinuationTimeout(
                f"Agent channel still busy after {self._max_wait:.1f}s; continuation abandoned."
            )
        return status

    async def _inject_when_idle(
        self,
        channel: Any,
        inject: Callable[[str], Awaitable[Any]],
    ) -> None:
        try:
            status = await self.wait_for_idle(channel)
        except ContinuationTimeout as exc:
            logger.error("%s", exc)
            self.error = str(exc)
            return

        if status == ChannelStatus.ERROR:
            logger.info("Agent channel is in error state; not continuing to %s", self.current_step.value)
            return

        logger.info("Continuing build workflow at step %s", self.current_step.value)
        await inject(CONTINUE_MESSAGE)
