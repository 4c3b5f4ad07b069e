"""
Agent Channel — one conversation with the form-building model.

The channel owns the LLM message history of a form and runs one agent turn
at a time. Its status is what the build workflow polls before injecting a
continuation:

    idle → sending → streaming → idle
                   ↘ error

stop() cancels the turn in flight. Whatever the model had streamed so far is
kept: the text, plus every tool call whose arguments had fully arrived and
validate as a command. Half-streamed tool calls are dropped.
"""

import asyncio
import inspect
import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from langchain_core.messages import AIMessage, HumanMessage
from pydantic import BaseModel, Field

import config
from agents import form_agent
from errors import ChannelBusyError, CommandValidationError
from models.commands import parse_command, parse_invocations
from models.form_document import FormDocument
from tools import run_form_tool

logger = logging.getLogger(__name__)


class ChannelStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


class CommandInvocation(BaseModel):
    """A tool call as stored on an assistant message."""

    id: Optional[str] = None
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class AgentTurn(BaseModel):
    """The outcome of one send(): assistant text plus its tool calls."""

    text: str = ""
    invocations: List[CommandInvocation] = Field(default_factory=list)
    cancelled: bool = False


def message_text(content: Any) -> str:
    """Extract plain text from str or content-block message content."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class AgentChannel:
    """
    Send user messages to the form agent and collect its replies.

    Args:
        model_name:  Key into the agent model map.
        on_fragment: Optional callback (sync or async) receiving each streamed
                     text fragment.
        llm:         Pre-built chat model; built from model_name when omitted.
    """

    def __init__(
        self,
        model_name: str = config.AGENT_MODEL,
        on_fragment: Optional[Callable[[str], Any]] = None,
        llm: Any = None,
    ) -> None:
        self.model_name = model_name
        self.on_fragment = on_fragment
        self.status = ChannelStatus.IDLE
        self.error: Optional[str] = None
        self.history: list = []
        self._llm = llm
        self._task: Optional[asyncio.Future] = None
        self._partial = None
        self._stop_requested = False

    @property
    def is_busy(self) -> bool:
        return self.status in (ChannelStatus.SENDING, ChannelStatus.STREAMING)

    def _get_llm(self) -> Any:
        if self._llm is None:
            self._llm = form_agent._get_llm(self.model_name)
        return self._llm

    def load_history(self, messages: List[dict]) -> None:
        """
        Rebuild the model history from stored chat messages.

        Assistant tool calls are replayed with fresh tool results so the
        history stays valid for providers that require a result per call.
        """
        history: list = []
        for message in messages:
            if message.get("role") == "user":
                history.append(HumanMessage(content=message.get("content") or ""))
                continue

            calls = [
                {
                    "id": command.invocationId or f"call_{uuid.uuid4().hex[:12]}",
                    "name": command.name.value,
                    "args": command.args.model_dump(mode="json", exclude_none=True),
                }
                for command in parse_invocations(message.get("toolInvocations"))
            ]
            history.append(AIMessage(content=message.get("content") or "", tool_calls=calls))
            history.extend(run_form_tool(call) for call in calls)
        self.history = history

    def reset_history(self) -> None:
        self.history = []

    async def _on_chunk(self, chunk: Any) -> None:
        self.status = ChannelStatus.STREAMING
        self._partial = chunk if self._partial is None else self._partial + chunk

        fragment = message_text(chunk.content)
        if fragment and self.on_fragment is not None:
            result = self.on_fragment(fragment)
            if inspect.isawaitable(result):
                await result

    def _salvage(self) -> AgentTurn:
        """Keep the streamed text and every complete, valid tool call."""
        if self._partial is None:
            return AgentTurn(cancelled=True)

        invocations = []
        for call in getattr(self._partial, "tool_call_chunks", None) or []:
            name = call.get("name") or ""
            try:
                args = json.loads(call.get("args") or "")
                parse_command(name, args)
            except (json.JSONDecodeError, TypeError, CommandValidationError):
                logger.info("Dropping incomplete tool call %r from stopped turn", name)
                continue
            invocations.append(CommandInvocation(id=call.get("id"), name=name, args=args))

        return AgentTurn(
            text=message_text(self._partial.content),
            invocations=invocations,
            cancelled=True,
        )

    async def send(self, text: str, document: Optional[FormDocument] = None) -> AgentTurn:
        """
        Run one agent turn for a user message.

        Raises:
            ChannelBusyError: a turn is already in flight.
            Exception:        whatever the model or graph raised; the channel
                              is left in the error state.
        """
        if self.is_busy:
            raise ChannelBusyError("The assistant is still answering the previous message")

        self.status = ChannelStatus.SENDING
        self.error = None
        self._partial = None
        self._stop_requested = False

        user_message = HumanMessage(content=text)
        turn_messages = self.history + [user_message]

        try:
            graph = form_agent.build_form_agent_graph(self._get_llm(), on_chunk=self._on_chunk)
            self._task = asyncio.ensure_future(
                graph.ainvoke({
                    "messages": turn_messages,
                    "form_context": form_agent.describe_form(document),
                })
            )
            final_state = await self._task
        except asyncio.CancelledError:
            self.status = ChannelStatus.IDLE
            if not self._stop_requested:
                raise
            turn = self._salvage()
            self.history = turn_messages + [AIMessage(content=turn.text)]
            logger.info("Agent turn stopped; kept %d tool call(s)", len(turn.invocations))
            return turn
        except Exception as exc:
            self.status = ChannelStatus.ERROR
            self.error = str(exc)
            logger.error("Agent turn failed: %s", exc)
            raise
        finally:
            self._task = None

        new_messages = final_state["messages"][len(turn_messages):]
        self.history = turn_messages + list(new_messages)
        self.status = ChannelStatus.IDLE

        reply = next((m for m in new_messages if isinstance(m, AIMessage)), None)
        if reply is None:
            return AgentTurn()
        return AgentTurn(
            text=message_text(reply.content),
            invocations=[
                CommandInvocation(id=call.get("id"), name=call["name"], args=call.get("args") or {})
                for call in reply.tool_calls
            ],
        )

    def stop(self) -> bool:
        """
        Cancel the turn in flight.

        Returns:
            True if a turn was running.
        """
        if self._task is None or self._task.done():
            return False
        self._stop_requested = True
        self._task.cancel()
        return True
