"""
Form Build Session — everything the builder keeps for one open form.

A session ties together the current document and selection, the agent
channel, the build workflow and the persisted chat. Assistant edits are
never applied when they arrive: they are stored on the assistant message and
applied as one batch when the user confirms that message. Confirming
advances the workflow and, when auto-continue is on, asks the agent for the
next stage.

Persistence is best-effort. A failing store is logged and the session keeps
working from memory.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import config
from errors import ChannelBusyError, MessageNotFoundError, SessionNotReadyError
from models.commands import FormCommand, parse_invocations
from models.form_document import (
    FormDocument,
    Selection,
    find_element,
    migrate_to_row_format,
)
from services import mutation_engine
from services.agent_channel import AgentChannel, ChannelStatus
from services.chat_store import ChatStore
from services.mutation_engine import BatchResult
from services.workflow import WorkflowController, WorkflowStep, denial_message, stage_for_commands

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


class FormBuildSession:
    """
    The build state of one form.

    Args:
        form_id:       The form being edited.
        store:         Chat persistence; a database-backed ChatStore by default.
        channel:       The agent channel; a fresh AgentChannel by default.
        document:      Starting document; an empty form by default.
        auto_continue: Ask the agent for the next stage after a confirmed batch.
        workflow:      Workflow controller; a fresh one by default.
    """

    def __init__(
        self,
        form_id: str,
        store: Optional[ChatStore] = None,
        channel: Optional[AgentChannel] = None,
        document: Optional[FormDocument] = None,
        auto_continue: bool = config.AUTO_CONTINUE,
        workflow: Optional[WorkflowController] = None,
    ) -> None:
        self.form_id = form_id
        self.store = store if store is not None else ChatStore()
        self.channel = channel if channel is not None else AgentChannel()
        self.document = document if document is not None else FormDocument()
        self.selection = Selection()
        self.workflow = workflow if workflow is not None else WorkflowController()
        self.auto_continue = auto_continue

        self.chat_session_id: Optional[str] = None
        self.messages: List[dict] = []
        self.applied_message_ids: Set[str] = set()
        self.revision = 0
        self.error: Optional[str] = None
        self._ready = False
        # Set from the busy check until channel.send takes over
        self._sending = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the chat session and load its history into the channel."""
        try:
            self.chat_session_id = await self.store.get_or_create_session(self.form_id)
            messages = await self.store.get_messages(self.chat_session_id)
        except Exception:  # noqa: BLE001
            logger.warning("Could not load chat history for form %s", self.form_id, exc_info=True)
            self.chat_session_id = None
            messages = []

        self.messages = list(messages)
        self.applied_message_ids = {m["id"] for m in self.messages if m.get("actionsApplied")}
        self.channel.load_history(self.messages)
        self._ready = True

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def status(self) -> ChannelStatus:
        """The channel status, counting a send that is still persisting its message."""
        if self._sending and not self.channel.is_busy:
            return ChannelStatus.SENDING
        return self.channel.status

    @property
    def is_busy(self) -> bool:
        return self._sending or self.channel.is_busy

    def _require_ready(self) -> None:
        if not self._ready:
            raise SessionNotReadyError(f"Build session for form {self.form_id} is not initialized")

    # ------------------------------------------------------------------
    # Document and selection
    # ------------------------------------------------------------------

    def load_document(self, raw: Dict[str, Any]) -> FormDocument:
        """Replace the document with a stored one, upgrading legacy sections."""
        data = dict(raw)
        data["sections"] = [migrate_to_row_format(section) for section in raw.get("sections") or []]
        if data.get("style") == "typeform":
            data["style"] = "stepped"
        self.document = FormDocument.model_validate(data)
        self.selection = mutation_engine.reconcile_selection(Selection(), [], self.document)
        self.revision += 1
        return self.document

    def apply_command(self, command: FormCommand) -> BatchResult:
        return self.apply_batch([command])

    def apply_batch(self, commands: Iterable[FormCommand]) -> BatchResult:
        """
        Apply commands as one batch and publish the result in one step.

        The workflow sees every applied batch, whether the user or the agent
        issued it.
        """
        result = mutation_engine.apply_batch(self.document, commands, self.selection)
        if result.document is not self.document:
            self.revision += 1
        self.document = result.document
        self.selection = result.selection
        self.workflow.observe_batch(result.commandNames)
        return result

    def set_selection(
        self,
        selected_element_id: Optional[str] = None,
        selected_section_id: Optional[str] = None,
        current_section_id: Optional[str] = None,
    ) -> Selection:
        """
        Set the selection from the canvas; unknown ids select nothing.

        An element and a section are never selected together: a selected
        element wins over a selected section.
        """
        section_ids = {s.id for s in self.document.sections}
        element = find_element(self.document, selected_element_id) if selected_element_id else None
        self.selection = Selection(
            selectedElement=element,
            selectedSectionId=(
                selected_section_id if element is None and selected_section_id in section_ids else None
            ),
            currentSectionId=current_section_id if current_section_id in section_ids else None,
        )
        return self.selection

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def _persist_message(
        self,
        role: str,
        content: str,
        invocations: Optional[list] = None,
    ) -> dict:
        message = None
        if self.chat_session_id is not None:
            try:
                message = await self.store.save_message(self.chat_session_id, role, content, invocations)
            except Exception:  # noqa: BLE001
                logger.warning("Could not save %s message for form %s", role, self.form_id, exc_info=True)

        if message is None:
            message = {
                "id": f"{LOCAL_ID_PREFIX}{uuid.uuid4()}",
                "role": role,
                "content": content,
                "toolInvocations": invocations or [],
                "actionsApplied": False,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
        self.messages.append(message)
        return message

    async def _send(self, text: str) -> Optional[dict]:
        """
        Persist a user message, run one agent turn and persist the reply.

        Returns:
            The saved assistant message, or None when the turn failed.

        Raises:
            ChannelBusyError: the agent is still answering.
        """
        self._require_ready()
        if self.is_busy:
            raise ChannelBusyError("The assistant is still answering the previous message")

        self._sending = True
        try:
            await self._persist_message("user", text)
            turn = await self.channel.send(text, self.document)
        except ChannelBusyError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.error = str(exc)
            logger.error("Agent turn for form %s failed: %s", self.form_id, exc)
            return None
        finally:
            self._sending = False

        self.error = None
        invocations = [inv.model_dump() for inv in turn.invocations]
        return await self._persist_message("assistant", turn.text, invocations)

    async def send_message(self, text: str) -> Optional[dict]:
        """Send a free-form user request. Restarts the build workflow."""
        self._require_ready()
        self.workflow.restart()
        return await self._send(text)

    async def _inject(self, text: str) -> None:
        try:
            await self._send(text)
        except ChannelBusyError:
            logger.warning("Skipped continuation for form %s: assistant busy", self.form_id)

    def _find_message(self, message_id: str, role: Optional[str] = None) -> dict:
        for message in self.messages:
            if message["id"] == message_id and (role is None or message.get("role") == role):
                return message
        if role is not None:
            raise MessageNotFoundError(f"No {role} message {message_id}")
        raise MessageNotFoundError(f"Message {message_id} not found")

    async def mark_message_applied(self, message_id: str) -> Optional[BatchResult]:
        """
        Confirm an assistant message: apply its commands as one batch.

        Idempotent; confirming an already applied message changes nothing.

        Returns:
            The batch result, or None if the message was already applied.

        Raises:
            MessageNotFoundError: no assistant message with that id in this
                                  session.
        """
        self._require_ready()
        if message_id in self.applied_message_ids:
            return None

        message = self._find_message(message_id, role="assistant")
        commands = parse_invocations(message.get("toolInvocations"))
        result = self.apply_batch(commands)

        self.applied_message_ids.add(message_id)
        index = self.messages.index(message)
        self.messages[index] = {**message, "actionsApplied": True}

        if not message_id.startswith(LOCAL_ID_PREFIX):
            try:
                await self.store.mark_applied(message_id)
            except Exception:  # noqa: BLE001
                logger.warning("Could not mark message %s as applied", message_id, exc_info=True)

        # apply_batch already advanced the workflow
        stage = stage_for_commands(result.commandNames)
        if stage is not None and self.auto_continue and not self.workflow.is_complete:
            self.workflow.continue_workflow(stage, self, self._inject)
        return result

    def continue_workflow(self, completed_step: Optional[WorkflowStep] = None) -> Optional[asyncio.Task]:
        """Move past ``completed_step`` (default: the current step) and prompt the agent."""
        self._require_ready()
        return self.workflow.continue_workflow(
            completed_step or self.workflow.current_step,
            self,
            self._inject,
        )

    async def deny_changes(
        self,
        message_id: Optional[str] = None,
        commands: Optional[List[FormCommand]] = None,
    ) -> Optional[dict]:
        """
        Reject a proposal and ask the agent for a different take on its stage.

        Nothing is rolled back; the rejected message simply stays unapplied.
        """
        self._require_ready()
        if commands is None:
            message = self._find_message(message_id, role="assistant") if message_id else {}
            commands = parse_invocations(message.get("toolInvocations"))

        stage = stage_for_commands(c.name for c in commands)
        return await self._send(denial_message(stage))

    def stop(self) -> bool:
        """Cancel the agent turn in flight and any pending continuation."""
        self.workflow.cancel_continuation()
        return self.channel.stop()

    async def clear_chat(self) -> None:
        """Delete the chat history and start a fresh chat session."""
        self.stop()
        try:
            await self.store.clear_history(self.form_id)
        except Exception:  # noqa: BLE001
            logger.warning("Could not clear chat history for form %s", self.form_id, exc_info=True)

        self.messages = []
        self.applied_message_ids = set()
        self.channel.reset_history()
        self.workflow.restart()
        self.error = None

        try:
            self.chat_session_id = await self.store.get_or_create_session(self.form_id)
        except Exception:  # noqa: BLE001
            logger.warning("Could not reopen chat session for form %s", self.form_id, exc_info=True)
            self.chat_session_id = None

    def status_snapshot(self) -> dict:
        """Lightweight view of the session for polling clients."""
        last = self.messages[-1] if self.messages else None
        return {
            "formId": self.form_id,
            "revision": self.revision,
            "channelStatus": self.status.value,
            "workflow": self.workflow.to_dict(),
            "messageCount": len(self.messages),
            "lastMessageId": last["id"] if last else None,
            "error": self.error or self.channel.error or self.workflow.error,
        }
