"""
REST API routes for FormPilot.

Endpoints:
    GET    /api/health                                          — Health check
    POST   /api/forms/{form_id}/session                         — Open (or reuse) a build session
    GET    /api/forms/{form_id}/document                        — Current document and selection
    POST   /api/forms/{form_id}/commands                        — Apply a batch of commands
    PUT    /api/forms/{form_id}/selection                       — Set the canvas selection
    GET    /api/forms/{form_id}/chat/messages                   — Chat history
    POST   /api/forms/{form_id}/chat                            — Send a message to the assistant
    POST   /api/forms/{form_id}/chat/stop                       — Stop the assistant
    DELETE /api/forms/{form_id}/chat                            — Clear the chat
    POST   /api/forms/{form_id}/chat/messages/{message_id}/apply — Apply an assistant message
    POST   /api/forms/{form_id}/chat/messages/{message_id}/deny  — Reject an assistant message
    GET    /api/forms/{form_id}/workflow                        — Build workflow state
    POST   /api/forms/{form_id}/workflow/continue               — Move to the next stage
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import BaseModel, Field

from api.session_store import build_sessions
from errors import (
    ChannelBusyError,
    CommandValidationError,
    MessageNotFoundError,
    SessionNotReadyError,
)
from models.commands import parse_command
from services.build_session import FormBuildSession
from services.workflow import WorkflowStep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / Response Models
# ---------------------------------------------------------------------------

class OpenSessionRequest(BaseModel):
    document: Optional[Dict[str, Any]] = Field(
        default=None,
        description="The stored form to edit. Legacy sections with flat element lists are upgraded.",
    )


class CommandInvocationRequest(BaseModel):
    name: str = Field(..., description="Command name, e.g. 'addFields'.")
    args: Dict[str, Any] = Field(default_factory=dict)


class CommandBatchRequest(BaseModel):
    commands: List[CommandInvocationRequest] = Field(..., min_length=1)


class SelectionRequest(BaseModel):
    selectedElementId: Optional[str] = None
    selectedSectionId: Optional[str] = None
    currentSectionId: Optional[str] = None


class ChatRequest(BaseModel):
    message: str = Field(
        ...,
        min_length=1,
        max_length=10_000,
        description="The user's request to the assistant.",
        examples=["Create a job application form with contact details and a CV upload."],
    )


class ContinueRequest(BaseModel):
    completedStep: Optional[WorkflowStep] = Field(
        default=None,
        description="The stage that was just finished; defaults to the current step.",
    )


class AcceptedResponse(BaseModel):
    formId: str
    status: str
    message: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_session(form_id: str) -> FormBuildSession:
    session = build_sessions.get(form_id)
    if session is None:
        raise HTTPException(
            status_code=404,
            detail=f"No build session for form '{form_id}'. Open one first.",
        )
    return session


def _document_payload(session: FormBuildSession) -> dict:
    return {
        "formId": session.form_id,
        "revision": session.revision,
        "document": session.document.model_dump(mode="json"),
        "selection": session.selection.model_dump(mode="json"),
    }


async def _send_in_background(session: FormBuildSession, text: str) -> None:
    """Background task that runs one assistant turn."""
    try:
        await session.send_message(text)
    except ChannelBusyError as exc:
        logger.warning("Dropped message for form %s: %s", session.form_id, exc)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "FormPilot API"}


@router.post("/forms/{form_id}/session")
async def open_session(form_id: str, request: Optional[OpenSessionRequest] = None):
    """
    Open the build session of a form, loading its chat history.

    Reopening an existing session returns it unchanged unless a document is
    supplied, in which case the document is replaced.
    """
    session = build_sessions.get(form_id)
    if session is None:
        session = FormBuildSession(form_id)
        await session.initialize()
        session = build_sessions.add(session)

    if request is not None and request.document is not None:
        try:
            session.load_document(request.document)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    return {
        **_document_payload(session),
        "chatSessionId": session.chat_session_id,
        "messages": session.messages,
        "appliedMessageIds": sorted(session.applied_message_ids),
        "workflow": session.workflow.to_dict(),
    }


@router.get("/forms/{form_id}/document")
async def get_document(form_id: str):
    """Return the current document and canvas selection."""
    return _document_payload(_get_session(form_id))


@router.post("/forms/{form_id}/commands")
async def apply_commands(form_id: str, request: CommandBatchRequest):
    """
    Apply a batch of commands issued directly by the user.

    Every command is validated before anything is applied; one invalid
    command rejects the whole batch.
    """
    session = _get_session(form_id)
    try:
        commands = [parse_command(c.name, c.args) for c in request.commands]
    except CommandValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    result = session.apply_batch(commands)
    return {
        **_document_payload(session),
        "commandNames": [name.value for name in result.commandNames],
    }


@router.put("/forms/{form_id}/selection")
async def set_selection(form_id: str, request: SelectionRequest):
    """Mirror the canvas selection. Ids not in the document are ignored."""
    session = _get_session(form_id)
    selection = session.set_selection(
        selected_element_id=request.selectedElementId,
        selected_section_id=request.selectedSectionId,
        current_section_id=request.currentSectionId,
    )
    return selection.model_dump(mode="json")


@router.get("/forms/{form_id}/chat/messages")
async def get_chat_messages(form_id: str):
    """Return the chat history with each message's applied flag."""
    session = _get_session(form_id)
    return {
        "formId": form_id,
        "messages": session.messages,
        "appliedMessageIds": sorted(session.applied_message_ids),
    }


@router.post("/forms/{form_id}/chat", response_model=AcceptedResponse, status_code=202)
async def send_chat_message(
    form_id: str,
    request: ChatRequest,
    background_tasks: BackgroundTasks,
):
    """
    Send a free-form request to the assistant.

    The turn runs in the background. Connect to /ws/forms/{form_id} for live
    status, or poll GET /api/forms/{form_id}/chat/messages.
    """
    session = _get_session(form_id)
    if session.is_busy:
        raise HTTPException(status_code=409, detail="The assistant is still answering.")

    background_tasks.add_task(_send_in_background, session, request.message)
    return AcceptedResponse(
        formId=form_id,
        status="sending",
        message=f"Message accepted. Connect to /ws/forms/{form_id} for live updates.",
    )


@router.post("/forms/{form_id}/chat/stop")
async def stop_chat(form_id: str):
    """Stop the assistant's current turn and any pending continuation."""
    session = _get_session(form_id)
    stopped = session.stop()
    return {"formId": form_id, "stopped": stopped}


@router.delete("/forms/{form_id}/chat")
async def clear_chat(form_id: str):
    """Delete the chat history and start over with a fresh chat session."""
    session = _get_session(form_id)
    await session.clear_chat()
    return {
        "formId": form_id,
        "chatSessionId": session.chat_session_id,
        "messages": session.messages,
    }


@router.post("/forms/{form_id}/chat/messages/{message_id}/apply")
async def apply_message(form_id: str, message_id: str):
    """Apply the commands of an assistant message. Applying twice is a no-op."""
    session = _get_session(form_id)
    try:
        result = await session.mark_message_applied(message_id)
    except MessageNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SessionNotReadyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return {
        **_document_payload(session),
        "applied": result is not None,
        "commandNames": [name.value for name in result.commandNames] if result else [],
        "workflow": session.workflow.to_dict(),
    }


@router.post(
    "/forms/{form_id}/chat/messages/{message_id}/deny",
    response_model=AcceptedResponse,
    status_code=202,
)
async def deny_message(form_id: str, message_id: str, background_tasks: BackgroundTasks):
    """Reject an assistant proposal and ask for a different one."""
    session = _get_session(form_id)
    if not any(m["id"] == message_id and m.get("role") == "assistant" for m in session.messages):
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found")
    if session.is_busy:
        raise HTTPException(status_code=409, detail="The assistant is still answering.")

    background_tasks.add_task(_deny_in_background, session, message_id)
    return AcceptedResponse(
        formId=form_id,
        status="sending",
        message="Asked the assistant for a different proposal.",
    )


async def _deny_in_background(session: FormBuildSession, message_id: str) -> None:
    """Background task that sends the rejection message."""
    try:
        await session.deny_changes(message_id)
    except (ChannelBusyError, MessageNotFoundError) as exc:
        logger.warning("Could not deny message %s: %s", message_id, exc)


@router.get("/forms/{form_id}/workflow")
async def get_workflow(form_id: str):
    """Return the current and furthest completed build stage."""
    return _get_session(form_id).workflow.to_dict()


@router.post("/forms/{form_id}/workflow/continue")
async def continue_workflow(form_id: str, request: Optional[ContinueRequest] = None):
    """Mark a stage done and ask the assistant for the next one."""
    session = _get_session(form_id)
    completed = request.completedStep if request is not None else None
    task = session.continue_workflow(completed)
    return {**session.workflow.to_dict(), "scheduled": task is not None}
