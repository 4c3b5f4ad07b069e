"""
WebSocket endpoint for real-time build session updates.

Clients connect to /ws/forms/{form_id} and receive JSON events whenever the
assistant's status, the workflow step, the document or the chat changes.

Event format:
    {"event": "connected", "form_id": "...", "snapshot": {...}}
    {"event": "channel_status", "form_id": "...", "status": "streaming"}
    {"event": "workflow_step", "form_id": "...", "current_step": "style", "furthest_completed": "structure"}
    {"event": "document_updated", "form_id": "...", "revision": 4}
    {"event": "message_saved", "form_id": "...", "message": {...}}
    {"event": "session_error", "form_id": "...", "error": "..."}
"""

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.session_store import build_sessions


ws_router = APIRouter()

POLL_INTERVAL = 0.5


def diff_snapshots(form_id: str, previous: dict, current: dict, messages: list) -> list:
    """
    Compute the events that turn ``previous`` into ``current``.

    Args:
        form_id:  The form the snapshots belong to.
        previous: The last snapshot sent to the client.
        current:  The latest snapshot.
        messages: The session's message list, for message_saved payloads.

    Returns:
        The events to send, in order.
    """
    events = []

    if current["channelStatus"] != previous["channelStatus"]:
        events.append({
            "event": "channel_status",
            "form_id": form_id,
            "status": current["channelStatus"],
        })

    if current["workflow"]["currentStep"] != previous["workflow"]["currentStep"]:
        events.append({
            "event": "workflow_step",
            "form_id": form_id,
            "current_step": current["workflow"]["currentStep"],
            "furthest_completed": current["workflow"]["furthestCompleted"],
        })

    if current["revision"] != previous["revision"]:
        events.append({
            "event": "document_updated",
            "form_id": form_id,
            "revision": current["revision"],
        })

    if current["messageCount"] > previous["messageCount"]:
        for message in messages[previous["messageCount"]:current["messageCount"]]:
            events.append({"event": "message_saved", "form_id": form_id, "message": message})
    elif current["lastMessageId"] != previous["lastMessageId"]:
        # History was cleared or replaced
        events.append({
            "event": "message_saved",
            "form_id": form_id,
            "message": messages[-1] if messages else None,
        })

    if current["error"] and current["error"] != previous["error"]:
        events.append({"event": "session_error", "form_id": form_id, "error": current["error"]})

    return events


@ws_router.websocket("/ws/forms/{form_id}")
async def form_websocket(websocket: WebSocket, form_id: str):
    """
    WebSocket endpoint for live build session updates.

    On connect: sends the current snapshot immediately.
    While open: polls the build session every POLL_INTERVAL seconds and
    pushes what changed.
    """
    await websocket.accept()

    try:
        session = build_sessions.get(form_id)
        if session is None:
            await websocket.send_text(
                json.dumps({"event": "error", "message": f"No build session for form '{form_id}'."})
            )
            return

        last = session.status_snapshot()
        await websocket.send_text(
            json.dumps({"event": "connected", "form_id": form_id, "snapshot": last})
        )

        while True:
            # Client messages are ignored; receiving surfaces disconnects
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=POLL_INTERVAL)
            except asyncio.TimeoutError:
                pass

            session = build_sessions.get(form_id)
            if session is None:
                await websocket.send_text(
                    json.dumps({"event": "session_closed", "form_id": form_id})
                )
                break

            current = session.status_snapshot()
            for event in diff_snapshots(form_id, last, current, session.messages):
                await websocket.send_text(json.dumps(event))
            last = current

    except WebSocketDisconnect:
        pass
