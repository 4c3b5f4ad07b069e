"""
Integration tests for the FastAPI REST and WebSocket endpoints.

Build sessions use in-memory fakes for the chat store and the agent channel,
so there is no database and no real LLM call.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import itertools

import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from main import app
from models.commands import parse_command
from api.session_store import build_sessions
from api.websocket import diff_snapshots
from services.agent_channel import AgentTurn, ChannelStatus, CommandInvocation
from services.build_session import FormBuildSession
from services.workflow import CONTINUE_MESSAGE, WorkflowController


class FakeChatStore:
    def __init__(self):
        self._ids = itertools.count(1)
        self.messages = []

    async def get_or_create_session(self, form_id):
        return f"chat-{form_id}"

    async def get_messages(self, session_id):
        return list(self.messages)

    async def save_message(self, session_id, role, text, invocations=None):
        message = {
            "id": f"msg-{next(self._ids)}",
            "role": role,
            "content": text,
            "toolInvocations": invocations or [],
            "actionsApplied": False,
            "createdAt": None,
        }
        self.messages.append(message)
        return message

    async def mark_applied(self, message_id):
        return True

    async def clear_history(self, form_id):
        self.messages = []
        return 0


class FakeChannel:
    def __init__(self, turns=None):
        self.status = ChannelStatus.IDLE
        self.error = None
        self.sent = []
        self.turns = list(turns or [])

    @property
    def is_busy(self):
        return self.status in (ChannelStatus.SENDING, ChannelStatus.STREAMING)

    def load_history(self, messages):
        pass

    def reset_history(self):
        pass

    async def send(self, text, document=None):
        self.sent.append(text)
        return self.turns.pop(0) if self.turns else AgentTurn(text="ok")

    def stop(self):
        return self.is_busy


CONTACT_FORM = CommandInvocation(id="call_1", name="replaceForm", args={"sections": [{
    "id": "s1",
    "title": "Contact",
    "elements": [{"id": "f1", "type": "TextField", "extraAttributes": {"label": "Name"}}],
}]})


def _fake_session(form_id, turns=None):
    return FormBuildSession(
        form_id,
        store=FakeChatStore(),
        channel=FakeChannel(turns),
        auto_continue=False,
        workflow=WorkflowController(poll_interval=0.01, max_interval=0.02, max_wait=1.0),
    )


async def _open(form_id, turns=None) -> FormBuildSession:
    session = _fake_session(form_id, turns)
    await session.initialize()
    return build_sessions.add(session)


@pytest.fixture(autouse=True)
def clean_build_sessions():
    """Reset the session registry before each test."""
    build_sessions.clear()
    yield
    build_sessions.clear()


client = TestClient(app)


class TestHealthEndpoint:
    def test_health_check_returns_ok(self):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestOpenSession:
    def test_open_creates_and_reuses_session(self):
        with patch("api.routes.FormBuildSession", side_effect=lambda form_id: _fake_session(form_id)):
            first = client.post("/api/forms/form-1/session")
            second = client.post("/api/forms/form-1/session")

        assert first.status_code == 200
        data = first.json()
        assert data["chatSessionId"] == "chat-form-1"
        assert data["document"]["sections"] == []
        assert data["workflow"]["currentStep"] == "structure"
        assert second.status_code == 200
        assert build_sessions.form_ids() == ["form-1"]

    def test_open_with_legacy_document(self):
        with patch("api.routes.FormBuildSession", side_effect=lambda form_id: _fake_session(form_id)):
            response = client.post("/api/forms/form-1/session", json={"document": {
                "sections": [{"id": "s1", "title": "Old", "elements": [
                    {"id": "a", "type": "Email", "extraAttributes": {"label": "Email"}},
                ]}],
            }})
        assert response.status_code == 200
        rows = response.json()["document"]["sections"][0]["rows"]
        assert rows[0]["elements"][0]["id"] == "a"

    def test_open_with_invalid_document(self):
        with patch("api.routes.FormBuildSession", side_effect=lambda form_id: _fake_session(form_id)):
            response = client.post("/api/forms/form-1/session", json={"document": {
                "sections": [{"id": "s1", "title": "Bad", "elements": [{"id": "a", "type": "Hologram"}]}],
            }})
        assert response.status_code == 422


class TestDocumentEndpoints:
    def test_unknown_form_is_404(self):
        assert client.get("/api/forms/nope/document").status_code == 404

    @pytest.mark.asyncio
    async def test_apply_commands(self):
        await _open("form-1")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/forms/form-1/commands", json={"commands": [
                {"name": "addSection", "args": {"title": "Contact"}},
                {"name": "updateFormStyle", "args": {"style": "stepped"}},
            ]})
        assert response.status_code == 200
        data = response.json()
        assert data["commandNames"] == ["addSection", "updateFormStyle"]
        assert data["document"]["style"] == "stepped"
        assert data["document"]["sections"][0]["title"] == "Contact"
        assert data["revision"] == 1

    @pytest.mark.asyncio
    async def test_invalid_command_rejects_batch(self):
        session = await _open("form-1")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/forms/form-1/commands", json={"commands": [
                {"name": "addSection", "args": {"title": "Contact"}},
                {"name": "launchRocket", "args": {}},
            ]})
        assert response.status_code == 422
        assert session.document.sections == []

    @pytest.mark.asyncio
    async def test_set_selection(self):
        session = await _open("form-1")
        session.apply_command(parse_command(CONTACT_FORM.name, CONTACT_FORM.args))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.put("/api/forms/form-1/selection", json={
                "selectedElementId": "f1",
                "currentSectionId": "s1",
            })
        assert response.status_code == 200
        data = response.json()
        assert data["selectedElement"]["id"] == "f1"
        assert data["currentSectionId"] == "s1"


class TestChatEndpoints:
    @pytest.mark.asyncio
    async def test_send_apply_flow(self):
        session = await _open("form-1", turns=[AgentTurn(text="Here is your form", invocations=[CONTACT_FORM])])
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/forms/form-1/chat", json={"message": "Build a contact form"})
            assert response.status_code == 202

            messages = (await ac.get("/api/forms/form-1/chat/messages")).json()["messages"]
            assert [m["role"] for m in messages] == ["user", "assistant"]
            assistant_id = messages[1]["id"]

            applied = await ac.post(f"/api/forms/form-1/chat/messages/{assistant_id}/apply")
            assert applied.status_code == 200
            data = applied.json()
            assert data["applied"] is True
            assert data["document"]["sections"][0]["title"] == "Contact"
            assert data["workflow"]["currentStep"] == "style"

            again = await ac.post(f"/api/forms/form-1/chat/messages/{assistant_id}/apply")
            assert again.json()["applied"] is False

        assert session.applied_message_ids == {assistant_id}

    def test_send_rejects_empty_message(self):
        build_sessions.add(_fake_session("form-1"))
        response = client.post("/api/forms/form-1/chat", json={"message": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_send_while_busy_is_409(self):
        session = await _open("form-1")
        session.channel.status = ChannelStatus.STREAMING
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/forms/form-1/chat", json={"message": "Hi"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_apply_unknown_message_is_404(self):
        await _open("form-1")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/forms/form-1/chat/messages/nope/apply")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_deny_sends_rejection(self):
        style = CommandInvocation(id="call_2", name="updateFormStyle", args={"style": "stepped"})
        session = await _open("form-1", turns=[AgentTurn(text="Stepped?", invocations=[style])])
        await session.send_message("Pick a style")
        message_id = session.messages[-1]["id"]

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post(f"/api/forms/form-1/chat/messages/{message_id}/deny")
            missing = await ac.post("/api/forms/form-1/chat/messages/nope/deny")

        assert response.status_code == 202
        assert missing.status_code == 404
        assert session.channel.sent[-1] == "I don't like this style. Suggest something different."

    @pytest.mark.asyncio
    async def test_stop_and_clear(self):
        session = await _open("form-1")
        await session.send_message("Hi")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            stopped = await ac.post("/api/forms/form-1/chat/stop")
            cleared = await ac.delete("/api/forms/form-1/chat")

        assert stopped.json()["stopped"] is False
        assert cleared.status_code == 200
        assert cleared.json()["messages"] == []
        assert session.messages == []


class TestWorkflowEndpoints:
    @pytest.mark.asyncio
    async def test_get_and_continue(self):
        session = await _open("form-1")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            state = await ac.get("/api/forms/form-1/workflow")
            assert state.json()["currentStep"] == "structure"

            response = await ac.post("/api/forms/form-1/workflow/continue", json={"completedStep": "structure"})

        assert response.status_code == 200
        assert response.json()["currentStep"] == "style"
        assert response.json()["scheduled"] is True

        await session.workflow._continuation
        assert session.channel.sent == [CONTINUE_MESSAGE]

    @pytest.mark.asyncio
    async def test_continue_rejects_unknown_step(self):
        await _open("form-1")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/forms/form-1/workflow/continue", json={"completedStep": "launch"})
        assert response.status_code == 422


class TestWebSocket:
    def test_unknown_form_sends_error(self):
        with client.websocket_connect("/ws/forms/nope") as ws:
            event = ws.receive_json()
        assert event["event"] == "error"

    def test_connected_event_carries_snapshot(self):
        build_sessions.add(_fake_session("form-1"))
        with client.websocket_connect("/ws/forms/form-1") as ws:
            event = ws.receive_json()
        assert event["event"] == "connected"
        assert event["snapshot"]["channelStatus"] == "idle"

    def test_diff_snapshots(self):
        previous = {
            "channelStatus": "idle",
            "workflow": {"currentStep": "structure", "furthestCompleted": None},
            "revision": 0,
            "messageCount": 0,
            "lastMessageId": None,
            "error": None,
        }
        current = {
            "channelStatus": "streaming",
            "workflow": {"currentStep": "style", "furthestCompleted": "structure"},
            "revision": 2,
            "messageCount": 1,
            "lastMessageId": "m1",
            "error": None,
        }
        events = diff_snapshots("form-1", previous, current, [{"id": "m1"}])
        assert [e["event"] for e in events] == [
            "channel_status",
            "workflow_step",
            "document_updated",
            "message_saved",
        ]
        assert events[3]["message"] == {"id": "m1"}
        assert diff_snapshots("form-1", current, current, [{"id": "m1"}]) == []
