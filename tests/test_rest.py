"""Integration tests for REST API endpoints and the SSE adapter.

Uses httpx AsyncClient with ASGITransport for async HTTP testing.
The AgentRunner is real with its provider calls mocked; the store runs
on a throwaway SQLite file.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient

from atelier.api.rest import KEEPALIVE_FRAME, create_app, sse_stream
from atelier.api.runner import AgentRunner, ApiResponse, ApiStreamEvent
from atelier.api.schemas import StreamEvent, StreamEventType
from atelier.api.tools import ToolDefinition, ToolDispatcher, ToolOk
from atelier.errors import UpstreamError

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class EchoExecutor:
    def definitions(self):
        return [ToolDefinition(name="echo", description="echo", input_schema={"type": "object", "properties": {}})]

    async def execute(self, name, tool_input, *, notify_watcher=False):
        return ToolOk({"echo": tool_input})


@pytest_asyncio.fixture
async def runner(store, settings):
    dispatcher = ToolDispatcher()
    dispatcher.register(EchoExecutor())
    r = AgentRunner(store, dispatcher, settings)
    yield r
    await r.close()


@pytest.fixture
def app(runner, store, watcher, db, settings):
    return create_app(runner=runner, store=store, watcher=watcher, database=db, settings=settings)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _parse_sse(body: str) -> list[dict]:
    frames = []
    for chunk in body.split("\n\n"):
        if chunk.startswith("data: "):
            frames.append(json.loads(chunk[6:]))
    return frames


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class TestConversations:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        created = await client.post("/api/chat/conversations")
        assert created.status_code == 200
        conversation_id = created.json()["conversationId"]
        assert conversation_id.startswith("conv_")

        fetched = await client.get(f"/api/chat/conversations/{conversation_id}")
        assert fetched.status_code == 200
        body = fetched.json()["conversation"]
        assert body["id"] == conversation_id
        assert body["messages"] == []
        assert "createdAt" in body and "updatedAt" in body

    @pytest.mark.asyncio
    async def test_get_missing_is_404(self, client):
        resp = await client.get("/api/chat/conversations/conv_0_nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Conversation not found"}

    @pytest.mark.asyncio
    async def test_list(self, client, store):
        conversation = await store.create()
        await store.add_message(conversation.id, "user", "What is this repo?")

        resp = await client.get("/api/chat/conversations")

        assert resp.status_code == 200
        [summary] = resp.json()["conversations"]
        assert summary["id"] == conversation.id
        assert summary["messageCount"] == 1
        assert summary["preview"] == "What is this repo?"

    @pytest.mark.asyncio
    async def test_delete(self, client, store):
        conversation = await store.create()

        resp = await client.delete(f"/api/chat/conversations/{conversation.id}")
        assert resp.status_code == 200
        assert resp.json() == {"status": "deleted", "conversationId": conversation.id}

        again = await client.delete(f"/api/chat/conversations/{conversation.id}")
        assert again.status_code == 404

    @pytest.mark.asyncio
    async def test_stats(self, client, store):
        conversation = await store.create()
        await store.add_message(conversation.id, "user", "x")

        resp = await client.get("/api/chat/stats")

        assert resp.status_code == 200
        body = resp.json()
        assert body["conversations"] == 1
        assert body["messages"] == 1
        assert body["dbSize"] > 0

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# POST /api/chat/message
# ---------------------------------------------------------------------------


class TestChatMessage:
    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post("/api/chat/message", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid JSON body"}

    @pytest.mark.asyncio
    async def test_missing_message(self, client, store):
        resp = await client.post("/api/chat/message", json={"message": "   "})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Message is required"}
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_missing_api_key(self, store, watcher, db, settings_factory):
        settings = settings_factory(ANTHROPIC_API_KEY="")
        runner = AgentRunner(store, ToolDispatcher(), settings)
        app = create_app(runner=runner, store=store, watcher=watcher, database=db, settings=settings)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            resp = await c.post("/api/chat/message", json={"message": "hi"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "ANTHROPIC_API_KEY not configured"}

    @pytest.mark.asyncio
    async def test_success_with_tools(self, client, runner):
        runner._call_api = AsyncMock(side_effect=[
            ApiResponse(
                content=[{"type": "tool_use", "id": "t1", "name": "echo", "input": {"a": 1}}],
                stop_reason="tool_use",
            ),
            ApiResponse(content=[{"type": "text", "text": "Echoed."}], stop_reason="end_turn"),
        ])

        resp = await client.post("/api/chat/message", json={"message": "echo please"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "Echoed."
        assert body["toolsUsed"] == ["echo"]
        assert body["conversationId"].startswith("conv_")

    @pytest.mark.asyncio
    async def test_continues_conversation(self, client, runner, store):
        conversation = await store.create()
        runner._call_api = AsyncMock(return_value=ApiResponse(
            content=[{"type": "text", "text": "Sure."}], stop_reason="end_turn",
        ))

        resp = await client.post(
            "/api/chat/message",
            json={"message": "continue", "conversationId": conversation.id},
        )

        assert resp.json() == {"conversationId": conversation.id, "message": "Sure."}

    @pytest.mark.asyncio
    async def test_upstream_error_is_500(self, client, runner):
        runner._call_api = AsyncMock(side_effect=UpstreamError("Anthropic API error (500): api_error - boom"))

        resp = await client.post("/api/chat/message", json={"message": "hi"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "Anthropic API error (500): api_error - boom"}

    @pytest.mark.asyncio
    async def test_max_rounds_is_500(self, client, runner):
        runner._call_api = AsyncMock(return_value=ApiResponse(
            content=[{"type": "tool_use", "id": "t", "name": "echo", "input": {}}],
            stop_reason="tool_use",
        ))

        resp = await client.post("/api/chat/message", json={"message": "loop"})

        assert resp.status_code == 500
        assert "maximum of 5 tool rounds" in resp.json()["error"]


# ---------------------------------------------------------------------------
# POST /api/chat/stream
# ---------------------------------------------------------------------------


class TestChatStream:
    @pytest.mark.asyncio
    async def test_validation_before_stream(self, client):
        resp = await client.post("/api/chat/stream", json={})
        assert resp.status_code == 400
        assert resp.headers["content-type"].startswith("application/json")
        assert resp.json() == {"error": "Message is required"}

    @pytest.mark.asyncio
    async def test_stream_frames_and_headers(self, client, runner, store):
        async def fake_stream(system_prompt, messages, tools=None):
            yield ApiStreamEvent(type="text_delta", text="Hello")
            yield ApiStreamEvent(type="text_delta", text=" world")
            yield ApiStreamEvent(type="done", stop_reason="end_turn")

        runner._call_api_stream = fake_stream

        resp = await client.post("/api/chat/stream", json={"message": "hi"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        assert resp.headers["x-accel-buffering"] == "no"

        frames = _parse_sse(resp.text)
        assert [f["type"] for f in frames] == ["conversation_id", "content", "content", "done"]
        assert frames[-1] == {"type": "done", "done": True}

        conversation = await store.get(frames[0]["conversationId"])
        assert [t.content for t in conversation.messages] == ["hi", "Hello world"]

    @pytest.mark.asyncio
    async def test_stream_upstream_failure_is_error_frame(self, client, runner):
        async def failing_stream(system_prompt, messages, tools=None):
            raise UpstreamError("Anthropic API error (401): authentication_error - invalid x-api-key", status=401)
            yield  # pragma: no cover

        runner._call_api_stream = failing_stream

        resp = await client.post("/api/chat/stream", json={"message": "hi"})

        frames = _parse_sse(resp.text)
        assert frames[0]["type"] == "conversation_id"
        assert frames[-1]["type"] == "error"
        assert frames[-1]["kind"] == "upstream_error"
        assert "invalid x-api-key" in frames[-1]["error"]


# ---------------------------------------------------------------------------
# sse_stream adapter
# ---------------------------------------------------------------------------


async def _frames(events, *, keepalive_interval=1.0, idle_timeout=5.0) -> list[str]:
    return [f async for f in sse_stream(events, keepalive_interval=keepalive_interval, idle_timeout=idle_timeout)]


class TestSseStream:
    @pytest.mark.asyncio
    async def test_keepalive_while_waiting(self):
        async def slow():
            await asyncio.sleep(0.35)
            yield StreamEvent(type=StreamEventType.DONE)

        frames = await _frames(slow(), keepalive_interval=0.1)

        assert frames.count(KEEPALIVE_FRAME) >= 2
        assert frames[-1] == 'data: {"type": "done", "done": true}\n\n'

    @pytest.mark.asyncio
    async def test_idle_timeout_is_terminal(self):
        closed = False

        async def stuck():
            nonlocal closed
            try:
                await asyncio.sleep(60)
                yield StreamEvent(type=StreamEventType.DONE)
            finally:
                closed = True

        frames = await _frames(stuck(), keepalive_interval=0.05, idle_timeout=0.2)

        last = json.loads(frames[-1][6:])
        assert last["type"] == "error"
        assert last["kind"] == "timeout"
        assert closed

    @pytest.mark.asyncio
    async def test_exception_becomes_error_frame(self):
        async def broken():
            yield StreamEvent(type=StreamEventType.CONVERSATION_ID, conversation_id="conv_1_a")
            raise RuntimeError("disk on fire")

        frames = await _frames(broken())

        assert json.loads(frames[0][6:])["type"] == "conversation_id"
        assert json.loads(frames[-1][6:]) == {"type": "error", "error": "disk on fire", "kind": "internal_error"}

    @pytest.mark.asyncio
    async def test_premature_end_gets_terminal(self):
        async def truncated():
            yield StreamEvent(type=StreamEventType.CONTENT, content="half")

        frames = await _frames(truncated())

        assert len(frames) == 2
        assert json.loads(frames[-1][6:])["type"] == "error"

    @pytest.mark.asyncio
    async def test_empty_content_skipped_and_stops_after_terminal(self):
        after_terminal = False

        async def events():
            nonlocal after_terminal
            yield StreamEvent(type=StreamEventType.CONTENT, content="")
            yield StreamEvent(type=StreamEventType.CONTENT, content="x")
            yield StreamEvent.failure("nope", "upstream_error")
            after_terminal = True
            yield StreamEvent(type=StreamEventType.DONE)

        frames = await _frames(events())

        assert [json.loads(f[6:])["type"] for f in frames] == ["content", "error"]
        assert not after_terminal

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_pending_read(self):
        cancelled = False

        async def waiting():
            nonlocal cancelled
            yield StreamEvent(type=StreamEventType.CONVERSATION_ID, conversation_id="conv_1_a")
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled = True
                raise
            yield StreamEvent(type=StreamEventType.DONE)

        events = waiting()
        frames = sse_stream(events, keepalive_interval=0.05, idle_timeout=5.0)

        assert json.loads((await frames.__anext__())[6:])["type"] == "conversation_id"
        # the next read is in flight when the client goes away
        assert await frames.__anext__() == KEEPALIVE_FRAME
        await frames.aclose()

        assert cancelled
        with pytest.raises(StopAsyncIteration):
            await events.__anext__()


# ---------------------------------------------------------------------------
# WebSocket /ws
# ---------------------------------------------------------------------------


class TestFileEventsSocket:
    def test_registers_client_and_pings(self, watcher, settings_factory):
        settings = settings_factory(ws_heartbeat_interval=0.05)
        app = create_app(
            runner=MagicMock(), store=MagicMock(), watcher=watcher, database=MagicMock(), settings=settings,
        )

        with TestClient(app) as test_client:
            with test_client.websocket_connect("/ws") as ws:
                assert ws.receive_json() == {"type": "ping"}
                assert watcher.client_count == 1
