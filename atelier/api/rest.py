"""REST API for the Atelier workspace agent.

Endpoints:
  POST   /api/chat/conversations       - Create a conversation
  GET    /api/chat/conversations       - List conversation summaries
  GET    /api/chat/conversations/{id}  - Get a conversation with its turns
  DELETE /api/chat/conversations/{id}  - Delete a conversation
  POST   /api/chat/message             - Send message, get response
  POST   /api/chat/stream              - Send message, SSE response
  GET    /api/chat/stats               - Conversation store stats
  GET    /health                       - Health check (DB connectivity)
  WS     /ws                           - File change notifications
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from atelier.api.runner import AgentRunner
from atelier.api.schemas import StreamEvent, StreamEventType
from atelier.config import Settings
from atelier.errors import AtelierError, NotFoundError, ValidationError
from atelier.events import FileWatcher
from atelier.storage import ConversationStore, Database

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"


def _error_status(error: Exception) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    return 500


def _frame(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict())}\n\n"


async def sse_stream(
    events: AsyncGenerator[StreamEvent, None],
    *,
    keepalive_interval: float,
    idle_timeout: float,
) -> AsyncIterator[str]:
    """Encode runner events as SSE frames.

    Sends a keepalive comment while the runner is quiet and guarantees
    the client sees exactly one terminal frame: the runner's own, or an
    error frame on idle timeout, exception, or premature end.
    """
    loop = asyncio.get_running_loop()
    last_event = loop.time()
    pending: asyncio.Future[StreamEvent] | None = None

    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(events.__anext__())

            done, _ = await asyncio.wait({pending}, timeout=keepalive_interval)
            if not done:
                if loop.time() - last_event >= idle_timeout:
                    logger.warning("Stream idle for %.0fs, closing", idle_timeout)
                    yield _frame(StreamEvent.failure("Stream timed out waiting for the agent", "timeout"))
                    return
                yield KEEPALIVE_FRAME
                continue

            task, pending = pending, None
            try:
                event = task.result()
            except StopAsyncIteration:
                break
            except Exception as e:
                logger.error("Stream error: %s", e)
                kind = e.kind if isinstance(e, AtelierError) else "internal_error"
                yield _frame(StreamEvent.failure(str(e) or type(e).__name__, kind))
                return

            last_event = loop.time()
            if event.type == StreamEventType.CONTENT and not event.content:
                continue
            yield _frame(event)
            if event.is_terminal:
                return

        yield _frame(StreamEvent.failure("Stream ended unexpectedly", "internal_error"))
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait({pending})
        await events.aclose()


def create_app(
    runner: AgentRunner,
    store: ConversationStore,
    watcher: FileWatcher,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def _read_chat_body(request: Request) -> tuple[str, str | None]:
        try:
            body = await request.json()
        except Exception:
            raise ValidationError("Invalid JSON body")
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON body")

        conversation_id = body.get("conversationId")
        if conversation_id is not None and not isinstance(conversation_id, str):
            raise ValidationError("conversationId must be a string")

        message = body.get("message")
        runner.preflight(message)
        return message, conversation_id

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /api/chat/conversations - Start an empty conversation."""
        try:
            conversation = await store.create()
            return JSONResponse({"conversationId": conversation.id})
        except Exception as e:
            logger.error("Create conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /api/chat/conversations - Summaries, most recent first."""
        try:
            summaries = await store.get_all()
            return JSONResponse({
                "conversations": [s.model_dump(mode="json", by_alias=True) for s in summaries],
            })
        except Exception as e:
            logger.error("List conversations error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /api/chat/conversations/{id} - Full conversation."""
        conversation_id = request.path_params["id"]
        try:
            conversation = await store.get(conversation_id)
        except Exception as e:
            logger.error("Get conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"conversation": conversation.model_dump(mode="json", by_alias=True)})

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /api/chat/conversations/{id} - Remove a conversation."""
        conversation_id = request.path_params["id"]
        try:
            deleted = await store.delete(conversation_id)
        except Exception as e:
            logger.error("Delete conversation error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        if not deleted:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "conversationId": conversation_id})

    async def chat_message(request: Request) -> JSONResponse:
        """POST /api/chat/message - Send a message, get a response."""
        try:
            message, conversation_id = await _read_chat_body(request)
            result = await runner.run_turn(conversation_id, message)
            return JSONResponse(result.to_dict())
        except AtelierError as e:
            logger.error("Chat error (%s): %s", e.kind, e.message)
            return JSONResponse({"error": e.message}, status_code=_error_status(e))
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def chat_stream(request: Request) -> Response:
        """POST /api/chat/stream - SSE streaming chat."""
        try:
            message, conversation_id = await _read_chat_body(request)
        except AtelierError as e:
            return JSONResponse({"error": e.message}, status_code=_error_status(e))

        frames = sse_stream(
            runner.stream_chat(conversation_id, message),
            keepalive_interval=settings.sse_keepalive_interval,
            idle_timeout=settings.stream_idle_timeout,
        )
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def stats(request: Request) -> JSONResponse:
        """GET /api/chat/stats - Store counts and database size."""
        try:
            store_stats = await store.get_stats()
            return JSONResponse(store_stats.model_dump(mode="json", by_alias=True))
        except Exception as e:
            logger.error("Stats error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    async def file_events(websocket: WebSocket) -> None:
        """WS /ws - Push file change events, ping to detect dead peers."""
        await websocket.accept()
        watcher.add_client(websocket)
        try:
            while True:
                await asyncio.sleep(settings.ws_heartbeat_interval)
                await websocket.send_json({"type": "ping"})
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug("File event client gone: %s", e)
        finally:
            watcher.remove_client(websocket)

    routes = [
        Route("/api/chat/conversations", create_conversation, methods=["POST"]),
        Route("/api/chat/conversations", list_conversations, methods=["GET"]),
        Route("/api/chat/conversations/{id}", get_conversation, methods=["GET"]),
        Route("/api/chat/conversations/{id}", delete_conversation, methods=["DELETE"]),
        Route("/api/chat/message", chat_message, methods=["POST"]),
        Route("/api/chat/stream", chat_stream, methods=["POST"]),
        Route("/api/chat/stats", stats),
        Route("/health", health),
        WebSocketRoute("/ws", file_events),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    kwargs: dict[str, Any] = {"routes": routes, "middleware": middleware}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
