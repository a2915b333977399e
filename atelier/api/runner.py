"""Agent runner -- executes conversational turns via direct Anthropic API.

Drives the tool use loop against the Messages API with httpx (no
external SDK).  Two modes share one round structure:

- run_turn(): blocking, returns the final text plus tools used
- stream_chat(): incremental, yields StreamEvents as text arrives and
  as tools start and finish

Each round: call the model with the full catalog; if it stops for
tool_use, run every requested tool concurrently, append the assistant
content and one tool_result user message, and go again.  Only the user
message and the final assistant text are persisted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx

from atelier.api.schemas import StreamEvent, StreamEventType, TurnResult
from atelier.api.tools import ToolDispatcher, ToolResult
from atelier.config import Settings
from atelier.errors import (
    AtelierError,
    ConfigurationError,
    MaxRoundsExceeded,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from atelier.storage import ConversationStore

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

SYSTEM_PROMPT = """You are an expert coding assistant helping a developer work on their project. You have access to their workspace and can read, write, and search files.

Your capabilities:
- Read and analyze code files
- Write or modify files
- Delete files or directories
- List directory contents
- Search for code patterns or text{wordpress}

Guidelines:
- Be concise and helpful
- When asked to make changes, use the tools to actually modify files
- Always explain what you're doing
- Ask for clarification if the request is unclear
- Suggest best practices when appropriate

Remember: You're working with real files in the user's workspace. Be careful with destructive operations like deleting files."""


@dataclass
class ApiResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None


@dataclass
class ApiStreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, text_block_start, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0


def _parse_sse_event(data: dict[str, Any]) -> ApiStreamEvent | None:
    """Parse Anthropic SSE event dict into ApiStreamEvent.

    Ping keepalives are skipped.  stop_reason arrives in
    message_delta.delta, not message_start.  An in-stream error event
    (HTTP 200 with an error body) becomes type="error".
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return ApiStreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return ApiStreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return ApiStreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return ApiStreamEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return ApiStreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return ApiStreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return ApiStreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
        )

    if event_type == "message_stop":
        return ApiStreamEvent(type="message_stop")

    return None


def _tool_result_block(tool_use_id: str, result: ToolResult) -> dict[str, Any]:
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": result.to_content(),
        "is_error": result.is_error,
    }


class AgentRunner:
    """Runs agent turns against the Messages API with an internal tool loop.

    Turns on the same conversation id are serialized with a
    per-conversation lock; different conversations run concurrently.
    """

    def __init__(
        self,
        store: ConversationStore,
        dispatcher: ToolDispatcher,
        settings: Settings,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._settings = settings
        self._http: httpx.AsyncClient | None = None
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._system_prompt = self._build_system_prompt()

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- chat endpoints will be rejected")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def preflight(self, message: Any) -> None:
        """Reject a turn before any store write or model call.

        Raises ValidationError for an empty message and
        ConfigurationError when the provider credential is missing.
        """
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required")
        if not self._settings.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not configured")

    # ------------------------------------------------------------------
    # Blocking mode
    # ------------------------------------------------------------------

    async def run_turn(self, conversation_id: str | None, message: str) -> TurnResult:
        """Execute one agent turn to completion.

        Steps:
        1. Validate, then get or create the conversation
        2. Persist the user message and load prior turns
        3. Run tool loop: call API, dispatch tools, repeat until done
        4. Persist the final assistant text

        Raises UpstreamError on provider failure and MaxRoundsExceeded
        when the model keeps requesting tools past max_rounds.
        """
        self.preflight(message)
        conversation_id = await self._resolve_conversation(conversation_id)

        async with self._turn_lock(conversation_id):
            messages = await self._open_turn(conversation_id, message)
            response_text, tools_used = await self._tool_loop(messages)
            await self._store.add_message(conversation_id, "assistant", response_text)

        logger.info(
            "Turn complete for %s (%d tool calls)", conversation_id, len(tools_used)
        )
        return TurnResult(
            conversation_id=conversation_id,
            message=response_text,
            tools_used=tools_used,
        )

    async def _tool_loop(self, messages: list[dict[str, Any]]) -> tuple[str, list[str]]:
        """Run rounds until the model answers without tools.

        Returns (response_text, tool names in call order across rounds).
        """
        tools = self._dispatcher.tool_definitions()
        tools_used: list[str] = []
        max_rounds = self._settings.max_rounds

        for _ in range(max_rounds):
            api_response = await self._call_api(
                system_prompt=self._system_prompt,
                messages=messages,
                tools=tools,
            )

            tool_blocks = [b for b in api_response.content if b.get("type") == "tool_use"]
            if api_response.stop_reason != "tool_use" or not tool_blocks:
                return self._extract_text(api_response.content), tools_used

            # Append FULL assistant response (all content blocks)
            messages.append({"role": "assistant", "content": api_response.content})

            tools_used.extend(b["name"] for b in tool_blocks)
            results = await asyncio.gather(*(
                self._dispatcher.dispatch(b["name"], b.get("input") or {}, notify_watcher=False)
                for b in tool_blocks
            ))

            # All results in a single user message, in call order
            messages.append({
                "role": "user",
                "content": [
                    _tool_result_block(block["id"], result)
                    for block, result in zip(tool_blocks, results)
                ],
            })

        logger.warning("Tool loop reached max_rounds=%d", max_rounds)
        raise MaxRoundsExceeded(max_rounds)

    # ------------------------------------------------------------------
    # Incremental mode
    # ------------------------------------------------------------------

    async def stream_chat(
        self,
        conversation_id: str | None,
        message: str,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Full agent turn with streaming, including tool loops.

        Yields conversation_id first and exactly one terminal event
        (done or error) last.  Validation errors raise before the first
        event so callers can reject the request outright.
        """
        self.preflight(message)
        conversation_id = await self._resolve_conversation(conversation_id)
        yield StreamEvent(type=StreamEventType.CONVERSATION_ID, conversation_id=conversation_id)

        async with self._turn_lock(conversation_id):
            streamed: list[str] = []
            try:
                messages = await self._open_turn(conversation_id, message)
                async with aclosing(self._stream_rounds(messages, streamed)) as rounds:
                    async for event in rounds:
                        yield event
                await self._store.add_message(conversation_id, "assistant", "".join(streamed))
            except AtelierError as e:
                logger.error("Streaming turn failed for %s: %s", conversation_id, e.message)
                yield StreamEvent.failure(e.message, e.kind)
                return
            except Exception as e:
                logger.exception("Streaming error for %s", conversation_id)
                yield StreamEvent.failure(str(e) or type(e).__name__, "internal_error")
                return

        yield StreamEvent(type=StreamEventType.DONE)

    async def _stream_rounds(
        self,
        messages: list[dict[str, Any]],
        streamed: list[str],
    ) -> AsyncGenerator[StreamEvent, None]:
        tools = self._dispatcher.tool_definitions()
        max_rounds = self._settings.max_rounds

        for _ in range(max_rounds):
            text_parts: list[str] = []
            tool_calls: list[dict[str, Any]] = []
            block_accumulators: dict[int, dict[str, Any]] = {}
            stop_reason = ""

            api_stream = self._call_api_stream(
                system_prompt=self._system_prompt,
                messages=messages,
                tools=tools,
            )
            async with aclosing(api_stream):
                async for event in api_stream:
                    if event.type == "error":
                        raise UpstreamError(event.text)

                    elif event.type == "text_delta":
                        if not event.text:
                            continue
                        text_parts.append(event.text)
                        streamed.append(event.text)
                        yield StreamEvent(type=StreamEventType.CONTENT, content=event.text)

                    elif event.type == "tool_start":
                        block_accumulators[event.block_index] = {
                            "id": event.tool_id,
                            "name": event.tool_name,
                            "input_parts": [],
                        }
                        yield StreamEvent(
                            type=StreamEventType.TOOL_USE,
                            tool_name=event.tool_name,
                            tool_id=event.tool_id,
                        )

                    elif event.type == "tool_input_delta":
                        acc = block_accumulators.get(event.block_index)
                        if acc:
                            acc["input_parts"].append(event.text)

                    elif event.type == "block_stop":
                        acc = block_accumulators.pop(event.block_index, None)
                        if acc:
                            input_json = "".join(acc.pop("input_parts"))
                            try:
                                acc["input"] = json.loads(input_json) if input_json else {}
                            except json.JSONDecodeError:
                                logger.warning("Malformed tool input for %s: %r", acc["name"], input_json[:200])
                                acc["input"] = {}
                            tool_calls.append(acc)

                    elif event.type == "done":
                        stop_reason = event.stop_reason

            # Stream segment ended -- decide next action
            if stop_reason != "tool_use" or not tool_calls:
                return

            content_blocks: list[dict[str, Any]] = []
            if text_parts:
                content_blocks.append({"type": "text", "text": "".join(text_parts)})
            for tc in tool_calls:
                content_blocks.append({
                    "type": "tool_use",
                    "id": tc["id"],
                    "name": tc["name"],
                    "input": tc["input"],
                })
            messages.append({"role": "assistant", "content": content_blocks})

            results: dict[str, ToolResult] = {}
            async with aclosing(self._execute_tools(tool_calls, results)) as executing:
                async for event in executing:
                    yield event

            messages.append({
                "role": "user",
                "content": [_tool_result_block(tc["id"], results[tc["id"]]) for tc in tool_calls],
            })

        logger.warning("Streaming tool loop reached max_rounds=%d", max_rounds)
        raise MaxRoundsExceeded(max_rounds)

    async def _execute_tools(
        self,
        tool_calls: list[dict[str, Any]],
        results: dict[str, ToolResult],
    ) -> AsyncGenerator[StreamEvent, None]:
        """Run one round's tool calls concurrently, yielding as each finishes.

        Results are recorded in ``results`` keyed by tool_use id.
        Pending calls are cancelled if the consumer goes away.
        """

        async def run(tc: dict[str, Any]) -> tuple[dict[str, Any], ToolResult]:
            return tc, await self._dispatcher.dispatch(tc["name"], tc["input"], notify_watcher=True)

        for tc in tool_calls:
            yield StreamEvent(type=StreamEventType.TOOL_EXECUTING, tool_name=tc["name"], tool_id=tc["id"])

        pending = [asyncio.create_task(run(tc)) for tc in tool_calls]
        try:
            for next_done in asyncio.as_completed(pending):
                tc, result = await next_done
                results[tc["id"]] = result
                yield StreamEvent(
                    type=StreamEventType.TOOL_RESULT,
                    tool_name=tc["name"],
                    tool_id=tc["id"],
                    is_error=result.is_error,
                    result=result.to_content(),
                )
        finally:
            for task in pending:
                if not task.done():
                    task.cancel()

    # ------------------------------------------------------------------
    # Conversation plumbing
    # ------------------------------------------------------------------

    async def _resolve_conversation(self, conversation_id: str | None) -> str:
        """Return a live conversation id, creating a new one if needed."""
        if conversation_id:
            conversation = await self._store.get(conversation_id)
            if conversation is not None:
                return conversation.id
            logger.info("Conversation %s not found or expired, starting new", conversation_id)
        conversation = await self._store.create()
        return conversation.id

    async def _open_turn(self, conversation_id: str, message: str) -> list[dict[str, Any]]:
        """Persist the user message and return the request message list."""
        async with self._store.db.session() as session:
            conversation = await self._store.get(conversation_id, session=session)
            if conversation is None:
                raise NotFoundError("Conversation not found")
            await self._store.add_message(conversation_id, "user", message, session=session)
            await session.commit()

        history = [
            {"role": t.role, "content": t.content}
            for t in conversation.messages
            if t.content
        ]
        history.append({"role": "user", "content": message})
        return history

    @asynccontextmanager
    async def _turn_lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        async with lock:
            yield

    # ------------------------------------------------------------------
    # API call
    # ------------------------------------------------------------------

    def _build_api_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build Anthropic Messages API request payload.

        Shared by _call_api and _call_api_stream to avoid divergence.
        """
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def _call_api(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ApiResponse:
        """Call Anthropic Messages API once.

        Returns parsed ApiResponse.  Raises UpstreamError on any failure;
        retries are left to the caller.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_api_payload(system_prompt, messages, tools)

        try:
            response = await self._http.post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise _api_error(response.status_code, response.content)

        data = response.json()
        return ApiResponse(
            content=data["content"],
            stop_reason=data.get("stop_reason") or "",
            usage=data.get("usage"),
        )

    async def _call_api_stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[ApiStreamEvent, None]:
        """Call Anthropic API with streaming enabled.

        Yields ApiStreamEvent objects; only data: lines are processed.
        HTTP and transport failures raise UpstreamError.  An in-stream
        error event is yielded and ends the stream.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_api_payload(system_prompt, messages, tools, stream=True)

        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    error_body = await response.aread()
                    raise _api_error(response.status_code, error_body)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed SSE line: %r", line[:200])
                        continue
                    event = _parse_sse_event(data)
                    if event:
                        yield event
                        if event.type == "error":
                            return
        except httpx.TimeoutException as e:
            raise UpstreamError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"HTTP error: {e}") from e

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_system_prompt(self) -> str:
        wordpress = ""
        if self._settings.wordpress_api_url:
            wordpress = (
                "\n- Manage WordPress content via REST API (posts, pages, media, users, comments, etc.)"
                f"\n  WordPress API: {self._settings.wordpress_api_url}"
            )
        return SYSTEM_PROMPT.format(wordpress=wordpress)

    def _extract_text(self, content_blocks: list[dict[str, Any]]) -> str:
        """Extract text from API response content blocks."""
        text_parts = []
        for block in content_blocks:
            if block.get("type") == "text":
                text_parts.append(block["text"])
        return "\n".join(text_parts) if text_parts else ""


def _api_error(status: int, body: bytes) -> UpstreamError:
    try:
        error_data = json.loads(body)
        error_type = error_data.get("error", {}).get("type", "unknown")
        error_msg = error_data.get("error", {}).get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode(errors="replace")[:500]
    return UpstreamError(
        f"Anthropic API error ({status}): {error_type} - {error_msg}",
        status=status,
    )
