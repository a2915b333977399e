"""Atelier entry point.

Initializes all components and starts the server:
  Settings -> Database -> ConversationStore -> Workspace -> Tools -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

import httpx
import uvicorn
from starlette.applications import Starlette

from atelier.api.file_tools import FileToolExecutor
from atelier.api.runner import AgentRunner
from atelier.api.tools import ToolDispatcher
from atelier.api.wordpress_tools import WordPressClient, WordPressToolExecutor
from atelier.config import Settings
from atelier.events import FileWatcher
from atelier.storage import ConversationStore, Database
from atelier.workspace import Workspace

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - SQLite engine, schema created on connect
    2. ConversationStore - starts the periodic expiry sweep
    3. FileWatcher + Workspace - sandboxed file access
    4. ToolDispatcher - file and WordPress tool families
    5. AgentRunner - LLM integration
    """
    database = Database(settings)
    await database.connect()

    store = ConversationStore(
        database,
        retention=timedelta(hours=settings.conversation_retention_hours),
        cleanup_interval=settings.cleanup_interval,
    )
    await store.start()

    watcher = FileWatcher()
    workspace = Workspace(settings.workspace_root, watcher=watcher)

    # WordPress httpx client (separate from runner -- no API auth headers)
    wordpress_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=settings.wordpress_timeout, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )

    dispatcher = ToolDispatcher()
    dispatcher.register(FileToolExecutor(workspace))
    dispatcher.register(WordPressToolExecutor(WordPressClient(settings, wordpress_http)))

    runner = AgentRunner(store, dispatcher, settings)
    await runner.start()

    return {
        "database": database,
        "store": store,
        "watcher": watcher,
        "workspace": workspace,
        "dispatcher": dispatcher,
        "wordpress_http": wordpress_http,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Atelier...")

    runner = components.get("runner")
    if runner:
        await runner.close()

    wordpress_http = components.get("wordpress_http")
    if wordpress_http:
        await wordpress_http.aclose()

    store = components.get("store")
    if store:
        await store.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Atelier shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with component lifecycle in lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Atelier started: workspace=%s, tools=%d, max_rounds=%d",
            components["workspace"].root,
            len(components["dispatcher"].tool_names),
            settings.max_rounds,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from atelier.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        store=_lazy_component(components, "store"),
        watcher=_lazy_component(components, "watcher"),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Model: %s", settings.model)
    logger.info("Database: %s", settings.database_path)
    logger.info("Workspace: %s", settings.workspace_root)

    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set, /api/chat endpoints will fail")
    if not settings.wordpress_configured:
        logger.info("WORDPRESS_API_URL not set, wp_* tools will report not configured")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
