"""Process entry point for the concierge service.

Startup order inside the Starlette lifespan (so everything shares uvicorn's
event loop):
  Settings -> Database + migrations -> stores -> AnthropicClient
           -> ToolRegistry -> AgentRunner
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from concierge.api.blog_tools import create_blog_tools
from concierge.api.calendar_tools import create_calendar_tools
from concierge.api.contact_tools import create_contact_tools
from concierge.api.email_tools import create_email_tools
from concierge.api.kanban_tools import create_kanban_tools
from concierge.api.llm import AnthropicClient
from concierge.api.notes_tools import create_notes_tools
from concierge.api.project_tools import create_project_tools
from concierge.api.rate_limit import SlidingWindowRateLimiter
from concierge.api.rest import create_app
from concierge.api.runner import AgentRunner
from concierge.api.timeline_tools import create_timeline_tools
from concierge.api.timetable_tools import create_timetable_tools
from concierge.api.tools import ToolRegistry
from concierge.config import Settings
from concierge.storage.conversations import ConversationStore
from concierge.storage.database import Database
from concierge.storage.migrator import run_migrations
from concierge.storage.usage import UsageLog

logger = logging.getLogger(__name__)


def build_registry(database: Database) -> ToolRegistry:
    """All dashboard tools, resolved once into an immutable registry."""
    return ToolRegistry([
        *create_calendar_tools(database),
        *create_kanban_tools(database),
        *create_notes_tools(database),
        *create_timetable_tools(database),
        *create_contact_tools(database),
        *create_blog_tools(database),
        *create_project_tools(database),
        *create_timeline_tools(database),
        *create_email_tools(database),
    ])


async def create_components(settings: Settings) -> dict:
    """Connect, migrate and construct every long-lived component."""
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)

    store = ConversationStore(database)
    usage_log = UsageLog(database)

    llm = AnthropicClient(settings)
    await llm.start()

    registry = build_registry(database)
    runner = AgentRunner(llm, registry, settings)
    logger.info("Registered %d tools (%s)", len(registry), ", ".join(registry.categories()))

    return {
        "database": database,
        "store": store,
        "usage_log": usage_log,
        "llm": llm,
        "registry": registry,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Release the HTTP client, then the connection pool."""
    logger.info("Stopping concierge")

    llm = components.get("llm")
    if llm:
        await llm.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Concierge stopped")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        app.state.components = components

        logger.info(
            "Concierge started: model=%s, max_iterations=%d",
            settings.model,
            settings.max_iterations,
        )
        yield

        await shutdown_components(components)

    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.chat_rate_limit,
        window_seconds=settings.chat_rate_window,
    )

    return create_app(
        runner=_lazy_component(components, "runner"),
        store=_lazy_component(components, "store"),
        usage_log=_lazy_component(components, "usage_log"),
        rate_limiter=rate_limiter,
        database=_lazy_component(components, "database"),
        settings=settings,
        llm=_lazy_component(components, "llm"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Stands in for a component until the lifespan has created it.

    Route handlers hold the proxy; every attribute lookup goes to the real
    object in ``components[key]`` at call time.
    """

    __slots__ = ("_components", "_key")

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def __getattr__(self, name):
        key = object.__getattribute__(self, "_key")
        target = object.__getattribute__(self, "_components").get(key)
        if target is None:
            raise RuntimeError(f"{key} is not available before startup")
        return getattr(target, name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting concierge for %s", settings.owner_name)
    logger.info("Model: %s (titles: %s)", settings.model, settings.title_model)
    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set, "
            "/chat requests will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
