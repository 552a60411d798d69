"""FastAPI application factory for the agentshift server."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.routes import agents, chat, health, tasks, usage_limit, ws
from .state import get_process_registry, get_registry, init_start_time, shutdown_services

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Reap agents orphaned by a previous run, then tear everything down on exit."""
    init_start_time()
    get_process_registry().cleanup_stale()
    agent_ids = ", ".join(a.id for a in get_registry().get_all())
    logger.info("agentshift %s ready with agents: %s", __version__, agent_ids)
    try:
        yield
    finally:
        shutdown_services()


def create_app(
    title: str = "agentshift",
    debug: bool = False,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Build the API application.

    Args:
        title: Title shown in the OpenAPI docs
        debug: Enable FastAPI debug mode
        cors_origins: Allowed CORS origins; None allows all

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=title,
        description="Orchestration API for command-line AI coding agents",
        version=__version__,
        debug=debug,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    for router, prefix, tag in (
        (agents.router, "", "Agents"),
        (usage_limit.router, "/usage-limit", "Usage limit"),
        (chat.router, "/chat", "Chat"),
        (tasks.router, "/tasks", "Tasks"),
        (ws.router, "", "WebSocket"),
    ):
        app.include_router(router, prefix=API_PREFIX + prefix, tags=[tag])

    return app


app = create_app()
