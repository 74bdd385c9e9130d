"""FastAPI application factory and uvicorn runner."""

from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from agent.container import AgentComponents, build_agent_components
from api.agent import (
    agent_error_handler,
    agent_router,
    approvals_router,
    patterns_router,
)
from config import settings
from errors import AgentError
from llm import LLMClient
from logging_config import configure_logging
from services.database import get_sync_session, run_migrations_sync


def create_app(
    components: AgentComponents,
    *,
    title: str = "workspace-agent",
    version: str = "0.1.0",
) -> FastAPI:
    """Create the app with the agent routers and error mapping installed."""
    app = FastAPI(title=title, version=version)
    app.state.components = components
    app.add_exception_handler(AgentError, agent_error_handler)
    app.include_router(agent_router)
    app.include_router(patterns_router)
    app.include_router(approvals_router)
    return app


def run_app(
    app: FastAPI,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    log_level: str = "info",
) -> None:
    """Run one FastAPI app through uvicorn."""
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def main() -> None:
    """Serve the agent API with components built from settings."""
    configure_logging(settings.log_level)
    if settings.database.run_migrations_on_startup:
        run_migrations_sync()
    components = build_agent_components(get_sync_session, LLMClient())
    run_app(create_app(components), log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
