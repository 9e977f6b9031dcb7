"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (SessionController, one per process)
- Register routes
- Disconnect the live session on shutdown
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from observability import logger
from session.controller import SessionController

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    controller: SessionController | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with a controller wired to fake devices
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.configure(enabled=config.enable_json_logs)

    controller = controller or SessionController(config=config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await controller.disconnect(reason="server_shutdown")

    app = FastAPI(title="Live Voice Assistant", lifespan=lifespan)

    app.state.config = config
    app.state.controller = controller

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # local UI shell only
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
