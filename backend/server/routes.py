"""
Route registration for the live voice assistant control surface.

Responsibilities:
- HTTP endpoints driving SessionController (connect / disconnect / mute)
- Status WebSocket streaming StatusEvents to the UI shell
- Pull dependencies from app.state

Connect failures are reported in the response body, never as a 5xx:
the controller is already back in DISCONNECTED and the user can retry.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from observability.logger import log_event, now_ms
from session.controller import SessionController, StatusEvent

# Status lines buffered per WebSocket client before the oldest is dropped
_STATUS_SOCKET_QUEUE_MAX = 32


class MuteRequest(BaseModel):
    """Explicit mute flag; omitted means toggle."""
    muted: bool | None = None


def _offer(queue: asyncio.Queue[StatusEvent], status: StatusEvent) -> None:
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(status)


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    def _controller() -> SessionController:
        return app.state.controller

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/live/status")
    async def live_status() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        return _controller().snapshot()

    @app.post("/live/connect")
    async def live_connect() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        controller = _controller()
        connected = await controller.connect()
        return {"connected": connected, **controller.snapshot()}

    @app.post("/live/disconnect")
    async def live_disconnect() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        controller = _controller()
        await controller.disconnect(reason="user")
        return controller.snapshot()

    @app.post("/live/mute")
    async def live_mute(req: MuteRequest | None = None) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        controller = _controller()
        if req is None or req.muted is None:
            controller.toggle_mute()
        else:
            controller.set_muted(req.muted)
        return controller.snapshot()

    @app.websocket("/ws/status")
    async def status_socket(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        controller = _controller()
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue(maxsize=_STATUS_SOCKET_QUEUE_MAX)
        unsubscribe = controller.subscribe(lambda status: _offer(queue, status))

        async def _pump() -> None:
            while True:
                status = await queue.get()
                await ws.send_json({"type": "STATUS", **status.to_dict()})

        sender: asyncio.Task[None] | None = None
        try:
            await ws.send_json({"type": "SNAPSHOT", **controller.snapshot()})
            sender = asyncio.create_task(_pump())

            # Inbound text is ignored; receive() only detects the disconnect.
            while True:
                msg = await ws.receive()
                if msg["type"] == "websocket.disconnect":
                    break

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "event_type": "STATUS_SOCKET_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            unsubscribe()
            if sender is not None:
                sender.cancel()
