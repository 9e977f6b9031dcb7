"""
Live session container.

- Owns every resource one connect() acquires: transport, playback
  (output device), capture (microphone), and the inbound-event consumer task
- Constructed by SessionController.connect(), destroyed by close()
- NOT a state machine
- Contains no lifecycle decisions
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from audio.capture import CapturePipeline
from audio.playback import PlaybackScheduler
from observability.logger import log_event, now_ms
from observability.metrics import timed


# ---------------------------------------------------------------------
# LiveSession
# ---------------------------------------------------------------------


@dataclass
class LiveSession:
    """Mutable runtime container for a single live voice session."""

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    session_id: str
    created_at: float = field(default_factory=time.time)

    # ------------------------------------------------------------------
    # Owned components
    # ------------------------------------------------------------------

    transport: Any = None  # Type: LiveTransport in practice
    playback: PlaybackScheduler | None = None
    capture: CapturePipeline | None = None
    consumer_task: asyncio.Task[None] | None = None
    connect_task: asyncio.Task[Any] | None = None  # set while connect() is in flight

    def __post_init__(self) -> None:
        self._close_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Wiring helpers (called by SessionController)
    # ------------------------------------------------------------------

    def attach_transport(self, transport: Any) -> None:
        self.transport = transport

    def attach_playback(self, playback: PlaybackScheduler) -> None:
        self.playback = playback

    def attach_capture(self, capture: CapturePipeline) -> None:
        self.capture = capture

    @property
    def closed(self) -> bool:
        return self._close_task is not None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """
        Release everything, in order: capture, transport, playback.

        Idempotent. Concurrent callers share one teardown. The caller's own
        task is never cancelled, so the consumer task may call this from
        its error path.
        """
        if self._close_task is None:
            self._close_task = asyncio.create_task(
                self._teardown(spare=asyncio.current_task())
            )
        await asyncio.shield(self._close_task)

    async def release_late(self) -> None:
        """
        Release components attached after close() already ran.

        Every component's stop/close is idempotent, so this only
        touches what the first teardown never saw.
        """
        if self._close_task is not None:
            await asyncio.shield(self._close_task)
        await self._teardown(spare=asyncio.current_task())

    async def _teardown(self, *, spare: asyncio.Task[Any] | None) -> None:
        failures: dict[str, str] = {}

        with timed("live_teardown_ms", session_id=self.session_id) as extra:
            if self.capture is not None:
                try:
                    await self.capture.stop()
                except Exception as e:  # pylint: disable=broad-exception-caught
                    failures["capture"] = repr(e)

            if self.transport is not None:
                try:
                    await self.transport.close()
                except Exception as e:  # pylint: disable=broad-exception-caught
                    failures["transport"] = repr(e)

            if self.playback is not None:
                try:
                    self.playback.close()
                except Exception as e:  # pylint: disable=broad-exception-caught
                    failures["playback"] = repr(e)

            task = self.consumer_task
            if task is not None and task is not spare and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:  # pylint: disable=broad-exception-caught
                    failures["consumer"] = repr(e)

            extra["failures"] = failures

        if failures:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "SESSION_TEARDOWN_FAILURES",
                "session_id": self.session_id,
                "failures": failures,
            })

    # ------------------------------------------------------------------
    # Observability helpers (read-only)
    # ------------------------------------------------------------------

    def log_context(self) -> dict[str, Any]:
        """
        Standard logging context for this session.
        """
        ctx: dict[str, Any] = {"session_id": self.session_id}
        if self.capture is not None:
            ctx["capture"] = self.capture.snapshot()
        if self.playback is not None:
            ctx["playback"] = self.playback.snapshot()
        return ctx
