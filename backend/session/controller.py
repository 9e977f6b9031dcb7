"""
Session controller.

Responsibilities:
- Owns the LiveSession lifecycle (one session at a time)
- Drives SessionState: DISCONNECTED -> CONNECTING -> CONNECTED <-> MUTED
  -> CLOSING -> DISCONNECTED
- Wires capture -> transport -> playback
- Consumes inbound transport events, one at a time, in arrival order
- Surfaces human-readable status events and logs every transition

Failure policy:
- ConnectionFailed / DeviceUnavailable abort connect(); back to DISCONNECTED
- Any other error or cancellation in connect() also aborts, then re-raises
- disconnect() returns only after an overtaken connect() has released
- Closed / TransportFailure tear the session down; back to DISCONNECTED
- DecodeError drops one chunk; the session continues
- No automatic retry anywhere
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from audio.capture import CapturePipeline, InputDevice
from audio.devices import SoundDeviceInput, SoundDeviceOutput
from audio.playback import AudioOutput, PlaybackScheduler
from errors import ConnectionFailed, DecodeError, DeviceUnavailable
from observability.logger import log_event, now_ms
from observability.metrics import timed
from session.live_session import LiveSession
from session.state import SessionState
from spec import STATUS_LOG_MAX_LINES
from transport.events import (
    AudioChunk,
    Closed,
    Interrupted,
    TransportEvent,
    TransportFailure,
    TurnComplete,
)
from transport.live_transport import LiveTransport
from config import AppConfig


TransportFactory = Callable[[str], Any]
InputFactory = Callable[[], InputDevice]
OutputFactory = Callable[[], AudioOutput]
StatusListener = Callable[["StatusEvent"], None]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _new_session_id() -> str:
    return f"live_{uuid4().hex[:12]}"


@dataclass(frozen=True)
class StatusEvent:
    """
    Human-readable status line for the UI shell.
    """
    ts_ms: int
    message: str
    state: SessionState
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts_ms": self.ts_ms,
            "message": self.message,
            "state": self.state.value,
            "session_id": self.session_id,
        }


# ------------------------------------------------------------------
# SessionController
# ------------------------------------------------------------------

class SessionController:
    """
    One controller == one live voice assistant (at most one session).
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        transport_factory: TransportFactory | None = None,
        input_factory: InputFactory | None = None,
        output_factory: OutputFactory | None = None,
    ) -> None:
        self._config = config
        self._transport_factory = transport_factory or self._default_transport
        self._input_factory = input_factory or self._default_input
        self._output_factory = output_factory or self._default_output

        self._state = SessionState.DISCONNECTED
        self._session: LiveSession | None = None
        self._status: deque[StatusEvent] = deque(maxlen=STATUS_LOG_MAX_LINES)
        self._listeners: list[StatusListener] = []

    # ------------------------------------------------------------------
    # Default factories (real devices / endpoint)
    # ------------------------------------------------------------------

    def _default_transport(self, session_id: str) -> LiveTransport:
        return LiveTransport(
            api_key=self._config.gemini_api_key,
            url=self._config.live_ws_url,
            session_id=session_id,
        )

    def _default_input(self) -> InputDevice:
        return SoundDeviceInput(device=self._config.input_device)

    def _default_output(self) -> AudioOutput:
        output = SoundDeviceOutput(device=self._config.output_device)
        output.open()
        return output

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def muted(self) -> bool:
        return self._state is SessionState.MUTED

    @property
    def session(self) -> LiveSession | None:
        return self._session

    def recent_status(self) -> tuple[StatusEvent, ...]:
        """Most recent status lines, newest first."""
        return tuple(reversed(self._status))

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "muted": self.muted,
            "session": self._session.log_context() if self._session else None,
            "status": [s.to_dict() for s in self.recent_status()],
        }

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a status listener. Returns an unsubscribe function.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Start a live session: transport, then speaker, then microphone.

        No-op unless DISCONNECTED.

        Returns:
            True if the session reached CONNECTED.
        """
        if self._state is not SessionState.DISCONNECTED:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "CONNECT_IGNORED",
                "state": self._state.value,
            })
            return False

        session = LiveSession(session_id=_new_session_id())
        self._session = session
        self._set_state(SessionState.CONNECTING)
        self._emit_status("Connecting to Live API...")

        session.connect_task = asyncio.current_task()
        try:
            return await self._open_session(session)
        except BaseException as e:
            # Unexpected failure or cancellation: release what was acquired
            await self._abort_connect(session, "Error occurred", e)
            raise
        finally:
            session.connect_task = None

    async def _open_session(self, session: LiveSession) -> bool:
        transport = self._transport_factory(session.session_id)
        session.attach_transport(transport)

        try:
            with timed("live_connect_ms", session_id=session.session_id) as extra:
                await transport.connect(self._config.connect_config())
                extra["ok"] = True
        except ConnectionFailed as e:
            await self._abort_connect(session, "Connection failed", e)
            return False

        if self._is_stale(session):
            await session.release_late()
            return False

        self._emit_status("Session Open")

        try:
            session.attach_playback(
                PlaybackScheduler(self._output_factory(), session_id=session.session_id)
            )
            capture = CapturePipeline(
                self._input_factory(),
                transport.send_frame,
                session_id=session.session_id,
            )
            session.attach_capture(capture)
            await capture.start()
        except DeviceUnavailable as e:
            await self._abort_connect(session, "Audio device unavailable", e)
            return False

        if self._is_stale(session):
            await session.release_late()
            return False

        session.consumer_task = asyncio.create_task(self._consume(session))
        self._set_state(SessionState.CONNECTED)
        return True

    async def disconnect(self, *, reason: str = "user") -> None:
        """
        Tear down the current session, if any. Valid from any state.

        Idempotent and safe from an error handler; always ends DISCONNECTED.
        """
        session = self._session
        if session is None:
            self._set_state(SessionState.DISCONNECTED)
            return

        self._set_state(SessionState.CLOSING, reason=reason)
        await session.close()

        # An overtaken connect() must finish releasing before a new one starts
        pending = session.connect_task
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            await asyncio.wait({pending})

        if self._session is session:
            self._session = None
            self._set_state(SessionState.DISCONNECTED, reason=reason)

    def set_muted(self, muted: bool) -> bool:
        """
        Mute or unmute the microphone. Transport and playback are untouched.

        Returns:
            True if the mute state applies (session CONNECTED or MUTED).
        """
        session = self._session
        if self._state not in (SessionState.CONNECTED, SessionState.MUTED):
            return False
        if session is None or session.capture is None:
            return False

        session.capture.muted = muted
        self._set_state(SessionState.MUTED if muted else SessionState.CONNECTED)
        self._emit_status("Microphone muted" if muted else "Microphone live")
        return True

    def toggle_mute(self) -> bool:
        """Flip mute. Returns the new muted flag."""
        self.set_muted(not self.muted)
        return self.muted

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def _consume(self, session: LiveSession) -> None:
        async for event in session.transport.events():
            if self._is_stale(session):
                return
            await self._handle_event(session, event)
            if event.terminal:
                return

    async def _handle_event(self, session: LiveSession, event: TransportEvent) -> None:
        playback = session.playback
        assert playback is not None, "Playback must exist before events are consumed"

        if isinstance(event, AudioChunk):
            try:
                await playback.enqueue(event.data)
            except DecodeError as e:
                log_event({
                    "ts_ms": now_ms(),
                    "event_type": "AUDIO_CHUNK_DROPPED",
                    "session_id": session.session_id,
                    "error": str(e),
                    "payload_len": len(event.data),
                })

        elif isinstance(event, Interrupted):
            playback.flush()
            self._emit_status("Interrupted")

        elif isinstance(event, TurnComplete):
            log_event({
                "ts_ms": now_ms(),
                "event_type": "TURN_COMPLETE",
                "session_id": session.session_id,
                "playback": playback.snapshot(),
            })

        elif isinstance(event, Closed):
            self._emit_status("Session Closed")
            await self._teardown_if_current(session, reason="remote_closed")

        elif isinstance(event, TransportFailure):
            log_event({
                "ts_ms": now_ms(),
                "event_type": "TRANSPORT_ERROR",
                "session_id": session.session_id,
                "error": str(event.cause),
            })
            self._emit_status("Error occurred")
            await self._teardown_if_current(session, reason="transport_error")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _is_stale(self, session: LiveSession) -> bool:
        """True if disconnect() overtook this session."""
        return self._session is not session or session.closed

    async def _teardown_if_current(self, session: LiveSession, *, reason: str) -> None:
        if self._session is session:
            await self.disconnect(reason=reason)

    async def _abort_connect(self, session: LiveSession, message: str, error: BaseException) -> None:
        log_event({
            "ts_ms": now_ms(),
            "event_type": "CONNECT_FAILED",
            "session_id": session.session_id,
            "error_type": type(error).__name__,
            "error": str(error),
        })

        if self._is_stale(session):
            # disconnect() already owns this session's teardown
            await session.release_late()
            return

        await self.disconnect(reason="connect_failed")
        self._emit_status(message)

    def _set_state(self, new_state: SessionState, *, reason: str | None = None) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        log_event({
            "ts_ms": now_ms(),
            "event_type": "SESSION_STATE",
            "session_id": self._session.session_id if self._session else None,
            "from": old_state.value,
            "to": new_state.value,
            "reason": reason,
        })

    def _emit_status(self, message: str) -> None:
        status = StatusEvent(
            ts_ms=now_ms(),
            message=message,
            state=self._state,
            session_id=self._session.session_id if self._session else None,
        )
        self._status.append(status)
        log_event({"event_type": "STATUS", **status.to_dict()})

        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:  # pylint: disable=broad-exception-caught
                log_event({
                    "ts_ms": now_ms(),
                    "event_type": "STATUS_LISTENER_ERROR",
                    "error": repr(e),
                })
