"""
Live conversational endpoint transport (WebSocket).

Core model:
- One LiveTransport == one logical session == one WebSocket.
- connect() opens the socket, sends setup, and waits for setupComplete.
  Only then is the session "open".
- send_frame() never blocks. Frames go into a bounded FIFO; a single
  sender task drains it in order once the session is open, so frames
  handed over before open are deferred, not dropped.
- One receiver task turns server messages into TransportEvents on an
  inbound queue. events() yields them one at a time, in arrival order.
- Remote close -> Closed. Network/protocol failure -> TransportFailure.
  No automatic reconnect.
- close() is idempotent and safe when never opened. A connect() still in
  progress gives up promptly with ConnectionFailed.

Design constraints:
- Transport must not touch audio devices or playback.
- Transport must not make lifecycle decisions; it only reports.
"""

from __future__ import annotations

import asyncio
import urllib.parse
from typing import Any, AsyncIterator, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedOK

from audio.frames import EncodedFrame
from config import LiveConnectConfig
from errors import ConnectionFailed, TransportError
from observability.logger import log_event, now_ms
from protocol.live import (
    LiveProtocolError,
    build_realtime_input,
    build_setup_message,
    dumps,
    parse_server_message,
)
from spec import (
    LIVE_WS_URL_DEFAULT,
    SETUP_COMPLETE_TIMEOUT_S,
    TRANSPORT_SEND_QUEUE_MAX_FRAMES,
    WS_MAX_MESSAGE_BYTES,
)
from transport.events import Closed, TransportEvent, TransportFailure


Connector = Callable[[str], Awaitable[Any]]


async def _default_connector(url: str) -> Any:
    return await ws_connect(url, max_size=WS_MAX_MESSAGE_BYTES)


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close()
    except Exception:  # pylint: disable=broad-exception-caught
        pass


class LiveTransport:
    """
    Duplex streaming session with the live endpoint.

    Public interface:
    - connect(config): establish; raises ConnectionFailed
    - send_frame(encoded): fire-and-forget, order preserving
    - events(): async iterator of inbound TransportEvents
    - close(): terminate, idempotent
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        url: str = LIVE_WS_URL_DEFAULT,
        session_id: str | None = None,
        connector: Connector | None = None,
        setup_timeout_s: float = SETUP_COMPLETE_TIMEOUT_S,
        max_pending_frames: int = TRANSPORT_SEND_QUEUE_MAX_FRAMES,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._session_id = session_id
        self._connector = connector or _default_connector
        self._setup_timeout_s = setup_timeout_s

        self._ws: Any = None
        self._open = False
        self._closed = False
        self._terminal_emitted = False
        self._closing = asyncio.Event()
        self._late_closers: set[asyncio.Future[None]] = set()

        self._send_queue: asyncio.Queue[EncodedFrame] = asyncio.Queue(maxsize=max_pending_frames)
        self._inbound: asyncio.Queue[TransportEvent | None] = asyncio.Queue()

        self._send_task: asyncio.Task[None] | None = None
        self._recv_task: asyncio.Task[None] | None = None

        self.frames_sent = 0
        self.frames_dropped = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_frames(self) -> int:
        return self._send_queue.qsize()

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    def _build_url(self) -> str:
        qs = urllib.parse.urlencode({"key": self._api_key or ""})
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}{qs}"

    async def connect(self, config: LiveConnectConfig) -> None:
        """
        Open the socket and complete the setup handshake.

        Raises:
            ConnectionFailed: on any failure; nothing is left open.
        """
        if self._closed:
            raise ConnectionFailed("transport already closed")
        if self._ws is not None:
            return
        if not self._api_key:
            raise ConnectionFailed("missing API key")

        try:
            ws = await self._until_closed(self._connector(self._build_url()))
        except ConnectionFailed:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise ConnectionFailed(f"live_connect_failed: {e!r}") from e

        if self._closed:
            await _close_quietly(ws)
            raise ConnectionFailed("transport closed while connecting")

        self._ws = ws
        try:
            await ws.send(dumps(build_setup_message(config)))
            await asyncio.wait_for(
                self._until_closed(self._await_setup_complete(ws)),
                self._setup_timeout_s,
            )
        except BaseException as e:
            self._ws = None
            await _close_quietly(ws)
            if not isinstance(e, Exception) or isinstance(e, ConnectionFailed):
                raise
            if isinstance(e, asyncio.TimeoutError):
                raise ConnectionFailed("live_setup_timeout") from e
            raise ConnectionFailed(f"live_setup_failed: {e!r}") from e

        if self._closed:
            self._ws = None
            await _close_quietly(ws)
            raise ConnectionFailed("transport closed while connecting")

        self._open = True
        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        self._send_task = asyncio.create_task(self._send_loop(ws))

        log_event({
            "ts_ms": now_ms(),
            "event_type": "TRANSPORT_OPEN",
            "session_id": self._session_id,
            "model": config.model,
            "voice": config.voice,
            "deferred_frames": self._send_queue.qsize(),
        })

    async def _await_setup_complete(self, ws: Any) -> None:
        while True:
            raw = await ws.recv()
            if parse_server_message(raw).setup_complete:
                return

    async def _until_closed(self, aw: Awaitable[Any]) -> Any:
        """
        Await aw, giving up as soon as close() runs.

        A socket that arrives after giving up is closed in the background.

        Raises:
            ConnectionFailed: close() ran first.
        """
        task = asyncio.ensure_future(aw)
        closing = asyncio.ensure_future(self._closing.wait())
        try:
            await asyncio.wait({task, closing}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closing.cancel()
            if not task.done():
                task.cancel()
                task.add_done_callback(self._discard_late_result)

        if not self._closed:
            return task.result()
        if task.done():
            self._discard_late_result(task)
        raise ConnectionFailed("transport closed while connecting")

    def _discard_late_result(self, task: asyncio.Future[Any]) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        result = task.result()
        if result is not None:
            closer = asyncio.ensure_future(_close_quietly(result))
            self._late_closers.add(closer)
            closer.add_done_callback(self._late_closers.discard)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_frame(self, encoded: EncodedFrame) -> bool:
        """
        Queue one encoded frame for sending.

        Returns:
            True if accepted
            False if the transport is closed or the send FIFO is full
        """
        if self._closed:
            return False
        try:
            self._send_queue.put_nowait(encoded)
        except asyncio.QueueFull:
            self.frames_dropped += 1
            log_event({
                "ts_ms": now_ms(),
                "event_type": "TRANSPORT_FRAME_DROPPED",
                "session_id": self._session_id,
                "pending": self._send_queue.qsize(),
                "dropped_total": self.frames_dropped,
            })
            return False
        return True

    async def _send_loop(self, ws: Any) -> None:
        while True:
            encoded = await self._send_queue.get()
            try:
                await ws.send(dumps(build_realtime_input(encoded)))
            except ConnectionClosedOK as e:
                self._emit_terminal(Closed(reason=str(e)))
                return
            except Exception as e:  # pylint: disable=broad-exception-caught
                self._emit_terminal(
                    TransportFailure(cause=TransportError(f"live_send_failed: {e!r}"))
                )
                return
            self.frames_sent += 1

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[TransportEvent]:
        """
        Yield inbound events in arrival order.

        Ends after a terminal event (Closed / TransportFailure) or after
        a local close().
        """
        while True:
            event = await self._inbound.get()
            if event is None:
                return
            yield event
            if event.terminal:
                return

    async def _recv_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                message = parse_server_message(raw)
                for event in message.events:
                    self._inbound.put_nowait(event)
        except asyncio.CancelledError:
            raise
        except LiveProtocolError as e:
            self._emit_terminal(
                TransportFailure(cause=TransportError(f"live_protocol_error: {e}"))
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._emit_terminal(
                TransportFailure(cause=TransportError(f"live_recv_failed: {e!r}"))
            )
        else:
            self._emit_terminal(Closed(reason="server_closed"))

    def _emit_terminal(self, event: TransportEvent) -> None:
        if self._terminal_emitted or self._closed:
            return
        self._terminal_emitted = True
        self._open = False
        log_event({
            "ts_ms": now_ms(),
            "event_type": f"TRANSPORT_{event.event_type.value}",
            "session_id": self._session_id,
            "detail": str(getattr(event, "cause", None) or getattr(event, "reason", None)),
        })
        self._inbound.put_nowait(event)

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """
        Terminate the session. Idempotent; safe if never opened.
        """
        if self._closed:
            return
        self._closed = True
        self._open = False
        # Interrupts a connect() still waiting on the connector or handshake.
        self._closing.set()

        current = asyncio.current_task()
        for task in (self._send_task, self._recv_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._send_task = None
        self._recv_task = None

        ws = self._ws
        self._ws = None
        if ws is not None:
            await _close_quietly(ws)

        while not self._send_queue.empty():
            self._send_queue.get_nowait()
        self._inbound.put_nowait(None)

        log_event({
            "ts_ms": now_ms(),
            "event_type": "TRANSPORT_CLOSED",
            "session_id": self._session_id,
            "frames_sent": self.frames_sent,
            "frames_dropped": self.frames_dropped,
        })
