"""
Microphone capture pipeline.

Flow (one capture frame = spec.CAPTURE_FRAME_SAMPLES samples):

    PortAudio thread            event loop
    ----------------            ----------
    device block  --call_soon_threadsafe-->  mute check -> AudioFrameQueue (bounded, seconds)
                                                   |
                                              pump task
                                                   |
                                     process_frame(): mute check -> encode -> sink

Rules:
- The device is acquired in start() and released in stop(), also when
  start() fails halfway.
- Muted frames are discarded, never buffered for later.
- The sink is called synchronously and must not block (transport send_frame).
"""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol, runtime_checkable

import numpy as np

from audio.frames import AudioFrame, EncodedFrame
from audio.pcm import encode_frame
from audio.queues import AudioFrameQueue, DropReason
from observability.logger import log_event, now_ms
from spec import CAPTURE_BACKLOG_MAX_S, CAPTURE_FRAME_DURATION_S


FrameSink = Callable[[EncodedFrame], None]


@runtime_checkable
class InputDevice(Protocol):
    """
    Microphone capability.

    open() raises DeviceUnavailable and leaves nothing open on failure.
    The callback may run on any thread.
    """

    def open(self, on_block: Callable[[np.ndarray], None]) -> None: ...

    def close(self) -> None: ...


class CapturePipeline:
    """
    Continuously reads microphone frames and forwards encoded ones to a sink.
    """

    def __init__(
        self,
        device: InputDevice,
        sink: FrameSink,
        *,
        session_id: str | None = None,
        max_backlog_s: float = CAPTURE_BACKLOG_MAX_S,
    ) -> None:
        self._device = device
        self._sink = sink
        self._session_id = session_id

        self._backlog = AudioFrameQueue(
            max_depth_s=max_backlog_s,
            frame_duration_s=CAPTURE_FRAME_DURATION_S,
        )
        self._frames_ready = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pump_task: asyncio.Task[None] | None = None

        self._next_seq = 1
        self._running = False
        self.muted = False
        self.frames_sent = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def snapshot(self) -> dict[str, float | int | bool]:
        return {
            **self._backlog.snapshot(),
            "frames_sent": self.frames_sent,
            "muted": self.muted,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Acquire the microphone and start forwarding frames.

        Raises:
            DeviceUnavailable: the device could not be opened; nothing started.
        """
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._device.open(self._on_device_block)

        self._running = True
        self._pump_task = asyncio.create_task(self._pump())
        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_STARTED",
            "session_id": self._session_id,
        })

    async def stop(self) -> None:
        """
        Stop forwarding and release the microphone. Idempotent.
        """
        was_running = self._running
        self._running = False

        try:
            self._device.close()
        finally:
            task = self._pump_task
            self._pump_task = None
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._backlog.clear()

        if was_running:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "CAPTURE_STOPPED",
                "session_id": self._session_id,
                **self.snapshot(),
            })

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def process_frame(self, frame: AudioFrame) -> bool:
        """
        Handle one captured frame.

        Returns:
            True if an encoded frame was handed to the sink.
        """
        if self.muted:
            self._backlog.drops.count(DropReason.MUTED)
            return False

        self._sink(encode_frame(frame))
        self.frames_sent += 1
        return True

    def _on_device_block(self, samples: np.ndarray) -> None:
        """Device callback; may run on the PortAudio thread."""
        loop = self._loop
        if loop is None or not self._running:
            return
        # The mute flag is sampled at capture time, not at delivery time.
        muted = self.muted
        try:
            loop.call_soon_threadsafe(self._accept_block, samples, now_ms(), muted)
        except RuntimeError:
            # Loop closed during shutdown.
            pass

    def _accept_block(self, samples: np.ndarray, ts_ms: int, captured_muted: bool = False) -> None:
        if not self._running:
            return
        frame = AudioFrame(sequence_num=self._next_seq, samples=samples, ts_ms=ts_ms)
        self._next_seq += 1

        if captured_muted or self.muted:
            self._backlog.drops.count(DropReason.MUTED)
            return

        if not self._backlog.enqueue(frame):
            log_event({
                "ts_ms": now_ms(),
                "event_type": "CAPTURE_FRAME_DROPPED",
                "session_id": self._session_id,
                "reason": DropReason.OVERFLOW.value,
                "seq_num": frame.sequence_num,
                "backlog_s": self._backlog.depth_seconds(),
            })
            return
        self._frames_ready.set()

    async def _pump(self) -> None:
        while self._running:
            await self._frames_ready.wait()
            self._frames_ready.clear()

            while self._running:
                frame = self._backlog.dequeue()
                if frame is None:
                    break
                try:
                    self.process_frame(frame)
                except Exception as e:  # pylint: disable=broad-exception-caught
                    # Sink failure drops this frame only.
                    log_event({
                        "ts_ms": now_ms(),
                        "event_type": "CAPTURE_SINK_ERROR",
                        "session_id": self._session_id,
                        "seq_num": frame.sequence_num,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    })
