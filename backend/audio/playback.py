"""
Gapless playback scheduling.

The scheduler places each decoded chunk on the output device's timeline
directly after the previous one:

    now = output.current_time()
    if next_start_time < now:
        next_start_time = now          # catch up after a stall
    output.schedule(buffer, next_start_time)
    next_start_time += buffer.duration

Invariants:
- next_start_time only moves forward, except on flush() where it is
  reset to 0.0 ("unset"); the next chunk then re-anchors to now.
- Every tracked ScheduledSource is playing or scheduled in the future.
  Finished sources are pruned before each new schedule.
- next_start_time is written only from the event loop (single writer).
  The output device's render thread never touches it.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Protocol, runtime_checkable

from audio.frames import EncodedFrame, PlaybackBuffer
from audio.pcm import decode_playback_buffer
from observability.logger import log_event, now_ms
from spec import PLAYBACK_SAMPLE_RATE_HZ


class ScheduledSource:
    """
    One PlaybackBuffer placed on an output timeline.

    Owned by the output device once scheduled. stop() may be called from
    the event loop while the render thread reads the flags, so the flags
    sit behind a small lock.
    """

    def __init__(self, buffer: PlaybackBuffer, start_time: float) -> None:
        self.buffer = buffer
        self.start_time = start_time
        self._lock = threading.Lock()
        self._stopped = False
        self._finished = False

    @property
    def end_time(self) -> float:
        return self.start_time + self.buffer.duration

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    @property
    def finished(self) -> bool:
        """True once the buffer played out or was stopped."""
        with self._lock:
            return self._finished or self._stopped

    def stop(self) -> None:
        """
        Stop playback immediately.

        Raises:
            RuntimeError if the source already played out.
        """
        with self._lock:
            if self._finished:
                raise RuntimeError("source already finished")
            self._stopped = True

    def mark_finished(self) -> None:
        """Called by the output device after the last sample is rendered."""
        with self._lock:
            self._finished = True


@runtime_checkable
class AudioOutput(Protocol):
    """
    Output device capability used by the scheduler.

    current_time() is the device clock in seconds; it never goes backwards.
    """

    def current_time(self) -> float: ...

    def schedule(self, buffer: PlaybackBuffer, start_time: float) -> ScheduledSource: ...

    def close(self) -> None: ...


class PlaybackScheduler:
    """
    Converts inbound audio chunks into back-to-back playback.

    One scheduler per live session; it exclusively owns its AudioOutput.
    """

    def __init__(
        self,
        output: AudioOutput,
        *,
        sample_rate_hz: int = PLAYBACK_SAMPLE_RATE_HZ,
        session_id: str | None = None,
    ) -> None:
        self._output = output
        self._sample_rate_hz = sample_rate_hz
        self._session_id = session_id

        self._next_start_time: float = 0.0
        self._sources: list[ScheduledSource] = []
        self._closed = False

        self.chunks_scheduled = 0
        self.flushes = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def next_start_time(self) -> float:
        return self._next_start_time

    @property
    def scheduled_count(self) -> int:
        """Sources still playing or waiting to play."""
        self._prune_finished()
        return len(self._sources)

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> dict[str, float | int]:
        return {
            "next_start_time": self._next_start_time,
            "scheduled": self.scheduled_count,
            "chunks_scheduled": self.chunks_scheduled,
            "flushes": self.flushes,
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def enqueue(self, encoded: EncodedFrame | str) -> ScheduledSource | None:
        """
        Decode one chunk and schedule it after everything already queued.

        Accepts an EncodedFrame or its base64 text.

        Returns:
            The ScheduledSource, or None if the scheduler was closed while
            the chunk was being decoded.

        Raises:
            DecodeError if the chunk is not valid PCM16 (nothing is scheduled).
        """
        if self._closed:
            return None

        text = encoded.data if isinstance(encoded, EncodedFrame) else encoded
        buffer = await asyncio.to_thread(
            decode_playback_buffer, text, self._sample_rate_hz
        )

        # Teardown may have happened while decoding.
        if self._closed:
            return None

        return self.schedule_buffer(buffer)

    def schedule_buffer(self, buffer: PlaybackBuffer) -> ScheduledSource | None:
        """
        Place an already-decoded buffer on the timeline.
        """
        if self._closed:
            return None

        if buffer.num_samples == 0:
            return None

        self._prune_finished()

        now = self._output.current_time()
        if self._next_start_time < now:
            self._next_start_time = now

        source = self._output.schedule(buffer, self._next_start_time)
        self._sources.append(source)
        self._next_start_time += buffer.duration
        self.chunks_scheduled += 1
        return source

    def flush(self) -> int:
        """
        Stop every playing and queued source and reset the timeline.

        next_start_time goes back to 0.0 rather than to the current clock;
        the catch-up branch in schedule_buffer() re-anchors the next chunk.

        Returns:
            Number of sources that were stopped.
        """
        sources = self._sources
        self._sources = []
        self._next_start_time = 0.0
        self.flushes += 1

        stopped = 0
        for source in sources:
            try:
                source.stop()
                stopped += 1
            except Exception:  # pylint: disable=broad-exception-caught
                # Already played out, or the device is gone.
                pass

        log_event({
            "ts_ms": now_ms(),
            "event_type": "PLAYBACK_FLUSHED",
            "session_id": self._session_id,
            "sources_stopped": stopped,
        })
        return stopped

    def close(self) -> None:
        """
        Flush and release the output device. Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self.flush()
        try:
            self._output.close()
        finally:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "PLAYBACK_CLOSED",
                "session_id": self._session_id,
                "chunks_scheduled": self.chunks_scheduled,
            })

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _prune_finished(self) -> None:
        if self._sources:
            self._sources = [s for s in self._sources if not s.finished]
