"""
Hardware audio devices (PortAudio via sounddevice).

SoundDeviceInput:
    Microphone stream delivering fixed-size float32 blocks on the
    PortAudio thread.

SoundDeviceOutput:
    Speaker stream with a sample-accurate timeline. Buffers are scheduled
    at absolute times (seconds since the stream started) and mixed by the
    render callback. The clock is rendered_frames / sample_rate, so it only
    advances while the device is actually pulling audio.

Both raise DeviceUnavailable if the device (or PortAudio itself) cannot be
opened, and both release their stream on close() no matter what.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

import numpy as np

from audio.frames import PlaybackBuffer
from audio.playback import ScheduledSource
from errors import DeviceUnavailable
from observability.logger import log_event, now_ms
from spec import (
    AUDIO_CHANNELS,
    CAPTURE_FRAME_SAMPLES,
    CAPTURE_SAMPLE_RATE_HZ,
    PLAYBACK_SAMPLE_RATE_HZ,
    seconds_to_samples,
)

DeviceSelector = int | str | None
BlockCallback = Callable[[np.ndarray], None]


def _import_sounddevice() -> Any:
    """
    Import sounddevice, mapping a missing PortAudio library to DeviceUnavailable.
    """
    try:
        import sounddevice as sd  # pylint: disable=import-outside-toplevel
    except (ImportError, OSError) as e:
        raise DeviceUnavailable(f"sounddevice/PortAudio not available: {e}") from e
    return sd


def _close_stream(stream: Any) -> None:
    try:
        stream.stop()
    except Exception:  # pylint: disable=broad-exception-caught
        # Stream may already be stopped or the device revoked.
        pass
    finally:
        try:
            stream.close()
        except Exception:  # pylint: disable=broad-exception-caught
            pass


# ---------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------

class SoundDeviceInput:
    """
    Microphone input delivering one block of CAPTURE_FRAME_SAMPLES per callback.

    Usage:
        mic = SoundDeviceInput(device=None)
        mic.open(on_block)   # raises DeviceUnavailable
        ...
        mic.close()
    """

    def __init__(
        self,
        *,
        device: DeviceSelector = None,
        sample_rate_hz: int = CAPTURE_SAMPLE_RATE_HZ,
        blocksize: int = CAPTURE_FRAME_SAMPLES,
    ) -> None:
        self._device = device
        self._sample_rate_hz = sample_rate_hz
        self._blocksize = blocksize
        self._stream: Any = None
        self._on_block: BlockCallback | None = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self, on_block: BlockCallback) -> None:
        if self._stream is not None:
            return

        sd = _import_sounddevice()
        self._on_block = on_block

        stream = None
        try:
            stream = sd.InputStream(
                samplerate=self._sample_rate_hz,
                channels=AUDIO_CHANNELS,
                dtype="float32",
                blocksize=self._blocksize,
                device=self._device,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:  # pylint: disable=broad-exception-caught
            # PortAudioError, ValueError (unknown device), permission errors
            if stream is not None:
                _close_stream(stream)
            self._on_block = None
            raise DeviceUnavailable(f"microphone unavailable: {e}") from e

        self._stream = stream
        log_event({
            "ts_ms": now_ms(),
            "event_type": "INPUT_DEVICE_OPENED",
            "device": self._device,
            "sample_rate": self._sample_rate_hz,
            "blocksize": self._blocksize,
        })

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        self._on_block = None
        if stream is None:
            return
        _close_stream(stream)
        log_event({
            "ts_ms": now_ms(),
            "event_type": "INPUT_DEVICE_CLOSED",
            "device": self._device,
        })

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "INPUT_DEVICE_STATUS",
                "status": str(status),
            })
        on_block = self._on_block
        if on_block is None:
            return
        # PortAudio reuses indata after the callback returns.
        on_block(indata[:frames, 0].copy())


# ---------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------

class SoundDeviceOutput:
    """
    Speaker output with an absolute, sample-accurate schedule.

    schedule() is called from the event loop; the render callback runs on
    the PortAudio thread. The (source, start_frame) list and the frame
    cursor are shared between them and guarded by self._lock.
    """

    def __init__(
        self,
        *,
        device: DeviceSelector = None,
        sample_rate_hz: int = PLAYBACK_SAMPLE_RATE_HZ,
    ) -> None:
        self._device = device
        self._sample_rate_hz = sample_rate_hz
        self._stream: Any = None

        self._lock = threading.Lock()
        self._cursor = 0  # frames rendered since open
        self._pending: list[tuple[ScheduledSource, int]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        if self._stream is not None:
            return

        sd = _import_sounddevice()
        stream = None
        try:
            stream = sd.OutputStream(
                samplerate=self._sample_rate_hz,
                channels=AUDIO_CHANNELS,
                dtype="float32",
                device=self._device,
                callback=self._render,
            )
            stream.start()
        except Exception as e:  # pylint: disable=broad-exception-caught
            if stream is not None:
                _close_stream(stream)
            raise DeviceUnavailable(f"speaker unavailable: {e}") from e

        self._stream = stream
        log_event({
            "ts_ms": now_ms(),
            "event_type": "OUTPUT_DEVICE_OPENED",
            "device": self._device,
            "sample_rate": self._sample_rate_hz,
        })

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        with self._lock:
            pending = self._pending
            self._pending = []
        for source, _ in pending:
            if not source.finished:
                source.mark_finished()
        if stream is None:
            return
        _close_stream(stream)
        log_event({
            "ts_ms": now_ms(),
            "event_type": "OUTPUT_DEVICE_CLOSED",
            "device": self._device,
        })

    # ------------------------------------------------------------------
    # AudioOutput
    # ------------------------------------------------------------------

    def current_time(self) -> float:
        with self._lock:
            return self._cursor / self._sample_rate_hz

    def schedule(self, buffer: PlaybackBuffer, start_time: float) -> ScheduledSource:
        source = ScheduledSource(buffer, start_time)
        with self._lock:
            # A start time already in the past plays from its first sample now.
            start_frame = max(seconds_to_samples(start_time, self._sample_rate_hz), self._cursor)
            self._pending.append((source, start_frame))
        return source

    # ------------------------------------------------------------------
    # Render (PortAudio thread)
    # ------------------------------------------------------------------

    def _render(self, outdata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        outdata.fill(0)
        mix = outdata[:, 0]

        with self._lock:
            block_start = self._cursor
            block_end = block_start + frames
            keep: list[tuple[ScheduledSource, int]] = []

            for source, s0 in self._pending:
                if source.stopped:
                    continue
                samples = source.buffer.samples
                s1 = s0 + samples.shape[0]
                if s0 >= block_end:
                    keep.append((source, s0))
                    continue
                lo = max(s0, block_start)
                hi = min(s1, block_end)
                if hi > lo:
                    mix[lo - block_start:hi - block_start] += samples[lo - s0:hi - s0]
                if s1 <= block_end:
                    source.mark_finished()
                else:
                    keep.append((source, s0))

            self._pending = keep
            self._cursor = block_end

        np.clip(outdata, -1.0, 1.0, out=outdata)
