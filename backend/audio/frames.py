"""
Audio frame primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass

import numpy as np

from spec import INPUT_MIME_TYPE, samples_to_seconds


@dataclass(frozen=True)
class AudioFrame:
    """
    One microphone capture block.

    sequence_num:
        Monotonic per-capture counter, starting at 1.
        Used for logging and drop accounting only.

    samples:
        float32 mono samples in [-1.0, 1.0].
        Length is spec.CAPTURE_FRAME_SAMPLES for device frames.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the block was captured.
        Observability only.
    """
    sequence_num: int
    samples: np.ndarray
    ts_ms: int


@dataclass(frozen=True)
class EncodedFrame:
    """
    PCM16 little-endian bytes ready for the wire.

    Owned by the transport for the duration of one send.
    """
    pcm_bytes: bytes
    mime_type: str = INPUT_MIME_TYPE

    @property
    def data(self) -> str:
        """Base64 text form used in JSON messages."""
        return base64.b64encode(self.pcm_bytes).decode("ascii")

    def __len__(self) -> int:
        return len(self.pcm_bytes)


@dataclass(frozen=True)
class PlaybackBuffer:
    """
    Decoded, ready-to-play audio (float32 mono).
    """
    samples: np.ndarray
    sample_rate_hz: int

    @property
    def num_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return samples_to_seconds(self.num_samples, self.sample_rate_hz)
