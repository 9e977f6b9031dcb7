# backend/audio/queues.py
"""
Bounded audio frame queue with canonical depth measurement.

Requirements:
- Depth measured in seconds (not frame count)
- Explicit drop behavior (drop NEWEST on overflow)
- Drop reasons distinguishable (overflow vs muted)
- Deterministic, synchronous behavior
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional

from audio.frames import AudioFrame
from spec import CAPTURE_FRAME_DURATION_S


class DropReason(str, Enum):
    """
    Reason a captured frame never reached the transport.
    """
    OVERFLOW = "overflow"
    MUTED = "muted"


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    overflow: int = 0
    muted: int = 0

    def count(self, reason: DropReason) -> None:
        if reason is DropReason.OVERFLOW:
            self.overflow += 1
        else:
            self.muted += 1


class AudioFrameQueue:
    """
    Bounded FIFO queue for AudioFrame objects.

    Drop rule: drop the NEW frame if enqueue would exceed max_depth_s.
    """

    def __init__(
        self,
        *,
        max_depth_s: float,
        frame_duration_s: float = CAPTURE_FRAME_DURATION_S,
    ) -> None:
        if max_depth_s <= 0:
            raise ValueError("max_depth_s must be > 0")
        if frame_duration_s <= 0:
            raise ValueError("frame_duration_s must be > 0")

        self._max_depth_s: float = max_depth_s
        self._frame_duration_s: float = frame_duration_s
        self._frames: Deque[AudioFrame] = deque()
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core queue operations
    # -------------------------

    def enqueue(self, frame: AudioFrame) -> bool:
        """
        Enqueue an AudioFrame.

        Returns:
            True if enqueued
            False if dropped
        """
        if self.depth_seconds() + self._frame_duration_s > self._max_depth_s:
            self.drops.count(DropReason.OVERFLOW)
            return False

        self._frames.append(frame)
        return True

    def dequeue(self) -> Optional[AudioFrame]:
        """
        Dequeue the oldest AudioFrame.

        Returns None if queue is empty.
        """
        if not self._frames:
            return None
        return self._frames.popleft()

    def clear(self) -> None:
        """
        Drop all queued frames without counting them as drops.

        Used on capture stop.
        """
        self._frames.clear()

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._frames)

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._frames

    def depth_seconds(self) -> float:
        """
        Canonical queue depth in seconds.

        depth_s = num_frames × frame_duration_s
        """
        return len(self._frames) * self._frame_duration_s

    def total_drops(self) -> int:
        """
        Total frames dropped for any reason.
        """
        return self.drops.overflow + self.drops.muted

    def snapshot(self) -> dict[str, float | int]:
        """
        Lightweight snapshot for logging / metrics.
        """
        return {
            "frames": len(self._frames),
            "depth_s": self.depth_seconds(),
            "dropped_overflow": self.drops.overflow,
            "dropped_muted": self.drops.muted,
            "dropped_total": self.total_drops(),
        }
