"""
Inbound transport events.

Rules:
- Events describe facts that have occurred on the live session.
- Events carry data only (no behavior).
- Delivered one at a time, in arrival order, per session.
- Closed and TransportFailure are terminal: nothing follows them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from observability.logger import now_ms


class EventType(str, Enum):
    """
    Discriminant for inbound events.
    """

    AUDIO_CHUNK = "AUDIO_CHUNK"
    INTERRUPTED = "INTERRUPTED"
    TURN_COMPLETE = "TURN_COMPLETE"
    CLOSED = "CLOSED"
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"


@dataclass(frozen=True)
class TransportEvent:
    """
    Base event type.

    ts_ms: arrival time (wall clock), observability only.
    """

    event_type: ClassVar[EventType]
    terminal: ClassVar[bool] = False

    ts_ms: int = field(default_factory=now_ms, kw_only=True)


@dataclass(frozen=True)
class AudioChunk(TransportEvent):
    """
    One model audio chunk, still base64 PCM16LE (decoded by playback).
    """

    event_type: ClassVar[EventType] = EventType.AUDIO_CHUNK

    data: str
    mime_type: str | None = None


@dataclass(frozen=True)
class Interrupted(TransportEvent):
    """
    The model stopped speaking because the user started; flush playback.
    """

    event_type: ClassVar[EventType] = EventType.INTERRUPTED


@dataclass(frozen=True)
class TurnComplete(TransportEvent):
    """
    The model finished its turn.
    """

    event_type: ClassVar[EventType] = EventType.TURN_COMPLETE


@dataclass(frozen=True)
class Closed(TransportEvent):
    """
    The remote side closed the session cleanly.
    """

    event_type: ClassVar[EventType] = EventType.CLOSED
    terminal: ClassVar[bool] = True

    reason: str | None = None


@dataclass(frozen=True)
class TransportFailure(TransportEvent):
    """
    Network or protocol failure; the session is unusable.

    cause is a TransportError wrapping the underlying exception.
    """

    event_type: ClassVar[EventType] = EventType.TRANSPORT_FAILURE
    terminal: ClassVar[bool] = True

    cause: Exception
