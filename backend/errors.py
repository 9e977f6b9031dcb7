"""
Error taxonomy for the live audio pipeline.

- DeviceUnavailable: microphone / speaker could not be acquired or was revoked
- ConnectionFailed:  live session could not be established
- TransportError:    mid-session network or protocol failure
- DecodeError:       a received audio chunk could not be decoded

DeviceUnavailable and ConnectionFailed abort a connect attempt.
TransportError tears the session down.
DecodeError drops one chunk and nothing else.
"""

from __future__ import annotations


class LiveAudioError(Exception):
    """Base class for live pipeline errors."""


class DeviceUnavailable(LiveAudioError):
    """
    Raised when an audio device cannot be opened.

    Covers permission denial, missing device, and a missing PortAudio library.
    The pipeline that raised it has not started and holds no device handle.
    """


class ConnectionFailed(LiveAudioError):
    """
    Raised when the live session cannot be established.

    Nothing is left open when this is raised.
    """


class TransportError(LiveAudioError):
    """
    Raised or reported when an established session fails mid-stream.
    """


class DecodeError(LiveAudioError):
    """
    Raised when an inbound audio chunk is not valid base64 PCM16.
    """
