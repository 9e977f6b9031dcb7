"""
PCM conversion utilities.

Pure functions only:
- float32 -> PCM16 (capture path)
- PCM16LE -> float32 (playback path)
- bytes <-> base64 text (JSON transport)
"""

from __future__ import annotations

import base64
import binascii
from typing import Sequence

import numpy as np

from audio.frames import AudioFrame, EncodedFrame, PlaybackBuffer
from errors import DecodeError
from spec import INPUT_MIME_TYPE, PCM16_NEGATIVE_SCALE, PCM16_POSITIVE_SCALE


def float_to_int16_pcm(samples: Sequence[float] | np.ndarray) -> np.ndarray:
    """
    Convert float samples to signed 16-bit PCM.

    Each sample is clamped to [-1.0, 1.0] before scaling (never wrapped).
    Scaling is asymmetric: 1.0 -> 32767, -1.0 -> -32768.
    NaN maps to 0.
    """
    f32 = np.nan_to_num(
        np.asarray(samples, dtype=np.float32).reshape(-1),
        nan=0.0,
        posinf=1.0,
        neginf=-1.0,
    )
    clamped = np.clip(f32, -1.0, 1.0)
    scaled = np.where(
        clamped < 0,
        clamped * PCM16_NEGATIVE_SCALE,
        clamped * PCM16_POSITIVE_SCALE,
    )
    # Truncate toward zero, same as an Int16Array store.
    return scaled.astype(np.int16)


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    No resampling. No channel mixing.

    Raises:
        DecodeError if the byte count is odd (truncated sample).
    """
    if len(pcm_bytes) % 2 != 0:
        raise DecodeError(f"PCM16 payload has odd length {len(pcm_bytes)}")

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")  # little-endian int16
    audio_f32 = audio_i16.astype(np.float32) / PCM16_NEGATIVE_SCALE
    return audio_f32


def bytes_to_portable_text(buffer: bytes) -> str:
    """Standard base64 text for a byte string. Empty in, empty out."""
    return base64.b64encode(bytes(buffer)).decode("ascii")


def text_to_bytes(text: str) -> bytes:
    """
    Inverse of bytes_to_portable_text.

    Raises:
        DecodeError on malformed base64.
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"invalid base64 audio payload: {e}") from e


def encode_frame(frame: AudioFrame, *, mime_type: str = INPUT_MIME_TYPE) -> EncodedFrame:
    """
    Encode one captured frame as PCM16LE for the wire.
    """
    pcm = float_to_int16_pcm(frame.samples)
    return EncodedFrame(pcm_bytes=pcm.astype("<i2").tobytes(), mime_type=mime_type)


def decode_playback_buffer(text: str, sample_rate_hz: int) -> PlaybackBuffer:
    """
    Decode a base64 PCM16LE chunk from the model into a PlaybackBuffer.

    Raises:
        DecodeError if the payload is not base64 or not whole PCM16 samples.
    """
    pcm_bytes = text_to_bytes(text)
    return PlaybackBuffer(
        samples=pcm16le_to_float32(pcm_bytes),
        sample_rate_hz=sample_rate_hz,
    )
