"""
SPEC-AS-CONSTANTS
-----------------
Single source of truth for all behavioral invariants of the live audio pipeline.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

# =============================================================================
# Capture Format (float32 mono @ 16kHz, 4096-sample frames)
# =============================================================================

CAPTURE_SAMPLE_RATE_HZ: Final[int] = 16_000
CAPTURE_FRAME_SAMPLES: Final[int] = 4096
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)

CAPTURE_FRAME_DURATION_S: Final[float] = CAPTURE_FRAME_SAMPLES / CAPTURE_SAMPLE_RATE_HZ

INPUT_MIME_TYPE: Final[str] = f"audio/pcm;rate={CAPTURE_SAMPLE_RATE_HZ}"

# =============================================================================
# Playback Format (PCM16 mono @ 24kHz from the model)
# =============================================================================

PLAYBACK_SAMPLE_RATE_HZ: Final[int] = 24_000

# =============================================================================
# PCM16 range
# =============================================================================
# Asymmetric: +1.0 -> 0x7FFF, -1.0 -> -0x8000 (two's complement range)

PCM16_POSITIVE_SCALE: Final[float] = float(0x7FFF)
PCM16_NEGATIVE_SCALE: Final[float] = float(0x8000)

# =============================================================================
# Backpressure
# =============================================================================

# Frames captured but not yet processed by the pump task
CAPTURE_BACKLOG_MAX_S: Final[float] = 2.0

# Encoded frames accepted by the transport but not yet on the wire
TRANSPORT_SEND_QUEUE_MAX_FRAMES: Final[int] = 64

# =============================================================================
# Transport / Live endpoint
# =============================================================================

LIVE_WS_URL_DEFAULT: Final[str] = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
LIVE_MODEL_DEFAULT: Final[str] = "gemini-2.5-flash-native-audio-preview-09-2025"
LIVE_VOICE_DEFAULT: Final[str] = "Zephyr"
LIVE_SYSTEM_INSTRUCTION_DEFAULT: Final[str] = (
    "You are a helpful, quick-witted personal assistant managing the user's day."
)
LIVE_RESPONSE_MODALITY: Final[str] = "AUDIO"

SETUP_COMPLETE_TIMEOUT_S: Final[float] = 10.0
WS_MAX_MESSAGE_BYTES: Final[int] = 2**24

# =============================================================================
# Session status surface
# =============================================================================

STATUS_LOG_MAX_LINES: Final[int] = 5

# =============================================================================
# Helper Functions
# =============================================================================

def samples_to_seconds(num_samples: int, sample_rate_hz: int) -> float:
    """
    Convert a sample count to duration in seconds.

    Defensive behavior:
    - Non-positive input returns 0.0 instead of propagating an error.
    """
    if num_samples <= 0 or sample_rate_hz <= 0:
        return 0.0
    return num_samples / sample_rate_hz


def seconds_to_samples(duration_s: float, sample_rate_hz: int) -> int:
    """
    Convert a duration in seconds to the nearest whole sample index.

    Rounded (not floored) so consecutive buffers placed at t and t + n/rate
    land on adjacent sample indices.
    """
    if duration_s <= 0:
        return 0
    return int(round(duration_s * sample_rate_hz))


# =============================================================================
# Convenience Bundles
# =============================================================================

@dataclass(frozen=True)
class AudioFormat:
    """
    Immutable bundle describing a PCM stream format.

    This is a convenience wrapper for passing format metadata around;
    it is NOT a second source of truth.
    """
    sample_rate_hz: int
    channels: int = AUDIO_CHANNELS
    sample_width_bytes: int = AUDIO_SAMPLE_WIDTH_BYTES

    @property
    def bytes_per_second(self) -> int:
        """Return PCM16 byte rate."""
        return self.sample_rate_hz * self.channels * self.sample_width_bytes


CAPTURE_FORMAT: Final[AudioFormat] = AudioFormat(sample_rate_hz=CAPTURE_SAMPLE_RATE_HZ)
PLAYBACK_FORMAT: Final[AudioFormat] = AudioFormat(sample_rate_hz=PLAYBACK_SAMPLE_RATE_HZ)
