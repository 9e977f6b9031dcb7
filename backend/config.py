"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No session logic
- No audio constants (see spec.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from spec import (
    LIVE_MODEL_DEFAULT,
    LIVE_SYSTEM_INSTRUCTION_DEFAULT,
    LIVE_VOICE_DEFAULT,
    LIVE_WS_URL_DEFAULT,
)


@dataclass(frozen=True)
class LiveConnectConfig:
    """
    Per-session settings sent to the live endpoint at connect time.
    """
    model: str
    voice: str
    system_instruction: str


def _device_from_env(name: str) -> int | str | None:
    """
    Audio device selector: unset -> default device, digits -> index, else name.
    """
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    raw = raw.strip()
    if raw.isdigit():
        return int(raw)
    return raw


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the server and the session controller.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Live endpoint
    # ------------------------------------------------------------------

    gemini_api_key: str | None
    live_ws_url: str
    live_model: str
    live_voice: str
    live_system_instruction: str

    # ------------------------------------------------------------------
    # Audio devices
    # ------------------------------------------------------------------

    input_device: int | str | None
    output_device: int | str | None

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    def connect_config(self) -> LiveConnectConfig:
        """Settings for one live session."""
        return LiveConnectConfig(
            model=self.live_model,
            voice=self.live_voice,
            system_instruction=self.live_system_instruction,
        )

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        The API key is optional here; a missing key surfaces as a
        connect failure rather than a startup crash.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            gemini_api_key=os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY"),
            live_ws_url=os.environ.get("LIVE_WS_URL", LIVE_WS_URL_DEFAULT),
            live_model=os.environ.get("LIVE_MODEL", LIVE_MODEL_DEFAULT),
            live_voice=os.environ.get("LIVE_VOICE", LIVE_VOICE_DEFAULT),
            live_system_instruction=os.environ.get(
                "LIVE_SYSTEM_INSTRUCTION", LIVE_SYSTEM_INSTRUCTION_DEFAULT
            ),

            input_device=_device_from_env("AUDIO_INPUT_DEVICE"),
            output_device=_device_from_env("AUDIO_OUTPUT_DEVICE"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",
        )
