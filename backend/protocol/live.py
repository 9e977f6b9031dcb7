# backend/protocol/live.py
"""
JSON framing helpers for the live conversational endpoint.

Client -> Server:
    setup (once, first message):
        {"setup": {"model": "models/<id>",
                   "generationConfig": {"responseModalities": ["AUDIO"],
                                        "speechConfig": {...voiceName...}},
                   "systemInstruction": {"parts": [{"text": ...}]}}}

    one captured frame:
        {"realtimeInput": {"mediaChunks": [
            {"mimeType": "audio/pcm;rate=16000", "data": <base64 PCM16LE>}]}}

Server -> Client:
    {"setupComplete": {}}                                    session open
    {"serverContent": {"modelTurn": {"parts": [
        {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": ...}}]}}}
    {"serverContent": {"interrupted": true}}                 flush playback
    {"serverContent": {"turnComplete": true}}                turn boundary

Usage example:

    await ws.send(json.dumps(build_setup_message(cfg)))
    ...
    for event in parse_server_message(raw).events:
        await inbound.put(event)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from audio.frames import EncodedFrame
from config import LiveConnectConfig
from spec import LIVE_RESPONSE_MODALITY
from transport.events import AudioChunk, Interrupted, TransportEvent, TurnComplete


# -------------------------
# Exceptions
# -------------------------

class LiveProtocolError(Exception):
    """
    Raised when a server message is not a JSON object.

    The message is unsafe to interpret and is dropped by the caller.
    """


# -------------------------
# Client -> Server
# -------------------------

def _model_resource(model: str) -> str:
    return model if model.startswith("models/") else f"models/{model}"


def build_setup_message(config: LiveConnectConfig) -> dict[str, Any]:
    """
    First message on a fresh connection.
    """
    return {
        "setup": {
            "model": _model_resource(config.model),
            "generationConfig": {
                "responseModalities": [LIVE_RESPONSE_MODALITY],
                "speechConfig": {
                    "voiceConfig": {
                        "prebuiltVoiceConfig": {"voiceName": config.voice},
                    },
                },
            },
            "systemInstruction": {
                "parts": [{"text": config.system_instruction}],
            },
        }
    }


def media_payload(encoded: EncodedFrame) -> dict[str, Any]:
    """
    The {media: {mimeType, data}} payload for one captured frame.
    """
    return {
        "media": {
            "mimeType": encoded.mime_type,
            "data": encoded.data,
        }
    }


def build_realtime_input(encoded: EncodedFrame) -> dict[str, Any]:
    """
    Wire message carrying one captured frame.
    """
    return {"realtimeInput": {"mediaChunks": [media_payload(encoded)["media"]]}}


def dumps(message: dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


# -------------------------
# Server -> Client
# -------------------------

@dataclass(frozen=True)
class ServerMessage:
    """
    Result of parsing one server message.

    setup_complete:
        True for the handshake reply that marks the session open.
    events:
        Inbound events in the order they appear in the message
        (audio parts first, then interruption, then turn boundary).
    """
    setup_complete: bool = False
    events: tuple[TransportEvent, ...] = field(default_factory=tuple)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_server_message(raw: str | bytes) -> ServerMessage:
    """
    Parse one server message into inbound events.

    Unknown fields are ignored. Parts without inline audio data
    (text, tool calls) produce no event.

    Raises:
        LiveProtocolError if the payload is not a JSON object.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise LiveProtocolError(f"server message is not UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LiveProtocolError(f"server message is not JSON: {e}") from e

    if not isinstance(data, dict):
        raise LiveProtocolError(f"server message is {type(data).__name__}, expected object")

    if "setupComplete" in data:
        return ServerMessage(setup_complete=True)

    content = _as_dict(data.get("serverContent"))
    if not content:
        return ServerMessage()

    events: list[TransportEvent] = []

    parts = _as_dict(content.get("modelTurn")).get("parts")
    if isinstance(parts, list):
        for part in parts:
            inline = _as_dict(_as_dict(part).get("inlineData"))
            audio = inline.get("data")
            if isinstance(audio, str) and audio:
                events.append(AudioChunk(data=audio, mime_type=inline.get("mimeType")))

    if content.get("interrupted") is True:
        events.append(Interrupted())

    if content.get("turnComplete") is True:
        events.append(TurnComplete())

    return ServerMessage(events=tuple(events))
