# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring

import asyncio
from typing import Any

import numpy as np
import pytest

from config import AppConfig
from errors import DeviceUnavailable
from fakes import FakeInput, FakeOutput, FakeWebSocket, failing_connector, make_connector, pcm16_b64, wait_for
from observability import logger
from session.controller import SessionController, StatusEvent
from session.state import SessionState
from spec import CAPTURE_FRAME_SAMPLES
from transport.live_transport import LiveTransport


CONFIG = AppConfig(
    env="test",
    log_level="INFO",
    gemini_api_key="k",
    live_ws_url="wss://live.example/ws",
    live_model="gemini-live-test",
    live_voice="Zephyr",
    live_system_instruction="Be brief.",
    input_device=None,
    output_device=None,
    enable_json_logs=False,
)


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "_print", lambda line: None)


# ---------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------

class RecordingInput(FakeInput):
    def __init__(self, order: list[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._order = order

    def close(self) -> None:
        self._order.append("capture")
        super().close()


class RecordingOutput(FakeOutput):
    def __init__(self, order: list[str]) -> None:
        super().__init__()
        self._order = order

    def close(self) -> None:
        self._order.append("playback")
        super().close()


class RecordingTransport(LiveTransport):
    def __init__(self, order: list[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._order = order

    async def close(self) -> None:
        if not self.closed:
            self._order.append("transport")
        await super().close()


class Harness:
    def __init__(self, *, connector: Any = None, input_fail: bool = False) -> None:
        self.ws = FakeWebSocket()
        self.order: list[str] = []
        self.inputs: list[RecordingInput] = []
        self.outputs: list[RecordingOutput] = []
        self.transports: list[RecordingTransport] = []
        self.statuses: list[StatusEvent] = []
        self._connector = connector or make_connector(self.ws)
        self._input_fail = input_fail

        self.controller = SessionController(
            config=CONFIG,
            transport_factory=self._make_transport,
            input_factory=self._make_input,
            output_factory=self._make_output,
        )
        self.controller.subscribe(self.statuses.append)

    def _make_transport(self, session_id: str) -> RecordingTransport:
        transport = RecordingTransport(
            self.order,
            api_key="k",
            session_id=session_id,
            connector=self._connector,
        )
        self.transports.append(transport)
        return transport

    def _make_input(self) -> RecordingInput:
        device = RecordingInput(self.order, fail=self._input_fail)
        self.inputs.append(device)
        return device

    def _make_output(self) -> RecordingOutput:
        output = RecordingOutput(self.order)
        self.outputs.append(output)
        return output

    @property
    def messages(self) -> list[str]:
        return [s.message for s in self.statuses]

    @property
    def mic(self) -> RecordingInput:
        return self.inputs[-1]

    @property
    def speaker(self) -> RecordingOutput:
        return self.outputs[-1]


def audio_message(num_samples: int) -> dict[str, Any]:
    return {
        "serverContent": {
            "modelTurn": {"parts": [{"inlineData": {"data": pcm16_b64(num_samples)}}]}
        }
    }


def mic_block() -> np.ndarray:
    return np.full(CAPTURE_FRAME_SAMPLES, 0.1, dtype=np.float32)


# ---------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_reaches_connected_and_acquires_devices():
    h = Harness()

    assert await h.controller.connect() is True

    assert h.controller.state is SessionState.CONNECTED
    assert h.messages == ["Connecting to Live API...", "Session Open"]
    assert h.mic.is_open
    assert not h.speaker.closed
    assert "setup" in h.ws.sent[0]

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_connect_when_not_disconnected_is_a_noop():
    h = Harness()
    await h.controller.connect()

    assert await h.controller.connect() is False
    assert len(h.transports) == 1

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_connection_failure_never_acquires_microphone():
    h = Harness(connector=failing_connector(OSError("refused")))

    assert await h.controller.connect() is False

    assert h.inputs == []
    assert h.outputs == []
    assert h.controller.state is SessionState.DISCONNECTED
    assert h.controller.session is None
    assert h.messages[-1] == "Connection failed"


@pytest.mark.asyncio
async def test_device_unavailable_releases_transport_and_speaker():
    h = Harness(input_fail=True)

    assert await h.controller.connect() is False

    assert h.controller.state is SessionState.DISCONNECTED
    assert h.messages[-1] == "Audio device unavailable"
    assert h.transports[0].closed
    assert h.ws.closed
    assert h.speaker.closed
    assert not h.mic.is_open


@pytest.mark.asyncio
async def test_default_output_failure_maps_to_device_unavailable():
    h = Harness()

    def _no_speaker() -> FakeOutput:
        raise DeviceUnavailable("no speaker")

    h.controller._output_factory = _no_speaker  # pylint: disable=protected-access

    assert await h.controller.connect() is False
    assert h.inputs == []
    assert h.transports[0].closed
    assert h.controller.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_during_connect_discards_the_late_session():
    gate = asyncio.Event()

    async def slow_connector(url: str) -> FakeWebSocket:
        await gate.wait()
        return FakeWebSocket()

    h = Harness(connector=slow_connector)
    connecting = asyncio.create_task(h.controller.connect())
    await wait_for(lambda: h.controller.state is SessionState.CONNECTING)

    await h.controller.disconnect()

    # The overtaken connect has already finished releasing
    assert connecting.done()
    assert await connecting is False
    assert h.inputs == []
    assert h.outputs == []
    assert h.controller.state is SessionState.DISCONNECTED
    assert h.controller.session is None


@pytest.mark.asyncio
async def test_disconnect_during_handshake_closes_socket_before_returning():
    stalled = FakeWebSocket(setup_reply=False)
    sockets = [stalled, FakeWebSocket()]

    async def connector(url: str) -> FakeWebSocket:
        return sockets.pop(0)

    h = Harness(connector=connector)
    connecting = asyncio.create_task(h.controller.connect())
    await wait_for(lambda: len(stalled.sent) == 1)

    await h.controller.disconnect()

    assert stalled.closed
    assert connecting.done()
    assert await connecting is False

    assert await h.controller.connect() is True
    assert len(h.transports) == 2
    assert h.transports[0].closed
    assert len(h.inputs) == 1

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_unexpected_device_error_aborts_connect_and_reraises():
    sockets = [FakeWebSocket(), FakeWebSocket()]

    async def connector(url: str) -> FakeWebSocket:
        return sockets.pop(0)

    h = Harness(connector=connector)

    def _broken_speaker() -> FakeOutput:
        raise RuntimeError("driver glitch")

    h.controller._output_factory = _broken_speaker  # pylint: disable=protected-access

    with pytest.raises(RuntimeError):
        await h.controller.connect()

    assert h.transports[0].closed
    assert h.inputs == []
    assert h.controller.state is SessionState.DISCONNECTED
    assert h.controller.session is None
    assert h.messages[-1] == "Error occurred"

    h.controller._output_factory = h._make_output  # pylint: disable=protected-access
    assert await h.controller.connect() is True

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_cancelled_connect_ends_disconnected():
    started = asyncio.Event()

    async def hanging_connector(url: str) -> FakeWebSocket:
        started.set()
        await asyncio.Event().wait()
        return FakeWebSocket()

    h = Harness(connector=hanging_connector)
    connecting = asyncio.create_task(h.controller.connect())
    await started.wait()

    connecting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await connecting

    assert h.transports[0].closed
    assert h.controller.state is SessionState.DISCONNECTED
    assert h.controller.session is None


# ---------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_microphone_frames_reach_the_socket():
    h = Harness()
    await h.controller.connect()

    h.mic.push(mic_block())
    h.mic.push(mic_block())

    await wait_for(lambda: len(h.ws.media_chunks()) == 2)
    assert h.ws.media_chunks()[0]["mimeType"] == "audio/pcm;rate=16000"

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_model_audio_is_scheduled_gaplessly():
    h = Harness()
    await h.controller.connect()
    h.speaker.now = 5.0

    for n in (2400, 4800, 1200):
        h.ws.feed(audio_message(n))

    await wait_for(lambda: len(h.speaker.scheduled) == 3)
    starts = [s.start_time for s in h.speaker.scheduled]
    ends = [s.end_time for s in h.speaker.scheduled]

    assert starts[0] == pytest.approx(5.0)
    assert starts[1:] == pytest.approx(ends[:-1])

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_undecodable_chunk_is_dropped_and_session_continues():
    h = Harness()
    await h.controller.connect()

    h.ws.feed({"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": "AAAA"}}]}}})
    h.ws.feed(audio_message(240))

    await wait_for(lambda: len(h.speaker.scheduled) == 1)
    assert h.controller.state is SessionState.CONNECTED

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_interrupted_flushes_playback():
    h = Harness()
    await h.controller.connect()

    h.ws.feed(audio_message(24000))
    h.ws.feed(audio_message(24000))
    await wait_for(lambda: len(h.speaker.scheduled) == 2)

    h.ws.feed({"serverContent": {"interrupted": True}})
    await wait_for(lambda: "Interrupted" in h.messages)

    session = h.controller.session
    assert session is not None and session.playback is not None
    assert all(s.stopped for s in h.speaker.scheduled)
    assert session.playback.next_start_time == 0.0
    assert h.controller.state is SessionState.CONNECTED

    await h.controller.disconnect()


# ---------------------------------------------------------------------
# Remote close / failure
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remote_close_tears_down_in_order():
    h = Harness()
    await h.controller.connect()

    h.ws.end()
    await wait_for(lambda: h.controller.state is SessionState.DISCONNECTED)

    assert "Session Closed" in h.messages
    assert h.order == ["capture", "transport", "playback"]
    assert not h.mic.is_open
    assert h.speaker.closed
    assert h.controller.session is None


@pytest.mark.asyncio
async def test_transport_failure_reports_error_and_tears_down():
    h = Harness()
    await h.controller.connect()

    h.ws.fail(OSError("connection reset"))
    await wait_for(lambda: h.controller.state is SessionState.DISCONNECTED)

    assert "Error occurred" in h.messages
    assert h.order == ["capture", "transport", "playback"]
    assert h.transports[0].closed


@pytest.mark.asyncio
async def test_user_disconnect_tears_down_in_order_and_is_idempotent():
    h = Harness()
    await h.controller.connect()

    await h.controller.disconnect()
    await h.controller.disconnect()

    assert h.order == ["capture", "transport", "playback"]
    assert h.controller.state is SessionState.DISCONNECTED
    assert h.ws.closed


@pytest.mark.asyncio
async def test_reconnect_after_disconnect_uses_fresh_resources():
    sockets = [FakeWebSocket(), FakeWebSocket()]

    async def connector(url: str) -> FakeWebSocket:
        return sockets.pop(0)

    h = Harness(connector=connector)
    await h.controller.connect()
    await h.controller.disconnect()

    assert await h.controller.connect() is True
    assert len(h.transports) == 2
    assert len(h.inputs) == 2
    assert h.inputs[0].close_calls >= 1

    await h.controller.disconnect()


# ---------------------------------------------------------------------
# Mute
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mute_stops_outbound_audio_only():
    h = Harness()
    await h.controller.connect()

    assert h.controller.set_muted(True) is True
    assert h.controller.state is SessionState.MUTED
    assert h.controller.muted

    h.mic.push(mic_block())
    session = h.controller.session
    assert session is not None and session.capture is not None
    capture = session.capture
    await wait_for(lambda: capture.snapshot()["dropped_muted"] == 1)
    assert h.ws.media_chunks() == []

    # Inbound audio still plays while muted
    h.ws.feed(audio_message(240))
    await wait_for(lambda: len(h.speaker.scheduled) == 1)

    assert h.controller.toggle_mute() is False
    assert h.controller.state is SessionState.CONNECTED
    h.mic.push(mic_block())
    await wait_for(lambda: len(h.ws.media_chunks()) == 1)

    assert "Microphone muted" in h.messages
    assert h.messages[-1] == "Microphone live"

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_mute_without_session_is_rejected():
    h = Harness()

    assert h.controller.set_muted(True) is False
    assert h.controller.state is SessionState.DISCONNECTED
    assert h.statuses == []


# ---------------------------------------------------------------------
# Status surface
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_recent_status_keeps_five_newest_first():
    h = Harness()
    await h.controller.connect()

    for _ in range(3):
        h.controller.toggle_mute()
        h.controller.toggle_mute()

    recent = h.controller.recent_status()
    assert len(recent) == 5
    assert recent[0].message == "Microphone live"
    assert [s.message for s in recent] == list(reversed(h.messages[-5:]))

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_status():
    h = Harness()

    def _broken(status: StatusEvent) -> None:
        raise RuntimeError("ui gone")

    h.controller.subscribe(_broken)
    await h.controller.connect()

    assert h.controller.state is SessionState.CONNECTED
    assert h.messages[-1] == "Session Open"

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    h = Harness()
    seen: list[StatusEvent] = []
    unsubscribe = h.controller.subscribe(seen.append)
    unsubscribe()
    unsubscribe()

    await h.controller.connect()

    assert seen == []
    assert h.statuses

    await h.controller.disconnect()


@pytest.mark.asyncio
async def test_snapshot_reports_state_and_session():
    h = Harness()
    await h.controller.connect()

    snap = h.controller.snapshot()

    assert snap["state"] == "CONNECTED"
    assert snap["muted"] is False
    assert snap["session"]["session_id"].startswith("live_")
    assert snap["status"][0]["message"] == "Session Open"

    await h.controller.disconnect()
    assert h.controller.snapshot()["session"] is None
