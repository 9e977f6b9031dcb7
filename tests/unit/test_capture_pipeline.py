# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import numpy as np
import pytest

from audio.capture import CapturePipeline
from audio.frames import AudioFrame, EncodedFrame
from errors import DeviceUnavailable
from fakes import FakeInput, wait_for
from observability import logger
from spec import CAPTURE_FRAME_DURATION_S, CAPTURE_FRAME_SAMPLES, INPUT_MIME_TYPE


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(logger, "_print", lambda line: None)


def block(value: float = 0.25) -> np.ndarray:
    return np.full(CAPTURE_FRAME_SAMPLES, value, dtype=np.float32)


def make_frame(seq: int, value: float = 0.25) -> AudioFrame:
    return AudioFrame(sequence_num=seq, samples=block(value), ts_ms=0)


# ---------------------------------------------------------------------
# process_frame
# ---------------------------------------------------------------------

def test_process_frame_encodes_and_forwards():
    sent: list[EncodedFrame] = []
    pipeline = CapturePipeline(FakeInput(), sent.append)

    assert pipeline.process_frame(make_frame(1, value=1.0)) is True

    assert len(sent) == 1
    assert sent[0].mime_type == INPUT_MIME_TYPE
    assert len(sent[0]) == CAPTURE_FRAME_SAMPLES * 2
    assert sent[0].pcm_bytes[:2] == b"\xff\x7f"
    assert pipeline.frames_sent == 1


def test_muted_frames_never_reach_the_sink():
    sent: list[EncodedFrame] = []
    pipeline = CapturePipeline(FakeInput(), sent.append)
    pipeline.muted = True

    for seq in range(1, 6):
        assert pipeline.process_frame(make_frame(seq)) is False

    assert sent == []
    assert pipeline.snapshot()["dropped_muted"] == 5

    # Unmuting resumes with new frames only; muted ones are gone
    pipeline.muted = False
    pipeline.process_frame(make_frame(6))
    assert len(sent) == 1


# ---------------------------------------------------------------------
# Device path
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_device_blocks_flow_to_sink_in_order():
    sent: list[EncodedFrame] = []
    device = FakeInput()
    pipeline = CapturePipeline(device, sent.append)

    await pipeline.start()
    assert device.is_open
    assert pipeline.running

    for i in range(3):
        device.push(block(value=i / 10))

    await wait_for(lambda: len(sent) == 3)
    firsts = [np.frombuffer(f.pcm_bytes[:2], dtype="<i2")[0] for f in sent]
    assert firsts == sorted(firsts)

    await pipeline.stop()


@pytest.mark.asyncio
async def test_muted_pipeline_keeps_device_open_but_sends_nothing():
    sent: list[EncodedFrame] = []
    device = FakeInput()
    pipeline = CapturePipeline(device, sent.append)
    await pipeline.start()

    pipeline.muted = True
    for _ in range(4):
        device.push(block())
    await wait_for(lambda: pipeline.snapshot()["dropped_muted"] == 4)

    assert sent == []
    assert device.is_open

    await pipeline.stop()


@pytest.mark.asyncio
async def test_backlog_overflow_drops_newest_blocks():
    sent: list[EncodedFrame] = []
    device = FakeInput()
    pipeline = CapturePipeline(device, sent.append, max_backlog_s=2 * CAPTURE_FRAME_DURATION_S)
    await pipeline.start()

    # All five land before the pump gets a turn
    for _ in range(5):
        device.push(block())

    await wait_for(lambda: len(sent) == 2)
    assert pipeline.snapshot()["dropped_overflow"] == 3

    await pipeline.stop()


@pytest.mark.asyncio
async def test_device_unavailable_propagates_and_nothing_starts():
    sent: list[EncodedFrame] = []
    device = FakeInput(fail=True)
    pipeline = CapturePipeline(device, sent.append)

    with pytest.raises(DeviceUnavailable):
        await pipeline.start()

    assert not pipeline.running
    assert not device.is_open


@pytest.mark.asyncio
async def test_stop_releases_device_and_is_idempotent():
    sent: list[EncodedFrame] = []
    device = FakeInput()
    pipeline = CapturePipeline(device, sent.append)
    await pipeline.start()

    await pipeline.stop()
    await pipeline.stop()

    assert not pipeline.running
    assert not device.is_open
    assert device.close_calls >= 1

    # Late device callback after stop is ignored
    device.push(block())
    pipeline._on_device_block(block())  # pylint: disable=protected-access
    assert sent == []


@pytest.mark.asyncio
async def test_stop_without_start_is_safe():
    device = FakeInput()
    pipeline = CapturePipeline(device, lambda frame: None)

    await pipeline.stop()

    assert device.open_calls == 0


@pytest.mark.asyncio
async def test_block_captured_while_muted_is_not_sent_after_unmute():
    sent: list[EncodedFrame] = []
    device = FakeInput()
    pipeline = CapturePipeline(device, sent.append)
    await pipeline.start()

    pipeline.muted = True
    device.push(block())
    # Unmute before the loop delivers the block
    pipeline.muted = False

    await asyncio.sleep(0.05)

    assert sent == []
    assert pipeline.snapshot()["dropped_muted"] == 1

    device.push(block())
    await wait_for(lambda: len(sent) == 1)

    await pipeline.stop()


@pytest.mark.asyncio
async def test_sink_error_is_logged_and_pump_keeps_running(monkeypatch: pytest.MonkeyPatch):
    emitted: list[str] = []
    monkeypatch.setattr(logger, "_print", emitted.append)

    sent: list[EncodedFrame] = []
    calls = {"n": 0}

    def flaky_sink(frame: EncodedFrame) -> None:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("socket buffer gone")
        sent.append(frame)

    device = FakeInput()
    pipeline = CapturePipeline(device, flaky_sink)
    await pipeline.start()

    device.push(block())
    device.push(block())

    await wait_for(lambda: len(sent) == 1)
    assert any('"CAPTURE_SINK_ERROR"' in line for line in emitted)
    assert device.is_open

    await pipeline.stop()
