"""
Timing helpers for observability.

Responsibilities:
- Measure durations using monotonic time (immune to clock changes)
- Emit metrics as JSONL events via observability.logger
- Never aggregate: one metric = one log event

Metrics emitted by the live pipeline:
- live_connect_ms      (transport connect incl. setup handshake)
- live_teardown_ms     (capture -> transport -> playback release)
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability import logger


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    state: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Context manager for measuring durations safely.

    Guarantees:
    - Metric is emitted exactly once, also when the block raises
    - Exceptions inside the block are not suppressed

    The yielded dict is merged into "details", so the block can
    record its outcome:

        with timed("live_connect_ms", session_id=sid) as extra:
            await transport.connect(cfg)
            extra["ok"] = True
    """
    extra: dict[str, Any] = {}
    start_ns = time.monotonic_ns()
    try:
        yield extra
    finally:
        duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000
        logger.log_event({
            # Wall-clock timestamp for log correlation / readability
            "ts_ms": logger.now_ms(),
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": duration_ms,
            "session_id": session_id,
            "state": state,
            "details": {**(details or {}), **extra},
        })
