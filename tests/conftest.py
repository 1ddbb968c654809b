"""
Shared fixtures: scripted in-memory transports for session and controller tests.

A script is a list of steps replayed by ``StubCall.responses()``:
- RecordBatch: yielded to the caller
- asyncio.Event: wait until the test sets it
- Exception instance: raised (a failing call)
- HANG: block until the call is cancelled
- FAIL_ON_CANCEL: block, then report the cancellation as a StreamError
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import pytest

from markettrend.stream.config import SubscriptionParameters
from markettrend.stream.errors import StreamError
from markettrend.stream.types import CallStatus, Instrument, RecordBatch

HANG = object()
FAIL_ON_CANCEL = object()


class StubCall:
    def __init__(
        self,
        script: Sequence[Any],
        status: Optional[CallStatus] = None,
        close_delay: float = 0.0,
    ) -> None:
        self._script = list(script)
        self._close_delay = close_delay
        self._status = status or CallStatus(code=0, message="OK")
        self._final_status: Optional[CallStatus] = None
        self.yielded = 0
        self.closed = False

    @property
    def final_status(self) -> Optional[CallStatus]:
        return self._final_status

    async def responses(self) -> AsyncIterator[RecordBatch]:
        try:
            for step in self._script:
                if isinstance(step, asyncio.Event):
                    await step.wait()
                elif isinstance(step, BaseException):
                    raise step
                elif step is HANG:
                    await asyncio.Event().wait()
                elif step is FAIL_ON_CANCEL:
                    try:
                        await asyncio.Event().wait()
                    except asyncio.CancelledError:
                        raise StreamError("The operation was aborted")
                else:
                    self.yielded += 1
                    yield step
            self._final_status = self._status
        finally:
            if self._close_delay:
                # slow response teardown
                await asyncio.sleep(self._close_delay)
            self.closed = True


class StubTransport:
    """Each open_call() consumes the next script; without scripts left, calls hang."""

    def __init__(self, *scripts: Sequence[Any], close_delays: Sequence[float] = ()) -> None:
        self.scripts = list(scripts)
        self.close_delays = list(close_delays)
        self.calls: list[StubCall] = []
        self.opened: list[SubscriptionParameters] = []
        self.closed = False

    def open_call(self, parameters: SubscriptionParameters) -> StubCall:
        self.opened.append(parameters)
        script = self.scripts.pop(0) if self.scripts else [HANG]
        close_delay = self.close_delays.pop(0) if self.close_delays else 0.0
        call = StubCall(script, close_delay=close_delay)
        self.calls.append(call)
        return call

    async def aclose(self) -> None:
        self.closed = True


class FixedClock:
    def __init__(self, ts: Optional[datetime] = None) -> None:
        self.ts = ts or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.ts


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def log(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def build_batch(*rows: tuple[str, float], code: int = 200, message: str = "") -> RecordBatch:
    """Success batch from (code, change) pairs."""
    instruments = tuple(
        Instrument(
            code=symbol,
            name=f"{symbol} Tbk",
            price=1000.0 + change,
            change=change,
            percent_change=change / 10.0,
            total_volume=100,
            value=1000.0,
            total_freq=10,
        )
        for symbol, change in rows
    )
    return RecordBatch(code=code, instruments=instruments, message=message)


@pytest.fixture
def make_transport() -> Callable[..., StubTransport]:
    return StubTransport


@pytest.fixture
def make_batch() -> Callable[..., RecordBatch]:
    return build_batch


@pytest.fixture
def fixed_clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def hang() -> object:
    return HANG


@pytest.fixture
def fail_on_cancel() -> object:
    return FAIL_ON_CANCEL
