"""
Shared types, enums, and data structures for the market stream client.

This module contains types that are used across the session, the controller
and the presentation boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

import polars as pl

from markettrend.stream.config import SubscriptionParameters


class SessionStatus(str, Enum):
    """Completion status of a single StreamSession."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class ControllerState(str, Enum):
    """State machine for SubscriptionController."""

    IDLE = "idle"
    STREAMING = "streaming"


class EventKind(str, Enum):
    """Kinds of events published by the controller."""

    CONNECTED = "connected"
    BATCH = "batch"
    ANOMALY = "anomaly"
    ERROR = "error"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class CallStatus:
    """Final gRPC status of a call."""

    code: int
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code == 0


@dataclass(frozen=True)
class SessionOutcome:
    """How a StreamSession ended."""

    status: SessionStatus
    final_status: Optional[CallStatus] = None
    cause: Optional[BaseException] = None

    @classmethod
    def completed(cls, final_status: Optional[CallStatus] = None) -> SessionOutcome:
        return cls(SessionStatus.COMPLETED, final_status=final_status)

    @classmethod
    def cancelled(cls, cause: Optional[BaseException] = None) -> SessionOutcome:
        return cls(SessionStatus.CANCELLED, cause=cause)

    @classmethod
    def errored(cls, cause: BaseException) -> SessionOutcome:
        return cls(SessionStatus.ERRORED, cause=cause)


@dataclass(frozen=True, slots=True)
class Instrument:
    """One row of the market trend table."""

    code: str
    name: str = ""
    price: float = 0.0
    change: float = 0.0
    percent_change: float = 0.0
    total_volume: int = 0
    value: float = 0.0
    total_freq: int = 0


INSTRUMENT_SCHEMA: dict[str, type[pl.DataType]] = {
    "code": pl.Utf8,
    "name": pl.Utf8,
    "price": pl.Float64,
    "change": pl.Float64,
    "percent_change": pl.Float64,
    "total_volume": pl.Int64,
    "value": pl.Float64,
    "total_freq": pl.Int64,
}


@dataclass(frozen=True, slots=True)
class RecordBatch:
    """
    Payload of one received message.

    ``instruments`` is None when the server sent no payload at all; an empty
    tuple is a valid (empty) payload.
    """

    code: int
    instruments: Optional[tuple[Instrument, ...]] = None
    message: str = ""

    @property
    def has_payload(self) -> bool:
        return self.instruments is not None

    def __len__(self) -> int:
        return len(self.instruments) if self.instruments is not None else 0

    def to_frame(self) -> pl.DataFrame:
        """Instruments as a DataFrame (arrival order preserved)."""
        return instruments_frame(self.instruments or ())


def instruments_frame(instruments: Iterable[Instrument]) -> pl.DataFrame:
    rows = [
        (
            i.code,
            i.name,
            i.price,
            i.change,
            i.percent_change,
            i.total_volume,
            i.value,
            i.total_freq,
        )
        for i in instruments
    ]
    return pl.DataFrame(rows, schema=INSTRUMENT_SCHEMA, orient="row")


@dataclass(frozen=True, slots=True)
class MarketStats:
    """Aggregate counts shown above the table."""

    total: int = 0
    gainers: int = 0
    losers: int = 0
    unchanged: int = 0

    @classmethod
    def from_instruments(cls, instruments: Iterable[Instrument]) -> MarketStats:
        total = gainers = losers = unchanged = 0
        for instrument in instruments:
            total += 1
            if instrument.change > 0:
                gainers += 1
            elif instrument.change < 0:
                losers += 1
            else:
                unchanged += 1
        return cls(total=total, gainers=gainers, losers=losers, unchanged=unchanged)


@dataclass
class ConnectionState:
    """Observable connection status. Mutated only by the controller."""

    is_connected: bool = False
    last_error: Optional[str] = None
    last_update: Optional[datetime] = None
    message_count: int = 0


@dataclass(frozen=True)
class ControllerSnapshot:
    """Read model handed to the presentation layer."""

    state: ControllerState
    parameters: SubscriptionParameters
    connection: ConnectionState
    instruments: tuple[Instrument, ...] = field(default_factory=tuple)
    session_id: Optional[str] = None

    @property
    def stats(self) -> MarketStats:
        return MarketStats.from_instruments(self.instruments)


@dataclass(frozen=True)
class ControllerEvent:
    """Event published to controller observers."""

    kind: EventKind
    snapshot: ControllerSnapshot
    batch: Optional[RecordBatch] = None
    error: Optional[BaseException] = None
