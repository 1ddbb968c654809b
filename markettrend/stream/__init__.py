"""
Market Trend Stream Module.

This module maintains a single live server-streaming subscription to the
market trend service and turns its messages into observable state.

Components:
- SubscriptionController: Desired parameters, (re)connect decisions, observable state
- StreamSession: One in-flight call with cancellation and outcome classification
- GrpcWebTransport: aiohttp-based gRPC-Web transport (Envoy compatible)
- JsonBatchCodec: Request encoding and RecordBatch decoding

Usage:
    from markettrend.stream import StreamClientConfig, SubscriptionController

    controller = SubscriptionController.from_config(StreamClientConfig())
    controller.connect()
    ...
    await controller.aclose()
"""

from markettrend.stream.config import (
    ControllerConfig,
    SortKey,
    StreamClientConfig,
    SubscriptionParameters,
    TransportConfig,
    Universe,
)
from markettrend.stream.controller import SubscriptionController
from markettrend.stream.errors import (
    AnomalousMessage,
    ConfigurationError,
    MarketStreamError,
    MessageParseError,
    StreamError,
    StreamSessionError,
    TransportUninitialized,
    UserCancelled,
)
from markettrend.stream.session import StreamSession
from markettrend.stream.transport import GrpcWebTransport, StreamCall, StreamTransport
from markettrend.stream.types import (
    CallStatus,
    ConnectionState,
    ControllerEvent,
    ControllerSnapshot,
    ControllerState,
    EventKind,
    Instrument,
    MarketStats,
    RecordBatch,
    SessionOutcome,
    SessionStatus,
)

__all__ = [
    # Main entry points
    "SubscriptionController",
    "StreamSession",
    "GrpcWebTransport",
    "StreamTransport",
    "StreamCall",
    # Config
    "StreamClientConfig",
    "TransportConfig",
    "ControllerConfig",
    "SubscriptionParameters",
    "Universe",
    "SortKey",
    # Types
    "CallStatus",
    "ConnectionState",
    "ControllerEvent",
    "ControllerSnapshot",
    "ControllerState",
    "EventKind",
    "Instrument",
    "MarketStats",
    "RecordBatch",
    "SessionOutcome",
    "SessionStatus",
    # Errors
    "MarketStreamError",
    "TransportUninitialized",
    "StreamError",
    "UserCancelled",
    "AnomalousMessage",
    "MessageParseError",
    "StreamSessionError",
    "ConfigurationError",
]
