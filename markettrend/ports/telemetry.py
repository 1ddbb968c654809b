"""Telemetry Port Interface.

Contract: Log structured stream lifecycle events. Implementations must not
raise on ordinary field values; the controller logs and drops sink errors.
"""
from __future__ import annotations
from typing import Protocol, Any

# Lifecycle events emitted by the subscription controller
SESSION_OPENED = "session_opened"
SESSION_CLOSED = "session_closed"
RESTART_SCHEDULED = "restart_scheduled"
RESTART_SKIPPED = "restart_skipped"
ANOMALOUS_MESSAGE = "anomalous_message"

STREAM_EVENTS = frozenset(
    {SESSION_OPENED, SESSION_CLOSED, RESTART_SCHEDULED, RESTART_SKIPPED, ANOMALOUS_MESSAGE}
)

class Telemetry(Protocol):
    def log(self, event: str, **fields: Any) -> None: ...
