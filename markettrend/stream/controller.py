"""
Subscription Controller - single authority over the live subscription.

Coordinates:
- The desired SubscriptionParameters
- At most one active StreamSession
- Debounced restarts on parameter changes
- Observable ConnectionState and instrument list
- Outcome classification (cancelled / completed / errored)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Optional

from markettrend.ports.clock import Clock
from markettrend.ports.telemetry import (
    ANOMALOUS_MESSAGE,
    RESTART_SCHEDULED,
    RESTART_SKIPPED,
    SESSION_CLOSED,
    SESSION_OPENED,
    Telemetry,
)
from markettrend.stream.config import ControllerConfig, StreamClientConfig, SubscriptionParameters
from markettrend.stream.errors import AnomalousMessage, TransportUninitialized, describe_error
from markettrend.stream.session import StreamSession
from markettrend.stream.transport import GrpcWebTransport, StreamTransport
from markettrend.stream.types import (
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

logger = logging.getLogger(__name__)

Listener = Callable[[ControllerEvent], None]


class SubscriptionController:
    """
    Owns "what should be subscribed to" and "is anything subscribed".

    State Machine:
        [IDLE] --connect()--> [STREAMING] --completed/errored/cancelled--> [IDLE]

        A parameter change while STREAMING schedules a restart: after
        ``restart_delay_s`` the current session is cancelled (-> IDLE) and a
        new one is opened with the latest parameters (-> STREAMING).
        After aclose() the controller stays IDLE and ignores further calls.

    All methods run on the event loop thread. Message handling for an old
    session never interleaves with a newer one: every mutation first checks
    that the session is still the current one.

    Usage:
        controller = SubscriptionController(transport, SubscriptionParameters(filter="idx30"))
        controller.subscribe(lambda event: print(event.kind, event.snapshot.stats))
        controller.connect()
        ...
        controller.set_parameters(SubscriptionParameters(filter="lq45"))
        ...
        await controller.aclose()
    """

    def __init__(
        self,
        transport: Optional[StreamTransport] = None,
        parameters: Optional[SubscriptionParameters] = None,
        config: Optional[ControllerConfig] = None,
        *,
        clock: Optional[Clock] = None,
        telemetry: Optional[Telemetry] = None,
        owns_transport: bool = False,
        name: str = "market_stream",
    ) -> None:
        """
        Initialize the controller.

        Args:
            transport: Streaming transport; may be bound later via bind_transport()
            parameters: Initial subscription parameters
            config: Controller configuration
            clock: Source of ``last_update`` timestamps (defaults to system UTC)
            telemetry: Optional structured event sink
            owns_transport: Close the transport on aclose()
            name: Name for logging purposes
        """
        if clock is None:
            from markettrend.adapters.clock import SystemClock

            clock = SystemClock()

        self._transport = transport
        self._parameters = parameters or SubscriptionParameters()
        self._config = config or ControllerConfig()
        self._clock = clock
        self._telemetry = telemetry
        self._owns_transport = owns_transport
        self._name = name

        # State
        self._state = ControllerState.IDLE
        self._connection = ConnectionState()
        self._instruments: tuple[Instrument, ...] = ()
        self._session: Optional[StreamSession] = None
        self._disposed = False

        # Tasks
        self._consumers: set[asyncio.Task[None]] = set()
        self._retired: set[StreamSession] = set()
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._idle = asyncio.Event()
        self._idle.set()

        # Observers
        self._listeners: list[Listener] = []

        # Statistics
        self._sessions_opened = 0
        self._anomalies = 0

    @classmethod
    def from_config(cls, config: StreamClientConfig, **kwargs: Any) -> SubscriptionController:
        """Build a controller that owns a gRPC-Web transport."""
        transport = GrpcWebTransport(config.transport)
        return cls(
            transport,
            config.parameters,
            config.controller,
            owns_transport=True,
            **kwargs,
        )

    # --- Read accessors ---

    @property
    def state(self) -> ControllerState:
        """Current controller state."""
        return self._state

    @property
    def parameters(self) -> SubscriptionParameters:
        return self._parameters

    @property
    def connection(self) -> ConnectionState:
        """Copy of the connection state."""
        return replace(self._connection)

    @property
    def is_connected(self) -> bool:
        """
        True from connect() until the session's queued batches are consumed.

        May stay True briefly after ``session.is_terminal`` turned True.
        """
        return self._connection.is_connected

    @property
    def instruments(self) -> tuple[Instrument, ...]:
        """Currently displayed instruments (latest accepted batch)."""
        return self._instruments

    @property
    def stats(self) -> MarketStats:
        return MarketStats.from_instruments(self._instruments)

    @property
    def session(self) -> Optional[StreamSession]:
        """The active session, if any."""
        return self._session

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def restart_pending(self) -> bool:
        return self._restart_handle is not None

    def snapshot(self) -> ControllerSnapshot:
        return ControllerSnapshot(
            state=self._state,
            parameters=self._parameters,
            connection=replace(self._connection),
            instruments=self._instruments,
            session_id=self._session.session_id if self._session else None,
        )

    def get_stats(self) -> dict[str, Any]:
        """Get statistics summary."""
        return {
            "state": self._state.value,
            "sessions_opened": self._sessions_opened,
            "message_count": self._connection.message_count,
            "anomalies": self._anomalies,
            "last_error": self._connection.last_error,
        }

    # --- Observers ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(
        self,
        kind: EventKind,
        batch: Optional[RecordBatch] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if not self._listeners:
            return
        event = ControllerEvent(kind=kind, snapshot=self.snapshot(), batch=batch, error=error)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"[{self._name}] Listener error on {kind.value}: {e}")

    def _emit(self, event: str, **fields: Any) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry.log(event, component=self._name, **fields)
        except Exception as e:
            logger.warning(f"[{self._name}] Telemetry error: {e}")

    # --- Commands ---

    def bind_transport(self, transport: StreamTransport) -> None:
        """Make a transport available for subsequent connect() calls."""
        self._transport = transport

    def connect(self) -> None:
        """
        Open a session with the current parameters.

        No-op if a session is already active.

        Raises:
            TransportUninitialized: If no transport is bound
        """
        if self._disposed:
            logger.warning(f"[{self._name}] connect() ignored: controller is closed")
            return

        if self._transport is None:
            error = TransportUninitialized(
                "Stream client not initialized",
                component="SubscriptionController",
            )
            self._connection.last_error = describe_error(error)
            self._publish(EventKind.ERROR, error=error)
            raise error

        if self._session is not None:
            logger.debug(f"[{self._name}] Already streaming")
            return

        self._connection.message_count = 0
        self._connection.last_error = None
        if self._config.clear_on_connect:
            self._instruments = ()

        session = StreamSession.open(self._transport, self._parameters, name=self._name)
        self._session = session
        self._sessions_opened += 1
        self._state = ControllerState.STREAMING
        self._connection.is_connected = True
        self._idle.clear()

        logger.info(
            f"[{self._name}] Starting stream {session.session_id} with "
            f"{self._parameters.to_request()}"
        )
        self._emit(
            SESSION_OPENED,
            session_id=session.session_id,
            filter=self._parameters.filter,
            sort=self._parameters.sort_key,
        )

        task = asyncio.create_task(self._consume(session), name=f"{self._name}_consume")
        self._consumers.add(task)
        task.add_done_callback(self._consumers.discard)

        self._publish(EventKind.CONNECTED)

    def disconnect(self) -> None:
        """Cancel the active session. Idempotent."""
        self._cancel_restart()
        if self._session is None:
            return
        logger.info(f"[{self._name}] Disconnecting stream...")
        self._cancel_session(reason="disconnect")

    def set_parameters(self, parameters: SubscriptionParameters) -> None:
        """
        Update the desired parameters.

        While streaming, a restart is scheduled after ``restart_delay_s``;
        further changes within that window push it back and the restart uses
        whatever parameters are current when it fires. While idle, nothing
        is opened.
        """
        if self._disposed:
            logger.warning(f"[{self._name}] set_parameters() ignored: controller is closed")
            return
        if parameters == self._parameters:
            return

        self._parameters = parameters
        logger.debug(f"[{self._name}] Parameters changed: {parameters.to_request()}")

        if self._session is not None:
            self._schedule_restart()

    async def aclose(self) -> None:
        """
        Tear down: stop streaming and wait for every task to finish.

        The controller accepts no further commands afterwards.
        """
        if self._disposed:
            return

        self.disconnect()
        self._disposed = True

        for task in list(self._consumers):
            try:
                await task
            except asyncio.CancelledError:
                if not task.done():
                    raise
        # Sessions replaced by restarts may still be releasing their responses
        for session in list(self._retired):
            await session.wait_closed()
        self._retired.clear()

        if self._owns_transport and self._transport is not None:
            try:
                await self._transport.aclose()
            except Exception as e:
                logger.warning(f"[{self._name}] Error closing transport: {e}")

        self._listeners.clear()
        logger.info(f"[{self._name}] Controller closed")

    async def wait_idle(self) -> None:
        """
        Wait until no session is active.

        A restart settles the old session and opens the next one in the same
        step; waiters woken by that settle go back to waiting.
        """
        while self._session is not None:
            await self._idle.wait()

    async def __aenter__(self) -> SubscriptionController:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # --- Restart scheduling ---

    def _schedule_restart(self) -> None:
        self._cancel_restart()
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self._config.restart_delay_s, self._restart)
        self._emit(RESTART_SCHEDULED, delay_s=self._config.restart_delay_s)

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _restart(self) -> None:
        self._restart_handle = None
        if self._disposed or self._session is None:
            # Stream ended on its own; the user has to re-initiate
            logger.debug(f"[{self._name}] Restart skipped: no active session")
            self._emit(RESTART_SKIPPED)
            return

        logger.info(f"[{self._name}] Restarting stream with {self._parameters.to_request()}")
        self._cancel_session(reason="restart")
        try:
            self.connect()
        except TransportUninitialized as e:
            logger.error(f"[{self._name}] Restart failed: {e}")

    def _cancel_session(self, reason: str) -> None:
        session = self._session
        if session is None:
            return
        session.cancel()
        self._settle(session, SessionOutcome.cancelled(), reason=reason)

    # --- Message loop ---

    async def _consume(self, session: StreamSession) -> None:
        """Feed one session's batches into state, then classify its outcome."""
        try:
            async for batch in session.messages():
                if session is not self._session:
                    break
                self._on_batch(batch)
            outcome = await session.status()
        except asyncio.CancelledError:
            session.cancel()
            if session is self._session:
                self._settle(session, SessionOutcome.cancelled(), reason="task cancelled")
            raise
        except Exception as e:
            logger.exception(f"[{self._name}] Message loop error: {e}")
            session.cancel()
            outcome = SessionOutcome.errored(e)

        if session is self._session:
            self._settle(session, outcome)

    def _on_batch(self, batch: RecordBatch) -> None:
        self._connection.message_count += 1
        count = self._connection.message_count

        logger.debug(
            f"[{self._name}] Received message #{count}: code={batch.code}, "
            f"instruments={len(batch)}, message={batch.message!r}"
        )

        if batch.code == self._config.success_code and batch.has_payload:
            self._instruments = batch.instruments or ()
            self._connection.last_update = self._clock.now()
            self._publish(EventKind.BATCH, batch=batch)
            return

        self._anomalies += 1
        anomaly = AnomalousMessage(
            "Unexpected response" if batch.has_payload else "Response without payload",
            code=batch.code,
            response_message=batch.message,
            component="SubscriptionController",
        )
        logger.warning(f"[{self._name}] {anomaly}")
        self._emit(ANOMALOUS_MESSAGE, code=batch.code, message=batch.message, seq=count)
        self._publish(EventKind.ANOMALY, batch=batch, error=anomaly)

    def _settle(
        self,
        session: StreamSession,
        outcome: SessionOutcome,
        reason: Optional[str] = None,
    ) -> None:
        """Return to IDLE after ``session`` ended. Only for the current session."""
        self._session = None
        self._state = ControllerState.IDLE
        self._connection.is_connected = False
        self._idle.set()
        self._retired = {s for s in self._retired if not s.is_closed}
        self._retired.add(session)

        self._emit(
            SESSION_CLOSED,
            session_id=session.session_id,
            outcome=outcome.status.value,
            reason=reason,
            messages=self._connection.message_count,
        )

        if outcome.status == SessionStatus.ERRORED:
            cause = outcome.cause or RuntimeError("stream failed")
            self._connection.last_error = describe_error(cause)
            logger.error(f"[{self._name}] Streaming error: {cause}")
            self._publish(EventKind.ERROR, error=cause)
        elif outcome.status == SessionStatus.CANCELLED:
            logger.info(f"[{self._name}] Stream cancelled ({reason or 'by transport'})")
            self._publish(EventKind.CANCELLED)
        else:
            logger.info(
                f"[{self._name}] Stream completed with status {outcome.final_status}"
            )
            self._publish(EventKind.COMPLETED)
