"""
Stream Session: one in-flight server-streaming subscription.

Handles:
- Starting the call without waiting for the first message
- Handing batches to a single consumer in arrival order
- Deterministic, idempotent cancellation
- Classifying how the call ended (completed / cancelled / errored)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import AsyncIterator, Optional, Union

from markettrend.stream.config import SubscriptionParameters
from markettrend.stream.errors import ConfigurationError, StreamSessionError, UserCancelled
from markettrend.stream.transport import StreamTransport
from markettrend.stream.types import RecordBatch, SessionOutcome, SessionStatus

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class _EndOfStream:
    pass


_END = _EndOfStream()


class StreamSession:
    """
    Wraps one streaming call end-to-end.

    A background task drives the transport and pushes batches into an
    unbounded FIFO; ``messages()`` drains it. The queue decouples the
    transport from the consumer without dropping or reordering anything.

    Usage:
        session = StreamSession.open(transport, SubscriptionParameters(filter="idx30"))
        async for batch in session.messages():
            ...
        outcome = await session.status()

    A session is single-use: once it ends, open a new one.
    """

    def __init__(
        self,
        transport: StreamTransport,
        parameters: SubscriptionParameters,
        name: str = "session",
    ) -> None:
        if not isinstance(parameters, SubscriptionParameters):
            raise ConfigurationError(
                "parameters must be SubscriptionParameters",
                field="parameters",
                value=parameters,
            )

        self._transport = transport
        self._parameters = parameters
        self._session_id = f"session-{next(_session_ids)}"
        self._name = f"{name}:{self._session_id}"

        self._queue: asyncio.Queue[Union[RecordBatch, _EndOfStream]] = asyncio.Queue()
        self._outcome: asyncio.Future[SessionOutcome] = (
            asyncio.get_running_loop().create_future()
        )
        self._task: Optional[asyncio.Task[None]] = None
        self._cancel_requested = False
        self._consumed = False
        self._received = 0
        self._delivered = 0

    @classmethod
    def open(
        cls,
        transport: StreamTransport,
        parameters: SubscriptionParameters,
        *,
        name: str = "session",
    ) -> StreamSession:
        """Issue the streaming request and return immediately."""
        session = cls(transport, parameters, name=name)
        session._start()
        return session

    def _start(self) -> None:
        if self._task is not None:
            raise StreamSessionError("Session already started", component="StreamSession")
        self._task = asyncio.create_task(self._pump(), name=f"{self._name}_pump")
        logger.debug(f"[{self._name}] Opened with {self._parameters.to_request()}")

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def parameters(self) -> SubscriptionParameters:
        return self._parameters

    @property
    def state(self) -> SessionStatus:
        """Current completion status."""
        if not self._outcome.done():
            return SessionStatus.PENDING
        return self._outcome.result().status

    @property
    def is_terminal(self) -> bool:
        """
        True once the call has ended.

        This tracks the call, not the consumer: a completed or errored call can
        still have ``backlog`` batches waiting in the queue.
        """
        return self._outcome.done()

    @property
    def backlog(self) -> int:
        """Batches received but not yet handed to the consumer (0 once cancelled)."""
        if self._cancel_requested:
            return 0
        return self._received - self._delivered

    @property
    def is_closed(self) -> bool:
        """True once the transport task has released its resources."""
        return self._task is None or self._task.done()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def received(self) -> int:
        """Number of batches received from the transport."""
        return self._received

    async def _pump(self) -> None:
        """Drive the transport call and feed the queue."""
        outcome: Optional[SessionOutcome] = None
        responses: Optional[AsyncIterator[RecordBatch]] = None
        try:
            call = self._transport.open_call(self._parameters)
            responses = call.responses()
            async for batch in responses:
                if self._cancel_requested:
                    break
                self._received += 1
                self._queue.put_nowait(batch)

            if self._cancel_requested:
                outcome = SessionOutcome.cancelled(UserCancelled(reason="cancel"))
            else:
                outcome = SessionOutcome.completed(call.final_status)

        except asyncio.CancelledError:
            outcome = SessionOutcome.cancelled(UserCancelled(reason="cancel"))
            raise
        except Exception as e:
            if self._cancel_requested:
                # Transport reported our own abort through its failure channel
                logger.debug(f"[{self._name}] Failure after cancel treated as cancellation: {e}")
                outcome = SessionOutcome.cancelled(UserCancelled(reason="cancel"))
            else:
                logger.debug(f"[{self._name}] Call failed: {e!r}")
                outcome = SessionOutcome.errored(e)
        finally:
            self._resolve(outcome or SessionOutcome.cancelled(UserCancelled(reason="cancel")))
            self._queue.put_nowait(_END)
            await self._close_responses(responses)

    async def _close_responses(self, responses: Optional[AsyncIterator[RecordBatch]]) -> None:
        """Release the transport's resources (HTTP response, pooled connection)."""
        aclose = getattr(responses, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"[{self._name}] Error closing response stream: {e}")

    def _resolve(self, outcome: SessionOutcome) -> None:
        if not self._outcome.done():
            self._outcome.set_result(outcome)
            logger.debug(f"[{self._name}] Ended: {outcome.status.value}")

    async def messages(self) -> AsyncIterator[RecordBatch]:
        """
        Yield received batches in arrival order.

        Ends when the server ends the call or the session is cancelled.
        Not restartable.
        """
        if self._consumed:
            raise StreamSessionError(
                "messages() can only be consumed once; open a new session",
                component="StreamSession",
            )
        self._consumed = True

        while True:
            if self._cancel_requested:
                return
            item = await self._queue.get()
            if isinstance(item, _EndOfStream) or self._cancel_requested:
                return
            self._delivered += 1
            yield item

    def cancel(self) -> None:
        """
        Abort the call. Idempotent and safe after the session has ended.

        The status resolves to cancelled right away if the call is still
        running; the transport task unwinds in the background.
        """
        if self._cancel_requested:
            return
        self._cancel_requested = True

        if self._outcome.done():
            return

        logger.debug(f"[{self._name}] Cancelling")
        self._resolve(SessionOutcome.cancelled(UserCancelled(reason="cancel")))
        self._queue.put_nowait(_END)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def status(self) -> SessionOutcome:
        """Wait for the call to end and return its outcome."""
        return await asyncio.shield(self._outcome)

    async def wait_closed(self) -> None:
        """Wait until the transport task has released its resources."""
        if self._task is None or self._task.done():
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.done():
                raise
