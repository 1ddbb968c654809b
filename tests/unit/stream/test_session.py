"""
Unit tests for StreamSession.

Covers message ordering, outcome classification and cancellation semantics
against scripted in-memory transports.
"""

import asyncio

import pytest

from markettrend.stream.config import SubscriptionParameters
from markettrend.stream.errors import ConfigurationError, StreamError, StreamSessionError, UserCancelled
from markettrend.stream.session import StreamSession
from markettrend.stream.types import CallStatus, SessionStatus


async def _drain(session: StreamSession) -> list:
    return [batch async for batch in session.messages()]


class TestOpen:
    """Test session creation."""

    @pytest.mark.asyncio
    async def test_open_returns_before_first_message(self, make_transport, hang) -> None:
        """open() issues the call without waiting for data."""
        transport = make_transport([hang])
        session = StreamSession.open(transport, SubscriptionParameters(filter="idx30"))

        assert session.state == SessionStatus.PENDING
        assert session.is_terminal is False

        await asyncio.sleep(0)
        assert transport.opened == [SubscriptionParameters(filter="idx30")]

        session.cancel()
        await session.wait_closed()

    @pytest.mark.asyncio
    async def test_rejects_non_parameter_objects(self, make_transport) -> None:
        with pytest.raises(ConfigurationError):
            StreamSession(make_transport(), {"filter": "idx30"})  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_session_ids_are_unique(self, make_transport) -> None:
        transport = make_transport([], [])
        first = StreamSession.open(transport, SubscriptionParameters())
        second = StreamSession.open(transport, SubscriptionParameters())

        assert first.session_id != second.session_id

        await first.status()
        await second.status()


class TestMessages:
    """Test message delivery."""

    @pytest.mark.asyncio
    async def test_messages_in_arrival_order(self, make_transport, make_batch) -> None:
        b1 = make_batch(("AAAA", 1.0))
        b2 = make_batch(("BBBB", -1.0))
        b3 = make_batch(("CCCC", 0.0))
        session = StreamSession.open(make_transport([b1, b2, b3]), SubscriptionParameters())

        received = await _drain(session)

        assert received == [b1, b2, b3]
        assert session.received == 3

    @pytest.mark.asyncio
    async def test_completed_with_final_status(self, make_transport, make_batch) -> None:
        session = StreamSession.open(make_transport([make_batch(("AAAA", 1.0))]), SubscriptionParameters())

        await _drain(session)
        outcome = await session.status()

        assert outcome.status == SessionStatus.COMPLETED
        assert outcome.final_status == CallStatus(code=0, message="OK")
        assert outcome.cause is None
        assert session.state == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_messages_not_restartable(self, make_transport, make_batch) -> None:
        session = StreamSession.open(make_transport([make_batch(("AAAA", 1.0))]), SubscriptionParameters())
        await _drain(session)

        with pytest.raises(StreamSessionError):
            await _drain(session)

    @pytest.mark.asyncio
    async def test_slow_consumer_loses_nothing(self, make_transport, make_batch) -> None:
        """Batches queue up while nobody is reading."""
        batches = [make_batch((f"S{i:03d}", float(i))) for i in range(50)]
        session = StreamSession.open(make_transport(batches), SubscriptionParameters())

        await session.status()
        received = await _drain(session)

        assert received == batches

    @pytest.mark.asyncio
    async def test_terminal_call_reports_backlog(self, make_transport, make_batch) -> None:
        """A completed call can still hold batches the consumer has not read."""
        batches = [make_batch(("AAAA", 1.0)), make_batch(("BBBB", 2.0)), make_batch(("CCCC", 3.0))]
        session = StreamSession.open(make_transport(batches), SubscriptionParameters())

        await session.status()
        assert session.is_terminal is True
        assert session.backlog == 3

        async for _ in session.messages():
            break
        assert session.backlog == 2

        session.cancel()
        assert session.backlog == 0
        assert session.state == SessionStatus.COMPLETED


class TestFailure:
    """Test error classification."""

    @pytest.mark.asyncio
    async def test_transport_failure_is_errored(self, make_transport, make_batch) -> None:
        failure = StreamError("Network unreachable")
        session = StreamSession.open(
            make_transport([make_batch(("AAAA", 1.0)), failure]),
            SubscriptionParameters(),
        )

        received = await _drain(session)
        outcome = await session.status()

        assert len(received) == 1
        assert outcome.status == SessionStatus.ERRORED
        assert outcome.cause is failure

    @pytest.mark.asyncio
    async def test_failure_before_first_message(self, make_transport) -> None:
        session = StreamSession.open(make_transport([StreamError("refused")]), SubscriptionParameters())

        assert await _drain(session) == []
        assert (await session.status()).status == SessionStatus.ERRORED


class TestCancel:
    """Test cancellation semantics."""

    @pytest.mark.asyncio
    async def test_cancel_resolves_immediately(self, make_transport, hang) -> None:
        session = StreamSession.open(make_transport([hang]), SubscriptionParameters())
        await asyncio.sleep(0)

        session.cancel()

        assert session.state == SessionStatus.CANCELLED
        assert session.cancel_requested is True
        outcome = await session.status()
        assert isinstance(outcome.cause, UserCancelled)

        await session.wait_closed()

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, make_transport, hang) -> None:
        session = StreamSession.open(make_transport([hang]), SubscriptionParameters())

        session.cancel()
        first = await session.status()
        session.cancel()
        second = await session.status()

        assert first is second
        await session.wait_closed()

    @pytest.mark.asyncio
    async def test_cancel_after_completion_keeps_outcome(self, make_transport, make_batch) -> None:
        session = StreamSession.open(make_transport([make_batch(("AAAA", 1.0))]), SubscriptionParameters())
        await _drain(session)

        session.cancel()

        assert (await session.status()).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_ends_waiting_consumer(self, make_transport, make_batch, hang) -> None:
        b1 = make_batch(("AAAA", 1.0))
        session = StreamSession.open(make_transport([b1, hang]), SubscriptionParameters())
        received = []

        async def consume() -> None:
            async for batch in session.messages():
                received.append(batch)

        consumer = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)

        session.cancel()
        await asyncio.wait_for(consumer, timeout=1.0)

        assert received == [b1]

    @pytest.mark.asyncio
    async def test_abort_reported_as_failure_is_cancelled(self, make_transport, fail_on_cancel) -> None:
        """A transport that reports the abort through its error channel is still cancelled."""
        transport = make_transport([fail_on_cancel])
        session = StreamSession.open(transport, SubscriptionParameters())
        await asyncio.sleep(0)

        session.cancel()
        await session.wait_closed()

        outcome = await session.status()
        assert outcome.status == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_releases_transport_call(self, make_transport, hang) -> None:
        transport = make_transport([hang])
        session = StreamSession.open(transport, SubscriptionParameters())
        await asyncio.sleep(0)

        session.cancel()
        await session.wait_closed()

        assert transport.calls[0].closed is True
