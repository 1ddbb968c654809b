"""
Streaming transport for the market data service.

The controller only depends on the two protocols below. ``GrpcWebTransport``
is the concrete implementation: a server-streaming gRPC-Web call over
HTTP/1.1 (as exposed by an Envoy proxy), built on aiohttp.

Cancellation is asyncio task cancellation: cancelling the task that iterates
``StreamCall.responses()`` unwinds the generator, which closes the HTTP
response and returns the connection to the pool.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol

import aiohttp

from markettrend.stream.codec import BatchCodec, JsonBatchCodec
from markettrend.stream.config import SubscriptionParameters, TransportConfig
from markettrend.stream.errors import MessageParseError, StreamError
from markettrend.stream.framing import (
    FrameDecoder,
    encode_frame,
    parse_trailers,
    status_from_metadata,
)
from markettrend.stream.types import CallStatus, RecordBatch

logger = logging.getLogger(__name__)


class StreamCall(Protocol):
    """One server-streaming call."""

    def responses(self) -> AsyncIterator[RecordBatch]:
        """Batches in arrival order. Raises StreamError on failure."""
        ...

    @property
    def final_status(self) -> Optional[CallStatus]:
        """Status reported by the server, available once responses() ended cleanly."""
        ...


class StreamTransport(Protocol):
    """Capability to open streaming calls."""

    def open_call(self, parameters: SubscriptionParameters) -> StreamCall: ...

    async def aclose(self) -> None: ...


class GrpcWebCall:
    """A single gRPC-Web server-streaming call. Iterate ``responses()`` once."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        config: TransportConfig,
        codec: BatchCodec,
        parameters: SubscriptionParameters,
        name: str = "grpc_web",
    ) -> None:
        self._http = http
        self._config = config
        self._codec = codec
        self._parameters = parameters
        self._name = name
        self._final_status: Optional[CallStatus] = None

    @property
    def final_status(self) -> Optional[CallStatus]:
        return self._final_status

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": self._codec.content_type,
            "accept": self._codec.content_type,
            "x-grpc-web": "1",
            "x-user-agent": "markettrend-python",
        }
        headers.update(dict(self._config.headers))
        return headers

    async def responses(self) -> AsyncIterator[RecordBatch]:
        url = self._config.url
        body = encode_frame(self._codec.encode_request(self._parameters))
        status: Optional[CallStatus] = None
        count = 0

        logger.info(f"[{self._name}] Opening stream {url} with {self._parameters.to_request()}")
        try:
            async with self._http.post(url, data=body, headers=self._headers()) as resp:
                if resp.status != 200:
                    raise StreamError(
                        f"HTTP {resp.status} {resp.reason or ''}".strip(),
                        http_status=resp.status,
                        url=url,
                        component="GrpcWebCall",
                    )

                # Trailers-only responses carry the status in the headers
                status = status_from_metadata(
                    {k.lower(): v for k, v in resp.headers.items()}
                )
                if status is not None and not status.ok:
                    raise self._status_error(status, url)

                decoder = FrameDecoder(self._config.max_frame_bytes)
                async for chunk in resp.content.iter_any():
                    for frame in decoder.feed(chunk):
                        if frame.is_compressed:
                            raise MessageParseError(
                                "Compressed frames are not supported",
                                expected_type="frame",
                            )
                        if frame.is_trailer:
                            status = status_from_metadata(parse_trailers(frame.payload))
                            continue
                        count += 1
                        yield self._codec.decode_batch(frame.payload)
                decoder.finish()

        except MessageParseError as e:
            raise StreamError(
                f"Protocol violation: {e.message}",
                url=url,
                component="GrpcWebCall",
            ) from e
        except aiohttp.ClientResponseError as e:
            raise StreamError(
                e.message or "HTTP error",
                http_status=e.status,
                url=url,
                component="GrpcWebCall",
            ) from e
        except aiohttp.ClientError as e:
            raise StreamError(
                str(e) or type(e).__name__,
                url=url,
                component="GrpcWebCall",
            ) from e
        except asyncio.TimeoutError as e:
            raise StreamError(
                "Timed out waiting for the server",
                url=url,
                component="GrpcWebCall",
            ) from e

        if status is None:
            raise StreamError(
                "Stream ended without a grpc-status",
                url=url,
                component="GrpcWebCall",
            )
        if not status.ok:
            raise self._status_error(status, url)

        self._final_status = status
        logger.info(f"[{self._name}] Stream completed after {count} messages")

    @staticmethod
    def _status_error(status: CallStatus, url: str) -> StreamError:
        return StreamError(
            status.message or f"grpc-status {status.code}",
            grpc_status=status.code,
            url=url,
            component="GrpcWebCall",
        )


class GrpcWebTransport:
    """
    gRPC-Web transport with a lazily created, shared aiohttp session.

    Usage:
        transport = GrpcWebTransport(TransportConfig(endpoint="http://localhost:8080"))
        call = transport.open_call(SubscriptionParameters(filter="idx30"))
        async for batch in call.responses():
            ...
        await transport.aclose()
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        codec: Optional[BatchCodec] = None,
        name: str = "grpc_web",
    ) -> None:
        self._config = config or TransportConfig()
        self._codec = codec or JsonBatchCodec()
        self._name = name
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def config(self) -> TransportConfig:
        return self._config

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                connect=self._config.connect_timeout_s,
                sock_read=self._config.read_timeout_s,
            )
            self._http = aiohttp.ClientSession(timeout=timeout)
        return self._http

    def open_call(self, parameters: SubscriptionParameters) -> GrpcWebCall:
        return GrpcWebCall(
            http=self._session(),
            config=self._config,
            codec=self._codec,
            parameters=parameters,
            name=self._name,
        )

    async def aclose(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
        logger.debug(f"[{self._name}] Transport closed")
