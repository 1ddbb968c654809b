"""
gRPC-Web message framing.

Every message on the wire is prefixed with one flag byte and a 4-byte
big-endian length:

    +------+----------------+-----------------+
    | flag | length (u32be) | payload         |
    +------+----------------+-----------------+

Flag 0x00 marks a data frame, 0x80 a trailer frame carrying the final
``grpc-status`` / ``grpc-message`` as HTTP/1-style header lines. Bit 0x01
marks a compressed payload, which this client never negotiates.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import unquote

from markettrend.stream.errors import MessageParseError
from markettrend.stream.types import CallStatus

DATA_FLAG = 0x00
COMPRESSED_FLAG = 0x01
TRAILER_FLAG = 0x80

HEADER_SIZE = 5
_HEADER = struct.Struct(">BI")


@dataclass(frozen=True, slots=True)
class Frame:
    flags: int
    payload: bytes

    @property
    def is_trailer(self) -> bool:
        return bool(self.flags & TRAILER_FLAG)

    @property
    def is_compressed(self) -> bool:
        return bool(self.flags & COMPRESSED_FLAG)


def encode_frame(payload: bytes, *, trailer: bool = False) -> bytes:
    """Prefix ``payload`` with a gRPC-Web frame header."""
    flags = TRAILER_FLAG if trailer else DATA_FLAG
    return _HEADER.pack(flags, len(payload)) + payload


def encode_trailers(status: CallStatus) -> bytes:
    """Trailer frame for ``status`` (used by test servers and tooling)."""
    lines = f"grpc-status:{status.code}\r\ngrpc-message:{status.message}\r\n"
    return encode_frame(lines.encode("utf-8"), trailer=True)


class FrameDecoder:
    """
    Incremental frame decoder.

    HTTP chunks do not line up with frames: a chunk may hold several frames
    or end in the middle of one, so bytes are buffered until a frame is
    complete.
    """

    def __init__(self, max_frame_bytes: int = 16 * 1024 * 1024) -> None:
        self._buffer = bytearray()
        self._max_frame_bytes = max_frame_bytes

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[Frame]:
        """Add ``chunk`` and return every frame it completes, in order."""
        self._buffer.extend(chunk)
        frames: list[Frame] = []

        while len(self._buffer) >= HEADER_SIZE:
            flags, length = _HEADER.unpack_from(self._buffer)
            if length > self._max_frame_bytes:
                raise MessageParseError(
                    f"Frame of {length} bytes exceeds limit of {self._max_frame_bytes}",
                    expected_type="frame",
                )
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                break
            frames.append(Frame(flags=flags, payload=bytes(self._buffer[HEADER_SIZE:end])))
            del self._buffer[:end]

        return frames

    def finish(self) -> None:
        """Raise if the body ended inside a frame."""
        if self._buffer:
            raise MessageParseError(
                f"Stream ended with {len(self._buffer)} bytes of an incomplete frame",
                expected_type="frame",
            )


def parse_trailers(payload: bytes) -> dict[str, str]:
    """Parse a trailer frame payload into lower-cased header names."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MessageParseError("Trailer frame is not valid UTF-8", raw_data=payload) from e

    trailers: dict[str, str] = {}
    for line in text.split("\r\n"):
        if not line.strip():
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise MessageParseError(f"Malformed trailer line: {line!r}", raw_data=payload)
        trailers[name.strip().lower()] = value.strip()
    return trailers


def status_from_metadata(metadata: Mapping[str, str]) -> Optional[CallStatus]:
    """Extract the gRPC status from trailers or response headers, if present."""
    raw_code = metadata.get("grpc-status")
    if raw_code is None:
        return None
    try:
        code = int(raw_code)
    except ValueError as e:
        raise MessageParseError(
            f"Invalid grpc-status value: {raw_code!r}",
            expected_type="int",
        ) from e
    # grpc-message is percent-encoded on the wire
    message = unquote(metadata.get("grpc-message", ""))
    return CallStatus(code=code, message=message)
