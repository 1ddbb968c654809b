"""
Message codec for the data stream service.

Encodes the subscription request and parses response payloads into
RecordBatch / Instrument dataclasses. Payloads use the proto3 JSON mapping,
so int64 fields may arrive as strings and field names may be either
lowerCamelCase or the snake_case proto field names.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol

import orjson

from markettrend.stream.config import GRPC_WEB_JSON, SubscriptionParameters
from markettrend.stream.errors import MessageParseError
from markettrend.stream.types import Instrument, RecordBatch

logger = logging.getLogger(__name__)


class BatchCodec(Protocol):
    content_type: str

    def encode_request(self, parameters: SubscriptionParameters) -> bytes: ...

    def decode_batch(self, payload: bytes) -> RecordBatch: ...


def _safe_float(value: Any, field_name: str) -> float:
    """Safely convert a value to float."""
    if isinstance(value, bool):
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        )
    try:
        if isinstance(value, float):
            return value
        return float(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        ) from e


def _safe_int(value: Any, field_name: str) -> int:
    """Safely convert a value to int (int64 arrives as a JSON string)."""
    if isinstance(value, bool):
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        )
    try:
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(value)
            return int(value)
        return int(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        ) from e


def _field(data: Mapping[str, Any], camel: str, snake: str) -> Optional[Any]:
    value = data.get(camel)
    if value is None:
        value = data.get(snake)
    return value


def parse_instrument(data: Mapping[str, Any]) -> Instrument:
    """
    Parse one stock entry.

    Missing numeric fields default to zero, like proto3 scalar defaults.
    """
    if not isinstance(data, Mapping):
        raise MessageParseError(
            f"Instrument entry must be an object, got {type(data).__name__}",
            expected_type="object",
        )

    code = data.get("code")
    if not isinstance(code, str) or not code:
        raise MessageParseError("Instrument entry without a code", expected_type="str")

    def num(camel: str, snake: str) -> float:
        value = _field(data, camel, snake)
        return 0.0 if value is None else _safe_float(value, snake)

    def count(camel: str, snake: str) -> int:
        value = _field(data, camel, snake)
        return 0 if value is None else _safe_int(value, snake)

    return Instrument(
        code=code,
        name=str(data.get("name") or ""),
        price=num("price", "price"),
        change=num("change", "change"),
        percent_change=num("percentChange", "percent_change"),
        total_volume=count("totalVolume", "total_volume"),
        value=num("value", "value"),
        total_freq=count("totalFreq", "total_freq"),
    )


def parse_batch(data: Mapping[str, Any]) -> RecordBatch:
    """Parse a decoded response message into a RecordBatch."""
    if not isinstance(data, Mapping):
        raise MessageParseError(
            f"Response must be an object, got {type(data).__name__}",
            expected_type="object",
        )

    raw_code = data.get("code", 0)
    code = _safe_int(raw_code, "code")

    instruments: Optional[tuple[Instrument, ...]] = None
    raw_data = data.get("data")
    if raw_data is not None:
        if not isinstance(raw_data, list):
            raise MessageParseError(
                f"Response data must be a list, got {type(raw_data).__name__}",
                expected_type="list",
            )
        instruments = tuple(parse_instrument(entry) for entry in raw_data)

    message = data.get("message") or ""
    return RecordBatch(code=code, instruments=instruments, message=str(message))


class JsonBatchCodec:
    """Codec for ``application/grpc-web+json`` payloads."""

    content_type = GRPC_WEB_JSON

    def encode_request(self, parameters: SubscriptionParameters) -> bytes:
        return orjson.dumps(parameters.to_request())

    def decode_batch(self, payload: bytes) -> RecordBatch:
        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            raise MessageParseError(
                f"Invalid JSON payload: {e}",
                raw_data=payload,
                expected_type="json",
            ) from e

        batch = parse_batch(data)
        logger.debug(f"Decoded batch: code={batch.code}, instruments={len(batch)}")
        return batch
