"""
Configuration types for the market stream client.

Provides immutable, validated configuration dataclasses for the subscription,
the transport and the controller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from markettrend.stream.errors import ConfigurationError


class Universe(str, Enum):
    """Named stock universes the server can filter on."""

    ALL = "all"
    IDX30 = "idx30"
    LQ45 = "lq45"
    KOMPAS100 = "kompas100"
    SRI_KEHATI = "sri-kehati"

    @property
    def label(self) -> str:
        return _UNIVERSE_LABELS[self]


class SortKey(str, Enum):
    """Fields the server can sort the instrument list by."""

    PERCENT_CHANGE = "percent_change"
    VOLUME = "volume"
    VALUE = "value"
    FREQUENCY = "frequency"
    CODE = "code"

    @property
    def label(self) -> str:
        return _SORT_LABELS[self]


_UNIVERSE_LABELS: dict[Universe, str] = {
    Universe.ALL: "All Stocks",
    Universe.IDX30: "IDX30",
    Universe.LQ45: "LQ45",
    Universe.KOMPAS100: "Kompas100",
    Universe.SRI_KEHATI: "SRI-KEHATI",
}

_SORT_LABELS: dict[SortKey, str] = {
    SortKey.PERCENT_CHANGE: "% Change",
    SortKey.VOLUME: "Volume",
    SortKey.VALUE: "Value",
    SortKey.FREQUENCY: "Frequency",
    SortKey.CODE: "Code",
}

# Envoy gRPC-Web proxy in front of the data stream service
DEFAULT_ENDPOINT = "http://localhost:8080"
DEFAULT_METHOD_PATH = "/datastream.DataStream/StreamData"
GRPC_WEB_JSON = "application/grpc-web+json"


@dataclass(frozen=True)
class SubscriptionParameters:
    """
    What the controller should currently be subscribed to.

    Empty strings are legal and mean "no filter" / "default sort".
    """

    filter: str = Universe.ALL.value
    sort_key: str = SortKey.PERCENT_CHANGE.value

    def __post_init__(self) -> None:
        # Accept enum members, store their wire value
        object.__setattr__(self, "filter", _coerce(self.filter, Universe, "filter"))
        object.__setattr__(self, "sort_key", _coerce(self.sort_key, SortKey, "sort_key"))

    def to_request(self) -> dict[str, str]:
        """Request message body (field names as the server expects them)."""
        return {"filter": self.filter, "sort": self.sort_key}


def _coerce(value: Any, allowed: type[Enum], field_name: str) -> str:
    if isinstance(value, allowed):
        return str(value.value)
    if not isinstance(value, str):
        raise ConfigurationError(
            f"{field_name} must be a string",
            field=field_name,
            value=value,
        )
    if value and value not in {member.value for member in allowed}:
        raise ConfigurationError(
            f"unknown {field_name}: {value!r}",
            field=field_name,
            value=value,
        )
    return value


@dataclass(frozen=True)
class TransportConfig:
    """Configuration for the gRPC-Web streaming transport."""

    endpoint: str = DEFAULT_ENDPOINT
    method_path: str = DEFAULT_METHOD_PATH

    # Connection behavior. No total timeout: the stream is unbounded.
    connect_timeout_s: float = 10.0
    read_timeout_s: Optional[float] = None
    max_frame_bytes: int = 16 * 1024 * 1024

    headers: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(
                "endpoint must be an http(s) URL",
                field="endpoint",
                value=self.endpoint,
            )
        if not self.method_path.startswith("/"):
            raise ConfigurationError(
                "method_path must start with '/'",
                field="method_path",
                value=self.method_path,
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.read_timeout_s is not None and self.read_timeout_s <= 0:
            raise ConfigurationError(
                "read_timeout_s must be positive",
                field="read_timeout_s",
                value=self.read_timeout_s,
            )
        if self.max_frame_bytes <= 0:
            raise ConfigurationError(
                "max_frame_bytes must be positive",
                field="max_frame_bytes",
                value=self.max_frame_bytes,
            )

    @property
    def url(self) -> str:
        return self.endpoint.rstrip("/") + self.method_path


@dataclass(frozen=True)
class ControllerConfig:
    """Configuration for the subscription controller."""

    # Coalescing window for parameter-driven restarts
    restart_delay_s: float = 0.1

    # Response code that marks a displayable batch
    success_code: int = 200

    # Wipe the displayed list when a new session starts
    clear_on_connect: bool = True

    def __post_init__(self) -> None:
        if self.restart_delay_s < 0:
            raise ConfigurationError(
                "restart_delay_s must be non-negative",
                field="restart_delay_s",
                value=self.restart_delay_s,
            )


@dataclass(frozen=True)
class StreamClientConfig:
    """
    Immutable top-level configuration for the stream client.

    Example:
        config = StreamClientConfig(
            transport=TransportConfig(endpoint="http://localhost:8080"),
            parameters=SubscriptionParameters(filter="idx30"),
        )
    """

    transport: TransportConfig = field(default_factory=TransportConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    parameters: SubscriptionParameters = field(default_factory=SubscriptionParameters)
