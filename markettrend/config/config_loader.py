"""
Purpose:
    - Loads a client config file (TOML)
    - Applies dotted KEY=VALUE overrides
    - Validates and converts it into a StreamClientConfig

Layout:

    [transport]
    endpoint = "http://localhost:8080"

    [controller]
    restart_delay_s = 0.1

    [subscription]
    filter = "idx30"
    sort_key = "percent_change"
"""

import tomllib
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from markettrend.stream.config import (
    DEFAULT_ENDPOINT,
    DEFAULT_METHOD_PATH,
    ControllerConfig,
    SortKey,
    StreamClientConfig,
    SubscriptionParameters,
    TransportConfig,
    Universe,
)
from markettrend.stream.errors import ConfigurationError


class TransportSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    endpoint: str = DEFAULT_ENDPOINT
    method_path: str = DEFAULT_METHOD_PATH
    connect_timeout_s: float = 10.0
    read_timeout_s: Optional[float] = None
    max_frame_bytes: int = 16 * 1024 * 1024
    headers: Dict[str, str] = Field(default_factory=dict)


class ControllerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    restart_delay_s: float = 0.1
    success_code: int = 200
    clear_on_connect: bool = True


class SubscriptionSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filter: str = Universe.ALL.value
    sort_key: str = SortKey.PERCENT_CHANGE.value


class ClientSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transport: TransportSettings = Field(default_factory=TransportSettings)
    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    subscription: SubscriptionSettings = Field(default_factory=SubscriptionSettings)

    def to_config(self) -> StreamClientConfig:
        t = self.transport
        return StreamClientConfig(
            transport=TransportConfig(
                endpoint=t.endpoint,
                method_path=t.method_path,
                connect_timeout_s=t.connect_timeout_s,
                read_timeout_s=t.read_timeout_s,
                max_frame_bytes=t.max_frame_bytes,
                headers=tuple(sorted(t.headers.items())),
            ),
            controller=ControllerConfig(**self.controller.model_dump()),
            parameters=SubscriptionParameters(
                filter=self.subscription.filter,
                sort_key=self.subscription.sort_key,
            ),
        )


def insert_path(tree: Dict[str, Any], dotted_path: str, value: Any) -> None:
    """Populate ``tree`` with ``value`` located at ``dotted_path``."""

    segments = [segment.strip() for segment in dotted_path.split(".") if segment.strip()]
    if not segments:
        raise ValueError("Override keys must contain at least one non-empty segment")

    cursor: Dict[str, Any] = tree
    for segment in segments[:-1]:
        existing = cursor.get(segment)
        if existing is None:
            next_node: Dict[str, Any] = {}
            cursor[segment] = next_node
            cursor = next_node
        elif isinstance(existing, dict):
            cursor = existing
        else:
            raise ValueError(
                f"Cannot override nested path '{dotted_path}': segment '{segment}' is already a value"
            )

    leaf = segments[-1]
    if isinstance(cursor.get(leaf), dict):
        raise ValueError(f"Cannot assign value to '{dotted_path}': '{leaf}' is a section")
    cursor[leaf] = value


def parse_overrides(pairs: Iterable[str]) -> Dict[str, Any]:
    """Turn ``["transport.endpoint=http://x", ...]`` into a nested mapping."""
    overrides: Dict[str, Any] = {}
    for item in pairs:
        key, sep, value = item.partition("=")
        if sep == "":
            raise ValueError(f"--set requires KEY=VALUE format (got {item!r})")
        # pydantic coerces "0.5" / "true" to the field type
        insert_path(overrides, key, value.strip())
    return overrides


def _merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """
    Config-loader; loading toml file.
    """

    def __init__(self, base_dir: str = ".") -> None:
        self._base_dir = base_dir

    def load(self, file_name: str) -> dict[str, Any]:
        path = Path(file_name)
        if not path.is_absolute():
            path = Path(self._base_dir) / file_name

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("rb") as f:
            return tomllib.load(f)

    def load_settings(
        self,
        file_name: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> ClientSettings:
        raw: Dict[str, Any] = self.load(file_name) if file_name else {}
        if overrides:
            raw = _merge(raw, overrides)
        try:
            return ClientSettings.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid client config: {e}") from e

    def load_client_config(
        self,
        file_name: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> StreamClientConfig:
        return self.load_settings(file_name, overrides).to_config()
