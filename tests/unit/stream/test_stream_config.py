"""
Unit tests for stream configuration types.
"""

import pytest

from markettrend.stream.config import (
    DEFAULT_METHOD_PATH,
    ControllerConfig,
    SortKey,
    StreamClientConfig,
    SubscriptionParameters,
    TransportConfig,
    Universe,
)
from markettrend.stream.errors import ConfigurationError


class TestSubscriptionParameters:
    """Test SubscriptionParameters validation."""

    def test_defaults(self) -> None:
        params = SubscriptionParameters()

        assert params.filter == "all"
        assert params.sort_key == "percent_change"
        assert params.to_request() == {"filter": "all", "sort": "percent_change"}

    def test_enum_members_stored_as_values(self) -> None:
        params = SubscriptionParameters(filter=Universe.SRI_KEHATI, sort_key=SortKey.FREQUENCY)

        assert params.filter == "sri-kehati"
        assert params.sort_key == "frequency"
        assert params == SubscriptionParameters(filter="sri-kehati", sort_key="frequency")

    def test_empty_strings_allowed(self) -> None:
        params = SubscriptionParameters(filter="", sort_key="")

        assert params.to_request() == {"filter": "", "sort": ""}

    def test_unknown_filter_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            SubscriptionParameters(filter="nasdaq100")

        assert exc_info.value.field == "filter"

    def test_unknown_sort_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            SubscriptionParameters(sort_key="market_cap")

    def test_non_string_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            SubscriptionParameters(filter=None)  # type: ignore[arg-type]

    def test_immutable(self) -> None:
        params = SubscriptionParameters()
        with pytest.raises(AttributeError):
            params.filter = "lq45"  # type: ignore[misc]


class TestOptionLabels:
    """Test the display labels of the option sets."""

    def test_universe_labels(self) -> None:
        assert [u.label for u in Universe] == ["All Stocks", "IDX30", "LQ45", "Kompas100", "SRI-KEHATI"]

    def test_sort_labels(self) -> None:
        assert SortKey.PERCENT_CHANGE.label == "% Change"
        assert SortKey.CODE.label == "Code"


class TestTransportConfig:
    """Test TransportConfig validation."""

    def test_default_url(self) -> None:
        assert TransportConfig().url == "http://localhost:8080" + DEFAULT_METHOD_PATH

    def test_trailing_slash_stripped(self) -> None:
        config = TransportConfig(endpoint="https://feed.example.com/", method_path="/svc/Method")

        assert config.url == "https://feed.example.com/svc/Method"

    def test_endpoint_must_be_http(self) -> None:
        with pytest.raises(ConfigurationError):
            TransportConfig(endpoint="localhost:8080")

    def test_method_path_must_be_absolute(self) -> None:
        with pytest.raises(ConfigurationError):
            TransportConfig(method_path="datastream.DataStream/StreamData")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"connect_timeout_s": 0},
            {"read_timeout_s": -1.0},
            {"max_frame_bytes": 0},
        ],
    )
    def test_invalid_limits(self, kwargs: dict) -> None:
        with pytest.raises(ConfigurationError):
            TransportConfig(**kwargs)


class TestControllerConfig:
    """Test ControllerConfig validation."""

    def test_defaults(self) -> None:
        config = ControllerConfig()

        assert config.restart_delay_s == 0.1
        assert config.success_code == 200
        assert config.clear_on_connect is True

    def test_negative_delay_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ControllerConfig(restart_delay_s=-0.1)

    def test_client_config_defaults(self) -> None:
        config = StreamClientConfig()

        assert config.parameters == SubscriptionParameters()
        assert config.transport == TransportConfig()
