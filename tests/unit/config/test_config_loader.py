from pathlib import Path

import pytest

from markettrend.config.config_loader import ConfigLoader, insert_path, parse_overrides
from markettrend.stream.config import SubscriptionParameters
from markettrend.stream.errors import ConfigurationError

SAMPLE = """
[transport]
endpoint = "http://feed.internal:8080"
connect_timeout_s = 5.0

[transport.headers]
authorization = "Bearer abc"

[controller]
restart_delay_s = 0.25

[subscription]
filter = "idx30"
sort_key = "volume"
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "client.toml"
    path.write_text(SAMPLE, encoding="utf-8")
    return path


def test_load_client_config(config_file: Path):
    config = ConfigLoader().load_client_config(str(config_file))

    assert config.transport.endpoint == "http://feed.internal:8080"
    assert config.transport.connect_timeout_s == 5.0
    assert config.transport.headers == (("authorization", "Bearer abc"),)
    assert config.controller.restart_delay_s == 0.25
    assert config.controller.success_code == 200
    assert config.parameters == SubscriptionParameters(filter="idx30", sort_key="volume")


def test_relative_path_uses_base_dir(config_file: Path):
    raw = ConfigLoader(base_dir=str(config_file.parent)).load("client.toml")

    assert raw["subscription"]["filter"] == "idx30"


def test_defaults_without_file():
    config = ConfigLoader().load_client_config()

    assert config.parameters == SubscriptionParameters()
    assert config.transport.url == "http://localhost:8080/datastream.DataStream/StreamData"


def test_overrides_win_over_file(config_file: Path):
    overrides = parse_overrides(
        [
            "subscription.filter=lq45",
            "controller.restart_delay_s=0.5",
            "controller.clear_on_connect=false",
        ]
    )

    config = ConfigLoader().load_client_config(str(config_file), overrides)

    assert config.parameters.filter == "lq45"
    assert config.parameters.sort_key == "volume"
    assert config.controller.restart_delay_s == 0.5
    assert config.controller.clear_on_connect is False


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        ConfigLoader().load(str(tmp_path / "nope.toml"))


def test_unknown_key_rejected(tmp_path: Path):
    path = tmp_path / "bad.toml"
    path.write_text("[controller]\nrestart_delay = 1\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        ConfigLoader().load_settings(str(path))


def test_content_type_is_not_a_setting():
    """The wire content type comes from the codec."""
    with pytest.raises(ConfigurationError):
        ConfigLoader().load_client_config(
            overrides={"transport": {"content_type": "application/grpc-web+proto"}}
        )


def test_connect_clears_list_by_default():
    config = ConfigLoader().load_client_config()

    assert config.controller.clear_on_connect is True


def test_invalid_filter_rejected():
    with pytest.raises(ConfigurationError):
        ConfigLoader().load_client_config(overrides={"subscription": {"filter": "dow30"}})


def test_invalid_endpoint_rejected():
    with pytest.raises(ConfigurationError):
        ConfigLoader().load_client_config(overrides={"transport": {"endpoint": "ftp://x"}})


# --- overrides ---------------------------------------------------------------------------------


def test_parse_overrides_nested():
    assert parse_overrides(["transport.endpoint=http://x:1", "subscription.filter= idx30 "]) == {
        "transport": {"endpoint": "http://x:1"},
        "subscription": {"filter": "idx30"},
    }


def test_parse_overrides_requires_equals():
    with pytest.raises(ValueError):
        parse_overrides(["subscription.filter"])


def test_insert_path_conflicts():
    tree = {"transport": {"endpoint": "http://x"}}

    with pytest.raises(ValueError):
        insert_path(tree, "transport.endpoint.host", "y")
    with pytest.raises(ValueError):
        insert_path(tree, "transport", "y")
    with pytest.raises(ValueError):
        insert_path(tree, " . ", "y")
