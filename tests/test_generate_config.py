"""Unit tests for the generate_config script."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from registry_supervisor.config import SupervisorConfig
from registry_supervisor.generate_config import check_flags_ready, generate_config, main
from registry_supervisor.models import ConfigurationSnapshot


@pytest.fixture
def config(tmp_path):
    return SupervisorConfig(
        flags_api_url="http://localhost:42069",
        aggregators_app_path=str(tmp_path),
        database_url=str(tmp_path / "flags.db"),
    )


@pytest.fixture
def snapshot():
    return ConfigurationSnapshot(
        addresses_by_chain={"base": ("0x" + "aa" * 20,), "ethereum": ("0x" + "bb" * 20,)},
        start_blocks={"base": 5000000, "ethereum": 16000000},
        identity="0123abcd" + "0" * 56,
        schema_name="chainlink_agg_2c_2a_0123abcd",
    )


def mock_response(status_code, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


@pytest.mark.parametrize(
    "status_code, text, expected",
    [
        (200, "", True),
        (503, "Historical indexing is not complete", False),
        (200, "Historical indexing is not complete", False),
    ],
)
def test_check_flags_ready(status_code, text, expected):
    with patch("registry_supervisor.generate_config.requests.get") as mock_get:
        mock_get.return_value = mock_response(status_code, text)

        assert check_flags_ready("http://localhost:42069/") is expected

        mock_get.assert_called_once_with("http://localhost:42069/ready", timeout=5)


def test_check_flags_ready_connection_error():
    with patch(
        "registry_supervisor.generate_config.requests.get",
        side_effect=requests.ConnectionError("refused"),
    ):
        assert check_flags_ready("http://localhost:42069") is False


def test_generate_config_success(config, snapshot):
    with (
        patch("registry_supervisor.generate_config.requests.get") as mock_get,
        patch("registry_supervisor.generate_config.AggregatorDiscovery") as mock_discovery,
        patch("registry_supervisor.generate_config.ConfigGenerator") as mock_generator,
    ):
        mock_get.return_value = mock_response(200)
        discovery = mock_discovery.return_value
        discovery.discover.return_value = ["agg"]
        discovery.last_error = None
        mock_generator.return_value.update_config.return_value = snapshot

        assert generate_config(config) is True

        mock_discovery.assert_called_once_with(db_url=config.database_url)
        mock_generator.assert_called_once_with(config.aggregators_app_path)
        mock_generator.return_value.update_config.assert_called_once_with(["agg"])


def test_generate_config_runs_when_not_ready(config, snapshot):
    with (
        patch("registry_supervisor.generate_config.requests.get") as mock_get,
        patch("registry_supervisor.generate_config.AggregatorDiscovery") as mock_discovery,
        patch("registry_supervisor.generate_config.ConfigGenerator") as mock_generator,
    ):
        mock_get.return_value = mock_response(503, "Historical indexing is not complete")
        mock_discovery.return_value.discover.return_value = []
        mock_discovery.return_value.last_error = None
        mock_generator.return_value.update_config.return_value = snapshot

        assert generate_config(config) is True


def test_generate_config_discovery_failure(config):
    with (
        patch("registry_supervisor.generate_config.requests.get") as mock_get,
        patch("registry_supervisor.generate_config.AggregatorDiscovery") as mock_discovery,
        patch("registry_supervisor.generate_config.ConfigGenerator") as mock_generator,
    ):
        mock_get.return_value = mock_response(200)
        mock_discovery.return_value.discover.return_value = []
        mock_discovery.return_value.last_error = RuntimeError("connection refused")

        assert generate_config(config) is False
        mock_generator.assert_not_called()


def test_generate_config_invalid_config(config):
    with (
        patch("registry_supervisor.generate_config.requests.get") as mock_get,
        patch("registry_supervisor.generate_config.AggregatorDiscovery") as mock_discovery,
        patch("registry_supervisor.generate_config.ConfigGenerator") as mock_generator,
    ):
        mock_get.return_value = mock_response(200)
        mock_discovery.return_value.discover.return_value = ["agg"]
        mock_discovery.return_value.last_error = None
        mock_generator.return_value.update_config.return_value = None

        assert generate_config(config) is False


def test_main_exits_non_zero_on_failure():
    with (
        patch("registry_supervisor.generate_config.setup_logging"),
        patch("registry_supervisor.generate_config.generate_config", return_value=False),
        pytest.raises(SystemExit) as exc_info,
    ):
        main()

    assert exc_info.value.code == 1


def test_main_exits_non_zero_on_error():
    with (
        patch("registry_supervisor.generate_config.setup_logging"),
        patch(
            "registry_supervisor.generate_config.generate_config",
            side_effect=RuntimeError("boom"),
        ),
        pytest.raises(SystemExit) as exc_info,
    ):
        main()

    assert exc_info.value.code == 1
