"""Tests for configuration classes."""

import pytest

from attachsync.core.config import ServerConfig, SyncConfig


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_strips_trailing_slash(self) -> None:
        """Server URL should be normalized."""
        config = ServerConfig(server_url="https://sync.example.com/", token="t")
        assert config.server_url == "https://sync.example.com"

    def test_defaults(self) -> None:
        """Timeout and SSL verification have safe defaults."""
        config = ServerConfig(server_url="http://localhost:8000", token="t")
        assert config.timeout == 30.0
        assert config.verify_ssl is True

    def test_is_secure(self) -> None:
        """HTTPS URLs are reported as secure."""
        assert ServerConfig("https://a", "t").is_secure
        assert not ServerConfig("http://a", "t").is_secure


class TestSyncConfig:
    """Tests for SyncConfig."""

    def test_defaults(self) -> None:
        """Defaults match the documented policy."""
        config = SyncConfig()
        assert config.max_retries == 3
        assert config.worker_count == 3
        assert config.claim_batch_size == 2
        assert config.max_backoff == 300.0
        assert config.connector_batch_size == 25
        assert config.archive_after_days == 90

    def test_from_dict_ignores_unknown_keys(self) -> None:
        """Unknown settings are ignored."""
        config = SyncConfig.from_dict({"max_retries": 5, "colour": "blue"})
        assert config.max_retries == 5

    def test_from_dict_coerces_strings(self) -> None:
        """Values read from the command line are coerced to field types."""
        config = SyncConfig.from_dict({"max_retries": "7", "poll_interval": "12.5"})
        assert config.max_retries == 7
        assert isinstance(config.max_retries, int)
        assert config.poll_interval == 12.5

    @pytest.mark.parametrize(
        "settings",
        [
            {"max_retries": 0},
            {"worker_count": 0},
            {"jitter": 1.5},
            {"poll_interval": 0},
            {"backoff_multiplier": 0.5},
        ],
    )
    def test_rejects_out_of_range(self, settings: dict) -> None:
        """Invalid bounds raise ValueError."""
        with pytest.raises(ValueError):
            SyncConfig.from_dict(settings)

    def test_to_dict_round_trip(self) -> None:
        """to_dict output can rebuild the same config."""
        config = SyncConfig(max_retries=4, jitter=0.1)
        assert SyncConfig.from_dict(config.to_dict()) == config
