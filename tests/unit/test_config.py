"""
Unit tests for configuration.
"""

import pytest

from docqueue.config import Settings, auto_consumer_version


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Keep ambient environment and .env files out of these tests."""
    monkeypatch.chdir(tmp_path)
    for name in ("VERSION", "CONSUMER_VERSION", "NODE_NAME", "QUEUE_CHANNEL_COUNT"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        """Test the documented timing defaults."""
        settings = Settings()

        assert settings.queue_channel_count == 10
        assert settings.queue_history_ttl_seconds == 604800
        assert settings.channel_backoff_window_seconds == 3.0
        assert settings.channel_log_limit == 5
        assert settings.connector_warmup_seconds == 3.0
        assert settings.connector_reclaim_every_cycles == 100
        assert settings.connector_version_drift_minutes == 15
        assert settings.connector_stale_lease_minutes == 60

    def test_version_from_environment(self, monkeypatch: pytest.MonkeyPatch):
        """Test the consumer version is read from the VERSION variable."""
        monkeypatch.setenv("VERSION", "2024.06.1")

        assert Settings().consumer_version == "2024.06.1"

    def test_consumer_version_takes_precedence(self, monkeypatch: pytest.MonkeyPatch):
        """Test the long variable name wins over VERSION."""
        monkeypatch.setenv("VERSION", "short")
        monkeypatch.setenv("CONSUMER_VERSION", "long")

        assert Settings().consumer_version == "long"

    def test_auto_version_is_numeric(self):
        """Test the generated version when none is configured."""
        version = Settings().consumer_version

        assert version.isdigit()
        assert 0 <= int(version) < 999999

    def test_auto_consumer_version_range(self):
        """Test the generator stays within six digits."""
        for _ in range(50):
            assert 0 <= int(auto_consumer_version()) < 999999

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch):
        """Test plain field overrides."""
        monkeypatch.setenv("NODE_NAME", "worker-7")
        monkeypatch.setenv("QUEUE_CHANNEL_COUNT", "3")

        settings = Settings()

        assert settings.node_name == "worker-7"
        assert settings.queue_channel_count == 3
