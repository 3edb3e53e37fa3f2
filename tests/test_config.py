"""Tests for provider configuration loading."""

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from ratefeed.core.config import (
    ConfigManager,
    Credentials,
    RateLimitConfig,
    UrlConfig,
    get_default_configs,
    get_provider_config,
)


class TestDefaults:

    def test_every_provider_has_a_default(self):
        assert set(get_default_configs()) == {"lex", "ogilvie", "drivalia", "fleet_marque", "venus", "ald"}

    def test_capabilities(self):
        configs = get_default_configs()
        assert configs["lex"].supports("quote")
        assert not configs["lex"].supports("export")
        assert configs["ogilvie"].supports("export")
        assert configs["fleet_marque"].supports("scrape")
        assert configs["venus"].supports("upload")
        assert not configs["venus"].supports("teleport")

    def test_unknown_provider(self):
        with pytest.raises(KeyError):
            get_provider_config("trabant")


class TestConfigManager:

    def test_missing_directory_keeps_defaults(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "absent"))

        assert sorted(manager.list_providers()) == ["ald", "drivalia", "fleet_marque", "lex", "ogilvie", "venus"]

    def test_file_overrides_default(self, tmp_path):
        (tmp_path / "ogilvie.yaml").write_text(yaml.safe_dump({
            'id': "ogilvie",
            'rate_limit': {'max_delay': 0.5},
            'settings': {'page_size': 25},
        }))

        config = ConfigManager(str(tmp_path)).get("ogilvie")

        assert config.rate_limit.max_delay == 0.5
        assert config.rate_limit.min_delay == 0.1
        assert config.settings == {'page_size': 25}
        assert config.urls.base_url == "https://www.ogilviefleet.co.uk"
        assert config.supports("export")

    def test_invalid_file_skipped(self, tmp_path):
        (tmp_path / "lex.yaml").write_text(yaml.safe_dump({
            'id': "lex",
            'rate_limit': {'min_delay': 5.0, 'max_delay': 1.0},
        }))

        config = ConfigManager(str(tmp_path)).get("lex")

        assert config.rate_limit.min_delay == 0.5

    def test_new_provider_file(self, tmp_path):
        (tmp_path / "extra.yaml").write_text(yaml.safe_dump({
            'id': "extra",
            'name': "Extra Leasing",
            'urls': {'base_url': "https://extra.example.com"},
        }))

        config = ConfigManager(str(tmp_path)).get("extra")

        assert config.name == "Extra Leasing"
        assert config.rate_limit.max_retries == 3

    def test_save_and_reload(self, tmp_path):
        manager = ConfigManager(str(tmp_path))
        config = get_default_configs()["venus"]
        config.notes = "Matrix workbooks arrive by email"

        path = manager.save_config(config)

        assert path.name == "venus.json"
        assert ConfigManager(str(tmp_path)).get("venus").notes == "Matrix workbooks arrive by email"


class TestRateLimitConfig:

    def test_inverted_band(self):
        with pytest.raises(PydanticValidationError):
            RateLimitConfig(min_delay=3.0, max_delay=1.0)

    def test_bounds(self):
        with pytest.raises(PydanticValidationError):
            RateLimitConfig(concurrency=0)


class TestUrlConfig:

    def test_join(self):
        urls = UrlConfig(base_url="https://portal.example.com/")
        assert urls.join("/api/quote") == "https://portal.example.com/api/quote"
        assert urls.join("https://other.example.com/x") == "https://other.example.com/x"

    def test_api_base_preferred(self):
        urls = UrlConfig(base_url="https://portal.example.com", api_base="https://api.example.com/v1")
        assert urls.join("quote") == "https://api.example.com/v1/quote"


class TestCredentials:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RATEFEED_FLEET_MARQUE_USERNAME", "broker@example.com")
        monkeypatch.setenv("RATEFEED_FLEET_MARQUE_PASSWORD", "s3cret")

        credentials = Credentials.from_env("fleet_marque")

        assert credentials.username == "broker@example.com"
        assert credentials.password == "s3cret"

    def test_missing_password(self, monkeypatch):
        monkeypatch.setenv("RATEFEED_LEX_USERNAME", "broker")
        monkeypatch.delenv("RATEFEED_LEX_PASSWORD", raising=False)

        assert Credentials.from_env("lex") is None

    def test_password_not_in_repr(self):
        assert "s3cret" not in repr(Credentials(username="u", password="s3cret"))
