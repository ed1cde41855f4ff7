"""
Unit tests for configuration loading and validation.
Tests cover:
- Defaults and the derived User-Agent / URL
- Loading valid config from YAML
- Validation errors for invalid configs
- Fallback to defaults when config is missing
"""
from pathlib import Path

import pytest
import yaml

from stash_feed.core.config import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    FeedConfig,
    HeaderConfig,
    RetryConfig,
    get_default_config,
    load_config,
    validate_config,
)


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestFeedConfig:
    """Test FeedConfig class."""

    def test_defaults(self):
        config = FeedConfig()

        assert config.api_base == "https://api.pathofexile.com"
        assert config.endpoint == "public-stash-tabs"
        assert config.initial_cursor == "0"
        assert config.request_timeout is None
        assert config.headers == HeaderConfig(
            rule="X-Rate-Limit-Ip",
            state="X-Rate-Limit-Ip-State",
            retry_after="Retry-After",
        )
        assert config.retry.max_attempts == 6
        assert config.retry.retry_after_padding == 1

    def test_user_agent(self):
        config = FeedConfig(product="pashe", version="2.0.0", contact="me@example.com")
        assert config.user_agent == "OAuth pashe/2.0.0 (contact: me@example.com)"

    def test_url_joins_cleanly(self):
        config = FeedConfig(api_base="https://api.example.com/", endpoint="/public-stash-tabs")
        assert config.url == "https://api.example.com/public-stash-tabs"

    def test_from_dict(self):
        config = FeedConfig.from_dict({
            "api_base": "https://api.test.com",
            "initial_cursor": 0,
            "version": 1.5,
            "headers": {"rule": "X-Rate-Limit-Client"},
            "retry": {"max_attempts": 3},
        })

        assert config.api_base == "https://api.test.com"
        assert config.initial_cursor == "0"
        assert config.version == "1.5"
        assert config.headers.rule == "X-Rate-Limit-Client"
        assert config.headers.state == "X-Rate-Limit-Ip-State"
        assert config.retry.max_attempts == 3
        assert config.retry.base_backoff == 1.0

    def test_default_config_copy(self):
        config = get_default_config()
        assert config == DEFAULT_CONFIG
        assert config is not DEFAULT_CONFIG


class TestLoadConfig:
    """Test loading configuration from YAML files."""

    def test_load_valid(self, tmp_path):
        path = write_yaml(tmp_path / "feed.yml", {
            "feed": {
                "product": "indexer",
                "cursor_path": "var/cursor",
                "retry": {"max_attempts": 4, "max_backoff": 30.0},
            }
        })

        config = load_config(path)

        assert config.product == "indexer"
        assert config.cursor_path == "var/cursor"
        assert config.retry.max_attempts == 4
        assert config.retry.max_backoff == 30.0

    def test_missing_file_falls_back(self, tmp_path):
        assert load_config(tmp_path / "missing.yml") == get_default_config()

    def test_empty_file_falls_back(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == get_default_config()

    def test_invalid_values_rejected(self, tmp_path):
        path = write_yaml(tmp_path / "bad.yml", {"feed": {"retry": {"max_attempts": 0}}})
        with pytest.raises(ConfigValidationError):
            load_config(path)

    def test_unknown_header_key_rejected(self, tmp_path):
        path = write_yaml(tmp_path / "bad.yml", {"feed": {"headers": {"rule": "X-Rate-Limit-Ip", "limit": "X"}}})
        with pytest.raises(ConfigValidationError, match="limit"):
            load_config(path)

    def test_header_overrides(self, tmp_path):
        path = write_yaml(tmp_path / "feed.yml", {"feed": {"headers": {"rule": "X-Rate-Limit-Client"}}})

        config = load_config(path)

        assert config.headers == HeaderConfig(rule="X-Rate-Limit-Client")

    def test_repository_config_is_valid(self):
        config = load_config(Path(__file__).parents[2] / "config" / "feed.yml")
        validate_config(config)
        assert config.retry.max_attempts == 6


class TestValidateConfig:
    """Test configuration validation."""

    def test_defaults_valid(self):
        validate_config(FeedConfig())

    @pytest.mark.parametrize(
        "config",
        [
            FeedConfig(api_base=""),
            FeedConfig(api_base="ftp://example.com"),
            FeedConfig(endpoint=""),
            FeedConfig(initial_cursor=""),
            FeedConfig(request_timeout=0),
            FeedConfig(retry=RetryConfig(max_attempts=0)),
            FeedConfig(retry=RetryConfig(base_backoff=0)),
            FeedConfig(retry=RetryConfig(base_backoff=10.0, max_backoff=5.0)),
            FeedConfig(retry=RetryConfig(retry_after_padding=0)),
            FeedConfig(headers=HeaderConfig(rule="")),
        ],
    )
    def test_invalid(self, config):
        with pytest.raises(ConfigValidationError):
            validate_config(config)

    def test_is_value_error(self):
        with pytest.raises(ValueError):
            validate_config(FeedConfig(endpoint=""))
