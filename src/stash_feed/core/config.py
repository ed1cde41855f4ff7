"""
Configuration module for the stash feed client.

This module provides configuration loading and validation for the feed
endpoint, the rate limit headers it reports and the retry policy applied
when the server throttles.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(ValueError):
    """Raised when a loaded configuration is not usable."""


@dataclass
class HeaderConfig:
    """Names of the response headers that carry rate limit information."""

    rule: str = "X-Rate-Limit-Ip"
    state: str = "X-Rate-Limit-Ip-State"
    retry_after: str = "Retry-After"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HeaderConfig":
        """Create HeaderConfig from dictionary, rejecting unknown header keys."""
        if not isinstance(data, dict):
            raise ConfigValidationError(f"headers must be a mapping, got {type(data).__name__}")

        unknown = set(data) - {"rule", "state", "retry_after"}
        if unknown:
            raise ConfigValidationError(f"Unknown header config keys: {sorted(unknown)}")

        return cls(**data)


@dataclass
class RetryConfig:
    """Bounded retry policy for a single page fetch."""

    max_attempts: int = 6  # total, including the first request
    base_backoff: float = 1.0
    max_backoff: float = 60.0
    retry_after_padding: int = 1  # added to Retry-After so 0 still waits

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryConfig":
        """Create RetryConfig from dictionary."""
        return cls(
            max_attempts=data.get("max_attempts", 6),
            base_backoff=data.get("base_backoff", 1.0),
            max_backoff=data.get("max_backoff", 60.0),
            retry_after_padding=data.get("retry_after_padding", 1),
        )


@dataclass
class FeedConfig:
    """Configuration for the public stash feed."""

    api_base: str = "https://api.pathofexile.com"
    endpoint: str = "public-stash-tabs"
    initial_cursor: str = "0"
    product: str = "stash-feed"
    version: str = "0.1.0"
    contact: str = "admin@example.com"
    request_timeout: float | None = None  # None keeps the transport default
    cursor_path: str | None = None
    headers: HeaderConfig = field(default_factory=HeaderConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def user_agent(self) -> str:
        """User-Agent value required by the feed's API policy."""
        return f"OAuth {self.product}/{self.version} (contact: {self.contact})"

    @property
    def url(self) -> str:
        """Absolute URL of the feed endpoint, without query string."""
        return f"{self.api_base.rstrip('/')}/{self.endpoint.lstrip('/')}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedConfig":
        """Create FeedConfig from dictionary."""
        headers_data = data.get("headers", {})
        headers = HeaderConfig.from_dict(headers_data) if headers_data else HeaderConfig()

        retry_data = data.get("retry", {})
        retry = RetryConfig.from_dict(retry_data) if retry_data else RetryConfig()

        defaults = cls()
        return cls(
            api_base=data.get("api_base", defaults.api_base),
            endpoint=data.get("endpoint", defaults.endpoint),
            initial_cursor=str(data.get("initial_cursor", defaults.initial_cursor)),
            product=data.get("product", defaults.product),
            version=str(data.get("version", defaults.version)),
            contact=data.get("contact", defaults.contact),
            request_timeout=data.get("request_timeout"),
            cursor_path=data.get("cursor_path"),
            headers=headers,
            retry=retry,
        )


DEFAULT_CONFIG = FeedConfig()


def get_default_config() -> FeedConfig:
    """Return a fresh copy of the default configuration."""
    return FeedConfig()


def load_config(config_path: str | Path | None = None) -> FeedConfig:
    """
    Load feed configuration from YAML file.

    The file holds a single top-level ``feed`` mapping. Keys that are not
    present keep their defaults.

    Args:
        config_path: Path to config file. If None, uses default location.

    Returns:
        FeedConfig for the stash feed

    Raises:
        yaml.YAMLError: If config file is invalid YAML
        ConfigValidationError: If config validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parents[3] / "config" / "feed.yml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        # Return default config if file doesn't exist
        return get_default_config()

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    if not data:
        return get_default_config()

    config = FeedConfig.from_dict(data.get("feed", {}))
    validate_config(config)
    return config


def validate_config(config: FeedConfig) -> None:
    """
    Validate configuration.

    Args:
        config: Configuration to validate

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    if not config.api_base:
        raise ConfigValidationError("Feed must have an api_base")

    if not config.api_base.startswith(("http://", "https://")):
        raise ConfigValidationError(
            f"Feed api_base must be an http(s) URL, got {config.api_base!r}"
        )

    if not config.endpoint:
        raise ConfigValidationError("Feed must have an endpoint")

    if not config.initial_cursor:
        raise ConfigValidationError("Feed initial_cursor must not be empty")

    if config.request_timeout is not None and config.request_timeout <= 0:
        raise ConfigValidationError("Feed request_timeout must be positive")

    retry = config.retry
    if retry.max_attempts < 1:
        raise ConfigValidationError("Retry max_attempts must be at least 1")

    if retry.base_backoff <= 0:
        raise ConfigValidationError("Retry base_backoff must be positive")

    if retry.max_backoff < retry.base_backoff:
        raise ConfigValidationError(
            "Retry max_backoff must not be smaller than base_backoff"
        )

    if retry.retry_after_padding < 1:
        raise ConfigValidationError(
            "Retry retry_after_padding must be at least 1 second"
        )

    for name in ("rule", "state", "retry_after"):
        if not getattr(config.headers, name):
            raise ConfigValidationError(f"Header name for {name} must not be empty")
