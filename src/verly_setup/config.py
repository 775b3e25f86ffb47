"""Configuration for the setup workflow.

Configuration is a YAML document (or a plain dict) with environment
variable substitution applied to every string value:

- ``${VAR}``: value of VAR, error if unset
- ``${VAR:default}`` / ``${VAR:-default}``: VAR or the default

A value that is exactly one ``${...}`` reference is type-converted
(``"true"`` -> True, ``"30"`` -> 30), so numeric settings can come from
the environment.

Example file:
    ```yaml
    backend: http
    api:
      base_url: ${VERLY_API_BASE_URL:-http://localhost:8080/api/v1}
      auth_token: ${VERLY_API_TOKEN:}
      timeout: 30
    retry:
      max_attempts: 3
      initial_delay: 0.5
    cache:
      directory: ~/.cache/verly-setup
      ttl_seconds: 1800
    polling:
      interval: 1.0
    processing_timeout: 120
    ```
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dataknobs_common.retry import BackoffStrategy, RetryConfig
from dataknobs_config import ConfigError, VariableSubstitution

from .exceptions import SetupError
from .progress import DEFAULT_TIMELINE, ProgressStage

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "VERLY_SETUP_CONFIG"

DEFAULT_USE_CASE = "General AI Agent"


class ConfigurationError(SetupError, ConfigError):
    """Raised when configuration is invalid or missing."""


def retry_config_from_dict(config: dict[str, Any]) -> RetryConfig:
    """Build the read retry policy from the ``retry`` section."""
    strategy = config.get("backoff_strategy", BackoffStrategy.EXPONENTIAL.value)
    return RetryConfig(
        max_attempts=int(config.get("max_attempts", 3)),
        initial_delay=float(config.get("initial_delay", 0.5)),
        max_delay=float(config.get("max_delay", 10.0)),
        backoff_strategy=(
            strategy if isinstance(strategy, BackoffStrategy) else BackoffStrategy(strategy)
        ),
        backoff_multiplier=float(config.get("backoff_multiplier", 2.0)),
        jitter_range=float(config.get("jitter_range", 0.1)),
    )


@dataclass
class ApiConfig:
    """Connection settings for the HTTP backend."""

    base_url: str = "http://localhost:8080/api/v1"
    auth_token: str | None = None
    auth_header: str = "Authorization"
    timeout: float = 30.0
    verify_ssl: bool = True

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ApiConfig:
        return cls(
            base_url=str(config.get("base_url", "http://localhost:8080/api/v1")),
            auth_token=config.get("auth_token") or None,
            auth_header=config.get("auth_header", "Authorization"),
            timeout=float(config.get("timeout", 30.0)),
            verify_ssl=bool(config.get("verify_ssl", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "auth_token": self.auth_token,
            "auth_header": self.auth_header,
            "timeout": self.timeout,
            "verify_ssl": self.verify_ssl,
        }


@dataclass
class CacheConfig:
    """Where and how long setup results are cached.

    Attributes:
        directory: Directory for file storage; None keeps entries in memory
        ttl_seconds: Age after which an entry is ignored
        namespace: Key prefix for entries
    """

    directory: Path | None = None
    ttl_seconds: float = 30 * 60
    namespace: str = "setup"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> CacheConfig:
        directory = config.get("directory")
        return cls(
            directory=Path(directory).expanduser() if directory else None,
            ttl_seconds=float(config.get("ttl_seconds", 30 * 60)),
            namespace=str(config.get("namespace", "setup")),
        )


@dataclass
class PollingConfig:
    """Prompt polling interval, in seconds."""

    interval: float = 1.0

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PollingConfig:
        interval = float(config.get("interval", 1.0))
        if interval <= 0:
            raise ConfigurationError(
                "Poll interval must be positive", context={"interval": interval}
            )
        return cls(interval=interval)


@dataclass
class ProgressConfig:
    """Staged-progress labels and their offsets in seconds."""

    timeline: tuple[ProgressStage, ...] = DEFAULT_TIMELINE

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ProgressConfig:
        stages = config.get("timeline")
        if not stages:
            return cls()
        return cls(
            timeline=tuple(
                ProgressStage(str(item["label"]), float(item["offset"])) for item in stages
            )
        )


@dataclass
class SetupConfig:
    """Complete configuration for a setup controller.

    Attributes:
        backend: Backend type, ``http`` or ``memory``
        api: HTTP connection settings
        retry: Retry policy for idempotent reads
        cache: Setup result cache settings
        polling: Prompt polling settings
        progress: Staged-progress timeline
        processing_timeout: Upper bound in seconds for step-2 processing
        channel: Prompt channel edited by the wizard
        default_use_case: Use-case preselected on step 1
        surface_completion_errors: Show a warning toast when the completion
            write fails (it is only logged otherwise)
        chatbot_list_path: Path template for the chatbot list, formatted
            with ``workspace_id``
    """

    backend: str = "http"
    api: ApiConfig = field(default_factory=ApiConfig)
    retry: RetryConfig = field(default_factory=lambda: retry_config_from_dict({}))
    cache: CacheConfig = field(default_factory=CacheConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    processing_timeout: float = 120.0
    channel: str = "WIDGET"
    default_use_case: str = DEFAULT_USE_CASE
    surface_completion_errors: bool = False
    chatbot_list_path: str = "/{workspace_id}/chatbot"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> SetupConfig:
        """Create from a configuration dictionary.

        Environment references are substituted before parsing.

        Raises:
            ConfigurationError: If a value is invalid or a required
                environment variable is unset.
        """
        try:
            data = VariableSubstitution().substitute(config or {})
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        try:
            return cls(
                backend=str(data.get("backend", "http")),
                api=ApiConfig.from_config(data.get("api") or {}),
                retry=retry_config_from_dict(data.get("retry") or {}),
                cache=CacheConfig.from_config(data.get("cache") or {}),
                polling=PollingConfig.from_config(data.get("polling") or {}),
                progress=ProgressConfig.from_config(data.get("progress") or {}),
                processing_timeout=float(data.get("processing_timeout", 120.0)),
                channel=str(data.get("channel", "WIDGET")),
                default_use_case=str(data.get("default_use_case", DEFAULT_USE_CASE)),
                surface_completion_errors=bool(data.get("surface_completion_errors", False)),
                chatbot_list_path=str(data.get("chatbot_list_path", "/{workspace_id}/chatbot")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid setup configuration: {e}") from e

    @classmethod
    def load(cls, path: str | Path | None = None) -> SetupConfig:
        """Load configuration from a YAML file.

        Args:
            path: Config file; defaults to ``$VERLY_SETUP_CONFIG``. With
                neither, the built-in defaults are returned.

        Raises:
            ConfigurationError: If the file is missing or malformed.
        """
        if path is None:
            env_path = os.environ.get(CONFIG_PATH_ENV)
            if not env_path:
                logger.debug("No setup config file given, using defaults")
                return cls()
            path = env_path

        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigurationError(
                f"Setup config file not found: {config_path}",
                context={"path": str(config_path)},
            )
        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Malformed setup config {config_path}: {e}",
                    context={"path": str(config_path)},
                ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Setup config {config_path} must be a mapping",
                context={"path": str(config_path)},
            )
        logger.info("Loaded setup config from %s", config_path)
        return cls.from_config(data)

    def chatbot_list_url(self, workspace_id: str) -> str:
        return self.chatbot_list_path.format(workspace_id=workspace_id)
