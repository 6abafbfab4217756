"""Centralized configuration for the assessment orchestrator.

Every timing constant of the submission workflow lives here with its
documented default. Configuration can be loaded from YAML files and is
validated at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from assessment_orchestrator.utils.result import ConfigError, Err, Ok, Result

TOKEN_ENV_VAR = "ASSESSMENT_API_TOKEN"
API_URL_ENV_VAR = "ASSESSMENT_API_URL"


@dataclass
class ApiConfig:
    """HTTP endpoints of the assessment service."""

    base_url: str = "https://api.futureguide.id/api"
    submit_path: str = "/assessment/submit"
    status_path: str = "/assessment/status/{job_id}"
    result_path: str = "/results/{result_id}"
    archive_path: str = "/assessment/archive/{result_id}"
    health_path: str = "/assessment/health"
    user_agent: str = "assessment-orchestrator/1.0"


@dataclass
class SocketConfig:
    """Realtime channel settings."""

    url: str = "https://api.futureguide.id"
    enabled: bool = True
    socketio_path: str = "socket.io"
    transports: list[str] = field(default_factory=lambda: ["websocket", "polling"])


@dataclass
class PollingConfig:
    """Status endpoint polling settings."""

    interval: float = 2.0
    max_attempts: int = 90
    # Consecutive transient failures retried before PollingExhausted
    max_retries: int = 3


@dataclass
class TimeoutConfig:
    """Timeout settings for the workflow, in seconds."""

    overall: float = 180.0
    grace_period: float = 10.0
    socket_auth: float = 10.0
    socket_connect: float = 15.0
    heartbeat_interval: float = 20.0
    request: float = 30.0


@dataclass
class GuardConfig:
    """Duplicate submission protection."""

    entry_ttl: float = 300.0
    cooldown: float = 30.0


@dataclass
class RetryConfig:
    """Retry and backoff settings for idempotent requests."""

    max_attempts: int = 3
    backoff_factor: float = 2.0
    initial_delay: float = 0.5
    max_backoff: float = 10.0


@dataclass
class ResultFetchConfig:
    """Retries while a completed job's result document is not yet readable."""

    max_attempts: int = 8
    initial_delay: float = 1.5
    max_delay: float = 10.0


@dataclass
class AssessmentConfig:
    """Assessment content settings."""

    name: str = "AI-Driven Talent Mapping"
    question_count: int = 200


@dataclass
class StorageConfig:
    """Persistence settings."""

    state_dir: Optional[Path] = None
    store_file: str = "orchestrator-store.json"

    @property
    def store_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return Path(self.state_dir) / self.store_file


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"


@dataclass
class OrchestratorConfig:
    """
    Complete orchestrator configuration.

    This is the single source of truth for endpoints, timers and limits.
    """

    api: ApiConfig = field(default_factory=ApiConfig)
    socket: SocketConfig = field(default_factory=SocketConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    guard: GuardConfig = field(default_factory=GuardConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    results: ResultFetchConfig = field(default_factory=ResultFetchConfig)
    assessment: AssessmentConfig = field(default_factory=AssessmentConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> Result["OrchestratorConfig", ConfigError]:
        """
        Load configuration from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Result with loaded config or error
        """
        path = Path(path)

        if not path.exists():
            return Err(ConfigError(
                field="path",
                message=f"Configuration file not found: {path}",
            ))

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            return Err(ConfigError(
                field="yaml",
                message=f"Failed to parse YAML: {e}",
            ))
        except OSError as e:
            return Err(ConfigError(
                field="file",
                message=f"Failed to read config file: {e}",
            ))

        if not isinstance(data, dict):
            return Err(ConfigError(
                field="yaml",
                message="Top-level YAML value must be a mapping",
            ))

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result["OrchestratorConfig", ConfigError]:
        """
        Create configuration from a dictionary.

        Missing keys keep their defaults.

        Args:
            data: Configuration dictionary

        Returns:
            Result with loaded config or error
        """
        return cls().merged(data)

    def merged(self, data: dict[str, Any]) -> Result["OrchestratorConfig", ConfigError]:
        """
        Return a copy of this config with values from ``data`` applied.

        Args:
            data: Partial configuration dictionary

        Returns:
            Result with the merged config or error
        """
        try:
            api_data = data.get("api", {})
            api = replace(
                self.api,
                base_url=str(api_data.get("base_url", self.api.base_url)).rstrip("/"),
                submit_path=api_data.get("submit_path", self.api.submit_path),
                status_path=api_data.get("status_path", self.api.status_path),
                result_path=api_data.get("result_path", self.api.result_path),
                archive_path=api_data.get("archive_path", self.api.archive_path),
                health_path=api_data.get("health_path", self.api.health_path),
                user_agent=api_data.get("user_agent", self.api.user_agent),
            )

            socket_data = data.get("socket", {})
            socket = replace(
                self.socket,
                url=socket_data.get("url", self.socket.url),
                enabled=bool(socket_data.get("enabled", self.socket.enabled)),
                socketio_path=socket_data.get("socketio_path", self.socket.socketio_path),
                transports=list(socket_data.get("transports", self.socket.transports)),
            )

            polling_data = data.get("polling", {})
            polling = replace(
                self.polling,
                interval=float(polling_data.get("interval", self.polling.interval)),
                max_attempts=int(polling_data.get("max_attempts", self.polling.max_attempts)),
                max_retries=int(polling_data.get("max_retries", self.polling.max_retries)),
            )

            timeouts_data = data.get("timeouts", {})
            timeouts = replace(
                self.timeouts,
                overall=float(timeouts_data.get("overall", self.timeouts.overall)),
                grace_period=float(timeouts_data.get("grace_period", self.timeouts.grace_period)),
                socket_auth=float(timeouts_data.get("socket_auth", self.timeouts.socket_auth)),
                socket_connect=float(timeouts_data.get(
                    "socket_connect", self.timeouts.socket_connect
                )),
                heartbeat_interval=float(timeouts_data.get(
                    "heartbeat_interval", self.timeouts.heartbeat_interval
                )),
                request=float(timeouts_data.get("request", self.timeouts.request)),
            )

            guard_data = data.get("guard", {})
            guard = replace(
                self.guard,
                entry_ttl=float(guard_data.get("entry_ttl", self.guard.entry_ttl)),
                cooldown=float(guard_data.get("cooldown", self.guard.cooldown)),
            )

            retry_data = data.get("retries", data.get("retry", {}))
            retry = replace(
                self.retry,
                max_attempts=int(retry_data.get("max_attempts", self.retry.max_attempts)),
                backoff_factor=float(retry_data.get("backoff_factor", self.retry.backoff_factor)),
                initial_delay=float(retry_data.get("initial_delay", self.retry.initial_delay)),
                max_backoff=float(retry_data.get("max_backoff", self.retry.max_backoff)),
            )

            results_data = data.get("results", {})
            results = replace(
                self.results,
                max_attempts=int(results_data.get("max_attempts", self.results.max_attempts)),
                initial_delay=float(results_data.get("initial_delay", self.results.initial_delay)),
                max_delay=float(results_data.get("max_delay", self.results.max_delay)),
            )

            assessment_data = data.get("assessment", {})
            assessment = replace(
                self.assessment,
                name=assessment_data.get("name", self.assessment.name),
                question_count=int(assessment_data.get(
                    "question_count", self.assessment.question_count
                )),
            )

            storage_data = data.get("storage", {})
            state_dir = storage_data.get("state_dir", self.storage.state_dir)
            storage = replace(
                self.storage,
                state_dir=Path(state_dir) if state_dir else None,
                store_file=storage_data.get("store_file", self.storage.store_file),
            )

            logging_data = data.get("logging", {})
            logging_config = replace(
                self.logging,
                level=logging_data.get("level", self.logging.level),
                format=logging_data.get("format", self.logging.format),
            )

        except (AttributeError, TypeError, ValueError) as e:
            return Err(ConfigError(
                field="unknown",
                message=f"Failed to parse configuration: {e}",
            ))

        return Ok(OrchestratorConfig(
            api=api,
            socket=socket,
            polling=polling,
            timeouts=timeouts,
            guard=guard,
            retry=retry,
            results=results,
            assessment=assessment,
            storage=storage,
            logging=logging_config,
        ))

    def validate(self) -> Result[None, ConfigError]:
        """
        Validate configuration values.

        Returns:
            Result indicating success or validation error
        """
        if not self.api.base_url.startswith(("http://", "https://")):
            return Err(ConfigError(
                field="api.base_url",
                message=f"Must be an http(s) URL, got {self.api.base_url!r}",
            ))

        if self.polling.interval <= 0:
            return Err(ConfigError(
                field="polling.interval",
                message=f"Must be positive, got {self.polling.interval}",
            ))
        if self.polling.max_attempts < 1:
            return Err(ConfigError(
                field="polling.max_attempts",
                message=f"Must be at least 1, got {self.polling.max_attempts}",
            ))
        if self.polling.max_retries < 0:
            return Err(ConfigError(
                field="polling.max_retries",
                message=f"Must not be negative, got {self.polling.max_retries}",
            ))

        for name, value in [
            ("overall", self.timeouts.overall),
            ("grace_period", self.timeouts.grace_period),
            ("socket_auth", self.timeouts.socket_auth),
            ("socket_connect", self.timeouts.socket_connect),
            ("heartbeat_interval", self.timeouts.heartbeat_interval),
            ("request", self.timeouts.request),
        ]:
            if value <= 0:
                return Err(ConfigError(
                    field=f"timeouts.{name}",
                    message=f"Must be positive, got {value}",
                ))

        if self.guard.entry_ttl <= 0:
            return Err(ConfigError(
                field="guard.entry_ttl",
                message=f"Must be positive, got {self.guard.entry_ttl}",
            ))
        if self.guard.cooldown < 0:
            return Err(ConfigError(
                field="guard.cooldown",
                message=f"Must not be negative, got {self.guard.cooldown}",
            ))

        if self.retry.max_attempts < 1:
            return Err(ConfigError(
                field="retry.max_attempts",
                message=f"Must be at least 1, got {self.retry.max_attempts}",
            ))
        if self.retry.backoff_factor < 1.0:
            return Err(ConfigError(
                field="retry.backoff_factor",
                message=f"Must be at least 1.0, got {self.retry.backoff_factor}",
            ))

        if self.results.max_attempts < 1:
            return Err(ConfigError(
                field="results.max_attempts",
                message=f"Must be at least 1, got {self.results.max_attempts}",
            ))

        if self.assessment.question_count < 1:
            return Err(ConfigError(
                field="assessment.question_count",
                message=f"Must be at least 1, got {self.assessment.question_count}",
            ))

        return Ok(None)

    def with_overrides(
        self,
        base_url: Optional[str] = None,
        state_dir: Optional[Path] = None,
        socket_enabled: Optional[bool] = None,
        overall_timeout: Optional[float] = None,
    ) -> "OrchestratorConfig":
        """
        Return a new config with command-line overrides applied.

        Args:
            base_url: API base URL
            state_dir: Directory for the persistent store
            socket_enabled: Enable or disable the realtime channel
            overall_timeout: Overall workflow budget in seconds

        Returns:
            New OrchestratorConfig
        """
        config = replace(self)
        if base_url:
            config.api = replace(self.api, base_url=base_url.rstrip("/"))
        if state_dir is not None:
            config.storage = replace(self.storage, state_dir=Path(state_dir))
        if socket_enabled is not None:
            config.socket = replace(self.socket, enabled=socket_enabled)
        if overall_timeout is not None:
            config.timeouts = replace(self.timeouts, overall=overall_timeout)
        return config


def load_config(config_dir: Path = None) -> Result[OrchestratorConfig, ConfigError]:
    """
    Load configuration from the standard location.

    Loads from config/defaults.yaml, overlays config/timeouts.yaml if present,
    then applies the ASSESSMENT_API_URL environment override.

    Args:
        config_dir: Configuration directory (defaults to ./config)

    Returns:
        Result with loaded config or error
    """
    if config_dir is None:
        config_dir = Path("./config")

    config_dir = Path(config_dir)

    defaults_path = config_dir / "defaults.yaml"
    if defaults_path.exists():
        result = OrchestratorConfig.from_yaml(defaults_path)
        if result.is_err():
            return result
        config = result.unwrap()
    else:
        config = OrchestratorConfig()

    # Overlay timing values if present
    timeouts_path = config_dir / "timeouts.yaml"
    if timeouts_path.exists():
        try:
            with open(timeouts_path) as f:
                overlay = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            return Err(ConfigError(
                field="timeouts_overlay",
                message=f"Failed to load timeouts overlay: {e}",
            ))

        overlay_data = {
            key: overlay[key]
            for key in ("timeouts", "polling", "retries", "results", "guard")
            if key in overlay
        }
        result = config.merged(overlay_data)
        if result.is_err():
            return result
        config = result.unwrap()

    env_url = get_env_api_url()
    if env_url:
        config = config.with_overrides(base_url=env_url)

    validation_result = config.validate()
    if validation_result.is_err():
        return Err(validation_result.unwrap_err())

    return Ok(config)


def get_env_token() -> Optional[str]:
    """Get the API credential from environment."""
    return os.environ.get(TOKEN_ENV_VAR) or None


def get_env_api_url() -> Optional[str]:
    """Get the API base URL override from environment."""
    return os.environ.get(API_URL_ENV_VAR) or None
