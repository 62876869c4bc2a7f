"""Centralized configuration for registration automation.

Thresholds for the compliance gate, rate limiter, session lifecycle and
workflow live here. Configuration can be loaded from YAML files and is
validated at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from signup_pilot.utils.result import ConfigError, Err, Ok, Result


DEFAULT_USER_AGENT = "CampScheduleBot/1.0"

# Hosts that never allow automated access regardless of their robots rules
DEFAULT_RESTRICTED_HOSTS = (
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "linkedin.com",
    "tiktok.com",
    "youtube.com",
    "amazon.com",
    "ebay.com",
)

CLASSIFIER_CHOICES = ("none", "trusted_list", "anthropic")


@dataclass
class ComplianceConfig:
    """Compliance gate settings."""

    cache_ttl_seconds: int = 3600
    missing_robots_ttl_divisor: int = 4
    robots_timeout_seconds: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT
    restricted_hosts: list[str] = field(
        default_factory=lambda: list(DEFAULT_RESTRICTED_HOSTS)
    )

    # Deeper terms-of-service check
    classifier: str = "trusted_list"
    classifier_model: str = "claude-sonnet-4-5"
    classifier_failure_ttl_seconds: int = 300

    @property
    def missing_robots_ttl_seconds(self) -> float:
        return self.cache_ttl_seconds / self.missing_robots_ttl_divisor


@dataclass
class RateLimitConfig:
    """Per-host request budget."""

    window_seconds: float = 60.0
    max_requests: int = 10
    base_delay_ms: int = 1000
    max_backoff_level: int = 5
    max_wait_attempts: int = 5


@dataclass
class SessionConfig:
    """Browser session lifecycle thresholds."""

    max_duration_seconds: float = 300.0
    max_idle_seconds: float = 60.0
    max_error_count: int = 3
    cleanup_interval_seconds: float = 30.0
    action_timeout_seconds: float = 10.0
    approval_ttl_seconds: int = 900


@dataclass
class WorkflowConfig:
    """Workflow orchestration settings."""

    stage_delay_seconds: float = 2.0
    intervention_barriers: list[str] = field(default_factory=list)
    checkpoint_dir: Optional[Path] = None


@dataclass
class BrowserConfig:
    """Remote browser automation provider."""

    api_url: str = "https://api.browserbase.com"
    project_id: str = ""


@dataclass
class PaymentConfig:
    """Payment gateway endpoint."""

    api_url: str = ""
    service_fee_cents: int = 2000


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"


@dataclass
class PilotConfig:
    """
    Complete configuration.

    This is the single source of truth for every threshold the services use.
    Secrets are never stored here; they are read from the environment.
    """

    compliance: ComplianceConfig = field(default_factory=ComplianceConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Paths (set at runtime)
    state_dir: Optional[Path] = None
    credentials_file: Optional[Path] = None

    @classmethod
    def from_yaml(cls, path: Path) -> Result["PilotConfig", ConfigError]:
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

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result["PilotConfig", ConfigError]:
        """
        Create configuration from a dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Result with loaded config or error
        """
        if not isinstance(data, dict):
            return Err(ConfigError(
                field="root",
                message=f"Expected a mapping, got {type(data).__name__}",
            ))

        try:
            compliance_data = data.get("compliance", {})
            compliance = ComplianceConfig(
                cache_ttl_seconds=int(compliance_data.get("cache_ttl_seconds", 3600)),
                missing_robots_ttl_divisor=int(compliance_data.get("missing_robots_ttl_divisor", 4)),
                robots_timeout_seconds=float(compliance_data.get("robots_timeout_seconds", 5.0)),
                user_agent=compliance_data.get("user_agent", DEFAULT_USER_AGENT),
                restricted_hosts=list(
                    compliance_data.get("restricted_hosts", DEFAULT_RESTRICTED_HOSTS)
                ),
                classifier=compliance_data.get("classifier", "trusted_list"),
                classifier_model=compliance_data.get("classifier_model", "claude-sonnet-4-5"),
                classifier_failure_ttl_seconds=int(
                    compliance_data.get("classifier_failure_ttl_seconds", 300)
                ),
            )

            rate_data = data.get("rate_limit", {})
            rate_limit = RateLimitConfig(
                window_seconds=float(rate_data.get("window_seconds", 60.0)),
                max_requests=int(rate_data.get("max_requests", 10)),
                base_delay_ms=int(rate_data.get("base_delay_ms", 1000)),
                max_backoff_level=int(rate_data.get("max_backoff_level", 5)),
                max_wait_attempts=int(rate_data.get("max_wait_attempts", 5)),
            )

            sessions = _parse_sessions(data.get("sessions", {}), SessionConfig())

            workflow_data = data.get("workflow", {})
            checkpoint_dir = workflow_data.get("checkpoint_dir")
            workflow = WorkflowConfig(
                stage_delay_seconds=float(workflow_data.get("stage_delay_seconds", 2.0)),
                intervention_barriers=list(workflow_data.get("intervention_barriers", [])),
                checkpoint_dir=Path(checkpoint_dir) if checkpoint_dir else None,
            )

            browser_data = data.get("browser", {})
            browser = BrowserConfig(
                api_url=browser_data.get("api_url", "https://api.browserbase.com"),
                project_id=browser_data.get("project_id", ""),
            )

            payments_data = data.get("payments", {})
            payments = PaymentConfig(
                api_url=payments_data.get("api_url", ""),
                service_fee_cents=int(payments_data.get("service_fee_cents", 2000)),
            )

            logging_data = data.get("logging", {})
            logging_config = LoggingConfig(
                level=logging_data.get("level", "info"),
                format=logging_data.get("format", "json"),
            )

            credentials_file = data.get("credentials_file")

            config = cls(
                compliance=compliance,
                rate_limit=rate_limit,
                sessions=sessions,
                workflow=workflow,
                browser=browser,
                payments=payments,
                logging=logging_config,
                credentials_file=Path(credentials_file) if credentials_file else None,
            )

            return Ok(config)

        except (TypeError, ValueError, AttributeError) as e:
            return Err(ConfigError(
                field="unknown",
                message=f"Failed to parse configuration: {e}",
            ))

    def validate(self) -> Result[None, ConfigError]:
        """
        Validate configuration values.

        Returns:
            Result indicating success or validation error
        """
        if self.compliance.cache_ttl_seconds < 1:
            return Err(ConfigError(
                field="compliance.cache_ttl_seconds",
                message=f"Must be positive, got {self.compliance.cache_ttl_seconds}",
            ))
        if self.compliance.missing_robots_ttl_divisor < 1:
            return Err(ConfigError(
                field="compliance.missing_robots_ttl_divisor",
                message=f"Must be at least 1, got {self.compliance.missing_robots_ttl_divisor}",
            ))
        if self.compliance.classifier not in CLASSIFIER_CHOICES:
            return Err(ConfigError(
                field="compliance.classifier",
                message=(
                    f"Must be one of {', '.join(CLASSIFIER_CHOICES)}, "
                    f"got {self.compliance.classifier!r}"
                ),
            ))

        if self.rate_limit.max_requests < 1:
            return Err(ConfigError(
                field="rate_limit.max_requests",
                message=f"Must be at least 1, got {self.rate_limit.max_requests}",
            ))
        if self.rate_limit.window_seconds <= 0:
            return Err(ConfigError(
                field="rate_limit.window_seconds",
                message=f"Must be positive, got {self.rate_limit.window_seconds}",
            ))
        if self.rate_limit.max_backoff_level < 0:
            return Err(ConfigError(
                field="rate_limit.max_backoff_level",
                message=f"Must not be negative, got {self.rate_limit.max_backoff_level}",
            ))

        # Session thresholds must all be positive
        for name, value in [
            ("max_duration_seconds", self.sessions.max_duration_seconds),
            ("max_idle_seconds", self.sessions.max_idle_seconds),
            ("cleanup_interval_seconds", self.sessions.cleanup_interval_seconds),
            ("action_timeout_seconds", self.sessions.action_timeout_seconds),
        ]:
            if value <= 0:
                return Err(ConfigError(
                    field=f"sessions.{name}",
                    message=f"Must be positive, got {value}",
                ))
        if self.sessions.max_error_count < 1:
            return Err(ConfigError(
                field="sessions.max_error_count",
                message=f"Must be at least 1, got {self.sessions.max_error_count}",
            ))

        if self.workflow.stage_delay_seconds < 0:
            return Err(ConfigError(
                field="workflow.stage_delay_seconds",
                message=f"Must not be negative, got {self.workflow.stage_delay_seconds}",
            ))

        if self.logging.format not in ("json", "text"):
            return Err(ConfigError(
                field="logging.format",
                message=f"Must be 'json' or 'text', got {self.logging.format!r}",
            ))

        return Ok(None)

    def with_state_dir(self, state_dir: Path) -> "PilotConfig":
        """
        Return a new config rooted at a state directory.

        Checkpoints default to ``<state_dir>/checkpoints`` unless configured.
        """
        state_dir = Path(state_dir)
        workflow = WorkflowConfig(
            stage_delay_seconds=self.workflow.stage_delay_seconds,
            intervention_barriers=list(self.workflow.intervention_barriers),
            checkpoint_dir=self.workflow.checkpoint_dir or state_dir / "checkpoints",
        )
        return PilotConfig(
            compliance=self.compliance,
            rate_limit=self.rate_limit,
            sessions=self.sessions,
            workflow=workflow,
            browser=self.browser,
            payments=self.payments,
            logging=self.logging,
            state_dir=state_dir,
            credentials_file=self.credentials_file,
        )


def _parse_sessions(data: dict[str, Any], base: SessionConfig) -> SessionConfig:
    return SessionConfig(
        max_duration_seconds=float(data.get("max_duration_seconds", base.max_duration_seconds)),
        max_idle_seconds=float(data.get("max_idle_seconds", base.max_idle_seconds)),
        max_error_count=int(data.get("max_error_count", base.max_error_count)),
        cleanup_interval_seconds=float(
            data.get("cleanup_interval_seconds", base.cleanup_interval_seconds)
        ),
        action_timeout_seconds=float(
            data.get("action_timeout_seconds", base.action_timeout_seconds)
        ),
        approval_ttl_seconds=int(data.get("approval_ttl_seconds", base.approval_ttl_seconds)),
    )


def load_config(config_dir: Path = None) -> Result[PilotConfig, ConfigError]:
    """
    Load configuration from the standard location.

    Loads from config/defaults.yaml, then overlays config/timeouts.yaml if present.

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
        result = PilotConfig.from_yaml(defaults_path)
        if result.is_err():
            return result
        config = result.unwrap()
    else:
        config = PilotConfig()

    # Overlay session timeouts if present
    timeouts_path = config_dir / "timeouts.yaml"
    if timeouts_path.exists():
        try:
            with open(timeouts_path) as f:
                timeouts_data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            return Err(ConfigError(
                field="timeouts",
                message=f"Failed to load timeouts overlay: {e}",
            ))

        try:
            if "sessions" in timeouts_data:
                config.sessions = _parse_sessions(timeouts_data["sessions"], config.sessions)
            if "robots_timeout_seconds" in timeouts_data:
                config.compliance.robots_timeout_seconds = float(
                    timeouts_data["robots_timeout_seconds"]
                )
        except (TypeError, ValueError) as e:
            return Err(ConfigError(
                field="timeouts",
                message=f"Invalid timeouts overlay: {e}",
            ))

    validation_result = config.validate()
    if validation_result.is_err():
        return Err(validation_result.unwrap_err())

    return Ok(config)


def get_env_browser_api_key() -> Optional[str]:
    """Get the browser automation provider API key from environment."""
    return os.environ.get("BROWSER_API_KEY")


def get_env_api_key() -> Optional[str]:
    """Get the Anthropic API key from environment."""
    return os.environ.get("ANTHROPIC_API_KEY")


def get_env_approval_secret() -> Optional[str]:
    """Get the secret used to sign parent approval tokens."""
    return os.environ.get("SIGNUP_PILOT_APPROVAL_SECRET")


def get_env_payment_api_key() -> Optional[str]:
    """Get the payment gateway API key from environment."""
    return os.environ.get("PAYMENT_API_KEY")


def get_env_webhook_url() -> Optional[str]:
    """Get the webhook used to ask parents for intervention."""
    return os.environ.get("SIGNUP_PILOT_WEBHOOK_URL")
