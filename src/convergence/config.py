"""Configuration management with validation.

Engine settings are validated at load time so that a misconfigured
process fails immediately instead of on the first reconcile tick.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 60
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 3600

DEFAULT_POLL_JITTER_SECONDS = 0

DEFAULT_TIMEOUT_SECONDS = 1800
DEFAULT_CREATION_GRACE_PERIOD_SECONDS = 30
DEFAULT_DELETION_TIMEOUT_SECONDS = 1800  # 30 minutes

# Interval between status polls of an asynchronous provider request
DEFAULT_REQUEST_POLL_INTERVAL_SECONDS = 1.0

# Scheduler circuit breaker
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300

# Spec loading limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_DESCRIPTORS_PER_FILE = 500

# "package.module:factory"
VALID_PROVIDER_FACTORY_PATTERN = r"^[A-Za-z_][A-Za-z0-9_.]*:[A-Za-z_][A-Za-z0-9_]*$"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    poll_jitter_seconds: int = DEFAULT_POLL_JITTER_SECONDS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    creation_grace_period_seconds: int = DEFAULT_CREATION_GRACE_PERIOD_SECONDS
    deletion_timeout_seconds: int = DEFAULT_DELETION_TIMEOUT_SECONDS
    request_poll_interval_seconds: float = DEFAULT_REQUEST_POLL_INTERVAL_SECONDS

    # Behavior
    unique_names_enabled: bool = False

    # Provider client factory, resolved by main.load_provider_factory()
    provider_factory: str = ""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if self.poll_jitter_seconds < 0:
            errors.append("POLL_JITTER cannot be negative")
        elif self.poll_jitter_seconds >= self.poll_interval_seconds:
            errors.append("POLL_JITTER must be smaller than POLL_INTERVAL")

        if self.timeout_seconds < 1:
            errors.append("TIMEOUT must be at least 1 second")

        if self.creation_grace_period_seconds < 0:
            errors.append("CREATION_GRACE_PERIOD cannot be negative")

        if self.deletion_timeout_seconds < 1:
            errors.append("DELETION_TIMEOUT must be at least 1 second")

        if self.request_poll_interval_seconds <= 0:
            errors.append("REQUEST_POLL_INTERVAL must be positive")

        if self.provider_factory and not re.match(
            VALID_PROVIDER_FACTORY_PATTERN, self.provider_factory
        ):
            errors.append(
                f"PROVIDER_CLIENT must look like 'package.module:factory': {self.provider_factory}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SPECS_DIR: Path to YAML descriptor specs (default: /specs)
            POLL_INTERVAL: Seconds between reconcile ticks (default: 60)
            POLL_JITTER: Max seconds of random jitter added to a tick (default: 0)
            TIMEOUT: Per-call and per-request timeout in seconds (default: 1800)
            CREATION_GRACE_PERIOD: Seconds a fresh resource may stay unobserved (default: 30)
            DELETION_TIMEOUT: Upper bound for a deletion to finish (default: 1800)
            REQUEST_POLL_INTERVAL: Seconds between async request polls (default: 1.0)
            UNIQUE_NAMES: If "true", adopt existing resources by name (default: false)
            PROVIDER_CLIENT: "module:factory" returning the provider client
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            poll_jitter_seconds=get_int("POLL_JITTER", DEFAULT_POLL_JITTER_SECONDS),
            timeout_seconds=get_int("TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
            creation_grace_period_seconds=get_int(
                "CREATION_GRACE_PERIOD", DEFAULT_CREATION_GRACE_PERIOD_SECONDS
            ),
            deletion_timeout_seconds=get_int("DELETION_TIMEOUT", DEFAULT_DELETION_TIMEOUT_SECONDS),
            request_poll_interval_seconds=get_float(
                "REQUEST_POLL_INTERVAL", DEFAULT_REQUEST_POLL_INTERVAL_SECONDS
            ),
            unique_names_enabled=get_bool("UNIQUE_NAMES", False),
            provider_factory=os.environ.get("PROVIDER_CLIENT", ""),
        )
