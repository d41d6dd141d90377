"""Engine configuration with validation.

Limits are enforced at configuration load time so that a misconfigured
environment fails before any provider call is issued.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration or graph composition is invalid.

    Configuration errors are detected before or at composition time, are
    fatal to the affected node(s) and are never retried.
    """

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_MAX_ATTEMPTS = 3
MAX_MAX_ATTEMPTS = 10

DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_SECONDS = 30.0

# Long-running ARM operations (function apps, vaults) can take several minutes
DEFAULT_CALL_TIMEOUT_SECONDS = 1800
MAX_CALL_TIMEOUT_SECONDS = 7200

# Jitter applied on top of exponential backoff, as a fraction of the delay
BACKOFF_JITTER_RATIO = 0.2

DEFAULT_STACKS_DIR = "stacks"
MAX_STACK_FILE_SIZE_BYTES = 256 * 1024


@dataclass(frozen=True)
class EngineConfig:
    """Provisioning engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS
    stacks_dir: Path = Path(DEFAULT_STACKS_DIR)
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY:
            errors.append(
                f"PROVISIONER_MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}: {self.max_concurrency}"
            )

        if not 1 <= self.max_attempts <= MAX_MAX_ATTEMPTS:
            errors.append(
                f"PROVISIONER_MAX_ATTEMPTS must be between 1 and {MAX_MAX_ATTEMPTS}: "
                f"{self.max_attempts}"
            )

        if self.backoff_base_seconds < 0:
            errors.append("PROVISIONER_BACKOFF_BASE_SECONDS cannot be negative")

        if self.backoff_max_seconds < self.backoff_base_seconds:
            errors.append(
                "PROVISIONER_BACKOFF_MAX_SECONDS must be at least "
                "PROVISIONER_BACKOFF_BASE_SECONDS"
            )

        if not 0 < self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS:
            errors.append(
                f"PROVISIONER_CALL_TIMEOUT_SECONDS must be between 0 and "
                f"{MAX_CALL_TIMEOUT_SECONDS}: {self.call_timeout_seconds}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff delay (without jitter) after a failed attempt."""
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self.backoff_max_seconds)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_MAX_CONCURRENCY: Parallel provider calls (default: 4)
            PROVISIONER_MAX_ATTEMPTS: Attempts per node for transient errors (default: 3)
            PROVISIONER_BACKOFF_BASE_SECONDS: First retry delay (default: 1.0)
            PROVISIONER_BACKOFF_MAX_SECONDS: Retry delay cap (default: 30)
            PROVISIONER_CALL_TIMEOUT_SECONDS: Timeout per provider call (default: 1800)
            PROVISIONER_STACKS_DIR: Directory with <stack>.yaml files (default: stacks)
            PROVISIONER_DRY_RUN: If "true", plan only (default: false)
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
            max_concurrency=get_int("PROVISIONER_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_attempts=get_int("PROVISIONER_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_base_seconds=get_float(
                "PROVISIONER_BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS
            ),
            backoff_max_seconds=get_float(
                "PROVISIONER_BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX_SECONDS
            ),
            call_timeout_seconds=get_float(
                "PROVISIONER_CALL_TIMEOUT_SECONDS", DEFAULT_CALL_TIMEOUT_SECONDS
            ),
            stacks_dir=Path(os.environ.get("PROVISIONER_STACKS_DIR", DEFAULT_STACKS_DIR)),
            dry_run=get_bool("PROVISIONER_DRY_RUN", False),
        )
