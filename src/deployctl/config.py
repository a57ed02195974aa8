"""Configuration management with validation.

All settings come from environment variables and are validated at load
time so the controller fails fast instead of half-way through a run.
"""

from __future__ import annotations

import os
import random
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_DRIFT_INTERVAL_SECONDS = 60
MIN_DRIFT_INTERVAL_SECONDS = 10
MAX_DRIFT_INTERVAL_SECONDS = 3600

DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS = 300
MAX_PROVIDER_CALL_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_PARALLEL_OPERATIONS = 4
MAX_PARALLEL_OPERATIONS = 16

# Retry policy for transient provider failures
RETRY_MAX_ATTEMPTS = 5
RETRY_BACKOFF_BASE_SECONDS = 1.0
RETRY_BACKOFF_FACTOR = 2.0
RETRY_BACKOFF_CAP_SECONDS = 30.0
RETRY_JITTER_RATIO = 0.1

MAX_DESIRED_STATE_FILE_SIZE_BYTES = 256 * 1024

DEFAULT_STATE_DIR = "/var/lib/deployctl"
DEFAULT_DESIRED_STATE_DIR = "/specs"

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]{1,90}$"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for retryable provider errors.

    Attempt ``n`` (1-based) waits ``base * factor ** (n - 1)`` seconds,
    capped at ``cap_seconds``, plus up to ``jitter_ratio`` of that delay.
    """

    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    factor: float = RETRY_BACKOFF_FACTOR
    cap_seconds: float = RETRY_BACKOFF_CAP_SECONDS
    jitter_ratio: float = RETRY_JITTER_RATIO

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        backoff = min(self.cap_seconds, self.base_seconds * (self.factor ** (attempt - 1)))
        jitter = random.uniform(0, backoff * self.jitter_ratio) if backoff > 0 else 0.0
        return min(self.cap_seconds, backoff + jitter)


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Provider placement
    subscription_id: str
    resource_group_name: str
    location: str

    # Paths
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    desired_state_dir: Path = field(default_factory=lambda: Path(DEFAULT_DESIRED_STATE_DIR))

    # Opaque id of a pre-existing compute cluster, used when a deployment
    # does not ask for a dedicated one
    compute_cluster_id: str | None = None

    # Managed identity client id; None means system-assigned
    managed_identity_client_id: str | None = None

    # Timing
    drift_interval_seconds: int = DEFAULT_DRIFT_INTERVAL_SECONDS
    provider_call_timeout_seconds: int = DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS

    # Behavior
    max_parallel_operations: int = DEFAULT_MAX_PARALLEL_OPERATIONS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group_name:
            errors.append("AZURE_RESOURCE_GROUP is required")
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group_name):
            errors.append(f"AZURE_RESOURCE_GROUP is not a valid name: {self.resource_group_name}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not (
            MIN_DRIFT_INTERVAL_SECONDS
            <= self.drift_interval_seconds
            <= MAX_DRIFT_INTERVAL_SECONDS
        ):
            errors.append(
                f"DRIFT_INTERVAL must be between {MIN_DRIFT_INTERVAL_SECONDS} "
                f"and {MAX_DRIFT_INTERVAL_SECONDS} seconds"
            )

        if not (0 < self.provider_call_timeout_seconds <= MAX_PROVIDER_CALL_TIMEOUT_SECONDS):
            errors.append(
                f"PROVIDER_CALL_TIMEOUT must be between 1 and "
                f"{MAX_PROVIDER_CALL_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_parallel_operations <= MAX_PARALLEL_OPERATIONS):
            errors.append(
                f"MAX_PARALLEL_OPERATIONS must be between 1 and {MAX_PARALLEL_OPERATIONS}"
            )

        if self.retry.max_attempts < 1:
            errors.append("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.retry.base_seconds < 0 or self.retry.cap_seconds < 0:
            errors.append("Retry backoff values cannot be negative")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_RESOURCE_GROUP: Resource group holding managed resources
            AZURE_LOCATION: Region for new resources
            STATE_DIR: Directory for run records (default: /var/lib/deployctl)
            DESIRED_STATE_DIR: Directory of desired-state YAML documents (default: /specs)
            COMPUTE_CLUSTER_ID: Existing compute cluster for shared deployments
            AZURE_CLIENT_ID: User-assigned managed identity client id
            DRIFT_INTERVAL: Seconds between drift checks (default: 60)
            PROVIDER_CALL_TIMEOUT: Deadline per provider call in seconds (default: 300)
            MAX_PARALLEL_OPERATIONS: Concurrent provider calls per run (default: 4)
            RETRY_MAX_ATTEMPTS: Attempts for transient failures (default: 5)
            RETRY_BACKOFF_BASE: First backoff delay in seconds (default: 1)
            RETRY_BACKOFF_CAP: Maximum backoff delay in seconds (default: 30)
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

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            resource_group_name=os.environ.get("AZURE_RESOURCE_GROUP", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            desired_state_dir=Path(os.environ.get("DESIRED_STATE_DIR", DEFAULT_DESIRED_STATE_DIR)),
            compute_cluster_id=os.environ.get("COMPUTE_CLUSTER_ID") or None,
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            drift_interval_seconds=get_int("DRIFT_INTERVAL", DEFAULT_DRIFT_INTERVAL_SECONDS),
            provider_call_timeout_seconds=get_int(
                "PROVIDER_CALL_TIMEOUT", DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS
            ),
            max_parallel_operations=get_int(
                "MAX_PARALLEL_OPERATIONS", DEFAULT_MAX_PARALLEL_OPERATIONS
            ),
            retry=RetryPolicy(
                max_attempts=get_int("RETRY_MAX_ATTEMPTS", RETRY_MAX_ATTEMPTS),
                base_seconds=get_float("RETRY_BACKOFF_BASE", RETRY_BACKOFF_BASE_SECONDS),
                cap_seconds=get_float("RETRY_BACKOFF_CAP", RETRY_BACKOFF_CAP_SECONDS),
            ),
        )
