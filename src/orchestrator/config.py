"""Configuration management with validation.

Bounds are enforced at configuration load time so a deployment run never
starts with a retry or wait policy that could hang or spin.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .executor import RetryPolicy


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MAX_CONCURRENCY_LIMIT = 64  # 0 means unbounded

# Lock wait defaults mirror the apt/dpkg lock wait of the VM bootstrap scripts:
# unattended-upgrades can hold the lock for 1-5 minutes on first boot.
DEFAULT_LOCK_POLL_INTERVAL_SECONDS = 10
DEFAULT_LOCK_MAX_WAIT_SECONDS = 300
MAX_LOCK_MAX_WAIT_SECONDS = 3600

DEFAULT_RETRY_MAX_ATTEMPTS = 3
MAX_RETRY_MAX_ATTEMPTS = 10
DEFAULT_RETRY_BASE_DELAY_SECONDS = 5.0
DEFAULT_RETRY_BACKOFF_MULTIPLIER = 2.0

DEFAULT_GATE_POLL_INTERVAL_SECONDS = 10
DEFAULT_GATE_TIMEOUT_SECONDS = 600
MAX_GATE_TIMEOUT_SECONDS = 86400

DEFAULT_MIN_PRINCIPAL_REF_LENGTH = 8

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_NODES_PER_PLAN = 500

# Input validation patterns
VALID_NODE_ID_PATTERN = r"^[a-z0-9][a-z0-9._-]{0,62}$"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-deployment.
    """

    manifest_path: Path = field(default_factory=lambda: Path("/manifests/deployment.yaml"))

    # Scheduling
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    # Convergence executor defaults (nodes may override per resource)
    lock_poll_interval_seconds: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS
    lock_max_wait_seconds: float = DEFAULT_LOCK_MAX_WAIT_SECONDS
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_backoff_multiplier: float = DEFAULT_RETRY_BACKOFF_MULTIPLIER

    # Failover wait conditions
    gate_poll_interval_seconds: float = DEFAULT_GATE_POLL_INTERVAL_SECONDS
    gate_timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS

    # Secret binding
    min_principal_ref_length: int = DEFAULT_MIN_PRINCIPAL_REF_LENGTH

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not 0 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT:
            errors.append(
                f"MAX_CONCURRENCY must be between 0 (unbounded) and {MAX_CONCURRENCY_LIMIT}"
            )

        if self.lock_poll_interval_seconds <= 0:
            errors.append("LOCK_POLL_INTERVAL must be positive")

        if not 0 <= self.lock_max_wait_seconds <= MAX_LOCK_MAX_WAIT_SECONDS:
            errors.append(
                f"LOCK_MAX_WAIT must be between 0 and {MAX_LOCK_MAX_WAIT_SECONDS} seconds"
            )

        if not 1 <= self.retry_max_attempts <= MAX_RETRY_MAX_ATTEMPTS:
            errors.append(f"RETRY_MAX_ATTEMPTS must be between 1 and {MAX_RETRY_MAX_ATTEMPTS}")

        if self.retry_base_delay_seconds < 0:
            errors.append("RETRY_BASE_DELAY must not be negative")

        if self.retry_backoff_multiplier < 1:
            errors.append("RETRY_BACKOFF_MULTIPLIER must be at least 1")

        if self.gate_poll_interval_seconds <= 0:
            errors.append("GATE_POLL_INTERVAL must be positive")

        if not 0 < self.gate_timeout_seconds <= MAX_GATE_TIMEOUT_SECONDS:
            errors.append(f"GATE_TIMEOUT must be between 1 and {MAX_GATE_TIMEOUT_SECONDS} seconds")

        if self.min_principal_ref_length < 1:
            errors.append("MIN_PRINCIPAL_REF_LENGTH must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def default_retry_policy(self) -> RetryPolicy:
        """Build the retry policy applied to nodes that do not declare one."""
        from .executor import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            MANIFEST_PATH: Path to the deployment manifest YAML
                (default: /manifests/deployment.yaml)
            MAX_CONCURRENCY: Parallel node workers, 0 for unbounded (default: 4)
            LOCK_POLL_INTERVAL: Seconds between contended-resource checks (default: 10)
            LOCK_MAX_WAIT: Max seconds to wait for a contended resource (default: 300)
            RETRY_MAX_ATTEMPTS: Bootstrap action attempts per node (default: 3)
            RETRY_BASE_DELAY: Base delay before the first retry (default: 5)
            RETRY_BACKOFF_MULTIPLIER: Delay multiplier per attempt (default: 2.0)
            GATE_POLL_INTERVAL: Seconds between wait-condition probes (default: 10)
            GATE_TIMEOUT: Default wait-condition timeout in seconds (default: 600)
            MIN_PRINCIPAL_REF_LENGTH: Shortest accepted principal ref (default: 8)
            DRY_RUN: If "true", validate the manifest and log the deployment
                order without running anything (default: false)
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
            manifest_path=Path(os.environ.get("MANIFEST_PATH", "/manifests/deployment.yaml")),
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            lock_poll_interval_seconds=get_float(
                "LOCK_POLL_INTERVAL", DEFAULT_LOCK_POLL_INTERVAL_SECONDS
            ),
            lock_max_wait_seconds=get_float("LOCK_MAX_WAIT", DEFAULT_LOCK_MAX_WAIT_SECONDS),
            retry_max_attempts=get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            retry_base_delay_seconds=get_float(
                "RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            retry_backoff_multiplier=get_float(
                "RETRY_BACKOFF_MULTIPLIER", DEFAULT_RETRY_BACKOFF_MULTIPLIER
            ),
            gate_poll_interval_seconds=get_float(
                "GATE_POLL_INTERVAL", DEFAULT_GATE_POLL_INTERVAL_SECONDS
            ),
            gate_timeout_seconds=get_float("GATE_TIMEOUT", DEFAULT_GATE_TIMEOUT_SECONDS),
            min_principal_ref_length=get_int(
                "MIN_PRINCIPAL_REF_LENGTH", DEFAULT_MIN_PRINCIPAL_REF_LENGTH
            ),
            dry_run=get_bool("DRY_RUN", False),
        )
