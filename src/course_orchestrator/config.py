"""Runtime configuration for the course-generation orchestrator."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "COURSE_ORCHESTRATOR_"


@dataclass(slots=True)
class RetrySettings:
    """Task retry policy settings."""

    max_retry_count: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Per-dependency circuit breaker settings."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(slots=True)
class HealthSettings:
    """Health sweep thresholds and cadence."""

    stuck_after_seconds: int = 600
    stalled_after_seconds: int = 300
    sweep_interval_seconds: int = 120


@dataclass(slots=True)
class OrchestratorSettings:
    """Worker and queue settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    poll_interval_seconds: float = 2.0
    lease_seconds: int = 600
    graceful_shutdown_seconds: int = 30
    sqlite_busy_timeout_ms: int = 5_000
    pricing: str = ""


@dataclass(slots=True)
class UserContextSettings:
    """Default actor context for CLI-originated requests."""

    owner_id: str = "default_owner"
    tenant_id: str = "default_tenant"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".course_orchestrator.db")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = OrchestratorSettings()
        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".course_orchestrator.db")),
            orchestrator=OrchestratorSettings(
                worker_id=_env("WORKER_ID", defaults.worker_id),
                poll_interval_seconds=float(_env("POLL_INTERVAL_SECONDS", "2.0")),
                lease_seconds=int(_env("LEASE_SECONDS", "600")),
                graceful_shutdown_seconds=int(_env("GRACEFUL_SHUTDOWN_SECONDS", "30")),
                sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
                pricing=_env("PRICING", ""),
            ),
            retry=RetrySettings(
                max_retry_count=int(_env("MAX_RETRY_COUNT", "3")),
                base_delay_seconds=float(_env("RETRY_BASE_SECONDS", "1.0")),
                max_delay_seconds=float(_env("RETRY_MAX_SECONDS", "30.0")),
            ),
            circuit_breaker=CircuitBreakerSettings(
                failure_threshold=int(_env("BREAKER_FAILURE_THRESHOLD", "5")),
                cooldown_seconds=float(_env("BREAKER_COOLDOWN_SECONDS", "60.0")),
            ),
            health=HealthSettings(
                stuck_after_seconds=int(_env("HEALTH_STUCK_AFTER_SECONDS", "600")),
                stalled_after_seconds=int(_env("HEALTH_STALLED_AFTER_SECONDS", "300")),
                sweep_interval_seconds=int(_env("HEALTH_SWEEP_INTERVAL_SECONDS", "120")),
            ),
            user_context=UserContextSettings(
                owner_id=_env("OWNER_ID", "default_owner"),
                tenant_id=_env("TENANT_ID", "default_tenant"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for incoherent values."""

        if self.orchestrator.lease_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}LEASE_SECONDS must be > 0.")
        if self.orchestrator.poll_interval_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS must be >= 0.")
        if self.retry.max_retry_count < 0:
            raise ValueError(f"{ENV_PREFIX}MAX_RETRY_COUNT must be >= 0.")
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError(
                f"{ENV_PREFIX}RETRY_BASE_SECONDS and {ENV_PREFIX}RETRY_MAX_SECONDS must be >= 0.",
            )
        if self.circuit_breaker.failure_threshold <= 0:
            raise ValueError(f"{ENV_PREFIX}BREAKER_FAILURE_THRESHOLD must be > 0.")
        if self.circuit_breaker.cooldown_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}BREAKER_COOLDOWN_SECONDS must be >= 0.")
        if self.health.stalled_after_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}HEALTH_STALLED_AFTER_SECONDS must be > 0.")
        if self.health.stuck_after_seconds <= self.health.stalled_after_seconds:
            raise ValueError(
                f"{ENV_PREFIX}HEALTH_STUCK_AFTER_SECONDS must be greater than "
                f"{ENV_PREFIX}HEALTH_STALLED_AFTER_SECONDS.",
            )
        if self.health.sweep_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}HEALTH_SWEEP_INTERVAL_SECONDS must be > 0.")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)
