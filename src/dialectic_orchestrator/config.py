"""Runtime configuration for recipe compilation, job orchestration and dispatch."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class DispatchSettings:
    """Worker endpoint and outbox consumer settings."""

    worker_url: str | None = None
    worker_token: str | None = None
    worker_timeout_seconds: float = 30.0
    verify_tls: bool = True
    poll_interval_seconds: float = 2.0
    batch_size: int = 20
    claim_timeout_seconds: float = 300.0


@dataclass(slots=True)
class RetrySettings:
    """Retry ceiling applied to newly created jobs."""

    default_max_retries: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".dialectic.db")
    log_level: str = "INFO"
    sqlite_busy_timeout_ms: int = 5_000
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DIALECTIC_DB_PATH", ".dialectic.db")),
            log_level=os.getenv("DIALECTIC_LOG_LEVEL", "INFO").strip().upper(),
            sqlite_busy_timeout_ms=int(os.getenv("DIALECTIC_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            dispatch=DispatchSettings(
                worker_url=os.getenv("DIALECTIC_WORKER_URL") or None,
                worker_token=os.getenv("DIALECTIC_WORKER_TOKEN") or None,
                worker_timeout_seconds=float(
                    os.getenv("DIALECTIC_WORKER_TIMEOUT_SECONDS", "30.0"),
                ),
                verify_tls=_env_bool("DIALECTIC_WORKER_VERIFY_TLS", default=True),
                poll_interval_seconds=float(
                    os.getenv("DIALECTIC_DISPATCH_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                batch_size=int(os.getenv("DIALECTIC_DISPATCH_BATCH_SIZE", "20")),
                claim_timeout_seconds=float(
                    os.getenv("DIALECTIC_DISPATCH_CLAIM_TIMEOUT_SECONDS", "300.0"),
                ),
            ),
            retry=RetrySettings(
                default_max_retries=int(os.getenv("DIALECTIC_DEFAULT_MAX_RETRIES", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"DIALECTIC_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, "
                f"got {self.log_level!r}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("DIALECTIC_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.retry.default_max_retries < 0:
            raise ValueError("DIALECTIC_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.dispatch.worker_timeout_seconds <= 0:
            raise ValueError("DIALECTIC_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.poll_interval_seconds < 0:
            raise ValueError("DIALECTIC_DISPATCH_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.dispatch.batch_size <= 0:
            raise ValueError("DIALECTIC_DISPATCH_BATCH_SIZE must be a positive integer.")
        if self.dispatch.claim_timeout_seconds <= 0:
            raise ValueError("DIALECTIC_DISPATCH_CLAIM_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.worker_url is not None:
            _validate_worker_url(self.dispatch.worker_url)

    def validate_for_dispatch(self) -> None:
        """Dispatching additionally needs a worker endpoint."""

        self.validate()
        if self.dispatch.worker_url is None:
            raise ValueError("DIALECTIC_WORKER_URL is required to dispatch jobs to the worker.")


def _validate_worker_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid DIALECTIC_WORKER_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
