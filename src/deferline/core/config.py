"""
deferline.core.config - Configuration Management
==================================================

This module provides the configuration system for deferline. Configuration
can be loaded from multiple sources with the following priority (highest first):

    1. Explicit constructor arguments
    2. YAML configuration file (deferline.yaml), which load_config passes
       to the constructor as arguments
    3. Environment variables (prefixed with DEFERLINE_)
    4. Default values defined in the models below

Architecture Context:
    Configuration flows DOWN through the system. The top-level DeferlineConfig
    is created once at process start and passed to every component:

        DeferlineConfig
            ├── RedisConfig     → RedisRequestStore, RedisWorkQueue
            ├── DispatchConfig  → Dispatcher, Waiter, Responder, stores (TTL)
            └── WorkerConfig    → Worker, InMemoryWorkQueue (redrive)

Usage:
    # Load from environment variables:
    config = DeferlineConfig()

    # Load from YAML file:
    config = load_config("deferline.yaml")

    # Explicit overrides:
    config = DeferlineConfig(log_level="DEBUG", environment="dev")

Environment Variables:
    DEFERLINE_LOG_LEVEL=DEBUG
    DEFERLINE_ENABLE_PERSISTENCE=true
    DEFERLINE_REDIS__URL=redis://prod-host:6379/0
    DEFERLINE_DISPATCH__MAX_SYNCHRONOUS_WAIT_MS=25000
    DEFERLINE_WORKER__CONCURRENCY=4
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings

from deferline.core.exceptions import ConfigurationError


# =============================================================================
# Redis Configuration
# =============================================================================
# Redis backs both halves of the durable infrastructure when persistence is
# enabled:
#   1. Request Records  (RedisRequestStore, one JSON string per key)
#   2. Work Queue       (RedisWorkQueue, a list plus an in-flight list)
#
# In development/testing the in-memory adapters are used instead and these
# values are ignored.
# =============================================================================
class RedisConfig(BaseModel):
    """Configuration for the Redis connection.

    Attributes:
        url: Redis connection URL. Format: redis://[password@]host:port/db
        max_connections: Maximum connections in the connection pool.
        key_prefix: Namespace prefix for all Redis keys.
        socket_timeout: Timeout in seconds for Redis socket operations.
        queue_name: Logical name of the work queue list.
    """

    url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (redis://host:port/db)",
    )
    max_connections: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of connections in the Redis pool",
    )
    key_prefix: str = Field(
        default="deferline:",
        description="Prefix for all Redis keys (namespace isolation)",
    )
    socket_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Socket timeout in seconds for Redis operations",
    )
    queue_name: str = Field(
        default="jobs",
        min_length=1,
        description="Name of the work queue list",
    )


# =============================================================================
# Dispatch Configuration
# =============================================================================
# Everything the request-handling side needs: when to run inline, how to
# poll, what to tell a caller who has to come back later, and how long a
# Request Record lives.
#
# Poll schedule (defaults):
#   50ms → 100ms → 200ms → 400ms → 400ms → ...   (never past the budget)
# =============================================================================
class DispatchConfig(BaseModel):
    """Dispatcher, Waiter and Responder settings.

    Attributes:
        max_synchronous_wait_ms: Ceiling on in-process blocking. A caller
            willing to wait at least this long gets inline execution.
        default_wait_ms: Wait budget when the caller does not send one.
        initial_poll_interval_ms: First Waiter sleep.
        max_poll_interval_ms: Cap for the doubling Waiter sleep.
        poll_backoff_multiplier: Growth factor between Waiter sleeps.
        retry_after_seconds: Retry-After hint on pending responses.
        record_ttl_seconds: Retention of Request Records.
        marker_drain_timeout_ms: How long a finished request scope waits for
            its background "processing" marker write before cancelling it.
    """

    max_synchronous_wait_ms: int = Field(default=25_000, ge=0)
    default_wait_ms: int = Field(default=0, ge=0)
    initial_poll_interval_ms: int = Field(default=50, ge=1, le=10_000)
    max_poll_interval_ms: int = Field(default=400, ge=1, le=60_000)
    poll_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    retry_after_seconds: int = Field(default=5, ge=0)
    record_ttl_seconds: int = Field(default=3_600, ge=1)
    marker_drain_timeout_ms: int = Field(default=500, ge=0)

    @model_validator(mode="after")
    def _check_poll_bounds(self) -> DispatchConfig:
        if self.max_poll_interval_ms < self.initial_poll_interval_ms:
            raise ValueError(
                "max_poll_interval_ms must be >= initial_poll_interval_ms"
            )
        return self

    def poll_interval_ms(self, attempt: int) -> float:
        """Sleep before poll number ``attempt + 1`` (zero-based, no jitter).

        Example:
            >>> DispatchConfig().poll_interval_ms(0)
            50.0
            >>> DispatchConfig().poll_interval_ms(5)
            400.0
        """
        interval = self.initial_poll_interval_ms * (self.poll_backoff_multiplier ** attempt)
        return float(min(interval, self.max_poll_interval_ms))


# =============================================================================
# Worker Configuration
# =============================================================================
class WorkerConfig(BaseModel):
    """Queue consumer settings.

    Attributes:
        concurrency: Number of concurrent consume loops per Worker.
        batch_size: Maximum deliveries fetched per receive call.
        receive_wait_seconds: Long-poll duration of one receive call.
        max_receive_count: Deliveries of one message before it is parked
            in the dead-letter list instead of being redelivered.
        visibility_timeout_seconds: How long a received message stays
            invisible before an unacknowledged delivery is handed out again.
    """

    concurrency: int = Field(default=1, ge=1, le=64)
    batch_size: int = Field(default=10, ge=1, le=100)
    receive_wait_seconds: float = Field(default=1.0, ge=0)
    max_receive_count: int = Field(default=5, ge=1, le=100)
    visibility_timeout_seconds: float = Field(default=30.0, gt=0)


# =============================================================================
# Main Configuration
# =============================================================================
# Environment Variable Mapping:
#   DEFERLINE_LOG_LEVEL                 → config.log_level
#   DEFERLINE_ENABLE_PERSISTENCE        → config.enable_persistence
#   DEFERLINE_OWNER_HASH_SALT           → config.owner_hash_salt
#   DEFERLINE_REDIS__URL                → config.redis.url
#   DEFERLINE_DISPATCH__RETRY_AFTER_SECONDS → config.dispatch.retry_after_seconds
# =============================================================================
class DeferlineConfig(BaseSettings):
    """Top-level configuration for deferline.

    Attributes:
        environment: Deployment environment.
        log_level: Python logging level name.
        log_json: Render logs as JSON lines (True) or for the console.
        enable_persistence: Use Redis adapters (False = in-memory).
        owner_hash_salt: Secret salt for hashing owner identities into keys.
            Required outside ``dev``.
        redis: Redis connection configuration.
        dispatch: Dispatcher / Waiter / Responder configuration.
        worker: Worker configuration.

    Example:
        >>> config = DeferlineConfig(
        ...     environment="dev",
        ...     dispatch=DispatchConfig(max_synchronous_wait_ms=10_000),
        ... )
    """

    # -------------------------------------------------------------------------
    # General Settings
    # -------------------------------------------------------------------------
    environment: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_json: bool = Field(
        default=False,
        description="Render structured logs as JSON lines",
    )
    enable_persistence: bool = Field(
        default=False,
        description="Use Redis for records and queue (False = in-memory)",
    )
    owner_hash_salt: Optional[SecretStr] = Field(
        default=None,
        description="Salt for HMAC hashing of owner identities",
    )

    # -------------------------------------------------------------------------
    # Nested Configurations
    # -------------------------------------------------------------------------
    redis: RedisConfig = Field(default_factory=RedisConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    model_config = {
        "env_prefix": "DEFERLINE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @model_validator(mode="after")
    def _require_salt_outside_dev(self) -> DeferlineConfig:
        if self.environment != "dev" and self.owner_hash_salt is None:
            raise ValueError(
                "owner_hash_salt must be set when environment is not 'dev'"
            )
        return self


# =============================================================================
# Configuration Loader
# =============================================================================
def load_config(path: Optional[str] = None) -> DeferlineConfig:
    """Load configuration from a YAML file and/or environment variables.

    Args:
        path: Path to a YAML configuration file. If None, looks for
            'deferline.yaml' in the current directory and falls back to
            defaults + environment variables when it does not exist.

    Returns:
        A fully validated DeferlineConfig instance.

    Raises:
        FileNotFoundError: If an explicit path is provided but doesn't exist.
        ConfigurationError: If the YAML file cannot be parsed or is not a
            mapping.
    """
    if path is None:
        default_path = Path("deferline.yaml")
        if default_path.exists():
            path = str(default_path)

    yaml_data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(config_path) as f:
            try:
                raw_data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    message=f"Configuration file is not valid YAML: {path}",
                    error_code="CONFIG_PARSE_ERROR",
                    details={"path": path, "reason": str(exc)},
                ) from exc

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError(
                message=f"Configuration file must contain a mapping: {path}",
                error_code="CONFIG_PARSE_ERROR",
                details={"path": path, "type": type(raw_data).__name__},
            )
        yaml_data = raw_data

    return DeferlineConfig(**yaml_data)


# =============================================================================
# Logging Setup
# =============================================================================
# structlog is configured once per process. contextvars are merged first so
# that request_id / correlation_id / traceparent bound by the facade or the
# Worker show up on every line logged while a request is being handled.
# =============================================================================
def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog processors and the minimum log level.

    Args:
        level: Logging level name (case-insensitive).
        json_logs: Render JSON lines instead of the console renderer.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ConfigurationError(
            message=f"Unknown log level: {level}",
            error_code="INVALID_LOG_LEVEL",
            details={"log_level": level},
        )

    renderer: Any
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )


def get_default_config() -> DeferlineConfig:
    """Create a DeferlineConfig with all defaults (plus any set env vars)."""
    return DeferlineConfig()
