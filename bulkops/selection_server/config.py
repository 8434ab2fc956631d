"""
Configuration management for the selection server.

All configuration is done via environment variables - no config files inside
containers (the record schema may point at a file path). This module
provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST pick a shared token backend (sqlite)
    - Nothing here is secret, but paths are logged only at startup

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .filters import CollectionSchema

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "/var/lib/bulkops"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class TokenBackend(Enum):
    """Supported selection token backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind host
        port: Bind port
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class TokenStoreConfig:
    """Selection token store configuration.

    Attributes:
        backend: Which backend stores tokens
        db_path: SQLite file (sqlite backend only)
        ttl_seconds: Token lifetime
        single_use: Invalidate tokens after one completed execution
        expired_retention_seconds: How long expired tokens are kept so they
            report "expired" instead of "not found"
        purge_interval_seconds: Interval of the background purge loop
        max_retries: Retries on a transient token store failure
        retry_delay_ms: Initial delay between retries (doubles each time)
        busy_timeout_ms: SQLite busy timeout
        wal_mode: SQLite WAL journal mode
    """

    backend: TokenBackend = TokenBackend.SQLITE
    db_path: str = f"{DEFAULT_DATA_DIR}/tokens.db"
    ttl_seconds: float = 900.0  # 15 minutes
    single_use: bool = False
    expired_retention_seconds: float = 3600.0
    purge_interval_seconds: float = 60.0
    max_retries: int = 2
    retry_delay_ms: int = 100
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> TokenStoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("TOKEN_BACKEND", "sqlite").lower()
        try:
            backend = TokenBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid TOKEN_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            db_path=os.getenv("TOKEN_DB_PATH", f"{os.getenv('DATA_DIR', DEFAULT_DATA_DIR)}/tokens.db"),
            ttl_seconds=float(os.getenv("TOKEN_TTL_SECONDS", "900")),
            single_use=_env_bool("TOKEN_SINGLE_USE", "false"),
            expired_retention_seconds=float(os.getenv("TOKEN_EXPIRED_RETENTION_SECONDS", "3600")),
            purge_interval_seconds=float(os.getenv("TOKEN_PURGE_INTERVAL_SECONDS", "60")),
            max_retries=int(os.getenv("TOKEN_MAX_RETRIES", "2")),
            retry_delay_ms=int(os.getenv("TOKEN_RETRY_DELAY_MS", "100")),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class RecordStoreConfig:
    """Record store configuration.

    Attributes:
        db_path: SQLite file holding the record collection
        schema_json: Inline collection schema ({"fields": {name: kind}})
        schema_path: Path to a JSON collection schema (used if no inline one)
        busy_timeout_ms: SQLite busy timeout
        wal_mode: SQLite WAL journal mode
    """

    db_path: str = f"{DEFAULT_DATA_DIR}/records.db"
    schema_json: str | None = None
    schema_path: str | None = None
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> RecordStoreConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("RECORD_DB_PATH", f"{os.getenv('DATA_DIR', DEFAULT_DATA_DIR)}/records.db"),
            schema_json=os.getenv("RECORD_SCHEMA_JSON"),
            schema_path=os.getenv("RECORD_SCHEMA_PATH"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )

    def load_schema(self) -> CollectionSchema:
        """Load the collection schema from inline JSON or file.

        Raises:
            ValueError: If neither source is set or the schema is invalid
        """
        if self.schema_json:
            return CollectionSchema.from_json(self.schema_json)
        if self.schema_path:
            return CollectionSchema.from_file(self.schema_path)
        raise ValueError("RECORD_SCHEMA_JSON or RECORD_SCHEMA_PATH is required")


@dataclass(frozen=True)
class ResolverConfig:
    """Resolver configuration.

    Attributes:
        batch_size: Record IDs fetched per page
    """

    batch_size: int = 1000

    @classmethod
    def from_env(cls) -> ResolverConfig:
        """Load configuration from environment variables."""
        return cls(batch_size=int(os.getenv("RESOLVER_BATCH_SIZE", "1000")))


@dataclass(frozen=True)
class ExecutorConfig:
    """Bulk executor configuration.

    Attributes:
        concurrency: Maximum record actions in flight per execution
        timeout_seconds: Soft timeout per execution (None = unlimited)
        max_reported_failures: Cap on failed items listed in a result
        sync_threshold: Estimated selection size up to which bulk actions
            run synchronously when the client does not choose
        max_retained_jobs: Results kept in memory for polling
    """

    concurrency: int = 8
    timeout_seconds: float | None = None
    max_reported_failures: int = 100
    sync_threshold: int = 500
    max_retained_jobs: int = 1000

    @classmethod
    def from_env(cls) -> ExecutorConfig:
        """Load configuration from environment variables."""
        timeout = os.getenv("EXECUTOR_TIMEOUT_SECONDS")
        return cls(
            concurrency=int(os.getenv("EXECUTOR_CONCURRENCY", "8")),
            timeout_seconds=float(timeout) if timeout else None,
            max_reported_failures=int(os.getenv("EXECUTOR_MAX_REPORTED_FAILURES", "100")),
            sync_threshold=int(os.getenv("EXECUTOR_SYNC_THRESHOLD", "500")),
            max_retained_jobs=int(os.getenv("EXECUTOR_MAX_RETAINED_JOBS", "1000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        http: HTTP API configuration
        tokens: Token store configuration
        records: Record store configuration
        resolver: Resolver configuration
        executor: Executor configuration
        observability: Logging configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    tokens: TokenStoreConfig = field(default_factory=TokenStoreConfig)
    records: RecordStoreConfig = field(default_factory=RecordStoreConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            tokens=TokenStoreConfig.from_env(),
            records=RecordStoreConfig.from_env(),
            resolver=ResolverConfig.from_env(),
            executor=ExecutorConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.records.schema_json and not self.records.schema_path:
            raise ValueError("RECORD_SCHEMA_JSON or RECORD_SCHEMA_PATH is required")
        if self.tokens.ttl_seconds <= 0:
            raise ValueError("TOKEN_TTL_SECONDS must be positive")
        if self.tokens.max_retries < 0:
            raise ValueError("TOKEN_MAX_RETRIES must not be negative")
        if self.resolver.batch_size < 1:
            raise ValueError("RESOLVER_BATCH_SIZE must be at least 1")
        if self.executor.concurrency < 1:
            raise ValueError("EXECUTOR_CONCURRENCY must be at least 1")
        if self.executor.timeout_seconds is not None and self.executor.timeout_seconds <= 0:
            raise ValueError("EXECUTOR_TIMEOUT_SECONDS must be positive when set")

        if self.tokens.backend == TokenBackend.MEMORY:
            logger.warning(
                "TOKEN_BACKEND=memory keeps tokens in this process only; "
                "other server instances cannot resolve them."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "token_backend": self.tokens.backend.value,
                "token_db": self.tokens.db_path
                if self.tokens.backend == TokenBackend.SQLITE
                else None,
                "token_ttl_seconds": self.tokens.ttl_seconds,
                "token_single_use": self.tokens.single_use,
                "record_db": self.records.db_path,
                "batch_size": self.resolver.batch_size,
                "concurrency": self.executor.concurrency,
                "sync_threshold": self.executor.sync_threshold,
                "log_level": self.observability.log_level,
            },
        )
