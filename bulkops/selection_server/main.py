"""
Selection server - Main entry point.

This module starts the selection server with all components:
- HTTP API (FastAPI served by uvicorn)
- Token purger loop (removes long-expired selection tokens)

Usage:
    python -m bulkops.selection_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Stores are initialized before the API accepts requests
    - Graceful shutdown stops accepting requests, then cancels running
      bulk jobs cooperatively (their partial results are kept)

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
import uvicorn

from .api import create_http_app
from .config import ServerConfig
from .executor import BulkExecutor
from .jobs import BulkJobRegistry
from .records import SqliteRecordStore
from .resolver import Resolver
from .service import SelectionService
from .tokens import SqliteTokenStore, TokenStore, create_token_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class TokenPurger:
    """Background loop deleting tokens expired beyond the retention window.

    Store errors are logged and the loop keeps going; a missed purge only
    delays cleanup.
    """

    def __init__(
        self,
        token_store: TokenStore,
        interval_seconds: float = 60.0,
        retention_seconds: float = 3600.0,
    ) -> None:
        self.token_store = token_store
        self.interval_seconds = interval_seconds
        self.retention_seconds = retention_seconds
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning("Token purger already running")
            return

        self._running = True
        logger.info("Starting token purger", extra={"interval_seconds": self.interval_seconds})
        try:
            while self._running:
                await self.purge_once()
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Token purger cancelled")
        finally:
            self._running = False

    async def purge_once(self) -> int:
        try:
            return await self.token_store.purge_expired(self.retention_seconds)
        except Exception as e:
            logger.error(f"Token purge failed: {e}", exc_info=True)
            return 0

    async def stop(self) -> None:
        self._running = False


class Server:
    """Selection server orchestrator.

    Manages the lifecycle of all server components:
    - Token and record stores
    - HTTP server
    - Background loops (token purger)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.token_store: TokenStore | None = None
        self.record_store: SqliteRecordStore | None = None
        self.service: SelectionService | None = None
        self.http_server: uvicorn.Server | None = None
        self.purger: TokenPurger | None = None

        self._tasks: list[asyncio.Task] = []

    def build_service(self) -> SelectionService:
        """Wire stores, resolver, executor and job registry."""
        cfg = self.config
        self.token_store = create_token_store(cfg.tokens)
        self.record_store = SqliteRecordStore(
            db_path=cfg.records.db_path,
            wal_mode=cfg.records.wal_mode,
            busy_timeout_ms=cfg.records.busy_timeout_ms,
        )
        executor = BulkExecutor(
            concurrency=cfg.executor.concurrency,
            max_reported_failures=cfg.executor.max_reported_failures,
        )
        jobs = BulkJobRegistry(
            executor,
            timeout_seconds=cfg.executor.timeout_seconds,
            max_retained_jobs=cfg.executor.max_retained_jobs,
        )
        return SelectionService(
            schema=cfg.records.load_schema(),
            token_store=self.token_store,
            record_store=self.record_store,
            resolver=Resolver(self.record_store, batch_size=cfg.resolver.batch_size),
            jobs=jobs,
            single_use_tokens=cfg.tokens.single_use,
            sync_threshold=cfg.executor.sync_threshold,
            store_retries=cfg.tokens.max_retries,
            store_retry_delay=cfg.tokens.retry_delay_ms / 1000.0,
        )

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting selection server")
        self.config.log_config()

        try:
            self.service = self.build_service()

            await self.record_store.initialize()
            if isinstance(self.token_store, SqliteTokenStore):
                await self.token_store.initialize()

            self.purger = TokenPurger(
                self.token_store,
                interval_seconds=self.config.tokens.purge_interval_seconds,
                retention_seconds=self.config.tokens.expired_retention_seconds,
            )
            self._tasks.append(asyncio.create_task(self.purger.start()))

            app = create_http_app(self.service, self.config.http)
            self.http_server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.config.http.host,
                    port=self.config.http.port,
                    log_config=None,
                )
            )
            self._tasks.append(asyncio.create_task(self.http_server.serve()))

            self._running = True
            logger.info(
                "Selection server started successfully",
                extra={"http_bind": f"{self.config.http.host}:{self.config.http.port}"},
            )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping selection server")

        if self.http_server:
            self.http_server.should_exit = True

        if self.purger:
            await self.purger.stop()

        if self.service:
            await self.service.jobs.shutdown()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.token_store:
            await self.token_store.close()

        self._running = False
        logger.info("Selection server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
