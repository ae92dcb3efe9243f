"""
relgraph processor - Main entry point.

This module starts the processor with all components:
- SQLite persistence gateway (users, checkpoints, raw events)
- Kafka broker client
- In-memory GraphEngine
- Processor loop (Kafka -> GraphEngine -> SQLite)

Usage:
    python -m relgraph_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The engine is hydrated before the first batch is consumed
    - SIGINT/SIGTERM stop the processor gracefully
    - A fatal broker error exits with status 1; the supervisor restarts
      the process and it resumes from the stored checkpoints

How to change safely:
    - Test shutdown sequence thoroughly
    - Keep exactly one processor per consumer group member
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import ServerConfig
from .graph import GraphEngine
from .processor import Processor
from .storage import SqliteGateway, StorageError
from .stream import BrokerClient, BrokerError, create_broker_client

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 10.0


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


class Server:
    """Main processor server that coordinates all components.

    Example:
        >>> server = Server()
        >>> await server.start()  # Runs until shutdown is requested
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        broker: BrokerClient | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            broker: Optional broker client (Kafka from configuration if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.broker = broker
        self.gateway: SqliteGateway | None = None
        self.engine: GraphEngine | None = None
        self.processor: Processor | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and run until shutdown or a fatal error.

        Raises:
            BrokerFatalError: If the consumer crashes
        """
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting relgraph processor")
        self.config.log_config()

        try:
            self.gateway = SqliteGateway(
                data_dir=self.config.storage.data_dir,
                db_name=self.config.storage.db_name,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            if self.broker is None:
                self.broker = create_broker_client(self.config.kafka)
            self.engine = GraphEngine(referral_point_depth=self.config.graph.referral_point_depth)

            self.processor = Processor(
                broker=self.broker,
                gateway=self.gateway,
                engine=self.engine,
                topic=self.config.kafka.topic,
                resume=self.config.processor.resume,
                stats_interval_seconds=self.config.processor.stats_interval_seconds,
            )
            self._running = True
            await self.processor.start()

            run_task = asyncio.create_task(self.processor.run())
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())
            self._tasks = [run_task, shutdown_task]
            logger.info("relgraph processor started successfully")

            # Wait for shutdown signal or the processor to exit
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            if run_task in done:
                run_task.result()

        except Exception as e:
            logger.error(f"Processor failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping relgraph processor")

        self._shutdown_event.set()

        # The processor finishes its current batch before anything is cancelled
        if self.processor:
            await self.processor.stop()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_TIMEOUT_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self._running = False
        logger.info("relgraph processor stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    exit_code = 0
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    except (BrokerError, StorageError) as e:
        logger.critical(f"Exiting after fatal error: {e}")
        exit_code = 1
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
