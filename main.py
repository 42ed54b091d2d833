#!/usr/bin/env python3
"""
Payment Network Router Service.

Main entry point that wires and runs the payment network core:
- Issuer registry and token router
- Transaction engine
- Notification dispatcher and its delivery workers
- Authorization expiry monitor

Usage:
    python main.py

Environment variables:
    See config.py for all configuration options.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from config import config
from database.db import Database
from database.job_queue import NotificationQueue
from database.repositories import SqlEndpointRepository, SqlTransactionRepository
from exceptions import ConfigurationError
from services.expiry_monitor import ExpiryMonitor
from services.issuer_registry import IssuerRegistry
from services.notification_dispatcher import NotificationDispatcher
from services.token_router import TokenRouter
from services.transaction_engine import TransactionEngine


# Configure logging
def setup_logging():
    """Configure logging based on config."""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]

    if config.logging.file:
        # Ensure log directory exists
        log_dir = os.path.dirname(config.logging.file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(config.logging.file))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers
    )

    # Reduce noise from third-party libraries
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class PaymentNetworkService:
    """
    Main service orchestrator.

    Coordinates all components of the payment network:
    - Database connection (transactions, endpoints, job queue)
    - Issuer registry, token router and transaction engine
    - Notification dispatcher workers
    - Expiry monitor

    The request layer reads ``engine`` and checks ``accepting_requests``
    before dispatching an inbound operation.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.db: Optional[Database] = None
        self.registry: Optional[IssuerRegistry] = None
        self.router: Optional[TokenRouter] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.engine: Optional[TransactionEngine] = None
        self.expiry_monitor: Optional[ExpiryMonitor] = None
        self._accepting = False
        self._stopped = False
        self._shutdown_event = asyncio.Event()

    @property
    def accepting_requests(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        """Start all services."""
        logger.info("=" * 60)
        logger.info(f"Starting {config.service.name}")
        logger.info("=" * 60)

        # Validate configuration
        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ConfigurationError("Invalid configuration", details={'errors': errors})

        # Initialize database
        logger.info("Initializing database...")
        self.db = Database(self.database_url)
        await self.db.connect()
        await self.db.init_schema()

        # Initialize services
        logger.info("Initializing services...")

        self.registry = IssuerRegistry()
        self.router = TokenRouter(self.registry)

        self.dispatcher = NotificationDispatcher(
            endpoints=SqlEndpointRepository(self.db),
            queue=NotificationQueue(self.db)
        )
        await self.dispatcher.start()

        self.engine = TransactionEngine(
            repository=SqlTransactionRepository(self.db),
            router=self.router,
            dispatcher=self.dispatcher
        )

        self.expiry_monitor = ExpiryMonitor(self.engine)
        await self.expiry_monitor.start()

        self._accepting = True
        self._stopped = False

        logger.info("=" * 60)
        logger.info("Service started successfully!")
        logger.info(
            f"Issuers: {', '.join(p.issuer_id for p in self.registry.list_providers())} "
            f"(default: {self.registry.default_issuer_id})"
        )
        logger.info("=" * 60)

    async def stop(self) -> None:
        """Stop all services gracefully."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Initiating graceful shutdown...")

        # Stop accepting new requests
        self._accepting = False

        # Stop background work
        if self.expiry_monitor:
            await self.expiry_monitor.stop()

        if self.dispatcher:
            await self.dispatcher.stop()

        # Queue whatever notifications are still being raised
        if self.engine:
            try:
                await asyncio.wait_for(
                    self.engine.drain_notifications(),
                    timeout=config.service.shutdown_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for pending notifications")

        # Close issuer sessions
        if self.router:
            await self.router.close()
        if self.registry:
            await self.registry.close()

        # Close database
        if self.db:
            await self.db.disconnect()

        logger.info("Shutdown complete")
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run the service until shutdown signal."""
        await self.start()

        # Wait for shutdown signal
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request service shutdown."""
        asyncio.create_task(self.stop())

    def get_stats(self) -> dict:
        """Collect statistics from every running component."""
        return {
            "accepting_requests": self._accepting,
            "engine": self.engine.get_stats() if self.engine else None,
            "router": self.router.get_stats() if self.router else None,
            "dispatcher": self.dispatcher.get_stats() if self.dispatcher else None,
            "expiry_monitor": self.expiry_monitor.get_stats() if self.expiry_monitor else None
        }


def handle_signal(service: PaymentNetworkService, sig: signal.Signals) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {sig.name}, initiating shutdown...")
    service.request_shutdown()


async def main() -> None:
    """Main entry point."""
    setup_logging()

    service = PaymentNetworkService()

    # Set up signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda s=sig: handle_signal(service, s)
        )

    try:
        await service.run()
    except Exception as e:
        logger.error(f"Service error: {e}", exc_info=True)
        await service.stop()
        sys.exit(1)


if __name__ == '__main__':
    asyncio.run(main())
