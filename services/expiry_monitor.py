"""
Expiry Monitor.

Background sweep that expires authorizations left uncaptured past their
expiry time.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from config import config
from models.transaction import utc_now
from .transaction_engine import TransactionEngine

logger = logging.getLogger(__name__)


class ExpiryMonitor:
    """
    Periodically expires stale authorizations.

    One scan runs at a time. A tick that arrives while a scan is still
    running is skipped rather than queued. The first scan runs as soon
    as the monitor starts.
    """

    def __init__(
        self,
        engine: TransactionEngine,
        interval: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the monitor.

        Args:
            engine: Transaction engine that performs the expiry
            interval: Seconds between scans
            clock: Returns the current UTC time
        """
        self.engine = engine
        self.interval = interval or config.expiry.interval
        self._clock = clock
        self._scan_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stats = {
            "scans": 0,
            "skipped_ticks": 0,
            "expired": 0,
            "errors": 0
        }

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._running:
            return

        logger.info(f"Starting expiry monitor (interval: {self.interval}s)")
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the timer and wait for any in-flight scan to finish."""
        if not self._running:
            return

        logger.info("Stopping expiry monitor...")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # Wait for a scan started by run_once() outside the loop
        async with self._scan_lock:
            pass

        logger.info("Expiry monitor stopped")

    async def _loop(self) -> None:
        while self._running:
            if self._scan_lock.locked():
                self._stats["skipped_ticks"] += 1
                logger.debug("Previous expiry scan still running; skipping tick")
            else:
                # Shielded so stop() lets the scan finish instead of cutting it off
                scan = asyncio.ensure_future(self.run_once())
                try:
                    await asyncio.shield(scan)
                except asyncio.CancelledError:
                    await scan
                    raise
                except Exception as e:
                    logger.error(f"Error in expiry scan: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def run_once(self) -> int:
        """
        Expire every authorization that is past its expiry.

        Returns:
            Number of transactions expired by this scan
        """
        async with self._scan_lock:
            self._stats["scans"] += 1
            expired_candidates = await self.engine.repository.find_expired_authorizations(
                self._clock()
            )

            if not expired_candidates:
                return 0

            logger.info(f"Found {len(expired_candidates)} expired authorization(s)")

            expired = 0
            for transaction in expired_candidates:
                try:
                    if await self.engine.expire_authorization(transaction.id):
                        expired += 1
                except Exception as e:
                    self._stats["errors"] += 1
                    logger.error(
                        f"Failed to expire authorization {transaction.id}: {e}",
                        exc_info=True
                    )

            self._stats["expired"] += expired
            logger.info(f"Expired {expired} authorization(s)")
            return expired

    def get_stats(self) -> dict:
        """
        Get monitor statistics.

        Returns:
            Statistics dictionary
        """
        return {
            **self._stats,
            "running": self._running,
            "interval": self.interval
        }
