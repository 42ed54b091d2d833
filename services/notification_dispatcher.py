"""
Notification Dispatcher.

Manages merchant notification endpoints, turns transaction events into
signed webhook jobs on the durable queue, and runs the worker pool that
delivers those jobs with bounded retry and timeout.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp

from config import config
from database.job_queue import JobQueue
from database.repositories import EndpointRepository
from exceptions import DeliveryError, PersistenceError
from models.notification import (
    DeliveryRecord,
    NotificationEndpoint,
    NotificationJob,
    NotifyOutcome,
    WebhookEventType,
    WebhookPayload,
    parse_events,
)
from models.transaction import utc_now
from .retry import backoff_delay

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Service for delivering webhook notifications to merchants.

    Features:
    - HMAC-SHA256 signature over the exact bytes sent
    - Durable queue keyed by event id (duplicate enqueues are ignored)
    - Fixed-size worker pool with per-attempt timeout
    - Exponential backoff between attempts, then permanent failure
    - Delivery history per endpoint and per transaction
    """

    def __init__(
        self,
        endpoints: EndpointRepository,
        queue: JobQueue,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the dispatcher.

        Args:
            endpoints: Endpoint and delivery-history repository
            queue: Durable job queue
            max_retries: Total delivery attempts per job
            retry_delay_ms: Backoff base in milliseconds
            timeout_ms: Per-attempt timeout in milliseconds
            concurrency: Number of delivery workers
            poll_interval: Seconds an idle worker waits before polling again
            session: Optional shared aiohttp session
            clock: Returns the current UTC time
        """
        self.endpoints = endpoints
        self.queue = queue
        self.max_retries = max_retries or config.webhook.max_retries
        self.retry_delay_ms = (
            retry_delay_ms if retry_delay_ms is not None else config.webhook.retry_delay_ms
        )
        self.timeout_ms = timeout_ms or config.webhook.timeout_ms
        self.concurrency = concurrency or config.webhook.concurrency
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.webhook.poll_interval
        )
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        self._running = False
        self._stop_event = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._stats = {
            "enqueued": 0,
            "skipped": 0,
            "enqueue_failed": 0,
            "delivered": 0,
            "retried": 0,
            "failed": 0
        }

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return

        logger.info("Starting notification dispatcher...")
        released = await self.queue.release_stale()
        if released:
            logger.info(f"Re-queued {released} job(s) interrupted by a previous shutdown")

        self._get_session()
        self._running = True
        self._stop_event.clear()

        for worker_id in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(worker_id)))

        logger.info(f"Notification dispatcher started with {self.concurrency} worker(s)")

    async def stop(self) -> None:
        """Stop the workers, letting in-flight deliveries finish or time out."""
        if not self._running and not self._workers:
            await self._close_session()
            return

        logger.info("Stopping notification dispatcher...")
        self._running = False
        self._stop_event.set()

        if self._workers:
            grace = self.timeout_ms / 1000.0 + 1.0
            done, pending = await asyncio.wait(self._workers, timeout=grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._workers = []

        await self._close_session()
        logger.info("Notification dispatcher stopped")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _close_session(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _worker(self, worker_id: int) -> None:
        """Claim and deliver jobs until stopped."""
        logger.debug(f"Notification worker {worker_id} started")

        while self._running:
            try:
                processed = await self.process_next()
            except Exception as e:
                logger.error(f"Error in notification worker {worker_id}: {e}", exc_info=True)
                processed = False

            if not processed and self._running:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.debug(f"Notification worker {worker_id} stopped")

    # =========================================================================
    # Endpoint administration
    # =========================================================================

    async def register_endpoint(
        self,
        merchant_id: str,
        url: str,
        events: Iterable[Any],
        secret: Optional[str] = None
    ) -> NotificationEndpoint:
        """
        Register a notification endpoint for a merchant.

        Args:
            merchant_id: Owning merchant
            url: Delivery URL
            events: Event types to subscribe to
            secret: Signing secret (generated when omitted)

        Returns:
            The stored endpoint

        Raises:
            ValidationError: If the URL or events are invalid
        """
        endpoint = NotificationEndpoint.create(merchant_id, url, events, secret)
        stored = await self.endpoints.create(endpoint)
        logger.info(f"Registered endpoint {stored.id} for merchant {merchant_id}")
        return stored

    async def get_endpoint(self, endpoint_id: str) -> Optional[NotificationEndpoint]:
        return await self.endpoints.find_by_id(endpoint_id)

    async def get_endpoints_for_merchant(
        self,
        merchant_id: str,
        active_only: bool = True
    ) -> List[NotificationEndpoint]:
        return await self.endpoints.find_by_merchant_id(merchant_id, active_only)

    async def update_endpoint(
        self,
        endpoint_id: str,
        url: Optional[str] = None,
        events: Optional[Iterable[Any]] = None,
        is_active: Optional[bool] = None
    ) -> Optional[NotificationEndpoint]:
        """
        Update an endpoint's URL, subscriptions or active flag.

        Returns:
            The updated endpoint, or None if it does not exist

        Raises:
            ValidationError: If the resulting endpoint would be invalid
        """
        current = await self.endpoints.find_by_id(endpoint_id)
        if current is None:
            return None

        fields: Dict[str, Any] = {}
        if url is not None:
            fields['url'] = url
        if events is not None:
            fields['events'] = parse_events(events)
        if is_active is not None:
            fields['is_active'] = is_active

        if not fields:
            return current

        # Validates the merged result before anything is written
        dataclasses.replace(current, **fields)

        updated = await self.endpoints.update(endpoint_id, fields)
        if updated:
            logger.info(f"Updated endpoint {endpoint_id}")
        return updated

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        deleted = await self.endpoints.delete(endpoint_id)
        if deleted:
            logger.info(f"Deleted endpoint {endpoint_id}")
        return deleted

    async def get_endpoint_stats(self) -> Dict[str, Any]:
        return await self.endpoints.get_stats()

    async def get_delivery_history(self, endpoint_id: str, limit: int = 50) -> List[DeliveryRecord]:
        return await self.endpoints.get_delivery_history(endpoint_id, limit)

    async def get_deliveries_for_transaction(self, transaction_id: str) -> List[DeliveryRecord]:
        return await self.endpoints.get_deliveries_for_transaction(transaction_id)

    # =========================================================================
    # Raising events
    # =========================================================================

    async def notify(self, event_type: WebhookEventType, data: Dict[str, Any]) -> NotifyOutcome:
        """
        Queue a transaction event for every subscribed endpoint of its merchant.

        Args:
            event_type: Type of event
            data: Event data; must include merchantId

        Returns:
            NotifyOutcome with per-endpoint counts
        """
        event_type = WebhookEventType(event_type)
        merchant_id = data.get('merchantId')
        outcome = NotifyOutcome()

        endpoints = await self.endpoints.find_by_merchant_id(merchant_id, active_only=True)
        if not endpoints:
            logger.debug(f"No endpoints registered for merchant {merchant_id}")
            return outcome

        for endpoint in endpoints:
            if not endpoint.is_subscribed(event_type):
                outcome.skipped += 1
                continue

            payload = WebhookPayload.build(event_type, data)
            job = NotificationJob.for_endpoint(endpoint, payload, self.max_retries)
            job.next_attempt_at = self._clock()

            try:
                if await self.queue.enqueue(job):
                    outcome.enqueued += 1
                else:
                    outcome.skipped += 1
            except PersistenceError as e:
                outcome.failed += 1
                logger.error(f"Failed to enqueue {event_type.value} for endpoint {endpoint.id}: {e}")

        self._stats["enqueued"] += outcome.enqueued
        self._stats["skipped"] += outcome.skipped
        self._stats["enqueue_failed"] += outcome.failed

        logger.info(
            f"Queued {event_type.value} for merchant {merchant_id}: "
            f"enqueued={outcome.enqueued} skipped={outcome.skipped} failed={outcome.failed}"
        )
        return outcome

    # =========================================================================
    # Delivery
    # =========================================================================

    async def process_next(self) -> bool:
        """
        Claim one due job and attempt delivery.

        Returns:
            True if a job was processed, False if none was due
        """
        job = await self.queue.claim_next(self._clock())
        if job is None:
            return False

        await self._handle_job(job)
        return True

    async def process_due(self) -> int:
        """Deliver every job that is currently due. Returns the number processed."""
        count = 0
        while await self.process_next():
            count += 1
        return count

    async def _handle_job(self, job: NotificationJob) -> None:
        """Deliver a claimed job and record the outcome."""
        logger.info(
            f"Delivering {job.event_type.value} {job.job_id} to {job.endpoint_url} "
            f"(attempt {job.attempt}/{job.max_attempts})"
        )

        success, status_code, error = await self._deliver(job)
        now = self._clock()

        try:
            await self.endpoints.record_delivery(DeliveryRecord(
                endpoint_id=job.endpoint_id,
                event=job.event_type,
                payload_id=job.job_id,
                transaction_id=job.transaction_id,
                attempt=job.attempt,
                success=success,
                payload=job.payload,
                status_code=status_code,
                error=error,
                delivered_at=now if success else None,
                created_at=now
            ))
        except PersistenceError as e:
            logger.error(f"Could not record delivery of {job.job_id}: {e}")

        if success:
            await self.queue.complete(job.job_id)
            self._stats["delivered"] += 1
            logger.info(f"Delivered {job.job_id} to {job.endpoint_url}")
        elif job.attempt >= job.max_attempts:
            await self.queue.fail(job.job_id, error or "Delivery failed")
            self._stats["failed"] += 1
            logger.error(
                f"All {job.max_attempts} attempts exhausted for {job.job_id} "
                f"to {job.endpoint_url}: {error}"
            )
        else:
            delay = backoff_delay(job.attempt, self.retry_delay_ms / 1000.0)
            await self.queue.retry_later(
                job.job_id,
                now + timedelta(seconds=delay),
                error or "Delivery failed"
            )
            self._stats["retried"] += 1
            logger.warning(
                f"Delivery attempt {job.attempt} failed for {job.job_id}: {error}; "
                f"next attempt in {delay:.1f}s"
            )

    def _headers(self, job: NotificationJob) -> Dict[str, str]:
        timestamp = job.payload_dict.get('timestamp', '')
        return {
            'Content-Type': 'application/json',
            'X-Webhook-Signature': f'sha256={WebhookPayload.sign_body(job.payload, job.secret)}',
            'X-Webhook-Event': job.event_type.value,
            'X-Webhook-Id': job.job_id,
            'X-Webhook-Timestamp': timestamp
        }

    async def _post(self, job: NotificationJob) -> int:
        """
        Send one attempt.

        Raises:
            DeliveryError: On a non-2xx response
        """
        async with self._get_session().post(
            job.endpoint_url,
            data=job.payload.encode('utf-8'),
            headers=self._headers(job)
        ) as response:
            response_body = await response.text(errors='replace')

            # Success: 2xx status codes
            if 200 <= response.status < 300:
                return response.status

            raise DeliveryError(
                f"HTTP {response.status}: {response_body[:200]}",
                status_code=response.status
            )

    async def _deliver(self, job: NotificationJob) -> Tuple[bool, Optional[int], Optional[str]]:
        """
        Deliver a job's payload, bounded by the per-attempt timeout.

        Returns:
            Tuple of (success, response_code, error)
        """
        try:
            status = await asyncio.wait_for(self._post(job), timeout=self.timeout_ms / 1000.0)
            return True, status, None
        except DeliveryError as e:
            return False, e.status_code, e.message
        except asyncio.TimeoutError:
            logger.error(f"Timeout delivering webhook to {job.endpoint_url}")
            return False, None, "Request timeout"
        except aiohttp.ClientError as e:
            logger.error(f"Network error delivering webhook: {e}")
            return False, None, str(e) or e.__class__.__name__
        except Exception as e:
            logger.error(f"Unexpected error delivering webhook: {e}", exc_info=True)
            return False, None, str(e) or e.__class__.__name__

    def get_stats(self) -> Dict[str, Any]:
        """
        Get dispatcher statistics.

        Returns:
            Statistics dictionary
        """
        return {
            **self._stats,
            "running": self._running,
            "workers": len(self._workers),
            "concurrency": self.concurrency,
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "timeout_ms": self.timeout_ms
        }
