"""
Durable notification job queue.

Jobs are keyed by payload id, so enqueueing the same payload twice is a
no-op. A job moves pending -> delivering -> completed, or back to pending
with a later next_attempt_at after a failed attempt, or to failed once its
attempts are used up. The attempt counter is incremented when a job is
claimed.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from models.notification import JobStatus, NotificationJob
from models.transaction import utc_now
from .db import Database

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """Contract shared by the SQL and in-memory queues."""

    @abstractmethod
    async def enqueue(self, job: NotificationJob) -> bool:
        """
        Add a job.

        Returns:
            False if a job with the same id already exists
        """

    @abstractmethod
    async def claim_next(self, now: Optional[datetime] = None) -> Optional[NotificationJob]:
        """Take the oldest due pending job and mark it delivering."""

    @abstractmethod
    async def complete(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def retry_later(self, job_id: str, next_attempt_at: datetime, error: str) -> None:
        ...

    @abstractmethod
    async def fail(self, job_id: str, error: str) -> None:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[NotificationJob]:
        ...

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def release_stale(self) -> int:
        """Return jobs left delivering by a previous process to pending."""


class NotificationQueue(JobQueue):
    """Queue backed by the notification_jobs table."""

    def __init__(self, db: Database):
        self.db = db
        self._claim_lock = asyncio.Lock()

    async def enqueue(self, job: NotificationJob) -> bool:
        now = utc_now()
        inserted = await self.db.execute(
            """
            INSERT INTO notification_jobs
                (job_id, endpoint_id, endpoint_url, secret, payload, event_type,
                 transaction_id, attempt, max_attempts, status, next_attempt_at,
                 last_error, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (job_id) DO NOTHING
            """,
            job.job_id,
            job.endpoint_id,
            job.endpoint_url,
            job.secret,
            job.payload,
            job.event_type.value,
            job.transaction_id,
            job.attempt,
            job.max_attempts,
            job.status.value,
            job.next_attempt_at,
            job.last_error,
            job.created_at,
            now
        )

        if inserted == 0:
            logger.debug(f"Job {job.job_id} already queued; ignoring duplicate")
            return False
        return True

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[NotificationJob]:
        now = now or utc_now()

        # Serialise claims within this process; the conditional UPDATE
        # keeps claims exclusive across processes sharing the table.
        async with self._claim_lock:
            while True:
                row = await self.db.fetch_one(
                    """
                    SELECT job_id FROM notification_jobs
                    WHERE status = $1 AND next_attempt_at <= $2
                    ORDER BY next_attempt_at, created_at
                    LIMIT 1
                    """,
                    JobStatus.PENDING.value,
                    now
                )
                if row is None:
                    return None

                claimed = await self.db.execute(
                    """
                    UPDATE notification_jobs
                    SET status = $1, attempt = attempt + 1, updated_at = $2
                    WHERE job_id = $3 AND status = $4
                    """,
                    JobStatus.DELIVERING.value,
                    utc_now(),
                    row['job_id'],
                    JobStatus.PENDING.value
                )
                if claimed:
                    return await self.get_job(row['job_id'])

    async def _set_status(self, job_id: str, status: JobStatus, error: Optional[str] = None,
                          next_attempt_at: Optional[datetime] = None) -> None:
        if next_attempt_at is None:
            await self.db.execute(
                "UPDATE notification_jobs SET status = $1, last_error = $2, updated_at = $3 "
                "WHERE job_id = $4",
                status.value, error, utc_now(), job_id
            )
        else:
            await self.db.execute(
                "UPDATE notification_jobs SET status = $1, last_error = $2, updated_at = $3, "
                "next_attempt_at = $4 WHERE job_id = $5",
                status.value, error, utc_now(), next_attempt_at, job_id
            )

    async def complete(self, job_id: str) -> None:
        await self._set_status(job_id, JobStatus.COMPLETED)

    async def retry_later(self, job_id: str, next_attempt_at: datetime, error: str) -> None:
        await self._set_status(job_id, JobStatus.PENDING, error, next_attempt_at)

    async def fail(self, job_id: str, error: str) -> None:
        await self._set_status(job_id, JobStatus.FAILED, error)

    async def get_job(self, job_id: str) -> Optional[NotificationJob]:
        row = await self.db.fetch_one(
            "SELECT * FROM notification_jobs WHERE job_id = $1",
            job_id
        )
        return NotificationJob.from_dict(row) if row else None

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) AS count FROM notification_jobs GROUP BY status"
        )
        return {row['status']: int(row['count']) for row in rows}

    async def release_stale(self) -> int:
        released = await self.db.execute(
            "UPDATE notification_jobs SET status = $1, updated_at = $2 WHERE status = $3",
            JobStatus.PENDING.value,
            utc_now(),
            JobStatus.DELIVERING.value
        )
        if released:
            logger.info(f"Released {released} interrupted notification job(s)")
        return released


class InMemoryNotificationQueue(JobQueue):
    """Queue held in a dictionary; state is lost when the process exits."""

    def __init__(self):
        self._jobs: Dict[str, NotificationJob] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, job: NotificationJob) -> bool:
        async with self._lock:
            if job.job_id in self._jobs:
                logger.debug(f"Job {job.job_id} already queued; ignoring duplicate")
                return False
            self._jobs[job.job_id] = copy.deepcopy(job)
            return True

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[NotificationJob]:
        now = now or utc_now()
        async with self._lock:
            due = [
                j for j in self._jobs.values()
                if j.status == JobStatus.PENDING and j.next_attempt_at <= now
            ]
            if not due:
                return None

            job = min(due, key=lambda j: (j.next_attempt_at, j.created_at))
            job.status = JobStatus.DELIVERING
            job.attempt += 1
            return copy.deepcopy(job)

    async def complete(self, job_id: str) -> None:
        async with self._lock:
            self._jobs[job_id].status = JobStatus.COMPLETED

    async def retry_later(self, job_id: str, next_attempt_at: datetime, error: str) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.PENDING
            job.next_attempt_at = next_attempt_at
            job.last_error = error

    async def fail(self, job_id: str, error: str) -> None:
        async with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.FAILED
            job.last_error = error

    async def get_job(self, job_id: str) -> Optional[NotificationJob]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts

    async def release_stale(self) -> int:
        async with self._lock:
            stale = [j for j in self._jobs.values() if j.status == JobStatus.DELIVERING]
            for job in stale:
                job.status = JobStatus.PENDING
            return len(stale)

    def list_jobs(self) -> List[NotificationJob]:
        """Snapshot of every job, oldest first."""
        return [copy.deepcopy(j) for j in sorted(self._jobs.values(), key=lambda j: j.created_at)]
