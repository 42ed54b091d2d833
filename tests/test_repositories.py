"""
Tests for the transaction, endpoint and job queue stores.

The same behaviour is checked against the in-memory stores and the SQL
stores running on an in-memory SQLite database.

Run with: pytest tests/test_repositories.py -v
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from database.db import Database
from database.job_queue import InMemoryNotificationQueue, NotificationQueue
from database.repositories import (
    InMemoryEndpointRepository,
    InMemoryTransactionRepository,
    SqlEndpointRepository,
    SqlTransactionRepository,
)
from exceptions import PersistenceError, StaleTransactionError
from models.notification import (
    DeliveryRecord,
    JobStatus,
    NotificationEndpoint,
    NotificationJob,
    WebhookEventType,
    WebhookPayload,
)
from models.transaction import PaymentStatus, PaymentTransaction, utc_now


def make_transaction(transaction_id='txn-1', **overrides) -> PaymentTransaction:
    fields = dict(
        id=transaction_id,
        merchant_id='merchant-1',
        order_id='order-1',
        card_token='ctok_valid_token_123',
        amount=Decimal('100.00'),
        currency='CAD',
        status=PaymentStatus.AUTHORIZED,
        authorization_code='AUTH-1',
        issuer_id='bsim',
        metadata={'cart': '42'},
    )
    fields.update(overrides)
    return PaymentTransaction(**fields)


def make_job(endpoint, event='payment.captured', transaction_id='txn-1') -> NotificationJob:
    payload = WebhookPayload.build(event, {'transactionId': transaction_id, 'merchantId': 'merchant-1'})
    return NotificationJob.for_endpoint(endpoint, payload, max_attempts=5)


@pytest_asyncio.fixture(params=['memory', 'sql'])
async def transactions(request, sqlite_db):
    if request.param == 'memory':
        return InMemoryTransactionRepository()
    return SqlTransactionRepository(sqlite_db)


@pytest_asyncio.fixture(params=['memory', 'sql'])
async def endpoints(request, sqlite_db):
    if request.param == 'memory':
        return InMemoryEndpointRepository()
    return SqlEndpointRepository(sqlite_db)


@pytest_asyncio.fixture(params=['memory', 'sql'])
async def jobs(request, sqlite_db):
    if request.param == 'memory':
        return InMemoryNotificationQueue()
    return NotificationQueue(sqlite_db)


@pytest.fixture
def shop_endpoint():
    return NotificationEndpoint.create(
        'merchant-1', 'https://shop.example/hooks', ['payment.captured'], secret='abc'
    )


class TestTransactionRepository:
    """Tests for both transaction stores."""

    @pytest.mark.asyncio
    async def test_create_and_find(self, transactions):
        await transactions.create(make_transaction())

        found = await transactions.find_by_id('txn-1')

        assert found.amount == Decimal('100.00')
        assert found.status == PaymentStatus.AUTHORIZED
        assert found.metadata == {'cart': '42'}
        assert found.created_at.tzinfo is not None
        assert await transactions.find_by_id('missing') is None

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, transactions):
        """Test mutating a returned object does not change stored state."""
        await transactions.create(make_transaction())

        found = await transactions.find_by_id('txn-1')
        found.status = PaymentStatus.VOIDED

        assert (await transactions.find_by_id('txn-1')).status == PaymentStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_lookups(self, transactions):
        await transactions.create(make_transaction('txn-1', agent_id='agent-7',
                                                   agent_owner_id='owner-3',
                                                   agent_human_present=True))
        await transactions.create(make_transaction('txn-2', order_id='order-2',
                                                   status=PaymentStatus.DECLINED,
                                                   issuer_id='newbank'))

        assert len(await transactions.find_by_merchant_id('merchant-1')) == 2
        assert [t.id for t in await transactions.find_by_order_id('order-2')] == ['txn-2']
        assert [t.id for t in await transactions.find_by_status(PaymentStatus.DECLINED)] == ['txn-2']
        assert [t.id for t in await transactions.find_by_issuer_id('newbank')] == ['txn-2']
        assert [t.id for t in await transactions.find_by_agent_id('agent-7')] == ['txn-1']
        assert [t.id for t in await transactions.find_by_agent_owner_id('owner-3')] == ['txn-1']
        assert [t.id for t in await transactions.find_by_human_present(True)] == ['txn-1']
        assert await transactions.find_by_human_present(False) == []
        assert await transactions.count_by_status() == {'authorized': 1, 'declined': 1}

    @pytest.mark.asyncio
    async def test_find_expired(self, transactions):
        now = utc_now()
        await transactions.create(make_transaction('old', expires_at=now - timedelta(hours=1)))
        await transactions.create(make_transaction('new', expires_at=now + timedelta(hours=1)))
        await transactions.create(make_transaction('done', status=PaymentStatus.CAPTURED,
                                                   expires_at=now - timedelta(hours=1)))

        assert [t.id for t in await transactions.find_expired_authorizations(now)] == ['old']

    @pytest.mark.asyncio
    async def test_conditional_update(self, transactions):
        """Test the write applies only while the expected status holds."""
        await transactions.create(make_transaction())

        updated = await transactions.update(
            'txn-1',
            {'status': PaymentStatus.CAPTURED, 'captured_amount': Decimal('60.00')},
            expected_status=PaymentStatus.AUTHORIZED
        )
        assert updated.status == PaymentStatus.CAPTURED
        assert updated.captured_amount == Decimal('60.00')

        with pytest.raises(StaleTransactionError) as exc_info:
            await transactions.update(
                'txn-1',
                {'status': PaymentStatus.VOIDED},
                expected_status=PaymentStatus.AUTHORIZED
            )
        assert exc_info.value.actual_status == 'captured'
        assert (await transactions.find_by_id('txn-1')).status == PaymentStatus.CAPTURED

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, transactions):
        assert await transactions.update('missing', {'status': PaymentStatus.VOIDED}) is None

    @pytest.mark.asyncio
    async def test_update_rejects_immutable_fields(self, transactions):
        await transactions.create(make_transaction())

        with pytest.raises(PersistenceError, match="amount"):
            await transactions.update('txn-1', {'amount': Decimal('1.00')})
        with pytest.raises(PersistenceError, match="issuer_id"):
            await transactions.update('txn-1', {'issuer_id': 'newbank'})

        assert (await transactions.find_by_id('txn-1')).issuer_id == 'bsim'

    @pytest.mark.asyncio
    async def test_delete(self, transactions):
        await transactions.create(make_transaction())

        assert await transactions.delete('txn-1')
        assert not await transactions.delete('txn-1')


class TestEndpointRepository:
    """Tests for both endpoint stores."""

    @pytest.mark.asyncio
    async def test_create_find_update(self, endpoints, shop_endpoint):
        await endpoints.create(shop_endpoint)

        found = await endpoints.find_by_id(shop_endpoint.id)
        assert found.events == {WebhookEventType.CAPTURED}
        assert found.is_active

        updated = await endpoints.update(shop_endpoint.id, {
            'events': {WebhookEventType.CAPTURED, WebhookEventType.REFUNDED},
            'is_active': False
        })
        assert updated.events == {WebhookEventType.CAPTURED, WebhookEventType.REFUNDED}
        assert not updated.is_active
        assert await endpoints.find_by_merchant_id('merchant-1') == []
        assert len(await endpoints.find_by_merchant_id('merchant-1', active_only=False)) == 1

    @pytest.mark.asyncio
    async def test_stats(self, endpoints, shop_endpoint):
        await endpoints.create(shop_endpoint)
        await endpoints.create(NotificationEndpoint.create(
            'merchant-2', 'https://other.example', ['payment.voided']
        ))

        stats = await endpoints.get_stats()

        assert stats == {'total': 2, 'active': 2, 'by_merchant': {'merchant-1': 1, 'merchant-2': 1}}

    @pytest.mark.asyncio
    async def test_delivery_history(self, endpoints, shop_endpoint):
        """Test history ordering, limits and removal with the endpoint."""
        await endpoints.create(shop_endpoint)
        for attempt in (1, 2, 3):
            await endpoints.record_delivery(DeliveryRecord(
                endpoint_id=shop_endpoint.id,
                event=WebhookEventType.CAPTURED,
                payload_id='evt-1',
                transaction_id='txn-1',
                attempt=attempt,
                success=attempt == 3,
                payload='{}',
                status_code=200 if attempt == 3 else 500,
                error=None if attempt == 3 else 'HTTP 500'
            ))

        history = await endpoints.get_delivery_history(shop_endpoint.id, limit=2)
        assert [d.attempt for d in history] == [3, 2]
        assert history[0].success

        by_transaction = await endpoints.get_deliveries_for_transaction('txn-1')
        assert [d.attempt for d in by_transaction] == [1, 2, 3]

        assert await endpoints.delete(shop_endpoint.id)
        assert await endpoints.get_delivery_history(shop_endpoint.id) == []


class TestJobQueue:
    """Tests for both job queues."""

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_ignored(self, jobs, shop_endpoint):
        job = make_job(shop_endpoint)

        assert await jobs.enqueue(job)
        assert not await jobs.enqueue(job)
        assert await jobs.count_by_status() == {'pending': 1}

    @pytest.mark.asyncio
    async def test_claim_increments_attempt(self, jobs, shop_endpoint):
        job = make_job(shop_endpoint)
        await jobs.enqueue(job)

        claimed = await jobs.claim_next(utc_now())

        assert claimed.job_id == job.job_id
        assert claimed.attempt == 1
        assert claimed.status == JobStatus.DELIVERING
        assert claimed.payload == job.payload
        # Claimed jobs are not handed out twice
        assert await jobs.claim_next(utc_now()) is None

    @pytest.mark.asyncio
    async def test_retry_later_respects_due_time(self, jobs, shop_endpoint):
        job = make_job(shop_endpoint)
        await jobs.enqueue(job)
        now = utc_now()
        await jobs.claim_next(now)

        await jobs.retry_later(job.job_id, now + timedelta(seconds=30), 'HTTP 500')

        assert await jobs.claim_next(now + timedelta(seconds=29)) is None
        claimed = await jobs.claim_next(now + timedelta(seconds=30))
        assert claimed.attempt == 2
        assert claimed.last_error == 'HTTP 500'

    @pytest.mark.asyncio
    async def test_complete_and_fail(self, jobs, shop_endpoint):
        first = make_job(shop_endpoint)
        second = make_job(shop_endpoint, transaction_id='txn-2')
        await jobs.enqueue(first)
        await jobs.enqueue(second)

        await jobs.complete(first.job_id)
        await jobs.fail(second.job_id, 'gave up')

        assert (await jobs.get_job(first.job_id)).status == JobStatus.COMPLETED
        failed = await jobs.get_job(second.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.last_error == 'gave up'
        assert await jobs.claim_next(utc_now() + timedelta(days=1)) is None

    @pytest.mark.asyncio
    async def test_release_stale(self, jobs, shop_endpoint):
        await jobs.enqueue(make_job(shop_endpoint))
        await jobs.claim_next(utc_now())

        assert await jobs.release_stale() == 1
        assert await jobs.count_by_status() == {'pending': 1}


class TestDatabase:
    """Tests for the Database wrapper on SQLite."""

    @pytest.mark.asyncio
    async def test_schema_is_rerunnable(self, sqlite_db):
        await sqlite_db.init_schema()
        assert await sqlite_db.fetch_all("SELECT * FROM payment_transactions") == []

    @pytest.mark.asyncio
    async def test_not_connected(self):
        db = Database('sqlite:///:memory:')

        assert not db.is_postgres
        with pytest.raises(PersistenceError, match="not connected"):
            await db.fetch_one("SELECT 1")

    @pytest.mark.asyncio
    async def test_query_errors_are_wrapped(self, sqlite_db):
        with pytest.raises(PersistenceError):
            await sqlite_db.execute("SELECT * FROM no_such_table")
