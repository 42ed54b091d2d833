"""
Tests for the transaction engine's payment lifecycle.

Run with: pytest tests/test_transaction_engine.py -v
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from models.notification import WebhookEventType
from models.transaction import AgentContext, PaymentStatus
from services.transaction_engine import NETWORK_ERROR, NOT_FOUND


async def authorize(engine, amount=100, token='ctok_valid_token_123', **kwargs):
    return await engine.authorize(
        merchant_id=kwargs.pop('merchant_id', 'merchant-1'),
        amount=amount,
        token=token,
        order_id=kwargs.pop('order_id', 'o1'),
        currency=kwargs.pop('currency', 'CAD'),
        **kwargs
    )


async def queued_events(engine, queue):
    await engine.drain_notifications()
    return [job.event_type for job in queue.list_jobs()]


class TestAuthorize:
    """Tests for TransactionEngine.authorize."""

    @pytest.mark.asyncio
    async def test_approved(self, engine, bsim, clock):
        """Test an approved authorization is stored as authorized."""
        result = await authorize(engine)

        assert result.status == PaymentStatus.AUTHORIZED
        assert result.authorization_code
        assert result.decline_reason is None

        transaction = await engine.get_transaction(result.transaction_id)
        assert transaction.amount == Decimal('100.00')
        assert transaction.currency == 'CAD'
        assert transaction.order_id == 'o1'
        assert transaction.issuer_id == 'bsim'
        assert transaction.authorization_code == result.authorization_code
        assert (transaction.expires_at - clock.now).total_seconds() == 168 * 3600
        assert len(bsim.calls_to('authorize')) == 1

    @pytest.mark.asyncio
    async def test_declined(self, engine):
        """Test a decline records the issuer's reason."""
        result = await authorize(engine, token='ctok_invalid_token')

        assert result.status == PaymentStatus.DECLINED
        assert result.decline_reason == 'Invalid card token'
        assert result.authorization_code is None

        transaction = await engine.get_transaction(result.transaction_id)
        assert transaction.status == PaymentStatus.DECLINED
        assert transaction.expires_at is None

    @pytest.mark.asyncio
    async def test_network_failure(self, engine, bsim):
        """Test an unreachable issuer marks the transaction failed."""
        bsim.should_fail_network = True

        result = await authorize(engine)

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == NETWORK_ERROR
        assert engine.get_stats()['failed'] == 1

    @pytest.mark.asyncio
    async def test_default_currency(self, engine, bsim):
        """Test the configured currency is used when none is given."""
        result = await engine.authorize('merchant-1', 25, 'ctok_valid_token_123', 'o2')

        transaction = await engine.get_transaction(result.transaction_id)
        assert transaction.currency == 'CAD'
        assert bsim.calls[0]['currency'] == 'CAD'

    @pytest.mark.asyncio
    async def test_wallet_token_routes_to_its_issuer(self, engine, bsim, newbank):
        """Test wsim_ tokens are authorized at the named issuer."""
        result = await authorize(engine, token='wsim_newbank_abc123')

        transaction = await engine.get_transaction(result.transaction_id)
        assert transaction.issuer_id == 'newbank'
        assert len(newbank.calls_to('authorize')) == 1
        assert bsim.calls == []

    @pytest.mark.asyncio
    async def test_unknown_issuer_records_default(self, engine, bsim):
        """Test the stored issuer id is the instance that handled the call."""
        result = await authorize(engine, token='wsim_unknownbank_abc123')

        transaction = await engine.get_transaction(result.transaction_id)
        assert transaction.issuer_id == 'bsim'
        assert len(bsim.calls_to('authorize')) == 1

    @pytest.mark.asyncio
    async def test_agent_context_is_stored_and_forwarded(self, engine, bsim):
        """Test agent context reaches the issuer and the stored transaction."""
        context = AgentContext(
            agent_id='agent-7', owner_id='owner-3', human_present=False,
            mandate_id='mandate-1', mandate_type='intent'
        )

        result = await authorize(engine, agent_context=context)

        transaction = await engine.get_transaction(result.transaction_id)
        assert transaction.agent_id == 'agent-7'
        assert transaction.agent_owner_id == 'owner-3'
        assert transaction.agent_human_present is False
        assert transaction.agent_mandate_type == 'intent'
        assert bsim.calls[0]['agent_context'] is context

        assert [t.id for t in await engine.get_transactions_by_agent('agent-7')] == [result.transaction_id]
        assert [t.id for t in await engine.get_transactions_by_owner('owner-3')] == [result.transaction_id]
        assert len(await engine.get_transactions_by_human_present(False)) == 1
        assert await engine.get_transactions_by_human_present(True) == []


class TestCapture:
    """Tests for TransactionEngine.capture."""

    @pytest.mark.asyncio
    async def test_full_capture_is_idempotent(self, engine, bsim):
        """Test a repeated capture returns the same state without an issuer call."""
        auth = await authorize(engine)

        first = await engine.capture(auth.transaction_id)
        second = await engine.capture(auth.transaction_id)

        assert first.status == PaymentStatus.CAPTURED
        assert first.captured_amount == Decimal('100.00')
        assert second.status == PaymentStatus.CAPTURED
        assert second.captured_amount == Decimal('100.00')
        assert len(bsim.calls_to('capture')) == 1

    @pytest.mark.asyncio
    async def test_partial_capture(self, engine, bsim):
        """Test capturing less than the authorized amount."""
        auth = await authorize(engine)

        result = await engine.capture(auth.transaction_id, 60)

        assert result.status == PaymentStatus.CAPTURED
        assert result.captured_amount == Decimal('60.00')
        assert bsim.calls_to('capture')[0]['amount'] == Decimal('60.00')

    @pytest.mark.asyncio
    async def test_not_found(self, engine):
        result = await engine.capture('missing')

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == NOT_FOUND

    @pytest.mark.asyncio
    async def test_declined_transaction_is_not_captured(self, engine, bsim):
        """Test capture of a non-authorized transaction makes no issuer call."""
        auth = await authorize(engine, token='ctok_invalid_token')

        result = await engine.capture(auth.transaction_id)

        assert result.status == PaymentStatus.DECLINED
        assert bsim.calls_to('capture') == []

    @pytest.mark.parametrize('amount', [0, -5, 100.01, 'abc'])
    @pytest.mark.asyncio
    async def test_invalid_amount(self, engine, bsim, amount):
        """Test invalid capture amounts are rejected without a state change."""
        auth = await authorize(engine)

        result = await engine.capture(auth.transaction_id, amount)

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == 'Invalid capture amount'
        assert bsim.calls_to('capture') == []
        transaction = await engine.get_transaction(auth.transaction_id)
        assert transaction.status == PaymentStatus.AUTHORIZED

    @pytest.mark.asyncio
    async def test_issuer_failure(self, engine, bsim, queue, merchant_endpoint):
        """Test a failed capture marks the transaction failed without an event."""
        auth = await authorize(engine)
        bsim.operation_error = 'Authorization not found'

        result = await engine.capture(auth.transaction_id)

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == 'Authorization not found'
        assert await queued_events(engine, queue) == [WebhookEventType.AUTHORIZED]

    @pytest.mark.asyncio
    async def test_concurrent_capture(self, engine, bsim):
        """Test only one of two racing captures is applied."""
        auth = await authorize(engine)
        gate = asyncio.Event()
        seen = []

        async def hold_first(operation):
            seen.append(operation)
            if len(seen) == 1:
                await gate.wait()

        bsim.before_operation = hold_first

        first = asyncio.create_task(engine.capture(auth.transaction_id))
        while not seen:
            await asyncio.sleep(0)
        second = await engine.capture(auth.transaction_id)
        gate.set()
        first_result = await first

        assert second.status == PaymentStatus.CAPTURED
        assert first_result.status == PaymentStatus.CAPTURED
        assert first_result.captured_amount == Decimal('100.00')

        stats = engine.get_stats()
        assert stats['captured'] == 1
        assert stats['stale_updates'] == 1


class TestVoid:
    """Tests for TransactionEngine.void."""

    @pytest.mark.asyncio
    async def test_void(self, engine, bsim):
        auth = await authorize(engine)

        result = await engine.void(auth.transaction_id, reason='customer cancelled')

        assert result.status == PaymentStatus.VOIDED
        assert bsim.calls_to('void')[0]['authorization_code'] == auth.authorization_code

    @pytest.mark.asyncio
    async def test_void_after_capture(self, engine, bsim):
        """Test a captured transaction cannot be voided."""
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id)

        result = await engine.void(auth.transaction_id)

        assert result.status == PaymentStatus.CAPTURED
        assert bsim.calls_to('void') == []

    @pytest.mark.asyncio
    async def test_void_network_failure(self, engine, bsim):
        auth = await authorize(engine)
        bsim.should_fail_network = True

        result = await engine.void(auth.transaction_id)

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_not_found(self, engine):
        result = await engine.void('missing')
        assert result.decline_reason == NOT_FOUND


class TestRefund:
    """Tests for TransactionEngine.refund."""

    @pytest.mark.asyncio
    async def test_partial_then_full(self, engine):
        """Test partial refunds keep the transaction captured until fully refunded."""
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id)

        first = await engine.refund(auth.transaction_id, 40)
        assert first.refunded_amount == Decimal('40.00')
        assert first.status == PaymentStatus.CAPTURED

        second = await engine.refund(auth.transaction_id, 60)
        assert second.refunded_amount == Decimal('100.00')
        assert second.status == PaymentStatus.REFUNDED
        assert first.refund_id != second.refund_id

    @pytest.mark.asyncio
    async def test_default_refunds_remaining(self, engine):
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id, 80)
        await engine.refund(auth.transaction_id, 30)

        result = await engine.refund(auth.transaction_id)

        assert result.status == PaymentStatus.REFUNDED
        assert result.refunded_amount == Decimal('80.00')

    @pytest.mark.asyncio
    async def test_refund_beyond_captured(self, engine, bsim):
        """Test refunds cannot exceed the captured amount."""
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id, 50)

        result = await engine.refund(auth.transaction_id, 60)

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == 'Invalid refund amount'
        assert bsim.calls_to('refund') == []

    @pytest.mark.asyncio
    async def test_refund_requires_capture(self, engine, bsim):
        auth = await authorize(engine)

        result = await engine.refund(auth.transaction_id, 10)

        assert result.status == PaymentStatus.AUTHORIZED
        assert result.refund_id
        assert bsim.calls_to('refund') == []

    @pytest.mark.asyncio
    async def test_issuer_failure_leaves_transaction(self, engine, bsim):
        """Test a failed refund does not change the stored transaction."""
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id)
        bsim.operation_error = 'Refund rejected'

        result = await engine.refund(auth.transaction_id, 10)

        assert result.status == PaymentStatus.FAILED
        assert result.decline_reason == 'Refund rejected'
        transaction = await engine.get_transaction(auth.transaction_id)
        assert transaction.status == PaymentStatus.CAPTURED
        assert transaction.refunded_amount == Decimal('0.00')


class TestExpiry:
    """Tests for authorization expiry."""

    @pytest.mark.asyncio
    async def test_expire_authorization(self, engine, bsim, clock):
        auth = await authorize(engine)
        clock.advance(hours=169)

        assert [t.id for t in await engine.get_expired_authorizations()] == [auth.transaction_id]
        assert await engine.expire_authorization(auth.transaction_id)

        transaction = await engine.get_transaction(auth.transaction_id)
        assert transaction.status == PaymentStatus.EXPIRED
        assert len(bsim.calls_to('void')) == 1

    @pytest.mark.asyncio
    async def test_void_failure_still_expires(self, engine, bsim, clock):
        """Test the issuer void is best effort."""
        auth = await authorize(engine)
        bsim.should_fail_network = True

        assert await engine.expire_authorization(auth.transaction_id)
        transaction = await engine.get_transaction(auth.transaction_id)
        assert transaction.status == PaymentStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_only_authorized_expire(self, engine):
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id)

        assert not await engine.expire_authorization(auth.transaction_id)
        assert not await engine.expire_authorization('missing')


class TestNotifications:
    """Tests for events raised by the engine."""

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, engine, queue, merchant_endpoint):
        """Test each successful operation queues one event."""
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id)
        await engine.refund(auth.transaction_id, 40)
        await engine.refund(auth.transaction_id, 60)

        assert await queued_events(engine, queue) == [
            WebhookEventType.AUTHORIZED,
            WebhookEventType.CAPTURED,
            WebhookEventType.REFUNDED,
            WebhookEventType.REFUNDED,
        ]

    @pytest.mark.asyncio
    async def test_declined_and_failed_events(self, engine, bsim, queue, merchant_endpoint):
        await authorize(engine, token='ctok_invalid_token')
        bsim.should_fail_network = True
        await authorize(engine)

        assert await queued_events(engine, queue) == [
            WebhookEventType.DECLINED,
            WebhookEventType.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_event_data(self, engine, queue, merchant_endpoint):
        """Test the payload carries transaction fields and agent context."""
        auth = await authorize(
            engine, agent_context=AgentContext(agent_id='agent-7', owner_id='owner-3', human_present=True)
        )
        await engine.drain_notifications()

        data = queue.list_jobs()[0].payload_dict['data']
        assert data == {
            'transactionId': auth.transaction_id,
            'merchantId': 'merchant-1',
            'orderId': 'o1',
            'amount': 100,
            'currency': 'CAD',
            'status': 'authorized',
            'authorizationCode': auth.authorization_code,
            'agentContext': {'agentId': 'agent-7', 'ownerId': 'owner-3', 'humanPresent': True},
        }

    @pytest.mark.asyncio
    async def test_refund_event_data(self, engine, queue, merchant_endpoint):
        auth = await authorize(engine)
        await engine.capture(auth.transaction_id)
        refund = await engine.refund(auth.transaction_id, 40)
        await engine.drain_notifications()

        data = queue.list_jobs()[-1].payload_dict['data']
        assert data['amount'] == 40
        assert data['refundId'] == refund.refund_id
        assert data['refundedAmount'] == 40
        assert data['status'] == 'captured'

    @pytest.mark.asyncio
    async def test_notification_failure_is_counted(self, engine, dispatcher):
        """Test a dispatcher error does not fail the operation."""
        dispatcher.notify = AsyncMock(side_effect=RuntimeError("queue unavailable"))

        result = await authorize(engine)
        await engine.drain_notifications()

        assert result.status == PaymentStatus.AUTHORIZED
        dispatcher.notify.assert_awaited_once()
        assert engine.get_stats()['notifications_failed'] == 1
        assert engine.get_stats()['pending_notifications'] == 0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
