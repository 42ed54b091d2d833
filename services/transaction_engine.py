"""
Transaction Engine.

Owns the payment state machine. Routes authorizations to the right issuer,
applies the issuer's answer to the stored transaction, and raises merchant
notifications without blocking the caller.

Capture, void and refund on a transaction that is not in the required status
return the current status unchanged and make no issuer call, so a retried
request observes the earlier outcome instead of failing.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from config import config
from database.repositories import TransactionRepository
from exceptions import DeclineError, StaleTransactionError
from models.notification import WebhookEventType
from models.transaction import (
    AgentContext,
    AuthorizationResult,
    CaptureResult,
    PaymentStatus,
    PaymentTransaction,
    RefundResult,
    VoidResult,
    amount_to_json,
    to_amount,
    utc_now,
)
from .issuer_gateway import IssuerGateway, mask_token
from .notification_dispatcher import NotificationDispatcher
from .token_router import TokenRouter

logger = logging.getLogger(__name__)

NETWORK_ERROR = "Network error"
NOT_FOUND = "Transaction not found"

AUTHORIZE_EVENTS = {
    PaymentStatus.AUTHORIZED: WebhookEventType.AUTHORIZED,
    PaymentStatus.DECLINED: WebhookEventType.DECLINED,
    PaymentStatus.FAILED: WebhookEventType.FAILED,
}


def _parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a caller-supplied amount; None if it is not a number."""
    try:
        amount = to_amount(value)
    except (InvalidOperation, ValueError, TypeError):
        return None
    return amount if amount.is_finite() else None


class TransactionEngine:
    """
    Payment lifecycle: authorize, capture, void, refund, expire.

    Every status change is written with the status it was read in as the
    expected status. If another operation got there first, the engine
    re-reads the transaction and reports its current status instead.
    """

    def __init__(
        self,
        repository: TransactionRepository,
        router: TokenRouter,
        dispatcher: Optional[NotificationDispatcher] = None,
        authorization_expiry_hours: Optional[int] = None,
        default_currency: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the engine.

        Args:
            repository: Transaction storage
            router: Token router for issuer selection
            dispatcher: Notification dispatcher (None disables notifications)
            authorization_expiry_hours: Lifetime of an authorization
            default_currency: Currency used when a request has none
            clock: Returns the current UTC time
        """
        self.repository = repository
        self.router = router
        self.dispatcher = dispatcher
        self.authorization_expiry_hours = (
            authorization_expiry_hours or config.payment.authorization_expiry_hours
        )
        self.default_currency = default_currency or config.payment.default_currency
        self._clock = clock
        self._pending_notifications: Set[asyncio.Task] = set()
        self._stats = {
            "authorizations": 0,
            "approved": 0,
            "declined": 0,
            "failed": 0,
            "captured": 0,
            "voided": 0,
            "refunds": 0,
            "expired": 0,
            "stale_updates": 0,
            "notifications_raised": 0,
            "notifications_failed": 0
        }

    # =========================================================================
    # Operations
    # =========================================================================

    async def authorize(
        self,
        merchant_id: str,
        amount: Any,
        token: str,
        order_id: str,
        merchant_name: Optional[str] = None,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        agent_context: Optional[AgentContext] = None
    ) -> AuthorizationResult:
        """
        Authorize a payment against the issuer that owns the token.

        Args:
            merchant_id: Merchant initiating the payment
            amount: Amount to hold
            token: Opaque card or wallet token
            order_id: Merchant's order reference
            merchant_name: Display name (defaults to merchant_id)
            currency: Currency code (defaults to the configured currency)
            description: Free-text description forwarded to the issuer
            metadata: Free-form merchant metadata
            agent_context: Set when an automated agent acts for a user

        Returns:
            AuthorizationResult with status authorized, declined or failed
        """
        self._stats["authorizations"] += 1
        transaction_id = str(uuid.uuid4())
        now = self._clock()

        issuer_id, analysis = self.router.resolve(token)
        gateway = self.router.gateway_for(issuer_id)

        transaction = PaymentTransaction(
            id=transaction_id,
            merchant_id=merchant_id,
            merchant_name=merchant_name,
            order_id=order_id,
            card_token=token,
            amount=amount,
            currency=currency or self.default_currency,
            status=PaymentStatus.PENDING,
            description=description,
            metadata=metadata,
            issuer_id=gateway.issuer_id,
            created_at=now,
            updated_at=now
        )
        if agent_context is not None:
            transaction.apply_agent_context(agent_context)

        logger.info(
            f"Authorizing {transaction_id}: merchant={merchant_id} order={order_id} "
            f"amount={transaction.amount} {transaction.currency} token={mask_token(token)} "
            f"issuer={gateway.issuer_id} wallet={analysis.is_wallet_token} "
            f"type={analysis.token_type}"
        )

        outcome = await gateway.authorize(
            card_token=token,
            amount=transaction.amount,
            merchant_id=merchant_id,
            merchant_name=transaction.merchant_name,
            order_id=order_id,
            currency=transaction.currency,
            description=description,
            agent_context=agent_context
        )

        if outcome.approved:
            new_status = PaymentStatus.AUTHORIZED
            transaction.authorization_code = outcome.authorization_code
            transaction.expires_at = self._clock() + timedelta(hours=self.authorization_expiry_hours)
            self._stats["approved"] += 1
        elif outcome.network_error:
            new_status = PaymentStatus.FAILED
            transaction.decline_reason = NETWORK_ERROR
            self._stats["failed"] += 1
        else:
            new_status = PaymentStatus.DECLINED
            transaction.decline_reason = outcome.decline_reason or "Declined by issuer"
            self._stats["declined"] += 1
            if analysis.is_wallet_token:
                decline = DeclineError(transaction.decline_reason, details=analysis.log_summary())
                logger.warning(f"Wallet token declined for {transaction_id}: {decline.to_dict()}")

        if not transaction.can_transition(new_status):
            raise ValueError(f"Invalid transition {transaction.status.value} -> {new_status.value}")
        transaction.status = new_status
        transaction.updated_at = self._clock()

        transaction = await self.repository.create(transaction)

        logger.info(
            f"Authorization {transaction_id} {transaction.status.value}"
            + (f": {transaction.decline_reason}" if transaction.decline_reason else "")
        )

        self._raise_event(
            AUTHORIZE_EVENTS[transaction.status],
            self._event_data(transaction, amount=transaction.amount)
        )

        return AuthorizationResult(
            transaction_id=transaction_id,
            status=transaction.status,
            authorization_code=transaction.authorization_code,
            decline_reason=transaction.decline_reason,
            timestamp=transaction.updated_at
        )

    async def capture(self, transaction_id: str, amount: Any = None) -> CaptureResult:
        """
        Capture an authorized transaction, fully or partially.

        Args:
            transaction_id: Transaction to capture
            amount: Amount to capture (defaults to the full authorized amount)

        Returns:
            CaptureResult with the resulting status
        """
        transaction = await self.repository.find_by_id(transaction_id)

        if transaction is None:
            return CaptureResult(transaction_id, PaymentStatus.FAILED, decline_reason=NOT_FOUND)

        if transaction.status != PaymentStatus.AUTHORIZED:
            logger.info(
                f"Capture of {transaction_id} skipped: status is {transaction.status.value}"
            )
            return self._capture_result(transaction)

        capture_amount = transaction.amount if amount is None else _parse_amount(amount)
        if capture_amount is None or capture_amount <= 0 or capture_amount > transaction.amount:
            logger.warning(f"Rejected capture of {transaction_id}: invalid amount {amount}")
            return CaptureResult(
                transaction_id,
                PaymentStatus.FAILED,
                captured_amount=transaction.captured_amount,
                decline_reason="Invalid capture amount"
            )

        gateway = self._gateway_for(transaction)
        outcome = await gateway.capture(transaction.authorization_code, capture_amount)

        if outcome.success:
            fields = {'status': PaymentStatus.CAPTURED, 'captured_amount': capture_amount}
        else:
            reason = NETWORK_ERROR if outcome.network_error else (outcome.error or "Capture failed")
            fields = {'status': PaymentStatus.FAILED, 'decline_reason': reason}

        updated, applied = await self._transition(transaction, fields)
        if not applied:
            return self._capture_result(updated)

        if updated.status == PaymentStatus.CAPTURED:
            self._stats["captured"] += 1
            logger.info(f"Captured {updated.captured_amount} on {transaction_id}")
            self._raise_event(
                WebhookEventType.CAPTURED,
                self._event_data(updated, amount=updated.captured_amount)
            )
        else:
            logger.warning(f"Capture of {transaction_id} failed: {updated.decline_reason}")

        return self._capture_result(updated)

    async def void(self, transaction_id: str, reason: Optional[str] = None) -> VoidResult:
        """
        Release an authorization hold.

        Args:
            transaction_id: Transaction to void
            reason: Caller's reason (logged only)

        Returns:
            VoidResult with the resulting status
        """
        transaction = await self.repository.find_by_id(transaction_id)

        if transaction is None:
            return VoidResult(transaction_id, PaymentStatus.FAILED, decline_reason=NOT_FOUND)

        if transaction.status != PaymentStatus.AUTHORIZED:
            logger.info(f"Void of {transaction_id} skipped: status is {transaction.status.value}")
            return self._void_result(transaction)

        logger.info(f"Voiding {transaction_id}" + (f" ({reason})" if reason else ""))

        gateway = self._gateway_for(transaction)
        outcome = await gateway.void(transaction.authorization_code)

        if outcome.success:
            fields = {'status': PaymentStatus.VOIDED}
        else:
            failure = NETWORK_ERROR if outcome.network_error else (outcome.error or "Void failed")
            fields = {'status': PaymentStatus.FAILED, 'decline_reason': failure}

        updated, applied = await self._transition(transaction, fields)
        if not applied:
            return self._void_result(updated)

        if updated.status == PaymentStatus.VOIDED:
            self._stats["voided"] += 1
            self._raise_event(
                WebhookEventType.VOIDED,
                self._event_data(updated, amount=updated.amount)
            )
        else:
            logger.warning(f"Void of {transaction_id} failed: {updated.decline_reason}")

        return self._void_result(updated)

    async def refund(
        self,
        transaction_id: str,
        amount: Any = None,
        reason: Optional[str] = None
    ) -> RefundResult:
        """
        Refund a captured transaction, fully or partially.

        Partial refunds keep the transaction captured until the refunded
        total reaches the captured amount.

        Args:
            transaction_id: Transaction to refund
            amount: Amount to refund (defaults to the remaining refundable balance)
            reason: Caller's reason (logged only)

        Returns:
            RefundResult with a fresh refund id
        """
        refund_id = str(uuid.uuid4())
        transaction = await self.repository.find_by_id(transaction_id)

        if transaction is None:
            return RefundResult(
                transaction_id, refund_id, PaymentStatus.FAILED, decline_reason=NOT_FOUND
            )

        if transaction.status != PaymentStatus.CAPTURED:
            logger.info(f"Refund of {transaction_id} skipped: status is {transaction.status.value}")
            return RefundResult(
                transaction_id,
                refund_id,
                transaction.status,
                refunded_amount=transaction.refunded_amount,
                timestamp=self._clock()
            )

        remaining = transaction.refundable_amount
        refund_amount = remaining if amount is None else _parse_amount(amount)
        if refund_amount is None or refund_amount <= 0 or refund_amount > remaining:
            logger.warning(f"Rejected refund of {transaction_id}: invalid amount {amount}")
            return RefundResult(
                transaction_id,
                refund_id,
                PaymentStatus.FAILED,
                refunded_amount=transaction.refunded_amount,
                decline_reason="Invalid refund amount",
                timestamp=self._clock()
            )

        logger.info(
            f"Refunding {refund_amount} on {transaction_id} (refund {refund_id})"
            + (f": {reason}" if reason else "")
        )

        gateway = self._gateway_for(transaction)
        outcome = await gateway.refund(transaction.authorization_code, refund_amount)

        if not outcome.success:
            failure = NETWORK_ERROR if outcome.network_error else (outcome.error or "Refund failed")
            logger.warning(f"Refund of {transaction_id} failed: {failure}")
            return RefundResult(
                transaction_id,
                refund_id,
                PaymentStatus.FAILED,
                refunded_amount=transaction.refunded_amount,
                decline_reason=failure,
                timestamp=self._clock()
            )

        refunded_total = transaction.refunded_amount + refund_amount
        new_status = (
            PaymentStatus.REFUNDED
            if refunded_total >= transaction.captured_amount
            else PaymentStatus.CAPTURED
        )

        updated, applied = await self._transition(
            transaction,
            {'status': new_status, 'refunded_amount': refunded_total}
        )
        if not applied:
            # TODO: reconcile with the issuer; the refund succeeded there but was not recorded here
            return RefundResult(
                transaction_id,
                refund_id,
                updated.status,
                refunded_amount=updated.refunded_amount,
                timestamp=self._clock()
            )

        self._stats["refunds"] += 1
        self._raise_event(
            WebhookEventType.REFUNDED,
            self._event_data(
                updated,
                amount=refund_amount,
                refundId=refund_id,
                refundedAmount=amount_to_json(updated.refunded_amount)
            )
        )

        return RefundResult(
            transaction_id,
            refund_id,
            updated.status,
            refunded_amount=updated.refunded_amount,
            timestamp=updated.updated_at
        )

    async def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        """Look up a transaction. Read-only."""
        return await self.repository.find_by_id(transaction_id)

    async def expire_authorization(self, transaction_id: str) -> bool:
        """
        Expire a stale authorization.

        Voids the hold at the issuer on a best-effort basis, then marks the
        transaction expired regardless of the issuer's answer.

        Returns:
            True if the transaction was expired by this call
        """
        transaction = await self.repository.find_by_id(transaction_id)

        if transaction is None or transaction.status != PaymentStatus.AUTHORIZED:
            return False

        if transaction.authorization_code:
            gateway = self._gateway_for(transaction)
            outcome = await gateway.void(transaction.authorization_code)
            if not outcome.success:
                logger.warning(
                    f"Failed to void expired authorization {transaction_id} "
                    f"at issuer {gateway.issuer_id}: {outcome.error}"
                )

        updated, applied = await self._transition(transaction, {'status': PaymentStatus.EXPIRED})
        if not applied:
            return False

        self._stats["expired"] += 1
        logger.info(f"Expired authorization {transaction_id}")
        self._raise_event(
            WebhookEventType.EXPIRED,
            self._event_data(updated, amount=updated.amount)
        )
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_expired_authorizations(self) -> List[PaymentTransaction]:
        """Authorized transactions whose expiry has passed."""
        return await self.repository.find_expired_authorizations(self._clock())

    async def get_transactions_by_agent(self, agent_id: str) -> List[PaymentTransaction]:
        return await self.repository.find_by_agent_id(agent_id)

    async def get_transactions_by_owner(self, owner_id: str) -> List[PaymentTransaction]:
        return await self.repository.find_by_agent_owner_id(owner_id)

    async def get_transactions_by_human_present(self, human_present: bool) -> List[PaymentTransaction]:
        return await self.repository.find_by_human_present(human_present)

    def get_stats(self) -> Dict[str, int]:
        """
        Get engine statistics.

        Returns:
            Statistics dictionary
        """
        return {
            **self._stats,
            "pending_notifications": len(self._pending_notifications)
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _gateway_for(self, transaction: PaymentTransaction) -> IssuerGateway:
        """Gateway for the issuer instance that owns the transaction."""
        return self.router.gateway_for(transaction.issuer_id)

    async def _transition(
        self,
        transaction: PaymentTransaction,
        fields: Dict[str, Any]
    ) -> Tuple[PaymentTransaction, bool]:
        """
        Write a status change conditioned on the status it was read in.

        Returns:
            Tuple of (transaction as now stored, whether this write applied)
        """
        new_status = fields['status']
        if not transaction.can_transition(new_status):
            raise ValueError(
                f"Invalid transition {transaction.status.value} -> {new_status.value}"
            )

        try:
            updated = await self.repository.update(
                transaction.id,
                fields,
                expected_status=transaction.status
            )
        except StaleTransactionError as e:
            self._stats["stale_updates"] += 1
            logger.warning(f"Concurrent update on {transaction.id}: {e.message}")
            current = await self.repository.find_by_id(transaction.id)
            return (current or transaction), False

        if updated is None:
            logger.warning(f"Transaction {transaction.id} disappeared during update")
            return transaction, False

        return updated, True

    def _capture_result(self, transaction: PaymentTransaction) -> CaptureResult:
        return CaptureResult(
            transaction.id,
            transaction.status,
            captured_amount=transaction.captured_amount,
            decline_reason=(
                transaction.decline_reason if transaction.status == PaymentStatus.FAILED else None
            ),
            timestamp=transaction.updated_at
        )

    def _void_result(self, transaction: PaymentTransaction) -> VoidResult:
        return VoidResult(
            transaction.id,
            transaction.status,
            decline_reason=(
                transaction.decline_reason if transaction.status == PaymentStatus.FAILED else None
            ),
            timestamp=transaction.updated_at
        )

    @staticmethod
    def _event_data(transaction: PaymentTransaction, amount: Decimal, **extra: Any) -> Dict[str, Any]:
        """Transaction-derived webhook data; None values are omitted."""
        data = {
            'transactionId': transaction.id,
            'merchantId': transaction.merchant_id,
            'orderId': transaction.order_id,
            'amount': amount_to_json(to_amount(amount)),
            'currency': transaction.currency,
            'status': transaction.status.value,
            'authorizationCode': transaction.authorization_code,
            'declineReason': transaction.decline_reason,
            'agentContext': transaction.webhook_agent_context(),
        }
        data.update(extra)
        return {k: v for k, v in data.items() if v is not None}

    def _raise_event(self, event_type: WebhookEventType, data: Dict[str, Any]) -> None:
        """Schedule a notification without waiting for it."""
        if self.dispatcher is None:
            return

        task = asyncio.create_task(self._send_event(event_type, data))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _send_event(self, event_type: WebhookEventType, data: Dict[str, Any]) -> None:
        try:
            outcome = await self.dispatcher.notify(event_type, data)
        except Exception as e:
            self._stats["notifications_failed"] += 1
            logger.error(
                f"Webhook notification error for {data.get('transactionId')}: {e}",
                exc_info=True
            )
            return

        self._stats["notifications_raised"] += 1
        if not outcome.ok:
            self._stats["notifications_failed"] += 1

    async def drain_notifications(self) -> None:
        """Wait for every scheduled notification to be queued."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)
