"""
Repositories for transactions, notification endpoints and delivery history.

Services depend on the abstract contracts only. Two implementations are
provided: in-memory (tests and development) and SQL over the shared
Database connection.

Status-changing updates accept ``expected_status``; the write only happens
if the stored status still matches, otherwise StaleTransactionError is raised.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from exceptions import PersistenceError, StaleTransactionError
from models.notification import DeliveryRecord, NotificationEndpoint, WebhookEventType
from models.transaction import PaymentStatus, PaymentTransaction, utc_now
from .db import Database

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = (
    'id', 'merchant_id', 'merchant_name', 'order_id', 'card_token', 'amount',
    'currency', 'status', 'authorization_code', 'captured_amount',
    'refunded_amount', 'description', 'metadata', 'decline_reason', 'issuer_id',
    'created_at', 'updated_at', 'expires_at', 'agent_id', 'agent_owner_id',
    'agent_human_present', 'agent_mandate_id', 'agent_mandate_type',
)

# Columns that may change after creation
UPDATABLE_TRANSACTION_FIELDS = frozenset({
    'status', 'authorization_code', 'captured_amount', 'refunded_amount',
    'decline_reason', 'expires_at', 'metadata', 'description',
})

UPDATABLE_ENDPOINT_FIELDS = frozenset({'url', 'events', 'secret', 'is_active'})


def _status_value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return status.value if isinstance(status, PaymentStatus) else str(status)


def _check_fields(fields: Dict[str, Any], allowed: frozenset) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise PersistenceError(
            f"Cannot update fields: {', '.join(sorted(unknown))}",
            details={'fields': sorted(unknown)}
        )


# =============================================================================
# Contracts
# =============================================================================

class TransactionRepository(ABC):
    """Storage contract for payment transactions."""

    @abstractmethod
    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        ...

    @abstractmethod
    async def find_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_by_merchant_id(self, merchant_id: str) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_by_order_id(self, order_id: str) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_by_status(self, status: PaymentStatus) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_by_issuer_id(self, issuer_id: str) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_expired_authorizations(
        self,
        now: Optional[datetime] = None
    ) -> List[PaymentTransaction]:
        """Authorized transactions whose expiry is at or before ``now``."""

    @abstractmethod
    async def find_by_agent_id(self, agent_id: str) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_by_agent_owner_id(self, owner_id: str) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def find_by_human_present(self, human_present: bool) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def update(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[PaymentStatus] = None
    ) -> Optional[PaymentTransaction]:
        """
        Apply a partial update.

        Args:
            transaction_id: Transaction to update
            fields: Column name to new value
            expected_status: Only write if the stored status still matches

        Returns:
            The updated transaction, or None if it does not exist

        Raises:
            StaleTransactionError: If the stored status differs from expected_status
        """

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def delete(self, transaction_id: str) -> bool:
        ...


class EndpointRepository(ABC):
    """Storage contract for notification endpoints and their delivery history."""

    @abstractmethod
    async def create(self, endpoint: NotificationEndpoint) -> NotificationEndpoint:
        ...

    @abstractmethod
    async def find_by_id(self, endpoint_id: str) -> Optional[NotificationEndpoint]:
        ...

    @abstractmethod
    async def find_by_merchant_id(
        self,
        merchant_id: str,
        active_only: bool = True
    ) -> List[NotificationEndpoint]:
        ...

    @abstractmethod
    async def update(
        self,
        endpoint_id: str,
        fields: Dict[str, Any]
    ) -> Optional[NotificationEndpoint]:
        ...

    @abstractmethod
    async def delete(self, endpoint_id: str) -> bool:
        ...

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Endpoint counts: total, active and per merchant."""

    @abstractmethod
    async def record_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        ...

    @abstractmethod
    async def get_delivery_history(
        self,
        endpoint_id: str,
        limit: int = 50
    ) -> List[DeliveryRecord]:
        """Most recent delivery attempts for an endpoint, newest first."""

    @abstractmethod
    async def get_deliveries_for_transaction(self, transaction_id: str) -> List[DeliveryRecord]:
        """All delivery attempts for a transaction, oldest first."""


# =============================================================================
# In-memory implementations
# =============================================================================

class InMemoryTransactionRepository(TransactionRepository):
    """
    Dictionary-backed transaction store.

    Returns copies so callers cannot mutate stored state. Conditional updates
    run under a lock so the status check and the write are atomic.
    """

    def __init__(self):
        self._transactions: Dict[str, PaymentTransaction] = {}
        self._lock = asyncio.Lock()

    def _select(self, predicate) -> List[PaymentTransaction]:
        matches = [t for t in self._transactions.values() if predicate(t)]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        return [copy.deepcopy(t) for t in matches]

    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        async with self._lock:
            if transaction.id in self._transactions:
                raise PersistenceError(f"Transaction {transaction.id} already exists")
            self._transactions[transaction.id] = copy.deepcopy(transaction)
        return copy.deepcopy(transaction)

    async def find_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        transaction = self._transactions.get(transaction_id)
        return copy.deepcopy(transaction) if transaction else None

    async def find_by_merchant_id(self, merchant_id: str) -> List[PaymentTransaction]:
        return self._select(lambda t: t.merchant_id == merchant_id)

    async def find_by_order_id(self, order_id: str) -> List[PaymentTransaction]:
        return self._select(lambda t: t.order_id == order_id)

    async def find_by_status(self, status: PaymentStatus) -> List[PaymentTransaction]:
        status = PaymentStatus(status)
        return self._select(lambda t: t.status == status)

    async def find_by_issuer_id(self, issuer_id: str) -> List[PaymentTransaction]:
        return self._select(lambda t: t.issuer_id == issuer_id)

    async def find_expired_authorizations(
        self,
        now: Optional[datetime] = None
    ) -> List[PaymentTransaction]:
        now = now or utc_now()
        expired = [
            copy.deepcopy(t) for t in self._transactions.values() if t.is_expired(now)
        ]
        expired.sort(key=lambda t: t.expires_at)
        return expired

    async def find_by_agent_id(self, agent_id: str) -> List[PaymentTransaction]:
        return self._select(lambda t: t.agent_id == agent_id)

    async def find_by_agent_owner_id(self, owner_id: str) -> List[PaymentTransaction]:
        return self._select(lambda t: t.agent_owner_id == owner_id)

    async def find_by_human_present(self, human_present: bool) -> List[PaymentTransaction]:
        return self._select(
            lambda t: t.agent_human_present is not None
            and t.agent_human_present == human_present
        )

    async def update(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[PaymentStatus] = None
    ) -> Optional[PaymentTransaction]:
        _check_fields(fields, UPDATABLE_TRANSACTION_FIELDS)

        async with self._lock:
            stored = self._transactions.get(transaction_id)
            if stored is None:
                return None

            if expected_status is not None and stored.status != PaymentStatus(expected_status):
                raise StaleTransactionError(
                    transaction_id,
                    _status_value(expected_status),
                    stored.status.value
                )

            updated = copy.deepcopy(stored)
            for name, value in fields.items():
                setattr(updated, name, value)
            updated.updated_at = utc_now()
            # Re-run normalisation of status and amounts
            updated.__post_init__()

            self._transactions[transaction_id] = updated
            return copy.deepcopy(updated)

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for transaction in self._transactions.values():
            counts[transaction.status.value] = counts.get(transaction.status.value, 0) + 1
        return counts

    async def delete(self, transaction_id: str) -> bool:
        async with self._lock:
            return self._transactions.pop(transaction_id, None) is not None


class InMemoryEndpointRepository(EndpointRepository):
    """Dictionary-backed endpoint store with a delivery log."""

    def __init__(self):
        self._endpoints: Dict[str, NotificationEndpoint] = {}
        self._deliveries: List[DeliveryRecord] = []
        self._next_delivery_id = 1

    async def create(self, endpoint: NotificationEndpoint) -> NotificationEndpoint:
        if endpoint.id in self._endpoints:
            raise PersistenceError(f"Endpoint {endpoint.id} already exists")
        self._endpoints[endpoint.id] = copy.deepcopy(endpoint)
        return copy.deepcopy(endpoint)

    async def find_by_id(self, endpoint_id: str) -> Optional[NotificationEndpoint]:
        endpoint = self._endpoints.get(endpoint_id)
        return copy.deepcopy(endpoint) if endpoint else None

    async def find_by_merchant_id(
        self,
        merchant_id: str,
        active_only: bool = True
    ) -> List[NotificationEndpoint]:
        return [
            copy.deepcopy(e) for e in self._endpoints.values()
            if e.merchant_id == merchant_id and (e.is_active or not active_only)
        ]

    async def update(
        self,
        endpoint_id: str,
        fields: Dict[str, Any]
    ) -> Optional[NotificationEndpoint]:
        _check_fields(fields, UPDATABLE_ENDPOINT_FIELDS)

        stored = self._endpoints.get(endpoint_id)
        if stored is None:
            return None

        updated = copy.deepcopy(stored)
        for name, value in fields.items():
            setattr(updated, name, value)
        updated.updated_at = utc_now()
        updated.__post_init__()

        self._endpoints[endpoint_id] = updated
        return copy.deepcopy(updated)

    async def delete(self, endpoint_id: str) -> bool:
        if self._endpoints.pop(endpoint_id, None) is None:
            return False
        self._deliveries = [d for d in self._deliveries if d.endpoint_id != endpoint_id]
        return True

    async def get_stats(self) -> Dict[str, Any]:
        by_merchant: Dict[str, int] = {}
        for endpoint in self._endpoints.values():
            by_merchant[endpoint.merchant_id] = by_merchant.get(endpoint.merchant_id, 0) + 1
        return {
            'total': len(self._endpoints),
            'active': sum(1 for e in self._endpoints.values() if e.is_active),
            'by_merchant': by_merchant
        }

    async def record_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        stored = copy.deepcopy(record)
        stored.id = self._next_delivery_id
        self._next_delivery_id += 1
        self._deliveries.append(stored)
        return copy.deepcopy(stored)

    async def get_delivery_history(
        self,
        endpoint_id: str,
        limit: int = 50
    ) -> List[DeliveryRecord]:
        history = [d for d in self._deliveries if d.endpoint_id == endpoint_id]
        history.sort(key=lambda d: d.id, reverse=True)
        return [copy.deepcopy(d) for d in history[:limit]]

    async def get_deliveries_for_transaction(self, transaction_id: str) -> List[DeliveryRecord]:
        return [
            copy.deepcopy(d) for d in self._deliveries if d.transaction_id == transaction_id
        ]


# =============================================================================
# SQL implementations
# =============================================================================

class SqlTransactionRepository(TransactionRepository):
    """Transaction store over the shared Database (PostgreSQL or SQLite)."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_row_value(name: str, value: Any) -> Any:
        if name == 'status':
            return _status_value(value)
        if name == 'metadata' and value is not None:
            return json.dumps(value)
        return value

    async def _fetch_many(self, where: str, *args, order: str = 'created_at DESC') -> List[PaymentTransaction]:
        rows = await self.db.fetch_all(
            f"SELECT * FROM payment_transactions WHERE {where} ORDER BY {order}",
            *args
        )
        return [PaymentTransaction.from_dict(row) for row in rows]

    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        row = transaction.to_dict()
        columns = ', '.join(TRANSACTION_COLUMNS)
        placeholders = ', '.join(f'${i}' for i in range(1, len(TRANSACTION_COLUMNS) + 1))
        values = [self._to_row_value(c, row[c]) for c in TRANSACTION_COLUMNS]

        await self.db.execute(
            f"INSERT INTO payment_transactions ({columns}) VALUES ({placeholders})",
            *values
        )
        logger.debug(f"Stored transaction {transaction.id}")
        return transaction

    async def find_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        row = await self.db.fetch_one(
            "SELECT * FROM payment_transactions WHERE id = $1",
            transaction_id
        )
        return PaymentTransaction.from_dict(row) if row else None

    async def find_by_merchant_id(self, merchant_id: str) -> List[PaymentTransaction]:
        return await self._fetch_many("merchant_id = $1", merchant_id)

    async def find_by_order_id(self, order_id: str) -> List[PaymentTransaction]:
        return await self._fetch_many("order_id = $1", order_id)

    async def find_by_status(self, status: PaymentStatus) -> List[PaymentTransaction]:
        return await self._fetch_many("status = $1", _status_value(status))

    async def find_by_issuer_id(self, issuer_id: str) -> List[PaymentTransaction]:
        return await self._fetch_many("issuer_id = $1", issuer_id)

    async def find_expired_authorizations(
        self,
        now: Optional[datetime] = None
    ) -> List[PaymentTransaction]:
        return await self._fetch_many(
            "status = $1 AND expires_at IS NOT NULL AND expires_at <= $2",
            PaymentStatus.AUTHORIZED.value,
            now or utc_now(),
            order='expires_at ASC'
        )

    async def find_by_agent_id(self, agent_id: str) -> List[PaymentTransaction]:
        return await self._fetch_many("agent_id = $1", agent_id)

    async def find_by_agent_owner_id(self, owner_id: str) -> List[PaymentTransaction]:
        return await self._fetch_many("agent_owner_id = $1", owner_id)

    async def find_by_human_present(self, human_present: bool) -> List[PaymentTransaction]:
        return await self._fetch_many("agent_human_present = $1", human_present)

    async def update(
        self,
        transaction_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[PaymentStatus] = None
    ) -> Optional[PaymentTransaction]:
        _check_fields(fields, UPDATABLE_TRANSACTION_FIELDS)

        assignments = []
        values = []
        for name, value in fields.items():
            values.append(self._to_row_value(name, value))
            assignments.append(f"{name} = ${len(values)}")

        values.append(utc_now())
        assignments.append(f"updated_at = ${len(values)}")

        values.append(transaction_id)
        query = (
            f"UPDATE payment_transactions SET {', '.join(assignments)} "
            f"WHERE id = ${len(values)}"
        )
        if expected_status is not None:
            values.append(_status_value(expected_status))
            query += f" AND status = ${len(values)}"

        affected = await self.db.execute(query, *values)

        if affected == 0:
            current = await self.find_by_id(transaction_id)
            if current is None:
                return None
            raise StaleTransactionError(
                transaction_id,
                _status_value(expected_status),
                current.status.value
            )

        return await self.find_by_id(transaction_id)

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) AS count FROM payment_transactions GROUP BY status"
        )
        return {row['status']: int(row['count']) for row in rows}

    async def delete(self, transaction_id: str) -> bool:
        affected = await self.db.execute(
            "DELETE FROM payment_transactions WHERE id = $1",
            transaction_id
        )
        return affected > 0


class SqlEndpointRepository(EndpointRepository):
    """Endpoint and delivery-history store over the shared Database."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_row_value(name: str, value: Any) -> Any:
        if name == 'events':
            return json.dumps(sorted(WebhookEventType(e).value for e in value))
        return value

    async def create(self, endpoint: NotificationEndpoint) -> NotificationEndpoint:
        await self.db.execute(
            """
            INSERT INTO notification_endpoints
                (id, merchant_id, url, events, secret, is_active, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            endpoint.id,
            endpoint.merchant_id,
            endpoint.url,
            self._to_row_value('events', endpoint.events),
            endpoint.secret,
            endpoint.is_active,
            endpoint.created_at,
            endpoint.updated_at
        )
        return endpoint

    async def find_by_id(self, endpoint_id: str) -> Optional[NotificationEndpoint]:
        row = await self.db.fetch_one(
            "SELECT * FROM notification_endpoints WHERE id = $1",
            endpoint_id
        )
        return NotificationEndpoint.from_dict(row) if row else None

    async def find_by_merchant_id(
        self,
        merchant_id: str,
        active_only: bool = True
    ) -> List[NotificationEndpoint]:
        if active_only:
            rows = await self.db.fetch_all(
                "SELECT * FROM notification_endpoints "
                "WHERE merchant_id = $1 AND is_active = $2 ORDER BY created_at",
                merchant_id, True
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM notification_endpoints WHERE merchant_id = $1 ORDER BY created_at",
                merchant_id
            )
        return [NotificationEndpoint.from_dict(row) for row in rows]

    async def update(
        self,
        endpoint_id: str,
        fields: Dict[str, Any]
    ) -> Optional[NotificationEndpoint]:
        _check_fields(fields, UPDATABLE_ENDPOINT_FIELDS)

        assignments = []
        values = []
        for name, value in fields.items():
            values.append(self._to_row_value(name, value))
            assignments.append(f"{name} = ${len(values)}")

        values.append(utc_now())
        assignments.append(f"updated_at = ${len(values)}")
        values.append(endpoint_id)

        affected = await self.db.execute(
            f"UPDATE notification_endpoints SET {', '.join(assignments)} "
            f"WHERE id = ${len(values)}",
            *values
        )
        if affected == 0:
            return None
        return await self.find_by_id(endpoint_id)

    async def delete(self, endpoint_id: str) -> bool:
        # SQLite does not enforce the cascade unless foreign keys are enabled
        await self.db.execute(
            "DELETE FROM webhook_deliveries WHERE endpoint_id = $1",
            endpoint_id
        )
        affected = await self.db.execute(
            "DELETE FROM notification_endpoints WHERE id = $1",
            endpoint_id
        )
        return affected > 0

    async def get_stats(self) -> Dict[str, Any]:
        rows = await self.db.fetch_all(
            """
            SELECT merchant_id,
                   COUNT(*) AS total,
                   SUM(CASE WHEN is_active THEN 1 ELSE 0 END) AS active
            FROM notification_endpoints
            GROUP BY merchant_id
            """
        )
        by_merchant = {row['merchant_id']: int(row['total']) for row in rows}
        return {
            'total': sum(by_merchant.values()),
            'active': sum(int(row['active'] or 0) for row in rows),
            'by_merchant': by_merchant
        }

    async def record_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        record.id = await self.db.insert_returning_id(
            """
            INSERT INTO webhook_deliveries
                (endpoint_id, event, payload_id, transaction_id, attempt, success,
                 status_code, error, payload, delivered_at, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            record.endpoint_id,
            record.event.value,
            record.payload_id,
            record.transaction_id,
            record.attempt,
            record.success,
            record.status_code,
            record.error,
            record.payload,
            record.delivered_at,
            record.created_at
        )
        return record

    async def get_delivery_history(
        self,
        endpoint_id: str,
        limit: int = 50
    ) -> List[DeliveryRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM webhook_deliveries WHERE endpoint_id = $1 "
            "ORDER BY id DESC LIMIT $2",
            endpoint_id, limit
        )
        return [DeliveryRecord.from_dict(row) for row in rows]

    async def get_deliveries_for_transaction(self, transaction_id: str) -> List[DeliveryRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM webhook_deliveries WHERE transaction_id = $1 ORDER BY id",
            transaction_id
        )
        return [DeliveryRecord.from_dict(row) for row in rows]
