"""
Payment transaction data models.

Represents the payment transaction, its status machine, and the results
returned by payment operations.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_amount(value: Any) -> Decimal:
    """Normalize an amount to a two-place Decimal."""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(Decimal('0.01'))


def amount_to_json(amount: Decimal) -> Any:
    """Render an amount as a JSON number (int when whole)."""
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC timestamp with a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (datetime or ISO string) into aware UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class PaymentStatus(str, Enum):
    """Lifecycle states of a payment transaction."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"
    REFUNDED = "refunded"
    DECLINED = "declined"
    EXPIRED = "expired"
    FAILED = "failed"


# Allowed status transitions
TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.AUTHORIZED,
        PaymentStatus.DECLINED,
        PaymentStatus.FAILED,
    },
    PaymentStatus.AUTHORIZED: {
        PaymentStatus.CAPTURED,
        PaymentStatus.VOIDED,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
    },
    PaymentStatus.CAPTURED: {
        PaymentStatus.CAPTURED,
        PaymentStatus.REFUNDED,
    },
    PaymentStatus.VOIDED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.DECLINED: set(),
    PaymentStatus.EXPIRED: set(),
    PaymentStatus.FAILED: set(),
}


class MandateType(str, Enum):
    """Kind of mandate an agent acted under."""
    CART = "cart"
    INTENT = "intent"
    NONE = "none"


@dataclass
class AgentContext:
    """
    Context for transactions initiated by an automated agent on a user's behalf.

    Forwarded to the issuer for visibility; never evaluated here.
    """

    agent_id: str
    owner_id: str
    human_present: bool = False
    mandate_id: Optional[str] = None
    mandate_type: Optional[MandateType] = None

    def __post_init__(self):
        if isinstance(self.mandate_type, str):
            self.mandate_type = MandateType(self.mandate_type)

    def to_issuer_dict(self) -> Dict[str, Any]:
        """Shape forwarded to the issuer on authorize."""
        data = {
            'agentId': self.agent_id,
            'ownerId': self.owner_id,
            'humanPresent': self.human_present,
        }
        if self.mandate_type is not None:
            data['mandateType'] = self.mandate_type.value
        return data


@dataclass
class PaymentTransaction:
    """
    A card transaction tracked through its authorize/capture/void/refund lifecycle.

    Attributes:
        id: Transaction id, generated at authorize time
        merchant_id: Merchant that initiated the payment
        merchant_name: Display name (falls back to merchant_id)
        order_id: Merchant's order reference
        card_token: Opaque card or wallet token
        amount: Authorized amount
        currency: ISO currency code
        status: Current lifecycle status
        authorization_code: Issuer authorization code (approval only)
        captured_amount: Amount captured so far
        refunded_amount: Amount refunded so far
        decline_reason: Reason recorded on decline or failure
        issuer_id: Issuer instance that handles this transaction
        expires_at: When an authorization lapses
    """

    id: str
    merchant_id: str
    order_id: str
    card_token: str
    amount: Decimal
    currency: str
    merchant_name: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    authorization_code: Optional[str] = None
    captured_amount: Decimal = Decimal('0.00')
    refunded_amount: Decimal = Decimal('0.00')
    description: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    decline_reason: Optional[str] = None
    issuer_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    # Agent context
    agent_id: Optional[str] = None
    agent_owner_id: Optional[str] = None
    agent_human_present: Optional[bool] = None
    agent_mandate_id: Optional[str] = None
    agent_mandate_type: Optional[str] = None

    def __post_init__(self):
        """Normalize status and amounts."""
        if isinstance(self.status, str):
            self.status = PaymentStatus(self.status)
        self.amount = to_amount(self.amount)
        self.captured_amount = to_amount(self.captured_amount)
        self.refunded_amount = to_amount(self.refunded_amount)
        if not self.merchant_name:
            self.merchant_name = self.merchant_id

    def can_transition(self, to: PaymentStatus) -> bool:
        """Check whether the status machine allows moving to ``to``."""
        return to in TRANSITIONS[self.status]

    @property
    def refundable_amount(self) -> Decimal:
        """Captured amount not yet refunded."""
        return self.captured_amount - self.refunded_amount

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether an authorization has passed its expiry."""
        if self.status != PaymentStatus.AUTHORIZED or self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def apply_agent_context(self, context: AgentContext) -> None:
        """Store agent context fields on the transaction."""
        self.agent_id = context.agent_id
        self.agent_owner_id = context.owner_id
        self.agent_human_present = context.human_present
        self.agent_mandate_id = context.mandate_id
        self.agent_mandate_type = context.mandate_type.value if context.mandate_type else None

    def webhook_agent_context(self) -> Optional[Dict[str, Any]]:
        """Agent context echoed in webhook payloads, if any."""
        if not self.agent_id or not self.agent_owner_id:
            return None
        return {
            'agentId': self.agent_id,
            'ownerId': self.agent_owner_id,
            'humanPresent': bool(self.agent_human_present),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentTransaction':
        """
        Create PaymentTransaction from dictionary (e.g., database row).

        Args:
            data: Dictionary with transaction data

        Returns:
            PaymentTransaction instance
        """
        metadata = data.get('metadata')
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        human_present = data.get('agent_human_present')
        if human_present is not None:
            human_present = bool(human_present)

        return cls(
            id=data['id'],
            merchant_id=data['merchant_id'],
            merchant_name=data.get('merchant_name'),
            order_id=data['order_id'],
            card_token=data['card_token'],
            amount=data['amount'],
            currency=data['currency'],
            status=data.get('status', PaymentStatus.PENDING),
            authorization_code=data.get('authorization_code'),
            captured_amount=data.get('captured_amount') or 0,
            refunded_amount=data.get('refunded_amount') or 0,
            description=data.get('description'),
            metadata=metadata,
            decline_reason=data.get('decline_reason'),
            issuer_id=data.get('issuer_id'),
            created_at=parse_timestamp(data.get('created_at')) or utc_now(),
            updated_at=parse_timestamp(data.get('updated_at')) or utc_now(),
            expires_at=parse_timestamp(data.get('expires_at')),
            agent_id=data.get('agent_id'),
            agent_owner_id=data.get('agent_owner_id'),
            agent_human_present=human_present,
            agent_mandate_id=data.get('agent_mandate_id'),
            agent_mandate_type=data.get('agent_mandate_type')
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'merchant_id': self.merchant_id,
            'merchant_name': self.merchant_name,
            'order_id': self.order_id,
            'card_token': self.card_token,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status.value,
            'authorization_code': self.authorization_code,
            'captured_amount': self.captured_amount,
            'refunded_amount': self.refunded_amount,
            'description': self.description,
            'metadata': self.metadata,
            'decline_reason': self.decline_reason,
            'issuer_id': self.issuer_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'expires_at': self.expires_at,
            'agent_id': self.agent_id,
            'agent_owner_id': self.agent_owner_id,
            'agent_human_present': self.agent_human_present,
            'agent_mandate_id': self.agent_mandate_id,
            'agent_mandate_type': self.agent_mandate_type,
        }

    def __repr__(self) -> str:
        return (
            f"PaymentTransaction(id={self.id}, "
            f"status={self.status.value}, "
            f"amount={self.amount} {self.currency})"
        )


@dataclass
class AuthorizationResult:
    """Outcome of an authorize operation."""

    transaction_id: str
    status: PaymentStatus
    authorization_code: Optional[str] = None
    decline_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'status': self.status.value,
            'authorizationCode': self.authorization_code,
            'declineReason': self.decline_reason,
            'timestamp': format_timestamp(self.timestamp),
        }


@dataclass
class CaptureResult:
    """Outcome of a capture operation."""

    transaction_id: str
    status: PaymentStatus
    captured_amount: Decimal = Decimal('0.00')
    decline_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'status': self.status.value,
            'capturedAmount': amount_to_json(to_amount(self.captured_amount)),
            'declineReason': self.decline_reason,
            'timestamp': format_timestamp(self.timestamp),
        }


@dataclass
class VoidResult:
    """Outcome of a void operation."""

    transaction_id: str
    status: PaymentStatus
    decline_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'status': self.status.value,
            'declineReason': self.decline_reason,
            'timestamp': format_timestamp(self.timestamp),
        }


@dataclass
class RefundResult:
    """Outcome of a refund operation."""

    transaction_id: str
    refund_id: str
    status: PaymentStatus
    refunded_amount: Decimal = Decimal('0.00')
    decline_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'refundId': self.refund_id,
            'status': self.status.value,
            'refundedAmount': amount_to_json(to_amount(self.refunded_amount)),
            'declineReason': self.decline_reason,
            'timestamp': format_timestamp(self.timestamp),
        }
