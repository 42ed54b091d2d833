"""
Notification data models.

Represents merchant notification endpoints, signed webhook payloads,
queued delivery jobs and delivery history.
"""

import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set

from exceptions import ValidationError
from .transaction import format_timestamp, parse_timestamp, utc_now


class WebhookEventType(str, Enum):
    """Transaction events a merchant can subscribe to."""
    AUTHORIZED = "payment.authorized"
    CAPTURED = "payment.captured"
    VOIDED = "payment.voided"
    REFUNDED = "payment.refunded"
    DECLINED = "payment.declined"
    EXPIRED = "payment.expired"
    FAILED = "payment.failed"


class JobStatus(str, Enum):
    """States of a queued delivery job."""
    PENDING = "pending"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_events(events: Iterable[Any]) -> Set[WebhookEventType]:
    """Coerce event names into WebhookEventType members."""
    parsed = set()
    for event in events:
        try:
            parsed.add(WebhookEventType(event))
        except ValueError:
            raise ValidationError(f"Unknown webhook event type: {event}")
    return parsed


@dataclass
class NotificationEndpoint:
    """
    A merchant-registered URL that receives signed transaction events.

    Attributes:
        id: Endpoint id
        merchant_id: Owning merchant
        url: Delivery URL
        events: Event types this endpoint is subscribed to
        secret: Secret for HMAC signature generation
        is_active: Whether the endpoint is receiving notifications
        created_at: Registration timestamp
        updated_at: Timestamp of last update
    """

    id: str
    merchant_id: str
    url: str
    events: Set[WebhookEventType]
    secret: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        """Validate and normalize endpoint data."""
        self.events = parse_events(self.events)
        self.validate()

    def validate(self) -> None:
        """
        Validate endpoint configuration.

        Raises:
            ValidationError: If configuration is invalid
        """
        if not self.merchant_id:
            raise ValidationError("Merchant id is required")

        if not self.url or not self.url.startswith(('http://', 'https://')):
            raise ValidationError("Webhook URL must be a valid HTTP(S) URL")

        if not self.events:
            raise ValidationError("At least one event type is required")

        if not self.secret:
            raise ValidationError("Webhook secret is required")

    @classmethod
    def create(
        cls,
        merchant_id: str,
        url: str,
        events: Iterable[Any],
        secret: Optional[str] = None
    ) -> 'NotificationEndpoint':
        """
        Factory method to register a new endpoint.

        Args:
            merchant_id: Owning merchant
            url: Delivery URL
            events: Event types to subscribe to
            secret: Signing secret (generated when omitted)

        Returns:
            New NotificationEndpoint
        """
        return cls(
            id=str(uuid.uuid4()),
            merchant_id=merchant_id,
            url=url,
            events=set(events),
            secret=secret or cls.generate_secret()
        )

    @staticmethod
    def generate_secret(length: int = 32) -> str:
        """
        Generate a random secret for webhook signatures.

        Args:
            length: Length of the secret in bytes

        Returns:
            Hex-encoded secret string
        """
        return secrets.token_hex(length)

    def is_subscribed(self, event_type: WebhookEventType) -> bool:
        """Check whether the endpoint wants this event."""
        return self.is_active and event_type in self.events

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationEndpoint':
        """
        Create NotificationEndpoint from dictionary (e.g., database row).

        Args:
            data: Dictionary with endpoint data

        Returns:
            NotificationEndpoint instance
        """
        events = data['events']
        if isinstance(events, str):
            events = json.loads(events)

        return cls(
            id=data['id'],
            merchant_id=data['merchant_id'],
            url=data['url'],
            events=set(events),
            secret=data['secret'],
            is_active=bool(data.get('is_active', True)),
            created_at=parse_timestamp(data.get('created_at')) or utc_now(),
            updated_at=parse_timestamp(data.get('updated_at')) or utc_now()
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert endpoint to dictionary.

        Returns:
            Dictionary representation
        """
        return {
            'id': self.id,
            'merchant_id': self.merchant_id,
            'url': self.url,
            'events': sorted(e.value for e in self.events),
            'secret': self.secret,
            'is_active': self.is_active,
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at)
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """
        Convert endpoint to dictionary for public API (excludes secrets).

        Returns:
            Dictionary representation without sensitive data
        """
        data = self.to_dict()
        data['secret'] = '***' if data['secret'] else None
        return data

    def __repr__(self) -> str:
        return (
            f"NotificationEndpoint(id={self.id}, "
            f"merchant={self.merchant_id}, "
            f"active={self.is_active})"
        )


@dataclass
class WebhookPayload:
    """
    Webhook payload sent to merchants.

    The body is serialised once; the signature covers exactly those bytes.
    """

    id: str
    type: WebhookEventType
    timestamp: datetime
    data: Dict[str, Any]

    @classmethod
    def build(cls, event_type: WebhookEventType, data: Dict[str, Any]) -> 'WebhookPayload':
        """
        Create a payload with a fresh event id.

        Args:
            event_type: Type of event
            data: Transaction-derived event data

        Returns:
            WebhookPayload instance
        """
        return cls(
            id=str(uuid.uuid4()),
            type=WebhookEventType(event_type),
            timestamp=utc_now(),
            data=data
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'type': self.type.value,
            'timestamp': format_timestamp(self.timestamp),
            'data': self.data
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), separators=(',', ':'))

    @staticmethod
    def sign_body(body: str, secret: str) -> str:
        """
        Generate HMAC signature for a serialised payload.

        Args:
            body: Serialised payload
            secret: Secret key for signing

        Returns:
            Hex-encoded HMAC-SHA256 signature
        """
        return hmac.new(
            secret.encode('utf-8'),
            body.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

    def sign(self, secret: str) -> str:
        """Sign this payload's serialised form."""
        return self.sign_body(self.to_json(), secret)

    @staticmethod
    def verify_signature(body: str, signature: str, secret: str) -> bool:
        """
        Verify HMAC signature of a payload.

        Args:
            body: Raw request body as received
            signature: Signature header value, with or without 'sha256=' prefix
            secret: Secret key

        Returns:
            True if signature is valid
        """
        if signature.startswith('sha256='):
            signature = signature[7:]

        expected = WebhookPayload.sign_body(body, secret)
        return hmac.compare_digest(expected, signature)


@dataclass
class NotificationJob:
    """A unit of dispatch work held in the durable queue."""

    job_id: str
    endpoint_id: str
    endpoint_url: str
    secret: str
    payload: str
    event_type: WebhookEventType
    transaction_id: str
    attempt: int = 0
    max_attempts: int = 5
    status: JobStatus = JobStatus.PENDING
    next_attempt_at: datetime = field(default_factory=utc_now)
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if isinstance(self.event_type, str):
            self.event_type = WebhookEventType(self.event_type)
        if isinstance(self.status, str):
            self.status = JobStatus(self.status)

    @classmethod
    def for_endpoint(
        cls,
        endpoint: NotificationEndpoint,
        payload: WebhookPayload,
        max_attempts: int
    ) -> 'NotificationJob':
        """Build a job delivering ``payload`` to ``endpoint``."""
        return cls(
            job_id=payload.id,
            endpoint_id=endpoint.id,
            endpoint_url=endpoint.url,
            secret=endpoint.secret,
            payload=payload.to_json(),
            event_type=payload.type,
            transaction_id=payload.data.get('transactionId', ''),
            max_attempts=max_attempts
        )

    @property
    def payload_dict(self) -> Dict[str, Any]:
        return json.loads(self.payload)

    @property
    def exhausted(self) -> bool:
        """Whether no attempts remain."""
        return self.attempt >= self.max_attempts

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationJob':
        return cls(
            job_id=data['job_id'],
            endpoint_id=data['endpoint_id'],
            endpoint_url=data['endpoint_url'],
            secret=data['secret'],
            payload=data['payload'],
            event_type=data['event_type'],
            transaction_id=data.get('transaction_id') or '',
            attempt=int(data.get('attempt') or 0),
            max_attempts=int(data.get('max_attempts') or 5),
            status=data.get('status', JobStatus.PENDING),
            next_attempt_at=parse_timestamp(data.get('next_attempt_at')) or utc_now(),
            last_error=data.get('last_error'),
            created_at=parse_timestamp(data.get('created_at')) or utc_now()
        )


@dataclass
class DeliveryRecord:
    """One recorded delivery attempt."""

    endpoint_id: str
    event: WebhookEventType
    payload_id: str
    transaction_id: str
    attempt: int
    success: bool
    payload: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if isinstance(self.event, str):
            self.event = WebhookEventType(self.event)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeliveryRecord':
        return cls(
            id=data.get('id'),
            endpoint_id=data['endpoint_id'],
            event=data['event'],
            payload_id=data['payload_id'],
            transaction_id=data['transaction_id'],
            attempt=int(data['attempt']),
            success=bool(data['success']),
            payload=data['payload'],
            status_code=data.get('status_code'),
            error=data.get('error'),
            delivered_at=parse_timestamp(data.get('delivered_at')),
            created_at=parse_timestamp(data.get('created_at')) or utc_now()
        )


@dataclass
class NotifyOutcome:
    """Result of raising one transaction event."""

    enqueued: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0
