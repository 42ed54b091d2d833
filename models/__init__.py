"""Data models for the Payment Network Router."""

from .issuer import AuthorizeOutcome, IssuerProvider, OperationOutcome
from .notification import (
    DeliveryRecord,
    JobStatus,
    NotificationEndpoint,
    NotificationJob,
    NotifyOutcome,
    WebhookEventType,
    WebhookPayload,
)
from .transaction import (
    AgentContext,
    AuthorizationResult,
    CaptureResult,
    PaymentStatus,
    PaymentTransaction,
    RefundResult,
    VoidResult,
)

__all__ = [
    'AgentContext',
    'AuthorizationResult',
    'AuthorizeOutcome',
    'CaptureResult',
    'DeliveryRecord',
    'IssuerProvider',
    'JobStatus',
    'NotificationEndpoint',
    'NotificationJob',
    'NotifyOutcome',
    'OperationOutcome',
    'PaymentStatus',
    'PaymentTransaction',
    'RefundResult',
    'VoidResult',
    'WebhookEventType',
    'WebhookPayload',
]
