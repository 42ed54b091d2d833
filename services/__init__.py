"""Services module for the Payment Network Router."""

from .expiry_monitor import ExpiryMonitor
from .issuer_gateway import IssuerGateway
from .issuer_registry import IssuerRegistry
from .notification_dispatcher import NotificationDispatcher
from .token_router import TokenAnalysis, TokenRouter, analyze_token
from .transaction_engine import TransactionEngine

__all__ = [
    'ExpiryMonitor',
    'IssuerGateway',
    'IssuerRegistry',
    'NotificationDispatcher',
    'TokenAnalysis',
    'TokenRouter',
    'TransactionEngine',
    'analyze_token',
]
