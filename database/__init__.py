"""Database module for the Payment Network Router."""

from .db import Database
from .job_queue import InMemoryNotificationQueue, JobQueue, NotificationQueue
from .repositories import (
    EndpointRepository,
    InMemoryEndpointRepository,
    InMemoryTransactionRepository,
    SqlEndpointRepository,
    SqlTransactionRepository,
    TransactionRepository,
)

__all__ = [
    'Database',
    'JobQueue',
    'NotificationQueue',
    'InMemoryNotificationQueue',
    'TransactionRepository',
    'EndpointRepository',
    'InMemoryTransactionRepository',
    'InMemoryEndpointRepository',
    'SqlTransactionRepository',
    'SqlEndpointRepository',
]
