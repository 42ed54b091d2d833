"""
Pytest configuration and fixtures.
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from database.db import Database
from database.job_queue import InMemoryNotificationQueue
from database.repositories import InMemoryEndpointRepository, InMemoryTransactionRepository
from models.issuer import AuthorizeOutcome, IssuerProvider, OperationOutcome
from services.issuer_registry import IssuerRegistry
from services.notification_dispatcher import NotificationDispatcher
from services.token_router import TokenRouter
from services.transaction_engine import TransactionEngine

VALID_TOKENS = {'ctok_valid_token_123', 'ctok_test_token_456'}


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeIssuerGateway:
    """
    Stand-in for IssuerGateway.

    Approves the known valid tokens (plus any wsim_ or JWT-shaped token),
    declines everything else with "Invalid card token", and records every call.
    """

    _codes = itertools.count(1)

    def __init__(self, issuer_id: str = 'bsim'):
        self.issuer_id = issuer_id
        self.calls: List[Dict[str, Any]] = []
        self.should_fail_network = False
        self.operation_error: Optional[str] = None
        self.before_operation: Optional[Callable[[str], Awaitable[None]]] = None
        self.closed = False

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c['operation'] == operation]

    async def authorize(self, card_token, amount, merchant_id, merchant_name, order_id,
                        currency=None, description=None, agent_context=None) -> AuthorizeOutcome:
        self.calls.append({
            'operation': 'authorize',
            'card_token': card_token,
            'amount': amount,
            'merchant_id': merchant_id,
            'merchant_name': merchant_name,
            'order_id': order_id,
            'currency': currency,
            'agent_context': agent_context,
        })
        if self.should_fail_network:
            return AuthorizeOutcome(approved=False, decline_reason='Issuer request failed: 503', network_error=True)

        if card_token in VALID_TOKENS or card_token.startswith('wsim_') or card_token.count('.') == 2:
            return AuthorizeOutcome(
                approved=True,
                authorization_code=f"AUTH-{next(self._codes):06d}",
                available_credit=5000
            )
        return AuthorizeOutcome(approved=False, decline_reason='Invalid card token')

    async def _operation(self, operation: str, **kwargs) -> OperationOutcome:
        self.calls.append({'operation': operation, **kwargs})
        if self.before_operation is not None:
            await self.before_operation(operation)
        if self.should_fail_network:
            return OperationOutcome(success=False, error='Issuer request failed: 503', network_error=True)
        if self.operation_error:
            return OperationOutcome(success=False, error=self.operation_error)
        return OperationOutcome(success=True)

    async def capture(self, authorization_code, amount) -> OperationOutcome:
        return await self._operation('capture', authorization_code=authorization_code, amount=amount)

    async def void(self, authorization_code) -> OperationOutcome:
        return await self._operation('void', authorization_code=authorization_code)

    async def refund(self, authorization_code, amount) -> OperationOutcome:
        return await self._operation('refund', authorization_code=authorization_code, amount=amount)

    async def validate_token(self, card_token) -> bool:
        self.calls.append({'operation': 'validate_token', 'card_token': card_token})
        return card_token in VALID_TOKENS

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def providers() -> List[IssuerProvider]:
    return [
        IssuerProvider(issuer_id='bsim', name='Default Bank', base_url='http://bsim.test', api_key='bsim-key'),
        IssuerProvider(issuer_id='newbank', name='New Bank', base_url='http://newbank.test', api_key='nb-key'),
    ]


@pytest.fixture
def registry(providers) -> IssuerRegistry:
    return IssuerRegistry(
        providers=providers,
        default_issuer_id='bsim',
        gateway_factory=lambda provider: FakeIssuerGateway(provider.issuer_id)
    )


@pytest.fixture
def router(registry) -> TokenRouter:
    return TokenRouter(registry)


@pytest.fixture
def bsim(registry) -> FakeIssuerGateway:
    return registry.get_gateway('bsim')


@pytest.fixture
def newbank(registry) -> FakeIssuerGateway:
    return registry.get_gateway('newbank')


@pytest.fixture
def transaction_repository() -> InMemoryTransactionRepository:
    return InMemoryTransactionRepository()


@pytest.fixture
def endpoint_repository() -> InMemoryEndpointRepository:
    return InMemoryEndpointRepository()


@pytest.fixture
def queue() -> InMemoryNotificationQueue:
    return InMemoryNotificationQueue()


@pytest_asyncio.fixture
async def dispatcher(endpoint_repository, queue, clock):
    dispatcher = NotificationDispatcher(
        endpoints=endpoint_repository,
        queue=queue,
        max_retries=5,
        retry_delay_ms=1000,
        timeout_ms=2000,
        concurrency=2,
        poll_interval=0.01,
        clock=clock
    )
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def engine(transaction_repository, router, dispatcher, clock) -> TransactionEngine:
    return TransactionEngine(
        repository=transaction_repository,
        router=router,
        dispatcher=dispatcher,
        authorization_expiry_hours=168,
        default_currency='CAD',
        clock=clock
    )


@pytest_asyncio.fixture
async def merchant_endpoint(dispatcher):
    """Endpoint for merchant-1 subscribed to every event."""
    return await dispatcher.register_endpoint(
        'merchant-1',
        'http://merchant.test/webhooks',
        [
            'payment.authorized', 'payment.captured', 'payment.voided',
            'payment.refunded', 'payment.declined', 'payment.expired', 'payment.failed',
        ],
        secret='merchant-secret'
    )


@pytest_asyncio.fixture
async def sqlite_db():
    db = Database('sqlite:///:memory:')
    await db.connect()
    await db.init_schema()
    yield db
    await db.disconnect()
