#!/usr/bin/env python3
"""
Example: Simulate a payment lifecycle for testing.

Runs authorize -> capture -> partial refund through the transaction engine
and delivers the resulting notifications to a merchant endpoint. By default
a local stub issuer approves tokens starting with 'ctok_valid'; pass
--real-issuer to use the issuers from the environment instead.

Usage:
    python webhook_receiver.py --secret demo-secret --port 5000
    python simulate_payment.py merchant-1 100.50 --webhook-url http://localhost:5000/webhook --secret demo-secret

Arguments:
    merchant_id: The merchant id
    amount: Payment amount (e.g., 100.50)
"""

import argparse
import asyncio
import os
import secrets
import sys

from aiohttp import web

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.job_queue import InMemoryNotificationQueue
from database.repositories import InMemoryEndpointRepository, InMemoryTransactionRepository
from models.issuer import IssuerProvider
from models.notification import WebhookEventType
from services.issuer_registry import IssuerRegistry
from services.notification_dispatcher import NotificationDispatcher
from services.token_router import TokenRouter
from services.transaction_engine import TransactionEngine


async def stub_issuer_handler(request: web.Request) -> web.Response:
    """Approve 'ctok_valid' tokens and every capture, void and refund."""
    operation = request.match_info['operation']
    body = await request.json()

    if operation == 'authorize':
        if body['cardToken'].startswith('ctok_valid'):
            return web.json_response({
                'status': 'approved',
                'authorizationCode': f"AUTH-{secrets.token_hex(4).upper()}"
            })
        return web.json_response({'status': 'declined', 'declineReason': 'Invalid card token'})

    if operation == 'validate-token':
        return web.json_response({'valid': body['cardToken'].startswith('ctok_valid')})

    return web.json_response({'success': True})


async def start_stub_issuer(port: int) -> web.AppRunner:
    app = web.Application()
    app.router.add_post('/api/payment-network/{operation}', stub_issuer_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, 'localhost', port).start()
    return runner


async def simulate_payment(
    merchant_id: str,
    amount: float,
    token: str,
    webhook_url: str,
    secret: str,
    real_issuer: bool,
    issuer_port: int
) -> None:
    """Run one payment through its lifecycle and deliver the notifications."""
    print(f"Simulating payment of {amount} for merchant {merchant_id}")
    print()

    stub_runner = None
    if real_issuer:
        registry = IssuerRegistry()
    else:
        stub_runner = await start_stub_issuer(issuer_port)
        registry = IssuerRegistry(
            providers=[IssuerProvider(
                issuer_id='bsim',
                name='Stub Issuer',
                base_url=f'http://localhost:{issuer_port}',
                api_key='stub-key'
            )],
            default_issuer_id='bsim'
        )

    dispatcher = NotificationDispatcher(
        endpoints=InMemoryEndpointRepository(),
        queue=InMemoryNotificationQueue(),
        retry_delay_ms=0
    )
    router = TokenRouter(registry)
    engine = TransactionEngine(
        repository=InMemoryTransactionRepository(),
        router=router,
        dispatcher=dispatcher
    )

    endpoint = await dispatcher.register_endpoint(
        merchant_id, webhook_url, [e.value for e in WebhookEventType], secret or None
    )
    print(f"Registered endpoint {endpoint.id} -> {endpoint.url}")
    if not secret:
        print(f"  Generated secret: {endpoint.secret}")
    print()

    try:
        result = await engine.authorize(
            merchant_id=merchant_id,
            amount=amount,
            token=token,
            order_id=f"order-{secrets.token_hex(4)}"
        )
        print(f"Authorize: {result.to_dict()}")

        if result.status.value == 'authorized':
            capture = await engine.capture(result.transaction_id)
            print(f"Capture:   {capture.to_dict()}")

            refund = await engine.refund(result.transaction_id, round(amount / 2, 2))
            print(f"Refund:    {refund.to_dict()}")

        await engine.drain_notifications()

        print("\nDelivering notifications...")
        delivered = await dispatcher.process_due()
        print(f"Processed {delivered} delivery attempt(s)")

        print("\nDelivery history:")
        for record in await dispatcher.get_delivery_history(endpoint.id):
            outcome = 'ok' if record.success else f"failed ({record.error})"
            print(f"  {record.event.value} attempt {record.attempt}: {outcome}")

        print("\nEngine stats:")
        for key, value in engine.get_stats().items():
            print(f"  {key}: {value}")
    finally:
        await dispatcher.stop()
        await router.close()
        await registry.close()
        if stub_runner:
            await stub_runner.cleanup()


async def main():
    parser = argparse.ArgumentParser(
        description='Simulate a payment lifecycle for testing'
    )
    parser.add_argument('merchant_id', help='Merchant id')
    parser.add_argument('amount', type=float, help='Payment amount (e.g., 100.50)')
    parser.add_argument(
        '--token',
        default='ctok_valid_token_123',
        help='Card token (default: ctok_valid_token_123)'
    )
    parser.add_argument(
        '--webhook-url',
        default='http://localhost:5000/webhook',
        help='Merchant endpoint URL (default: http://localhost:5000/webhook)'
    )
    parser.add_argument('--secret', default='', help='Endpoint secret')
    parser.add_argument(
        '--real-issuer',
        action='store_true',
        help='Use the issuers configured in the environment'
    )
    parser.add_argument(
        '--issuer-port',
        type=int,
        default=3999,
        help='Port for the stub issuer (default: 3999)'
    )

    args = parser.parse_args()

    await simulate_payment(
        merchant_id=args.merchant_id,
        amount=args.amount,
        token=args.token,
        webhook_url=args.webhook_url,
        secret=args.secret,
        real_issuer=args.real_issuer,
        issuer_port=args.issuer_port
    )


if __name__ == '__main__':
    asyncio.run(main())
