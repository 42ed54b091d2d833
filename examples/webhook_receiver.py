#!/usr/bin/env python3
"""
Example: Webhook Receiver for Merchants

This script demonstrates how a merchant would receive and verify
payment notifications from the payment network.

Usage:
    python webhook_receiver.py --secret YOUR_ENDPOINT_SECRET --port 5000

The script will:
1. Start a local web server
2. Listen for webhook POST requests
3. Verify the HMAC signature against the raw body
4. Ignore events it has already processed (delivery is at-least-once)
5. Display the transaction details
"""

import argparse
import asyncio
import hashlib
import hmac
import json
from datetime import datetime

from aiohttp import web


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify the webhook signature.

    The signature covers the exact request body bytes, so verify before
    parsing and never re-serialize.

    Args:
        body: Raw request body
        signature: Value of the X-Webhook-Signature header
        secret: Your endpoint secret

    Returns:
        True if signature is valid
    """
    # Remove 'sha256=' prefix if present
    if signature.startswith('sha256='):
        signature = signature[7:]

    expected = hmac.new(
        secret.encode('utf-8'),
        body,
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


async def handle_webhook(request: web.Request) -> web.Response:
    """Handle incoming webhook requests."""
    secret = request.app['webhook_secret']
    seen = request.app['seen_event_ids']

    signature = request.headers.get('X-Webhook-Signature', '')
    event_type = request.headers.get('X-Webhook-Event', 'unknown')
    event_id = request.headers.get('X-Webhook-Id', 'unknown')

    print("\n" + "=" * 60)
    print(f"Received webhook at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 60)

    body = await request.read()

    if secret:
        if not verify_signature(body, signature, secret):
            print("SIGNATURE VERIFICATION FAILED - rejecting")
            return web.json_response({"error": "Invalid signature"}, status=401)
        print("Signature verified")
    else:
        print("No secret configured - skipping signature verification")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        print(f"Error parsing body: {e}")
        return web.json_response({"error": "Invalid JSON"}, status=400)

    # Retries reuse the event id; acknowledge duplicates without reprocessing
    if payload.get('id') in seen:
        print(f"Duplicate event {payload.get('id')} - already processed")
        return web.json_response({"status": "duplicate"})
    seen.add(payload.get('id'))

    print(f"\nEvent Type: {event_type}")
    print(f"Event ID: {event_id}")
    print(f"Sent At: {request.headers.get('X-Webhook-Timestamp')}")

    data = payload.get('data', {})
    print("\nTransaction Details:")
    print(f"   Transaction ID: {data.get('transactionId')}")
    print(f"   Merchant ID: {data.get('merchantId')}")
    print(f"   Order ID: {data.get('orderId')}")
    print(f"   Amount: {data.get('amount')} {data.get('currency')}")
    print(f"   Status: {data.get('status')}")
    if data.get('authorizationCode'):
        print(f"   Authorization Code: {data['authorizationCode']}")
    if data.get('declineReason'):
        print(f"   Decline Reason: {data['declineReason']}")
    if data.get('refundId'):
        print(f"   Refund ID: {data['refundId']} (total refunded {data.get('refundedAmount')})")
    if data.get('agentContext'):
        print(f"   Agent: {data['agentContext']}")

    print("\nFull Payload:")
    print(json.dumps(payload, indent=2))

    return web.json_response({"status": "received"})


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({"status": "healthy"})


def create_app(webhook_secret: str) -> web.Application:
    """Create the webhook receiver application."""
    app = web.Application()
    app['webhook_secret'] = webhook_secret
    app['seen_event_ids'] = set()

    app.router.add_post('/webhook', handle_webhook)
    app.router.add_get('/health', handle_health)

    return app


async def main():
    parser = argparse.ArgumentParser(
        description='Webhook receiver for testing payment notifications'
    )
    parser.add_argument(
        '--secret',
        default='',
        help='Endpoint secret for signature verification'
    )
    parser.add_argument(
        '--port',
        type=int,
        default=5000,
        help='Port to listen on (default: 5000)'
    )
    parser.add_argument(
        '--host',
        default='0.0.0.0',
        help='Host to bind to (default: 0.0.0.0)'
    )

    args = parser.parse_args()

    app = create_app(args.secret)

    print("=" * 60)
    print("Webhook Receiver Started")
    print("=" * 60)
    print(f"Listening on: http://{args.host}:{args.port}")
    print(f"Webhook endpoint: http://{args.host}:{args.port}/webhook")
    print(f"Secret configured: {'Yes' if args.secret else 'No'}")
    print("=" * 60)
    print("\nWaiting for webhooks...")

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, args.host, args.port)
    await site.start()

    # Run forever
    await asyncio.Event().wait()


if __name__ == '__main__':
    asyncio.run(main())
