"""Run one webhook retry sweep against the configured database.

Usage: python retry_webhooks.py [max_retries] [batch_size]
"""

import asyncio
import logging
import sys

from payment_service.config import Settings
from payment_service.db.session import create_engine, create_session_factory
from payment_service.services.gateway_client import RazorpayClient
from payment_service.services.notifications import PaymentNotifier
from payment_service.services.payment_service import PaymentService
from payment_service.services.payment_store import PaymentStore
from payment_service.services.receipt_service import ReceiptService
from payment_service.services.receipt_worker import ReceiptWorker
from payment_service.services.webhook_service import WebhookProcessor


async def main(max_retries=None, batch_size=None) -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper())

    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    gateway = RazorpayClient(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        base_url=settings.razorpay_api_url,
        timeout=settings.gateway_timeout_seconds,
    )
    worker = ReceiptWorker(ReceiptService(session_factory, settings))
    payments = PaymentService(
        PaymentStore(session_factory), gateway, worker, settings, notifier=PaymentNotifier(settings)
    )
    processor = WebhookProcessor(session_factory, payments, settings)

    try:
        attempted = await processor.retry_failed_webhooks(max_retries, batch_size)
        receipts = await worker.drain()
        print(f"Retried webhooks: {attempted}, receipts generated: {receipts}")
    finally:
        await gateway.aclose()
        await engine.dispose()


if __name__ == "__main__":
    args = [int(a) for a in sys.argv[1:3]]
    asyncio.run(main(*args))
