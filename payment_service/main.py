import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from payment_service.api.payment_router import router as payment_router
from payment_service.config import Settings
from payment_service.db.session import create_engine, create_session_factory, init_models
from payment_service.services.gateway_client import RazorpayClient
from payment_service.services.notifications import PaymentNotifier
from payment_service.services.payment_service import PaymentService
from payment_service.services.payment_store import PaymentStore
from payment_service.services.receipt_service import ReceiptService
from payment_service.services.receipt_worker import ReceiptWorker
from payment_service.services.webhook_service import WebhookProcessor


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[RazorpayClient] = None,
    notifier: Optional[PaymentNotifier] = None,
    start_retry_loop: bool = True,
) -> FastAPI:
    """Build the application. ``gateway`` and ``notifier`` may be replaced in tests."""
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_engine(settings.database_url)
        if settings.create_tables:
            await init_models(engine)
        session_factory = create_session_factory(engine)

        client = gateway or RazorpayClient(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            base_url=settings.razorpay_api_url,
            timeout=settings.gateway_timeout_seconds,
        )
        receipt_service = ReceiptService(session_factory, settings)
        receipt_worker = ReceiptWorker(receipt_service)
        receipt_worker.start()

        payment_service = PaymentService(
            PaymentStore(session_factory),
            client,
            receipt_worker,
            settings,
            notifier=notifier if notifier is not None else PaymentNotifier(settings),
        )
        webhook_processor = WebhookProcessor(session_factory, payment_service, settings)

        app.state.settings = settings
        app.state.receipt_service = receipt_service
        app.state.receipt_worker = receipt_worker
        app.state.payment_service = payment_service
        app.state.webhook_processor = webhook_processor

        retry_task = None
        if start_retry_loop:
            retry_task = asyncio.create_task(webhook_processor.run_retry_loop())
        logging.info("Payment service started (prefix %s)", settings.api_prefix)

        try:
            yield
        finally:
            if retry_task is not None:
                retry_task.cancel()
                try:
                    await retry_task
                except asyncio.CancelledError:
                    pass
            await receipt_worker.stop()
            if gateway is None:
                await client.aclose()
            await engine.dispose()
            logging.info("Payment service stopped")

    app = FastAPI(title="Payment Service", lifespan=lifespan)
    app.include_router(payment_router, prefix=f"{settings.api_prefix}/payments", tags=["payments"])

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "payment-service"}

    return app


app = create_app()
