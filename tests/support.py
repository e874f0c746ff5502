import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.append(str(Path(__file__).resolve().parents[1]))

from payment_service.config import Settings
from payment_service.db.session import create_engine, create_session_factory, init_models
from payment_service.services.errors import GatewayError
from payment_service.services.payment_service import PaymentService
from payment_service.services.payment_store import PaymentStore
from payment_service.services.receipt_service import ReceiptService
from payment_service.services.receipt_worker import ReceiptWorker
from payment_service.services.signature import compute_signature
from payment_service.services.webhook_service import WebhookProcessor

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
SCHOOL_ID = "3f6c2a8e-5b1d-4c7a-9e2f-8d4b6a1c0e93"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        receipt_storage_path=str(tmp_path / "receipts"),
    )
    values.update(overrides)
    return Settings(**values)


class FakeGateway:
    """In-memory stand-in for :class:`RazorpayClient`."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.fetch_calls = 0
        self.fail_fetch = False
        self.fail_create = False

    async def create_order(self, amount_minor, currency, receipt, notes=None):
        if self.fail_create:
            raise GatewayError("Authentication failed", status_code=401)
        order_id = f"order_{len(self.orders) + 1:04d}"
        order = {
            "id": order_id,
            "entity": "order",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }
        self.orders[order_id] = order
        return order

    async def fetch_payment(self, payment_id):
        self.fetch_calls += 1
        if self.fail_fetch:
            raise GatewayError("Gateway timeout on GET /payments")
        return self.payments.get(
            payment_id,
            {"id": payment_id, "entity": "payment", "method": "upi", "status": "captured"},
        )

    async def create_refund(self, payment_id, amount_minor=None, notes=None):
        refund = {
            "id": f"rfnd_{len(self.refunds) + 1:04d}",
            "entity": "refund",
            "payment_id": payment_id,
            "amount": amount_minor,
            "status": "processed",
            "notes": notes or {},
            "created_at": int(time.time()),
        }
        self.refunds.append(refund)
        return refund

    async def aclose(self):
        pass


class RecordingNotifier:
    def __init__(self):
        self.settled: List[str] = []

    async def payment_settled(self, order):
        self.settled.append(order.id)


@dataclass
class Services:
    engine: Any
    session_factory: Any
    settings: Settings
    gateway: FakeGateway
    notifier: RecordingNotifier
    store: PaymentStore
    receipts: ReceiptService
    worker: ReceiptWorker
    payments: PaymentService
    webhooks: WebhookProcessor

    async def close(self):
        await self.engine.dispose()


async def build_services(tmp_path, **overrides) -> Services:
    settings = make_settings(tmp_path, **overrides)
    engine = create_engine(settings.database_url)
    await init_models(engine)
    session_factory = create_session_factory(engine)

    gateway = FakeGateway()
    notifier = RecordingNotifier()
    store = PaymentStore(session_factory)
    receipts = ReceiptService(session_factory, settings)
    worker = ReceiptWorker(receipts)
    payments = PaymentService(store, gateway, worker, settings, notifier=notifier)
    webhooks = WebhookProcessor(session_factory, payments, settings)
    return Services(
        engine, session_factory, settings, gateway, notifier,
        store, receipts, worker, payments, webhooks,
    )


def sign_payment(order_id: str, payment_id: str) -> str:
    return compute_signature(f"{order_id}|{payment_id}", KEY_SECRET)


def sign_webhook(body: bytes) -> str:
    return compute_signature(body, WEBHOOK_SECRET)


def webhook_body(
    event: str,
    payment: Optional[Dict[str, Any]] = None,
    order: Optional[Dict[str, Any]] = None,
    created_at: int = 1700000000,
) -> bytes:
    payload: Dict[str, Any] = {}
    contains = []
    if payment is not None:
        payload["payment"] = {"entity": payment}
        contains.append("payment")
    if order is not None:
        payload["order"] = {"entity": order}
        contains.append("order")
    return json.dumps(
        {
            "entity": "event",
            "account_id": "acc_test",
            "event": event,
            "contains": contains,
            "payload": payload,
            "created_at": created_at,
        }
    ).encode()


def payment_entity(order_id: str, payment_id: str = "pay_0001", **extra) -> Dict[str, Any]:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "amount": 50000,
        "currency": "INR",
        "status": "captured",
        "order_id": order_id,
        "method": "card",
        "created_at": 1700000000,
    }
    entity.update(extra)
    return entity


def fake_pdf(file_path, title, rows, settings) -> int:
    Path(file_path).write_bytes(b"%PDF-1.4\n% test receipt\n")
    return Path(file_path).stat().st_size


def broken_pdf(file_path, title, rows, settings) -> int:
    raise OSError("disk full")
