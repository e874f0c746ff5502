import asyncio
from datetime import datetime

import pytest
from sqlalchemy import func, select

from support import (
    SCHOOL_ID,
    build_services,
    fake_pdf,
    payment_entity,
    sign_payment,
    sign_webhook,
    webhook_body,
)

from payment_service.models.payment import PaymentStatus
from payment_service.models.webhook import WebhookEvent
from payment_service.services.errors import InvalidPayloadError, SignatureVerificationError
from payment_service.services.webhook_service import WebhookEnvelope, WebhookEventType


async def count_events(s) -> int:
    async with s.session_factory() as db:
        return (await db.execute(select(func.count(WebhookEvent.id)))).scalar_one()


async def deliver(s, body: bytes):
    return await s.webhooks.process_webhook(sign_webhook(body), body)


async def new_order(s, amount=500):
    order, payment = await s.payments.create_payment_order(SCHOOL_ID, amount)
    return order["id"], payment.id


def test_event_type_parsing():
    assert WebhookEventType.parse("payment.captured") is WebhookEventType.PAYMENT_CAPTURED
    assert WebhookEventType.parse("subscription.charged") is WebhookEventType.UNKNOWN


def test_dedup_key_distinguishes_event_types():
    payment = payment_entity("order_1")
    captured = WebhookEnvelope.model_validate_json(webhook_body("payment.captured", payment))
    order_paid = WebhookEnvelope.model_validate_json(
        webhook_body("order.paid", payment, order={"id": "order_1"})
    )
    assert captured.dedup_key() != order_paid.dedup_key()
    assert captured.dedup_key() == WebhookEnvelope.model_validate_json(
        webhook_body("payment.captured", payment)
    ).dedup_key()

    bare = WebhookEnvelope.model_validate_json(webhook_body("account.updated"))
    assert bare.dedup_key() == "account.updated:acc_test_1700000000_1700000000"


def test_captured_webhook_settles_order(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        s.receipts.renderer = fake_pdf
        order_id, payment_id = await new_order(s)

        record = await deliver(s, webhook_body("payment.captured", payment_entity(order_id)))
        assert record.processed
        assert record.processed_at is not None

        stored = await s.store.get(payment_id)
        assert stored.status == PaymentStatus.PAID
        assert stored.gateway_payment_id == "pay_0001"
        assert stored.payment_method == "card"
        assert stored.paid_at == datetime(2023, 11, 14, 22, 13, 20)
        assert stored.attempts == 0

        await s.worker.drain()
        assert await s.receipts.has_payment_receipt(payment_id)
        assert s.notifier.settled == [payment_id]
        await s.close()

    asyncio.run(scenario())


def test_duplicate_delivery_is_a_noop(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)
        body = webhook_body("payment.captured", payment_entity(order_id))

        first = await deliver(s, body)
        second = await deliver(s, body)

        assert first.id == second.id
        assert second.processed
        assert await count_events(s) == 1
        assert s.notifier.settled == [payment_id]
        assert s.worker.pending == 1
        await s.close()

    asyncio.run(scenario())


def test_invalid_signature_stores_nothing(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)
        body = webhook_body("payment.captured", payment_entity(order_id))

        with pytest.raises(SignatureVerificationError):
            await s.webhooks.process_webhook("f" * 64, body)

        assert await count_events(s) == 0
        assert (await s.store.get(payment_id)).status == PaymentStatus.CREATED
        await s.close()

    asyncio.run(scenario())


def test_malformed_body_is_rejected(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        for body in (b"not json", b'{"event": "payment.captured"}', b"[]"):
            with pytest.raises(InvalidPayloadError):
                await deliver(s, body)
        assert await count_events(s) == 0
        await s.close()

    asyncio.run(scenario())


def test_unknown_event_and_missing_order_are_processed(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)

        unknown = await deliver(s, webhook_body("subscription.charged", payment_entity(order_id)))
        missing = await deliver(s, webhook_body("payment.captured", payment_entity("order_elsewhere")))

        assert unknown.processed and unknown.error_message is None
        assert missing.processed
        assert (await s.store.get(payment_id)).status == PaymentStatus.CREATED
        await s.close()

    asyncio.run(scenario())


def test_authorized_then_failed(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)

        await deliver(s, webhook_body("payment.authorized", payment_entity(order_id, status="authorized")))
        assert (await s.store.get(payment_id)).status == PaymentStatus.ATTEMPTED

        await deliver(
            s,
            webhook_body(
                "payment.failed",
                payment_entity(order_id, status="failed", error_description="Card declined by bank"),
                created_at=1700000100,
            ),
        )
        stored = await s.store.get(payment_id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.failure_reason == "Card declined by bank"
        await s.close()

    asyncio.run(scenario())


def test_failure_event_never_downgrades_paid_order(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)
        await deliver(s, webhook_body("payment.captured", payment_entity(order_id)))

        record = await deliver(
            s,
            webhook_body("payment.failed", payment_entity(order_id, "pay_0009", status="failed")),
        )
        assert record.processed
        stored = await s.store.get(payment_id)
        assert stored.status == PaymentStatus.PAID
        assert stored.gateway_payment_id == "pay_0001"
        await s.close()

    asyncio.run(scenario())


def test_order_paid_requires_payment_entity(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)

        await deliver(s, webhook_body("order.paid", order={"id": order_id, "status": "paid"}))
        assert (await s.store.get(payment_id)).status == PaymentStatus.CREATED

        await deliver(
            s,
            webhook_body("order.paid", payment_entity(order_id), order={"id": order_id, "status": "paid"}),
        )
        stored = await s.store.get(payment_id)
        assert stored.status == PaymentStatus.PAID
        assert stored.gateway_payment_id == "pay_0001"
        await s.close()

    asyncio.run(scenario())


def test_confirmation_and_webhook_converge_in_either_order(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        s.receipts.renderer = fake_pdf

        # client first, webhook second
        first_order, first_id = await new_order(s)
        await s.payments.verify_payment(first_order, "pay_0001", sign_payment(first_order, "pay_0001"))
        await deliver(s, webhook_body("payment.captured", payment_entity(first_order, "pay_0001")))

        # webhook first, client second
        second_order, second_id = await new_order(s)
        await deliver(s, webhook_body("payment.captured", payment_entity(second_order, "pay_0002")))
        await s.payments.verify_payment(second_order, "pay_0002", sign_payment(second_order, "pay_0002"))

        await s.worker.drain()
        for payment_id, gateway_payment_id in ((first_id, "pay_0001"), (second_id, "pay_0002")):
            stored = await s.store.get(payment_id)
            assert stored.status == PaymentStatus.PAID
            assert stored.gateway_payment_id == gateway_payment_id
            assert len(await s.receipts.list_for_order(payment_id)) == 1
        assert sorted(s.notifier.settled) == sorted([first_id, second_id])
        await s.close()

    asyncio.run(scenario())


def test_refund_webhook_sets_partial_then_full(tmp_path):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)
        await deliver(s, webhook_body("payment.captured", payment_entity(order_id)))

        await deliver(
            s,
            webhook_body("payment.refunded", payment_entity(order_id, amount_refunded=20000), created_at=1700000200),
        )
        stored = await s.store.get(payment_id)
        assert stored.status == PaymentStatus.PARTIAL_REFUND
        assert stored.amount_refunded == 20000

        await deliver(
            s,
            webhook_body("payment.refunded", payment_entity(order_id, amount_refunded=50000), created_at=1700000300),
        )
        stored = await s.store.get(payment_id)
        assert stored.status == PaymentStatus.REFUNDED
        assert stored.amount_refunded == 50000
        await s.close()

    asyncio.run(scenario())


def test_handler_failure_is_recorded_and_redelivery_recovers(tmp_path, monkeypatch):
    async def scenario():
        s = await build_services(tmp_path)
        order_id, payment_id = await new_order(s)
        body = webhook_body("payment.captured", payment_entity(order_id))

        original = s.store.get_by_gateway_order_id

        async def unavailable(gateway_order_id):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(s.store, "get_by_gateway_order_id", unavailable)
        with pytest.raises(RuntimeError):
            await deliver(s, body)

        async with s.session_factory() as db:
            record = (await db.execute(select(WebhookEvent))).scalars().one()
        assert not record.processed
        assert record.retry_count == 1
        assert record.error_message == "database unavailable"

        monkeypatch.setattr(s.store, "get_by_gateway_order_id", original)
        retried = await deliver(s, body)
        assert retried.processed
        assert retried.retry_count == 1
        assert (await s.store.get(payment_id)).status == PaymentStatus.PAID
        await s.close()

    asyncio.run(scenario())


def test_retry_sweep_processes_in_batches(tmp_path, monkeypatch):
    async def scenario():
        s = await build_services(tmp_path)
        original_dispatch = s.webhooks.dispatch

        async def broken(envelope):
            raise RuntimeError("handler crashed")

        monkeypatch.setattr(s.webhooks, "dispatch", broken)
        for i in range(15):
            body = webhook_body("payment.captured", payment_entity(f"order_{i}", f"pay_{i}"), created_at=1700000000 + i)
            with pytest.raises(RuntimeError):
                await deliver(s, body)

        monkeypatch.setattr(s.webhooks, "dispatch", original_dispatch)
        assert await s.webhooks.retry_failed_webhooks(max_retries=3, batch_size=10) == 10
        assert await s.webhooks.retry_failed_webhooks(max_retries=3, batch_size=10) == 5
        assert await s.webhooks.retry_failed_webhooks(max_retries=3, batch_size=10) == 0

        async with s.session_factory() as db:
            pending = (
                await db.execute(select(func.count(WebhookEvent.id)).filter(WebhookEvent.processed.is_(False)))
            ).scalar_one()
        assert pending == 0
        await s.close()

    asyncio.run(scenario())


def test_retry_sweep_stops_at_max_retries(tmp_path, monkeypatch):
    async def scenario():
        s = await build_services(tmp_path)

        async def broken(envelope):
            raise RuntimeError("handler crashed")

        monkeypatch.setattr(s.webhooks, "dispatch", broken)
        body = webhook_body("payment.captured", payment_entity("order_x"))
        with pytest.raises(RuntimeError):
            await deliver(s, body)

        assert await s.webhooks.retry_failed_webhooks(max_retries=3) == 1
        assert await s.webhooks.retry_failed_webhooks(max_retries=3) == 1
        assert await s.webhooks.retry_failed_webhooks(max_retries=3) == 0

        async with s.session_factory() as db:
            record = (await db.execute(select(WebhookEvent))).scalars().one()
        assert record.retry_count == 3
        assert not record.processed

        # exhausted events are not re-run on redelivery either
        again = await deliver(s, body)
        assert again.retry_count == 3
        await s.close()

    asyncio.run(scenario())
