"""Gateway webhook ingestion and reconciliation.

Client confirmation can be skipped entirely (closed tab, dropped network), so
webhooks must bring an order to its final state on their own. Every inbound
event is logged once under a derived dedup key, dispatched to an idempotent
handler, and left eligible for the retry sweep if handling fails.
"""

import asyncio
import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_service.config import Settings
from payment_service.models.payment import PaymentOrder, PaymentStatus
from payment_service.models.webhook import WebhookEvent
from payment_service.services.errors import InvalidPayloadError, SignatureVerificationError
from payment_service.services.payment_service import PaymentService
from payment_service.services.signature import verify_webhook_signature


class WebhookEventType(str, enum.Enum):
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    ORDER_PAID = "order.paid"
    PAYMENT_REFUNDED = "payment.refunded"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "WebhookEventType":
        try:
            event_type = cls(value)
        except ValueError:
            return cls.UNKNOWN
        return event_type


class EntityWrapper(BaseModel):
    entity: Dict[str, Any] = {}


class EventPayload(BaseModel):
    payment: Optional[EntityWrapper] = None
    order: Optional[EntityWrapper] = None
    refund: Optional[EntityWrapper] = None


class WebhookEnvelope(BaseModel):
    account_id: str = ""
    created_at: int
    entity: str = "event"
    event: str
    contains: List[str] = []
    payload: EventPayload = EventPayload()

    @property
    def event_type(self) -> WebhookEventType:
        return WebhookEventType.parse(self.event)

    @property
    def payment_entity(self) -> Dict[str, Any]:
        return self.payload.payment.entity if self.payload.payment else {}

    @property
    def order_entity(self) -> Dict[str, Any]:
        return self.payload.order.entity if self.payload.order else {}

    def dedup_key(self) -> str:
        """Key identifying this logical event across redeliveries.

        The gateway has no reliable event id of its own, so the key is built
        from the inner entity id and the event timestamp. The event name is
        part of the key because one payment produces several events.
        """
        base_id = (
            self.payment_entity.get("id")
            or self.order_entity.get("id")
            or f"{self.account_id}_{self.created_at}"
        )
        # Intentionally finer than "{entity_id}_{created_at}" so sibling events stay apart
        return f"{self.event}:{base_id}_{self.created_at}"


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


Handler = Callable[[WebhookEnvelope], Awaitable[None]]


class WebhookProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        payment_service: PaymentService,
        settings: Settings,
    ):
        self._session_factory = session_factory
        self.payments = payment_service
        self.store = payment_service.store
        self.settings = settings
        self._handlers: Dict[WebhookEventType, Handler] = {
            WebhookEventType.PAYMENT_AUTHORIZED: self.handle_payment_authorized,
            WebhookEventType.PAYMENT_CAPTURED: self.handle_payment_captured,
            WebhookEventType.PAYMENT_FAILED: self.handle_payment_failed,
            WebhookEventType.ORDER_PAID: self.handle_order_paid,
            WebhookEventType.PAYMENT_REFUNDED: self.handle_payment_refunded,
            WebhookEventType.UNKNOWN: self.handle_unknown,
        }

    # ---------- inbound ----------

    async def process_webhook(self, signature: str, raw_body: bytes) -> WebhookEvent:
        """Verify, log and handle one delivery.

        Raises :class:`SignatureVerificationError` before anything is stored,
        and re-raises handler errors after recording them so the gateway
        redelivers.
        """
        if not verify_webhook_signature(raw_body, signature, self.settings.razorpay_webhook_secret):
            logging.warning("Rejected webhook with invalid signature")
            raise SignatureVerificationError("Invalid webhook signature")

        data, envelope = parse_envelope(raw_body)
        record, created = await self.store_event(envelope, data)

        if record.processed:
            logging.info("Duplicate webhook %s ignored", record.gateway_event_id)
            return record
        if not created and record.retry_count >= self.settings.webhook_max_retries:
            logging.warning(
                "Webhook %s exhausted %s retries; redelivery ignored",
                record.gateway_event_id,
                record.retry_count,
            )
            return record

        await self._run(record, envelope)
        return await self.get_event(record.id)

    async def get_event(self, record_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as db:
            return await db.get(WebhookEvent, record_id)

    async def store_event(self, envelope: WebhookEnvelope, data: Optional[Dict[str, Any]] = None):
        """Insert the event log row; returns ``(record, created)``."""
        key = envelope.dedup_key()
        async with self._session_factory() as db:
            result = await db.execute(select(WebhookEvent).filter_by(gateway_event_id=key))
            existing = result.scalars().first()
            if existing:
                return existing, False

            record = WebhookEvent(
                gateway_event_id=key,
                event=envelope.event,
                account_id=envelope.account_id,
                entity=envelope.entity,
                payload=data if data is not None else envelope.model_dump(mode="json"),
            )
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                # A concurrent delivery of the same event won the insert
                await db.rollback()
                result = await db.execute(select(WebhookEvent).filter_by(gateway_event_id=key))
                return result.scalars().one(), False
            await db.refresh(record)
            return record, True

    async def _run(self, record: WebhookEvent, envelope: WebhookEnvelope) -> None:
        try:
            await self.dispatch(envelope)
        except Exception as e:
            logging.exception("Webhook %s (%s) failed", record.gateway_event_id, envelope.event)
            await self.mark_failed(record.id, str(e) or type(e).__name__)
            raise
        await self.mark_processed(record.id)

    async def dispatch(self, envelope: WebhookEnvelope) -> None:
        await self._handlers[envelope.event_type](envelope)

    async def mark_processed(self, record_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == record_id)
                .values(processed=True, processed_at=datetime.utcnow(), error_message=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def mark_failed(self, record_id: str, error_message: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == record_id)
                .values(
                    error_message=error_message,
                    retry_count=WebhookEvent.retry_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # ---------- handlers ----------

    async def _find_order(self, gateway_order_id: Optional[str], event: str) -> Optional[PaymentOrder]:
        if not gateway_order_id:
            logging.info("Webhook %s carries no order id; skipped", event)
            return None
        order = await self.store.get_by_gateway_order_id(gateway_order_id)
        if order is None:
            logging.info("Payment record not found for order %s (%s); skipped", gateway_order_id, event)
        return order

    async def handle_payment_authorized(self, envelope: WebhookEnvelope) -> None:
        payment = envelope.payment_entity
        order = await self._find_order(payment.get("order_id"), envelope.event)
        if order is None:
            return
        if await self.store.mark_attempted(order.id, payment.get("id"), payment.get("method"), payment):
            logging.info("Payment %s authorized for order %s", payment.get("id"), order.gateway_order_id)

    async def _settle(self, order: PaymentOrder, payment: Dict[str, Any], event: str) -> None:
        won = await self.store.mark_paid(
            order.id,
            payment["id"],
            method=payment.get("method"),
            details=payment,
            paid_at=_from_timestamp(payment.get("created_at")),
        )
        if not won:
            logging.info("[WEBHOOK] Order %s already settled; %s ignored", order.gateway_order_id, event)
            return
        logging.info("[WEBHOOK] Order %s marked PAID by %s", order.gateway_order_id, event)
        await self.payments.on_payment_settled(await self.store.get(order.id))

    async def handle_payment_captured(self, envelope: WebhookEnvelope) -> None:
        payment = envelope.payment_entity
        order = await self._find_order(payment.get("order_id"), envelope.event)
        if order is None or order.status == PaymentStatus.PAID:
            return
        await self._settle(order, payment, envelope.event)

    async def handle_order_paid(self, envelope: WebhookEnvelope) -> None:
        order_entity = envelope.order_entity
        order = await self._find_order(order_entity.get("id"), envelope.event)
        if order is None or order.status == PaymentStatus.PAID:
            return
        payment = envelope.payment_entity
        if not payment.get("id"):
            # PAID always carries a payment id; payment.captured will settle it
            logging.info("order.paid for %s without payment entity; waiting for capture", order.gateway_order_id)
            return
        await self._settle(order, payment, envelope.event)

    async def handle_payment_failed(self, envelope: WebhookEnvelope) -> None:
        payment = envelope.payment_entity
        order = await self._find_order(payment.get("order_id"), envelope.event)
        if order is None:
            return
        reason = payment.get("error_description") or "Payment failed"
        if not await self.payments.handle_payment_failure(order.gateway_order_id, reason):
            logging.info("Order %s is %s; failure event ignored", order.gateway_order_id, order.status.value)

    async def handle_payment_refunded(self, envelope: WebhookEnvelope) -> None:
        payment = envelope.payment_entity
        order = await self._find_order(payment.get("order_id"), envelope.event)
        if order is None:
            return
        refunded = int(payment.get("amount_refunded") or 0)
        original = int(payment.get("amount") or order.amount)
        status = PaymentStatus.REFUNDED if refunded >= original else PaymentStatus.PARTIAL_REFUND
        if await self.store.apply_refund(order.id, refunded, status):
            logging.info("Order %s refund reconciled: %s", order.gateway_order_id, status.value)

    async def handle_unknown(self, envelope: WebhookEnvelope) -> None:
        logging.info("Unhandled webhook event: %s", envelope.event)

    # ---------- retry sweep ----------

    async def retry_failed_webhooks(
        self,
        max_retries: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> int:
        """Replay the oldest unprocessed events. Returns how many were attempted."""
        max_retries = self.settings.webhook_max_retries if max_retries is None else max_retries
        batch_size = self.settings.webhook_retry_batch_size if batch_size is None else batch_size

        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookEvent)
                .filter(WebhookEvent.processed.is_(False), WebhookEvent.retry_count < max_retries)
                .order_by(WebhookEvent.created_at.asc())
                .limit(batch_size)
            )
            pending = list(result.scalars().all())

        for record in pending:
            try:
                envelope = WebhookEnvelope.model_validate(record.payload)
            except ValidationError:
                logging.error("Stored payload of webhook %s is not a valid event", record.id)
                await self.mark_failed(record.id, "Stored payload is not a valid event")
                continue
            try:
                await self._run(record, envelope)
                logging.info("Retry successful for webhook %s", record.id)
            except Exception:
                logging.error("Retry failed for webhook %s", record.id)
        return len(pending)

    async def run_retry_loop(self, interval: Optional[float] = None) -> None:
        interval = self.settings.webhook_retry_interval_seconds if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.retry_failed_webhooks()
            except Exception:
                logging.exception("Webhook retry sweep failed")


def parse_envelope(raw_body: bytes) -> Tuple[Dict[str, Any], WebhookEnvelope]:
    try:
        data = json.loads(raw_body)
        return data, WebhookEnvelope.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise InvalidPayloadError("Malformed webhook payload") from e
