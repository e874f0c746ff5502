"""Payment orchestration: order creation, confirmation, refunds and reporting."""

import logging
import secrets
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union

from payment_service.config import Settings
from payment_service.models.payment import (
    PAYABLE_STATUSES,
    REFUNDABLE_STATUSES,
    SETTLED_STATUSES,
    PaymentOrder,
    PaymentStatus,
)
from payment_service.models.receipt import ReceiptType
from payment_service.services.errors import (
    OrderPersistenceError,
    PaymentConflictError,
    PaymentNotFoundError,
    RefundNotAllowedError,
    SignatureVerificationError,
)
from payment_service.services.gateway_client import RazorpayClient
from payment_service.services.notifications import PaymentNotifier
from payment_service.services.payment_store import PaymentStore
from payment_service.services.receipt_worker import ReceiptJob, ReceiptWorker
from payment_service.services.signature import verify_payment_signature

Amount = Union[int, float, str, Decimal]


def to_minor_units(amount: Amount) -> int:
    """Convert a positive major-unit amount (rupees) into minor units (paise)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    minor = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor <= 0:
        raise ValueError(f"Amount must be at least one minor unit, got {amount!r}")
    return minor


def generate_receipt_reference(school_id: str) -> str:
    # Millisecond timestamp plus a random suffix keeps concurrent calls apart
    return f"RCP_{int(time.time() * 1000)}_{school_id[:8]}_{secrets.token_hex(3).upper()}"


class PaymentService:
    def __init__(
        self,
        store: PaymentStore,
        gateway: RazorpayClient,
        receipt_worker: ReceiptWorker,
        settings: Settings,
        notifier: Optional[PaymentNotifier] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.receipt_worker = receipt_worker
        self.settings = settings
        self.notifier = notifier

    async def create_payment_order(
        self,
        school_id: str,
        amount: Amount,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], PaymentOrder]:
        """Create the gateway order and its local CREATED record.

        If the gateway accepts the order but the local insert fails, the
        gateway order is orphaned and :class:`OrderPersistenceError` is raised.
        """
        amount_minor = to_minor_units(amount)
        receipt = generate_receipt_reference(school_id)

        order = await self.gateway.create_order(
            amount_minor,
            self.settings.currency,
            receipt,
            notes={"schoolId": school_id, "purpose": "school_registration", **(notes or {})},
        )

        try:
            payment = await self.store.create(
                school_id=school_id,
                gateway_order_id=order["id"],
                amount=int(order.get("amount", amount_minor)),
                currency=order.get("currency", self.settings.currency),
                status=PaymentStatus.CREATED,
                attempts=0,
                receipt=receipt,
                notes=notes or {},
            )
        except Exception as e:
            logging.exception("Gateway order %s created but not stored", order.get("id"))
            raise OrderPersistenceError(
                "Failed to store payment order", gateway_order_id=order.get("id")
            ) from e

        logging.info(
            "Created payment order %s for school %s (%s minor units)",
            payment.gateway_order_id,
            school_id,
            payment.amount,
        )
        return order, payment

    def _existing_settlement(self, payment: PaymentOrder, gateway_payment_id: str) -> Optional[PaymentOrder]:
        """Return the order if it is already settled by this payment.

        Raises when the order was settled by another payment or cancelled;
        returns None while the order can still be paid.
        """
        if payment.status in PAYABLE_STATUSES:
            return None
        if payment.status in SETTLED_STATUSES and payment.gateway_payment_id == gateway_payment_id:
            return payment
        logging.warning(
            "Confirmation for order %s rejected: status %s, stored payment %s",
            payment.gateway_order_id,
            payment.status.value,
            payment.gateway_payment_id,
        )
        raise PaymentConflictError(
            f"Order {payment.gateway_order_id} is already {payment.status.value}"
        )

    async def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> PaymentOrder:
        """Confirm a client-reported payment.

        Safe to repeat: a second call for the same order and payment returns
        the stored record without side effects.
        """
        if not verify_payment_signature(
            gateway_order_id, gateway_payment_id, signature, self.settings.razorpay_key_secret
        ):
            logging.warning("Invalid payment signature for order %s", gateway_order_id)
            raise SignatureVerificationError("Invalid payment signature")

        payment = await self.store.get_by_gateway_order_id(gateway_order_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment record not found for order {gateway_order_id}")

        existing = self._existing_settlement(payment, gateway_payment_id)
        if existing is not None:
            logging.info("Order %s already settled by %s", gateway_order_id, gateway_payment_id)
            return existing

        try:
            details = await self.gateway.fetch_payment(gateway_payment_id)
            won = await self.store.mark_paid(
                payment.id,
                gateway_payment_id,
                method=details.get("method"),
                details=details,
                signature=signature,
                count_attempt=True,
            )
        except Exception as e:
            await self._mark_failed_quietly(gateway_order_id, str(e) or type(e).__name__)
            raise

        current = await self.store.get(payment.id)
        if not won:
            # A webhook settled the order between our read and our update
            return self._existing_settlement(current, gateway_payment_id) or current

        logging.info("Payment %s verified for order %s", gateway_payment_id, gateway_order_id)
        await self.on_payment_settled(current)
        return current

    async def _mark_failed_quietly(self, gateway_order_id: str, reason: str) -> None:
        try:
            await self.store.mark_failed(gateway_order_id, reason)
        except Exception:
            logging.exception("Could not mark order %s as failed", gateway_order_id)

    async def handle_payment_failure(self, gateway_order_id: str, reason: str) -> bool:
        updated = await self.store.mark_failed(gateway_order_id, reason)
        if updated:
            logging.info("Order %s marked FAILED: %s", gateway_order_id, reason)
        return updated

    def queue_payment_receipt(self, payment: PaymentOrder) -> None:
        self.receipt_worker.submit(ReceiptJob(payment.id, ReceiptType.PAYMENT_RECEIPT))

    async def on_payment_settled(self, payment: PaymentOrder) -> None:
        """Receipt and notifications after a PAID transition. Never raises."""
        try:
            if not await self.receipt_worker.receipt_service.has_payment_receipt(payment.id):
                self.queue_payment_receipt(payment)
        except Exception:
            logging.exception("Could not queue payment receipt for %s", payment.id)

        if self.notifier is not None:
            try:
                await self.notifier.payment_settled(payment)
            except Exception:
                logging.exception("Post-payment notification failed for %s", payment.id)

    async def create_refund(
        self,
        payment_order_id: str,
        amount: Optional[Amount] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], PaymentOrder]:
        """Refund a paid order fully (no amount) or partially (amount in major units)."""
        payment = await self.store.get(payment_order_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_order_id} not found")
        if not payment.gateway_payment_id or payment.status not in REFUNDABLE_STATUSES:
            raise RefundNotAllowedError(f"Payment {payment_order_id} is not paid")

        remaining = payment.amount - payment.amount_refunded
        amount_minor = to_minor_units(amount) if amount is not None else None
        if amount_minor is not None and amount_minor > remaining:
            raise RefundNotAllowedError("Refund amount exceeds the refundable balance")

        refund = await self.gateway.create_refund(payment.gateway_payment_id, amount_minor, notes)

        refunded_total = payment.amount_refunded + (amount_minor if amount_minor is not None else remaining)
        status = (
            PaymentStatus.PARTIAL_REFUND if refunded_total < payment.amount else PaymentStatus.REFUNDED
        )
        if not await self.store.apply_refund(payment.id, refunded_total, status):
            logging.warning("Refund status for %s was already updated elsewhere", payment.id)

        updated = await self.store.get(payment.id)
        logging.info("Refund %s created for %s, status %s", refund.get("id"), payment.id, updated.status.value)

        self.receipt_worker.submit(ReceiptJob(payment.id, ReceiptType.REFUND_RECEIPT, refund))
        return refund, updated

    async def get_payment_by_order_id(self, gateway_order_id: str) -> Optional[PaymentOrder]:
        return await self.store.get_by_gateway_order_id(gateway_order_id)

    async def get_payments_by_school_id(
        self,
        school_id: str,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[PaymentOrder], int]:
        return await self.store.list_for_school(school_id, status=status, page=page, limit=limit)

    async def get_latest_school_payment(self, school_id: str) -> Optional[PaymentOrder]:
        return await self.store.latest_for_school(school_id)

    async def get_payment_stats(self, school_id: Optional[str] = None) -> Dict[str, Any]:
        raw = await self.store.stats(school_id)
        total = raw["total_payments"]
        successful = raw["successful_payments"]
        successful_amount = raw["successful_amount_minor"] / 100
        return {
            "total_payments": total,
            "successful_payments": successful,
            "failed_payments": raw["failed_payments"],
            "total_amount": raw["total_amount_minor"] / 100,
            "successful_amount": successful_amount,
            "success_rate": round(successful / total * 100, 2) if total else 0,
            "average_amount": round(successful_amount / successful, 2) if successful else 0,
            "payment_methods": raw["payment_methods"],
        }
