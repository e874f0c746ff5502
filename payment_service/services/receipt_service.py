"""PDF receipts for settled payments and refunds.

Receipts only ever read payment state. A failure here is the caller's to log;
it never changes the status of the order it describes.
"""

import asyncio
import logging
import os
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_service.config import Settings
from payment_service.models.payment import SETTLED_STATUSES, PaymentOrder
from payment_service.models.receipt import ReceiptLog, ReceiptType
from payment_service.services.errors import (
    PaymentError,
    PaymentNotFoundError,
    ReceiptNotFoundError,
)

Renderer = Callable[[str, str, Sequence[Tuple[str, str]], Settings], int]

METHOD_LABELS = {
    "card": "Credit/Debit Card",
    "netbanking": "Net Banking",
    "upi": "UPI",
    "wallet": "Digital Wallet",
    "emi": "EMI",
    "paylater": "Pay Later",
    "bank_transfer": "Bank Transfer",
}


def format_amount(amount_minor: int, currency: str = "INR") -> str:
    return f"{currency} {amount_minor / 100:,.2f}"


def render_receipt_pdf(
    file_path: str,
    title: str,
    rows: Sequence[Tuple[str, str]],
    settings: Settings,
) -> int:
    """Write a single-page receipt to ``file_path`` and return its size in bytes."""
    styles = getSampleStyleSheet()
    doc = SimpleDocTemplate(
        file_path,
        pagesize=A4,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        leftMargin=2 * cm,
        rightMargin=2 * cm,
        title=title,
        author=settings.company_name,
    )

    table = Table([[label, value] for label, value in rows], colWidths=[6 * cm, 10 * cm])
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
            ]
        )
    )

    story = [
        Paragraph(settings.company_name, styles["Title"]),
        Paragraph(settings.company_address, styles["Normal"]),
        Paragraph(f"{settings.company_email} | {settings.company_phone}", styles["Normal"]),
        Spacer(1, 0.8 * cm),
        Paragraph(title, styles["Heading2"]),
        Spacer(1, 0.4 * cm),
        table,
        Spacer(1, 0.8 * cm),
        Paragraph("This is a computer generated receipt.", styles["Italic"]),
    ]
    doc.build(story)
    return os.path.getsize(file_path)


def _receipt_number(prefix: str, order_id: str) -> str:
    return f"{prefix}_{order_id[:8]}_{int(time.time() * 1000)}_{secrets.token_hex(2).upper()}"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y, %H:%M UTC") if value else "N/A"


def payment_receipt_rows(order: PaymentOrder, receipt_number: str) -> List[Tuple[str, str]]:
    return [
        ("Receipt number", receipt_number),
        ("School ID", order.school_id),
        ("Order ID", order.gateway_order_id),
        ("Payment ID", order.gateway_payment_id or "N/A"),
        ("Amount", format_amount(order.amount, order.currency)),
        ("Payment method", METHOD_LABELS.get(order.payment_method, order.payment_method or "N/A")),
        ("Order date", _date(order.created_at)),
        ("Paid on", _date(order.paid_at)),
        ("Merchant reference", order.receipt),
    ]


def refund_receipt_rows(
    order: PaymentOrder, refund: Dict[str, Any], receipt_number: str
) -> List[Tuple[str, str]]:
    refund_amount = refund.get("amount") or order.amount
    created = refund.get("created_at")
    refunded_on = datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.utcnow()
    return [
        ("Receipt number", receipt_number),
        ("School ID", order.school_id),
        ("Order ID", order.gateway_order_id),
        ("Payment ID", order.gateway_payment_id or "N/A"),
        ("Refund ID", refund.get("id", "N/A")),
        ("Original amount", format_amount(order.amount, order.currency)),
        ("Refund amount", format_amount(refund_amount, order.currency)),
        ("Refund status", str(refund.get("status", "processed"))),
        ("Refunded on", _date(refunded_on)),
    ]


class ReceiptService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings,
        renderer: Renderer = render_receipt_pdf,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self.renderer = renderer

    async def get_payment_receipt(self, payment_order_id: str) -> Optional[ReceiptLog]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReceiptLog).filter_by(
                    payment_order_id=payment_order_id,
                    receipt_type=ReceiptType.PAYMENT_RECEIPT,
                )
            )
            return result.scalars().first()

    async def has_payment_receipt(self, payment_order_id: str) -> bool:
        return await self.get_payment_receipt(payment_order_id) is not None

    async def list_for_order(self, payment_order_id: str) -> List[ReceiptLog]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReceiptLog)
                .filter_by(payment_order_id=payment_order_id)
                .order_by(ReceiptLog.generated_at.desc())
            )
            return list(result.scalars().all())

    async def get(self, receipt_id: str) -> Optional[ReceiptLog]:
        async with self._session_factory() as db:
            return await db.get(ReceiptLog, receipt_id)

    async def record_download(self, receipt_id: str) -> ReceiptLog:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ReceiptLog)
                .where(ReceiptLog.id == receipt_id)
                .values(
                    download_count=ReceiptLog.download_count + 1,
                    last_downloaded_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 0:
                raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
            return await db.get(ReceiptLog, receipt_id, populate_existing=True)

    async def _load_settled_order(self, payment_order_id: str) -> PaymentOrder:
        async with self._session_factory() as db:
            order = await db.get(PaymentOrder, payment_order_id)
        if order is None:
            raise PaymentNotFoundError(f"Payment {payment_order_id} not found")
        if order.status not in SETTLED_STATUSES:
            raise PaymentError(f"Payment {payment_order_id} is {order.status.value}, not settled")
        return order

    async def _render(self, receipt_number: str, title: str, rows) -> Tuple[str, int]:
        storage = Path(self._settings.receipt_storage_path)
        storage.mkdir(parents=True, exist_ok=True)
        file_path = str(storage / f"{receipt_number}.pdf")
        # reportlab is blocking; keep it off the event loop
        file_size = await asyncio.to_thread(self.renderer, file_path, title, rows, self._settings)
        return file_path, file_size

    def _file_url(self, receipt_number: str) -> Optional[str]:
        if not self._settings.receipt_base_url:
            return None
        return f"{self._settings.receipt_base_url.rstrip('/')}/{receipt_number}.pdf"

    async def _store(self, receipt: ReceiptLog) -> ReceiptLog:
        async with self._session_factory() as db:
            db.add(receipt)
            await db.commit()
            await db.refresh(receipt)
        return receipt

    async def generate_payment_receipt(self, payment_order_id: str) -> ReceiptLog:
        """Generate the payment receipt for an order, or return the one that exists."""
        existing = await self.get_payment_receipt(payment_order_id)
        if existing:
            return existing

        order = await self._load_settled_order(payment_order_id)
        receipt_number = _receipt_number("RCP", order.id)
        file_path, file_size = await self._render(
            receipt_number, "Payment Receipt", payment_receipt_rows(order, receipt_number)
        )

        try:
            receipt = await self._store(
                ReceiptLog(
                    payment_order_id=order.id,
                    receipt_type=ReceiptType.PAYMENT_RECEIPT,
                    receipt_number=receipt_number,
                    file_path=file_path,
                    file_url=self._file_url(receipt_number),
                    file_size=file_size,
                )
            )
        except IntegrityError:
            # Another worker stored the payment receipt first
            logging.info("Payment receipt for %s already recorded", order.id)
            Path(file_path).unlink(missing_ok=True)
            existing = await self.get_payment_receipt(order.id)
            if existing is None:
                raise
            return existing

        logging.info("Generated payment receipt %s for %s", receipt_number, order.id)
        return receipt

    async def generate_refund_receipt(self, payment_order_id: str, refund: Dict[str, Any]) -> ReceiptLog:
        order = await self._load_settled_order(payment_order_id)
        receipt_number = _receipt_number("REF", order.id)
        file_path, file_size = await self._render(
            receipt_number, "Refund Receipt", refund_receipt_rows(order, refund, receipt_number)
        )
        receipt = await self._store(
            ReceiptLog(
                payment_order_id=order.id,
                receipt_type=ReceiptType.REFUND_RECEIPT,
                receipt_number=receipt_number,
                file_path=file_path,
                file_url=self._file_url(receipt_number),
                file_size=file_size,
            )
        )
        logging.info("Generated refund receipt %s for %s", receipt_number, order.id)
        return receipt
