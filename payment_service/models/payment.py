# payment_service/models/payment.py
import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text

from payment_service.db.base_class import Base


class PaymentStatus(str, enum.Enum):
    CREATED = "CREATED"
    ATTEMPTED = "ATTEMPTED"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


# Statuses a confirmation (client verify or captured webhook) may move to PAID.
PAYABLE_STATUSES = (PaymentStatus.CREATED, PaymentStatus.ATTEMPTED, PaymentStatus.FAILED)
# Statuses reached only after the money was actually captured.
SETTLED_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND, PaymentStatus.REFUNDED)
REFUNDABLE_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND)


def _new_id() -> str:
    return str(uuid.uuid4())


class PaymentOrder(Base):
    __tablename__ = "payment_orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    school_id = Column(String(64), nullable=False, index=True)

    # Assigned by the gateway when the order is created; never changes
    gateway_order_id = Column(String(64), nullable=False, unique=True, index=True)
    # Set once on confirmation, stable afterwards
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    gateway_signature = Column(String(128), nullable=True)

    # Minor units (paise)
    amount = Column(Integer, nullable=False)
    amount_refunded = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="INR")

    status = Column(
        Enum(PaymentStatus, native_enum=False, length=20),
        nullable=False,
        default=PaymentStatus.CREATED,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)

    receipt = Column(String(64), nullable=False, unique=True)
    notes = Column(JSON, nullable=False, default=dict)

    payment_method = Column(String(32), nullable=True)
    payment_method_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_orders_school_created", "school_id", "created_at"),
    )

    @property
    def amount_major(self) -> float:
        return self.amount / 100
