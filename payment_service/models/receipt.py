import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String, text

from payment_service.db.base_class import Base


class ReceiptType(str, enum.Enum):
    PAYMENT_RECEIPT = "PAYMENT_RECEIPT"
    REFUND_RECEIPT = "REFUND_RECEIPT"
    CANCELLATION_RECEIPT = "CANCELLATION_RECEIPT"


class ReceiptLog(Base):
    __tablename__ = "receipt_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_order_id = Column(
        String(36),
        ForeignKey("payment_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    receipt_type = Column(Enum(ReceiptType, native_enum=False, length=32), nullable=False)
    receipt_number = Column(String(64), nullable=False, unique=True)

    file_path = Column(String(512), nullable=False)
    file_url = Column(String(512), nullable=True)
    file_size = Column(Integer, nullable=False, default=0)

    download_count = Column(Integer, nullable=False, default=0)
    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_downloaded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one payment receipt per order; refund receipts are one per refund
        Index(
            "uq_receipt_logs_payment_receipt",
            "payment_order_id",
            unique=True,
            sqlite_where=text("receipt_type = 'PAYMENT_RECEIPT'"),
            postgresql_where=text("receipt_type = 'PAYMENT_RECEIPT'"),
        ),
    )
