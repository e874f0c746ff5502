import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from payment_service.models.payment import PaymentOrder, PaymentStatus
from payment_service.models.receipt import ReceiptLog
from payment_service.services.errors import (
    GatewayError,
    InvalidPayloadError,
    NotFoundError,
    OrderPersistenceError,
    PaymentConflictError,
    PaymentError,
    RefundNotAllowedError,
    SignatureVerificationError,
)
from payment_service.services.payment_service import PaymentService
from payment_service.services.receipt_service import ReceiptService
from payment_service.services.webhook_service import WebhookProcessor

router = APIRouter()


# ---------- request models ----------
class CreateOrderRequest(BaseModel):
    school_id: str = Field(min_length=1)
    amount: float = Field(ge=1)
    notes: Optional[Dict[str, Any]] = None


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    school_id: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    amount: Optional[float] = Field(default=None, gt=0)
    notes: Optional[Dict[str, Any]] = None


# ---------- dependencies ----------
def _payments(request: Request) -> PaymentService:
    return request.app.state.payment_service


def _receipts(request: Request) -> ReceiptService:
    return request.app.state.receipt_service


def _webhooks(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


def _http_error(e: Exception) -> HTTPException:
    """Translate a service error into a response that leaks no internals."""
    if isinstance(e, SignatureVerificationError):
        return HTTPException(status_code=400, detail="Invalid signature")
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PaymentConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (RefundNotAllowedError, InvalidPayloadError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, GatewayError):
        logging.error("Payment gateway error: %s", e)
        return HTTPException(status_code=502, detail="Payment gateway error")
    if isinstance(e, OrderPersistenceError):
        return HTTPException(status_code=500, detail="Failed to store payment order")
    logging.exception("Unexpected payment error")
    return HTTPException(status_code=500, detail="Internal server error")


def _download_url(request: Request, receipt: ReceiptLog) -> str:
    prefix = request.app.state.settings.api_prefix
    return f"{prefix}/payments/receipts/{receipt.id}/download"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _payment_dict(payment: PaymentOrder) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "school_id": payment.school_id,
        "order_id": payment.gateway_order_id,
        "payment_id": payment.gateway_payment_id,
        "amount": payment.amount,
        "amount_refunded": payment.amount_refunded,
        "currency": payment.currency,
        "status": payment.status.value,
        "payment_method": payment.payment_method,
        "failure_reason": payment.failure_reason,
        "attempts": payment.attempts,
        "receipt": payment.receipt,
        "created_at": _iso(payment.created_at),
        "paid_at": _iso(payment.paid_at),
        "updated_at": _iso(payment.updated_at),
    }


def _receipt_dict(request: Request, receipt: ReceiptLog) -> Dict[str, Any]:
    return {
        "id": receipt.id,
        "receipt_number": receipt.receipt_number,
        "receipt_type": receipt.receipt_type.value,
        "generated_at": _iso(receipt.generated_at),
        "download_url": _download_url(request, receipt),
    }


# ---------- orders ----------
@router.post("/orders", status_code=201)
async def create_order(data: CreateOrderRequest, request: Request):
    try:
        order, payment = await _payments(request).create_payment_order(
            data.school_id, data.amount, data.notes
        )
    except (PaymentError, ValueError) as e:
        raise _http_error(e)
    return {
        "success": True,
        "data": {
            "order": order,
            "payment": _payment_dict(payment),
            "key_id": request.app.state.settings.razorpay_key_id,
        },
        "message": "Payment order created successfully",
    }


@router.post("/verify")
async def verify_payment(data: VerifyPaymentRequest, request: Request):
    try:
        payment = await _payments(request).verify_payment(
            data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
        )
    except PaymentError as e:
        raise _http_error(e)

    # The receipt is produced in the background and may not exist yet
    receipt = await _receipts(request).get_payment_receipt(payment.id)
    return {
        "success": True,
        "data": {
            "payment": _payment_dict(payment),
            "receipt": _receipt_dict(request, receipt) if receipt else None,
        },
        "message": "Payment verified successfully",
    }


@router.get("/orders/{order_id}/status")
async def get_payment_status(order_id: str, request: Request):
    payment = await _payments(request).get_payment_by_order_id(order_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    receipts = await _receipts(request).list_for_order(payment.id)
    return {
        "success": True,
        "data": {
            "payment": _payment_dict(payment),
            "receipts": [_receipt_dict(request, r) for r in receipts],
        },
    }


# ---------- schools ----------
@router.get("/schools/{school_id}/payments")
async def get_school_payments(
    school_id: str,
    request: Request,
    status: Optional[PaymentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    payments, total = await _payments(request).get_payments_by_school_id(
        school_id, status=status, page=page, limit=limit
    )
    return {
        "success": True,
        "data": {
            "payments": [_payment_dict(p) for p in payments],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        },
    }


@router.get("/schools/{school_id}/status")
async def check_school_payment_status(school_id: str, request: Request):
    """Latest payment of a school, used to recover after the checkout window closed."""
    payment = await _payments(request).get_latest_school_payment(school_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="No payment found for this school")
    return {
        "success": True,
        "data": {"payment": _payment_dict(payment)},
        "message": "Payment status retrieved successfully",
    }


# ---------- refunds & stats ----------
@router.post("/refunds", status_code=201)
async def create_refund(data: RefundRequest, request: Request):
    try:
        refund, payment = await _payments(request).create_refund(
            data.payment_id, data.amount, data.notes
        )
    except (PaymentError, ValueError) as e:
        raise _http_error(e)
    return {
        "success": True,
        "data": {
            "refund": refund,
            "payment": {
                "id": payment.id,
                "status": payment.status.value,
                "amount_refunded": payment.amount_refunded,
                "updated_at": _iso(payment.updated_at),
            },
        },
        "message": "Refund created successfully",
    }


@router.get("/stats")
async def get_payment_stats(request: Request, school_id: Optional[str] = None):
    stats = await _payments(request).get_payment_stats(school_id)
    return {"success": True, "data": stats}


# ---------- receipts ----------
@router.get("/receipts/{receipt_id}/download")
async def download_receipt(receipt_id: str, request: Request):
    try:
        receipt = await _receipts(request).record_download(receipt_id)
    except PaymentError as e:
        raise _http_error(e)
    if not Path(receipt.file_path).is_file():
        logging.error("Receipt file missing on disk: %s", receipt.file_path)
        raise HTTPException(status_code=404, detail="Receipt file not found")
    return FileResponse(
        receipt.file_path,
        media_type="application/pdf",
        filename=f"{receipt.receipt_number}.pdf",
    )


# ---------- webhook ----------
@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
):
    if not x_razorpay_signature:
        raise HTTPException(status_code=400, detail="Webhook signature is required")

    # The signature covers the exact bytes sent, so the body is not re-serialized
    raw_body = await request.body()
    try:
        record = await _webhooks(request).process_webhook(x_razorpay_signature, raw_body)
    except (SignatureVerificationError, InvalidPayloadError) as e:
        raise _http_error(e)
    except Exception:
        # Stored with its error; a non-2xx makes the gateway deliver again
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return {"status": "ok", "event_id": record.id, "processed": record.processed}
