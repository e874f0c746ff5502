"""Persistence for :class:`PaymentOrder` records.

Status changes are conditional ``UPDATE`` statements guarded by the statuses
they may start from. The returned row count says whether this caller won the
transition, so a client confirmation and a webhook racing on the same order
both finish safely and the loser sees a no-op.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_service.models.payment import (
    PAYABLE_STATUSES,
    REFUNDABLE_STATUSES,
    PaymentOrder,
    PaymentStatus,
)


class PaymentStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, **fields: Any) -> PaymentOrder:
        order = PaymentOrder(**fields)
        async with self._session_factory() as db:
            db.add(order)
            await db.commit()
            await db.refresh(order)
        return order

    async def get(self, order_id: str) -> Optional[PaymentOrder]:
        async with self._session_factory() as db:
            return await db.get(PaymentOrder, order_id)

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[PaymentOrder]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PaymentOrder).filter_by(gateway_order_id=gateway_order_id)
            )
            return result.scalars().first()

    async def list_for_school(
        self,
        school_id: str,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[PaymentOrder], int]:
        query = select(PaymentOrder).filter(PaymentOrder.school_id == school_id)
        count_query = select(func.count(PaymentOrder.id)).filter(PaymentOrder.school_id == school_id)
        if status is not None:
            query = query.filter(PaymentOrder.status == status)
            count_query = count_query.filter(PaymentOrder.status == status)

        async with self._session_factory() as db:
            result = await db.execute(
                query.order_by(PaymentOrder.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = list(result.scalars().all())
            total = (await db.execute(count_query)).scalar_one()
        return rows, total

    async def latest_for_school(self, school_id: str) -> Optional[PaymentOrder]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PaymentOrder)
                .filter(PaymentOrder.school_id == school_id)
                .order_by(PaymentOrder.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def _conditional_update(self, *criteria, **values) -> bool:
        values["updated_at"] = datetime.utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(PaymentOrder)
                .where(*criteria)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount > 0

    async def mark_paid(
        self,
        order_id: str,
        payment_id: str,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        paid_at: Optional[datetime] = None,
        signature: Optional[str] = None,
        count_attempt: bool = False,
    ) -> bool:
        """Move a payable order to PAID. ``paid_at`` is only written the first time."""
        values: Dict[str, Any] = {
            "status": PaymentStatus.PAID,
            "gateway_payment_id": payment_id,
            "payment_method": method,
            "payment_method_details": details,
            "paid_at": func.coalesce(PaymentOrder.paid_at, paid_at or datetime.utcnow()),
            "failure_reason": None,
        }
        if signature is not None:
            values["gateway_signature"] = signature
        if count_attempt:
            values["attempts"] = PaymentOrder.attempts + 1
        return await self._conditional_update(
            PaymentOrder.id == order_id,
            PaymentOrder.status.in_(PAYABLE_STATUSES),
            **values,
        )

    async def mark_attempted(
        self,
        order_id: str,
        payment_id: str,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self._conditional_update(
            PaymentOrder.id == order_id,
            PaymentOrder.status == PaymentStatus.CREATED,
            status=PaymentStatus.ATTEMPTED,
            gateway_payment_id=payment_id,
            payment_method=method,
            payment_method_details=details,
        )

    async def mark_failed(self, gateway_order_id: str, reason: str) -> bool:
        """Record a failure unless the order has already been settled."""
        return await self._conditional_update(
            PaymentOrder.gateway_order_id == gateway_order_id,
            PaymentOrder.status.in_(PAYABLE_STATUSES),
            status=PaymentStatus.FAILED,
            failure_reason=reason,
        )

    async def apply_refund(self, order_id: str, refunded_total: int, status: PaymentStatus) -> bool:
        return await self._conditional_update(
            PaymentOrder.id == order_id,
            PaymentOrder.status.in_(REFUNDABLE_STATUSES),
            PaymentOrder.amount_refunded <= refunded_total,
            status=status,
            amount_refunded=refunded_total,
        )

    async def stats(self, school_id: Optional[str] = None) -> Dict[str, Any]:
        def scoped(query):
            if school_id:
                return query.filter(PaymentOrder.school_id == school_id)
            return query

        async with self._session_factory() as db:
            by_status = await db.execute(
                scoped(
                    select(
                        PaymentOrder.status,
                        func.count(PaymentOrder.id),
                        func.coalesce(func.sum(PaymentOrder.amount), 0),
                    )
                ).group_by(PaymentOrder.status)
            )
            by_method = await db.execute(
                scoped(
                    select(PaymentOrder.payment_method, func.count(PaymentOrder.id))
                    .filter(PaymentOrder.status == PaymentStatus.PAID)
                ).group_by(PaymentOrder.payment_method)
            )

            counts: Dict[PaymentStatus, int] = {}
            sums: Dict[PaymentStatus, int] = {}
            for status, count, total in by_status.all():
                counts[status] = count
                sums[status] = total

            return {
                "total_payments": sum(counts.values()),
                "successful_payments": counts.get(PaymentStatus.PAID, 0),
                "failed_payments": counts.get(PaymentStatus.FAILED, 0),
                "total_amount_minor": sum(sums.values()),
                "successful_amount_minor": sums.get(PaymentStatus.PAID, 0),
                "payment_methods": {
                    (method or "unknown"): count for method, count in by_method.all()
                },
            }
