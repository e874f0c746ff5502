"""Print recent payment orders and webhooks still waiting to be processed."""

import asyncio

from sqlalchemy import select

from payment_service.config import Settings
from payment_service.db.session import create_engine, create_session_factory
from payment_service.models.payment import PaymentOrder
from payment_service.models.webhook import WebhookEvent


async def main(limit: int = 20) -> None:
    settings = Settings.from_env()
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    async with session_factory() as db:
        orders = (
            await db.execute(select(PaymentOrder).order_by(PaymentOrder.created_at.desc()).limit(limit))
        ).scalars().all()
        pending = (
            await db.execute(
                select(WebhookEvent)
                .filter(WebhookEvent.processed.is_(False))
                .order_by(WebhookEvent.created_at.asc())
            )
        ).scalars().all()

    print("=== payment_orders ===")
    for o in orders:
        print(
            f"{o.id}  {o.school_id}  {o.gateway_order_id}  {o.status.value:<14}"
            f"  {o.amount_major:>10.2f} {o.currency}  attempts={o.attempts}"
        )

    print("\n=== unprocessed webhooks ===")
    for w in pending:
        print(f"{w.id}  {w.event:<20}  retries={w.retry_count}  error={w.error_message}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
