"""Side effects that follow a settled payment.

Nothing here may fail a payment: every step logs its own errors.
"""

import logging
from typing import Optional

import httpx

from payment_service.config import Settings
from payment_service.models.payment import PaymentOrder
from telegram_bot.notify import send_telegram_message


class PaymentNotifier:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._transport = transport

    async def update_school_plan(self, school_id: str, plan: str) -> bool:
        if not self._settings.school_service_url:
            return False
        url = f"{self._settings.school_service_url.rstrip('/')}/api/v1/school/{school_id}/plan"
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.school_service_timeout,
                transport=self._transport,
            ) as client:
                response = await client.patch(
                    url,
                    json={"plan": plan},
                    headers={
                        "X-Internal-Call": "true",
                        "X-Service-Auth": "payment-service",
                    },
                )
                response.raise_for_status()
        except Exception:
            logging.exception("Failed to update plan for school %s", school_id)
            return False
        logging.info("Updated school plan: %s -> %s", school_id, plan)
        return True

    async def payment_settled(self, order: PaymentOrder) -> None:
        await self.update_school_plan(order.school_id, self._settings.school_plan_on_payment)
        await send_telegram_message(
            self._settings.telegram_bot_token,
            self._settings.telegram_admin_chat_id,
            (
                "Payment received\n"
                f"School: {order.school_id}\n"
                f"Order: {order.gateway_order_id}\n"
                f"Amount: {order.currency} {order.amount / 100:.2f}"
            ),
        )
