"""Thin async adapter over the Razorpay REST API."""

import logging
from typing import Any, Dict, Optional

import httpx

from payment_service.services.errors import GatewayError


class RazorpayClient:
    """Creates orders and refunds and fetches payments from Razorpay.

    Every call is bounded by ``timeout``; transport errors, timeouts and
    non-2xx answers all surface as :class:`GatewayError`.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logging.error("Razorpay %s %s timed out", method, path)
            raise GatewayError(f"Gateway timeout on {method} {path}") from e
        except httpx.HTTPError as e:
            logging.error("Razorpay %s %s failed: %s", method, path, e)
            raise GatewayError(f"Gateway unreachable on {method} {path}") from e

        if response.status_code >= 400:
            description = _error_description(response)
            logging.error(
                "Razorpay %s %s returned %s: %s",
                method,
                path,
                response.status_code,
                description,
            )
            raise GatewayError(description, status_code=response.status_code)
        return response.json()

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/orders",
            json={
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def create_refund(
        self,
        payment_id: str,
        amount_minor: Optional[int] = None,
        notes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"notes": notes or {}}
        # Omitting the amount asks the gateway for a full refund
        if amount_minor is not None:
            body["amount"] = amount_minor
        return await self._request("POST", f"/payments/{payment_id}/refund", json=body)


def _error_description(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
        return error.get("description") or f"Gateway error {response.status_code}"
    except (ValueError, AttributeError):
        return f"Gateway error {response.status_code}"
