"""Stripe payment integration client.

Uses the real Stripe API when a live key is configured, otherwise falls
back to mock responses for development. Mock ids are derived from the
idempotency key, so a replayed request yields the same id just as Stripe
would.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

import httpx

from homebid.common.exceptions import ExternalServiceError
from homebid.common.money import to_cents
from homebid.config import settings
from homebid.integrations.base import PaymentGateway


def _mock_id(prefix: str, idempotency_key: str) -> str:
    return f"{prefix}_{uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:24]}"


class StripeClient(PaymentGateway):
    """Payment client with real Stripe API and mock fallback."""

    BASE_URL = "https://api.stripe.com/v1"

    def __init__(
        self,
        secret_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__("stripe")
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self._transport = transport

    def _is_mock(self) -> bool:
        return self.secret_key.startswith("mock_")

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _client(self, timeout: float = 30) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _post(self, path: str, data: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.BASE_URL}{path}",
                    headers=self._headers(idempotency_key),
                    data=data,
                )
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:200]
            self.logger.error("Stripe %s failed (%d): %s", path, e.response.status_code, detail)
            # 402 is a card error: Stripe refused and nothing was captured.
            declined = e.response.status_code == httpx.codes.PAYMENT_REQUIRED
            raise ExternalServiceError("stripe", detail, declined=declined) from e
        except httpx.HTTPError as e:
            self.logger.error("Stripe %s unreachable: %s", path, e)
            raise ExternalServiceError("stripe", str(e)) from e

    async def health_check(self) -> bool:
        if self._is_mock():
            self.logger.info("Stripe health check: OK (mock)")
            return True
        try:
            async with self._client(timeout=10) as client:
                resp = await client.get(f"{self.BASE_URL}/balance", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError as e:
            self.logger.error("Stripe health check failed: %s", e)
            return False

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def charge(self, amount: Decimal, customer_ref: str | None, idempotency_key: str) -> str:
        if not self._is_mock():
            payload: dict[str, Any] = {
                "amount": to_cents(amount),
                "currency": settings.CURRENCY,
                "confirm": "true",
                "off_session": "true",
                "metadata[idempotency_key]": idempotency_key,
            }
            if customer_ref:
                payload["customer"] = customer_ref
            data = await self._post("/payment_intents", payload, idempotency_key)
            if data.get("status") not in ("succeeded", "processing"):
                raise ExternalServiceError(
                    "stripe",
                    f"charge {data.get('id')} status {data.get('status')}",
                    declined=data.get("status") in ("requires_payment_method", "canceled"),
                )
            self.logger.info("Charged %s: %s", amount, data["id"])
            return data["id"]

        pi_id = _mock_id("pi", idempotency_key)
        self.logger.info("Mock charge: %s (%s)", pi_id, amount)
        return pi_id

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> str:
        if not self._is_mock():
            data = await self._post(
                "/refunds",
                {"payment_intent": charge_id, "amount": to_cents(amount)},
                idempotency_key,
            )
            self.logger.info("Refunded %s of %s: %s", amount, charge_id, data["id"])
            return data["id"]

        ref_id = _mock_id("re", idempotency_key)
        self.logger.info("Mock refund: %s (%s of %s)", ref_id, amount, charge_id)
        return ref_id

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def transfer(self, amount: Decimal, destination_ref: str | None, idempotency_key: str) -> str:
        if not self._is_mock():
            if not destination_ref:
                raise ExternalServiceError("stripe", "contractor has no payout account")
            data = await self._post(
                "/transfers",
                {
                    "amount": to_cents(amount),
                    "currency": settings.CURRENCY,
                    "destination": destination_ref,
                },
                idempotency_key,
            )
            self.logger.info("Transferred %s to %s: %s", amount, destination_ref, data["id"])
            return data["id"]

        tr_id = _mock_id("tr", idempotency_key)
        self.logger.info("Mock transfer: %s (%s)", tr_id, amount)
        return tr_id
