from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

CHECKOUT_PATH = "/api/create-checkout-session"
PORTAL_PATH = "/api/create-portal-session"


class PaymentsError(RuntimeError):
    """A checkout or portal request was rejected; carries the backend's message."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class CheckoutSession:
    url: Optional[str] = None
    client_secret: Optional[str] = None


class PaymentsClient:
    """Talks to the billing backend that fronts Stripe Checkout and the customer portal."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url if base_url is not None else settings.PAYMENTS_API_BASE).rstrip("/")
        self._timeout = httpx.Timeout(timeout or settings.PAYMENTS_TIMEOUT_SEC)
        self._transport = transport

    async def _post(self, path: str, payload: Dict[str, Any], fallback_message: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}{path}", json=payload)
        except httpx.HTTPError as exc:
            raise PaymentsError(f"{fallback_message}: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success:
            message = data.get("error") or data.get("detail") or fallback_message
            raise PaymentsError(str(message), status_code=response.status_code)
        return data

    async def create_checkout_session(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        embedded: bool = False,
    ) -> CheckoutSession:
        payload: Dict[str, Any] = {"user_id": user_id, "embedded": embedded}
        if email:
            payload["email"] = email
        data = await self._post(CHECKOUT_PATH, payload, "Failed to create checkout session")
        return CheckoutSession(url=data.get("url"), client_secret=data.get("clientSecret"))

    async def create_portal_session(self, user_id: str) -> str:
        data = await self._post(PORTAL_PATH, {"user_id": user_id}, "Failed to create portal session")
        url = data.get("url")
        if not url:
            raise PaymentsError("Portal session response had no url")
        return url
