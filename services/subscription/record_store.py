from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from config import settings
from schemas.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

# PostgREST: single-object response requested but the query matched no rows
NO_ROWS_CODE = "PGRST116"

SUBSCRIPTIONS_TABLE = "subscriptions"


class RecordStoreError(RuntimeError):
    """Raised when the subscription record store cannot answer a query."""

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    @property
    def is_no_rows(self) -> bool:
        return self.code == NO_ROWS_CODE


class SubscriptionRecordStore(Protocol):
    async def fetch_latest(self, user_id: str) -> Optional[SubscriptionRecord]:
        """
        Return the most recently created subscription row for `user_id`.

        "No rows" is either a None return or a RecordStoreError whose code is
        NO_ROWS_CODE. Any other exception is a genuine failure.
        """
        ...


class SupabaseRecordStore:
    """Reads the `subscriptions` table through Supabase's PostgREST API."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = (url if url is not None else settings.SUPABASE_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        # Row level security evaluates the caller's JWT; fall back to the anon key
        self._access_token = access_token
        self._timeout = httpx.Timeout(timeout or settings.RECORD_STORE_TIMEOUT_SEC)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Accept": "application/vnd.pgrst.object+json",
        }

    async def fetch_latest(self, user_id: str) -> Optional[SubscriptionRecord]:
        if not self._url:
            raise RecordStoreError("SUPABASE_URL is not configured")

        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
            "limit": "1",
        }
        endpoint = f"{self._url}/rest/v1/{SUBSCRIPTIONS_TABLE}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(endpoint, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            raise RecordStoreError(f"Subscription query failed: {exc}") from exc

        if response.is_success:
            return SubscriptionRecord.model_validate(response.json())

        body = _error_body(response)
        raise RecordStoreError(
            body.get("message") or f"Subscription query failed with HTTP {response.status_code}",
            code=body.get("code"),
            status_code=response.status_code,
        )


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class SqlRecordStore:
    """Reads the `subscriptions` table through SQLAlchemy, off the event loop."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _query_latest(self, user_id: str) -> Optional[SubscriptionRecord]:
        from models.subscription import Subscription

        db = self._session_factory()
        try:
            row = (
                db.query(Subscription)
                .filter(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc(), Subscription.id.desc())
                .first()
            )
            return SubscriptionRecord.model_validate(row) if row else None
        finally:
            db.close()

    async def fetch_latest(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await asyncio.to_thread(self._query_latest, user_id)
