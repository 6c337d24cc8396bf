"""
Subscription resolver: decides whether the current user is premium.

Usage:
    from services.subscription.resolver import get_resolver

    resolver = get_resolver()
    await resolver.check_status(user_id)
    if resolver.can_access_feature("similarSongs"):
        ...

Lookups fail closed: if the record store errors, the user reads as not
premium until the next successful check.

Overlapping checks are tagged with a generation number. Only the most
recently started check may publish; a response that arrives after a newer
check (or a sign-out) began is dropped.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from config import settings
from schemas.subscription import EntitlementState, LoadingState, SubscriptionRecord
from services.subscription.account import AccountSession, AccountSnapshot
from services.subscription.entitlement import feature_requires_premium, is_entitled, utcnow
from services.subscription.navigation import BrowserNavigator, Navigator
from services.subscription.payments_client import CheckoutSession, PaymentsClient, PaymentsError
from services.subscription.record_store import (
    RecordStoreError,
    SubscriptionRecordStore,
    SupabaseRecordStore,
)
from services.subscription.state import EntitlementReader, EntitlementStore

logger = logging.getLogger(__name__)

PAYMENT_CANCELLED = "cancelled"


class MissingUserIdError(ValueError):
    """Checkout or portal was requested without a signed-in user."""


class SubscriptionResolver:
    def __init__(
        self,
        record_store: SubscriptionRecordStore,
        payments: Optional[PaymentsClient] = None,
        navigator: Optional[Navigator] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        recheck_delay_sec: Optional[float] = None,
    ):
        self._records = record_store
        self._payments = payments
        self._navigator = navigator or BrowserNavigator()
        self._clock = clock
        self._recheck_delay_sec = (
            settings.PAYMENT_RECHECK_DELAY_SEC if recheck_delay_sec is None else recheck_delay_sec
        )
        self._store = EntitlementStore()
        self._generation = 0

    # ── read side ───────────────────────────────────────────────────

    @property
    def state(self) -> EntitlementReader:
        return self._store.reader

    @property
    def is_premium(self) -> bool:
        return self._store.get().is_premium

    def can_access_feature(self, feature_name: str) -> bool:
        if not feature_requires_premium(feature_name):
            return True
        return self._store.get().is_premium

    # ── entitlement checks ──────────────────────────────────────────

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    async def check_status(self, user_id: Optional[str]) -> EntitlementState:
        generation = self._next_generation()

        if not user_id:
            return self._store.publish(is_premium=False, record=None, loading=LoadingState.RESOLVED)

        self._store.publish(loading=LoadingState.CHECKING)

        record: Optional[SubscriptionRecord] = None
        failed = False
        try:
            record = await self._records.fetch_latest(user_id)
        except RecordStoreError as exc:
            if exc.is_no_rows:
                logger.debug("subscription_check_no_rows user_id=%s", user_id)
            else:
                failed = True
                logger.exception("subscription_check_failed user_id=%s code=%s", user_id, exc.code)
        except Exception:
            failed = True
            logger.exception("subscription_check_failed user_id=%s", user_id)

        if generation != self._generation:
            logger.info(
                "subscription_check_superseded user_id=%s generation=%d current=%d",
                user_id, generation, self._generation,
            )
            return self._store.get()

        if failed:
            return self._store.publish(is_premium=False, record=None, loading=LoadingState.RESOLVED)

        premium = is_entitled(record, self._clock())
        logger.info(
            "subscription_checked user_id=%s premium=%s status=%s",
            user_id, premium, record.status.value if record else None,
        )
        return self._store.publish(is_premium=premium, record=record, loading=LoadingState.RESOLVED)

    def reset(self) -> EntitlementState:
        """Forget everything, e.g. on sign-out. In-flight checks are dropped."""
        self._next_generation()
        return self._store.publish(
            is_premium=False,
            record=None,
            loading=LoadingState.RESOLVED,
            checkout_loading=False,
        )

    async def handle_payment_return(self, user_id: Optional[str], outcome: Optional[str]) -> EntitlementState:
        """
        Called when the app regains focus after checkout or the customer portal.

        A cancelled checkout changes nothing. Any other return re-checks after a
        short delay so the Stripe webhook has a chance to write the new row.
        """
        if outcome == PAYMENT_CANCELLED:
            logger.info("payment_return_cancelled user_id=%s", user_id)
            return self._store.get()
        if self._recheck_delay_sec > 0:
            await asyncio.sleep(self._recheck_delay_sec)
        return await self.check_status(user_id)

    def bind_account(self, account: AccountSession) -> Callable[[], None]:
        """Re-check whenever the signed-in account changes. Returns an unsubscribe callable."""

        async def _on_account_change(snapshot: AccountSnapshot) -> None:
            await self.check_status(snapshot.user_id)

        return account.subscribe(_on_account_change)

    # ── checkout / portal ───────────────────────────────────────────

    def _require_payments(self) -> PaymentsClient:
        if self._payments is None:
            self._payments = PaymentsClient()
        return self._payments

    async def open_checkout(
        self,
        user_id: Optional[str],
        *,
        email: Optional[str] = None,
        embedded: bool = False,
    ) -> CheckoutSession:
        """
        Start a Stripe Checkout session for `user_id`.

        Redirect mode opens the hosted checkout page. Embedded mode returns the
        client secret for the caller to mount and opens nothing.
        """
        if not user_id:
            raise MissingUserIdError("User ID required for checkout")
        payments = self._require_payments()

        self._store.publish(checkout_loading=True)
        try:
            session = await payments.create_checkout_session(user_id, email=email, embedded=embedded)
        except PaymentsError as exc:
            logger.warning("checkout_failed user_id=%s status=%s", user_id, exc.status_code)
            raise
        finally:
            self._store.publish(checkout_loading=False)

        if embedded:
            return session
        if not session.url:
            raise PaymentsError("Checkout session response had no url")
        self._navigator.open(session.url)
        logger.info("checkout_opened user_id=%s", user_id)
        return session

    async def open_customer_portal(self, user_id: Optional[str]) -> str:
        if not user_id:
            raise MissingUserIdError("User ID required for customer portal")
        payments = self._require_payments()

        self._store.publish(checkout_loading=True)
        try:
            url = await payments.create_portal_session(user_id)
        except PaymentsError as exc:
            logger.warning("portal_failed user_id=%s status=%s", user_id, exc.status_code)
            raise
        finally:
            self._store.publish(checkout_loading=False)

        self._navigator.open(url)
        logger.info("portal_opened user_id=%s", user_id)
        return url


_resolver_singleton: Optional[SubscriptionResolver] = None


def get_resolver() -> SubscriptionResolver:
    """Process-wide resolver backed by Supabase and the billing backend."""
    global _resolver_singleton
    if _resolver_singleton is None:
        _resolver_singleton = SubscriptionResolver(SupabaseRecordStore(), PaymentsClient())
    return _resolver_singleton
