import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from schemas.subscription import LoadingState, SubscriptionRecord
from services.subscription.account import AccountSession
from services.subscription.entitlement import select_latest
from services.subscription.navigation import BrowserNavigator
from services.subscription.payments_client import CheckoutSession, PaymentsError
from services.subscription.record_store import NO_ROWS_CODE, RecordStoreError, SupabaseRecordStore
from services.subscription.resolver import MissingUserIdError, SubscriptionResolver, get_resolver

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _record(user_id="U1", status="active", period_end=None, created_at=NOW - timedelta(days=30)):
    return SubscriptionRecord(
        user_id=user_id,
        status=status,
        current_period_end=period_end,
        created_at=created_at,
    )


class _FakeStore:
    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.calls = []

    async def fetch_latest(self, user_id):
        self.calls.append(user_id)
        if self.error is not None:
            raise self.error
        return select_latest(r for r in self.rows if r.user_id == user_id)


class _GatedStore:
    """Each fetch blocks until the test resolves its future."""

    def __init__(self):
        self.pending = {}

    async def fetch_latest(self, user_id):
        fut = asyncio.get_running_loop().create_future()
        self.pending.setdefault(user_id, []).append(fut)
        return await fut


class _FakeNavigator:
    def __init__(self):
        self.opened = []

    def open(self, url):
        self.opened.append(url)


class _FakePayments:
    def __init__(self, *, checkout=None, portal_url="https://billing.stripe.test/p/session", error=None):
        self.checkout = checkout or CheckoutSession(url="https://checkout.stripe.test/c/pay")
        self.portal_url = portal_url
        self.error = error
        self.calls = []
        self.loading_seen = []
        self.resolver = None

    async def create_checkout_session(self, user_id, *, email=None, embedded=False):
        self.calls.append(("checkout", user_id, email, embedded))
        self.loading_seen.append(self.resolver.state.get().checkout_loading)
        if self.error is not None:
            raise self.error
        return self.checkout

    async def create_portal_session(self, user_id):
        self.calls.append(("portal", user_id))
        self.loading_seen.append(self.resolver.state.get().checkout_loading)
        if self.error is not None:
            raise self.error
        return self.portal_url


def _resolver(store, payments=None, navigator=None, clock=lambda: NOW):
    resolver = SubscriptionResolver(
        store,
        payments,
        navigator or _FakeNavigator(),
        clock=clock,
        recheck_delay_sec=0,
    )
    if payments is not None:
        payments.resolver = resolver
    return resolver


class TestCheckStatus(unittest.TestCase):
    def test_initial_state_is_not_checked(self):
        resolver = _resolver(_FakeStore())
        state = resolver.state.get()
        self.assertFalse(state.is_premium)
        self.assertIsNone(state.record)
        self.assertEqual(state.loading, LoadingState.NOT_CHECKED)

    def test_user_without_records_cannot_access_premium_feature(self):
        resolver = _resolver(_FakeStore())
        state = asyncio.run(resolver.check_status("U1"))
        self.assertFalse(state.is_premium)
        self.assertIsNone(state.record)
        self.assertEqual(state.loading, LoadingState.RESOLVED)
        self.assertFalse(resolver.can_access_feature("similarSongs"))
        self.assertFalse(resolver.can_access_feature("differentSongs"))

    def test_active_record_without_period_end_is_premium(self):
        rec = _record(status="active")
        resolver = _resolver(_FakeStore([rec]))
        state = asyncio.run(resolver.check_status("U1"))
        self.assertTrue(state.is_premium)
        self.assertEqual(state.record, rec)
        self.assertTrue(resolver.can_access_feature("similarSongs"))

    def test_expired_period_end_is_not_premium(self):
        resolver = _resolver(_FakeStore([_record(period_end=NOW - timedelta(seconds=1))]))
        state = asyncio.run(resolver.check_status("U1"))
        self.assertFalse(state.is_premium)
        self.assertIsNotNone(state.record)

    def test_future_period_end_is_premium(self):
        resolver = _resolver(_FakeStore([_record(period_end=NOW + timedelta(days=1))]))
        self.assertTrue(asyncio.run(resolver.check_status("U1")).is_premium)

    def test_canceled_record_is_never_premium(self):
        for period_end in (None, NOW + timedelta(days=10), NOW - timedelta(days=10)):
            with self.subTest(period_end=period_end):
                resolver = _resolver(_FakeStore([_record(status="canceled", period_end=period_end)]))
                self.assertFalse(asyncio.run(resolver.check_status("U1")).is_premium)

    def test_newest_record_governs_even_when_older_one_is_active(self):
        older_active = _record(status="active", created_at=NOW - timedelta(days=20))
        newer_canceled = _record(status="canceled", created_at=NOW - timedelta(days=2))
        resolver = _resolver(_FakeStore([older_active, newer_canceled]))
        state = asyncio.run(resolver.check_status("U1"))
        self.assertFalse(state.is_premium)
        self.assertEqual(state.record, newer_canceled)

    def test_unknown_feature_is_always_accessible(self):
        resolver = _resolver(_FakeStore())
        self.assertTrue(resolver.can_access_feature("someUnknownFeature"))
        asyncio.run(resolver.check_status("U1"))
        self.assertTrue(resolver.can_access_feature("someUnknownFeature"))

        premium = _resolver(_FakeStore([_record()]))
        asyncio.run(premium.check_status("U1"))
        self.assertTrue(premium.can_access_feature("someUnknownFeature"))

    def test_missing_user_resolves_without_querying(self):
        store = _FakeStore([_record()])
        resolver = _resolver(store)
        for user_id in (None, ""):
            with self.subTest(user_id=user_id):
                coro = resolver.check_status(user_id)
                # No suspension point: the coroutine finishes on its first step
                with self.assertRaises(StopIteration) as done:
                    coro.send(None)
                state = done.exception.value
                self.assertFalse(state.is_premium)
                self.assertIsNone(state.record)
                self.assertEqual(state.loading, LoadingState.RESOLVED)
        self.assertEqual(store.calls, [])

    def test_store_failure_fails_closed(self):
        resolver = _resolver(_FakeStore([_record()]))
        asyncio.run(resolver.check_status("U1"))
        self.assertTrue(resolver.is_premium)

        resolver._records = _FakeStore(error=RuntimeError("connection reset"))
        with self.assertLogs("services.subscription.resolver", level="ERROR"):
            state = asyncio.run(resolver.check_status("U1"))
        self.assertFalse(state.is_premium)
        self.assertIsNone(state.record)
        self.assertEqual(state.loading, LoadingState.RESOLVED)

    def test_store_error_with_code_fails_closed(self):
        resolver = _resolver(_FakeStore(error=RecordStoreError("JWT expired", code="PGRST301", status_code=401)))
        with self.assertLogs("services.subscription.resolver", level="ERROR"):
            state = asyncio.run(resolver.check_status("U1"))
        self.assertFalse(state.is_premium)
        self.assertEqual(state.loading, LoadingState.RESOLVED)

    def test_no_rows_signal_is_not_an_error(self):
        resolver = _resolver(_FakeStore(error=RecordStoreError("no rows", code=NO_ROWS_CODE, status_code=406)))
        with patch("services.subscription.resolver.logger") as log_mock:
            state = asyncio.run(resolver.check_status("U1"))
        log_mock.exception.assert_not_called()
        self.assertFalse(state.is_premium)
        self.assertIsNone(state.record)
        self.assertEqual(state.loading, LoadingState.RESOLVED)

    def test_checking_state_is_published_before_the_query(self):
        resolver = _resolver(_FakeStore([_record()]))
        seen = []
        resolver.state.subscribe(lambda s: seen.append(s.loading))
        asyncio.run(resolver.check_status("U1"))
        self.assertEqual(seen, [LoadingState.CHECKING, LoadingState.RESOLVED])

    def test_every_check_queries_again(self):
        store = _FakeStore([_record()])
        resolver = _resolver(store)

        async def _run():
            await resolver.check_status("U1")
            await resolver.check_status("U1")

        asyncio.run(_run())
        self.assertEqual(store.calls, ["U1", "U1"])

    def test_trial_expires_when_clock_passes_period_end(self):
        clock = {"now": NOW}
        rec = _record(status="trialing", period_end=NOW + timedelta(days=3), created_at=NOW - timedelta(days=4))
        resolver = _resolver(_FakeStore([rec]), clock=lambda: clock["now"])

        self.assertTrue(asyncio.run(resolver.check_status("U1")).is_premium)

        clock["now"] = NOW + timedelta(days=3, seconds=1)
        self.assertFalse(asyncio.run(resolver.check_status("U1")).is_premium)


class TestOverlappingChecks(unittest.TestCase):
    def test_stale_response_for_superseded_user_is_dropped(self):
        store = _GatedStore()
        resolver = _resolver(store)
        u2_record = _record(user_id="U2", status="active")

        async def _run():
            first = asyncio.create_task(resolver.check_status("U1"))
            await asyncio.sleep(0)
            second = asyncio.create_task(resolver.check_status("U2"))
            await asyncio.sleep(0)

            store.pending["U2"][0].set_result(u2_record)
            await second
            # U1's answer arrives last but belongs to a superseded check
            store.pending["U1"][0].set_result(None)
            await first

        asyncio.run(_run())
        state = resolver.state.get()
        self.assertTrue(state.is_premium)
        self.assertEqual(state.record, u2_record)
        self.assertEqual(state.loading, LoadingState.RESOLVED)

    def test_sign_out_discards_in_flight_check(self):
        store = _GatedStore()
        resolver = _resolver(store)

        async def _run():
            pending = asyncio.create_task(resolver.check_status("U1"))
            await asyncio.sleep(0)
            await resolver.check_status(None)
            store.pending["U1"][0].set_result(_record())
            await pending

        asyncio.run(_run())
        self.assertFalse(resolver.is_premium)
        self.assertIsNone(resolver.state.get().record)

    def test_reset_clears_state_and_drops_in_flight_check(self):
        store = _GatedStore()
        resolver = _resolver(store)

        async def _run():
            pending = asyncio.create_task(resolver.check_status("U1"))
            await asyncio.sleep(0)
            resolver.reset()
            store.pending["U1"][0].set_result(_record())
            await pending

        asyncio.run(_run())
        state = resolver.state.get()
        self.assertFalse(state.is_premium)
        self.assertEqual(state.loading, LoadingState.RESOLVED)
        self.assertFalse(state.checkout_loading)


class TestAccountBinding(unittest.TestCase):
    def test_account_changes_trigger_checks(self):
        store = _FakeStore([_record(user_id="U1")])
        resolver = _resolver(store)
        account = AccountSession()
        resolver.bind_account(account)

        async def _run():
            await account.set_user("U1", is_anonymous=True)
            premium_after_sign_in = resolver.is_premium
            await account.set_user("U1", is_anonymous=False)
            await account.clear()
            return premium_after_sign_in

        self.assertTrue(asyncio.run(_run()))
        self.assertEqual(store.calls, ["U1", "U1"])
        self.assertFalse(resolver.is_premium)
        self.assertEqual(resolver.state.get().loading, LoadingState.RESOLVED)

    def test_unbound_resolver_stops_listening(self):
        store = _FakeStore()
        resolver = _resolver(store)
        account = AccountSession()
        unbind = resolver.bind_account(account)
        unbind()
        asyncio.run(account.set_user("U1"))
        self.assertEqual(store.calls, [])


class TestPaymentReturn(unittest.TestCase):
    def test_success_rechecks(self):
        store = _FakeStore()
        resolver = _resolver(store)
        asyncio.run(resolver.check_status("U1"))
        self.assertFalse(resolver.is_premium)

        # Webhook landed while the user was on the Stripe page
        store.rows.append(_record())
        state = asyncio.run(resolver.handle_payment_return("U1", "success"))
        self.assertTrue(state.is_premium)
        self.assertEqual(store.calls, ["U1", "U1"])

    def test_cancelled_leaves_state_alone(self):
        store = _FakeStore()
        resolver = _resolver(store)
        asyncio.run(resolver.handle_payment_return("U1", "cancelled"))
        self.assertEqual(store.calls, [])
        self.assertEqual(resolver.state.get().loading, LoadingState.NOT_CHECKED)

    def test_recheck_waits_for_configured_delay(self):
        resolver = SubscriptionResolver(_FakeStore(), navigator=_FakeNavigator(), recheck_delay_sec=1.5)
        with patch("services.subscription.resolver.asyncio.sleep", new_callable=AsyncMock) as sleep_mock:
            asyncio.run(resolver.handle_payment_return("U1", "success"))
        sleep_mock.assert_awaited_once_with(1.5)


class TestCheckout(unittest.TestCase):
    def test_checkout_requires_user_id(self):
        payments = _FakePayments()
        resolver = _resolver(_FakeStore(), payments)
        with self.assertRaises(MissingUserIdError):
            asyncio.run(resolver.open_checkout(None))
        with self.assertRaises(MissingUserIdError):
            asyncio.run(resolver.open_customer_portal(""))
        self.assertEqual(payments.calls, [])

    def test_checkout_opens_redirect_url(self):
        payments = _FakePayments()
        navigator = _FakeNavigator()
        resolver = _resolver(_FakeStore(), payments, navigator)

        session = asyncio.run(resolver.open_checkout("U1", email="fan@example.com"))

        self.assertEqual(session.url, "https://checkout.stripe.test/c/pay")
        self.assertEqual(navigator.opened, ["https://checkout.stripe.test/c/pay"])
        self.assertEqual(payments.calls, [("checkout", "U1", "fan@example.com", False)])
        self.assertEqual(payments.loading_seen, [True])
        self.assertFalse(resolver.state.get().checkout_loading)

    def test_embedded_checkout_returns_client_secret_without_navigation(self):
        payments = _FakePayments(checkout=CheckoutSession(client_secret="cs_test_secret"))
        navigator = _FakeNavigator()
        resolver = _resolver(_FakeStore(), payments, navigator)

        session = asyncio.run(resolver.open_checkout("U1", embedded=True))

        self.assertEqual(session.client_secret, "cs_test_secret")
        self.assertEqual(navigator.opened, [])

    def test_checkout_failure_propagates_and_clears_loading(self):
        payments = _FakePayments(error=PaymentsError("Price ID not configured", status_code=500))
        navigator = _FakeNavigator()
        resolver = _resolver(_FakeStore(), payments, navigator)

        with self.assertRaises(PaymentsError) as ctx:
            asyncio.run(resolver.open_checkout("U1"))

        self.assertEqual(str(ctx.exception), "Price ID not configured")
        self.assertEqual(payments.loading_seen, [True])
        self.assertFalse(resolver.state.get().checkout_loading)
        self.assertEqual(navigator.opened, [])

    def test_portal_opens_url(self):
        payments = _FakePayments()
        navigator = _FakeNavigator()
        resolver = _resolver(_FakeStore(), payments, navigator)

        url = asyncio.run(resolver.open_customer_portal("U1"))

        self.assertEqual(url, "https://billing.stripe.test/p/session")
        self.assertEqual(navigator.opened, [url])
        self.assertEqual(payments.loading_seen, [True])
        self.assertFalse(resolver.state.get().checkout_loading)

    def test_portal_without_customer_surfaces_message(self):
        payments = _FakePayments(error=PaymentsError("No subscription found for user", status_code=404))
        resolver = _resolver(_FakeStore(), payments)

        with self.assertRaises(PaymentsError) as ctx:
            asyncio.run(resolver.open_customer_portal("U1"))

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertFalse(resolver.state.get().checkout_loading)

    def test_checkout_does_not_touch_entitlement(self):
        resolver = _resolver(_FakeStore([_record()]), _FakePayments())
        asyncio.run(resolver.check_status("U1"))
        before = resolver.state.get()
        asyncio.run(resolver.open_checkout("U1"))
        after = resolver.state.get()
        self.assertEqual(before.is_premium, after.is_premium)
        self.assertEqual(before.record, after.record)


class TestDefaults(unittest.TestCase):
    def test_browser_navigator_uses_webbrowser(self):
        with patch("services.subscription.navigation.webbrowser.open", return_value=True) as open_mock:
            BrowserNavigator().open("https://checkout.stripe.test/c/pay")
        open_mock.assert_called_once_with("https://checkout.stripe.test/c/pay")

    def test_process_wide_resolver_is_shared(self):
        with patch("services.subscription.resolver._resolver_singleton", None):
            first = get_resolver()
            second = get_resolver()
        self.assertIs(first, second)
        self.assertIsInstance(first._records, SupabaseRecordStore)


if __name__ == "__main__":
    unittest.main()
