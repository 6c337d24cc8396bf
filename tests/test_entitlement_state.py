import asyncio
import unittest

from pydantic import ValidationError

from schemas.subscription import EntitlementState, LoadingState
from services.subscription.account import AccountSession, AccountSnapshot
from services.subscription.state import EntitlementReader, EntitlementStore


class TestEntitlementStore(unittest.TestCase):
    def test_publish_replaces_snapshot_and_keeps_other_fields(self):
        store = EntitlementStore()
        store.publish(checkout_loading=True)
        first = store.get()

        second = store.publish(is_premium=True, loading=LoadingState.RESOLVED)

        self.assertIsNot(first, second)
        self.assertTrue(second.checkout_loading)
        self.assertTrue(second.is_premium)
        self.assertFalse(first.is_premium)

    def test_snapshots_are_immutable(self):
        state = EntitlementState()
        with self.assertRaises(ValidationError):
            state.is_premium = True

    def test_reader_cannot_publish(self):
        store = EntitlementStore()
        reader = store.reader
        self.assertIsInstance(reader, EntitlementReader)
        self.assertFalse(hasattr(reader, "publish"))

    def test_reader_sees_latest_state(self):
        store = EntitlementStore()
        reader = store.reader
        self.assertFalse(reader.is_premium)
        store.publish(is_premium=True)
        self.assertTrue(reader.is_premium)
        self.assertTrue(reader.get().is_premium)

    def test_subscribe_and_unsubscribe(self):
        store = EntitlementStore()
        seen = []
        unsubscribe = store.reader.subscribe(lambda s: seen.append(s.is_premium))

        store.publish(is_premium=True)
        unsubscribe()
        unsubscribe()
        store.publish(is_premium=False)

        self.assertEqual(seen, [True])

    def test_failing_listener_does_not_block_others(self):
        store = EntitlementStore()
        seen = []

        def _boom(_state):
            raise RuntimeError("render failed")

        store.subscribe(_boom)
        store.subscribe(lambda s: seen.append(s.loading))

        with self.assertLogs("services.subscription.state", level="ERROR"):
            store.publish(loading=LoadingState.CHECKING)

        self.assertEqual(seen, [LoadingState.CHECKING])


class TestAccountSession(unittest.TestCase):
    def test_listeners_fire_on_changes_only(self):
        account = AccountSession()
        seen = []

        async def _listener(snapshot):
            seen.append(snapshot)

        account.subscribe(_listener)

        async def _run():
            await account.set_user("U1")
            await account.set_user("U1")
            await account.set_user("U1", is_anonymous=False)
            await account.clear()
            await account.clear()

        asyncio.run(_run())

        self.assertEqual(
            seen,
            [
                AccountSnapshot("U1", True),
                AccountSnapshot("U1", False),
                AccountSnapshot(None, True),
            ],
        )
        self.assertIsNone(account.user_id)
        self.assertTrue(account.is_anonymous)

    def test_failing_listener_is_logged(self):
        account = AccountSession()
        seen = []

        async def _boom(_snapshot):
            raise RuntimeError("listener broke")

        async def _ok(snapshot):
            seen.append(snapshot.user_id)

        account.subscribe(_boom)
        account.subscribe(_ok)

        with self.assertLogs("services.subscription.account", level="ERROR"):
            asyncio.run(account.set_user("U9"))

        self.assertEqual(seen, ["U9"])


if __name__ == "__main__":
    unittest.main()
