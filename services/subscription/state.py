"""
Process-wide entitlement state container.

The resolver owns the `EntitlementStore` and is its only writer. Everything
else receives an `EntitlementReader`, which can read the current snapshot and
subscribe to changes but cannot publish.

Snapshots are immutable. Readers should call `get()` on every gating
decision instead of holding on to an old snapshot.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from schemas.subscription import EntitlementState

logger = logging.getLogger(__name__)

Listener = Callable[[EntitlementState], None]
Unsubscribe = Callable[[], None]


class EntitlementStore:
    def __init__(self, initial: Optional[EntitlementState] = None):
        self._state = initial or EntitlementState()
        self._listeners: List[Listener] = []
        self._reader = EntitlementReader(self)

    @property
    def reader(self) -> "EntitlementReader":
        return self._reader

    def get(self) -> EntitlementState:
        return self._state

    def publish(self, **changes: Any) -> EntitlementState:
        """Replace the snapshot with a copy carrying `changes` and notify listeners."""
        new_state = self._state.model_copy(update=changes)
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("entitlement_listener_failed listener=%r", listener)
        return new_state

    def subscribe(self, listener: Listener) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe


class EntitlementReader:
    """Read-only view handed to feature gates and UI banners."""

    def __init__(self, store: EntitlementStore):
        self._store = store

    def get(self) -> EntitlementState:
        return self._store.get()

    @property
    def is_premium(self) -> bool:
        return self._store.get().is_premium

    def subscribe(self, listener: Listener) -> Unsubscribe:
        return self._store.subscribe(listener)
