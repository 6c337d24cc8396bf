"""Current account identity as seen by the subscription resolver."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountSnapshot:
    user_id: Optional[str] = None
    is_anonymous: bool = True


AccountListener = Callable[[AccountSnapshot], Awaitable[None]]


class AccountSession:
    """
    Holds the signed-in user's id and anonymous/linked flag.

    Listeners fire on every change: sign-in, sign-out and identity linking
    (anonymous -> linked keeps the id but flips the flag).
    """

    def __init__(self) -> None:
        self._current = AccountSnapshot()
        self._listeners: List[AccountListener] = []

    @property
    def current(self) -> AccountSnapshot:
        return self._current

    @property
    def user_id(self) -> Optional[str]:
        return self._current.user_id

    @property
    def is_anonymous(self) -> bool:
        return self._current.is_anonymous

    def subscribe(self, listener: AccountListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def set_user(self, user_id: Optional[str], *, is_anonymous: bool = True) -> None:
        snapshot = AccountSnapshot(user_id=user_id or None, is_anonymous=is_anonymous if user_id else True)
        if snapshot == self._current:
            return
        self._current = snapshot
        logger.info("account_changed user_id=%s anonymous=%s", snapshot.user_id, snapshot.is_anonymous)
        for listener in list(self._listeners):
            try:
                await listener(snapshot)
            except Exception:
                logger.exception("account_listener_failed")

    async def clear(self) -> None:
        await self.set_user(None)
