from __future__ import annotations

import logging
import webbrowser
from typing import Protocol

logger = logging.getLogger(__name__)


class Navigator(Protocol):
    def open(self, url: str) -> None: ...


class BrowserNavigator:
    """Hands checkout / portal URLs to the platform's default browser."""

    def open(self, url: str) -> None:
        if not webbrowser.open(url):
            logger.warning("browser_open_failed")
