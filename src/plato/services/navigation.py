"""
Navigation for hosts of the acceptance flow.

Navigators move the caller somewhere; redirect schedulers do it after a delay
and can be cancelled when the host goes away first.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class Navigator(ABC):
    """Sends the caller to another location."""

    @abstractmethod
    def redirect(self, url: str) -> None:
        ...


class RecordingNavigator(Navigator):
    """
    Remembers where the caller should go.

    Used by HTTP hosts that turn the last location into a response.
    """

    def __init__(self):
        self.location: Optional[str] = None

    def redirect(self, url: str) -> None:
        self.location = url


class RedirectScheduler(ABC):
    """Schedules a single delayed redirect."""

    @abstractmethod
    def schedule(self, url: str, delay: float) -> None:
        ...

    @abstractmethod
    def cancel(self) -> None:
        ...

    @property
    @abstractmethod
    def pending(self) -> bool:
        ...


class LoopRedirectScheduler(RedirectScheduler):
    """Fires the redirect from the running asyncio loop."""

    def __init__(self, navigator: Navigator):
        self.navigator = navigator
        self._handle: Optional[asyncio.TimerHandle] = None

    def schedule(self, url: str, delay: float) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, url)
        logger.debug(f"Redirect to {url} scheduled in {delay}s")

    def _fire(self, url: str) -> None:
        self._handle = None
        self.navigator.redirect(url)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.debug("Scheduled redirect cancelled")

    @property
    def pending(self) -> bool:
        return self._handle is not None


class DeferredRedirect(RedirectScheduler):
    """
    Records the redirect for a host that performs it itself.

    The HTTP surface hands `url`/`delay` to the browser.
    """

    def __init__(self):
        self.url: Optional[str] = None
        self.delay: Optional[float] = None

    def schedule(self, url: str, delay: float) -> None:
        self.url = url
        self.delay = delay

    def cancel(self) -> None:
        self.url = None
        self.delay = None

    @property
    def pending(self) -> bool:
        return self.url is not None
