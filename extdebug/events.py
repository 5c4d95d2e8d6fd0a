"""Navigation and DOM-mutation notifications, delivered through per-tab queues.

The browser side reports page activity as events. Rather than chaining callbacks,
waits subscribe to a tab and pull events off a queue with a timeout, which lets the
settle loop wait on "mutation", "navigation" and "deadline" in one place.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable

logger = logging.getLogger("extdebug.events")


class PageEventKind(Enum):
    MUTATION = "mutation"
    NAVIGATION_STARTED = "navigation_started"
    NAVIGATION_COMPLETED = "navigation_completed"


@dataclass(frozen=True)
class PageEvent:
    kind: PageEventKind
    tab_id: str
    url: str = ""
    same_document: bool = False

    @classmethod
    def from_dict(cls, tab_id: str, raw: Any) -> PageEvent | None:
        """Parse one event frame. Unknown or malformed frames give None."""
        if not isinstance(raw, dict):
            logger.debug("ignoring malformed page event %r", raw)
            return None
        try:
            kind = PageEventKind(raw.get("type"))
        except ValueError:
            logger.debug("ignoring page event of type %r", raw.get("type"))
            return None
        same_document = bool(raw.get("same_document", False))
        # Hash/history changes keep the document, so they count as DOM activity only
        if same_document and kind is not PageEventKind.MUTATION:
            kind = PageEventKind.MUTATION
        return cls(kind, str(raw.get("tab_id") or tab_id), str(raw.get("url") or ""), same_document)

    @property
    def is_navigation(self) -> bool:
        return self.kind in (PageEventKind.NAVIGATION_STARTED, PageEventKind.NAVIGATION_COMPLETED)


class EventSubscription:
    """Events for one tab, buffered from the moment of subscription."""

    def __init__(self, tab_id: str):
        self.tab_id = tab_id
        self._queue: asyncio.Queue[PageEvent] = asyncio.Queue()

    def put(self, event: PageEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> PageEvent | None:
        """Next event, or None once *timeout* seconds pass without one."""
        if timeout is not None and timeout <= 0:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[PageEvent]:
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events


InterestHook = Callable[[str, bool], None]


class PageEventBus:
    def __init__(self, on_interest: InterestHook | None = None):
        self.on_interest = on_interest
        self._listeners: list[Callable[[PageEvent], None]] = []
        self._subscriptions: dict[str, list[EventSubscription]] = {}
        self._retained: Counter[str] = Counter()

    def add_listener(self, callback: Callable[[PageEvent], None]) -> Callable[[], None]:
        """Call *callback* synchronously for every event. Returns a remover."""
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def publish(self, event: PageEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("event listener failed for %s", event.kind.value)
        for subscription in self._subscriptions.get(event.tab_id, ()):
            subscription.put(event)

    @asynccontextmanager
    async def subscribe(self, tab_id: str) -> AsyncIterator[EventSubscription]:
        subscription = EventSubscription(tab_id)
        was_interested = self.is_interested(tab_id)
        self._subscriptions.setdefault(tab_id, []).append(subscription)
        if not was_interested:
            self._notify(tab_id, True)
        try:
            yield subscription
        finally:
            subscribers = self._subscriptions.get(tab_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscriptions.pop(tab_id, None)
            if not self.is_interested(tab_id):
                self._notify(tab_id, False)

    def retain(self, tab_id: str) -> None:
        was_interested = self.is_interested(tab_id)
        self._retained[tab_id] += 1
        if not was_interested:
            self._notify(tab_id, True)

    def release(self, tab_id: str) -> None:
        if self._retained[tab_id] <= 0:
            return
        self._retained[tab_id] -= 1
        if not self._retained[tab_id]:
            del self._retained[tab_id]
        if not self.is_interested(tab_id):
            self._notify(tab_id, False)

    def is_interested(self, tab_id: str) -> bool:
        return bool(self._subscriptions.get(tab_id)) or self._retained[tab_id] > 0

    def _notify(self, tab_id: str, interested: bool) -> None:
        if self.on_interest is not None:
            self.on_interest(tab_id, interested)
