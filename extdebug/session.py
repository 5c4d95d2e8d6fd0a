"""Per-client debugging sessions.

A session owns its tab scope and one snapshot store per tab, so two clients
debugging the same browser never see each other's UIDs.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any

from .browser import PageDriver, TabClosedError
from .config import ServerConfig
from .events import PageEvent
from .resolver import LocatorResolver
from .snapshot import SnapshotOptions, SnapshotStore
from .waiting import WaitEngine

logger = logging.getLogger("extdebug.session")


class DebugSession:
    def __init__(self, driver: PageDriver, config: ServerConfig, tab_id: str | None = None):
        self.driver = driver
        self.config = config
        self.extension_id: str | None = None
        self.lock = asyncio.Lock()
        self._tab_id = tab_id
        self._stores: dict[str, SnapshotStore] = {}
        self._watched: set[str] = set()
        self._remove_listener = driver.events.add_listener(self._on_page_event)
        self.resolver = LocatorResolver(driver, self.store_for, lambda: self.tab_id)
        self.waits = WaitEngine(self.resolver, driver, config, lambda: self.tab_id)

    @property
    def tab_id(self) -> str:
        if self._tab_id is None:
            raise RuntimeError("session tab scope not resolved; call ensure_tab() first")
        return self._tab_id

    async def ensure_tab(self) -> str:
        """Pin the session to the browser's active tab on first use."""
        if self._tab_id is None:
            info = await self.driver.page_info(None)
            tab_id = info.get("tab_id") if isinstance(info, dict) else None
            if not tab_id:
                raise TabClosedError(None, "The browser has no active tab")
            self._tab_id = str(tab_id)
            logger.info("session scoped to tab %s", self._tab_id)
        return self._tab_id

    def switch_tab(self, tab_id: str) -> None:
        if self._tab_id is not None and self._tab_id != tab_id:
            self._unwatch(self._tab_id)
        self._tab_id = tab_id

    def forget_tab(self) -> None:
        """Drop the tab scope so the next call pins the active tab again."""
        if self._tab_id is not None:
            self._unwatch(self._tab_id)
        self._tab_id = None

    def store_for(self, tab_id: str) -> SnapshotStore:
        store = self._stores.get(tab_id)
        if store is None:
            store = self._stores[tab_id] = SnapshotStore(self.driver, tab_id)
        if tab_id not in self._watched:
            # Keep navigation events flowing for the tab whose UIDs are in use
            self._watched.add(tab_id)
            self.driver.events.retain(tab_id)
        return store

    def _unwatch(self, tab_id: str) -> None:
        """Stop event delivery for a tab the session leaves.

        Navigations there go unseen from now on, so its snapshot is retired.
        """
        if tab_id not in self._watched:
            return
        self._watched.discard(tab_id)
        self.driver.events.release(tab_id)
        self._stores[tab_id].invalidate()

    def snapshot_options(self, **overrides: Any) -> SnapshotOptions:
        options = {"max_depth": self.config.snapshot_max_depth}
        options.update(overrides)
        return SnapshotOptions(**options)

    def _on_page_event(self, event: PageEvent) -> None:
        if not event.is_navigation:
            return
        store = self._stores.get(event.tab_id)
        if store is not None:
            store.invalidate()

    def close(self) -> None:
        self._remove_listener()
        for tab_id in self._watched:
            self.driver.events.release(tab_id)
        self._watched.clear()
        self._stores.clear()


class SessionRegistry:
    """Maps each client connection to its own session.

    Keys are held weakly: when a connection object goes away, so does its session.
    """

    def __init__(self, driver: PageDriver, config: ServerConfig):
        self.driver = driver
        self.config = config
        self._sessions: weakref.WeakKeyDictionary[Any, DebugSession] = weakref.WeakKeyDictionary()

    def for_client(self, client: Any) -> DebugSession:
        session = self._sessions.get(client)
        if session is None:
            session = DebugSession(self.driver, self.config, tab_id=None)
            self._sessions[client] = session
            weakref.finalize(client, session.close)
        return session

    def __len__(self) -> int:
        return len(self._sessions)
