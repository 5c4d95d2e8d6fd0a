"""Turns locator strategies into live node handles."""

from __future__ import annotations

import logging
from typing import Callable

from .browser import BrowserCommandError, NodeHandle, PageDriver, TabClosedError
from .errors import ErrorKind, ResolutionError
from .locators import LocatorKind, LocatorStrategy
from .snapshot import SnapshotStore

logger = logging.getLogger("extdebug.resolver")


class LocatorResolver:
    """Resolves one strategy against one tab.

    UIDs are looked up in the tab's snapshot store. Selector, accessible-name and
    text strategies are queried live; when several elements match, the first in
    document order wins.
    """

    def __init__(self, driver: PageDriver, store_for: Callable[[str], SnapshotStore],
                 tab_id: Callable[[], str]):
        self.driver = driver
        self._store_for = store_for
        self._tab_id = tab_id

    async def resolve(self, target: LocatorStrategy) -> NodeHandle | ResolutionError:
        tab_id = self._tab_id()
        if target.kind is LocatorKind.UID:
            return await self._resolve_uid(tab_id, target.value)

        try:
            matches = await self.driver.query(tab_id, target.kind, target.value)
        except TabClosedError:
            raise
        except BrowserCommandError as exc:
            logger.warning("query %s failed: %s", target.describe(), exc)
            return ResolutionError(
                ErrorKind.COLLABORATOR_UNAVAILABLE,
                f"Could not query the page for {target.describe()}: {exc}",
                target,
            )
        if not matches:
            return ResolutionError(
                ErrorKind.NO_MATCH, f"No element matches {target.describe()}", target
            )
        if len(matches) > 1:
            logger.debug("%s matched %d elements, using the first", target.describe(), len(matches))
        return matches[0]

    async def _resolve_uid(self, tab_id: str, uid: str) -> NodeHandle | ResolutionError:
        store = self._store_for(tab_id)
        if not store.has_history:
            # First UID use in this tab: snapshot implicitly so the lookup has a scope
            try:
                await store.take_snapshot()
            except TabClosedError:
                raise
            except BrowserCommandError as exc:
                return ResolutionError(
                    ErrorKind.COLLABORATOR_UNAVAILABLE,
                    f"Could not snapshot the page to resolve UID {uid}: {exc}",
                    LocatorStrategy.uid(uid),
                )
        return store.lookup(uid)
