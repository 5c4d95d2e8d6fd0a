"""Ambient context blocks attached to tool responses."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .snapshot import Snapshot

if TYPE_CHECKING:
    from .session import DebugSession

logger = logging.getLogger("extdebug.context")

CONSOLE_LIMIT = 10
NETWORK_LIMIT = 10


class ContextBlock(Enum):
    CURRENT_PAGE = "current_page"
    OPEN_TABS = "open_tabs"
    EXTENSION_STATUS = "extension_status"
    CONSOLE_MESSAGES = "console_messages"
    NETWORK_REQUESTS = "network_requests"
    PAGE_SNAPSHOT = "page_snapshot"


@dataclass(frozen=True)
class ContextPolicy:
    """Which context blocks a tool is eligible for. Declared once per tool."""

    blocks: frozenset[ContextBlock] = frozenset()

    @classmethod
    def of(cls, *blocks: ContextBlock) -> ContextPolicy:
        return cls(frozenset(blocks))

    def allows(self, block: ContextBlock) -> bool:
        return block in self.blocks


@dataclass
class ResponseContext:
    current_page: dict[str, Any] | None = None
    open_tabs: list[dict[str, Any]] | None = None
    extension_status: dict[str, Any] | None = None
    console_messages: list[dict[str, Any]] | None = None
    network_requests: list[dict[str, Any]] | None = None
    page_snapshot: Snapshot | None = None

    def present(self) -> list[ContextBlock]:
        return [ContextBlock(f.name) for f in fields(self) if getattr(self, f.name) is not None]

    def set(self, block: ContextBlock, value: Any) -> None:
        setattr(self, block.value, value)

    def get(self, block: ContextBlock) -> Any:
        return getattr(self, block.value)


# ── Collectors ──────────────────────────────────────────────────


async def _current_page(session: DebugSession) -> dict[str, Any]:
    return await session.driver.page_info(session.tab_id)


async def _open_tabs(session: DebugSession) -> list[dict[str, Any]]:
    return await session.driver.list_tabs()


async def _extension_status(session: DebugSession) -> dict[str, Any]:
    return await session.driver.extension_status(session.extension_id)


async def _console_messages(session: DebugSession) -> list[dict[str, Any]]:
    messages = await session.driver.console_messages(session.tab_id)
    notable = [m for m in messages if str(m.get("level", "")).lower() in ("error", "warning")]
    return notable[-CONSOLE_LIMIT:]


async def _network_requests(session: DebugSession) -> list[dict[str, Any]]:
    return await session.driver.network_requests(session.tab_id, limit=NETWORK_LIMIT)


async def _page_snapshot(session: DebugSession) -> Snapshot:
    return await session.store_for(session.tab_id).take_snapshot(session.snapshot_options())


COLLECTORS: dict[ContextBlock, Callable[[DebugSession], Awaitable[Any]]] = {
    ContextBlock.CURRENT_PAGE: _current_page,
    ContextBlock.OPEN_TABS: _open_tabs,
    ContextBlock.EXTENSION_STATUS: _extension_status,
    ContextBlock.CONSOLE_MESSAGES: _console_messages,
    ContextBlock.NETWORK_REQUESTS: _network_requests,
    ContextBlock.PAGE_SNAPSHOT: _page_snapshot,
}


# ── Rendering ───────────────────────────────────────────────────


def _render_current_page(page: dict[str, Any]) -> list[str]:
    lines = [f"URL: {page.get('url', '')}", f"Title: {page.get('title', '')}"]
    if page.get("http_status"):
        lines.append(f"HTTP status: {page['http_status']}")
    if page.get("loading"):
        lines.append("Still loading")
    return lines


def _render_open_tabs(tabs: list[dict[str, Any]]) -> list[str]:
    if not tabs:
        return ["(no open tabs)"]
    lines = []
    for i, tab in enumerate(tabs):
        selected = " [selected]" if tab.get("active") or tab.get("selected") else ""
        lines.append(f"{i}: {tab.get('id', '?')} {tab.get('url', '')}{selected}")
    return lines


def _render_extension_status(status: dict[str, Any]) -> list[str]:
    name = status.get("name") or status.get("id", "")
    version = f" v{status['version']}" if status.get("version") else ""
    enabled = "enabled" if status.get("enabled", True) else "disabled"
    lines = [f"{name}{version} ({enabled})"]
    if status.get("id") and status.get("id") != name:
        lines.append(f"ID: {status['id']}")
    errors = status.get("errors")
    if errors:
        count = len(errors) if isinstance(errors, list) else errors
        lines.append(f"Errors: {count}")
    return lines


def _render_console(messages: list[dict[str, Any]]) -> list[str]:
    if not messages:
        return ["(no errors or warnings)"]
    return [f"[{m.get('level', 'log')}] {m.get('message', '')}" for m in messages]


def _render_network(requests: list[dict[str, Any]]) -> list[str]:
    if not requests:
        return ["(no requests captured)"]
    return [
        f"{r.get('method', 'GET')} {r.get('url', '')} -> {r.get('status', 'pending')}"
        + (f" (id {r['id']})" if r.get("id") else "")
        for r in requests
    ]


def _render_snapshot(snapshot: Snapshot) -> list[str]:
    return snapshot.to_text().splitlines()


SECTIONS: dict[ContextBlock, tuple[str, Callable[[Any], list[str]]]] = {
    ContextBlock.CURRENT_PAGE: ("Current Page", _render_current_page),
    ContextBlock.OPEN_TABS: ("Open Tabs", _render_open_tabs),
    ContextBlock.EXTENSION_STATUS: ("Extension Status", _render_extension_status),
    ContextBlock.CONSOLE_MESSAGES: ("Console Messages", _render_console),
    ContextBlock.NETWORK_REQUESTS: ("Network Requests", _render_network),
    ContextBlock.PAGE_SNAPSHOT: ("Page Snapshot", _render_snapshot),
}
