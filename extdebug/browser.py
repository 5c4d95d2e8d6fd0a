"""Browser collaborator: the DOM, tab and extension primitives the core consumes.

`WebSocketDriver` talks to the in-browser agent over a single WebSocket using
``{"id", "method", "params"}`` frames. Everything above this module only sees the
`PageDriver` protocol, so tests substitute an in-memory page.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

import websockets

from .config import ServerConfig
from .errors import EntityNotFound
from .events import PageEvent, PageEventBus
from .locators import LocatorKind

logger = logging.getLogger("extdebug.browser")

SESSION_HEADER = "X-ExtDebug-Session"


class BrowserCommandError(Exception):
    """The browser answered a command with an error."""

    def __init__(self, message: str, code: str = ""):
        self.code = code
        super().__init__(message)


class BrowserUnavailableError(BrowserCommandError):
    """The browser agent could not be reached, even after reconnecting."""


class TabClosedError(BrowserCommandError):
    def __init__(self, tab_id: str | None, message: str = ""):
        self.tab_id = tab_id
        super().__init__(message or f"Tab {tab_id} is closed", code="tab_not_found")


@dataclass(frozen=True)
class NodeHandle:
    """A live, actionable reference to one element in one tab."""

    tab_id: str
    node_id: str
    tag_name: str = ""


class PageDriver(Protocol):
    events: PageEventBus

    async def walk_dom(self, tab_id: str, *, max_depth: int, include_hidden: bool,
                       include_text: bool) -> list[dict[str, Any]]: ...

    async def query(self, tab_id: str, kind: LocatorKind, value: str) -> list[NodeHandle]: ...

    async def perform(self, handle: NodeHandle, action: str,
                      value: str | None = None) -> dict[str, Any]: ...

    async def navigate(self, tab_id: str, url: str) -> dict[str, Any]: ...

    async def evaluate(self, tab_id: str, expression: str) -> Any: ...

    async def evaluate_in_extension(self, extension_id: str, expression: str) -> Any: ...

    async def list_tabs(self) -> list[dict[str, Any]]: ...

    async def page_info(self, tab_id: str | None) -> dict[str, Any]: ...

    async def console_messages(self, tab_id: str,
                               level: str | None = None) -> list[dict[str, Any]]: ...

    async def network_requests(self, tab_id: str, limit: int = 50) -> list[dict[str, Any]]: ...

    async def list_extensions(self) -> list[dict[str, Any]]: ...

    async def extension_status(self, extension_id: str) -> dict[str, Any]: ...

    async def extension_logs(self, extension_id: str,
                             levels: tuple[str, ...] = ()) -> list[dict[str, Any]]: ...


_QUERY_METHODS = {
    LocatorKind.SELECTOR: "selector",
    LocatorKind.ARIA_LABEL: "aria",
    LocatorKind.TEXT: "text",
}


def _items(result: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        return list(result.get(key) or [])
    return []


class WebSocketDriver:
    """Shared connection to the browser agent, used by every session."""

    def __init__(self, config: ServerConfig):
        self.config = config
        self.events = PageEventBus(on_interest=self._on_interest)
        self._ws_connection = None
        self._ws_lock = asyncio.Lock()
        self._ws_command_lock = asyncio.Lock()
        self._session_id: str | None = None  # Populated from the session header after connect
        self._pumps: dict[str, asyncio.Task] = {}

    async def get_ws(self):
        """Get or create the WebSocket connection to the browser.

        Reconnection strategy:
        1. If EXTDEBUG_SESSION_ID is set, always join that session
        2. If we previously connected and have a saved session id, rejoin it
        3. Otherwise create a new session via /new
        """
        async with self._ws_lock:
            if self._ws_connection is not None:
                try:
                    await self._ws_connection.ping()
                    return self._ws_connection
                except Exception:
                    logger.warning("browser connection lost, reconnecting")
                    await self._drop_connection()

            reconnect_id = self.config.session_id or self._session_id
            if reconnect_id:
                url = f"{self.config.ws_url}/session/{reconnect_id}"
            else:
                url = f"{self.config.ws_url}/new"

            try:
                self._ws_connection = await self._connect(url)
            except Exception:
                if reconnect_id and not self.config.session_id:
                    # Session expired on the browser side; start a fresh one
                    self._session_id = None
                    self._ws_connection = await self._connect(f"{self.config.ws_url}/new")
                else:
                    raise

            headers = None
            if getattr(self._ws_connection, "response", None):
                headers = self._ws_connection.response.headers
            elif hasattr(self._ws_connection, "response_headers"):
                headers = self._ws_connection.response_headers
            if headers:
                self._session_id = headers.get(SESSION_HEADER) or self._session_id

            return self._ws_connection

    async def _connect(self, url: str):
        return await websockets.connect(
            url,
            max_size=10 * 1024 * 1024,
            ping_interval=30,
            ping_timeout=120,  # the browser may be busy
        )

    async def _drop_connection(self) -> None:
        old_ws, self._ws_connection = self._ws_connection, None
        if old_ws is not None:
            try:
                await old_ws.close()
            except Exception:
                logger.debug("closing stale connection failed", exc_info=True)

    async def browser_command(self, method: str, params: dict | None = None) -> Any:
        """Send a command to the browser and return its result.

        Retries once on connection-level failure (reconnects to the same session).
        Browser-level errors (e.g. "Tab not found") are never retried.
        """
        params = params or {}
        async with self._ws_command_lock:
            for attempt in range(2):
                try:
                    ws = await self.get_ws()
                    msg_id = str(uuid4())
                    await ws.send(json.dumps({"id": msg_id, "method": method, "params": params}))
                    resp = await asyncio.wait_for(
                        self._recv_reply(ws, msg_id), timeout=self.config.command_timeout
                    )
                except Exception as exc:
                    if attempt == 0:
                        logger.warning("browser command %s failed (%s), retrying", method, exc)
                        await self._drop_connection()
                        continue
                    raise BrowserUnavailableError(
                        f"Browser unreachable at {self.config.ws_url}: {exc or type(exc).__name__}"
                    ) from exc
                if "error" in resp:
                    raise self._command_error(resp["error"], params)
                return resp.get("result", {})
        raise RuntimeError("browser_command: unreachable")

    async def _recv_reply(self, ws, msg_id: str) -> dict:
        while True:
            frame = json.loads(await ws.recv())
            if not isinstance(frame, dict):
                logger.debug("dropping non-object frame %r", frame)
                continue
            if "event" in frame:
                self._publish("", frame["event"])
                continue
            if frame.get("id") not in (None, msg_id):
                # Reply to a command abandoned by a cancelled caller
                logger.debug("dropping reply for %s", frame.get("id"))
                continue
            return frame

    @staticmethod
    def _command_error(error: dict, params: dict) -> Exception:
        message = error.get("message", "Unknown browser error")
        code = error.get("code", "")
        if code == "tab_not_found":
            return TabClosedError(params.get("tab_id"), message)
        if code == "extension_not_found":
            return EntityNotFound("extension", params.get("extension_id", ""))
        return BrowserCommandError(message, code)

    # ── Event pump ──────────────────────────────────────────────

    def _publish(self, tab_id: str, raw: Any) -> None:
        event = PageEvent.from_dict(tab_id, raw)
        if event is not None:
            self.events.publish(event)

    def _on_interest(self, tab_id: str, interested: bool) -> None:
        if interested:
            task = self._pumps.get(tab_id)
            if task is None or task.done():
                self._pumps[tab_id] = asyncio.get_running_loop().create_task(
                    self._pump(tab_id)
                )
        else:
            task = self._pumps.pop(tab_id, None)
            if task is not None:
                task.cancel()

    async def _pump(self, tab_id: str) -> None:
        while True:
            try:
                result = await self.browser_command("drain_page_events", {"tab_id": tab_id})
            except TabClosedError:
                logger.info("tab %s closed, no longer watching events", tab_id)
                self._pumps.pop(tab_id, None)
                return
            except BrowserCommandError as exc:
                logger.debug("event drain for %s failed: %s", tab_id, exc)
                result = {}
            for raw in _items(result, "events"):
                try:
                    self._publish(tab_id, raw)
                except Exception:
                    logger.exception("dropping page event for %s", tab_id)
            await asyncio.sleep(self.config.event_poll_interval)

    async def close(self) -> None:
        for task in self._pumps.values():
            task.cancel()
        await asyncio.gather(*self._pumps.values(), return_exceptions=True)
        self._pumps.clear()
        await self._drop_connection()

    # ── PageDriver ──────────────────────────────────────────────

    async def walk_dom(self, tab_id: str, *, max_depth: int, include_hidden: bool,
                       include_text: bool) -> list[dict[str, Any]]:
        result = await self.browser_command("walk_dom", {
            "tab_id": tab_id,
            "max_depth": max_depth,
            "include_hidden": include_hidden,
            "include_text": include_text,
        })
        return _items(result, "nodes")

    async def query(self, tab_id: str, kind: LocatorKind, value: str) -> list[NodeHandle]:
        result = await self.browser_command(
            "query_nodes", {"tab_id": tab_id, "by": _QUERY_METHODS[kind], "value": value}
        )
        return [
            NodeHandle(tab_id, str(node["node_id"]), node.get("tag", ""))
            for node in _items(result, "nodes")
        ]

    async def perform(self, handle: NodeHandle, action: str,
                      value: str | None = None) -> dict[str, Any]:
        params = {"tab_id": handle.tab_id, "node_id": handle.node_id, "action": action}
        if value is not None:
            params["value"] = value
        return await self.browser_command("node_action", params)

    async def navigate(self, tab_id: str, url: str) -> dict[str, Any]:
        return await self.browser_command("navigate", {"tab_id": tab_id, "url": url})

    async def evaluate(self, tab_id: str, expression: str) -> Any:
        result = await self.browser_command(
            "console_evaluate", {"tab_id": tab_id, "expression": expression}
        )
        if isinstance(result, dict) and "error" in result:
            raise BrowserCommandError(result["error"], "evaluation_failed")
        return result.get("result") if isinstance(result, dict) else result

    async def evaluate_in_extension(self, extension_id: str, expression: str) -> Any:
        result = await self.browser_command(
            "extension_evaluate", {"extension_id": extension_id, "expression": expression}
        )
        if isinstance(result, dict) and "error" in result:
            raise BrowserCommandError(result["error"], "evaluation_failed")
        return result.get("result") if isinstance(result, dict) else result

    async def list_tabs(self) -> list[dict[str, Any]]:
        return _items(await self.browser_command("list_tabs"), "tabs")

    async def page_info(self, tab_id: str | None) -> dict[str, Any]:
        return await self.browser_command("get_page_info", {"tab_id": tab_id})

    async def console_messages(self, tab_id: str,
                               level: str | None = None) -> list[dict[str, Any]]:
        params = {"tab_id": tab_id}
        if level:
            params["level"] = level
        return _items(await self.browser_command("console_get_logs", params), "logs")

    async def network_requests(self, tab_id: str, limit: int = 50) -> list[dict[str, Any]]:
        result = await self.browser_command("network_get_log", {"tab_id": tab_id, "limit": limit})
        return _items(result, "requests")

    async def list_extensions(self) -> list[dict[str, Any]]:
        return _items(await self.browser_command("list_extensions"), "extensions")

    async def extension_status(self, extension_id: str) -> dict[str, Any]:
        return await self.browser_command("extension_status", {"extension_id": extension_id})

    async def extension_logs(self, extension_id: str,
                             levels: tuple[str, ...] = ()) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"extension_id": extension_id}
        if levels:
            params["levels"] = list(levels)
        return _items(await self.browser_command("extension_logs", params), "logs")
