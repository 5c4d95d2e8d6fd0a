#!/usr/bin/env python3
"""
Extension Debug MCP Server
Exposes snapshot, interaction, wait and extension-inspection tools over the
Model Context Protocol. Connects to the debugging agent's WebSocket server
running in the browser.
"""

import logging
import sys

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from extdebug.browser import WebSocketDriver
from extdebug.config import ServerConfig
from extdebug.errors import ToolCallError
from extdebug.session import SessionRegistry
from extdebug.tools import build_adapter

logger = logging.getLogger("extdebug.server")

config = ServerConfig.from_env()

mcp = FastMCP(
    "extension-debug",
    instructions=(
        "Debugging tools for browser extensions. Start with take_snapshot and act on "
        "elements by uid. Every response ends with ranked next steps; following the "
        "top one is usually the fastest path to a diagnosis."
    ),
)

_driver = WebSocketDriver(config)
_sessions = SessionRegistry(_driver, config)
_adapter = build_adapter()


async def call_tool(ctx: Context, name: str, arguments: dict) -> str:
    """Run a tool for the calling client's session and render the response."""
    session = _sessions.for_client(ctx.session)
    try:
        response = await _adapter.execute(session, name, arguments)
    except ToolCallError as exc:
        raise ToolError(exc.render()) from exc
    return response.render()


def _target(uid: str, selector: str, aria_label: str, text: str) -> dict:
    return {"uid": uid, "selector": selector, "aria_label": aria_label, "text": text}


# ── Snapshot ────────────────────────────────────────────────────


@mcp.tool()
async def take_snapshot(
    ctx: Context,
    include_hidden: bool = False,
    max_depth: int = 0,
    include_text: bool = True,
) -> str:
    """Capture the current page's elements, each labelled with a UID like [3fa1c2d0_4].
    Pass those UIDs to click/fill/hover/wait_for. Taking a new snapshot (or navigating)
    makes all earlier UIDs stale. max_depth=0 uses the server default."""
    args = {"include_hidden": include_hidden, "include_text": include_text}
    if max_depth:
        args["max_depth"] = max_depth
    return await call_tool(ctx, "take_snapshot", args)


# ── Interaction ────────────────────────────────────────────────


@mcp.tool()
async def click(
    ctx: Context, uid: str = "", selector: str = "", aria_label: str = "", text: str = ""
) -> str:
    """Click an element, then wait for the page to settle. Pass exactly one of
    uid (preferred, from take_snapshot), selector, aria_label or text.
    Non-UID locators use the first match in document order."""
    return await call_tool(ctx, "click", _target(uid, selector, aria_label, text))


@mcp.tool()
async def fill(
    ctx: Context,
    value: str,
    uid: str = "",
    selector: str = "",
    aria_label: str = "",
    text: str = "",
) -> str:
    """Set the value of an input/textarea, then wait for the page to settle.
    Pass exactly one of uid, selector, aria_label or text."""
    args = _target(uid, selector, aria_label, text)
    args["value"] = value
    return await call_tool(ctx, "fill", args)


@mcp.tool(name="type")
async def type_text(
    ctx: Context,
    value: str,
    uid: str = "",
    selector: str = "",
    aria_label: str = "",
    text: str = "",
    clear: bool = False,
) -> str:
    """Type value into an element keystroke by keystroke, then wait for the page to
    settle. clear=True empties the field first. Pass exactly one of uid, selector,
    aria_label or text (text locates the element, value is what gets typed)."""
    args = _target(uid, selector, aria_label, text)
    args.update(value=value, clear=clear)
    return await call_tool(ctx, "type", args)


@mcp.tool()
async def fill_form(ctx: Context, fields: list[dict[str, str]]) -> str:
    """Fill several fields in one call, then wait once for the page to settle.
    Each field is an object with one locator (uid, selector, aria_label or text)
    and a value, e.g. [{"uid": "3fa1c2d0_4", "value": "alice"}]. Fields that cannot
    be found are reported; the rest are still filled."""
    return await call_tool(ctx, "fill_form", {"fields": fields})


@mcp.tool()
async def hover(
    ctx: Context, uid: str = "", selector: str = "", aria_label: str = "", text: str = ""
) -> str:
    """Move the pointer over an element, then wait for the page to settle."""
    return await call_tool(ctx, "hover", _target(uid, selector, aria_label, text))


# ── Navigation ──────────────────────────────────────────────────


@mcp.tool()
async def navigate(ctx: Context, url: str) -> str:
    """Navigate the session's tab to a URL and wait for it to load and settle."""
    return await call_tool(ctx, "navigate", {"url": url})


@mcp.tool()
async def list_tabs(ctx: Context) -> str:
    """List open tabs with IDs, titles and URLs."""
    return await call_tool(ctx, "list_tabs", {})


@mcp.tool()
async def switch_tab(ctx: Context, tab_id: str) -> str:
    """Point this session at another tab. Each tab keeps its own snapshot and UIDs."""
    return await call_tool(ctx, "switch_tab", {"tab_id": tab_id})


# ── Waiting ─────────────────────────────────────────────────────


@mcp.tool()
async def wait_for(
    ctx: Context,
    uid: str = "",
    selector: str = "",
    aria_label: str = "",
    text: str = "",
    timeout_ms: int = 0,
) -> str:
    """Wait until any of the given locators matches. All given locators are tried
    concurrently and the first match wins. timeout_ms=0 uses the default (30s).
    Timeouts are reported in the result, not raised."""
    args = _target(uid, selector, aria_label, text)
    if timeout_ms:
        args["timeout_ms"] = timeout_ms
    return await call_tool(ctx, "wait_for", args)


@mcp.tool()
async def wait_for_extension_ready(
    ctx: Context,
    extension_id: str,
    check_storage: bool = True,
    check_runtime: bool = True,
    check_permissions: bool = False,
    timeout_ms: int = 0,
) -> str:
    """Poll an extension until the selected APIs (chrome.storage, chrome.runtime,
    chrome.permissions) are available. Partial readiness is reported per check."""
    args = {
        "extension_id": extension_id,
        "check_storage": check_storage,
        "check_runtime": check_runtime,
        "check_permissions": check_permissions,
    }
    if timeout_ms:
        args["timeout_ms"] = timeout_ms
    return await call_tool(ctx, "wait_for_extension_ready", args)


# ── Console / Network ──────────────────────────────────────────


@mcp.tool()
async def get_console_logs(ctx: Context, level: str = "") -> str:
    """Get console messages from the session's tab, optionally only one level
    (error, warning, info, log, debug)."""
    return await call_tool(ctx, "get_console_logs", {"level": level})


@mcp.tool()
async def list_network_requests(ctx: Context, limit: int = 50, min_status: int = 0) -> str:
    """List recent network requests of the session's tab. min_status=400 shows failures only."""
    return await call_tool(
        ctx, "list_network_requests", {"limit": limit, "min_status": min_status}
    )


@mcp.tool()
async def get_network_request(ctx: Context, request_id: str) -> str:
    """Get the full record of one network request by its id."""
    return await call_tool(ctx, "get_network_request", {"request_id": request_id})


# ── Extensions ──────────────────────────────────────────────────


@mcp.tool()
async def list_extensions(ctx: Context) -> str:
    """List installed extensions with id, name, version, enabled state and error count."""
    return await call_tool(ctx, "list_extensions", {})


@mcp.tool()
async def get_extension_logs(
    ctx: Context, extension_id: str, levels: list[str] | None = None
) -> str:
    """Get log entries from an extension's background/service worker context.
    levels filters by level, e.g. ["error", "warning"]."""
    return await call_tool(
        ctx, "get_extension_logs", {"extension_id": extension_id, "levels": levels}
    )


@mcp.tool()
async def evaluate(ctx: Context, expression: str, extension_id: str = "") -> str:
    """Evaluate JavaScript in the page, or in an extension's context when
    extension_id is given. Page evaluation waits for the DOM to settle afterwards."""
    return await call_tool(
        ctx, "evaluate", {"expression": expression, "extension_id": extension_id}
    )


# ── Entry Point ─────────────────────────────────────────────────


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,  # stdout carries the protocol
    )
    logger.info("extension-debug server starting (transport=%s, browser=%s)",
                config.transport, config.ws_url)
    mcp.run(transport=config.transport)


if __name__ == "__main__":
    main()
