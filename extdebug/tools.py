"""Debugging tools: argument structs, handlers, and the default registry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .adapter import ToolExecutionAdapter, ToolSpec
from .browser import BrowserCommandError, BrowserUnavailableError, NodeHandle, TabClosedError
from .context import ContextBlock, ContextPolicy
from .errors import (
    EntityNotFound,
    ErrorKind,
    InvalidArguments,
    ResolutionError,
    ToolFailure,
    ToolFailureError,
)
from .locators import (
    LocatorStrategy,
    get_bool,
    get_int,
    get_str,
    get_str_list,
    strategies_from_arguments,
    target_from_arguments,
)
from .session import DebugSession
from .snapshot import Snapshot
from .waiting import ExtensionCheck, ExtensionReadiness, WaitOutcome

LOG_LEVELS = ("error", "warning", "info", "log", "debug")
MAX_SNAPSHOT_DEPTH = 50


def _levels(tool: str, arguments: dict[str, Any], key: str) -> tuple[str, ...]:
    levels = tuple(level.lower() for level in get_str_list(tool, arguments, key))
    unknown = [level for level in levels if level not in LOG_LEVELS]
    if unknown:
        raise InvalidArguments(
            tool, f"Unknown log level(s): {', '.join(unknown)}",
            suggestion="Use any of " + ", ".join(LOG_LEVELS),
        )
    return levels


# ── Argument structs ────────────────────────────────────────────


@dataclass(frozen=True)
class NoArgs:
    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> NoArgs:
        return cls()


@dataclass(frozen=True)
class SnapshotArgs:
    include_hidden: bool = False
    max_depth: int | None = None
    include_text: bool = True

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> SnapshotArgs:
        max_depth = arguments.get("max_depth")
        if max_depth is not None:
            max_depth = get_int("take_snapshot", arguments, "max_depth", 0, minimum=1)
            if max_depth > MAX_SNAPSHOT_DEPTH:
                raise InvalidArguments(
                    "take_snapshot", f"'max_depth' must be <= {MAX_SNAPSHOT_DEPTH}"
                )
        return cls(
            include_hidden=get_bool("take_snapshot", arguments, "include_hidden", False),
            max_depth=max_depth,
            include_text=get_bool("take_snapshot", arguments, "include_text", True),
        )


@dataclass(frozen=True)
class TargetArgs:
    target: LocatorStrategy

    @classmethod
    def for_tool(cls, tool: str):
        return lambda arguments: cls(target_from_arguments(tool, arguments))


@dataclass(frozen=True)
class FillArgs:
    target: LocatorStrategy
    value: str

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> FillArgs:
        value = arguments.get("value")
        if not isinstance(value, str):
            raise InvalidArguments("fill", "'value' is required and must be a string")
        return cls(target_from_arguments("fill", arguments), value)


@dataclass(frozen=True)
class TypeArgs:
    target: LocatorStrategy
    value: str
    clear: bool = False

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> TypeArgs:
        value = arguments.get("value")
        if not isinstance(value, str) or value == "":
            raise InvalidArguments(
                "type", "'value' is required and must be a non-empty string",
                suggestion="Use fill to set an exact value, including an empty one",
            )
        return cls(
            target_from_arguments("type", arguments),
            value,
            get_bool("type", arguments, "clear", False),
        )


@dataclass(frozen=True)
class FillFormArgs:
    fields: tuple[tuple[LocatorStrategy, str], ...]

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> FillFormArgs:
        raw = arguments.get("fields")
        if not isinstance(raw, list) or not raw:
            raise InvalidArguments(
                "fill_form", "'fields' must be a non-empty list of {locator, value} objects",
                suggestion='e.g. fields=[{"uid": "a1b2c3d4_5", "value": "alice"}]',
            )
        fields = []
        for i, item in enumerate(raw):
            if not isinstance(item, dict):
                raise InvalidArguments("fill_form", "each field must be an object",
                                       details={"field": i})
            value = item.get("value")
            if not isinstance(value, str):
                raise InvalidArguments("fill_form", "'value' is required and must be a string",
                                       details={"field": i})
            try:
                target = target_from_arguments("fill_form", item)
            except InvalidArguments as exc:
                exc.details["field"] = i
                raise
            fields.append((target, value))
        return cls(tuple(fields))


@dataclass(frozen=True)
class NavigateArgs:
    url: str

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> NavigateArgs:
        url = get_str("navigate", arguments, "url", required=True).strip()
        if "://" not in url and not url.startswith(("about:", "data:")):
            raise InvalidArguments(
                "navigate", f"'url' must be absolute, got {url!r}",
                suggestion="Include the scheme, e.g. https://example.com",
            )
        return cls(url)


@dataclass(frozen=True)
class WaitForArgs:
    strategies: tuple[LocatorStrategy, ...]
    timeout_ms: int | None = None

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> WaitForArgs:
        strategies = strategies_from_arguments("wait_for", arguments)
        if not strategies:
            raise InvalidArguments(
                "wait_for", "Pass at least one of uid, selector, aria_label, text",
            )
        timeout_ms = None
        if arguments.get("timeout_ms") is not None:
            timeout_ms = get_int("wait_for", arguments, "timeout_ms", 0, minimum=1)
        return cls(tuple(strategies), timeout_ms)


@dataclass(frozen=True)
class ExtensionReadyArgs:
    extension_id: str
    checks: tuple[ExtensionCheck, ...]
    timeout_ms: int | None = None

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> ExtensionReadyArgs:
        tool = "wait_for_extension_ready"
        selected = {
            ExtensionCheck.STORAGE: get_bool(tool, arguments, "check_storage", True),
            ExtensionCheck.RUNTIME: get_bool(tool, arguments, "check_runtime", True),
            ExtensionCheck.PERMISSIONS: get_bool(tool, arguments, "check_permissions", False),
        }
        checks = tuple(check for check, wanted in selected.items() if wanted)
        if not checks:
            raise InvalidArguments(tool, "Enable at least one of the readiness checks")
        timeout_ms = None
        if arguments.get("timeout_ms") is not None:
            timeout_ms = get_int(tool, arguments, "timeout_ms", 0, minimum=1)
        return cls(get_str(tool, arguments, "extension_id", required=True), checks, timeout_ms)


@dataclass(frozen=True)
class SwitchTabArgs:
    tab_id: str

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> SwitchTabArgs:
        return cls(get_str("switch_tab", arguments, "tab_id", required=True))


@dataclass(frozen=True)
class ConsoleArgs:
    level: str | None = None

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> ConsoleArgs:
        levels = _levels("get_console_logs", arguments, "level")
        if len(levels) > 1:
            raise InvalidArguments("get_console_logs", "'level' takes a single level")
        return cls(levels[0] if levels else None)


@dataclass(frozen=True)
class NetworkArgs:
    limit: int = 50
    min_status: int = 0

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> NetworkArgs:
        return cls(
            limit=get_int("list_network_requests", arguments, "limit", 50, minimum=1),
            min_status=get_int("list_network_requests", arguments, "min_status", 0),
        )


@dataclass(frozen=True)
class RequestArgs:
    request_id: str

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> RequestArgs:
        return cls(get_str("get_network_request", arguments, "request_id", required=True))


@dataclass(frozen=True)
class ExtensionLogsArgs:
    extension_id: str
    levels: tuple[str, ...] = ()

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> ExtensionLogsArgs:
        return cls(
            get_str("get_extension_logs", arguments, "extension_id", required=True),
            _levels("get_extension_logs", arguments, "levels"),
        )


@dataclass(frozen=True)
class EvaluateArgs:
    expression: str
    extension_id: str | None = None

    @classmethod
    def parse(cls, arguments: dict[str, Any]) -> EvaluateArgs:
        return cls(
            get_str("evaluate", arguments, "expression", required=True),
            get_str("evaluate", arguments, "extension_id"),
        )

    @property
    def state_changing(self) -> bool:
        # Page scripts can touch the DOM; extension contexts cannot
        return self.extension_id is None


@dataclass(frozen=True)
class InteractionResult:
    action: str
    target: LocatorStrategy
    tag_name: str
    details: dict[str, Any]

    def to_text(self) -> str:
        past = {
            "click": "Clicked", "fill": "Filled", "type": "Typed into", "hover": "Hovered over",
        }[self.action]
        text = f"{past} <{self.tag_name or 'element'}> by {self.target.describe()}"
        if self.details.get("message"):
            text += f": {self.details['message']}"
        return text


@dataclass(frozen=True)
class FormFillResult:
    filled: tuple[LocatorStrategy, ...]
    failed: tuple[tuple[LocatorStrategy, ToolFailure], ...]

    def to_text(self) -> str:
        total = len(self.filled) + len(self.failed)
        lines = [f"Filled {len(self.filled)} of {total} fields"]
        lines += [f"- {target.describe()}: ok" for target in self.filled]
        lines += [
            f"- {target.describe()}: {failure.kind.value}: {failure.message}"
            for target, failure in self.failed
        ]
        return "\n".join(lines)


# ── Handlers ────────────────────────────────────────────────────


async def take_snapshot(session: DebugSession, args: SnapshotArgs,
                        node: NodeHandle | None) -> Snapshot:
    overrides = {"include_hidden": args.include_hidden, "include_text": args.include_text}
    if args.max_depth is not None:
        overrides["max_depth"] = args.max_depth
    store = session.store_for(session.tab_id)
    return await store.take_snapshot(session.snapshot_options(**overrides))


async def click(session: DebugSession, args: TargetArgs, node: NodeHandle) -> InteractionResult:
    details = await session.driver.perform(node, "click")
    return InteractionResult("click", args.target, node.tag_name, details or {})


async def fill(session: DebugSession, args: FillArgs, node: NodeHandle) -> InteractionResult:
    details = await session.driver.perform(node, "fill", args.value)
    return InteractionResult("fill", args.target, node.tag_name, details or {})


async def type_text(session: DebugSession, args: TypeArgs, node: NodeHandle) -> InteractionResult:
    if args.clear:
        await session.driver.perform(node, "clear")
    details = await session.driver.perform(node, "type", args.value)
    return InteractionResult("type", args.target, node.tag_name, details or {})


async def fill_form(session: DebugSession, args: FillFormArgs,
                    node: NodeHandle | None) -> FormFillResult:
    filled, failed = [], []
    for target, value in args.fields:
        resolved = await session.resolver.resolve(target)
        if isinstance(resolved, ResolutionError):
            failed.append((target, ToolFailure.from_resolution(resolved)))
            continue
        try:
            await session.driver.perform(resolved, "fill", value)
        except (TabClosedError, BrowserUnavailableError):
            raise
        except BrowserCommandError as exc:
            failed.append((target, ToolFailure(ErrorKind.TOOL_FAILED, str(exc), target)))
            continue
        filled.append(target)
    if not filled:
        raise ToolFailureError(failed[0][1])
    return FormFillResult(tuple(filled), tuple(failed))


async def hover(session: DebugSession, args: TargetArgs, node: NodeHandle) -> InteractionResult:
    details = await session.driver.perform(node, "hover")
    return InteractionResult("hover", args.target, node.tag_name, details or {})


async def navigate(session: DebugSession, args: NavigateArgs,
                   node: NodeHandle | None) -> dict[str, Any]:
    return await session.driver.navigate(session.tab_id, args.url)


async def wait_for(session: DebugSession, args: WaitForArgs,
                   node: NodeHandle | None) -> WaitOutcome:
    return await session.waits.wait_for(args.strategies, args.timeout_ms)


async def wait_for_extension_ready(session: DebugSession, args: ExtensionReadyArgs,
                                   node: NodeHandle | None) -> ExtensionReadiness:
    await session.driver.extension_status(args.extension_id)
    session.extension_id = args.extension_id
    return await session.waits.wait_for_extension_ready(
        args.extension_id, args.checks, args.timeout_ms
    )


async def list_tabs(session: DebugSession, args: NoArgs,
                    node: NodeHandle | None) -> list[dict[str, Any]]:
    return await session.driver.list_tabs()


async def switch_tab(session: DebugSession, args: SwitchTabArgs,
                     node: NodeHandle | None) -> dict[str, Any]:
    tabs = await session.driver.list_tabs()
    if not any(str(tab.get("id")) == args.tab_id for tab in tabs):
        raise EntityNotFound("tab", args.tab_id)
    session.switch_tab(args.tab_id)
    return {"tab_id": args.tab_id, "switched": True}


async def get_console_logs(session: DebugSession, args: ConsoleArgs,
                           node: NodeHandle | None) -> list[dict[str, Any]]:
    return await session.driver.console_messages(session.tab_id, args.level)


async def list_network_requests(session: DebugSession, args: NetworkArgs,
                                node: NodeHandle | None) -> list[dict[str, Any]]:
    requests = await session.driver.network_requests(session.tab_id, limit=args.limit)
    if args.min_status:
        requests = [r for r in requests if int(r.get("status") or 0) >= args.min_status]
    return requests


async def get_network_request(session: DebugSession, args: RequestArgs,
                              node: NodeHandle | None) -> dict[str, Any]:
    for request in await session.driver.network_requests(session.tab_id, limit=500):
        if str(request.get("id")) == args.request_id:
            return request
    raise EntityNotFound("request", args.request_id)


async def list_extensions(session: DebugSession, args: NoArgs,
                          node: NodeHandle | None) -> list[dict[str, Any]]:
    return await session.driver.list_extensions()


async def get_extension_logs(session: DebugSession, args: ExtensionLogsArgs,
                             node: NodeHandle | None) -> list[dict[str, Any]]:
    logs = await session.driver.extension_logs(args.extension_id, args.levels)
    session.extension_id = args.extension_id
    return logs


async def evaluate(session: DebugSession, args: EvaluateArgs, node: NodeHandle | None) -> Any:
    if args.extension_id:
        result = await session.driver.evaluate_in_extension(args.extension_id, args.expression)
        session.extension_id = args.extension_id
        return result
    return await session.driver.evaluate(session.tab_id, args.expression)


# ── Registry ────────────────────────────────────────────────────

_PAGE = ContextBlock.CURRENT_PAGE
_TABS = ContextBlock.OPEN_TABS
_EXTENSION = ContextBlock.EXTENSION_STATUS
_CONSOLE = ContextBlock.CONSOLE_MESSAGES
_NETWORK = ContextBlock.NETWORK_REQUESTS
_SNAPSHOT = ContextBlock.PAGE_SNAPSHOT

DEFAULT_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec("take_snapshot", take_snapshot, SnapshotArgs.parse, ContextPolicy.of(_PAGE)),
    ToolSpec("click", click, TargetArgs.for_tool("click"),
             ContextPolicy.of(_PAGE, _SNAPSHOT, _CONSOLE),
             targets_element=True, state_changing=True),
    ToolSpec("fill", fill, FillArgs.parse, ContextPolicy.of(_PAGE, _SNAPSHOT),
             targets_element=True, state_changing=True),
    ToolSpec("type", type_text, TypeArgs.parse, ContextPolicy.of(_PAGE, _SNAPSHOT),
             targets_element=True, state_changing=True),
    ToolSpec("fill_form", fill_form, FillFormArgs.parse, ContextPolicy.of(_PAGE, _SNAPSHOT),
             state_changing=True),
    ToolSpec("hover", hover, TargetArgs.for_tool("hover"), ContextPolicy.of(_SNAPSHOT),
             targets_element=True, state_changing=True),
    ToolSpec("navigate", navigate, NavigateArgs.parse,
             ContextPolicy.of(_PAGE, _TABS, _CONSOLE, _NETWORK),
             state_changing=True, navigates=True),
    ToolSpec("wait_for", wait_for, WaitForArgs.parse, ContextPolicy.of(_PAGE)),
    ToolSpec("wait_for_extension_ready", wait_for_extension_ready, ExtensionReadyArgs.parse,
             ContextPolicy.of(_EXTENSION)),
    ToolSpec("list_tabs", list_tabs, NoArgs.parse),
    ToolSpec("switch_tab", switch_tab, SwitchTabArgs.parse, ContextPolicy.of(_PAGE)),
    ToolSpec("get_console_logs", get_console_logs, ConsoleArgs.parse, ContextPolicy.of(_PAGE)),
    ToolSpec("list_network_requests", list_network_requests, NetworkArgs.parse,
             ContextPolicy.of(_PAGE)),
    ToolSpec("get_network_request", get_network_request, RequestArgs.parse,
             ContextPolicy.of(_PAGE)),
    ToolSpec("list_extensions", list_extensions, NoArgs.parse, ContextPolicy.of(_TABS)),
    ToolSpec("get_extension_logs", get_extension_logs, ExtensionLogsArgs.parse,
             ContextPolicy.of(_EXTENSION)),
    ToolSpec("evaluate", evaluate, EvaluateArgs.parse, ContextPolicy.of(_PAGE, _EXTENSION)),
)


def build_adapter(tools: tuple[ToolSpec, ...] = DEFAULT_TOOLS) -> ToolExecutionAdapter:
    adapter = ToolExecutionAdapter()
    for spec in tools:
        adapter.register(spec)
    return adapter
