"""Single entry point for tool calls: validate, resolve, act, settle, respond."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .browser import BrowserCommandError, BrowserUnavailableError, NodeHandle, TabClosedError
from .context import ContextPolicy
from .errors import (
    CollaboratorFailure,
    EntityNotFound,
    ErrorKind,
    InvalidArguments,
    ResolutionError,
    ToolCallError,
    ToolFailure,
    ToolFailureError,
)
from .response import ResponseBuilder, ToolOutcome, ToolResponse
from .session import DebugSession

logger = logging.getLogger("extdebug.adapter")

ToolHandler = Callable[[DebugSession, Any, NodeHandle | None], Awaitable[Any]]

REDACTED_KEYS = frozenset({"value", "fields"})


def redacted(arguments: dict[str, Any]) -> dict[str, Any]:
    return {k: "<redacted>" if k in REDACTED_KEYS else v for k, v in arguments.items()}


@dataclass(frozen=True)
class ToolSpec:
    """A tool handler plus everything the adapter needs to run it."""

    name: str
    handler: ToolHandler
    parse: Callable[[dict[str, Any]], Any]
    policy: ContextPolicy = field(default_factory=ContextPolicy)
    targets_element: bool = False
    state_changing: bool = False
    navigates: bool = False

    def settles(self, args: Any) -> bool:
        return bool(getattr(args, "state_changing", self.state_changing))


class ToolExecutionAdapter:
    def __init__(self, builder: ResponseBuilder | None = None):
        self.builder = builder or ResponseBuilder()
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool {spec.name} is already registered")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def execute(self, session: DebugSession, name: str,
                      arguments: dict[str, Any] | None = None) -> ToolResponse:
        spec = self._tools.get(name)
        if spec is None:
            raise InvalidArguments(
                name or "(none)", f"Unknown tool: {name!r}",
                suggestion="Available tools: " + ", ".join(self.names),
            )
        arguments = dict(arguments or {})
        logger.info("tool=%s args=%s", name, redacted(arguments))
        args = spec.parse(arguments)

        async with session.lock:
            try:
                await session.ensure_tab()
                outcome = await self._run(spec, session, args, arguments)
            except TabClosedError as exc:
                logger.info("tool_error tool=%s reason=%s", name, exc)
                session.forget_tab()
                raise CollaboratorFailure(
                    name, str(exc),
                    suggestion="Call list_tabs, then switch_tab to a tab that exists",
                    details={"tab_id": exc.tab_id} if exc.tab_id else {},
                ) from exc
            except BrowserUnavailableError as exc:
                logger.info("tool_error tool=%s reason=%s", name, exc)
                raise CollaboratorFailure(
                    name, str(exc),
                    suggestion="Check that the browser and its debugging agent are running",
                ) from exc
            return await self.builder.build(name, outcome, spec.policy, session)

    async def _run(self, spec: ToolSpec, session: DebugSession, args: Any,
                   arguments: dict[str, Any]) -> ToolOutcome:
        outcome = ToolOutcome(spec.name, arguments)
        try:
            node = None
            if spec.targets_element:
                resolved = await session.resolver.resolve(args.target)
                if isinstance(resolved, ResolutionError):
                    outcome.error = ToolFailure.from_resolution(resolved)
                    outcome.extension_id = session.extension_id
                    return outcome
                node = resolved

            if spec.settles(args):
                # Subscribe before acting so mutations caused by the action are seen
                async with session.driver.events.subscribe(session.tab_id) as events:
                    outcome.result = await spec.handler(session, args, node)
                    outcome.settle = await session.waits.settle_after_action(
                        spec.navigates, events
                    )
            else:
                outcome.result = await spec.handler(session, args, node)
        except (TabClosedError, BrowserUnavailableError, ToolCallError):
            raise
        except ToolFailureError as exc:
            outcome.error = exc.failure
        except EntityNotFound as exc:
            outcome.error = ToolFailure(ErrorKind.ENTITY_NOT_FOUND, str(exc), entity=exc.entity)
        except BrowserCommandError as exc:
            outcome.error = ToolFailure(ErrorKind.TOOL_FAILED, f"{spec.name} failed: {exc}")
        except Exception as exc:
            logger.exception("tool_call_failed tool=%s", spec.name)
            outcome.error = ToolFailure(
                ErrorKind.TOOL_FAILED, f"{spec.name} failed: {exc or type(exc).__name__}"
            )
        outcome.extension_id = session.extension_id
        return outcome
