"""Ranked next-step suggestions derived from a tool call's outcome.

Rules are evaluated in table order and are not exclusive: every matching rule
contributes one suggestion, and the list is then sorted by priority. The sort is
stable, so table order breaks ties.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Sequence

from .errors import ErrorKind
from .snapshot import Snapshot
from .waiting import ExtensionCheck, ExtensionReadiness, WaitOutcome

if TYPE_CHECKING:
    from .response import ToolOutcome

logger = logging.getLogger("extdebug.suggestions")

INTERACTION_TOOLS = frozenset({"click", "fill", "type", "fill_form", "hover"})
INTERACTIVE_TAGS = frozenset({"button", "a", "input", "select", "textarea"})
INTERACTIVE_ROLES = frozenset({"button", "link", "checkbox", "tab", "menuitem", "textbox"})
LISTING_TOOLS = {
    "tab": "list_tabs",
    "extension": "list_extensions",
    "request": "list_network_requests",
}


class Priority(Enum):
    CRITICAL = 4
    HIGH = 3
    MEDIUM = 2
    LOW = 1


@dataclass(frozen=True)
class Suggestion:
    priority: Priority
    target_tool: str
    rationale: str
    example_arguments: dict[str, Any] = field(default_factory=dict)

    def to_text(self) -> str:
        text = f"[{self.priority.name}] {self.target_tool}: {self.rationale}"
        if self.example_arguments:
            args = ", ".join(f"{k}={v!r}" for k, v in self.example_arguments.items())
            text += f" ({args})"
        return text


@dataclass(frozen=True)
class SuggestionRule:
    name: str
    condition: Callable[[ToolOutcome], bool]
    build: Callable[[ToolOutcome], Suggestion]
    tools: frozenset[str] | None = None  # None applies to every tool

    def applies_to(self, tool_name: str) -> bool:
        return self.tools is None or tool_name in self.tools


# ── Predicates ──────────────────────────────────────────────────


def _failed_with(*kinds: ErrorKind) -> Callable[[ToolOutcome], bool]:
    return lambda outcome: outcome.error is not None and outcome.error.kind in kinds


def _items(outcome: ToolOutcome) -> list[dict[str, Any]]:
    result = outcome.result
    if outcome.error is None and isinstance(result, list):
        return [item for item in result if isinstance(item, dict)]
    return []


def _level(entry: dict[str, Any]) -> str:
    return str(entry.get("level") or entry.get("type") or "").lower()


def _has_level(outcome: ToolOutcome, level: str) -> bool:
    return any(_level(entry) == level for entry in _items(outcome))


def _count_level(outcome: ToolOutcome, level: str) -> int:
    return sum(1 for entry in _items(outcome) if _level(entry) == level)


def _is_empty(outcome: ToolOutcome) -> bool:
    return outcome.error is None and isinstance(outcome.result, list) and not outcome.result


def _snapshot(outcome: ToolOutcome) -> Snapshot | None:
    return outcome.result if isinstance(outcome.result, Snapshot) else None


def _wait(outcome: ToolOutcome) -> WaitOutcome | None:
    return outcome.result if isinstance(outcome.result, WaitOutcome) else None


def _readiness(outcome: ToolOutcome) -> ExtensionReadiness | None:
    return outcome.result if isinstance(outcome.result, ExtensionReadiness) else None


def _extension_errors(entry: dict[str, Any]) -> int:
    errors = entry.get("errors")
    if isinstance(errors, list):
        return len(errors)
    return int(errors or 0)


def _first_interactive_uid(snapshot: Snapshot) -> str:
    for element in snapshot.elements:
        if element.tag_name in INTERACTIVE_TAGS or element.role in INTERACTIVE_ROLES:
            return element.uid
    return snapshot.elements[0].uid


def _failed_requests(outcome: ToolOutcome) -> list[dict[str, Any]]:
    return [r for r in _items(outcome) if int(r.get("status") or 0) >= 400]


def _extension_id(outcome: ToolOutcome) -> str:
    return outcome.arguments.get("extension_id") or outcome.extension_id or ""


# ── Templates ───────────────────────────────────────────────────


def _retry_locator(outcome: ToolOutcome) -> Suggestion:
    target = outcome.error.target
    args = target.as_arguments() if target else {}
    args["timeout_ms"] = 5000
    return Suggestion(
        Priority.MEDIUM, "wait_for",
        "The element may not be rendered yet; wait for it before retrying", args,
    )


def _listing_tool(outcome: ToolOutcome) -> Suggestion:
    tool = LISTING_TOOLS.get(outcome.error.entity or "", "list_tabs")
    return Suggestion(
        Priority.HIGH, tool,
        f"No {outcome.error.entity or 'target'} with that id exists; list the valid ids",
    )


def _longer_wait(outcome: ToolOutcome) -> Suggestion:
    wait = _wait(outcome)
    args = {}
    for strategy in wait.strategies:
        args.update(strategy.as_arguments())
    args["timeout_ms"] = wait.timeout_ms * 2
    return Suggestion(
        Priority.MEDIUM, "wait_for", "Slow pages may need a longer timeout", args,
    )


def _click_first(outcome: ToolOutcome) -> Suggestion:
    uid = _first_interactive_uid(_snapshot(outcome))
    return Suggestion(
        Priority.MEDIUM, "click", "Interact with an element by its UID", {"uid": uid},
    )


def _logs_for_not_ready(outcome: ToolOutcome) -> Suggestion:
    readiness = _readiness(outcome)
    missing = ", ".join(c.value for c, ok in readiness.checks.items() if not ok)
    return Suggestion(
        Priority.CRITICAL, "get_extension_logs",
        f"Extension APIs unavailable ({missing}); its logs usually say why",
        {"extension_id": readiness.extension_id, "levels": ["error", "warning"]},
    )


def _logs_for_broken_extension(outcome: ToolOutcome) -> Suggestion:
    broken = next(e for e in _items(outcome) if _extension_errors(e) > 0)
    return Suggestion(
        Priority.CRITICAL, "get_extension_logs",
        f"{broken.get('name') or broken.get('id')} reports {_extension_errors(broken)} errors",
        {"extension_id": broken.get("id", ""), "levels": ["error"]},
    )


def _readiness_for_disabled(outcome: ToolOutcome) -> Suggestion:
    disabled = next(e for e in _items(outcome) if e.get("enabled") is False)
    return Suggestion(
        Priority.MEDIUM, "wait_for_extension_ready",
        f"{disabled.get('name') or disabled.get('id')} is disabled; check whether it comes up",
        {"extension_id": disabled.get("id", "")},
    )


def _inspect_failed_request(outcome: ToolOutcome) -> Suggestion:
    failed = _failed_requests(outcome)
    first = failed[0]
    return Suggestion(
        Priority.HIGH, "get_network_request",
        f"{len(failed)} request(s) failed; first is {first.get('method', 'GET')} "
        f"{first.get('url', '')} -> {first.get('status')}",
        {"request_id": str(first.get("id", ""))},
    )


# ── Rule table ──────────────────────────────────────────────────

DEFAULT_RULES: tuple[SuggestionRule, ...] = (
    # Failures, any tool
    SuggestionRule(
        "stale-uid", _failed_with(ErrorKind.STALE_UID),
        lambda o: Suggestion(Priority.CRITICAL, "take_snapshot",
                             "The page changed since the UID was issued; take a fresh snapshot"),
    ),
    SuggestionRule(
        "unknown-uid", _failed_with(ErrorKind.UNKNOWN_UID),
        lambda o: Suggestion(Priority.HIGH, "take_snapshot",
                             "Use a UID from the latest snapshot of this tab"),
    ),
    SuggestionRule(
        "no-match-snapshot", _failed_with(ErrorKind.NO_MATCH),
        lambda o: Suggestion(Priority.HIGH, "take_snapshot",
                             "Look at what is on the page and target it by UID"),
    ),
    SuggestionRule("no-match-wait", _failed_with(ErrorKind.NO_MATCH), _retry_locator),
    SuggestionRule("entity-not-found", _failed_with(ErrorKind.ENTITY_NOT_FOUND), _listing_tool),
    SuggestionRule(
        "collaborator-unavailable", _failed_with(ErrorKind.COLLABORATOR_UNAVAILABLE),
        lambda o: Suggestion(Priority.HIGH, "list_tabs",
                             "The page could not be queried; check the tab still exists"),
    ),
    SuggestionRule(
        "tool-failed", _failed_with(ErrorKind.TOOL_FAILED),
        lambda o: Suggestion(Priority.MEDIUM, "get_console_logs",
                             "Page errors often explain failed actions", {"level": "error"}),
    ),

    # Snapshots
    SuggestionRule(
        "snapshot-has-elements", lambda o: bool(_snapshot(o) and _snapshot(o).elements),
        _click_first, frozenset({"take_snapshot"}),
    ),
    SuggestionRule(
        "snapshot-empty", lambda o: _snapshot(o) is not None and not _snapshot(o).elements,
        lambda o: Suggestion(Priority.HIGH, "take_snapshot",
                             "Nothing visible was captured; include hidden elements",
                             {"include_hidden": True}),
        frozenset({"take_snapshot"}),
    ),

    # Interactions
    SuggestionRule(
        "interaction-unsettled",
        lambda o: o.error is None and o.settle is not None and not o.settle.settled,
        lambda o: Suggestion(Priority.MEDIUM, "wait_for",
                             "The page was still changing; wait for the element you expect next",
                             {"timeout_ms": 5000}),
        INTERACTION_TOOLS,
    ),
    SuggestionRule(
        "form-fields-missed",
        lambda o: o.error is None and bool(getattr(o.result, "failed", ())),
        lambda o: Suggestion(Priority.HIGH, "take_snapshot",
                             f"{len(o.result.failed)} field(s) were not filled; "
                             "find them in a fresh snapshot and retry by UID"),
        frozenset({"fill_form"}),
    ),
    SuggestionRule(
        "interaction-done", lambda o: o.error is None,
        lambda o: Suggestion(Priority.LOW, "take_snapshot",
                             "Verify the result; earlier UIDs may now be stale"),
        INTERACTION_TOOLS,
    ),

    # Navigation
    SuggestionRule(
        "navigate-http-error",
        lambda o: o.error is None and isinstance(o.result, dict)
        and int(o.result.get("http_status") or 0) >= 400,
        lambda o: Suggestion(Priority.HIGH, "list_network_requests",
                             f"The page loaded with HTTP {o.result.get('http_status')}",
                             {"min_status": 400}),
        frozenset({"navigate"}),
    ),
    SuggestionRule(
        "navigate-done", lambda o: o.error is None,
        lambda o: Suggestion(Priority.MEDIUM, "take_snapshot",
                             "Capture the new page to get element UIDs"),
        frozenset({"navigate"}),
    ),

    # Waits
    SuggestionRule(
        "wait-timeout-snapshot", lambda o: bool(_wait(o) and _wait(o).timed_out),
        lambda o: Suggestion(Priority.HIGH, "take_snapshot",
                             "The element never appeared; check what the page shows instead"),
        frozenset({"wait_for"}),
    ),
    SuggestionRule(
        "wait-timeout-longer", lambda o: bool(_wait(o) and _wait(o).timed_out),
        _longer_wait, frozenset({"wait_for"}),
    ),
    SuggestionRule(
        "wait-uid-failure",
        lambda o: bool(_wait(o) and _wait(o).error_kind in (ErrorKind.STALE_UID,
                                                            ErrorKind.UNKNOWN_UID)),
        lambda o: Suggestion(Priority.CRITICAL, "take_snapshot",
                             "The UID cannot appear; it belongs to another snapshot"),
        frozenset({"wait_for"}),
    ),
    SuggestionRule(
        "wait-found", lambda o: bool(_wait(o) and _wait(o).success),
        lambda o: Suggestion(Priority.LOW, "click", "Act on the element that appeared",
                             dict(next(s.as_arguments() for s in _wait(o).strategies
                                       if s.kind is _wait(o).matched_strategy))),
        frozenset({"wait_for"}),
    ),

    # Extension readiness
    SuggestionRule(
        "extension-not-ready", lambda o: bool(_readiness(o) and not _readiness(o).ready),
        _logs_for_not_ready, frozenset({"wait_for_extension_ready"}),
    ),
    SuggestionRule(
        "extension-missing-permissions-api",
        lambda o: bool(_readiness(o)
                       and _readiness(o).checks.get(ExtensionCheck.PERMISSIONS) is False),
        lambda o: Suggestion(Priority.MEDIUM, "evaluate",
                             "Inspect the manifest permissions the extension was granted",
                             {"extension_id": o.result.extension_id,
                              "expression": "chrome.runtime.getManifest().permissions"}),
        frozenset({"wait_for_extension_ready"}),
    ),
    SuggestionRule(
        "extension-ready", lambda o: bool(_readiness(o) and _readiness(o).ready),
        lambda o: Suggestion(Priority.LOW, "take_snapshot",
                             "The extension is up; inspect the page it acts on"),
        frozenset({"wait_for_extension_ready"}),
    ),

    # Extension logs
    SuggestionRule(
        "extension-log-errors", lambda o: _has_level(o, "error"),
        lambda o: Suggestion(Priority.CRITICAL, "get_console_logs",
                             "Extension errors found; check whether the page saw them too",
                             {"level": "error"}),
        frozenset({"get_extension_logs"}),
    ),
    SuggestionRule(
        "extension-log-warnings", lambda o: _count_level(o, "warning") > 5,
        lambda o: Suggestion(Priority.MEDIUM, "get_extension_logs",
                             f"{_count_level(o, 'warning')} warnings; review them on their own",
                             {"extension_id": _extension_id(o), "levels": ["warning"]}),
        frozenset({"get_extension_logs"}),
    ),
    SuggestionRule(
        "extension-logs-empty", _is_empty,
        lambda o: Suggestion(Priority.LOW, "get_extension_logs",
                             "No entries at these levels; query every level",
                             {"extension_id": _extension_id(o)}),
        frozenset({"get_extension_logs"}),
    ),

    # Extension listing
    SuggestionRule(
        "extension-has-errors",
        lambda o: any(_extension_errors(e) > 0 for e in _items(o)),
        _logs_for_broken_extension, frozenset({"list_extensions"}),
    ),
    SuggestionRule(
        "extension-disabled", lambda o: any(e.get("enabled") is False for e in _items(o)),
        _readiness_for_disabled, frozenset({"list_extensions"}),
    ),
    SuggestionRule(
        "extensions-empty", _is_empty,
        lambda o: Suggestion(Priority.LOW, "list_tabs",
                             "No extensions are loaded in this browser profile"),
        frozenset({"list_extensions"}),
    ),

    # Network
    SuggestionRule(
        "network-failures", lambda o: bool(_failed_requests(o)),
        _inspect_failed_request, frozenset({"list_network_requests"}),
    ),
    SuggestionRule(
        "network-empty", _is_empty,
        lambda o: Suggestion(Priority.LOW, "list_network_requests",
                             "Nothing matched; widen the query", {"limit": 200}),
        frozenset({"list_network_requests"}),
    ),

    # Console
    SuggestionRule(
        "console-errors-with-extension",
        lambda o: _has_level(o, "error") and bool(o.extension_id),
        lambda o: Suggestion(Priority.HIGH, "get_extension_logs",
                             "Correlate page errors with the extension's own logs",
                             {"extension_id": o.extension_id, "levels": ["error"]}),
        frozenset({"get_console_logs"}),
    ),
    SuggestionRule(
        "console-empty", _is_empty,
        lambda o: Suggestion(Priority.LOW, "get_console_logs",
                             "No messages at this level; drop the level filter"),
        frozenset({"get_console_logs"}),
    ),
)


class SuggestionEngine:
    def __init__(self, rules: Sequence[SuggestionRule] = DEFAULT_RULES):
        self.rules = tuple(rules)

    def suggest(self, tool_name: str, outcome: ToolOutcome) -> list[Suggestion]:
        suggestions = []
        for rule in self.rules:
            if not rule.applies_to(tool_name):
                continue
            try:
                if rule.condition(outcome):
                    suggestions.append(rule.build(outcome))
            except Exception:
                logger.exception("suggestion rule %s failed for %s", rule.name, tool_name)
        suggestions.sort(key=lambda s: s.priority.value, reverse=True)
        return suggestions
