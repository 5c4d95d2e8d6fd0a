"""Normalized tool responses: title, body, context blocks, ranked suggestions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .context import COLLECTORS, SECTIONS, ContextBlock, ContextPolicy, ResponseContext
from .errors import ToolFailure
from .suggestions import Suggestion, SuggestionEngine
from .waiting import SettleOutcome

if TYPE_CHECKING:
    from .session import DebugSession

logger = logging.getLogger("extdebug.response")


@dataclass
class ToolOutcome:
    """What a handler produced: a raw result, or a recoverable failure."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: ToolFailure | None = None
    settle: SettleOutcome | None = None
    extension_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ToolResponse:
    tool_name: str
    body: str
    is_error: bool = False
    context: ResponseContext = field(default_factory=ResponseContext)
    suggestions: list[Suggestion] = field(default_factory=list)

    @property
    def title(self) -> str:
        return f"# {self.tool_name} response"

    def render(self) -> str:
        lines = [self.title, "", self.body]
        for block in ContextBlock:
            value = self.context.get(block)
            if value is None:
                continue
            section = render_block(block, value)
            if section is not None:
                lines += ["", *section]
        if self.suggestions:
            lines += ["", "## Suggested Next Steps"]
            lines += [f"{i}. {s.to_text()}" for i, s in enumerate(self.suggestions, 1)]
        return "\n".join(lines)


def render_block(block: ContextBlock, value: Any) -> list[str] | None:
    """Heading and lines for one context block, or None if *value* cannot be shown."""
    heading, render = SECTIONS[block]
    try:
        return [f"## {heading}", *(str(line) for line in render(value))]
    except Exception as exc:
        logger.warning("context block %s could not be rendered: %s", block.value, exc)
        return None


def text_result(data) -> str:
    """Format a raw result as text."""
    if hasattr(data, "to_text"):
        return data.to_text()
    if isinstance(data, (dict, list)):
        return json.dumps(data, indent=2, default=str)
    return str(data)


def format_body(outcome: ToolOutcome) -> str:
    if outcome.error is not None:
        body = f"Error ({outcome.error.kind.value}): {outcome.error.message}"
    elif outcome.result is None or outcome.result == "" or outcome.result == []:
        body = "(no results)"
    else:
        body = text_result(outcome.result)
    if outcome.settle is not None:
        body += "\n\n" + outcome.settle.to_text()
    return body


class ResponseBuilder:
    def __init__(self, suggestions: SuggestionEngine | None = None):
        self.suggestions = suggestions or SuggestionEngine()

    async def build(self, tool_name: str, outcome: ToolOutcome, policy: ContextPolicy,
                    session: DebugSession) -> ToolResponse:
        """Assemble the response. Never raises; failed pieces are left out."""
        try:
            body = format_body(outcome)
        except Exception:
            logger.exception("formatting %s result failed", tool_name)
            body = f"{tool_name} finished but its result could not be displayed"
            if outcome.error is not None:
                body = f"Error ({outcome.error.kind.value}) in {tool_name}"
        response = ToolResponse(tool_name, body or "(no results)", is_error=not outcome.ok)

        for block in ContextBlock:
            if not self._eligible(block, policy, outcome, session):
                continue
            try:
                value = await COLLECTORS[block](session)
            except Exception as exc:
                logger.warning("context block %s unavailable for %s: %s",
                               block.value, tool_name, exc)
                continue
            # Malformed collaborator data is dropped here, not at render time
            if value is not None and render_block(block, value) is not None:
                response.context.set(block, value)

        try:
            response.suggestions = self.suggestions.suggest(tool_name, outcome)
        except Exception:
            logger.exception("suggestions failed for %s", tool_name)
        return response

    @staticmethod
    def _eligible(block: ContextBlock, policy: ContextPolicy, outcome: ToolOutcome,
                  session: DebugSession) -> bool:
        if not policy.allows(block):
            return False
        if block is ContextBlock.EXTENSION_STATUS:
            return bool(session.extension_id)
        return True
