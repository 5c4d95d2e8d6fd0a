"""Error taxonomy shared by the resolver, wait engine, adapter and suggestion rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .locators import LocatorStrategy


class ErrorKind(Enum):
    STALE_UID = "stale_uid"
    UNKNOWN_UID = "unknown_uid"
    NO_MATCH = "no_match"
    TIMEOUT = "timeout"
    COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"
    INVALID_ARGUMENTS = "invalid_arguments"
    ENTITY_NOT_FOUND = "entity_not_found"
    TOOL_FAILED = "tool_failed"


# Resolution failures after which polling the same UID again cannot succeed
UID_FAILURES = frozenset({ErrorKind.STALE_UID, ErrorKind.UNKNOWN_UID})


@dataclass(frozen=True)
class ResolutionError:
    """A failed attempt to turn a locator into a node handle. Returned, never raised."""

    kind: ErrorKind
    message: str
    target: LocatorStrategy | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class ToolCallError(Exception):
    """Terminal failure of a whole tool call, rendered for the client as-is."""

    tool: str
    reason: str
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.tool}] {self.reason}"

    def render(self) -> str:
        lines = [f"# {self.tool} failed", "", self.reason]
        if self.suggestion:
            lines += ["", f"Next step: {self.suggestion}"]
        for key, value in self.details.items():
            lines.append(f"- {key}: {value}")
        return "\n".join(lines)


class InvalidArguments(ToolCallError):
    pass


class CollaboratorFailure(ToolCallError):
    pass


class EntityNotFound(Exception):
    """A named tab, extension or request does not exist."""

    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"No {entity} found with id {identifier!r}")


@dataclass(frozen=True)
class ToolFailure:
    """Recoverable failure of a tool call, carried inside the response."""

    kind: ErrorKind
    message: str
    target: LocatorStrategy | None = None
    entity: str | None = None

    @classmethod
    def from_resolution(cls, error: ResolutionError) -> ToolFailure:
        return cls(error.kind, error.message, error.target)


class ToolFailureError(Exception):
    """Raised by a handler to end its call with a recoverable `ToolFailure`."""

    def __init__(self, failure: ToolFailure):
        self.failure = failure
        super().__init__(failure.message)
