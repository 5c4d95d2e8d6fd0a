"""Locator strategies and tool-argument parsing."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import InvalidArguments


class LocatorKind(Enum):
    SELECTOR = "selector"
    ARIA_LABEL = "aria_label"
    TEXT = "text"
    UID = "uid"


@dataclass(frozen=True)
class LocatorStrategy:
    """One way of naming a target element."""

    kind: LocatorKind
    value: str

    def __post_init__(self):
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValueError(f"{self.kind.value} locator must be a non-empty string")

    @classmethod
    def selector(cls, value: str) -> LocatorStrategy:
        return cls(LocatorKind.SELECTOR, value)

    @classmethod
    def aria_label(cls, value: str) -> LocatorStrategy:
        return cls(LocatorKind.ARIA_LABEL, value)

    @classmethod
    def text(cls, value: str) -> LocatorStrategy:
        return cls(LocatorKind.TEXT, value)

    @classmethod
    def uid(cls, value: str) -> LocatorStrategy:
        return cls(LocatorKind.UID, value)

    def as_arguments(self) -> dict[str, str]:
        return {self.kind.value: self.value}

    def describe(self) -> str:
        return f"{self.kind.value}={self.value!r}"


# Argument keys in the order strategies are raced and reported
LOCATOR_KEYS = tuple(kind.value for kind in (
    LocatorKind.UID, LocatorKind.SELECTOR, LocatorKind.ARIA_LABEL, LocatorKind.TEXT,
))


def strategies_from_arguments(tool: str, arguments: dict[str, Any]) -> list[LocatorStrategy]:
    """Collect every locator present in *arguments*, deduplicated, in key order."""
    strategies: list[LocatorStrategy] = []
    for key in LOCATOR_KEYS:
        raw = arguments.get(key)
        if raw is None or raw == "":
            continue
        if not isinstance(raw, str):
            raise InvalidArguments(
                tool,
                f"'{key}' must be a string, got {type(raw).__name__}",
                suggestion="Pass the locator as a plain string",
            )
        if not raw.strip():
            raise InvalidArguments(tool, f"'{key}' must not be blank")
        strategy = LocatorStrategy(LocatorKind(key), raw.strip())
        if strategy not in strategies:
            strategies.append(strategy)
    return strategies


def target_from_arguments(tool: str, arguments: dict[str, Any]) -> LocatorStrategy:
    """Exactly one locator is required for element interactions."""
    strategies = strategies_from_arguments(tool, arguments)
    if not strategies:
        raise InvalidArguments(
            tool,
            "No target given: pass one of " + ", ".join(LOCATOR_KEYS),
            suggestion="Call take_snapshot and pass the element's uid",
        )
    if len(strategies) > 1:
        raise InvalidArguments(
            tool,
            "Ambiguous target: pass exactly one of "
            + ", ".join(s.kind.value for s in strategies),
            suggestion="Prefer uid from the latest take_snapshot",
        )
    return strategies[0]


# ── Scalar argument helpers ─────────────────────────────────────


def get_str(tool: str, arguments: dict[str, Any], key: str, default: str | None = None,
            required: bool = False) -> str | None:
    raw = arguments.get(key)
    if raw is None or raw == "":
        if required:
            raise InvalidArguments(tool, f"'{key}' is required")
        return default
    if not isinstance(raw, str):
        raise InvalidArguments(tool, f"'{key}' must be a string")
    return raw


def get_bool(tool: str, arguments: dict[str, Any], key: str, default: bool) -> bool:
    raw = arguments.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    raise InvalidArguments(tool, f"'{key}' must be a boolean")


def get_int(tool: str, arguments: dict[str, Any], key: str, default: int,
            minimum: int = 0) -> int:
    raw = arguments.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise InvalidArguments(tool, f"'{key}' must be an integer")
    if raw < minimum:
        raise InvalidArguments(tool, f"'{key}' must be >= {minimum}, got {raw}")
    return raw


def get_str_list(tool: str, arguments: dict[str, Any], key: str,
                 default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = arguments.get(key)
    if raw is None or raw == "" or raw == []:
        return default
    if isinstance(raw, str):
        return tuple(part.strip() for part in raw.split(",") if part.strip())
    if isinstance(raw, (list, tuple)) and all(isinstance(item, str) for item in raw):
        return tuple(raw)
    raise InvalidArguments(tool, f"'{key}' must be a list of strings")
