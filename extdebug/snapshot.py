"""Point-in-time page snapshots and the UIDs they issue.

One `SnapshotStore` exists per tab per session. Taking a snapshot replaces the active
one; a navigation of the tab clears it. Either way every UID issued earlier becomes
stale, and looking one up reports that instead of matching some other element.
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from .browser import NodeHandle, PageDriver
from .errors import ErrorKind, ResolutionError
from .locators import LocatorStrategy

logger = logging.getLogger("extdebug.snapshot")

IMPORTANT_ATTRIBUTES = (
    "id", "class", "type", "placeholder", "aria-label", "data-testid", "name", "href", "role",
)
TEXT_PREVIEW = 50
RETIRED_SNAPSHOTS = 64
UID_FORMAT = re.compile(r"[0-9a-f]{8}_[1-9][0-9]*")


@dataclass(frozen=True)
class SnapshotOptions:
    include_hidden: bool = False
    max_depth: int = 10
    include_text: bool = True


@dataclass(frozen=True)
class SnapshotElement:
    uid: str
    tag_name: str
    role: str
    accessible_text: str
    attributes: dict[str, str]
    depth: int
    parent_uid: str | None
    visible: bool
    text: str = ""

    def to_text(self) -> str:
        parts = [f"[{self.uid}]", f"<{self.tag_name}>"]
        if self.role:
            parts.append(f'role="{self.role}"')
        if self.accessible_text:
            parts.append(f'name="{self.accessible_text}"')
        if self.attributes.get("id"):
            parts.append(f'id="{self.attributes["id"]}"')
        if not self.visible:
            parts.append("(hidden)")
        if self.text:
            preview = self.text[:TEXT_PREVIEW]
            if len(self.text) > TEXT_PREVIEW:
                preview += "..."
            parts.append(f'"{preview}"')
        return "  " * self.depth + " ".join(parts)


@dataclass
class Snapshot:
    id: str
    tab_id: str
    created_at: float
    elements: list[SnapshotElement] = field(default_factory=list)
    url: str = ""

    def get(self, uid: str) -> SnapshotElement | None:
        for element in self.elements:
            if element.uid == uid:
                return element
        return None

    def to_text(self) -> str:
        header = f"Snapshot {self.id}: {len(self.elements)} elements"
        if self.url:
            header += f" ({self.url})"
        if not self.elements:
            return header + "\n(no visible elements)"
        return header + "\n" + "\n".join(element.to_text() for element in self.elements)


def _accessible_name(raw: dict[str, Any]) -> str:
    attributes = raw.get("attributes") or {}
    for candidate in (attributes.get("aria-label"), raw.get("label"), attributes.get("placeholder")):
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return ""


class SnapshotStore:
    """Owns the active snapshot of one tab and its UID to node-handle mapping."""

    def __init__(self, driver: PageDriver, tab_id: str):
        self.driver = driver
        self.tab_id = tab_id
        self.active: Snapshot | None = None
        self._handles: dict[str, NodeHandle] = {}
        self._retired: deque[str] = deque(maxlen=RETIRED_SNAPSHOTS)
        self._evicted = False
        self._generation = 0

    @property
    def has_history(self) -> bool:
        """Whether a snapshot was ever taken on this tab."""
        return self.active is not None or bool(self._retired)

    async def take_snapshot(self, options: SnapshotOptions | None = None) -> Snapshot:
        options = options or SnapshotOptions()
        for _ in range(2):
            generation = self._generation
            raw_nodes = await self.driver.walk_dom(
                self.tab_id,
                max_depth=options.max_depth,
                include_hidden=options.include_hidden,
                include_text=options.include_text,
            )
            if generation == self._generation:
                break
            logger.info("tab %s navigated during snapshot, walking again", self.tab_id)

        snapshot_id = uuid4().hex[:8]
        elements, handles = self._build(snapshot_id, raw_nodes, options)
        self._retire_active()
        self.active = Snapshot(snapshot_id, self.tab_id, time.time(), elements)
        self._handles = handles
        logger.debug("snapshot %s on tab %s: %d elements", snapshot_id, self.tab_id, len(elements))
        return self.active

    def _build(self, snapshot_id: str, raw_nodes: list[dict[str, Any]],
               options: SnapshotOptions) -> tuple[list[SnapshotElement], dict[str, NodeHandle]]:
        elements: list[SnapshotElement] = []
        handles: dict[str, NodeHandle] = {}
        uid_by_node: dict[str, str] = {}
        skipped: set[str] = set()
        counter = 0

        for raw in raw_nodes:
            node_id = str(raw["node_id"])
            parent_id = raw.get("parent_id")
            parent_id = str(parent_id) if parent_id is not None else None
            depth = int(raw.get("depth", 0))
            visible = bool(raw.get("visible", True))

            # Hidden or too-deep nodes drop their whole subtree
            if (
                parent_id in skipped
                or depth > options.max_depth
                or (not visible and not options.include_hidden)
            ):
                skipped.add(node_id)
                continue

            counter += 1
            uid = f"{snapshot_id}_{counter}"
            uid_by_node[node_id] = uid
            tag = str(raw.get("tag", "")).lower()
            raw_attributes = raw.get("attributes") or {}
            attributes = {
                key: str(raw_attributes[key])
                for key in IMPORTANT_ATTRIBUTES
                if raw_attributes.get(key) not in (None, "")
            }
            elements.append(SnapshotElement(
                uid=uid,
                tag_name=tag,
                role=str(raw.get("role") or raw_attributes.get("role") or ""),
                accessible_text=_accessible_name(raw),
                attributes=attributes,
                depth=depth,
                parent_uid=uid_by_node.get(parent_id) if parent_id is not None else None,
                visible=visible,
                text=str(raw.get("text") or "").strip() if options.include_text else "",
            ))
            handles[uid] = NodeHandle(self.tab_id, node_id, tag)
        return elements, handles

    def _retire_active(self) -> None:
        if self.active is not None:
            self._evicted = self._evicted or len(self._retired) == self._retired.maxlen
            self._retired.append(self.active.id)
        self.active = None
        self._handles = {}

    def invalidate(self) -> None:
        """Forget the active snapshot; called when the tab navigates."""
        self._generation += 1
        if self.active is not None:
            logger.debug("snapshot %s invalidated by navigation", self.active.id)
        self._retire_active()

    def lookup(self, uid: str) -> NodeHandle | ResolutionError:
        target = LocatorStrategy.uid(uid)
        handle = self._handles.get(uid)
        if handle is not None:
            return handle

        snapshot_id, sep, _ = uid.rpartition("_")
        # Past the retained history, any well-formed UID not in the active snapshot is stale
        if sep and (snapshot_id in self._retired or (
            self._evicted and UID_FORMAT.fullmatch(uid)
            and (self.active is None or snapshot_id != self.active.id)
        )):
            return ResolutionError(
                ErrorKind.STALE_UID,
                f"UID {uid} is from an old snapshot of this tab. "
                "The page has changed since; call take_snapshot for current UIDs.",
                target,
            )
        if self.active is None:
            return ResolutionError(
                ErrorKind.UNKNOWN_UID,
                f"No element found with UID {uid}: no snapshot is active for this tab. "
                "Call take_snapshot first.",
                target,
            )
        return ResolutionError(
            ErrorKind.UNKNOWN_UID,
            f"No element found with UID {uid} in snapshot {self.active.id}.",
            target,
        )
