"""
Scene Graph - read-only view of the host's node tree

The plugin serializes the current selection as a JSON tree: each selected node
carries its ancestor chain under ``parent`` and its subtree under ``children``.
This module turns that payload into linked ``SceneNode`` objects and provides
the exportable-type predicate used by the resolver.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional

logger = logging.getLogger(__name__)


class NodeType(str, Enum):
    COMPONENT = "COMPONENT"
    COMPONENT_SET = "COMPONENT_SET"
    FRAME = "FRAME"
    INSTANCE = "INSTANCE"
    GROUP = "GROUP"
    RECTANGLE = "RECTANGLE"
    ELLIPSE = "ELLIPSE"
    TEXT = "TEXT"
    VECTOR = "VECTOR"
    STAR = "STAR"
    LINE = "LINE"
    POLYGON = "POLYGON"
    BOOLEAN_OPERATION = "BOOLEAN_OPERATION"
    SLICE = "SLICE"
    SECTION = "SECTION"
    PAGE = "PAGE"
    OTHER = "OTHER"

    @classmethod
    def _missing_(cls, value: object) -> "NodeType":
        # Hosts add node types over time (STICKY, CONNECTOR, WIDGET, ...)
        return cls.OTHER


SUPPORTED_TYPES: FrozenSet[NodeType] = frozenset({
    NodeType.COMPONENT,
    NodeType.COMPONENT_SET,
    NodeType.FRAME,
    NodeType.INSTANCE,
    NodeType.GROUP,
    NodeType.RECTANGLE,
    NodeType.ELLIPSE,
    NodeType.TEXT,
    NodeType.VECTOR,
    NodeType.STAR,
    NodeType.LINE,
    NodeType.POLYGON,
    NodeType.BOOLEAN_OPERATION,
    NodeType.SLICE,
})

COMPONENT_TYPES: FrozenSet[NodeType] = frozenset({
    NodeType.COMPONENT,
    NodeType.COMPONENT_SET,
    NodeType.INSTANCE,
})

PRIMITIVE_TYPES: FrozenSet[NodeType] = frozenset({
    NodeType.TEXT,
    NodeType.VECTOR,
    NodeType.ELLIPSE,
    NodeType.RECTANGLE,
})


@dataclass(eq=False)
class SceneNode:
    """A node of the host scene graph, referenced for one resolution pass only."""

    id: str
    name: str
    type: NodeType
    width: Optional[float] = None
    height: Optional[float] = None
    parent: Optional["SceneNode"] = field(default=None, repr=False)
    children: List["SceneNode"] = field(default_factory=list, repr=False)

    @property
    def has_size(self) -> bool:
        return self.width is not None and self.height is not None

    def add_child(self, child: "SceneNode") -> "SceneNode":
        child.parent = self
        self.children.append(child)
        return child

    def ancestors(self, max_levels: Optional[int] = None) -> Iterator["SceneNode"]:
        """Yield parents from nearest to farthest, stopping after ``max_levels``."""
        current = self.parent
        level = 0
        while current is not None and (max_levels is None or level < max_levels):
            level += 1
            yield current
            current = current.parent

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "width": self.width if self.width is not None else "N/A",
            "height": self.height if self.height is not None else "N/A",
            "children": len(self.children),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SceneNode":
        """Build a node, its subtree and its ancestor chain from a plugin payload.

        Expected shape::

            {"id": "1:2", "name": "Submit", "type": "TEXT", "width": 40, "height": 16,
             "parent": {...same shape, without children...},
             "children": [{...same shape...}]}

        The ancestor chain only holds the nodes the plugin sent; siblings of
        the selection are not materialized.
        """
        node = cls._build(payload)
        for child_payload in payload.get("children") or []:
            if isinstance(child_payload, dict):
                node.add_child(cls._build_subtree(child_payload))

        current = node
        parent_payload = payload.get("parent")
        while isinstance(parent_payload, dict):
            parent = cls._build(parent_payload)
            parent.children.append(current)
            current.parent = parent
            current = parent
            parent_payload = parent_payload.get("parent")
        return node

    @classmethod
    def _build_subtree(cls, payload: Dict[str, Any]) -> "SceneNode":
        node = cls._build(payload)
        for child_payload in payload.get("children") or []:
            if isinstance(child_payload, dict):
                node.add_child(cls._build_subtree(child_payload))
        return node

    @classmethod
    def _build(cls, payload: Dict[str, Any]) -> "SceneNode":
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "")),
            type=NodeType(str(payload.get("type", "OTHER"))),
            width=_optional_float(payload.get("width")),
            height=_optional_float(payload.get("height")),
        )


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def is_resolvable(node: SceneNode) -> bool:
    """True iff the node's type can be exported directly."""
    return node.type in SUPPORTED_TYPES


def is_component_like(node: SceneNode) -> bool:
    return node.type in COMPONENT_TYPES


def selection_from_payload(items: Any) -> List[SceneNode]:
    """Parse a ``selection`` list from the plugin, skipping malformed entries."""
    nodes: List[SceneNode] = []
    if not isinstance(items, list):
        return nodes
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"⚠️ Skipping malformed selection entry: {item!r}")
            continue
        nodes.append(SceneNode.from_payload(item))
    return nodes
