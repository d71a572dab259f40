"""
Component Resolver - map an arbitrary selection to an exportable node

Designers routinely click a label or an icon when they mean the button, card
or dialog around it. The resolver first corrects such misselections by walking
up to a substantial ancestor, then falls back to a compatible ancestor or
descendant when the node itself cannot be exported.

Resolution never scores candidates: it returns the first match in priority
order (component types before frames/groups before primitives, shallower
before deeper).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from scene_graph import (
    COMPONENT_TYPES,
    PRIMITIVE_TYPES,
    NodeType,
    SceneNode,
    is_component_like,
    is_resolvable,
)

logger = logging.getLogger(__name__)


class ResolutionPath(str, Enum):
    DIRECT = "direct"
    ANCESTOR = "ancestor"
    DESCENDANT = "descendant"
    COMPONENT_SET_OVERRIDE = "component-set-override"


@dataclass(frozen=True)
class ResolvedTarget:
    node: SceneNode
    resolution_path: ResolutionPath
    corrected_from: Optional[SceneNode] = None


@dataclass(frozen=True)
class ResolverLimits:
    """Heuristic thresholds, in host pixels unless noted."""

    small_size: float = 50
    small_ish_size: float = 100
    substantial_size: float = 200
    parent_width_ratio: float = 3
    correction_max_levels: int = 10
    ancestor_max_levels: int = 15
    frame_fallback_levels: int = 3
    parent_keywords: FrozenSet[str] = frozenset({
        "component", "dialog", "modal", "card", "button", "form", "panel", "container",
    })
    anchor_names: FrozenSet[str] = frozenset({"System_Save Dialog"})
    dialog_keyword: str = "dialog"
    # When the walk finds nothing, export the keyword-named parent that
    # marked the selection as a child element instead of the child itself.
    fallback_to_qualifying_parent: bool = True


DEFAULT_LIMITS = ResolverLimits()


class ComponentResolver:
    """Finds the node a selection should export.

    Pure with respect to the scene graph: it only reads the tree it is given.
    """

    def __init__(self, limits: ResolverLimits = DEFAULT_LIMITS):
        self.limits = limits

    def resolve(self, selected: SceneNode) -> Optional[SceneNode]:
        target = self.resolve_target(selected)
        return target.node if target else None

    def resolve_target(self, selected: SceneNode) -> Optional[ResolvedTarget]:
        node = selected
        corrected_from: Optional[SceneNode] = None

        if self.is_likely_child_element(node):
            logger.info(f"⚠️ Child element detected ({node.name}), searching for proper parent component...")
            parent = self.find_proper_parent(node)
            if parent is None and self.limits.fallback_to_qualifying_parent and is_resolvable(node.parent):
                parent = node.parent
            if parent is not None:
                logger.info(f"✅ Found proper parent component: {parent.name} ({parent.type.value})")
                corrected_from = node
                node = parent

        target = self._resolve_compatible(node)
        if target is None:
            return None
        if corrected_from is not None and target.node is node:
            return ResolvedTarget(node=node, resolution_path=ResolutionPath.ANCESTOR, corrected_from=corrected_from)
        return target

    # ------------------------------------------------------------------
    # Step 1: misselection correction
    # ------------------------------------------------------------------

    def is_likely_child_element(self, node: SceneNode) -> bool:
        limits = self.limits
        parent = node.parent
        if parent is None or not node.has_size:
            return False
        if is_component_like(node):
            return False
        if node.type == NodeType.FRAME and len(node.children) >= 1:
            return False
        if node.type == NodeType.GROUP and len(node.children) >= 2:
            return False

        width, height = node.width, node.height
        is_small = width < limits.small_size and height < limits.small_size
        is_small_primitive = (
            node.type in PRIMITIVE_TYPES
            and width < limits.small_ish_size
            and height < limits.small_ish_size
        )
        if not (is_small or is_small_primitive):
            return False

        parent_name = parent.name.lower()
        if not any(keyword in parent_name for keyword in limits.parent_keywords):
            return False

        return is_component_like(parent) or (
            parent.type == NodeType.FRAME
            and parent.width is not None
            and parent.width > width * limits.parent_width_ratio
        )

    def find_proper_parent(self, node: SceneNode) -> Optional[SceneNode]:
        """Walk up to the first substantial, anchor-named or dialog ancestor."""
        limits = self.limits
        for level, current in enumerate(node.ancestors(limits.correction_max_levels), start=1):
            if not current.has_size:
                continue
            logger.debug(f"🔍 Level {level}: {current.name} ({current.width}x{current.height})")
            resolvable = is_resolvable(current)
            if resolvable and current.width > limits.substantial_size and current.height > limits.substantial_size:
                return current
            if current.name in limits.anchor_names:
                return current
            if resolvable and limits.dialog_keyword in current.name.lower():
                return current
        logger.info("❌ No substantial parent component found")
        return None

    # ------------------------------------------------------------------
    # Step 2: direct / compatible resolution
    # ------------------------------------------------------------------

    def _resolve_compatible(self, node: SceneNode) -> Optional[ResolvedTarget]:
        # Component sets are exported whole, never decomposed into variants
        if node.type == NodeType.COMPONENT_SET:
            return ResolvedTarget(node=node, resolution_path=ResolutionPath.COMPONENT_SET_OVERRIDE)

        if is_resolvable(node):
            return ResolvedTarget(node=node, resolution_path=ResolutionPath.DIRECT)

        if node.type in (NodeType.FRAME, NodeType.GROUP) and node.children:
            logger.info(f"🎯 Frame/Group with children - using as variant component: {node.name}")
            return ResolvedTarget(node=node, resolution_path=ResolutionPath.DIRECT)

        ancestor = self._find_compatible_ancestor(node)
        if ancestor is not None:
            return ResolvedTarget(node=ancestor, resolution_path=ResolutionPath.ANCESTOR)

        descendant = self._find_compatible_descendant(node)
        if descendant is not None:
            return ResolvedTarget(node=descendant, resolution_path=ResolutionPath.DESCENDANT)

        logger.info(f"❌ No compatible component found for {node.name} ({node.type.value})")
        return None

    def _find_compatible_ancestor(self, node: SceneNode) -> Optional[SceneNode]:
        limits = self.limits
        fallback_frame: Optional[SceneNode] = None
        for level, current in enumerate(node.ancestors(limits.ancestor_max_levels), start=1):
            if not is_resolvable(current):
                continue
            if current.type in COMPONENT_TYPES:
                logger.info(f"✅ Found high-priority parent component: {current.name} ({current.type.value})")
                return current
            if current.type == NodeType.FRAME and level <= limits.frame_fallback_levels:
                if fallback_frame is None:
                    logger.debug(f"📝 Frame found as fallback option: {current.name}")
                    fallback_frame = current
                continue
            return fallback_frame or current
        return fallback_frame

    def _find_compatible_descendant(self, node: SceneNode) -> Optional[SceneNode]:
        for child in node.children:
            if child.type in COMPONENT_TYPES:
                return child
        for child in node.children:
            if is_resolvable(child):
                return child
        for child in node.children:
            for grandchild in child.children:
                if grandchild.type in COMPONENT_TYPES:
                    return grandchild
        return None


def describe_hierarchy(node: SceneNode, max_levels: int = 10) -> List[Dict[str, Any]]:
    """Return the node and up to ``max_levels`` ancestors for debugging dumps."""
    levels = [dict(node.summary(), level=0)]
    for level, current in enumerate(node.ancestors(max_levels), start=1):
        levels.append(dict(current.summary(), level=level))
    return levels
