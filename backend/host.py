"""
Host collaborator interfaces.

The backend never owns the scene graph, the blueprint extractor, the image
encoder or the UI. It reaches all of them through these interfaces; the
production implementation (``figma_communicator.PluginHost``) forwards each
call to the Figma plugin, tests use in-memory fakes.
"""

from typing import Any, Dict, List, Optional, Protocol

from scene_graph import SceneNode


class SceneGraphSource(Protocol):
    async def get_selection(self) -> List[SceneNode]:
        """Return the current selection, freshly read from the host."""
        ...

    async def set_selection(self, node_ids: List[str]) -> None:
        ...


class BlueprintExtractor(Protocol):
    async def extract(self, node: SceneNode) -> Dict[str, Any]:
        """Return the opaque blueprint for ``node``, addressed by ``node.id``."""
        ...


class ImageRenderer(Protocol):
    async def render(self, node: SceneNode, scale: float) -> bytes:
        ...


class StyleSource(Protocol):
    async def get_local_styles(self) -> Dict[str, Any]:
        """Return ``{"file_key": str | None, "paint_styles": [...], "text_styles": [...]}``."""
        ...


class UserInterface(Protocol):
    async def post_message(self, message: Dict[str, Any]) -> None:
        ...

    async def notify(self, text: str, error: bool = False, timeout_ms: Optional[int] = None) -> None:
        ...
