import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from artifact_store import ArtifactStore, InMemoryBackend
from scene_graph import NodeType, SceneNode
from token_lifecycle import TokenLifecycle


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_node(
    name: str,
    node_type: NodeType,
    width: Optional[float] = None,
    height: Optional[float] = None,
    node_id: Optional[str] = None,
    parent: Optional[SceneNode] = None,
) -> SceneNode:
    node = SceneNode(id=node_id or f"id:{name}", name=name, type=node_type, width=width, height=height)
    if parent is not None:
        parent.add_child(node)
    return node


class RecordingUI:
    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []

    async def post_message(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    async def notify(self, text: str, error: bool = False, timeout_ms: Optional[int] = None) -> None:
        self.notifications.append({"text": text, "error": error, "timeout_ms": timeout_ms})

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == message_type]

    def texts(self) -> List[str]:
        return [n["text"] for n in self.notifications]


class FakeScene:
    def __init__(self, selection: Optional[List[SceneNode]] = None):
        self.selection = selection or []
        self.selected_ids: List[List[str]] = []

    async def get_selection(self) -> List[SceneNode]:
        return list(self.selection)

    async def set_selection(self, node_ids: List[str]) -> None:
        self.selected_ids.append(list(node_ids))


class FakeExtractor:
    def __init__(self, fail: bool = False, delays: Optional[Dict[str, float]] = None):
        self.fail = fail
        self.delays = delays or {}
        self.calls: List[str] = []

    async def extract(self, node: SceneNode) -> Dict[str, Any]:
        self.calls.append(node.id)
        delay = self.delays.get(node.id)
        if delay:
            await asyncio.sleep(delay)
        if self.fail:
            raise RuntimeError(f"cannot read {node.name}")
        return {"id": node.id, "name": node.name, "type": node.type.value}


class FakeRenderer:
    """Returns an image of ``sizes[scale]`` bytes for each requested scale."""

    def __init__(self, sizes: Optional[Dict[float, int]] = None, fail: bool = False):
        self.sizes = sizes or {1.0: 64, 0.5: 32}
        self.fail = fail
        self.calls: List[float] = []

    async def render(self, node: SceneNode, scale: float) -> bytes:
        self.calls.append(scale)
        if self.fail:
            raise RuntimeError("export failed")
        return b"\x89PNG" + b"\x00" * (self.sizes[scale] - 4)


class FakeStyles:
    def __init__(self, styles: Optional[Dict[str, Any]] = None):
        self.styles = styles if styles is not None else {
            "file_key": "FILE123",
            "paint_styles": [
                {"name": "Primary", "description": "buttons", "paints": [{"type": "SOLID", "color": {"r": 1, "g": 0, "b": 0}}]},
            ],
            "text_styles": [
                {"name": "Body", "font_size": 14, "font_name": {"family": "Roboto", "style": "Medium"}},
            ],
        }

    async def get_local_styles(self) -> Dict[str, Any]:
        return self.styles


class FakeWebSocket:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def wait_for_sent(self, count: int = 1) -> None:
        while len(self.sent) < count:
            await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend, clock):
    return ArtifactStore(backend, clock=clock)


@pytest.fixture
def lifecycle(store):
    return TokenLifecycle(store)
