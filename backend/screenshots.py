"""
Screenshot capture with a per-image size ceiling.

A screenshot is a nice-to-have attachment: any failure here drops the image
and lets the export continue without it.
"""

import base64
import binascii
import logging
import re
import secrets
import time
from typing import Callable, Optional

from artifact_store import SCREENSHOT_PREFIX, ArtifactKind, ArtifactStore
from host import ImageRenderer
from scene_graph import SceneNode
from token_lifecycle import BASE36_ALPHABET

logger = logging.getLogger(__name__)

# ~2MB once base64-encoded
SCREENSHOT_MAX_BYTES = 1_500_000
DEFAULT_SCALE = 1.0
REDUCED_SCALE = 0.5

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9:;_-]")


def make_screenshot_filename(node_id: str, clock: Callable[[], float] = time.time) -> str:
    safe_id = _UNSAFE_ID_CHARS.sub("-", node_id) or "node"
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(6))
    return f"screenshot_{safe_id}_{int(clock() * 1000)}_{suffix}.png"


class ScreenshotCapture:
    def __init__(
        self,
        store: ArtifactStore,
        renderer: ImageRenderer,
        max_bytes: int = SCREENSHOT_MAX_BYTES,
        scale: float = DEFAULT_SCALE,
        reduced_scale: float = REDUCED_SCALE,
    ):
        self.store = store
        self.renderer = renderer
        self.max_bytes = max_bytes
        self.scale = scale
        self.reduced_scale = reduced_scale

    async def capture(self, node: SceneNode) -> Optional[str]:
        """Render ``node`` and store it. Returns the generated filename or None."""
        logger.info(f"📸 Starting screenshot capture for {node.name} ({node.id})")
        try:
            image = await self.renderer.render(node, self.scale)
            logger.info(f"📸 Image exported, size: {len(image)} bytes")

            if len(image) > self.max_bytes:
                logger.info("⚠️ Screenshot too large, trying with lower quality...")
                try:
                    image = await self.renderer.render(node, self.reduced_scale)
                except Exception as e:
                    logger.warning(f"⚠️ Lower quality export failed, skipping screenshot: {e}")
                    return None
                if len(image) > self.max_bytes:
                    logger.info(f"⚠️ Still too large ({len(image)} bytes), skipping screenshot")
                    return None

            filename = make_screenshot_filename(node.id, self.store.clock)
            encoded = base64.b64encode(image).decode("ascii")
            await self.store.put(f"{SCREENSHOT_PREFIX}{filename}", encoded, ArtifactKind.SCREENSHOT)
            logger.info(f"📸 Screenshot saved with filename: {filename}")
            return filename
        except Exception as e:
            logger.error(f"❌ Screenshot capture failed: {e}")
            return None

    async def load(self, filename: str) -> Optional[bytes]:
        encoded = await self.store.get(f"{SCREENSHOT_PREFIX}{filename}")
        if not isinstance(encoded, str):
            return None
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning(f"🗑️ Screenshot {filename} is not valid base64, deleting")
            await self.store.delete(f"{SCREENSHOT_PREFIX}{filename}")
            return None
