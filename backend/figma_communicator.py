"""
Figma Communicator - RPC Communication Layer

This module provides the communication layer between the Figment backend
and the Figma plugin via WebSocket tool calls and responses, plus
``PluginHost``, which implements the host collaborator interfaces (scene
graph, extractor, renderer, styles, UI) on top of those calls.
"""

import asyncio
import base64
import json
import uuid
import logging
import time
from typing import Dict, Any, List, Optional

from scene_graph import SceneNode, selection_from_payload

logger = logging.getLogger(__name__)

class ToolExecutionError(Exception):
    """
    Structured failure reported by the plugin for one RPC command.

    Expected payload shape: { code: str, message: str, details?: dict }
    """

    def __init__(self, payload: Any, command: str | None = None, params: Dict[str, Any] | None = None):
        self.command = command
        self.params = params

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "unknown_plugin_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
        else:
            self.code = "unknown_plugin_error"
            self.message = str(payload)
            self.details = {}
        self.payload = {"code": self.code, "message": self.message, "details": self.details}

        super().__init__(self.message if self.message else self.code)

class FigmaCommunicator:
    """
    Handles RPC communication with the Figma plugin.

    This class manages:
    - Sending tool_call messages to the plugin
    - Tracking pending requests with unique IDs
    - Resolving futures when tool_response messages arrive
    - Fire-and-forget messages (UI updates, notifications)
    """

    def __init__(self, websocket, timeout: float = 30.0):
        """
        Initialize the communicator.

        Args:
            websocket: The WebSocket connection to send messages through
            timeout: Timeout in seconds for tool calls (default: 30.0)
        """
        self.websocket = websocket
        self.timeout = timeout
        self.pending_requests: Dict[str, asyncio.Future] = {}
        self.request_timestamps: Dict[str, float] = {}
        self.request_meta: Dict[str, Dict[str, Any]] = {}

    def generate_id(self) -> str:
        """Generate a unique ID for tool calls."""
        return str(uuid.uuid4())

    async def emit(self, message: Dict[str, Any]) -> None:
        """Send a message that expects no response."""
        if not self.websocket:
            raise RuntimeError("WebSocket connection not available")
        await self.websocket.send(json.dumps(message))

    async def send_command(self, command: str, params: Dict[str, Any] = None) -> Any:
        """
        Send a command to the Figma plugin and wait for the response.

        Args:
            command: The command name (e.g., "extract_blueprint")
            params: Optional parameters for the command

        Returns:
            The result from the plugin

        Raises:
            asyncio.TimeoutError: If the request times out
            ToolExecutionError: If the plugin returns an error
        """
        if not self.websocket:
            raise RuntimeError("WebSocket connection not available")

        request_id = self.generate_id()
        tool_call_message = {
            "type": "tool_call",
            "id": request_id,
            "command": command,
            "params": params or {}
        }

        future = asyncio.get_running_loop().create_future()
        self.pending_requests[request_id] = future
        self.request_timestamps[request_id] = time.time()
        self.request_meta[request_id] = {"command": command, "params": params or {}}

        logger.debug(f"📝 Added to pending requests: {request_id} (total: {len(self.pending_requests)})")

        try:
            logger.info(f"🚀 Sending tool_call: {command} with ID: {request_id}")
            await self.websocket.send(json.dumps(tool_call_message))
            return await asyncio.wait_for(future, timeout=self.timeout)

        except asyncio.TimeoutError:
            self.pending_requests.pop(request_id, None)
            start_time = self.request_timestamps.pop(request_id, None)
            self.request_meta.pop(request_id, None)
            elapsed = time.time() - start_time if start_time else self.timeout
            logger.error(f"⏰ Tool call {command} (ID: {request_id}) timed out after {elapsed:.3f}s (limit: {self.timeout}s)")
            raise asyncio.TimeoutError(f"Tool call '{command}' timed out after {elapsed:.1f} seconds")

        except Exception as e:
            self.pending_requests.pop(request_id, None)
            self.request_timestamps.pop(request_id, None)
            self.request_meta.pop(request_id, None)
            logger.error(f"Tool call {command} (ID: {request_id}) failed: {e}")
            raise

    def handle_tool_response(self, message: Dict[str, Any]) -> None:
        """
        Handle incoming tool_response messages from the plugin.

        Args:
            message: The tool_response message from the plugin
        """
        request_id = message.get("id")
        if not request_id:
            logger.warning("❌ Received tool_response without ID")
            return

        future = self.pending_requests.pop(request_id, None)
        start_time = self.request_timestamps.pop(request_id, None)
        meta = self.request_meta.pop(request_id, None)
        cmd = meta.get("command") if isinstance(meta, dict) else None
        params = meta.get("params") if isinstance(meta, dict) else None

        if not future:
            logger.warning(f"❌ Received tool_response for unknown ID: {request_id}")
            return

        if future.done():
            logger.debug(f"⚠️ Received tool_response for finished request: {request_id}")
            return

        elapsed = time.time() - start_time if start_time else 0

        if isinstance(message.get("error_structured"), dict):
            error_payload = message["error_structured"]
            logger.error(f"❌ Tool call {request_id} failed after {elapsed:.3f}s: code={error_payload.get('code')}, message={error_payload.get('message')}")
            future.set_exception(ToolExecutionError(error_payload, command=cmd, params=params))
            return

        if "error" in message:
            error_val = message.get("error")
            logger.error(f"❌ Tool call {request_id} failed after {elapsed:.3f}s: {error_val}")
            if isinstance(error_val, dict):
                error_payload = error_val
            else:
                try:
                    error_payload = json.loads(error_val)
                except (TypeError, ValueError):
                    error_payload = None
                if not isinstance(error_payload, dict):
                    error_payload = {"code": "unknown_plugin_error", "message": str(error_val)}
            future.set_exception(ToolExecutionError(error_payload, command=cmd, params=params))
            return

        result = message.get("result", {})
        if isinstance(result, dict) and result.get("success") is False:
            err_text = result.get("message") or "Tool reported failure"
            logger.error(f"❌ Tool call {request_id} reported failure after {elapsed:.3f}s: {err_text}")
            future.set_exception(ToolExecutionError(
                {"code": "plugin_reported_failure", "message": str(err_text), "details": {"result": result}},
                command=cmd, params=params,
            ))
            return

        logger.info(f"✅ Tool call {cmd or request_id} completed successfully after {elapsed:.3f}s")
        future.set_result(result)

    def cleanup_pending_requests(self) -> None:
        """Cancel all pending requests (called on shutdown)."""
        for request_id, future in self.pending_requests.items():
            if not future.done():
                future.cancel()
                logger.info(f"Cancelled pending request: {request_id}")
        self.pending_requests.clear()
        self.request_timestamps.clear()
        self.request_meta.clear()


class PluginHost:
    """Host collaborators backed by plugin RPC commands.

    Nodes are always addressed by id; the plugin re-fetches them on its side.
    """

    def __init__(self, communicator: FigmaCommunicator):
        self.communicator = communicator

    async def get_selection(self) -> List[SceneNode]:
        result = await self.communicator.send_command("get_selection", {"include_ancestors": True, "child_depth": 2})
        items = result.get("selection") if isinstance(result, dict) else result
        return selection_from_payload(items)

    async def set_selection(self, node_ids: List[str]) -> None:
        await self.communicator.send_command("set_selection", {"node_ids": list(node_ids)})

    async def extract(self, node: SceneNode) -> Dict[str, Any]:
        result = await self.communicator.send_command("extract_blueprint", {"node_id": node.id})
        if not isinstance(result, dict):
            raise ToolExecutionError(
                {"code": "invalid_blueprint", "message": f"Expected an object, got {type(result).__name__}"},
                command="extract_blueprint",
            )
        return result.get("blueprint", result)

    async def render(self, node: SceneNode, scale: float) -> bytes:
        result = await self.communicator.send_command(
            "export_node_image", {"node_id": node.id, "format": "PNG", "scale": scale},
        )
        encoded = result.get("base64") if isinstance(result, dict) else result
        if not isinstance(encoded, str) or not encoded:
            raise ToolExecutionError(
                {"code": "image_export_failed", "message": "Plugin returned no image data"},
                command="export_node_image",
            )
        return base64.b64decode(encoded)

    async def get_local_styles(self) -> Dict[str, Any]:
        result = await self.communicator.send_command("get_local_styles", {})
        return result if isinstance(result, dict) else {}

    async def post_message(self, message: Dict[str, Any]) -> None:
        await self.communicator.emit({"type": "ui_message", "message": message})

    async def notify(self, text: str, error: bool = False, timeout_ms: Optional[int] = None) -> None:
        payload: Dict[str, Any] = {"type": "notify", "message": text, "error": error}
        if timeout_ms is not None:
            payload["timeout"] = timeout_ms
        await self.communicator.emit(payload)
