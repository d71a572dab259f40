import json
import os
import sys
import signal
import logging
import asyncio
from dataclasses import dataclass
from typing import Dict, Any, List, Optional
import websockets
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from agents.tracing import set_tracing_disabled
set_tracing_disabled(True)

from artifact_store import ArtifactStore, JsonFileBackend
from component_resolver import ComponentResolver
from figma_communicator import FigmaCommunicator, PluginHost
from scene_graph import selection_from_payload
from screenshots import ScreenshotCapture
from selection_controller import ControllerSettings, SelectionController
from token_lifecycle import DEFAULT_NAMESPACE, TokenLifecycle
import figment_tools as figment_tools

# Configure logging with INFO level (DEBUG was too verbose)
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [figment] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger(__name__)

# Message type constants to avoid stringly-typed conditionals
MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_SYSTEM = "system"
MESSAGE_TYPE_TOOL_RESPONSE = "tool_response"
MESSAGE_TYPE_ERROR = "error"
MESSAGE_TYPE_SELECTION_CHANGE = "selection_change"
MESSAGE_TYPE_EXPORT = "export_current_selection"
MESSAGE_TYPE_FORCE_REFRESH = "force_refresh"
MESSAGE_TYPE_SELECT_PARENT = "select_resolved_parent"
MESSAGE_TYPE_DEBUG_HIERARCHY = "debug_dump_hierarchy"


@dataclass
class FigmentConfig:
    bridge_url: str = "ws://localhost:3055"
    channel: str = "figment-default"
    tool_timeout: float = 30.0
    storage_path: str = "~/.figment/storage.json"
    export_dir: str = figment_tools.DEFAULT_EXPORT_DIR
    token_namespace: str = DEFAULT_NAMESPACE
    debounce_ms: int = 150
    min_processing_ms: int = 500


class FigmentAgent:
    def __init__(self, config: FigmentConfig):
        self.config = config
        self.bridge_url = config.bridge_url
        self.channel = config.channel
        self.websocket: Optional[websockets.WebSocketClientProtocol] = None
        self.running = True
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 30  # Max 30 seconds
        self._keep_alive_task = None  # Keep-alive task for WebSocket
        self._background_tasks: set[asyncio.Task] = set()  # Track command tasks for cancellation
        self._cancel_lock = asyncio.Lock()
        self._storage_ready = False

        self.communicator: Optional[FigmaCommunicator] = None
        self.controller: Optional[SelectionController] = None

        self.store = ArtifactStore(JsonFileBackend(config.storage_path))
        self.lifecycle = TokenLifecycle(self.store, namespace=config.token_namespace)
        self.resolver = ComponentResolver()
        self.settings = ControllerSettings(
            debounce_seconds=config.debounce_ms / 1000,
            min_processing_seconds=config.min_processing_ms / 1000,
        )
        logger.info(f"🗄️ Artifact storage at {self.store.backend.path} (namespace={config.token_namespace})")

    def build_controller(self, host: PluginHost) -> SelectionController:
        screenshots = ScreenshotCapture(self.store, host)
        figment_tools.set_token_lifecycle(self.lifecycle, screenshots, self.config.export_dir)
        return SelectionController(
            ui=host,
            scene=host,
            extractor=host,
            lifecycle=self.lifecycle,
            resolver=self.resolver,
            screenshots=screenshots,
            styles=host,
            settings=self.settings,
        )

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        """Safely send a JSON-serializable payload over the websocket if connected."""
        if not self.websocket:
            raise RuntimeError("WebSocket not connected")
        await self.websocket.send(json.dumps(payload))

    async def connect(self) -> bool:
        """Connect to the bridge and join as the Figment backend"""
        try:
            logger.info(f"Connecting to bridge at {self.bridge_url}")
            # Remove size limits to allow large blueprints/screenshots over WS
            self.websocket = await websockets.connect(self.bridge_url, max_size=None)

            join_message = {
                "type": MESSAGE_TYPE_JOIN,
                "role": "agent",
                "channel": self.channel
            }
            await self._send_json(join_message)
            logger.info(f"Sent join message for channel: {self.channel}")

            await self._send_json({"type": MESSAGE_TYPE_PING})
            logger.info("🏓 Sent ping message to test WebSocket bidirectional communication")

            self._keep_alive_task = asyncio.create_task(self._websocket_keep_alive())
            logger.info("💓 Started WebSocket keep-alive mechanism")

            self.communicator = FigmaCommunicator(self.websocket, timeout=self.config.tool_timeout)
            if self.controller:
                await self.controller.cancel_pending()
            self.controller = self.build_controller(PluginHost(self.communicator))
            logger.info(f"Initialized FigmaCommunicator for plugin calls (timeout: {self.config.tool_timeout}s)")

            if not self._storage_ready:
                await self.lifecycle.initialize()
                self._storage_ready = True

            # Reset reconnect delay on successful connection
            self.reconnect_delay = 1
            return True

        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            return False

    async def handle_message(self, message: Dict[str, Any]) -> None:
        """Handle incoming messages from the bridge via a clean async dispatch."""
        msg_type = message.get("type")
        logger.debug(f"🔍 Raw message received - Type: '{msg_type}', Keys: {list(message.keys())}")

        handlers = {
            MESSAGE_TYPE_SYSTEM: self._handle_system,
            MESSAGE_TYPE_PING: self._handle_ping,
            MESSAGE_TYPE_PONG: self._handle_pong,
            MESSAGE_TYPE_TOOL_RESPONSE: self._handle_tool_response,
            MESSAGE_TYPE_ERROR: self._handle_bridge_error,
            MESSAGE_TYPE_SELECTION_CHANGE: self._handle_selection_change,
            MESSAGE_TYPE_EXPORT: self._handle_export,
            MESSAGE_TYPE_FORCE_REFRESH: self._handle_force_refresh,
            MESSAGE_TYPE_SELECT_PARENT: self._handle_select_parent,
            MESSAGE_TYPE_DEBUG_HIERARCHY: self._handle_debug_hierarchy,
        }

        handler = handlers.get(msg_type, self._handle_unknown)
        await handler(message)

    async def _handle_system(self, message: Dict[str, Any]) -> None:
        sys_msg = message.get('message')
        logger.info(f"🔧 System message: {sys_msg}")
        if isinstance(sys_msg, str) and 'disconnected' in sys_msg.lower() and 'plugin' in sys_msg.lower():
            await self.cancel_active_operations(reason="plugin_disconnected")

    async def _handle_ping(self, _: Dict[str, Any]) -> None:
        await self._send_json({"type": MESSAGE_TYPE_PONG})

    async def _handle_pong(self, _: Dict[str, Any]) -> None:
        logger.info("🏓 Received pong response - WebSocket bidirectional communication WORKING!")

    async def _handle_tool_response(self, message: Dict[str, Any]) -> None:
        logger.debug(f"📨 Received tool_response: {message.get('id', 'no-id')}")
        if self.communicator:
            self.communicator.handle_tool_response(message)
        else:
            logger.warning("Received tool_response but communicator not initialized")

    async def _handle_bridge_error(self, message: Dict[str, Any]) -> None:
        error_msg = message.get("message", "Unknown error")
        logger.error(f"Bridge error: {error_msg}")

    async def _handle_unknown(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        logger.debug(f"Ignoring unknown message type: {msg_type}")

    async def _handle_selection_change(self, message: Dict[str, Any]) -> None:
        if not self._require_controller():
            return
        selection = selection_from_payload(message.get("selection") or [])
        logger.info(f"🖱️ Selection changed: {len(selection)} node(s)")
        self.controller.on_selection_change(selection)

    async def _handle_export(self, _: Dict[str, Any]) -> None:
        if self._require_controller():
            self._spawn(self.controller.export_current_selection(), "export")

    async def _handle_force_refresh(self, _: Dict[str, Any]) -> None:
        if self._require_controller():
            self._spawn(self.controller.force_refresh(), "force_refresh")

    async def _handle_select_parent(self, _: Dict[str, Any]) -> None:
        if self._require_controller():
            self._spawn(self.controller.select_resolved_parent(), "select_resolved_parent")

    async def _handle_debug_hierarchy(self, _: Dict[str, Any]) -> None:
        if self._require_controller():
            self._spawn(self.controller.debug_dump_hierarchy(), "debug_dump_hierarchy")

    def _require_controller(self) -> bool:
        if self.controller is None:
            logger.warning("Received plugin command but controller not initialized")
            return False
        return True

    def _spawn(self, coro, name: str) -> asyncio.Task:
        # Commands await plugin RPCs answered through the listen loop, which must keep running
        logger.info(f"🚀 Starting {name} in background task")
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def cancel_active_operations(self, reason: str = "") -> None:
        """Cancel all in-flight command tasks, pending passes and tool calls."""
        async with self._cancel_lock:
            if self._background_tasks:
                logger.info(f"🧹 Cancelling {len(self._background_tasks)} active command task(s) ({reason})")
                for task in list(self._background_tasks):
                    if not task.done():
                        task.cancel()
                # Allow cancelled tasks to process cancellation
                await asyncio.sleep(0)
            if self.controller:
                await self.controller.cancel_pending()
            if self.communicator:
                self.communicator.cleanup_pending_requests()

    async def listen(self) -> None:
        """Listen for messages from the bridge"""
        logger.info("🎧 Starting to listen for messages from bridge")
        while self.running and self.websocket:
            try:
                raw_message = await self.websocket.recv()
            except asyncio.CancelledError:
                logger.info("🛑 Listen loop cancelled")
                break
            except Exception as e:
                logger.error(f"❌ Error receiving message: {e}")
                break

            if not raw_message:
                logger.warning("📡 Received empty WebSocket message")
                continue

            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError as e:
                logger.error(f"❌ Failed to decode message: {e}, Raw: {raw_message[:200]}")
                continue
            if not isinstance(message, dict):
                logger.error(f"❌ Ignoring non-object message: {raw_message[:200]}")
                continue

            try:
                await self.handle_message(message)
            except Exception as e:
                logger.error(f"❌ Error handling message: {e}")

    async def _websocket_keep_alive(self, interval: int = 30) -> None:
        """Keep WebSocket connection alive with periodic pings"""
        try:
            while self.running and self.websocket:
                await asyncio.sleep(interval)
                if not self.websocket:
                    break
                try:
                    pong_waiter = await self.websocket.ping()
                    await asyncio.wait_for(pong_waiter, timeout=10)
                    logger.debug("💓 WebSocket keep-alive ping successful")
                except asyncio.TimeoutError:
                    logger.warning("💔 WebSocket keep-alive ping timed out")
                    break
                except Exception as e:
                    logger.error(f"💔 WebSocket keep-alive ping failed: {e}")
                    break
        except asyncio.CancelledError:
            logger.debug("💓 WebSocket keep-alive task cancelled")

    async def run_with_reconnect(self) -> None:
        """Main loop with reconnection logic"""
        while self.running:
            try:
                if await self.connect():
                    logger.info("🌉 Connected to bridge successfully")
                    await self.listen()
                else:
                    logger.warning("Failed to connect to bridge")
            except Exception as e:
                logger.error(f"Unexpected error: {e}")

            if self._keep_alive_task and not self._keep_alive_task.done():
                self._keep_alive_task.cancel()

            if self.running:
                logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
                await asyncio.sleep(self.reconnect_delay)

                # Exponential backoff up to max delay
                self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

    def shutdown(self) -> None:
        """Graceful shutdown"""
        logger.info("Shutting down Figment backend")
        self.running = False

        if self._keep_alive_task and not self._keep_alive_task.done():
            self._keep_alive_task.cancel()
            logger.debug("💓 Cancelled WebSocket keep-alive task")

        for task in list(self._background_tasks):
            if not task.done():
                task.cancel()

        if self.communicator:
            self.communicator.cleanup_pending_requests()
            logger.info("Cleaned up pending tool calls")

        self.websocket = None


def get_config(argv: Optional[List[str]] = None) -> FigmentConfig:
    """Get configuration from environment variables or CLI args"""
    defaults = FigmentConfig()
    bridge_url = os.getenv("BRIDGE_URL", defaults.bridge_url)
    channel = os.getenv("FIGMA_CHANNEL")
    tool_timeout = os.getenv("FIGMA_TOOL_TIMEOUT", str(defaults.tool_timeout))
    storage_path = os.getenv("FIGMENT_STORAGE_PATH", defaults.storage_path)
    export_dir = os.getenv("FIGMENT_EXPORT_DIR", defaults.export_dir)
    namespace = os.getenv("FIGMENT_TOKEN_NAMESPACE", defaults.token_namespace)
    debounce_ms = os.getenv("FIGMENT_DEBOUNCE_MS", str(defaults.debounce_ms))
    min_processing_ms = os.getenv("FIGMENT_MIN_PROCESSING_MS", str(defaults.min_processing_ms))

    # Parse CLI args for overrides
    args = sys.argv[1:] if argv is None else argv
    for arg in args:
        if arg.startswith("--channel="):
            channel = arg.split("=", 1)[1]
        elif arg.startswith("--bridge-url="):
            bridge_url = arg.split("=", 1)[1]
        elif arg.startswith("--tool-timeout="):
            tool_timeout = arg.split("=", 1)[1]
        elif arg.startswith("--storage-path="):
            storage_path = arg.split("=", 1)[1]
        elif arg.startswith("--export-dir="):
            export_dir = arg.split("=", 1)[1]
        elif arg.startswith("--namespace="):
            namespace = arg.split("=", 1)[1]
        elif arg.startswith("--debounce-ms="):
            debounce_ms = arg.split("=", 1)[1]
        elif arg.startswith("--min-processing-ms="):
            min_processing_ms = arg.split("=", 1)[1]

    if not channel:
        channel = defaults.channel
        logger.info(f"No channel specified, using default: {channel}")

    try:
        return FigmentConfig(
            bridge_url=bridge_url,
            channel=channel,
            tool_timeout=float(tool_timeout),
            storage_path=storage_path,
            export_dir=export_dir,
            token_namespace=namespace,
            debounce_ms=int(debounce_ms),
            min_processing_ms=int(min_processing_ms),
        )
    except ValueError as e:
        logger.error(f"Invalid numeric configuration value: {e}")
        sys.exit(1)


def main():
    config = get_config()

    logger.info("Starting Figment backend")
    logger.info(f"Bridge URL: {config.bridge_url}")
    logger.info(f"Channel: {config.channel}")
    logger.info(f"Debounce: {config.debounce_ms}ms, min processing: {config.min_processing_ms}ms")
    logger.info(f"🧰 Consumer tools: {', '.join(t.name for t in figment_tools.ALL_TOOLS)}")

    agent = FigmentAgent(config)

    # Handle shutdown signals
    def signal_handler(signum, frame):
        logger.info("Received shutdown signal")
        agent.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(agent.run_with_reconnect())
    except KeyboardInterrupt:
        logger.info("Figment backend interrupted")
    finally:
        agent.shutdown()

if __name__ == "__main__":
    main()
