"""
Selection Controller - per-selection orchestration

Drives one pass per (debounced) selection change:

    IDLE -> DEBOUNCING -> RESOLVING -> EXTRACTING -> NOTIFIED -> IDLE
                              \\______________\\____-> FAILED  -> IDLE

A new selection while DEBOUNCING cancels and replaces the pending timer. A
selection arriving while a pass is RESOLVING/EXTRACTING starts another pass
without cancelling the first, so their notifications may arrive out of order;
``drop_stale_results`` discards notifications from superseded passes.

Also hosts the manual commands of the plugin UI (export, refresh, parent
selection, hierarchy dump).
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from component_resolver import ComponentResolver, describe_hierarchy
from design_system import build_figment_export, extract_design_system
from errors import ExtractionFailure, FigmentError, NoSelection, UnresolvableSelection
from host import BlueprintExtractor, SceneGraphSource, StyleSource, UserInterface
from models import BlueprintData, ExportReady, FigmentExport, ProcessingStatus, SelectionIssue, WireModel
from scene_graph import SceneNode
from screenshots import ScreenshotCapture
from token_lifecycle import SaveResult, TokenLifecycle

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT_MS = 2000


class ControllerState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RESOLVING = "resolving"
    EXTRACTING = "extracting"
    NOTIFIED = "notified"
    FAILED = "failed"


@dataclass
class ControllerSettings:
    debounce_seconds: float = 0.150
    # Keeps the UI loading indicator visible for fast extractions
    min_processing_seconds: float = 0.5
    refresh_delay_seconds: float = 0.1
    drop_stale_results: bool = False
    hierarchy_dump_levels: int = 10


@dataclass
class ExportOutcome:
    token: str
    export: FigmentExport
    save: SaveResult

    @property
    def stored(self) -> bool:
        return self.save.stored


class SelectionController:
    def __init__(
        self,
        ui: UserInterface,
        scene: SceneGraphSource,
        extractor: BlueprintExtractor,
        lifecycle: TokenLifecycle,
        resolver: Optional[ComponentResolver] = None,
        screenshots: Optional[ScreenshotCapture] = None,
        styles: Optional[StyleSource] = None,
        settings: Optional[ControllerSettings] = None,
    ):
        self.ui = ui
        self.scene = scene
        self.extractor = extractor
        self.lifecycle = lifecycle
        self.resolver = resolver or ComponentResolver()
        self.screenshots = screenshots
        self.styles = styles
        self.settings = settings or ControllerSettings()

        self.state = ControllerState.IDLE
        self.state_history: Deque[ControllerState] = deque([ControllerState.IDLE], maxlen=64)
        self.passes_started = 0
        self._latest_sequence = 0
        self._debounce_task: Optional[asyncio.Task] = None
        self._passes: Set[asyncio.Task] = set()

    # ============================================
    # ========== SELECTION EVENTS ================
    # ============================================

    def on_selection_change(self, selection: List[SceneNode]) -> None:
        """Debounce a selection-change event; only the last one in a window runs."""
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        if self.state not in (ControllerState.RESOLVING, ControllerState.EXTRACTING):
            self._set_state(ControllerState.DEBOUNCING)
        self._debounce_task = asyncio.create_task(self._debounced(selection))

    async def _debounced(self, selection: List[SceneNode]) -> None:
        await asyncio.sleep(self.settings.debounce_seconds)
        # A started pass is its own task; later debounce cancellations do not reach it
        task = asyncio.create_task(self.run_pass(selection))
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)

    async def wait_until_settled(self) -> None:
        """Wait for the pending debounce timer and every in-flight pass."""
        while True:
            pending = [t for t in self._passes if not t.done()]
            if self._debounce_task and not self._debounce_task.done():
                pending.append(self._debounce_task)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_pending(self) -> None:
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        for task in list(self._passes):
            if not task.done():
                task.cancel()
        await asyncio.sleep(0)
        self._set_state(ControllerState.IDLE)

    async def run_pass(self, selection: List[SceneNode]) -> Optional[Dict[str, Any]]:
        """Resolve and extract the selection.

        Only the newest pass drives ``state``; it ends back in IDLE. A superseded
        pass still delivers its result but leaves the state alone.
        """
        self._latest_sequence += 1
        sequence = self._latest_sequence
        self.passes_started += 1
        logger.info(f"🔍 Selection update #{sequence}: {len(selection)} node(s)")

        try:
            if not selection:
                logger.info("❌ No selection found")
                await self._post(sequence, BlueprintData(data=None))
                self._set_pass_state(sequence, ControllerState.NOTIFIED)
                return None

            await self._post(sequence, ProcessingStatus(type="processing-started", status="Analyzing selection..."))
            self._set_pass_state(sequence, ControllerState.RESOLVING)
            selected = selection[0]
            logger.info(f"🎯 Selected node: {selected.summary()}")

            target = self.resolver.resolve_target(selected)
            if target is None:
                raise UnresolvableSelection(f"No compatible component found for {selected.name}")
            if target.node is not selected:
                await self._notify(f"Using {target.resolution_path.value} component: {target.node.name}")

            self._set_pass_state(sequence, ControllerState.EXTRACTING)
            await self._post(sequence, ProcessingStatus(type="processing-update", status=f"Extracting {target.node.name}..."))
            started = time.monotonic()
            blueprint = await self._extract(target.node)
            await self._hold_for_min_processing(started)

            logger.info("✅ Blueprint extracted successfully")
            await self._post(sequence, BlueprintData(data=blueprint))
            self._set_pass_state(sequence, ControllerState.NOTIFIED)
            return blueprint
        except UnresolvableSelection as e:
            logger.info(f"❌ {e.message}")
            await self._post(sequence, BlueprintData(data=None))
            await self._post(sequence, SelectionIssue())
            self._set_pass_state(sequence, ControllerState.NOTIFIED)
            return None
        except ExtractionFailure as e:
            logger.error(f"❌ Error extracting blueprint: {e.message}")
            await self._notify("Error extracting component data", error=True)
            await self._post(sequence, BlueprintData(data=None))
            self._set_pass_state(sequence, ControllerState.FAILED)
            return None
        except asyncio.CancelledError:
            logger.info(f"🛑 Selection pass #{sequence} cancelled")
            raise
        except Exception as e:
            logger.error(f"❌ Error in selection pass #{sequence}: {e}")
            await self._post(sequence, BlueprintData(data=None))
            self._set_pass_state(sequence, ControllerState.FAILED)
            return None
        finally:
            self._set_pass_state(sequence, ControllerState.IDLE)

    # ============================================
    # ============== COMMANDS ====================
    # ============================================

    async def export_current_selection(self) -> Optional[ExportOutcome]:
        """Full export: screenshot, design system, components, token, storage."""
        logger.info("🚀 Starting export of current selection...")
        try:
            selection = await self.scene.get_selection()
            if not selection:
                raise NoSelection("Please select at least one component")
            await self._send(ProcessingStatus(type="processing-started", status="Preparing export..."))

            targets = []
            for node in selection:
                target = self.resolver.resolve(node)
                if target is not None:
                    targets.append(target)
            if not targets:
                raise UnresolvableSelection("No compatible component in selection")

            screenshot = await self.screenshots.capture(targets[0]) if self.screenshots else None
            design_system, file_key = await extract_design_system(self.styles)

            components = []
            for target in targets:
                await self._send(ProcessingStatus(type="processing-update", status=f"Extracting {target.name}..."))
                components.append(await self._extract(target))
            logger.info(f"✅ Components extracted: {len(components)} components")

            export = build_figment_export(
                design_system, components, screenshot=screenshot, file_key=file_key, clock=self.lifecycle.clock,
            )
            token = self.lifecycle.issue()
            logger.info(f"🎫 Token generated: {token}")
            save = await self.lifecycle.save_export(
                token, export.to_wire(), source=selection[0], screenshot_filename=screenshot,
            )
            if not save.stored:
                await self._notify("⚠️ Storage quota exceeded. Please clear old exports.", error=True)

            await self._send(ExportReady(data=export, token=token))
            await self._notify(f"✅ Token generated: {token} (copied to clipboard)")
            logger.info("✅ Export completed successfully!")
            return ExportOutcome(token=token, export=export, save=save)
        except FigmentError as e:
            logger.error(f"❌ Export failed ({e.code}): {e.message}")
            if isinstance(e, UnresolvableSelection):
                await self._send(SelectionIssue())
            await self._notify(f"Error exporting: {e.message}", error=True)
            return None
        except Exception as e:
            logger.error(f"❌ Export error: {e}")
            await self._notify(f"Error exporting: {e}", error=True)
            return None

    async def force_refresh(self) -> Optional[Dict[str, Any]]:
        logger.info("🔄 Force refreshing selection...")
        try:
            selection = await self.scene.get_selection()
        except Exception as e:
            logger.error(f"❌ Could not read selection: {e}")
            return None
        return await self.run_pass(selection)

    async def select_resolved_parent(self) -> Optional[SceneNode]:
        """Select the parent component of a misselected child, then refresh."""
        try:
            selection = await self.scene.get_selection()
            if not selection:
                await self._notify("No selection found", error=True)
                return None

            parent = self.resolver.find_proper_parent(selection[0])
            if parent is None:
                await self._notify("No suitable parent component found", error=True)
                return None

            await self.scene.set_selection([parent.id])
            await self._notify(f"Selected parent component: {parent.name}")
        except Exception as e:
            logger.error(f"❌ Selecting parent component failed: {e}")
            return None

        await asyncio.sleep(self.settings.refresh_delay_seconds)
        await self.force_refresh()
        return parent

    async def debug_dump_hierarchy(self) -> List[Dict[str, Any]]:
        try:
            selection = await self.scene.get_selection()
        except Exception as e:
            logger.error(f"❌ Could not read selection: {e}")
            return []
        if not selection:
            await self._notify("No selection found", error=True)
            return []

        levels = describe_hierarchy(selection[0], self.settings.hierarchy_dump_levels)
        for entry in levels:
            logger.info(f"📋 Level {entry['level']}: {entry}")
            if entry["level"] > 0 and entry["name"] in self.resolver.limits.anchor_names:
                await self._notify(f"Found {entry['name']} at level {entry['level']}", timeout_ms=3000)
        await self._notify("Check console for selection hierarchy")
        return levels

    # ============================================
    # ============== HELPERS =====================
    # ============================================

    async def _extract(self, node: SceneNode) -> Dict[str, Any]:
        try:
            return await self.extractor.extract(node)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ExtractionFailure(f"{node.name}: {e}", details={"node_id": node.id}) from e

    async def _hold_for_min_processing(self, started: float) -> None:
        remaining = self.settings.min_processing_seconds - (time.monotonic() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _post(self, sequence: int, message: WireModel) -> None:
        if self.settings.drop_stale_results and sequence != self._latest_sequence:
            logger.debug(f"Dropping stale {message.to_wire().get('type')} from pass #{sequence}")
            return
        await self._send(message)

    async def _send(self, message: WireModel) -> None:
        try:
            await self.ui.post_message(message.to_wire())
        except Exception as e:
            # UI delivery failures never abort a pass
            logger.debug(f"Failed to post UI message: {e}")

    async def _notify(self, text: str, error: bool = False, timeout_ms: Optional[int] = NOTIFY_TIMEOUT_MS) -> None:
        try:
            await self.ui.notify(text, error=error, timeout_ms=timeout_ms)
        except Exception as e:
            logger.debug(f"Failed to send notification: {e}")

    def _set_pass_state(self, sequence: int, state: ControllerState) -> None:
        if sequence == self._latest_sequence:
            self._set_state(state)

    def _set_state(self, state: ControllerState) -> None:
        if state != self.state:
            logger.debug(f"🔁 Controller state: {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)
