"""Tests for the selection controller state machine and plugin commands."""

import asyncio

import pytest

from artifact_store import ArtifactStore
from conftest import FakeExtractor, FakeRenderer, FakeScene, FakeStyles, RecordingUI, make_node
from scene_graph import NodeType
from screenshots import ScreenshotCapture
from selection_controller import ControllerSettings, ControllerState, SelectionController
from token_lifecycle import TokenLifecycle

FAST = ControllerSettings(debounce_seconds=0.02, min_processing_seconds=0, refresh_delay_seconds=0)


def build_controller(lifecycle, scene=None, extractor=None, settings=FAST, renderer=None):
    ui = RecordingUI()
    controller = SelectionController(
        ui=ui,
        scene=scene or FakeScene(),
        extractor=extractor or FakeExtractor(),
        lifecycle=lifecycle,
        screenshots=ScreenshotCapture(lifecycle.store, renderer or FakeRenderer()),
        styles=FakeStyles(),
        settings=settings,
    )
    return controller, ui


def button_with_label():
    page = make_node("Page 1", NodeType.PAGE)
    button = make_node("Submit Button", NodeType.FRAME, 400, 80, node_id="1:2", parent=page)
    label = make_node("Submit", NodeType.TEXT, 40, 40, node_id="1:3", parent=button)
    return button, label


@pytest.mark.asyncio
async def test_rapid_selection_changes_run_one_pass_for_last_event(lifecycle):
    extractor = FakeExtractor()
    controller, ui = build_controller(lifecycle, extractor=extractor)
    first = make_node("First", NodeType.FRAME, 300, 300, node_id="1:1")
    second = make_node("Second", NodeType.COMPONENT, 300, 300, node_id="2:2")

    controller.on_selection_change([first])
    controller.on_selection_change([second])
    await controller.wait_until_settled()

    assert controller.passes_started == 1
    assert extractor.calls == ["2:2"]
    assert ui.of_type("blueprint-data")[-1]["data"]["id"] == "2:2"


@pytest.mark.asyncio
async def test_changes_outside_debounce_window_run_separately(lifecycle):
    extractor = FakeExtractor()
    controller, _ = build_controller(lifecycle, extractor=extractor)

    controller.on_selection_change([make_node("A", NodeType.FRAME, 300, 300, node_id="a")])
    await controller.wait_until_settled()
    controller.on_selection_change([make_node("B", NodeType.FRAME, 300, 300, node_id="b")])
    await controller.wait_until_settled()

    assert extractor.calls == ["a", "b"]


@pytest.mark.asyncio
async def test_successful_pass_walks_state_machine(lifecycle):
    controller, ui = build_controller(lifecycle)

    controller.on_selection_change([make_node("Card", NodeType.INSTANCE, 300, 200)])
    await controller.wait_until_settled()

    history = list(controller.state_history)
    assert history[-5:] == [
        ControllerState.DEBOUNCING,
        ControllerState.RESOLVING,
        ControllerState.EXTRACTING,
        ControllerState.NOTIFIED,
        ControllerState.IDLE,
    ]
    assert controller.state is ControllerState.IDLE
    assert [m["type"] for m in ui.messages] == ["processing-started", "processing-update", "blueprint-data"]


@pytest.mark.asyncio
async def test_misselected_label_extracts_parent_and_notifies(lifecycle):
    button, label = button_with_label()
    extractor = FakeExtractor()
    controller, ui = build_controller(lifecycle, extractor=extractor)

    blueprint = await controller.run_pass([label])

    assert blueprint["id"] == button.id
    assert extractor.calls == [button.id]
    assert "Using ancestor component: Submit Button" in ui.texts()


@pytest.mark.asyncio
async def test_empty_selection_clears_blueprint(lifecycle):
    controller, ui = build_controller(lifecycle)

    assert await controller.run_pass([]) is None

    assert ui.messages == [{"type": "blueprint-data", "data": None}]
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_unresolvable_selection_reports_issue(lifecycle):
    controller, ui = build_controller(lifecycle)

    await controller.run_pass([make_node("Sticky", NodeType.OTHER, 100, 100)])

    assert [m["type"] for m in ui.messages] == ["processing-started", "blueprint-data", "selection-issue"]
    assert ui.of_type("blueprint-data")[0]["data"] is None
    assert controller.state is ControllerState.IDLE


@pytest.mark.asyncio
async def test_extraction_failure_notifies_and_returns_to_idle(lifecycle):
    controller, ui = build_controller(lifecycle, extractor=FakeExtractor(fail=True))

    await controller.run_pass([make_node("Card", NodeType.FRAME, 300, 200)])

    assert ControllerState.FAILED in controller.state_history
    assert controller.state is ControllerState.IDLE
    assert ui.notifications[-1]["error"] is True
    assert ui.notifications[-1]["text"] == "Error extracting component data"
    assert ui.of_type("blueprint-data")[-1]["data"] is None


@pytest.mark.asyncio
async def test_stale_results_dropped_when_enabled(lifecycle):
    settings = ControllerSettings(debounce_seconds=0, min_processing_seconds=0, drop_stale_results=True)
    extractor = FakeExtractor(delays={"slow": 0.05})
    controller, ui = build_controller(lifecycle, extractor=extractor, settings=settings)
    slow = make_node("Slow", NodeType.FRAME, 300, 300, node_id="slow")
    fast = make_node("Fast", NodeType.FRAME, 300, 300, node_id="fast")

    await asyncio.gather(controller.run_pass([slow]), controller.run_pass([fast]))

    assert [m["data"]["id"] for m in ui.of_type("blueprint-data")] == ["fast"]


@pytest.mark.asyncio
async def test_stale_results_delivered_by_default(lifecycle):
    settings = ControllerSettings(debounce_seconds=0, min_processing_seconds=0)
    extractor = FakeExtractor(delays={"slow": 0.05})
    controller, ui = build_controller(lifecycle, extractor=extractor, settings=settings)
    slow = make_node("Slow", NodeType.FRAME, 300, 300, node_id="slow")
    fast = make_node("Fast", NodeType.FRAME, 300, 300, node_id="fast")

    await asyncio.gather(controller.run_pass([slow]), controller.run_pass([fast]))

    assert [m["data"]["id"] for m in ui.of_type("blueprint-data")] == ["fast", "slow"]


@pytest.mark.asyncio
async def test_finished_older_pass_leaves_newer_pass_state(lifecycle):
    settings = ControllerSettings(debounce_seconds=0, min_processing_seconds=0)
    extractor = FakeExtractor(delays={"a": 0.05, "b": 0.3})
    controller, ui = build_controller(lifecycle, extractor=extractor, settings=settings)
    first = asyncio.create_task(controller.run_pass([make_node("A", NodeType.FRAME, 300, 300, node_id="a")]))
    second = asyncio.create_task(controller.run_pass([make_node("B", NodeType.FRAME, 300, 300, node_id="b")]))

    await first

    assert controller.state is ControllerState.EXTRACTING
    await second
    assert controller.state is ControllerState.IDLE
    assert [m["data"]["id"] for m in ui.of_type("blueprint-data")] == ["a", "b"]


@pytest.mark.asyncio
async def test_export_current_selection_persists_and_notifies(lifecycle):
    card = make_node("Pricing Card", NodeType.COMPONENT, 320, 480, node_id="7:1")
    controller, ui = build_controller(lifecycle, scene=FakeScene([card]))

    outcome = await controller.export_current_selection()

    assert outcome.stored
    ready = ui.of_type("export-ready")[-1]
    assert ready["token"] == outcome.token
    assert ready["data"]["components"] == [{"id": "7:1", "name": "Pricing Card", "type": "COMPONENT"}]
    assert ready["data"]["screenshot"] == outcome.export.screenshot
    assert ready["data"]["designSystem"]["colors"][0]["value"] == "#ff0000"
    assert f"✅ Token generated: {outcome.token} (copied to clipboard)" in ui.texts()

    stored = await lifecycle.fetch(outcome.token)
    assert stored["screenshotFilename"] == outcome.export.screenshot
    assert stored["component"]["metadata"]["figmaFileId"] == "FILE123"
    recent = await lifecycle.recent_exports()
    assert recent[0].name == "Pricing Card"


@pytest.mark.asyncio
async def test_export_without_selection_notifies_error(lifecycle):
    controller, ui = build_controller(lifecycle, scene=FakeScene([]))

    assert await controller.export_current_selection() is None
    assert ui.notifications[-1] == {
        "text": "Error exporting: Please select at least one component",
        "error": True,
        "timeout_ms": 2000,
    }


@pytest.mark.asyncio
async def test_export_still_delivered_when_storage_is_full(backend, clock):
    lifecycle = TokenLifecycle(ArtifactStore(backend, quota_bytes=300, clock=clock))
    card = make_node("Card", NodeType.FRAME, 320, 200)
    controller, ui = build_controller(lifecycle, scene=FakeScene([card]))

    outcome = await controller.export_current_selection()

    assert not outcome.stored
    assert ui.of_type("export-ready")[-1]["token"] == outcome.token
    assert "⚠️ Storage quota exceeded. Please clear old exports." in ui.texts()
    assert await lifecycle.fetch(outcome.token) is None


@pytest.mark.asyncio
async def test_select_resolved_parent_selects_dialog_and_refreshes(lifecycle):
    dialog = make_node("Settings Dialog", NodeType.FRAME, 600, 400, node_id="9:1")
    card = make_node("Card", NodeType.FRAME, 300, 150, node_id="9:2", parent=dialog)
    icon = make_node("Chevron", NodeType.VECTOR, 16, 16, node_id="9:3", parent=card)
    scene = FakeScene([icon])
    extractor = FakeExtractor()
    controller, ui = build_controller(lifecycle, scene=scene, extractor=extractor)

    parent = await controller.select_resolved_parent()

    assert parent is dialog
    assert scene.selected_ids == [["9:1"]]
    assert "Selected parent component: Settings Dialog" in ui.texts()
    assert extractor.calls == ["9:1"]


@pytest.mark.asyncio
async def test_select_resolved_parent_without_candidate(lifecycle):
    header = make_node("Header", NodeType.FRAME, 1200, 80)
    scene = FakeScene([make_node("Logo", NodeType.RECTANGLE, 30, 30, parent=header)])
    controller, ui = build_controller(lifecycle, scene=scene)

    assert await controller.select_resolved_parent() is None
    assert scene.selected_ids == []
    assert ui.notifications[-1]["text"] == "No suitable parent component found"


@pytest.mark.asyncio
async def test_debug_dump_hierarchy_flags_anchor(lifecycle):
    anchor = make_node("System_Save Dialog", NodeType.FRAME, 500, 300)
    button = make_node("Save", NodeType.INSTANCE, 80, 32, parent=anchor)
    controller, ui = build_controller(lifecycle, scene=FakeScene([button]))

    levels = await controller.debug_dump_hierarchy()

    assert [entry["name"] for entry in levels] == ["Save", "System_Save Dialog"]
    assert "Found System_Save Dialog at level 1" in ui.texts()
    assert ui.texts()[-1] == "Check console for selection hierarchy"


@pytest.mark.asyncio
async def test_cancel_pending_drops_debounced_event(lifecycle):
    extractor = FakeExtractor()
    controller, _ = build_controller(lifecycle, extractor=extractor)

    controller.on_selection_change([make_node("Card", NodeType.FRAME, 300, 300)])
    await controller.cancel_pending()
    await asyncio.sleep(FAST.debounce_seconds * 2)

    assert extractor.calls == []
    assert controller.state is ControllerState.IDLE
