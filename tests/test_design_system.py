"""Tests for design-system extraction and export assembly."""

import pytest

from conftest import FakeStyles
from design_system import (
    DEFAULT_BREAKPOINTS,
    build_design_system,
    build_figment_export,
    extract_design_system,
    rgb_to_hex,
)


class BrokenStyles:
    async def get_local_styles(self):
        raise RuntimeError("plugin went away")


def test_rgb_to_hex_clamps_channels():
    assert rgb_to_hex({"r": 1, "g": 0, "b": 0}) == "#ff0000"
    assert rgb_to_hex({"r": 2, "g": -1, "b": "x"}) == "#ff0000"
    assert rgb_to_hex({}) == "#000000"


def test_build_design_system_reads_solid_paints_and_text_styles():
    design_system = build_design_system({
        "paint_styles": [
            {"name": "Brand/Primary", "paints": [{"type": "SOLID", "color": {"r": 0, "g": 0, "b": 1}}]},
            {"name": "Hero Gradient", "paints": [{"type": "GRADIENT_LINEAR"}]},
            {"name": "Empty", "paints": []},
        ],
        "text_styles": [{"name": "Caption", "font_name": {}}],
    })

    assert [(c.name, c.value, c.usage) for c in design_system.colors] == [("Brand/Primary", "#0000ff", "general")]
    caption = design_system.typography[0]
    assert (caption.font_size, caption.font_weight, caption.font_family) == ("16px", "Regular", "Inter")
    assert design_system.breakpoints == DEFAULT_BREAKPOINTS


@pytest.mark.asyncio
async def test_extract_design_system_from_styles():
    design_system, file_key = await extract_design_system(FakeStyles())

    assert file_key == "FILE123"
    assert design_system.colors[0].usage == "buttons"
    assert design_system.typography[0].font_family == "Roboto"
    assert design_system.typography[0].font_size == "14px"


@pytest.mark.asyncio
async def test_extract_design_system_degrades_to_starter_catalog():
    design_system, file_key = await extract_design_system(BrokenStyles())

    assert file_key is None
    assert design_system.colors == []
    assert len(design_system.spacing) == 4


def test_export_wire_format_uses_camel_case(clock):
    design_system = build_design_system({})

    export = build_figment_export(
        design_system, [{"id": "1:2"}], screenshot="screenshot_1.png", file_key="FILE123", clock=clock,
    ).to_wire()

    assert set(export) == {"metadata", "designSystem", "components", "screenshot", "context"}
    assert export["metadata"]["figmaFileId"] == "FILE123"
    assert export["metadata"]["pluginVersion"] == "1.0.0"
    assert export["metadata"]["timestamp"].endswith("Z")
    assert export["context"]["aiPrompts"]
    assert export["designSystem"]["spacing"][0] == {"name": "xs", "value": "4px"}
