"""Tests for ComponentResolver selection correction and fallbacks."""

import pytest

from component_resolver import ComponentResolver, ResolutionPath, ResolverLimits, describe_hierarchy
from conftest import make_node
from scene_graph import NodeType, SUPPORTED_TYPES


@pytest.fixture
def resolver():
    return ComponentResolver()


@pytest.mark.parametrize("node_type", sorted(SUPPORTED_TYPES, key=lambda t: t.value))
def test_supported_node_without_overrides_resolves_to_itself(resolver, node_type):
    page = make_node("Page 1", NodeType.PAGE)
    node = make_node("Widget", node_type, 320, 240, parent=page)

    assert resolver.resolve(node) is node


def test_small_text_in_button_frame_resolves_to_button(resolver):
    page = make_node("Page 1", NodeType.PAGE)
    button = make_node("Submit Button", NodeType.FRAME, 400, 80, parent=page)
    label = make_node("Submit", NodeType.TEXT, 40, 40, parent=button)

    target = resolver.resolve_target(label)

    assert target.node is button
    assert target.resolution_path is ResolutionPath.ANCESTOR
    assert target.corrected_from is label


def test_small_text_keeps_original_node_without_parent_fallback():
    resolver = ComponentResolver(ResolverLimits(fallback_to_qualifying_parent=False))
    page = make_node("Page 1", NodeType.PAGE)
    button = make_node("Submit Button", NodeType.FRAME, 400, 80, parent=page)
    label = make_node("Submit", NodeType.TEXT, 40, 40, parent=button)

    assert resolver.is_likely_child_element(label)
    assert resolver.find_proper_parent(label) is None
    target = resolver.resolve_target(label)

    assert target.node is label
    assert target.resolution_path is ResolutionPath.DIRECT
    assert target.corrected_from is None


def test_child_element_walks_up_to_dialog(resolver):
    dialog = make_node("Settings Dialog", NodeType.FRAME, 600, 400)
    card = make_node("Card", NodeType.FRAME, 300, 150, parent=dialog)
    icon = make_node("Chevron", NodeType.VECTOR, 16, 16, parent=card)

    assert resolver.is_likely_child_element(icon)
    assert resolver.find_proper_parent(icon) is dialog
    assert resolver.resolve(icon) is dialog


def test_anchor_name_accepted_even_when_small():
    resolver = ComponentResolver(ResolverLimits(substantial_size=1000))
    anchor = make_node("System_Save Dialog", NodeType.SECTION, 150, 150)
    panel = make_node("Panel", NodeType.FRAME, 120, 100, parent=anchor)
    label = make_node("Save", NodeType.TEXT, 30, 12, parent=panel)

    assert resolver.find_proper_parent(label) is anchor


def test_parent_without_keyword_does_not_trigger_correction(resolver):
    header = make_node("Header", NodeType.FRAME, 1200, 80)
    logo = make_node("Logo", NodeType.RECTANGLE, 30, 30, parent=header)

    assert not resolver.is_likely_child_element(logo)
    assert resolver.resolve(logo) is logo


def test_parent_width_ratio_is_strict(resolver):
    card = make_node("Card", NodeType.FRAME, 120, 120)
    dot = make_node("Dot", NodeType.ELLIPSE, 40, 40, parent=card)
    assert not resolver.is_likely_child_element(dot)

    card.width = 121
    assert resolver.is_likely_child_element(dot)


def test_small_ish_size_applies_to_primitives_only(resolver):
    card = make_node("Card", NodeType.INSTANCE, 600, 400)
    text = make_node("Title", NodeType.TEXT, 80, 20, parent=card)
    star = make_node("Badge", NodeType.STAR, 80, 20, parent=card)

    assert resolver.is_likely_child_element(text)
    assert not resolver.is_likely_child_element(star)


def test_components_and_populated_frames_are_never_child_elements(resolver):
    card = make_node("Card", NodeType.COMPONENT, 600, 400)
    instance = make_node("Icon", NodeType.INSTANCE, 24, 24, parent=card)
    frame = make_node("Row", NodeType.FRAME, 40, 40, parent=card)
    make_node("Dot", NodeType.ELLIPSE, 4, 4, parent=frame)
    unsized = make_node("Label", NodeType.TEXT, parent=card)

    assert not resolver.is_likely_child_element(instance)
    assert not resolver.is_likely_child_element(frame)
    assert not resolver.is_likely_child_element(unsized)


def test_component_set_is_returned_unchanged(resolver):
    component_set = make_node("Button", NodeType.COMPONENT_SET, 500, 300)
    make_node("Size=Large", NodeType.FRAME, 200, 60, parent=component_set)

    target = resolver.resolve_target(component_set)

    assert target.node is component_set
    assert target.resolution_path is ResolutionPath.COMPONENT_SET_OVERRIDE


def test_variant_frame_is_never_decomposed(resolver):
    component_set = make_node("Button", NodeType.COMPONENT_SET, 500, 300)
    variant = make_node("Size=Large", NodeType.FRAME, 200, 60, parent=component_set)
    make_node("Label", NodeType.TEXT, 60, 20, parent=variant)

    target = resolver.resolve_target(variant)

    assert target.node is variant
    assert target.resolution_path is ResolutionPath.DIRECT


def test_unresolvable_node_prefers_component_ancestor_over_frame():
    component = make_node("Card", NodeType.COMPONENT, 400, 300)
    frame = make_node("Body", NodeType.FRAME, 380, 200, parent=component)
    section = make_node("Area", NodeType.SECTION, 300, 100, parent=frame)

    target = ComponentResolver().resolve_target(section)

    assert target.node is component
    assert target.resolution_path is ResolutionPath.ANCESTOR


def test_shallow_frame_wins_over_other_resolvable_ancestor():
    group = make_node("Layout", NodeType.GROUP, 800, 600)
    frame = make_node("Body", NodeType.FRAME, 380, 200, parent=group)
    section = make_node("Area", NodeType.SECTION, 300, 100, parent=frame)

    assert ComponentResolver().resolve(section) is frame


def test_unresolvable_node_falls_back_to_descendants(resolver):
    section = make_node("Area", NodeType.SECTION, 300, 100)
    make_node("Shape", NodeType.RECTANGLE, 20, 20, parent=section)
    instance = make_node("Card", NodeType.INSTANCE, 200, 80, parent=section)

    target = resolver.resolve_target(section)

    assert target.node is instance
    assert target.resolution_path is ResolutionPath.DESCENDANT


def test_grandchild_component_found_when_children_unresolvable(resolver):
    section = make_node("Area", NodeType.SECTION, 300, 100)
    inner = make_node("Inner", NodeType.SECTION, 200, 80, parent=section)
    component = make_node("Chip", NodeType.COMPONENT, 50, 20, parent=inner)

    assert resolver.resolve(section) is component


def test_isolated_unknown_node_is_unresolvable(resolver):
    sticky = make_node("Note", NodeType.OTHER, 100, 100)

    assert resolver.resolve_target(sticky) is None
    assert resolver.resolve(sticky) is None


def test_describe_hierarchy_lists_levels():
    page = make_node("Page 1", NodeType.PAGE)
    button = make_node("Submit Button", NodeType.FRAME, 400, 80, parent=page)
    label = make_node("Submit", NodeType.TEXT, 40, 40, parent=button)

    levels = describe_hierarchy(label, max_levels=10)

    assert [(entry["level"], entry["name"]) for entry in levels] == [
        (0, "Submit"), (1, "Submit Button"), (2, "Page 1"),
    ]
    assert levels[2]["width"] == "N/A"
