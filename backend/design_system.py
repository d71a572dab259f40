"""
Design-system section of an export.

Colors and typography come from the document's local paint and text styles;
spacing, shadows and breakpoints are a fixed starter catalog until the
document exposes them as styles.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from host import StyleSource
from models import (
    ColorToken,
    DesignSystem,
    ExportContext,
    ExportInfo,
    FigmentExport,
    NamedValue,
    TypographyToken,
)
from token_lifecycle import iso_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SPACING = [
    NamedValue(name="xs", value="4px"),
    NamedValue(name="sm", value="8px"),
    NamedValue(name="md", value="16px"),
    NamedValue(name="lg", value="24px"),
]

DEFAULT_SHADOWS = [
    NamedValue(name="sm", value="0 1px 2px 0 rgba(0, 0, 0, 0.05)"),
    NamedValue(name="md", value="0 4px 6px -1px rgba(0, 0, 0, 0.1)"),
]

DEFAULT_BREAKPOINTS = [
    NamedValue(name="mobile", value="320px"),
    NamedValue(name="tablet", value="768px"),
    NamedValue(name="desktop", value="1024px"),
]

DEFAULT_CONTEXT = ExportContext(
    ai_prompts=[
        "Create accessible, modern components",
        "Follow design system guidelines",
        "Implement responsive design",
        "Use semantic HTML and ARIA attributes",
    ],
    implementation_notes=[
        "Use semantic HTML",
        "Follow WCAG 2.1 AA guidelines",
        "Implement proper focus management",
        "Use CSS custom properties for theming",
    ],
    design_intent=(
        "Create a clean, modern design system with accessible components that work "
        "across different screen sizes and devices."
    ),
)


def rgb_to_hex(color: Dict[str, Any]) -> str:
    """Convert a Figma ``{r, g, b}`` color (0..1 floats) to ``#rrggbb``."""
    channels = []
    for name in ("r", "g", "b"):
        try:
            value = float(color.get(name, 0))
        except (TypeError, ValueError):
            value = 0.0
        channels.append(round(max(0.0, min(1.0, value)) * 255))
    return "#{:02x}{:02x}{:02x}".format(*channels)


def build_design_system(styles: Dict[str, Any]) -> DesignSystem:
    colors: List[ColorToken] = []
    for style in styles.get("paint_styles") or []:
        paints = style.get("paints") or []
        if not paints or not isinstance(paints[0], dict):
            continue
        paint = paints[0]
        if paint.get("type") != "SOLID" or not isinstance(paint.get("color"), dict):
            continue
        colors.append(ColorToken(
            name=str(style.get("name", "")),
            value=rgb_to_hex(paint["color"]),
            usage=style.get("description") or "general",
        ))

    typography: List[TypographyToken] = []
    for style in styles.get("text_styles") or []:
        font_name = style.get("font_name") or {}
        typography.append(TypographyToken(
            name=str(style.get("name", "")),
            font_size=f"{style.get('font_size') or 16}px",
            font_weight=str(font_name.get("style") or "Regular"),
            font_family=str(font_name.get("family") or "Inter"),
        ))

    return DesignSystem(
        colors=colors,
        typography=typography,
        spacing=list(DEFAULT_SPACING),
        shadows=list(DEFAULT_SHADOWS),
        breakpoints=list(DEFAULT_BREAKPOINTS),
    )


async def extract_design_system(source: Optional[StyleSource]) -> tuple[DesignSystem, Optional[str]]:
    """Fetch local styles and build the design system.

    Returns the design system and the document's file key. Style lookup
    failures degrade to the starter catalog.
    """
    styles: Dict[str, Any] = {}
    if source is not None:
        try:
            styles = await source.get_local_styles() or {}
        except Exception as e:
            logger.warning(f"⚠️ Failed to read local styles, using starter catalog: {e}")
            styles = {}
    design_system = build_design_system(styles)
    logger.info(
        f"✅ Design system extracted: colors={len(design_system.colors)}, "
        f"typography={len(design_system.typography)}, spacing={len(design_system.spacing)}, "
        f"shadows={len(design_system.shadows)}"
    )
    return design_system, styles.get("file_key")


def build_figment_export(
    design_system: DesignSystem,
    components: List[Dict[str, Any]],
    screenshot: Optional[str] = None,
    file_key: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> FigmentExport:
    return FigmentExport(
        metadata=ExportInfo(figma_file_id=file_key, timestamp=iso_timestamp(clock())),
        design_system=design_system,
        components=components,
        screenshot=screenshot,
        context=DEFAULT_CONTEXT.model_copy(deep=True),
    )
