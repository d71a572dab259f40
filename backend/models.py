"""
Wire and storage models.

Everything that crosses a boundary (UI messages, persisted records, consumer
tool output) is a pydantic model dumped with camelCase aliases, which is what
the plugin UI and the IDE consumers read.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ============================================
# ============ DESIGN SYSTEM =================
# ============================================

class ColorToken(WireModel):
    name: str
    value: str
    usage: str = "general"


class TypographyToken(WireModel):
    name: str
    font_size: str
    font_weight: str = "Regular"
    font_family: str


class NamedValue(WireModel):
    name: str
    value: str


class DesignSystem(WireModel):
    colors: List[ColorToken] = []
    typography: List[TypographyToken] = []
    spacing: List[NamedValue] = []
    shadows: List[NamedValue] = []
    breakpoints: List[NamedValue] = []


# ============================================
# ============== EXPORTS =====================
# ============================================

class ExportInfo(WireModel):
    figma_file_id: Optional[str] = None
    timestamp: str
    version: str = "1.0.0"
    plugin_version: str = "1.0.0"


class ExportContext(WireModel):
    ai_prompts: List[str] = []
    implementation_notes: List[str] = []
    design_intent: str = ""


class FigmentExport(WireModel):
    """The payload handed to AI/IDE consumers for one export."""

    metadata: ExportInfo
    design_system: DesignSystem
    components: List[Dict[str, Any]] = []
    screenshot: Optional[str] = None
    context: ExportContext


class ExportMetadata(WireModel):
    created: str
    expires: str
    node_id: Optional[str] = None
    node_name: Optional[str] = None
    node_type: Optional[str] = None


class StoredExport(WireModel):
    """Persisted under ``export_<token>``."""

    token: str
    component: Dict[str, Any]
    screenshot_filename: Optional[str] = None
    metadata: ExportMetadata


class TokenMapping(WireModel):
    """Persisted under the bare token (legacy token -> data mapping)."""

    component: Dict[str, Any]
    created: str
    expires: str


class RecentExport(WireModel):
    token: str
    name: str
    type: str
    timestamp: str


# ============================================
# ============ UI MESSAGES ===================
# ============================================

class BlueprintData(WireModel):
    type: Literal["blueprint-data"] = "blueprint-data"
    data: Optional[Dict[str, Any]] = None


class ProcessingStatus(WireModel):
    type: Literal["processing-started", "processing-update"]
    status: str


class ExportReady(WireModel):
    type: Literal["export-ready"] = "export-ready"
    data: FigmentExport
    token: str


class SelectionIssue(WireModel):
    type: Literal["selection-issue"] = "selection-issue"
