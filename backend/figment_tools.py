"""
Figment Tools - OpenAI Agent Tools

Tools an AI/IDE agent uses to consume Figment exports: fetch a component by
token, list recent exports, inspect storage usage and write an export's
screenshot to disk.

The tools reach storage through a module-global ``TokenLifecycle`` installed
by main.py via ``set_token_lifecycle()``.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from agents import Agent, function_tool

from figma_communicator import ToolExecutionError
from screenshots import ScreenshotCapture
from token_lifecycle import TokenLifecycle

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_DIR = "figment_exports"

CONSUMER_INSTRUCTIONS = (
    "You help developers implement UI components exported from Figma. "
    "When the user gives you a Figment token (figma_...), fetch the export with "
    "get_component_by_token, and save its screenshot with extract_screenshot_from_token "
    "when a visual reference helps. Tokens expire after 24 hours."
)

_lifecycle: Optional[TokenLifecycle] = None
_screenshots: Optional[ScreenshotCapture] = None
_export_dir: Path = Path(DEFAULT_EXPORT_DIR)


def set_token_lifecycle(
    lifecycle: Optional[TokenLifecycle],
    screenshots: Optional[ScreenshotCapture] = None,
    export_dir: Optional[str] = None,
) -> None:
    """Install the storage the tools read from."""
    global _lifecycle, _screenshots, _export_dir
    _lifecycle = lifecycle
    _screenshots = screenshots
    if export_dir:
        _export_dir = Path(export_dir).expanduser()


def get_token_lifecycle() -> TokenLifecycle:
    if _lifecycle is None:
        raise RuntimeError("Token lifecycle not initialized. Call set_token_lifecycle() first.")
    return _lifecycle


# ============================================
# ============ INTERNAL HELPERS ==============
# ============================================

def _to_json_string(result: Any) -> str:
    return json.dumps(result, ensure_ascii=False)


def _token_not_found(token: str) -> ToolExecutionError:
    return ToolExecutionError({
        "code": "token_not_found",
        "message": f"No export found for token '{token}'. It may have expired (tokens last 24 hours).",
        "details": {"token": token},
    })


async def _get_component_by_token(token: str) -> Dict[str, Any]:
    stored = await get_token_lifecycle().fetch(token.strip())
    if stored is None:
        raise _token_not_found(token)
    return stored


async def _list_recent_exports() -> List[Dict[str, Any]]:
    return [entry.to_wire() for entry in await get_token_lifecycle().recent_exports()]


async def _get_storage_usage() -> Dict[str, Any]:
    store = get_token_lifecycle().store
    usage = await store.estimate_usage()
    return {
        "used": usage.used,
        "available": usage.available,
        "total": usage.total,
        "ratio": round(usage.ratio, 4),
        "keys": await store.breakdown(),
    }


async def _extract_screenshot_from_token(token: str, output_dir: Optional[str] = None) -> Dict[str, Any]:
    stored = await _get_component_by_token(token)
    filename = stored.get("screenshotFilename")
    if not filename:
        raise ToolExecutionError({
            "code": "screenshot_missing",
            "message": f"Export '{token}' has no screenshot attached",
            "details": {"token": token},
        })
    if _screenshots is None:
        raise RuntimeError("Screenshot storage not initialized. Call set_token_lifecycle() first.")

    image = await _screenshots.load(filename)
    if image is None:
        raise ToolExecutionError({
            "code": "screenshot_missing",
            "message": f"Screenshot '{filename}' is no longer stored",
            "details": {"token": token, "filename": filename},
        })

    target_dir = Path(output_dir).expanduser() if output_dir else _export_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / Path(filename).name
    path.write_bytes(image)
    logger.info(f"📸 Screenshot for {token} written to {path} ({len(image)} bytes)")
    return {"path": str(path), "bytes": len(image), "filename": filename}


# ============================================
# ================ TOOLS =====================
# ============================================

@function_tool
async def get_component_by_token(token: str) -> str:
    """Fetch a Figment export by its token.

    Parameters (Args)
    ------------------
    token (str): The token shown in the Figma plugin after an export, e.g.
        "figma_lx2k9a1b_q8w3er".

    Returns
    -------
    (str): JSON string with `token`, `component` (the full export: metadata,
        designSystem, components, screenshot, context), `screenshotFilename`
        and `metadata` (created, expires, nodeId, nodeName, nodeType).

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError `token_not_found`: the token is unknown or expired.
        Recovery: ask the user to export the component again.
    """
    try:
        logger.info(f"🎫 Fetching export for token {token}")
        return _to_json_string(await _get_component_by_token(token))
    except ToolExecutionError as te:
        logger.error(f"❌ Tool get_component_by_token failed: {te.message}")
        raise


@function_tool
async def list_recent_exports() -> str:
    """List the most recent exports (newest first, at most 10).

    Returns
    -------
    (str): JSON string with `recent_exports`: [{token, name, type, timestamp}].
        Entries may point at exports that have since expired.
    """
    logger.info("🗂️ Listing recent exports")
    return _to_json_string({"recent_exports": await _list_recent_exports()})


@function_tool
async def get_storage_usage() -> str:
    """Report how much of the 5 MiB export storage is in use.

    Returns
    -------
    (str): JSON string with `used`, `available`, `total` (bytes), `ratio` and
        `keys` (counts per family: exports, screenshots, tokens, other).
    """
    logger.info("📊 Reporting storage usage")
    return _to_json_string(await _get_storage_usage())


@function_tool(strict_mode=False)
async def extract_screenshot_from_token(token: str, output_dir: Optional[str] = None) -> str:
    """Write the screenshot attached to an export as a PNG file.

    Parameters (Args)
    ------------------
    token (str): The export token.
    output_dir (str, optional): Directory to write into. Defaults to the
        configured export directory (FIGMENT_EXPORT_DIR).

    Returns
    -------
    (str): JSON string with `path`, `bytes` and `filename`.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError `token_not_found` or `screenshot_missing`. Screenshots
        are evicted before exports, so an export can outlive its image.
    """
    try:
        return _to_json_string(await _extract_screenshot_from_token(token, output_dir))
    except ToolExecutionError as te:
        logger.error(f"❌ Tool extract_screenshot_from_token failed: {te.message}")
        raise


ALL_TOOLS = [
    get_component_by_token,
    list_recent_exports,
    get_storage_usage,
    extract_screenshot_from_token,
]


def build_consumer_agent(model: str) -> Agent:
    """Agent definition for IDE integrations that consume exports."""
    return Agent(
        name="FigmentConsumer",
        instructions=CONSUMER_INSTRUCTIONS,
        model=model,
        tools=list(ALL_TOOLS),
    )
