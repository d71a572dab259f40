"""
Token Lifecycle - minting, persisting and fetching export tokens

A token is the public handle an AI/IDE consumer uses to fetch an export. It
is valid for 24 hours. Storage is best-effort: when every cleanup tier fails
to make room, the export is still returned to the caller and only the
persisted copy is missing.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from artifact_store import (
    DEFAULT_TTL_SECONDS,
    EXPORT_PREFIX,
    RECENT_EXPORTS_KEY,
    SCREENSHOT_PREFIX,
    ArtifactKind,
    ArtifactStore,
    EvictionTier,
)
from errors import StorageError
from models import ExportMetadata, RecentExport, StoredExport, TokenMapping
from scene_graph import SceneNode

logger = logging.getLogger(__name__)

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
TOKEN_RANDOM_LENGTH = 6
DEFAULT_NAMESPACE = "figma"
MAX_RECENT_EXPORTS = 10


def to_base36(value: int) -> str:
    if value < 0:
        return "-" + to_base36(-value)
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def issue_token(namespace: str = DEFAULT_NAMESPACE, clock: Callable[[], float] = time.time) -> str:
    """Mint ``<namespace>_<base36 millis>_<6 random base36 chars>``.

    Uniqueness rests on the random suffix alone; collisions are not checked.
    """
    millis = int(clock() * 1000)
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(TOKEN_RANDOM_LENGTH))
    return f"{namespace}_{to_base36(millis)}_{suffix}"


def iso_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def describe_artifact(artifact: Dict[str, Any]) -> Tuple[str, str]:
    """Name and node type for an export saved without its source node.

    Looks at the first extracted component, then the artifact itself.
    """
    candidates: List[Any] = []
    components = artifact.get("components") if isinstance(artifact, dict) else None
    if isinstance(components, list) and components:
        candidates.append(components[0])
    candidates.append(artifact)
    for candidate in candidates:
        if isinstance(candidate, dict) and isinstance(candidate.get("name"), str):
            node_type = candidate.get("type")
            return candidate["name"], node_type if isinstance(node_type, str) else "unknown"
    return "unknown", "unknown"


class SaveStage(str, Enum):
    ATTEMPT_1 = "attempt_1"
    CLEANUP_NORMAL = "cleanup_normal"
    ATTEMPT_2 = "attempt_2"
    CLEANUP_EMERGENCY = "cleanup_emergency"
    ATTEMPT_3 = "attempt_3"
    STORED = "stored"
    FAILED = "failed"


# Where each stage goes when it does not end in STORED
_NEXT_STAGE: Dict[SaveStage, SaveStage] = {
    SaveStage.ATTEMPT_1: SaveStage.CLEANUP_NORMAL,
    SaveStage.CLEANUP_NORMAL: SaveStage.ATTEMPT_2,
    SaveStage.ATTEMPT_2: SaveStage.CLEANUP_EMERGENCY,
    SaveStage.CLEANUP_EMERGENCY: SaveStage.ATTEMPT_3,
    SaveStage.ATTEMPT_3: SaveStage.FAILED,
}

_ATTEMPTS = (SaveStage.ATTEMPT_1, SaveStage.ATTEMPT_2, SaveStage.ATTEMPT_3)


@dataclass
class SaveResult:
    token: str
    stages: List[SaveStage] = field(default_factory=list)
    error: Optional[StorageError] = None

    @property
    def stored(self) -> bool:
        return bool(self.stages) and self.stages[-1] == SaveStage.STORED

    @property
    def attempts(self) -> int:
        return sum(1 for stage in self.stages if stage in _ATTEMPTS)


class TokenLifecycle:
    def __init__(
        self,
        store: ArtifactStore,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ):
        if f"{namespace}_" in (EXPORT_PREFIX, SCREENSHOT_PREFIX) or not namespace:
            raise ValueError(f"Token namespace {namespace!r} collides with a reserved key prefix")
        self.store = store
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        store.token_prefix = f"{namespace}_"

    @property
    def clock(self) -> Callable[[], float]:
        return self.store.clock

    def issue(self) -> str:
        return issue_token(self.namespace, self.clock)

    async def initialize(self) -> None:
        """Start-up housekeeping: drop expired/corrupt records and log the ledger."""
        try:
            await self.store.purge_expired()
            counts = await self.store.breakdown()
            usage = await self.store.estimate_usage()
            logger.info(
                f"📊 Storage keys: {counts['total']} total (exports={counts['exports']}, "
                f"screenshots={counts['screenshots']}, tokens={counts['tokens']}, other={counts['other']}), "
                f"{usage.used / 1024 / 1024:.2f}MB of {usage.total / 1024 / 1024:.0f}MB used"
            )
        except Exception as e:
            logger.error(f"❌ Storage initialization failed: {e}")

    async def save_export(
        self,
        token: str,
        artifact: Dict[str, Any],
        source: Optional[SceneNode] = None,
        screenshot_filename: Optional[str] = None,
    ) -> SaveResult:
        """Persist an export under ``token`` with escalating cleanup on failure.

        Never raises for storage failures: inspect ``SaveResult.stored``.
        """
        created = self.clock()
        expires = created + self.ttl_seconds
        record = StoredExport(
            token=token,
            component=artifact,
            screenshot_filename=screenshot_filename,
            metadata=ExportMetadata(
                created=iso_timestamp(created),
                expires=iso_timestamp(expires),
                node_id=source.id if source else None,
                node_name=source.name if source else None,
                node_type=source.type.value if source else None,
            ),
        ).to_wire()
        mapping = TokenMapping(
            component=artifact,
            created=iso_timestamp(created),
            expires=iso_timestamp(expires),
        ).to_wire()

        result = SaveResult(token=token)
        stage = SaveStage.ATTEMPT_1
        while stage not in (SaveStage.STORED, SaveStage.FAILED):
            result.stages.append(stage)
            if stage in _ATTEMPTS:
                try:
                    await self.store.put(f"{EXPORT_PREFIX}{token}", record, ArtifactKind.EXPORT, ttl=self.ttl_seconds)
                    await self.store.put(token, mapping, ArtifactKind.EXPORT, ttl=self.ttl_seconds)
                    stage = SaveStage.STORED
                    continue
                except StorageError as e:
                    result.error = e
                    logger.warning(f"⚠️ Saving {token} failed at {stage.value}: {e}")
            elif stage == SaveStage.CLEANUP_NORMAL:
                await self.store.evict()
            elif stage == SaveStage.CLEANUP_EMERGENCY:
                await self.store.evict(EvictionTier.EMERGENCY)
                await self.store.purge_expired()
            stage = _NEXT_STAGE[stage]
        result.stages.append(stage)

        if not result.stored:
            logger.error(f"❌ Failed to save {token} even after emergency cleanup; export kept in memory only")
            # A half-written attempt must not leave a fetchable export behind
            await self.store.delete(f"{EXPORT_PREFIX}{token}")
            return result

        result.error = None
        logger.info(f"💾 Export saved: {token} (attempts={result.attempts})")
        if source is not None:
            name, node_type = source.name, source.type.value
        else:
            name, node_type = describe_artifact(artifact)
        await self._record_recent(token, name, node_type, created)
        return result

    async def fetch(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the stored export for ``token``, or None if missing or expired."""
        stored = await self.store.get(f"{EXPORT_PREFIX}{token}")
        if isinstance(stored, dict):
            return stored
        mapping = await self.store.get(token)
        if isinstance(mapping, dict):
            return {
                "token": token,
                "component": mapping.get("component"),
                "screenshotFilename": None,
                "metadata": {"created": mapping.get("created"), "expires": mapping.get("expires")},
            }
        return None

    async def fetch_component(self, token: str) -> Optional[Dict[str, Any]]:
        stored = await self.fetch(token)
        return stored.get("component") if stored else None

    async def recent_exports(self) -> List[RecentExport]:
        raw = await self.store.get(RECENT_EXPORTS_KEY)
        entries: List[RecentExport] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(RecentExport.model_validate(item))
            except ValidationError:
                logger.debug(f"Skipping malformed recent export entry: {item!r}")
        return entries

    async def _record_recent(self, token: str, name: str, node_type: str, created: float) -> None:
        entry = RecentExport(token=token, name=name, type=node_type, timestamp=iso_timestamp(created))
        previous = [e.to_wire() for e in await self.recent_exports() if e.token != token]
        updated = [entry.to_wire()] + previous[: MAX_RECENT_EXPORTS - 1]
        try:
            await self.store.put(RECENT_EXPORTS_KEY, updated, ArtifactKind.INDEX, evict=False)
        except StorageError as e:
            logger.warning(f"⚠️ Could not update recent exports index: {e}")
