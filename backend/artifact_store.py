"""
Artifact Store - quota-bounded key/value persistence

Exports, screenshots and token mappings share one ledger with a hard 5 MiB
budget, the same limit the Figma client storage enforces. Every value is
wrapped in an envelope carrying an explicit insertion sequence and expiry, so
eviction order and TTL never depend on how the backend enumerates keys.

Eviction runs before every export/screenshot write and only ever removes the
oldest keys of one family (``screenshot_*`` or ``<namespace>_*`` tokens).
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from errors import StorageCorruption, StorageQuotaExceeded

logger = logging.getLogger(__name__)

QUOTA_BYTES = 5 * 1024 * 1024
DEFAULT_TTL_SECONDS = 24 * 60 * 60
EMERGENCY_USAGE_RATIO = 0.8
AGGRESSIVE_SCREENSHOT_TRIGGER = 3
AGGRESSIVE_TOKEN_TRIGGER = 5

EXPORT_PREFIX = "export_"
SCREENSHOT_PREFIX = "screenshot_"
RECENT_EXPORTS_KEY = "recent_exports"


class ArtifactKind(str, Enum):
    EXPORT = "export"
    SCREENSHOT = "screenshot"
    INDEX = "index"


class EvictionTier(str, Enum):
    NORMAL = "normal"
    AGGRESSIVE = "aggressive"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class TierLimits:
    screenshots: int
    tokens: int


TIER_LIMITS: Dict[EvictionTier, TierLimits] = {
    EvictionTier.NORMAL: TierLimits(screenshots=5, tokens=10),
    EvictionTier.AGGRESSIVE: TierLimits(screenshots=2, tokens=3),
    EvictionTier.EMERGENCY: TierLimits(screenshots=1, tokens=1),
}


@dataclass(frozen=True)
class ArtifactRecord:
    key: str
    payload_bytes: int
    created_at: float
    expires_at: Optional[float]
    kind: ArtifactKind
    sequence: int

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass(frozen=True)
class StorageUsage:
    used: int
    available: int
    total: int

    @property
    def ratio(self) -> float:
        return self.used / self.total if self.total else 0.0


@dataclass
class EvictionReport:
    tier: EvictionTier
    deleted: List[str] = field(default_factory=list)
    used_before: int = 0
    used_after: int = 0


@dataclass(frozen=True)
class _LedgerEntry:
    key: str
    size: int
    record: Optional[ArtifactRecord]  # None when the envelope is corrupt

    @property
    def sequence(self) -> int:
        return self.record.sequence if self.record else -1


# ============================================
# ============== BACKENDS ====================
# ============================================

class StorageBackend(ABC):
    """Raw string key/value space. Key enumeration order is not relied upon."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        ...

    async def delete_many(self, keys: List[str]) -> None:
        for key in keys:
            await self.delete(key)


class InMemoryBackend(StorageBackend):
    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self) -> List[str]:
        return list(self.data.keys())


class JsonFileBackend(StorageBackend):
    """Single JSON document on disk, rewritten atomically on every change.

    File reads and writes run in a worker thread via ``asyncio.to_thread``.
    A batch delete rewrites the file once.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._data: Optional[Dict[str, str]] = None
        self._write_lock = asyncio.Lock()
        self.flush_count = 0

    def _read_file(self) -> Dict[str, str]:
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.error(f"❌ Storage file {self.path} unreadable, starting empty: {e}")
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, str)} if isinstance(raw, dict) else {}

    def _write_file(self, snapshot: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(snapshot, fh, ensure_ascii=False)
        os.replace(tmp_path, self.path)

    async def _load(self) -> Dict[str, str]:
        if self._data is None:
            data = await asyncio.to_thread(self._read_file)
            if self._data is None:
                self._data = data
        return self._data

    async def _flush(self) -> None:
        async with self._write_lock:
            # Worker thread writes a snapshot, never the live dict
            snapshot = dict(await self._load())
            await asyncio.to_thread(self._write_file, snapshot)
            self.flush_count += 1

    async def get(self, key: str) -> Optional[str]:
        return (await self._load()).get(key)

    async def set(self, key: str, value: str) -> None:
        (await self._load())[key] = value
        await self._flush()

    async def delete(self, key: str) -> None:
        if (await self._load()).pop(key, None) is not None:
            await self._flush()

    async def delete_many(self, keys: List[str]) -> None:
        data = await self._load()
        removed = [key for key in keys if data.pop(key, None) is not None]
        if removed:
            await self._flush()

    async def keys(self) -> List[str]:
        return list((await self._load()).keys())


# ============================================
# ============== STORE =======================
# ============================================

class ArtifactStore:
    """Quota-aware artifact persistence over an injected backend.

    Eviction followed by a write is one critical section: both run under
    ``self._lock`` so concurrent writers cannot interleave between the
    cleanup decision and the write it makes room for.
    """

    def __init__(
        self,
        backend: StorageBackend,
        quota_bytes: int = QUOTA_BYTES,
        token_prefix: str = "figma_",
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.quota_bytes = quota_bytes
        self.token_prefix = token_prefix
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock
        self._lock = asyncio.Lock()
        self._next_sequence: Optional[int] = None

    # ---------------- public API ----------------

    async def put(
        self,
        key: str,
        value: Any,
        kind: ArtifactKind = ArtifactKind.EXPORT,
        ttl: Optional[float] = None,
        evict: bool = True,
    ) -> ArtifactRecord:
        """Store ``value`` under ``key``.

        Raises:
            StorageQuotaExceeded: if the write would push the ledger past the quota
                even after the eviction pass.
        """
        async with self._lock:
            if evict and kind != ArtifactKind.INDEX:
                await self._evict_locked(None)
            return await self._write_locked(key, value, kind, ttl)

    async def get(self, key: str) -> Any:
        record, value = await self._read(key)
        return value if record is not None else None

    async def get_record(self, key: str) -> Optional[ArtifactRecord]:
        record, _ = await self._read(key)
        return record

    async def delete(self, key: str) -> None:
        await self.backend.delete(key)

    async def list_keys(self, prefix: Optional[str] = None) -> List[str]:
        """Keys ordered oldest-first by insertion sequence."""
        entries = await self._scan()
        return [e.key for e in entries if prefix is None or e.key.startswith(prefix)]

    async def estimate_usage(self) -> StorageUsage:
        used = sum(e.size for e in await self._scan())
        usage = StorageUsage(used=used, available=self.quota_bytes - used, total=self.quota_bytes)
        logger.debug(
            f"📊 Storage usage: {used / 1024 / 1024:.2f}MB used, {usage.available / 1024 / 1024:.2f}MB available"
        )
        return usage

    async def evict(self, tier: Optional[EvictionTier] = None) -> EvictionReport:
        async with self._lock:
            return await self._evict_locked(tier)

    async def purge_expired(self) -> int:
        """Delete expired and corrupt records. Returns the number of deleted keys."""
        async with self._lock:
            now = self.clock()
            doomed: List[str] = []
            for entry in await self._scan():
                if entry.record is None:
                    logger.info(f"🗑️ Cleaned corrupted record: {entry.key}")
                elif entry.record.is_expired(now):
                    logger.info(f"🗑️ Cleaned expired record: {entry.key}")
                else:
                    continue
                doomed.append(entry.key)
            await self.backend.delete_many(doomed)
            removed = len(doomed)
            if removed:
                logger.info(f"✅ Cleaned {removed} expired/corrupted records")
            return removed

    async def breakdown(self) -> Dict[str, int]:
        keys = await self.backend.keys()
        counts = {"total": len(keys), "exports": 0, "screenshots": 0, "tokens": 0, "other": 0}
        for key in keys:
            if key.startswith(EXPORT_PREFIX):
                counts["exports"] += 1
            elif key.startswith(SCREENSHOT_PREFIX):
                counts["screenshots"] += 1
            elif key.startswith(self.token_prefix):
                counts["tokens"] += 1
            else:
                counts["other"] += 1
        return counts

    def choose_tier(self, used: int, screenshot_count: int, token_count: int) -> EvictionTier:
        if used > self.quota_bytes * EMERGENCY_USAGE_RATIO:
            return EvictionTier.EMERGENCY
        if screenshot_count > AGGRESSIVE_SCREENSHOT_TRIGGER or token_count > AGGRESSIVE_TOKEN_TRIGGER:
            return EvictionTier.AGGRESSIVE
        return EvictionTier.NORMAL

    # ---------------- internals ----------------

    async def _write_locked(self, key: str, value: Any, kind: ArtifactKind, ttl: Optional[float]) -> ArtifactRecord:
        now = self.clock()
        if kind == ArtifactKind.INDEX:
            expires_at = None
        else:
            expires_at = now + (ttl if ttl is not None else self.default_ttl_seconds)
        sequence = await self._allocate_sequence()
        envelope = {
            "seq": sequence,
            "kind": kind.value,
            "created_at": now,
            "expires_at": expires_at,
            "value": value,
        }
        serialized = json.dumps(envelope, ensure_ascii=False)
        required = len(key) + len(serialized)

        used_elsewhere = sum(e.size for e in await self._scan() if e.key != key)
        available = self.quota_bytes - used_elsewhere
        if required > available:
            logger.error(f"❌ Quota exceeded writing {key}: needs {required} bytes, {available} available")
            raise StorageQuotaExceeded(key, required, available)

        await self.backend.set(key, serialized)
        logger.debug(f"💾 Stored {key} ({kind.value}, {required} bytes, seq={sequence})")
        return ArtifactRecord(
            key=key,
            payload_bytes=required,
            created_at=now,
            expires_at=expires_at,
            kind=kind,
            sequence=sequence,
        )

    async def _evict_locked(self, tier: Optional[EvictionTier]) -> EvictionReport:
        entries = await self._scan()
        used_before = sum(e.size for e in entries)
        screenshots = [e for e in entries if e.key.startswith(SCREENSHOT_PREFIX)]
        tokens = [e for e in entries if e.key.startswith(self.token_prefix)]

        if tier is None:
            tier = self.choose_tier(used_before, len(screenshots), len(tokens))
        limits = TIER_LIMITS[tier]

        doomed = _oldest_beyond(screenshots, limits.screenshots) + _oldest_beyond(tokens, limits.tokens)
        report = EvictionReport(tier=tier, used_before=used_before, used_after=used_before)
        if not doomed:
            return report

        logger.info(
            f"🧹 {tier.value.capitalize()} cleanup: {len(screenshots)} screenshots, {len(tokens)} tokens, "
            f"deleting {len(doomed)}"
        )
        await self.backend.delete_many([entry.key for entry in doomed])
        for entry in doomed:
            report.deleted.append(entry.key)
            report.used_after -= entry.size
            logger.info(f"🗑️ Cleaned up old {entry.key}")
        return report

    async def _read(self, key: str):
        raw = await self.backend.get(key)
        if raw is None:
            return None, None
        try:
            record, value = self._decode(key, raw)
        except StorageCorruption as e:
            logger.warning(f"🗑️ Deleting corrupted record {key}: {e}")
            await self.backend.delete(key)
            return None, None
        if record.is_expired(self.clock()):
            logger.info(f"⌛ Record expired, deleting: {key}")
            await self.backend.delete(key)
            return None, None
        return record, value

    def _decode(self, key: str, raw: str):
        try:
            envelope = json.loads(raw)
        except ValueError as e:
            raise StorageCorruption(f"unparsable JSON: {e}") from e
        if not isinstance(envelope, dict) or "value" not in envelope:
            raise StorageCorruption("missing envelope")
        try:
            record = ArtifactRecord(
                key=key,
                payload_bytes=len(key) + len(raw),
                created_at=float(envelope["created_at"]),
                expires_at=None if envelope.get("expires_at") is None else float(envelope["expires_at"]),
                kind=ArtifactKind(envelope["kind"]),
                sequence=int(envelope["seq"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageCorruption(f"invalid envelope fields: {e}") from e
        return record, envelope["value"]

    async def _scan(self) -> List[_LedgerEntry]:
        entries: List[_LedgerEntry] = []
        for key in await self.backend.keys():
            raw = await self.backend.get(key)
            if raw is None:
                continue
            try:
                record, _ = self._decode(key, raw)
            except StorageCorruption:
                record = None
            entries.append(_LedgerEntry(key=key, size=len(key) + len(raw), record=record))
        # Corrupt entries sort first so eviction removes them before live data
        entries.sort(key=lambda e: e.sequence)
        return entries

    async def _allocate_sequence(self) -> int:
        if self._next_sequence is None:
            entries = await self._scan()
            self._next_sequence = max((e.sequence for e in entries), default=-1) + 1
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence


def _oldest_beyond(entries: List[_LedgerEntry], keep: int) -> List[_LedgerEntry]:
    excess = len(entries) - keep
    return entries[:excess] if excess > 0 else []
