"""Merchant keyword -> subcategory fast path.

The map is process-wide. Readers take the current snapshot reference without
locking; writers build a new snapshot under the lock and swap it in, so a
lookup never sees a half-applied change.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType

from pydantic import ValidationError as PydanticValidationError

from reconciler.config import settings
from reconciler.errors import NotFoundError, ValidationError
from reconciler.logger import get_logger
from reconciler.schemas.auto_accept import (
    AutoAcceptMapDocument,
    AutoAcceptStatistic,
    AutoAcceptStats,
    MerchantUsage,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AutoAcceptEntry:
    merchant: str
    subcategory: str
    match_count: int = 0
    last_matched: datetime | None = None


@dataclass(frozen=True)
class AutoAcceptSnapshot:
    """Immutable view of the map at one point in time."""

    version: str = "1.0"
    description: str = ""
    case_sensitive: bool = False
    match_mode: str = "CONTAINS"
    entries: Mapping[str, AutoAcceptEntry] = field(default_factory=lambda: MappingProxyType({}))

    def _fold(self, value: str) -> str:
        value = " ".join(value.split())
        return value if self.case_sensitive else value.casefold()

    def lookup(self, description: str | None) -> AutoAcceptEntry | None:
        """Return the entry whose keyword matches; the longest keyword wins."""
        if not description or not self.entries:
            return None
        text = self._fold(description)
        hits = []
        for merchant, entry in self.entries.items():
            keyword = self._fold(merchant)
            if not keyword:
                continue
            if self.match_mode == "EXACT":
                matched = text == keyword
            elif self.match_mode == "STARTS_WITH":
                matched = text.startswith(keyword)
            else:
                matched = keyword in text
            if matched:
                hits.append(entry)
        if not hits:
            return None
        return min(hits, key=lambda e: (-len(e.merchant), e.merchant))

    def to_document(self) -> AutoAcceptMapDocument:
        return AutoAcceptMapDocument(
            version=self.version,
            description=self.description,
            case_sensitive=self.case_sensitive,
            match_mode=self.match_mode,
            mappings={m: e.subcategory for m, e in sorted(self.entries.items())},
            statistics={
                m: AutoAcceptStatistic(match_count=e.match_count, last_matched=e.last_matched)
                for m, e in sorted(self.entries.items())
                if e.match_count or e.last_matched
            },
        )

    @classmethod
    def from_document(cls, document: AutoAcceptMapDocument) -> AutoAcceptSnapshot:
        entries = {}
        for merchant, subcategory in document.mappings.items():
            stats = document.statistics.get(merchant) or AutoAcceptStatistic()
            entries[merchant] = AutoAcceptEntry(
                merchant=merchant,
                subcategory=subcategory,
                match_count=stats.match_count,
                last_matched=stats.last_matched,
            )
        return cls(
            version=document.version,
            description=document.description,
            case_sensitive=document.case_sensitive,
            match_mode=document.match_mode,
            entries=MappingProxyType(entries),
        )


def parse_document(raw: str | bytes | dict) -> AutoAcceptMapDocument:
    try:
        if isinstance(raw, dict):
            return AutoAcceptMapDocument.model_validate(raw)
        return AutoAcceptMapDocument.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed auto-accept map: {exc}") from exc


class AutoAcceptMap:
    """Copy-on-write holder of the current AutoAcceptSnapshot."""

    def __init__(self, snapshot: AutoAcceptSnapshot | None = None, *, path: Path | None = None):
        self._snapshot = snapshot or AutoAcceptSnapshot()
        self._lock = threading.Lock()
        self.path = path

    @property
    def snapshot(self) -> AutoAcceptSnapshot:
        return self._snapshot

    def lookup(self, description: str | None) -> AutoAcceptEntry | None:
        return self._snapshot.lookup(description)

    def _swap(self, snapshot: AutoAcceptSnapshot) -> None:
        self._snapshot = snapshot

    def _with_entries(self, entries: dict[str, AutoAcceptEntry]) -> AutoAcceptSnapshot:
        return replace(self._snapshot, entries=MappingProxyType(entries))

    def _key_for(self, merchant: str) -> str | None:
        """Existing key for `merchant`, honoring case sensitivity."""
        wanted = merchant.strip()
        if wanted in self._snapshot.entries:
            return wanted
        if not self._snapshot.case_sensitive:
            folded = wanted.casefold()
            for key in self._snapshot.entries:
                if key.casefold() == folded:
                    return key
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_match(self, merchant: str, when: datetime | None = None) -> AutoAcceptEntry:
        """Count a confirmed auto-accept decision."""
        with self._lock:
            key = self._key_for(merchant)
            if key is None:
                raise NotFoundError("Auto-accept mapping", merchant)
            entries = dict(self._snapshot.entries)
            entry = replace(
                entries[key],
                match_count=entries[key].match_count + 1,
                last_matched=when or datetime.now(UTC),
            )
            entries[key] = entry
            self._swap(self._with_entries(entries))
        return entry

    def add_mapping(self, merchant: str, subcategory: str) -> AutoAcceptEntry:
        merchant, subcategory = merchant.strip(), subcategory.strip()
        if not merchant or not subcategory:
            raise ValidationError("Merchant and subcategory are required")
        with self._lock:
            if self._key_for(merchant) is not None:
                raise ValidationError(f"Mapping for {merchant!r} already exists")
            entries = dict(self._snapshot.entries)
            entry = AutoAcceptEntry(merchant=merchant, subcategory=subcategory)
            entries[merchant] = entry
            self._swap(self._with_entries(entries))
        logger.info("Auto-accept mapping added", merchant=merchant, subcategory=subcategory)
        return entry

    def update_mapping(self, merchant: str, subcategory: str) -> AutoAcceptEntry:
        subcategory = subcategory.strip()
        if not subcategory:
            raise ValidationError("Subcategory is required")
        with self._lock:
            key = self._key_for(merchant)
            if key is None:
                raise NotFoundError("Auto-accept mapping", merchant)
            entries = dict(self._snapshot.entries)
            entry = replace(entries[key], subcategory=subcategory)
            entries[key] = entry
            self._swap(self._with_entries(entries))
        logger.info("Auto-accept mapping updated", merchant=key, subcategory=subcategory)
        return entry

    def remove_mapping(self, merchant: str) -> None:
        with self._lock:
            key = self._key_for(merchant)
            if key is None:
                raise NotFoundError("Auto-accept mapping", merchant)
            entries = dict(self._snapshot.entries)
            del entries[key]
            self._swap(self._with_entries(entries))
        logger.info("Auto-accept mapping removed", merchant=key)

    def import_document(self, document: AutoAcceptMapDocument) -> AutoAcceptSnapshot:
        """Replace the whole map atomically."""
        snapshot = AutoAcceptSnapshot.from_document(document)
        with self._lock:
            self._swap(snapshot)
        logger.info("Auto-accept map replaced", mappings=len(snapshot.entries), version=snapshot.version)
        return snapshot

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def reload(self) -> AutoAcceptSnapshot:
        """Re-read the backing file. A missing file yields an empty map."""
        if self.path is None or not self.path.exists():
            logger.info("Auto-accept map file not found", path=str(self.path))
            return self.import_document(AutoAcceptMapDocument())
        return self.import_document(parse_document(self.path.read_text(encoding="utf-8")))

    def export(self) -> AutoAcceptMapDocument:
        return self._snapshot.to_document()

    def save(self, path: Path | None = None) -> Path:
        target = path or self.path
        if target is None:
            raise ValidationError("No path to save the auto-accept map to")
        payload = self.export().model_dump(mode="json", by_alias=True)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(target)
        return target

    def statistics(self, top: int = 5) -> AutoAcceptStats:
        entries = list(self._snapshot.entries.values())
        by_use = sorted(entries, key=lambda e: (-e.match_count, e.merchant))
        least = sorted(entries, key=lambda e: (e.match_count, e.merchant))
        return AutoAcceptStats(
            total_mappings=len(entries),
            total_auto_accepted=sum(e.match_count for e in entries),
            most_used=[MerchantUsage(merchant=e.merchant, count=e.match_count) for e in by_use[:top]],
            least_used=[MerchantUsage(merchant=e.merchant, count=e.match_count) for e in least[:top]],
        )


_auto_accept_map: AutoAcceptMap | None = None
_init_lock = threading.Lock()


def get_auto_accept_map() -> AutoAcceptMap:
    """Process-wide map, loaded from settings.auto_accept_map_path on first use."""
    global _auto_accept_map
    if _auto_accept_map is None:
        with _init_lock:
            if _auto_accept_map is None:
                loaded = AutoAcceptMap(path=settings.auto_accept_map_path)
                loaded.reload()
                _auto_accept_map = loaded
    return _auto_accept_map


def set_auto_accept_map(auto_accept_map: AutoAcceptMap | None) -> AutoAcceptMap | None:
    """Replace the process-wide map and return the previous one."""
    global _auto_accept_map
    with _init_lock:
        previous = _auto_accept_map
        _auto_accept_map = auto_accept_map
    return previous
