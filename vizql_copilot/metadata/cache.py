"""
Datasource field catalog cache.

Two tiers keyed by datasource LUID: an in-process dict and JSON files under
<logs_dir>/metadata_json/<site>/. Both tiers share one TTL rule; a TTL of
0 disables expiry. The cache is constructed once per process and injected
into the phases that need it.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from vizql_copilot.connector.base import DatasourceConnector
from vizql_copilot.shared.schemas.session import NormalizedField


logger = logging.getLogger(__name__)

METADATA_SUBDIR = "metadata_json"

# Grains and placeholders that are not executable aggregation functions
_NON_EXECUTABLE_AGGS = {
    "YEAR", "QUARTER", "MONTH", "WEEK", "DAY",
    "AGG", "NONE", "UNSPECIFIED", "ATTR", "USER",
}


@dataclass(frozen=True)
class CachedFields:
    fields: Tuple[NormalizedField, ...]
    ts: float
    source: str


def normalize_aggregation_token(token: Any) -> Optional[str]:
    """Upper-case an aggregation, alias COUNTD and null out grains like TRUNC_MONTH."""
    if not isinstance(token, str) or not token.strip():
        return None
    agg = token.strip().upper()
    if agg == "COUNTD":
        return "COUNT_DISTINCT"
    if agg in _NON_EXECUTABLE_AGGS or agg.startswith("TRUNC_"):
        return None
    return agg


def _raw_field_list(raw: Any) -> List[Any]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        for key in ("data", "fields"):
            value = raw.get(key)
            if isinstance(value, list):
                return value
    return []


def normalize_fields(raw: Any) -> List[NormalizedField]:
    """
    Convert a raw metadata payload into NormalizedFields.

    Accepts {"data": [...]}, {"fields": [...]} or a bare list. Entries
    without a caption are skipped; duplicate captions keep the first entry.
    """
    fields: List[NormalizedField] = []
    seen = set()
    for item in _raw_field_list(raw):
        if not isinstance(item, dict):
            continue
        caption = item.get("fieldCaption") or item.get("fieldName") or item.get("name")
        if not isinstance(caption, str) or not caption.strip():
            continue
        caption = caption.strip()
        if caption in seen:
            continue
        seen.add(caption)
        data_type = item.get("dataType")
        fields.append(
            NormalizedField(
                field_caption=caption,
                data_type=data_type if isinstance(data_type, str) and data_type else None,
                default_aggregation=normalize_aggregation_token(item.get("defaultAggregation")),
            )
        )
    return fields


def _safe_segment(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", value or "default") or "default"


class MetadataCache:
    """
    Per-datasource field catalog with memory and disk tiers.

    Args:
        connector: Source of raw metadata on a full miss
        site_name: Scopes the disk tier directory
        logs_dir: Root of the disk tier
        ttl_ms: Entry lifetime in milliseconds (0 = no expiry)
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        connector: DatasourceConnector,
        site_name: str = "default",
        logs_dir: Union[str, Path] = "logs",
        ttl_ms: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        self._connector = connector
        self._dir = Path(logs_dir) / METADATA_SUBDIR / _safe_segment(site_name)
        self._ttl_s = max(0, ttl_ms) / 1000
        self._clock = clock
        self._memory: Dict[str, CachedFields] = {}
        self.last_error: Optional[str] = None

    def _expired(self, ts: float) -> bool:
        return self._ttl_s > 0 and (self._clock() - ts) > self._ttl_s

    def _disk_path(self, datasource_luid: str) -> Path:
        return self._dir / f"{_safe_segment(datasource_luid)}.json"

    def _read_disk(self, datasource_luid: str) -> Optional[CachedFields]:
        path = self._disk_path(datasource_luid)
        try:
            mtime = path.stat().st_mtime
            if self._expired(mtime):
                return None
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None
        fields = normalize_fields(payload)
        if not fields:
            return None
        return CachedFields(fields=tuple(fields), ts=mtime, source="disk")

    def _write_disk(self, datasource_luid: str, fields: List[NormalizedField]) -> None:
        path = self._disk_path(datasource_luid)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"fields": [fld.to_wire() for fld in fields]}, f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.warning(f"Metadata disk write failed | luid={datasource_luid}, error={e}")

    async def get_cached(self, datasource_luid: str, force: bool = False) -> Optional[CachedFields]:
        """
        Catalog for a datasource, or None when nothing usable is known.

        On a failed refresh the last known entry (possibly None) is returned
        and `last_error` describes the failure. Never raises.
        """
        if not force:
            entry = self._memory.get(datasource_luid)
            if entry is not None and not self._expired(entry.ts):
                return CachedFields(fields=entry.fields, ts=entry.ts, source="memory")

            disk_entry = self._read_disk(datasource_luid)
            if disk_entry is not None:
                self._memory[datasource_luid] = disk_entry
                return disk_entry

        last_known = self._memory.get(datasource_luid)
        try:
            raw = await self._connector.read_metadata(datasource_luid)
        except Exception as e:
            self.last_error = f"metadata read failed: {e}"
            logger.warning(f"Metadata fetch failed | luid={datasource_luid}, error={e}")
            return last_known

        fields = normalize_fields(raw)
        if not fields:
            self.last_error = "metadata returned no fields"
            logger.warning(f"Metadata normalized to zero fields | luid={datasource_luid}")
            return last_known

        entry = CachedFields(fields=tuple(fields), ts=self._clock(), source="fetch")
        self._memory[datasource_luid] = entry
        self._write_disk(datasource_luid, fields)
        self.last_error = None
        logger.info(f"Metadata cached | luid={datasource_luid}, fields={len(fields)}")
        return entry

    def invalidate(self, datasource_luid: Optional[str] = None) -> None:
        """Drop one datasource (or everything) from both tiers."""
        if datasource_luid is not None:
            luids = [datasource_luid]
        else:
            self._memory.clear()
            luids = [p.stem for p in self._dir.glob("*.json")] if self._dir.exists() else []
        for luid in luids:
            self._memory.pop(luid, None)
            try:
                self._disk_path(luid).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Metadata disk invalidate failed | luid={luid}, error={e}")

    async def force_refresh(self, datasource_luid: str) -> Optional[CachedFields]:
        return await self.get_cached(datasource_luid, force=True)
