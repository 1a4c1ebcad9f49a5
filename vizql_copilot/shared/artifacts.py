"""
Query result artifacts.

Each successful fetch is written as a JSON file named by a time-based
request id under <root>/<logs_dir>/vdsapi_json/. Callers get back a path
relative to the store root.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union


logger = logging.getLogger(__name__)

ARTIFACT_SUBDIR = "vdsapi_json"


@dataclass(frozen=True)
class Artifact:
    request_id: str
    rel_path: str
    full_path: str


def make_request_id(now: Optional[datetime] = None) -> str:
    """Time-ordered id, e.g. 20250914_101530123456_a1b2c3."""
    now = now or datetime.now(timezone.utc)
    return f"{now.strftime('%Y%m%d_%H%M%S%f')}_{secrets.token_hex(3)}"


def count_rows(data: Any) -> int:
    """Row count of a normalized result ({rows:[..]}, {data:[..]} or a bare list)."""
    if isinstance(data, list):
        return len(data)
    if isinstance(data, dict):
        for key in ("rows", "data", "results"):
            value = data.get(key)
            if isinstance(value, list):
                return len(value)
    return 0


class ArtifactStore:
    """
    Reads and writes result artifacts.

    Args:
        root: Base directory relative paths are resolved against
        logs_dir: Logs directory name under root
    """

    def __init__(self, root: Union[str, Path] = ".", logs_dir: str = "logs"):
        self.root = Path(root)
        self.rel_dir = Path(logs_dir) / ARTIFACT_SUBDIR

    def save(self, data: Any) -> Artifact:
        request_id = make_request_id()
        rel_path = self.rel_dir / f"{request_id}.json"
        full_path = self.root / rel_path
        full_path.parent.mkdir(parents=True, exist_ok=True)
        with open(full_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        logger.info(f"Artifact saved | request_id={request_id}, rows={count_rows(data)}")
        return Artifact(request_id=request_id, rel_path=rel_path.as_posix(), full_path=str(full_path))

    def resolve(self, rel_path: str) -> Path:
        path = Path(rel_path)
        return path if path.is_absolute() else self.root / path

    def load(self, rel_path: str) -> Any:
        """Parsed artifact JSON, or None when missing or unreadable."""
        try:
            with open(self.resolve(rel_path), "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Artifact unreadable | path={rel_path}, error={e}")
            return None

    def load_text(self, rel_path: str) -> str:
        try:
            return self.resolve(rel_path).read_text(encoding="utf-8")
        except OSError:
            return ""

    def count_rows(self, rel_path: str) -> int:
        return count_rows(self.load(rel_path))
