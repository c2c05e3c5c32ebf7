"""JSON file persistence for the entity store between process runs."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import ENTITY_KEYS, Deletion, Delta
from .store import EntityStore, Snapshot

logger = logging.getLogger(__name__)


def default_path() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache"
    return Path(base) / "zenmoney-mcp" / "cache.json"


class FileStorage:
    """Saves a snapshot as one JSON document and restores it into a store."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else default_path()

    def save(self, snapshot: Snapshot) -> None:
        out: dict[str, Any] = {"serverTimestamp": snapshot.cursor}
        for key in ENTITY_KEYS:
            out[key] = list(snapshot.of(key).values())
        out["deletion"] = [
            Deletion(t.entity, t.id, t.stamp).to_dict()
            for key in ENTITY_KEYS
            for t in snapshot.tombstones.get(key, {}).values()
        ]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(out, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)

    def load(self) -> Delta | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache %s: %s", self.path, e)
            return None
        if not isinstance(raw, dict):
            logger.warning("Ignoring cache %s with unexpected shape", self.path)
            return None
        return Delta.from_diff(raw)

    def restore(self, store: EntityStore) -> bool:
        """Load the cached dataset into *store*. Returns False when there is none."""
        delta = self.load()
        if delta is None:
            return False
        try:
            store.replace(Delta(delta.cursor, upserts=delta.upserts))
            if delta.deletions:
                store.apply_delta(Delta(delta.cursor, deletions=delta.deletions))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Ignoring corrupt cache %s: %s", self.path, e)
            store.replace(Delta(0))
            return False
        logger.info("Restored cache at cursor %d from %s", delta.cursor, self.path)
        return True
