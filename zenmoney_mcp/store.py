"""In-memory entity store with versioned, immutable snapshots.

Every mutation works on a staging copy of the current snapshot and is
published with a single reference swap, so readers holding a snapshot
never see a half-applied batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .errors import DanglingReference
from .index import StoreIndex
from .models import (
    ENTITY_KEYS,
    TRANSACTION,
    Delta,
    Tombstone,
    changed_stamp,
    check_entity_type,
    iter_references,
    normalize_record,
    record_key,
)

logger = logging.getLogger(__name__)

_NO_RECORDS: Mapping[str, dict] = MappingProxyType({})


def _freeze(data: dict[str, dict]) -> Mapping[str, Mapping]:
    return MappingProxyType({k: v if isinstance(v, MappingProxyType) else MappingProxyType(v)
                             for k, v in data.items()})


@dataclass(frozen=True)
class Snapshot:
    """A consistent, read-only view of the store at one version."""

    version: int
    cursor: int
    records: Mapping[str, Mapping[str, dict]]
    tombstones: Mapping[str, Mapping[str, Tombstone]]
    index: StoreIndex = field(repr=False)

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(
            version=0,
            cursor=0,
            records=_freeze({k: {} for k in ENTITY_KEYS}),
            tombstones=_freeze({k: {} for k in ENTITY_KEYS}),
            index=StoreIndex(),
        )

    def get(self, entity: str, key: Any) -> dict | None:
        if key is None:
            return None
        return self.records.get(entity, _NO_RECORDS).get(str(key))

    def all(self, entity: str) -> list[dict]:
        return list(self.records.get(entity, _NO_RECORDS).values())

    def of(self, entity: str) -> Mapping[str, dict]:
        return self.records.get(entity, _NO_RECORDS)

    def tombstone(self, entity: str, key: Any) -> Tombstone | None:
        return self.tombstones.get(entity, MappingProxyType({})).get(str(key))

    def counts(self) -> dict[str, int]:
        return {k: len(v) for k, v in self.records.items() if v}

    def first_user(self) -> dict | None:
        users = self.all("user")
        return users[0] if users else None

    def dangling_references(self) -> list[DanglingReference]:
        found = []
        for entity in ENTITY_KEYS:
            for key, record in self.of(entity).items():
                for fname, target, ref in iter_references(entity, record):
                    if self.get(target, ref) is None:
                        found.append(DanglingReference(fname, target, ref, entity, key))
        return found


class _Staging:
    """Mutable working copy of a snapshot; only touched type maps are copied."""

    def __init__(self, base: Snapshot) -> None:
        self.base = base
        self.records: dict[str, Mapping[str, dict] | dict[str, dict]] = dict(base.records)
        self.tombstones: dict[str, Mapping[str, Tombstone] | dict[str, Tombstone]] = dict(base.tombstones)
        self.changed: dict[str, set[str]] = {}
        self._own_records: set[str] = set()
        self._own_tombs: set[str] = set()

    def _recs(self, entity: str) -> dict[str, dict]:
        if entity not in self._own_records:
            self.records[entity] = dict(self.records.get(entity, {}))
            self._own_records.add(entity)
        return self.records[entity]  # type: ignore[return-value]

    def _tombs(self, entity: str) -> dict[str, Tombstone]:
        if entity not in self._own_tombs:
            self.tombstones[entity] = dict(self.tombstones.get(entity, {}))
            self._own_tombs.add(entity)
        return self.tombstones[entity]  # type: ignore[return-value]

    def upsert(self, entity: str, record: dict, cursor: int) -> bool:
        """Insert or replace by key. Returns False when the record is stale."""
        record = normalize_record(entity, record)
        key = record_key(entity, record)
        stamp = changed_stamp(record)
        tomb = self.tombstones.get(entity, {}).get(key)
        if tomb is not None and stamp <= tomb.stamp:
            return False
        current = self.records.get(entity, {}).get(key)
        if current is not None and changed_stamp(current) > stamp:
            return False
        if entity == TRANSACTION and record.get("deleted"):
            self._bury(entity, key, stamp, cursor, record)
            return True
        if tomb is not None:
            del self._tombs(entity)[key]
        self._recs(entity)[key] = record
        self.changed.setdefault(entity, set()).add(key)
        return True

    def delete(self, entity: str, key: str, stamp: int, cursor: int) -> bool:
        tomb = self.tombstones.get(entity, {}).get(key)
        if tomb is not None and tomb.stamp >= stamp:
            return False
        current = self.records.get(entity, {}).get(key)
        record = current if current is not None else (tomb.record if tomb else None)
        self._bury(entity, key, stamp, cursor, record)
        return True

    def _bury(self, entity: str, key: str, stamp: int, cursor: int, record: dict | None) -> None:
        self._tombs(entity)[key] = Tombstone(entity, key, stamp, cursor, record)
        if key in self.records.get(entity, {}):
            del self._recs(entity)[key]
            self.changed.setdefault(entity, set()).add(key)

    def publish(self, cursor: int, index: StoreIndex | None = None) -> Snapshot:
        records = _freeze(dict(self.records))
        if index is None:
            index = self.base.index.updated(self.base.records, records, self.changed)
        return Snapshot(
            version=self.base.version + 1,
            cursor=cursor,
            records=records,
            tombstones=_freeze(dict(self.tombstones)),
            index=index,
        )


class EntityStore:
    """Owner of the current snapshot. All writers go through batch methods."""

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        self._current = snapshot or Snapshot.empty()

    def snapshot(self) -> Snapshot:
        return self._current

    @property
    def cursor(self) -> int:
        return self._current.cursor

    @property
    def version(self) -> int:
        return self._current.version

    def get(self, entity: str, key: Any) -> dict | None:
        return self._current.get(entity, key)

    def put_batch(self, entity: str, records: Iterable[dict]) -> Snapshot:
        """Upsert *records* of one type. All or nothing."""
        check_entity_type(entity)
        staging = _Staging(self._current)
        for record in records:
            staging.upsert(entity, record, self._current.cursor)
        return self._swap(staging.publish(self._current.cursor))

    def tombstone(self, entity: str, key: Any, at_cursor: int, stamp: int | None = None) -> Snapshot:
        check_entity_type(entity)
        staging = _Staging(self._current)
        staging.delete(entity, str(key), at_cursor if stamp is None else stamp, at_cursor)
        return self._swap(staging.publish(self._current.cursor))

    def apply_delta(self, delta: Delta) -> Snapshot:
        """Apply upserts and deletions of every type, then advance the cursor.

        The cursor never moves backwards. Any error leaves the store as it was.
        """
        base = self._current
        cursor = max(base.cursor, delta.cursor)
        staging = _Staging(base)
        skipped = 0
        for entity in ENTITY_KEYS:
            for record in delta.upserts.get(entity, ()):
                if not staging.upsert(entity, record, cursor):
                    skipped += 1
        for deletion in delta.deletions:
            if deletion.entity not in ENTITY_KEYS:
                logger.debug("Ignoring deletion of untracked type %s", deletion.entity)
                continue
            staging.delete(deletion.entity, deletion.id, deletion.stamp or cursor, cursor)
        if skipped:
            logger.debug("Skipped %d stale upserts at cursor %d", skipped, cursor)
        return self._swap(staging.publish(cursor))

    def replace(self, delta: Delta) -> Snapshot:
        """Replace the whole dataset (full sync). Tombstones of the old generation are dropped."""
        fresh = Snapshot.empty()
        staging = _Staging(fresh)
        for entity in ENTITY_KEYS:
            for record in delta.upserts.get(entity, ()):
                staging.upsert(entity, record, delta.cursor)
        records = _freeze(dict(staging.records))
        snap = Snapshot(
            version=self._current.version + 1,
            cursor=delta.cursor,
            records=records,
            tombstones=_freeze(dict(staging.tombstones)),
            index=StoreIndex.build(records),
        )
        return self._swap(snap)

    def dangling_references(self) -> list[DanglingReference]:
        return self._current.dangling_references()

    def _swap(self, snap: Snapshot) -> Snapshot:
        self._current = snap
        return snap
