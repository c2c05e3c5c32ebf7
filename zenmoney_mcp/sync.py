"""Sync engine: full and incremental sync, write round-trips, bulk staging.

Only this module mutates the :class:`~zenmoney_mcp.store.EntityStore`.
Mutations are serialized by one ``asyncio.Lock``; the store itself is
only touched after the remote call has returned, so a failed or
cancelled call leaves it exactly as it was.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import Conflict, InvalidRequest, NotFound, RemoteRejected, StaleCursor, TransportError, ZenMoneyError
from .models import TRANSACTION, Deletion, Delta, changed_stamp, check_entity_type
from .store import EntityStore, Snapshot

logger = logging.getLogger(__name__)

# Oldest preparations are evicted beyond this many.
MAX_STAGED = 32


class RemoteClient(Protocol):
    async def full_fetch(self) -> Delta: ...

    async def delta_fetch(self, cursor: int) -> Delta: ...

    async def push(self, changes: dict[str, Any], cursor: int) -> Delta: ...

    async def suggest(self, payee: str | None = None, comment: str | None = None) -> dict: ...


class SnapshotSink(Protocol):
    def save(self, snapshot: Snapshot) -> None: ...


class SyncState(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    RECONCILING = "reconciling"
    FAILED = "failed"


@dataclass
class SyncReport:
    mode: str
    cursor_before: int
    cursor_after: int
    counts: dict[str, int] = field(default_factory=dict)
    fell_back: bool = False
    dangling: int = 0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "mode": self.mode,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "changes": self.counts,
        }
        if self.fell_back:
            out["stale_cursor_fallback"] = True
        if self.dangling:
            out["dangling_references"] = self.dangling
        return out


@dataclass
class BulkItem:
    """One write, fully resolved against the store before it is sent."""

    action: str
    entity: str
    key: str
    record: dict | None = None
    before: dict | None = None
    position: int | None = None

    def __post_init__(self) -> None:
        if self.action not in ("create", "update", "delete"):
            raise InvalidRequest(f"Unknown action: {self.action}")
        check_entity_type(self.entity)
        if self.action != "delete" and self.record is None:
            raise InvalidRequest(f"{self.action} of {self.entity} needs a record")
        if self.action != "create" and self.before is None:
            raise InvalidRequest(f"{self.action} of {self.entity} needs the current record")

    def changes(self, now: int) -> dict[str, Any]:
        if self.action != "delete":
            return {self.entity: [self.record]}
        if self.entity == TRANSACTION:
            return {self.entity: [{**self.before, "deleted": True, "changed": now}]}
        user = self.before.get("user") if self.before else None
        return {"deletion": [Deletion(self.entity, self.key, now).to_dict(user)]}

    def describe(self) -> dict[str, Any]:
        out: dict[str, Any] = {"action": self.action, "entity": self.entity, "id": self.key}
        if self.record is not None:
            out["record"] = self.record
        return out


@dataclass
class ItemOutcome:
    index: int
    item: BulkItem
    record: dict | None = None
    error: ZenMoneyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncEngine:
    def __init__(self, store: EntityStore, client: RemoteClient, storage: SnapshotSink | None = None,
                 max_staged: int = MAX_STAGED) -> None:
        self.store = store
        self.client = client
        self.storage = storage
        self.max_staged = max_staged
        self.state = SyncState.IDLE
        self.last_error: ZenMoneyError | None = None
        self.last_sync: int | None = None
        self._lock = asyncio.Lock()
        self._staged: dict[str, list[BulkItem]] = {}

    # -- sync -------------------------------------------------------------------

    async def full_sync(self) -> SyncReport:
        """Download everything and replace the store wholesale."""
        async with self._lock:
            return await self._attempt(self._full)

    async def sync(self) -> SyncReport:
        """Incremental sync, falling back to one full sync on a stale cursor."""
        async with self._lock:
            return await self._attempt(self._incremental)

    async def _attempt(self, fn, *args):
        self.state = SyncState.SYNCING
        try:
            result = await fn(*args)
        except asyncio.CancelledError:
            self._fail(TransportError("Remote call cancelled", kind="cancelled"))
            raise
        except (RemoteRejected, Conflict):
            self.state = SyncState.IDLE
            raise
        except ZenMoneyError as e:
            self._fail(e)
            raise
        except Exception as e:
            self._fail(TransportError(f"Unexpected failure: {e!r}", kind="server"))
            raise
        self.state = SyncState.IDLE
        self.last_error = None
        return result

    def _fail(self, err: ZenMoneyError) -> None:
        self.state = SyncState.FAILED
        self.last_error = err
        logger.warning("Sync attempt failed, store left at cursor %d: %s", self.store.cursor, err)

    async def _full(self) -> SyncReport:
        before = self.store.cursor
        delta = await self.client.full_fetch()
        snap = self._commit(delta, replace=True)
        report = SyncReport("full", before, snap.cursor, snap.counts())
        report.dangling = self._check_references(snap)
        logger.info("Full sync complete at cursor %d: %s", snap.cursor, report.counts)
        return report

    async def _incremental(self) -> SyncReport:
        before = self.store.cursor
        if before == 0:
            return await self._full()
        try:
            delta = await self.client.delta_fetch(before)
        except StaleCursor as e:
            logger.warning("%s; falling back to full sync", e)
            report = await self._full()
            report.fell_back = True
            return report
        snap = self._commit(delta)
        report = SyncReport("incremental", before, snap.cursor, delta.counts())
        report.dangling = self._check_references(snap)
        logger.info("Incremental sync %d -> %d: %s", before, snap.cursor, report.counts or "no changes")
        return report

    def _commit(self, delta: Delta, replace: bool = False) -> Snapshot:
        self.state = SyncState.RECONCILING
        try:
            snap = self.store.replace(delta) if replace else self.store.apply_delta(delta)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise TransportError(f"Malformed data from server: {e}", kind="server") from e
        self.last_sync = int(time.time())
        if self.storage is not None:
            try:
                self.storage.save(snap)
            except OSError as e:
                logger.warning("Could not persist store at cursor %d: %s", snap.cursor, e)
        return snap

    @staticmethod
    def _check_references(snap: Snapshot) -> int:
        dangling = snap.dangling_references()
        if dangling:
            sample = ", ".join(f"{d.owner}.{d.field}={d.id}" for d in dangling[:5])
            logger.warning("%d dangling references after sync (e.g. %s)", len(dangling), sample)
        return len(dangling)

    # -- writes -----------------------------------------------------------------

    async def push(self, item: BulkItem) -> dict | None:
        """Send one write and apply the server-confirmed result.

        Returns the confirmed record (``None`` for a deletion).
        """
        async with self._lock:
            return await self._attempt(self._push, item)

    async def _push(self, item: BulkItem) -> dict | None:
        try:
            return await self._send(item)
        except ZenMoneyError as e:
            e.operation = item.describe()
            raise

    async def _send(self, item: BulkItem) -> dict | None:
        now = int(time.time())
        changes = item.changes(now)
        try:
            delta = await self.client.push(changes, self.store.cursor)
        except StaleCursor as e:
            logger.warning("%s during write; refreshing with a full sync before retrying", e)
            await self._full()
            delta = await self.client.push(changes, self.store.cursor)
        if item.action == "delete":
            gone = delta.find(item.entity, item.key)
            if gone is None and not any(d.entity == item.entity and d.id == item.key for d in delta.deletions):
                delta.deletions.append(Deletion(item.entity, item.key, now))
        else:
            confirmed = delta.find(item.entity, item.key)
            if confirmed is None:
                confirmed = item.record
                delta.upserts.setdefault(item.entity, []).append(confirmed)
        snap = self._commit(delta)
        current = snap.get(item.entity, item.key)
        if item.action == "delete":
            if current is not None:
                raise Conflict(item.entity, item.key, f"{item.entity} {item.key} was kept by a newer version")
        elif current is None or changed_stamp(current) != changed_stamp(confirmed):
            raise Conflict(item.entity, item.key, f"{item.entity} {item.key} has a newer version in the store")
        return current

    # -- bulk -------------------------------------------------------------------

    def stage_bulk(self, items: list[BulkItem]) -> str:
        while len(self._staged) >= self.max_staged:
            oldest = next(iter(self._staged))
            del self._staged[oldest]
            logger.info("Evicted unexecuted bulk preparation %s", oldest)
        prep_id = str(uuid.uuid4())
        self._staged[prep_id] = list(items)
        logger.debug("Staged %d bulk items as %s", len(items), prep_id)
        return prep_id

    def staged(self, prep_id: str) -> list[BulkItem]:
        if prep_id not in self._staged:
            raise NotFound("preparation", prep_id)
        return self._staged[prep_id]

    def discard_bulk(self, prep_id: str) -> None:
        if self._staged.pop(prep_id, None) is None:
            raise NotFound("preparation", prep_id)

    @property
    def pending_bulk(self) -> int:
        return len(self._staged)

    async def execute_bulk(self, prep_id: str) -> list[ItemOutcome]:
        items = self._staged.pop(prep_id, None)
        if items is None:
            raise NotFound("preparation", prep_id)
        return await self.run_bulk(items)

    async def run_bulk(self, items: list[BulkItem]) -> list[ItemOutcome]:
        """Push every item on its own. Failures are recorded per item, never aggregated."""
        outcomes: list[ItemOutcome] = []
        async with self._lock:
            self.state = SyncState.RECONCILING
            try:
                for i, item in enumerate(items):
                    outcomes.append(await self._run_item(i, item))
            except asyncio.CancelledError:
                self._fail(TransportError("Bulk operation cancelled", kind="cancelled"))
                raise
            except Exception as e:
                self._fail(TransportError(f"Unexpected failure: {e!r}", kind="server"))
                raise
            self.state = SyncState.IDLE
        failed = sum(1 for o in outcomes if not o.ok)
        logger.info("Bulk operation: %d applied, %d failed", len(outcomes) - failed, failed)
        return outcomes

    async def _run_item(self, i: int, item: BulkItem) -> ItemOutcome:
        if item.position is not None:
            i = item.position
        if item.action != "create":
            current = self.store.get(item.entity, item.key)
            if current is None:
                return ItemOutcome(i, item, error=NotFound(item.entity, item.key))
            if changed_stamp(current) != changed_stamp(item.before):
                logger.info("Bulk item %d (%s %s) is out of date", i, item.action, item.key)
                return ItemOutcome(i, item, error=Conflict(item.entity, item.key))
        try:
            record = await self._push(item)
        except (RemoteRejected, TransportError, StaleCursor, Conflict) as e:
            logger.info("Bulk item %d (%s %s) failed: %s", i, item.action, item.key, e)
            return ItemOutcome(i, item, error=e)
        return ItemOutcome(i, item, record=record)

    def status(self) -> dict[str, Any]:
        snap = self.store.snapshot()
        return {
            "state": self.state.value,
            "cursor": snap.cursor,
            "version": snap.version,
            "last_sync": self.last_sync,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "counts": snap.counts(),
            "pending_bulk": self.pending_bulk,
        }
