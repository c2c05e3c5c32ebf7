"""
Tests for SyncEngine: full and incremental sync, stale-cursor fallback,
failure handling and write round-trips.
"""

import asyncio

import pytest

from conftest import FakeClient, make_tx, records_of, sample_diff
from zenmoney_mcp.errors import Conflict, NotFound, RemoteRejected, StaleCursor, TransportError
from zenmoney_mcp.models import TAG, TRANSACTION, Deletion, Delta
from zenmoney_mcp.store import EntityStore
from zenmoney_mcp.sync import BulkItem, SyncEngine, SyncState


def changed_diff():
    """The sample dataset as the server sees it later: tx2 gone, tx7 added."""
    diff = sample_diff()
    diff["serverTimestamp"] = 2000
    diff["transaction"] = [t for t in diff["transaction"] if t["id"] != "tx2"]
    diff["transaction"].append(make_tx("tx7", "2025-03-10", outcome=42, tag=["t-cafe"], payee="Cafe"))
    return diff


class RecordingSink:
    def __init__(self):
        self.saved = []

    def save(self, snapshot):
        self.saved.append(snapshot)


class TestFullSync:
    @pytest.mark.asyncio
    async def test_from_empty_store(self):
        client = FakeClient()
        sink = RecordingSink()
        engine = SyncEngine(EntityStore(), client, sink)

        report = await engine.full_sync()

        assert report.mode == "full"
        assert report.cursor_before == 0
        assert report.cursor_after == 1000
        assert report.counts[TRANSACTION] == 6
        assert engine.state is SyncState.IDLE
        assert engine.store.get(TRANSACTION, "tx1") is not None
        assert sink.saved == [engine.store.snapshot()]

    @pytest.mark.asyncio
    async def test_incremental_with_zero_cursor_runs_full(self):
        client = FakeClient()
        engine = SyncEngine(EntityStore(), client)

        report = await engine.sync()

        assert report.mode == "full"
        assert client.calls == ["full"]

    @pytest.mark.asyncio
    async def test_malformed_payload_leaves_store_unchanged(self, engine, client):
        before = engine.store.snapshot()
        broken = sample_diff()
        broken["serverTimestamp"] = 2000
        broken["transaction"].append({"date": "2025-01-01"})
        client.full = broken

        with pytest.raises(TransportError) as exc:
            await engine.full_sync()

        assert exc.value.kind == "server"
        assert engine.store.snapshot() is before
        assert engine.state is SyncState.FAILED


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_applies_delta(self, engine, client):
        client.deltas.append(Delta(
            1100,
            upserts={TRANSACTION: [make_tx("tx7", "2025-03-10", outcome=42)]},
            deletions=[Deletion(TRANSACTION, "tx2", 1050)],
        ))

        report = await engine.sync()

        assert client.calls == [("delta", 1000)]
        assert report.mode == "incremental"
        assert report.counts == {TRANSACTION: 1, "deletion": 1}
        assert engine.store.cursor == 1100
        assert engine.store.get(TRANSACTION, "tx7") is not None
        assert engine.store.get(TRANSACTION, "tx2") is None

    @pytest.mark.asyncio
    async def test_empty_delta_advances_cursor(self, engine, client):
        client.deltas.append(Delta(1200))

        report = await engine.sync()

        assert report.counts == {}
        assert engine.store.cursor == 1200

    @pytest.mark.asyncio
    async def test_stale_cursor_falls_back_to_one_full_sync(self, engine, client):
        client.deltas.append(StaleCursor(1000))
        client.full = changed_diff()

        report = await engine.sync()

        assert report.fell_back is True
        assert report.to_dict()["stale_cursor_fallback"] is True
        assert client.calls == [("delta", 1000), "full"]
        reference = EntityStore()
        reference.replace(Delta.from_diff(changed_diff()))
        assert records_of(engine.store.snapshot()) == records_of(reference.snapshot())
        assert engine.store.cursor == 2000

    @pytest.mark.asyncio
    async def test_failed_fallback_reports_failure(self, engine, client):
        client.deltas.append(StaleCursor(1000))
        client.full = TransportError("down", kind="network")
        before = engine.store.snapshot()

        with pytest.raises(TransportError):
            await engine.sync()

        assert client.calls.count("full") == 1
        assert engine.store.snapshot() is before

    @pytest.mark.asyncio
    async def test_transport_failure_leaves_store_unchanged(self, engine, client):
        before = engine.store.snapshot()
        client.deltas.append(TransportError("connection reset", kind="network"))

        with pytest.raises(TransportError):
            await engine.sync()

        assert engine.store.snapshot() is before
        assert engine.state is SyncState.FAILED
        assert engine.status()["last_error"]["kind"] == "network"

        client.deltas.append(Delta(1100))
        await engine.sync()
        assert engine.state is SyncState.IDLE
        assert engine.last_error is None

    @pytest.mark.asyncio
    async def test_cancellation_leaves_store_unchanged(self, engine, client):
        before = engine.store.snapshot()
        client.deltas.append(asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await engine.sync()

        assert engine.store.snapshot() is before
        assert engine.state is SyncState.FAILED
        assert engine.last_error.kind == "cancelled"

    @pytest.mark.asyncio
    async def test_reports_dangling_references(self, engine, client):
        client.deltas.append(Delta(1100, upserts={
            TRANSACTION: [make_tx("tx9", "2025-03-10", outcome=1, tag=["t-ghost"])],
        }))

        report = await engine.sync()

        assert report.dangling == 1
        assert engine.store.get(TRANSACTION, "tx9") is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("record", [
        make_tx("tx9", None, outcome=1),
        5,
    ])
    async def test_malformed_record_fails_sync(self, engine, client, record):
        before = engine.store.snapshot()
        client.deltas.append(Delta(1100, upserts={TRANSACTION: [record]}))

        with pytest.raises(TransportError) as exc:
            await engine.sync()

        assert exc.value.kind == "server"
        assert engine.state is SyncState.FAILED
        assert engine.last_error is exc.value
        assert engine.status()["last_error"]["error"] == "TransportError"
        assert engine.store.snapshot() is before


class TestPush:
    @pytest.mark.asyncio
    async def test_confirmed_write_is_applied(self, engine, client):
        record = make_tx("tx7", "2025-03-10", outcome=42, changed=500)

        result = await engine.push(BulkItem("create", TRANSACTION, "tx7", record=record))

        assert result["outcome"] == 42
        assert client.pushed == [{TRANSACTION: [record]}]
        assert engine.store.get(TRANSACTION, "tx7") is not None
        assert engine.store.cursor == 1001

    @pytest.mark.asyncio
    async def test_write_not_echoed_is_still_applied(self, engine, client):
        client.push_results.append(Delta(1001))
        record = make_tx("tx7", "2025-03-10", outcome=42, changed=500)

        await engine.push(BulkItem("create", TRANSACTION, "tx7", record=record))

        assert engine.store.get(TRANSACTION, "tx7")["outcome"] == 42

    @pytest.mark.asyncio
    async def test_rejected_write_changes_nothing(self, engine, client):
        before = engine.store.snapshot()
        client.push_results.append(RemoteRejected("tag does not exist", status_code=400))
        item = BulkItem("create", TRANSACTION, "tx7", record=make_tx("tx7", "2025-03-10", outcome=42))

        with pytest.raises(RemoteRejected) as exc:
            await engine.push(item)

        assert exc.value.operation == item.describe()
        assert engine.store.snapshot() is before
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_stale_cursor_on_write_refreshes_and_retries(self, engine, client):
        client.push_results.append(StaleCursor(1000))
        client.full = changed_diff()
        record = make_tx("tx8", "2025-03-11", outcome=9, changed=500)

        await engine.push(BulkItem("create", TRANSACTION, "tx8", record=record))

        assert client.calls == [("push", 1000), "full", ("push", 2000)]
        assert engine.store.get(TRANSACTION, "tx8") is not None
        assert engine.store.get(TRANSACTION, "tx7") is not None

    @pytest.mark.asyncio
    async def test_transaction_delete_sends_deleted_flag(self, engine, client):
        before = engine.store.get(TRANSACTION, "tx1")

        result = await engine.push(BulkItem("delete", TRANSACTION, "tx1", before=before))

        sent = client.pushed[0][TRANSACTION][0]
        assert sent["id"] == "tx1"
        assert sent["deleted"] is True
        assert result is None
        assert engine.store.get(TRANSACTION, "tx1") is None

    @pytest.mark.asyncio
    async def test_write_overtaken_by_newer_record_is_a_conflict(self, engine, client):
        tx1 = engine.store.get(TRANSACTION, "tx1")
        item = BulkItem("update", TRANSACTION, "tx1", record={**tx1, "outcome": 1, "changed": 5}, before=tx1)

        with pytest.raises(Conflict) as exc:
            await engine.push(item)

        assert exc.value.to_dict()["operation"]["id"] == "tx1"
        assert engine.state is SyncState.IDLE
        assert engine.store.get(TRANSACTION, "tx1")["outcome"] == tx1["outcome"]

    @pytest.mark.asyncio
    async def test_transport_failure_names_the_operation(self, engine, client):
        client.push_results.append(TransportError("bad gateway", kind="server", status_code=502))
        item = BulkItem("create", TRANSACTION, "tx7", record=make_tx("tx7", "2025-03-10", outcome=42))

        with pytest.raises(TransportError) as exc:
            await engine.push(item)

        assert exc.value.to_dict()["operation"] == item.describe()
        assert engine.state is SyncState.FAILED


class TestBulkItem:
    def test_delete_of_other_types_uses_deletion_list(self):
        item = BulkItem("delete", TAG, "t-cafe", before={"id": "t-cafe", "user": 100})

        assert item.changes(123) == {
            "deletion": [{"id": "t-cafe", "object": TAG, "stamp": 123, "user": 100}],
        }

    def test_rejects_unknown_action(self):
        from zenmoney_mcp.errors import InvalidRequest

        with pytest.raises(InvalidRequest):
            BulkItem("merge", TRANSACTION, "tx1", record={})


class TestBulkStaging:
    @pytest.mark.asyncio
    async def test_each_item_succeeds_or_fails_alone(self, engine, client):
        items = [
            BulkItem("create", TRANSACTION, f"n{i}", record=make_tx(f"n{i}", "2025-03-10", outcome=i + 1, changed=500))
            for i in range(3)
        ]
        client.push_results.extend(["echo", RemoteRejected("bad"), "echo"])

        outcomes = await engine.run_bulk(items)

        assert [o.ok for o in outcomes] == [True, False, True]
        assert engine.store.get(TRANSACTION, "n0") is not None
        assert engine.store.get(TRANSACTION, "n1") is None
        assert engine.store.get(TRANSACTION, "n2") is not None
        assert engine.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_missing_target_fails_without_push(self, engine, client):
        item = BulkItem("delete", TRANSACTION, "tx1", before=engine.store.get(TRANSACTION, "tx1"))
        engine.store.tombstone(TRANSACTION, "tx1", at_cursor=1000)

        outcomes = await engine.run_bulk([item])

        assert isinstance(outcomes[0].error, NotFound)
        assert client.pushed == []

    @pytest.mark.asyncio
    async def test_stage_and_execute(self, engine, client):
        item = BulkItem("create", TRANSACTION, "n0", record=make_tx("n0", "2025-03-10", outcome=1, changed=500))
        prep_id = engine.stage_bulk([item])

        assert engine.pending_bulk == 1
        assert client.pushed == []

        outcomes = await engine.execute_bulk(prep_id)

        assert outcomes[0].ok
        assert engine.pending_bulk == 0
        with pytest.raises(NotFound):
            await engine.execute_bulk(prep_id)

    def test_discard(self, engine):
        prep_id = engine.stage_bulk([])
        engine.discard_bulk(prep_id)

        with pytest.raises(NotFound):
            engine.staged(prep_id)

    def test_oldest_preparation_is_evicted(self, store, client):
        engine = SyncEngine(store, client, max_staged=2)
        first, second, third = (engine.stage_bulk([]) for _ in range(3))

        assert engine.pending_bulk == 2
        with pytest.raises(NotFound):
            engine.staged(first)
        assert engine.staged(second) == []
        assert engine.staged(third) == []

    @pytest.mark.asyncio
    async def test_item_changed_since_staging_is_not_sent(self, engine, client):
        tx1 = engine.store.get(TRANSACTION, "tx1")
        item = BulkItem("update", TRANSACTION, "tx1", record={**tx1, "comment": "mine", "changed": 60}, before=tx1)
        prep_id = engine.stage_bulk([item])
        engine.store.put_batch(TRANSACTION, [{**tx1, "payee": "Remote Payee", "changed": 50}])

        outcomes = await engine.execute_bulk(prep_id)

        assert isinstance(outcomes[0].error, Conflict)
        assert client.pushed == []
        assert engine.store.get(TRANSACTION, "tx1")["payee"] == "Remote Payee"
