"""Query/mutation façade consumed by the tool dispatcher.

Reads take one store snapshot and never trigger a sync. Writes are
resolved against the current snapshot into :class:`BulkItem` s and
handed to the sync engine, which only commits what the server confirmed.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from .enrich import Enricher, suggest_category
from .errors import InvalidRequest, NotFound, ZenMoneyError
from .index import TransactionFilter
from .models import (
    ACCOUNT,
    BUDGET,
    INSTRUMENT,
    MERCHANT,
    REMINDER,
    TAG,
    TRANSACTION,
    dedupe,
    validate_date,
    validate_month,
)
from .store import Snapshot
from .sync import BulkItem, ItemOutcome, SyncEngine

logger = logging.getLogger(__name__)

# Optional create/update fields, tool name -> record key
_TX_FIELDS = {
    "date": "date",
    "income": "income",
    "outcome": "outcome",
    "income_account": "incomeAccount",
    "outcome_account": "outcomeAccount",
    "income_instrument": "incomeInstrument",
    "outcome_instrument": "outcomeInstrument",
    "payee": "payee",
    "comment": "comment",
}


def _now_ts() -> int:
    return int(time.time())


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _validate_amount(val: Any, field: str) -> float:
    try:
        amount = float(val)
    except (TypeError, ValueError) as e:
        raise InvalidRequest(f"{field} must be a number, got {val!r}") from e
    if amount < 0:
        raise InvalidRequest(f"{field} must be non-negative, got {amount}")
    return amount


class ZenMoneyService:
    def __init__(self, engine: SyncEngine, remote_suggest: bool = True) -> None:
        self.engine = engine
        self.remote_suggest = remote_suggest

    @property
    def store(self):
        return self.engine.store

    def _snapshot(self) -> Snapshot:
        return self.store.snapshot()

    # -- sync -------------------------------------------------------------------

    async def sync(self) -> dict[str, Any]:
        report = await self.engine.sync()
        return report.to_dict()

    async def full_sync(self) -> dict[str, Any]:
        report = await self.engine.full_sync()
        return report.to_dict()

    def sync_status(self) -> dict[str, Any]:
        return self.engine.status()

    # -- reads ------------------------------------------------------------------

    def list_accounts(self, active_only: bool = False) -> list[dict]:
        snap = self._snapshot()
        accounts = snap.all(ACCOUNT)
        if active_only:
            accounts = [a for a in accounts if not a.get("archive")]
        accounts.sort(key=lambda a: (bool(a.get("archive")), not a.get("inBalance", True),
                                     a.get("title", ""), str(a["id"])))
        view = Enricher(snap)
        return [view.account(a) for a in accounts]

    def list_transactions(
        self,
        date_from: str | None = None,
        date_to: str | None = None,
        account_id: str | None = None,
        tag_id: str | None = None,
        payee: str | None = None,
        merchant_id: str | None = None,
        min_amount: float | None = None,
        max_amount: float | None = None,
        transaction_type: str | None = None,
        uncategorized: bool = False,
        sort: str = "desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict]:
        f = TransactionFilter(
            date_from=date_from, date_to=date_to, account_id=account_id, tag_id=tag_id,
            payee=payee, merchant_id=merchant_id, min_amount=min_amount, max_amount=max_amount,
            transaction_type=transaction_type, uncategorized=uncategorized, sort=sort,
            limit=limit, offset=offset,
        )
        snap = self._snapshot()
        txs = snap.of(TRANSACTION)
        view = Enricher(snap)
        return [view.transaction(txs[tid]) for tid in snap.index.query(txs, f)]

    def get_transaction(self, transaction_id: str) -> dict:
        snap = self._snapshot()
        tx = snap.get(TRANSACTION, transaction_id)
        if tx is None:
            raise NotFound(TRANSACTION, transaction_id)
        return Enricher(snap).transaction(tx)

    def list_tags(self) -> list[dict]:
        snap = self._snapshot()
        view = Enricher(snap)
        tags = sorted(snap.all(TAG), key=lambda t: (t.get("title", ""), t["id"]))
        return [view.tag(t) for t in tags]

    def list_merchants(self, search: str | None = None, limit: int | None = None) -> list[dict]:
        snap = self._snapshot()
        merchants = snap.all(MERCHANT)
        if search:
            q = search.lower()
            merchants = [m for m in merchants if q in (m.get("title") or "").lower()]
        merchants.sort(key=lambda m: (m.get("title", ""), m["id"]))
        if limit is not None:
            merchants = merchants[:limit]
        view = Enricher(snap)
        return [view.merchant(m) for m in merchants]

    def list_budgets(self, month: str | None = None) -> list[dict]:
        snap = self._snapshot()
        budgets = snap.all(BUDGET)
        if month:
            validate_month(month, "month")
            month_date = f"{month}-01"
            budgets = [b for b in budgets if b.get("date") == month_date]
        view = Enricher(snap)
        out = [view.budget(b) for b in budgets]
        out.sort(key=lambda b: (b["date"], b["tag"] != "Total", b["tag"] or ""))
        return out

    def list_reminders(self, active_only: bool = False) -> list[dict]:
        snap = self._snapshot()
        reminders = snap.all(REMINDER)
        if active_only:
            today = time.strftime("%Y-%m-%d")
            reminders = [r for r in reminders if not r.get("endDate") or r["endDate"] >= today]
        reminders.sort(key=lambda r: (r.get("startDate") or "", r["id"]), reverse=True)
        view = Enricher(snap)
        return [view.reminder(r) for r in reminders]

    def list_instruments(self, used_only: bool = False) -> list[dict]:
        snap = self._snapshot()
        instruments = snap.all(INSTRUMENT)
        if used_only:
            used_ids = {str(a.get("instrument")) for a in snap.all(ACCOUNT)}
            instruments = [i for i in instruments if str(i.get("id")) in used_ids]
        instruments.sort(key=lambda i: int(i["id"]))
        return [Enricher.instrument(i) for i in instruments]

    def get_instrument(self, instrument_id: int) -> dict:
        instr = self._snapshot().get(INSTRUMENT, instrument_id)
        if instr is None:
            raise NotFound(INSTRUMENT, instrument_id)
        return Enricher.instrument(instr)

    def find_account(self, title: str) -> dict | None:
        snap = self._snapshot()
        key = snap.index.find_account(title)
        return Enricher(snap).account(snap.get(ACCOUNT, key)) if key else None

    def find_tag(self, title: str) -> dict | None:
        snap = self._snapshot()
        key = snap.index.find_tag(title)
        return Enricher(snap).tag(snap.get(TAG, key)) if key else None

    async def suggest_category(self, payee: str | None = None, comment: str | None = None) -> dict:
        if not payee and not comment:
            raise InvalidRequest("payee or comment is required")
        snap = self._snapshot()
        result = suggest_category(snap, payee, comment)
        if result["tags"] or not self.remote_suggest:
            return result
        remote = await self.engine.client.suggest(payee, comment)
        tags = []
        for tid in dedupe(remote.get("tag") or []):
            tag = snap.get(TAG, tid)
            if tag is not None:
                tags.append({"id": tag["id"], "title": tag.get("title", "")})
        if tags:
            result["tags"] = tags
            result["source"] = "remote"
        if remote.get("payee"):
            result["payee"] = remote["payee"]
        if remote.get("merchant") and result["merchant"] is None:
            m = snap.get(MERCHANT, remote["merchant"])
            if m is not None:
                result["merchant"] = {"id": m["id"], "title": m.get("title", "")}
        return result

    # -- write builders ---------------------------------------------------------

    def _check_refs(self, snap: Snapshot, record: dict) -> None:
        for field, entity in (("incomeAccount", ACCOUNT), ("outcomeAccount", ACCOUNT),
                              ("incomeInstrument", INSTRUMENT), ("outcomeInstrument", INSTRUMENT)):
            if snap.get(entity, record.get(field)) is None:
                raise NotFound(entity, record.get(field))
        for tid in record.get("tag") or []:
            if snap.get(TAG, tid) is None:
                raise NotFound(TAG, tid)
        if record.get("merchant") and snap.get(MERCHANT, record["merchant"]) is None:
            raise NotFound(MERCHANT, record["merchant"])
        if not (record.get("income") or record.get("outcome")):
            raise InvalidRequest("income or outcome must be positive")

    @staticmethod
    def _account_instrument(snap: Snapshot, account_id: str) -> Any:
        account = snap.get(ACCOUNT, account_id)
        if account is None:
            raise NotFound(ACCOUNT, account_id)
        return account.get("instrument")

    def build_create(self, snap: Snapshot, op: dict) -> BulkItem:
        for required in ("date", "outcome_account"):
            if not op.get(required):
                raise InvalidRequest(f"{required} is required")
        validate_date(op["date"], "date")
        outcome_account = op["outcome_account"]
        income_account = op.get("income_account") or outcome_account
        outcome_instrument = op.get("outcome_instrument")
        if outcome_instrument is None:
            outcome_instrument = self._account_instrument(snap, outcome_account)
        income_instrument = op.get("income_instrument")
        if income_instrument is None:
            income_instrument = self._account_instrument(snap, income_account)

        user = snap.first_user()
        if not user:
            raise NotFound("user", "current")
        now = _now_ts()
        tx: dict[str, Any] = {
            "id": _new_uuid(),
            "user": user["id"],
            "changed": now,
            "created": now,
            "deleted": False,
            "hold": None,
            "incomeInstrument": income_instrument,
            "incomeAccount": income_account,
            "income": _validate_amount(op.get("income", 0), "income"),
            "outcomeInstrument": outcome_instrument,
            "outcomeAccount": outcome_account,
            "outcome": _validate_amount(op.get("outcome", 0), "outcome"),
            "tag": dedupe(op.get("tag_ids")) or None,
            "merchant": op.get("merchant_id"),
            "payee": op.get("payee"),
            "originalPayee": None,
            "comment": op.get("comment"),
            "date": op["date"],
            "mcc": None,
            "reminderMarker": None,
            "opIncome": None,
            "opIncomeInstrument": None,
            "opOutcome": None,
            "opOutcomeInstrument": None,
            "latitude": None,
            "longitude": None,
            "qrCode": None,
            "incomeBankID": None,
            "outcomeBankID": None,
        }
        self._check_refs(snap, tx)
        return BulkItem("create", TRANSACTION, tx["id"], record=tx)

    def build_update(self, snap: Snapshot, op: dict) -> BulkItem:
        tid = op.get("id")
        if not tid:
            raise InvalidRequest("id is required")
        existing = snap.get(TRANSACTION, tid)
        if existing is None:
            raise NotFound(TRANSACTION, tid)

        updated = {**existing, "changed": _now_ts()}
        for name, key in _TX_FIELDS.items():
            if name not in op:
                continue
            value = op[name]
            if name == "date":
                validate_date(value, "date")
            elif name in ("income", "outcome"):
                value = _validate_amount(value, name)
            updated[key] = value
        # A moved side follows its new account's currency unless one was given
        for side in ("income", "outcome"):
            if op.get(f"{side}_account") is not None and op.get(f"{side}_instrument") is None:
                updated[f"{side}Instrument"] = self._account_instrument(snap, op[f"{side}_account"])
        if "tag_ids" in op:
            updated["tag"] = dedupe(op["tag_ids"]) or None
        if "merchant_id" in op:
            updated["merchant"] = op["merchant_id"]
        self._check_refs(snap, updated)
        return BulkItem("update", TRANSACTION, str(tid), record=updated, before=existing)

    @staticmethod
    def build_delete(snap: Snapshot, op: dict) -> BulkItem:
        tid = op.get("id")
        if not tid:
            raise InvalidRequest("id is required")
        existing = snap.get(TRANSACTION, tid)
        if existing is None:
            raise NotFound(TRANSACTION, tid)
        return BulkItem("delete", TRANSACTION, str(tid), before=existing)

    def _build(self, snap: Snapshot, op: dict, position: int | None = None) -> BulkItem:
        if not isinstance(op, dict):
            raise InvalidRequest(f"Operation must be an object, got {type(op).__name__}")
        action = op.get("action")
        builders = {"create": self.build_create, "update": self.build_update, "delete": self.build_delete}
        if action not in builders:
            raise InvalidRequest(f"Unknown action: {action!r}. Expected create, update or delete")
        item = builders[action](snap, op)
        item.position = position
        return item

    # -- writes -----------------------------------------------------------------

    async def create_transaction(
        self,
        date: str,
        outcome_account: str,
        outcome: float = 0,
        income_account: str | None = None,
        income: float = 0,
        outcome_instrument: int | None = None,
        income_instrument: int | None = None,
        tag_ids: list[str] | None = None,
        merchant_id: str | None = None,
        payee: str | None = None,
        comment: str | None = None,
    ) -> dict:
        snap = self._snapshot()
        item = self.build_create(snap, {
            "date": date, "outcome_account": outcome_account, "outcome": outcome,
            "income_account": income_account, "income": income,
            "outcome_instrument": outcome_instrument, "income_instrument": income_instrument,
            "tag_ids": tag_ids, "merchant_id": merchant_id, "payee": payee, "comment": comment,
        })
        record = await self.engine.push(item)
        return {"created": Enricher(self._snapshot()).transaction(record or item.record)}

    async def update_transaction(self, transaction_id: str, **fields: Any) -> dict:
        unknown = set(fields) - set(_TX_FIELDS) - {"tag_ids", "merchant_id"}
        if unknown:
            raise InvalidRequest(f"Unknown fields: {', '.join(sorted(unknown))}")
        item = self.build_update(self._snapshot(), {"id": transaction_id, **fields})
        record = await self.engine.push(item)
        return {"updated": Enricher(self._snapshot()).transaction(record or item.record)}

    async def delete_transaction(self, transaction_id: str) -> dict:
        """Delete and return the full record as it was before deletion."""
        snap = self._snapshot()
        item = self.build_delete(snap, {"id": transaction_id})
        before = Enricher(snap).transaction(item.before)
        await self.engine.push(item)
        return {"message": f"Transaction '{transaction_id}' deleted", "transaction": before}

    async def bulk_operations(self, operations: list[dict]) -> dict:
        """Run create/update/delete operations one by one; report every outcome."""
        if not isinstance(operations, list):
            raise InvalidRequest("operations must be a list")
        snap = self._snapshot()
        outcomes: dict[int, ItemOutcome | tuple[dict, ZenMoneyError]] = {}
        items = []
        for i, op in enumerate(operations):
            try:
                items.append(self._build(snap, op, i))
            except ZenMoneyError as e:
                outcomes[i] = (op, e)
        for outcome in await self.engine.run_bulk(items):
            outcomes[outcome.index] = outcome
        return self._bulk_result([outcomes[i] for i in range(len(operations))])

    def prepare_bulk_operations(self, operations: list[dict]) -> dict:
        """Validate operations and stage them; nothing is sent until execution."""
        if not isinstance(operations, list):
            raise InvalidRequest("operations must be a list")
        snap = self._snapshot()
        view = Enricher(snap)
        items: list[BulkItem] = []
        errors = []
        for i, op in enumerate(operations):
            try:
                items.append(self._build(snap, op, i))
            except ZenMoneyError as e:
                errors.append({"index": i, "operation": op, "error": e.to_dict()})
        prep_id = self.engine.stage_bulk(items)
        return {
            "preparation_id": prep_id,
            "created": sum(1 for it in items if it.action == "create"),
            "updated": sum(1 for it in items if it.action == "update"),
            "deleted": sum(1 for it in items if it.action == "delete"),
            "transactions": [
                {"index": it.position, "action": it.action, **view.transaction(it.record)}
                for it in items if it.action != "delete"
            ],
            "deleted_transactions": [
                {"index": it.position, **view.transaction(it.before)}
                for it in items if it.action == "delete"
            ],
            "errors": errors,
        }

    async def execute_bulk_operations(self, preparation_id: str) -> dict:
        outcomes = await self.engine.execute_bulk(preparation_id)
        return self._bulk_result(outcomes)

    def discard_bulk_operations(self, preparation_id: str) -> dict:
        self.engine.discard_bulk(preparation_id)
        return {"discarded": preparation_id}

    def _bulk_result(self, outcomes: list) -> dict:
        view = Enricher(self._snapshot())
        counts = {"created": 0, "updated": 0, "deleted": 0, "failed": 0}
        results = []
        for pos, outcome in enumerate(outcomes):
            if isinstance(outcome, tuple):
                op, err = outcome
                counts["failed"] += 1
                results.append({"index": pos, "action": op.get("action") if isinstance(op, dict) else None,
                                "status": "error", "error": err.to_dict(), "operation": op})
                continue
            item = outcome.item
            entry: dict[str, Any] = {"index": outcome.index, "action": item.action, "id": item.key}
            if not outcome.ok:
                counts["failed"] += 1
                entry.update(status="error", error=outcome.error.to_dict(), operation=item.describe())
            else:
                counts[item.action + "d"] += 1
                entry["status"] = "ok"
                if item.action == "delete":
                    entry["transaction"] = view.transaction(item.before)
                else:
                    entry["transaction"] = view.transaction(outcome.record or item.record)
            results.append(entry)
        return {**counts, "results": results}
