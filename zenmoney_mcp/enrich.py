"""Denormalized, human-readable views over a store snapshot.

IDs embedded in records are resolved with plain lookups into the
snapshot. A reference that does not resolve is replaced by
:data:`UNKNOWN` and reported in the record's ``diagnostics`` list; the
rest of the record is still produced.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from .errors import DanglingReference
from .models import (
    ACCOUNT,
    COMPANY,
    INSTRUMENT,
    MERCHANT,
    TAG,
    TOTAL_BUDGET_TAG,
    TRANSACTION,
    tx_type,
)
from .store import Snapshot

logger = logging.getLogger(__name__)

UNKNOWN = "<unknown>"

ACCOUNT_TYPE_LABELS = {
    "cash": "Cash",
    "ccard": "CreditCard",
    "checking": "Checking",
    "loan": "Loan",
    "deposit": "Deposit",
    "emoney": "EMoney",
    "debt": "Debt",
}


class Enricher:
    """Resolves references against one snapshot. Cheap to create per request."""

    def __init__(self, snapshot: Snapshot) -> None:
        self.snapshot = snapshot

    # -- resolution -----------------------------------------------------------

    def _resolve(self, entity: str, ref: Any, field: str, diags: list[DanglingReference],
                 attr: str = "title") -> str | None:
        if ref is None or ref == "":
            return None
        rec = self.snapshot.get(entity, ref)
        if rec is None:
            diags.append(DanglingReference(field, entity, str(ref)))
            return UNKNOWN
        return rec.get(attr) or ""

    def _currency(self, ref: Any, field: str, diags: list[DanglingReference]) -> str | None:
        return self._resolve(INSTRUMENT, ref, field, diags, attr="shortTitle")

    def _tag_names(self, ids: list | None, diags: list[DanglingReference], field: str = "tag") -> list[str]:
        return [self._resolve(TAG, tid, field, diags) or "" for tid in (ids or [])]

    @staticmethod
    def _finish(out: dict[str, Any], diags: list[DanglingReference], entity: str) -> dict[str, Any]:
        if diags:
            out["diagnostics"] = [d.to_dict() for d in diags]
            logger.debug("%s %s has %d dangling references", entity, out.get("id"), len(diags))
        return out

    # -- views ------------------------------------------------------------------

    def transaction(self, t: dict) -> dict[str, Any]:
        diags: list[DanglingReference] = []
        out: dict[str, Any] = {
            "id": t["id"],
            "date": t.get("date", ""),
            "type": tx_type(t),
            "income": t.get("income", 0),
            "income_account": self._resolve(ACCOUNT, t.get("incomeAccount"), "incomeAccount", diags),
            "income_currency": self._currency(t.get("incomeInstrument"), "incomeInstrument", diags),
            "outcome": t.get("outcome", 0),
            "outcome_account": self._resolve(ACCOUNT, t.get("outcomeAccount"), "outcomeAccount", diags),
            "outcome_currency": self._currency(t.get("outcomeInstrument"), "outcomeInstrument", diags),
            "tags": self._tag_names(t.get("tag"), diags),
            "tag_ids": list(t.get("tag") or []),
            "merchant": self._resolve(MERCHANT, t.get("merchant"), "merchant", diags),
            "payee": t.get("payee"),
            "comment": t.get("comment"),
        }
        if t.get("hold"):
            out["hold"] = True
        return self._finish(out, diags, TRANSACTION)

    def account(self, a: dict) -> dict[str, Any]:
        diags: list[DanglingReference] = []
        instr = self.snapshot.get(INSTRUMENT, a.get("instrument"))
        out: dict[str, Any] = {
            "id": a["id"],
            "title": a.get("title", ""),
            "account_type": ACCOUNT_TYPE_LABELS.get(a.get("type", ""), a.get("type", "")),
            "balance": a.get("balance"),
            "currency": self._currency(a.get("instrument"), "instrument", diags),
            "currency_symbol": instr.get("symbol") if instr else None,
            "archive": bool(a.get("archive")),
            "in_balance": bool(a.get("inBalance", True)),
        }
        if a.get("creditLimit"):
            out["credit_limit"] = a["creditLimit"]
        if a.get("savings"):
            out["savings"] = True
        company = self._resolve(COMPANY, a.get("company"), "company", diags)
        if company:
            out["bank"] = company
        return self._finish(out, diags, ACCOUNT)

    def tag(self, t: dict) -> dict[str, Any]:
        diags: list[DanglingReference] = []
        out: dict[str, Any] = {
            "id": t["id"],
            "title": t.get("title", ""),
            "parent": self._resolve(TAG, t.get("parent"), "parent", diags),
            "parent_id": t.get("parent"),
        }
        for src, dst in (("icon", "icon"), ("color", "color"),
                         ("showIncome", "show_income"), ("showOutcome", "show_outcome")):
            if t.get(src) is not None:
                out[dst] = t[src]
        return self._finish(out, diags, TAG)

    def merchant(self, m: dict) -> dict[str, Any]:
        diags: list[DanglingReference] = []
        out: dict[str, Any] = {"id": m["id"], "title": m.get("title", "")}
        if m.get("tag"):
            out["tags"] = self._tag_names(m["tag"], diags)
        return self._finish(out, diags, MERCHANT)

    def budget(self, b: dict) -> dict[str, Any]:
        diags: list[DanglingReference] = []
        tag_id = b.get("tag")
        if tag_id is None or tag_id == TOTAL_BUDGET_TAG:
            tag = "Total"
        else:
            tag = self._resolve(TAG, tag_id, "tag", diags)
        user = self.snapshot.first_user()
        currency = self._currency(user.get("currency"), "currency", diags) if user else None
        out = {
            "date": b.get("date", ""),
            "tag": tag,
            "tag_id": tag_id,
            "income": b.get("income", 0),
            "income_lock": bool(b.get("incomeLock")),
            "outcome": b.get("outcome", 0),
            "outcome_lock": bool(b.get("outcomeLock")),
            "currency": currency,
        }
        return self._finish(out, diags, "budget")

    def reminder(self, r: dict) -> dict[str, Any]:
        diags: list[DanglingReference] = []
        out: dict[str, Any] = {
            "id": r["id"],
            "type": tx_type(r),
            "income": r.get("income", 0),
            "income_account": self._resolve(ACCOUNT, r.get("incomeAccount"), "incomeAccount", diags),
            "outcome": r.get("outcome", 0),
            "outcome_account": self._resolve(ACCOUNT, r.get("outcomeAccount"), "outcomeAccount", diags),
            "tags": self._tag_names(r.get("tag"), diags),
            "payee": r.get("payee"),
            "comment": r.get("comment"),
            "start_date": r.get("startDate"),
            "end_date": r.get("endDate"),
            "interval": r["interval"].capitalize() if r.get("interval") else None,
            "step": r.get("step"),
            "points": r.get("points"),
            "notify": r.get("notify", True),
        }
        if r.get("merchant"):
            out["merchant"] = self._resolve(MERCHANT, r["merchant"], "merchant", diags)
        return self._finish(out, diags, "reminder")

    @staticmethod
    def instrument(i: dict) -> dict[str, Any]:
        return {
            "id": i["id"],
            "title": i.get("title", ""),
            "short_title": i.get("shortTitle", ""),
            "symbol": i.get("symbol", ""),
            "rate": i.get("rate", 1),
        }


def _matches(value: str | None, q: str, exact: bool) -> bool:
    if not value:
        return False
    value = value.lower()
    return value == q if exact else q in value


def suggest_category(snapshot: Snapshot, payee: str | None, comment: str | None = None) -> dict[str, Any]:
    """Rank tags by how often they were used for this payee before.

    Exact (case-insensitive) payee or merchant-title matches are used when
    there are any, substring matches otherwise. Ties go to the tag used most
    recently, then by title. With no history the matching merchant's own tag
    hints are returned.
    """
    field_name = "payee" if payee else "comment"
    q = (payee or comment or "").strip().lower()
    result: dict[str, Any] = {"payee": payee, "merchant": None, "tags": [], "source": "none"}
    if not q:
        return result

    merchants = snapshot.of(MERCHANT)
    merchant = next((m for m in merchants.values() if _matches(m.get("title"), q, True)), None)
    if merchant:
        result["merchant"] = {"id": merchant["id"], "title": merchant.get("title", "")}

    def hits(exact: bool) -> list[dict]:
        found = []
        for t in snapshot.of(TRANSACTION).values():
            if _matches(t.get(field_name), q, exact):
                found.append(t)
                continue
            if field_name == "payee" and t.get("merchant"):
                m = merchants.get(str(t["merchant"]))
                if m and _matches(m.get("title"), q, exact):
                    found.append(t)
        return found

    history = hits(True) or hits(False)
    counts: Counter[str] = Counter()
    last_used: dict[str, str] = {}
    for t in history:
        for tid in dict.fromkeys(t.get("tag") or []):
            tid = str(tid)
            if snapshot.get(TAG, tid) is None:
                continue
            counts[tid] += 1
            last_used[tid] = max(last_used.get(tid, ""), t.get("date", ""))

    if counts:
        ranked = sorted(counts, key=lambda tid: snapshot.get(TAG, tid).get("title", ""))
        ranked.sort(key=lambda tid: last_used[tid], reverse=True)
        ranked.sort(key=lambda tid: counts[tid], reverse=True)
        result["source"] = "history"
    elif merchant and merchant.get("tag"):
        ranked = [str(tid) for tid in dict.fromkeys(merchant["tag"]) if snapshot.get(TAG, tid) is not None]
        result["source"] = "merchant" if ranked else "none"
    else:
        ranked = []
    result["tags"] = [{"id": tid, "title": snapshot.get(TAG, tid).get("title", "")} for tid in ranked]
    return result
