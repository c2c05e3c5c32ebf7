"""Secondary lookup structures derived from a store snapshot.

An :class:`StoreIndex` is immutable once published. ``updated()`` builds
the next one from the previous index plus the keys a batch touched, so
queries never pay for a rebuild.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .errors import InvalidRequest
from .models import ACCOUNT, TAG, TRANSACTION, TX_TYPES, tx_type, validate_date

_EMPTY: frozenset = frozenset()
# Sorts after any real transaction ID.
_MAX_ID = "\U0010ffff"


@dataclass(frozen=True)
class TransactionFilter:
    """Composite filter for :meth:`StoreIndex.query`. All criteria are ANDed."""

    date_from: str | None = None
    date_to: str | None = None
    account_id: str | None = None
    tag_id: str | None = None
    payee: str | None = None
    merchant_id: str | None = None
    min_amount: float | None = None
    max_amount: float | None = None
    transaction_type: str | None = None
    uncategorized: bool = False
    sort: str = "desc"
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        if self.date_from:
            validate_date(self.date_from, "date_from")
        if self.date_to:
            validate_date(self.date_to, "date_to")
        if self.sort not in ("asc", "desc"):
            raise InvalidRequest(f"sort must be 'asc' or 'desc', got {self.sort!r}")
        if self.transaction_type is not None and self.transaction_type not in TX_TYPES:
            raise InvalidRequest(f"transaction_type must be one of {', '.join(TX_TYPES)}")
        if self.limit is not None and self.limit < 0:
            raise InvalidRequest("limit must be non-negative")
        if self.offset < 0:
            raise InvalidRequest("offset must be non-negative")


class _Buckets:
    """Copy-on-write mapping of bucket -> frozenset of transaction IDs."""

    def __init__(self, data: dict[str, frozenset] | None = None) -> None:
        self.data: dict[str, frozenset] = dict(data) if data else {}

    def add(self, bucket: str | None, tid: str) -> None:
        if bucket is None:
            return
        self.data[bucket] = self.data.get(bucket, _EMPTY) | {tid}

    def discard(self, bucket: str | None, tid: str) -> None:
        if bucket is None or bucket not in self.data:
            return
        rest = self.data[bucket] - {tid}
        if rest:
            self.data[bucket] = rest
        else:
            del self.data[bucket]

    def get(self, bucket: str) -> frozenset:
        return self.data.get(bucket, _EMPTY)


def _tx_accounts(t: dict) -> set[str]:
    return {str(a) for a in (t.get("incomeAccount"), t.get("outcomeAccount")) if a}


def _tx_payee(t: dict) -> str | None:
    payee = t.get("payee")
    return payee.lower() if payee else None


class StoreIndex:
    def __init__(self) -> None:
        self.account_titles: list[tuple[str, str]] = []
        self.tag_titles: list[tuple[str, str]] = []
        self.by_date: list[tuple[str, str]] = []
        self.by_account = _Buckets()
        self.by_tag = _Buckets()
        self.by_merchant = _Buckets()
        self.by_type = _Buckets()
        self.by_payee = _Buckets()
        self.uncategorized: frozenset = _EMPTY

    # -- construction ---------------------------------------------------------

    @classmethod
    def build(cls, records: Mapping[str, Mapping[str, dict]]) -> "StoreIndex":
        changed = {k: set(records.get(k, {})) for k in (ACCOUNT, TAG, TRANSACTION)}
        return cls().updated({}, records, changed)

    def updated(
        self,
        before: Mapping[str, Mapping[str, dict]],
        after: Mapping[str, Mapping[str, dict]],
        changed: Mapping[str, Iterable[str]],
    ) -> "StoreIndex":
        """Return a new index reflecting *changed* keys going from *before* to *after*."""
        new = StoreIndex()
        new.account_titles = self._retitle(self.account_titles, before.get(ACCOUNT, {}),
                                           after.get(ACCOUNT, {}), changed.get(ACCOUNT, ()))
        new.tag_titles = self._retitle(self.tag_titles, before.get(TAG, {}),
                                       after.get(TAG, {}), changed.get(TAG, ()))
        tx_changed = list(changed.get(TRANSACTION, ()))
        if not tx_changed:
            new.by_date = self.by_date
            new.by_account, new.by_tag = self.by_account, self.by_tag
            new.by_merchant, new.by_type = self.by_merchant, self.by_type
            new.by_payee, new.uncategorized = self.by_payee, self.uncategorized
            return new

        new.by_date = list(self.by_date)
        new.by_account = _Buckets(self.by_account.data)
        new.by_tag = _Buckets(self.by_tag.data)
        new.by_merchant = _Buckets(self.by_merchant.data)
        new.by_type = _Buckets(self.by_type.data)
        new.by_payee = _Buckets(self.by_payee.data)
        uncategorized = set(self.uncategorized)
        old_tx = before.get(TRANSACTION, {})
        new_tx = after.get(TRANSACTION, {})
        for tid in tx_changed:
            old = old_tx.get(tid)
            if old is not None:
                new._remove_tx(tid, old, uncategorized)
            cur = new_tx.get(tid)
            if cur is not None:
                new._add_tx(tid, cur, uncategorized)
        new.uncategorized = frozenset(uncategorized)
        return new

    @staticmethod
    def _retitle(entries, before, after, changed) -> list[tuple[str, str]]:
        changed = list(changed)
        if not changed:
            return entries
        out = list(entries)
        for key in changed:
            old = before.get(key)
            if old is not None:
                item = ((old.get("title") or "").lower(), key)
                i = bisect.bisect_left(out, item)
                if i < len(out) and out[i] == item:
                    del out[i]
            cur = after.get(key)
            if cur is not None:
                bisect.insort(out, ((cur.get("title") or "").lower(), key))
        return out

    def _remove_tx(self, tid: str, t: dict, uncategorized: set) -> None:
        item = (t.get("date", ""), tid)
        i = bisect.bisect_left(self.by_date, item)
        if i < len(self.by_date) and self.by_date[i] == item:
            del self.by_date[i]
        for acct in _tx_accounts(t):
            self.by_account.discard(acct, tid)
        for tag in t.get("tag") or []:
            self.by_tag.discard(str(tag), tid)
        if t.get("merchant"):
            self.by_merchant.discard(str(t["merchant"]), tid)
        self.by_type.discard(tx_type(t), tid)
        self.by_payee.discard(_tx_payee(t), tid)
        uncategorized.discard(tid)

    def _add_tx(self, tid: str, t: dict, uncategorized: set) -> None:
        bisect.insort(self.by_date, (t.get("date", ""), tid))
        for acct in _tx_accounts(t):
            self.by_account.add(acct, tid)
        tags = t.get("tag") or []
        for tag in tags:
            self.by_tag.add(str(tag), tid)
        if not tags:
            uncategorized.add(tid)
        if t.get("merchant"):
            self.by_merchant.add(str(t["merchant"]), tid)
        self.by_type.add(tx_type(t), tid)
        self.by_payee.add(_tx_payee(t), tid)

    # -- lookups --------------------------------------------------------------

    def find_account(self, title: str) -> str | None:
        return self._find_title(self.account_titles, title)

    def find_tag(self, title: str) -> str | None:
        return self._find_title(self.tag_titles, title)

    @staticmethod
    def _find_title(entries: list[tuple[str, str]], title: str) -> str | None:
        """Exact (case-insensitive) match first, then prefix, then substring."""
        q = title.strip().lower()
        if not q:
            return None
        i = bisect.bisect_left(entries, (q, ""))
        if i < len(entries) and entries[i][0] == q:
            return entries[i][1]
        if i < len(entries) and entries[i][0].startswith(q):
            return entries[i][1]
        for t, key in entries:
            if q in t:
                return key
        return None

    def query(self, transactions: Mapping[str, dict], f: TransactionFilter) -> list[str]:
        """Return matching transaction IDs ordered by date, ties by ID ascending."""
        candidates: set[str] | None = None

        def narrow(ids: Iterable[str]) -> None:
            nonlocal candidates
            candidates = set(ids) if candidates is None else candidates.intersection(ids)

        if f.account_id:
            narrow(self.by_account.get(f.account_id))
        if f.tag_id:
            narrow(self.by_tag.get(f.tag_id))
        if f.merchant_id:
            narrow(self.by_merchant.get(f.merchant_id))
        if f.transaction_type:
            narrow(self.by_type.get(f.transaction_type))
        if f.uncategorized:
            narrow(self.uncategorized)
        if f.payee:
            q = f.payee.lower()
            hits: set[str] = set()
            for payee, ids in self.by_payee.data.items():
                if q in payee:
                    hits.update(ids)
            narrow(hits)

        lo = bisect.bisect_left(self.by_date, (f.date_from, "")) if f.date_from else 0
        hi = bisect.bisect_right(self.by_date, (f.date_to, _MAX_ID)) if f.date_to else len(self.by_date)
        rows = [
            row for row in self.by_date[lo:hi]
            if (candidates is None or row[1] in candidates)
            and _amount_ok(transactions.get(row[1]), f.min_amount, f.max_amount)
        ]
        if f.sort == "desc":
            rows.sort(key=lambda r: r[1])
            rows.sort(key=lambda r: r[0], reverse=True)
        ids = [tid for _, tid in rows]
        if f.offset:
            ids = ids[f.offset:]
        if f.limit is not None:
            ids = ids[:f.limit]
        return ids

    def stats(self) -> dict[str, Any]:
        return {
            "accounts": len(self.account_titles),
            "tags": len(self.tag_titles),
            "transactions": len(self.by_date),
            "uncategorized": len(self.uncategorized),
        }


def _amount_ok(t: dict | None, min_amount: float | None, max_amount: float | None) -> bool:
    if t is None:
        return False
    income = t.get("income") or 0
    outcome = t.get("outcome") or 0
    if min_amount is not None and not (income >= min_amount or outcome >= min_amount):
        return False
    if max_amount is not None and not (income <= max_amount and outcome <= max_amount):
        return False
    return True
