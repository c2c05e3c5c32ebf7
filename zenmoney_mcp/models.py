"""Entity type tags, record keys and the delta shapes exchanged with ZenMoney.

Records stay as the plain JSON dicts the ``/v8/diff/`` endpoint returns
(camelCase keys). This module only knows how to key them, how to read a
diff payload into a :class:`Delta`, and which fields point at which
other entity types.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidRequest

INSTRUMENT = "instrument"
COMPANY = "company"
COUNTRY = "country"
USER = "user"
ACCOUNT = "account"
TAG = "tag"
MERCHANT = "merchant"
BUDGET = "budget"
REMINDER = "reminder"
REMINDER_MARKER = "reminderMarker"
TRANSACTION = "transaction"

# Order matters for full-sync bootstrap: referenced types come first.
ENTITY_KEYS = [
    INSTRUMENT, COMPANY, COUNTRY, USER,
    ACCOUNT, TAG, MERCHANT,
    BUDGET, REMINDER, REMINDER_MARKER, TRANSACTION,
]
# Keys whose entities have numeric ids
NUMERIC_ID_KEYS = {INSTRUMENT, USER, COUNTRY, COMPANY}

# Budget rows with this tag (or null) are the month total.
TOTAL_BUDGET_TAG = "00000000-0000-0000-0000-000000000000"

# field -> referenced entity type; list-valued fields are marked with []
REFERENCE_FIELDS: dict[str, dict[str, str]] = {
    ACCOUNT: {"instrument": INSTRUMENT, "company": COMPANY},
    TAG: {"parent": TAG},
    MERCHANT: {"tag[]": TAG},
    BUDGET: {"tag": TAG},
    REMINDER: {
        "incomeAccount": ACCOUNT, "outcomeAccount": ACCOUNT,
        "incomeInstrument": INSTRUMENT, "outcomeInstrument": INSTRUMENT,
        "tag[]": TAG, "merchant": MERCHANT,
    },
    REMINDER_MARKER: {
        "reminder": REMINDER,
        "incomeAccount": ACCOUNT, "outcomeAccount": ACCOUNT,
        "incomeInstrument": INSTRUMENT, "outcomeInstrument": INSTRUMENT,
        "tag[]": TAG, "merchant": MERCHANT,
    },
    TRANSACTION: {
        "incomeAccount": ACCOUNT, "outcomeAccount": ACCOUNT,
        "incomeInstrument": INSTRUMENT, "outcomeInstrument": INSTRUMENT,
        "tag[]": TAG, "merchant": MERCHANT,
    },
}

TX_TYPES = ("expense", "income", "transfer")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


def validate_date(val: str, field: str) -> None:
    if not isinstance(val, str) or not _DATE_RE.match(val):
        raise InvalidRequest(f"Invalid date for {field}: {val}. Expected yyyy-MM-dd")


def validate_month(val: str, field: str) -> None:
    if not isinstance(val, str) or not _MONTH_RE.match(val):
        raise InvalidRequest(f"Invalid month for {field}: {val}. Expected yyyy-MM")


def check_entity_type(entity: str) -> str:
    if entity not in ENTITY_KEYS:
        raise ValueError(f"Unknown entity type: {entity}")
    return entity


def budget_key(b: dict) -> str:
    tag = b.get("tag")
    return f"{'null' if tag is None else tag}:{b.get('date', '')}"


def record_key(entity: str, record: dict) -> str:
    """Return the store key of *record*; raises ``ValueError`` if it has none."""
    if entity == BUDGET:
        if not record.get("date"):
            raise ValueError("Budget record without date")
        return budget_key(record)
    rid = record.get("id")
    if rid is None or rid == "":
        raise ValueError(f"{entity} record without id")
    return str(rid)


def dedupe(ids: list | None) -> list | None:
    """Drop repeated IDs, keeping first-seen order."""
    if ids is None:
        return None
    return list(dict.fromkeys(ids))


def normalize_record(entity: str, record: dict) -> dict:
    """Copy *record* with list references de-duplicated."""
    out = dict(record)
    if entity in (TRANSACTION, REMINDER, REMINDER_MARKER, MERCHANT) and out.get("tag") is not None:
        out["tag"] = dedupe(out["tag"])
    return out


def changed_stamp(record: dict) -> int:
    return int(record.get("changed") or 0)


def tx_type(t: dict) -> str:
    is_transfer = (
        t.get("outcomeAccount") != t.get("incomeAccount")
        and (t.get("outcome") or 0) > 0
        and (t.get("income") or 0) > 0
    )
    if is_transfer:
        return "transfer"
    if (t.get("outcome") or 0) > 0 and not t.get("income"):
        return "expense"
    if (t.get("income") or 0) > 0 and not t.get("outcome"):
        return "income"
    return "unknown"


def iter_references(entity: str, record: dict):
    """Yield ``(field, target_type, target_id)`` for every non-null foreign ID."""
    for fname, target in REFERENCE_FIELDS.get(entity, {}).items():
        if fname.endswith("[]"):
            fname = fname[:-2]
            for ref in record.get(fname) or []:
                yield fname, target, str(ref)
            continue
        ref = record.get(fname)
        if ref is None or ref == "":
            continue
        if entity == BUDGET and ref == TOTAL_BUDGET_TAG:
            continue
        yield fname, target, str(ref)


@dataclass(frozen=True)
class Deletion:
    """One entry of the diff ``deletion`` array."""

    entity: str
    id: str
    stamp: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> "Deletion":
        return cls(entity=str(d.get("object", "")), id=str(d.get("id", "")), stamp=int(d.get("stamp") or 0))

    def to_dict(self, user: Any = None) -> dict:
        out: dict[str, Any] = {"id": self.id, "object": self.entity, "stamp": self.stamp}
        if user is not None:
            out["user"] = user
        return out


@dataclass(frozen=True)
class Tombstone:
    """Deletion marker retained in the store in place of a live record."""

    entity: str
    id: str
    stamp: int
    cursor: int
    record: dict | None = None


@dataclass
class Delta:
    """Upserts and deletions for all entity types, plus the cursor they lead to."""

    cursor: int
    upserts: dict[str, list[dict]] = field(default_factory=dict)
    deletions: list[Deletion] = field(default_factory=list)

    @classmethod
    def from_diff(cls, diff: dict) -> "Delta":
        upserts: dict[str, list[dict]] = {}
        for key in ENTITY_KEYS:
            items = diff.get(key)
            if items:
                upserts[key] = list(items)
        deletions = [Deletion.from_dict(d) for d in diff.get("deletion") or []]
        return cls(cursor=int(diff.get("serverTimestamp") or 0), upserts=upserts, deletions=deletions)

    def is_empty(self) -> bool:
        return not self.deletions and not any(self.upserts.values())

    def counts(self) -> dict[str, int]:
        out = {k: len(v) for k, v in self.upserts.items() if v}
        if self.deletions:
            out["deletion"] = len(self.deletions)
        return out

    def find(self, entity: str, key: str) -> dict | None:
        for item in self.upserts.get(entity, []):
            try:
                if record_key(entity, item) == key:
                    return item
            except ValueError:
                continue
        return None
