"""
Pytest configuration and shared fixtures.

Provides a small ZenMoney dataset in ``/v8/diff/`` shape, a store loaded
from it, and a scripted fake of the remote client.
"""

import copy
from typing import Any

import pytest

from zenmoney_mcp.models import Delta
from zenmoney_mcp.service import ZenMoneyService
from zenmoney_mcp.store import EntityStore
from zenmoney_mcp.sync import SyncEngine

# ==============================================================================
# Sample data
# ==============================================================================


def make_tx(tid, date, outcome=0, income=0, outcome_account="a-cash", income_account=None,
            tag=None, merchant=None, payee=None, changed=10, **extra):
    """Build a transaction record the way /v8/diff/ returns it."""
    tx = {
        "id": tid,
        "user": 100,
        "date": date,
        "changed": changed,
        "created": changed,
        "deleted": False,
        "hold": None,
        "income": income,
        "incomeAccount": income_account or outcome_account,
        "incomeInstrument": 1,
        "outcome": outcome,
        "outcomeAccount": outcome_account,
        "outcomeInstrument": 1,
        "tag": tag,
        "merchant": merchant,
        "payee": payee,
        "originalPayee": None,
        "comment": None,
    }
    tx.update(extra)
    return tx


def sample_diff() -> dict[str, Any]:
    return {
        "serverTimestamp": 1000,
        "instrument": [
            {"id": 1, "title": "Russian Ruble", "shortTitle": "RUB", "symbol": "₽", "rate": 1, "changed": 1},
            {"id": 2, "title": "US Dollar", "shortTitle": "USD", "symbol": "$", "rate": 90.5, "changed": 1},
        ],
        "company": [{"id": 4, "title": "Tinkoff", "changed": 1}],
        "user": [{"id": 100, "login": "demo", "currency": 1, "changed": 1}],
        "account": [
            {"id": "a-cash", "title": "Cash", "type": "cash", "instrument": 1, "balance": 1000,
             "inBalance": True, "archive": False, "changed": 1},
            {"id": "a-card", "title": "Card", "type": "ccard", "instrument": 1, "company": 4,
             "balance": 5000, "creditLimit": 20000, "inBalance": True, "archive": False, "changed": 1},
            {"id": "a-usd", "title": "USD Savings", "type": "deposit", "instrument": 2, "balance": 300,
             "inBalance": False, "archive": True, "savings": True, "changed": 1},
        ],
        "tag": [
            {"id": "t-food", "title": "Food", "parent": None, "showOutcome": True, "changed": 1},
            {"id": "t-groc", "title": "Groceries", "parent": "t-food", "changed": 1},
            {"id": "t-salary", "title": "Salary", "parent": None, "showIncome": True, "changed": 1},
            {"id": "t-cafe", "title": "Cafe", "parent": "t-food", "changed": 1},
        ],
        "merchant": [
            {"id": "m-shop", "title": "Shop", "tag": ["t-groc"], "changed": 1},
            {"id": "m-cafe", "title": "Coffee House", "tag": ["t-cafe"], "changed": 1},
            {"id": "m-bakery", "title": "Bakery", "tag": ["t-food"], "changed": 1},
        ],
        "budget": [
            {"user": 100, "date": "2025-02-01", "tag": None, "outcome": 3000, "outcomeLock": True,
             "income": 0, "changed": 1},
            {"user": 100, "date": "2025-02-01", "tag": "t-food", "outcome": 1000, "income": 0, "changed": 1},
            {"user": 100, "date": "2025-03-01", "tag": "t-food", "outcome": 1200, "income": 0, "changed": 1},
        ],
        "reminder": [
            {"id": "r-rent", "user": 100, "income": 0, "outcome": 500, "incomeAccount": "a-card",
             "outcomeAccount": "a-card", "incomeInstrument": 1, "outcomeInstrument": 1,
             "tag": ["t-food"], "payee": "Landlord", "interval": "month", "step": 1, "points": [0],
             "startDate": "2025-01-01", "endDate": None, "notify": True, "changed": 1},
        ],
        "transaction": [
            make_tx("tx1", "2025-02-01", outcome=100, outcome_account="a-card",
                    tag=["t-groc"], merchant="m-shop", payee="Shop"),
            make_tx("tx2", "2025-02-15", outcome=50, tag=["t-cafe"], payee="Coffee House"),
            make_tx("tx3", "2025-02-15", income=5000, outcome_account="a-card",
                    tag=["t-salary"], payee="Employer"),
            make_tx("tx4", "2025-02-28", outcome=200, income=200, outcome_account="a-card",
                    income_account="a-cash"),
            make_tx("tx5", "2025-03-01", outcome=30, tag=["t-groc"], payee="Shop"),
            make_tx("tx6", "2025-01-20", outcome=70, outcome_account="a-card",
                    tag=["t-food"], payee="Shop"),
        ],
    }


def records_of(snapshot) -> dict[str, dict[str, dict]]:
    return {k: dict(v) for k, v in snapshot.records.items()}


# ==============================================================================
# Fake remote
# ==============================================================================

ECHO = "echo"


class FakeClient:
    """Scripted stand-in for ZenMoneyClient.

    ``deltas`` and ``push_results`` are queues; an exception in either is
    raised instead of returned. A push with no scripted result echoes the
    changes back at ``cursor + 1``.
    """

    def __init__(self, full: dict | Exception | None = None) -> None:
        self.full = sample_diff() if full is None else full
        self.deltas: list = []
        self.push_results: list = []
        self.pushed: list[dict] = []
        self.calls: list = []
        self.suggestion: dict = {}

    async def full_fetch(self) -> Delta:
        self.calls.append("full")
        if isinstance(self.full, BaseException):
            raise self.full
        return Delta.from_diff(copy.deepcopy(self.full))

    async def delta_fetch(self, cursor: int) -> Delta:
        self.calls.append(("delta", cursor))
        result = self.deltas.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def push(self, changes: dict, cursor: int) -> Delta:
        self.calls.append(("push", cursor))
        result = self.push_results.pop(0) if self.push_results else ECHO
        if isinstance(result, BaseException):
            raise result
        self.pushed.append(copy.deepcopy(changes))
        if result == ECHO:
            return Delta.from_diff({"serverTimestamp": cursor + 1, **copy.deepcopy(changes)})
        return result

    async def suggest(self, payee=None, comment=None) -> dict:
        self.calls.append(("suggest", payee, comment))
        return self.suggestion


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def diff():
    return sample_diff()


@pytest.fixture
def store():
    """Store loaded with the sample dataset at cursor 1000."""
    s = EntityStore()
    s.replace(Delta.from_diff(sample_diff()))
    return s


@pytest.fixture
def snapshot(store):
    return store.snapshot()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def engine(store, client):
    return SyncEngine(store, client)


@pytest.fixture
def service(engine):
    return ZenMoneyService(engine)
