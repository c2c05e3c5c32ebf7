"""Local ZenMoney mirror with incremental sync, served over MCP."""

from .client import ZenMoneyClient
from .enrich import UNKNOWN, Enricher, suggest_category
from .errors import (
    Conflict,
    DanglingReference,
    InvalidRequest,
    NotFound,
    RemoteRejected,
    StaleCursor,
    TransportError,
    ZenMoneyError,
)
from .index import TransactionFilter
from .models import Delta, Deletion, Tombstone
from .service import ZenMoneyService
from .store import EntityStore, Snapshot
from .sync import BulkItem, SyncEngine, SyncReport, SyncState

__version__ = "0.1.0"

__all__ = [
    "BulkItem",
    "Conflict",
    "DanglingReference",
    "Delta",
    "Deletion",
    "Enricher",
    "EntityStore",
    "InvalidRequest",
    "NotFound",
    "RemoteRejected",
    "Snapshot",
    "StaleCursor",
    "SyncEngine",
    "SyncReport",
    "SyncState",
    "Tombstone",
    "TransactionFilter",
    "TransportError",
    "UNKNOWN",
    "ZenMoneyClient",
    "ZenMoneyError",
    "ZenMoneyService",
    "suggest_category",
]
