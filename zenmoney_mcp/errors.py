"""Error taxonomy shared by the store, sync engine and façade."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ZenMoneyError(Exception):
    """Base class for every error raised by zenmoney_mcp.

    ``operation`` is set on errors raised while sending a write, so callers
    always see what was attempted.
    """

    operation: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": type(self).__name__, "message": str(self)}
        if self.operation is not None:
            out["operation"] = self.operation
        return out


class StaleCursor(ZenMoneyError):
    """The server cannot serve a delta for the cursor we sent."""

    def __init__(self, cursor: int, message: str | None = None) -> None:
        self.cursor = cursor
        super().__init__(message or f"Server does not recognise sync cursor {cursor}")


class TransportError(ZenMoneyError):
    """Network, auth or server failure talking to ZenMoney."""

    KINDS = ("network", "auth", "server", "timeout", "cancelled")

    def __init__(self, message: str, kind: str = "network", status_code: int | None = None) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown transport error kind: {kind}")
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["kind"] = self.kind
        if self.status_code is not None:
            out["status_code"] = self.status_code
        return out


class RemoteRejected(ZenMoneyError):
    """The server refused a write."""

    def __init__(self, reason: str, operation: dict[str, Any] | None = None,
                 status_code: int | None = None) -> None:
        self.reason = reason
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"Server rejected write: {reason}")

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["reason"] = self.reason
        return out


class Conflict(ZenMoneyError):
    """The record changed since the write was built, or the store kept a newer version."""

    def __init__(self, entity: str, entity_id: Any, message: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message or f"{entity} {entity_id} changed since the operation was prepared")

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update({"entity": self.entity, "id": self.entity_id})
        return out


class NotFound(ZenMoneyError):
    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update({"entity": self.entity, "id": self.entity_id})
        return out


class InvalidRequest(ZenMoneyError, ValueError):
    """A request reached the core in a shape it cannot act on."""


@dataclass(frozen=True)
class DanglingReference:
    """A foreign ID that does not resolve in the store. Reported, never raised."""

    field: str
    entity: str
    id: str
    owner: str | None = None
    owner_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"field": self.field, "entity": self.entity, "id": self.id}
        if self.owner:
            out["owner"] = self.owner
            out["owner_id"] = self.owner_id
        return out
