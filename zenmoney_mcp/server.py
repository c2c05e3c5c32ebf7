"""MCP tool dispatcher: maps tool calls onto :class:`ZenMoneyService`."""

import inspect
import json
from typing import Any, Awaitable, Callable

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from .errors import ZenMoneyError
from .service import ZenMoneyService

INSTRUCTIONS = (
    "ZenMoney personal finance MCP server. "
    "Use sync/full_sync to fetch data, then query accounts, "
    "transactions, tags, budgets, and more."
)

Tool = Callable[..., Awaitable[str]]


def to_json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)


async def _run(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> str:
    try:
        result = fn(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
    except ZenMoneyError as e:
        raise ToolError(to_json_text(e.to_dict())) from e
    return to_json_text(result)


def build_tools(service: ZenMoneyService) -> dict[str, Tool]:
    """Return tool name -> handler. Handler docstrings are the tool descriptions."""

    # -- Sync tools --

    async def sync() -> str:
        """Perform an incremental sync with the ZenMoney server, fetching only changes since the last sync"""
        return await _run(service.sync)

    async def full_sync() -> str:
        """Perform a full sync, clearing all local data and re-downloading everything from the ZenMoney server"""
        return await _run(service.full_sync)

    async def sync_status() -> str:
        """Show sync state, cursor, entity counts and the last sync error"""
        return await _run(service.sync_status)

    # -- Read tools --

    async def list_accounts(active_only: bool = False) -> str:
        """List financial accounts. Set active_only=true to exclude archived accounts"""
        return await _run(service.list_accounts, active_only=active_only)

    async def list_transactions(
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
    ) -> str:
        """List transactions with optional filters: date range (YYYY-MM-DD), account, tag, payee, merchant, amount range, type (expense|income|transfer), uncategorized, sort (asc|desc) and result limit"""
        return await _run(
            service.list_transactions,
            date_from=date_from, date_to=date_to, account_id=account_id, tag_id=tag_id,
            payee=payee, merchant_id=merchant_id, min_amount=min_amount, max_amount=max_amount,
            transaction_type=transaction_type, uncategorized=uncategorized, sort=sort,
            limit=limit, offset=offset,
        )

    async def get_transaction(id: str) -> str:
        """Get one transaction by its ID"""
        return await _run(service.get_transaction, id)

    async def list_tags() -> str:
        """List all transaction category tags"""
        return await _run(service.list_tags)

    async def list_merchants(search: str | None = None, limit: int | None = None) -> str:
        """List merchants/payees, optionally filtered by a title substring"""
        return await _run(service.list_merchants, search=search, limit=limit)

    async def list_budgets(month: str | None = None) -> str:
        """List monthly budgets. Optionally filter by month (format: YYYY-MM)"""
        return await _run(service.list_budgets, month=month)

    async def list_reminders(active_only: bool = False) -> str:
        """List all recurring transaction reminders"""
        return await _run(service.list_reminders, active_only=active_only)

    async def list_instruments(used_only: bool = False) -> str:
        """List all currency instruments with their exchange rates"""
        return await _run(service.list_instruments, used_only=used_only)

    async def get_instrument(id: int) -> str:
        """Get a specific currency instrument by its numeric ID"""
        return await _run(service.get_instrument, id)

    # -- Search tools --

    async def find_account(title: str) -> str:
        """Find an account by title (case-insensitive search)"""
        found = service.find_account(title)
        if found is None:
            return f"No account found with title '{title}'"
        return to_json_text(found)

    async def find_tag(title: str) -> str:
        """Find a category tag by title (case-insensitive search)"""
        found = service.find_tag(title)
        if found is None:
            return f"No tag found with title '{title}'"
        return to_json_text(found)

    async def suggest_category(payee: str | None = None, comment: str | None = None) -> str:
        """Suggest a category tag for a transaction based on payee name and/or comment"""
        return await _run(service.suggest_category, payee=payee, comment=comment)

    # -- Write tools --

    async def create_transaction(
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
    ) -> str:
        """Create a new financial transaction. Requires date, accounts and amounts; instruments default to the account currency. Optionally specify tags, payee, and comment"""
        return await _run(
            service.create_transaction,
            date=date, outcome_account=outcome_account, outcome=outcome,
            income_account=income_account, income=income,
            outcome_instrument=outcome_instrument, income_instrument=income_instrument,
            tag_ids=tag_ids, merchant_id=merchant_id, payee=payee, comment=comment,
        )

    async def update_transaction(
        id: str,
        date: str | None = None,
        income: float | None = None,
        outcome: float | None = None,
        income_account: str | None = None,
        outcome_account: str | None = None,
        income_instrument: int | None = None,
        outcome_instrument: int | None = None,
        tag_ids: list[str] | None = None,
        merchant_id: str | None = None,
        payee: str | None = None,
        comment: str | None = None,
    ) -> str:
        """Update an existing transaction. Only pass fields to change. A changed account brings its currency along unless an instrument is given"""
        fields = {
            "date": date, "income": income, "outcome": outcome,
            "income_account": income_account, "outcome_account": outcome_account,
            "income_instrument": income_instrument, "outcome_instrument": outcome_instrument,
            "tag_ids": tag_ids, "merchant_id": merchant_id, "payee": payee, "comment": comment,
        }
        return await _run(service.update_transaction, id,
                          **{k: v for k, v in fields.items() if v is not None})

    async def delete_transaction(id: str) -> str:
        """Delete a transaction by its ID. Returns the deleted transaction"""
        return await _run(service.delete_transaction, id)

    async def bulk_operations(operations: list[dict[str, Any]]) -> str:
        """Run several create/update/delete operations. Each item is {"action": "create"|"update"|"delete", ...fields}; every item succeeds or fails on its own"""
        return await _run(service.bulk_operations, operations)

    async def prepare_bulk_operations(operations: list[dict[str, Any]]) -> str:
        """Validate bulk operations and preview them without sending. Pass the returned preparation_id to execute_bulk_operations"""
        return await _run(service.prepare_bulk_operations, operations)

    async def execute_bulk_operations(preparation_id: str) -> str:
        """Execute operations staged by prepare_bulk_operations. Items whose transaction changed since preparation fail with a Conflict"""
        return await _run(service.execute_bulk_operations, preparation_id)

    async def discard_bulk_operations(preparation_id: str) -> str:
        """Drop operations staged by prepare_bulk_operations without sending them"""
        return await _run(service.discard_bulk_operations, preparation_id)

    tools = [
        sync, full_sync, sync_status,
        list_accounts, list_transactions, get_transaction, list_tags, list_merchants,
        list_budgets, list_reminders, list_instruments, get_instrument,
        find_account, find_tag, suggest_category,
        create_transaction, update_transaction, delete_transaction,
        bulk_operations, prepare_bulk_operations, execute_bulk_operations, discard_bulk_operations,
    ]
    return {fn.__name__: fn for fn in tools}


def describe_tool(name: str, fn: Tool) -> dict[str, Any]:
    params: dict[str, str] = {}
    for pname, p in inspect.signature(fn).parameters.items():
        hint = p.annotation if isinstance(p.annotation, str) else getattr(p.annotation, "__name__", str(p.annotation))
        if p.default is inspect.Parameter.empty:
            params[pname] = f"{hint} (required)"
        else:
            params[pname] = f"{hint} (default {p.default!r})"
    return {"name": name, "description": inspect.getdoc(fn) or "", "parameters": params}


def create_server(service: ZenMoneyService) -> FastMCP:
    mcp = FastMCP("zenmoney", instructions=INSTRUCTIONS)
    for name, fn in build_tools(service).items():
        mcp.add_tool(fn, name=name, description=inspect.getdoc(fn))
    return mcp
