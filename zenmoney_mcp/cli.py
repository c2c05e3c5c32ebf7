"""ZenMoney MCP entry point.

Usage:
  zenmoney-mcp                      # serve MCP over stdio (default)
  zenmoney-mcp --list
  zenmoney-mcp --describe list_transactions
  zenmoney-mcp --call '{"tool":"list_accounts","arguments":{}}'
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from mcp.server.fastmcp.exceptions import ToolError

from .client import ZenMoneyClient
from .config import Settings, load_settings
from .errors import ZenMoneyError
from .server import build_tools, create_server, describe_tool
from .service import ZenMoneyService
from .storage import FileStorage
from .store import EntityStore
from .sync import SyncEngine

logger = logging.getLogger("zenmoney_mcp")


def configure_logging(level: str) -> None:
    # stdout carries the MCP stdio transport
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def bootstrap(settings: Settings, client: ZenMoneyClient) -> ZenMoneyService:
    """Restore the cached store if any, then sync once before serving."""
    store = EntityStore()
    storage = FileStorage(settings.cache_path)
    restored = storage.restore(store)
    engine = SyncEngine(store, client, storage)
    if restored and store.cursor:
        logger.info("performing incremental sync from cursor %d", store.cursor)
        await engine.sync()
    else:
        logger.info("performing initial full sync")
        await engine.full_sync()
    return ZenMoneyService(engine)


async def _serve(settings: Settings) -> None:
    async with ZenMoneyClient(settings.token, settings.base_url, settings.timeout) as client:
        service = await bootstrap(settings, client)
        logger.info("MCP server running on stdio")
        await create_server(service).run_stdio_async()


async def _run_tool(settings: Settings, name: str, args: dict) -> str:
    async with ZenMoneyClient(settings.token, settings.base_url, settings.timeout) as client:
        service = await bootstrap(settings, client)
        handler = build_tools(service)[name]
        return await handler(**args)


def _offline_tools():
    engine = SyncEngine(EntityStore(), ZenMoneyClient(""))
    return build_tools(ZenMoneyService(engine, remote_suggest=False))


def _fail(message: str) -> None:
    print(json.dumps({"error": message}, ensure_ascii=False), file=sys.stderr)
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="ZenMoney MCP server and CLI executor")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--list", action="store_true", help="List all tools")
    group.add_argument("--describe", type=str, metavar="TOOL", help="Describe a tool")
    group.add_argument("--call", type=str, metavar="JSON", help='Call: {"tool":"name","arguments":{...}}')
    group.add_argument("--serve", action="store_true", help="Serve MCP over stdio (default)")
    parser.add_argument("--config", type=str, default=None, help="Path to config.json")
    parsed = parser.parse_args(argv)

    settings = load_settings(parsed.config)
    configure_logging(settings.log_level)

    if parsed.list:
        tools = [{"name": n, "description": describe_tool(n, fn)["description"]}
                 for n, fn in _offline_tools().items()]
        print(json.dumps(tools, ensure_ascii=False, indent=2))
        return

    if parsed.describe:
        fn = _offline_tools().get(parsed.describe)
        if fn is None:
            _fail(f"Unknown tool: {parsed.describe}")
        print(json.dumps(describe_tool(parsed.describe, fn), ensure_ascii=False, indent=2))
        return

    if not settings.token:
        _fail("ZENMONEY_TOKEN not set. Set env var or add to config.json")

    if parsed.call:
        try:
            payload = json.loads(parsed.call)
        except json.JSONDecodeError as e:
            _fail(f"Invalid JSON: {e}")
        if not isinstance(payload, dict):
            _fail("Invalid JSON: expected an object")
        tool_name = payload.get("tool", "")
        arguments = payload.get("arguments", {})
        if not isinstance(arguments, dict):
            _fail("Invalid JSON: arguments must be an object")
        if tool_name not in _offline_tools():
            _fail(f"Unknown tool: {tool_name}. Use --list to see available tools.")
        try:
            print(asyncio.run(_run_tool(settings, tool_name, arguments)))
        except ToolError as e:
            print(str(e), file=sys.stderr)
            sys.exit(1)
        except (ZenMoneyError, TypeError) as e:
            _fail(str(e))
        return

    try:
        asyncio.run(_serve(settings))
    except ZenMoneyError as e:
        logger.error("fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
