"""Stdio MCP server for uks.

Tools:
    search_knowledge(query, mode?, limit?, context?)    → matching entities + relations (JSON)
    read_graph(context?)                                → full graph (JSON)
    add_entity(name, entityType?, observations?, context?) → entity id
    add_relation(from, to, relationType, context?)      → "created" | "exists"
    undo(context?)                                      → restored snapshot name

Protocol: JSON-RPC 2.0 over stdin/stdout (Model Context Protocol).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING, Any

from uks.errors import UksError, ValidationError
from uks.validation import DEFAULT_CONTEXT, require_enum

if TYPE_CHECKING:
    from pathlib import Path

    from uks.container import Container

_VERSION = "0.1.0"

logger = logging.getLogger("uks.mcp")

_CONTEXT_PROP = {"type": "string", "description": "Graph context (default: default)"}


def _tool_defs() -> list[dict[str, Any]]:
    return [
        {
            "name": "search_knowledge",
            "description": (
                "Search the knowledge graph. keyword: substring match on names and "
                "observations, with touching relations. semantic: embedding similarity."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "mode": {"type": "string", "enum": ["keyword", "semantic"], "default": "keyword"},
                    "limit": {"type": "integer", "default": 5, "description": "Semantic mode only"},
                    "context": _CONTEXT_PROP,
                },
                "required": ["query"],
            },
        },
        {
            "name": "read_graph",
            "description": "Return every entity and relation in a context.",
            "inputSchema": {
                "type": "object",
                "properties": {"context": _CONTEXT_PROP},
            },
        },
        {
            "name": "add_entity",
            "description": "Create an entity, or merge observations into the entity with the same name.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Name of the entity", "maxLength": 500},
                    "entityType": {"type": "string", "default": "Concept"},
                    "observations": {"type": "array", "items": {"type": "string"}},
                    "context": _CONTEXT_PROP,
                },
                "required": ["name"],
            },
        },
        {
            "name": "add_relation",
            "description": "Link two existing entities (by name or id) with a typed, directed relation.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                    "relationType": {"type": "string"},
                    "context": _CONTEXT_PROP,
                },
                "required": ["from", "to", "relationType"],
            },
        },
        {
            "name": "undo",
            "description": "Roll the context back to the snapshot taken before its last write.",
            "inputSchema": {
                "type": "object",
                "properties": {"context": _CONTEXT_PROP},
            },
        },
    ]


class UksServer:
    def __init__(self, container: Container) -> None:
        self._c = container

    def _call_search_knowledge(self, args: dict[str, Any]) -> str:
        mode = require_enum(args.get("mode", "keyword"), ["keyword", "semantic"], "mode")
        context = args.get("context", DEFAULT_CONTEXT)
        if mode == "semantic":
            hits = self._c.vectors.search(args.get("query"), top_k=int(args.get("limit", 5)))
            return json.dumps({"results": [h.to_dict() for h in hits], "metadata": {"mode": "semantic"}})
        result = self._c.store.search(args.get("query"), context)
        return json.dumps(result.to_dict())

    def _call_read_graph(self, args: dict[str, Any]) -> str:
        graph = self._c.store.get_all(args.get("context", DEFAULT_CONTEXT))
        return json.dumps(graph.to_dict())

    def _call_add_entity(self, args: dict[str, Any]) -> str:
        return self._c.store.add_entity(
            args.get("name"),
            args.get("entityType"),
            args.get("observations"),
            context=args.get("context", DEFAULT_CONTEXT),
        )

    def _call_add_relation(self, args: dict[str, Any]) -> str:
        created = self._c.store.add_relation(
            args.get("from"),
            args.get("to"),
            args.get("relationType"),
            context=args.get("context", DEFAULT_CONTEXT),
        )
        return "created" if created else "exists"

    def _call_undo(self, args: dict[str, Any]) -> str:
        return self._c.store.undo(args.get("context", DEFAULT_CONTEXT))

    def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        dispatch = {
            "search_knowledge": self._call_search_knowledge,
            "read_graph": self._call_read_graph,
            "add_entity": self._call_add_entity,
            "add_relation": self._call_add_relation,
            "undo": self._call_undo,
        }
        if name not in dispatch:
            msg = f"Unknown tool: {name}"
            raise ValidationError(msg, {"tool": name})
        return dispatch[name](arguments)

    def handle(self, msg: dict[str, Any]) -> dict[str, Any] | None:
        """Answer one JSON-RPC message. Notifications get no response."""
        method = msg.get("method", "")
        msg_id = msg.get("id")

        if method == "initialize":
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "uks", "version": _VERSION},
                },
            }
        if method == "notifications/initialized":
            return None
        if method == "tools/list":
            return {"jsonrpc": "2.0", "id": msg_id, "result": {"tools": _tool_defs()}}
        if method == "tools/call":
            params = msg.get("params", {})
            tool_name = params.get("name", "")
            try:
                text = self.call_tool(tool_name, params.get("arguments", {}))
                is_error = False
            except UksError as exc:
                text = json.dumps(exc.to_dict())
                is_error = True
            except Exception as exc:
                logger.exception("tool %s failed", tool_name)
                text = f"Error: {exc}"
                is_error = True
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {"content": [{"type": "text", "text": text}], "isError": is_error},
            }
        if msg_id is not None:
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        return None


async def _run_server(server: UksServer) -> None:
    reader = asyncio.StreamReader()
    loop = asyncio.get_running_loop()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

    writer_transport, _ = await loop.connect_write_pipe(asyncio.BaseProtocol, sys.stdout.buffer)

    while True:
        try:
            line = await reader.readline()
        except (asyncio.IncompleteReadError, EOFError):
            break
        if not line:
            break
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            continue
        response = server.handle(msg)
        if response is not None:
            writer_transport.write((json.dumps(response) + "\n").encode())


def run_server(config_root: Path | None = None) -> None:
    """Entry point for `uks serve`."""
    from uks.config import load_config
    from uks.container import create_container

    server = UksServer(create_container(load_config(config_root)))
    asyncio.run(_run_server(server))
