"""MCP (Model Context Protocol) server for sidekick.

Exposes the editor operations (inline completion, explain, refactor, tests,
fixes, model management) as MCP tools over stdio, so any MCP-capable editor
can use the local model.

Requires the optional ``mcp`` package: ``pip install 'sidekick[mcp]'``
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sidekick.completion.policy import TriggerKind
from sidekick.completion.request import CursorPosition
from sidekick.config import McpConfig, SidekickConfig
from sidekick.errors import ModelNotFoundError
from sidekick.service import Sidekick

logger = logging.getLogger(__name__)

# All mcp imports are deferred so this module imports without the ``mcp``
# package; ``create_mcp_server`` and ``run_mcp_server`` raise ImportError
# at call time if it is missing.

_CODE = {"type": "string", "description": "The source code to work on"}
_CONTEXT = {"type": "string", "description": "Optional surrounding code for reference"}
_LANGUAGE = {"type": "string", "description": "Language id, e.g. 'python' or 'typescript'"}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "complete",
        "description": "Inline code completion at a cursor position (single line, local model).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Full document text"},
                "line": {"type": "integer", "description": "Zero-based cursor line"},
                "character": {"type": "integer", "description": "Zero-based cursor column"},
                "language_id": _LANGUAGE,
                "automatic": {
                    "type": "boolean",
                    "description": "True when triggered by a typing pause rather than on request",
                },
            },
            "required": ["text", "line", "character"],
        },
    },
    {
        "name": "explain",
        "description": "Explain what a piece of code does.",
        "inputSchema": {
            "type": "object",
            "properties": {"code": _CODE, "context": _CONTEXT, "language_id": _LANGUAGE},
            "required": ["code"],
        },
    },
    {
        "name": "refactor",
        "description": "Rewrite code according to an instruction. Returns code only.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "code": _CODE,
                "instruction": {"type": "string", "description": "What to change"},
                "context": _CONTEXT,
                "language_id": _LANGUAGE,
            },
            "required": ["code", "instruction"],
        },
    },
    {
        "name": "generate_tests",
        "description": "Generate unit tests for code using the language's usual framework.",
        "inputSchema": {
            "type": "object",
            "properties": {"code": _CODE, "context": _CONTEXT, "language_id": _LANGUAGE},
            "required": ["code"],
        },
    },
    {
        "name": "fix_error",
        "description": "Fix a reported error in code. Returns the corrected code only.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "code": _CODE,
                "error_message": {"type": "string", "description": "Compiler or linter message"},
                "line": {"type": "integer", "description": "1-based line of the error"},
                "context": _CONTEXT,
                "language_id": _LANGUAGE,
            },
            "required": ["code", "error_message"],
        },
    },
    {
        "name": "status",
        "description": "Backend readiness, active model and local usage counters.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "switch_model",
        "description": "Switch to another local model file (clears the completion cache).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "model": {"type": "string", "description": "Model file name or path"},
                "persist": {"type": "boolean", "description": "Save as the default model"},
            },
            "required": ["model"],
        },
    },
    {
        "name": "list_models",
        "description": "List model files available in the local model directory.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _build_tool_list() -> list:
    """Build the list of ``mcp.types.Tool`` objects."""
    from mcp.types import Tool

    return [
        Tool(name=d["name"], description=d["description"], inputSchema=d["inputSchema"])
        for d in TOOL_DEFINITIONS
    ]


async def _run_tool(sidekick: Sidekick, name: str, arguments: dict[str, Any]) -> str:
    """Dispatch one tool call and return its text result."""
    if name == "complete":
        trigger = TriggerKind.AUTOMATIC if arguments.get("automatic") else TriggerKind.EXPLICIT
        result = await sidekick.complete(
            arguments["text"],
            CursorPosition(int(arguments["line"]), int(arguments["character"])),
            trigger=trigger,
            language_id=arguments.get("language_id"),
        )
        if result is None:
            return json.dumps({"text": "", "source": "skipped", "latency_ms": 0.0})
        return json.dumps({
            "text": result.text,
            "source": result.source.value,
            "latency_ms": round(result.latency_ms, 1),
        })

    if name == "explain":
        return await sidekick.explain(
            arguments["code"], arguments.get("context", ""), arguments.get("language_id"),
        )

    if name == "refactor":
        return await sidekick.refactor(
            arguments["code"],
            arguments["instruction"],
            arguments.get("context", ""),
            arguments.get("language_id"),
        )

    if name == "generate_tests":
        return await sidekick.generate_tests(
            arguments["code"], arguments.get("context", ""), arguments.get("language_id"),
        )

    if name == "fix_error":
        line = arguments.get("line")
        return await sidekick.fix_error(
            arguments["code"],
            arguments["error_message"],
            int(line) if line is not None else None,
            arguments.get("context", ""),
            arguments.get("language_id"),
        )

    if name == "status":
        return json.dumps(sidekick.status().to_dict())

    if name == "switch_model":
        try:
            profile = await sidekick.switch_model(
                arguments["model"], persist=bool(arguments.get("persist", False)),
            )
        except ModelNotFoundError as e:
            raise ValueError(str(e)) from e
        status = sidekick.status()
        state = "ready" if status.ready else f"not ready ({status.detail or status.state})"
        return f"Switched to {profile.identifier}; backend {state}."

    if name == "list_models":
        return sidekick.format_models()

    raise ValueError(f"Unknown tool: {name}")


async def _execute_tool(sidekick: Sidekick, name: str, arguments: dict[str, Any]) -> list:
    """Execute a sidekick tool, returning MCP content."""
    from mcp.types import TextContent

    logger.debug("MCP tool call: %s", name)
    text = await _run_tool(sidekick, name, arguments)
    return [TextContent(type="text", text=text)]


def create_mcp_server(sidekick: Sidekick, mcp_config: McpConfig | None = None) -> Any:
    """Create and configure an MCP server exposing sidekick's operations.

    Returns the configured (but not yet running) ``mcp.server.Server``.
    Raises ImportError if the ``mcp`` package is not installed.
    """
    from mcp.server import Server

    if mcp_config is None:
        mcp_config = McpConfig()

    server = Server(mcp_config.server_name)

    # ── Tool listing ──────────────────────────────────────────────────────
    @server.list_tools()
    async def handle_list_tools() -> list:
        return _build_tool_list()

    # ── Tool execution ────────────────────────────────────────────────────
    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict | None = None) -> list:
        return await _execute_tool(sidekick, name, arguments or {})

    return server


async def run_mcp_server(config: SidekickConfig) -> None:
    """Start the backend in the background and serve MCP over stdio until EOF.

    This is the main entry point for ``sidekick --mcp``.
    """
    from mcp.server.stdio import stdio_server

    async with Sidekick(config) as sidekick:
        server = create_mcp_server(sidekick, config.mcp)
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
