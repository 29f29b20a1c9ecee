#!/usr/bin/env python3
"""
Kube Remediate MCP Server
AI-driven root cause analysis and remediation planning for Kubernetes.

Provides:
- remediate: bounded, read-only AI investigation of a cluster issue
- Session retrieval for past investigations
- Circuit breaker inspection and reset for the AI backend
"""

import asyncio
import json
import logging
from typing import Any, List

from mcp.server import Server
from mcp.types import Tool, TextContent
import mcp.server.stdio

from circuit_breaker import CircuitBreakerFactory
from config import load_config
from errors import RemediateError, SessionStorageError
from remediate import (
    REMEDIATE_INPUT_SCHEMA, REMEDIATE_TOOL_DESCRIPTION, REMEDIATE_TOOL_NAME,
    error_response, handle_remediate_tool
)
from sessions import SessionStore, resolve_session_directory, validate_session_directory

config = load_config()

# Setup logging
logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
logger = logging.getLogger(__name__)


# Circuit event audit database
config.db_path.parent.mkdir(parents=True, exist_ok=True)
breaker_factory = CircuitBreakerFactory(
    default_config=config.circuit_breaker,
    db_path=config.db_path
)
logger.info(f"Circuit breaker factory initialized (audit db: {config.db_path})")


# MCP Server
app = Server("kube-remediate-mcp")


@app.list_tools()
async def list_tools() -> List[Tool]:
    """List available remediation tools."""
    return [
        Tool(
            name=REMEDIATE_TOOL_NAME,
            description=REMEDIATE_TOOL_DESCRIPTION,
            inputSchema=REMEDIATE_INPUT_SCHEMA
        ),
        Tool(
            name="get_remediation_session",
            description="Get a stored remediation session with all investigation iterations.",
            inputSchema={
                "type": "object",
                "properties": {
                    "sessionId": {
                        "type": "string",
                        "description": "Session ID returned by remediate"
                    },
                    "sessionDir": {
                        "type": "string",
                        "description": "Session directory (defaults to REMEDIATE_SESSION_DIR)"
                    }
                },
                "required": ["sessionId"]
            }
        ),
        Tool(
            name="list_remediation_sessions",
            description="List the most recently updated remediation sessions.",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {
                        "type": "integer",
                        "description": "Maximum sessions to return",
                        "default": 20
                    },
                    "sessionDir": {
                        "type": "string",
                        "description": "Session directory (defaults to REMEDIATE_SESSION_DIR)"
                    }
                }
            }
        ),
        Tool(
            name="circuit_breaker_status",
            description="Get state and counters of a named circuit breaker (e.g. ai-backend).",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": "Circuit breaker name"
                    }
                },
                "required": ["name"]
            }
        ),
        Tool(
            name="circuit_breaker_list",
            description="List all circuit breakers with their stats and which ones are open.",
            inputSchema={
                "type": "object",
                "properties": {}
            }
        ),
        Tool(
            name="circuit_breaker_reset",
            description="Reset a circuit breaker to CLOSED. Resets all breakers when name is omitted.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": "Circuit breaker name (omit to reset all)"
                    }
                }
            }
        ),
        Tool(
            name="circuit_breaker_events",
            description="Recent state transitions of a circuit breaker, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": "Circuit breaker name"
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum events to return",
                        "default": 20
                    }
                },
                "required": ["name"]
            }
        )
    ]


def _session_store(arguments: Any) -> SessionStore:
    session_dir = resolve_session_directory(arguments, config)
    return SessionStore(validate_session_directory(session_dir))


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    """Handle tool calls."""
    arguments = arguments or {}

    if name == REMEDIATE_TOOL_NAME:
        try:
            result = await handle_remediate_tool(arguments, config, breaker_factory)
        except RemediateError as e:
            logger.error(f"Remediate tool failed: {e}")
            result = error_response(e)
        return [TextContent(
            type="text",
            text=json.dumps(result, indent=2, default=str)
        )]

    elif name == "get_remediation_session":
        try:
            session = _session_store(arguments).load_session(arguments["sessionId"])
        except SessionStorageError as e:
            return [TextContent(
                type="text",
                text=json.dumps(error_response(e), indent=2, default=str)
            )]
        if not session:
            return [TextContent(type="text", text=f"Session {arguments['sessionId']} not found")]

        return [TextContent(
            type="text",
            text=json.dumps(session.to_dict(), indent=2, default=str)
        )]

    elif name == "list_remediation_sessions":
        try:
            sessions = _session_store(arguments).list_sessions(arguments.get("limit", 20))
        except SessionStorageError as e:
            return [TextContent(
                type="text",
                text=json.dumps(error_response(e), indent=2, default=str)
            )]

        return [TextContent(
            type="text",
            text=json.dumps({"sessions": sessions, "count": len(sessions)}, indent=2)
        )]

    elif name == "circuit_breaker_status":
        breaker = breaker_factory.get(arguments["name"])
        if not breaker:
            return [TextContent(
                type="text",
                text=json.dumps({"error": f"Circuit breaker '{arguments['name']}' not found"})
            )]

        return [TextContent(
            type="text",
            text=json.dumps(breaker.get_stats().to_dict(), indent=2, default=str)
        )]

    elif name == "circuit_breaker_list":
        stats = breaker_factory.get_all_stats()
        return [TextContent(
            type="text",
            text=json.dumps({
                "breakers": {n: s.to_dict() for n, s in stats.items()},
                "open_circuits": breaker_factory.get_open_circuits(),
                "count": len(stats)
            }, indent=2, default=str)
        )]

    elif name == "circuit_breaker_reset":
        breaker_name = arguments.get("name")
        if not breaker_name:
            count = breaker_factory.reset_all()
            return [TextContent(
                type="text",
                text=json.dumps({"success": True, "reset": "all", "were_not_closed": count}, indent=2)
            )]

        breaker = breaker_factory.get(breaker_name)
        if not breaker:
            return [TextContent(
                type="text",
                text=json.dumps({"error": f"Circuit breaker '{breaker_name}' not found"})
            )]

        old_state = breaker.get_state().value
        breaker.reset()
        return [TextContent(
            type="text",
            text=json.dumps({
                "success": True,
                "name": breaker_name,
                "old_state": old_state,
                "new_state": breaker.current_state.value
            }, indent=2)
        )]

    elif name == "circuit_breaker_events":
        events = breaker_factory.get_events(arguments["name"], arguments.get("limit", 20))
        return [TextContent(
            type="text",
            text=json.dumps({"name": arguments["name"], "events": events}, indent=2)
        )]

    return [TextContent(type="text", text=f"Unknown tool: {name}")]


async def main():
    """Run the MCP server."""
    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        await app.run(
            read_stream,
            write_stream,
            app.create_initialization_options()
        )


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
