"""MCP server for Stability AI image generation.

Wires the prompt, resource and tool capabilities onto a low-level MCP
``Server`` and provides the standard-stream (stdio) transport. Both
transports funnel into the same handlers; the caller's IP, when a transport
knows it, arrives in the request's ``_meta`` and becomes the
``ResourceContext`` handed to the resource store and dispatcher.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from mcp import types
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server

from . import __version__
from .models import ResourceContext
from .prompts import PROMPTS, get_prompt_template, inject_prompt_template
from .resources import ResourceStore
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)

SERVER_NAME = "stability-ai"


def context_from_meta(meta: Optional[types.RequestParams.Meta]) -> ResourceContext:
    """Build a ResourceContext from a request's ``_meta`` (``ip`` and ``headers`` keys)."""
    extra: Dict[str, Any] = (meta.model_extra or {}) if meta is not None else {}
    headers = extra.get("headers")
    return ResourceContext(
        requestor_ip_address=extra.get("ip") or None,
        headers=dict(headers) if isinstance(headers, dict) else {},
    )


def create_server(dispatcher: ToolDispatcher, store: ResourceStore) -> Server:
    """Create the MCP server with every handler bound to the given collaborators."""
    server: Server = Server(SERVER_NAME, version=__version__)

    def current_context() -> ResourceContext:
        return context_from_meta(server.request_context.meta)

    @server.list_prompts()
    async def list_prompts() -> List[types.Prompt]:
        return [types.Prompt(name=p.name, description=p.description) for p in PROMPTS]

    @server.get_prompt()
    async def get_prompt(name: str, arguments: Optional[Dict[str, str]]) -> types.GetPromptResult:
        prompt = get_prompt_template(name)
        text = inject_prompt_template(prompt.template, arguments)
        return types.GetPromptResult(
            description=prompt.description,
            messages=[
                types.PromptMessage(role="user", content=types.TextContent(type="text", text=text)),
            ],
        )

    @server.list_resources()
    async def list_resources() -> List[types.Resource]:
        resources = await store.list_resources(current_context())
        return [
            types.Resource(uri=r.uri, name=r.name, mimeType=r.mime_type)
            for r in resources
        ]

    @server.read_resource()
    async def read_resource(uri) -> List[ReadResourceContents]:
        contents = await store.read_resource(str(uri), current_context())
        return [ReadResourceContents(content=contents.data, mime_type=contents.mime_type)]

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        return dispatcher.definitions()

    # Arguments are validated by the dispatcher so errors name every field.
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[types.TextContent]:
        return await dispatcher.dispatch(name, arguments or {}, current_context())

    return server


async def run_stdio_server(server: Server) -> None:
    """Serve MCP over this process's stdin/stdout until the client disconnects."""
    logger.info("%s MCP Server running on stdio", SERVER_NAME)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())
