"""HTTP event-stream (SSE) transport.

    GET  /sse                          opens a stream; the first event is
                                       ``endpoint`` naming where to POST
    POST /messages?session_id=<id>     delivers one JSON-RPC message

Each open stream gets its own MCP session running over in-memory streams. The
``ConnectionRegistry`` maps session ids to those sessions, so any number of
clients can be connected at once.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import anyio
import uvicorn
from anyio.streams.memory import MemoryObjectSendStream
from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from .errors import SessionLookupError

logger = logging.getLogger(__name__)

NO_ACTIVE_CONNECTION = "No active SSE connection"
SESSION_ID_REQUIRED = "session_id is required"


def client_ip(request: Request) -> str:
    """Best guess at the caller's address, honouring reverse-proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@dataclass
class SseConnection:
    """One open event stream and the channel feeding its MCP session."""
    session_id: str
    inbox: MemoryObjectSendStream
    client_ip: str = "unknown"
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionRegistry:
    """Open event-stream connections keyed by session id."""

    def __init__(self) -> None:
        self._connections: Dict[str, SseConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, connection: SseConnection) -> None:
        self._connections[connection.session_id] = connection
        logger.info("SSE connection %s opened from %s (%d open)",
                    connection.session_id, connection.client_ip, len(self))

    def unregister(self, session_id: str) -> None:
        if self._connections.pop(session_id, None) is not None:
            logger.info("SSE connection %s closed (%d open)", session_id, len(self))

    def resolve(self, session_id: Optional[str]) -> SseConnection:
        """Find the connection a posted message belongs to.

        Without a session id the single open connection is used.

        Raises:
            SessionLookupError: If nothing matches, or several connections
                are open and no id was given.
        """
        if session_id:
            connection = self._connections.get(session_id)
            if connection is None:
                raise SessionLookupError(NO_ACTIVE_CONNECTION)
            return connection
        if not self._connections:
            raise SessionLookupError(NO_ACTIVE_CONNECTION)
        if len(self._connections) > 1:
            raise SessionLookupError(SESSION_ID_REQUIRED)
        return next(iter(self._connections.values()))


def attach_request_meta(payload: Any, ip: str, headers: Dict[str, str]) -> Any:
    """Merge the caller's IP and headers into ``params._meta`` of requests and notifications."""
    if isinstance(payload, list):
        return [attach_request_meta(item, ip, headers) for item in payload]
    if not isinstance(payload, dict) or "method" not in payload:
        return payload
    params = payload.get("params")
    params = dict(params) if isinstance(params, dict) else {}
    meta = params.get("_meta")
    meta = dict(meta) if isinstance(meta, dict) else {}
    meta.update({"ip": ip, "headers": headers})
    params["_meta"] = meta
    return {**payload, "params": params}


class SseEndpoint:
    """ASGI endpoint for ``GET /sse``: one MCP session per open stream."""

    def __init__(self, server: Server, registry: ConnectionRegistry, message_path: str) -> None:
        self.server = server
        self.registry = registry
        self.message_path = message_path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = uuid4().hex
        inbox_writer, inbox_reader = anyio.create_memory_object_stream(0)
        outbox_writer, outbox_reader = anyio.create_memory_object_stream(0)
        event_writer, event_reader = anyio.create_memory_object_stream(0)

        self.registry.register(
            SseConnection(session_id=session_id, inbox=inbox_writer, client_ip=client_ip(request))
        )

        async def forward_events() -> None:
            async with event_writer, outbox_reader:
                await event_writer.send(
                    {"event": "endpoint", "data": f"{self.message_path}?session_id={session_id}"}
                )
                async for session_message in outbox_reader:
                    await event_writer.send({
                        "event": "message",
                        "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                    })

        try:
            async with anyio.create_task_group() as tg:

                async def stream_events() -> None:
                    response = EventSourceResponse(event_reader, data_sender_callable=forward_events)
                    await response(scope, receive, send)
                    # Client went away: stop the session and any tool still running.
                    tg.cancel_scope.cancel()

                tg.start_soon(stream_events)
                tg.start_soon(
                    self.server.run,
                    inbox_reader,
                    outbox_writer,
                    self.server.create_initialization_options(),
                )
        finally:
            self.registry.unregister(session_id)
            await inbox_writer.aclose()


def create_sse_app(
    server: Server,
    *,
    registry: Optional[ConnectionRegistry] = None,
    sse_path: str = "/sse",
    message_path: str = "/messages",
) -> Starlette:
    """Build the starlette application serving MCP over event streams."""
    registry = registry if registry is not None else ConnectionRegistry()

    async def post_message(request: Request) -> Response:
        try:
            connection = registry.resolve(request.query_params.get("session_id"))
        except SessionLookupError as exc:
            return PlainTextResponse(str(exc), status_code=400)

        try:
            payload = json.loads(await request.body())
        except ValueError:
            return PlainTextResponse("Invalid JSON body", status_code=400)

        payload = attach_request_meta(payload, client_ip(request), dict(request.headers))
        try:
            message = types.JSONRPCMessage.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Rejected malformed message for %s: %s", connection.session_id, exc)
            return PlainTextResponse(f"Invalid JSON-RPC message: {exc}", status_code=400)

        metadata = ServerMessageMetadata(request_context=request)
        await connection.inbox.send(SessionMessage(message, metadata=metadata))
        return PlainTextResponse("Accepted", status_code=202)

    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            {
                "error": "Not Found",
                "message": f"Route {request.method} {request.url.path} not found",
                "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            },
            status_code=404,
        )

    app = Starlette(
        routes=[
            Route(sse_path, SseEndpoint(server, registry, message_path), methods=["GET"]),
            Route(message_path, post_message, methods=["POST"]),
        ],
        exception_handlers={404: not_found},
    )
    app.state.registry = registry
    return app


async def run_sse_server(server: Server, *, host: str, port: int) -> None:
    """Serve the event-stream transport until interrupted."""
    app = create_sse_app(server)
    config = uvicorn.Config(app, host=host, port=port, log_config=None)
    logger.info("Stability AI MCP Server listening on http://%s:%d/sse", host, port)
    await uvicorn.Server(config).serve()
