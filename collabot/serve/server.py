"""
WebSocket Server for collabot.

This module provides the Starlette WebSocket server that speaks JSON-RPC 2.0
to front-end clients. Each connection must handshake before it can call
methods or receive broadcast notifications.
"""

import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union
from uuid import uuid4

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from collabot import __version__
from collabot.serve.protocol import (
    CLOSE_HANDSHAKE_REQUIRED,
    CLOSE_HANDSHAKE_TIMEOUT,
    CLOSE_INVALID_JSON,
    CLOSE_VERSION_MISMATCH,
    DEFAULT_HANDSHAKE_TIMEOUT,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PROTOCOL_VERSION,
    HandshakeParams,
    RpcError,
    error_response,
    notification,
    parse_request,
    request_id_of,
    result_response,
    serialize,
)

logger = logging.getLogger(__name__)

MethodHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ClientConnection:
    """State for a single WebSocket connection."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.id = str(uuid4())
        self.handshaked = False
        self.closed = False
        self.handshake_timer: Optional[asyncio.Task] = None
        self.client_name: Optional[str] = None

    async def send(self, frame: Dict[str, Any]) -> None:
        await self.websocket.send_text(serialize(frame))

    async def close(self, code: int, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Close on {self.id} failed: {e}")

    def cancel_handshake_timer(self) -> None:
        if self.handshake_timer is not None and not self.handshake_timer.done():
            self.handshake_timer.cancel()
        self.handshake_timer = None


class CollabotWebSocketServer:
    """
    JSON-RPC WebSocket server for collabot front-ends.

    Connections go ``connected -> handshaked -> closed``. Methods are
    registered with :meth:`add_method`; notifications are pushed with
    :meth:`broadcast_notification`.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9800,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        harness_version: str = __version__,
    ):
        self.host = host
        self.port = port
        self.handshake_timeout = handshake_timeout
        self.harness_version = harness_version
        self.methods: Dict[str, MethodHandler] = {}
        self.clients: Dict[str, ClientConnection] = {}
        self.handshaked: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self.app = self._create_app()

    def _create_app(self) -> Starlette:
        """Create the Starlette application with the WebSocket route."""

        @asynccontextmanager
        async def lifespan(app):
            logger.info(f"collabot WebSocket server starting on ws://{self.host}:{self.port}/ws")
            logger.info(f"Protocol version: {PROTOCOL_VERSION}")
            yield
            await self.shutdown()

        return Starlette(routes=[WebSocketRoute("/ws", self._handle_websocket)], lifespan=lifespan)

    def add_method(self, name: str, handler: MethodHandler) -> None:
        self.methods[name] = handler

    def spawn(self, coro) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def client_count(self) -> int:
        return len(self.clients)

    async def _handshake_deadline(self, conn: ClientConnection) -> None:
        await asyncio.sleep(self.handshake_timeout)
        if not conn.handshaked:
            logger.warning(f"Client {conn.id} failed to handshake within timeout, closing")
            await conn.close(CLOSE_HANDSHAKE_TIMEOUT, "Handshake timeout")

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Handle a WebSocket connection."""
        await websocket.accept()

        conn = ClientConnection(websocket)
        self.clients[conn.id] = conn
        conn.handshake_timer = asyncio.create_task(self._handshake_deadline(conn))
        logger.info(f"Client connected ({self.client_count} total)")

        try:
            while not conn.closed:
                data = await websocket.receive_text()
                if not conn.handshaked:
                    await self._handle_pre_handshake(conn, data)
                    continue

                response = await self.handle_rpc(data)
                if response is not None:
                    await conn.send(response)

        except WebSocketDisconnect:
            logger.info(f"Client {conn.id} disconnected")
        except Exception as e:
            logger.error(f"Error on connection {conn.id}: {e}", exc_info=True)
        finally:
            self._cleanup(conn)
            logger.info(f"Client removed ({self.client_count} remaining)")

    async def _handle_pre_handshake(self, conn: ClientConnection, data: str) -> None:
        """Only a handshake is accepted before the connection is established."""
        try:
            raw = json.loads(data)
        except json.JSONDecodeError:
            await conn.close(CLOSE_INVALID_JSON, "Invalid JSON")
            return

        request_id = request_id_of(raw)
        if not isinstance(raw, dict) or raw.get("method") != "handshake":
            await conn.send(
                error_response(request_id, RpcError(INVALID_REQUEST, "Handshake required"))
            )
            await conn.close(CLOSE_HANDSHAKE_REQUIRED, "Handshake required")
            return

        raw_params = raw.get("params")
        if not isinstance(raw_params, dict):
            raw_params = {}
        version = raw_params.get("protocolVersion")
        try:
            params = HandshakeParams.model_validate(raw_params)
        except ValidationError:
            params = None

        if params is None or params.protocol_version != PROTOCOL_VERSION:
            await conn.send(
                error_response(
                    request_id,
                    RpcError(
                        INVALID_REQUEST,
                        f"Protocol version mismatch: server={PROTOCOL_VERSION}, "
                        f"client={version}. Update your client.",
                    ),
                )
            )
            await conn.close(CLOSE_VERSION_MISMATCH, "Protocol version mismatch")
            return

        conn.handshaked = True
        conn.client_name = params.client_name
        conn.cancel_handshake_timer()
        self.handshaked.add(conn.id)
        logger.info(
            f"Handshake complete: {params.client_name or 'unknown'} {params.client_version or ''}".rstrip()
        )
        await conn.send(
            result_response(
                request_id,
                {"protocolVersion": PROTOCOL_VERSION, "harnessVersion": self.harness_version},
            )
        )

    async def handle_rpc(self, data: str) -> Optional[Dict[str, Any]]:
        """Dispatch one post-handshake frame. Returns the response, if any."""
        try:
            request = parse_request(data)
        except RpcError as e:
            return error_response(None, e)

        handler = self.methods.get(request.method)
        try:
            if handler is None:
                raise RpcError(METHOD_NOT_FOUND, f"Method not found: {request.method}")
            params = request.params if isinstance(request.params, dict) else {}
            result = handler(params)
            if inspect.isawaitable(result):
                result = await result
        except RpcError as e:
            if request.is_notification:
                return None
            return error_response(request.id, e)
        except Exception as e:
            logger.error(f"Method {request.method} failed: {e}", exc_info=True)
            if request.is_notification:
                return None
            return error_response(request.id, RpcError(INTERNAL_ERROR, str(e)))

        if request.is_notification:
            return None
        return result_response(request.id, result)

    async def broadcast_notification(self, method: str, params: Any) -> None:
        """Send a notification to every handshaked client.

        A client whose send fails is dropped; the others still receive it.
        """
        frame = notification(method, params)
        for client_id in list(self.handshaked):
            conn = self.clients.get(client_id)
            if conn is None:
                self.handshaked.discard(client_id)
                continue
            try:
                await conn.send(frame)
            except Exception as e:
                logger.error(f"Notification {method} to {client_id} failed, dropping client: {e}")
                self._cleanup(conn)

    def _cleanup(self, conn: ClientConnection) -> None:
        conn.cancel_handshake_timer()
        self.clients.pop(conn.id, None)
        self.handshaked.discard(conn.id)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        for conn in list(self.clients.values()):
            conn.cancel_handshake_timer()
            await conn.close(1001, "Server shutting down")
        self.clients.clear()
        self.handshaked.clear()


def create_server(
    host: str = "127.0.0.1",
    port: int = 9800,
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
) -> CollabotWebSocketServer:
    """Create a new CollabotWebSocketServer instance."""
    return CollabotWebSocketServer(host=host, port=port, handshake_timeout=handshake_timeout)


async def run_server(server: CollabotWebSocketServer) -> None:
    """Serve a configured server with uvicorn until interrupted."""
    import uvicorn

    config = uvicorn.Config(
        server.app,
        host=server.host,
        port=server.port,
        log_level="info",
    )
    uvicorn_server = uvicorn.Server(config)
    await uvicorn_server.serve()
