"""
collabot WebSocket adapter.

JSON-RPC 2.0 over a single ``/ws`` route lets front-ends submit prompts,
manage tasks and agents, and follow progress through broadcast
notifications.
"""

from collabot.serve.protocol import (
    # Protocol version
    PROTOCOL_VERSION,
    # Close codes
    CLOSE_HANDSHAKE_REQUIRED,
    CLOSE_HANDSHAKE_TIMEOUT,
    CLOSE_INVALID_JSON,
    CLOSE_VERSION_MISMATCH,
    # Frames
    RpcError,
    RpcRequest,
    HandshakeParams,
    parse_request,
)
from collabot.serve.server import CollabotWebSocketServer, create_server, run_server
from collabot.serve.ws_interface import WebSocketChannel

__all__ = [
    # Protocol
    "PROTOCOL_VERSION",
    "CLOSE_HANDSHAKE_REQUIRED",
    "CLOSE_HANDSHAKE_TIMEOUT",
    "CLOSE_INVALID_JSON",
    "CLOSE_VERSION_MISMATCH",
    "RpcError",
    "RpcRequest",
    "HandshakeParams",
    "parse_request",
    # Server
    "CollabotWebSocketServer",
    "create_server",
    "run_server",
    # Interface
    "WebSocketChannel",
]
