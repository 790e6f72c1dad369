"""
JSON-RPC 2.0 protocol for the collabot WebSocket adapter.

Protocol Version: 1

Message Format:
- Every frame is one JSON-RPC 2.0 object (no batches)
- The first call on a connection must be ``handshake``
- Requests carry an ``id`` and get exactly one response echoing it
- Notifications have no ``id`` and get no response
- The server pushes ``channel_message``, ``status_update`` and
  ``pool_status`` notifications to every handshaked client
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictInt, ValidationError

# Protocol version - increment when breaking changes are made
PROTOCOL_VERSION = 1

DEFAULT_HANDSHAKE_TIMEOUT = 10.0


# =============================================================================
# Error codes
# =============================================================================

# Standard JSON-RPC
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Domain
TASK_NOT_FOUND = -32000
AGENT_NOT_FOUND = -32001
ROLE_NOT_FOUND = -32002
PROJECT_NOT_FOUND = -32006


# =============================================================================
# Close codes
# =============================================================================

CLOSE_HANDSHAKE_TIMEOUT = 4000
CLOSE_VERSION_MISMATCH = 4001
CLOSE_INVALID_JSON = 4002
CLOSE_HANDSHAKE_REQUIRED = 4003


# =============================================================================
# Server -> client notifications
# =============================================================================

NOTIFY_CHANNEL_MESSAGE = "channel_message"
NOTIFY_STATUS_UPDATE = "status_update"
NOTIFY_POOL_STATUS = "pool_status"


class RpcError(Exception):
    """A JSON-RPC error to report back to the caller."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


RequestId = Union[StrictInt, str, None]


class RpcRequest(BaseModel):
    """A call or notification from a client."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str = Field(..., min_length=1)
    params: Optional[Union[Dict[str, Any], List[Any]]] = None
    id: RequestId = None

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class HandshakeParams(BaseModel):
    protocol_version: StrictInt = Field(..., alias="protocolVersion")
    client_name: Optional[str] = Field(None, alias="clientName")
    client_version: Optional[str] = Field(None, alias="clientVersion")


def result_response(request_id: RequestId, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "result": result, "id": request_id}


def error_response(request_id: RequestId, error: RpcError) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "error": error.to_dict(), "id": request_id}


def notification(method: str, params: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": params}


def serialize(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, default=str)


def parse_request(data: str | Dict[str, Any]) -> RpcRequest:
    """
    Parse a JSON-RPC request from a JSON string or dict.

    Args:
        data: JSON string or already-parsed dict

    Returns:
        Parsed RpcRequest

    Raises:
        RpcError: PARSE_ERROR for malformed JSON, INVALID_REQUEST otherwise
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise RpcError(PARSE_ERROR, f"Parse error: {e}")

    if not isinstance(data, dict):
        raise RpcError(INVALID_REQUEST, "Request must be a JSON object")

    try:
        return RpcRequest.model_validate(data)
    except ValidationError as e:
        raise RpcError(
            INVALID_REQUEST,
            "Invalid request",
            data=[issue["msg"] for issue in e.errors()],
        )


def request_id_of(data: Any) -> RequestId:
    """Best-effort id of a frame that may not be a valid request."""
    if isinstance(data, dict):
        request_id = data.get("id")
        if isinstance(request_id, (int, str)) and not isinstance(request_id, bool):
            return request_id
    return None
