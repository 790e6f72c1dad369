"""Communication layer shared by every front-end.

Defines the message vocabulary that flows from the orchestration core to
channel adapters, and the adapter contract each front-end implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, Optional
from uuid import uuid4


class MessageType(str, Enum):
    """Types of channel messages."""

    LIFECYCLE = "lifecycle"
    QUESTION = "question"
    RESULT = "result"
    WARNING = "warning"
    ERROR = "error"
    # Verbose / streaming sub-types
    CHAT = "chat"
    TOOL_USE = "tool_use"
    THINKING = "thinking"


class ChannelStatus(str, Enum):
    RECEIVED = "received"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"


# Lifecycle events, results, warnings/errors and questions. No streaming events.
MINIMAL_TYPES: FrozenSet[MessageType] = frozenset(
    {
        MessageType.LIFECYCLE,
        MessageType.QUESTION,
        MessageType.RESULT,
        MessageType.WARNING,
        MessageType.ERROR,
    }
)


@dataclass
class ChannelMessage:
    """A message flowing through the communication layer."""

    id: str
    channel_id: str
    sender: str  # role name, "harness", "human"
    type: MessageType
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "channelId": self.channel_id,
            "from": self.sender,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "content": self.content,
        }
        if self.metadata is not None:
            d["metadata"] = self.metadata
        return d


@dataclass
class InboundMessage:
    """An inbound request from any interface."""

    id: str
    content: str
    thread_id: str  # conversation grouping key
    source: str  # "cli", "ws", ...
    project: Optional[str] = None
    role: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


def make_channel_message(
    channel_id: str,
    sender: str,
    type: MessageType | str,
    content: str,
    metadata: Optional[dict[str, Any]] = None,
) -> ChannelMessage:
    return ChannelMessage(
        id=f"msg-{uuid4().hex[:12]}",
        channel_id=channel_id,
        sender=sender,
        type=MessageType(type),
        content=content,
        metadata=metadata,
    )


class CommunicationProvider(ABC):
    """Contract every channel adapter implements.

    ``accepted_types`` is the adapter's filter: the core addresses every
    adapter the same way through :func:`filtered_send`, and each adapter
    decides which message types it renders. ``None`` accepts everything.
    """

    name: str = "provider"
    accepted_types: Optional[FrozenSet[MessageType]] = None

    async def start(self) -> None:
        """Open connections. No-op for stateless adapters."""

    async def stop(self) -> None:
        """Release resources. No-op for stateless adapters."""

    def is_ready(self) -> bool:
        return True

    @abstractmethod
    async def send(self, message: ChannelMessage) -> None:
        """Deliver a message to a channel."""

    @abstractmethod
    async def set_status(self, channel_id: str, status: ChannelStatus) -> None:
        """Update a channel's status indicator."""

    def accepts(self, message_type: MessageType) -> bool:
        return self.accepted_types is None or message_type in self.accepted_types


async def filtered_send(provider: CommunicationProvider, message: ChannelMessage) -> None:
    """Send a message to a provider, respecting its accepted types."""
    if not provider.accepts(message.type):
        return
    await provider.send(message)
