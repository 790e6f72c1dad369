"""
WebSocket channel for collabot.

Presents the WebSocket server to the orchestration core as a
CommunicationProvider: channel messages and status changes become broadcast
notifications to every handshaked client.
"""

import asyncio
import logging
from typing import Any, Dict, List

from collabot.comms import ChannelMessage, ChannelStatus, CommunicationProvider
from collabot.serve.protocol import (
    NOTIFY_CHANNEL_MESSAGE,
    NOTIFY_POOL_STATUS,
    NOTIFY_STATUS_UPDATE,
)
from collabot.serve.server import CollabotWebSocketServer

logger = logging.getLogger(__name__)


class WebSocketChannel(CommunicationProvider):
    """Channel adapter that broadcasts over the WebSocket server.

    Accepts every message type; clients filter for themselves.
    """

    name = "ws"
    accepted_types = None

    def __init__(self, server: CollabotWebSocketServer):
        self.server = server

    def is_ready(self) -> bool:
        return True

    async def send(self, message: ChannelMessage) -> None:
        await self.server.broadcast_notification(NOTIFY_CHANNEL_MESSAGE, message.to_dict())

    async def set_status(self, channel_id: str, status: ChannelStatus) -> None:
        await self.server.broadcast_notification(
            NOTIFY_STATUS_UPDATE,
            {"channelId": channel_id, "status": ChannelStatus(status).value},
        )

    async def publish_pool_status(self, agents: List[Dict[str, Any]]) -> None:
        await self.server.broadcast_notification(NOTIFY_POOL_STATUS, {"agents": agents})

    def pool_observer(self, agents: List[Dict[str, Any]]) -> None:
        """Pool change callback. Schedules a ``pool_status`` broadcast."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Pool changed outside the event loop, skipping pool_status")
            return
        self.server.spawn(self.publish_pool_status(agents))
