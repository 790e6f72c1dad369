"""Console channel adapter used by one-shot CLI dispatches."""

from typing import Dict, List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from collabot.comms import (
    MINIMAL_TYPES,
    ChannelMessage,
    ChannelStatus,
    CommunicationProvider,
    MessageType,
)

STYLES = {
    MessageType.LIFECYCLE: "dim",
    MessageType.QUESTION: "bold cyan",
    MessageType.WARNING: "yellow",
    MessageType.ERROR: "bold red",
}

STATUS_STYLES = {
    ChannelStatus.RECEIVED: "dim",
    ChannelStatus.WORKING: "cyan",
    ChannelStatus.COMPLETED: "green",
    ChannelStatus.FAILED: "red",
}


class CliAdapter(CommunicationProvider):
    """Prints lifecycle events, results, warnings, errors and questions.

    Streaming events (chat, thinking, tool_use) are filtered out.
    """

    name = "cli"
    accepted_types = MINIMAL_TYPES

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.statuses: Dict[str, ChannelStatus] = {}
        self.results: List[ChannelMessage] = []

    async def send(self, message: ChannelMessage) -> None:
        if message.type == MessageType.RESULT:
            self.results.append(message)
            self.console.print(
                Panel(Markdown(message.content), title=Text(message.sender, style="bold"))
            )
            return

        self.console.print(
            Text(f"[{message.sender}] {message.content}", style=STYLES.get(message.type, ""))
        )

    async def set_status(self, channel_id: str, status: ChannelStatus) -> None:
        status = ChannelStatus(status)
        self.statuses[channel_id] = status
        self.console.print(Text(f"Status: {status.value}", style=STATUS_STYLES[status]))
