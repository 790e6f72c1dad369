"""Registry of dispatches drafted by agents and not yet awaited."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from collabot.errors import DuplicateAgentError, UnknownAgentError
from collabot.models import DispatchResult

logger = logging.getLogger(__name__)


@dataclass
class TrackedDispatch:
    completion: "asyncio.Future[DispatchResult]"
    role: str
    task_dir: Optional[Path]
    cwd: str
    task_slug: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _retrieve_outcome(completion: "asyncio.Future[DispatchResult]") -> None:
    # Marks the exception as retrieved for drafts nobody ends up awaiting
    if completion.cancelled():
        return
    error = completion.exception()
    if error is not None:
        logger.warning(f"Drafted dispatch failed: {error}")


class DispatchTracker:
    """Completion handles keyed by agent id.

    Each entry is consumed exactly once: ``claim`` removes it before the
    caller starts waiting, so a second claim for the same id fails.
    """

    def __init__(self):
        self._dispatches: Dict[str, TrackedDispatch] = {}

    def track(self, agent_id: str, dispatch: TrackedDispatch) -> None:
        if agent_id in self._dispatches:
            raise DuplicateAgentError(f'Agent "{agent_id}" is already tracked')
        dispatch.completion.add_done_callback(_retrieve_outcome)
        self._dispatches[agent_id] = dispatch
        logger.debug(f"Tracking dispatch {agent_id} ({dispatch.role})")

    def claim(self, agent_id: str) -> TrackedDispatch:
        """Remove and return the dispatch tracked under ``agent_id``.

        Raises:
            UnknownAgentError: If no dispatch is tracked under this id
        """
        tracked = self._dispatches.pop(agent_id, None)
        if tracked is None:
            raise UnknownAgentError(f'No tracked agent with ID "{agent_id}"')
        return tracked

    def get(self, agent_id: str) -> Optional[TrackedDispatch]:
        return self._dispatches.get(agent_id)

    def delete(self, agent_id: str) -> bool:
        return self._dispatches.pop(agent_id, None) is not None
