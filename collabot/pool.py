"""
Agent pool.

Tracks live agents, bounds how many run at once, and owns each agent's
cancellation handle. Registration blocks while the pool is full; pass
``wait=False`` to fail fast instead.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from collabot.errors import DuplicateAgentError, PoolAtCapacityError

logger = logging.getLogger(__name__)


class AbortSignal:
    """Cooperative cancellation handle shared between the pool and a dispatch."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class AgentSnapshot:
    """Serialisable view of a pool entry, without the cancellation handle."""

    id: str
    role: str
    task_slug: Optional[str]
    started_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "taskSlug": self.task_slug,
            "startedAt": self.started_at.isoformat(),
        }


@dataclass
class _Entry:
    snapshot: AgentSnapshot
    signal: AbortSignal


PoolChangeCallback = Callable[[List[Dict[str, Any]]], None]


class AgentPool:
    def __init__(self, max_concurrent: int = 0):
        self.max_concurrent = max_concurrent  # 0 = unlimited
        self._agents: Dict[str, _Entry] = {}
        self._slots = asyncio.Condition()
        self._on_change: Optional[PoolChangeCallback] = None
        self._wakeups: set = set()

    def set_on_change(self, callback: Optional[PoolChangeCallback]) -> None:
        self._on_change = callback

    def _at_capacity(self) -> bool:
        return self.max_concurrent > 0 and len(self._agents) >= self.max_concurrent

    async def register(
        self,
        agent_id: str,
        role: str,
        task_slug: Optional[str] = None,
        *,
        wait: bool = True,
    ) -> AbortSignal:
        """Add an agent to the pool and return its abort signal.

        Args:
            agent_id: Unique id for the agent
            role: Role the agent runs as
            task_slug: Task the agent is working on, if any
            wait: Block until a slot frees when the pool is full

        Raises:
            DuplicateAgentError: If an agent with this id is already live
            PoolAtCapacityError: If the pool is full and ``wait`` is False
        """
        async with self._slots:
            if agent_id in self._agents:
                raise DuplicateAgentError(f'Agent "{agent_id}" is already registered')

            if self._at_capacity():
                if not wait:
                    raise PoolAtCapacityError(
                        f"Pool at capacity ({self.max_concurrent}). "
                        f'Cannot register agent "{agent_id}"'
                    )
                logger.info(
                    f"Pool full ({self.max_concurrent}), {agent_id} waiting for a slot"
                )
                await self._slots.wait_for(lambda: not self._at_capacity())
                # Another waiter may have taken the same id meanwhile
                if agent_id in self._agents:
                    raise DuplicateAgentError(
                        f'Agent "{agent_id}" is already registered'
                    )

            signal = AbortSignal()
            self._agents[agent_id] = _Entry(
                snapshot=AgentSnapshot(
                    id=agent_id,
                    role=role,
                    task_slug=task_slug,
                    started_at=datetime.now(timezone.utc),
                ),
                signal=signal,
            )

        logger.debug(f"Registered agent {agent_id} ({role})")
        self._notify()
        return signal

    def _remove(self, agent_id: str) -> Optional[_Entry]:
        entry = self._agents.pop(agent_id, None)
        if entry is not None:
            self._wake_waiters()
        return entry

    def _wake_waiters(self) -> None:
        async def _notify_all():
            async with self._slots:
                self._slots.notify_all()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(_notify_all())
        self._wakeups.add(task)
        task.add_done_callback(self._wakeups.discard)

    def release(self, agent_id: str) -> None:
        """Remove an agent. Unknown ids are ignored."""
        if self._remove(agent_id) is not None:
            logger.debug(f"Released agent {agent_id}")
            self._notify()

    def kill(self, agent_id: str, reason: str = "killed") -> bool:
        """Abort and remove an agent. Returns False if the id is unknown."""
        entry = self._remove(agent_id)
        if entry is None:
            return False
        entry.signal.abort(reason)
        logger.info(f"Killed agent {agent_id}: {reason}")
        self._notify()
        return True

    def list(self) -> List[AgentSnapshot]:
        return [entry.snapshot for entry in self._agents.values()]

    def get(self, agent_id: str) -> Optional[AgentSnapshot]:
        entry = self._agents.get(agent_id)
        return entry.snapshot if entry else None

    def has(self, agent_id: str) -> bool:
        return agent_id in self._agents

    @property
    def size(self) -> int:
        return len(self._agents)

    @asynccontextmanager
    async def lease(
        self,
        agent_id: str,
        role: str,
        task_slug: Optional[str] = None,
        *,
        wait: bool = True,
    ) -> AsyncIterator[AbortSignal]:
        """Register for the duration of a block, releasing on every exit path."""
        signal = await self.register(agent_id, role, task_slug, wait=wait)
        try:
            yield signal
        finally:
            self.release(agent_id)

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change([snapshot.to_dict() for snapshot in self.list()])
        except Exception as e:
            logger.error(f"Pool change observer failed: {e}")
