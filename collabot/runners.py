"""
Agent engines.

An engine runs one agent session and reports what happens as a stream of
typed events. The dispatch wrapper consumes the stream; it never talks to
an engine any other way.

Two engines ship with collabot:

- ``EchoRunner`` answers every prompt with a canned structured result, for
  local testing and demos.
- ``SubprocessRunner`` launches an external agent command and reads a JSONL
  event stream from its stdout. Tool calls the command makes are answered on
  its stdin.
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Union

if TYPE_CHECKING:
    from collabot.tools import ToolSurface

logger = logging.getLogger(__name__)

# Tool the engine calls to hand back the agent's structured result
STRUCTURED_OUTPUT_TOOL = "StructuredOutput"


@dataclass
class RunRequest:
    prompt: str
    system_prompt: str
    model: str
    cwd: str
    tools: Optional["ToolSurface"] = None
    output_schema: Optional[Dict[str, Any]] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class SessionStarted:
    session_id: str
    model: Optional[str] = None


@dataclass
class TextEvent:
    text: str


@dataclass
class ThinkingEvent:
    text: str


@dataclass
class ToolUseEvent:
    tool: str
    input: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class ToolErrorEvent:
    """A tool call that came back with ``is_error`` set."""

    tool_use_id: Optional[str]
    content: str


@dataclass
class CompactionEvent:
    trigger: str = "auto"
    pre_tokens: int = 0


@dataclass
class RunFinished:
    """Terminal event.

    ``subtype`` is ``success`` or an engine error such as
    ``error_max_turns``, ``error_max_budget_usd`` or
    ``error_during_execution``.
    """

    subtype: str
    result: Optional[str] = None
    structured_output: Optional[Dict[str, Any]] = None
    cost: Optional[float] = None
    num_turns: Optional[int] = None


RunnerEvent = Union[
    SessionStarted,
    TextEvent,
    ThinkingEvent,
    ToolUseEvent,
    ToolErrorEvent,
    CompactionEvent,
    RunFinished,
]


class AgentRunner(ABC):
    @abstractmethod
    def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        """Start a session and yield its events, ending with RunFinished."""


class EchoRunner(AgentRunner):
    """Engine that echoes the prompt back as a successful result."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay

    async def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        session_id = f"echo-{int(time.time() * 1000)}"
        yield SessionStarted(session_id=session_id, model=request.model)

        await asyncio.sleep(self.delay)

        lines = request.prompt.strip().splitlines()
        text = f"Echo: {lines[-1] if lines else ''}"
        yield TextEvent(text=text)
        yield RunFinished(
            subtype="success",
            result=text,
            structured_output={"status": "success", "summary": text},
            cost=0.0,
            num_turns=1,
        )


def event_from_dict(data: Dict[str, Any]) -> Optional[RunnerEvent]:
    """Decode one JSONL event line. Unknown types decode to None."""
    event_type = data.get("type")
    if event_type == "session_started":
        return SessionStarted(session_id=data.get("sessionId", ""), model=data.get("model"))
    if event_type == "text":
        return TextEvent(text=data.get("text", ""))
    if event_type == "thinking":
        return ThinkingEvent(text=data.get("text", ""))
    if event_type == "tool_use":
        return ToolUseEvent(
            tool=data.get("name", ""), input=data.get("input") or {}, id=data.get("id")
        )
    if event_type == "tool_error":
        return ToolErrorEvent(tool_use_id=data.get("toolUseId"), content=data.get("content", ""))
    if event_type == "compaction":
        return CompactionEvent(
            trigger=data.get("trigger", "auto"), pre_tokens=data.get("preTokens", 0)
        )
    if event_type == "result":
        return RunFinished(
            subtype=data.get("subtype", "success"),
            result=data.get("result"),
            structured_output=data.get("structuredOutput"),
            cost=data.get("cost"),
            num_turns=data.get("numTurns"),
        )
    return None


class SubprocessRunner(AgentRunner):
    """Engine that drives an external agent command over JSON lines.

    The command receives the request as the first line on stdin, then writes
    one JSON event per line on stdout. When it emits a ``tool_use`` for a tool
    the request exposes, the result is written back on stdin as
    ``{"type": "tool_result", "id": ..., "payload": ..., "isError": ...}``.
    """

    def __init__(self, command: List[str], env: Optional[Dict[str, str]] = None):
        self.command = command
        self.env = env or {}

    def _child_env(self, request: RunRequest) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        env.update(request.env)
        return env

    async def _answer_tool_call(
        self, proc: asyncio.subprocess.Process, request: RunRequest, event: ToolUseEvent
    ) -> None:
        if request.tools is None or event.id is None or not request.tools.has(event.tool):
            return
        result = await request.tools.call(event.tool, event.input)
        reply = {
            "type": "tool_result",
            "id": event.id,
            "payload": result.payload,
            "isError": result.is_error,
        }
        proc.stdin.write((json.dumps(reply) + "\n").encode())
        await proc.stdin.drain()

    async def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=request.cwd or None,
            env=self._child_env(request),
        )
        stderr_task = asyncio.create_task(self._drain_stderr(proc))
        tool_tasks = set()
        finished = False

        try:
            header = {
                "type": "request",
                "prompt": request.prompt,
                "systemPrompt": request.system_prompt,
                "model": request.model,
                "cwd": request.cwd,
                "tools": request.tools.definitions() if request.tools else [],
                "outputSchema": request.output_schema,
            }
            proc.stdin.write((json.dumps(header) + "\n").encode())
            await proc.stdin.drain()

            async for raw in proc.stdout:
                line = raw.decode().strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON engine output: {line[:200]}")
                    continue

                event = event_from_dict(data)
                if event is None:
                    logger.debug(f"Ignoring unknown engine event: {data.get('type')}")
                    continue

                if isinstance(event, ToolUseEvent):
                    task = asyncio.create_task(self._answer_tool_call(proc, request, event))
                    tool_tasks.add(task)
                    task.add_done_callback(tool_tasks.discard)

                yield event

                if isinstance(event, RunFinished):
                    finished = True
                    break

            if not finished:
                returncode = await proc.wait()
                yield RunFinished(
                    subtype="error_during_execution",
                    result=f"Agent process exited with code {returncode} before reporting a result",
                )
        finally:
            for task in tool_tasks:
                task.cancel()
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            stderr_task.cancel()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        async for raw in proc.stderr:
            line = raw.decode().strip()
            if line:
                logger.warning(f"agent subprocess stderr: {line}")
