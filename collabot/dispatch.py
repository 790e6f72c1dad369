"""
Single agent dispatch.

``dispatch`` runs one agent session on an engine and turns whatever happens
into a DispatchResult. It watches the session for inactivity, tool-call
loops and repeated non-retryable errors, and stops it through the abort
signal when any of them trips. It never raises for engine failures.
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from pydantic import ValidationError

from collabot.config import HarnessConfig
from collabot.events import EventLog
from collabot.models import AgentEvent, AgentResult, DispatchResult, RoleDefinition
from collabot.monitor import (
    CallWindow,
    ErrorTriplet,
    LoopThresholds,
    ToolCall,
    classify_error,
    detect_error_loop,
    detect_flagged_retry,
    detect_non_retryable,
    normalize_error_snippet,
)
from collabot.pool import AbortSignal
from collabot.runners import (
    STRUCTURED_OUTPUT_TOOL,
    AgentRunner,
    CompactionEvent,
    RunFinished,
    RunRequest,
    SessionStarted,
    TextEvent,
    ThinkingEvent,
    ToolErrorEvent,
    ToolUseEvent,
)

if TYPE_CHECKING:
    from collabot.tools import ToolSurface

logger = logging.getLogger(__name__)

ERROR_WINDOW_SIZE = 20
HARD_LIMIT_SUBTYPES = {"error_max_turns", "error_max_budget_usd"}


@dataclass
class DispatchOptions:
    role: str
    cwd: str
    model: Optional[str] = None
    task_dir: Optional[Path] = None
    journal_file: Optional[str] = None
    signal: Optional[AbortSignal] = None
    tools: Optional["ToolSurface"] = None
    on_event: Optional[Callable[[AgentEvent], Any]] = None
    on_loop_warning: Optional[Callable[[str, int], Any]] = None
    on_compaction: Optional[Callable[[CompactionEvent], Any]] = None
    thresholds: Optional[LoopThresholds] = None
    window_size: int = 10


def extract_tool_target(tool: str, tool_input: Any) -> str:
    """Pick the argument that identifies what a tool call acts on."""
    if not isinstance(tool_input, dict):
        return ""

    if tool in ("Edit", "Read", "Write", "Glob"):
        value = tool_input.get("file_path", tool_input.get("path"))
        return value if isinstance(value, str) else ""
    if tool == "Bash":
        command = tool_input.get("command")
        return command[:80] if isinstance(command, str) else ""
    if tool == "Grep":
        pattern = tool_input.get("pattern")
        return pattern if isinstance(pattern, str) else ""

    # Harness tools, possibly namespaced by the engine (mcp__harness__draft_agent)
    short_name = tool.rsplit("__", 1)[-1]
    if short_name == "draft_agent":
        role = tool_input.get("role")
        return role if isinstance(role, str) else ""
    if short_name in ("await_agent", "kill_agent"):
        agent_id = tool_input.get("agentId")
        return agent_id if isinstance(agent_id, str) else ""
    return ""


async def _emit(callback: Optional[Callable], *args) -> None:
    """Invoke an observer callback, sync or async. Observer errors are logged."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Dispatch observer failed: {e}")


class Journal:
    """Append-only markdown log of a dispatch inside its task directory."""

    def __init__(self, path: Optional[Path]):
        self.path = path

    def _write(self, text: str, mode: str = "a") -> None:
        if self.path is None:
            return
        try:
            with open(self.path, mode) as f:
                f.write(text)
        except OSError as e:
            logger.warning(f"Journal write failed for {self.path}: {e}")

    def create(self, role: str, model: str, cwd: str) -> None:
        started = datetime.now(timezone.utc).isoformat()
        self._write(
            f"# Journal: {role}\n\n"
            f"- Model: {model}\n- Cwd: {cwd}\n- Started: {started}\n\n",
            mode="w",
        )

    def append(self, entry: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        self._write(f"- {stamp} {entry}\n")

    def finish(self, status: str) -> None:
        self._write(f"\n**Status:** {status}\n")


def _validate_structured(candidate: Any) -> Optional[AgentResult]:
    if candidate is None:
        return None
    if isinstance(candidate, str):
        try:
            candidate = json.loads(candidate)
        except json.JSONDecodeError:
            return None
    try:
        return AgentResult.model_validate(candidate)
    except ValidationError as e:
        logger.warning(f"Structured output failed validation, using raw text: {e}")
        return None


async def dispatch(
    prompt: str,
    options: DispatchOptions,
    runner: AgentRunner,
    roles: Dict[str, RoleDefinition],
    config: HarnessConfig,
) -> DispatchResult:
    """Run one agent session to completion.

    Args:
        prompt: The user prompt for the agent
        options: Role, cwd, abort signal, observers and monitor settings
        runner: Engine to run the session on
        roles: Loaded role registry
        config: Harness configuration

    Returns:
        DispatchResult with status completed, aborted or crashed
    """
    role = roles.get(options.role)
    if role is None:
        message = f'Unknown role "{options.role}". Available roles: {", ".join(roles)}'
        logger.error(message)
        return DispatchResult(status="crashed", error=message, duration_ms=0)

    model = options.model or config.resolve_model_id(role.model_hint)
    stall_timeout = config.stall_timeout_for(role.category)
    journal_file = options.journal_file or f"{role.name}.md"
    journal_path = Path(options.task_dir) / journal_file if options.task_dir else None
    signal = options.signal or AbortSignal()
    thresholds = options.thresholds or LoopThresholds(
        repeat_warn=config.monitor.repeat_warn,
        repeat_kill=config.monitor.repeat_kill,
        ping_pong_warn=config.monitor.ping_pong_warn,
        ping_pong_kill=config.monitor.ping_pong_kill,
    )

    system_prompt = role.prompt.replace(
        "{journal_path}", str(journal_path) if journal_path else journal_file
    )
    request = RunRequest(
        prompt=prompt,
        system_prompt=system_prompt,
        model=model,
        cwd=options.cwd,
        tools=options.tools,
        output_schema=AgentResult.model_json_schema(),
    )

    journal = Journal(journal_path)
    journal.create(role.name, model, options.cwd)
    event_log = EventLog.for_dispatch(options.task_dir, journal_file)
    event_log.record("dispatch:start", role=role.name, model=model, cwd=options.cwd)

    logger.info(
        f"Dispatching {role.name} (model={model}, cwd={options.cwd}, "
        f"stall_timeout={stall_timeout}s)"
    )

    start = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    def finish(status: str, **kwargs) -> DispatchResult:
        event_log.record(
            "dispatch:end", status=status, error=kwargs.get("error"), cost=kwargs.get("cost")
        )
        return DispatchResult(
            status=status,
            duration_ms=elapsed_ms(),
            model=model,
            journal_file=journal_file,
            **kwargs,
        )

    calls = CallWindow(options.window_size)
    errors = CallWindow(ERROR_WINDOW_SIZE)
    pending_calls: Dict[str, ToolCall] = {}
    loop_warning_posted = False
    captured_output: Any = None
    finished: Optional[RunFinished] = None
    abort_reason: Optional[str] = None

    events = runner.run(request)
    abort_wait = asyncio.ensure_future(signal.wait())

    try:
        while True:
            next_event = asyncio.ensure_future(events.__anext__())
            done, _ = await asyncio.wait(
                {next_event, abort_wait},
                timeout=stall_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if abort_wait in done or next_event not in done:
                next_event.cancel()
                await asyncio.gather(next_event, return_exceptions=True)
                if abort_wait in done:
                    abort_reason = signal.reason or "aborted"
                else:
                    abort_reason = "stall"
                    signal.abort("stall")
                break

            try:
                event = next_event.result()
            except StopAsyncIteration:
                break

            if isinstance(event, SessionStarted):
                logger.info(f"Agent session started: {event.session_id}")

            elif isinstance(event, TextEvent):
                if event.text.strip():
                    event_log.record("agent:text", text=event.text)
                    await _emit(options.on_event, AgentEvent("chat", event.text))

            elif isinstance(event, ThinkingEvent):
                if event.text.strip():
                    event_log.record("agent:thinking", text=event.text)
                    await _emit(options.on_event, AgentEvent("thinking", event.text))

            elif isinstance(event, ToolUseEvent):
                if event.tool == STRUCTURED_OUTPUT_TOOL:
                    captured_output = event.input
                    continue

                target = extract_tool_target(event.tool, event.input)
                call = ToolCall(tool=event.tool, target=target, timestamp=time.time())
                if event.id:
                    pending_calls[event.id] = call
                journal.append(f"tool_use: {event.tool} {target}".rstrip())
                event_log.record("agent:tool_call", tool=event.tool, target=target or None)

                retry = detect_flagged_retry(call, errors.items())
                if retry is not None:
                    abort_reason = "non_retryable_error"
                    journal.append(
                        f"Agent killed: retried a non-retryable error ({retry.tool}::"
                        f"{retry.target}: {retry.error_snippet[:80]})"
                    )
                    logger.warning(
                        f"Killing {role.name}: retry of non-retryable error in {retry.tool}"
                    )
                    signal.abort("non_retryable_error")
                    break

                await _emit(
                    options.on_event,
                    AgentEvent(
                        "tool_use",
                        f"{event.tool} {target}" if target else event.tool,
                        {"tool": event.tool, "target": target},
                    ),
                )

                calls.push(call)
                detection = detect_error_loop(calls.items(), thresholds)
                if detection is not None:
                    if detection.severity == "kill":
                        abort_reason = "error_loop"
                        journal.append(
                            f"Agent killed: error loop detected "
                            f"({detection.pattern}, {detection.count} repetitions)"
                        )
                        logger.warning(
                            f"Killing {role.name}: error loop {detection.pattern} "
                            f"x{detection.count}"
                        )
                        signal.abort("error_loop")
                        break
                    if not loop_warning_posted:
                        loop_warning_posted = True
                        event_log.record(
                            "harness:loop_warning",
                            pattern=detection.pattern,
                            count=detection.count,
                        )
                        logger.warning(
                            f"Error loop detected: {detection.pattern} x{detection.count}"
                        )
                        await _emit(
                            options.on_loop_warning, detection.pattern, detection.count
                        )

            elif isinstance(event, ToolErrorEvent):
                call = pending_calls.pop(event.tool_use_id or "", None)
                snippet = normalize_error_snippet(event.content)
                category = classify_error(snippet)
                if category:
                    logger.info(f"Tool error classified as {category}: {snippet[:80]}")
                event_log.record(
                    "agent:tool_error",
                    tool=call.tool if call else None,
                    target=call.target if call else None,
                    error=snippet,
                    category=category,
                )
                errors.push(
                    ErrorTriplet(
                        tool=call.tool if call else "unknown",
                        target=call.target if call else "",
                        error_snippet=snippet,
                        timestamp=time.time(),
                        category=category,
                    )
                )
                non_retryable = detect_non_retryable(errors.items())
                if non_retryable is not None:
                    abort_reason = "non_retryable_error"
                    journal.append(
                        f"Agent killed: non-retryable error ({non_retryable.tool}::"
                        f"{non_retryable.target}, {non_retryable.count}x: "
                        f"{non_retryable.error_snippet[:80]})"
                    )
                    logger.warning(
                        f"Killing {role.name}: non-retryable error in "
                        f"{non_retryable.tool} ({non_retryable.count}x)"
                    )
                    signal.abort("non_retryable_error")
                    break

            elif isinstance(event, CompactionEvent):
                logger.warning("Agent context compacted")
                event_log.record(
                    "agent:compaction", trigger=event.trigger, pre_tokens=event.pre_tokens
                )
                await _emit(options.on_compaction, event)

            elif isinstance(event, RunFinished):
                finished = event
                logger.info(
                    f"Agent finished: {event.subtype} (cost={event.cost}, "
                    f"duration_ms={elapsed_ms()})"
                )
                break

    except Exception as e:
        logger.error(f"Agent crashed: {e}")
        journal.append(f"Agent crashed: {e}")
        journal.finish("failed")
        return finish("crashed", error=str(e))
    finally:
        abort_wait.cancel()
        try:
            await events.aclose()
        except Exception as e:
            logger.debug(f"Engine stream did not close cleanly: {e}")

    structured = _validate_structured(captured_output)

    if abort_reason is not None:
        logger.warning(f"Agent {role.name} aborted: {abort_reason}")
        event_log.record("harness:abort", reason=abort_reason)
        journal.append(f"Agent stopped: {abort_reason}")
        journal.finish("stalled" if abort_reason == "stall" else "failed")
        return finish(
            "aborted",
            error=abort_reason,
            structured_result=structured,
            cost=finished.cost if finished else None,
        )

    if finished is None:
        journal.finish("completed")
        return finish("completed", structured_result=structured)

    if finished.subtype != "success":
        journal.append(f"Agent stopped: {finished.subtype}")
        journal.finish("failed")
        logger.warning(f"Agent stopped with error: {finished.subtype}")
        return finish(
            "aborted" if finished.subtype in HARD_LIMIT_SUBTYPES else "crashed",
            error=finished.subtype,
            structured_result=structured,
            cost=finished.cost,
        )

    if structured is None:
        structured = _validate_structured(finished.structured_output)
    if structured is None and finished.result:
        structured = _validate_structured(finished.result)

    journal.finish("completed")
    if structured is not None:
        return finish("completed", structured_result=structured, cost=finished.cost)
    return finish("completed", result=finished.result, cost=finished.cost)
