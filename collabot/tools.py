"""
Harness tools exposed to running agents.

Two tiers are built up front: a read-only surface every agent gets, and a
full surface (read-only plus draft/await/kill) for roles holding the
``agent-draft`` permission. Handlers never raise; failures come back as
``{"error": ...}`` payloads flagged ``is_error``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Type
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from collabot.context import load_task_context
from collabot.errors import TaskNotFoundError, UnknownAgentError
from collabot.models import DispatchResult, Project, RoleDefinition
from collabot.pool import AgentPool
from collabot.tasks import DispatchRecord, DispatchRecordResult, TaskStore
from collabot.tracker import DispatchTracker, TrackedDispatch

logger = logging.getLogger(__name__)


class DraftAgentFn(Protocol):
    def __call__(
        self,
        role: str,
        prompt: str,
        *,
        agent_id: str,
        task_slug: Optional[str],
        task_dir: Optional[Path],
        cwd: str,
    ) -> Awaitable[DispatchResult]: ...


@dataclass(frozen=True)
class ToolResult:
    payload: Dict[str, Any]
    is_error: bool = False


def _error(message: str) -> ToolResult:
    return ToolResult({"error": message}, is_error=True)


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Callable[[Any], Awaitable[ToolResult]]

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(by_alias=True),
        }


class _Args(BaseModel):
    model_config = {"populate_by_name": True}


class NoArgs(_Args):
    pass


class ListTasksArgs(_Args):
    project: Optional[str] = Field(
        None, description="Project name. If omitted, uses parent project."
    )


class GetTaskContextArgs(_Args):
    task_slug: str = Field(..., alias="taskSlug")
    project: Optional[str] = Field(
        None, description="Project name. If omitted, uses parent project."
    )


class DraftAgentArgs(_Args):
    role: str
    prompt: str
    task_slug: Optional[str] = Field(None, alias="taskSlug")


class AgentIdArgs(_Args):
    agent_id: str = Field(..., alias="agentId")


class ToolSurface:
    """An immutable table of tools an agent can call."""

    def __init__(self, tier: str, tools: Iterable[Tool]):
        self.tier = tier
        self._tools = MappingProxyType({tool.name: tool for tool in tools})

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return _error(f'Unknown tool "{name}". Available: {", ".join(self._tools)}')

        try:
            args = tool.args_model.model_validate(arguments or {})
        except ValidationError as e:
            issues = "; ".join(
                f"{'.'.join(str(p) for p in issue['loc'])}: {issue['msg']}"
                for issue in e.errors()
            )
            return _error(f"Invalid arguments for {name}: {issues}")

        try:
            return await tool.handler(args)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return _error(str(e))


@dataclass
class ToolContext:
    """Everything the tool handlers read from, plus the parent agent's scope."""

    pool: AgentPool
    projects: Dict[str, Project]
    roles: Dict[str, RoleDefinition]
    task_store: TaskStore
    tracker: Optional[DispatchTracker] = None
    draft_fn: Optional[DraftAgentFn] = None
    parent_project: Optional[str] = None
    parent_task_slug: Optional[str] = None
    parent_task_dir: Optional[Path] = None

    def resolve_project(self, name: Optional[str]) -> Project:
        resolved = name or self.parent_project
        if not resolved:
            raise LookupError("Project name required (no parent project context)")
        project = self.projects.get(resolved.lower())
        if project is None:
            raise LookupError(f'Project "{resolved}" not found')
        return project


def build_readonly_tools(ctx: ToolContext) -> List[Tool]:
    async def list_agents(_: NoArgs) -> ToolResult:
        return ToolResult({"agents": [a.to_dict() for a in ctx.pool.list()]})

    async def list_projects(_: NoArgs) -> ToolResult:
        return ToolResult({"projects": [p.to_summary() for p in ctx.projects.values()]})

    async def list_tasks(args: ListTasksArgs) -> ToolResult:
        try:
            project = ctx.resolve_project(args.project)
        except LookupError as e:
            return _error(str(e))
        return ToolResult({"tasks": ctx.task_store.list_tasks(project.name)})

    async def get_task_context(args: GetTaskContextArgs) -> ToolResult:
        try:
            project = ctx.resolve_project(args.project)
        except LookupError as e:
            return _error(str(e))
        if not ctx.task_store.has_task(project.name, args.task_slug):
            return _error(f'Task "{args.task_slug}" not found')
        task_dir = ctx.task_store.task_dir(project.name, args.task_slug)
        return ToolResult({"context": load_task_context(task_dir)})

    return [
        Tool("list_agents", "List currently active agents in the pool", NoArgs, list_agents),
        Tool("list_tasks", "List tasks for a project", ListTasksArgs, list_tasks),
        Tool(
            "get_task_context",
            "Get reconstructed context for a task (history of prior dispatches)",
            GetTaskContextArgs,
            get_task_context,
        ),
        Tool("list_projects", "List all registered projects", NoArgs, list_projects),
    ]


def _record_result(result: DispatchResult) -> Optional[DispatchRecordResult]:
    return DispatchRecordResult.from_payload(result.result_payload())


def build_lifecycle_tools(ctx: ToolContext) -> List[Tool]:
    if ctx.tracker is None or ctx.draft_fn is None:
        raise ValueError("Full tool surface requires a tracker and a draft function")
    tracker = ctx.tracker
    draft_fn = ctx.draft_fn

    def _resolve_task_scope(project: Project, task_slug: Optional[str], prompt: str):
        if task_slug and ctx.task_store.has_task(project.name, task_slug):
            return task_slug, ctx.task_store.task_dir(project.name, task_slug)
        if ctx.parent_task_dir is not None:
            return ctx.parent_task_slug, Path(ctx.parent_task_dir)
        handle = ctx.task_store.create_task(
            project.name,
            task_slug or (prompt.strip().splitlines() or ["task"])[0][:80],
            description=prompt,
        )
        return handle.slug, handle.task_dir

    async def draft_agent(args: DraftAgentArgs) -> ToolResult:
        if args.role not in ctx.roles:
            return _error(f'Unknown role "{args.role}". Available: {", ".join(ctx.roles)}')

        if not ctx.parent_project:
            return _error("No parent project context, cannot draft agent")
        project = ctx.projects.get(ctx.parent_project.lower())
        if project is None:
            return _error(f'Project "{ctx.parent_project}" not found')

        if args.role not in project.roles:
            return _error(
                f'Role "{args.role}" not available for project "{project.name}". '
                f"Available: {', '.join(project.roles)}"
            )
        if not project.has_paths():
            return _error(f'Project "{project.name}" has no paths')

        task_slug, task_dir = _resolve_task_scope(project, args.task_slug, args.prompt)
        agent_id = f"{args.role}-{uuid4().hex[:8]}"
        cwd = project.paths[0]

        # Not awaited here; await_agent collects the result
        completion = asyncio.ensure_future(
            draft_fn(
                args.role,
                args.prompt,
                agent_id=agent_id,
                task_slug=task_slug,
                task_dir=task_dir,
                cwd=cwd,
            )
        )
        tracker.track(
            agent_id,
            TrackedDispatch(
                completion=completion,
                role=args.role,
                task_dir=task_dir,
                cwd=cwd,
                task_slug=task_slug,
            ),
        )
        logger.info(f"Drafted {agent_id} on task {task_slug}")
        return ToolResult({"agentId": agent_id, "role": args.role, "taskSlug": task_slug})

    async def await_agent(args: AgentIdArgs) -> ToolResult:
        try:
            tracked = tracker.claim(args.agent_id)
        except UnknownAgentError as e:
            return _error(str(e))

        try:
            result = await tracked.completion
        except asyncio.CancelledError:
            if not tracked.completion.cancelled():
                raise
            return _error(f'Agent "{args.agent_id}" was cancelled')
        except Exception as e:
            return _error(str(e))

        if tracked.task_dir is not None:
            try:
                ctx.task_store.record_dispatch(
                    tracked.task_dir,
                    DispatchRecord(
                        role=tracked.role,
                        cwd=tracked.cwd or "unknown",
                        model=result.model or "unknown",
                        started_at=tracked.started_at.isoformat(),
                        completed_at=datetime.now(timezone.utc).isoformat(),
                        status=result.status,
                        journal_file=result.journal_file or f"{tracked.role}.md",
                        result=_record_result(result),
                    ),
                )
            except (OSError, TaskNotFoundError) as e:
                logger.error(f"Failed to record child dispatch for {args.agent_id}: {e}")

        payload: Dict[str, Any] = {"status": result.status}
        result_payload = result.result_payload()
        if result_payload is not None:
            payload["result"] = result_payload
        if result.cost is not None:
            payload["cost"] = result.cost
        if result.duration_ms is not None:
            payload["duration_ms"] = result.duration_ms
        return ToolResult(payload)

    async def kill_agent(args: AgentIdArgs) -> ToolResult:
        agent_id = args.agent_id
        if ctx.pool.has(agent_id):
            ctx.pool.kill(agent_id)
            tracker.delete(agent_id)
            return ToolResult({"success": True, "message": f'Agent "{agent_id}" killed'})

        tracked = tracker.get(agent_id)
        if tracked is not None:
            if not tracked.completion.done():
                tracked.completion.cancel()
            tracker.delete(agent_id)
            return ToolResult(
                {
                    "success": True,
                    "message": f'Agent "{agent_id}" removed from tracker '
                    "(may have already completed)",
                }
            )

        return ToolResult({"success": False, "message": f'No agent with ID "{agent_id}" found'})

    return [
        Tool(
            "draft_agent",
            "Dispatch a new agent asynchronously. Returns an agent ID immediately; "
            "use await_agent to wait for results.",
            DraftAgentArgs,
            draft_agent,
        ),
        Tool(
            "await_agent",
            "Block until a previously drafted agent completes and return its result.",
            AgentIdArgs,
            await_agent,
        ),
        Tool("kill_agent", "Abort a running agent.", AgentIdArgs, kill_agent),
    ]


def create_readonly_surface(ctx: ToolContext) -> ToolSurface:
    return ToolSurface("readonly", build_readonly_tools(ctx))


def create_full_surface(ctx: ToolContext) -> ToolSurface:
    return ToolSurface("full", build_readonly_tools(ctx) + build_lifecycle_tools(ctx))
