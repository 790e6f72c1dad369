"""
JSON-RPC methods served to WebSocket clients.

Each method validates its params with a pydantic model (INVALID_PARAMS on
failure) and maps orchestration errors to the protocol's domain error codes.
"""

import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, Type
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, field_validator

from collabot.comms import InboundMessage, MessageType, make_channel_message
from collabot.context import load_task_context
from collabot.core import HARNESS_SENDER, Orchestrator
from collabot.errors import (
    HarnessError,
    ProjectNotFoundError,
    RoleNotFoundError,
    TaskNotFoundError,
    UnknownAgentError,
)
from collabot.models import Project
from collabot.registry import get_project
from collabot.serve.protocol import (
    AGENT_NOT_FOUND,
    INVALID_PARAMS,
    PROJECT_NOT_FOUND,
    ROLE_NOT_FOUND,
    TASK_NOT_FOUND,
    RpcError,
)
from collabot.serve.server import CollabotWebSocketServer
from collabot.serve.ws_interface import WebSocketChannel

logger = logging.getLogger(__name__)

ERROR_CODES = {
    TaskNotFoundError: TASK_NOT_FOUND,
    UnknownAgentError: AGENT_NOT_FOUND,
    RoleNotFoundError: ROLE_NOT_FOUND,
    ProjectNotFoundError: PROJECT_NOT_FOUND,
}


def rpc_error_for(error: HarnessError) -> RpcError:
    for error_type, code in ERROR_CODES.items():
        if isinstance(error, error_type):
            return RpcError(code, str(error))
    return RpcError(INVALID_PARAMS, str(error))


# =============================================================================
# Params
# =============================================================================


class _Params(BaseModel):
    model_config = {"populate_by_name": True}


class NoParams(_Params):
    pass


class SubmitPromptParams(_Params):
    content: str
    project: str
    role: Optional[str] = None
    task_slug: Optional[str] = Field(None, alias="taskSlug")

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content is required and must be a non-empty string")
        return v


class CreateTaskParams(_Params):
    project: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name is required and must be a non-empty string")
        return v


class TaskRefParams(_Params):
    project: str
    slug: str


class ProjectParams(_Params):
    project: str


class AgentIdParams(_Params):
    agent_id: str = Field(..., alias="agentId")


def rpc_method(params_model: Type[BaseModel]):
    """Validate params and translate orchestration errors for a method."""

    def decorator(fn: Callable[[Any], Awaitable[Any]]):
        @wraps(fn)
        async def handler(params: Dict[str, Any]) -> Any:
            try:
                args = params_model.model_validate(params or {})
            except ValidationError as e:
                raise RpcError(
                    INVALID_PARAMS,
                    "Invalid params",
                    data=[
                        f"{'.'.join(str(p) for p in issue['loc'])}: {issue['msg']}"
                        for issue in e.errors()
                    ],
                )
            try:
                return await fn(args)
            except HarnessError as e:
                raise rpc_error_for(e)

        return handler

    return decorator


def register_methods(
    server: CollabotWebSocketServer,
    orchestrator: Orchestrator,
    channel: WebSocketChannel,
) -> None:
    """Install the collabot method table on a server."""
    pool = orchestrator.pool
    task_store = orchestrator.task_store

    def resolve_project(name: str) -> Project:
        return get_project(orchestrator.projects, name)

    async def run_task(message: InboundMessage) -> None:
        try:
            await orchestrator.handle_task(message, channel)
        except Exception as e:
            logger.error(f"submit_prompt: handle_task failed: {e}")
            await channel.send(
                make_channel_message(
                    message.metadata.get("channelId") or message.thread_id,
                    HARNESS_SENDER,
                    MessageType.ERROR,
                    f"Dispatch failed: {e}",
                )
            )

    @rpc_method(NoParams)
    async def list_projects(_: NoParams):
        return {"projects": [p.to_summary() for p in orchestrator.projects.values()]}

    @rpc_method(SubmitPromptParams)
    async def submit_prompt(args: SubmitPromptParams):
        project = resolve_project(args.project)
        if args.role is not None and args.role not in orchestrator.roles:
            raise RoleNotFoundError(f'Role "{args.role}" not found')
        if args.task_slug is not None and not task_store.has_task(project.name, args.task_slug):
            raise TaskNotFoundError(f'Task "{args.task_slug}" not found')

        thread_id = f"ws-{uuid4().hex[:12]}"
        metadata: Dict[str, Any] = {}
        if args.task_slug:
            metadata["taskSlug"] = args.task_slug
        message = InboundMessage(
            id=thread_id,
            content=args.content,
            thread_id=thread_id,
            source="ws",
            project=project.name,
            role=args.role,
            metadata=metadata,
        )
        # Fire and forget; progress arrives as notifications
        server.spawn(run_task(message))
        return {"threadId": thread_id, "taskSlug": args.task_slug}

    @rpc_method(CreateTaskParams)
    async def create_task(args: CreateTaskParams):
        project = resolve_project(args.project)
        task = task_store.create_task(project.name, args.name, description=args.description)
        return {
            "slug": task.slug,
            "taskDir": str(task.task_dir),
            "slugModified": task.slug_modified,
        }

    @rpc_method(TaskRefParams)
    async def close_task(args: TaskRefParams):
        project = resolve_project(args.project)
        task_store.close_task(project.name, args.slug)
        return {"success": True}

    @rpc_method(AgentIdParams)
    async def kill_agent(args: AgentIdParams):
        if not pool.kill(args.agent_id):
            raise UnknownAgentError(f'Agent "{args.agent_id}" not found')
        orchestrator.tracker.delete(args.agent_id)
        return {"success": True, "message": "Agent killed"}

    @rpc_method(NoParams)
    async def list_agents(_: NoParams):
        return {"agents": [agent.to_dict() for agent in pool.list()]}

    @rpc_method(ProjectParams)
    async def list_tasks(args: ProjectParams):
        project = resolve_project(args.project)
        return {"tasks": task_store.list_tasks(project.name)}

    @rpc_method(TaskRefParams)
    async def get_task_context(args: TaskRefParams):
        project = resolve_project(args.project)
        if not task_store.has_task(project.name, args.slug):
            raise TaskNotFoundError(f'Task "{args.slug}" not found')
        return {"context": load_task_context(task_store.task_dir(project.name, args.slug))}

    for method in (
        list_projects,
        submit_prompt,
        create_task,
        close_task,
        kill_agent,
        list_agents,
        list_tasks,
        get_task_context,
    ):
        server.add_method(method.__name__, method)
