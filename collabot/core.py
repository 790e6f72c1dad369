"""
Orchestration entry points.

``Orchestrator.handle_task`` is what every front-end calls with an inbound
request. ``Orchestrator.draft_agent`` is the pool primitive underneath it,
also used when an agent drafts another agent through its tools.
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple
from uuid import uuid4

from collabot.comms import (
    ChannelStatus,
    CommunicationProvider,
    InboundMessage,
    MessageType,
    filtered_send,
    make_channel_message,
)
from collabot.config import HarnessConfig
from collabot.context import build_task_context, has_prior_results
from collabot.dispatch import DispatchOptions, dispatch
from collabot.errors import HarnessError, RoleNotFoundError
from collabot.models import AgentEvent, DispatchResult, Project, RoleDefinition
from collabot.monitor import LoopThresholds
from collabot.pool import AgentPool
from collabot.registry import get_project
from collabot.runners import AgentRunner
from collabot.tasks import DispatchRecord, DispatchRecordResult, TaskHandle, TaskStore
from collabot.tools import (
    ToolContext,
    ToolSurface,
    create_full_surface,
    create_readonly_surface,
)
from collabot.tracker import DispatchTracker

logger = logging.getLogger(__name__)

HARNESS_SENDER = "Collabot"
MAX_RESULT_TEXT = 3000


def format_result(result: DispatchResult) -> str:
    """Render a dispatch result for a human-facing channel."""
    if result.status == "completed":
        sr = result.structured_result
        if sr is not None:
            lines = [f"*Status:* {sr.status}", f"*Summary:* {sr.summary}"]
            if sr.changes:
                lines += ["", "*Changes:*"] + [f"• {change}" for change in sr.changes]
            if sr.issues:
                lines += ["", "*Issues:*"] + [f"• {issue}" for issue in sr.issues]
            if sr.questions:
                lines += ["", "*Agent has questions:*"]
                lines += [f"{i}. {q}" for i, q in enumerate(sr.questions, start=1)]
            if sr.pr_url:
                lines += ["", f"*PR:* {sr.pr_url}"]
            return "\n".join(lines)

        if result.result:
            body = result.result
            if len(body) > MAX_RESULT_TEXT:
                logger.debug(f"Full agent result: {body}")
                body = body[:MAX_RESULT_TEXT] + "\n\n_(truncated, full result in logs)_"
            return body
        return "*Agent completed*"

    if result.status == "aborted":
        if result.error == "stall":
            return "*Agent timed out*"
        reason = f" ({result.error})" if result.error else ""
        return f"*Agent aborted*{reason}"

    error = f"\nError: {result.error}" if result.error else ""
    return f"*Agent crashed*{error}"


def new_agent_id(role: str) -> str:
    return f"{role}-{uuid4().hex[:8]}"


class ToolSurfaces:
    """The shared read-only surface and a factory for task-scoped full ones."""

    def __init__(self, orchestrator: "Orchestrator"):
        self._orchestrator = orchestrator
        self.readonly: ToolSurface = create_readonly_surface(orchestrator._tool_context())

    def create_full(
        self,
        task_slug: Optional[str],
        task_dir: Optional[Path],
        project: str,
    ) -> ToolSurface:
        ctx = self._orchestrator._tool_context(
            parent_project=project,
            parent_task_slug=task_slug,
            parent_task_dir=task_dir,
        )
        return create_full_surface(ctx)

    def for_role(
        self,
        role: RoleDefinition,
        task_slug: Optional[str],
        task_dir: Optional[Path],
        project: str,
    ) -> ToolSurface:
        if role.can_draft():
            return self.create_full(task_slug, task_dir, project)
        return self.readonly


class Orchestrator:
    def __init__(
        self,
        config: HarnessConfig,
        roles: Dict[str, RoleDefinition],
        projects: Dict[str, Project],
        task_store: TaskStore,
        runner: AgentRunner,
        pool: Optional[AgentPool] = None,
        tracker: Optional[DispatchTracker] = None,
    ):
        self.config = config
        self.roles = roles
        self.projects = projects
        self.task_store = task_store
        self.runner = runner
        self.pool = pool or AgentPool(config.pool.max_concurrent)
        self.tracker = tracker or DispatchTracker()
        self.thresholds = LoopThresholds(
            repeat_warn=config.monitor.repeat_warn,
            repeat_kill=config.monitor.repeat_kill,
            ping_pong_warn=config.monitor.ping_pong_warn,
            ping_pong_kill=config.monitor.ping_pong_kill,
        )
        self.tool_surfaces = ToolSurfaces(self)

    def _tool_context(self, **scope) -> ToolContext:
        return ToolContext(
            pool=self.pool,
            projects=self.projects,
            roles=self.roles,
            task_store=self.task_store,
            tracker=self.tracker,
            draft_fn=self._draft_child,
            **scope,
        )

    async def _draft_child(
        self,
        role: str,
        prompt: str,
        *,
        agent_id: str,
        task_slug: Optional[str],
        task_dir: Optional[Path],
        cwd: str,
    ) -> DispatchResult:
        """Draft function handed to the tool surface for agent-drafted agents."""
        role_def = self.roles.get(role)
        surface = self.tool_surfaces.readonly
        if role_def is not None and task_dir is not None:
            project = self.task_store.load_manifest(task_dir).project
            surface = self.tool_surfaces.for_role(role_def, task_slug, task_dir, project)
        return await self.draft_agent(
            role,
            prompt,
            None,
            agent_id=agent_id,
            task_slug=task_slug,
            task_dir=task_dir,
            cwd=cwd,
            tool_surface=surface,
        )

    async def draft_agent(
        self,
        role: str,
        prompt: str,
        adapter: Optional[CommunicationProvider] = None,
        *,
        agent_id: Optional[str] = None,
        task_slug: Optional[str] = None,
        task_dir: Optional[Path] = None,
        channel_id: Optional[str] = None,
        cwd: Optional[str] = None,
        tool_surface: Optional[ToolSurface] = None,
    ) -> DispatchResult:
        """Run one agent under a pool slot.

        Registration waits for a free slot when the pool is full. The slot is
        released on every exit path.

        Raises:
            HarnessError: If no working directory is given
        """
        if not cwd:
            raise HarnessError(
                f"No cwd provided for draft_agent (role: {role}). "
                "Project paths must resolve a working directory."
            )

        agent_id = agent_id or new_agent_id(role)
        journal_file = (
            self.task_store.next_journal_file(task_dir, role) if task_dir else None
        )

        on_loop_warning = None
        on_event = None
        if adapter is not None and channel_id is not None:

            async def on_loop_warning(pattern: str, count: int) -> None:
                await adapter.send(
                    make_channel_message(
                        channel_id,
                        HARNESS_SENDER,
                        MessageType.WARNING,
                        f"Agent appears stuck in a loop: `{pattern}` "
                        f"({count} repetitions). Still running.",
                    )
                )

            async def on_event(event: AgentEvent) -> None:
                await filtered_send(
                    adapter,
                    make_channel_message(
                        channel_id, role, event.type, event.content, event.metadata
                    ),
                )

        async with self.pool.lease(agent_id, role, task_slug) as signal:
            return await dispatch(
                prompt,
                DispatchOptions(
                    role=role,
                    cwd=cwd,
                    task_dir=task_dir,
                    journal_file=journal_file,
                    signal=signal,
                    tools=tool_surface,
                    on_event=on_event,
                    on_loop_warning=on_loop_warning,
                    thresholds=self.thresholds,
                    window_size=self.config.monitor.window_size,
                ),
                self.runner,
                self.roles,
                self.config,
            )

    def _route(
        self, message: InboundMessage, project: Project
    ) -> Tuple[RoleDefinition, Optional[str]]:
        """Pick the role for a request and any working directory its rule sets.

        An explicit role wins. Otherwise the first routing rule matching the
        request text, then the routing default, then the project's first role.
        """
        role_name = message.role
        routed_cwd = None
        if not role_name:
            routing = self.config.routing
            rule = routing.match(message.content, project.roles)
            if rule is not None:
                role_name = rule.role
                if rule.cwd:
                    routed_cwd = os.path.normpath(os.path.join(project.paths[0], rule.cwd))
                logger.info(f"Routed request to {role_name} via /{rule.pattern}/")
            elif routing.default in project.roles:
                role_name = routing.default
            else:
                role_name = project.roles[0]

        role = self.roles.get(role_name)
        if role is None:
            raise RoleNotFoundError(f'Role "{role_name}" not found')
        if role_name not in project.roles:
            raise RoleNotFoundError(
                f'Role "{role_name}" is not available for project "{project.name}". '
                f"Available: {', '.join(project.roles)}"
            )
        return role, routed_cwd

    def _resolve_task(self, message: InboundMessage, project: Project) -> TaskHandle:
        task_slug = message.metadata.get("taskSlug")
        if task_slug:
            return self.task_store.get_task(project.name, task_slug)
        if message.thread_id:
            existing = self.task_store.find_task_by_thread(project.name, message.thread_id)
            if existing is not None:
                return existing
            return self.task_store.create_task(
                project.name,
                message.content[:80],
                description=message.content,
                thread_id=message.thread_id,
            )
        raise HarnessError("Task slug or thread ID is required for dispatch")

    async def handle_task(
        self, message: InboundMessage, adapter: CommunicationProvider
    ) -> DispatchResult:
        """Dispatch an inbound request and report back on its channel.

        Raises:
            HarnessError: On missing project, unknown role or task, or a
                project without paths
        """
        if not message.project:
            raise HarnessError("Project is required. Adapter must provide project context.")
        project = get_project(self.projects, message.project)
        if not project.has_paths():
            raise HarnessError(
                f"Project has no paths configured. Edit "
                f"{project.name.lower()}/project.yaml to add repo paths."
            )

        role, routed_cwd = self._route(message, project)
        cwd = message.metadata.get("cwdOverride") or routed_cwd or project.paths[0]
        task = self._resolve_task(message, project)

        content = message.content
        manifest = self.task_store.load_manifest(task.task_dir)
        if has_prior_results(manifest):
            content = build_task_context(manifest) + "\n---\n\n" + message.content
            logger.info(f"Reconstructing context for follow-up dispatch on {task.slug}")

        channel_id = message.metadata.get("channelId") or message.thread_id
        await adapter.set_status(channel_id, ChannelStatus.WORKING)
        await adapter.send(
            make_channel_message(
                channel_id,
                HARNESS_SENDER,
                MessageType.LIFECYCLE,
                f"Dispatching to *{role.persona}* ({Path(cwd).name})...",
                {"taskSlug": task.slug},
            )
        )

        started_at = datetime.now(timezone.utc).isoformat()
        result = await self.draft_agent(
            role.name,
            content,
            adapter,
            task_slug=task.slug,
            task_dir=task.task_dir,
            channel_id=channel_id,
            cwd=cwd,
            tool_surface=self.tool_surfaces.for_role(
                role, task.slug, task.task_dir, project.name
            ),
        )

        try:
            self.task_store.record_dispatch(
                task.task_dir,
                DispatchRecord(
                    role=role.name,
                    cwd=cwd,
                    model=result.model or self.config.models.default,
                    started_at=started_at,
                    completed_at=datetime.now(timezone.utc).isoformat(),
                    status=result.status,
                    journal_file=result.journal_file or f"{role.name}.md",
                    result=DispatchRecordResult.from_payload(result.result_payload()),
                ),
            )
        except (OSError, HarnessError) as e:
            logger.error(f"Failed to record dispatch in task manifest: {e}")

        await adapter.set_status(
            channel_id,
            ChannelStatus.COMPLETED if result.status == "completed" else ChannelStatus.FAILED,
        )
        await adapter.send(
            make_channel_message(
                channel_id,
                role.persona,
                MessageType.RESULT,
                format_result(result),
                {"taskSlug": task.slug, "status": result.status},
            )
        )
        return result
