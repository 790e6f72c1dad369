"""Tests for the tool surfaces handed to running agents."""

import asyncio

import pytest

from collabot.models import AgentResult, DispatchResult
from collabot.pool import AgentPool
from collabot.tools import ToolContext, create_full_surface, create_readonly_surface
from collabot.tracker import DispatchTracker


class FakeDrafter:
    """Draft function that registers with the pool and waits to be released."""

    def __init__(self, pool: AgentPool):
        self.pool = pool
        self.calls = []
        self.release = asyncio.Event()

    async def __call__(self, role, prompt, *, agent_id, task_slug, task_dir, cwd):
        self.calls.append(
            {"role": role, "prompt": prompt, "agent_id": agent_id, "task_slug": task_slug,
             "task_dir": task_dir, "cwd": cwd}
        )
        async with self.pool.lease(agent_id, role, task_slug) as signal:
            release = asyncio.ensure_future(self.release.wait())
            aborted = asyncio.ensure_future(signal.wait())
            await asyncio.wait({release, aborted}, return_when=asyncio.FIRST_COMPLETED)
            release.cancel()
            aborted.cancel()
            if signal.aborted:
                return DispatchResult(status="aborted", error=signal.reason, duration_ms=1)
        return DispatchResult(
            status="completed",
            structured_result=AgentResult(status="success", summary=f"{role} done"),
            cost=0.5,
            duration_ms=10,
            model="claude-sonnet",
            journal_file=f"{role}.md",
        )


@pytest.fixture
def pool():
    return AgentPool()


@pytest.fixture
def drafter(pool):
    return FakeDrafter(pool)


@pytest.fixture
def parent_task(task_store):
    return task_store.create_task("Webapp", "parent-task")


@pytest.fixture
def full_surface(pool, drafter, projects, roles, task_store, parent_task):
    ctx = ToolContext(
        pool=pool,
        projects=projects,
        roles=roles,
        task_store=task_store,
        tracker=DispatchTracker(),
        draft_fn=drafter,
        parent_project="Webapp",
        parent_task_slug=parent_task.slug,
        parent_task_dir=parent_task.task_dir,
    )
    return create_full_surface(ctx)


@pytest.fixture
def readonly_surface(pool, projects, roles, task_store):
    ctx = ToolContext(pool=pool, projects=projects, roles=roles, task_store=task_store)
    return create_readonly_surface(ctx)


class TestSurfaceTiers:
    def test_readonly_tools(self, readonly_surface):
        assert readonly_surface.tier == "readonly"
        assert set(readonly_surface.names) == {
            "list_agents",
            "list_tasks",
            "get_task_context",
            "list_projects",
        }

    def test_full_tools(self, full_surface):
        assert full_surface.tier == "full"
        assert {"draft_agent", "await_agent", "kill_agent"} <= set(full_surface.names)

    def test_definitions_use_wire_names(self, full_surface):
        definitions = {d["name"]: d for d in full_surface.definitions()}
        schema = definitions["await_agent"]["input_schema"]
        assert schema["required"] == ["agentId"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, readonly_surface):
        result = await readonly_surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        assert result.is_error
        assert "Unknown tool" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, full_surface):
        result = await full_surface.call("draft_agent", {"role": "coder"})
        assert result.is_error
        assert "prompt" in result.payload["error"]


class TestReadonlyTools:
    @pytest.mark.asyncio
    async def test_list_projects(self, readonly_surface):
        result = await readonly_surface.call("list_projects")
        names = {p["name"] for p in result.payload["projects"]}
        assert names == {"Webapp", "docs"}

    @pytest.mark.asyncio
    async def test_list_tasks_needs_project(self, readonly_surface):
        result = await readonly_surface.call("list_tasks", {})
        assert result.is_error
        assert "Project name required" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_list_tasks(self, readonly_surface, task_store):
        task_store.create_task("webapp", "fix-login")
        result = await readonly_surface.call("list_tasks", {"project": "webapp"})
        assert [t["slug"] for t in result.payload["tasks"]] == ["fix-login"]

    @pytest.mark.asyncio
    async def test_get_task_context(self, readonly_surface, task_store):
        task_store.create_task("webapp", "fix-login", description="Fix the login")
        result = await readonly_surface.call(
            "get_task_context", {"project": "webapp", "taskSlug": "fix-login"}
        )
        assert "Fix the login" in result.payload["context"]

        missing = await readonly_surface.call(
            "get_task_context", {"project": "webapp", "taskSlug": "nope"}
        )
        assert missing.is_error

    @pytest.mark.asyncio
    async def test_get_task_context_rejects_paths_out_of_project(
        self, readonly_surface, task_store
    ):
        task_store.create_task("docs", "secret-plan", description="docs-only private task")
        result = await readonly_surface.call(
            "get_task_context",
            {"project": "webapp", "taskSlug": "../../docs/tasks/secret-plan"},
        )
        assert result.is_error
        assert "private task" not in str(result.payload)

    @pytest.mark.asyncio
    async def test_list_agents(self, readonly_surface, pool):
        await pool.register("coder-1", "coder", "fix-login")
        result = await readonly_surface.call("list_agents")
        assert result.payload["agents"][0]["id"] == "coder-1"
        assert result.payload["agents"][0]["taskSlug"] == "fix-login"


class TestDraftAndAwait:
    @pytest.mark.asyncio
    async def test_draft_returns_immediately(self, full_surface, drafter, parent_task):
        result = await full_surface.call("draft_agent", {"role": "coder", "prompt": "Write tests"})

        assert not result.is_error
        agent_id = result.payload["agentId"]
        assert agent_id.startswith("coder-")
        assert result.payload["taskSlug"] == parent_task.slug

        # The draft is running in the background, not finished
        await asyncio.sleep(0)
        assert len(drafter.calls) == 1
        assert drafter.calls[0]["task_dir"] == parent_task.task_dir
        assert drafter.calls[0]["cwd"].endswith("repo")

        drafter.release.set()
        awaited = await full_surface.call("await_agent", {"agentId": agent_id})
        assert awaited.payload["status"] == "completed"
        assert awaited.payload["result"] == {"status": "success", "summary": "coder done"}
        assert awaited.payload["cost"] == 0.5
        assert awaited.payload["duration_ms"] == 10

    @pytest.mark.asyncio
    async def test_await_records_dispatch(self, full_surface, drafter, parent_task, task_store):
        drafted = await full_surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        drafter.release.set()
        await full_surface.call("await_agent", {"agentId": drafted.payload["agentId"]})

        manifest = task_store.load_manifest(parent_task.task_dir)
        assert len(manifest.dispatches) == 1
        record = manifest.dispatches[0]
        assert record.role == "coder"
        assert record.status == "completed"
        assert record.result.summary == "coder done"

    @pytest.mark.asyncio
    async def test_await_twice(self, full_surface, drafter):
        drafted = await full_surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        drafter.release.set()
        agent_id = drafted.payload["agentId"]

        first = await full_surface.call("await_agent", {"agentId": agent_id})
        second = await full_surface.call("await_agent", {"agentId": agent_id})

        assert not first.is_error
        assert second.is_error
        assert agent_id in second.payload["error"]

    @pytest.mark.asyncio
    async def test_concurrent_awaits_consume_once(
        self, full_surface, drafter, parent_task, task_store
    ):
        drafted = await full_surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        agent_id = drafted.payload["agentId"]

        waiters = asyncio.gather(
            full_surface.call("await_agent", {"agentId": agent_id}),
            full_surface.call("await_agent", {"agentId": agent_id}),
        )
        await asyncio.sleep(0.01)
        drafter.release.set()
        first, second = await waiters

        assert [first.is_error, second.is_error].count(True) == 1
        assert len(task_store.load_manifest(parent_task.task_dir).dispatches) == 1

    @pytest.mark.asyncio
    async def test_draft_with_out_of_project_slug_uses_parent_task(
        self, full_surface, drafter, parent_task, task_store
    ):
        task_store.create_task("docs", "secret-plan")
        drafted = await full_surface.call(
            "draft_agent",
            {"role": "coder", "prompt": "x", "taskSlug": "../../docs/tasks/secret-plan"},
        )
        assert drafted.payload["taskSlug"] == parent_task.slug
        await asyncio.sleep(0)
        assert drafter.calls[0]["task_dir"] == parent_task.task_dir
        drafter.release.set()

    @pytest.mark.asyncio
    async def test_explicit_existing_task(self, full_surface, drafter, task_store):
        other = task_store.create_task("webapp", "other-task")
        drafted = await full_surface.call(
            "draft_agent", {"role": "coder", "prompt": "x", "taskSlug": "other-task"}
        )
        assert drafted.payload["taskSlug"] == "other-task"
        await asyncio.sleep(0)
        assert drafter.calls[0]["task_dir"] == other.task_dir
        drafter.release.set()

    @pytest.mark.asyncio
    async def test_unknown_role(self, full_surface, drafter):
        result = await full_surface.call("draft_agent", {"role": "designer", "prompt": "x"})
        assert result.is_error
        assert "designer" in result.payload["error"]
        assert drafter.calls == []

    @pytest.mark.asyncio
    async def test_project_without_paths(
        self, pool, drafter, projects, roles, task_store
    ):
        ctx = ToolContext(
            pool=pool,
            projects=projects,
            roles=roles,
            task_store=task_store,
            tracker=DispatchTracker(),
            draft_fn=drafter,
            parent_project="docs",
        )
        surface = create_full_surface(ctx)
        result = await surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        assert result.is_error
        assert "no paths" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_new_task_created_without_parent_task(
        self, pool, drafter, projects, roles, task_store
    ):
        ctx = ToolContext(
            pool=pool,
            projects=projects,
            roles=roles,
            task_store=task_store,
            tracker=DispatchTracker(),
            draft_fn=drafter,
            parent_project="webapp",
        )
        surface = create_full_surface(ctx)
        result = await surface.call(
            "draft_agent", {"role": "reviewer", "prompt": "Review the auth module"}
        )
        assert result.payload["taskSlug"] == "review-auth-module"
        assert task_store.has_task("webapp", "review-auth-module")
        drafter.release.set()


class TestKill:
    @pytest.mark.asyncio
    async def test_kill_running_agent(self, full_surface, pool):
        drafted = await full_surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        agent_id = drafted.payload["agentId"]
        await asyncio.sleep(0.01)
        assert pool.has(agent_id)

        killed = await full_surface.call("kill_agent", {"agentId": agent_id})
        assert killed.payload["success"] is True
        assert not pool.has(agent_id)

        # The entry is gone from the tracker too
        awaited = await full_surface.call("await_agent", {"agentId": agent_id})
        assert awaited.is_error

    @pytest.mark.asyncio
    async def test_kill_tracked_but_not_in_pool(self, full_surface, drafter, pool):
        drafted = await full_surface.call("draft_agent", {"role": "coder", "prompt": "x"})
        agent_id = drafted.payload["agentId"]
        drafter.release.set()
        await asyncio.sleep(0.01)
        assert not pool.has(agent_id)

        killed = await full_surface.call("kill_agent", {"agentId": agent_id})
        assert killed.payload["success"] is True
        assert "removed from tracker" in killed.payload["message"]

    @pytest.mark.asyncio
    async def test_kill_unknown(self, full_surface):
        killed = await full_surface.call("kill_agent", {"agentId": "ghost"})
        assert not killed.is_error
        assert killed.payload["success"] is False
