"""Shared fixtures: a harness home on disk and an orchestrator built from it."""

import json
from typing import List

import pytest

from collabot.comms import ChannelMessage, ChannelStatus, CommunicationProvider
from collabot.config import parse_config
from collabot.core import Orchestrator
from collabot.pool import AgentPool
from collabot.registry import load_projects, load_roles
from collabot.runners import EchoRunner
from collabot.tasks import TaskStore
from collabot.tracker import DispatchTracker

CODER_ROLE = """---
name: coder
description: Writes and fixes code
model-hint: sonnet-latest
displayName: Coder
---
You are a careful software engineer. Keep notes in {journal_path}.
"""

LEAD_ROLE = """---
name: lead
description: Breaks work down and drafts other agents
model-hint: opus-latest
permissions:
  - agent-draft
---
You coordinate other agents.
"""

REVIEWER_ROLE = """---
name: reviewer
description: Reviews changes
category: conversational
---
You review code.
"""


class RecordingAdapter(CommunicationProvider):
    """Adapter that keeps everything it is sent."""

    name = "recording"

    def __init__(self, accepted_types=None):
        self.accepted_types = accepted_types
        self.messages: List[ChannelMessage] = []
        self.statuses: List[tuple] = []

    async def send(self, message: ChannelMessage) -> None:
        self.messages.append(message)

    async def set_status(self, channel_id: str, status: ChannelStatus) -> None:
        self.statuses.append((channel_id, status))

    def of_type(self, message_type) -> List[ChannelMessage]:
        return [m for m in self.messages if m.type == message_type]


class FakeWebSocket:
    """Stands in for a Starlette WebSocket in server unit tests."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[dict] = []
        self.closed_with = None

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)


@pytest.fixture
def harness_home(tmp_path):
    """A harness home with three roles and one project."""
    home = tmp_path / "home"
    roles_dir = home / "roles"
    roles_dir.mkdir(parents=True)
    (roles_dir / "coder.md").write_text(CODER_ROLE)
    (roles_dir / "lead.md").write_text(LEAD_ROLE)
    (roles_dir / "reviewer.md").write_text(REVIEWER_ROLE)

    repo = tmp_path / "repo"
    repo.mkdir()

    project_dir = home / "projects" / "webapp"
    project_dir.mkdir(parents=True)
    (project_dir / "project.yaml").write_text(
        "name: Webapp\n"
        "description: The customer web app\n"
        f"paths:\n  - {repo}\n"
        "roles:\n  - coder\n  - lead\n  - reviewer\n"
    )

    empty_dir = home / "projects" / "docs"
    empty_dir.mkdir(parents=True)
    (empty_dir / "project.yaml").write_text(
        "name: docs\ndescription: Documentation only\nroles:\n  - coder\n"
    )

    (home / "config.yaml").write_text(
        "models:\n"
        "  default: claude-sonnet\n"
        "  aliases:\n"
        "    opus-latest: claude-opus\n"
    )
    return home


@pytest.fixture
def config():
    return parse_config({"models": {"default": "claude-sonnet"}})


@pytest.fixture
def roles(harness_home):
    return load_roles(harness_home / "roles")


@pytest.fixture
def projects(harness_home, roles):
    return load_projects(harness_home / "projects", roles)


@pytest.fixture
def task_store(harness_home):
    return TaskStore(harness_home / "projects")


@pytest.fixture
def orchestrator(config, roles, projects, task_store):
    return Orchestrator(
        config=config,
        roles=roles,
        projects=projects,
        task_store=task_store,
        runner=EchoRunner(delay=0),
        pool=AgentPool(),
        tracker=DispatchTracker(),
    )


@pytest.fixture
def adapter():
    return RecordingAdapter()


@pytest.fixture
def make_adapter():
    return RecordingAdapter


@pytest.fixture
def make_socket():
    return FakeWebSocket
