"""
Assembles an Orchestrator from a harness home directory.

Layout::

    <home>/config.yaml
    <home>/roles/*.md
    <home>/projects/<name>/project.yaml
    <home>/projects/<name>/tasks/<slug>/task.json
"""

import logging
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from collabot.config import HarnessConfig, load_config
from collabot.core import Orchestrator
from collabot.errors import ConfigError
from collabot.pool import AgentPool
from collabot.registry import load_projects, load_roles
from collabot.runners import AgentRunner, EchoRunner, SubprocessRunner
from collabot.tasks import TaskStore
from collabot.tracker import DispatchTracker

logger = logging.getLogger(__name__)

ENGINES = ("echo", "subprocess")


@dataclass(frozen=True)
class HarnessPaths:
    home: Path

    @classmethod
    def resolve(cls, home: Optional[str] = None) -> "HarnessPaths":
        return cls(Path(home or os.environ.get("COLLABOT_HOME") or Path.cwd()).expanduser())

    @property
    def config_file(self) -> Path:
        return self.home / "config.yaml"

    @property
    def roles_dir(self) -> Path:
        return self.home / "roles"

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"


def create_runner(engine: str = "echo", agent_command: Optional[str] = None) -> AgentRunner:
    """Build the agent engine named on the command line."""
    if engine == "echo":
        return EchoRunner()
    if engine == "subprocess":
        command = agent_command or os.environ.get("COLLABOT_AGENT_COMMAND")
        if not command:
            raise ConfigError(
                "The subprocess engine needs --agent-command or COLLABOT_AGENT_COMMAND"
            )
        return SubprocessRunner(shlex.split(command))
    raise ConfigError(f'Unknown engine "{engine}". Available: {", ".join(ENGINES)}')


def check_routing(config: HarnessConfig, roles) -> None:
    """Fail fast when routing names a role that does not exist."""
    named = [rule.role for rule in config.routing.rules]
    if config.routing.default:
        named.append(config.routing.default)
    unknown = sorted(set(named) - set(roles))
    if unknown:
        raise ConfigError(f"Routing refers to unknown roles: {', '.join(unknown)}")


def load_orchestrator(
    paths: HarnessPaths,
    runner: AgentRunner,
    config: Optional[HarnessConfig] = None,
) -> Orchestrator:
    """Load config, roles and projects from ``paths`` and wire the core."""
    config = config or load_config(paths.config_file)
    roles = load_roles(paths.roles_dir)
    projects = load_projects(paths.projects_dir, roles)
    check_routing(config, roles)
    logger.info(f"Harness home: {paths.home}")

    return Orchestrator(
        config=config,
        roles=roles,
        projects=projects,
        task_store=TaskStore(paths.projects_dir),
        runner=runner,
        pool=AgentPool(config.pool.max_concurrent),
        tracker=DispatchTracker(),
    )
