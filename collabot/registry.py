"""Role and project registries loaded from disk.

Roles are markdown files whose YAML frontmatter carries the role metadata and
whose body is the role prompt. Projects live at
``<projects_dir>/<name>/project.yaml``.
"""

import logging
from pathlib import Path
from typing import Dict, Tuple

import yaml
from pydantic import ValidationError

from collabot.errors import ConfigError, ProjectNotFoundError
from collabot.models import Project, RoleDefinition

logger = logging.getLogger(__name__)


def _issues(error: ValidationError) -> str:
    return "\n".join(
        f"  - {'.'.join(str(p) for p in issue['loc'])}: {issue['msg']}"
        for issue in error.errors()
    )


def parse_frontmatter(content: str, filename: str) -> Tuple[dict, str]:
    """Split a markdown document into (frontmatter, body)."""
    if not content.startswith("---"):
        raise ConfigError(
            f"{filename}: missing YAML frontmatter (file must start with ---)"
        )

    after_open = content[3:]
    close_idx = after_open.find("\n---")
    if close_idx == -1:
        raise ConfigError(f"{filename}: frontmatter closing --- not found")

    try:
        frontmatter = yaml.safe_load(after_open[:close_idx]) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{filename}: invalid frontmatter YAML: {e}")

    body = after_open[close_idx + 4 :]
    if body.startswith("\n"):
        body = body[1:]
    return frontmatter, body


def load_roles(roles_dir: Path) -> Dict[str, RoleDefinition]:
    """Load every ``*.md`` role definition in a directory.

    Raises:
        ConfigError: If the directory is missing, empty, or a role is invalid
    """
    roles_dir = Path(roles_dir)
    if not roles_dir.is_dir():
        raise ConfigError(f"Failed to read roles directory ({roles_dir})")

    files = sorted(roles_dir.glob("*.md"))
    if not files:
        raise ConfigError(f"Roles directory contains no .md files: {roles_dir}")

    roles: Dict[str, RoleDefinition] = {}
    for role_file in files:
        frontmatter, body = parse_frontmatter(role_file.read_text(), role_file.name)
        try:
            role = RoleDefinition.model_validate({**frontmatter, "prompt": body})
        except ValidationError as e:
            raise ConfigError(f"{role_file.name}: invalid frontmatter:\n{_issues(e)}")
        roles[role.name] = role

    logger.info(f"Loaded {len(roles)} roles: {', '.join(roles)}")
    return roles


def load_projects(
    projects_dir: Path, roles: Dict[str, RoleDefinition]
) -> Dict[str, Project]:
    """Scan ``projects_dir`` for project manifests.

    Returns a registry keyed by lower-cased project name. Fails fast on schema
    errors, duplicate names, or roles that are not loaded.
    """
    projects: Dict[str, Project] = {}
    projects_dir = Path(projects_dir)
    if not projects_dir.is_dir():
        return projects

    for entry in sorted(p for p in projects_dir.iterdir() if p.is_dir()):
        manifest_path = entry / "project.yaml"
        if not manifest_path.exists():
            continue

        try:
            raw = yaml.safe_load(manifest_path.read_text())
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read {manifest_path}: {e}")

        try:
            project = Project.model_validate(raw or {})
        except ValidationError as e:
            raise ConfigError(
                f"{manifest_path}: invalid project manifest:\n{_issues(e)}"
            )

        key = project.name.lower()
        if key in projects:
            raise ConfigError(f'Duplicate project name "{project.name}" in {manifest_path}')

        for role_name in project.roles:
            if role_name not in roles:
                raise ConfigError(
                    f'{manifest_path}: role "{role_name}" not found. '
                    f"Available: {', '.join(roles)}"
                )

        projects[key] = project

    logger.info(f"Loaded {len(projects)} projects")
    return projects


def get_project(projects: Dict[str, Project], name: str) -> Project:
    project = projects.get(name.lower())
    if project is None:
        available = ", ".join(p.name for p in projects.values()) or "(none)"
        raise ProjectNotFoundError(f'Project "{name}" not found. Available: {available}')
    return project
