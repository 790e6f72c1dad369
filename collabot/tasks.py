"""
Task manifests on disk.

Each task is a directory under ``<projects_dir>/<project>/tasks/<slug>/``
holding a ``task.json`` manifest and the journals written by the agents that
worked on it. Dispatch records are append-only.
"""

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from collabot.errors import TaskNotFoundError

logger = logging.getLogger(__name__)

MANIFEST_FILE = "task.json"

TaskStatus = Literal["open", "closed"]

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
SLUG_MAX_WORDS = 5
SLUG_MAX_LENGTH = 30

# Filler words and routing prefixes dropped when turning a sentence into a slug
STRIP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will
    would could should may might can shall to of in for on with at by from
    it its this that and or but not so if then please just
    api portal frontend ui test e2e playwright backend endpoint app mobile
    """.split()
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DispatchRecordResult:
    summary: str
    changes: Optional[List[str]] = None
    issues: Optional[List[str]] = None
    questions: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"summary": self.summary}
        for key in ("changes", "issues", "questions"):
            value = getattr(self, key)
            if value is not None:
                d[key] = list(value)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchRecordResult":
        return cls(
            summary=data.get("summary", ""),
            changes=data.get("changes"),
            issues=data.get("issues"),
            questions=data.get("questions"),
        )

    @classmethod
    def from_payload(
        cls, payload: Optional[Dict[str, Any]]
    ) -> Optional["DispatchRecordResult"]:
        """Keep only the persisted subset of a dispatch result payload."""
        if not payload:
            return None
        return cls.from_dict(payload)


@dataclass
class DispatchRecord:
    """One agent run against a task. Cost and usage are never persisted."""

    role: str
    cwd: str
    model: str
    started_at: str
    completed_at: str
    status: str
    journal_file: str
    result: Optional[DispatchRecordResult] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "role": self.role,
            "cwd": self.cwd,
            "model": self.model,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "status": self.status,
            "journalFile": self.journal_file,
        }
        if self.result is not None:
            d["result"] = self.result.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchRecord":
        result = data.get("result")
        return cls(
            role=data["role"],
            cwd=data.get("cwd", ""),
            model=data.get("model", ""),
            started_at=data.get("startedAt", ""),
            completed_at=data.get("completedAt", ""),
            status=data.get("status", ""),
            journal_file=data.get("journalFile", ""),
            result=DispatchRecordResult.from_dict(result) if result else None,
        )


@dataclass
class TaskManifest:
    slug: str
    name: str
    project: str
    description: str
    created: str
    status: TaskStatus = "open"
    thread_id: Optional[str] = None
    dispatches: List[DispatchRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "slug": self.slug,
            "name": self.name,
            "project": self.project,
            "description": self.description,
            "status": self.status,
            "created": self.created,
            "dispatches": [record.to_dict() for record in self.dispatches],
        }
        if self.thread_id is not None:
            d["threadTs"] = self.thread_id
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskManifest":
        return cls(
            slug=data["slug"],
            name=data.get("name", data["slug"]),
            project=data.get("project", ""),
            description=data.get("description", ""),
            created=data.get("created", ""),
            status=data.get("status", "open"),
            thread_id=data.get("threadTs"),
            dispatches=[DispatchRecord.from_dict(d) for d in data.get("dispatches", [])],
        )


@dataclass(frozen=True)
class TaskHandle:
    slug: str
    task_dir: Path
    created: str
    thread_id: Optional[str] = None
    slug_modified: bool = False


def generate_slug(name: str) -> Tuple[str, bool]:
    """Turn a task name into a directory-safe slug.

    Names that are already slugs (ignoring case and stray edge hyphens) are
    kept as-is and not reported as modified. Anything else is reduced to its
    first few meaningful words.

    Returns:
        Tuple of (slug, modified)
    """
    trimmed = name.strip().lower().strip("-")
    if SLUG_PATTERN.match(trimmed):
        return trimmed, False

    cleaned = re.sub(r"[^a-z0-9\s]", "", name.lower())
    words = [w for w in cleaned.split() if w not in STRIP_WORDS]
    meaningful = words[:SLUG_MAX_WORDS] or ["task"]
    slug = "-".join(meaningful)[:SLUG_MAX_LENGTH].strip("-")
    return slug or "task", True


def deduplicate_slug(tasks_dir: Path, slug: str) -> Tuple[str, bool]:
    """Append ``-2``, ``-3``, ... until the slug is free in ``tasks_dir``.

    Returns:
        Tuple of (slug, deduplicated)
    """
    tasks_dir = Path(tasks_dir)
    if not (tasks_dir / slug).exists():
        return slug, False
    n = 2
    while (tasks_dir / f"{slug}-{n}").exists():
        n += 1
    return f"{slug}-{n}", True


def next_journal_file(task_dir: Path, role: str) -> str:
    """``role.md`` for the first dispatch, then ``role-2.md``, ``role-3.md``..."""
    task_dir = Path(task_dir)
    base = f"{role}.md"
    if not (task_dir / base).exists():
        return base
    n = 2
    while (task_dir / f"{role}-{n}.md").exists():
        n += 1
    return f"{role}-{n}.md"


def load_manifest(task_dir: Path) -> TaskManifest:
    manifest_path = Path(task_dir) / MANIFEST_FILE
    if not manifest_path.exists():
        raise TaskNotFoundError(f"No task manifest at {manifest_path}")
    with open(manifest_path, "r") as f:
        return TaskManifest.from_dict(json.load(f))


def write_manifest(task_dir: Path, manifest: TaskManifest) -> None:
    """Atomically replace a task's manifest."""
    task_dir = Path(task_dir)
    fd, tmp_path = tempfile.mkstemp(dir=task_dir, prefix=".task-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(manifest.to_dict(), f, indent=2)
            f.write("\n")
        os.replace(tmp_path, task_dir / MANIFEST_FILE)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class TaskStore:
    """Task manifests for every project under a projects directory."""

    def __init__(self, projects_dir: Path):
        self.projects_dir = Path(projects_dir)
        self._locks: Dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def tasks_dir(self, project: str) -> Path:
        return self.projects_dir / project.lower() / "tasks"

    def task_dir(self, project: str, slug: str) -> Path:
        """Directory of a task.

        Raises:
            TaskNotFoundError: If ``slug`` is not a well-formed slug, so a
                name like ``../other/tasks/x`` never leaves the project
        """
        if not SLUG_PATTERN.fullmatch(slug):
            raise TaskNotFoundError(f'Task "{slug}" not found in project "{project}"')
        return self.tasks_dir(project) / slug

    def _lock_for(self, task_dir: Path) -> threading.Lock:
        key = Path(task_dir).resolve()
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def create_task(
        self,
        project: str,
        name: str,
        description: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> TaskHandle:
        """Create a new task directory and manifest.

        The slug is derived from ``name`` and de-duplicated against existing
        tasks. ``slug_modified`` tells the caller the slug differs from the
        name it asked for.
        """
        tasks_dir = self.tasks_dir(project)
        tasks_dir.mkdir(parents=True, exist_ok=True)

        base_slug, modified = generate_slug(name)
        slug, deduplicated = deduplicate_slug(tasks_dir, base_slug)
        task_dir = tasks_dir / slug
        task_dir.mkdir(parents=True)

        manifest = TaskManifest(
            slug=slug,
            name=name,
            project=project,
            description=description or name,
            created=_now(),
            thread_id=thread_id,
        )
        write_manifest(task_dir, manifest)
        logger.info(f"Created task {slug} in project {project}")

        return TaskHandle(
            slug=slug,
            task_dir=task_dir,
            created=manifest.created,
            thread_id=thread_id,
            slug_modified=modified or deduplicated,
        )

    def get_task(self, project: str, slug: str) -> TaskHandle:
        """Look up a task by slug.

        Raises:
            TaskNotFoundError: If the task has no manifest
        """
        task_dir = self.task_dir(project, slug)
        if not (task_dir / MANIFEST_FILE).exists():
            raise TaskNotFoundError(f'Task "{slug}" not found in project "{project}"')
        manifest = load_manifest(task_dir)
        return TaskHandle(
            slug=manifest.slug,
            task_dir=task_dir,
            created=manifest.created,
            thread_id=manifest.thread_id,
        )

    def has_task(self, project: str, slug: str) -> bool:
        if not SLUG_PATTERN.fullmatch(slug):
            return False
        return (self.task_dir(project, slug) / MANIFEST_FILE).exists()

    def _manifests(self, project: str) -> List[Tuple[Path, TaskManifest]]:
        tasks_dir = self.tasks_dir(project)
        if not tasks_dir.is_dir():
            return []

        manifests = []
        for entry in sorted(p for p in tasks_dir.iterdir() if p.is_dir()):
            if not (entry / MANIFEST_FILE).exists():
                continue
            try:
                manifests.append((entry, load_manifest(entry)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable task manifest in {entry}: {e}")
        return manifests

    def find_task_by_thread(self, project: str, thread_id: str) -> Optional[TaskHandle]:
        for task_dir, manifest in self._manifests(project):
            if manifest.thread_id == thread_id:
                return TaskHandle(
                    slug=manifest.slug,
                    task_dir=task_dir,
                    created=manifest.created,
                    thread_id=manifest.thread_id,
                )
        return None

    def list_tasks(
        self, project: str, status: Optional[TaskStatus] = None
    ) -> List[Dict[str, Any]]:
        """Summaries of a project's tasks, optionally filtered by status."""
        summaries = []
        for _, manifest in self._manifests(project):
            if status is not None and manifest.status != status:
                continue
            summaries.append(
                {
                    "slug": manifest.slug,
                    "name": manifest.name,
                    "status": manifest.status,
                    "created": manifest.created,
                    "description": manifest.description,
                    "dispatchCount": len(manifest.dispatches),
                }
            )
        return summaries

    def set_status(self, project: str, slug: str, status: TaskStatus) -> None:
        task_dir = self.task_dir(project, slug)
        if not (task_dir / MANIFEST_FILE).exists():
            raise TaskNotFoundError(f'Task "{slug}" not found in project "{project}"')
        with self._lock_for(task_dir):
            manifest = load_manifest(task_dir)
            manifest.status = status
            write_manifest(task_dir, manifest)
        logger.info(f"Task {slug} is now {status}")

    def close_task(self, project: str, slug: str) -> None:
        self.set_status(project, slug, "closed")

    def load_manifest(self, task_dir: Path) -> TaskManifest:
        return load_manifest(task_dir)

    def record_dispatch(self, task_dir: Path, record: DispatchRecord) -> None:
        """Append a dispatch record to a task manifest.

        Read-modify-write under a per-task lock, so concurrent completions on
        the same task never lose records.
        """
        with self._lock_for(task_dir):
            manifest = load_manifest(task_dir)
            manifest.dispatches.append(record)
            write_manifest(task_dir, manifest)
        logger.debug(f"Recorded {record.role} dispatch ({record.status}) in {task_dir}")

    def next_journal_file(self, task_dir: Path, role: str) -> str:
        return next_journal_file(task_dir, role)
