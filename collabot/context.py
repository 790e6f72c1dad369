"""Task history rendered as a prompt preamble for follow-up agents."""

from pathlib import Path
from typing import List, Optional

from collabot.tasks import TaskManifest, load_manifest


def _section(lines: List[str], title: str, items: Optional[List[str]]) -> None:
    if not items:
        return
    lines.append(f"{title}:")
    lines.extend(f"- {item}" for item in items)


def build_task_context(manifest: TaskManifest) -> str:
    """Render a manifest's original request and prior results as markdown.

    Only dispatches that produced a result are included, in the order they
    were recorded, whatever their status.
    """
    lines = [
        "## Task History",
        "",
        "### Original Request",
        manifest.description or manifest.name,
        "",
    ]

    with_results = [d for d in manifest.dispatches if d.result is not None]
    if with_results:
        lines.append("### Previous Work")
        lines.append("")
        for record in with_results:
            result = record.result
            lines.append(f"**{record.role}** ({record.status})")
            if result.summary and result.summary.strip():
                lines.append(f"Summary: {result.summary}")
            _section(lines, "Changes", result.changes)
            _section(lines, "Issues", result.issues)
            _section(lines, "Questions", result.questions)
            lines.append("")

    return "\n".join(lines)


def has_prior_results(manifest: TaskManifest) -> bool:
    return any(d.result is not None for d in manifest.dispatches)


def load_task_context(task_dir: Path) -> str:
    return build_task_context(load_manifest(task_dir))
