"""
Captured event log for dispatches.

Each dispatch writes one JSON-lines file under ``<task_dir>/events/``, named
after its journal file (``coder.md`` logs to ``events/coder.jsonl``). The
journal is the human summary; the event log is the full chronological
stream a session view is rendered from.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENTS_DIR = "events"
PREVIEW_LENGTH = 120


@dataclass
class CapturedEvent:
    type: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.data:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapturedEvent":
        return cls(type=data["type"], timestamp=data["timestamp"], data=data.get("data") or {})


def dispatch_id_for(journal_file: str) -> str:
    return Path(journal_file).stem


def event_log_path(task_dir: Path, dispatch_id: str) -> Path:
    return Path(task_dir) / EVENTS_DIR / f"{dispatch_id}.jsonl"


class EventLog:
    """Append-only JSON-lines event stream. A log without a path records nothing."""

    def __init__(self, path: Optional[Path]):
        self.path = path

    @classmethod
    def for_dispatch(cls, task_dir: Optional[Path], journal_file: str) -> "EventLog":
        if task_dir is None:
            return cls(None)
        return cls(event_log_path(task_dir, dispatch_id_for(journal_file)))

    def record(self, type: str, **data: Any) -> None:
        if self.path is None:
            return
        event = CapturedEvent(type, data={k: v for k, v in data.items() if v is not None})
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as e:
            logger.warning(f"Event log write failed for {self.path}: {e}")

    def read(self) -> List[CapturedEvent]:
        if self.path is None or not self.path.exists():
            return []
        events = []
        with open(self.path, "r") as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(CapturedEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError) as e:
                    logger.warning(f"Skipping bad event at {self.path}:{line_number}: {e}")
        return events


def list_dispatch_logs(task_dir: Path) -> List[str]:
    """Dispatch ids that have an event log in a task, oldest first."""
    events_dir = Path(task_dir) / EVENTS_DIR
    if not events_dir.is_dir():
        return []
    logs = sorted(events_dir.glob("*.jsonl"), key=lambda p: (p.stat().st_mtime, p.name))
    return [p.stem for p in logs]


def _time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).strftime("%H:%M:%S")
    except ValueError:
        return timestamp


def _truncate(text: str, limit: int = PREVIEW_LENGTH) -> str:
    text = " ".join(str(text).split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _render_event(event: CapturedEvent) -> str:
    data = event.data
    time = _time(event.timestamp)
    if event.type == "agent:text":
        return f"{time} [text] {_truncate(data.get('text', ''))}"
    if event.type == "agent:thinking":
        return f"{time} [thinking] {_truncate(data.get('text', ''))}"
    if event.type == "agent:tool_call":
        target = f" {data['target']}" if data.get("target") else ""
        return f"{time} [tool] {data.get('tool', 'unknown')}{target}"
    if event.type == "agent:tool_error":
        category = f" ({data['category']})" if data.get("category") else ""
        return f"{time} [tool error]{category} {_truncate(data.get('error', ''))}"
    if event.type == "agent:compaction":
        return f"{time} [compaction] {data.get('trigger', 'auto')}"
    if event.type == "harness:loop_warning":
        return f"{time} [loop warning] {data.get('pattern', '')} x{data.get('count', '?')}"
    if event.type == "harness:abort":
        return f"{time} [abort] {data.get('reason', '')}"
    if event.type == "dispatch:end":
        cost = f" ${data['cost']:.2f}" if isinstance(data.get("cost"), (int, float)) else ""
        return f"{time} [end] {data.get('status', '')}{cost}"
    return f"{time} [{event.type}]"


def render_session_view(task_dir: Path, dispatch_id: str) -> Optional[str]:
    """Render a dispatch's event log as a chronological transcript.

    Returns None when the dispatch has no event log.
    """
    if Path(dispatch_id).name != dispatch_id or dispatch_id.startswith("."):
        return None
    log = EventLog(event_log_path(task_dir, dispatch_id))
    events = log.read()
    if not events:
        return None

    start = events[0]
    header = [f"Started: {_time(start.timestamp)}"]
    if start.type == "dispatch:start":
        header.insert(0, f"Model: {start.data.get('model', 'unknown')}")
        role = start.data.get("role", dispatch_id)
    else:
        role = dispatch_id

    lines = [f"## Session: {role} ({dispatch_id})", " | ".join(header), ""]
    lines.extend(_render_event(e) for e in events if e.type != "dispatch:start")
    return "\n".join(lines)
