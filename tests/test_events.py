"""Tests for the captured dispatch event log and session view."""

import json

from collabot.events import (
    CapturedEvent,
    EventLog,
    event_log_path,
    list_dispatch_logs,
    render_session_view,
)


class TestEventLog:
    def test_record_and_read(self, tmp_path):
        log = EventLog.for_dispatch(tmp_path, "coder-2.md")
        assert log.path == tmp_path / "events" / "coder-2.jsonl"

        log.record("agent:tool_call", tool="Read", target="a.py")
        log.record("agent:text", text="hello", extra=None)

        events = log.read()
        assert [e.type for e in events] == ["agent:tool_call", "agent:text"]
        assert events[0].data == {"tool": "Read", "target": "a.py"}
        assert events[1].data == {"text": "hello"}

    def test_without_task_records_nothing(self, tmp_path):
        log = EventLog.for_dispatch(None, "coder.md")
        log.record("agent:text", text="hello")
        assert log.read() == []
        assert list(tmp_path.iterdir()) == []

    def test_bad_lines_skipped(self, tmp_path):
        path = event_log_path(tmp_path, "coder")
        path.parent.mkdir()
        good = CapturedEvent("agent:text", "2026-01-01T10:00:00+00:00", {"text": "ok"})
        path.write_text("{broken\n\n" + json.dumps(good.to_dict()) + "\n")

        assert EventLog(path).read() == [good]

    def test_list_dispatch_logs(self, tmp_path):
        assert list_dispatch_logs(tmp_path) == []
        EventLog.for_dispatch(tmp_path, "coder.md").record("dispatch:start")
        assert list_dispatch_logs(tmp_path) == ["coder"]


class TestSessionView:
    def _write(self, task_dir, dispatch_id, events):
        path = event_log_path(task_dir, dispatch_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(json.dumps(e.to_dict()) + "\n" for e in events))

    def test_renders_events_in_order(self, tmp_path):
        stamp = "2026-01-01T10:00:00+00:00"
        self._write(
            tmp_path,
            "coder",
            [
                CapturedEvent("dispatch:start", stamp, {"role": "coder", "model": "claude-sonnet"}),
                CapturedEvent("agent:tool_call", stamp, {"tool": "Read", "target": "a.py"}),
                CapturedEvent(
                    "agent:tool_error",
                    stamp,
                    {"error": "EACCES: permission denied", "category": "permission_denied"},
                ),
                CapturedEvent("agent:text", stamp, {"text": "x" * 200}),
                CapturedEvent("harness:abort", stamp, {"reason": "non_retryable_error"}),
                CapturedEvent("dispatch:end", stamp, {"status": "aborted", "cost": 0.5}),
            ],
        )

        view = render_session_view(tmp_path, "coder")
        lines = view.splitlines()
        assert lines[0] == "## Session: coder (coder)"
        assert lines[1] == "Model: claude-sonnet | Started: 10:00:00"
        assert lines[3] == "10:00:00 [tool] Read a.py"
        assert lines[4] == "10:00:00 [tool error] (permission_denied) EACCES: permission denied"
        assert lines[5].endswith("...")
        assert len(lines[5]) == len("10:00:00 [text] ") + 120
        assert lines[6] == "10:00:00 [abort] non_retryable_error"
        assert lines[7] == "10:00:00 [end] aborted $0.50"

    def test_missing_dispatch(self, tmp_path):
        assert render_session_view(tmp_path, "coder") is None

    def test_path_like_dispatch_id_rejected(self, tmp_path):
        outside = tmp_path / "outside"
        self._write(outside, "coder", [CapturedEvent("dispatch:start")])
        task_dir = tmp_path / "task"
        task_dir.mkdir()

        assert render_session_view(task_dir, "../../outside/events/coder") is None
