"""Tests for task manifests and the task store."""

import json
import threading

import pytest

from collabot.errors import TaskNotFoundError
from collabot.tasks import (
    MANIFEST_FILE,
    DispatchRecord,
    DispatchRecordResult,
    TaskStore,
    deduplicate_slug,
    generate_slug,
    next_journal_file,
)


@pytest.fixture
def store(tmp_path):
    return TaskStore(tmp_path / "projects")


def _record(role="coder", status="completed", summary="done", **extra) -> DispatchRecord:
    return DispatchRecord(
        role=role,
        cwd="/src/app",
        model="claude-sonnet",
        started_at="2026-01-01T00:00:00+00:00",
        completed_at="2026-01-01T00:01:00+00:00",
        status=status,
        journal_file=f"{role}.md",
        result=DispatchRecordResult(summary=summary, **extra) if summary else None,
    )


class TestGenerateSlug:
    def test_existing_slug_unmodified(self):
        assert generate_slug("fix-login") == ("fix-login", False)

    def test_case_and_edge_hyphens_ignored(self):
        assert generate_slug("-Fix-Login-") == ("fix-login", False)

    def test_sentence_drops_filler_words(self):
        assert generate_slug("Fix the login bug") == ("fix-login-bug", True)

    def test_punctuation_removed(self):
        assert generate_slug("Add OAuth2 support!") == ("add-oauth2-support", True)

    def test_keeps_five_words(self):
        slug, modified = generate_slug("one two three four five six seven")
        assert slug == "one-two-three-four-five"
        assert modified

    def test_truncated_without_trailing_hyphen(self):
        slug, _ = generate_slug(
            "Implement user authentication flow with refresh tokens"
        )
        assert slug == "implement-user-authentication"
        assert len(slug) <= 30

    def test_only_filler_falls_back(self):
        assert generate_slug("The API") == ("task", True)

    def test_empty_falls_back(self):
        assert generate_slug("!!!") == ("task", True)


class TestDeduplicateSlug:
    def test_free_slug(self, tmp_path):
        assert deduplicate_slug(tmp_path, "fix-login") == ("fix-login", False)

    def test_appends_counter(self, tmp_path):
        (tmp_path / "fix-login").mkdir()
        (tmp_path / "fix-login-2").mkdir()
        assert deduplicate_slug(tmp_path, "fix-login") == ("fix-login-3", True)


class TestJournalNaming:
    def test_first_then_numbered(self, tmp_path):
        assert next_journal_file(tmp_path, "coder") == "coder.md"
        (tmp_path / "coder.md").write_text("")
        assert next_journal_file(tmp_path, "coder") == "coder-2.md"
        (tmp_path / "coder-2.md").write_text("")
        assert next_journal_file(tmp_path, "coder") == "coder-3.md"
        assert next_journal_file(tmp_path, "reviewer") == "reviewer.md"


class TestTaskStore:
    def test_create_task_writes_manifest(self, store):
        handle = store.create_task("Webapp", "Fix the login bug", thread_id="t-1")

        assert handle.slug == "fix-login-bug"
        assert handle.slug_modified
        assert handle.task_dir == store.projects_dir / "webapp" / "tasks" / "fix-login-bug"

        data = json.loads((handle.task_dir / MANIFEST_FILE).read_text())
        assert data["slug"] == "fix-login-bug"
        assert data["name"] == "Fix the login bug"
        assert data["description"] == "Fix the login bug"
        assert data["status"] == "open"
        assert data["threadTs"] == "t-1"
        assert data["dispatches"] == []

    def test_duplicate_names_deduplicate(self, store):
        first = store.create_task("webapp", "fix-login")
        second = store.create_task("webapp", "fix-login")

        assert first.slug == "fix-login"
        assert not first.slug_modified
        assert second.slug == "fix-login-2"
        assert second.slug_modified

    def test_get_task(self, store):
        created = store.create_task("webapp", "fix-login", thread_id="t-9")
        handle = store.get_task("webapp", "fix-login")
        assert handle.task_dir == created.task_dir
        assert handle.thread_id == "t-9"

    def test_get_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            store.get_task("webapp", "nope")
        assert not store.has_task("webapp", "nope")

    @pytest.mark.parametrize(
        "slug", ["../../docs/tasks/secret", "..", "fix/login", "Fix-Login", "fix-login\n"]
    )
    def test_malformed_slug_stays_inside_project(self, store, slug):
        store.create_task("docs", "secret")
        assert not store.has_task("webapp", slug)
        with pytest.raises(TaskNotFoundError):
            store.task_dir("webapp", slug)
        with pytest.raises(TaskNotFoundError):
            store.get_task("webapp", slug)

    def test_find_task_by_thread(self, store):
        store.create_task("webapp", "one", thread_id="t-1")
        store.create_task("webapp", "two", thread_id="t-2")

        assert store.find_task_by_thread("webapp", "t-2").slug == "two"
        assert store.find_task_by_thread("webapp", "t-3") is None
        assert store.find_task_by_thread("other", "t-1") is None

    def test_list_and_close(self, store):
        store.create_task("webapp", "one")
        store.create_task("webapp", "two")
        store.close_task("webapp", "one")

        all_tasks = store.list_tasks("webapp")
        assert [t["slug"] for t in all_tasks] == ["one", "two"]

        open_tasks = store.list_tasks("webapp", status="open")
        assert [t["slug"] for t in open_tasks] == ["two"]
        assert open_tasks[0]["dispatchCount"] == 0

    def test_close_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            store.close_task("webapp", "nope")

    def test_unreadable_manifest_skipped(self, store):
        store.create_task("webapp", "good")
        broken = store.tasks_dir("webapp") / "broken"
        broken.mkdir()
        (broken / MANIFEST_FILE).write_text("{not json")

        assert [t["slug"] for t in store.list_tasks("webapp")] == ["good"]

    def test_record_dispatch_round_trip(self, store):
        handle = store.create_task("webapp", "fix-login")
        store.record_dispatch(
            handle.task_dir, _record(changes=["auth.py"], issues=None)
        )

        data = json.loads((handle.task_dir / MANIFEST_FILE).read_text())
        record = data["dispatches"][0]
        assert record["startedAt"] == "2026-01-01T00:00:00+00:00"
        assert record["journalFile"] == "coder.md"
        assert record["result"] == {"summary": "done", "changes": ["auth.py"]}
        assert "cost" not in record

        manifest = store.load_manifest(handle.task_dir)
        assert manifest.dispatches[0].result.changes == ["auth.py"]

    def test_concurrent_records_are_not_lost(self, store):
        handle = store.create_task("webapp", "busy")

        threads = [
            threading.Thread(
                target=store.record_dispatch,
                args=(handle.task_dir, _record(role=f"agent{i}")),
            )
            for i in range(10)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.load_manifest(handle.task_dir).dispatches) == 10
