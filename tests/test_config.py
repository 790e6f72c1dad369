"""Tests for configuration loading and the role/project registries."""

import logging

import pytest

from collabot.config import load_config, parse_config, resolve_log_level
from collabot.errors import ConfigError, ProjectNotFoundError
from collabot.models import Permission
from collabot.registry import get_project, load_projects, load_roles, parse_frontmatter


class TestConfig:
    def test_defaults(self):
        config = parse_config({"models": {"default": "claude-sonnet"}})
        assert config.defaults.stall_timeout_seconds == 300
        assert config.pool.max_concurrent == 0
        assert config.monitor.repeat_kill == 5
        assert config.ws is None

    def test_models_default_required(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_config({})
        assert "models" in str(exc_info.value)

    def test_invalid_values_listed(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_config(
                {"models": {"default": "m"}, "pool": {"max_concurrent": -1}}
            )
        assert "pool.max_concurrent" in str(exc_info.value)

    def test_resolve_model_id(self):
        config = parse_config(
            {"models": {"default": "claude-sonnet", "aliases": {"opus-latest": "claude-opus"}}}
        )
        assert config.resolve_model_id("opus-latest") == "claude-opus"
        assert config.resolve_model_id("unknown-hint") == "claude-sonnet"

    def test_stall_timeout_by_category(self):
        config = parse_config(
            {
                "models": {"default": "m"},
                "defaults": {"stall_timeout_seconds": 120},
                "categories": {"conversational": {"inactivity_timeout": 30}},
            }
        )
        assert config.stall_timeout_for("conversational") == 30
        assert config.stall_timeout_for("coding") == 120

    def test_routing_first_match_wins(self):
        config = parse_config(
            {
                "models": {"default": "m"},
                "routing": {
                    "default": "coder",
                    "rules": [
                        {"pattern": "^review", "role": "reviewer"},
                        {"pattern": "^review", "role": "lead"},
                        {"pattern": "^plan", "role": "lead", "cwd": "../docs"},
                    ],
                },
            }
        )
        roles = ["coder", "lead", "reviewer"]
        assert config.routing.match("REVIEW the auth module", roles).role == "reviewer"
        assert config.routing.match("plan the sprint", roles).cwd == "../docs"
        assert config.routing.match("fix the bug", roles) is None
        # Rules naming a role outside the allowed set are skipped
        assert config.routing.match("review it", ["coder", "lead"]).role == "lead"

    def test_routing_bad_pattern(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_config(
                {"models": {"default": "m"}, "routing": {"rules": [{"pattern": "(", "role": "x"}]}}
            )
        assert "routing.rules.0.pattern" in str(exc_info.value)

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "models:\n  default: claude-sonnet\nws:\n  port: 9900\n"
        )
        config = load_config(path)
        assert config.ws.port == 9900
        assert config.ws.host == "127.0.0.1"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_log_level_tiers(self, monkeypatch):
        monkeypatch.setenv("COLLABOT_LOG_LEVEL", "minimal")
        assert resolve_log_level() == logging.WARNING
        assert resolve_log_level(verbose=True) == logging.DEBUG
        monkeypatch.delenv("COLLABOT_LOG_LEVEL")
        assert resolve_log_level() == logging.INFO


class TestFrontmatter:
    def test_split(self):
        frontmatter, body = parse_frontmatter("---\nname: x\n---\nHello\n", "x.md")
        assert frontmatter == {"name": "x"}
        assert body == "Hello\n"

    def test_missing(self):
        with pytest.raises(ConfigError):
            parse_frontmatter("name: x\n", "x.md")

    def test_unclosed(self):
        with pytest.raises(ConfigError):
            parse_frontmatter("---\nname: x\n", "x.md")


class TestRoles:
    def test_load_roles(self, harness_home):
        roles = load_roles(harness_home / "roles")

        assert set(roles) == {"coder", "lead", "reviewer"}
        assert roles["coder"].persona == "Coder"
        assert roles["reviewer"].persona == "reviewer"
        assert roles["lead"].permissions == [Permission.AGENT_DRAFT]
        assert roles["lead"].can_draft()
        assert not roles["coder"].can_draft()
        assert "{journal_path}" in roles["coder"].prompt

    def test_invalid_role_name(self, tmp_path):
        (tmp_path / "bad.md").write_text("---\nname: Bad Name\ndescription: x\n---\n")
        with pytest.raises(ConfigError) as exc_info:
            load_roles(tmp_path)
        assert "bad.md" in str(exc_info.value)

    def test_empty_directory(self, tmp_path):
        with pytest.raises(ConfigError):
            load_roles(tmp_path)


class TestProjects:
    def test_load_projects(self, harness_home, roles):
        projects = load_projects(harness_home / "projects", roles)

        assert set(projects) == {"webapp", "docs"}
        assert projects["webapp"].name == "Webapp"
        assert projects["webapp"].has_paths()
        assert not projects["docs"].has_paths()

    def test_lookup_is_case_insensitive(self, projects):
        assert get_project(projects, "WEBAPP").name == "Webapp"

    def test_unknown_project(self, projects):
        with pytest.raises(ProjectNotFoundError) as exc_info:
            get_project(projects, "mobile")
        assert "Webapp" in str(exc_info.value)

    def test_unknown_role_rejected(self, tmp_path, roles):
        project_dir = tmp_path / "api"
        project_dir.mkdir()
        (project_dir / "project.yaml").write_text(
            "name: api\ndescription: API\nroles:\n  - designer\n"
        )
        with pytest.raises(ConfigError) as exc_info:
            load_projects(tmp_path, roles)
        assert "designer" in str(exc_info.value)

    def test_missing_directory_is_empty(self, tmp_path, roles):
        assert load_projects(tmp_path / "nope", roles) == {}
