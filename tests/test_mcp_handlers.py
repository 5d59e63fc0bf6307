"""Tests for the agent-facing MCP tool handlers."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from solo_unicorn.config import Config
from solo_unicorn.context import build_context
from solo_unicorn.core import lifecycle
from solo_unicorn.core import projects as projects_mod
from solo_unicorn.core import repo_agents as agents_mod
from solo_unicorn.core import tasks as tasks_mod
from solo_unicorn.mcp import handlers
from solo_unicorn.mcp.prompts import render_task_prompt
from solo_unicorn.mcp.server import create_mcp_server

NOW = datetime(2026, 3, 1, 12, 0, 0)
HEADERS = {"authorization": "Bearer tok", "x-agent-id": "claude"}


class FakeTransport:
    connected = True
    on_session_created = None
    on_rate_limit = None

    async def start(self):
        pass

    async def disconnect(self):
        pass

    async def start_session(self, command, options):
        return "pending-1"

    async def abort_session(self, session_id):
        pass


@pytest.fixture
def app():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(db_path=Path(tmp) / "t.db", agent_auth_token="tok")
        ctx = build_context(config, transport=FakeTransport())
        projects_mod.create_project(ctx.db, "demo", "Demo")
        agents_mod.create_repo_agent(ctx.db, "demo", "claude", "/repos/demo")
        yield ctx
        ctx.db.close()


def _task(app, title, **kwargs):
    kwargs.setdefault("ready", True)
    return tasks_mod.create_task(app.db, title, "demo", "claude", **kwargs)


class TestAuth:
    def test_missing_token(self, app):
        result = handlers.memory_read(app, {}, "demo")
        assert result == {"success": False, "message": "Unauthorized: missing bearer token"}

    def test_wrong_token(self, app):
        result = handlers.memory_read(app, {"authorization": "Bearer nope"}, "demo")
        assert result["message"] == "Unauthorized: invalid bearer token"

    def test_non_ascii_token(self, app):
        result = handlers.memory_read(app, {"authorization": "Bearer tökén"}, "demo")
        assert result == {"success": False, "message": "Unauthorized: invalid bearer token"}

    def test_missing_agent_header(self, app):
        result = handlers.agent_request_task(app, {"authorization": "Bearer tok"})
        assert result == {"success": False, "message": "Missing x-agent-id header"}

    def test_agent_auth_finds_agent(self, app):
        result = handlers.agent_auth(app, HEADERS, "claude_code", "/repos/demo", now=NOW)
        assert result["success"] is True
        assert result["agent_id"] == "claude"
        assert result["project_id"] == "demo"
        assert agents_mod.get_repo_agent(app.db, "claude").status == "active"
        assert app.orchestrator.agents["claude"].last_heartbeat == NOW

    def test_agent_auth_unknown_repo(self, app):
        result = handlers.agent_auth(app, HEADERS, "claude_code", "/repos/other")
        assert result["success"] is False
        assert "No repo agent registered" in result["message"]


class TestRequestTask:
    def test_claims_best_task(self, app):
        _task(app, "Low", priority="P5")
        _task(app, "High", priority="P1")
        result = handlers.agent_request_task(app, HEADERS, now=NOW)
        assert result["success"] is True
        assert result["task"]["id"] == "high"
        assert result["stage"] == "refine"
        assert "[refine] High" in result["prompt"]
        assert app.orchestrator.agents["claude"].current_task_id == "high"

    def test_second_request_rejected(self, app):
        _task(app, "One")
        _task(app, "Two")
        first = handlers.agent_request_task(app, HEADERS, now=NOW)
        second = handlers.agent_request_task(app, HEADERS, now=NOW)
        assert first["success"] is True
        assert second == {"success": False, "message": "Agent already has an active session"}

    def test_nothing_ready(self, app):
        _task(app, "Draft", ready=False)
        result = handlers.agent_request_task(app, HEADERS, now=NOW)
        assert result == {"success": False, "message": "No tasks available"}

    def test_unknown_agent(self, app):
        headers = {**HEADERS, "x-agent-id": "ghost"}
        result = handlers.agent_request_task(app, headers)
        assert result["message"] == "Agent not found: ghost"

    def test_pull_mode_walks_every_stage(self, app):
        app.orchestrator.task_push_enabled = False
        _task(app, "Pull walk")
        first = handlers.agent_request_task(app, HEADERS, now=NOW)
        assert first["stage"] == "refine"

        for stage in ("kickoff", "execute"):
            handlers.task_complete(app, HEADERS, "pull-walk", next_stage=stage, now=NOW)
            claimed = handlers.agent_request_task(app, HEADERS, now=NOW)
            assert claimed["success"] is True
            assert claimed["task"]["id"] == "pull-walk"
            assert claimed["stage"] == stage
            assert f"[{stage}]" in claimed["prompt"]

        result = handlers.task_complete(app, HEADERS, "pull-walk", mark_done=True, now=NOW)
        assert result["task"]["status"] == "done"
        assert tasks_mod.get_stage_history(app.db, "pull-walk") == ["refine", "kickoff", "execute"]
        assert handlers.agent_request_task(app, HEADERS, now=NOW) == {
            "success": False, "message": "No tasks available",
        }

    def test_stalled_stage_beats_lower_priority_todo(self, app):
        _task(app, "Newcomer", priority="P4")
        _task(app, "Started", priority="P2")
        lifecycle.claim_task(app.db, "started", "claude", NOW)
        lifecycle.advance_stage(app.db, "started", "kickoff", NOW)
        result = handlers.agent_request_task(app, HEADERS, now=NOW)
        assert (result["task"]["id"], result["stage"]) == ("started", "kickoff")


class TestHealthAndRateLimit:
    def test_health_maps_status(self, app):
        assert handlers.agent_health(app, HEADERS, "busy")["status"] == "active"
        assert handlers.agent_health(app, HEADERS, "available")["status"] == "idle"
        assert handlers.agent_health(app, HEADERS, "error")["status"] == "error"

    def test_health_unknown_status(self, app):
        result = handlers.agent_health(app, HEADERS, "sleepy")
        assert result["success"] is False
        assert result["message"].startswith("Unknown status: sleepy")

    def test_rate_limit_iso(self, app):
        result = handlers.agent_rate_limit(app, HEADERS, resolve_at="2026-03-01T17:00:00Z")
        assert result["status"] == "rate_limited"
        assert result["rate_limit_reset_at"] == "2026-03-01T17:00:00"
        agent = agents_mod.get_repo_agent(app.db, "claude")
        assert agent.rate_limit_reset_at == datetime(2026, 3, 1, 17, 0)

    def test_rate_limit_epoch_milliseconds(self, app):
        result = handlers.agent_rate_limit(app, HEADERS, resolve_at="1700000000000")
        assert result["rate_limit_reset_at"] == "2023-11-14T22:13:20"

    def test_rate_limited_agent_gets_no_task(self, app):
        _task(app, "Blocked")
        handlers.agent_rate_limit(app, HEADERS)
        result = handlers.agent_request_task(app, HEADERS, now=NOW)
        assert result == {"success": False, "message": "Agent is rate limited"}
        assert tasks_mod.get_task(app.db, "blocked").status == "todo"

    def test_rate_limit_bad_timestamp(self, app):
        result = handlers.agent_rate_limit(app, HEADERS, resolve_at="tomorrow")
        assert result["success"] is False
        assert "Invalid resolve_at" in result["message"]


class TestSessionComplete:
    def test_success_finishes_task(self, app):
        _task(app, "Ship")
        claimed = handlers.agent_request_task(app, HEADERS, now=NOW)
        result = handlers.agent_session_complete(
            app, HEADERS, claimed["session_id"], True, now=NOW + timedelta(minutes=5)
        )
        assert result["session"]["status"] == "completed"
        assert result["task"]["status"] == "done"
        assert result["task"]["stage"] is None
        assert agents_mod.get_repo_agent(app.db, "claude").status == "idle"

    def test_failure_returns_to_todo(self, app):
        _task(app, "Break")
        claimed = handlers.agent_request_task(app, HEADERS, now=NOW)
        result = handlers.agent_session_complete(
            app, HEADERS, claimed["session_id"], False, error="tests failed", now=NOW
        )
        assert result["session"]["error"] == "tests failed"
        assert (result["task"]["status"], result["task"]["ready"]) == ("todo", False)

    def test_twice(self, app):
        _task(app, "Once")
        claimed = handlers.agent_request_task(app, HEADERS, now=NOW)
        handlers.agent_session_complete(app, HEADERS, claimed["session_id"], True, now=NOW)
        again = handlers.agent_session_complete(app, HEADERS, claimed["session_id"], True, now=NOW)
        assert again["success"] is False
        assert "already completed" in again["message"]

    def test_other_agents_session(self, app):
        agents_mod.create_repo_agent(app.db, "demo", "cursor", "/repos/demo", client_type="cursor_cli")
        _task(app, "Mine")
        claimed = handlers.agent_request_task(app, HEADERS, now=NOW)
        headers = {**HEADERS, "x-agent-id": "cursor"}
        result = handlers.agent_session_complete(app, headers, claimed["session_id"], True, now=NOW)
        assert result == {"success": False, "message": "Session does not belong to this agent"}


class TestTaskTools:
    def test_start_activates_session(self, app):
        _task(app, "Pushed")
        claim = lifecycle.claim_task(app.db, "pushed", "claude", NOW)
        assert claim.session.status == "starting"
        result = handlers.task_start(app, HEADERS, "pushed", "refine", now=NOW)
        assert result["success"] is True
        assert result["session_id"] == claim.session.id
        assert result["task"]["stage"] == "refine"

    def test_start_wrong_stage(self, app):
        _task(app, "Pushed")
        lifecycle.claim_task(app.db, "pushed", "claude", NOW)
        result = handlers.task_start(app, HEADERS, "pushed", "execute")
        assert result["message"] == "Task pushed is at stage refine, not execute"

    def test_complete_walks_stages(self, app):
        _task(app, "Walk")
        handlers.agent_request_task(app, HEADERS, now=NOW)
        result = handlers.task_complete(app, HEADERS, "walk", next_stage="kickoff", now=NOW)
        assert (result["task"]["status"], result["task"]["stage"]) == ("doing", "kickoff")
        assert tasks_mod.get_stage_history(app.db, "walk") == ["refine", "kickoff"]

        result = handlers.task_complete(app, HEADERS, "walk", mark_done=True, now=NOW)
        assert result["task"]["status"] == "done"

    def test_complete_cannot_go_back(self, app):
        _task(app, "Forward")
        handlers.agent_request_task(app, HEADERS, now=NOW)
        handlers.task_complete(app, HEADERS, "forward", next_stage="execute", now=NOW)
        result = handlers.task_complete(app, HEADERS, "forward", next_stage="kickoff", now=NOW)
        assert result["success"] is False
        assert "back to kickoff" in result["message"]

    def test_complete_needs_an_outcome(self, app):
        result = handlers.task_complete(app, HEADERS, "anything")
        assert result == {"success": False, "message": "Provide next_stage or mark_done"}

    def test_other_agent_cannot_finish(self, app):
        agents_mod.create_repo_agent(app.db, "demo", "cursor", "/repos/demo", client_type="cursor_cli")
        _task(app, "Not yours")
        headers = {**HEADERS, "x-agent-id": "cursor"}
        result = handlers.task_complete(app, headers, "not-yours", mark_done=True, now=NOW)
        assert result["success"] is False
        assert "not scoped to agent cursor" in result["message"]
        assert tasks_mod.get_task(app.db, "not-yours").status == "todo"

    def test_unclaimed_task_cannot_finish(self, app):
        _task(app, "Never started")
        result = handlers.task_complete(app, HEADERS, "never-started", mark_done=True, now=NOW)
        assert result == {"success": False, "message": "Task never-started is todo, not doing"}

    def test_cards_update(self, app):
        _task(app, "rough idea")
        result = handlers.cards_update(
            app, HEADERS, "rough-idea",
            refined_title="Polished idea",
            plan={"steps": ["a", "b"]},
        )
        assert result["task"]["title"] == "Polished idea"
        assert result["task"]["plan"] == {"steps": ["a", "b"]}

    def test_cards_update_missing(self, app):
        result = handlers.cards_update(app, HEADERS, "ghost", refined_title="x")
        assert result == {"success": False, "message": "Task not found: ghost"}

    def test_context_read(self, app):
        _task(app, "Context")
        result = handlers.context_read(app, HEADERS, "context")
        assert result["project"]["id"] == "demo"
        assert result["repo_agent"]["repo_path"] == "/repos/demo"
        assert result["actor"] is None
        assert result["iterations"] == []


class TestMemoryTools:
    def test_read_and_replace(self, app):
        assert handlers.memory_read(app, HEADERS, "demo")["memory"] == {}
        handlers.memory_update(app, HEADERS, "demo", {"stack": "python"})
        result = handlers.memory_update(app, HEADERS, "demo", {"db": "sqlite"})
        assert result["memory"] == {"db": "sqlite"}
        assert handlers.memory_read(app, HEADERS, "demo")["memory"] == {"db": "sqlite"}

    def test_missing_project(self, app):
        assert handlers.memory_read(app, HEADERS, "ghost")["message"] == "Project not found: ghost"

    def test_rejects_non_object(self, app):
        result = handlers.memory_update(app, HEADERS, "demo", ["x"])
        assert result["success"] is False


class TestServer:
    @pytest.mark.asyncio
    async def test_tools_registered(self, app):
        mcp = create_mcp_server(app)
        names = {tool.name for tool in await mcp.list_tools()}
        assert names == {
            "agent.auth", "agent.requestTask", "agent.health", "agent.rateLimit",
            "agent.sessionComplete", "task.start", "task.complete", "cards.update",
            "context.read", "memory.read", "memory.update",
        }

    @pytest.mark.asyncio
    async def test_stage_prompt_registered(self, app):
        mcp = create_mcp_server(app)
        assert [p.name for p in await mcp.list_prompts()] == ["stage_prompt"]

    def test_render_task_prompt(self, app):
        _task(app, "Prompted")
        assert render_task_prompt(app, "prompted").startswith("[refine] Prompted")
        assert render_task_prompt(app, "prompted", "talk").startswith("[talk] Prompted")
        with pytest.raises(ValueError, match="Task not found"):
            render_task_prompt(app, "ghost")
