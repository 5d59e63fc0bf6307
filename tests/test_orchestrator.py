"""Tests for the agent orchestrator tick with a fake transport and injected time."""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from solo_unicorn.core import lifecycle
from solo_unicorn.core import projects as projects_mod
from solo_unicorn.core import repo_agents as agents_mod
from solo_unicorn.core import sessions as sessions_mod
from solo_unicorn.core import tasks as tasks_mod
from solo_unicorn.core.orchestrator import AgentOrchestrator
from solo_unicorn.db.engine import init_db
from solo_unicorn.integrations.claude_code import NotConnectedError

NOW = datetime(2026, 3, 1, 12, 0, 0)


class FakeTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.started = []
        self.aborted = []
        self.connects = 0
        self.connected = True
        self.on_session_created = None
        self.on_rate_limit = None

    async def start(self):
        self.connects += 1

    async def disconnect(self):
        self.connected = False

    async def start_session(self, command, options):
        if self.fail:
            raise NotConnectedError()
        self.started.append((command, options))
        return f"pending-{len(self.started)}"

    async def abort_session(self, session_id):
        self.aborted.append(session_id)


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "demo", "Demo")
        agents_mod.create_repo_agent(conn, "demo", "claude", "/repos/demo")
        agents_mod.create_repo_agent(conn, "demo", "cursor", "/repos/other", client_type="cursor_cli")
        yield conn
        conn.close()


@pytest.fixture
def events():
    return []


def _orchestrator(db, events, transport=None, **kwargs):
    async def notify(event):
        events.append(event)

    return AgentOrchestrator(db, transport or FakeTransport(), notify=notify, **kwargs)


def _task(db, title, agent="claude", **kwargs):
    kwargs.setdefault("ready", True)
    return tasks_mod.create_task(db, title, "demo", agent, **kwargs)


class TestPush:
    @pytest.mark.asyncio
    async def test_assigns_highest_priority_ready_task(self, db, events):
        _task(db, "Later", priority="P3")
        _task(db, "Urgent", priority="P1")
        orch = _orchestrator(db, events)

        result = await orch.tick(NOW)

        assert [s.task_id for s in result.assigned] == ["urgent"]
        session = result.assigned[0]
        assert (session.status, session.stage, session.client_ref) == ("active", "refine", "pending-1")
        task = tasks_mod.get_task(db, "urgent")
        assert (task.status, task.stage) == ("doing", "refine")
        command, options = orch.transport.started[0]
        assert "[refine] Urgent" in command
        assert command.startswith("## Solo Unicorn Workflow")
        assert options.project_path == "/repos/demo"
        assert "task.complete" in options.tools_settings["allowedTools"]
        assert events[0] == {
            "type": "task_status_changed",
            "taskId": "urgent",
            "status": "doing",
            "stage": "refine",
            "agentId": "claude",
        }

    @pytest.mark.asyncio
    async def test_one_session_per_agent(self, db, events):
        _task(db, "First")
        _task(db, "Second")
        orch = _orchestrator(db, events)
        await orch.tick(NOW)
        result = await orch.tick(NOW + timedelta(seconds=5))
        assert result.assigned == []
        assert len(orch.transport.started) == 1
        assert orch.agents["claude"].current_task_id == "first"

    @pytest.mark.asyncio
    async def test_each_agent_gets_its_own_tasks(self, db, events):
        _task(db, "Claude work")
        _task(db, "Cursor work", agent="cursor")
        orch = _orchestrator(db, events)
        result = await orch.tick(NOW)
        assert sorted((s.repo_agent_id, s.task_id) for s in result.assigned) == [
            ("claude", "claude-work"), ("cursor", "cursor-work"),
        ]

    @pytest.mark.asyncio
    async def test_transport_failure_rolls_back(self, db, events):
        _task(db, "Fragile")
        orch = _orchestrator(db, events, transport=FakeTransport(fail=True))
        result = await orch.tick(NOW)

        assert result.assigned == []
        task = tasks_mod.get_task(db, "fragile")
        assert (task.status, task.stage, task.ready) == ("todo", None, True)
        sessions = sessions_mod.list_sessions(db, task_id="fragile")
        assert [s.status for s in sessions] == ["failed"]
        assert agents_mod.get_repo_agent(db, "claude").status == "idle"
        assert events == []

    @pytest.mark.asyncio
    async def test_next_stage_continued_on_later_tick(self, db, events):
        _task(db, "Staged")
        orch = _orchestrator(db, events)
        await orch.tick(NOW)
        lifecycle.advance_stage(db, "staged", "kickoff", NOW, agent_id="claude")
        orch.on_task_completed("claude", "staged", True, NOW)

        result = await orch.tick(NOW + timedelta(seconds=5))

        assert [(s.task_id, s.stage) for s in result.assigned] == [("staged", "kickoff")]
        assert "[kickoff] Staged" in orch.transport.started[-1][0]

    @pytest.mark.asyncio
    async def test_rejected_task_gets_iterate_prompt(self, db, events):
        _task(db, "Reviewed")
        orch = _orchestrator(db, events)
        await orch.tick(NOW)
        session = sessions_mod.open_session_for_task(db, "reviewed")
        lifecycle.finish_session(db, session.id, True, NOW)
        lifecycle.reject_task(db, "reviewed", "Wrong color", NOW)
        orch.on_task_completed("claude", "reviewed", True, NOW)

        await orch.tick(NOW + timedelta(seconds=5))

        command = orch.transport.started[-1][0]
        assert "[iterate] Reviewed" in command
        assert "Wrong color" in command

    @pytest.mark.asyncio
    async def test_pull_mode_only_announces(self, db, events):
        _task(db, "Pull me")
        orch = _orchestrator(db, events, task_push_enabled=False)
        result = await orch.tick(NOW)
        assert result.assigned == []
        assert orch.transport.started == []
        assert events == [{"type": "tasks_available", "count": 1, "taskIds": ["pull-me"]}]


class TestAvailability:
    @pytest.mark.asyncio
    async def test_silent_agent_is_skipped(self, db, events):
        orch = _orchestrator(db, events, availability_timeout=30)
        await orch.tick(NOW)
        _task(db, "Waiting")

        result = await orch.tick(NOW + timedelta(seconds=60))
        assert result.assigned == []

        orch.record_heartbeat("claude", NOW + timedelta(seconds=60))
        result = await orch.tick(NOW + timedelta(seconds=61))
        assert [s.task_id for s in result.assigned] == ["waiting"]

    @pytest.mark.asyncio
    async def test_rate_limit_expires(self, db, events):
        agents_mod.set_status(db, "claude", "rate_limited", rate_limit_reset_at=NOW - timedelta(minutes=1))
        _task(db, "After limit")
        orch = _orchestrator(db, events)
        result = await orch.tick(NOW)
        assert [s.task_id for s in result.assigned] == ["after-limit"]

    @pytest.mark.asyncio
    async def test_rate_limit_still_active(self, db, events):
        agents_mod.set_status(db, "claude", "rate_limited", rate_limit_reset_at=NOW + timedelta(hours=1))
        _task(db, "Blocked")
        orch = _orchestrator(db, events)
        result = await orch.tick(NOW)
        assert result.assigned == []
        assert orch.agents["claude"].status == "rate_limited"


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_session_created_records_real_id(self, db, events):
        _task(db, "Tracked")
        orch = _orchestrator(db, events)
        result = await orch.tick(NOW)
        orch.transport.on_session_created("pending-1", "real-abc")
        session = sessions_mod.get_session(db, result.assigned[0].id)
        assert session.agent_session_id == "real-abc"
        assert sessions_mod.find_session(db, "real-abc").id == session.id

    def test_rate_limit_marks_active_claude_agents(self, db, events):
        orch = _orchestrator(db, events)
        agents_mod.set_status(db, "claude", "active")
        agents_mod.set_status(db, "cursor", "active")
        reset = datetime(2026, 3, 1, 17, 0, tzinfo=timezone.utc)

        orch.transport.on_rate_limit(reset)

        claude = agents_mod.get_repo_agent(db, "claude")
        assert claude.status == "rate_limited"
        assert claude.rate_limit_reset_at == datetime(2026, 3, 1, 17, 0)
        assert agents_mod.get_repo_agent(db, "cursor").status == "active"

    @pytest.mark.asyncio
    async def test_abort_uses_agent_session_id(self, db, events):
        _task(db, "Abort me")
        orch = _orchestrator(db, events)
        await orch.tick(NOW)
        orch.on_session_created("pending-1", "real-xyz")
        await orch.abort_task("abort-me")
        assert orch.transport.aborted == ["real-xyz"]

    @pytest.mark.asyncio
    async def test_abort_without_session(self, db, events):
        _task(db, "Idle task")
        orch = _orchestrator(db, events)
        with pytest.raises(ValueError, match="no open session"):
            await orch.abort_task("idle-task")

    def test_agent_available_resets_cache(self, db, events):
        orch = _orchestrator(db, events)
        orch.refresh_agent_statuses(NOW)
        orch.on_task_started("claude", "x", "s", NOW)
        assert orch.agents["claude"].current_task_id == "x"
        orch.on_agent_available("claude", NOW)
        assert orch.agents["claude"].status == "idle"
        assert orch.agents["claude"].current_task_id is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_tick_sweeps_stale_sessions(self, db, events):
        _task(db, "Stuck")
        orch = _orchestrator(db, events, task_push_enabled=False)
        lifecycle.claim_task(db, "stuck", "claude", NOW - timedelta(minutes=31), session_status="active")

        result = await orch.tick(NOW)

        assert [s.task_id for s in result.swept] == ["stuck"]
        task = tasks_mod.get_task(db, "stuck")
        assert (task.status, task.stage, task.ready) == ("todo", None, False)
        assert events[-1]["type"] == "task_status_changed"
        assert events[-1]["status"] == "todo"


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, db, events):
        _task(db, "Looped")
        orch = _orchestrator(db, events, heartbeat_interval=0.01)
        await orch.start()
        await asyncio.sleep(0.05)
        await orch.stop()
        assert orch.transport.connects == 1
        assert orch.transport.connected is False
        assert tasks_mod.get_task(db, "looped").status == "doing"

    @pytest.mark.asyncio
    async def test_tick_errors_do_not_stop_loop(self, db, events, monkeypatch):
        orch = _orchestrator(db, events, heartbeat_interval=0.01)
        calls = []

        async def broken_tick(now=None):
            calls.append(now)
            raise RuntimeError("boom")

        monkeypatch.setattr(orch, "tick", broken_tick)
        await orch.start()
        await asyncio.sleep(0.05)
        await orch.stop()
        assert len(calls) >= 2
