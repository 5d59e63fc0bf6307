"""Tests for the /ws/agent WebSocket gateway."""

import tempfile
from pathlib import Path

import pytest
from starlette.applications import Starlette
from starlette.routing import WebSocketRoute
from starlette.testclient import TestClient

from solo_unicorn.config import Config
from solo_unicorn.context import build_context
from solo_unicorn.core import projects as projects_mod
from solo_unicorn.core import repo_agents as agents_mod
from solo_unicorn.core import sessions as sessions_mod
from solo_unicorn.core import tasks as tasks_mod
from solo_unicorn.web.gateway import AgentGateway, GatewayClient


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
def ctx():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(db_path=Path(tmp) / "t.db", agent_auth_token="tok")
        app_ctx = build_context(config, transport=FakeTransport())
        projects_mod.create_project(app_ctx.db, "demo", "Demo")
        agents_mod.create_repo_agent(app_ctx.db, "demo", "claude", "/repos/demo")
        yield app_ctx
        app_ctx.db.close()


@pytest.fixture
def client(ctx):
    app = Starlette(routes=[WebSocketRoute("/ws/agent", ctx.gateway.endpoint)])
    return TestClient(app)


def _register(ws, agent_id="claude"):
    ws.send_json({"type": "agent_register", "token": "tok", "agentId": agent_id})
    return ws.receive_json()


def _ready(ctx, title):
    return tasks_mod.create_task(ctx.db, title, "demo", "claude", ready=True)


class TestConnection:
    def test_unauthenticated_connection_stays_open(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["authenticated"] is False

            ws.send_json({"type": "task_request"})
            assert ws.receive_json() == {"type": "error", "message": "Not authenticated"}

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_query_token_authenticates(self, client):
        with client.websocket_connect("/ws/agent?token=tok") as ws:
            assert ws.receive_json()["authenticated"] is True

    def test_non_ascii_query_token(self, client):
        with client.websocket_connect("/ws/agent?token=t%C3%B6k%C3%A9n") as ws:
            assert ws.receive_json()["authenticated"] is False
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_invalid_messages(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}
            ws.send_json({"type": "launch_rockets"})
            assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}


class TestRegister:
    def test_bad_token(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            ws.send_json({"type": "agent_register", "token": "nope", "agentId": "claude"})
            assert ws.receive_json()["type"] == "auth_failed"

    def test_non_ascii_token(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            ws.send_json({"type": "agent_register", "token": "tökén", "agentId": "claude"})
            assert ws.receive_json() == {
                "type": "auth_failed", "message": "Invalid authentication token",
            }
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_by_agent_id(self, ctx, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            assert _register(ws) == {"type": "registered", "agentId": "claude"}
        assert agents_mod.get_repo_agent(ctx.db, "claude").status == "active"
        assert "claude" in ctx.orchestrator.agents

    def test_by_client_type_and_repo(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            ws.send_json({
                "type": "agent_register",
                "token": "tok",
                "clientType": "claude_code",
                "repoPath": "/repos/demo",
            })
            assert ws.receive_json()["agentId"] == "claude"

    def test_unknown_agent(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            assert _register(ws, "ghost") == {"type": "error", "message": "Unknown repo agent"}

    def test_token_only_registration_cannot_claim(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            ws.send_json({"type": "agent_register", "token": "tok"})
            assert ws.receive_json() == {"type": "registered", "agentId": None}
            ws.send_json({"type": "task_request"})
            assert ws.receive_json() == {
                "type": "error", "message": "Register with an agent id first",
            }


class TestTaskFlow:
    def test_request_with_nothing_ready(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)
            ws.send_json({"type": "task_request"})
            assert ws.receive_json() == {"type": "no_tasks_available"}

    def test_request_offers_best_task(self, ctx, client):
        tasks_mod.create_task(ctx.db, "Later", "demo", "claude", priority="P4", ready=True)
        tasks_mod.create_task(ctx.db, "Sooner", "demo", "claude", priority="P2", ready=True)
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)
            ws.send_json({"type": "task_request"})
            reply = ws.receive_json()
            assert reply["type"] == "task_available"
            assert reply["task"]["id"] == "sooner"

    def test_assign_update_and_end(self, ctx, client):
        _ready(ctx, "Build it")
        _ready(ctx, "Another")
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)

            ws.send_json({"type": "task_assign", "taskId": "build-it"})
            started = ws.receive_json()
            assert started["type"] == "session_started"
            changed = ws.receive_json()
            assert (changed["type"], changed["status"], changed["stage"]) == (
                "task_status_changed", "doing", "refine",
            )
            assigned = ws.receive_json()
            assert assigned["type"] == "task_assigned"
            assert assigned["sessionId"] == started["sessionId"]
            assert assigned["prompt"].startswith("## Solo Unicorn Workflow")

            ws.send_json({"type": "task_assign", "taskId": "another"})
            failed = ws.receive_json()
            assert failed["type"] == "task_assign_failed"
            assert failed["message"] == "Agent already has an active session"

            ws.send_json({"type": "session_start", "sessionId": assigned["sessionId"]})
            assert ws.receive_json() == {"type": "session_active", "sessionId": assigned["sessionId"]}
            assert ws.receive_json()["taskId"] == "build-it"

            ws.send_json({
                "type": "task_update",
                "taskId": "build-it",
                "updates": {"refinedTitle": "Build the thing", "nextStage": "kickoff"},
            })
            updated = ws.receive_json()
            assert updated["type"] == "task_updated"
            assert updated["task"]["title"] == "Build the thing"
            assert updated["task"]["stage"] == "kickoff"
            assert ws.receive_json() == {"type": "task_update_success", "taskId": "build-it"}

        assert sessions_mod.open_session_for_agent(ctx.db, "claude") is None
        assert tasks_mod.get_stage_history(ctx.db, "build-it") == ["refine", "kickoff"]

    def test_stalled_stage_is_offered_again(self, ctx, client):
        _ready(ctx, "Build it")
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)
            ws.send_json({"type": "task_assign", "taskId": "build-it"})
            for _ in range(3):
                ws.receive_json()
            ws.send_json({
                "type": "task_update", "taskId": "build-it", "updates": {"nextStage": "kickoff"},
            })
            ws.receive_json()
            assert ws.receive_json()["type"] == "task_update_success"

            ws.send_json({"type": "task_request"})
            offered = ws.receive_json()
            assert offered["type"] == "task_available"
            assert (offered["task"]["id"], offered["task"]["stage"]) == ("build-it", "kickoff")

            ws.send_json({"type": "task_assign", "taskId": "build-it"})
            ws.receive_json()
            ws.receive_json()
            assigned = ws.receive_json()
            assert assigned["type"] == "task_assigned"
            assert assigned["stage"] == "kickoff"
            assert "[kickoff] Build it" in assigned["prompt"]

    def test_rejected_transition_writes_no_fields(self, ctx, client):
        _ready(ctx, "Build it")
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)
            ws.send_json({"type": "task_assign", "taskId": "build-it"})
            for _ in range(3):
                ws.receive_json()
            ws.send_json({
                "type": "task_update",
                "taskId": "build-it",
                "updates": {"refinedTitle": "Renamed", "nextStage": "refine"},
            })
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert "back to refine" in reply["message"]

        task = tasks_mod.get_task(ctx.db, "build-it")
        assert (task.title, task.refined_title, task.stage) == ("Build it", None, "refine")

    def test_session_end(self, ctx, client):
        _ready(ctx, "Finish me")
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)
            ws.send_json({"type": "task_assign", "taskId": "finish-me"})
            ws.receive_json()
            ws.receive_json()
            session_id = ws.receive_json()["sessionId"]

            ws.send_json({"type": "session_end", "sessionId": session_id, "completed": True})
            ended = ws.receive_json()
            assert ended == {
                "type": "session_ended",
                "sessionId": session_id,
                "taskId": "finish-me",
                "completed": True,
            }
            changed = ws.receive_json()
            assert (changed["status"], changed["stage"]) == ("done", None)
            reply = ws.receive_json()
            assert reply["session"]["status"] == "completed"

            ws.send_json({"type": "session_end", "sessionId": session_id, "completed": True})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "already completed" in error["message"]

    def test_session_start_for_wrong_session(self, client):
        with client.websocket_connect("/ws/agent") as ws:
            ws.receive_json()
            _register(ws)
            ws.send_json({"type": "session_start", "sessionId": "nope"})
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert "not this agent's open session" in reply["message"]


class FakeWebSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_only_authenticated_clients_receive(self):
        gateway = AgentGateway(None, "tok")
        good = GatewayClient(FakeWebSocket(), authenticated=True)
        anonymous = GatewayClient(FakeWebSocket())
        gateway.clients = [good, anonymous]

        await gateway.broadcast({"type": "task_updated"})

        assert good.websocket.sent == [{"type": "task_updated"}]
        assert anonymous.websocket.sent == []

    @pytest.mark.asyncio
    async def test_failed_clients_are_dropped(self):
        gateway = AgentGateway(None, "tok")
        good = GatewayClient(FakeWebSocket(), authenticated=True)
        dead = GatewayClient(FakeWebSocket(fail=True), authenticated=True)
        gateway.clients = [good, dead]

        await gateway.broadcast({"type": "ping"})

        assert gateway.clients == [good]
