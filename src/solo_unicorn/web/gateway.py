"""WebSocket gateway for agent clients at ``/ws/agent``.

Agent clients register with the bearer token, then request, claim and report
on tasks over the socket. Task changes are broadcast to every authenticated
client. Bad input gets a ``{"type": "error"}`` reply; the connection stays
open.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from starlette.websockets import WebSocket, WebSocketDisconnect

from solo_unicorn.core import lifecycle
from solo_unicorn.core.orchestrator import build_prompt_context
from solo_unicorn.core.prompts import build_session_prompt
from solo_unicorn.core.repo_agents import find_repo_agent, get_repo_agent, set_status
from solo_unicorn.core.sessions import get_session, open_session_for_agent
from solo_unicorn.core.tasks import get_task, list_claimable_tasks, update_task_fields
from solo_unicorn.db.engine import utcnow
from solo_unicorn.serialize import session_dict, task_dict

logger = logging.getLogger(__name__)


# ── Wire messages ────────────────────────────────────────────────────────────


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AgentRegister(_Wire):
    type: Literal["agent_register"]
    token: str = ""
    agent_id: str | None = None
    client_type: str | None = None
    repo_path: str | None = None


class TaskRequest(_Wire):
    type: Literal["task_request"]


class TaskAssign(_Wire):
    type: Literal["task_assign"]
    task_id: str


class TaskChanges(_Wire):
    refined_title: str | None = None
    refined_description: str | None = None
    plan: Any = None
    next_stage: str | None = None
    mark_done: bool = False


class TaskUpdate(_Wire):
    type: Literal["task_update"]
    task_id: str
    updates: TaskChanges = Field(default_factory=TaskChanges)


class SessionStart(_Wire):
    type: Literal["session_start"]
    session_id: str


class SessionEnd(_Wire):
    type: Literal["session_end"]
    session_id: str
    completed: bool
    error: str | None = None


class Ping(_Wire):
    type: Literal["ping"]


GatewayMessage = Annotated[
    Union[AgentRegister, TaskRequest, TaskAssign, TaskUpdate, SessionStart, SessionEnd, Ping],
    Field(discriminator="type"),
]
message_adapter: TypeAdapter[GatewayMessage] = TypeAdapter(GatewayMessage)


@dataclass(eq=False)
class GatewayClient:
    websocket: WebSocket
    authenticated: bool = False
    agent_id: str | None = None


class AgentGateway:
    """Client registry, message dispatch and broadcast for ``/ws/agent``."""

    def __init__(self, db: sqlite3.Connection, token: str, orchestrator=None, web_url: str = ""):
        self.db = db
        self.token = token
        self.orchestrator = orchestrator
        self.web_url = web_url
        self.clients: list[GatewayClient] = []
        self._lock = asyncio.Lock()

    # ── Connections ──────────────────────────────────────────────────────

    async def connect(self, websocket: WebSocket) -> GatewayClient:
        await websocket.accept()
        client = GatewayClient(websocket)
        token = websocket.query_params.get("token")
        if token and self._token_ok(token):
            client.authenticated = True
        async with self._lock:
            self.clients.append(client)
        await websocket.send_json({
            "type": "connected",
            "authenticated": client.authenticated,
            "timestamp": utcnow().isoformat(),
        })
        return client

    async def disconnect(self, client: GatewayClient):
        async with self._lock:
            if client in self.clients:
                self.clients.remove(client)
        logger.info("Gateway client disconnected (agent %s)", client.agent_id)

    async def endpoint(self, websocket: WebSocket):
        """Starlette websocket route handler."""
        client = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                reply = await self.handle(client, raw)
                if reply:
                    await websocket.send_json(reply)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(client)

    async def broadcast(self, event: dict[str, Any]):
        """Send ``event`` to every authenticated client, dropping dead sockets."""
        async with self._lock:
            targets = [c for c in self.clients if c.authenticated]
        results = await asyncio.gather(
            *(c.websocket.send_json(event) for c in targets), return_exceptions=True
        )
        for client, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Dropping gateway client after send failure: %s", result)
                await self.disconnect(client)

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def handle(self, client: GatewayClient, raw: str) -> dict | None:
        try:
            message = message_adapter.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.info("Invalid gateway message: %s", e)
            return _error("Invalid message format")

        if isinstance(message, Ping):
            return {"type": "pong"}
        if isinstance(message, AgentRegister):
            return self.register(client, message)
        if not client.authenticated:
            return _error("Not authenticated")

        try:
            if isinstance(message, TaskRequest):
                return self.task_request(client)
            if isinstance(message, TaskAssign):
                return await self.task_assign(client, message)
            if isinstance(message, TaskUpdate):
                return await self.task_update(client, message)
            if isinstance(message, SessionStart):
                return await self.session_start(client, message)
            if isinstance(message, SessionEnd):
                return await self.session_end(client, message)
        except ValueError as e:
            logger.info("Gateway %s failed: %s", message.type, e)
            return _error(str(e))
        return None

    def register(self, client: GatewayClient, message: AgentRegister) -> dict:
        if not self._token_ok(message.token):
            logger.warning("Gateway registration with invalid token")
            return {"type": "auth_failed", "message": "Invalid authentication token"}

        agent = None
        if message.agent_id:
            agent = get_repo_agent(self.db, message.agent_id)
        elif message.client_type and message.repo_path:
            agent = find_repo_agent(self.db, message.client_type, message.repo_path)
        if (message.agent_id or message.repo_path) and not agent:
            return _error("Unknown repo agent")

        client.authenticated = True
        if agent:
            client.agent_id = agent.id
            if agent.status != "rate_limited":
                set_status(self.db, agent.id, "active")
            if self.orchestrator:
                self.orchestrator.record_heartbeat(agent.id)
        logger.info("Gateway client registered (agent %s)", client.agent_id)
        return {"type": "registered", "agentId": client.agent_id}

    def task_request(self, client: GatewayClient) -> dict:
        agent_id = _require_agent(client)
        if open_session_for_agent(self.db, agent_id):
            return {"type": "no_tasks_available", "reason": "Agent already has an active session"}
        tasks = list_claimable_tasks(self.db, repo_agent_id=agent_id)
        if not tasks:
            return {"type": "no_tasks_available"}
        return {"type": "task_available", "task": task_dict(tasks[0])}

    async def task_assign(self, client: GatewayClient, message: TaskAssign) -> dict:
        agent_id = _require_agent(client)
        now = utcnow()
        try:
            claim = lifecycle.claim_task(
                self.db, message.task_id, agent_id, now, session_status="active"
            )
        except ValueError as e:
            return {"type": "task_assign_failed", "taskId": message.task_id, "message": str(e)}

        if self.orchestrator:
            self.orchestrator.on_task_started(agent_id, message.task_id, claim.session.id, now)
        stage, ctx = build_prompt_context(self.db, claim.task, self.web_url)
        await self.broadcast({
            "type": "session_started",
            "sessionId": claim.session.id,
            "taskId": message.task_id,
            "agentId": agent_id,
        })
        await self.broadcast({
            "type": "task_status_changed",
            "taskId": message.task_id,
            "status": claim.task.status,
            "stage": claim.task.stage,
            "agentId": agent_id,
        })
        return {
            "type": "task_assigned",
            "taskId": message.task_id,
            "sessionId": claim.session.id,
            "stage": claim.task.stage,
            "prompt": build_session_prompt(stage, ctx),
        }

    async def task_update(self, client: GatewayClient, message: TaskUpdate) -> dict:
        agent_id = _require_agent(client)
        changes = message.updates
        now = utcnow()
        if not get_task(self.db, message.task_id):
            raise ValueError(f"Task not found: {message.task_id}")
        # The transition is validated before any field is written.
        if changes.mark_done:
            lifecycle.complete_task(self.db, message.task_id, now, agent_id=agent_id)
        elif changes.next_stage:
            lifecycle.advance_stage(
                self.db, message.task_id, changes.next_stage, now, agent_id=agent_id
            )
        task = update_task_fields(
            self.db, message.task_id,
            refined_title=changes.refined_title,
            refined_description=changes.refined_description,
            plan=changes.plan,
        )
        if (changes.mark_done or changes.next_stage) and self.orchestrator:
            self.orchestrator.on_task_completed(agent_id, message.task_id, True, now)

        await self.broadcast({"type": "task_updated", "taskId": task.id, "task": task_dict(task)})
        return {"type": "task_update_success", "taskId": task.id}

    async def session_start(self, client: GatewayClient, message: SessionStart) -> dict:
        agent_id = _require_agent(client)
        session = get_session(self.db, message.session_id)
        current = open_session_for_agent(self.db, agent_id)
        if not session or not current or current.id != session.id:
            raise ValueError(f"Session {message.session_id} is not this agent's open session")
        session = lifecycle.activate_session(self.db, session.id)
        await self.broadcast({"type": "session_active", "sessionId": session.id})
        return {"type": "session_active", "sessionId": session.id, "taskId": session.task_id}

    async def session_end(self, client: GatewayClient, message: SessionEnd) -> dict:
        agent_id = _require_agent(client)
        now = utcnow()
        session = lifecycle.finish_session(
            self.db, message.session_id, message.completed, now,
            error=message.error, agent_id=agent_id,
        )
        if self.orchestrator:
            self.orchestrator.on_task_completed(agent_id, session.task_id, message.completed, now)
        task = get_task(self.db, session.task_id)
        event = {
            "type": "session_ended",
            "sessionId": session.id,
            "taskId": session.task_id,
            "completed": message.completed,
        }
        await self.broadcast(event)
        await self.broadcast({
            "type": "task_status_changed",
            "taskId": task.id,
            "status": task.status,
            "stage": task.stage,
            "agentId": agent_id,
        })
        return {**event, "session": session_dict(session)}

    def _token_ok(self, token: str) -> bool:
        return bool(token) and hmac.compare_digest(token.encode(), self.token.encode())


def _require_agent(client: GatewayClient) -> str:
    if not client.agent_id:
        raise ValueError("Register with an agent id first")
    return client.agent_id


def _error(message: str) -> dict:
    return {"type": "error", "message": message}
