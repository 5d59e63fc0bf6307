"""Agent orchestrator: pushes ready work to idle repo-agents on a fixed tick.

Each tick refreshes the in-memory agent table from the store, assigns the
best candidate task to every available agent (when push is enabled) and
sweeps stale sessions. The agent table is a cache: it is rebuilt from the
store on every tick and never persisted.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from solo_unicorn.core import lifecycle
from solo_unicorn.core.actors import resolve_actor
from solo_unicorn.core.projects import get_project
from solo_unicorn.core.prompts import PromptContext, build_session_prompt
from solo_unicorn.core.repo_agents import get_repo_agent, list_repo_agents, set_status
from solo_unicorn.core.sessions import (
    get_session,
    open_session_for_agent,
    open_session_for_task,
    set_agent_session_id,
)
from solo_unicorn.core.tasks import (
    get_task,
    list_claimable_tasks,
    list_iterations,
)
from solo_unicorn.db.engine import utcnow
from solo_unicorn.db.models import Session, Task
from solo_unicorn.integrations.claude_code import ClaudeCodeError, SessionOptions

logger = logging.getLogger(__name__)

ALLOWED_TOOLS = [
    "Read", "Task", "TodoWrite", "Glob", "Grep",
    "task.start", "task.complete", "cards.update",
    "context.read", "memory.read", "memory.update", "agent.sessionComplete",
]

Notifier = Callable[[dict[str, Any]], Awaitable[None]]


def build_prompt_context(
    db: sqlite3.Connection, task: Task, web_url: str = ""
) -> tuple[str, PromptContext]:
    """Pick the template for the task's stage and gather what it needs."""
    project = get_project(db, task.project_id)
    repo_agent = get_repo_agent(db, task.repo_agent_id)
    if not project or not repo_agent:
        raise ValueError(f"Task {task.id} has no project or repo agent")
    iterations = list_iterations(db, task.id)
    stage = task.stage or "refine"
    if stage == "execute" and iterations:
        stage = "iterate"
    ctx = PromptContext(
        task=task,
        project=project,
        repo_agent=repo_agent,
        actor=resolve_actor(db, task.project_id, task.actor_id),
        iterations=tuple(iterations),
        web_url=web_url,
    )
    return stage, ctx


@dataclass
class AgentStatus:
    agent_id: str
    status: str
    last_heartbeat: datetime
    current_task_id: str | None = None
    session_id: str | None = None


@dataclass
class TickResult:
    assigned: list[Session] = field(default_factory=list)
    swept: list[Session] = field(default_factory=list)


class AgentOrchestrator:
    """Assigns tasks to repo-agents and keeps sessions honest.

    With ``task_push_enabled`` off, agents pull work themselves through
    ``agent.requestTask``; ticks still refresh statuses and sweep.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        transport,
        *,
        heartbeat_interval: float = 30.0,
        availability_timeout: float = 30.0,
        task_push_enabled: bool = True,
        stale_after: timedelta = lifecycle.STALE_AFTER,
        web_url: str = "",
        notify: Notifier | None = None,
    ):
        self.db = db
        self.transport = transport
        self.heartbeat_interval = heartbeat_interval
        self.availability_timeout = availability_timeout
        self.task_push_enabled = task_push_enabled
        self.stale_after = stale_after
        self.web_url = web_url
        self.notify = notify
        self.agents: dict[str, AgentStatus] = {}
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

        self.transport.on_session_created = self.on_session_created
        self.transport.on_rate_limit = self.on_rate_limit

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> TickResult:
        now = now or utcnow()
        result = TickResult()
        self.refresh_agent_statuses(now)
        if self.task_push_enabled:
            result.assigned = await self.push_tasks(now)
        else:
            ready = list_claimable_tasks(self.db)
            if ready:
                await self._notify({
                    "type": "tasks_available",
                    "count": len(ready),
                    "taskIds": [t.id for t in ready],
                })
        result.swept = self.sweep(now)
        for session in result.swept:
            task = get_task(self.db, session.task_id)
            if task:
                await self._notify({
                    "type": "task_status_changed",
                    "taskId": task.id,
                    "status": task.status,
                    "stage": task.stage,
                    "agentId": session.repo_agent_id,
                })
        return result

    def refresh_agent_statuses(self, now: datetime):
        """Rebuild the agent table. Stored status wins; heartbeats carry over."""
        seen = set()
        for agent in list_repo_agents(self.db):
            if (
                agent.status == "rate_limited"
                and agent.rate_limit_reset_at
                and agent.rate_limit_reset_at <= now
            ):
                agent = set_status(self.db, agent.id, "idle")
                logger.info("Agent %s rate limit expired", agent.id)

            previous = self.agents.get(agent.id)
            session = open_session_for_agent(self.db, agent.id)
            self.agents[agent.id] = AgentStatus(
                agent_id=agent.id,
                status=agent.status,
                last_heartbeat=previous.last_heartbeat if previous else now,
                current_task_id=session.task_id if session else None,
                session_id=session.id if session else None,
            )
            seen.add(agent.id)

        for agent_id in set(self.agents) - seen:
            del self.agents[agent_id]

    def available_agents(self, now: datetime) -> list[AgentStatus]:
        window = timedelta(seconds=self.availability_timeout)
        return [
            a for a in self.agents.values()
            if a.status == "idle"
            and a.current_task_id is None
            and now - a.last_heartbeat <= window
        ]

    def candidate_tasks(self) -> list[Task]:
        """Ready todo tasks plus doing tasks whose stage has no session, best first."""
        return list_claimable_tasks(self.db)

    async def push_tasks(self, now: datetime) -> list[Session]:
        assigned = []
        candidates = self.candidate_tasks()
        taken: set[str] = set()
        for agent in self.available_agents(now):
            task = next(
                (t for t in candidates if t.repo_agent_id == agent.agent_id and t.id not in taken),
                None,
            )
            if task is None:
                continue
            taken.add(task.id)
            session = await self.assign(task, agent.agent_id, now)
            if session:
                assigned.append(session)
        return assigned

    async def assign(self, task: Task, agent_id: str, now: datetime) -> Session | None:
        """Claim, prompt and start a session; undo the claim if anything fails."""
        try:
            claim = lifecycle.claim_task(self.db, task.id, agent_id, now)
        except ValueError as e:
            logger.info("Skipping task %s for agent %s: %s", task.id, agent_id, e)
            return None

        try:
            stage, ctx = self.prompt_context(claim.task)
            prompt = build_session_prompt(stage, ctx)
            repo_path = ctx.repo_agent.repo_path
            client_ref = await self.transport.start_session(
                prompt,
                SessionOptions(
                    project_path=repo_path,
                    cwd=repo_path,
                    tools_settings={
                        "allowedTools": ALLOWED_TOOLS,
                        "disallowedTools": [],
                        "skipPermissions": False,
                    },
                    permission_mode="default",
                ),
            )
            session = lifecycle.activate_session(self.db, claim.session.id, client_ref)
        except (ClaudeCodeError, ValueError) as e:
            lifecycle.rollback_claim(self.db, claim, str(e), now)
            self._set_cached(agent_id, status="idle", current_task_id=None, session_id=None)
            return None

        self._set_cached(
            agent_id, status="active", current_task_id=task.id, session_id=session.id
        )
        logger.info(
            "Assigned task %s (%s) to agent %s, session %s",
            task.id, session.stage, agent_id, session.id,
        )
        await self._notify({
            "type": "task_status_changed",
            "taskId": task.id,
            "status": "doing",
            "stage": session.stage,
            "agentId": agent_id,
        })
        return session

    def prompt_context(self, task: Task) -> tuple[str, PromptContext]:
        return build_prompt_context(self.db, task, self.web_url)

    def sweep(self, now: datetime) -> list[Session]:
        swept = lifecycle.sweep_stale_sessions(self.db, now, self.stale_after)
        for session in swept:
            self._set_cached(
                session.repo_agent_id, status="idle", current_task_id=None, session_id=None
            )
        return swept

    # ── Callbacks from MCP tools and the gateway ─────────────────────────

    def record_heartbeat(self, agent_id: str, now: datetime | None = None):
        now = now or utcnow()
        status = self.agents.get(agent_id)
        if status:
            status.last_heartbeat = now
            return
        agent = get_repo_agent(self.db, agent_id)
        if agent:
            self.agents[agent_id] = AgentStatus(agent_id, agent.status, now)

    def on_agent_available(self, agent_id: str, now: datetime | None = None):
        set_status(self.db, agent_id, "idle")
        self.record_heartbeat(agent_id, now)
        self._set_cached(agent_id, status="idle", current_task_id=None, session_id=None)

    def on_task_started(
        self,
        agent_id: str,
        task_id: str,
        session_id: str | None,
        now: datetime | None = None,
    ):
        self.record_heartbeat(agent_id, now)
        self._set_cached(agent_id, status="active", current_task_id=task_id, session_id=session_id)

    def on_task_completed(
        self,
        agent_id: str,
        task_id: str,
        success: bool,
        now: datetime | None = None,
    ):
        self.record_heartbeat(agent_id, now)
        agent = get_repo_agent(self.db, agent_id)
        self._set_cached(
            agent_id,
            status=agent.status if agent else "idle",
            current_task_id=None,
            session_id=None,
        )
        logger.info("Task %s %s on agent %s", task_id, "completed" if success else "failed", agent_id)

    def on_session_created(self, placeholder: str, agent_session_id: str):
        session = set_agent_session_id(self.db, placeholder, agent_session_id)
        if not session:
            logger.warning("No session for placeholder %s", placeholder)

    def on_rate_limit(self, reset_at: datetime):
        """A usage limit applies to every Claude Code agent currently in a session."""
        if reset_at.tzinfo is not None:
            reset_at = reset_at.astimezone(timezone.utc).replace(tzinfo=None)
        for agent in list_repo_agents(self.db, status="active"):
            if agent.client_type != "claude_code":
                continue
            set_status(self.db, agent.id, "rate_limited", rate_limit_reset_at=reset_at)
            self._set_cached(agent.id, status="rate_limited")
            logger.warning("Agent %s rate limited until %s", agent.id, reset_at)

    async def abort_task(self, task_id: str) -> Session:
        """Ask the agent process to stop the task's open session."""
        if not get_task(self.db, task_id):
            raise ValueError(f"Task not found: {task_id}")
        session = open_session_for_task(self.db, task_id)
        if not session:
            raise ValueError(f"Task {task_id} has no open session")
        ref = session.agent_session_id or session.client_ref
        if not ref:
            raise ValueError(f"Session {session.id} has no agent session id yet")
        await self.transport.abort_session(ref)
        logger.info("Abort requested for task %s (session %s)", task_id, session.id)
        return get_session(self.db, session.id)

    # ── Loop ─────────────────────────────────────────────────────────────

    async def start(self):
        """Connect the transport and tick every ``heartbeat_interval`` seconds."""
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="agent-orchestrator")
        logger.info(
            "Agent orchestrator started (push %s, every %ss)",
            "on" if self.task_push_enabled else "off", self.heartbeat_interval,
        )

    async def stop(self):
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        await self.transport.disconnect()
        logger.info("Agent orchestrator stopped")

    async def _run(self):
        await self.transport.start()

        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in orchestrator tick")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                pass

    def _set_cached(self, agent_id: str, **changes):
        status = self.agents.get(agent_id)
        if not status:
            return
        for key, value in changes.items():
            setattr(status, key, value)

    async def _notify(self, event: dict[str, Any]):
        if not self.notify:
            return
        try:
            await self.notify(event)
        except Exception:
            logger.exception("Error broadcasting %s", event.get("type"))
