"""Agent-facing tool handlers behind the MCP server.

Each handler takes the shared ``AppContext`` and the request headers, checks
the bearer token, and returns an envelope dict ``{"success": bool, ...}``.
Domain failures come back as ``success: false`` with a message; they are
never raised to the protocol layer.
"""

import functools
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from solo_unicorn.context import AppContext
from solo_unicorn.core import lifecycle
from solo_unicorn.core.actors import resolve_actor
from solo_unicorn.core.orchestrator import build_prompt_context
from solo_unicorn.core.projects import get_memory, get_project, update_memory
from solo_unicorn.core.prompts import build_session_prompt
from solo_unicorn.core.repo_agents import (
    HEALTH_STATUS_MAP,
    find_repo_agent,
    get_repo_agent,
    set_status,
)
from solo_unicorn.core.sessions import find_session, open_session_for_agent
from solo_unicorn.core.tasks import (
    get_task,
    list_claimable_tasks,
    list_iterations,
    update_task_fields,
)
from solo_unicorn.db.engine import utcnow
from solo_unicorn.serialize import (
    actor_dict,
    agent_dict,
    iteration_dict,
    project_dict,
    session_dict,
    task_dict,
)

logger = logging.getLogger(__name__)

Headers = Mapping[str, str]


class AuthError(ValueError):
    """Missing or wrong bearer token, or a missing agent header."""


def assert_bearer(headers: Headers, token: str):
    auth = headers.get("authorization") or ""
    scheme, _, supplied = auth.partition(" ")
    if scheme.lower() != "bearer" or not supplied:
        raise AuthError("Unauthorized: missing bearer token")
    if not hmac.compare_digest(supplied.strip().encode(), token.encode()):
        raise AuthError("Unauthorized: invalid bearer token")


def require_agent_id(headers: Headers) -> str:
    agent_id = (headers.get("x-agent-id") or "").strip()
    if not agent_id:
        raise AuthError("Missing x-agent-id header")
    return agent_id


def ok(**payload: Any) -> dict:
    return {"success": True, **payload}


def fail(message: str, **payload: Any) -> dict:
    return {"success": False, "message": message, **payload}


def envelope(fn):
    """Turn ValueErrors raised by a handler into a failure envelope."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except AuthError as e:
            logger.warning("%s rejected: %s", fn.__name__, e)
            return fail(str(e))
        except ValueError as e:
            logger.info("%s failed: %s", fn.__name__, e)
            return fail(str(e))

    return wrapper


def _parse_reset(value: str | int | float | None) -> datetime | None:
    """Accept an ISO timestamp or epoch seconds/milliseconds; return naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or str(value).isdigit():
        number = int(value)
        seconds = number / 1000 if number >= 1_000_000_000_000 else number
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Invalid resolve_at timestamp: {value}") from e
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# ── Agent tools ──────────────────────────────────────────────────────────────


@envelope
def agent_auth(
    app: AppContext,
    headers: Headers,
    client_type: str,
    repo_path: str,
    now: datetime | None = None,
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    agent = find_repo_agent(app.db, client_type, repo_path)
    if not agent:
        return fail(f"No repo agent registered for {client_type} at {repo_path}")
    agent = set_status(app.db, agent.id, "active")
    app.orchestrator.record_heartbeat(agent.id, now)
    logger.info("Agent %s authenticated", agent.id)
    return ok(agent_id=agent.id, project_id=agent.project_id, agent=agent_dict(agent))


@envelope
def agent_request_task(
    app: AppContext,
    headers: Headers,
    now: datetime | None = None,
) -> dict:
    """Pull mode: claim the best ready task, or resume a stalled stage, for the calling agent."""
    assert_bearer(headers, app.config.agent_auth_token)
    agent_id = require_agent_id(headers)
    now = now or utcnow()

    agent = get_repo_agent(app.db, agent_id)
    if not agent:
        return fail(f"Agent not found: {agent_id}")
    if agent.status == "rate_limited":
        return fail("Agent is rate limited")
    if open_session_for_agent(app.db, agent_id):
        return fail("Agent already has an active session")

    for task in list_claimable_tasks(app.db, repo_agent_id=agent_id):
        try:
            claim = lifecycle.claim_task(app.db, task.id, agent_id, now, session_status="active")
        except lifecycle.ClaimConflictError as e:
            logger.info("Task %s not claimable: %s", task.id, e)
            continue
        app.orchestrator.on_task_started(agent_id, task.id, claim.session.id, now)
        stage, ctx = build_prompt_context(app.db, claim.task, app.config.web_url)
        return ok(
            task=task_dict(claim.task),
            session_id=claim.session.id,
            stage=claim.task.stage,
            prompt=build_session_prompt(stage, ctx),
        )
    return fail("No tasks available")


@envelope
def agent_health(
    app: AppContext,
    headers: Headers,
    status: str,
    now: datetime | None = None,
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    agent_id = require_agent_id(headers)
    mapped = HEALTH_STATUS_MAP.get(status)
    if not mapped:
        return fail(f"Unknown status: {status} (expected one of {', '.join(HEALTH_STATUS_MAP)})")
    if not get_repo_agent(app.db, agent_id):
        return fail(f"Agent not found: {agent_id}")
    if mapped == "idle":
        app.orchestrator.on_agent_available(agent_id, now)
        agent = get_repo_agent(app.db, agent_id)
    else:
        agent = set_status(app.db, agent_id, mapped)
        app.orchestrator.record_heartbeat(agent_id, now)
    return ok(agent_id=agent_id, status=agent.status)


@envelope
def agent_rate_limit(
    app: AppContext,
    headers: Headers,
    session_id: str | None = None,
    resolve_at: str | int | None = None,
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    agent_id = require_agent_id(headers)
    if not get_repo_agent(app.db, agent_id):
        return fail(f"Agent not found: {agent_id}")
    if session_id:
        session = find_session(app.db, session_id)
        if session and session.repo_agent_id != agent_id:
            return fail("Session does not belong to this agent")
    reset_at = _parse_reset(resolve_at)
    agent = set_status(app.db, agent_id, "rate_limited", rate_limit_reset_at=reset_at)
    logger.warning("Agent %s reported rate limit until %s", agent_id, reset_at)
    return ok(
        agent_id=agent_id,
        status=agent.status,
        rate_limit_reset_at=reset_at.isoformat() if reset_at else None,
    )


@envelope
def agent_session_complete(
    app: AppContext,
    headers: Headers,
    session_id: str,
    success: bool,
    error: str | None = None,
    now: datetime | None = None,
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    agent_id = require_agent_id(headers)
    now = now or utcnow()
    session = find_session(app.db, session_id)
    if not session:
        return fail(f"Session not found: {session_id}")
    session = lifecycle.finish_session(
        app.db, session.id, success, now, error=error, agent_id=agent_id
    )
    app.orchestrator.on_task_completed(agent_id, session.task_id, success, now)
    return ok(session=session_dict(session), task=task_dict(get_task(app.db, session.task_id)))


# ── Task tools ───────────────────────────────────────────────────────────────


@envelope
def task_start(
    app: AppContext,
    headers: Headers,
    task_id: str,
    stage: str | None = None,
    now: datetime | None = None,
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    agent_id = require_agent_id(headers)
    session = lifecycle.start_stage(app.db, task_id, stage, agent_id=agent_id)
    app.orchestrator.on_task_started(agent_id, task_id, session.id, now)
    return ok(task=task_dict(get_task(app.db, task_id)), session_id=session.id)


@envelope
def task_complete(
    app: AppContext,
    headers: Headers,
    task_id: str,
    next_stage: str | None = None,
    mark_done: bool = False,
    now: datetime | None = None,
) -> dict:
    """Self-report: advance to ``next_stage`` or finish the task."""
    assert_bearer(headers, app.config.agent_auth_token)
    agent_id = require_agent_id(headers)
    now = now or utcnow()
    if mark_done:
        task = lifecycle.complete_task(app.db, task_id, now, agent_id=agent_id)
    elif next_stage:
        task = lifecycle.advance_stage(app.db, task_id, next_stage, now, agent_id=agent_id)
    else:
        return fail("Provide next_stage or mark_done")
    app.orchestrator.on_task_completed(agent_id, task_id, True, now)
    return ok(task=task_dict(task))


@envelope
def cards_update(
    app: AppContext,
    headers: Headers,
    task_id: str,
    refined_title: str | None = None,
    refined_description: str | None = None,
    plan: Any = None,
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    task = update_task_fields(
        app.db, task_id,
        refined_title=refined_title,
        refined_description=refined_description,
        plan=plan,
    )
    if not task:
        return fail(f"Task not found: {task_id}")
    return ok(task=task_dict(task))


@envelope
def context_read(app: AppContext, headers: Headers, task_id: str) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    task = get_task(app.db, task_id)
    if not task:
        return fail(f"Task not found: {task_id}")
    project = get_project(app.db, task.project_id)
    agent = get_repo_agent(app.db, task.repo_agent_id)
    actor = resolve_actor(app.db, task.project_id, task.actor_id)
    return ok(
        task=task_dict(task),
        project=project_dict(project) if project else None,
        repo_agent=agent_dict(agent) if agent else None,
        actor=actor_dict(actor) if actor else None,
        iterations=[iteration_dict(i) for i in list_iterations(app.db, task_id)],
    )


# ── Memory tools ─────────────────────────────────────────────────────────────


@envelope
def memory_read(app: AppContext, headers: Headers, project_id: str) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    memory = get_memory(app.db, project_id)
    if memory is None:
        return fail(f"Project not found: {project_id}")
    return ok(project_id=project_id, memory=memory)


@envelope
def memory_update(
    app: AppContext,
    headers: Headers,
    project_id: str,
    memory: dict[str, Any],
) -> dict:
    assert_bearer(headers, app.config.agent_auth_token)
    project = update_memory(app.db, project_id, memory)
    if not project:
        return fail(f"Project not found: {project_id}")
    return ok(project_id=project_id, memory=project.memory)
