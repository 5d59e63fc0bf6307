"""Task lifecycle transitions: claim, advance, finish, reject and the staleness sweep.

Every function here changes more than one row (task, session, repo-agent) and
does so inside a single ``with db:`` transaction, so a failure part way
through leaves nothing behind. Claims are guarded by a conditional update on
``tasks.version``; a claim that loses the race raises ``ClaimConflictError``.

Stage order is ``refine < kickoff < execute`` and never regresses.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta

from solo_unicorn.core.sessions import (
    get_session,
    list_open_sessions,
    new_session_id,
    open_session_for_agent,
    open_session_for_task,
)
from solo_unicorn.core.tasks import _insert_iteration, _log_event, get_task
from solo_unicorn.db.engine import to_db
from solo_unicorn.db.models import STAGES, Session, Task

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=30)


class InvalidTransitionError(ValueError):
    """The requested transition is not allowed from the task's current state."""


class ClaimConflictError(ValueError):
    """Someone else changed the task or agent between read and claim."""


@dataclass
class Claim:
    """Result of a successful claim, with enough state to undo it."""

    session: Session
    task: Task
    previous_status: str
    previous_stage: str | None

    @property
    def is_continuation(self) -> bool:
        return self.previous_status == "doing"


def stage_index(stage: str) -> int:
    if stage not in STAGES:
        raise ValueError(f"Unknown stage: {stage} (expected one of {', '.join(STAGES)})")
    return STAGES.index(stage)


# ── Claiming ─────────────────────────────────────────────────────────────────


def claim_task(
    db: sqlite3.Connection,
    task_id: str,
    agent_id: str,
    now: datetime,
    session_status: str = "starting",
) -> Claim:
    """Claim a task for a repo-agent and open a session for its current stage.

    A ready ``todo`` task moves to ``doing``/``refine``. A ``doing`` task whose
    stage has no open session is continued at that stage.
    """
    if session_status not in ("starting", "active"):
        raise ValueError(f"A new session cannot start as {session_status}")

    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    _check_scope(task, agent_id)

    agent = db.execute(
        "SELECT status FROM repo_agents WHERE id = ?", (agent_id,)
    ).fetchone()
    if not agent:
        raise ValueError(f"Repo agent not found: {agent_id}")
    if agent["status"] == "rate_limited":
        raise ClaimConflictError(f"Agent {agent_id} is rate limited")
    if open_session_for_agent(db, agent_id):
        raise ClaimConflictError("Agent already has an active session")
    if open_session_for_task(db, task_id):
        raise ClaimConflictError(f"Task {task_id} already has an active session")

    if task.status == "todo":
        if not task.ready:
            raise InvalidTransitionError(f"Task {task_id} is not ready")
        stage = "refine"
        guard = "status = 'todo' AND ready = 1"
    elif task.status == "doing" and task.stage:
        stage = task.stage
        guard = "status = 'doing' AND stage = ?"
    else:
        raise InvalidTransitionError(f"Task {task_id} is {task.status} and cannot be claimed")

    session_id = new_session_id()
    with db:
        params: list = ["doing", stage, to_db(now), task_id, task.version]
        if task.status == "doing":
            params.append(stage)
        cur = db.execute(
            f"""UPDATE tasks
                SET status = ?, stage = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ? AND {guard}""",
            params,
        )
        if cur.rowcount == 0:
            raise ClaimConflictError(f"Task {task_id} was claimed concurrently")

        cur = db.execute(
            """UPDATE repo_agents SET status = 'active', updated_at = ?
               WHERE id = ? AND status != 'rate_limited'""",
            (to_db(now), agent_id),
        )
        if cur.rowcount == 0:
            raise ClaimConflictError(f"Agent {agent_id} became unavailable")

        db.execute(
            """INSERT INTO sessions (id, task_id, repo_agent_id, status, stage, started_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (session_id, task_id, agent_id, session_status, stage, to_db(now)),
        )
        if task.status == "todo":
            _log_event(db, task_id, "status_changed", "todo", "doing")
            _log_event(db, task_id, "stage_changed", None, stage)
        _log_event(db, task_id, "session_opened", None, session_id)

    logger.info("Task %s claimed by %s at stage %s (session %s)", task_id, agent_id, stage, session_id)
    return Claim(
        session=get_session(db, session_id),
        task=get_task(db, task_id),
        previous_status=task.status,
        previous_stage=task.stage,
    )


def activate_session(
    db: sqlite3.Connection,
    session_id: str,
    client_ref: str | None = None,
) -> Session:
    """Move a starting session to active, recording the transport's placeholder id."""
    session = get_session(db, session_id)
    if not session:
        raise ValueError(f"Session not found: {session_id}")
    if not session.is_open:
        raise InvalidTransitionError(f"Session {session_id} is already {session.status}")
    with db:
        db.execute(
            "UPDATE sessions SET status = 'active', client_ref = COALESCE(?, client_ref) WHERE id = ?",
            (client_ref, session_id),
        )
    return get_session(db, session_id)


def rollback_claim(
    db: sqlite3.Connection,
    claim: Claim,
    error: str,
    now: datetime,
) -> Task:
    """Undo a claim whose prompt could not be delivered."""
    task_id = claim.task.id
    with db:
        if claim.is_continuation:
            db.execute(
                """UPDATE tasks SET version = version + 1, updated_at = ?
                   WHERE id = ?""",
                (to_db(now), task_id),
            )
        else:
            db.execute(
                """UPDATE tasks
                   SET status = 'todo', stage = NULL, version = version + 1, updated_at = ?
                   WHERE id = ?""",
                (to_db(now), task_id),
            )
            _log_event(db, task_id, "status_changed", "doing", "todo")
            _log_event(db, task_id, "stage_changed", claim.task.stage, None)
        db.execute(
            """UPDATE sessions SET status = 'failed', error = ?, completed_at = ?
               WHERE id = ?""",
            (error, to_db(now), claim.session.id),
        )
        _set_agent_idle(db, claim.session.repo_agent_id, now)
        _log_event(db, task_id, "session_failed", claim.session.id, error)

    logger.warning("Rolled back claim of task %s: %s", task_id, error)
    return get_task(db, task_id)


# ── Stage progress ───────────────────────────────────────────────────────────


def start_stage(
    db: sqlite3.Connection,
    task_id: str,
    stage: str | None = None,
    agent_id: str | None = None,
) -> Session:
    """The agent confirms it is working on the task's current stage."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status != "doing":
        raise InvalidTransitionError(f"Task {task_id} is {task.status}, not doing")
    if stage is not None and stage != task.stage:
        raise InvalidTransitionError(
            f"Task {task_id} is at stage {task.stage}, not {stage}"
        )
    session = open_session_for_task(db, task_id)
    if not session:
        raise InvalidTransitionError(f"Task {task_id} has no open session")
    if agent_id and session.repo_agent_id != agent_id:
        raise ValueError("Session does not belong to this agent")
    return activate_session(db, session.id)


def advance_stage(
    db: sqlite3.Connection,
    task_id: str,
    next_stage: str,
    now: datetime,
    agent_id: str | None = None,
) -> Task:
    """Finish the current stage and move forward.

    The stage's session is closed as completed and the agent goes idle; the
    orchestrator opens a new session for the next stage on a later tick.
    """
    target = stage_index(next_stage)
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    _check_scope(task, agent_id)
    if task.status != "doing" or task.stage is None:
        raise InvalidTransitionError(f"Task {task_id} is {task.status}, not doing")
    if target <= stage_index(task.stage):
        raise InvalidTransitionError(
            f"Cannot move task {task_id} from {task.stage} back to {next_stage}"
        )

    session = open_session_for_task(db, task_id)
    if agent_id and session and session.repo_agent_id != agent_id:
        raise ValueError("Session does not belong to this agent")

    with db:
        cur = db.execute(
            """UPDATE tasks SET stage = ?, version = version + 1, updated_at = ?
               WHERE id = ? AND version = ? AND status = 'doing'""",
            (next_stage, to_db(now), task_id, task.version),
        )
        if cur.rowcount == 0:
            raise ClaimConflictError(f"Task {task_id} changed concurrently")
        _log_event(db, task_id, "stage_changed", task.stage, next_stage)
        if session:
            _close_session(db, session.id, "completed", None, now)
            _set_agent_idle(db, session.repo_agent_id, now)

    logger.info("Task %s advanced %s -> %s", task_id, task.stage, next_stage)
    return get_task(db, task_id)


# ── Finishing ────────────────────────────────────────────────────────────────


def finish_session(
    db: sqlite3.Connection,
    session_id: str,
    success: bool,
    now: datetime,
    error: str | None = None,
    agent_id: str | None = None,
) -> Session:
    """Close an open session and settle its task.

    Success moves the task to ``done``. Failure sends it back to ``todo`` and
    closes the ready gate so a human looks at it before it is retried.
    """
    session = get_session(db, session_id)
    if not session:
        raise ValueError(f"Session not found: {session_id}")
    if agent_id and session.repo_agent_id != agent_id:
        raise ValueError("Session does not belong to this agent")
    if not session.is_open:
        raise InvalidTransitionError(f"Session {session_id} is already {session.status}")

    task = get_task(db, session.task_id)
    with db:
        _close_session(db, session_id, "completed" if success else "failed", error, now)
        if success:
            _mark_done(db, task, now)
        else:
            _reset_to_todo(db, task, now)
        _set_agent_idle(db, session.repo_agent_id, now)

    logger.info(
        "Session %s for task %s %s", session_id, session.task_id,
        "completed" if success else f"failed: {error}",
    )
    return get_session(db, session_id)


def complete_task(
    db: sqlite3.Connection,
    task_id: str,
    now: datetime,
    agent_id: str | None = None,
) -> Task:
    """Mark a task done, closing its open session if there is one.

    Only a task in progress can be finished, and only by the agent it is
    scoped to.
    """
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    _check_scope(task, agent_id)
    if task.status != "doing":
        raise InvalidTransitionError(f"Task {task_id} is {task.status}, not doing")

    session = open_session_for_task(db, task_id)
    if session:
        finish_session(db, session.id, True, now, agent_id=agent_id)
    else:
        with db:
            _mark_done(db, task, now)
    return get_task(db, task_id)


def reject_task(
    db: sqlite3.Connection,
    task_id: str,
    feedback: str,
    now: datetime,
    rejected_by: str | None = "human",
) -> Task:
    """Send delivered work back with feedback.

    The task re-enters ``doing`` at the execute stage with no open session, so
    the next tick continues it with the iterate prompt.
    """
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status != "done":
        raise InvalidTransitionError(f"Only done tasks can be rejected; {task_id} is {task.status}")

    with db:
        _insert_iteration(db, task_id, feedback, rejected_by)
        cur = db.execute(
            """UPDATE tasks
               SET status = 'doing', stage = 'execute', completed_at = NULL,
                   version = version + 1, updated_at = ?
               WHERE id = ? AND version = ?""",
            (to_db(now), task_id, task.version),
        )
        if cur.rowcount == 0:
            raise ClaimConflictError(f"Task {task_id} changed concurrently")
        _log_event(db, task_id, "status_changed", "done", "doing")
        _log_event(db, task_id, "stage_changed", None, "execute")
    return get_task(db, task_id)


# ── Staleness sweep ──────────────────────────────────────────────────────────


def sweep_stale_sessions(
    db: sqlite3.Connection,
    now: datetime,
    stale_after: timedelta = STALE_AFTER,
) -> list[Session]:
    """Fail open sessions older than ``stale_after`` and free their task and agent.

    Running it again on already-swept rows changes nothing.
    """
    stale = list_open_sessions(db, started_before=now - stale_after)
    swept = []
    for session in stale:
        task = get_task(db, session.task_id)
        with db:
            cur = db.execute(
                """UPDATE sessions SET status = 'failed', error = ?, completed_at = ?
                    WHERE id = ? AND status IN ('starting', 'active')""",
                (f"stale: no report after {int(stale_after.total_seconds() // 60)} minutes",
                 to_db(now), session.id),
            )
            if cur.rowcount == 0:
                continue
            if task and task.status != "done":
                _reset_to_todo(db, task, now)
            _set_agent_idle(db, session.repo_agent_id, now)
        logger.warning("Swept stale session %s (task %s)", session.id, session.task_id)
        swept.append(get_session(db, session.id))
    return swept


# ── Private helpers (run inside the caller's transaction) ────────────────────


def _check_scope(task: Task, agent_id: str | None):
    if agent_id and task.repo_agent_id != agent_id:
        raise ValueError(f"Task {task.id} is not scoped to agent {agent_id}")


def _close_session(
    db: sqlite3.Connection,
    session_id: str,
    status: str,
    error: str | None,
    now: datetime,
):
    db.execute(
        """UPDATE sessions SET status = ?, error = ?, completed_at = ?
           WHERE id = ?""",
        (status, error, to_db(now), session_id),
    )


def _mark_done(db: sqlite3.Connection, task: Task, now: datetime):
    db.execute(
        """UPDATE tasks
           SET status = 'done', stage = NULL, completed_at = ?,
               version = version + 1, updated_at = ?
           WHERE id = ?""",
        (to_db(now), to_db(now), task.id),
    )
    _log_event(db, task.id, "status_changed", task.status, "done")
    if task.stage:
        _log_event(db, task.id, "stage_changed", task.stage, None)


def _reset_to_todo(db: sqlite3.Connection, task: Task, now: datetime):
    if task.status == "todo" and task.stage is None and not task.ready:
        return
    db.execute(
        """UPDATE tasks
           SET status = 'todo', stage = NULL, ready = 0,
               version = version + 1, updated_at = ?
           WHERE id = ?""",
        (to_db(now), task.id),
    )
    _log_event(db, task.id, "status_changed", task.status, "todo")
    if task.stage:
        _log_event(db, task.id, "stage_changed", task.stage, None)


def _set_agent_idle(db: sqlite3.Connection, agent_id: str, now: datetime):
    # A rate-limited or errored agent keeps its status.
    db.execute(
        """UPDATE repo_agents SET status = 'idle', updated_at = ?
           WHERE id = ? AND status = 'active'""",
        (to_db(now), agent_id),
    )
