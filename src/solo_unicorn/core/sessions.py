"""Session queries. Sessions are created and closed by the lifecycle module."""

import sqlite3
import uuid
from datetime import datetime

from solo_unicorn.db.engine import parse_dt, to_db
from solo_unicorn.db.models import Session

OPEN_SQL = "status IN ('starting', 'active')"


def new_session_id() -> str:
    return uuid.uuid4().hex


def get_session(db: sqlite3.Connection, session_id: str) -> Session | None:
    row = db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def find_session(db: sqlite3.Connection, ref: str) -> Session | None:
    """Look a session up by our id, the transport placeholder, or the agent's own id."""
    row = db.execute(
        """SELECT * FROM sessions
           WHERE id = ? OR client_ref = ? OR agent_session_id = ?
           ORDER BY started_at DESC LIMIT 1""",
        (ref, ref, ref),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def list_sessions(
    db: sqlite3.Connection,
    task_id: str | None = None,
    repo_agent_id: str | None = None,
    status: str | None = None,
) -> list[Session]:
    query = "SELECT * FROM sessions WHERE 1=1"
    params: list = []
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if repo_agent_id:
        query += " AND repo_agent_id = ?"
        params.append(repo_agent_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY started_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_session(r) for r in rows]


def list_open_sessions(
    db: sqlite3.Connection,
    started_before: datetime | None = None,
) -> list[Session]:
    """Open sessions, optionally only those started before a cutoff."""
    query = f"SELECT * FROM sessions WHERE {OPEN_SQL}"
    params: list = []
    if started_before is not None:
        query += " AND started_at < ?"
        params.append(to_db(started_before))
    query += " ORDER BY started_at"
    rows = db.execute(query, params).fetchall()
    return [_row_to_session(r) for r in rows]


def open_session_for_agent(db: sqlite3.Connection, agent_id: str) -> Session | None:
    row = db.execute(
        f"SELECT * FROM sessions WHERE repo_agent_id = ? AND {OPEN_SQL} LIMIT 1",
        (agent_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def open_session_for_task(db: sqlite3.Connection, task_id: str) -> Session | None:
    row = db.execute(
        f"SELECT * FROM sessions WHERE task_id = ? AND {OPEN_SQL} LIMIT 1",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def set_agent_session_id(
    db: sqlite3.Connection, client_ref: str, agent_session_id: str
) -> Session | None:
    """Attach the id reported by the agent process to the session it belongs to."""
    row = db.execute(
        "SELECT id FROM sessions WHERE client_ref = ?", (client_ref,)
    ).fetchone()
    if not row:
        return None
    db.execute(
        "UPDATE sessions SET agent_session_id = ? WHERE id = ?",
        (agent_session_id, row["id"]),
    )
    db.commit()
    return get_session(db, row["id"])


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        task_id=row["task_id"],
        repo_agent_id=row["repo_agent_id"],
        status=row["status"],
        stage=row["stage"],
        client_ref=row["client_ref"],
        agent_session_id=row["agent_session_id"],
        error=row["error"],
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )
