"""Repo-agent registry: a coding client bound to a repository path."""

import json
import sqlite3
from datetime import datetime
from typing import Any

from solo_unicorn.core.tasks import slugify, unique_id
from solo_unicorn.db.engine import parse_dt, to_db
from solo_unicorn.db.models import AGENT_STATUSES, CLIENT_TYPES, RepoAgent

# Coarse statuses reported by agent clients, mapped to the stored enum.
HEALTH_STATUS_MAP = {
    "available": "idle",
    "busy": "active",
    "rate_limited": "rate_limited",
    "error": "error",
}


def create_repo_agent(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    client_type: str = "claude_code",
    config: dict[str, Any] | None = None,
) -> RepoAgent:
    """Register a coding client for a repository within a project."""
    if client_type not in CLIENT_TYPES:
        raise ValueError(
            f"Unknown client type: {client_type} (expected one of {', '.join(CLIENT_TYPES)})"
        )
    existing = find_repo_agent(db, client_type, repo_path)
    if existing:
        raise ValueError(f"{client_type} at {repo_path} is already registered as {existing.id}")
    agent_id = unique_id(db, "repo_agents", slugify(name) or client_type)
    db.execute(
        """INSERT INTO repo_agents (id, project_id, name, repo_path, client_type, config)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (agent_id, project_id, name, repo_path, client_type, json.dumps(config or {})),
    )
    db.commit()
    return get_repo_agent(db, agent_id)


def get_repo_agent(db: sqlite3.Connection, agent_id: str) -> RepoAgent | None:
    row = db.execute("SELECT * FROM repo_agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def find_repo_agent(
    db: sqlite3.Connection, client_type: str, repo_path: str
) -> RepoAgent | None:
    """Exact lookup by (client type, repo path)."""
    row = db.execute(
        "SELECT * FROM repo_agents WHERE client_type = ? AND repo_path = ?",
        (client_type, repo_path),
    ).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_repo_agents(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[RepoAgent]:
    query = "SELECT * FROM repo_agents WHERE 1=1"
    params: list = []
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at, id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent(r) for r in rows]


def set_status(
    db: sqlite3.Connection,
    agent_id: str,
    status: str,
    rate_limit_reset_at: datetime | None = None,
) -> RepoAgent | None:
    """Set an agent's status. Leaving rate_limited clears the reset time."""
    if status not in AGENT_STATUSES:
        raise ValueError(f"Invalid agent status: {status}")
    reset = to_db(rate_limit_reset_at) if status == "rate_limited" else None
    cur = db.execute(
        """UPDATE repo_agents
           SET status = ?, rate_limit_reset_at = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (status, reset, agent_id),
    )
    db.commit()
    if cur.rowcount == 0:
        return None
    return get_repo_agent(db, agent_id)


def _row_to_agent(row: sqlite3.Row) -> RepoAgent:
    return RepoAgent(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        repo_path=row["repo_path"],
        client_type=row["client_type"],
        config=json.loads(row["config"]) if row["config"] else {},
        status=row["status"],
        rate_limit_reset_at=parse_dt(row["rate_limit_reset_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
