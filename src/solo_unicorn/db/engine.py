"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    memory TEXT DEFAULT '{}',
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS repo_agents (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    client_type TEXT NOT NULL CHECK (client_type IN ('claude_code', 'cursor_cli', 'opencode')),
    config TEXT DEFAULT '{}',
    status TEXT DEFAULT 'idle' CHECK (status IN ('idle', 'active', 'rate_limited', 'error')),
    rate_limit_reset_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(client_type, repo_path)
);

CREATE TABLE IF NOT EXISTS actors (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    is_default INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    repo_agent_id TEXT NOT NULL REFERENCES repo_agents(id),
    actor_id TEXT REFERENCES actors(id),
    raw_title TEXT NOT NULL,
    raw_description TEXT DEFAULT '',
    refined_title TEXT,
    refined_description TEXT,
    plan TEXT,
    status TEXT DEFAULT 'todo' CHECK (status IN ('todo', 'doing', 'done')),
    stage TEXT CHECK (stage IN ('refine', 'kickoff', 'execute')),
    priority TEXT DEFAULT 'P3' CHECK (priority IN ('P1', 'P2', 'P3', 'P4', 'P5')),
    ready INTEGER DEFAULT 0,
    attachments TEXT DEFAULT '[]',
    version INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT,
    CHECK (stage IS NULL OR status = 'doing')
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS task_iterations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    iteration_number INTEGER NOT NULL,
    feedback TEXT NOT NULL,
    rejected_by TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(task_id, iteration_number)
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    repo_agent_id TEXT NOT NULL REFERENCES repo_agents(id),
    status TEXT DEFAULT 'starting' CHECK (status IN ('starting', 'active', 'completed', 'failed')),
    stage TEXT,
    client_ref TEXT,
    agent_session_id TEXT,
    error TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_pickup ON tasks(status, ready, repo_agent_id);
CREATE INDEX IF NOT EXISTS idx_sessions_open ON sessions(status, repo_agent_id);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE repo_agents ADD COLUMN rate_limit_reset_at TEXT",
        "ALTER TABLE sessions ADD COLUMN client_ref TEXT",
        "ALTER TABLE sessions ADD COLUMN agent_session_id TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    The connection may be shared by the orchestrator loop, MCP tools and the
    gateway, which all run on one event loop but not always on the thread
    that opened it.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the format stored in the DB."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="seconds")


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
