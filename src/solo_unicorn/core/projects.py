"""Project management operations."""

import json
import sqlite3
from typing import Any

from solo_unicorn.db.engine import parse_dt
from solo_unicorn.db.models import Project


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    description: str = "",
    memory: dict[str, Any] | None = None,
) -> Project:
    """Create a new project."""
    db.execute(
        """INSERT INTO projects (id, name, description, memory)
           VALUES (?, ?, ?, ?)""",
        (project_id, name, description, json.dumps(memory or {})),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {"name", "description"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def get_memory(db: sqlite3.Connection, project_id: str) -> dict[str, Any] | None:
    """Get a project's memory blob, or None if the project doesn't exist."""
    project = get_project(db, project_id)
    if not project:
        return None
    return project.memory


def update_memory(
    db: sqlite3.Connection,
    project_id: str,
    memory: dict[str, Any],
) -> Project | None:
    """Replace a project's memory blob."""
    if not isinstance(memory, dict):
        raise ValueError("Project memory must be a JSON object")
    cur = db.execute(
        "UPDATE projects SET memory = ?, updated_at = datetime('now') WHERE id = ?",
        (json.dumps(memory), project_id),
    )
    db.commit()
    if cur.rowcount == 0:
        return None
    return get_project(db, project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        memory=json.loads(row["memory"]) if row["memory"] else {},
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
