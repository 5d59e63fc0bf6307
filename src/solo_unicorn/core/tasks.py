"""Task management operations.

Status and stage changes that touch more than the task row (claiming,
advancing, finishing) live in ``solo_unicorn.core.lifecycle``; this module
covers the human-facing CRUD and the queries the lifecycle builds on.
"""

import json
import re
import sqlite3
from typing import Any

from solo_unicorn.db.engine import parse_dt
from solo_unicorn.db.models import PRIORITIES, Task, TaskEvent, TaskIteration

# P1 is the highest priority everywhere tasks are picked up.
PRIORITY_ORDER_SQL = "CAST(SUBSTR(priority, 2) AS INTEGER) ASC, created_at ASC, rowid ASC"


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def unique_id(db: sqlite3.Connection, table: str, base_slug: str) -> str:
    """Generate a unique row ID from a slug, appending a number if needed."""
    existing = db.execute(
        f"SELECT id FROM {table} WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            f"SELECT id FROM {table} WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def normalize_priority(value: str | int) -> str:
    """Accept 'P1'..'P5', 'p3' or 1..5 and return the canonical 'P<n>' form."""
    text = str(value).strip().upper()
    if not text.startswith("P"):
        text = f"P{text}"
    if text not in PRIORITIES:
        raise ValueError(f"Priority must be one of {', '.join(PRIORITIES)}, got {value!r}")
    return text


def create_task(
    db: sqlite3.Connection,
    raw_title: str,
    project_id: str,
    repo_agent_id: str,
    raw_description: str = "",
    actor_id: str | None = None,
    priority: str | int = "P3",
    ready: bool = False,
    attachments: list[Any] | None = None,
) -> Task:
    """Create a new task in the todo column."""
    priority = normalize_priority(priority)
    agent = db.execute(
        "SELECT project_id FROM repo_agents WHERE id = ?", (repo_agent_id,)
    ).fetchone()
    if not agent:
        raise ValueError(f"Repo agent not found: {repo_agent_id}")
    if agent["project_id"] != project_id:
        raise ValueError(
            f"Repo agent {repo_agent_id} belongs to project {agent['project_id']}, not {project_id}"
        )

    task_id = unique_id(db, "tasks", slugify(raw_title) or "task")
    db.execute(
        """INSERT INTO tasks
           (id, project_id, repo_agent_id, actor_id, raw_title, raw_description,
            priority, ready, attachments)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, project_id, repo_agent_id, actor_id, raw_title, raw_description,
            priority, int(ready), json.dumps(attachments or []),
        ),
    )
    _log_event(db, task_id, "created", None, "todo")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    repo_agent_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, in pickup order."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if repo_agent_id:
        query += " AND repo_agent_id = ?"
        params.append(repo_agent_id)

    query += f" ORDER BY {PRIORITY_ORDER_SQL}"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def list_claimable_tasks(
    db: sqlite3.Connection,
    repo_agent_id: str | None = None,
) -> list[Task]:
    """Everything an agent may claim: ready todo tasks and stalled stages, best first."""
    query = """SELECT * FROM tasks t
               WHERE ((t.status = 'todo' AND t.ready = 1)
                      OR (t.status = 'doing' AND t.stage IS NOT NULL
                          AND NOT EXISTS (
                              SELECT 1 FROM sessions s
                              WHERE s.task_id = t.id AND s.status IN ('starting', 'active')
                          )))"""
    params: list = []
    if repo_agent_id:
        query += " AND t.repo_agent_id = ?"
        params.append(repo_agent_id)
    query += f" ORDER BY {PRIORITY_ORDER_SQL}"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def set_ready(db: sqlite3.Connection, task_id: str, ready: bool) -> Task | None:
    """Open or close the pickup gate for a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    if task.ready == ready:
        return task
    db.execute(
        "UPDATE tasks SET ready = ?, updated_at = datetime('now') WHERE id = ?",
        (int(ready), task_id),
    )
    _log_event(db, task_id, "ready_changed", str(task.ready).lower(), str(ready).lower())
    db.commit()
    return get_task(db, task_id)


def update_task_priority(
    db: sqlite3.Connection,
    task_id: str,
    priority: str | int,
) -> Task | None:
    """Update a task's priority (P1 highest, P5 lowest)."""
    task = get_task(db, task_id)
    if not task:
        return None
    priority = normalize_priority(priority)
    db.execute(
        "UPDATE tasks SET priority = ?, updated_at = datetime('now') WHERE id = ?",
        (priority, task_id),
    )
    _log_event(db, task_id, "priority_changed", task.priority, priority)
    db.commit()
    return get_task(db, task_id)


def update_task_fields(
    db: sqlite3.Connection,
    task_id: str,
    refined_title: str | None = None,
    refined_description: str | None = None,
    plan: Any = None,
) -> Task | None:
    """Save agent-authored content (refined text, plan) on a task."""
    updates: dict[str, Any] = {}
    if refined_title is not None:
        updates["refined_title"] = refined_title
    if refined_description is not None:
        updates["refined_description"] = refined_description
    if plan is not None:
        updates["plan"] = json.dumps(plan)

    task = get_task(db, task_id)
    if not task:
        return None
    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    _log_event(db, task_id, "fields_updated", None, ",".join(sorted(updates)))
    db.commit()
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task with its history and sessions."""
    if not get_task(db, task_id):
        return False
    db.execute("DELETE FROM sessions WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_iterations WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def get_stage_history(db: sqlite3.Connection, task_id: str) -> list[str]:
    """Stages entered since the task last went back to todo, in order."""
    history: list[str] = []
    for e in get_task_events(db, task_id):
        if e.event_type == "status_changed" and e.new_value == "todo":
            history = []
        elif e.event_type == "stage_changed" and e.new_value:
            history.append(e.new_value)
    return history


def add_iteration(
    db: sqlite3.Connection,
    task_id: str,
    feedback: str,
    rejected_by: str | None = None,
) -> TaskIteration:
    """Record reviewer feedback on a task's delivered work."""
    if not get_task(db, task_id):
        raise ValueError(f"Task not found: {task_id}")
    iteration_id = _insert_iteration(db, task_id, feedback, rejected_by)
    db.commit()
    return _row_to_iteration(
        db.execute("SELECT * FROM task_iterations WHERE id = ?", (iteration_id,)).fetchone()
    )


def _insert_iteration(
    db: sqlite3.Connection,
    task_id: str,
    feedback: str,
    rejected_by: str | None,
) -> int:
    """Insert the next iteration without committing; the caller owns the transaction."""
    row = db.execute(
        "SELECT COALESCE(MAX(iteration_number), 0) AS n FROM task_iterations WHERE task_id = ?",
        (task_id,),
    ).fetchone()
    number = row["n"] + 1
    cur = db.execute(
        """INSERT INTO task_iterations (task_id, iteration_number, feedback, rejected_by)
           VALUES (?, ?, ?, ?)""",
        (task_id, number, feedback, rejected_by),
    )
    _log_event(db, task_id, "iteration_added", None, str(number))
    return cur.lastrowid


def list_iterations(db: sqlite3.Connection, task_id: str) -> list[TaskIteration]:
    rows = db.execute(
        "SELECT * FROM task_iterations WHERE task_id = ? ORDER BY iteration_number",
        (task_id,),
    ).fetchall()
    return [_row_to_iteration(r) for r in rows]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        repo_agent_id=row["repo_agent_id"],
        actor_id=row["actor_id"],
        raw_title=row["raw_title"],
        raw_description=row["raw_description"] or "",
        refined_title=row["refined_title"],
        refined_description=row["refined_description"],
        plan=json.loads(row["plan"]) if row["plan"] else None,
        status=row["status"],
        stage=row["stage"],
        priority=row["priority"],
        ready=bool(row["ready"]),
        attachments=json.loads(row["attachments"]) if row["attachments"] else [],
        version=row["version"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )


def _row_to_iteration(row: sqlite3.Row) -> TaskIteration:
    return TaskIteration(
        id=row["id"],
        task_id=row["task_id"],
        iteration_number=row["iteration_number"],
        feedback=row["feedback"],
        rejected_by=row["rejected_by"],
        created_at=parse_dt(row["created_at"]),
    )
