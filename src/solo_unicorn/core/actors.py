"""Actors: reusable persona descriptions injected into prompts."""

import sqlite3

from solo_unicorn.core.tasks import slugify, unique_id
from solo_unicorn.db.engine import parse_dt
from solo_unicorn.db.models import Actor


def create_actor(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    description: str,
    is_default: bool = False,
) -> Actor:
    """Create an actor. Passing is_default=True replaces the project's default."""
    actor_id = unique_id(db, "actors", slugify(name) or "actor")
    with db:
        db.execute(
            """INSERT INTO actors (id, project_id, name, description)
               VALUES (?, ?, ?, ?)""",
            (actor_id, project_id, name, description),
        )
        if is_default:
            _set_default(db, project_id, actor_id)
    return get_actor(db, actor_id)


def get_actor(db: sqlite3.Connection, actor_id: str) -> Actor | None:
    row = db.execute("SELECT * FROM actors WHERE id = ?", (actor_id,)).fetchone()
    if not row:
        return None
    return _row_to_actor(row)


def list_actors(db: sqlite3.Connection, project_id: str) -> list[Actor]:
    rows = db.execute(
        "SELECT * FROM actors WHERE project_id = ? ORDER BY is_default DESC, name",
        (project_id,),
    ).fetchall()
    return [_row_to_actor(r) for r in rows]


def get_default_actor(db: sqlite3.Connection, project_id: str) -> Actor | None:
    row = db.execute(
        "SELECT * FROM actors WHERE project_id = ? AND is_default = 1",
        (project_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_actor(row)


def set_default_actor(db: sqlite3.Connection, actor_id: str) -> Actor:
    """Make an actor its project's default, unsetting any previous default."""
    actor = get_actor(db, actor_id)
    if not actor:
        raise ValueError(f"Actor not found: {actor_id}")
    with db:
        _set_default(db, actor.project_id, actor_id)
    return get_actor(db, actor_id)


def resolve_actor(
    db: sqlite3.Connection, project_id: str, actor_id: str | None
) -> Actor | None:
    """The task's own actor if set, otherwise the project default."""
    if actor_id:
        actor = get_actor(db, actor_id)
        if actor:
            return actor
    return get_default_actor(db, project_id)


def _set_default(db: sqlite3.Connection, project_id: str, actor_id: str):
    db.execute(
        """UPDATE actors SET is_default = 0, updated_at = datetime('now')
           WHERE project_id = ? AND is_default = 1""",
        (project_id,),
    )
    db.execute(
        "UPDATE actors SET is_default = 1, updated_at = datetime('now') WHERE id = ?",
        (actor_id,),
    )


def _row_to_actor(row: sqlite3.Row) -> Actor:
    return Actor(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"],
        is_default=bool(row["is_default"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
