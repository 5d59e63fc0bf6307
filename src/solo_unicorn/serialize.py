"""JSON-ready dicts for store models, shared by the MCP tools, web API and gateway."""

from datetime import datetime

from solo_unicorn.db.models import (
    Actor,
    Project,
    RepoAgent,
    Session,
    Task,
    TaskEvent,
    TaskIteration,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def project_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "memory": p.memory,
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def agent_dict(a: RepoAgent) -> dict:
    return {
        "id": a.id,
        "project_id": a.project_id,
        "name": a.name,
        "repo_path": a.repo_path,
        "client_type": a.client_type,
        "config": a.config,
        "status": a.status,
        "rate_limit_reset_at": _iso(a.rate_limit_reset_at),
    }


def actor_dict(a: Actor) -> dict:
    return {
        "id": a.id,
        "project_id": a.project_id,
        "name": a.name,
        "description": a.description,
        "is_default": a.is_default,
    }


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "repo_agent_id": t.repo_agent_id,
        "actor_id": t.actor_id,
        "title": t.title,
        "raw_title": t.raw_title,
        "raw_description": t.raw_description,
        "refined_title": t.refined_title,
        "refined_description": t.refined_description,
        "plan": t.plan,
        "status": t.status,
        "stage": t.stage,
        "priority": t.priority,
        "ready": t.ready,
        "attachments": t.attachments,
        "version": t.version,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
    }


def session_dict(s: Session) -> dict:
    return {
        "id": s.id,
        "task_id": s.task_id,
        "repo_agent_id": s.repo_agent_id,
        "status": s.status,
        "stage": s.stage,
        "client_ref": s.client_ref,
        "agent_session_id": s.agent_session_id,
        "error": s.error,
        "started_at": _iso(s.started_at),
        "completed_at": _iso(s.completed_at),
    }


def event_dict(e: TaskEvent) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def iteration_dict(i: TaskIteration) -> dict:
    return {
        "iteration_number": i.iteration_number,
        "feedback": i.feedback,
        "rejected_by": i.rejected_by,
        "created_at": _iso(i.created_at),
    }
