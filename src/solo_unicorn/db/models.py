"""Data models for Solo Unicorn."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

TASK_STATUSES = ("todo", "doing", "done")
STAGES = ("refine", "kickoff", "execute")
PRIORITIES = ("P1", "P2", "P3", "P4", "P5")
AGENT_STATUSES = ("idle", "active", "rate_limited", "error")
SESSION_STATUSES = ("starting", "active", "completed", "failed")
OPEN_SESSION_STATUSES = ("starting", "active")
CLIENT_TYPES = ("claude_code", "cursor_cli", "opencode")


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    memory: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RepoAgent:
    id: str
    project_id: str
    name: str
    repo_path: str
    client_type: str = "claude_code"
    config: dict[str, Any] = field(default_factory=dict)
    status: str = "idle"
    rate_limit_reset_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Actor:
    id: str
    project_id: str
    name: str
    description: str
    is_default: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    repo_agent_id: str
    raw_title: str
    raw_description: str = ""
    actor_id: str | None = None
    refined_title: str | None = None
    refined_description: str | None = None
    plan: Any = None
    status: str = "todo"
    stage: str | None = None
    priority: str = "P3"
    ready: bool = False
    attachments: list[Any] = field(default_factory=list)
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def title(self) -> str:
        return self.refined_title or self.raw_title

    @property
    def description(self) -> str:
        return self.refined_description or self.raw_description or ""


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class TaskIteration:
    id: int | None = None
    task_id: str = ""
    iteration_number: int = 1
    feedback: str = ""
    rejected_by: str | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    id: str
    task_id: str
    repo_agent_id: str
    status: str = "starting"
    stage: str | None = None
    client_ref: str | None = None
    agent_session_id: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SESSION_STATUSES
