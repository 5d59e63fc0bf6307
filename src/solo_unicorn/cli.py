"""CLI entry point for Solo Unicorn."""

import json
import logging
import os
import sys
from datetime import timedelta

import click

from solo_unicorn.config import get_config
from solo_unicorn.core import actors as actors_mod
from solo_unicorn.core import lifecycle
from solo_unicorn.core import projects as projects_mod
from solo_unicorn.core import repo_agents as agents_mod
from solo_unicorn.core import sessions as sessions_mod
from solo_unicorn.core import tasks as tasks_mod
from solo_unicorn.db.engine import get_db, utcnow
from solo_unicorn.db.models import CLIENT_TYPES, PRIORITIES, TASK_STATUSES
from solo_unicorn.serialize import task_dict


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
def main(log_level):
    """solo - Solo Unicorn CLI"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--description", "-d", default="", help="Project description")
def init_project(project_name, description):
    """Create a new project."""
    project_id = tasks_mod.slugify(project_name)
    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            click.echo(f"Project already exists: {project_id}", err=True)
            sys.exit(1)
        project = projects_mod.create_project(db, project_id, project_name, description)
        click.echo(f"Project created: {project.id} ({project.name})")


# ── Repo Agent Commands ───────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage repo agents."""
    pass


@agent_group.command("add")
@click.argument("project")
@click.argument("name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option(
    "--client-type",
    default="claude_code",
    type=click.Choice(CLIENT_TYPES),
    help="Coding client that works this repo",
)
def agent_add(project, name, repo_path, client_type):
    """Register a coding client for a repository."""
    repo_path = os.path.abspath(repo_path)
    with _get_db() as db:
        if not projects_mod.get_project(db, project):
            click.echo(f"Project not found: {project}", err=True)
            sys.exit(1)
        try:
            agent = agents_mod.create_repo_agent(db, project, name, repo_path, client_type)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Repo agent created: {agent.id}")
        click.echo(f"  Repo: {agent.repo_path}")
        click.echo(f"  Client: {agent.client_type}")


@agent_group.command("list")
@click.option("--project", default=None, help="Project ID")
def agent_list(project):
    """List repo agents and their status."""
    with _get_db() as db:
        agents = agents_mod.list_repo_agents(db, project)
        if not agents:
            click.echo("No repo agents found.")
            return
        for a in agents:
            reset = f" until {a.rate_limit_reset_at}" if a.rate_limit_reset_at else ""
            click.echo(f"  [{a.status}{reset}] {a.id}: {a.client_type} at {a.repo_path}")


# ── Actor Commands ────────────────────────────────────────────────────────────


@main.group("actor")
def actor_group():
    """Manage actors (prompt personas)."""
    pass


@actor_group.command("add")
@click.argument("project")
@click.argument("name")
@click.argument("description")
@click.option("--default", "is_default", is_flag=True, help="Make this the project default")
def actor_add(project, name, description, is_default):
    """Create an actor."""
    with _get_db() as db:
        if not projects_mod.get_project(db, project):
            click.echo(f"Project not found: {project}", err=True)
            sys.exit(1)
        actor = actors_mod.create_actor(db, project, name, description, is_default=is_default)
        suffix = " (default)" if actor.is_default else ""
        click.echo(f"Actor created: {actor.id}{suffix}")


@actor_group.command("list")
@click.argument("project")
def actor_list(project):
    """List a project's actors."""
    with _get_db() as db:
        actors = actors_mod.list_actors(db, project)
        if not actors:
            click.echo("No actors found.")
            return
        for a in actors:
            marker = "*" if a.is_default else " "
            click.echo(f"  {marker} {a.id}: {a.description}")


@actor_group.command("default")
@click.argument("actor_id")
def actor_default(actor_id):
    """Make an actor its project's default."""
    with _get_db() as db:
        try:
            actor = actors_mod.set_default_actor(db, actor_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Default actor for {actor.project_id}: {actor.id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID")
@click.option("--agent", "agent_id", required=True, help="Repo agent ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default="P3", help="Priority P1 (highest) to P5 (lowest)")
@click.option("--actor", default=None, help="Actor ID (defaults to the project default)")
@click.option("--ready", is_flag=True, help="Make the task available for pickup now")
def task_add(title, project, agent_id, description, priority, actor, ready):
    """Create a new task."""
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, title, project, agent_id,
                raw_description=description,
                actor_id=actor,
                priority=priority,
                ready=ready,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}{' (ready)' if task.ready else ''}")


@task_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks in pickup order."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {"todo": "○", "doing": "●", "done": "✓"}
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            stage = f"/{task.stage}" if task.stage else ""
            ready = " [ready]" if task.status == "todo" and task.ready else ""
            click.echo(
                f"  {icon} {task.priority} {task.id}: {task.title} ({task.status}{stage}){ready}"
            )


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details with history."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.stage:
            click.echo(f"  Stage: {task.stage}")
        click.echo(f"  Ready: {'yes' if task.ready else 'no'}")
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Agent: {task.repo_agent_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.plan:
            click.echo(f"  Plan: {json.dumps(task.plan)}")

        iterations = tasks_mod.list_iterations(db, task_id)
        if iterations:
            click.echo("  Iterations:")
            for it in iterations:
                click.echo(f"    #{it.iteration_number} ({it.rejected_by}): {it.feedback}")

        sessions = sessions_mod.list_sessions(db, task_id=task_id)
        if sessions:
            click.echo("  Sessions:")
            for s in sessions:
                click.echo(f"    {s.id} [{s.status}] {s.stage} on {s.repo_agent_id}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("ready")
@click.argument("task_id")
@click.option("--off", is_flag=True, help="Close the pickup gate instead")
def task_ready(task_id, off):
    """Make a task available for agents to pick up."""
    with _get_db() as db:
        task = tasks_mod.set_ready(db, task_id, not off)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task_id} is {'ready' if task.ready else 'not ready'}")


@task_group.command("priority")
@click.argument("task_id")
@click.argument("priority")
def task_priority(task_id, priority):
    """Change a task's priority (P1 to P5)."""
    with _get_db() as db:
        try:
            task = tasks_mod.update_task_priority(db, task_id, priority)
        except ValueError:
            click.echo(f"Priority must be one of {', '.join(PRIORITIES)}.", err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Updated {task_id} priority to {task.priority}")


@task_group.command("reject")
@click.argument("task_id")
@click.argument("feedback")
@click.option("--by", "rejected_by", default="human", help="Who rejected the work")
def task_reject(task_id, feedback, rejected_by):
    """Send a done task back for another iteration."""
    with _get_db() as db:
        try:
            task = lifecycle.reject_task(db, task_id, feedback, utcnow(), rejected_by)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        count = len(tasks_mod.list_iterations(db, task_id))
        click.echo(f"Rejected {task.id}: back to {task.status}/{task.stage} (iteration {count})")


# ── Session Commands ─────────────────────────────────────────────────────────


@main.group("sessions")
def sessions_group():
    """Inspect and clean up agent sessions."""
    pass


@sessions_group.command("list")
@click.option("--task", "task_id", default=None, help="Filter by task")
@click.option("--agent", "agent_id", default=None, help="Filter by repo agent")
@click.option("--open", "open_only", is_flag=True, help="Only open sessions")
def sessions_list(task_id, agent_id, open_only):
    """List sessions, newest first."""
    with _get_db() as db:
        if open_only:
            sessions = sessions_mod.list_open_sessions(db)
        else:
            sessions = sessions_mod.list_sessions(db, task_id=task_id, repo_agent_id=agent_id)
        if not sessions:
            click.echo("No sessions found.")
            return
        for s in sessions:
            err = f" error={s.error}" if s.error else ""
            click.echo(
                f"  [{s.status}] {s.id} task={s.task_id} stage={s.stage} "
                f"agent={s.repo_agent_id} started={s.started_at}{err}"
            )


@sessions_group.command("sweep")
@click.option("--minutes", default=None, type=int, help="Staleness threshold in minutes")
def sessions_sweep(minutes):
    """Fail stale open sessions and free their tasks and agents."""
    config = get_config()
    stale_after = config.stale_after if minutes is None else timedelta(minutes=minutes)
    with _get_db() as db:
        swept = lifecycle.sweep_stale_sessions(db, utcnow(), stale_after)
        if not swept:
            click.echo("No stale sessions.")
            return
        for s in swept:
            click.echo(f"  Swept {s.id} (task {s.task_id})")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the web server, agent gateway, MCP endpoint and orchestrator."""
    from solo_unicorn.web.app import run_server

    config = get_config()
    host = host or config.host
    port = port or config.port
    click.echo(f"Starting Solo Unicorn at http://{host}:{port}")
    run_server(host=host, port=port, config=config)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
@click.option(
    "--transport",
    default="stdio",
    type=click.Choice(["stdio", "streamable-http"]),
    help="MCP transport",
)
def mcp_serve(transport):
    """Start a standalone MCP server over the configured store."""
    from solo_unicorn.context import build_context
    from solo_unicorn.mcp.server import create_mcp_server

    config = get_config()
    ctx = build_context(config)
    mcp = create_mcp_server(ctx)
    try:
        mcp.run(transport=transport)
    finally:
        ctx.db.close()


if __name__ == "__main__":
    main()
