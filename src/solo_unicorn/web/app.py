"""Web server: board API, agent gateway, MCP endpoint and the orchestrator loop."""

import contextlib
import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route, WebSocketRoute

from solo_unicorn.config import Config
from solo_unicorn.context import AppContext, build_context
from solo_unicorn.core import projects as projects_mod
from solo_unicorn.core import repo_agents as agents_mod
from solo_unicorn.core import sessions as sessions_mod
from solo_unicorn.core import tasks as tasks_mod
from solo_unicorn.db.models import STAGES, TASK_STATUSES
from solo_unicorn.integrations.claude_code import ClaudeCodeError
from solo_unicorn.mcp.server import create_mcp_server
from solo_unicorn.serialize import (
    agent_dict,
    event_dict,
    iteration_dict,
    project_dict,
    session_dict,
    task_dict,
)
from solo_unicorn.web.dashboard import get_dashboard_html

logger = logging.getLogger(__name__)


def _ctx(request: Request) -> AppContext:
    return request.app.state.ctx


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def health(request: Request):
    ctx = _ctx(request)
    return JSONResponse({
        "status": "ok",
        "claude_code_connected": ctx.orchestrator.transport.connected,
        "task_push_enabled": ctx.orchestrator.task_push_enabled,
        "agents": len(ctx.orchestrator.agents),
    })


async def api_list_projects(request: Request):
    projects = projects_mod.list_projects(_ctx(request).db)
    return JSONResponse([project_dict(p) for p in projects])


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    project = projects_mod.get_project(_ctx(request).db, project_id)
    if not project:
        return JSONResponse({"error": "Project not found"}, status_code=404)
    return JSONResponse(project_dict(project))


async def api_project_tasks(request: Request):
    project_id = request.path_params["project_id"]
    tasks = tasks_mod.list_tasks(
        _ctx(request).db,
        project_id,
        status=request.query_params.get("status"),
        repo_agent_id=request.query_params.get("agent"),
    )
    return JSONResponse([task_dict(t) for t in tasks])


async def api_project_summary(request: Request):
    project_id = request.path_params["project_id"]
    tasks = tasks_mod.list_tasks(_ctx(request).db, project_id)

    counts = {status: 0 for status in TASK_STATUSES}
    stages = {stage: 0 for stage in STAGES}
    ready = 0
    for t in tasks:
        counts[t.status] = counts.get(t.status, 0) + 1
        if t.stage:
            stages[t.stage] = stages.get(t.stage, 0) + 1
        if t.status == "todo" and t.ready:
            ready += 1
    total = len(tasks)
    progress = (counts["done"] / total * 100) if total > 0 else 0

    return JSONResponse({
        "project_id": project_id,
        "counts": counts,
        "stages": stages,
        "ready": ready,
        "total": total,
        "progress_pct": round(progress, 1),
    })


async def api_project_agents(request: Request):
    ctx = _ctx(request)
    project_id = request.path_params["project_id"]
    result = []
    for agent in agents_mod.list_repo_agents(ctx.db, project_id):
        ad = agent_dict(agent)
        cached = ctx.orchestrator.agents.get(agent.id)
        ad["current_task_id"] = cached.current_task_id if cached else None
        ad["last_heartbeat"] = cached.last_heartbeat.isoformat() if cached else None
        result.append(ad)
    return JSONResponse(result)


async def api_get_task(request: Request):
    db = _ctx(request).db
    task_id = request.path_params["task_id"]
    task = tasks_mod.get_task(db, task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = task_dict(task)
    td["events"] = [event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
    td["sessions"] = [session_dict(s) for s in sessions_mod.list_sessions(db, task_id=task_id)]
    td["iterations"] = [iteration_dict(i) for i in tasks_mod.list_iterations(db, task_id)]
    return JSONResponse(td)


async def api_set_ready(request: Request):
    ctx = _ctx(request)
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    ready = bool(body.get("ready", True))
    try:
        task = tasks_mod.set_ready(ctx.db, task_id, ready)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    if task.ready and task.status == "todo":
        await ctx.gateway.broadcast({"type": "new_task_available", "task": task_dict(task)})
    return JSONResponse(task_dict(task))


async def api_abort_task(request: Request):
    ctx = _ctx(request)
    task_id = request.path_params["task_id"]
    try:
        session = await ctx.orchestrator.abort_task(task_id)
    except ClaudeCodeError as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"aborted": True, "session": session_dict(session)})


async def api_retry_connection(request: Request):
    ctx = _ctx(request)
    connected = await ctx.orchestrator.transport.retry_connection()
    return JSONResponse({"connected": connected}, status_code=200 if connected else 503)


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return body if isinstance(body, dict) else {}


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, transport=None) -> Starlette:
    """Build the server around one store, orchestrator and gateway.

    The orchestrator loop and the MCP session manager run only inside the
    app's lifespan.
    """
    ctx = build_context(config, transport)
    mcp = create_mcp_server(ctx)
    mcp_app = mcp.streamable_http_app()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        async with mcp.session_manager.run():
            await ctx.orchestrator.start()
            try:
                yield
            finally:
                await ctx.orchestrator.stop()
                ctx.db.close()

    routes = [
        Route("/", index),
        Route("/health", health),
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/tasks", api_project_tasks),
        Route("/api/projects/{project_id}/summary", api_project_summary),
        Route("/api/projects/{project_id}/agents", api_project_agents),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/ready", api_set_ready, methods=["POST"]),
        Route("/api/tasks/{task_id}/abort", api_abort_task, methods=["POST"]),
        Route("/api/orchestrator/retry", api_retry_connection, methods=["POST"]),
        WebSocketRoute("/ws/agent", ctx.gateway.endpoint),
        *mcp_app.routes,
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.ctx = ctx
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config)
    logger.info("Serving on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port)
