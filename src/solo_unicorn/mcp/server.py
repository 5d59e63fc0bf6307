"""MCP server exposing the agent workflow tools.

Built per application by ``create_mcp_server`` so the tools close over one
``AppContext`` instead of module state. Served over Streamable HTTP at
``/mcp`` inside the web app, or on its own with ``solo mcp serve``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from solo_unicorn.context import AppContext
from solo_unicorn.mcp import handlers
from solo_unicorn.mcp.prompts import register_prompts

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "Solo Unicorn task workflow. Authenticate every call with "
    "'Authorization: Bearer <AGENT_AUTH_TOKEN>' and identify yourself with 'x-agent-id'. "
    "Call task.start when you begin a stage and task.complete when it is finished."
)


def create_mcp_server(app: AppContext) -> FastMCP:
    mcp = FastMCP("solo-unicorn", instructions=INSTRUCTIONS, stateless_http=True)

    def _headers(ctx: Context) -> dict[str, str]:
        """Request headers over HTTP; the configured identity over stdio."""
        request = getattr(ctx.request_context, "request", None)
        if request is not None:
            return {k.lower(): v for k, v in request.headers.items()}
        headers = {"authorization": f"Bearer {app.config.agent_auth_token}"}
        if app.config.agent_id:
            headers["x-agent-id"] = app.config.agent_id
        return headers

    async def _reply(result: dict[str, Any], broadcast: bool = True) -> str:
        if broadcast and result.get("success") and result.get("task"):
            await app.gateway.broadcast({"type": "task_updated", "task": result["task"]})
        return json.dumps(result)

    # ── Agent Tools ──────────────────────────────────────────────────────────

    @mcp.tool(name="agent.auth")
    async def agent_auth(ctx: Context, client_type: str, repo_path: str) -> str:
        """Identify this client by (client type, repo path). Returns the agent_id to send as x-agent-id."""
        return await _reply(handlers.agent_auth(app, _headers(ctx), client_type, repo_path))

    @mcp.tool(name="agent.requestTask")
    async def agent_request_task(ctx: Context) -> str:
        """Claim the highest priority ready task for this agent and open a session."""
        return await _reply(handlers.agent_request_task(app, _headers(ctx)))

    @mcp.tool(name="agent.health")
    async def agent_health(ctx: Context, status: str) -> str:
        """Report availability: available, busy, rate_limited or error."""
        return await _reply(handlers.agent_health(app, _headers(ctx), status))

    @mcp.tool(name="agent.rateLimit")
    async def agent_rate_limit(
        ctx: Context, session_id: str | None = None, resolve_at: str | None = None
    ) -> str:
        """Report a usage limit. resolve_at is an ISO timestamp or epoch seconds/milliseconds."""
        return await _reply(handlers.agent_rate_limit(app, _headers(ctx), session_id, resolve_at))

    @mcp.tool(name="agent.sessionComplete")
    async def agent_session_complete(
        ctx: Context, session_id: str, success: bool, error: str | None = None
    ) -> str:
        """End a session. Success finishes the task; failure sends it back to todo."""
        return await _reply(
            handlers.agent_session_complete(app, _headers(ctx), session_id, success, error)
        )

    # ── Task Tools ───────────────────────────────────────────────────────────

    @mcp.tool(name="task.start")
    async def task_start(ctx: Context, task_id: str, stage: str | None = None) -> str:
        """Confirm you are working on the task's current stage."""
        return await _reply(handlers.task_start(app, _headers(ctx), task_id, stage))

    @mcp.tool(name="task.complete")
    async def task_complete(
        ctx: Context,
        task_id: str,
        next_stage: str | None = None,
        mark_done: bool = False,
    ) -> str:
        """Finish the current stage: move to next_stage (kickoff, execute) or set mark_done."""
        return await _reply(
            handlers.task_complete(app, _headers(ctx), task_id, next_stage, mark_done)
        )

    @mcp.tool(name="cards.update")
    async def cards_update(
        ctx: Context,
        task_id: str,
        refined_title: str | None = None,
        refined_description: str | None = None,
        plan: Any = None,
    ) -> str:
        """Save refined title/description or the implementation plan on a task."""
        return await _reply(
            handlers.cards_update(
                app, _headers(ctx), task_id, refined_title, refined_description, plan
            )
        )

    @mcp.tool(name="context.read")
    async def context_read(ctx: Context, task_id: str) -> str:
        """Read a task with its project, repo agent, actor and review feedback."""
        return await _reply(handlers.context_read(app, _headers(ctx), task_id), broadcast=False)

    # ── Memory Tools ─────────────────────────────────────────────────────────

    @mcp.tool(name="memory.read")
    async def memory_read(ctx: Context, project_id: str) -> str:
        """Read the project's memory object."""
        return await _reply(handlers.memory_read(app, _headers(ctx), project_id))

    @mcp.tool(name="memory.update")
    async def memory_update(ctx: Context, project_id: str, memory: dict[str, Any]) -> str:
        """Replace the project's memory object. It is included in every prompt."""
        return await _reply(handlers.memory_update(app, _headers(ctx), project_id, memory))

    register_prompts(mcp, app)
    return mcp
