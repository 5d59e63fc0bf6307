"""MCP prompts: stage templates rendered for a task."""

from mcp.server.fastmcp import FastMCP

from solo_unicorn.context import AppContext
from solo_unicorn.core.orchestrator import build_prompt_context
from solo_unicorn.core.prompts import render_stage_prompt
from solo_unicorn.core.tasks import get_task


def render_task_prompt(app: AppContext, task_id: str, stage: str | None = None) -> str:
    """The stage template for a task; defaults to the template its stage would get."""
    task = get_task(app.db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    default_stage, ctx = build_prompt_context(app.db, task, app.config.web_url)
    return render_stage_prompt(stage or default_stage, ctx)


def register_prompts(mcp: FastMCP, app: AppContext):
    @mcp.prompt()
    def stage_prompt(task_id: str, stage: str = "") -> str:
        """Render a stage prompt (refine, kickoff, execute, loop, talk, iterate) for a task."""
        return render_task_prompt(app, task_id, stage or None)
