"""Stage prompt construction for agent sessions.

Every renderer is a pure function of its ``PromptContext``: the same task,
project, repo-agent, actor and iterations always produce the same text.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from solo_unicorn.db.models import Actor, Project, RepoAgent, Task, TaskIteration

DEFAULT_ACTOR_DESCRIPTION = (
    "Startup founder and fullstack software engineer focused on speed to market. "
    "Think small. Ignore performance, cost, and scalability. "
    "Basic auth and access control is still essential. "
    "Obsessed with UX - less frictions; max magics."
)

COMMIT_AUTHOR_PREFIX = "Solo Unicorn!"
CLIENT_DISPLAY_NAMES = {
    "claude_code": "Claude Code",
    "cursor_cli": "Cursor CLI",
    "opencode": "OpenCode",
}

FEEDBACK_TRUNCATE_AT = 500

STAGE_ALIASES = {
    "clarify": "refine",
    "plan": "kickoff",
    "check": "execute",
}
NEXT_STAGE = {"refine": "kickoff", "kickoff": "execute"}


@dataclass(frozen=True)
class PromptContext:
    task: Task
    project: Project
    repo_agent: RepoAgent
    actor: Actor | None = None
    iterations: Sequence[TaskIteration] = ()
    web_url: str = ""


def commit_author_name(client_type: str) -> str:
    display = CLIENT_DISPLAY_NAMES.get(client_type)
    return f"{COMMIT_AUTHOR_PREFIX} {display}" if display else COMMIT_AUTHOR_PREFIX


def task_url(ctx: PromptContext) -> str:
    return f"{ctx.web_url.rstrip('/')}/projects/{ctx.project.id}/tasks/{ctx.task.id}"


def canonical_stage(stage: str) -> str:
    return STAGE_ALIASES.get(stage, stage)


# ── Shared sections ──────────────────────────────────────────────────────────


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, indent=2)


def _role(ctx: PromptContext) -> str:
    description = ctx.actor.description if ctx.actor else DEFAULT_ACTOR_DESCRIPTION
    return f"**Your Role**: {description}"


def _project_context(ctx: PromptContext) -> str | None:
    if not ctx.project.memory:
        return None
    return f"**Project Context**:\n{_dumps(ctx.project.memory)}"


def _task_section(heading: str, ctx: PromptContext) -> list[str]:
    task = ctx.task
    return [
        f"\n**{heading}**:",
        f"- **Title**: {task.title}",
        f"- **Description**: {task.description or 'No description provided'}",
    ]


def _commit_step(number: int, ctx: PromptContext) -> str:
    return (
        f"{number}. **Commit Changes**: When making git commits, use author "
        f'"{commit_author_name(ctx.repo_agent.client_type)}". '
        f"Include the task URL as the second line in commit messages: {task_url(ctx)}"
    )


def _start_step(task_id: str, stage: str | None) -> str:
    stage_arg = f', stage="{stage}"' if stage else ""
    return f'1. **START**: Call Solo Unicorn MCP tool `task.start` with task_id="{task_id}"{stage_arg}'


def _finish_call(task_id: str, stage: str | None) -> str:
    next_stage = NEXT_STAGE.get(stage or "")
    if next_stage:
        return f'`task.complete` with task_id="{task_id}", next_stage="{next_stage}"'
    return f'`task.complete` with task_id="{task_id}", mark_done=true'


def _join(parts: list[str | None]) -> str:
    return "\n".join(p for p in parts if p is not None)


# ── Protocol preamble ────────────────────────────────────────────────────────


def render_protocol(stage: str, task_id: str) -> str:
    """MCP workflow instructions prepended to every stage prompt."""
    store_stage = canonical_stage(stage)
    if store_stage not in ("refine", "kickoff", "execute"):
        store_stage = "execute" if stage == "iterate" else None
    parts = [
        "## Solo Unicorn Workflow",
        "You are connected to the Solo Unicorn MCP server. Report progress through its tools:",
        f'- When you begin, call `task.start` with task_id="{task_id}"'
        + (f', stage="{store_stage}".' if store_stage else "."),
        "- Save refined text or plans with `cards.update` "
        f'(task_id="{task_id}", refined_title, refined_description, plan).',
        "- Read the task, project, repo and actor with `context.read`; "
        "persist durable project knowledge with `memory.update`.",
        f"- When the stage is finished, call {_finish_call(task_id, store_stage)}.",
        "- If you cannot finish, call `agent.sessionComplete` with success=false and an error message.",
        "Do not call any other workflow tools and do not change the task's status yourself.",
    ]
    return "\n".join(parts)


# ── Stage templates ──────────────────────────────────────────────────────────


def render_refine(ctx: PromptContext) -> str:
    task = ctx.task
    return _join([
        f"[refine] {task.raw_title}",
        "**Do not write any code!**",
        "Refine this raw task. The raw text will not be passed to later agents, "
        "so your refined version has to capture every important detail.",
        "",
        "**Steps**:",
        _start_step(task.id, "refine"),
        "2. Analyze the raw title and raw description to understand the user's intent. "
        "Focus on UX improvements and Customer Obsession.",
        "3. Create a refined title that is clear and specific.",
        "4. Write a detailed refined description that includes:",
        "   - What needs to be implemented/fixed/changed",
        "   - Key requirements and goals",
        "   - Expected outcome",
        "   - Out-of-scope items if any",
        "   Relevant file paths and line numbers help the next agents.",
        f'5. Save them with `cards.update` (task_id="{task.id}", refined_title, refined_description).',
        f"6. **FINISH**: Call {_finish_call(task.id, 'refine')}",
        "",
        _role(ctx),
        _project_context(ctx),
        "",
        "**Task to Refine**:",
        f"- **Raw Title**: {task.raw_title}",
        f"- **Raw Description**: {task.raw_description or 'No description provided'}",
    ])


def render_kickoff(ctx: PromptContext) -> str:
    task = ctx.task
    return _join([
        f"[kickoff] {task.title}",
        "**Do not write any code!**",
        "Plan a task: create a comprehensive implementation plan and detailed specification.",
        "",
        "**Steps**:",
        _start_step(task.id, "kickoff"),
        "2. **List Solution Options**: List viable potential solution options",
        "3. **Evaluate and Rank**: Compare the options considering in order of importance:",
        "   - Most importantly - UX",
        "   - Alignment with project goals",
        "   - Design simplicity",
        "   - Industry standards & best practices",
        "   - Maintainability",
        "4. **Select Final Approach**: Choose the best solution",
        "5. **Create Plan**: Write a detailed plan including the spec, an implementation "
        "steps breakdown and, where useful, the files, line numbers and functions to change.",
        f'6. Save the plan with `cards.update` (task_id="{task.id}", plan).',
        f"7. **FINISH**: Call {_finish_call(task.id, 'kickoff')}",
        "",
        _role(ctx),
        _project_context(ctx),
        *_task_section("Task to Plan", ctx),
    ])


def render_execute(ctx: PromptContext) -> str:
    task = ctx.task
    plan = _dumps(task.plan) if task.plan else "No plan available"
    parts: list[str | None] = [
        f"[execute] {task.title}",
        "Implement the solution following the plan below.",
        "",
        "**Steps**:",
        _start_step(task.id, "execute"),
        "2. **Follow the Plan**: Implement the solution as specified in the plan",
        _commit_step(3, ctx),
        f"4. **FINISH**: Call {_finish_call(task.id, 'execute')}",
        "",
        "Your completed work goes to a human for review. Make sure the implementation is "
        "complete and tested, and that commit messages explain what was implemented.",
        "",
        _role(ctx),
        _project_context(ctx),
        *_task_section("Task to Implement", ctx),
        "",
        "**Implementation Plan**:",
        plan,
    ]
    if ctx.iterations:
        parts.append("\n**Previous Iterations & Feedback**:")
        for it in ctx.iterations:
            parts.append(
                f"- **Iteration {it.iteration_number}**: {it.feedback}"
                f" (rejected by {it.rejected_by or 'human'})"
            )
        parts.append(
            "\n**Important**: This task has been previously rejected. "
            "Carefully address the feedback above in your implementation."
        )
    return _join(parts)


def render_loop(ctx: PromptContext) -> str:
    task = ctx.task
    parts: list[str | None] = [
        f"[loop] {task.title}",
        "This is a repeatable task. Perform it as described; it has no refine or kickoff stage.",
        "",
        "**Steps**:",
        _start_step(task.id, None),
        "2. **Execute Task**: Perform the task as described",
        f"3. **FINISH**: Call {_finish_call(task.id, None)}",
        "",
        _role(ctx),
        _project_context(ctx),
    ]
    if task.description:
        parts.append(f"\n**Description**: {task.description}")
    if task.plan:
        parts.append(f"\n**Implementation Plan**:\n{_dumps(task.plan)}")
    return _join(parts)


def render_talk(ctx: PromptContext) -> str:
    task = ctx.task
    return _join([
        f"[talk] {task.title}",
        "Most importantly, **NO IMPLEMENTATION or EXECUTION**. This task is for thinking, "
        "research and discussion only. Do not write any implementation code.",
        "",
        "**What You Can Do**:",
        "- Research and analyze the topic",
        "- Challenge the original idea, assumptions, and constraints",
        "- Brainstorm ideas and approaches. List, measure, and rank them.",
        "- Discuss trade-offs and provide high level architectural design",
        "",
        "**Steps**:",
        _start_step(task.id, None),
        "2. Read the task described below in **Task to Work On**.",
        "3. Reason from first principles: enumerate assumptions, extract the root limits, "
        "and restate the task in terms of those facts.",
        "4. Create a new `docs/talk/[incremental-number-start-from-000001]-[short-name].md` file "
        "unless the task asks to update an existing one. Include a one-line summary, the original "
        "title and description, your analysis and the ranked options.",
        _commit_step(5, ctx),
        f"6. **FINISH**: Call {_finish_call(task.id, None)}",
        "",
        _role(ctx),
        _project_context(ctx),
        *_task_section("Task to Work On", ctx),
    ])


def render_iterate(ctx: PromptContext) -> str:
    """Rework a rejected task. The newest iteration is the one being addressed."""
    task = ctx.task
    if not ctx.iterations:
        raise ValueError(f"No iterations recorded for task {task.id}")
    ordered = sorted(ctx.iterations, key=lambda it: it.iteration_number)
    current = ordered[-1]
    previous = ordered[:-1]
    plan = _dumps(task.plan) if task.plan else "No plan available"

    parts: list[str | None] = [
        f"[iterate] {task.title}",
        "This task was sent back after review. Rework it based on the feedback.",
        "",
        "**Steps**:",
        _start_step(task.id, "execute"),
        "2. **Follow the most recent feedback**: if the refined title, refined description or plan "
        f'need to change, update them with `cards.update` (task_id="{task.id}"). When updating the '
        "plan, mark the previous steps completed and append new steps.",
        _commit_step(3, ctx),
        f"4. **FINISH**: Call {_finish_call(task.id, 'execute')}",
        "",
        f"**Task ID**: {task.id}",
        f"**Current iteration number**: #{current.iteration_number}",
        f"**MOST IMPORTANT - Current iteration feedback**: {current.feedback}",
        "",
        _role(ctx),
        _project_context(ctx),
        "",
        "---------",
        "**ALL INFORMATION BELOW IS FROM PREVIOUS ITERATIONS**",
        "",
        "**Old task information**:",
    ]
    if task.refined_title:
        parts.append(f"- **Refined Title (AI written)**: {task.refined_title}")
    if task.refined_description:
        parts.append(f"- **Refined Description (AI written)**: {task.refined_description}")
    parts.append(f"- **Raw Title (Human written)**: {task.raw_title}")
    if task.raw_description:
        parts.append(f"- **Raw Description (Human written)**: {task.raw_description}")
    parts.append(f"\n**Old Task Plan**:\n{plan}")
    if previous:
        parts.append("\n**Old feedback from the previous iteration(s)**:")
        for it in previous:
            feedback = it.feedback
            if len(feedback) > FEEDBACK_TRUNCATE_AT:
                feedback = feedback[:FEEDBACK_TRUNCATE_AT] + "(truncated...)"
            parts.append(f"- **Iteration {it.iteration_number}**: {feedback}")
    return _join(parts)


RENDERERS: dict[str, Callable[[PromptContext], str]] = {
    "refine": render_refine,
    "kickoff": render_kickoff,
    "execute": render_execute,
    "loop": render_loop,
    "talk": render_talk,
    "iterate": render_iterate,
}


def render_stage_prompt(stage: str, ctx: PromptContext) -> str:
    """Render the template for ``stage`` (aliases such as ``plan`` accepted)."""
    renderer = RENDERERS.get(canonical_stage(stage))
    if renderer is None:
        raise ValueError(f"Unknown stage: {stage}")
    return renderer(ctx)


def build_session_prompt(stage: str, ctx: PromptContext) -> str:
    """Protocol preamble followed by the stage template: what an agent session receives."""
    return render_protocol(stage, ctx.task.id) + "\n\n" + render_stage_prompt(stage, ctx)
