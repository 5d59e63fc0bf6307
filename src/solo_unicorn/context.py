"""Runtime wiring shared by the web app, MCP tools and gateway."""

import sqlite3
from dataclasses import dataclass

from solo_unicorn.config import Config, get_config
from solo_unicorn.core.orchestrator import AgentOrchestrator
from solo_unicorn.db.engine import init_db
from solo_unicorn.integrations.claude_code import ClaudeCodeClient
from solo_unicorn.web.gateway import AgentGateway


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    orchestrator: AgentOrchestrator
    gateway: AgentGateway


def build_context(config: Config | None = None, transport=None) -> AppContext:
    """Open the store and construct the orchestrator, transport and gateway."""
    config = config or get_config()
    db = init_db(config.db_path)
    if transport is None:
        transport = ClaudeCodeClient(config.claude_code_url, config.agent_auth_token)
    gateway = AgentGateway(db, config.agent_auth_token, web_url=config.web_url)
    orchestrator = AgentOrchestrator(
        db,
        transport,
        heartbeat_interval=config.heartbeat_interval,
        availability_timeout=config.availability_timeout,
        task_push_enabled=config.task_push_enabled,
        stale_after=config.stale_after,
        web_url=config.web_url,
        notify=gateway.broadcast,
    )
    gateway.orchestrator = orchestrator
    return AppContext(db=db, config=config, orchestrator=orchestrator, gateway=gateway)
