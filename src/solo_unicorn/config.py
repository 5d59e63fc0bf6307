"""Configuration loading from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TOKEN = "default-agent-token"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".solo_unicorn" / "solo.db")
    agent_auth_token: str = DEFAULT_AGENT_TOKEN
    agent_id: str | None = None
    claude_code_url: str = "ws://localhost:8501"
    web_url: str = "http://localhost:8787"
    heartbeat_interval: float = 30.0
    availability_timeout: float = 30.0
    task_push_enabled: bool = True
    stale_session_minutes: int = 30
    host: str = "127.0.0.1"
    port: int = 8787

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.stale_session_minutes)

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SU_DB_PATH"):
            config.db_path = Path(db)

        if token := os.environ.get("AGENT_AUTH_TOKEN"):
            config.agent_auth_token = token
        else:
            logger.warning(
                "AGENT_AUTH_TOKEN is not set; using the built-in placeholder token"
            )

        if agent_id := os.environ.get("SU_AGENT_ID"):
            config.agent_id = agent_id

        if url := os.environ.get("CLAUDE_CODE_UI_URL"):
            config.claude_code_url = url.rstrip("/")

        if web_url := os.environ.get("SU_WEB_URL"):
            config.web_url = web_url.rstrip("/")

        if interval := os.environ.get("SU_HEARTBEAT_INTERVAL"):
            config.heartbeat_interval = float(interval)

        if timeout := os.environ.get("SU_AVAILABILITY_TIMEOUT"):
            config.availability_timeout = float(timeout)

        if push := os.environ.get("SU_TASK_PUSH_ENABLED"):
            config.task_push_enabled = push.strip().lower() not in ("0", "false", "no", "off")

        if stale := os.environ.get("SU_STALE_SESSION_MINUTES"):
            config.stale_session_minutes = int(stale)

        if host := os.environ.get("SU_HOST"):
            config.host = host

        if port := os.environ.get("SU_PORT"):
            config.port = int(port)

        return config


def get_config() -> Config:
    return Config.from_env()
