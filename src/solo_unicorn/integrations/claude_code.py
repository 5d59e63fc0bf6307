"""WebSocket client for the Claude Code UI process that runs agent sessions.

One outbound socket at ``<url>/ws/agent?token=...``. Outbound commands fail
fast while disconnected; inbound messages are validated into a tagged union
and anything unrecognised is logged and dropped. Unexpected disconnects are
retried with linear backoff up to a fixed number of attempts.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Literal, Union
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

USAGE_LIMIT_RE = re.compile(r"usage limit reached\|(\d{10,13})", re.IGNORECASE)
RESETS_AT_RE = re.compile(r"limit reached.*?resets\s*(\d{1,2})\s*([ap]m)", re.IGNORECASE | re.DOTALL)


class ClaudeCodeError(Exception):
    """Raised when the Claude Code UI connection fails."""


class NotConnectedError(ClaudeCodeError):
    """Raised for outbound calls while the socket is not open."""

    def __init__(self, message: str = "Not connected to Claude Code UI"):
        super().__init__(message)


# ── Wire messages ────────────────────────────────────────────────────────────


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SessionCreated(_Wire):
    type: Literal["session-created"]
    session_id: str


class ResponseData(_Wire):
    type: str | None = None
    delta: dict[str, Any] | None = None
    content: Any = None


class ClaudeResponse(_Wire):
    type: Literal["claude-response"]
    data: ResponseData = Field(default_factory=ResponseData)


class ClaudeComplete(_Wire):
    type: Literal["claude-complete"]
    exit_code: int | None = None


class ClaudeErrorMessage(_Wire):
    type: Literal["claude-error"]
    error: str = ""


class SessionAborted(_Wire):
    type: Literal["session_aborted"]
    session_id: str | None = None


InboundMessage = Annotated[
    Union[SessionCreated, ClaudeResponse, ClaudeComplete, ClaudeErrorMessage, SessionAborted],
    Field(discriminator="type"),
]
inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


class SessionOptions(_Wire):
    project_path: str
    cwd: str
    session_id: str | None = None
    resume: bool = False
    tools_settings: dict[str, Any] | None = None
    permission_mode: str | None = None


class StartSession(_Wire):
    type: Literal["start_session"] = "start_session"
    session_type: Literal["claude"] = "claude"
    command: str
    options: SessionOptions


class AbortSession(_Wire):
    type: Literal["abort_session"] = "abort_session"
    session_type: Literal["claude"] = "claude"
    session_id: str


def encode(message: _Wire) -> str:
    return json.dumps(message.model_dump(by_alias=True, exclude_none=True))


# ── Rate limits ──────────────────────────────────────────────────────────────


def parse_rate_limit_reset(text: str, now: datetime | None = None) -> datetime | None:
    """Find a usage-limit reset time in streamed agent output.

    ``usage limit reached|<epoch>`` carries seconds (10 digits) or
    milliseconds (13 digits). ``limit reached ... resets 5pm`` names the
    next occurrence of that hour in ``now``'s timezone. Returns an aware UTC
    datetime, or None when the text has no limit notice.
    """
    if m := USAGE_LIMIT_RE.search(text):
        value = int(m.group(1))
        millis = value * 1000 if value < 1_000_000_000_000 else value
        return EPOCH + timedelta(milliseconds=millis)

    if m := RESETS_AT_RE.search(text):
        hour = int(m.group(1)) % 12
        if m.group(2).lower() == "pm":
            hour += 12
        local_now = now or datetime.now().astimezone()
        if local_now.tzinfo is None:
            local_now = local_now.replace(tzinfo=timezone.utc)
        reset = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
        if reset <= local_now:
            reset += timedelta(days=1)
        return reset.astimezone(timezone.utc)

    return None


def _response_texts(data: ResponseData) -> list[str]:
    texts = []
    if data.delta and isinstance(data.delta.get("text"), str):
        texts.append(data.delta["text"])
    if isinstance(data.content, str):
        texts.append(data.content)
    elif isinstance(data.content, list):
        for block in data.content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                texts.append(block["text"])
    return texts


@dataclass
class ActivityRecord:
    """Best-effort record of what the socket last saw."""

    last_message_at: datetime | None = None
    last_message_type: str | None = None
    last_session_id: str | None = None
    last_exit_code: int | None = None
    last_error: str | None = None
    rate_limit_reset_at: datetime | None = None


# ── Client ───────────────────────────────────────────────────────────────────


class ClaudeCodeClient:
    """Single connection to the Claude Code UI agent socket."""

    def __init__(
        self,
        url: str,
        token: str,
        *,
        connect_timeout: float = 10.0,
        max_reconnect_attempts: int = 10,
        backoff_base: float = 5.0,
        backoff_cap: float = 30.0,
        connector: Callable[[str], Any] | None = None,
        on_session_created: Callable[[str, str], None] | None = None,
        on_rate_limit: Callable[[datetime], None] | None = None,
    ):
        self.url = url
        self.token = token
        self.connect_timeout = connect_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.on_session_created = on_session_created
        self.on_rate_limit = on_rate_limit
        self.activity = ActivityRecord()
        self._connector = connector or websockets.connect
        self._ws: Any = None
        self._receive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._pending: deque[str] = deque()

    @property
    def ws_url(self) -> str:
        return f"{self.url.rstrip('/')}/ws/agent?token={quote(self.token, safe='')}"

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_sessions(self) -> list[str]:
        """Placeholder ids still waiting for their session-created event."""
        return list(self._pending)

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.backoff_base * attempt, self.backoff_cap)

    async def connect(self):
        """Open the socket. Raises ClaudeCodeError on timeout or refusal."""
        await self._close_socket()
        logger.info("Connecting to Claude Code UI at %s", self.url)
        try:
            ws = await asyncio.wait_for(self._connector(self.ws_url), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise ClaudeCodeError("WebSocket connection timeout") from e
        except (OSError, WebSocketException) as e:
            raise ClaudeCodeError(f"Could not connect to Claude Code UI: {e}") from e

        self._ws = ws
        self._reconnect_attempts = 0
        self._receive_task = asyncio.create_task(self._receive_loop(ws), name="claude-code-receive")
        logger.info("Connected to Claude Code UI")

    async def retry_connection(self) -> bool:
        """Manual retry: resets the attempt counter and tries once."""
        if self.connected:
            return True
        await self._cancel_reconnect()
        self._reconnect_attempts = 0
        try:
            await self.connect()
        except ClaudeCodeError as e:
            logger.error("Manual retry failed: %s", e)
            return False
        return True

    async def start(self) -> bool:
        """First connect; if the UI is not up yet, fall back to the reconnect schedule."""
        try:
            await self.connect()
        except ClaudeCodeError as e:
            logger.warning("Claude Code UI unavailable: %s", e)
            self._schedule_reconnect()
            return False
        return True

    async def disconnect(self):
        await self._cancel_reconnect()
        await self._close_socket()
        self._pending.clear()
        logger.info("Disconnected from Claude Code UI")

    # ── Outbound ─────────────────────────────────────────────────────────

    async def start_session(self, command: str, options: SessionOptions | dict[str, Any]) -> str:
        """Ask the UI to start a session. Returns a placeholder id immediately.

        The real session id arrives later with ``session-created`` and is
        handed to ``on_session_created`` together with this placeholder.
        """
        self._require_connection()
        if isinstance(options, dict):
            options = SessionOptions.model_validate(options)
        placeholder = f"pending-{uuid.uuid4().hex}"
        self._pending.append(placeholder)
        try:
            await self._send(StartSession(command=command, options=options))
        except ClaudeCodeError:
            self._pending.remove(placeholder)
            raise
        return placeholder

    async def abort_session(self, session_id: str):
        """Best-effort abort. No local state changes until the UI reports back."""
        self._require_connection()
        await self._send(AbortSession(session_id=session_id))

    def _require_connection(self):
        if self._ws is None:
            raise NotConnectedError()

    async def _send(self, message: _Wire):
        try:
            await self._ws.send(encode(message))
        except ConnectionClosed as e:
            raise NotConnectedError(f"Claude Code UI connection closed: {e}") from e

    # ── Inbound ──────────────────────────────────────────────────────────

    def handle_message(self, raw: str | bytes | dict[str, Any], now: datetime | None = None):
        """Validate and dispatch one inbound message. Returns it, or None if dropped."""
        try:
            if isinstance(raw, dict):
                message = inbound_adapter.validate_python(raw)
            else:
                message = inbound_adapter.validate_json(raw)
        except ValidationError as e:
            logger.warning("Dropping unrecognised Claude Code message: %s", e.errors()[0]["msg"])
            return None

        now = now or datetime.now(timezone.utc)
        self.activity.last_message_at = now
        self.activity.last_message_type = message.type

        if isinstance(message, SessionCreated):
            self._handle_session_created(message)
        elif isinstance(message, ClaudeResponse):
            self._handle_response(message, now)
        elif isinstance(message, ClaudeComplete):
            self.activity.last_exit_code = message.exit_code
            logger.info("Claude session completed with exit code %s", message.exit_code)
        elif isinstance(message, ClaudeErrorMessage):
            self.activity.last_error = message.error
            logger.error("Claude Code error: %s", message.error)
        elif isinstance(message, SessionAborted):
            logger.info("Claude session aborted: %s", message.session_id or "-")
        return message

    def _handle_session_created(self, message: SessionCreated):
        self.activity.last_session_id = message.session_id
        if not self._pending:
            logger.warning("session-created %s with no pending session", message.session_id)
            return
        placeholder = self._pending.popleft()
        logger.info("Session %s created for placeholder %s", message.session_id, placeholder)
        if self.on_session_created:
            try:
                self.on_session_created(placeholder, message.session_id)
            except Exception:
                logger.exception("Error recording session id %s", message.session_id)

    def _handle_response(self, message: ClaudeResponse, now: datetime):
        for text in _response_texts(message.data):
            reset_at = parse_rate_limit_reset(text, now.astimezone())
            if reset_at is None:
                continue
            self.activity.rate_limit_reset_at = reset_at
            logger.warning("Claude usage limit reached; resets at %s", reset_at.isoformat())
            if self.on_rate_limit:
                try:
                    self.on_rate_limit(reset_at)
                except Exception:
                    logger.exception("Error recording rate limit")
            return

    async def _receive_loop(self, ws: Any):
        try:
            async for raw in ws:
                self.handle_message(raw)
        except ConnectionClosed as e:
            logger.info("Claude Code UI connection closed: %s", e)
        except OSError as e:
            logger.error("Claude Code UI connection error: %s", e)
        finally:
            if self._ws is ws:
                self._ws = None
                self._schedule_reconnect()

    # ── Reconnect ────────────────────────────────────────────────────────

    def _schedule_reconnect(self):
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            logger.warning(
                "Max reconnection attempts (%d) reached; is Claude Code UI running? "
                "Use retry_connection() to try again.",
                self.max_reconnect_attempts,
            )
            return
        self._reconnect_attempts += 1
        delay = self.reconnect_delay(self._reconnect_attempts)
        logger.info(
            "Reconnect attempt %d/%d in %.0fs",
            self._reconnect_attempts, self.max_reconnect_attempts, delay,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="claude-code-reconnect"
        )

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        try:
            await self.connect()
        except ClaudeCodeError as e:
            logger.warning("Reconnect attempt %d failed: %s", self._reconnect_attempts, e)
            self._schedule_reconnect()

    async def _cancel_reconnect(self):
        task, self._reconnect_task = self._reconnect_task, None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _close_socket(self):
        ws, self._ws = self._ws, None
        task, self._receive_task = self._receive_task, None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await ws.close()
