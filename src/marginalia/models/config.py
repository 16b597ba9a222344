"""Configuration models for the engine and its collaborators."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RetryConfig(BaseModel):
    """Retry policy applied to every persistence gateway call."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts including the first one.",
    )

    backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Linear backoff unit: the n-th retry waits backoff_seconds * n.",
    )


class PollConfig(BaseModel):
    """Configuration for the HTTP stream/status polling loop."""

    interval_seconds: float = Field(
        default=0.5,
        gt=0.0,
        le=30.0,
        description="Delay between poll ticks.",
    )

    request_timeout: float = 10.0
    """Seconds before a single poll request is abandoned for this tick."""


class EndpointConfig(BaseModel):
    """Network-style agent endpoints for one invocation kind."""

    start: str
    """POST that starts the agent."""
    stream: str
    """GET returns ``{"content": ...}``; DELETE resets the buffer."""
    status: str
    """GET returns ``{"status": "pending"|"complete"|"error", ...}``."""
    cancel: str | None = None
    """Optional POST asking the server to terminate the agent process."""


def _chat_endpoints() -> EndpointConfig:
    return EndpointConfig(
        start="/api/chat/agent",
        stream="/api/chat/stream",
        status="/api/chat/status",
        cancel="/api/chat/cancel",
    )


def _edit_endpoints() -> EndpointConfig:
    return EndpointConfig(
        start="/api/claude",
        stream="/api/claude/stream",
        status="/api/claude",
        cancel="/api/claude/cancel",
    )


class HttpConfig(BaseModel):
    """Configuration for the served-application (HTTP) host."""

    base_url: str = "http://localhost:3000"
    chat: EndpointConfig = Field(default_factory=_chat_endpoints)
    edit: EndpointConfig = Field(default_factory=_edit_endpoints)
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout in seconds for gateway and agent-start requests.",
    )


class StoreConfig(BaseModel):
    """Configuration for the local SQLite persistence gateway."""

    db_path: str = Field(
        default="~/.marginalia/marginalia.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class AgentConfig(BaseModel):
    """Configuration for the locally spawned agent process."""

    cli_path: str | None = Field(
        default=None,
        description="Agent CLI executable. None = search well-known locations and PATH.",
    )

    default_model: str = "sonnet"

    allowed_tools: list[str] = Field(default_factory=lambda: ["Read", "Edit", "Write"])

    extra_args: list[str] = Field(default_factory=lambda: ["--dangerously-skip-permissions"])
    """Appended verbatim to every agent command line."""

    chat_max_turns: int = Field(default=10, ge=1, le=100)

    edit_max_turns: int = Field(default=5, ge=1, le=100)

    heavy_model: str = "opus"
    """Model that gets the larger turn budgets below."""

    heavy_chat_max_turns: int = Field(default=15, ge=1, le=100)

    heavy_edit_max_turns: int = Field(default=10, ge=1, le=100)

    def max_turns(self, kind: str, model: str) -> int:
        heavy = model == self.heavy_model
        if kind == "edit":
            return self.heavy_edit_max_turns if heavy else self.edit_max_turns
        return self.heavy_chat_max_turns if heavy else self.chat_max_turns


class EngineConfig(BaseModel):
    """
    Top-level configuration for an :class:`~marginalia.engine.AgentSessionEngine`.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = EngineConfig(
            retry=RetryConfig(max_attempts=5),
            poll=PollConfig(interval_seconds=0.25),
            http=HttpConfig(base_url="http://localhost:8080"),
        )
    """

    retry: RetryConfig = Field(default_factory=RetryConfig)
    poll: PollConfig = Field(default_factory=PollConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    model: str | None = None
    """Model requested from the agent. None = the agent's default."""

    @classmethod
    def default(cls) -> EngineConfig:
        """Return a config instance with all defaults."""
        return cls()
