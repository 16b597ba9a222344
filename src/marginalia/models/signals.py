"""Agent requests and the stream/terminal signals produced while one runs."""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class InvocationKind(StrEnum):
    CHAT = "chat"
    EDIT = "edit"


class TransportKind(StrEnum):
    IPC = "ipc"
    HTTP = "http"


class TerminalOutcome(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


# ── Requests ───────────────────────────────────────────────────────────────────


class AgentRefs(BaseModel):
    """``@``-references collected from user text and forwarded to the agent."""

    docs: list[str] = Field(default_factory=list)
    mcps: list[str] = Field(default_factory=list)
    vault: bool = False
    architecture: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.docs or self.mcps or self.vault or self.architecture)


class HistoryEntry(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ImageAttachment(BaseModel):
    """A base64-encoded image attached to a chat message."""

    data: str
    mime_type: str = "image/png"
    name: str = ""


class ChatRequest(BaseModel):
    kind: Literal["chat"] = "chat"
    message: str
    document_path: str
    session_id: str | None = None
    context_selection: str | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    model: str | None = None
    refs: AgentRefs | None = None
    images: list[ImageAttachment] = Field(default_factory=list)


class EditComment(BaseModel):
    """The parts of a comment the agent needs."""

    selected_text: str
    instruction: str


class EditRequest(BaseModel):
    kind: Literal["edit"] = "edit"
    instruction: str
    """The fully rendered prompt sent to the agent."""
    file_path: str
    request_id: str
    comments: list[EditComment] = Field(default_factory=list)
    model: str | None = None
    refs: AgentRefs | None = None


AgentRequest = ChatRequest | EditRequest


# ── Signals ────────────────────────────────────────────────────────────────────


class Increment(BaseModel):
    """An accumulated-content snapshot (not a diff) for one invocation."""

    invocation_id: int
    content: str


class TerminalSignal(BaseModel):
    """The single signal that ends an invocation."""

    invocation_id: int
    kind: InvocationKind
    outcome: TerminalOutcome
    content: str = ""
    """Final agent output on success; any captured output on error."""
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is TerminalOutcome.SUCCESS
