"""Agent channel that runs the agent CLI as a local subprocess."""

from __future__ import annotations

import asyncio
import base64
import json
import os
import shutil
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from marginalia.agent.channel import (
    ChannelComplete,
    ChannelStream,
    CompleteListener,
    StreamListener,
)
from marginalia.agent.prompts import build_chat_prompt, frame_edit_prompt
from marginalia.agent.refs import resolve_refs_context
from marginalia.errors import AgentError
from marginalia.models.config import AgentConfig
from marginalia.models.entities import make_id
from marginalia.models.signals import ChatRequest, EditRequest, ImageAttachment, InvocationKind

CLI_NAME = "claude"
NO_RESPONSE = "(No response)"
_LINE_LIMIT = 16 * 1024 * 1024

# Set by the agent CLI for its own child processes; a nested run refuses to start.
_SCRUBBED_ENV = ("CLAUDECODE",)


def _candidate_paths() -> list[Path]:
    home = Path.home()
    return [
        home / ".local" / "bin" / CLI_NAME,
        Path("/usr/local/bin") / CLI_NAME,
        Path("/opt/homebrew/bin") / CLI_NAME,
    ]


def find_agent_cli(config: AgentConfig) -> str | None:
    """
    Locate the agent executable.

    ``config.cli_path`` wins when set; otherwise well-known install
    locations are tried before ``PATH``.
    """
    if config.cli_path:
        return shutil.which(config.cli_path) or (
            config.cli_path if os.access(config.cli_path, os.X_OK) else None
        )
    for candidate in _candidate_paths():
        if os.access(candidate, os.X_OK):
            return str(candidate)
    return shutil.which(CLI_NAME)


@dataclass(frozen=True)
class ParsedLine:
    """What one line of ``stream-json`` output contributes."""

    texts: tuple[str, ...] = ()
    result: str | None = None


def parse_stream_line(line: str) -> ParsedLine | None:
    """
    Decode one line of the agent's ``stream-json`` output.

    Assistant text blocks become ``texts``; a ``result`` record becomes
    ``result``. System records, hook output and non-JSON lines yield ``None``.
    """
    line = line.strip()
    if not line:
        return None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict):
        return None

    if record.get("type") == "assistant":
        content = (record.get("message") or {}).get("content") or []
        texts = tuple(
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        )
        return ParsedLine(texts=texts) if texts else None

    if record.get("type") == "result":
        result = record.get("result")
        if result is None:
            return ParsedLine(result="")
        return ParsedLine(result=result if isinstance(result, str) else json.dumps(result))

    return None


@dataclass
class _AgentRun:
    kind: InvocationKind
    document_path: str
    process: asyncio.subprocess.Process
    fallback: str = ""
    detached: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    def kill(self) -> None:
        self.detached = True
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


class ProcessAgentChannel:
    """
    :class:`~marginalia.agent.channel.AgentChannel` backed by the agent CLI.

    At most one process per document and invocation kind: starting a new
    chat for a document kills that document's running chat process (and
    likewise for edits). Runs for other documents are left alone, and every
    event carries the ``document_path`` of its run, so one channel can serve
    engines for several documents. Output is read as newline-delimited JSON;
    assistant text accumulates into the snapshot sent with every stream
    event.

    Usage::

        channel = ProcessAgentChannel(AgentConfig(), cli_path="/usr/local/bin/claude")
        unsubscribe = channel.on_stream(lambda e: print(e.content))
        await channel.send_chat(ChatRequest(message="Hi", document_path="notes/a.md"))
    """

    def __init__(self, config: AgentConfig, cli_path: str) -> None:
        self._config = config
        self._cli_path = cli_path
        self._runs: dict[tuple[str, InvocationKind], _AgentRun] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._stream_listeners: list[StreamListener] = []
        self._complete_listeners: list[CompleteListener] = []
        self._logger = structlog.get_logger("marginalia.agent")

    # ── Subscriptions ──────────────────────────────────────────────────────────

    def on_stream(self, listener: StreamListener) -> Callable[[], None]:
        self._stream_listeners.append(listener)
        return lambda: _discard(self._stream_listeners, listener)

    def on_complete(self, listener: CompleteListener) -> Callable[[], None]:
        self._complete_listeners.append(listener)
        return lambda: _discard(self._complete_listeners, listener)

    # ── Invocations ────────────────────────────────────────────────────────────

    async def send_chat(self, request: ChatRequest) -> None:
        model = request.model or self._config.default_model
        refs_context = (
            resolve_refs_context(request.refs, request.document_path) if request.refs else ""
        )
        prompt = build_chat_prompt(
            request,
            document_content=_read_document(request.document_path),
            refs_context=refs_context,
            image_paths=_save_images(request.images),
        )
        await self._launch(
            InvocationKind.CHAT, request.document_path, prompt, model, fallback=NO_RESPONSE
        )

    async def send_edit(self, request: EditRequest) -> None:
        model = request.model or self._config.default_model
        path = Path(request.file_path).expanduser()
        refs_context = (
            resolve_refs_context(request.refs, request.file_path) if request.refs else ""
        )
        prompt = frame_edit_prompt(
            request.instruction,
            request.file_path,
            file_exists=path.is_file() and path.stat().st_size > 0,
            fast=model != self._config.heavy_model,
            refs_context=refs_context,
        )
        await self._launch(InvocationKind.EDIT, request.file_path, prompt, model)

    async def cancel(self, document_path: str | None = None) -> None:
        keys = [key for key in self._runs if document_path is None or key[0] == document_path]
        for key in keys:
            run = self._runs.pop(key)
            self._logger.info(
                "agent_process_killed",
                kind=str(run.kind),
                document_path=run.document_path,
                pid=run.process.pid,
            )
            run.kill()

    async def aclose(self) -> None:
        """Kill running processes and wait for their reader tasks."""
        await self.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def build_args(self, prompt: str, kind: InvocationKind, model: str) -> list[str]:
        args = ["-p", prompt, "--output-format", "stream-json", "--verbose"]
        args.extend(self._config.extra_args)
        for tool in self._config.allowed_tools:
            args.extend(["--allowedTools", tool])
        args.extend(["--max-turns", str(self._config.max_turns(str(kind), model))])
        args.extend(["--model", model])
        return args

    async def _launch(
        self,
        kind: InvocationKind,
        document_path: str,
        prompt: str,
        model: str,
        *,
        fallback: str = "",
    ) -> None:
        key = (document_path, kind)
        previous = self._runs.pop(key, None)
        if previous is not None:
            self._logger.info(
                "agent_process_replaced",
                kind=str(kind),
                document_path=document_path,
                pid=previous.process.pid,
            )
            previous.kill()

        env = {k: v for k, v in os.environ.items() if k not in _SCRUBBED_ENV}
        try:
            process = await asyncio.create_subprocess_exec(
                self._cli_path,
                *self.build_args(prompt, kind, model),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_LINE_LIMIT,
            )
        except OSError as exc:
            raise AgentError(f"Could not start agent at {self._cli_path!r}: {exc}") from exc

        run = _AgentRun(kind=kind, document_path=document_path, process=process, fallback=fallback)
        self._runs[key] = run
        self._logger.info(
            "agent_process_started",
            kind=str(kind),
            document_path=document_path,
            pid=process.pid,
            model=model,
        )
        task = asyncio.create_task(self._drive(run))
        run.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, run: _AgentRun) -> None:
        process = run.process
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())
        accumulated = ""
        result: str | None = None

        async for raw in process.stdout:
            parsed = parse_stream_line(raw.decode("utf-8", errors="replace"))
            if parsed is None:
                continue
            if parsed.result is not None:
                result = parsed.result
            for text in parsed.texts:
                accumulated += text
                if not run.detached:
                    self._emit_stream(
                        ChannelStream(
                            type=run.kind, content=accumulated, document_path=run.document_path
                        )
                    )

        stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        code = await process.wait()
        if run.detached:
            return
        key = (run.document_path, run.kind)
        if self._runs.get(key) is run:
            del self._runs[key]

        if code != 0:
            message = stderr or f"Agent process exited with code {code}"
            self._logger.warning("agent_process_failed", kind=str(run.kind), code=code)
            self._emit_complete(
                ChannelComplete(
                    type=run.kind,
                    success=False,
                    content=accumulated,
                    error=message,
                    document_path=run.document_path,
                )
            )
            return
        if stderr:
            self._logger.info("agent_stderr", kind=str(run.kind), stderr=stderr[:500])
        content = result or accumulated or run.fallback
        self._emit_complete(
            ChannelComplete(
                type=run.kind, success=True, content=content, document_path=run.document_path
            )
        )

    def _emit_stream(self, event: ChannelStream) -> None:
        for listener in list(self._stream_listeners):
            listener(event)

    def _emit_complete(self, event: ChannelComplete) -> None:
        for listener in list(self._complete_listeners):
            listener(event)


def _discard(listeners: list[Any], listener: Any) -> None:
    try:
        listeners.remove(listener)
    except ValueError:
        pass


def _read_document(document_path: str) -> str | None:
    try:
        return Path(document_path).expanduser().read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _save_images(images: Sequence[ImageAttachment]) -> list[str]:
    """Write attachments to temp files the agent can read. Returns their paths."""
    if not images:
        return []
    directory = Path(tempfile.gettempdir()) / "marginalia-chat-images"
    directory.mkdir(parents=True, exist_ok=True)
    paths: list[str] = []
    for image in images:
        extension = image.mime_type.split("/")[-1] or "png"
        path = directory / f"{make_id('img')}.{extension}"
        path.write_bytes(base64.b64decode(image.data))
        paths.append(str(path))
    return paths
