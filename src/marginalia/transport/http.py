"""Pull-based transport: start the agent over HTTP, then poll for output and status."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from marginalia.errors import MarginaliaError
from marginalia.http_client import request_json
from marginalia.invocation import PendingInvocation
from marginalia.models.config import EndpointConfig, HttpConfig, PollConfig
from marginalia.models.signals import (
    AgentRequest,
    ChatRequest,
    InvocationKind,
    TerminalOutcome,
    TransportKind,
)
from marginalia.transport.base import Transport

Sleep = Callable[[float], Awaitable[None]]


class HttpTransport(Transport):
    """
    Starts the agent with a POST and then runs a poll task that, every
    ``PollConfig.interval_seconds``, fetches the stream buffer and the
    terminal status with two independent GETs.

    A failed GET is logged and the tick moves on; the loop only ends on a
    ``complete`` or ``error`` status or on :meth:`cancel`.

    Args:
        http: Base URL and per-kind endpoints.
        poll: Tick interval and per-request timeout.
        client: Shared client. Must have ``base_url`` set to ``http.base_url``.
        sleep: Injectable sleep, for tests.
    """

    kind = TransportKind.HTTP

    def __init__(
        self,
        http: HttpConfig,
        poll: PollConfig,
        client: httpx.AsyncClient,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__()
        self._http = http
        self._poll = poll
        self._client = client
        self._sleep = sleep
        self._endpoints: EndpointConfig = http.chat
        self._params: dict[str, str] = {}
        self._task: asyncio.Task[None] | None = None
        self._last_content = ""
        self._cancel_requested = False

    @property
    def poll_task(self) -> asyncio.Task[None] | None:
        return self._task

    async def start(self, invocation: PendingInvocation, request: AgentRequest) -> None:
        self._invocation = invocation
        if invocation.kind is InvocationKind.CHAT:
            self._endpoints = self._http.chat
        else:
            self._endpoints = self._http.edit
        if isinstance(request, ChatRequest):
            self._params = {"document_path": request.document_path}
        else:
            self._params = {"request_id": request.request_id}

        await self._reset_stream_buffer()
        if self._cancel_requested:
            return

        body = request.model_dump(mode="json", exclude={"kind"}, exclude_none=True)
        try:
            data = await request_json(self._client, "POST", self._endpoints.start, json=body)
        except MarginaliaError as exc:
            self._logger.warning(
                "agent_start_failed", invocation_id=invocation.invocation_id, error=str(exc)
            )
            self._emit_terminal(TerminalOutcome.ERROR, error=str(exc))
            return
        if data.get("success") is False:
            error = data.get("error") or data.get("message") or "Agent could not be started"
            self._emit_terminal(TerminalOutcome.ERROR, error=str(error))
            return

        self._logger.info(
            "agent_invoked", invocation_id=invocation.invocation_id, kind=str(invocation.kind)
        )
        if self._cancel_requested:
            # cancelled while the start request was in flight
            await self._request_server_cancel()
            return
        if not self._terminated:
            self._task = asyncio.create_task(self._poll_loop())
            self._task.add_done_callback(self._on_poll_done)

    async def cancel(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._cancel_requested = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._request_server_cancel()

    async def _request_server_cancel(self) -> None:
        if self._endpoints.cancel is None:
            return
        try:
            await request_json(self._client, "POST", self._endpoints.cancel, json=self._params)
        except MarginaliaError as exc:
            self._logger.info("server_cancel_failed", error=str(exc))

    # ── Poll loop ──────────────────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        while not self._terminated:
            await self._sleep(self._poll.interval_seconds)
            if self._terminated:
                break
            await self._poll_stream()
            if self._terminated:
                break
            await self._poll_status()
        self._logger.debug("poll_loop_stopped")

    def _on_poll_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("poll_loop_crashed", error=str(exc))
            self._emit_terminal(TerminalOutcome.ERROR, content=self._last_content, error=str(exc))

    async def _poll_stream(self) -> None:
        data = await self._get(self._endpoints.stream, "stream")
        if data is None:
            return
        content = data.get("content")
        if isinstance(content, str) and content:
            self._last_content = content
            self._emit_increment(content)

    async def _poll_status(self) -> None:
        data = await self._get(self._endpoints.status, "status")
        if data is None:
            return
        status = data.get("status")
        if status == "complete":
            content = data.get("content") or data.get("message") or self._last_content
            self._emit_terminal(TerminalOutcome.SUCCESS, content=str(content))
        elif status == "error":
            error = data.get("content") or data.get("message") or "Agent failed"
            self._emit_terminal(
                TerminalOutcome.ERROR, content=self._last_content, error=str(error)
            )

    async def _get(self, url: str, what: str) -> dict[str, Any] | None:
        try:
            return await request_json(
                self._client,
                "GET",
                url,
                params=self._params,
                timeout=self._poll.request_timeout,
            )
        except MarginaliaError as exc:
            self._logger.debug("poll_request_failed", target=what, error=str(exc))
            return None

    async def _reset_stream_buffer(self) -> None:
        try:
            await request_json(self._client, "DELETE", self._endpoints.stream, params=self._params)
        except MarginaliaError as exc:
            self._logger.debug("stream_reset_failed", error=str(exc))
