"""One-time choice between the IPC and HTTP transports."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from marginalia.agent.channel import AgentChannel
from marginalia.agent.process import ProcessAgentChannel, find_agent_cli
from marginalia.models.config import AgentConfig, EngineConfig
from marginalia.models.signals import TransportKind
from marginalia.transport.base import Transport
from marginalia.transport.http import HttpTransport
from marginalia.transport.ipc import IpcTransport

_logger = structlog.get_logger("marginalia.transport")


@dataclass(frozen=True)
class HostCapabilities:
    """What the host offers for reaching the agent."""

    channel: AgentChannel | None = None
    """A direct channel to a local agent. ``None`` in a served application."""


def select_transport_kind(capabilities: HostCapabilities) -> TransportKind:
    """IPC when the host provides a channel, HTTP otherwise."""
    if capabilities.channel is not None:
        return TransportKind.IPC
    return TransportKind.HTTP


def detect_capabilities(config: AgentConfig) -> HostCapabilities:
    """Offer a :class:`ProcessAgentChannel` when the agent CLI is installed locally."""
    cli_path = find_agent_cli(config)
    if cli_path is None:
        _logger.info("agent_cli_not_found")
        return HostCapabilities()
    _logger.info("agent_cli_found", cli_path=cli_path)
    return HostCapabilities(channel=ProcessAgentChannel(config, cli_path))


class TransportSelector:
    """
    Decides the transport kind once, at construction, and builds a fresh
    transport of that kind for every invocation.

    Args:
        capabilities: What the host offers.
        config: Engine configuration (HTTP endpoints and polling).
        client: Optional shared ``httpx.AsyncClient`` for the HTTP transport.
            One is created on demand otherwise and closed by :meth:`aclose`.
    """

    def __init__(
        self,
        capabilities: HostCapabilities,
        config: EngineConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._capabilities = capabilities
        self._config = config
        self._kind = select_transport_kind(capabilities)
        self._client = client
        self._owns_client = client is None
        _logger.info("transport_selected", kind=str(self._kind))

    @property
    def kind(self) -> TransportKind:
        return self._kind

    @property
    def channel(self) -> AgentChannel | None:
        return self._capabilities.channel

    def create(self) -> Transport:
        if self._kind is TransportKind.IPC:
            assert self._capabilities.channel is not None
            return IpcTransport(self._capabilities.channel)
        return HttpTransport(self._config.http, self._config.poll, self._http_client())

    async def aclose(self) -> None:
        channel = self._capabilities.channel
        if isinstance(channel, ProcessAgentChannel):
            await channel.aclose()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.http.base_url, timeout=self._config.http.timeout
            )
        return self._client
