"""Agent transports and the stream reader that hides their differences."""

from marginalia.transport.base import Transport
from marginalia.transport.http import HttpTransport
from marginalia.transport.ipc import IpcTransport
from marginalia.transport.selector import (
    HostCapabilities,
    TransportSelector,
    detect_capabilities,
    select_transport_kind,
)
from marginalia.transport.stream import StreamReader

__all__ = [
    "HostCapabilities",
    "HttpTransport",
    "IpcTransport",
    "StreamReader",
    "Transport",
    "TransportSelector",
    "detect_capabilities",
    "select_transport_kind",
]
