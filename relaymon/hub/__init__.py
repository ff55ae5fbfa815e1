"""Broadcast hub — live channel fan-out to connected dashboards."""

from relaymon.hub.broadcast import BroadcastHub, Connection, LiveSocket
from relaymon.hub.messages import (
    ADMIN_CHANNELS,
    ALL_CHANNELS,
    Channel,
    MessageError,
    ServerEvent,
    parse_client_message,
)

__all__ = [
    "ADMIN_CHANNELS",
    "ALL_CHANNELS",
    "BroadcastHub",
    "Channel",
    "Connection",
    "LiveSocket",
    "MessageError",
    "ServerEvent",
    "parse_client_message",
]
