"""
Networking — signed events, the relay pool, and encrypted direct messages.

Depends on: config, identity
"""

from backlinkmesh.network.events import Event, EventFilter, build_event
from backlinkmesh.network.relay import PublishError, RelayPool, RelayResult
from backlinkmesh.network.dm import InboundMessage, Messenger

__all__ = [
    "Event",
    "EventFilter",
    "build_event",
    "PublishError",
    "RelayPool",
    "RelayResult",
    "InboundMessage",
    "Messenger",
]
