"""Transport implementations for the colonies RPC protocol."""

from colony_stream.transport.base import Transport
from colony_stream.transport.http import HttpTransport
from colony_stream.transport.memory import InMemoryColony

__all__ = [
    "HttpTransport",
    "InMemoryColony",
    "Transport",
]
