"""Transport interface consumed by the client."""

from __future__ import annotations

from typing import Any, Protocol


class Transport(Protocol):
    """Performs one signed request and returns the decoded reply payload.

    Implementations raise `ColoniesError` subclasses: `TransportConnectionError`
    for transient failures, `AuthError`, `ProtocolError` and `AssignTimeout`
    for server-reported failures.
    """

    def send(self, payloadtype: str, payload: dict[str, Any], prvkey: str) -> Any:
        """Send one operation and return its decoded reply payload."""

    def close(self) -> None:
        """Release transport resources."""
