"""Error taxonomy and deterministic classification of server failure replies."""

from __future__ import annotations

from dataclasses import dataclass

SERVER_FAILURE_CLASSIFIER_VERSION = 1


class ColoniesError(Exception):
    """Base class for every error raised by the client."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class TransportConnectionError(ColoniesError):
    """Transient transport failure; callers may retry after a backoff."""


class ProtocolError(ColoniesError):
    """Undeclared or deleted channel, unknown process, or malformed reply."""


class AuthError(ColoniesError):
    """The server rejected the request signature or denied access."""


class AssignTimeout(ColoniesError):
    """No process became available within the assignment long-poll window."""


_AUTH_PATTERNS: tuple[str, ...] = (
    "access denied",
    "not authorized",
    "unauthorized",
    "forbidden",
    "invalid signature",
    "failed to recover",
    "not a member",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "no processes available",
    "failed to assign process",
)
_PROTOCOL_PATTERNS: tuple[str, ...] = (
    "channel",
    "not found",
    "does not exist",
    "not running",
    "invalid",
)

_AUTH_STATUS_CODES = frozenset({401, 403})


@dataclass(slots=True)
class ServerFailureClassification:
    """Normalized classification result for a failure reply."""

    error_class: type[ColoniesError]
    matched_rule: str
    matched_pattern: str | None

    def to_error(self, message: str, *, status: int | None) -> ColoniesError:
        return self.error_class(message, status=status)


def classify_server_failure(
    *,
    status: int | None,
    message: str,
    payloadtype: str = "",
) -> ServerFailureClassification:
    """Classify a server failure reply into one error class.

    Auth signals win over everything else, then long-poll timeouts (only for
    assignment requests), then protocol errors. Unknown failures are treated
    as protocol errors since the request reached the server.
    """

    haystack = message.lower()

    if status in _AUTH_STATUS_CODES:
        return ServerFailureClassification(
            error_class=AuthError,
            matched_rule="auth_status",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _AUTH_PATTERNS)
    if pattern is not None:
        return ServerFailureClassification(
            error_class=AuthError,
            matched_rule="auth_message",
            matched_pattern=pattern,
        )

    if payloadtype == "assignprocessmsg":
        pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
        if pattern is not None:
            return ServerFailureClassification(
                error_class=AssignTimeout,
                matched_rule="assign_timeout",
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _PROTOCOL_PATTERNS)
    if pattern is not None:
        return ServerFailureClassification(
            error_class=ProtocolError,
            matched_rule="protocol_message",
            matched_pattern=pattern,
        )

    return ServerFailureClassification(
        error_class=ProtocolError,
        matched_rule="fallback_protocol",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
