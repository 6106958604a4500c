"""HTTP transport: signed RPC envelopes posted to the colonies server."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from colony_stream import rpc
from colony_stream.errors import (
    ColoniesError,
    ProtocolError,
    TransportConnectionError,
    classify_server_failure,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:50080"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "colony-stream/0.1"

# Proxy or load balancer failures; the colonies server never sent a reply.
GATEWAY_STATUS_CODES = frozenset({502, 503, 504})


class HttpTransport:
    """httpx client wrapper that signs, posts and decodes RPC messages.

    Long-poll requests get their read deadline extended by the server-side
    wait so the server always answers first.
    """

    def __init__(
        self,
        *,
        server_url: str = DEFAULT_SERVER_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        connect_retries: int = 0,
        verify_tls: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_url = f"{server_url.rstrip('/')}/api"
        self._timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers={"User-Agent": user_agent},
            transport=transport or httpx.HTTPTransport(retries=connect_retries, verify=verify_tls),
        )

    @property
    def api_url(self) -> str:
        return self._api_url

    def send(self, payloadtype: str, payload: dict[str, Any], prvkey: str) -> Any:
        envelope = rpc.compose_rpcmsg(payloadtype, payload, prvkey)
        try:
            response = self._client.post(
                self._api_url,
                json=envelope,
                timeout=self._request_timeout(payloadtype, payload),
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout sending %s to %s", payloadtype, self._api_url)
            raise TransportConnectionError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            logger.warning("Transport error sending %s to %s: %s", payloadtype, self._api_url, exc)
            raise TransportConnectionError(str(exc) or type(exc).__name__) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise self._unreadable(
                payloadtype,
                response,
                f"Non-JSON reply to {payloadtype} (HTTP {response.status_code})",
            ) from exc
        try:
            reply = rpc.decode_reply(body)
        except ProtocolError as exc:
            raise self._unreadable(payloadtype, response, exc.message) from exc

        if reply.error or not response.is_success:
            raise self._failure(payloadtype, reply.payload, response.status_code)
        return reply.payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpTransport:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request_timeout(self, payloadtype: str, payload: dict[str, Any]) -> httpx.Timeout:
        read_timeout = self._timeout_seconds
        if payloadtype == rpc.ASSIGN_PROCESS:
            read_timeout += max(0, int(payload.get("timeout") or 0))
        return httpx.Timeout(read_timeout, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS)

    def _unreadable(
        self,
        payloadtype: str,
        response: httpx.Response,
        message: str,
    ) -> ColoniesError:
        status = response.status_code
        if status in GATEWAY_STATUS_CODES:
            logger.warning("Gateway error %s sending %s to %s", status, payloadtype, self._api_url)
            return TransportConnectionError(f"Gateway error: {message}", status=status)
        return ProtocolError(message, status=status)

    def _failure(self, payloadtype: str, failure: Any, http_status: int) -> ColoniesError:
        if isinstance(failure, dict):
            message = str(failure.get("message") or "")
            status = failure.get("status")
        else:
            message = "" if failure is None else str(failure)
            status = None
        status = int(status) if isinstance(status, int) else http_status
        classified = classify_server_failure(
            status=status,
            message=message,
            payloadtype=payloadtype,
        )
        logger.debug(
            "Server failure for %s classified as %s (rule=%s)",
            payloadtype,
            classified.error_class.__name__,
            classified.matched_rule,
        )
        return classified.to_error(message or f"HTTP {http_status}", status=status)
