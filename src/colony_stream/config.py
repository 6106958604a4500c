"""Runtime configuration for the client, executor loop and channel protocol."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from colony_stream.channels.handshake import (
    DEFAULT_ACK_TIMEOUT_SECONDS,
    DEFAULT_DATA_CHANNEL,
    DEFAULT_SYNC_CHANNEL,
    AckTimeoutPolicy,
)
from colony_stream.channels.subscriber import DEFAULT_POLL_INTERVAL_SECONDS
from colony_stream.transport.http import DEFAULT_SERVER_URL, DEFAULT_TIMEOUT_SECONDS

ENV_PREFIX = "COLONY_STREAM_"
DEFAULT_EXECUTOR_NAME = "colony-stream"
DEFAULT_EXECUTOR_TYPE = "cli"


@dataclass(slots=True)
class ServerSettings:
    """Where and as whom to talk to the colonies server."""

    url: str = DEFAULT_SERVER_URL
    colony_name: str = "dev"
    prvkey: str = ""
    colony_prvkey: str = ""
    request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    connect_retries: int = 0
    verify_tls: bool = True


@dataclass(slots=True)
class ExecutorSettings:
    """Assignment loop settings."""

    assign_timeout_seconds: int = 10
    connection_backoff_seconds: float = 5.0
    backoff_max_seconds: float = 60.0
    executor_name: str = DEFAULT_EXECUTOR_NAME
    executor_type: str = DEFAULT_EXECUTOR_TYPE


@dataclass(slots=True)
class ChannelSettings:
    """Subscriber polling settings."""

    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    read_batch_limit: int = 0
    subscribe_timeout_seconds: float = 30.0
    data_channel: str = DEFAULT_DATA_CHANNEL
    sync_channel: str = DEFAULT_SYNC_CHANNEL


@dataclass(slots=True)
class HandshakeSettings:
    """Producer-side acknowledgment wait."""

    ack_timeout_seconds: float = DEFAULT_ACK_TIMEOUT_SECONDS
    ack_timeout_policy: AckTimeoutPolicy = AckTimeoutPolicy.LEAVE_OPEN


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    server: ServerSettings = field(default_factory=ServerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    channels: ChannelSettings = field(default_factory=ChannelSettings)
    handshake: HandshakeSettings = field(default_factory=HandshakeSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from `COLONY_STREAM_*` variables with local-development defaults."""

        return cls(
            server=ServerSettings(
                url=_env("SERVER_URL", DEFAULT_SERVER_URL),
                colony_name=_env("COLONY_NAME", "dev"),
                prvkey=_env("PRVKEY", ""),
                colony_prvkey=_env("COLONY_PRVKEY", ""),
                request_timeout_seconds=_env_float(
                    "REQUEST_TIMEOUT_SECONDS",
                    DEFAULT_TIMEOUT_SECONDS,
                ),
                connect_retries=_env_int("CONNECT_RETRIES", 0),
                verify_tls=_env_bool("VERIFY_TLS", default=True),
            ),
            executor=ExecutorSettings(
                assign_timeout_seconds=_env_int("ASSIGN_TIMEOUT_SECONDS", 10),
                connection_backoff_seconds=_env_float("CONNECTION_BACKOFF_SECONDS", 5.0),
                backoff_max_seconds=_env_float("BACKOFF_MAX_SECONDS", 60.0),
                executor_name=_env("EXECUTOR_NAME", DEFAULT_EXECUTOR_NAME),
                executor_type=_env("EXECUTOR_TYPE", DEFAULT_EXECUTOR_TYPE),
            ),
            channels=ChannelSettings(
                poll_interval_seconds=_env_float(
                    "POLL_INTERVAL_SECONDS",
                    DEFAULT_POLL_INTERVAL_SECONDS,
                ),
                read_batch_limit=_env_int("READ_BATCH_LIMIT", 0),
                subscribe_timeout_seconds=_env_float("SUBSCRIBE_TIMEOUT_SECONDS", 30.0),
                data_channel=_env("DATA_CHANNEL", DEFAULT_DATA_CHANNEL),
                sync_channel=_env("SYNC_CHANNEL", DEFAULT_SYNC_CHANNEL),
            ),
            handshake=HandshakeSettings(
                ack_timeout_seconds=_env_float(
                    "ACK_TIMEOUT_SECONDS",
                    DEFAULT_ACK_TIMEOUT_SECONDS,
                ),
                ack_timeout_policy=_env_policy(
                    "ACK_TIMEOUT_POLICY",
                    AckTimeoutPolicy.LEAVE_OPEN,
                ),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the offending variable."""

        _validate_server_url(self.server.url)
        if not self.server.colony_name.strip():
            raise ValueError(f"{ENV_PREFIX}COLONY_NAME must not be empty.")
        if self.server.request_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.server.connect_retries < 0:
            raise ValueError(f"{ENV_PREFIX}CONNECT_RETRIES must be >= 0.")
        if self.executor.assign_timeout_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}ASSIGN_TIMEOUT_SECONDS must be >= 0.")
        if self.executor.connection_backoff_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}CONNECTION_BACKOFF_SECONDS must be >= 0.")
        if self.executor.backoff_max_seconds < self.executor.connection_backoff_seconds:
            raise ValueError(
                f"{ENV_PREFIX}BACKOFF_MAX_SECONDS must be >= "
                f"{ENV_PREFIX}CONNECTION_BACKOFF_SECONDS.",
            )
        if not self.executor.executor_name:
            raise ValueError(f"{ENV_PREFIX}EXECUTOR_NAME must not be empty.")
        if not self.executor.executor_type:
            raise ValueError(f"{ENV_PREFIX}EXECUTOR_TYPE must not be empty.")
        if self.channels.poll_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS must be > 0.")
        if self.channels.read_batch_limit < 0:
            raise ValueError(f"{ENV_PREFIX}READ_BATCH_LIMIT must be >= 0.")
        if self.channels.subscribe_timeout_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}SUBSCRIBE_TIMEOUT_SECONDS must be >= 0.")
        if self.channels.data_channel == self.channels.sync_channel:
            raise ValueError(
                f"{ENV_PREFIX}DATA_CHANNEL and {ENV_PREFIX}SYNC_CHANNEL must differ.",
            )
        if self.handshake.ack_timeout_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}ACK_TIMEOUT_SECONDS must be >= 0.")

    def require_prvkey(self) -> str:
        if not self.server.prvkey:
            raise ValueError(f"{ENV_PREFIX}PRVKEY is required.")
        return self.server.prvkey


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_policy(name: str, default: AckTimeoutPolicy) -> AckTimeoutPolicy:
    raw = _env(name, default.value).lower()
    try:
        return AckTimeoutPolicy(raw)
    except ValueError as error:
        allowed = ", ".join(policy.value for policy in AckTimeoutPolicy)
        raise ValueError(
            f"Invalid {ENV_PREFIX}{name}: {raw!r}. Expected one of: {allowed}.",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {ENV_PREFIX}{name}: {value!r}")


def _validate_server_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {ENV_PREFIX}SERVER_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
