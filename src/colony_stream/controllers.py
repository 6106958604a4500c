"""Controllers for CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from colony_stream.channels.handshake import ConsumerHandshake
from colony_stream.client import ColoniesClient
from colony_stream.config import Settings
from colony_stream.executor import ExecutorWorker, HandshakeOptions, register_executor
from colony_stream.handlers import DEFAULT_HANDLERS
from colony_stream.models import ChannelEntry, MsgType
from colony_stream.transport.base import Transport
from colony_stream.transport.http import HttpTransport

TransportFactory = Callable[[Settings], Transport]


@dataclass(slots=True)
class ChannelAppendCommand:
    """CLI input for a single channel append."""

    task_id: str
    channel: str
    sequence: int
    payload: str
    msgtype: str = MsgType.DATA.value
    inreplyto: int = 0


@dataclass(slots=True)
class ChannelReadCommand:
    """CLI input for a non-blocking channel read."""

    task_id: str
    channel: str
    after_sequence: int = 0
    limit: int = 0


@dataclass(slots=True)
class ChannelSubscribeCommand:
    """CLI input for following a channel until `end` or idle timeout."""

    task_id: str
    channel: str | None
    start_sequence: int
    timeout_seconds: float | None
    ack: bool


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for executor execution."""

    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None
    register: bool = False


def http_transport(settings: Settings) -> Transport:
    return HttpTransport(
        server_url=settings.server.url,
        timeout_seconds=settings.server.request_timeout_seconds,
        connect_retries=settings.server.connect_retries,
        verify_tls=settings.server.verify_tls,
    )


class ChannelCliController:
    """Channel append/read/subscribe commands."""

    def __init__(self, transport_factory: TransportFactory = http_transport) -> None:
        self.transport_factory = transport_factory

    def append(self, command: ChannelAppendCommand) -> list[str]:
        settings = _settings()
        with _client(settings, self.transport_factory) as client:
            entry = client.append(
                command.task_id,
                command.channel,
                command.sequence,
                command.payload,
                command.msgtype,
                command.inreplyto,
            )
        return [f"Appended {format_entry(entry)}"]

    def read(self, command: ChannelReadCommand) -> list[str]:
        settings = _settings()
        with _client(settings, self.transport_factory) as client:
            entries = client.read(
                command.task_id,
                command.channel,
                command.after_sequence,
                command.limit,
            )
        if not entries:
            return ["No entries."]
        return [format_entry(entry) for entry in entries]

    def subscribe(self, command: ChannelSubscribeCommand, emit: Callable[[str], None]) -> list[str]:
        """Stream entries through `emit` as they arrive; return the summary lines."""

        settings = _settings()
        channel = command.channel or settings.channels.data_channel
        timeout_seconds = (
            command.timeout_seconds
            if command.timeout_seconds is not None
            else settings.channels.subscribe_timeout_seconds
        )

        def _emit_batch(batch: list[ChannelEntry]) -> None:
            for entry in batch:
                emit(format_entry(entry))

        with _client(settings, self.transport_factory) as client:
            if command.ack:
                consumer = ConsumerHandshake(
                    client,
                    task_id=command.task_id,
                    data_channel=channel,
                    sync_channel=settings.channels.sync_channel,
                )
                consumed = consumer.consume(
                    _emit_batch,
                    start_sequence=command.start_sequence,
                    timeout_seconds=timeout_seconds,
                    poll_interval_seconds=settings.channels.poll_interval_seconds,
                )
                subscription = consumed.subscription
                acked = f" acknowledged={consumed.acknowledged}"
            else:

                def _until_end(batch: list[ChannelEntry]) -> bool:
                    _emit_batch(batch)
                    return not any(entry.is_end for entry in batch)

                subscription = client.subscribe(
                    command.task_id,
                    channel,
                    command.start_sequence,
                    timeout_seconds,
                    _until_end,
                    poll_interval_seconds=settings.channels.poll_interval_seconds,
                    batch_limit=settings.channels.read_batch_limit,
                )
                acked = ""

        lines = [
            f"Subscription {subscription.outcome.value}: cursor={subscription.cursor} "
            f"batches={subscription.batches} delivered={subscription.delivered}{acked}",
        ]
        if subscription.error is not None:
            lines.append(f"Error: {subscription.error}")
        return lines


class ExecutorCliController:
    """Executor loop command."""

    def __init__(self, transport_factory: TransportFactory = http_transport) -> None:
        self.transport_factory = transport_factory

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings()
        lines: list[str] = []
        with _client(settings, self.transport_factory) as client:
            if command.register:
                lines.append(self._register(client, settings))
            worker = ExecutorWorker(
                client=client,
                colony_name=settings.server.colony_name,
                handlers=DEFAULT_HANDLERS,
                assign_timeout_seconds=settings.executor.assign_timeout_seconds,
                connection_backoff_seconds=settings.executor.connection_backoff_seconds,
                backoff_max_seconds=settings.executor.backoff_max_seconds,
                handshake_options=HandshakeOptions(
                    sync_channel=settings.channels.sync_channel,
                    ack_timeout_seconds=settings.handshake.ack_timeout_seconds,
                    on_timeout=settings.handshake.ack_timeout_policy,
                    poll_interval_seconds=settings.channels.poll_interval_seconds,
                ),
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        lines.append(
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} left_open={summary.left_open} "
            f"timeouts={summary.timeouts} "
            f"connection_errors={summary.connection_errors} errors={summary.errors}",
        )
        return lines

    def _register(self, client: ColoniesClient, settings: Settings) -> str:
        executor_name = settings.executor.executor_name
        approver = (
            ColoniesClient(transport=client.transport, prvkey=settings.server.colony_prvkey)
            if settings.server.colony_prvkey
            else None
        )
        registered = register_executor(
            client,
            colony_name=settings.server.colony_name,
            executor_name=executor_name,
            executor_type=settings.executor.executor_type,
            approver=approver,
        )
        if registered is None:
            return f"Executor {executor_name} not registered (see log)."
        return f"Registered executor {executor_name}: {registered.state.name.lower()}"


def format_entry(entry: ChannelEntry) -> str:
    reply = f" re={entry.inreplyto}" if entry.inreplyto else ""
    return f"#{entry.sequence} [{entry.msgtype or '-'}]{reply} {entry.text}"


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


@contextmanager
def _client(settings: Settings, transport_factory: TransportFactory) -> Iterator[ColoniesClient]:
    transport = transport_factory(settings)
    try:
        yield ColoniesClient(transport=transport, prvkey=settings.require_prvkey())
    finally:
        transport.close()
