"""Executor loop: long-poll for processes and run registered handlers."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from typing import Any

from colony_stream import crypto
from colony_stream.channels.handshake import (
    DEFAULT_ACK_TIMEOUT_SECONDS,
    DEFAULT_SYNC_CHANNEL,
    AckTimeoutPolicy,
    HandshakeResult,
    ProducerHandshake,
)
from colony_stream.channels.session import ChannelSession, SequenceCounter
from colony_stream.channels.subscriber import DEFAULT_POLL_INTERVAL_SECONDS
from colony_stream.client import ColoniesClient
from colony_stream.errors import ColoniesError, ProtocolError, TransportConnectionError
from colony_stream.models import AssignOutcome, Executor, ExecutorState, Process, TaskState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate executor counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    left_open: int = 0
    timeouts: int = 0
    connection_errors: int = 0
    errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.left_open += other.left_open
        self.timeouts += other.timeouts
        self.connection_errors += other.connection_errors
        self.errors += other.errors


@dataclass(slots=True)
class HandshakeOptions:
    """How handlers finish streaming processes."""

    sync_channel: str = DEFAULT_SYNC_CHANNEL
    ack_timeout_seconds: float = DEFAULT_ACK_TIMEOUT_SECONDS
    on_timeout: AckTimeoutPolicy = AckTimeoutPolicy.LEAVE_OPEN
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS


@dataclass(slots=True)
class ExecutionContext:
    """What a handler gets: the process, the client, and channel helpers.

    A handler that finishes the process itself (through `handshake`, `close`
    or `fail`) marks the context finalized and the executor leaves the
    process alone afterwards. `final_state` stays None when a handshake
    left the process running.
    """

    client: ColoniesClient
    process: Process
    handshake_options: HandshakeOptions = field(default_factory=HandshakeOptions)
    finalized: bool = False
    final_state: TaskState | None = None
    handshake_result: HandshakeResult | None = None

    @property
    def args(self) -> list[Any]:
        return self.process.spec.args

    def session(self, channel: str, *, counter: SequenceCounter | None = None) -> ChannelSession:
        if channel not in self.process.spec.channels:
            raise ProtocolError(
                f"Channel {channel!r} was not declared for process {self.process.processid}",
            )
        return self.client.session(self.process.processid, channel, counter=counter)

    def log(self, message: str) -> None:
        self.client.add_log(self.process.processid, message)

    def handshake(
        self,
        data: ChannelSession,
        *,
        failed: bool = False,
        errors: Sequence[str] = (),
    ) -> HandshakeResult:
        options = self.handshake_options
        producer = ProducerHandshake(
            self.client,
            task_id=self.process.processid,
            sync_channel=options.sync_channel,
            ack_timeout_seconds=options.ack_timeout_seconds,
            on_timeout=options.on_timeout,
            poll_interval_seconds=options.poll_interval_seconds,
        )
        result = producer.finish(data, failed=failed, errors=errors)
        self.finalized = True
        self.handshake_result = result
        if result.closed:
            self.final_state = TaskState.SUCCESS
        elif result.failed:
            self.final_state = TaskState.FAILED
        return result

    def close(self) -> None:
        self.client.close(self.process.processid)
        self.finalized = True
        self.final_state = TaskState.SUCCESS

    def fail(self, errors: Sequence[str] = ()) -> None:
        self.client.fail(self.process.processid, errors)
        self.finalized = True
        self.final_state = TaskState.FAILED


Handler = Callable[[ExecutionContext], Sequence[Any] | None]


def register_executor(
    client: ColoniesClient,
    *,
    colony_name: str,
    executor_name: str,
    executor_type: str,
    approver: ColoniesClient | None = None,
) -> Executor | None:
    """Register the client's identity as an executor and optionally approve it.

    A rejected registration (usually a name that already exists) is logged
    and registration continues with approval. `approver` must sign with the
    colony owner key. Returns the registered executor, or None when the
    server refused the registration.
    """

    registered: Executor | None = None
    try:
        registered = client.add_executor(
            Executor(
                executorname=executor_name,
                executorid=crypto.gen_id(client.prvkey),
                executortype=executor_type,
                colonyname=colony_name,
            ),
        )
    except ProtocolError as error:
        logger.warning("Executor %s was not registered: %s", executor_name, error)

    if approver is not None:
        try:
            approver.approve_executor(colony_name, executor_name)
        except ProtocolError as error:
            logger.warning("Executor %s was not approved: %s", executor_name, error)
            return registered
        if registered is not None:
            registered.state = ExecutorState.APPROVED
    return registered


class ExecutorWorker:
    """Consumes assigned processes and dispatches them by function name."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: ColoniesClient,
        colony_name: str,
        handlers: Mapping[str, Handler],
        assign_timeout_seconds: int = 10,
        connection_backoff_seconds: float = 5.0,
        backoff_max_seconds: float = 60.0,
        handshake_options: HandshakeOptions | None = None,
    ) -> None:
        self.client = client
        self.colony_name = colony_name
        self.handlers = dict(handlers)
        self.assign_timeout_seconds = assign_timeout_seconds
        self.connection_backoff_seconds = connection_backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.handshake_options = handshake_options or HandshakeOptions()
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._consecutive_failures = 0

    def run_once(self) -> WorkerRunSummary:
        """Long-poll once and execute at most one process."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            return summary

        result = self.client.assign(self.colony_name, self.assign_timeout_seconds)
        if result.process is None:
            if result.outcome == AssignOutcome.TIMEOUT:
                summary.timeouts = 1
            elif result.outcome == AssignOutcome.CONNECTION_ERROR:
                logger.warning("Connection error while waiting for work: %s", result.error)
                summary.connection_errors = 1
            else:
                logger.warning("Assignment failed: %s", result.error)
                summary.errors = 1
            return summary

        summary.processed = 1
        self._execute(result.process, summary)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped by a signal, `max_tasks` is reached, or the queue stays idle.

        Args:
            max_tasks: Stop after processing this many processes (None = unlimited).
            max_idle_polls: Stop after this many consecutive polls without work
                (None = poll forever). Timeouts re-poll immediately; connection
                and other assignment errors back off first.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    logger.info(
                        "Executor stopping (%s) after %s processes",
                        self._stop_signal_name or "requested",
                        aggregate.processed,
                    )
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed:
                    consecutive_idle = 0
                    self._consecutive_failures = 0
                    continue

                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return aggregate

                if summary.connection_errors or summary.errors:
                    self._consecutive_failures += 1
                    self._sleep_with_stop(
                        self._compute_backoff(failure_number=self._consecutive_failures),
                    )
                else:
                    self._consecutive_failures = 0

    def request_stop(self, *, reason: str = "requested") -> None:
        self._stop_requested = True
        self._stop_signal_name = reason

    def _execute(self, process: Process, summary: WorkerRunSummary) -> None:
        handler = self.handlers.get(process.spec.funcname)
        if handler is None:
            logger.warning(
                "Unknown function %r for process %s",
                process.spec.funcname,
                process.processid,
            )
            self._finalize_failure(process, [f"Unknown function: {process.spec.funcname}"], summary)
            return

        context = ExecutionContext(
            client=self.client,
            process=process,
            handshake_options=self.handshake_options,
        )
        try:
            output = handler(context)
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Handler %s failed for process %s",
                process.spec.funcname,
                process.processid,
            )
            if context.finalized:
                self._count_finalized(context, summary)
                return
            self._finalize_failure(process, [str(error) or type(error).__name__], summary)
            return

        if context.finalized:
            self._count_finalized(context, summary)
            return

        try:
            if output:
                self.client.set_output(process.processid, list(output))
            self.client.close(process.processid)
        except ColoniesError as error:
            logger.warning("Could not close process %s: %s", process.processid, error)
            self._count_error(error, summary)
            return
        summary.succeeded = 1

    def _finalize_failure(
        self,
        process: Process,
        errors: list[str],
        summary: WorkerRunSummary,
    ) -> None:
        try:
            self.client.fail(process.processid, errors)
        except ColoniesError as error:
            logger.warning("Could not fail process %s: %s", process.processid, error)
            self._count_error(error, summary)
            return
        summary.failed = 1

    def _count_finalized(self, context: ExecutionContext, summary: WorkerRunSummary) -> None:
        if context.final_state == TaskState.SUCCESS:
            summary.succeeded = 1
        elif context.final_state == TaskState.FAILED:
            summary.failed = 1
        else:
            logger.info(
                "Process %s left running without acknowledgment",
                context.process.processid,
            )
            summary.left_open = 1

    def _count_error(self, error: ColoniesError, summary: WorkerRunSummary) -> None:
        if isinstance(error, TransportConnectionError):
            summary.connection_errors = 1
        else:
            summary.errors = 1

    def _compute_backoff(self, *, failure_number: int) -> float:
        max_delay = min(
            self.backoff_max_seconds,
            self.connection_backoff_seconds * (2 ** max(failure_number - 1, 0)),
        )
        return max_delay / 2 + self._random.uniform(0, max_delay / 2)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current process", name)
            self.request_stop(reason=name)

        try:
            try:
                signal.signal(signal.SIGINT, _handler)
                signal.signal(signal.SIGTERM, _handler)
            except ValueError:
                # Signal handlers can only be installed in main thread.
                logger.debug("Signal handlers not installed outside the main thread")
            yield
        finally:
            with suppress(ValueError):
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
