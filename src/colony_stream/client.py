"""Client facade over a transport: assignment, channels, processes and executors."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from colony_stream import rpc
from colony_stream.channels.session import ChannelSession, SequenceCounter
from colony_stream.channels.subscriber import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    Consumer,
    subscribe,
)
from colony_stream.errors import (
    AssignTimeout,
    ColoniesError,
    ProtocolError,
    TransportConnectionError,
)
from colony_stream.models import (
    AssignOutcome,
    AssignResult,
    ChannelEntry,
    Executor,
    FunctionSpec,
    LogEntry,
    MsgType,
    Process,
    SubscriptionResult,
    TaskState,
    to_payload_bytes,
)
from colony_stream.transport.base import Transport

logger = logging.getLogger(__name__)


class ColoniesClient:
    """Signed request/response operations for one identity (private key).

    Every call blocks until the transport answers. Nothing is retried here.
    """

    def __init__(self, *, transport: Transport, prvkey: str) -> None:
        self.transport = transport
        self.prvkey = prvkey

    def assign(self, colony_name: str, timeout_seconds: int) -> AssignResult:
        """Long-poll for a process; benign timeouts and connection errors are outcomes."""

        try:
            reply = self._send(
                rpc.ASSIGN_PROCESS,
                rpc.assign_payload(colony_name, timeout_seconds),
            )
        except AssignTimeout as error:
            logger.debug("No process assigned within %ss on %s", timeout_seconds, colony_name)
            return AssignResult(outcome=AssignOutcome.TIMEOUT, error=error)
        except TransportConnectionError as error:
            return AssignResult(outcome=AssignOutcome.CONNECTION_ERROR, error=error)
        except ColoniesError as error:
            return AssignResult(outcome=AssignOutcome.OTHER_ERROR, error=error)

        try:
            process = Process.from_wire(reply)
        except ProtocolError as error:
            return AssignResult(outcome=AssignOutcome.OTHER_ERROR, error=error)
        logger.info("Assigned process %s (%s)", process.processid, process.spec.funcname)
        return AssignResult(process=process)

    def append(  # noqa: PLR0913
        self,
        task_id: str,
        channel: str,
        sequence: int,
        payload: bytes | str,
        msgtype: MsgType | str = MsgType.DATA,
        inreplyto: int = 0,
    ) -> ChannelEntry:
        """Append one entry; the returned entry is the server's authoritative record."""

        reply = self._send(
            rpc.CHANNEL_APPEND,
            rpc.channel_append_payload(
                processid=task_id,
                name=channel,
                sequence=sequence,
                payload=to_payload_bytes(payload),
                msgtype=MsgType(msgtype).value,
                inreplyto=inreplyto,
            ),
        )
        return ChannelEntry.from_wire(reply)

    def read(
        self,
        task_id: str,
        channel: str,
        after_sequence: int = 0,
        limit: int = 0,
    ) -> list[ChannelEntry]:
        """Non-blocking fetch of entries with sequence > after_sequence, ascending."""

        if limit < 0:
            raise ValueError("limit must be >= 0")
        reply = self._send(
            rpc.CHANNEL_READ,
            rpc.channel_read_payload(
                processid=task_id,
                name=channel,
                afterseq=after_sequence,
                limit=limit,
            ),
        )
        if reply is None:
            return []
        if not isinstance(reply, list):
            raise ProtocolError(f"Channel read reply must be a list, got {type(reply).__name__}")

        entries = sorted(
            (
                entry
                for entry in (ChannelEntry.from_wire(item) for item in reply)
                if entry.sequence > after_sequence
            ),
            key=lambda entry: entry.sequence,
        )
        return entries[:limit] if limit > 0 else entries

    def subscribe(  # noqa: PLR0913
        self,
        task_id: str,
        channel: str,
        start_sequence: int,
        timeout_seconds: float,
        consumer: Consumer,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_limit: int = 0,
    ) -> SubscriptionResult:
        return subscribe(
            self,
            task_id=task_id,
            channel=channel,
            start_sequence=start_sequence,
            timeout_seconds=timeout_seconds,
            consumer=consumer,
            poll_interval_seconds=poll_interval_seconds,
            batch_limit=batch_limit,
        )

    def session(
        self,
        task_id: str,
        channel: str,
        *,
        counter: SequenceCounter | None = None,
        max_pending: int = 0,
    ) -> ChannelSession:
        """Ordered outbound session on one channel, owning its sequence counter."""

        return ChannelSession(
            self,
            task_id=task_id,
            channel=channel,
            counter=counter,
            max_pending=max_pending,
        )

    def submit(self, spec: FunctionSpec) -> Process:
        return Process.from_wire(self._send(rpc.SUBMIT_FUNCSPEC, {"spec": spec.to_wire()}))

    def close(self, process_id: str) -> None:
        self._send(rpc.CLOSE_SUCCESSFUL, {"processid": process_id})
        logger.info("Closed process %s", process_id)

    def fail(self, process_id: str, errors: Sequence[str] = ()) -> None:
        self._send(rpc.CLOSE_FAILED, {"processid": process_id, "errors": list(errors)})
        logger.info("Failed process %s", process_id)

    def get_process(self, process_id: str) -> Process:
        return Process.from_wire(self._send(rpc.GET_PROCESS, {"processid": process_id}))

    def set_output(self, process_id: str, output: Sequence[Any]) -> None:
        self._send(rpc.SET_OUTPUT, {"processid": process_id, "out": list(output)})

    def add_log(self, process_id: str, message: str) -> None:
        self._send(rpc.ADD_LOG, {"processid": process_id, "message": message})

    def get_processes(
        self,
        colony_name: str,
        state: TaskState,
        count: int = 100,
    ) -> list[Process]:
        """Up to `count` processes of `colony_name` in `state`, oldest submission first."""

        reply = self._send(
            rpc.GET_PROCESSES,
            {"colonyname": colony_name, "count": count, "state": int(state)},
        )
        return [Process.from_wire(item) for item in _list_reply(reply, rpc.GET_PROCESSES)]

    def get_logs(  # noqa: PLR0913
        self,
        colony_name: str,
        process_id: str = "",
        executor_name: str = "",
        count: int = 100,
        since: int = 0,
    ) -> list[LogEntry]:
        """Log lines newer than `since`, filtered by process or executor when given."""

        reply = self._send(
            rpc.GET_LOGS,
            {
                "colonyname": colony_name,
                "processid": process_id,
                "executorname": executor_name,
                "count": count,
                "since": since,
            },
        )
        return [LogEntry.from_wire(item) for item in _list_reply(reply, rpc.GET_LOGS)]

    def add_executor(self, executor: Executor) -> Executor:
        """Register an executor; it cannot be assigned work until approved."""

        registered = Executor.from_wire(
            self._send(rpc.ADD_EXECUTOR, {"executor": executor.to_wire()}),
        )
        logger.info("Registered executor %s in %s", registered.executorname, registered.colonyname)
        return registered

    def approve_executor(self, colony_name: str, executor_name: str) -> None:
        """Approve a registered executor. Must be signed by the colony owner key."""

        self._send(
            rpc.APPROVE_EXECUTOR,
            {"colonyname": colony_name, "executorname": executor_name},
        )
        logger.info("Approved executor %s in %s", executor_name, colony_name)

    def _send(self, payloadtype: str, payload: dict[str, Any]) -> Any:
        return self.transport.send(payloadtype, payload, self.prvkey)


def _list_reply(reply: Any, payloadtype: str) -> list[Any]:
    if reply is None:
        return []
    if not isinstance(reply, list):
        raise ProtocolError(f"Reply to {payloadtype} must be a list, got {type(reply).__name__}")
    return reply

