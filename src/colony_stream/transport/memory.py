"""In-process colony that honors the server contract, for tests and local demos."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from colony_stream import crypto, rpc
from colony_stream.errors import AssignTimeout, AuthError, ColoniesError, ProtocolError
from colony_stream.models import (
    ChannelEntry,
    Executor,
    ExecutorState,
    FunctionSpec,
    LogEntry,
    Process,
    TaskState,
)


@dataclass(slots=True)
class _ProcessRecord:
    process: Process
    channels: dict[str, list[ChannelEntry]] = field(default_factory=dict)
    logs: list[LogEntry] = field(default_factory=list)


class InMemoryColony:
    """Transport that executes operations against an in-memory queue and channel log.

    Assignment is FIFO over WAITING processes and long-polls on a condition
    variable. Channels are created at assignment from the declared names and
    dropped when the process closes or fails, like the real server.

    With `require_approval` only approved executors of the colony get work.
    `owner_id` restricts executor approval to that identity.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        require_approval: bool = False,
        owner_id: str | None = None,
    ) -> None:
        self._clock = clock
        self._require_approval = require_approval
        self._owner_id = owner_id
        self._lock = threading.Lock()
        self._work_available = threading.Condition(self._lock)
        self._records: dict[str, _ProcessRecord] = {}
        self._queue: list[str] = []
        self._executors: dict[tuple[str, str], Executor] = {}
        self._identities: dict[str, str] = {}
        self._injected: dict[str, list[ColoniesError]] = {}
        self._last_log_time = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._handlers: dict[str, Callable[[dict[str, Any], str], Any]] = {
            rpc.SUBMIT_FUNCSPEC: self._submit,
            rpc.ASSIGN_PROCESS: self._assign,
            rpc.CLOSE_SUCCESSFUL: self._close,
            rpc.CLOSE_FAILED: self._fail,
            rpc.GET_PROCESS: self._get_process,
            rpc.GET_PROCESSES: self._get_processes,
            rpc.SET_OUTPUT: self._set_output,
            rpc.ADD_LOG: self._add_log,
            rpc.GET_LOGS: self._get_logs,
            rpc.ADD_EXECUTOR: self._add_executor,
            rpc.APPROVE_EXECUTOR: self._approve_executor,
            rpc.CHANNEL_APPEND: self._channel_append,
            rpc.CHANNEL_READ: self._channel_read,
        }

    def send(self, payloadtype: str, payload: dict[str, Any], prvkey: str) -> Any:
        handler = self._handlers.get(payloadtype)
        if handler is None:
            raise ProtocolError(f"Unsupported payload type: {payloadtype}")
        with self._lock:
            self.calls.append((payloadtype, dict(payload)))
            pending = self._injected.get(payloadtype)
            if pending:
                raise pending.pop(0)
            senderid = self._identity(prvkey)
        return handler(payload, senderid)

    def close(self) -> None:
        with self._lock:
            self._work_available.notify_all()

    def inject_failure(self, payloadtype: str, error: ColoniesError) -> None:
        """Make the next `payloadtype` request raise `error` instead of executing."""

        with self._lock:
            self._injected.setdefault(payloadtype, []).append(error)

    def call_names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    def channel_names(self, processid: str) -> list[str]:
        with self._lock:
            record = self._records.get(processid)
            return sorted(record.channels) if record else []

    def logs(self, processid: str) -> list[str]:
        with self._lock:
            record = self._records.get(processid)
            return [entry.message for entry in record.logs] if record else []

    def executors(self, colonyname: str) -> list[Executor]:
        with self._lock:
            return [
                executor
                for (colony, _), executor in self._executors.items()
                if colony == colonyname
            ]

    def _identity(self, prvkey: str) -> str:
        identity = self._identities.get(prvkey)
        if identity is None:
            identity = crypto.gen_id(prvkey)
            self._identities[prvkey] = identity
        return identity

    def _submit(self, payload: dict[str, Any], senderid: str) -> dict[str, Any]:
        spec = FunctionSpec.from_wire(payload.get("spec"))
        process = Process(
            processid=uuid4().hex,
            spec=spec,
            state=TaskState.WAITING,
            initiatorid=senderid,
            submissiontime=_now(),
        )
        with self._lock:
            self._records[process.processid] = _ProcessRecord(process=process)
            self._queue.append(process.processid)
            self._work_available.notify_all()
            return process.to_wire()

    def _assign(self, payload: dict[str, Any], senderid: str) -> dict[str, Any]:
        colonyname = str(payload.get("colonyname") or "")
        timeout = max(0, int(payload.get("timeout") or 0))
        deadline = self._clock() + timeout
        with self._lock:
            if self._require_approval and self._executor_by_id(colonyname, senderid) is None:
                raise AuthError(f"Access denied, not an approved executor in {colonyname}")
            while True:
                record = self._pop_waiting(colonyname)
                if record is not None:
                    break
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise AssignTimeout("Failed to assign process, timeout")
                self._work_available.wait(timeout=remaining)

            process = record.process
            process.state = TaskState.RUNNING
            process.isassigned = True
            process.assignedexecutorid = senderid
            process.starttime = _now()
            record.channels = {name: [] for name in process.spec.channels}
            return process.to_wire()

    def _pop_waiting(self, colonyname: str) -> _ProcessRecord | None:
        for index, processid in enumerate(self._queue):
            record = self._records[processid]
            if record.process.spec.conditions.colonyname == colonyname:
                del self._queue[index]
                return record
        return None

    def _close(self, payload: dict[str, Any], _: str) -> None:
        self._finish(str(payload.get("processid") or ""), TaskState.SUCCESS, errors=())

    def _fail(self, payload: dict[str, Any], _: str) -> None:
        errors = tuple(str(item) for item in payload.get("errors") or ())
        self._finish(str(payload.get("processid") or ""), TaskState.FAILED, errors=errors)

    def _finish(self, processid: str, state: TaskState, *, errors: tuple[str, ...]) -> None:
        with self._lock:
            record = self._running_record(processid)
            record.process.state = state
            record.process.endtime = _now()
            record.process.errors.extend(errors)
            record.channels.clear()

    def _get_process(self, payload: dict[str, Any], _: str) -> dict[str, Any]:
        processid = str(payload.get("processid") or "")
        with self._lock:
            record = self._records.get(processid)
            if record is None:
                raise ProtocolError(f"Process with id {processid} not found")
            return record.process.to_wire()

    def _get_processes(self, payload: dict[str, Any], _: str) -> list[dict[str, Any]]:
        colonyname = str(payload.get("colonyname") or "")
        count = int(payload.get("count") or 0)
        try:
            state = TaskState(int(payload.get("state") or 0))
        except ValueError as error:
            raise ProtocolError(f"Invalid process state: {payload.get('state')!r}") from error
        with self._lock:
            matching = [
                record.process.to_wire()
                for record in self._records.values()
                if record.process.spec.conditions.colonyname == colonyname
                and record.process.state == state
            ]
        return matching[:count] if count > 0 else matching

    def _set_output(self, payload: dict[str, Any], _: str) -> None:
        with self._lock:
            record = self._running_record(str(payload.get("processid") or ""))
            record.process.output = list(payload.get("out") or [])

    def _add_log(self, payload: dict[str, Any], senderid: str) -> None:
        with self._lock:
            record = self._running_record(str(payload.get("processid") or ""))
            colonyname = record.process.spec.conditions.colonyname
            executor = self._executor_by_id(colonyname, senderid, approved_only=False)
            self._last_log_time = max(time.time_ns(), self._last_log_time + 1)
            record.logs.append(
                LogEntry(
                    processid=record.process.processid,
                    colonyname=colonyname,
                    executorname=executor.executorname if executor else "",
                    message=str(payload.get("message") or ""),
                    timestamp=self._last_log_time,
                ),
            )

    def _get_logs(self, payload: dict[str, Any], _: str) -> list[dict[str, Any]]:
        colonyname = str(payload.get("colonyname") or "")
        processid = str(payload.get("processid") or "")
        executorname = str(payload.get("executorname") or "")
        count = int(payload.get("count") or 0)
        since = int(payload.get("since") or 0)
        with self._lock:
            if processid and processid not in self._records:
                raise ProtocolError(f"Process with id {processid} not found")
            entries = sorted(
                (
                    entry
                    for record in self._records.values()
                    for entry in record.logs
                    if entry.colonyname == colonyname
                    and entry.timestamp > since
                    and (not processid or entry.processid == processid)
                    and (not executorname or entry.executorname == executorname)
                ),
                key=lambda entry: entry.timestamp,
            )
        if count > 0:
            entries = entries[:count]
        return [entry.to_wire() for entry in entries]

    def _add_executor(self, payload: dict[str, Any], senderid: str) -> dict[str, Any]:
        executor = Executor.from_wire(payload.get("executor"))
        if not executor.executorname or not executor.colonyname:
            raise ProtocolError("Executor name and colony name are required")
        if executor.executorid and executor.executorid != senderid:
            raise AuthError("Access denied, executor id does not match the signing key")
        executor.executorid = senderid
        executor.state = ExecutorState.PENDING
        key = (executor.colonyname, executor.executorname)
        with self._lock:
            if key in self._executors:
                raise ProtocolError(
                    f"Executor with name {executor.executorname} already exists "
                    f"in colony {executor.colonyname}",
                )
            self._executors[key] = executor
            return executor.to_wire()

    def _approve_executor(self, payload: dict[str, Any], senderid: str) -> None:
        key = (str(payload.get("colonyname") or ""), str(payload.get("executorname") or ""))
        if self._owner_id is not None and senderid != self._owner_id:
            raise AuthError(f"Access denied, not the owner of colony {key[0]}")
        with self._lock:
            executor = self._executors.get(key)
            if executor is None:
                raise ProtocolError(f"Executor with name {key[1]} not found in colony {key[0]}")
            executor.state = ExecutorState.APPROVED

    def _executor_by_id(
        self,
        colonyname: str,
        executorid: str,
        *,
        approved_only: bool = True,
    ) -> Executor | None:
        for (colony, _), executor in self._executors.items():
            if colony != colonyname or executor.executorid != executorid:
                continue
            if not approved_only or executor.state == ExecutorState.APPROVED:
                return executor
        return None

    def _channel_append(self, payload: dict[str, Any], senderid: str) -> dict[str, Any]:
        entry = ChannelEntry.from_wire(
            {
                "sequence": payload.get("sequence"),
                "payload": payload.get("payload"),
                "type": payload.get("payloadtype"),
                "inreplyto": payload.get("inreplyto"),
                "timestamp": _now(),
                "senderid": senderid,
            },
        )
        with self._lock:
            log = self._channel(str(payload.get("processid") or ""), str(payload.get("name") or ""))
            log.append(entry)
            return entry.to_wire()

    def _channel_read(self, payload: dict[str, Any], _: str) -> list[dict[str, Any]]:
        afterseq = int(payload.get("afterseq") or 0)
        limit = int(payload.get("limit") or 0)
        with self._lock:
            log = self._channel(str(payload.get("processid") or ""), str(payload.get("name") or ""))
            entries = sorted(
                (entry for entry in log if entry.sequence > afterseq),
                key=lambda entry: entry.sequence,
            )
        if limit > 0:
            entries = entries[:limit]
        return [entry.to_wire() for entry in entries]

    def _running_record(self, processid: str) -> _ProcessRecord:
        record = self._records.get(processid)
        if record is None:
            raise ProtocolError(f"Process with id {processid} not found")
        if record.process.state != TaskState.RUNNING:
            raise ProtocolError(f"Process with id {processid} is not running")
        return record

    def _channel(self, processid: str, name: str) -> list[ChannelEntry]:
        record = self._running_record(processid)
        log = record.channels.get(name)
        if log is None:
            raise ProtocolError(f"Channel {name!r} not found for process {processid}")
        return log


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()
