"""Domain models for processes, channel entries and protocol outcomes."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from colony_stream.errors import ColoniesError, ProtocolError


class TaskState(IntEnum):
    """Process lifecycle states, numbered as on the wire."""

    WAITING = 0
    RUNNING = 1
    SUCCESS = 2
    FAILED = 3

    @property
    def is_terminal(self) -> bool:
        return self in {TaskState.SUCCESS, TaskState.FAILED}


class MsgType(str, Enum):
    """Channel entry type tags. Passed through, never interpreted by the client."""

    NONE = ""
    DATA = "data"
    END = "end"
    ERROR = "error"


class AssignOutcome(str, Enum):
    """Non-task results of one assignment long-poll."""

    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    OTHER_ERROR = "other_error"


class SubscriptionOutcome(str, Enum):
    """Terminal outcomes of a channel subscription."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(slots=True)
class Conditions:
    """Placement conditions of a function spec."""

    colonyname: str
    executortype: str = ""
    executornames: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return {
            "colonyname": self.colonyname,
            "executortype": self.executortype,
            "executornames": list(self.executornames),
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any] | None) -> Conditions:
        data = data or {}
        return cls(
            colonyname=_str(data.get("colonyname")),
            executortype=_str(data.get("executortype")),
            executornames=_list(data.get("executornames")),
            dependencies=_list(data.get("dependencies")),
        )


@dataclass(slots=True)
class FunctionSpec:
    """Submission payload; `channels` must list every channel the process will use."""

    funcname: str
    conditions: Conditions
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    channels: list[str] = field(default_factory=list)
    nodename: str = ""
    priority: int = 0
    maxwaittime: int = -1
    maxexectime: int = -1
    maxretries: int = 0

    @classmethod
    def new(
        cls,
        funcname: str,
        *,
        colonyname: str,
        executortype: str = "",
        args: list[Any] | None = None,
        channels: list[str] | None = None,
    ) -> FunctionSpec:
        return cls(
            funcname=funcname,
            conditions=Conditions(colonyname=colonyname, executortype=executortype),
            args=list(args or []),
            channels=list(channels or []),
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "nodename": self.nodename,
            "funcname": self.funcname,
            "args": list(self.args),
            "kwargs": dict(self.kwargs),
            "priority": self.priority,
            "maxwaittime": self.maxwaittime,
            "maxexectime": self.maxexectime,
            "maxretries": self.maxretries,
            "conditions": self.conditions.to_wire(),
            "env": dict(self.env),
            "channels": list(self.channels),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any] | None) -> FunctionSpec:
        data = data or {}
        return cls(
            funcname=_str(data.get("funcname")),
            conditions=Conditions.from_wire(data.get("conditions")),
            args=_list(data.get("args")),
            kwargs=_dict(data.get("kwargs")),
            env=_dict(data.get("env")),
            channels=_list(data.get("channels")),
            nodename=_str(data.get("nodename")),
            priority=_int(data.get("priority")),
            maxwaittime=_int(data.get("maxwaittime"), default=-1),
            maxexectime=_int(data.get("maxexectime"), default=-1),
            maxretries=_int(data.get("maxretries")),
        )


@dataclass(slots=True)
class Process:
    """A unit of work as returned by the server."""

    processid: str
    spec: FunctionSpec
    state: TaskState = TaskState.WAITING
    assignedexecutorid: str = ""
    isassigned: bool = False
    initiatorid: str = ""
    submissiontime: str = ""
    starttime: str = ""
    endtime: str = ""
    input: list[Any] = field(default_factory=list)
    output: list[Any] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_wire(cls, data: Any) -> Process:
        if not isinstance(data, dict):
            raise ProtocolError(f"Malformed process reply: {data!r}")
        processid = _str(data.get("processid"))
        if not processid:
            raise ProtocolError("Process reply is missing processid.")
        try:
            state = TaskState(_int(data.get("state")))
        except ValueError as error:
            raise ProtocolError(f"Unknown process state: {data.get('state')!r}") from error
        return cls(
            processid=processid,
            spec=FunctionSpec.from_wire(data.get("spec")),
            state=state,
            assignedexecutorid=_str(data.get("assignedexecutorid")),
            isassigned=bool(data.get("isassigned") or False),
            initiatorid=_str(data.get("initiatorid")),
            submissiontime=_str(data.get("submissiontime")),
            starttime=_str(data.get("starttime")),
            endtime=_str(data.get("endtime")),
            input=_list(data.get("in", data.get("input"))),
            output=_list(data.get("out", data.get("output"))),
            errors=_list(data.get("errors")),
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "processid": self.processid,
            "assignedexecutorid": self.assignedexecutorid,
            "isassigned": self.isassigned,
            "initiatorid": self.initiatorid,
            "state": int(self.state),
            "submissiontime": self.submissiontime,
            "starttime": self.starttime,
            "endtime": self.endtime,
            "spec": self.spec.to_wire(),
            "in": list(self.input),
            "out": list(self.output),
            "errors": list(self.errors),
        }


@dataclass(slots=True, frozen=True)
class ChannelEntry:
    """One message of a per-process channel log."""

    sequence: int
    payload: bytes = b""
    msgtype: str = MsgType.NONE.value
    inreplyto: int = 0
    timestamp: str = ""
    senderid: str = ""

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    @property
    def is_end(self) -> bool:
        return self.msgtype == MsgType.END.value

    @property
    def is_error(self) -> bool:
        return self.msgtype == MsgType.ERROR.value

    def to_wire(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "type": self.msgtype,
            "inreplyto": self.inreplyto,
            "timestamp": self.timestamp,
            "senderid": self.senderid,
        }

    @classmethod
    def from_wire(cls, data: Any) -> ChannelEntry:
        if not isinstance(data, dict):
            raise ProtocolError(f"Malformed channel entry: {data!r}")
        if "sequence" not in data:
            raise ProtocolError("Channel entry is missing sequence.")
        return cls(
            sequence=_int(data.get("sequence")),
            payload=_entry_payload(data),
            msgtype=_str(data.get("type", data.get("msgtype"))),
            inreplyto=_int(data.get("inreplyto")),
            timestamp=_str(data.get("timestamp")),
            senderid=_str(data.get("senderid")),
        )


class ExecutorState(IntEnum):
    """Executor registration states, numbered as on the wire."""

    PENDING = 0
    APPROVED = 1
    REJECTED = 2


@dataclass(slots=True)
class Executor:
    """A registered executor identity within a colony."""

    executorname: str
    executorid: str
    executortype: str
    colonyname: str
    state: ExecutorState = ExecutorState.PENDING

    def to_wire(self) -> dict[str, Any]:
        return {
            "executorname": self.executorname,
            "executorid": self.executorid,
            "executortype": self.executortype,
            "colonyname": self.colonyname,
            "state": int(self.state),
        }

    @classmethod
    def from_wire(cls, data: Any) -> Executor:
        if not isinstance(data, dict):
            raise ProtocolError(f"Malformed executor reply: {data!r}")
        try:
            state = ExecutorState(_int(data.get("state")))
        except ValueError as error:
            raise ProtocolError(f"Unknown executor state: {data.get('state')!r}") from error
        return cls(
            executorname=_str(data.get("executorname")),
            executorid=_str(data.get("executorid")),
            executortype=_str(data.get("executortype")),
            colonyname=_str(data.get("colonyname")),
            state=state,
        )


@dataclass(slots=True, frozen=True)
class LogEntry:
    """One process log line; `timestamp` is server time in nanoseconds."""

    processid: str
    colonyname: str
    executorname: str
    message: str
    timestamp: int = 0

    def to_wire(self) -> dict[str, Any]:
        return {
            "processid": self.processid,
            "colonyname": self.colonyname,
            "executorname": self.executorname,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_wire(cls, data: Any) -> LogEntry:
        if not isinstance(data, dict):
            raise ProtocolError(f"Malformed log entry: {data!r}")
        return cls(
            processid=_str(data.get("processid")),
            colonyname=_str(data.get("colonyname")),
            executorname=_str(data.get("executorname")),
            message=_str(data.get("message")),
            timestamp=_int(data.get("timestamp")),
        )


@dataclass(slots=True)
class AssignResult:
    """Either an assigned process or a distinguished non-task outcome."""

    process: Process | None = None
    outcome: AssignOutcome | None = None
    error: ColoniesError | None = None

    @property
    def assigned(self) -> bool:
        return self.process is not None


@dataclass(slots=True)
class SubscriptionResult:
    """Final state of one subscription invocation."""

    outcome: SubscriptionOutcome
    cursor: int
    batches: int = 0
    delivered: int = 0
    error: ColoniesError | None = None


def to_payload_bytes(payload: bytes | str) -> bytes:
    """Normalize user payloads to bytes, UTF-8 encoding text."""

    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    raise TypeError(f"Channel payload must be bytes or str, got {type(payload).__name__}")


def _entry_payload(data: dict[str, Any]) -> bytes:
    encoded = data.get("payload")
    if encoded is not None:
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, TypeError) as error:
            raise ProtocolError("Channel entry payload is not valid base64.") from error
    legacy = data.get("data")
    if legacy is None:
        return b""
    return str(legacy).encode("utf-8")


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ProtocolError(f"Expected integer field, got {value!r}") from error


def _list(value: Any) -> list[Any]:
    return [] if value is None else list(value)


def _dict(value: Any) -> dict[str, Any]:
    return {} if value is None else dict(value)
