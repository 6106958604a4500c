"""Outbound side of a channel: one sequence counter, one ordered sender."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Protocol

from colony_stream.models import ChannelEntry, MsgType, to_payload_bytes

logger = logging.getLogger(__name__)


class ChannelAppender(Protocol):
    """Anything that can append one entry to a channel."""

    def append(  # noqa: PLR0913
        self,
        task_id: str,
        channel: str,
        sequence: int,
        payload: bytes | str,
        msgtype: MsgType | str = MsgType.DATA,
        inreplyto: int = 0,
    ) -> ChannelEntry:
        """Append and return the stored entry."""


class SequenceCounter:
    """Allocator for caller-assigned sequence numbers.

    Two parties writing one channel partition the space with `step=2`:
    `SequenceCounter(start=1, step=2)` yields odd numbers,
    `SequenceCounter(start=2, step=2)` even ones.
    """

    def __init__(self, *, start: int = 1, step: int = 1) -> None:
        if step <= 0:
            raise ValueError("step must be > 0")
        self._next = start
        self._step = step
        self._lock = threading.Lock()

    @property
    def peek(self) -> int:
        with self._lock:
            return self._next

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += self._step
            return value


@dataclass(slots=True, frozen=True)
class OutboundMessage:
    """A message waiting for its sequence number."""

    payload: bytes
    msgtype: str = MsgType.DATA.value
    inreplyto: int = 0


class ChannelSession:
    """Sends messages to one channel in a single, well-defined order.

    Sequence numbers are assigned at send time while holding the session's
    send lock, so append order and sequence order always agree. `enqueue`
    only buffers (blocking while the bounded queue is full); `drain` or
    `run_sender` performs the appends, on whichever thread the caller picks.
    A failed append propagates and its message is not re-queued.
    """

    def __init__(
        self,
        appender: ChannelAppender,
        *,
        task_id: str,
        channel: str,
        counter: SequenceCounter | None = None,
        max_pending: int = 0,
    ) -> None:
        self.appender = appender
        self.task_id = task_id
        self.channel = channel
        self.counter = counter or SequenceCounter()
        self._pending: queue.Queue[OutboundMessage] = queue.Queue(maxsize=max_pending)
        self._send_lock = threading.Lock()
        self.last_sent: ChannelEntry | None = None

    @property
    def pending(self) -> int:
        return self._pending.qsize()

    def send(
        self,
        payload: bytes | str,
        msgtype: MsgType | str = MsgType.DATA,
        inreplyto: int = 0,
    ) -> ChannelEntry:
        """Append immediately, ahead of anything still queued."""

        return self._send(
            OutboundMessage(
                payload=to_payload_bytes(payload),
                msgtype=MsgType(msgtype).value,
                inreplyto=inreplyto,
            ),
        )

    def end(self, payload: bytes | str = b"") -> ChannelEntry:
        return self.send(payload, MsgType.END)

    def error(self, payload: bytes | str) -> ChannelEntry:
        return self.send(payload, MsgType.ERROR)

    def enqueue(
        self,
        payload: bytes | str,
        msgtype: MsgType | str = MsgType.DATA,
        inreplyto: int = 0,
        *,
        timeout: float | None = None,
    ) -> None:
        """Buffer a message for the sender; raises `queue.Full` after `timeout`."""

        self._pending.put(
            OutboundMessage(
                payload=to_payload_bytes(payload),
                msgtype=MsgType(msgtype).value,
                inreplyto=inreplyto,
            ),
            timeout=timeout,
        )

    def drain(self) -> list[ChannelEntry]:
        """Send everything currently queued, in FIFO order."""

        sent: list[ChannelEntry] = []
        while True:
            try:
                message = self._pending.get_nowait()
            except queue.Empty:
                return sent
            try:
                sent.append(self._send(message))
            finally:
                self._pending.task_done()

    def run_sender(self, stop: threading.Event, *, idle_wait_seconds: float = 0.1) -> int:
        """Send queued messages until `stop` is set and the queue is empty."""

        count = 0
        while True:
            try:
                message = self._pending.get(timeout=idle_wait_seconds)
            except queue.Empty:
                if stop.is_set():
                    return count
                continue
            try:
                self._send(message)
                count += 1
            finally:
                self._pending.task_done()

    def _send(self, message: OutboundMessage) -> ChannelEntry:
        with self._send_lock:
            sequence = self.counter.next()
            entry = self.appender.append(
                self.task_id,
                self.channel,
                sequence,
                message.payload,
                message.msgtype,
                message.inreplyto,
            )
            self.last_sent = entry
        logger.debug(
            "Sent %s@%d on %s/%s",
            entry.msgtype or "-",
            entry.sequence,
            self.task_id,
            self.channel,
        )
        return entry
