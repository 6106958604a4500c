"""Two-phase completion handshake: end -> ack -> close.

A process's channels are deleted the moment it closes, so a producer that
closes right after writing `end` can lose the tail of its stream. Instead the
producer writes `end` on the data channel, waits for the consumer's ack on a
dedicated sync channel, and only then closes (or fails) the process.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from colony_stream.channels.session import ChannelSession, SequenceCounter
from colony_stream.channels.subscriber import DEFAULT_POLL_INTERVAL_SECONDS, subscribe
from colony_stream.models import (
    ChannelEntry,
    MsgType,
    SubscriptionOutcome,
    SubscriptionResult,
)

if TYPE_CHECKING:
    from colony_stream.client import ColoniesClient

logger = logging.getLogger(__name__)

DEFAULT_DATA_CHANNEL = "output"
DEFAULT_SYNC_CHANNEL = "sync"
DEFAULT_ACK_TIMEOUT_SECONDS = 30.0
ACK_PAYLOAD = b"ack"


class AckTimeoutPolicy(str, Enum):
    """What the producer does when no ack arrives in time."""

    FORCE_CLOSE = "force_close"
    FORCE_FAIL = "force_fail"
    LEAVE_OPEN = "leave_open"


def is_ack(entry: ChannelEntry) -> bool:
    return entry.payload == ACK_PAYLOAD and entry.msgtype in {
        MsgType.NONE.value,
        MsgType.DATA.value,
    }


@dataclass(slots=True)
class HandshakeResult:
    """Producer-side outcome of the handshake."""

    acknowledged: bool
    closed: bool
    failed: bool
    end_entry: ChannelEntry
    ack_entry: ChannelEntry | None
    wait: SubscriptionResult

    @property
    def left_open(self) -> bool:
        return not (self.closed or self.failed)


@dataclass(slots=True)
class ConsumeResult:
    """Consumer-side outcome: what was observed and whether it was acked."""

    subscription: SubscriptionResult
    end_entry: ChannelEntry | None
    ack_entry: ChannelEntry | None

    @property
    def acknowledged(self) -> bool:
        return self.ack_entry is not None


class ProducerHandshake:
    """Finishes a producing process without racing channel deletion."""

    def __init__(  # noqa: PLR0913
        self,
        client: ColoniesClient,
        *,
        task_id: str,
        sync_channel: str = DEFAULT_SYNC_CHANNEL,
        ack_timeout_seconds: float = DEFAULT_ACK_TIMEOUT_SECONDS,
        on_timeout: AckTimeoutPolicy = AckTimeoutPolicy.LEAVE_OPEN,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        ack_predicate: Callable[[ChannelEntry], bool] = is_ack,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.task_id = task_id
        self.sync_channel = sync_channel
        self.ack_timeout_seconds = ack_timeout_seconds
        self.on_timeout = on_timeout
        self.poll_interval_seconds = poll_interval_seconds
        self.ack_predicate = ack_predicate
        self._clock = clock
        self._sleep = sleep

    def finish(
        self,
        data: ChannelSession,
        *,
        failed: bool = False,
        errors: Sequence[str] = (),
        end_payload: bytes | str = b"",
    ) -> HandshakeResult:
        """Flush `data`, write `end`, wait for the ack, then close or fail the process.

        Raises the read error if the sync channel cannot be read while
        waiting; the process is left open in that case.
        """

        data.drain()
        end_entry = data.end(end_payload)
        ack_entry, wait = self.wait_for_ack()

        if wait.outcome == SubscriptionOutcome.FAILED and wait.error is not None:
            raise wait.error

        if ack_entry is not None:
            self._finalize(failed=failed, errors=errors)
            return HandshakeResult(
                acknowledged=True,
                closed=not failed,
                failed=failed,
                end_entry=end_entry,
                ack_entry=ack_entry,
                wait=wait,
            )

        return self._apply_timeout_policy(
            failed=failed,
            errors=errors,
            end_entry=end_entry,
            wait=wait,
        )

    def wait_for_ack(self) -> tuple[ChannelEntry | None, SubscriptionResult]:
        """Subscribe to the sync channel until an ack shows up or the wait times out."""

        found: list[ChannelEntry] = []

        def _consumer(batch: list[ChannelEntry]) -> bool:
            for entry in batch:
                if self.ack_predicate(entry):
                    found.append(entry)
                    return False
            return True

        wait = subscribe(
            self.client,
            task_id=self.task_id,
            channel=self.sync_channel,
            start_sequence=0,
            timeout_seconds=self.ack_timeout_seconds,
            consumer=_consumer,
            poll_interval_seconds=self.poll_interval_seconds,
            clock=self._clock,
            sleep=self._sleep,
        )
        return (found[0] if found else None), wait

    def _finalize(self, *, failed: bool, errors: Sequence[str]) -> None:
        if failed:
            self.client.fail(self.task_id, errors)
        else:
            self.client.close(self.task_id)

    def _apply_timeout_policy(
        self,
        *,
        failed: bool,
        errors: Sequence[str],
        end_entry: ChannelEntry,
        wait: SubscriptionResult,
    ) -> HandshakeResult:
        if self.on_timeout == AckTimeoutPolicy.LEAVE_OPEN:
            logger.warning(
                "No ack on %s/%s within %.1fs; leaving process running",
                self.task_id,
                self.sync_channel,
                self.ack_timeout_seconds,
            )
            return HandshakeResult(
                acknowledged=False,
                closed=False,
                failed=False,
                end_entry=end_entry,
                ack_entry=None,
                wait=wait,
            )

        force_fail = failed or self.on_timeout == AckTimeoutPolicy.FORCE_FAIL
        logger.warning(
            "No ack on %s/%s within %.1fs; forcing %s, unread entries may be lost",
            self.task_id,
            self.sync_channel,
            self.ack_timeout_seconds,
            "fail" if force_fail else "close",
        )
        if force_fail:
            self.client.fail(self.task_id, [*errors, "acknowledgment timeout"])
        else:
            self.client.close(self.task_id)
        return HandshakeResult(
            acknowledged=False,
            closed=not force_fail,
            failed=force_fail,
            end_entry=end_entry,
            ack_entry=None,
            wait=wait,
        )


class ConsumerHandshake:
    """Reads a data channel to its `end` entry and acknowledges it on the sync channel."""

    def __init__(  # noqa: PLR0913
        self,
        client: ColoniesClient,
        *,
        task_id: str,
        data_channel: str = DEFAULT_DATA_CHANNEL,
        sync_channel: str = DEFAULT_SYNC_CHANNEL,
        counter: SequenceCounter | None = None,
        ack_payload: bytes = ACK_PAYLOAD,
    ) -> None:
        self.client = client
        self.task_id = task_id
        self.data_channel = data_channel
        self.ack_payload = ack_payload
        self.sync = ChannelSession(
            client,
            task_id=task_id,
            channel=sync_channel,
            counter=counter,
        )

    def consume(
        self,
        on_batch: Callable[[list[ChannelEntry]], None],
        *,
        start_sequence: int = 0,
        timeout_seconds: float = DEFAULT_ACK_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> ConsumeResult:
        """Forward batches to `on_batch`; ack and stop on the first `end` entry."""

        observed: list[ChannelEntry] = []

        def _consumer(batch: list[ChannelEntry]) -> bool:
            on_batch(batch)
            end_entry = next((entry for entry in batch if entry.is_end), None)
            if end_entry is None:
                return True
            observed.append(end_entry)
            return False

        subscription = self.client.subscribe(
            self.task_id,
            self.data_channel,
            start_sequence,
            timeout_seconds,
            _consumer,
            poll_interval_seconds=poll_interval_seconds,
        )
        if not observed:
            return ConsumeResult(subscription=subscription, end_entry=None, ack_entry=None)

        ack_entry = self.acknowledge_end(observed[0])
        return ConsumeResult(subscription=subscription, end_entry=observed[0], ack_entry=ack_entry)

    def acknowledge_end(self, end_entry: ChannelEntry) -> ChannelEntry:
        """Append the ack for `end_entry` on the sync channel."""

        return self.sync.send(self.ack_payload, MsgType.DATA, inreplyto=end_entry.sequence)
