"""Polling subscription over a channel log with cooperative cancellation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from colony_stream.errors import ColoniesError
from colony_stream.models import ChannelEntry, SubscriptionOutcome, SubscriptionResult

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.5

Consumer = Callable[[list[ChannelEntry]], bool]
"""Receives each non-empty batch; returns False to stop the subscription."""


class ChannelReader(Protocol):
    """Anything that can do a non-blocking channel read."""

    def read(
        self,
        task_id: str,
        channel: str,
        after_sequence: int = 0,
        limit: int = 0,
    ) -> list[ChannelEntry]:
        """Return entries with sequence > after_sequence in ascending order."""


def subscribe(  # noqa: PLR0913
    reader: ChannelReader,
    *,
    task_id: str,
    channel: str,
    start_sequence: int,
    timeout_seconds: float,
    consumer: Consumer,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    batch_limit: int = 0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> SubscriptionResult:
    """Deliver every entry after `start_sequence` to `consumer`, once and in order.

    The cursor advances to the highest sequence of each delivered batch even
    when the consumer asks to stop, so a stop still commits progress. The
    timeout is an idle timeout: it restarts on every non-empty batch. A read
    error ends the subscription with FAILED; nothing is retried. Exceptions
    raised by the consumer propagate to the caller.
    """

    cursor = start_sequence
    batches = 0
    delivered = 0
    idle_since = clock()

    while True:
        try:
            entries = reader.read(task_id, channel, after_sequence=cursor, limit=batch_limit)
        except ColoniesError as error:
            logger.warning(
                "Subscription to %s/%s failed at cursor %d: %s",
                task_id,
                channel,
                cursor,
                error,
            )
            return SubscriptionResult(
                outcome=SubscriptionOutcome.FAILED,
                cursor=cursor,
                batches=batches,
                delivered=delivered,
                error=error,
            )

        batch = sorted(
            (entry for entry in entries if entry.sequence > cursor),
            key=lambda entry: entry.sequence,
        )
        if batch:
            keep_going = consumer(batch)
            cursor = batch[-1].sequence
            batches += 1
            delivered += len(batch)
            if not keep_going:
                logger.debug(
                    "Subscription to %s/%s stopped by consumer at %d",
                    task_id,
                    channel,
                    cursor,
                )
                return SubscriptionResult(
                    outcome=SubscriptionOutcome.COMPLETED,
                    cursor=cursor,
                    batches=batches,
                    delivered=delivered,
                )
            idle_since = clock()
            continue

        idle = clock() - idle_since
        if idle >= timeout_seconds:
            logger.debug(
                "Subscription to %s/%s idle for %.1fs, giving up at %d",
                task_id,
                channel,
                idle,
                cursor,
            )
            return SubscriptionResult(
                outcome=SubscriptionOutcome.TIMED_OUT,
                cursor=cursor,
                batches=batches,
                delivered=delivered,
            )
        sleep(max(0.0, min(poll_interval_seconds, timeout_seconds - idle)))
