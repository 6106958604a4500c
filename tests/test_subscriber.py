from __future__ import annotations

import threading

import allure
import pytest

from colony_stream.channels.subscriber import subscribe
from colony_stream.client import ColoniesClient
from colony_stream.errors import ProtocolError
from colony_stream.models import ChannelEntry, MsgType, SubscriptionOutcome

pytestmark = [
    allure.epic("Channels"),
    allure.feature("Subscriber"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedReader:
    """Returns the next scripted batch (or raises it) on each read."""

    def __init__(self, script: list) -> None:
        self.script = list(script)
        self.cursors: list[int] = []

    def read(self, task_id, channel, after_sequence=0, limit=0):
        self.cursors.append(after_sequence)
        step = self.script.pop(0) if self.script else []
        if isinstance(step, Exception):
            raise step
        return list(step)


def _entries(*sequences: int, end: int | None = None) -> list[ChannelEntry]:
    return [
        ChannelEntry(
            sequence=sequence,
            payload=str(sequence).encode(),
            msgtype=MsgType.END.value if sequence == end else MsgType.DATA.value,
        )
        for sequence in sequences
    ]


def _run(reader, consumer, *, start=0, timeout=1.0, poll=0.25, clock=None):
    clock = clock or FakeClock()
    return subscribe(
        reader,
        task_id="p1",
        channel="output",
        start_sequence=start,
        timeout_seconds=timeout,
        consumer=consumer,
        poll_interval_seconds=poll,
        clock=clock,
        sleep=clock.sleep,
    )


def test_delivers_each_entry_once_in_order_and_advances_cursor() -> None:
    reader = ScriptedReader([_entries(2, 1), [], _entries(3, 4)])
    delivered: list[int] = []

    result = _run(
        reader,
        lambda batch: delivered.extend(entry.sequence for entry in batch) or True,
        timeout=0.5,
    )

    assert delivered == [1, 2, 3, 4]
    assert reader.cursors[:3] == [0, 2, 2]
    assert reader.cursors[3] == 4
    assert result.outcome == SubscriptionOutcome.TIMED_OUT
    assert result.cursor == 4
    assert result.batches == 2
    assert result.delivered == 4


def test_entries_at_or_before_cursor_are_never_redelivered() -> None:
    reader = ScriptedReader([_entries(5, 6, 7)])
    delivered: list[int] = []

    result = _run(
        reader,
        lambda batch: delivered.extend(entry.sequence for entry in batch) or True,
        start=6,
        timeout=0,
    )

    assert delivered == [7]
    assert result.cursor == 7


def test_consumer_stop_completes_and_commits_cursor() -> None:
    reader = ScriptedReader([_entries(1, 2, end=2), _entries(3)])
    batches: list[list[int]] = []

    def consumer(batch: list[ChannelEntry]) -> bool:
        batches.append([entry.sequence for entry in batch])
        return not any(entry.is_end for entry in batch)

    result = _run(reader, consumer)

    assert result.outcome == SubscriptionOutcome.COMPLETED
    assert result.cursor == 2
    assert batches == [[1, 2]]
    assert len(reader.cursors) == 1


def test_times_out_after_idle_period_without_oversleeping() -> None:
    clock = FakeClock()
    reader = ScriptedReader([])

    result = _run(reader, lambda _: True, timeout=1.0, poll=0.375, clock=clock)

    assert result.outcome == SubscriptionOutcome.TIMED_OUT
    assert result.cursor == 0
    assert result.batches == 0
    assert clock.sleeps == [0.375, 0.375, 0.25]
    assert clock.now == 1.0


def test_idle_timer_restarts_after_each_batch() -> None:
    clock = FakeClock()
    reader = ScriptedReader([[], [], _entries(1), [], [], []])

    result = _run(reader, lambda _: True, timeout=1.0, poll=0.5, clock=clock)

    assert result.outcome == SubscriptionOutcome.TIMED_OUT
    assert result.cursor == 1
    assert clock.now == 2.0


def test_zero_timeout_reads_once() -> None:
    reader = ScriptedReader([])

    result = _run(reader, lambda _: True, timeout=0)

    assert result.outcome == SubscriptionOutcome.TIMED_OUT
    assert len(reader.cursors) == 1


def test_read_error_fails_without_retry_and_keeps_progress() -> None:
    error = ProtocolError("Channel output not found")
    reader = ScriptedReader([_entries(1), error, _entries(2)])

    result = _run(reader, lambda _: True)

    assert result.outcome == SubscriptionOutcome.FAILED
    assert result.error is error
    assert result.cursor == 1
    assert reader.cursors == [0, 1]


def test_subscription_follows_concurrent_appends(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("output")
    received: list[str] = []

    def produce() -> None:
        for sequence in range(1, 4):
            executor_client.append(process.processid, "output", sequence, f"chunk-{sequence}")
        executor_client.append(process.processid, "output", 4, b"", MsgType.END)

    def consumer(batch: list[ChannelEntry]) -> bool:
        received.extend(entry.text for entry in batch if not entry.is_end)
        return not any(entry.is_end for entry in batch)

    producer = threading.Thread(target=produce)
    producer.start()
    result = user_client.subscribe(
        process.processid,
        "output",
        0,
        5.0,
        consumer,
        poll_interval_seconds=0.01,
    )
    producer.join(timeout=5)

    assert result.outcome == SubscriptionOutcome.COMPLETED
    assert result.cursor == 4
    assert received == ["chunk-1", "chunk-2", "chunk-3"]


def test_consumer_exceptions_propagate() -> None:
    reader = ScriptedReader([_entries(1)])

    def consumer(_: list[ChannelEntry]) -> bool:
        raise RuntimeError("consumer broke")

    with pytest.raises(RuntimeError, match="consumer broke"):
        _run(reader, consumer)


def test_progress_stream_is_read_and_followed_to_end(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("progress")
    for step in range(1, 11):
        executor_client.append(process.processid, "progress", step, f"step {step}")
    executor_client.append(process.processid, "progress", 11, "", MsgType.END)

    entries = user_client.read(process.processid, "progress", after_sequence=0, limit=100)
    seen: list[ChannelEntry] = []

    def consumer(batch: list[ChannelEntry]) -> bool:
        seen.extend(batch)
        return not any(entry.is_end for entry in batch)

    result = user_client.subscribe(process.processid, "progress", 0, 5.0, consumer)

    assert [entry.sequence for entry in entries] == list(range(1, 12))
    assert [entry.text for entry in entries[:10]] == [f"step {step}" for step in range(1, 11)]
    assert entries[-1].is_end and entries[-1].payload == b""
    assert seen == entries
    assert result.outcome == SubscriptionOutcome.COMPLETED
    assert result.cursor == 11
    assert result.delivered == 11
