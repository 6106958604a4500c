from __future__ import annotations

import threading

import allure
import pytest

from colony_stream import rpc
from colony_stream.channels.handshake import (
    AckTimeoutPolicy,
    ConsumerHandshake,
    ProducerHandshake,
    is_ack,
)
from colony_stream.client import ColoniesClient
from colony_stream.errors import ProtocolError
from colony_stream.models import ChannelEntry, MsgType, SubscriptionOutcome, TaskState
from colony_stream.transport.memory import InMemoryColony

pytestmark = [
    allure.epic("Channels"),
    allure.feature("Ack Handshake"),
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _producer(client: ColoniesClient, task_id: str, **kwargs) -> ProducerHandshake:
    clock = FakeClock()
    options = {
        "sync_channel": "sync",
        "ack_timeout_seconds": 1.0,
        "poll_interval_seconds": 0.25,
        "clock": clock,
        "sleep": clock.sleep,
    }
    options.update(kwargs)
    return ProducerHandshake(client, task_id=task_id, **options)


def test_consumer_sees_every_entry_and_close_follows_ack(
    colony: InMemoryColony,
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("progress", "sync")
    received: list[str] = []
    consumed = []

    consumer = ConsumerHandshake(
        user_client,
        task_id=process.processid,
        data_channel="progress",
        sync_channel="sync",
    )
    reader = threading.Thread(
        target=lambda: consumed.append(
            consumer.consume(
                lambda batch: received.extend(entry.text for entry in batch if not entry.is_end),
                timeout_seconds=5.0,
                poll_interval_seconds=0.01,
            ),
        ),
    )
    reader.start()

    data = executor_client.session(process.processid, "progress")
    for step in range(1, 11):
        data.enqueue(f"step {step}")
    result = ProducerHandshake(
        executor_client,
        task_id=process.processid,
        sync_channel="sync",
        ack_timeout_seconds=5.0,
        poll_interval_seconds=0.01,
    ).finish(data)
    reader.join(timeout=5)

    assert received == [f"step {step}" for step in range(1, 11)]
    assert result.acknowledged
    assert result.closed
    assert result.end_entry.sequence == 11
    assert result.ack_entry is not None
    assert result.ack_entry.sequence == 1
    assert result.ack_entry.inreplyto == result.end_entry.sequence
    assert consumed[0].acknowledged
    assert consumed[0].end_entry == result.end_entry
    assert consumed[0].subscription.outcome == SubscriptionOutcome.COMPLETED

    calls = colony.call_names()
    last_append = max(index for index, name in enumerate(calls) if name == rpc.CHANNEL_APPEND)
    assert calls.index(rpc.CLOSE_SUCCESSFUL) > last_append
    assert executor_client.get_process(process.processid).state == TaskState.SUCCESS


def test_ack_already_present_finishes_without_waiting(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("output", "sync")
    user_client.append(process.processid, "sync", 1, b"ack", MsgType.DATA, inreplyto=1)
    data = executor_client.session(process.processid, "output")

    result = _producer(executor_client, process.processid).finish(data, end_payload="done")

    assert result.acknowledged
    assert result.wait.batches == 1
    assert result.end_entry.text == "done"
    assert executor_client.get_process(process.processid).state == TaskState.SUCCESS


def test_failed_producer_fails_after_ack(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("output", "sync")
    user_client.append(process.processid, "sync", 1, b"ack")
    data = executor_client.session(process.processid, "output")
    data.error("bad input")

    result = _producer(executor_client, process.processid).finish(
        data,
        failed=True,
        errors=["bad input"],
    )

    finished = executor_client.get_process(process.processid)
    assert result.failed and not result.closed
    assert finished.state == TaskState.FAILED
    assert finished.errors == ["bad input"]


def test_non_ack_entries_on_sync_channel_are_ignored(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("output", "sync")
    user_client.append(process.processid, "sync", 1, b"hello")
    user_client.append(process.processid, "sync", 2, b"ack", MsgType.END)

    result = _producer(executor_client, process.processid).finish(
        executor_client.session(process.processid, "output"),
    )

    assert not result.acknowledged
    assert result.left_open


@pytest.mark.parametrize(
    ("policy", "state", "errors"),
    [
        (AckTimeoutPolicy.LEAVE_OPEN, TaskState.RUNNING, []),
        (AckTimeoutPolicy.FORCE_CLOSE, TaskState.SUCCESS, []),
        (AckTimeoutPolicy.FORCE_FAIL, TaskState.FAILED, ["acknowledgment timeout"]),
    ],
)
def test_ack_timeout_policy(
    running_process,
    executor_client: ColoniesClient,
    policy: AckTimeoutPolicy,
    state: TaskState,
    errors: list[str],
) -> None:
    process = running_process("output", "sync")
    data = executor_client.session(process.processid, "output")
    data.enqueue("only entry")

    result = _producer(executor_client, process.processid, on_timeout=policy).finish(data)

    finished = executor_client.get_process(process.processid)
    assert not result.acknowledged
    assert result.wait.outcome == SubscriptionOutcome.TIMED_OUT
    assert finished.state == state
    assert finished.errors == errors
    assert result.left_open == (policy == AckTimeoutPolicy.LEAVE_OPEN)


def test_left_open_stream_is_still_readable(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("output", "sync")
    data = executor_client.session(process.processid, "output")
    data.enqueue("late reader")
    _producer(executor_client, process.processid).finish(data)

    consumed = ConsumerHandshake(
        user_client,
        task_id=process.processid,
        data_channel="output",
        sync_channel="sync",
    ).consume(lambda _: None, timeout_seconds=0)

    assert consumed.acknowledged
    assert consumed.end_entry is not None
    assert consumed.end_entry.sequence == 2


def test_sync_read_error_propagates_and_leaves_process_running(
    colony: InMemoryColony,
    running_process,
    executor_client: ColoniesClient,
) -> None:
    process = running_process("output", "sync")
    colony.inject_failure(rpc.CHANNEL_READ, ProtocolError("Channel sync not found"))

    with pytest.raises(ProtocolError, match="sync"):
        _producer(executor_client, process.processid).finish(
            executor_client.session(process.processid, "output"),
        )

    assert executor_client.get_process(process.processid).state == TaskState.RUNNING


def test_closing_without_handshake_deletes_unread_entries(
    running_process,
    executor_client: ColoniesClient,
    user_client: ColoniesClient,
) -> None:
    process = running_process("output")
    data = executor_client.session(process.processid, "output")
    data.send("tail")
    data.end()
    executor_client.close(process.processid)

    result = user_client.subscribe(process.processid, "output", 0, 0, lambda _: True)

    assert result.outcome == SubscriptionOutcome.FAILED
    assert isinstance(result.error, ProtocolError)
    assert result.delivered == 0


def test_consumer_times_out_without_end(
    running_process,
    user_client: ColoniesClient,
    executor_client: ColoniesClient,
) -> None:
    process = running_process("output", "sync")
    executor_client.append(process.processid, "output", 1, "partial")

    consumed = ConsumerHandshake(
        user_client,
        task_id=process.processid,
        data_channel="output",
        sync_channel="sync",
    ).consume(lambda _: None, timeout_seconds=0)

    assert not consumed.acknowledged
    assert consumed.end_entry is None
    assert consumed.subscription.outcome == SubscriptionOutcome.TIMED_OUT
    assert user_client.read(process.processid, "sync") == []


def test_is_ack_requires_ack_payload_and_data_type() -> None:
    assert is_ack(ChannelEntry(sequence=1, payload=b"ack", msgtype="data"))
    assert is_ack(ChannelEntry(sequence=1, payload=b"ack", msgtype=""))
    assert not is_ack(ChannelEntry(sequence=1, payload=b"ack", msgtype="end"))
    assert not is_ack(ChannelEntry(sequence=1, payload=b"nack", msgtype="data"))
