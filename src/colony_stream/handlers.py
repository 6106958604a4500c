"""Built-in function handlers for the demo executor."""

from __future__ import annotations

from typing import Any

from colony_stream.executor import ExecutionContext, Handler

STREAM_CHANNEL = "output"


def echo(context: ExecutionContext) -> list[Any]:
    """Return the arguments unchanged."""

    return list(context.args) or ["no input"]


def add(context: ExecutionContext) -> list[Any]:
    if len(context.args) < 2:  # noqa: PLR2004
        raise ValueError("add requires 2 arguments")
    return [sum(int(value) for value in context.args)]


def stream_echo(context: ExecutionContext) -> None:
    """Send each argument as a data entry, then finish through the ack handshake."""

    data = context.session(STREAM_CHANNEL)
    for value in context.args:
        data.enqueue(str(value))
    result = context.handshake(data)
    if result.left_open:
        context.log(f"no acknowledgment after {len(context.args)} entries")


DEFAULT_HANDLERS: dict[str, Handler] = {
    "echo": echo,
    "add": add,
    "stream_echo": stream_echo,
}
