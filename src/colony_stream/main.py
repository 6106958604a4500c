"""CLI entrypoint for colony-stream."""

import logging
from collections.abc import Callable

import rich_click as click

from colony_stream import __version__
from colony_stream.controllers import (
    ChannelAppendCommand,
    ChannelCliController,
    ChannelReadCommand,
    ChannelSubscribeCommand,
    ExecutorCliController,
    WorkerCommand,
)
from colony_stream.errors import ColoniesError
from colony_stream.models import MsgType

click.rich_click.USE_MARKDOWN = True
CHANNEL_CONTROLLER = ChannelCliController()
EXECUTOR_CONTROLLER = ExecutorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="colony-stream")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity.",
)
def colony_stream(log_level: str) -> None:
    """Colonies channel streaming CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@colony_stream.command("worker")
@click.option("--once", is_flag=True, help="Poll once and execute at most one process.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processes.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive polls without work.",
)
@click.option(
    "--register",
    is_flag=True,
    help=(
        "Register as COLONY_STREAM_EXECUTOR_NAME before polling; approve it too "
        "when COLONY_STREAM_COLONY_PRVKEY is set."
    ),
)
def worker(
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    register: bool,
) -> None:
    """Run the built-in executor (`echo`, `add`, `stream_echo`) against the colony."""

    _emit_lines(
        _guard(
            lambda: EXECUTOR_CONTROLLER.run_worker(
                WorkerCommand(
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                    register=register,
                ),
            ),
        ),
    )


@colony_stream.group()
def channel() -> None:
    """Process channel commands."""


@channel.command("append")
@click.option("--task-id", required=True, help="Process id that owns the channel.")
@click.option("--channel", "channel_name", required=True, help="Channel name.")
@click.option(
    "--sequence",
    type=click.IntRange(min=1),
    required=True,
    help="Sender-assigned sequence number.",
)
@click.option(
    "--msgtype",
    type=click.Choice([item.value for item in MsgType if item.value], case_sensitive=False),
    default=MsgType.DATA.value,
    show_default=True,
    help="Entry message type.",
)
@click.option(
    "--in-reply-to",
    "inreplyto",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Sequence of the entry this one replies to.",
)
@click.argument("payload", default="")
def channel_append(  # noqa: PLR0913
    task_id: str,
    channel_name: str,
    sequence: int,
    msgtype: str,
    inreplyto: int,
    payload: str,
) -> None:
    """Append one entry to a channel."""

    _emit_lines(
        _guard(
            lambda: CHANNEL_CONTROLLER.append(
                ChannelAppendCommand(
                    task_id=task_id,
                    channel=channel_name,
                    sequence=sequence,
                    payload=payload,
                    msgtype=msgtype.lower(),
                    inreplyto=inreplyto,
                ),
            ),
        ),
    )


@channel.command("read")
@click.option("--task-id", required=True, help="Process id that owns the channel.")
@click.option("--channel", "channel_name", required=True, help="Channel name.")
@click.option(
    "--after",
    "after_sequence",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Return entries with sequence greater than this.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Maximum entries to return (0 = no limit).",
)
def channel_read(task_id: str, channel_name: str, after_sequence: int, limit: int) -> None:
    """Read channel entries once, without waiting."""

    _emit_lines(
        _guard(
            lambda: CHANNEL_CONTROLLER.read(
                ChannelReadCommand(
                    task_id=task_id,
                    channel=channel_name,
                    after_sequence=after_sequence,
                    limit=limit,
                ),
            ),
        ),
    )


@channel.command("subscribe")
@click.option("--task-id", required=True, help="Process id that owns the channel.")
@click.option(
    "--channel",
    "channel_name",
    default=None,
    help="Channel name. Defaults to COLONY_STREAM_DATA_CHANNEL.",
)
@click.option(
    "--from",
    "start_sequence",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Deliver entries with sequence greater than this.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Idle timeout. Defaults to COLONY_STREAM_SUBSCRIBE_TIMEOUT_SECONDS.",
)
@click.option(
    "--ack/--no-ack",
    default=False,
    show_default=True,
    help="Acknowledge the `end` entry on the sync channel.",
)
def channel_subscribe(
    task_id: str,
    channel_name: str | None,
    start_sequence: int,
    timeout_seconds: float | None,
    ack: bool,
) -> None:
    """Print entries as they arrive until `end` or the idle timeout."""

    _emit_lines(
        _guard(
            lambda: CHANNEL_CONTROLLER.subscribe(
                ChannelSubscribeCommand(
                    task_id=task_id,
                    channel=channel_name,
                    start_sequence=start_sequence,
                    timeout_seconds=timeout_seconds,
                    ack=ack,
                ),
                click.echo,
            ),
        ),
    )


def _guard(call: Callable[[], list[str]]) -> list[str]:
    try:
        return call()
    except (ColoniesError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    colony_stream()
