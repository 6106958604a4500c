"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from colony_stream import crypto
from colony_stream.client import ColoniesClient
from colony_stream.models import FunctionSpec, Process
from colony_stream.transport.memory import InMemoryColony

COLONY_NAME = "test-colony"


@pytest.fixture()
def colony() -> InMemoryColony:
    return InMemoryColony()


@pytest.fixture(scope="session")
def executor_prvkey() -> str:
    return crypto.gen_prvkey()


@pytest.fixture(scope="session")
def user_prvkey() -> str:
    return crypto.gen_prvkey()


@pytest.fixture()
def executor_client(colony: InMemoryColony, executor_prvkey: str) -> ColoniesClient:
    return ColoniesClient(transport=colony, prvkey=executor_prvkey)


@pytest.fixture()
def user_client(colony: InMemoryColony, user_prvkey: str) -> ColoniesClient:
    return ColoniesClient(transport=colony, prvkey=user_prvkey)


@pytest.fixture()
def running_process(
    user_client: ColoniesClient,
    executor_client: ColoniesClient,
) -> Callable[..., Process]:
    """Submit a process declaring `channels` and assign it to the executor."""

    def _start(*channels: str, funcname: str = "stream", args: list | None = None) -> Process:
        user_client.submit(
            FunctionSpec.new(
                funcname,
                colonyname=COLONY_NAME,
                args=args,
                channels=list(channels),
            ),
        )
        result = executor_client.assign(COLONY_NAME, 0)
        assert result.process is not None
        return result.process

    return _start
