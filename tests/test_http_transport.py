from __future__ import annotations

import json

import allure
import httpx
import pytest

from colony_stream import crypto, rpc
from colony_stream.client import ColoniesClient
from colony_stream.errors import AssignTimeout, AuthError, ProtocolError, TransportConnectionError
from colony_stream.models import (
    AssignOutcome,
    ChannelEntry,
    Executor,
    FunctionSpec,
    LogEntry,
    MsgType,
    Process,
    TaskState,
)
from colony_stream.transport.http import HttpTransport

pytestmark = [
    allure.epic("Protocol"),
    allure.feature("HTTP Transport"),
]

PRVKEY = crypto.gen_prvkey()


def _transport(handler) -> HttpTransport:
    return HttpTransport(
        server_url="http://colonies.test:50080/",
        transport=httpx.MockTransport(handler),
    )


def _request_body(request: httpx.Request) -> tuple[dict, dict]:
    envelope = json.loads(request.content)
    return envelope, rpc.decode_rpcmsg(envelope)


def test_send_posts_signed_envelope_to_api_endpoint() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=rpc.compose_reply(rpc.CHANNEL_READ, []))

    transport = _transport(handler)
    assert transport.api_url == "http://colonies.test:50080/api"

    result = transport.send(
        rpc.CHANNEL_READ,
        rpc.channel_read_payload(processid="p1", name="output", afterseq=0, limit=0),
        PRVKEY,
    )

    assert result == []
    envelope, body = _request_body(seen[0])
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "http://colonies.test:50080/api"
    assert envelope["payloadtype"] == "channelreadmsg"
    assert body["name"] == "output"
    assert crypto.verify_signature(envelope["payload"], envelope["signature"], PRVKEY)


def test_assign_timeout_reply_is_a_benign_outcome() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            500,
            json=rpc.compose_reply(
                "error",
                {"status": 500, "message": "Failed to assign process, timeout"},
                error=True,
            ),
        )

    with _transport(handler) as transport:
        with pytest.raises(AssignTimeout):
            transport.send(rpc.ASSIGN_PROCESS, rpc.assign_payload("dev", 1), PRVKEY)
        result = ColoniesClient(transport=transport, prvkey=PRVKEY).assign("dev", 1)

    assert result.process is None
    assert result.outcome == AssignOutcome.TIMEOUT


def test_connection_failure_maps_to_transport_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = _transport(handler)

    with pytest.raises(TransportConnectionError, match="connection refused"):
        transport.send(rpc.CLOSE_SUCCESSFUL, {"processid": "p1"}, PRVKEY)
    result = ColoniesClient(transport=transport, prvkey=PRVKEY).assign("dev", 1)
    assert result.outcome == AssignOutcome.CONNECTION_ERROR


def test_read_timeout_maps_to_transport_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TransportConnectionError, match="timed out"):
        _transport(handler).send(rpc.GET_PROCESS, {"processid": "p1"}, PRVKEY)


def test_error_replies_are_classified() -> None:
    replies = {
        rpc.CHANNEL_APPEND: (400, {"status": 400, "message": "Channel sync not found"}),
        rpc.GET_PROCESS: (403, {"status": 403, "message": "Access denied"}),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        envelope, _ = _request_body(request)
        status, failure = replies[envelope["payloadtype"]]
        return httpx.Response(status, json=rpc.compose_reply("error", failure, error=True))

    transport = _transport(handler)

    with pytest.raises(ProtocolError, match="Channel sync not found") as protocol:
        transport.send(rpc.CHANNEL_APPEND, {"processid": "p1", "name": "sync"}, PRVKEY)
    with pytest.raises(AuthError) as auth:
        transport.send(rpc.GET_PROCESS, {"processid": "p1"}, PRVKEY)

    assert protocol.value.status == 400
    assert auth.value.status == 403


def test_non_json_reply_is_a_protocol_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="<html>internal error</html>")

    with pytest.raises(ProtocolError, match="Non-JSON reply") as raised:
        _transport(handler).send(rpc.CHANNEL_READ, {}, PRVKEY)
    assert raised.value.status == 500


@pytest.mark.parametrize(
    ("status", "body"),
    [
        (503, {"text": "<html>Service Unavailable</html>"}),
        (502, {"text": "<html>bad gateway</html>"}),
        (504, {"json": {"detail": "upstream timed out"}}),
    ],
)
def test_gateway_errors_without_rpc_reply_are_connection_errors(status: int, body: dict) -> None:
    transport = _transport(lambda _: httpx.Response(status, **body))

    with pytest.raises(TransportConnectionError, match="Gateway error") as raised:
        transport.send(rpc.CHANNEL_READ, {}, PRVKEY)
    result = ColoniesClient(transport=transport, prvkey=PRVKEY).assign("dev", 1)

    assert raised.value.status == status
    assert result.process is None
    assert result.outcome == AssignOutcome.CONNECTION_ERROR


def test_gateway_status_with_rpc_error_reply_is_still_classified() -> None:
    failure = {"status": 503, "message": "Channel sync not found"}

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json=rpc.compose_reply("error", failure, error=True))

    with pytest.raises(ProtocolError, match="Channel sync not found"):
        _transport(handler).send(rpc.CHANNEL_READ, {}, PRVKEY)


def test_client_operations_over_http_decode_server_records() -> None:
    spec = FunctionSpec.new("stream", colonyname="dev", channels=["output"])
    process = Process(processid="p1", spec=spec)
    stored = ChannelEntry(sequence=1, payload=b"chunk", msgtype=MsgType.DATA.value)

    def handler(request: httpx.Request) -> httpx.Response:
        envelope, body = _request_body(request)
        payloadtype = envelope["payloadtype"]
        if payloadtype == rpc.SUBMIT_FUNCSPEC:
            assert body["spec"]["channels"] == ["output"]
            return httpx.Response(200, json=rpc.compose_reply(payloadtype, process.to_wire()))
        if payloadtype == rpc.CHANNEL_APPEND:
            assert body["sequence"] == 1
            return httpx.Response(200, json=rpc.compose_reply(payloadtype, stored.to_wire()))
        return httpx.Response(200, json=rpc.compose_reply(payloadtype, [stored.to_wire()]))

    client = ColoniesClient(transport=_transport(handler), prvkey=PRVKEY)

    assert client.submit(spec).processid == "p1"
    assert client.append("p1", "output", 1, "chunk") == stored
    assert client.read("p1", "output") == [stored]


def test_registration_and_listing_payloads_over_http() -> None:
    seen: dict[str, dict] = {}
    log = LogEntry(
        processid="p1",
        colonyname="dev",
        executorname="worker-1",
        message="started",
        timestamp=42,
    )

    def handler(request: httpx.Request) -> httpx.Response:
        envelope, body = _request_body(request)
        payloadtype = envelope["payloadtype"]
        seen[payloadtype] = body
        replies = {
            rpc.ADD_EXECUTOR: body.get("executor"),
            rpc.APPROVE_EXECUTOR: None,
            rpc.GET_LOGS: [log.to_wire()],
            rpc.GET_PROCESSES: None,
        }
        return httpx.Response(200, json=rpc.compose_reply(payloadtype, replies[payloadtype]))

    client = ColoniesClient(transport=_transport(handler), prvkey=PRVKEY)
    executor = Executor(
        executorname="worker-1",
        executorid=crypto.gen_id(PRVKEY),
        executortype="cli",
        colonyname="dev",
    )

    assert client.add_executor(executor) == executor
    client.approve_executor("dev", "worker-1")
    assert client.get_logs("dev", process_id="p1", since=10) == [log]
    assert client.get_processes("dev", TaskState.WAITING, count=5) == []

    assert seen[rpc.ADD_EXECUTOR]["executor"]["executortype"] == "cli"
    assert seen[rpc.APPROVE_EXECUTOR] == {
        "colonyname": "dev",
        "executorname": "worker-1",
        "msgtype": rpc.APPROVE_EXECUTOR,
    }
    assert seen[rpc.GET_LOGS]["since"] == 10
    assert seen[rpc.GET_PROCESSES]["state"] == 0
    assert seen[rpc.GET_PROCESSES]["count"] == 5
