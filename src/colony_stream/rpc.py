"""RPC envelope encoding and per-operation message builders."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from colony_stream import crypto
from colony_stream.errors import ProtocolError

ASSIGN_PROCESS = "assignprocessmsg"
CHANNEL_APPEND = "channelappendmsg"
CHANNEL_READ = "channelreadmsg"
SUBMIT_FUNCSPEC = "submitfuncspecmsg"
CLOSE_SUCCESSFUL = "closesuccessfulmsg"
CLOSE_FAILED = "closefailedmsg"
GET_PROCESS = "getprocessmsg"
SET_OUTPUT = "setoutputmsg"
ADD_LOG = "addlogmsg"
GET_LOGS = "getlogsmsg"
GET_PROCESSES = "getprocessesmsg"
ADD_EXECUTOR = "addexecutormsg"
APPROVE_EXECUTOR = "approveexecutormsg"


@dataclass(slots=True)
class RpcReply:
    """Decoded server reply envelope."""

    payloadtype: str
    payload: Any
    error: bool


def compose_rpcmsg(payloadtype: str, payload: dict[str, Any], prvkey: str) -> dict[str, str]:
    """Wrap an operation payload into a signed envelope."""

    body = dict(payload)
    body["msgtype"] = payloadtype
    encoded = base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")
    return {
        "payloadtype": payloadtype,
        "payload": encoded,
        "signature": crypto.gen_signature(encoded, prvkey),
    }


def decode_rpcmsg(envelope: dict[str, Any]) -> dict[str, Any]:
    """Inverse of `compose_rpcmsg`, without signature verification."""

    decoded = _decode_json(envelope.get("payload"))
    if not isinstance(decoded, dict):
        raise ProtocolError("RPC message payload must be a JSON object.")
    return decoded


def compose_reply(payloadtype: str, payload: Any, *, error: bool = False) -> dict[str, Any]:
    encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
    return {"payloadtype": payloadtype, "payload": encoded, "error": error}


def decode_reply(body: Any) -> RpcReply:
    if not isinstance(body, dict) or "payload" not in body:
        raise ProtocolError(f"Malformed RPC reply: {body!r}")
    return RpcReply(
        payloadtype=str(body.get("payloadtype") or ""),
        payload=_decode_json(body.get("payload")),
        error=bool(body.get("error") or False),
    )


def assign_payload(colonyname: str, timeout_seconds: int) -> dict[str, Any]:
    return {
        "colonyname": colonyname,
        "timeout": timeout_seconds,
        "availablecpu": "",
        "availablemem": "",
    }


def channel_append_payload(
    *,
    processid: str,
    name: str,
    sequence: int,
    payload: bytes,
    msgtype: str,
    inreplyto: int,
) -> dict[str, Any]:
    return {
        "processid": processid,
        "name": name,
        "sequence": sequence,
        "payload": base64.b64encode(payload).decode("ascii"),
        "payloadtype": msgtype,
        "inreplyto": inreplyto,
    }


def channel_read_payload(
    *,
    processid: str,
    name: str,
    afterseq: int,
    limit: int,
) -> dict[str, Any]:
    return {"processid": processid, "name": name, "afterseq": afterseq, "limit": limit}


def _decode_json(encoded: Any) -> Any:
    if encoded is None or encoded == "":
        return None
    try:
        raw = base64.b64decode(encoded, validate=True)
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, TypeError, UnicodeDecodeError, json.JSONDecodeError) as error:
        raise ProtocolError("RPC payload is not base64-encoded JSON.") from error
