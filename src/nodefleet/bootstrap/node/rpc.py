# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/node/rpc.py

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from nodefleet.errors import NodefleetError
from nodefleet.utils.ssh_runner import LOCALHOST, SSHRunner

log = logging.getLogger("nodefleet")

INFO_PATH = "/ext/info"
PCHAIN_PATH = "/ext/bc/P"


class RpcError(NodefleetError):
    pass


def build_request(path: str, body: str) -> bytes:
    head = (
        f"POST {path} HTTP/1.1\r\n"
        f"Host: {LOCALHOST}\r\n"
        f"Content-Length: {len(body.encode('utf-8'))}\r\n"
        "Content-Type: application/json\r\n"
        "Connection: close\r\n\r\n"
    )
    return (head + body).encode("utf-8")


def call(
    session: SSHRunner,
    method: str,
    params: Optional[Dict[str, Any]] = None,
    *,
    path: str = INFO_PATH,
    port: int = 9650,
    timeout: float = 10.0,
) -> Any:
    """
    POST a JSON-RPC call to the client's local API through the SSH session
    and return its 'result'.
    """
    payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": 1, "method": method}
    if params is not None:
        payload["params"] = params
    status, raw = session.forward_http(build_request(path, json.dumps(payload)), port=port, timeout=timeout)
    if " 200 " not in f"{status} ":
        raise RpcError(f"{method}: unexpected HTTP status '{status}'")
    try:
        doc = json.loads(raw.decode("utf-8"))
    except ValueError as e:
        raise RpcError(f"{method}: invalid JSON response") from e
    if doc.get("error"):
        raise RpcError(f"{method}: {doc['error'].get('message', doc['error'])}")
    return doc.get("result")


def get_node_version(session: SSHRunner, *, port: int = 9650) -> str:
    return call(session, "info.getNodeVersion", port=port)["version"]


def is_bootstrapped(session: SSHRunner, chain: str = "X", *, port: int = 9650) -> bool:
    return bool(call(session, "info.isBootstrapped", {"chain": chain}, port=port)["isBootstrapped"])


def get_node_id(session: SSHRunner, *, port: int = 9650) -> str:
    return call(session, "info.getNodeID", port=port)["nodeID"]


def get_blockchain_status(session: SSHRunner, blockchain_id: str, *, port: int = 9650) -> str:
    result = call(
        session,
        "platform.getBlockchainStatus",
        {"blockchainID": blockchain_id},
        path=PCHAIN_PATH,
        port=port,
    )
    return result["status"]
