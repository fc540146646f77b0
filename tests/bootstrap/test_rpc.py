import json

import pytest

from nodefleet.bootstrap.node import rpc


def _ok(result):
    return "HTTP/1.1 200 OK", json.dumps({"jsonrpc": "2.0", "id": 1, "result": result}).encode()


def test_build_request():
    raw = rpc.build_request("/ext/info", '{"a": 1}')
    head, body = raw.split(b"\r\n\r\n")
    assert head.startswith(b"POST /ext/info HTTP/1.1")
    assert b"Content-Length: 8" in head
    assert body == b'{"a": 1}'


def test_is_bootstrapped(make_session):
    s = make_session()
    s.http_responses = [_ok({"isBootstrapped": True})]

    assert rpc.is_bootstrapped(s, "P") is True
    request, port = s.http_requests[0]
    assert port == 9650
    payload = json.loads(request.split(b"\r\n\r\n")[1])
    assert payload["method"] == "info.isBootstrapped"
    assert payload["params"] == {"chain": "P"}


def test_node_version_and_id(make_session):
    s = make_session()
    s.http_responses = [_ok({"version": "avalanchego/1.10.11"}), _ok({"nodeID": "NodeID-abc"})]
    assert rpc.get_node_version(s) == "avalanchego/1.10.11"
    assert rpc.get_node_id(s) == "NodeID-abc"


def test_blockchain_status_uses_pchain(make_session):
    s = make_session()
    s.http_responses = [_ok({"status": "Validating"})]
    assert rpc.get_blockchain_status(s, "2oY...") == "Validating"
    assert s.http_requests[0][0].startswith(b"POST /ext/bc/P ")


def test_rpc_errors(make_session):
    s = make_session()
    s.http_responses = [
        ("HTTP/1.1 503 Service Unavailable", b""),
        ("HTTP/1.1 200 OK", json.dumps({"error": {"code": -32000, "message": "not ready"}}).encode()),
        ("HTTP/1.1 200 OK", b"<html>"),
    ]
    with pytest.raises(rpc.RpcError, match="503"):
        rpc.get_node_id(s)
    with pytest.raises(rpc.RpcError, match="not ready"):
        rpc.get_node_id(s)
    with pytest.raises(rpc.RpcError, match="invalid JSON"):
        rpc.get_node_id(s)
