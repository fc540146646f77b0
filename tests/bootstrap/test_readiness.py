import time

import pytest

from nodefleet.bootstrap.fanout import CancelToken
from nodefleet.bootstrap.node.models import Host
from nodefleet.bootstrap.readiness import READINESS_STAGE, wait_for_host, wait_for_hosts
from nodefleet.errors import ReadinessError, StepError
from nodefleet.observers.dispatcher import EventBus
from nodefleet.observers.events import HostReady, HostUnreachable, HostWaitStarted


def _host(i):
    return Host(node_id=f"aws_node_i-{i}", address=f"10.0.0.{i}")


def test_ready_host_not_held_by_dead_one(fleet, recorder):
    h1, h2 = _host(1), _host(2)
    fleet.down.add(h2.node_id)
    timeout = 0.5

    started = time.monotonic()
    res = wait_for_hosts(
        [h1, h2],
        connector=fleet,
        timeout_s=timeout,
        poll_interval_s=0.05,
        connect_timeout_s=0.1,
        bus=EventBus([recorder]),
    )

    ok, dead = res.get(h1.node_id), res.get(h2.node_id)
    assert ok.ok and ok.result == 1
    assert ok.finished_at - started < timeout
    assert ok.finished_at < dead.finished_at

    assert dead.stage == READINESS_STAGE
    assert isinstance(dead.error.cause, ReadinessError)
    assert dead.error.cause.attempts >= 2

    assert len(recorder.of(HostWaitStarted)) == 2
    assert [e.node_id for e in recorder.of(HostReady)] == [h1.node_id]
    assert [e.node_id for e in recorder.of(HostUnreachable)] == [h2.node_id]


def test_host_ready_after_a_few_refusals(fleet):
    h = _host(3)
    fleet.fail(h.node_id, ConnectionRefusedError("refused"), ConnectionRefusedError("refused"))

    attempts = wait_for_host(
        h,
        CancelToken(),
        connector=fleet,
        timeout_s=5,
        poll_interval_s=0.01,
        connect_timeout_s=0.1,
    )

    assert attempts == 3
    session = fleet.sessions[h.node_id]
    assert session.commands == ["true"]
    assert session.closed


def test_shell_check_failure_keeps_polling(fleet, make_session):
    h = _host(4)
    fleet.sessions[h.node_id] = make_session(label=h.node_id, responses={"true": (1, "", "boot in progress")})

    with pytest.raises(StepError) as ei:
        wait_for_host(h, CancelToken(), connector=fleet, timeout_s=0.2, poll_interval_s=0.05, connect_timeout_s=0.1)
    assert ei.value.stage == READINESS_STAGE
    assert len(fleet.sessions[h.node_id].commands) >= 2


def test_cancel_stops_wait(fleet):
    h = _host(5)
    fleet.down.add(h.node_id)
    token = CancelToken()
    token.cancel()

    res = wait_for_hosts([h], connector=fleet, timeout_s=30, poll_interval_s=10, cancel=token)

    assert res.has_node_error(h.node_id)
    assert fleet.calls == []
