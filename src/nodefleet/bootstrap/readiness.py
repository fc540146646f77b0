# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/readiness.py

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Sequence

from nodefleet.bootstrap.fanout import CancelToken, CancelledError, run_per_host
from nodefleet.bootstrap.node.models import Host
from nodefleet.bootstrap.results import NodeResults
from nodefleet.errors import ReadinessError, StepError
from nodefleet.observers.dispatcher import EventBus
from nodefleet.observers.events import HostReady, HostUnreachable, HostWaitStarted, new_ctx
from nodefleet.utils.ssh_runner import Connector, open_ssh

log = logging.getLogger("nodefleet")

READINESS_STAGE = "wait-for-ssh"


def wait_for_host(
    host: Host,
    cancel: CancelToken,
    *,
    connector: Connector = open_ssh,
    timeout_s: float,
    poll_interval_s: float,
    connect_timeout_s: float,
) -> int:
    """
    Poll one host until a shell answers or *timeout_s* elapses.
    Returns the number of attempts it took.
    """
    deadline = time.monotonic() + timeout_s
    attempts = 0
    last_err: Optional[BaseException] = None

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        attempts += 1
        try:
            session = connector(host, connect_timeout=max(0.1, min(connect_timeout_s, remaining)))
            try:
                session.check("true", timeout=max(0.1, deadline - time.monotonic()))
            finally:
                session.close()
            return attempts
        except Exception as e:
            last_err = e
            log.debug("[%s] shell not ready (attempt %d, %s: %s)", host.node_id, attempts, type(e).__name__, e)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        if cancel.wait(min(poll_interval_s, remaining)):
            raise StepError(READINESS_STAGE, CancelledError("run cancelled"))

    raise StepError(
        READINESS_STAGE,
        ReadinessError(
            f"{host.address} did not answer SSH within {timeout_s:g}s after {attempts} attempt(s): {last_err}",
            attempts=attempts,
        ),
    )


def wait_for_hosts(
    hosts: Sequence[Host],
    *,
    connector: Connector = open_ssh,
    timeout_s: float = 120.0,
    poll_interval_s: float = 5.0,
    connect_timeout_s: float = 30.0,
    max_workers: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[Dict] = None,
) -> NodeResults:
    """
    Readiness gate: every host is polled by its own worker, so one slow or
    dead host never holds up another. Nothing is installed here.
    """
    bus = bus or EventBus()
    ctx = run_ctx or new_ctx(cluster="", network=None)

    def _worker(host: Host, token: CancelToken) -> int:
        started = time.monotonic()
        bus.emit(HostWaitStarted(node_id=host.node_id, address=host.address, timeout_s=timeout_s, **ctx))
        try:
            attempts = wait_for_host(
                host,
                token,
                connector=connector,
                timeout_s=timeout_s,
                poll_interval_s=poll_interval_s,
                connect_timeout_s=connect_timeout_s,
            )
        except StepError as e:
            attempts = getattr(e.cause, "attempts", 0)
            bus.emit(HostUnreachable(node_id=host.node_id, attempts=attempts, error=str(e.cause), **ctx))
            raise
        bus.emit(HostReady(node_id=host.node_id, attempts=attempts, elapsed_s=round(time.monotonic() - started, 3), **ctx))
        log.info("[%s] instance is answering SSH", host.node_id)
        return attempts

    return run_per_host(hosts, _worker, phase="readiness", max_workers=max_workers, cancel=cancel)
