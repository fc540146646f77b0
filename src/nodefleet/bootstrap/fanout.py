# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/fanout.py

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Sequence

from nodefleet.bootstrap.node.models import Host
from nodefleet.bootstrap.results import NodeResults
from nodefleet.errors import NodefleetError, StepError

log = logging.getLogger("nodefleet")


class CancelledError(NodefleetError):
    pass


class CancelToken:
    """
    Operator-initiated abort. Workers check it between units of work and
    sleep on it instead of time.sleep so a cancel wakes them up.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout*; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise StepError(stage, CancelledError("run cancelled"))


Worker = Callable[[Host, CancelToken], Any]


def run_per_host(
    hosts: Sequence[Host],
    worker: Worker,
    *,
    phase: str,
    max_workers: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
) -> NodeResults:
    """
    Run *worker* once per host, concurrently, and return the sealed results.

    Exactly one outcome is recorded per host. A StepError keeps its stage
    name; any other exception is recorded against *phase*. Returns only
    after every worker has finished.
    """
    cancel = cancel or CancelToken()
    results = NodeResults(phase=phase)
    if not hosts:
        return results.seal()

    node_ids = [h.node_id for h in hosts]
    if len(set(node_ids)) != len(node_ids):
        raise ValueError(f"[{phase}] duplicate hosts dispatched: {node_ids}")

    def _run(host: Host) -> None:
        started = time.monotonic()
        try:
            cancel.raise_if_cancelled(phase)
            value = worker(host, cancel)
        except StepError as e:
            results.add_result(
                host.node_id,
                None,
                e,
                stage=e.stage,
                elapsed_s=time.monotonic() - started,
                finished_at=time.monotonic(),
            )
            return
        except Exception as e:
            log.debug("[%s] %s worker raised", host.node_id, phase, exc_info=True)
            results.add_result(
                host.node_id,
                None,
                e,
                stage=phase,
                elapsed_s=time.monotonic() - started,
                finished_at=time.monotonic(),
            )
            return
        results.add_result(
            host.node_id,
            value,
            None,
            elapsed_s=time.monotonic() - started,
            finished_at=time.monotonic(),
        )

    workers = min(max_workers or len(hosts), len(hosts))
    log.debug("[%s] dispatching %d host(s) on %d worker(s)", phase, len(hosts), workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=phase) as pool:
        futures = [pool.submit(_run, h) for h in hosts]
        try:
            wait(futures)
        except BaseException:
            # Ctrl-C lands here; the pool joins its workers on exit, so wake them first
            log.warning("[%s] interrupted, cancelling in-flight hosts", phase)
            cancel.cancel()
            raise
    for f in futures:
        # _run records every failure itself; anything here is a bug in the store
        f.result()

    return results.seal()
