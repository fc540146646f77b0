# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/node/ssh_bootstrapper.py

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Sequence

from nodefleet.bootstrap.fanout import CancelToken, run_per_host
from nodefleet.bootstrap.results import NodeResults
from nodefleet.errors import StepError
from nodefleet.observers.dispatcher import EventBus
from nodefleet.observers.events import NodeBootstrapped, StepFailed, StepStarted, StepSucceeded, new_ctx
from nodefleet.utils.ssh_runner import Connector, open_ssh
from nodefleet.utils.templates import TemplateRenderer

from .credentials import CredentialSource
from .interface import NodeBootstrapper
from .models import Host, NodeBootstrapOptions, PipelineResult, StepRecord
from .steps import SCRIPTS_DIR, STAGE_UPLOAD_CREDENTIALS, build_node_pipeline, execute_step

log = logging.getLogger("nodefleet")

STAGE_CONNECT = "connect"


class SshBootstrapper(NodeBootstrapper):
    """
    Runs the node pipeline on each host over its own SSH session:
      - upload-credentials     (staking cert/key and signer key)
      - setup-node             (client install, service, CLI config)
      - setup-machine-metrics  (node exporter, only with metrics on)
      - setup-build-env        (compilers and Go)
      - setup-cli              (CLI built from a branch)
    """

    def __init__(
        self,
        credentials: CredentialSource,
        *,
        connector: Connector = open_ssh,
        renderer: Optional[TemplateRenderer] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
        max_workers: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.credentials = credentials
        self.connector = connector
        self.renderer = renderer or TemplateRenderer(SCRIPTS_DIR)
        self.bus = bus or EventBus()
        self.ctx = run_ctx or new_ctx(cluster="", network=None)
        self.max_workers = max_workers
        self.cancel = cancel or CancelToken()

    def bootstrap(self, hosts: Sequence[Host], options: NodeBootstrapOptions) -> NodeResults:
        def _worker(host: Host, cancel: CancelToken) -> PipelineResult:
            return self.bootstrap_host(host, options, cancel)

        return run_per_host(
            hosts,
            _worker,
            phase="bootstrap",
            max_workers=self.max_workers,
            cancel=self.cancel,
        )

    def bootstrap_host(
        self,
        host: Host,
        options: NodeBootstrapOptions,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineResult:
        cancel = cancel or self.cancel
        result = PipelineResult(node_id=host.node_id)

        try:
            steps = build_node_pipeline(host, options, self.credentials)
        except Exception as e:
            # credentials are resolved while the pipeline is built
            self._failed(host, STAGE_UPLOAD_CREDENTIALS, e)
            raise StepError(STAGE_UPLOAD_CREDENTIALS, e) from e

        try:
            session = host.connect(
                self.connector,
                connect_timeout=options.timeouts.connect_s,
                retry_pause_s=options.timeouts.handshake_retry_pause_s,
            )
        except Exception as e:
            self._failed(host, STAGE_CONNECT, e)
            raise StepError(STAGE_CONNECT, e) from e

        try:
            for step in steps:
                cancel.raise_if_cancelled(step.name)
                self.bus.emit(StepStarted(node_id=host.node_id, stage=step.name, **self.ctx))
                started = time.monotonic()
                try:
                    execute_step(session, step, options, self.renderer)
                except Exception as e:
                    self._failed(host, step.name, e)
                    raise StepError(step.name, e) from e
                duration_ms = int((time.monotonic() - started) * 1000)
                result.stages.append(StepRecord(stage=step.name, duration_ms=duration_ms))
                self.bus.emit(StepSucceeded(node_id=host.node_id, stage=step.name, duration_ms=duration_ms, **self.ctx))
        finally:
            host.close()

        self.bus.emit(NodeBootstrapped(node_id=host.node_id, stages=result.stage_names, **self.ctx))
        log.info("[%s] node bootstrapped (%s)", host.node_id, ", ".join(result.stage_names))
        return result

    def _failed(self, host: Host, stage: str, err: BaseException) -> None:
        log.warning("[%s] %s failed: %s", host.node_id, stage, err)
        self.bus.emit(StepFailed(node_id=host.node_id, stage=stage, error=str(err), **self.ctx))

