# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/monitoring/manager.py

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from nodefleet.bootstrap.fanout import CancelToken, run_per_host
from nodefleet.bootstrap.node.models import Host
from nodefleet.bootstrap.readiness import wait_for_host
from nodefleet.bootstrap.results import NodeResults
from nodefleet.config.models import ClientSpec, TimeoutSettings
from nodefleet.config.paths import NODE_CONFIG_FILE, AppPaths
from nodefleet.errors import MonitoringError, StepError
from nodefleet.observers.dispatcher import EventBus
from nodefleet.observers.events import (
    AgentConfigured,
    MonitoringFailed,
    MonitoringStateChanged,
    ScrapeTargetsPushed,
    new_ctx,
)
from nodefleet.utils.ssh_runner import Connector, SSHRunner, open_ssh
from nodefleet.utils.templates import TemplateRenderer, split_script

from .prometheus import PROMETHEUS_CONFIG_PATH, render_scrape_config, scrape_targets
from .state import MonitoringFacility

log = logging.getLogger("nodefleet")

SCRIPTS_DIR = Path(__file__).parent / "scripts"

STAGE_UPLOAD_DASHBOARDS = "upload-dashboards"
STAGE_SETUP_MONITORING = "setup-monitoring"
STAGE_PUSH_TARGETS = "push-scrape-targets"
STAGE_DOWNLOAD_AGENT_CONFIG = "download-agent-config"
STAGE_REWRITE_AGENT_CONFIG = "rewrite-agent-config"
STAGE_UPLOAD_AGENT_CONFIG = "upload-agent-config"
STAGE_RESTART_CLIENT = "restart-client"

PROMETHEUS_PORT = 9090
GRAFANA_PORT = 3000
EXTERNAL_BIND = "0.0.0.0"


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except StepError:
        raise
    except Exception as e:
        raise StepError(name, e) from e


def rewrite_agent_config(text: str, bind: str = EXTERNAL_BIND) -> str:
    """Set the client's http-host so the monitoring host can scrape it."""
    data = json.loads(text) if text.strip() else {}
    if not isinstance(data, dict):
        raise ValueError("node config is not a JSON object")
    data["http-host"] = bind
    return json.dumps(data, indent=4) + "\n"


def push_scrape_config(session: SSHRunner, config: str, *, timeout: Optional[float] = None) -> bool:
    """
    Install *config* as the Prometheus config. Returns False (and leaves
    Prometheus alone) when the host already has exactly this content.
    """
    rc, current, _ = session.run(f"cat {PROMETHEUS_CONFIG_PATH}", sudo=True, timeout=timeout)
    if rc == 0 and current == config:
        return False
    session.put_text(config, PROMETHEUS_CONFIG_PATH, sudo=True)
    session.check("systemctl restart prometheus", sudo=True, timeout=timeout)
    return True


@dataclass
class MonitoringResult:
    facility: MonitoringFacility
    host_results: Optional[NodeResults] = None      # the monitoring host itself
    agent_results: Optional[NodeResults] = None     # config round-trip on main hosts
    targets: List[str] = field(default_factory=list)

    def failed(self) -> Dict[str, BaseException]:
        failed: Dict[str, BaseException] = {}
        for res in (self.host_results, self.agent_results):
            if res is not None:
                failed.update(res.get_error_host_map())
        return failed

    @property
    def ok(self) -> bool:
        return not self.failed()


class MonitoringManager:
    """
    Brings up (or reuses) the cluster's monitoring host, then opens each main
    host's client API to it. Only ever runs after the main bootstrap phase.
    """

    def __init__(
        self,
        *,
        client: ClientSpec,
        paths: AppPaths,
        timeouts: TimeoutSettings = TimeoutSettings(),
        connector: Connector = open_ssh,
        machine_metrics: bool = True,
        renderer: Optional[TemplateRenderer] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[Dict] = None,
        max_workers: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.client = client
        self.paths = paths
        self.timeouts = timeouts
        self.connector = connector
        self.machine_metrics = machine_metrics
        self.renderer = renderer or TemplateRenderer(SCRIPTS_DIR)
        self.bus = bus or EventBus()
        self.ctx = run_ctx or new_ctx(cluster="", network=None)
        self.max_workers = max_workers
        self.cancel = cancel or CancelToken()

    # ------------------ monitoring host ------------------

    def _connect(self, host: Host) -> SSHRunner:
        return host.connect(
            self.connector,
            connect_timeout=self.timeouts.connect_s,
            retry_pause_s=self.timeouts.handshake_retry_pause_s,
        )

    def _install_stack(self, host: Host, session: SSHRunner) -> None:
        remote_dashboards = f"/home/{host.username}/dashboards"
        if self.paths.dashboards_dir.is_dir():
            with _stage(STAGE_UPLOAD_DASHBOARDS):
                session.check(f"mkdir -p {remote_dashboards}", timeout=self.timeouts.transfer_s)
                session.put_dir(self.paths.dashboards_dir, remote_dashboards)

        with _stage(STAGE_SETUP_MONITORING):
            script = self.renderer.render(
                "setup_monitoring.sh.j2",
                {
                    "dashboards_dir": remote_dashboards,
                    "prometheus_port": PROMETHEUS_PORT,
                    "grafana_port": GRAFANA_PORT,
                },
            )
            for task in split_script(script):
                log.info("[%s] %s", host.node_id, task.title)
                session.run_script(task.body, timeout=self.timeouts.step_s)

    def _setup_monitor_host(self, host: Host, config: str, fresh: bool, cancel: CancelToken) -> bool:
        if fresh:
            wait_for_host(
                host,
                cancel,
                connector=self.connector,
                timeout_s=self.timeouts.ssh_ready_s,
                poll_interval_s=self.timeouts.poll_interval_s,
                connect_timeout_s=self.timeouts.connect_s,
            )
        with _stage("connect"):
            session = self._connect(host)
        try:
            if fresh:
                cancel.raise_if_cancelled(STAGE_SETUP_MONITORING)
                self._install_stack(host, session)
            cancel.raise_if_cancelled(STAGE_PUSH_TARGETS)
            with _stage(STAGE_PUSH_TARGETS):
                return push_scrape_config(session, config, timeout=self.timeouts.step_s)
        finally:
            host.close()

    # ------------------ main hosts ------------------

    def configure_agent(self, host: Host, cancel: Optional[CancelToken] = None) -> None:
        """
        Download the host's node config, bind its API to all interfaces,
        upload it back and restart the client.
        """
        cancel = cancel or self.cancel
        local = self.paths.node_config_download_dir(host.node_id) / NODE_CONFIG_FILE
        remote = self.client.node_config_path
        t = self.timeouts

        with _stage("connect"):
            session = self._connect(host)
        try:
            cancel.raise_if_cancelled(STAGE_DOWNLOAD_AGENT_CONFIG)
            with _stage(STAGE_DOWNLOAD_AGENT_CONFIG):
                session.get_file(remote, local, timeout=t.transfer_s)
            with _stage(STAGE_REWRITE_AGENT_CONFIG):
                local.write_text(rewrite_agent_config(local.read_text(encoding="utf-8")), encoding="utf-8")
            with _stage(STAGE_UPLOAD_AGENT_CONFIG):
                session.put_file(local, remote, timeout=t.transfer_s)
            with _stage(STAGE_RESTART_CLIENT):
                session.check(f"systemctl restart {self.client.service}", sudo=True, timeout=t.step_s)
        finally:
            host.close()
        self.bus.emit(AgentConfigured(node_id=host.node_id, **self.ctx))

    def configure_agents(self, hosts: Sequence[Host]) -> NodeResults:
        def _worker(host: Host, cancel: CancelToken) -> None:
            self.configure_agent(host, cancel)

        results = run_per_host(
            hosts,
            _worker,
            phase="monitoring-agent",
            max_workers=self.max_workers,
            cancel=self.cancel,
        )
        for node_id, err in results.get_error_host_map().items():
            log.warning("[%s] agent config not updated: %s", node_id, err)
            self.bus.emit(MonitoringFailed(node_id=node_id, error=str(err), **self.ctx))
        return results

    # ------------------ entry point ------------------

    def setup(
        self,
        facility: MonitoringFacility,
        monitor_host: Host,
        target_addresses: Sequence[str],
        agent_hosts: Sequence[Host],
    ) -> MonitoringResult:
        """
        PENDING facility: bootstrap the new host, push targets, activate it.
        ACTIVE facility: push the refreshed target list only.
        Then run the agent config round-trip on *agent_hosts*.
        """
        if not (facility.is_pending or facility.is_active):
            raise MonitoringError(f"no monitoring host to set up ({facility.describe()})")
        if facility.node_id != monitor_host.node_id:
            raise MonitoringError(f"monitoring host {monitor_host.node_id} is not {facility.describe()}")

        fresh = facility.is_pending
        config = render_scrape_config(
            target_addresses,
            api_port=self.client.api_port,
            metrics_port=self.client.machine_metrics_port,
            machine_metrics=self.machine_metrics,
        )
        targets = scrape_targets(target_addresses, self.client.api_port)
        result = MonitoringResult(facility=facility, targets=targets)

        result.host_results = run_per_host(
            [monitor_host],
            lambda h, c: self._setup_monitor_host(h, config, fresh, c),
            phase="monitoring",
            cancel=self.cancel,
        )
        if result.host_results.has_errors():
            err = result.host_results.get_error_host_map()[monitor_host.node_id]
            log.error("[%s] monitoring host setup failed: %s", monitor_host.node_id, err)
            self.bus.emit(MonitoringFailed(node_id=monitor_host.node_id, error=str(err), **self.ctx))
            return result

        self.bus.emit(ScrapeTargetsPushed(node_id=monitor_host.node_id, targets=len(targets), **self.ctx))
        if fresh:
            result.facility = facility.activate(monitor_host.node_id)
            self.bus.emit(
                MonitoringStateChanged(
                    previous=facility.describe(),
                    current=result.facility.describe(),
                    node_id=monitor_host.node_id,
                    **self.ctx,
                )
            )

        result.agent_results = self.configure_agents(agent_hosts)
        return result
