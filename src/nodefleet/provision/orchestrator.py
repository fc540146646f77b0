# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/provision/orchestrator.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from nodefleet.bootstrap.fanout import CancelToken
from nodefleet.bootstrap.inventory import InventoryBuilder, read_inventory, write_inventory
from nodefleet.bootstrap.monitoring.manager import GRAFANA_PORT, MonitoringManager, MonitoringResult
from nodefleet.bootstrap.monitoring.state import MonitoringFacility
from nodefleet.bootstrap.node.credentials import CredentialSource, DirectoryCredentialSource
from nodefleet.bootstrap.node.models import Host, NodeBootstrapOptions, node_id_for
from nodefleet.bootstrap.node.ssh_bootstrapper import SshBootstrapper
from nodefleet.bootstrap.readiness import wait_for_hosts
from nodefleet.bootstrap.results import NodeOutcome, NodeResults
from nodefleet.cloud.interface import CloudProvisioner
from nodefleet.cloud.models import ClusterAllocation, RegionAllocation
from nodefleet.config.models import ProvisionRequest
from nodefleet.config.paths import AppPaths
from nodefleet.errors import AllocationError, MonitoringError, ProvisionFailedError, StepError
from nodefleet.observers.dispatcher import EventBus
from nodefleet.observers.events import (
    AllocationFailed,
    AllocationStarted,
    ProvisionSummary,
    RegionAllocated,
    TopologyUpdated,
    new_ctx,
)
from nodefleet.release.versions import resolve_client_version
from nodefleet.topology.models import NodeCloudConfig
from nodefleet.topology.store import TopologyStore
from nodefleet.utils.ssh_runner import Connector, open_ssh

log = logging.getLogger("nodefleet")

SEPARATOR = "=" * 72


def _cause(outcome: NodeOutcome) -> str:
    err = outcome.error
    if isinstance(err, StepError):
        return f"{err.stage}: {err.cause}"
    return f"{outcome.stage}: {err}"


@dataclass
class ProvisionReport:
    """
    Everything one run produced. Built only after every join barrier.
    """
    request: ProvisionRequest
    paths: AppPaths
    client_version: str
    allocation: ClusterAllocation
    hosts: List[Host]
    public_ips: Dict[str, str]
    readiness: NodeResults
    bootstrap: NodeResults
    monitoring: Optional[MonitoringResult] = None
    monitoring_host: Optional[Host] = None
    topology_revision: Optional[int] = None
    notes: List[str] = field(default_factory=list)

    def failed_hosts(self) -> Dict[str, str]:
        """Main hosts that did not come up: node id -> 'stage: cause'."""
        failed: Dict[str, str] = {}
        for phase in (self.readiness, self.bootstrap):
            for o in phase.outcomes():
                if not o.ok:
                    failed[o.node_id] = _cause(o)
        return failed

    def monitoring_failures(self) -> Dict[str, str]:
        if self.monitoring is None:
            return {}
        failed: Dict[str, str] = {}
        for res in (self.monitoring.host_results, self.monitoring.agent_results):
            if res is None:
                continue
            for o in res.outcomes():
                if not o.ok:
                    failed[o.node_id] = f"monitoring/{_cause(o)}"
        return failed

    def succeeded_hosts(self) -> List[str]:
        return self.bootstrap.succeeded_nodes()

    @property
    def ok(self) -> bool:
        return not self.failed_hosts() and not self.monitoring_failures()

    def raise_for_failures(self) -> None:
        failed = {**self.monitoring_failures(), **self.failed_hosts()}
        if failed:
            raise ProvisionFailedError(failed, report=self)

    def format_summary(self) -> str:
        lines: List[str] = [SEPARATOR]
        if self.ok:
            lines.append(f"CLUSTER {self.request.cluster_name} NODE(S) SUCCESSFULLY SET UP ({self.client_version})")
        else:
            lines.append(f"CLUSTER {self.request.cluster_name}: SOME NODE(S) FAILED ({self.client_version})")
        lines.append(SEPARATOR)

        ok = set(self.succeeded_hosts())
        by_cloud = {h.cloud_id: h for h in self.hosts}
        for region, ra in self.allocation.regions.items():
            lines.append("")
            lines.append(f"Region: [{region}]")
            if ra.api_instance_ids:
                lines.append(f"API endpoint(s) for region [{region}]:")
                for iid in ra.api_instance_ids:
                    lines.append(f"    http://{self.public_ips.get(iid, '?')}:{self.request.client.api_port}")
            if ra.cert_path:
                lines.append(f"Keep your ssh private key at {ra.cert_path}; the instances are unreachable without it")
            for iid in ra.instance_ids:
                host = by_cloud.get(iid)
                node_id = host.node_id if host else iid
                role = "[API] " if iid in ra.api_instance_ids else ""
                status = "OK" if node_id in ok else "FAILED"
                lines.append(f"> {role}Cloud Instance ID: {iid} | Public IP: {self.public_ips.get(iid, '')} | {status}")
                lines.append(f"  staking credentials: {self.paths.node_dir(iid)}")

        failed = {**self.failed_hosts(), **self.monitoring_failures()}
        if failed:
            lines.append("")
            lines.append(SEPARATOR)
            lines.append(f"Failed host(s) ({len(failed)}):")
            for node_id in sorted(failed):
                lines.append(f"  {node_id}: {failed[node_id]}")

        if self.monitoring_host is not None:
            lines.append("")
            lines.append(SEPARATOR)
            lines.append("Monitoring dashboard:")
            lines.append(f"    http://{self.monitoring_host.address}:{GRAFANA_PORT}/dashboards")
        lines.extend(self.notes)
        return "\n".join(lines)


class ClusterProvisioner:
    """
    Runs one provisioning request end to end:

        allocate -> inventories -> readiness gate -> bootstrap
                 -> monitoring (optional) -> topology

    Allocation errors are fatal. Everything after is per host: failures are
    collected and only looked at once all workers of a phase have joined.
    """

    def __init__(
        self,
        request: ProvisionRequest,
        provisioner: CloudProvisioner,
        store: TopologyStore,
        paths: AppPaths,
        *,
        connector: Connector = open_ssh,
        credentials: Optional[CredentialSource] = None,
        observers: Optional[Sequence] = None,
        cancel: Optional[CancelToken] = None,
        client_version: Optional[str] = None,
        cli_config_path: Optional[Path] = None,
        run_id: Optional[str] = None,
    ):
        self.request = request
        self.provisioner = provisioner
        self.store = store
        self.paths = paths
        self.connector = connector
        self.credentials = credentials or DirectoryCredentialSource(paths, request.client.staking_dir)
        self.bus = EventBus(list(observers or []))
        self.cancel = cancel or CancelToken()
        self.client_version = client_version
        self.cli_config_path = cli_config_path
        self.ctx = new_ctx(cluster=request.cluster_name, network=request.network, run_id=run_id)

    # ------------------ phases ------------------

    def _recorded_monitor_host(self, cloud_id: str) -> Host:
        cfg = self.store.load_node_config(cloud_id)
        if cfg is None or not cfg.public_ip:
            raise MonitoringError(f"monitoring instance {cloud_id} is recorded but its cloud config is missing")
        return Host(
            node_id=node_id_for(self.provisioner.host_prefix, cloud_id),
            address=cfg.public_ip,
            username=self.request.ssh_user,
            pkey_path=Path(cfg.cert_path) if cfg.cert_path else None,
            ssh_common_args=self.request.ssh_common_args,
            is_monitor=True,
            region=cfg.region,
        )

    def _allocate(
        self,
        facility: MonitoringFacility,
        monitoring_wanted: bool,
        recorded_host: Optional[Host],
    ) -> Tuple[
        ClusterAllocation,
        List[Host],
        Dict[str, str],
        MonitoringFacility,
        Optional[Host],
        Optional[RegionAllocation],
    ]:
        req = self.request
        builder = InventoryBuilder(self.provisioner)
        self.bus.emit(
            AllocationStarted(provider=self.provisioner.name, regions=[r.name for r in req.regions], **self.ctx)
        )
        try:
            allocation, hosts, public_ips = builder.build(req)
            for region, ra in allocation.regions.items():
                self.bus.emit(
                    RegionAllocated(
                        provider=self.provisioner.name,
                        region=region,
                        instance_ids=list(ra.instance_ids),
                        api_instance_ids=list(ra.api_instance_ids),
                        **self.ctx,
                    )
                )

            monitor_host: Optional[Host] = None
            monitor_alloc: Optional[RegionAllocation] = None
            if monitoring_wanted:
                if recorded_host is not None:
                    monitor_host = recorded_host
                else:
                    monitor_alloc, monitor_host = builder.allocate_monitoring(req, req.monitoring_region)
                    facility = facility.allocate(monitor_host.node_id)
                ports = (req.client.api_port, req.client.machine_metrics_port)
                for region, ra in allocation.regions.items():
                    self.provisioner.add_monitoring_firewall_rule(region, ra, monitor_host.address, ports)
        except AllocationError as e:
            log.error("allocation failed: %s", e)
            self.bus.emit(AllocationFailed(provider=self.provisioner.name, error=str(e), **self.ctx))
            raise
        return allocation, hosts, public_ips, facility, monitor_host, monitor_alloc

    def _options(self, client_version: str, metrics_enabled: bool) -> NodeBootstrapOptions:
        req = self.request
        return NodeBootstrapOptions(
            client_version=client_version,
            client=req.client,
            network=req.network,
            metrics_enabled=metrics_enabled,
            install_cli_from_source=req.install_cli_from_source,
            cli_branch=req.cli_branch,
            go_version=req.go_version,
            cli_config_path=self.cli_config_path,
            timeouts=req.timeouts,
        )

    def _record_topology(
        self,
        base_revision: int,
        allocation: ClusterAllocation,
        public_ips: Dict[str, str],
        monitor_host: Optional[Host],
        monitor_alloc: Optional[RegionAllocation],
        facility: MonitoringFacility,
    ) -> int:
        req = self.request
        nodes: Dict[str, bool] = {}
        key_pairs: Dict[str, str] = {}
        for region, ra in allocation.regions.items():
            api = set(ra.api_instance_ids)
            if ra.key_pair:
                key_pairs[ra.key_pair] = ra.cert_path
            for iid in ra.instance_ids:
                nodes[iid] = iid in api
                self.store.save_node_config(
                    NodeCloudConfig(
                        node_id=iid,
                        region=region,
                        image_id=ra.image_id,
                        key_pair=ra.key_pair,
                        cert_path=ra.cert_path,
                        security_group=ra.security_group,
                        public_ip=public_ips.get(iid, ""),
                        cloud_service=self.provisioner.name,
                        use_static_ip=req.use_static_ip,
                    )
                )

        monitoring_instance = monitor_host.cloud_id if monitor_host is not None else None
        if monitor_alloc is not None and monitor_host is not None:
            self.store.save_node_config(
                NodeCloudConfig(
                    node_id=monitor_host.cloud_id,
                    region=monitor_alloc.region,
                    image_id=monitor_alloc.image_id,
                    key_pair=monitor_alloc.key_pair,
                    cert_path=monitor_alloc.cert_path,
                    security_group=monitor_alloc.security_group,
                    public_ip=monitor_host.address,
                    cloud_service=self.provisioner.name,
                    use_static_ip=req.use_static_ip,
                    is_monitor=True,
                )
            )
            if monitor_alloc.key_pair:
                key_pairs.setdefault(monitor_alloc.key_pair, monitor_alloc.cert_path)

        cfg = self.store.record_cluster(
            req.cluster_name,
            req.network,
            nodes,
            monitoring_instance=monitoring_instance,
            monitoring_state=facility.state.value,
            key_pairs=key_pairs,
            expected_revision=base_revision,
        )
        self.bus.emit(TopologyUpdated(nodes=len(nodes), monitoring_instance=monitoring_instance, **self.ctx))
        return cfg.revision

    # ------------------ entry point ------------------

    def run(self) -> ProvisionReport:
        req = self.request
        t = req.timeouts

        base_revision = self.store.cluster_revision(req.cluster_name)
        topo = self.store.load(req.cluster_name)
        recorded = topo.monitoring_instance if topo else None
        facility = MonitoringFacility.from_recorded(
            node_id_for(self.provisioner.host_prefix, recorded) if recorded else None,
            topo.monitoring_state if topo else None,
        )
        # a cluster that already has a monitoring host keeps feeding it
        monitoring_wanted = req.monitoring.enabled or facility.has_host
        metrics_enabled = req.machine_metrics(monitoring_wanted)
        # resolved before allocating: a broken record must not leave instances behind
        recorded_host = self._recorded_monitor_host(recorded) if recorded else None

        client_version = self.client_version or resolve_client_version(req)

        allocation, hosts, public_ips, facility, monitor_host, monitor_alloc = self._allocate(
            facility, monitoring_wanted, recorded_host
        )

        inventory_path = self.paths.inventory_file(req.cluster_name)
        previous_hosts = [h for h in read_inventory(inventory_path) if not h.is_monitor]
        write_inventory(inventory_path, hosts, cluster_name=req.cluster_name, network=req.network)
        if monitor_host is not None:
            write_inventory(
                self.paths.monitoring_inventory_file(req.cluster_name),
                [monitor_host],
                cluster_name=req.cluster_name,
                network=req.network,
            )

        # readiness gate
        ready = wait_for_hosts(
            hosts,
            connector=self.connector,
            timeout_s=t.ssh_ready_s,
            poll_interval_s=t.poll_interval_s,
            connect_timeout_s=t.connect_s,
            max_workers=req.max_workers,
            cancel=self.cancel,
            bus=self.bus,
            run_ctx=self.ctx,
        )
        reachable = [h for h in hosts if not ready.has_node_error(h.node_id)]
        if ready.has_errors():
            log.warning("unreachable host(s): %s", ", ".join(ready.failed_nodes()))

        # bootstrap
        bootstrapper = SshBootstrapper(
            self.credentials,
            connector=self.connector,
            bus=self.bus,
            run_ctx=self.ctx,
            max_workers=req.max_workers,
            cancel=self.cancel,
        )
        boot = bootstrapper.bootstrap(reachable, self._options(client_version, metrics_enabled))
        bootstrapped = [h for h in reachable if not boot.has_node_error(h.node_id)]
        log.info("bootstrap: %s", boot.summary())

        # monitoring, strictly after the bootstrap barrier
        monitoring: Optional[MonitoringResult] = None
        if monitor_host is not None:
            current = {h.node_id for h in hosts}
            earlier = [h for h in previous_hosts if h.node_id not in current]
            targets = [h.address for h in earlier] + [h.address for h in bootstrapped]
            agents = list(bootstrapped)
            if facility.is_pending:
                # a monitoring host new to the cluster has never been opened to the earlier hosts
                agents = earlier + agents
            manager = MonitoringManager(
                client=req.client,
                paths=self.paths,
                timeouts=t,
                connector=self.connector,
                machine_metrics=metrics_enabled,
                bus=self.bus,
                run_ctx=self.ctx,
                max_workers=req.max_workers,
                cancel=self.cancel,
            )
            monitoring = manager.setup(facility, monitor_host, targets, agents)
            facility = monitoring.facility
            if facility.is_pending:
                log.warning(
                    "[%s] monitoring host left pending, the next run retries its setup", monitor_host.node_id
                )

        # topology: single writer, after every barrier
        revision = self._record_topology(
            base_revision, allocation, public_ips, monitor_host, monitor_alloc, facility
        )

        report = ProvisionReport(
            request=req,
            paths=self.paths,
            client_version=client_version,
            allocation=allocation,
            hosts=hosts,
            public_ips=public_ips,
            readiness=ready,
            bootstrap=boot,
            monitoring=monitoring,
            monitoring_host=monitor_host,
            topology_revision=revision,
        )
        failed = {**report.failed_hosts(), **report.monitoring_failures()}
        self.bus.emit(
            ProvisionSummary(
                ok=len(report.succeeded_hosts()),
                failed=len(failed),
                failed_nodes=sorted(failed),
                **self.ctx,
            )
        )
        return report
