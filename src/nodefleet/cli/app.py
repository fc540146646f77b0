# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from pydantic import ValidationError

from nodefleet.bootstrap.fanout import CancelToken, run_per_host
from nodefleet.bootstrap.node import rpc
from nodefleet.bootstrap.node.models import Host, node_id_for
from nodefleet.cloud.registry import build_provisioner
from nodefleet.config.loader import load_request
from nodefleet.config.paths import AppPaths
from nodefleet.errors import AllocationError, NodefleetError, ProvisionFailedError
from nodefleet.logging.log import init_logging
from nodefleet.observers.console import ConsoleObserver
from nodefleet.observers.jsonfile import JsonFileObserver
from nodefleet.observers.logger import LoggerObserver
from nodefleet.provision.orchestrator import ClusterProvisioner
from nodefleet.topology.store import TopologyStore

# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="nodefleet: provision and bootstrap blockchain node clusters")

HOST_PREFIX = {"aws": "aws_node", "gcp": "gcp_node"}


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def build_overrides(
    *,
    cluster_name: str,
    provider: Optional[str],
    regions: List[str],
    num_validators: List[int],
    num_apis: List[int],
    network: Optional[str],
    use_static_ip: Optional[bool],
    with_monitoring: bool,
    monitoring_region: Optional[str],
    latest: bool,
    latest_pre_release: bool,
    custom_version: Optional[str],
    max_workers: Optional[int],
) -> Dict[str, Any]:
    """
    Translate create flags into request overrides. Regions and counts are
    paired by position; a single count applies to every region.
    """
    chosen = [flag for flag in (latest, latest_pre_release, custom_version) if flag]
    if len(chosen) > 1:
        raise typer.BadParameter("only one client version option can be given")

    overrides: Dict[str, Any] = {"cluster_name": cluster_name}
    if provider:
        overrides["provider"] = provider
    if network:
        overrides["network"] = network
    if use_static_ip is not None:
        overrides["use_static_ip"] = use_static_ip
    if max_workers:
        overrides["max_workers"] = max_workers

    if regions:
        if len(num_validators) == 1:
            num_validators = num_validators * len(regions)
        if len(num_validators) != len(regions):
            raise typer.BadParameter("number of regions and number of validator counts do not match")
        if num_apis and len(num_apis) == 1:
            num_apis = num_apis * len(regions)
        if num_apis and len(num_apis) != len(regions):
            raise typer.BadParameter("number of regions and number of API node counts do not match")
        overrides["regions"] = [
            {"name": r, "validators": n, "api_nodes": num_apis[i] if num_apis else 0}
            for i, (r, n) in enumerate(zip(regions, num_validators))
        ]

    if with_monitoring:
        overrides["monitoring"] = {"enabled": True, "region": monitoring_region}
    elif monitoring_region:
        raise typer.BadParameter("--monitoring-region requires --with-monitoring")

    if custom_version:
        overrides["client_version"] = {"mode": "custom", "version": custom_version}
    elif latest_pre_release:
        overrides["client_version"] = {"mode": "latest-prerelease"}
    elif latest:
        overrides["client_version"] = {"mode": "latest"}
    return overrides


def _observers(logger, log_path: Path) -> list:
    # the event stream sits next to the run's trace log
    return [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(log_path.with_suffix(".jsonl")),
    ]


# ------------------------------------------------------------------------------
# create
# ------------------------------------------------------------------------------

@app.command()
def create(
    cluster_name: str = typer.Argument(..., help="Name of the cluster to create or extend"),
    aws: bool = typer.Option(False, "--aws", help="Create instances on AWS"),
    gcp: bool = typer.Option(False, "--gcp", help="Create instances on GCP"),
    region: Optional[List[str]] = typer.Option(None, "--region", help="Region to create instances in (repeatable)"),
    num_validators: Optional[List[int]] = typer.Option(None, "--num-validators", help="Validator count per region (repeatable)"),
    num_apis: Optional[List[int]] = typer.Option(None, "--num-apis", help="API node count per region, devnet only (repeatable)"),
    network: Optional[str] = typer.Option(None, "--network", help="fuji, devnet or mainnet"),
    use_static_ip: Optional[bool] = typer.Option(None, "--use-static-ip/--no-use-static-ip"),
    with_monitoring: bool = typer.Option(False, "--with-monitoring", help="Set up a dedicated monitoring instance"),
    monitoring_region: Optional[str] = typer.Option(None, "--monitoring-region"),
    latest_client_version: bool = typer.Option(False, "--latest-client-version"),
    latest_client_pre_release_version: bool = typer.Option(False, "--latest-client-pre-release-version"),
    custom_client_version: Optional[str] = typer.Option(None, "--custom-client-version"),
    config: Optional[Path] = typer.Option(None, "--config", help="Provisioning request YAML"),
    home: Optional[Path] = typer.Option(None, "--home", help="State directory (default ~/.nodefleet)"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", help="Concurrent hosts per phase"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Allocate instances, bootstrap them, and record the cluster."""
    if aws and gcp:
        raise typer.BadParameter("--aws and --gcp are mutually exclusive")

    paths = AppPaths.default(home)
    logger, run_id, log_path = init_logging(base_dir=paths.logs_dir, cluster=cluster_name, verbose=debug)

    typer.echo("")
    typer.secho("nodefleet create", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    try:
        request = load_request(
            config,
            build_overrides(
                cluster_name=cluster_name,
                provider="aws" if aws else "gcp" if gcp else None,
                regions=region or [],
                num_validators=num_validators or [],
                num_apis=num_apis or [],
                network=network,
                use_static_ip=use_static_ip,
                with_monitoring=with_monitoring,
                monitoring_region=monitoring_region,
                latest=latest_client_version,
                latest_pre_release=latest_client_pre_release_version,
                custom_version=custom_client_version,
                max_workers=max_workers,
            ),
        )
    except ValidationError as e:
        typer.secho(f"invalid request: {e}", fg="red")
        raise typer.Exit(code=2)

    logger.debug("request: %s", request.model_dump_json())
    cancel = CancelToken()
    try:
        provisioner = build_provisioner(request, paths)
        orchestrator = ClusterProvisioner(
            request,
            provisioner,
            TopologyStore(paths),
            paths,
            observers=_observers(logger, log_path),
            cancel=cancel,
            run_id=run_id,
        )
        report = orchestrator.run()
    except KeyboardInterrupt:
        cancel.cancel()
        typer.secho("cancelled", fg="red")
        raise typer.Exit(code=130)
    except AllocationError as e:
        typer.secho(str(e), fg="red")
        raise typer.Exit(code=1)
    except NodefleetError as e:
        logger.error("%s", e)
        typer.secho(str(e), fg="red")
        raise typer.Exit(code=1)

    try:
        report.raise_for_failures()
    except ProvisionFailedError as e:
        typer.secho(report.format_summary(), fg="red")
        typer.secho(str(e), fg="red")
        raise typer.Exit(code=1)
    typer.secho(report.format_summary(), fg="green")


# ------------------------------------------------------------------------------
# list / status
# ------------------------------------------------------------------------------

@app.command("list")
def list_clusters(
    home: Optional[Path] = typer.Option(None, "--home"),
):
    """Show recorded clusters."""
    store = TopologyStore(AppPaths.default(home))
    clusters = store.list_clusters()
    if not clusters:
        typer.echo("no clusters recorded")
        return
    for name, topo in sorted(clusters.items()):
        monitor = f" monitoring={topo.monitoring_instance}" if topo.monitoring_instance else ""
        if topo.monitoring_instance and topo.monitoring_state == "pending":
            monitor += " (setup unfinished)"
        typer.echo(
            f"{name}: network={topo.network} validators={len(topo.validators())} "
            f"api={len(topo.api_nodes)}{monitor}"
        )


def cluster_hosts(store: TopologyStore, cluster_name: str, ssh_user: str = "ubuntu") -> List[Host]:
    topo = store.load(cluster_name)
    if topo is None:
        raise NodefleetError(f"cluster {cluster_name} is not recorded")
    hosts: List[Host] = []
    api = set(topo.api_nodes)
    for iid in topo.nodes:
        cfg = store.load_node_config(iid)
        if cfg is None or not cfg.public_ip:
            raise NodefleetError(f"no cloud config recorded for {iid}")
        hosts.append(
            Host(
                node_id=node_id_for(HOST_PREFIX.get(cfg.cloud_service, cfg.cloud_service), iid),
                address=cfg.public_ip,
                username=ssh_user,
                pkey_path=Path(cfg.cert_path) if cfg.cert_path else None,
                is_api=iid in api,
                region=cfg.region,
            )
        )
    return hosts


@app.command()
def status(
    cluster_name: str = typer.Argument(...),
    home: Optional[Path] = typer.Option(None, "--home"),
    port: int = typer.Option(9650, "--port", help="Client API port on the nodes"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers"),
):
    """Ask every node whether its client has finished bootstrapping."""
    store = TopologyStore(AppPaths.default(home))
    try:
        hosts = cluster_hosts(store, cluster_name)
    except NodefleetError as e:
        typer.secho(str(e), fg="red")
        raise typer.Exit(code=1)

    def _probe(host: Host, cancel: CancelToken) -> bool:
        try:
            return rpc.is_bootstrapped(host.connect(), port=port)
        finally:
            host.close()

    results = run_per_host(hosts, _probe, phase="status", max_workers=max_workers)
    unhealthy = False
    for o in results.outcomes():
        if not o.ok:
            unhealthy = True
            typer.secho(f"{o.node_id}: {o.describe()}", fg="red")
        elif o.result:
            typer.secho(f"{o.node_id}: bootstrapped", fg="green")
        else:
            unhealthy = True
            typer.secho(f"{o.node_id}: not bootstrapped yet", fg="yellow")
    if unhealthy:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
