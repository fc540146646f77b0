# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/inventory.py

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from nodefleet.bootstrap.node.models import Host, node_id_for
from nodefleet.cloud.interface import CloudProvisioner
from nodefleet.cloud.models import ClusterAllocation, RegionAllocation
from nodefleet.config.models import ProvisionRequest
from nodefleet.errors import AllocationError
from nodefleet.utils.templates import TemplateRenderer

log = logging.getLogger("nodefleet")

TEMPLATES_DIR = Path(__file__).parent / "templates"
VALIDATORS_GROUP = "validators"
API_GROUP = "api"
MONITORING_GROUP = "monitoring"


class BuiltInventory(NamedTuple):
    allocation: ClusterAllocation
    hosts: List[Host]
    public_ips: Dict[str, str]     # instance id -> address


class InventoryBuilder:
    """
    Turns per-region node counts into live instances and one flat host list.
    Any provider error aborts the whole build; nothing is returned partially.
    """

    def __init__(self, provisioner: CloudProvisioner):
        self.provisioner = provisioner

    def _make_host(
        self,
        request: ProvisionRequest,
        ra: RegionAllocation,
        instance_id: str,
        address: str,
        *,
        is_api: bool = False,
        is_monitor: bool = False,
    ) -> Host:
        return Host(
            node_id=node_id_for(self.provisioner.host_prefix, instance_id),
            address=address,
            username=request.ssh_user,
            pkey_path=Path(ra.cert_path) if ra.cert_path else None,
            ssh_common_args=request.ssh_common_args,
            is_api=is_api,
            is_monitor=is_monitor,
            region=ra.region,
        )

    def _addresses(self, region: str, ra: RegionAllocation, static_ip: bool) -> Dict[str, str]:
        if static_ip:
            ips = ra.public_ip_map()
        else:
            ips = self.provisioner.get_public_ips(region, ra.instance_ids)
        missing = [i for i in ra.instance_ids if not ips.get(i)]
        if missing:
            raise AllocationError(self.provisioner.name, region, f"no address for {', '.join(missing)}")
        return ips

    def build(self, request: ProvisionRequest) -> BuiltInventory:
        allocation = ClusterAllocation(provider=self.provisioner.name)
        public_ips: Dict[str, str] = {}

        for region in request.regions:
            ra = self.provisioner.allocate(region.name, region.total, static_ip=request.use_static_ip)
            if len(ra.instance_ids) != region.total:
                raise AllocationError(
                    self.provisioner.name,
                    region.name,
                    f"asked for {region.total} instance(s), got {len(ra.instance_ids)}",
                )
            # the last api_nodes instances of a region serve API traffic
            ra.api_instance_ids = ra.instance_ids[len(ra.instance_ids) - region.api_nodes:] if region.api_nodes else []
            ra.validate(self.provisioner.name, expected_api=region.api_nodes)
            allocation.add(ra)
            public_ips.update(self._addresses(region.name, ra, request.use_static_ip))

        allocation.validate()

        hosts: List[Host] = []
        for ra in allocation.regions.values():
            api = set(ra.api_instance_ids)
            for iid in ra.instance_ids:
                hosts.append(self._make_host(request, ra, iid, public_ips[iid], is_api=iid in api))

        log.info(
            "allocated %d instance(s) across %d region(s) on %s",
            len(hosts),
            len(allocation.regions),
            self.provisioner.name,
        )
        return BuiltInventory(allocation=allocation, hosts=hosts, public_ips=public_ips)

    def allocate_monitoring(self, request: ProvisionRequest, region: str) -> Tuple[RegionAllocation, Host]:
        """Allocate the single dedicated monitoring instance."""
        ra = self.provisioner.allocate(region, 1, static_ip=request.use_static_ip, role="monitoring")
        if len(ra.instance_ids) != 1:
            raise AllocationError(self.provisioner.name, region, "expected exactly one monitoring instance")
        ips = self._addresses(region, ra, request.use_static_ip)
        if not ra.public_ips:
            ra.public_ips = [ips[ra.instance_ids[0]]]
        host = self._make_host(request, ra, ra.instance_ids[0], ips[ra.instance_ids[0]], is_monitor=True)
        return ra, host


# ------------------ inventory files ------------------

def _groups(hosts: Sequence[Host]) -> Dict[str, List[Host]]:
    groups: Dict[str, List[Host]] = {}
    for h in hosts:
        if h.is_monitor:
            group = MONITORING_GROUP
        elif h.is_api:
            group = API_GROUP
        else:
            group = VALIDATORS_GROUP
        groups.setdefault(group, []).append(h)
    return groups


def write_inventory(
    path: Path,
    hosts: Sequence[Host],
    *,
    cluster_name: str = "",
    network: str = "",
    renderer: Optional[TemplateRenderer] = None,
) -> Path:
    """
    Write an ansible-style INI inventory for *hosts*. Existing entries for
    the same node ids are replaced, others are kept.
    """
    path = Path(path)
    merged: Dict[str, Host] = {h.node_id: h for h in read_inventory(path)}
    for h in hosts:
        merged[h.node_id] = h

    renderer = renderer or TemplateRenderer(TEMPLATES_DIR)
    text = renderer.render(
        "hosts.ini.j2",
        {"cluster_name": cluster_name, "network": network, "groups": _groups(list(merged.values()))},
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    log.debug("wrote inventory %s (%d host(s))", path, len(merged))
    return path


def _parse_host_line(line: str, section: str) -> Optional[Host]:
    parts = shlex.split(line)
    if not parts:
        return None
    params = dict(p.split("=", 1) for p in parts[1:] if "=" in p)
    address = params.get("ansible_host")
    if not address:
        return None
    key = params.get("ansible_ssh_private_key_file") or None
    return Host(
        node_id=parts[0],
        address=address,
        username=params.get("ansible_user", "ubuntu"),
        pkey_path=Path(key) if key else None,
        ssh_common_args=params.get("ansible_ssh_common_args", ""),
        is_api=section == API_GROUP,
        is_monitor=section == MONITORING_GROUP,
    )


def read_inventory(path: Path) -> List[Host]:
    """
    Parse an inventory written by write_inventory. A missing file is an
    empty inventory.
    """
    path = Path(path)
    hosts: List[Host] = []
    if not path.exists():
        return hosts

    section = ""
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith(";"):
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip()
            continue
        host = _parse_host_line(line, section)
        if host is not None:
            hosts.append(host)
    return hosts
