# src/nodefleet/cloud/interface.py

from __future__ import annotations
from typing import Dict, Protocol, Sequence

from .models import RegionAllocation


class CloudProvisioner(Protocol):
    """
    One cloud provider. The orchestrator only talks to this contract;
    every provider-specific branch lives behind it.
    """

    name: str           # 'aws' / 'gcp'
    host_prefix: str    # inventory id prefix, e.g. 'aws_node'

    def allocate(self, region: str, count: int, *, static_ip: bool, role: str = "node") -> RegionAllocation:
        """
        Create *count* instances in *region* and wait until they run.
        Raises AllocationError on any provider failure.
        """
        ...

    def get_public_ips(self, region: str, instance_ids: Sequence[str]) -> Dict[str, str]:
        ...

    def add_monitoring_firewall_rule(
        self,
        region: str,
        allocation: RegionAllocation,
        monitoring_ip: str,
        ports: Sequence[int],
    ) -> None:
        """Let the monitoring host reach *ports* on the region's instances."""
        ...
