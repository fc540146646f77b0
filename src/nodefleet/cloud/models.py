# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/cloud/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from nodefleet.errors import AllocationError


@dataclass
class RegionAllocation:
    """
    What the provider handed back for one region.
    """
    region: str
    instance_ids: List[str]
    public_ips: List[str] = field(default_factory=list)   # index-aligned with instance_ids when static
    image_id: str = ""
    key_pair: str = ""
    security_group: str = ""
    cert_path: str = ""
    api_instance_ids: List[str] = field(default_factory=list)

    def public_ip_map(self) -> Dict[str, str]:
        return dict(zip(self.instance_ids, self.public_ips))

    def validator_ids(self) -> List[str]:
        api = set(self.api_instance_ids)
        return [i for i in self.instance_ids if i not in api]

    def validate(self, provider: str, expected_api: Optional[int] = None) -> None:
        if len(set(self.instance_ids)) != len(self.instance_ids):
            raise AllocationError(provider, self.region, f"duplicate instance ids {self.instance_ids}")
        missing = [i for i in self.api_instance_ids if i not in self.instance_ids]
        if missing:
            raise AllocationError(provider, self.region, f"API instances {missing} not in allocation")
        if expected_api is not None and len(self.api_instance_ids) != expected_api:
            raise AllocationError(
                provider,
                self.region,
                f"expected {expected_api} API instance(s), got {len(self.api_instance_ids)}",
            )
        if self.public_ips and len(self.public_ips) != len(self.instance_ids):
            raise AllocationError(provider, self.region, "public IPs do not line up with instance ids")


@dataclass
class ClusterAllocation:
    provider: str
    regions: Dict[str, RegionAllocation] = field(default_factory=dict)   # request order

    def add(self, allocation: RegionAllocation) -> None:
        if allocation.region in self.regions:
            raise AllocationError(self.provider, allocation.region, "region allocated twice")
        self.regions[allocation.region] = allocation

    def all_instance_ids(self) -> List[str]:
        return [i for ra in self.regions.values() for i in ra.instance_ids]

    def api_instance_ids(self) -> List[str]:
        return [i for ra in self.regions.values() for i in ra.api_instance_ids]

    def region_of(self, instance_id: str) -> Optional[str]:
        for name, ra in self.regions.items():
            if instance_id in ra.instance_ids:
                return name
        return None

    def validate(self) -> None:
        seen: Dict[str, str] = {}
        for name, ra in self.regions.items():
            for iid in ra.instance_ids:
                if iid in seen:
                    raise AllocationError(
                        self.provider, name, f"instance {iid} also allocated in region {seen[iid]}"
                    )
                seen[iid] = name
