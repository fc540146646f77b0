# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/topology/models.py

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MonitoringRecord = Literal["pending", "active"]


class ClusterTopology(BaseModel):
    """
    One cluster's record. *revision* counts writes to this cluster only;
    runs on the same cluster name are checked against it.
    """
    model_config = ConfigDict(extra="ignore")

    network: Optional[str] = None
    nodes: List[str] = Field(default_factory=list)
    api_nodes: List[str] = Field(default_factory=list)
    monitoring_instance: Optional[str] = None
    monitoring_state: Optional[MonitoringRecord] = None   # unset on older records: treated as active
    revision: int = 0

    def validators(self) -> List[str]:
        api = set(self.api_nodes)
        return [n for n in self.nodes if n not in api]


class ClustersConfig(BaseModel):
    """
    Contents of clusters.json. Rewritten whole on every change; revision
    goes up by one per write.
    """
    model_config = ConfigDict(extra="ignore")

    revision: int = 0
    key_pairs: Dict[str, str] = Field(default_factory=dict)   # key pair name -> cert path
    clusters: Dict[str, ClusterTopology] = Field(default_factory=dict)


class NodeCloudConfig(BaseModel):
    """
    Per-instance record kept next to the node's credentials.
    """
    model_config = ConfigDict(extra="ignore")

    node_id: str                 # cloud instance id
    region: str
    image_id: str = ""
    key_pair: str = ""
    cert_path: str = ""
    security_group: str = ""
    public_ip: str = ""
    cloud_service: str
    use_static_ip: bool = True
    is_monitor: bool = False
