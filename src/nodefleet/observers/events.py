# src/nodefleet/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single provisioning run
    cluster: str      # cluster name
    network: Optional[str]  # fuji/devnet/mainnet

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(cluster: str, network: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
        "network": network,
    }


# ---------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class AllocationStarted(BaseEvent):
    provider: str
    regions: List[str]

@dataclass(frozen=True)
class RegionAllocated(BaseEvent):
    provider: str
    region: str
    instance_ids: List[str]
    api_instance_ids: List[str]

@dataclass(frozen=True)
class AllocationFailed(BaseEvent):
    provider: str
    error: str


# ---------------------------------------------------------------------
# Readiness gate
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HostWaitStarted(BaseEvent):
    node_id: str
    address: str
    timeout_s: float

@dataclass(frozen=True)
class HostReady(BaseEvent):
    node_id: str
    attempts: int
    elapsed_s: float

@dataclass(frozen=True)
class HostUnreachable(BaseEvent):
    node_id: str
    attempts: int
    error: str


# ---------------------------------------------------------------------
# Bootstrap pipeline
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    node_id: str
    stage: str

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    node_id: str
    stage: str
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    node_id: str
    stage: str
    error: str

@dataclass(frozen=True)
class NodeBootstrapped(BaseEvent):
    node_id: str
    stages: List[str]


# ---------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class MonitoringStateChanged(BaseEvent):
    previous: str
    current: str
    node_id: Optional[str] = None

@dataclass(frozen=True)
class ScrapeTargetsPushed(BaseEvent):
    node_id: str
    targets: int

@dataclass(frozen=True)
class AgentConfigured(BaseEvent):
    node_id: str

@dataclass(frozen=True)
class MonitoringFailed(BaseEvent):
    node_id: str
    error: str


# ---------------------------------------------------------------------
# Topology & summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TopologyUpdated(BaseEvent):
    nodes: int
    monitoring_instance: Optional[str] = None

@dataclass(frozen=True)
class ProvisionSummary(BaseEvent):
    ok: int
    failed: int
    failed_nodes: List[str]
