# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/config/models.py

from __future__ import annotations

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

SEMVER_RE = re.compile(r"^v\d+\.\d+\.\d+(-[0-9A-Za-z.-]+)?$")

NetworkKind = Literal["fuji", "devnet", "mainnet"]
ProviderName = Literal["aws", "gcp"]


class RegionRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    validators: int = Field(gt=0)
    api_nodes: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.validators + self.api_nodes


class ClientVersionRequest(BaseModel):
    """
    How to pick the client version installed on the nodes.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["latest", "latest-prerelease", "custom"] = "latest"
    version: Optional[str] = None

    @model_validator(mode="after")
    def _check_custom(self) -> "ClientVersionRequest":
        if self.mode == "custom":
            if not self.version or not SEMVER_RE.match(self.version):
                raise ValueError(
                    "custom client version must be a legal semantic version (ex: v1.1.1)"
                )
        elif self.version:
            raise ValueError(f"version can only be set with mode 'custom', got mode '{self.mode}'")
        return self


class MonitoringRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    # Region for a new monitoring instance; defaults to the first requested region
    region: Optional[str] = None


class TimeoutSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    ssh_ready_s: float = 120.0
    connect_s: float = 30.0
    step_s: float = 600.0
    transfer_s: float = 120.0
    poll_interval_s: float = 5.0
    handshake_retry_pause_s: float = 5.0


class ClientSpec(BaseModel):
    """
    The blockchain client installed on every node.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "avalanchego"
    github_org: str = "ava-labs"
    github_repo: str = "avalanchego"
    api_port: int = 9650
    staking_port: int = 9651
    machine_metrics_port: int = 9100
    service: str = "avalanchego"
    staking_dir: str = "/home/ubuntu/.avalanchego/staking"
    node_config_path: str = "/home/ubuntu/.avalanchego/configs/node.json"
    cli_config_dir: str = "/home/ubuntu/.avalanche-cli"
    cli_repo_url: str = "https://github.com/ava-labs/avalanche-cli"


class ProvisionRequest(BaseModel):
    """
    Normalized request for one provisioning run. Built once, never mutated.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    cluster_name: str
    network: NetworkKind = "fuji"
    provider: ProviderName = "aws"
    regions: List[RegionRequest]
    use_static_ip: bool = True
    monitoring: MonitoringRequest = MonitoringRequest()
    client_version: ClientVersionRequest = ClientVersionRequest()
    client: ClientSpec = ClientSpec()
    metrics: Optional[bool] = None
    instance_type: Optional[str] = None
    ssh_user: str = "ubuntu"
    ssh_common_args: str = "-o IdentitiesOnly=yes -o StrictHostKeyChecking=no"
    aws_profile: Optional[str] = None
    gcp_project: Optional[str] = None
    gcp_credentials: Optional[str] = None
    cli_branch: str = "main"
    install_cli_from_source: bool = True
    go_version: str = "1.21.1"
    max_workers: Optional[int] = Field(default=None, gt=0)
    timeouts: TimeoutSettings = TimeoutSettings()

    @model_validator(mode="after")
    def _check(self) -> "ProvisionRequest":
        if not self.regions:
            raise ValueError("at least one region is required")
        names = [r.name for r in self.regions]
        if len(set(names)) != len(names):
            raise ValueError("regions provided are not unique")
        if self.network != "devnet" and any(r.api_nodes for r in self.regions):
            raise ValueError("API nodes can only be created in Devnet")
        if self.provider != "aws" and self.aws_profile:
            raise ValueError("could not use AWS profile for non AWS cloud option")
        if self.provider != "gcp" and (self.gcp_project or self.gcp_credentials):
            raise ValueError("set to use GCP project/credentials but cloud option is not GCP")
        if self.monitoring.region and not self.monitoring.enabled:
            raise ValueError("monitoring region given but monitoring is not enabled")
        return self

    @property
    def metrics_enabled(self) -> bool:
        return self.machine_metrics(self.monitoring.enabled)

    def machine_metrics(self, monitoring_active: bool) -> bool:
        """An explicit metrics setting wins; otherwise metrics follow monitoring."""
        if self.metrics is None:
            return monitoring_active
        return self.metrics

    @property
    def monitoring_region(self) -> str:
        return self.monitoring.region or self.regions[0].name

    def total_nodes(self) -> int:
        return sum(r.total for r in self.regions)
