# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# nodefleet/src/nodefleet/bootstrap/node/models.py

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from nodefleet.config.models import ClientSpec, TimeoutSettings
from nodefleet.utils.ssh_runner import Connector, SSHRunner, connect_with_retry, open_ssh

HOST_PREFIXES = ("aws_node_", "gcp_node_")


@dataclass
class Host:
    """
    A provisioned instance you will SSH into.
    """
    node_id: str                  # inventory id, e.g. 'aws_node_i-0abc'
    address: str                  # public IP
    username: str = "ubuntu"      # SSH username
    port: int = 22
    pkey_path: Optional[Path] = None
    ssh_common_args: str = ""
    is_api: bool = False          # non-staking API node
    is_monitor: bool = False
    region: Optional[str] = None
    _session: Optional[SSHRunner] = field(default=None, init=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def cloud_id(self) -> str:
        """Instance id as the cloud provider knows it."""
        for prefix in HOST_PREFIXES:
            if self.node_id.startswith(prefix):
                return self.node_id[len(prefix):]
        return self.node_id

    @property
    def session(self) -> Optional[SSHRunner]:
        return self._session

    def connect(
        self,
        connector: Connector = open_ssh,
        *,
        connect_timeout: float = 30.0,
        retry_pause_s: float = 5.0,
    ) -> SSHRunner:
        """Open (once) and cache the session for this host."""
        with self._lock:
            if self._session is None:
                self._session = connect_with_retry(
                    self,
                    connector,
                    connect_timeout=connect_timeout,
                    pause_s=retry_pause_s,
                )
            return self._session

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                try:
                    self._session.close()
                finally:
                    self._session = None

    def inventory_params(self) -> str:
        return " ".join(
            [
                f"ansible_host={self.address}",
                f"ansible_user={self.username}",
                f"ansible_ssh_private_key_file={self.pkey_path or ''}",
                f"ansible_ssh_common_args='{self.ssh_common_args}'",
            ]
        )


def node_id_for(prefix: str, instance_id: str) -> str:
    return f"{prefix}_{instance_id}"


@dataclass(frozen=True)
class FileUpload:
    local_path: Path
    remote_path: str


@dataclass
class NodeBootstrapOptions:
    """
    Options shared by every host's pipeline in one run.
    """
    client_version: str
    client: ClientSpec = field(default_factory=ClientSpec)
    network: str = "fuji"
    metrics_enabled: bool = False
    install_cli_from_source: bool = True
    cli_branch: str = "main"
    go_version: str = "1.21.1"
    # local CLI config pushed next to the client after setup-node, if present
    cli_config_path: Optional[Path] = None
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    extra_env: Dict[str, str] = field(default_factory=dict)

    @property
    def devnet(self) -> bool:
        return self.network == "devnet"


@dataclass
class StepRecord:
    stage: str
    duration_ms: int


@dataclass
class PipelineResult:
    node_id: str
    stages: List[StepRecord] = field(default_factory=list)

    @property
    def stage_names(self) -> List[str]:
        return [s.stage for s in self.stages]
