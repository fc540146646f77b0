# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/config/paths.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

STAKER_CERT_FILE = "staker.crt"
STAKER_KEY_FILE = "staker.key"
SIGNER_KEY_FILE = "signer.key"
NODE_CLOUD_CONFIG_FILE = "node_cloud_config.json"
NODE_CONFIG_FILE = "node.json"
MONITORING_DIR = "monitoring"


def _default_home() -> Path:
    env = os.environ.get("NODEFLEET_HOME")
    if env:
        return Path(env)
    return Path.home() / ".nodefleet"


@dataclass(frozen=True)
class AppPaths:
    """
    On-disk layout of everything nodefleet keeps between runs.
    """
    home: Path

    @classmethod
    def default(cls, home: Optional[Path] = None) -> "AppPaths":
        return cls(home=Path(home) if home else _default_home())

    @property
    def clusters_config(self) -> Path:
        return self.home / "clusters.json"

    @property
    def nodes_dir(self) -> Path:
        return self.home / "nodes"

    @property
    def ssh_dir(self) -> Path:
        return self.home / "ssh"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def dashboards_dir(self) -> Path:
        return self.home / "monitoring" / "dashboards"

    def node_dir(self, instance_id: str) -> Path:
        return self.nodes_dir / instance_id

    def node_cloud_config(self, instance_id: str) -> Path:
        return self.node_dir(instance_id) / NODE_CLOUD_CONFIG_FILE

    def node_config_download_dir(self, node_id: str) -> Path:
        return self.node_dir(node_id) / "configs"

    def inventory_dir(self, cluster_name: str) -> Path:
        return self.home / "inventories" / cluster_name

    def inventory_file(self, cluster_name: str) -> Path:
        return self.inventory_dir(cluster_name) / "hosts"

    def monitoring_inventory_file(self, cluster_name: str) -> Path:
        return self.inventory_dir(cluster_name) / MONITORING_DIR / "hosts"

    def ssh_cert(self, key_pair_name: str) -> Path:
        return self.ssh_dir / f"{key_pair_name}.pem"
