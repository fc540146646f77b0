# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/topology/store.py

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from nodefleet.config.paths import AppPaths
from nodefleet.errors import NodefleetError, TopologyConflictError

from .models import ClusterTopology, ClustersConfig, NodeCloudConfig

log = logging.getLogger("nodefleet")

Mutation = Callable[[ClustersConfig], None]

MERGE_ATTEMPTS = 5


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class TopologyStore:
    """
    Owner of clusters.json and the per-node cloud config files.

    Every change is load-modify-store of the whole file. Writers pass the
    revision of the cluster they started from; if that cluster moved on
    meanwhile the write is refused with TopologyConflictError instead of
    losing an update. Writes to other clusters are merged.
    """

    def __init__(self, paths: AppPaths):
        self.paths = paths
        self._lock = threading.Lock()

    # ------------------ clusters.json ------------------

    def read(self) -> ClustersConfig:
        path = self.paths.clusters_config
        if not path.exists():
            return ClustersConfig()
        try:
            return ClustersConfig.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise NodefleetError(f"corrupt clusters config {path}: {e}") from e

    def revision(self) -> int:
        return self.read().revision

    def cluster_revision(self, cluster_name: str) -> int:
        return self._revision_of(self.read(), cluster_name)

    def load(self, cluster_name: str) -> Optional[ClusterTopology]:
        return self.read().clusters.get(cluster_name)

    def list_clusters(self) -> Dict[str, ClusterTopology]:
        return dict(self.read().clusters)

    @staticmethod
    def _revision_of(cfg: ClustersConfig, cluster_name: str) -> int:
        topo = cfg.clusters.get(cluster_name)
        return topo.revision if topo else 0

    def update(
        self,
        mutate: Mutation,
        *,
        expected_revision: Optional[int] = None,
        cluster: Optional[str] = None,
    ) -> ClustersConfig:
        """
        Apply *mutate* and write the file back.

        Without *cluster*, *expected_revision* is the file revision and any
        other write in between is a conflict. With *cluster*, it is that
        cluster's revision: a concurrent write to some other cluster is
        merged by re-applying *mutate* on top of it.
        """
        with self._lock:
            cfg = self.read()
            found = self._revision_of(cfg, cluster) if cluster else cfg.revision
            if expected_revision is not None and found != expected_revision:
                scope = f"cluster {cluster}" if cluster else "clusters config"
                raise TopologyConflictError(
                    f"{scope} changed since revision {expected_revision} (now {found}); "
                    "another run updated it, retry"
                )

            for _ in range(MERGE_ATTEMPTS):
                base = cfg.revision
                seen = self._revision_of(cfg, cluster) if cluster else None
                mutate(cfg)
                cfg.revision = base + 1
                if cluster and cluster in cfg.clusters:
                    cfg.clusters[cluster].revision = seen + 1

                # re-check right before replacing, another process may have written meanwhile
                current = self.read()
                if current.revision == base:
                    _atomic_write(self.paths.clusters_config, cfg.model_dump_json(indent=4))
                    log.debug("clusters config written at revision %d", cfg.revision)
                    return cfg
                if cluster is None or self._revision_of(current, cluster) != seen:
                    raise TopologyConflictError(
                        f"clusters config moved from revision {base} to {current.revision} during update"
                    )
                log.debug("clusters config moved to revision %d, merging %s into it", current.revision, cluster)
                cfg = current
            raise TopologyConflictError(f"clusters config kept moving, gave up after {MERGE_ATTEMPTS} merges")

    # ------------------ mutations ------------------

    @staticmethod
    def _add_node(cfg: ClustersConfig, cluster_name: str, node_id: str, network: Optional[str], is_api: bool) -> None:
        topo = cfg.clusters.setdefault(cluster_name, ClusterTopology(network=network))
        if topo.network is None:
            topo.network = network
        if node_id not in topo.nodes:
            topo.nodes.append(node_id)
        if is_api and node_id not in topo.api_nodes:
            topo.api_nodes.append(node_id)

    @staticmethod
    def _set_monitoring(cfg: ClustersConfig, cluster_name: str, node_id: str, state: str = "active") -> None:
        topo = cfg.clusters.setdefault(cluster_name, ClusterTopology())
        topo.monitoring_instance = node_id
        topo.monitoring_state = state

    def add_node(
        self,
        cluster_name: str,
        node_id: str,
        network: Optional[str],
        is_api: bool = False,
        *,
        expected_revision: Optional[int] = None,
    ) -> ClustersConfig:
        return self.update(
            lambda cfg: self._add_node(cfg, cluster_name, node_id, network, is_api),
            expected_revision=expected_revision,
            cluster=cluster_name,
        )

    def set_monitoring(
        self,
        cluster_name: str,
        node_id: str,
        *,
        state: str = "active",
        expected_revision: Optional[int] = None,
    ) -> ClustersConfig:
        return self.update(
            lambda cfg: self._set_monitoring(cfg, cluster_name, node_id, state),
            expected_revision=expected_revision,
            cluster=cluster_name,
        )

    def add_key_pair(self, name: str, cert_path: str, *, expected_revision: Optional[int] = None) -> ClustersConfig:
        return self.update(lambda cfg: cfg.key_pairs.setdefault(name, cert_path), expected_revision=expected_revision)

    def record_cluster(
        self,
        cluster_name: str,
        network: Optional[str],
        nodes: Dict[str, bool],
        *,
        monitoring_instance: Optional[str] = None,
        monitoring_state: str = "active",
        key_pairs: Optional[Dict[str, str]] = None,
        expected_revision: Optional[int] = None,
    ) -> ClustersConfig:
        """
        One write for a whole run: *nodes* maps instance id -> is_api, in
        allocation order. *expected_revision* is the cluster's revision the
        run started from.
        """

        def _mutate(cfg: ClustersConfig) -> None:
            for node_id, is_api in nodes.items():
                self._add_node(cfg, cluster_name, node_id, network, is_api)
            if monitoring_instance:
                self._set_monitoring(cfg, cluster_name, monitoring_instance, monitoring_state)
            for name, cert in (key_pairs or {}).items():
                cfg.key_pairs.setdefault(name, cert)

        return self.update(_mutate, expected_revision=expected_revision, cluster=cluster_name)

    # ------------------ per-node cloud config ------------------

    def save_node_config(self, node: NodeCloudConfig) -> Path:
        path = self.paths.node_cloud_config(node.node_id)
        _atomic_write(path, node.model_dump_json(indent=4))
        return path

    def load_node_config(self, instance_id: str) -> Optional[NodeCloudConfig]:
        path = self.paths.node_cloud_config(instance_id)
        if not path.exists():
            return None
        return NodeCloudConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
