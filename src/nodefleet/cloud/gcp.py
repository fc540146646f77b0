# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/cloud/gcp.py

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from nodefleet.errors import AllocationError

from .models import RegionAllocation

log = logging.getLogger("nodefleet")

GCP_DEFAULT_INSTANCE_TYPE = "e2-standard-8"
GCP_IMAGE_FAMILY = "ubuntu-2204-lts"
GCP_IMAGE_PROJECT = "ubuntu-os-cloud"


class GcloudError(RuntimeError):
    pass


def zone_for(region: str) -> str:
    """'us-east1' -> 'us-east1-b'; a zone is passed through."""
    if re.match(r"^[a-z]+-[a-z]+\d+-[a-z]$", region):
        return region
    return f"{region}-b"


def _nat_ip(instance: Dict[str, Any]) -> Optional[str]:
    for nic in instance.get("networkInterfaces", []):
        for ac in nic.get("accessConfigs", []):
            if ac.get("natIP"):
                return ac["natIP"]
    return None


class GcpProvisioner:
    name = "gcp"
    host_prefix = "gcp_node"

    def __init__(
        self,
        *,
        project: str,
        key_pair_name: str,
        cert_path: Path,
        credentials: Optional[str] = None,
        instance_type: Optional[str] = None,
        network_name: str = "nodefleet-network",
        ssh_user: str = "ubuntu",
        ingress_ports: Sequence[int] = (22, 9650, 9651),
        name_prefix: str = "nodefleet",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.project = project
        self.key_pair_name = key_pair_name
        self.cert_path = Path(cert_path)
        self.credentials = credentials
        self.instance_type = instance_type or GCP_DEFAULT_INSTANCE_TYPE
        self.network_name = network_name
        self.ssh_user = ssh_user
        self.ingress_ports = tuple(ingress_ports)
        self.name_prefix = name_prefix
        self._run = runner

    # ------------------ gcloud ------------------

    def gcloud(self, args: List[str], *, json_output: bool = True) -> Any:
        cmd = ["gcloud", *args, f"--project={self.project}", "--quiet"]
        if json_output:
            cmd.append("--format=json")
        env = None
        if self.credentials:
            env = {**os.environ, "CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE": self.credentials}
        log.debug("$ %s", " ".join(cmd))
        cp = self._run(cmd, capture_output=True, text=True, check=False, env=env)
        if cp.returncode != 0:
            raise GcloudError(cp.stderr.strip() or f"{' '.join(cmd[:4])} exited with {cp.returncode}")
        if not json_output:
            return cp.stdout
        return json.loads(cp.stdout or "null")

    def _exists(self, kind: List[str], name: str) -> bool:
        found = self.gcloud([*kind, "list", f"--filter=name={name}"])
        return bool(found)

    # ------------------ helpers ------------------

    def _public_key(self) -> str:
        pub = Path(f"{self.cert_path}.pub")
        if not pub.is_file():
            self.cert_path.parent.mkdir(parents=True, exist_ok=True)
            cp = self._run(
                ["ssh-keygen", "-t", "rsa", "-b", "4096", "-N", "", "-f", str(self.cert_path), "-C", self.key_pair_name],
                capture_output=True,
                text=True,
                check=False,
            )
            if cp.returncode != 0:
                raise GcloudError(f"ssh-keygen failed: {cp.stderr.strip()}")
            log.info("generated ssh key %s", self.cert_path)
        return pub.read_text(encoding="utf-8").strip()

    def _ensure_network(self) -> None:
        if self._exists(["compute", "networks"], self.network_name):
            return
        self.gcloud(["compute", "networks", "create", self.network_name, "--subnet-mode=auto"])
        rule = f"{self.network_name}-default"
        allow = ",".join(f"tcp:{p}" for p in self.ingress_ports)
        self.gcloud([
            "compute", "firewall-rules", "create", rule,
            f"--network={self.network_name}", f"--allow={allow}", "--source-ranges=0.0.0.0/0",
        ])
        log.info("created network %s with firewall rule %s", self.network_name, rule)

    def _reserve_address(self, region: str, name: str) -> str:
        self.gcloud(["compute", "addresses", "create", name, f"--region={region}"])
        desc = self.gcloud(["compute", "addresses", "describe", name, f"--region={region}"])
        return desc["address"]

    # ------------------ CloudProvisioner ------------------

    def allocate(self, region: str, count: int, *, static_ip: bool, role: str = "node") -> RegionAllocation:
        if count <= 0:
            raise AllocationError(self.name, region, f"invalid instance count {count}")
        zone = zone_for(region)
        try:
            ssh_key = self._public_key()
            self._ensure_network()

            names: List[str] = []
            public_ips: List[str] = []
            for _ in range(count):
                name = f"{self.name_prefix}-{role}-{uuid.uuid4().hex[:8]}"
                args = [
                    "compute", "instances", "create", name,
                    f"--zone={zone}",
                    f"--machine-type={self.instance_type}",
                    f"--image-family={GCP_IMAGE_FAMILY}",
                    f"--image-project={GCP_IMAGE_PROJECT}",
                    f"--network={self.network_name}",
                    f"--metadata=ssh-keys={self.ssh_user}:{ssh_key}",
                    f"--labels=managed-by={self.name_prefix},role={role}",
                ]
                if static_ip:
                    ip = self._reserve_address(region, f"{name}-ip")
                    args.append(f"--address={ip}")
                    public_ips.append(ip)
                self.gcloud(args)
                names.append(name)
            log.info("[gcp/%s] created %d instance(s): %s", region, len(names), ", ".join(names))
        except (GcloudError, OSError, ValueError) as e:
            raise AllocationError(self.name, region, str(e)) from e

        return RegionAllocation(
            region=region,
            instance_ids=names,
            public_ips=public_ips,
            image_id=f"{GCP_IMAGE_PROJECT}/{GCP_IMAGE_FAMILY}",
            key_pair=self.key_pair_name,
            security_group=self.network_name,
            cert_path=str(self.cert_path),
        )

    def get_public_ips(self, region: str, instance_ids: Sequence[str]) -> Dict[str, str]:
        zone = zone_for(region)
        ips: Dict[str, str] = {}
        try:
            for name in instance_ids:
                inst = self.gcloud(["compute", "instances", "describe", name, f"--zone={zone}"])
                ip = _nat_ip(inst or {})
                if not ip:
                    raise GcloudError(f"no public IP for {name}")
                ips[name] = ip
        except (GcloudError, ValueError) as e:
            raise AllocationError(self.name, region, str(e)) from e
        return ips

    def add_monitoring_firewall_rule(
        self,
        region: str,
        allocation: RegionAllocation,
        monitoring_ip: str,
        ports: Sequence[int],
    ) -> None:
        rule = f"{allocation.security_group}-monitoring-{monitoring_ip.replace('.', '-')}"
        allow = ",".join(f"tcp:{p}" for p in ports)
        try:
            if self._exists(["compute", "firewall-rules"], rule):
                return
            self.gcloud([
                "compute", "firewall-rules", "create", rule,
                f"--network={allocation.security_group}",
                f"--allow={allow}",
                f"--source-ranges={monitoring_ip}/32",
            ])
        except (GcloudError, ValueError) as e:
            raise AllocationError(self.name, region, f"monitoring firewall rule: {e}") from e
        log.info("[gcp/%s] allowed %s -> %s", region, monitoring_ip, allow)
