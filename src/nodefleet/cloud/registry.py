# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/cloud/registry.py

from __future__ import annotations

import getpass

from nodefleet.config.models import ProvisionRequest
from nodefleet.config.paths import AppPaths
from nodefleet.errors import NodefleetError

from .aws import AwsProvisioner
from .gcp import GcpProvisioner
from .interface import CloudProvisioner


def default_key_pair_name() -> str:
    return f"{getpass.getuser()}-nodefleet-keypair"


def build_provisioner(request: ProvisionRequest, paths: AppPaths) -> CloudProvisioner:
    key_pair = default_key_pair_name()
    cert = paths.ssh_cert(key_pair)
    ports = (22, request.client.api_port, request.client.staking_port)

    if request.provider == "aws":
        return AwsProvisioner(
            key_pair_name=key_pair,
            cert_path=cert,
            profile=request.aws_profile,
            instance_type=request.instance_type,
            ingress_ports=ports,
        )
    if request.provider == "gcp":
        if not request.gcp_project:
            raise NodefleetError("gcp_project is required for the GCP provider")
        return GcpProvisioner(
            project=request.gcp_project,
            credentials=request.gcp_credentials,
            key_pair_name=key_pair,
            cert_path=cert,
            instance_type=request.instance_type,
            ssh_user=request.ssh_user,
            ingress_ports=ports,
        )
    raise NodefleetError(f"unknown provider {request.provider}")
