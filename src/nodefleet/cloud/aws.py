# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/cloud/aws.py

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import boto3
import botocore.exceptions

from nodefleet.errors import AllocationError

from .models import RegionAllocation

log = logging.getLogger("nodefleet")

AWS_DEFAULT_INSTANCE_TYPE = "c5.2xlarge"
UBUNTU_OWNER = "099720109477"   # Canonical
UBUNTU_IMAGE_NAME = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"

_AWS_ERRORS = (
    botocore.exceptions.ClientError,
    botocore.exceptions.BotoCoreError,
)


def _error_code(e: BaseException) -> str:
    if isinstance(e, botocore.exceptions.ClientError):
        return e.response.get("Error", {}).get("Code", "")
    return ""


def _default_session(profile: Optional[str], region: str):
    try:
        return boto3.session.Session(profile_name=profile, region_name=region)
    except botocore.exceptions.ProfileNotFound as e:
        raise AllocationError("aws", region, f"AWS profile '{profile}' not found") from e


class AwsProvisioner:
    name = "aws"
    host_prefix = "aws_node"

    def __init__(
        self,
        *,
        key_pair_name: str,
        cert_path: Path,
        profile: Optional[str] = None,
        instance_type: Optional[str] = None,
        security_group_name: str = "nodefleet-sg",
        ingress_ports: Sequence[int] = (22, 9650, 9651),
        tag_prefix: str = "nodefleet",
        session_factory: Callable = _default_session,
    ):
        self.key_pair_name = key_pair_name
        self.cert_path = Path(cert_path)
        self.profile = profile
        self.instance_type = instance_type or AWS_DEFAULT_INSTANCE_TYPE
        self.security_group_name = security_group_name
        self.ingress_ports = tuple(ingress_ports)
        self.tag_prefix = tag_prefix
        self._session_factory = session_factory
        self._clients: Dict[str, object] = {}

    # ------------------ helpers ------------------

    def ec2(self, region: str):
        if region not in self._clients:
            self._clients[region] = self._session_factory(self.profile, region).client("ec2", region_name=region)
        return self._clients[region]

    def _ensure_key_pair(self, ec2) -> None:
        try:
            ec2.describe_key_pairs(KeyNames=[self.key_pair_name])
            return
        except botocore.exceptions.ClientError as e:
            if _error_code(e) != "InvalidKeyPair.NotFound":
                raise

        pub = Path(f"{self.cert_path}.pub")
        if pub.is_file():
            ec2.import_key_pair(KeyName=self.key_pair_name, PublicKeyMaterial=pub.read_bytes())
            log.info("imported key pair %s from %s", self.key_pair_name, pub)
            return

        resp = ec2.create_key_pair(KeyName=self.key_pair_name)
        self.cert_path.parent.mkdir(parents=True, exist_ok=True)
        self.cert_path.write_text(resp["KeyMaterial"], encoding="utf-8")
        os.chmod(self.cert_path, 0o600)
        log.info("created key pair %s, private key saved to %s", self.key_pair_name, self.cert_path)

    def _ensure_security_group(self, ec2) -> str:
        resp = ec2.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [self.security_group_name]}]
        )
        groups = resp.get("SecurityGroups", [])
        if groups:
            return groups[0]["GroupId"]

        resp = ec2.create_security_group(
            GroupName=self.security_group_name,
            Description=f"{self.tag_prefix} cluster nodes",
        )
        sg_id = resp["GroupId"]
        for port in self.ingress_ports:
            self._authorize(ec2, sg_id, port, "0.0.0.0/0")
        log.info("created security group %s: %s", self.security_group_name, sg_id)
        return sg_id

    def _authorize(self, ec2, sg_id: str, port: int, cidr: str) -> bool:
        try:
            ec2.authorize_security_group_ingress(
                GroupId=sg_id,
                IpPermissions=[{
                    "IpProtocol": "tcp", "FromPort": port, "ToPort": port,
                    "IpRanges": [{"CidrIp": cidr}],
                }],
            )
            return True
        except botocore.exceptions.ClientError as e:
            if _error_code(e) == "InvalidPermission.Duplicate":
                return False
            raise

    def _image_id(self, ec2) -> str:
        resp = ec2.describe_images(
            Owners=[UBUNTU_OWNER],
            Filters=[
                {"Name": "name", "Values": [UBUNTU_IMAGE_NAME]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(resp.get("Images", []), key=lambda i: i.get("CreationDate", ""))
        if not images:
            raise AllocationError(self.name, None, "no Ubuntu image found")
        return images[-1]["ImageId"]

    def _tags(self, role: str) -> List[Dict]:
        return [{
            "ResourceType": "instance",
            "Tags": [
                {"Key": "Name", "Value": f"{self.tag_prefix}-{role}"},
                {"Key": "Role", "Value": role},
                {"Key": "Managed-By", "Value": self.tag_prefix},
            ],
        }]

    # ------------------ CloudProvisioner ------------------

    def allocate(self, region: str, count: int, *, static_ip: bool, role: str = "node") -> RegionAllocation:
        if count <= 0:
            raise AllocationError(self.name, region, f"invalid instance count {count}")
        try:
            ec2 = self.ec2(region)
            self._ensure_key_pair(ec2)
            sg_id = self._ensure_security_group(ec2)
            image_id = self._image_id(ec2)

            resp = ec2.run_instances(
                ImageId=image_id,
                InstanceType=self.instance_type,
                KeyName=self.key_pair_name,
                SecurityGroupIds=[sg_id],
                TagSpecifications=self._tags(role),
                MinCount=count,
                MaxCount=count,
            )
            ids = [i["InstanceId"] for i in resp["Instances"]]
            log.info("[aws/%s] launched %d instance(s): %s", region, len(ids), ", ".join(ids))
            ec2.get_waiter("instance_running").wait(InstanceIds=ids)

            public_ips: List[str] = []
            if static_ip:
                for iid in ids:
                    addr = ec2.allocate_address(Domain="vpc")
                    ec2.associate_address(InstanceId=iid, AllocationId=addr["AllocationId"])
                    public_ips.append(addr["PublicIp"])
        except AllocationError:
            raise
        except _AWS_ERRORS as e:
            raise AllocationError(self.name, region, str(e)) from e

        return RegionAllocation(
            region=region,
            instance_ids=ids,
            public_ips=public_ips,
            image_id=image_id,
            key_pair=self.key_pair_name,
            security_group=sg_id,
            cert_path=str(self.cert_path),
        )

    def get_public_ips(self, region: str, instance_ids: Sequence[str]) -> Dict[str, str]:
        try:
            resp = self.ec2(region).describe_instances(InstanceIds=list(instance_ids))
        except _AWS_ERRORS as e:
            raise AllocationError(self.name, region, str(e)) from e

        ips: Dict[str, str] = {}
        for reservation in resp.get("Reservations", []):
            for inst in reservation.get("Instances", []):
                ip = inst.get("PublicIpAddress")
                if ip:
                    ips[inst["InstanceId"]] = ip
        missing = [i for i in instance_ids if i not in ips]
        if missing:
            raise AllocationError(self.name, region, f"no public IP for {', '.join(missing)}")
        return ips

    def add_monitoring_firewall_rule(
        self,
        region: str,
        allocation: RegionAllocation,
        monitoring_ip: str,
        ports: Sequence[int],
    ) -> None:
        try:
            ec2 = self.ec2(region)
            for port in ports:
                if self._authorize(ec2, allocation.security_group, port, f"{monitoring_ip}/32"):
                    log.info("[aws/%s] allowed %s -> tcp/%d", region, monitoring_ip, port)
        except _AWS_ERRORS as e:
            raise AllocationError(self.name, region, f"monitoring firewall rule: {e}") from e
