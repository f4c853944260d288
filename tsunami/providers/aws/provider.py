"""EC2 provider client.

Launches, describes and terminates instances through aioboto3. Every
call opens a short-lived client from the injected factory.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from botocore.exceptions import ClientError
from injector import inject
from loguru import logger

from tsunami.spec import InstanceDescription

from .clients import EC2ClientFactory
from .config import AWS

log = logger.bind(provider="aws")

GROUP_TAG = "tsunami:group"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _parse_instance(raw: dict[str, Any]) -> InstanceDescription:
    return InstanceDescription(
        instance_id=raw["InstanceId"],
        state=raw.get("State", {}).get("Name", ""),
        instance_type=raw.get("InstanceType") or "",
        private_ip=raw.get("PrivateIpAddress") or "",
        public_address=raw.get("PublicDnsName") or raw.get("PublicIpAddress") or "",
        key_name=raw.get("KeyName") or "",
    )


class EC2Provider:
    """ProviderClient backed by the EC2 API."""

    @inject
    def __init__(self, ec2: EC2ClientFactory, config: AWS) -> None:
        self.ec2 = ec2
        self.config = config

    async def create_instances(
        self,
        image_id: str,
        instance_type: str,
        count: int,
        group: str,
        key_name: str,
    ) -> list[str]:
        tags = [
            {"Key": "Name", "Value": group},
            {"Key": GROUP_TAG, "Value": group},
        ]
        async with self.ec2() as ec2:
            response = await ec2.run_instances(
                ImageId=image_id,
                InstanceType=instance_type,
                MinCount=count,
                MaxCount=count,
                KeyName=key_name,
                TagSpecifications=[{"ResourceType": "instance", "Tags": tags}],
            )

        ids = [i["InstanceId"] for i in response.get("Instances", []) if i.get("InstanceId")]
        log.debug(
            "Launched {ids} for group {group} in {region}",
            ids=ids, group=group, region=self.config.region or "default region",
        )
        return ids

    async def describe_instance(self, instance_id: str) -> InstanceDescription | None:
        async with self.ec2() as ec2:
            try:
                response = await ec2.describe_instances(InstanceIds=[instance_id])
            except ClientError as e:
                # Freshly launched ids may not be visible yet (eventual consistency)
                if _error_code(e) == "InvalidInstanceID.NotFound":
                    log.debug("Instance {id} not found yet", id=instance_id)
                    return None
                raise

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                if raw.get("InstanceId") == instance_id:
                    return _parse_instance(raw)
        return None

    async def terminate_instances(self, instance_ids: Sequence[str]) -> list[str]:
        if not instance_ids:
            return []

        async with self.ec2() as ec2:
            response = await ec2.terminate_instances(InstanceIds=list(instance_ids))

        terminated = [
            i["InstanceId"]
            for i in response.get("TerminatingInstances", [])
            if i.get("InstanceId")
        ]
        for instance_id in terminated:
            log.info("Terminated instance {id}", id=instance_id)
        return terminated
