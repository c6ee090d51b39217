"""
fleet_compute.py — EC2 adapter for the VM fleet.

Pure translation between boto3 responses and the fleet's Instance and
MachineImage records. Every botocore failure is re-expressed as an
ExternalAPIError; nothing is retried here, the caller decides.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from fleet_config import FleetConfig
from fleet_errors import DataIntegrityError, ExternalAPIError, returns_outcome

logger = logging.getLogger("fleet.compute")

INSTANCE_ID_PATTERN = re.compile(r"^i-[0-9a-f]+$")
AMI_ID_PATTERN = re.compile(r"^ami-[0-9a-f]+$")

INSTANCE_STATES = ("pending", "running", "stopping", "stopped", "shutting-down", "terminated")


@dataclass(frozen=True)
class Instance:
    instance_id: str
    name: str
    state: str
    public_ip: str | None
    private_ip: str | None
    instance_type: str | None
    launch_time: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "name": self.name,
            "state": self.state,
            "publicIp": self.public_ip,
            "privateIp": self.private_ip,
            "instanceType": self.instance_type,
            "launchTime": self.launch_time,
        }


@dataclass(frozen=True)
class MachineImage:
    ami_id: str
    name: str
    state: str
    creation_date: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "amiId": self.ami_id,
            "name": self.name,
            "state": self.state,
            "creationDate": self.creation_date,
            "description": self.description,
        }


def _isoformat(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _tag_value(tags: list[dict[str, str]] | None, key: str) -> str | None:
    for tag in tags or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def _parse_instance(raw: dict[str, Any]) -> Instance:
    instance_id = raw.get("InstanceId", "")
    if not INSTANCE_ID_PATTERN.match(instance_id):
        raise DataIntegrityError(f"Compute API returned malformed instance id: {instance_id!r}")
    return Instance(
        instance_id=instance_id,
        name=_tag_value(raw.get("Tags"), "Name") or "unnamed",
        state=raw.get("State", {}).get("Name", "unknown"),
        public_ip=raw.get("PublicIpAddress"),
        private_ip=raw.get("PrivateIpAddress"),
        instance_type=raw.get("InstanceType"),
        launch_time=_isoformat(raw.get("LaunchTime")),
    )


def _parse_image(raw: dict[str, Any]) -> MachineImage:
    ami_id = raw.get("ImageId", "")
    if not AMI_ID_PATTERN.match(ami_id):
        raise DataIntegrityError(f"Compute API returned malformed image id: {ami_id!r}")
    return MachineImage(
        ami_id=ami_id,
        name=raw.get("Name", ""),
        state=raw.get("State", "unknown"),
        creation_date=raw.get("CreationDate", ""),
        description=raw.get("Description"),
    )


def sort_images(images: list[MachineImage]) -> list[MachineImage]:
    """Newest first. sorted() is stable, so equal dates keep input order."""
    return sorted(images, key=lambda img: img.creation_date, reverse=True)


def _api_error(action: str, e: Exception) -> ExternalAPIError:
    if isinstance(e, ClientError):
        err = e.response.get("Error", {})
        code = err.get("Code", "ClientError")
        message = err.get("Message", str(e))
        return ExternalAPIError(f"{action} failed ({code}): {message}")
    return ExternalAPIError(f"{action} failed: {e}")


class ComputeAdapter:
    """EC2 operations scoped to instances carrying the project tag.

    The boto3 client is owned by the caller; the adapter only borrows it.
    boto3 is blocking, so every request runs in a worker thread.
    """

    def __init__(self, config: FleetConfig, ec2_client: Any):
        self.config = config
        self.ec2 = ec2_client

    async def _call(self, action: str, operation: str, **params: Any) -> dict[str, Any]:
        method = getattr(self.ec2, operation)
        try:
            return await asyncio.to_thread(method, **params)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"{action}: {e}")
            raise _api_error(action, e) from e

    async def _describe(self, filters: list[dict[str, Any]], instance_ids: list[str] | None = None) -> list[Instance]:
        params: dict[str, Any] = {}
        if filters:
            params["Filters"] = filters
        if instance_ids:
            params["InstanceIds"] = instance_ids
        response = await self._call("describe_instances", "describe_instances", **params)
        instances = []
        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                instances.append(_parse_instance(raw))
        return instances

    @returns_outcome
    async def list_instances(
        self, tag_filter: str | None = None, state_filter: str | None = None,
    ) -> list[Instance]:
        filters: list[dict[str, Any]] = [
            {"Name": "tag:Project", "Values": [tag_filter or self.config.project_tag]},
        ]
        if state_filter:
            filters.append({"Name": "instance-state-name", "Values": [state_filter]})
        instances = await self._describe(filters)
        logger.debug(f"list_instances: {len(instances)} instances")
        return instances

    @returns_outcome
    async def describe_instance(self, instance_id: str) -> Instance:
        instances = await self._describe([], instance_ids=[instance_id])
        if not instances:
            raise ExternalAPIError(f"Instance {instance_id} not found")
        return instances[0]

    async def _change_state(self, operation: str, result_key: str, instance_id: str, message: str) -> dict[str, Any]:
        response = await self._call(operation, operation, InstanceIds=[instance_id])
        changes = response.get(result_key) or [{}]
        change = changes[0]
        logger.info(f"{operation}: {instance_id} "
                    f"{change.get('PreviousState', {}).get('Name')} -> {change.get('CurrentState', {}).get('Name')}")
        return {
            "instanceId": instance_id,
            "previousState": change.get("PreviousState", {}).get("Name"),
            "currentState": change.get("CurrentState", {}).get("Name"),
            "message": message,
        }

    @returns_outcome
    async def start_instance(self, instance_id: str) -> dict[str, Any]:
        return await self._change_state(
            "start_instances", "StartingInstances", instance_id,
            f"Instance {instance_id} is starting. It will take 1-2 minutes to be fully available.",
        )

    @returns_outcome
    async def stop_instance(self, instance_id: str) -> dict[str, Any]:
        return await self._change_state(
            "stop_instances", "StoppingInstances", instance_id,
            f"Instance {instance_id} is stopping.",
        )

    @returns_outcome
    async def list_images(self, name_pattern: str | None = None) -> list[MachineImage]:
        patterns = [name_pattern] if name_pattern else list(self.config.image_name_patterns)
        response = await self._call(
            "describe_images", "describe_images",
            Owners=["self"],
            Filters=[{"Name": "name", "Values": patterns}],
        )
        images = [_parse_image(raw) for raw in response.get("Images", [])]
        return sort_images(images)

    @returns_outcome
    async def create_image(
        self, instance_id: str, name: str, description: str | None = None,
    ) -> dict[str, Any]:
        created_at = datetime.now(timezone.utc).isoformat()
        response = await self._call(
            "create_image", "create_image",
            InstanceId=instance_id,
            Name=name,
            Description=description or f"AMI created from {instance_id}",
            NoReboot=True,
            TagSpecifications=[{
                "ResourceType": "image",
                "Tags": [
                    {"Key": "Project", "Value": self.config.project_tag},
                    {"Key": "SourceInstance", "Value": instance_id},
                    {"Key": "CreatedAt", "Value": created_at},
                ],
            }],
        )
        ami_id = response.get("ImageId")
        logger.info(f"create_image: {ami_id} from {instance_id}")
        return {
            "amiId": ami_id,
            "name": name,
            "message": f"AMI creation started. ID: {ami_id}. It will take 5-10 minutes to complete.",
        }

    @returns_outcome
    async def list_security_group_rules(self) -> dict[str, Any]:
        response = await self._call(
            "describe_instances", "describe_instances",
            Filters=[{"Name": "tag:Project", "Values": [self.config.project_tag]}],
        )
        group_id = None
        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                groups = raw.get("SecurityGroups") or []
                if groups:
                    group_id = groups[0]["GroupId"]
                    break
            if group_id:
                break
        if group_id is None:
            raise ExternalAPIError("No instances found with Project tag or no security groups attached")

        response = await self._call("describe_security_groups", "describe_security_groups", GroupIds=[group_id])
        groups = response.get("SecurityGroups") or []
        if not groups:
            raise ExternalAPIError(f"Security group {group_id} not found")
        sg = groups[0]
        rules = []
        for perm in sg.get("IpPermissions", []):
            sources = [
                {"type": "cidr", "value": r.get("CidrIp"), "description": r.get("Description")}
                for r in perm.get("IpRanges", [])
            ]
            sources += [
                {"type": "cidrv6", "value": r.get("CidrIpv6"), "description": r.get("Description")}
                for r in perm.get("Ipv6Ranges", [])
            ]
            rules.append({
                "protocol": perm.get("IpProtocol"),
                "fromPort": perm.get("FromPort"),
                "toPort": perm.get("ToPort"),
                "sources": sources,
            })
        return {
            "securityGroupId": group_id,
            "securityGroupName": sg.get("GroupName"),
            "inboundRules": rules,
        }
