"""Tests for fleet_compute.py against a stubbed boto3 EC2 client."""
import sys
from datetime import datetime, timezone
from pathlib import Path

import boto3
import pytest
from botocore.stub import ANY, Stubber

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fleet_compute import ComputeAdapter, MachineImage, sort_images
from fleet_config import FleetConfig
from fleet_errors import DataIntegrityError, ExternalAPIError

TAG_FILTER = {"Name": "tag:Project", "Values": ["gymnastics-graphics"]}


@pytest.fixture
def ec2():
    return boto3.client(
        "ec2",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubber(ec2):
    with Stubber(ec2) as stub:
        yield stub
        stub.assert_no_pending_responses()


@pytest.fixture
def compute(ec2):
    return ComputeAdapter(FleetConfig(), ec2)


def _raw_instance(instance_id, state="running", name="graphics-vm", public_ip="203.0.113.5"):
    raw = {
        "InstanceId": instance_id,
        "InstanceType": "c5.xlarge",
        "State": {"Code": 16, "Name": state},
        "PrivateIpAddress": "10.0.0.8",
        "LaunchTime": datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc),
    }
    if name is not None:
        raw["Tags"] = [{"Key": "Name", "Value": name}, {"Key": "Project", "Value": "gymnastics-graphics"}]
    if public_ip is not None:
        raw["PublicIpAddress"] = public_ip
    return raw


def _reservations(*instances):
    return {"Reservations": [{"Instances": list(instances)}]}


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------

class TestListInstances:
    @pytest.mark.asyncio
    async def test_empty_fleet(self, compute, stubber):
        stubber.add_response("describe_instances", {"Reservations": []}, {"Filters": [TAG_FILTER]})
        outcome = await compute.list_instances()
        assert outcome.ok
        assert outcome.value == []

    @pytest.mark.asyncio
    async def test_parses_instances(self, compute, stubber):
        stubber.add_response(
            "describe_instances",
            _reservations(_raw_instance("i-0abc"), _raw_instance("i-0def", state="stopped", name=None, public_ip=None)),
            {"Filters": [TAG_FILTER]},
        )
        instances = (await compute.list_instances()).unwrap()
        assert [i.instance_id for i in instances] == ["i-0abc", "i-0def"]
        first, second = instances
        assert first.name == "graphics-vm"
        assert first.public_ip == "203.0.113.5"
        assert first.launch_time == "2025-01-10T12:00:00+00:00"
        assert second.name == "unnamed"
        assert second.state == "stopped"
        assert second.public_ip is None

    @pytest.mark.asyncio
    async def test_tag_and_state_filters(self, compute, stubber):
        stubber.add_response(
            "describe_instances",
            {"Reservations": []},
            {"Filters": [
                {"Name": "tag:Project", "Values": ["other"]},
                {"Name": "instance-state-name", "Values": ["running"]},
            ]},
        )
        assert (await compute.list_instances("other", "running")).ok

    @pytest.mark.asyncio
    async def test_malformed_instance_id(self, compute, stubber):
        stubber.add_response(
            "describe_instances", _reservations(_raw_instance("vm-42")), {"Filters": [TAG_FILTER]},
        )
        outcome = await compute.list_instances()
        assert not outcome.ok
        assert isinstance(outcome.error, DataIntegrityError)
        assert "vm-42" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_api_error_becomes_outcome(self, compute, stubber):
        stubber.add_client_error(
            "describe_instances",
            service_error_code="UnauthorizedOperation",
            service_message="You are not authorized",
        )
        outcome = await compute.list_instances()
        assert isinstance(outcome.error, ExternalAPIError)
        assert "UnauthorizedOperation" in str(outcome.error)


class TestDescribeInstance:
    @pytest.mark.asyncio
    async def test_found(self, compute, stubber):
        stubber.add_response(
            "describe_instances", _reservations(_raw_instance("i-0abc")), {"InstanceIds": ["i-0abc"]},
        )
        instance = (await compute.describe_instance("i-0abc")).unwrap()
        assert instance.instance_id == "i-0abc"

    @pytest.mark.asyncio
    async def test_not_found(self, compute, stubber):
        stubber.add_response("describe_instances", {"Reservations": []}, {"InstanceIds": ["i-0abc"]})
        outcome = await compute.describe_instance("i-0abc")
        assert isinstance(outcome.error, ExternalAPIError)
        assert "not found" in str(outcome.error)


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start(self, compute, stubber):
        stubber.add_response(
            "start_instances",
            {"StartingInstances": [{
                "InstanceId": "i-0abc",
                "PreviousState": {"Code": 80, "Name": "stopped"},
                "CurrentState": {"Code": 0, "Name": "pending"},
            }]},
            {"InstanceIds": ["i-0abc"]},
        )
        result = (await compute.start_instance("i-0abc")).unwrap()
        assert result["instanceId"] == "i-0abc"
        assert result["previousState"] == "stopped"
        assert result["currentState"] == "pending"
        assert "starting" in result["message"]

    @pytest.mark.asyncio
    async def test_stop(self, compute, stubber):
        stubber.add_response(
            "stop_instances",
            {"StoppingInstances": [{
                "InstanceId": "i-0abc",
                "PreviousState": {"Code": 16, "Name": "running"},
                "CurrentState": {"Code": 64, "Name": "stopping"},
            }]},
            {"InstanceIds": ["i-0abc"]},
        )
        result = (await compute.stop_instance("i-0abc")).unwrap()
        assert result["currentState"] == "stopping"
        assert result["message"] == "Instance i-0abc is stopping."

    @pytest.mark.asyncio
    async def test_start_rejected(self, compute, stubber):
        stubber.add_client_error(
            "start_instances",
            service_error_code="IncorrectInstanceState",
            service_message="The instance 'i-0abc' is not in a state from which it can be started.",
            expected_params={"InstanceIds": ["i-0abc"]},
        )
        outcome = await compute.start_instance("i-0abc")
        assert isinstance(outcome.error, ExternalAPIError)
        assert "start_instances failed (IncorrectInstanceState)" in str(outcome.error)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

class TestImages:
    def test_sort_is_newest_first_and_stable(self):
        images = [
            MachineImage("ami-01", "a", "available", "2025-01-01T00:00:00.000Z"),
            MachineImage("ami-02", "b", "available", "2025-03-01T00:00:00.000Z"),
            MachineImage("ami-03", "c", "available", "2025-01-01T00:00:00.000Z"),
        ]
        assert [i.ami_id for i in sort_images(images)] == ["ami-02", "ami-01", "ami-03"]

    @pytest.mark.asyncio
    async def test_list_images_default_patterns(self, compute, stubber):
        stubber.add_response(
            "describe_images",
            {"Images": [
                {"ImageId": "ami-0a", "Name": "gymnastics-old", "State": "available",
                 "CreationDate": "2024-11-02T10:00:00.000Z"},
                {"ImageId": "ami-0b", "Name": "gymnastics-new", "State": "pending",
                 "CreationDate": "2025-02-02T10:00:00.000Z", "Description": "fresh"},
            ]},
            {"Owners": ["self"], "Filters": [{"Name": "name", "Values": ["gymnastics-*", "*gymnastics*"]}]},
        )
        images = (await compute.list_images()).unwrap()
        assert [i.ami_id for i in images] == ["ami-0b", "ami-0a"]
        assert images[0].to_dict()["description"] == "fresh"

    @pytest.mark.asyncio
    async def test_list_images_custom_pattern(self, compute, stubber):
        stubber.add_response(
            "describe_images",
            {"Images": []},
            {"Owners": ["self"], "Filters": [{"Name": "name", "Values": ["encoder-*"]}]},
        )
        assert (await compute.list_images("encoder-*")).unwrap() == []

    @pytest.mark.asyncio
    async def test_create_image(self, compute, stubber):
        stubber.add_response(
            "create_image",
            {"ImageId": "ami-0c0ffee"},
            {
                "InstanceId": "i-0abc",
                "Name": "gymnastics-golden",
                "Description": "AMI created from i-0abc",
                "NoReboot": True,
                "TagSpecifications": ANY,
            },
        )
        result = (await compute.create_image("i-0abc", "gymnastics-golden")).unwrap()
        assert result["amiId"] == "ami-0c0ffee"
        assert result["name"] == "gymnastics-golden"


# ---------------------------------------------------------------------------
# Security group
# ---------------------------------------------------------------------------

class TestSecurityGroupRules:
    @pytest.mark.asyncio
    async def test_rules(self, compute, stubber):
        raw = _raw_instance("i-0abc")
        raw["SecurityGroups"] = [{"GroupId": "sg-0123", "GroupName": "graphics"}]
        stubber.add_response("describe_instances", _reservations(raw), {"Filters": [TAG_FILTER]})
        stubber.add_response(
            "describe_security_groups",
            {"SecurityGroups": [{
                "GroupId": "sg-0123",
                "GroupName": "graphics",
                "IpPermissions": [{
                    "IpProtocol": "tcp", "FromPort": 22, "ToPort": 22,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "ssh"}],
                    "Ipv6Ranges": [{"CidrIpv6": "::/0"}],
                }],
            }]},
            {"GroupIds": ["sg-0123"]},
        )
        result = (await compute.list_security_group_rules()).unwrap()
        assert result["securityGroupId"] == "sg-0123"
        rule = result["inboundRules"][0]
        assert (rule["protocol"], rule["fromPort"], rule["toPort"]) == ("tcp", 22, 22)
        assert [s["type"] for s in rule["sources"]] == ["cidr", "cidrv6"]

    @pytest.mark.asyncio
    async def test_no_instances(self, compute, stubber):
        stubber.add_response("describe_instances", {"Reservations": []}, {"Filters": [TAG_FILTER]})
        outcome = await compute.list_security_group_rules()
        assert isinstance(outcome.error, ExternalAPIError)
