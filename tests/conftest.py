"""Shared fixtures: fake AWS gateway, scripted terminal and sample resources.

Live tests against a real AWS account are opt-in with --aws-region.
"""

from io import StringIO
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from launchvm.config import ConfigStore
from launchvm.providers import EC2Gateway
from launchvm.questions import Terminal
from launchvm.session import LaunchContext
from launchvm.types import ON_DEMAND, FlatConfig

LINUX_IMAGE = {
    "ImageId": "ami-0abc",
    "Name": "amzn2-ami-hvm-2.0.20240101.0-x86_64-gp2",
    "PlatformDetails": "Linux/UNIX",
    "RootDeviceType": "ebs",
    "CreationDate": "2024-01-01T00:00:00.000Z",
    "BlockDeviceMappings": [
        {
            "DeviceName": "/dev/xvda",
            "Ebs": {
                "DeleteOnTermination": True,
                "SnapshotId": "snap-0abc",
                "VolumeSize": 8,
                "VolumeType": "gp2",
                "Encrypted": False,
            },
        }
    ],
}

WINDOWS_IMAGE = {
    "ImageId": "ami-0win",
    "Name": "Windows_Server-2022-English-Full-Base-2024.01.10",
    "PlatformDetails": "Windows",
    "RootDeviceType": "ebs",
    "CreationDate": "2024-01-10T00:00:00.000Z",
    "BlockDeviceMappings": [
        {"DeviceName": "/dev/sda1", "Ebs": {"VolumeSize": 30, "VolumeType": "gp3"}}
    ],
}

INSTANCE_TYPE_INFO = {
    "InstanceType": "t2.micro",
    "FreeTierEligible": True,
    "InstanceStorageSupported": False,
    "VCpuInfo": {"DefaultVCpus": 1},
    "MemoryInfo": {"SizeInMiB": 1024},
    "ProcessorInfo": {"SupportedArchitectures": ["x86_64"]},
}

VPC = {"VpcId": "vpc-1", "CidrBlock": "172.31.0.0/16", "IsDefault": True, "Tags": []}
SUBNET = {
    "SubnetId": "subnet-1",
    "VpcId": "vpc-1",
    "AvailabilityZone": "us-east-2a",
    "CidrBlock": "172.31.0.0/20",
    "Tags": [{"Key": "Name", "Value": "public-a"}],
}
SECURITY_GROUP = {"GroupId": "sg-1", "GroupName": "default", "VpcId": "vpc-1", "Description": "default"}
ZONES = [
    {"ZoneName": "us-east-2a", "ZoneId": "use2-az1"},
    {"ZoneName": "us-east-2b", "ZoneId": "use2-az2"},
    {"ZoneName": "us-east-2c", "ZoneId": "use2-az3"},
]


def pytest_addoption(parser):
    parser.addoption(
        "--aws-region",
        default=None,
        help="Run live tests against this AWS region (default: skip them)",
    )


@pytest.fixture
def aws_region(request):
    region = request.config.getoption("--aws-region")
    if not region:
        pytest.skip("live AWS tests need --aws-region")
    return region


class ScriptedTerminal(Terminal):
    """Terminal that reads answers from a list instead of stdin.

    An empty string answer takes the prompt's default, like pressing Enter.
    """

    def __init__(self, answers=()):
        super().__init__(Console(file=StringIO(), width=200))
        self.answers = list(answers)
        self.questions = []

    def _prompt(self, label, default):
        if not self.answers:
            raise AssertionError(f"Unexpected prompt after: {self.questions}")
        answer = self.answers.pop(0)
        return answer or (default or "")

    def ask_choice(self, question, *args, **kwargs):
        self.questions.append(question)
        return super().ask_choice(question, *args, **kwargs)

    def ask_multi_choice(self, question, *args, **kwargs):
        self.questions.append(question)
        return super().ask_multi_choice(question, *args, **kwargs)

    def ask_text(self, question, *args, **kwargs):
        self.questions.append(question)
        return super().ask_text(question, *args, **kwargs)

    def output(self):
        return self.console.file.getvalue()


@pytest.fixture
def gateway():
    """Gateway mock answering lookups with the sample resources."""
    gw = MagicMock(spec=EC2Gateway)
    gw.region = "us-east-2"
    gw.session = MagicMock()
    gw.get_image_by_id.return_value = LINUX_IMAGE
    gw.get_instance_type.return_value = INSTANCE_TYPE_INFO
    gw.get_instance_types.return_value = [INSTANCE_TYPE_INFO]
    gw.get_default_free_tier_instance_type.return_value = INSTANCE_TYPE_INFO
    gw.get_images.return_value = [LINUX_IMAGE]
    gw.get_vpcs.return_value = [VPC]
    gw.get_vpc_by_id.return_value = VPC
    gw.get_default_vpc.return_value = VPC
    gw.get_subnet_by_id.return_value = SUBNET
    gw.get_subnets_by_vpc.return_value = [SUBNET]
    gw.get_security_groups_by_ids.return_value = [SECURITY_GROUP]
    gw.get_security_groups_by_vpc.return_value = [SECURITY_GROUP]
    gw.get_default_security_group.return_value = SECURITY_GROUP
    gw.get_availability_zones.return_value = ZONES
    gw.get_launch_templates.return_value = []
    gw.get_instance_profiles.return_value = []
    gw.run_instances.return_value = ["i-0123"]
    gw.create_fleet.return_value = ["i-0spot"]
    gw.create_launch_template.return_value = "lt-temp"
    gw.get_on_demand_price.return_value = 0.0116
    gw.get_spot_price.return_value = 0.00354
    return gw


@pytest.fixture
def flat():
    """Complete existing-network configuration matching the sample resources."""
    return FlatConfig(
        region="us-east-2",
        image_id="ami-0abc",
        instance_type="t2.micro",
        subnet_id="subnet-1",
        security_group_ids=["sg-1"],
        capacity_type=ON_DEMAND,
    )


@pytest.fixture
def store(tmp_path):
    return ConfigStore(tmp_path / "config")


@pytest.fixture
def make_context(gateway, store):
    def _make(answers=(), flags=None, interactive=False, save_config=False):
        return LaunchContext(
            gateway=gateway,
            terminal=ScriptedTerminal(answers),
            store=store,
            flags=flags or FlatConfig(),
            interactive=interactive,
            save_config=save_config,
        )

    return _make
