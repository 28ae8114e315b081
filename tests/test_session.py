"""Tests for the launch flows, end to end over a mocked gateway."""

import json
from unittest.mock import MagicMock

import pytest

from launchvm.errors import AbortedError
from launchvm.session import run_launch
from launchvm.types import FlatConfig

TEMPLATE_VERSION = {
    "VersionNumber": 1,
    "DefaultVersion": True,
    "LaunchTemplateData": {
        "InstanceType": "t3.micro",
        "ImageId": "ami-template",
        "NetworkInterfaces": [{"DeviceIndex": 0, "SubnetId": "subnet-9"}],
        "BlockDeviceMappings": [{"DeviceName": "/dev/xvda", "Ebs": {"VolumeSize": 20}}],
    },
}


def run_request(gateway) -> dict:
    gateway.run_instances.assert_called_once()
    return gateway.run_instances.call_args.args[0]


def test_flags_win_over_saved_file(make_context, gateway, store, flat):
    store.save(flat)
    ctx = make_context(answers=["yes"], flags=FlatConfig(instance_type="t3.micro"))

    assert run_launch(ctx) == ["i-0123"]

    assert run_request(gateway)["InstanceType"] == "t3.micro"
    gateway.get_default_vpc.assert_not_called()


def test_missing_file_falls_back_to_defaults(make_context, gateway):
    ctx = make_context(answers=["yes"])

    run_launch(ctx)

    request = run_request(gateway)
    assert request["ImageId"] == "ami-0abc"
    assert request["InstanceType"] == "t2.micro"
    assert request["SubnetId"] == "subnet-1"
    assert request["SecurityGroupIds"] == ["sg-1"]


def test_saved_lowercase_spot_launches_fleet(make_context, gateway, store, flat):
    store.path().parent.mkdir(parents=True)
    store.path().write_text(json.dumps({**flat.to_dict(), "capacity_type": "spot"}))
    ctx = make_context(answers=["yes"])

    assert run_launch(ctx) == ["i-0spot"]

    gateway.create_fleet.assert_called_once()
    gateway.run_instances.assert_not_called()
    gateway.delete_launch_template.assert_called_once_with("lt-temp")


def test_declined_launch_is_aborted(make_context, gateway, store, flat):
    store.save(flat)
    ctx = make_context(answers=["no"])

    with pytest.raises(AbortedError):
        run_launch(ctx)

    gateway.run_instances.assert_not_called()


def test_save_config_flag(make_context, store, flat):
    store.save(flat)
    ctx = make_context(
        answers=["yes"], flags=FlatConfig(user_tags={"team": "infra"}), save_config=True
    )

    run_launch(ctx)

    assert store.load().user_tags == {"team": "infra"}


def test_non_interactive_launch_template(make_context, gateway):
    gateway.get_launch_template_by_id.return_value = {"DefaultVersionNumber": 1}
    gateway.get_launch_template_versions.return_value = [TEMPLATE_VERSION]
    ctx = make_context(answers=["yes"], flags=FlatConfig(launch_template_id="lt-1"))

    run_launch(ctx)

    assert run_request(gateway) == {
        "LaunchTemplate": {"LaunchTemplateId": "lt-1", "Version": "1"},
        "MinCount": 1,
        "MaxCount": 1,
    }
    output = ctx.terminal.output()
    assert "subnet-9" in output
    assert "ami-template" in output


def test_non_interactive_new_network(make_context, gateway, monkeypatch):
    stack = MagicMock()
    stack.create_network.return_value = ("vpc-new", ["subnet-a", "subnet-b", "subnet-c"])
    monkeypatch.setattr("launchvm.session.StackProvisioner", lambda session, region: stack)
    gateway.get_subnets_by_ids.return_value = [
        {"SubnetId": "subnet-a", "AvailabilityZone": "us-east-2a"},
        {"SubnetId": "subnet-b", "AvailabilityZone": "us-east-2b"},
    ]
    gateway.create_security_group_for_ssh.return_value = "sg-ssh"
    ctx = make_context(answers=["yes"], flags=FlatConfig(new_network=True))

    run_launch(ctx)

    request = run_request(gateway)
    assert request["SubnetId"] == "subnet-a"
    assert request["SecurityGroupIds"] == ["sg-ssh"]
    gateway.get_subnet_by_id.assert_not_called()


def test_interactive_launch(make_context, gateway, store):
    gateway.get_enabled_regions.return_value = [{"RegionName": "us-east-2"}]
    answers = [
        "",  # region
        "",  # instance type
        "",  # image
        "",  # keep EBS
        "",  # timer
        "",  # VPC
        "",  # subnet
        "1",  # security groups
        "",  # IAM profile
        "",  # boot script
        "",  # tags
        "",  # capacity type
        "yes",  # confirm
        "no",  # save config
    ]
    ctx = make_context(answers=answers, interactive=True)

    assert run_launch(ctx) == ["i-0123"]

    request = run_request(gateway)
    assert request["SubnetId"] == "subnet-1"
    assert request["SecurityGroupIds"] == ["sg-1"]
    assert ctx.terminal.answers == []
    assert not store.path().exists()


def test_interactive_flags_skip_questions(make_context, gateway):
    gateway.get_enabled_regions.return_value = [{"RegionName": "us-east-2"}]
    flags = FlatConfig(
        region="us-east-2",
        instance_type="t2.micro",
        image_id="ami-0abc",
        subnet_id="subnet-1",
        security_group_ids=["sg-1"],
        auto_termination_timer_minutes=30,
        capacity_type="On-Demand",
    )
    answers = ["", "", "", "", "yes", "no"]  # keep EBS, IAM, boot, tags, confirm, save
    ctx = make_context(answers=answers, flags=flags, interactive=True)

    run_launch(ctx)

    assert "Instance type" not in ctx.terminal.questions
    assert "Which AMI should be used?" not in ctx.terminal.questions
    assert run_request(gateway)["InstanceInitiatedShutdownBehavior"] == "terminate"


def test_interactive_launch_template(make_context, gateway, store):
    gateway.get_enabled_regions.return_value = [{"RegionName": "us-east-2"}]
    gateway.get_launch_templates.return_value = [
        {"LaunchTemplateId": "lt-1", "LaunchTemplateName": "web", "LatestVersionNumber": 1}
    ]
    gateway.get_launch_template_versions.return_value = [TEMPLATE_VERSION]
    answers = ["", "1", "", "spot", "yes", "yes"]  # region, template, version, capacity, confirm, save
    ctx = make_context(answers=answers, interactive=True)

    assert run_launch(ctx) == ["i-0spot"]

    (fleet_request,) = gateway.create_fleet.call_args.args
    spec = fleet_request["LaunchTemplateConfigs"][0]["LaunchTemplateSpecification"]
    assert spec == {"LaunchTemplateId": "lt-1", "Version": "1"}
    saved = store.load()
    assert saved.launch_template_id == "lt-1"
    assert saved.capacity_type == "Spot"
