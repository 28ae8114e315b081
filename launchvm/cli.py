#!/usr/bin/env python3
"""Launch, connect to and terminate EC2 instances.

Prerequisites: AWS credentials (env, ~/.aws/config profile or .env file).

Usage: launchvm <command> [options]

Examples:
    launchvm launch --interactive
    launchvm launch --instance-type t3.micro --auto-termination-timer 60
    launchvm launch --launch-template-id lt-0123456789abcdef0 --capacity-type spot
    launchvm connect --interactive
    launchvm terminate --tags Project=demo
"""

from importlib.metadata import PackageNotFoundError, version as package_version
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from rich import print

from .config import ConfigStore
from .connect import connect_instance
from .errors import AbortedError, InvalidError, LaunchVMError, NotFoundError
from .providers import get_gateway
from .questions import (
    Terminal,
    ask_instance_id,
    ask_instance_to_terminate,
    ask_region,
    ask_termination_confirmation,
)
from .session import LaunchContext, run_launch
from .tags import parse_key_value_tags, tags_to_filters
from .types import FlatConfig
from .utils import error, log, setup_logging

TERMINABLE_STATES = ["pending", "running", "stopping", "stopped"]

app = cyclopts.App(
    name="launchvm", help="Launch and manage EC2 instances", sort_key=None
)


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: str = "INFO",
):
    """Launch and manage EC2 instances.

    :param log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    try:
        setup_logging(log_level)
    except ValueError as e:
        error(str(e))
    app(tokens)


def run():
    app.meta()


@app.command(name="launch")
def launch(
    *,
    region: str | None = None,
    image_id: str | None = None,
    instance_type: str | None = None,
    subnet_id: str | None = None,
    launch_template_id: str | None = None,
    launch_template_version: str | None = None,
    security_group_ids: list[str] | None = None,
    new_vpc: bool = False,
    auto_termination_timer: int = 0,
    keep_ebs: bool = False,
    iam_instance_profile: str | None = None,
    boot_script: str | None = None,
    tags: list[str] | None = None,
    capacity_type: str | None = None,
    interactive: bool = False,
    save_config: bool = False,
    profile: str | None = None,
):
    """Launch one EC2 instance.

    Flags override the saved config in ~/.launchvm; anything still missing
    comes from account defaults, or is asked in interactive mode.

    :param region: AWS region
    :param image_id: AMI id
    :param instance_type: Instance type (eg. t3.micro)
    :param subnet_id: Subnet id; with --new-vpc, the availability zone of the new subnet
    :param launch_template_id: Launch from this launch template
    :param launch_template_version: Launch template version (default: the template default)
    :param security_group_ids: Security group ids; with --new-vpc, 'new' or 'all'
    :param new_vpc: Create a new VPC with 3 public subnets
    :param auto_termination_timer: Power off and terminate after this many minutes (Linux only)
    :param keep_ebs: Keep EBS volumes after the instance is terminated
    :param iam_instance_profile: IAM instance profile name
    :param boot_script: Path to a boot script passed as user data
    :param tags: Extra tags as KEY=VALUE
    :param capacity_type: On-Demand or Spot
    :param interactive: Ask for every setting not given as a flag
    :param save_config: Save the launched config to ~/.launchvm/launchvm.json
    :param profile: AWS profile from ~/.aws/config
    """
    try:
        flags = FlatConfig(
            region=region or "",
            image_id=image_id or "",
            instance_type=instance_type or "",
            subnet_id=subnet_id or "",
            launch_template_id=launch_template_id or "",
            launch_template_version=launch_template_version or "",
            security_group_ids=list(security_group_ids or []),
            new_network=new_vpc,
            auto_termination_timer_minutes=auto_termination_timer,
            keep_ebs_volume_after_termination=keep_ebs,
            iam_instance_profile=iam_instance_profile or "",
            boot_script_file_path=boot_script or "",
            user_tags=parse_key_value_tags(tags or []),
            capacity_type=capacity_type or "",
        )
        ctx = LaunchContext(
            gateway=get_gateway(region, profile),
            terminal=Terminal(),
            store=ConfigStore(),
            flags=flags,
            interactive=interactive,
            save_config=save_config,
        )
        instance_ids = run_launch(ctx)
    except AbortedError:
        log("Launch cancelled")
        return
    except LaunchVMError as e:
        error(str(e))

    log("Launch complete!")
    for instance_id in instance_ids:
        print(f"  Instance: {instance_id}")
    print("  Connect: launchvm connect --interactive")


@app.command(name="connect")
def connect(
    *,
    region: str | None = None,
    instance_id: str | None = None,
    interactive: bool = False,
    profile: str | None = None,
):
    """Open an SSH shell on a running instance via EC2 Instance Connect.

    :param region: AWS region
    :param instance_id: Instance to connect to
    :param interactive: Pick the region and instance from lists
    :param profile: AWS profile from ~/.aws/config
    """
    try:
        if not instance_id and not interactive:
            raise InvalidError("Specify --instance-id or use --interactive")
        gateway = get_gateway(region, profile)
        if interactive:
            terminal = Terminal()
            if not region:
                gateway.change_region(ask_region(terminal, gateway, gateway.region))
            if not instance_id:
                instance_id = ask_instance_id(terminal, gateway)
        connect_instance(gateway, instance_id)
    except LaunchVMError as e:
        error(str(e))


@app.command(name="terminate")
def terminate(
    *,
    region: str | None = None,
    instance_ids: list[str] | None = None,
    tags: list[str] | None = None,
    interactive: bool = False,
    profile: str | None = None,
):
    """Terminate instances by id, by tag, or picked interactively.

    :param region: AWS region
    :param instance_ids: Instance ids to terminate
    :param tags: Terminate instances matching every KEY=VALUE tag
    :param interactive: Pick the region and instances from lists
    :param profile: AWS profile from ~/.aws/config
    """
    try:
        if not (instance_ids or tags or interactive):
            raise InvalidError("Specify --instance-ids, --tags or --interactive")
        gateway = get_gateway(region, profile)

        if interactive:
            terminal = Terminal()
            if not region:
                gateway.change_region(ask_region(terminal, gateway, gateway.region))
            selected: list[str] = []
            while True:
                instance_id = ask_instance_to_terminate(terminal, gateway, selected)
                if instance_id is None:
                    break
                selected.append(instance_id)
            if not ask_termination_confirmation(terminal, selected):
                log("Termination cancelled")
                return
        else:
            selected = list(instance_ids or [])
            if tags:
                filters = tags_to_filters(parse_key_value_tags(tags))
                filters.append({"Name": "instance-state-name", "Values": TERMINABLE_STATES})
                for instance in gateway.get_instances(filters):
                    if instance["InstanceId"] not in selected:
                        selected.append(instance["InstanceId"])
            if not selected:
                raise NotFoundError("No instances match the given tags")

        gateway.terminate_instances(selected)
    except LaunchVMError as e:
        error(str(e))


@app.command(name="version")
def show_version():
    """Show the installed launchvm version."""
    try:
        print(f"launchvm {package_version('launchvm')}")
    except PackageNotFoundError:
        print("launchvm (not installed)")


if __name__ == "__main__":
    run()
