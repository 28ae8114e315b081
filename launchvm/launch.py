"""Launch dispatch: on-demand runs, spot fleets and launch-template runs."""

import base64
from collections.abc import Iterator
from contextlib import contextmanager
from copy import deepcopy
from pathlib import Path

from .errors import AbortedError, InvalidError, ProviderError
from .network import NetworkProvisioner
from .providers import EC2Gateway
from .resolver import has_ebs_volume, is_linux
from .types import SPOT, FlatConfig, ResolvedConfig
from .utils import log, warn

SHEBANG = "#!/bin/bash"
SHUTDOWN_TERMINATE = "terminate"
LATEST_VERSION = "$Latest"

BLOCK_DEVICE_KEYS = ("DeviceName", "NoDevice", "VirtualName")
EBS_KEYS = (
    "DeleteOnTermination",
    "Encrypted",
    "Iops",
    "KmsKeyId",
    "SnapshotId",
    "Throughput",
    "VolumeSize",
    "VolumeType",
)


def build_termination_command(minutes: int) -> str:
    return f'{SHEBANG}\necho "sudo poweroff" | at now + {minutes} minutes\n'


def compose_user_data(flat: FlatConfig, image: dict) -> tuple[str | None, str | None]:
    """Build base64 user data and the matching shutdown behavior.

    With auto-termination on a Linux image the power-off command becomes the
    first line(s) of the boot script, replacing its shebang if it has one.
    Otherwise the boot script is passed through unchanged.

    :param flat: Config holding the timer and boot script path
    :param image: Resolved image, its PlatformDetails decide Linux support
    :return: (user_data, shutdown_behavior), either may be None
    :raises InvalidError: If the boot script cannot be read
    """
    script = None
    if flat.boot_script_file_path:
        try:
            script = Path(flat.boot_script_file_path).read_text()
        except OSError as e:
            raise InvalidError(
                f"Cannot read boot script '{flat.boot_script_file_path}': {e}"
            ) from e

    minutes = flat.auto_termination_timer_minutes
    if minutes > 0 and is_linux(image.get("PlatformDetails")):
        command = build_termination_command(minutes)
        if script is None:
            user_data = command
        else:
            lines = script.split("\n")
            if lines[0] == SHEBANG:
                lines = lines[1:]
            user_data = command + "\n".join(lines)
        return _b64(user_data), SHUTDOWN_TERMINATE

    if script is None:
        return None, None
    return _b64(script), None


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def build_block_device_mappings(image: dict, keep_ebs: bool) -> list[dict] | None:
    """Copy the image's block mappings with DeleteOnTermination=False on EBS.

    :return: Mappings, or None when volumes should follow the image defaults
    """
    if not keep_ebs or not has_ebs_volume(image):
        return None
    mappings = []
    for source in image.get("BlockDeviceMappings", []):
        mapping = {k: deepcopy(source[k]) for k in BLOCK_DEVICE_KEYS if k in source}
        if "Ebs" in source:
            ebs = {k: source["Ebs"][k] for k in EBS_KEYS if k in source["Ebs"]}
            ebs["DeleteOnTermination"] = False
            mapping["Ebs"] = ebs
        mappings.append(mapping)
    return mappings


def build_fleet_request(template_id: str, version: str) -> dict:
    """Instant, single-instance spot fleet against a launch template."""
    return {
        "LaunchTemplateConfigs": [
            {
                "LaunchTemplateSpecification": {
                    "LaunchTemplateId": template_id,
                    "Version": version,
                }
            }
        ],
        "SpotOptions": {"AllocationStrategy": "capacity-optimized"},
        "TargetCapacitySpecification": {
            "DefaultTargetCapacityType": "spot",
            "OnDemandTargetCapacity": 0,
            "SpotTargetCapacity": 1,
            "TotalTargetCapacity": 1,
        },
        "Type": "instant",
    }


@contextmanager
def ephemeral_launch_template(gateway: EC2Gateway, template_data: dict) -> Iterator[str]:
    """Create a launch template for the duration of the block.

    The template is deleted on every exit path. A failed delete is reported
    as a warning and never replaces the outcome of the block.
    """
    template_id = gateway.create_launch_template(template_data)
    try:
        yield template_id
    finally:
        try:
            gateway.delete_launch_template(template_id)
        except ProviderError as e:
            warn(f"{e}. Delete launch template '{template_id}' manually.")


class LaunchDispatcher:
    def __init__(self, gateway: EC2Gateway, network: NetworkProvisioner | None = None):
        self.gateway = gateway
        self.network = network

    def launch(
        self, flat: FlatConfig, resolved: ResolvedConfig | None, confirmed: bool
    ) -> list[str]:
        """Launch one instance the way flat asks for.

        :param flat: Accepted configuration; may be rewritten by network provisioning
        :param resolved: Resolved config, not needed for the template path
        :param confirmed: Whether the user accepted the configuration
        :return: Launched instance ids
        :raises AbortedError: If not confirmed
        """
        if not confirmed:
            raise AbortedError("Launch options not confirmed")

        if flat.launch_template_id:
            log(f"Launching from template '{flat.launch_template_id}' ({flat.capacity_type})...")
            instance_ids = self._launch_from_template(flat)
        elif resolved is None:
            raise InvalidError("A resolved configuration is required without a launch template")
        elif flat.capacity_type == SPOT:
            log("Launching spot instance...")
            instance_ids = self._launch_spot(flat, resolved)
        else:
            log("Launching on-demand instance...")
            instance_ids = self._launch_on_demand(flat, resolved)

        for instance_id in instance_ids:
            log(f"Launched instance '{instance_id}'")
        return instance_ids

    def resolve_template_version(self, flat: FlatConfig) -> str:
        """Fill in the template's default version when none was given."""
        if not flat.launch_template_version:
            template = self.gateway.get_launch_template_by_id(flat.launch_template_id)
            flat.launch_template_version = str(template["DefaultVersionNumber"])
        return flat.launch_template_version

    def _launch_from_template(self, flat: FlatConfig) -> list[str]:
        version = self.resolve_template_version(flat)
        if flat.capacity_type == SPOT:
            return self.gateway.create_fleet(build_fleet_request(flat.launch_template_id, version))
        return self.gateway.run_instances(
            {
                "LaunchTemplate": {
                    "LaunchTemplateId": flat.launch_template_id,
                    "Version": version,
                },
                "MinCount": 1,
                "MaxCount": 1,
            }
        )

    def _instance_options(self, flat: FlatConfig, image: dict) -> dict:
        options: dict = {}
        if flat.iam_instance_profile:
            options["IamInstanceProfile"] = {"Name": flat.iam_instance_profile}
        mappings = build_block_device_mappings(image, flat.keep_ebs_volume_after_termination)
        if mappings:
            options["BlockDeviceMappings"] = mappings
        user_data, shutdown_behavior = compose_user_data(flat, image)
        if shutdown_behavior:
            options["InstanceInitiatedShutdownBehavior"] = shutdown_behavior
        if user_data:
            options["UserData"] = user_data
        return options

    def build_run_request(self, flat: FlatConfig, resolved: ResolvedConfig) -> dict:
        request = {
            "ImageId": flat.image_id,
            "InstanceType": flat.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": resolved.tag_specs,
        }
        if not flat.new_network:
            request["SubnetId"] = flat.subnet_id
            if flat.security_group_ids:
                request["SecurityGroupIds"] = list(flat.security_group_ids)
        request.update(self._instance_options(flat, resolved.image))
        return request

    def build_template_data(self, flat: FlatConfig, resolved: ResolvedConfig) -> dict:
        data = {
            "ImageId": flat.image_id,
            "InstanceType": flat.instance_type,
            "NetworkInterfaces": [
                {
                    "AssociatePublicIpAddress": True,
                    "DeviceIndex": 0,
                    "Groups": list(flat.security_group_ids),
                    "SubnetId": flat.subnet_id,
                }
            ],
            "TagSpecifications": resolved.tag_specs,
        }
        data.update(self._instance_options(flat, resolved.image))
        return data

    def _provision(self, flat: FlatConfig, request: dict | None = None) -> None:
        if self.network is None:
            raise InvalidError("A new network was requested but no network provisioner is set")
        self.network.provision_network(flat, request)

    def _launch_on_demand(self, flat: FlatConfig, resolved: ResolvedConfig) -> list[str]:
        request = self.build_run_request(flat, resolved)
        if flat.new_network:
            self._provision(flat, request)
        return self.gateway.run_instances(request)

    def _launch_spot(self, flat: FlatConfig, resolved: ResolvedConfig) -> list[str]:
        if flat.new_network:
            self._provision(flat)
        template_data = self.build_template_data(flat, resolved)
        with ephemeral_launch_template(self.gateway, template_data) as template_id:
            return self.gateway.create_fleet(build_fleet_request(template_id, LATEST_VERSION))
