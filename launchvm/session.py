"""Interactive and non-interactive launch flows."""

from dataclasses import dataclass, field

from .config import ConfigStore, fill_missing, override_with_flags, validate_launch_flags
from .confirm import ConfirmationEngine
from .errors import LaunchVMError
from .launch import LaunchDispatcher
from .network import NetworkProvisioner
from .providers import EC2Gateway
from .questions import (
    Terminal,
    ask_auto_termination_timer,
    ask_boot_script,
    ask_capacity_type,
    ask_iam_profile,
    ask_image,
    ask_instance_type,
    ask_keep_ebs_volume,
    ask_launch_template,
    ask_launch_template_version,
    ask_region,
    ask_save_config,
    ask_security_group_placeholder,
    ask_subnet,
    ask_subnet_placeholder,
    ask_user_tags,
    ask_vpc,
    choose_security_groups,
)
from .resolver import ConfigResolver, has_ebs_volume, is_linux
from .stack import StackProvisioner
from .types import ON_DEMAND, PLACEHOLDER_NEW, FlatConfig
from .utils import log, warn


@dataclass
class LaunchContext:
    """Everything one launch command needs, built once per invocation."""

    gateway: EC2Gateway
    terminal: Terminal
    store: ConfigStore
    flags: FlatConfig = field(default_factory=FlatConfig)
    interactive: bool = False
    save_config: bool = False
    _resolver: ConfigResolver | None = field(default=None, init=False, repr=False)

    @property
    def resolver(self) -> ConfigResolver:
        if self._resolver is None:
            self._resolver = ConfigResolver(self.gateway)
        return self._resolver

    @property
    def network(self) -> NetworkProvisioner:
        # CloudFormation client follows the gateway's current region
        stack = StackProvisioner(self.gateway.session, self.gateway.region)
        return NetworkProvisioner(self.gateway, stack)

    @property
    def dispatcher(self) -> LaunchDispatcher:
        return LaunchDispatcher(self.gateway, self.network)


def load_saved_config(ctx: LaunchContext) -> FlatConfig | None:
    """Load the saved config, or warn and return None."""
    try:
        return ctx.store.load()
    except LaunchVMError as e:
        warn(f"{e}. Using default settings instead.")
        return None


def run_launch(ctx: LaunchContext) -> list[str]:
    """Gather, confirm and launch, then save the config if asked.

    :return: Launched instance ids
    :raises AbortedError: If the user declines the launch
    """
    validate_launch_flags(ctx.flags)
    if ctx.interactive:
        flat, instance_ids = _run_interactive(ctx)
        if ctx.save_config or ask_save_config(ctx.terminal):
            ctx.store.save(flat)
    else:
        flat, instance_ids = _run_non_interactive(ctx)
        if ctx.save_config:
            ctx.store.save(flat)
    return instance_ids


def _run_non_interactive(ctx: LaunchContext) -> tuple[FlatConfig, list[str]]:
    flat = load_saved_config(ctx) or FlatConfig()
    override_with_flags(flat, ctx.flags)
    ctx.gateway.change_region(flat.region)
    flat.region = ctx.gateway.region

    if flat.launch_template_id:
        return flat, _run_template(ctx, flat)

    if flat.new_network:
        _fill_network_placeholders(ctx, flat)
    if not (flat.instance_type and flat.image_id and flat.capacity_type) or (
        not flat.new_network and not flat.subnet_id
    ):
        log("Filling missing settings from account defaults...")
        fill_missing(flat, ctx.resolver.derive_defaults(flat.instance_type or None))

    accepted, resolved = ConfirmationEngine(ctx).run(flat, allow_edit=False)
    return flat, ctx.dispatcher.launch(flat, resolved, accepted)


def _fill_network_placeholders(ctx: LaunchContext, flat: FlatConfig) -> None:
    """New network without a zone or group choice: first zone, new SSH group."""
    if not flat.subnet_id:
        flat.subnet_id = ctx.gateway.get_availability_zones()[0]["ZoneName"]
    if not flat.security_group_ids:
        flat.security_group_ids = [PLACEHOLDER_NEW]


def _run_interactive(ctx: LaunchContext) -> tuple[FlatConfig, list[str]]:
    terminal, gateway, flags = ctx.terminal, ctx.gateway, ctx.flags

    region = flags.region or ask_region(terminal, gateway, gateway.region)
    gateway.change_region(region)
    saved = load_saved_config(ctx) or FlatConfig()
    flat = override_with_flags(FlatConfig(region=region), flags)

    if not flat.launch_template_id:
        flat.launch_template_id = ask_launch_template(terminal, gateway, saved.launch_template_id)
    if flat.launch_template_id:
        return flat, _run_template(ctx, flat, saved)

    if not flat.instance_type:
        flat.instance_type = ask_instance_type(
            terminal, gateway, ctx.resolver, saved.instance_type
        )
    if flat.image_id:
        image = gateway.get_image_by_id(flat.image_id)
    else:
        image = ask_image(terminal, gateway, ctx.resolver, flat.instance_type, saved.image_id)
        flat.image_id = image["ImageId"]

    if has_ebs_volume(image) and not flat.keep_ebs_volume_after_termination:
        flat.keep_ebs_volume_after_termination = ask_keep_ebs_volume(
            terminal, saved.keep_ebs_volume_after_termination
        )
    if is_linux(image.get("PlatformDetails")) and not flat.auto_termination_timer_minutes:
        flat.auto_termination_timer_minutes = ask_auto_termination_timer(
            terminal, saved.auto_termination_timer_minutes
        )

    _ask_network(ctx, flat, saved)

    if not flat.iam_instance_profile:
        flat.iam_instance_profile = ask_iam_profile(terminal, gateway, saved.iam_instance_profile)
    if not flat.boot_script_file_path:
        flat.boot_script_file_path = ask_boot_script(terminal, saved.boot_script_file_path)
    if not flat.user_tags:
        flat.user_tags = ask_user_tags(terminal, saved.user_tags)
    if not flat.capacity_type:
        flat.capacity_type = ask_capacity_type(
            terminal, gateway, flat.instance_type, saved.capacity_type
        )

    accepted, resolved = ConfirmationEngine(ctx).run(flat, allow_edit=True)
    return flat, ctx.dispatcher.launch(flat, resolved, accepted)


def _ask_network(ctx: LaunchContext, flat: FlatConfig, saved: FlatConfig) -> None:
    terminal, gateway = ctx.terminal, ctx.gateway

    if flat.subnet_id and not flat.new_network:
        if not flat.security_group_ids:
            vpc_id = gateway.get_subnet_by_id(flat.subnet_id)["VpcId"]
            flat.security_group_ids = choose_security_groups(
                terminal, gateway, vpc_id, saved.security_group_ids
            )
        return

    vpc_id = PLACEHOLDER_NEW if flat.new_network else ask_vpc(terminal, gateway)
    if vpc_id == PLACEHOLDER_NEW:
        flat.new_network = True
        if not flat.subnet_id:
            default_zone = saved.subnet_id if saved.new_network else ""
            flat.subnet_id = ask_subnet_placeholder(terminal, gateway, default_zone)
        if not flat.security_group_ids:
            flat.security_group_ids = [ask_security_group_placeholder(terminal)]
        return

    flat.subnet_id = ask_subnet(terminal, gateway, vpc_id, saved.subnet_id)
    if not flat.security_group_ids:
        flat.security_group_ids = choose_security_groups(
            terminal, gateway, vpc_id, saved.security_group_ids
        )


def build_template_summary(flat: FlatConfig, template_data: dict) -> list[list[str]]:
    """Rows describing what a launch template version will launch."""
    rows = [["Region", flat.region]]
    subnets = [
        nic["SubnetId"] for nic in template_data.get("NetworkInterfaces", []) if nic.get("SubnetId")
    ]
    for i, subnet_id in enumerate(subnets):
        rows.append(["Subnets" if i == 0 else "", subnet_id])
    rows.append(["Instance Type", template_data.get("InstanceType", "None")])
    rows.append(["Capacity Type", flat.capacity_type])
    rows.append(["Image ID", template_data.get("ImageId", "None")])
    volumes = [
        f"{m.get('DeviceName', '')}: {m['Ebs'].get('VolumeSize', '?')} GiB"
        for m in template_data.get("BlockDeviceMappings", [])
        if "Ebs" in m
    ]
    for i, volume in enumerate(volumes):
        rows.append(["EBS Volumes" if i == 0 else "", volume])
    return rows


def _run_template(ctx: LaunchContext, flat: FlatConfig, saved: FlatConfig | None = None) -> list[str]:
    terminal, gateway = ctx.terminal, ctx.gateway
    dispatcher = ctx.dispatcher

    if not flat.launch_template_version:
        if ctx.interactive:
            default = saved.launch_template_version if saved else ""
            flat.launch_template_version = ask_launch_template_version(
                terminal, gateway, flat.launch_template_id, default
            )
        else:
            dispatcher.resolve_template_version(flat)

    version = gateway.get_launch_template_versions(
        flat.launch_template_id, flat.launch_template_version
    )[0]
    template_data = version.get("LaunchTemplateData", {})

    if not flat.capacity_type:
        if ctx.interactive:
            default = saved.capacity_type if saved else ""
            flat.capacity_type = ask_capacity_type(
                terminal, gateway, template_data.get("InstanceType", ""), default
            )
        else:
            flat.capacity_type = ON_DEMAND

    terminal.show_table(build_template_summary(flat, template_data), ["Configurations", "Values"])
    accepted = terminal.ask_yes_no(
        "Please confirm if you would like to launch instance with following options:"
    )
    return dispatcher.launch(flat, None, accepted)
