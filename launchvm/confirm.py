"""Review a resolved configuration, edit fields, and accept or reject it."""

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from .errors import InvalidError
from .questions import (
    RESPONSE_NO,
    RESPONSE_YES,
    ask_auto_termination_timer,
    ask_boot_script,
    ask_capacity_type,
    ask_confirmation,
    ask_iam_profile,
    ask_image,
    ask_instance_type,
    ask_keep_ebs_volume,
    ask_region,
    ask_security_group_placeholder,
    ask_subnet,
    ask_subnet_placeholder,
    ask_user_tags,
    ask_vpc,
    choose_security_groups,
)
from .resolver import has_ebs_volume, is_linux
from .tags import display_name, format_tag_string
from .types import PLACEHOLDER_ALL, PLACEHOLDER_NEW, FlatConfig, Placeholder, ResolvedConfig

if TYPE_CHECKING:
    from .session import LaunchContext


class EditableField(Enum):
    REGION = "Region"
    VPC = "VPC"
    SUBNET = "Subnet"
    SUBNET_PLACEHOLDER = "Subnet Placeholder"
    INSTANCE_TYPE = "Instance Type"
    IMAGE = "Image"
    SECURITY_GROUP = "Security Group"
    SECURITY_GROUP_PLACEHOLDER = "Security Group Placeholder"
    KEEP_EBS_VOLUME = "Keep EBS Volume(s) After Termination"
    AUTO_TERMINATION_TIMER = "Auto Termination Timer in Minutes"
    IAM_INSTANCE_PROFILE = "IAM Instance Profile"
    BOOT_SCRIPT = "Boot Script Filepath"
    USER_TAGS = "Tag Specification(key|value)"
    CAPACITY_TYPE = "Capacity Type"


class ReviewState(Enum):
    RESOLVING = auto()
    REVIEWING = auto()
    EDITING = auto()
    ACCEPTED = auto()
    REJECTED = auto()


NEW_VPC_DISPLAY = "New VPC"
GROUP_PLACEHOLDER_DISPLAY = {
    PLACEHOLDER_NEW: "New security group for SSH",
    PLACEHOLDER_ALL: "New default security group",
}


@dataclass
class ReviewRow:
    label: str
    value: str
    field: EditableField | None = None


def _group_rows(flat: FlatConfig, resolved: ResolvedConfig) -> list[ReviewRow]:
    label = EditableField.SECURITY_GROUP.value
    if flat.new_network:
        values = [
            GROUP_PLACEHOLDER_DISPLAY.get(ref.value, ref.value)
            for ref in flat.security_group_refs()
            if isinstance(ref, Placeholder)
        ]
        field = EditableField.SECURITY_GROUP_PLACEHOLDER
    else:
        values = [display_name(g, "GroupId") for g in resolved.security_groups or []]
        field = EditableField.SECURITY_GROUP
    if not values:
        return [ReviewRow(label, "None", field)]
    rows = [ReviewRow(label, values[0], field)]
    rows.extend(ReviewRow("", value) for value in values[1:])
    return rows


def _ebs_volume_rows(image: dict) -> list[ReviewRow]:
    values = []
    for mapping in image.get("BlockDeviceMappings", []):
        ebs = mapping.get("Ebs")
        if ebs:
            values.append(
                f"{mapping.get('DeviceName', '')}: {ebs.get('VolumeSize', '?')} GiB "
                f"{ebs.get('VolumeType', '')}".strip()
            )
    return [ReviewRow("EBS Volumes" if i == 0 else "", v) for i, v in enumerate(values)]


def build_review_rows(flat: FlatConfig, resolved: ResolvedConfig) -> list[ReviewRow]:
    """Rows of the review table, in display order.

    Placeholders are shown by what will be created, and with a new network
    the subnet and security group rows edit their placeholder instead.
    """
    image = resolved.image
    if flat.new_network:
        vpc = NEW_VPC_DISPLAY
        subnet = ReviewRow(
            EditableField.SUBNET.value,
            f"New Subnet in {flat.subnet_id}",
            EditableField.SUBNET_PLACEHOLDER,
        )
    else:
        vpc = display_name(resolved.vpc, "VpcId")
        subnet = ReviewRow(
            EditableField.SUBNET.value,
            display_name(resolved.subnet, "SubnetId"),
            EditableField.SUBNET,
        )

    rows = [
        ReviewRow(EditableField.REGION.value, flat.region, EditableField.REGION),
        ReviewRow(EditableField.VPC.value, vpc, EditableField.VPC),
        subnet,
        ReviewRow(EditableField.INSTANCE_TYPE.value, flat.instance_type, EditableField.INSTANCE_TYPE),
        ReviewRow(EditableField.CAPACITY_TYPE.value, flat.capacity_type, EditableField.CAPACITY_TYPE),
        ReviewRow(
            EditableField.IMAGE.value,
            f"{image['ImageId']} ({image.get('PlatformDetails', 'unknown platform')})",
            EditableField.IMAGE,
        ),
    ]
    rows.extend(_group_rows(flat, resolved))

    if has_ebs_volume(image):
        rows.append(
            ReviewRow(
                EditableField.KEEP_EBS_VOLUME.value,
                str(flat.keep_ebs_volume_after_termination).lower(),
                EditableField.KEEP_EBS_VOLUME,
            )
        )
    if is_linux(image.get("PlatformDetails")):
        minutes = flat.auto_termination_timer_minutes
        rows.append(
            ReviewRow(
                EditableField.AUTO_TERMINATION_TIMER.value,
                str(minutes) if minutes > 0 else "None",
                EditableField.AUTO_TERMINATION_TIMER,
            )
        )

    rows.extend(_ebs_volume_rows(image))
    info = resolved.instance_type_info
    if info.get("InstanceStorageSupported"):
        total = info.get("InstanceStorageInfo", {}).get("TotalSizeInGB", "?")
        rows.append(ReviewRow("Instance Storage", f"{total} GB"))

    rows.append(
        ReviewRow(
            EditableField.IAM_INSTANCE_PROFILE.value,
            flat.iam_instance_profile or "None",
            EditableField.IAM_INSTANCE_PROFILE,
        )
    )
    rows.append(
        ReviewRow(
            EditableField.BOOT_SCRIPT.value,
            flat.boot_script_file_path or "None",
            EditableField.BOOT_SCRIPT,
        )
    )
    rows.append(
        ReviewRow(
            EditableField.USER_TAGS.value,
            format_tag_string(flat.user_tags) or "None",
            EditableField.USER_TAGS,
        )
    )
    return rows


def index_rows(rows: list[ReviewRow]) -> tuple[list[list[str]], list[EditableField]]:
    """Number the editable rows.

    :return: (table rows with a number column, field for each number)
    """
    table = []
    fields = []
    for row in rows:
        if row.label and row.field is not None:
            fields.append(row.field)
            table.append([f"{len(fields)}.", row.label, row.value])
        else:
            table.append(["", row.label, row.value])
    return table, fields


class FieldEditor:
    """Re-asks one field of a FlatConfig, querying AWS where the options live."""

    def __init__(self, ctx: "LaunchContext"):
        self.ctx = ctx

    def edit(self, field: EditableField, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        _HANDLERS[field](self, flat, resolved)

    def edit_region(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        """Instance types, images and networks are regional, so ask them again."""
        ctx = self.ctx
        flat.region = ask_region(ctx.terminal, ctx.gateway, flat.region)
        ctx.gateway.change_region(flat.region)
        flat.instance_type = ask_instance_type(
            ctx.terminal, ctx.gateway, ctx.resolver, flat.instance_type
        )
        self.edit_image(flat, resolved)
        self.read_network(flat, "")

    def read_network(self, flat: FlatConfig, default_vpc_id: str) -> None:
        """Ask VPC, then subnet and security groups, or their placeholders."""
        ctx = self.ctx
        vpc_id = ask_vpc(ctx.terminal, ctx.gateway, default_vpc_id)
        if vpc_id == PLACEHOLDER_NEW:
            flat.new_network = True
            flat.subnet_id = ask_subnet_placeholder(ctx.terminal, ctx.gateway)
            flat.security_group_ids = [ask_security_group_placeholder(ctx.terminal)]
            return
        flat.new_network = False
        flat.subnet_id = ask_subnet(ctx.terminal, ctx.gateway, vpc_id)
        flat.security_group_ids = choose_security_groups(ctx.terminal, ctx.gateway, vpc_id)

    def edit_vpc(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        default_vpc_id = resolved.vpc["VpcId"] if resolved.vpc else PLACEHOLDER_NEW
        self.read_network(flat, default_vpc_id)

    def edit_subnet(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        if resolved.vpc is None:
            raise InvalidError("Cannot pick a subnet before the VPC exists")
        flat.subnet_id = ask_subnet(
            self.ctx.terminal, self.ctx.gateway, resolved.vpc["VpcId"], flat.subnet_id
        )

    def edit_subnet_placeholder(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.subnet_id = ask_subnet_placeholder(self.ctx.terminal, self.ctx.gateway, flat.subnet_id)

    def edit_instance_type(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        """A new instance type may not support the current image, so ask it too."""
        flat.instance_type = ask_instance_type(
            self.ctx.terminal, self.ctx.gateway, self.ctx.resolver, flat.instance_type
        )
        self.edit_image(flat, resolved)

    def edit_image(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        image = ask_image(
            self.ctx.terminal, self.ctx.gateway, self.ctx.resolver, flat.instance_type, flat.image_id
        )
        flat.image_id = image["ImageId"]

    def edit_security_group(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        if resolved.vpc is None:
            raise InvalidError("Cannot pick security groups before the VPC exists")
        flat.security_group_ids = choose_security_groups(
            self.ctx.terminal, self.ctx.gateway, resolved.vpc["VpcId"], flat.security_group_ids
        )

    def edit_security_group_placeholder(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.security_group_ids = [ask_security_group_placeholder(self.ctx.terminal)]

    def edit_keep_ebs_volume(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.keep_ebs_volume_after_termination = ask_keep_ebs_volume(
            self.ctx.terminal, flat.keep_ebs_volume_after_termination
        )

    def edit_auto_termination_timer(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.auto_termination_timer_minutes = ask_auto_termination_timer(
            self.ctx.terminal, flat.auto_termination_timer_minutes
        )

    def edit_iam_instance_profile(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.iam_instance_profile = ask_iam_profile(
            self.ctx.terminal, self.ctx.gateway, flat.iam_instance_profile
        )

    def edit_boot_script(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.boot_script_file_path = ask_boot_script(self.ctx.terminal, flat.boot_script_file_path)

    def edit_user_tags(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.user_tags = ask_user_tags(self.ctx.terminal, flat.user_tags)

    def edit_capacity_type(self, flat: FlatConfig, resolved: ResolvedConfig) -> None:
        flat.capacity_type = ask_capacity_type(
            self.ctx.terminal, self.ctx.gateway, flat.instance_type, flat.capacity_type
        )


_HANDLERS = {
    EditableField.REGION: FieldEditor.edit_region,
    EditableField.VPC: FieldEditor.edit_vpc,
    EditableField.SUBNET: FieldEditor.edit_subnet,
    EditableField.SUBNET_PLACEHOLDER: FieldEditor.edit_subnet_placeholder,
    EditableField.INSTANCE_TYPE: FieldEditor.edit_instance_type,
    EditableField.IMAGE: FieldEditor.edit_image,
    EditableField.SECURITY_GROUP: FieldEditor.edit_security_group,
    EditableField.SECURITY_GROUP_PLACEHOLDER: FieldEditor.edit_security_group_placeholder,
    EditableField.KEEP_EBS_VOLUME: FieldEditor.edit_keep_ebs_volume,
    EditableField.AUTO_TERMINATION_TIMER: FieldEditor.edit_auto_termination_timer,
    EditableField.IAM_INSTANCE_PROFILE: FieldEditor.edit_iam_instance_profile,
    EditableField.BOOT_SCRIPT: FieldEditor.edit_boot_script,
    EditableField.USER_TAGS: FieldEditor.edit_user_tags,
    EditableField.CAPACITY_TYPE: FieldEditor.edit_capacity_type,
}

_unhandled = set(EditableField) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No edit handler for: {sorted(f.value for f in _unhandled)}")


class ConfirmationEngine:
    """Loop of resolve, review and edit until the user says Yes or No."""

    def __init__(self, ctx: "LaunchContext"):
        self.ctx = ctx
        self.editor = FieldEditor(ctx)

    def run(self, flat: FlatConfig, allow_edit: bool) -> tuple[bool, ResolvedConfig]:
        """Resolve flat and ask for confirmation, editing flat in place if asked.

        :param flat: Configuration to review
        :param allow_edit: Offer field edits; otherwise ask a single Yes/No
        :return: (accepted, resolution of the final flat)
        :raises NotFoundError: If resolution fails
        :raises ProviderError: If an AWS call made while editing fails
        """
        state = ReviewState.RESOLVING
        resolved = None
        field = None
        while True:
            if state is ReviewState.RESOLVING:
                resolved = self.ctx.resolver.resolve(flat)
                state = ReviewState.REVIEWING
            elif state is ReviewState.REVIEWING:
                table, fields = index_rows(build_review_rows(flat, resolved))
                if not allow_edit:
                    self.ctx.terminal.show_table(table, ["", "Configurations", "Values"])
                    accepted = self.ctx.terminal.ask_yes_no(
                        "Please confirm if you would like to launch instance with following options:"
                    )
                    state = ReviewState.ACCEPTED if accepted else ReviewState.REJECTED
                    continue
                answer = ask_confirmation(self.ctx.terminal, table, [f.value for f in fields])
                if answer == RESPONSE_YES:
                    state = ReviewState.ACCEPTED
                elif answer == RESPONSE_NO:
                    state = ReviewState.REJECTED
                else:
                    field = EditableField(answer)
                    state = ReviewState.EDITING
            elif state is ReviewState.EDITING:
                self.editor.edit(field, flat, resolved)
                state = ReviewState.RESOLVING
            else:
                return state is ReviewState.ACCEPTED, resolved
