"""Terminal prompts: rich tables plus the individual launch questions.

``Terminal`` is the only place that reads input or draws tables. The
``ask_*`` functions gather option lists (querying AWS where needed) and map
the chosen option back to a value.
"""

from collections.abc import Callable, Sequence
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from .errors import NotFoundError, ProviderError
from .providers import EC2Gateway
from .resolver import (
    IMAGE_PRIORITY,
    ConfigResolver,
    root_device_type_for,
    supported_architectures,
)
from .stack import REQUIRED_AVAILABILITY_ZONES
from .tags import display_name, format_tag_string, parse_tag_string, validate_tag_string
from .types import CAPACITY_TYPES, ON_DEMAND, PLACEHOLDER_ALL, PLACEHOLDER_NEW, SPOT
from .utils import warn

RESPONSE_YES = "Yes"
RESPONSE_NO = "No"
ENTER_INSTANCE_TYPE = "enter"
FIND_INSTANCE_TYPE = "find"

Validator = Callable[[str], bool]


def is_non_negative_int(text: str) -> bool:
    return text.strip().isdigit()


def is_positive_int(text: str) -> bool:
    return is_non_negative_int(text) and int(text) > 0


class Terminal:
    """Rich-rendered prompts that re-ask until the answer is valid."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def show_table(
        self,
        rows: Sequence[Sequence[str]],
        headers: Sequence[str] | None = None,
        title: str | None = None,
    ) -> None:
        width = max((len(row) for row in rows), default=len(headers or []))
        table = Table(title=title, show_header=bool(headers), title_justify="left")
        for i in range(width):
            header = headers[i] if headers and i < len(headers) else ""
            table.add_column(header)
        for row in rows:
            table.add_row(*[str(cell) for cell in row], *[""] * (width - len(row)))
        self.console.print(table)

    def _prompt(self, label: str, default: str | None) -> str:
        if default:
            answer = Prompt.ask(label, default=default, console=self.console)
        else:
            answer = Prompt.ask(label, console=self.console)
        return (answer or "").strip()

    @staticmethod
    def match_option(
        answer: str, indexed_options: Sequence[str], extra_options: Sequence[str] = ()
    ) -> str | None:
        """Map an answer to an option by value (case-insensitive) or 1-based index."""
        for option in [*indexed_options, *extra_options]:
            if answer.lower() == option.lower():
                return option
        if answer.isdigit() and 1 <= int(answer) <= len(indexed_options):
            return indexed_options[int(answer) - 1]
        return None

    def ask_choice(
        self,
        question: str,
        rows: Sequence[Sequence[str]],
        indexed_options: Sequence[str],
        default_option: str | None = None,
        headers: Sequence[str] | None = None,
        validator: Validator | None = None,
        extra_options: Sequence[str] = (),
        numbered: bool = True,
    ) -> str:
        """Show a table of options and return the chosen option value.

        :param question: Question shown above the table
        :param rows: Table rows; with numbered=True row i is option i
        :param indexed_options: Values selectable by number or by value
        :param default_option: Value returned on empty input
        :param headers: Column headers, without the number column
        :param validator: Accepts free-text answers that are not options
        :param extra_options: Values selectable only by typing them
        :param numbered: Prepend a 1-based number column to rows
        :return: Selected option, or validated free text
        """
        if numbered:
            rows = [[f"{i}.", *row] for i, row in enumerate(rows, start=1)]
            headers = ["Option", *headers] if headers else None
        self.console.print(f"[bold]{question}[/bold]")
        if rows:
            self.show_table(rows, headers)
        while True:
            answer = self._prompt("Option", default_option)
            choice = self.match_option(answer, indexed_options, extra_options)
            if choice is not None:
                return choice
            if validator and answer and validator(answer):
                return answer
            self.console.print(f"[red]Invalid option '{escape(answer)}', try again[/red]")

    def ask_multi_choice(
        self,
        question: str,
        rows: Sequence[Sequence[str]],
        indexed_options: Sequence[str],
        default_options: Sequence[str] = (),
        headers: Sequence[str] | None = None,
    ) -> list[str]:
        """Like ask_choice, but takes a comma-separated list; 'none' selects nothing."""
        numbered_rows = [[f"{i}.", *row] for i, row in enumerate(rows, start=1)]
        self.console.print(f"[bold]{question}[/bold] (comma-separated, 'none' for no selection)")
        self.show_table(numbered_rows, ["Option", *headers] if headers else None)
        default = ",".join(default_options)
        while True:
            answer = self._prompt("Options", default)
            if answer.lower() == "none" or not answer:
                return []
            choices = [self.match_option(part.strip(), indexed_options) for part in answer.split(",")]
            if all(choices):
                return list(dict.fromkeys(choices))
            self.console.print(f"[red]Invalid selection '{escape(answer)}', try again[/red]")

    def ask_text(
        self, question: str, default: str = "", validators: Sequence[Validator] = ()
    ) -> str:
        self.console.print(f"[bold]{question}[/bold]")
        while True:
            answer = self._prompt("Answer", default)
            if all(validate(answer) for validate in validators):
                return answer
            self.console.print(f"[red]Invalid input '{escape(answer)}', try again[/red]")

    def ask_yes_no(self, question: str, default_yes: bool = False) -> bool:
        answer = self.ask_choice(
            f"{question} (Yes/No)",
            [],
            [RESPONSE_YES, RESPONSE_NO],
            default_option=RESPONSE_YES if default_yes else RESPONSE_NO,
            numbered=False,
        )
        return answer == RESPONSE_YES


def ask_region(terminal: Terminal, gateway: EC2Gateway, default_region: str = "") -> str:
    regions = gateway.get_enabled_regions()
    options = [r["RegionName"] for r in regions]
    rows = [[r["RegionName"], r.get("Endpoint", "")] for r in regions]
    default = default_region if default_region in options else gateway.region
    return terminal.ask_choice("Which Region?", rows, options, default, ["Region", "Endpoint"])


def ask_launch_template(terminal: Terminal, gateway: EC2Gateway, default_id: str = "") -> str:
    """Pick a launch template id, or "" to configure the instance by hand."""
    templates = gateway.get_launch_templates()
    if not templates:
        return ""
    options = [t["LaunchTemplateId"] for t in templates]
    rows = [
        [f"{t['LaunchTemplateName']}({t['LaunchTemplateId']})", str(t["LatestVersionNumber"])]
        for t in templates
    ]
    options.append(RESPONSE_NO)
    rows.append(["Do not use launch template", ""])
    default = default_id if default_id in options else RESPONSE_NO
    answer = terminal.ask_choice(
        "Which Launch Template should be used?",
        rows,
        options,
        default,
        ["Launch Template", "Latest Version"],
    )
    return "" if answer == RESPONSE_NO else answer


def ask_launch_template_version(
    terminal: Terminal, gateway: EC2Gateway, template_id: str, default_version: str = ""
) -> str:
    versions = gateway.get_launch_template_versions(template_id)
    options = [str(v["VersionNumber"]) for v in versions]
    rows = [[str(v["VersionNumber"]), v.get("VersionDescription") or "-"] for v in versions]
    default = default_version if default_version in options else None
    if default is None:
        default = next((str(v["VersionNumber"]) for v in versions if v.get("DefaultVersion")), None)
    return terminal.ask_choice(
        "Launch Template Version", rows, options, default, ["Version Number", "Description"]
    )


def ask_instance_type(
    terminal: Terminal,
    gateway: EC2Gateway,
    resolver: ConfigResolver,
    default_instance_type: str = "",
) -> str:
    """Use the default type, type one in, or find one by vCPUs and memory."""
    names = {info["InstanceType"] for info in gateway.get_instance_types()}
    default = default_instance_type if default_instance_type in names else None
    if default is None:
        default = resolver.default_instance_type()

    answer = terminal.ask_choice(
        "Instance type",
        [
            [f"Use the default instance type: {default}"],
            ["Enter an instance type"],
            ["Find an instance type by vCPUs and memory"],
        ],
        [default, ENTER_INSTANCE_TYPE, FIND_INSTANCE_TYPE],
        default,
    )
    if answer == ENTER_INSTANCE_TYPE:
        return terminal.ask_text(
            "Which instance type should be used? (eg. m5.xlarge, c5.xlarge)",
            default,
            [lambda value: value in names],
        )
    if answer == FIND_INSTANCE_TYPE:
        return _find_instance_type(terminal, resolver)
    return answer


def _find_instance_type(terminal: Terminal, resolver: ConfigResolver) -> str:
    while True:
        vcpus = int(terminal.ask_text("How many vCPUs are to be used?", "2", [is_positive_int]))
        memory = int(
            terminal.ask_text("How much memory (GiB) is to be used?", "2", [is_positive_int])
        )
        try:
            matches = resolver.find_instance_types(vcpus, memory)
        except NotFoundError as e:
            terminal.console.print(f"[yellow]{e}. Please enter vCPUs and memory again.[/yellow]")
            continue
        rows = [
            [
                info["InstanceType"],
                str(info.get("VCpuInfo", {}).get("DefaultVCpus", "")),
                f"{info.get('MemoryInfo', {}).get('SizeInMiB', 0) / 1024:.2f} GiB",
                str(info.get("InstanceStorageSupported", False)).lower(),
            ]
            for info in matches
        ]
        return terminal.ask_choice(
            "Instance Type",
            rows,
            [info["InstanceType"] for info in matches],
            headers=["Instance Type", "vCPUs", "Memory", "Instance Storage"],
        )


def ask_image(
    terminal: Terminal,
    gateway: EC2Gateway,
    resolver: ConfigResolver,
    instance_type: str,
    default_image_id: str = "",
) -> dict:
    """Pick one of the latest images for the instance type, or type an image id.

    :return: The selected image
    """
    info = gateway.get_instance_type(instance_type)
    images = resolver.latest_images(root_device_type_for(info), supported_architectures(info))
    ordered = [(os_name, images[os_name]) for os_name in IMAGE_PRIORITY if os_name in images]

    options = [image["ImageId"] for _, image in ordered]
    rows = [[os_name, image["ImageId"], image.get("CreationDate", "")] for os_name, image in ordered]
    default = default_image_id or (options[0] if options else None)

    def image_exists(image_id: str) -> bool:
        try:
            gateway.get_image_by_id(image_id)
        except NotFoundError:
            return False
        return True

    answer = terminal.ask_choice(
        "Which AMI should be used?",
        rows,
        options,
        default,
        ["Operating System", "Image ID", "Creation Date"],
        validator=image_exists,
    )
    for _, image in ordered:
        if image["ImageId"] == answer:
            return image
    return gateway.get_image_by_id(answer)


def ask_keep_ebs_volume(terminal: Terminal, default: bool = False) -> bool:
    return terminal.ask_yes_no("Persist EBS volume(s) after the instance is terminated?", default)


def ask_iam_profile(terminal: Terminal, gateway: EC2Gateway, default: str = "") -> str:
    """Pick an instance profile name, or "" to attach none."""
    profiles = gateway.get_instance_profiles()
    options = [p["InstanceProfileName"] for p in profiles]
    rows = [
        [p["InstanceProfileName"], p["InstanceProfileId"], str(p.get("CreateDate", ""))]
        for p in profiles
    ]
    options.append(RESPONSE_NO)
    rows.append(["Do not attach IAM profile", "", ""])
    answer = terminal.ask_choice(
        "IAM Profile",
        rows,
        options,
        default if default in options else RESPONSE_NO,
        ["Profile Name", "Profile ID", "Creation Date"],
    )
    return "" if answer == RESPONSE_NO else answer


def ask_auto_termination_timer(terminal: Terminal, default: int = 0) -> int:
    answer = terminal.ask_text(
        "After how many minutes should the instance terminate? (0 for no auto-termination)",
        str(default),
        [is_non_negative_int],
    )
    return int(answer)


def ask_vpc(terminal: Terminal, gateway: EC2Gateway, default_vpc_id: str = "") -> str:
    """Pick a VPC id, or PLACEHOLDER_NEW to create a new network."""
    vpcs = gateway.get_vpcs()
    options = [v["VpcId"] for v in vpcs]
    rows = [[display_name(v, "VpcId"), v.get("CidrBlock", "")] for v in vpcs]
    options.append(PLACEHOLDER_NEW)
    rows.append(
        [f"Create new VPC with default CIDR and {REQUIRED_AVAILABILITY_ZONES} subnets", ""]
    )
    default = PLACEHOLDER_NEW
    if default_vpc_id in options:
        default = default_vpc_id
    else:
        default = next((v["VpcId"] for v in vpcs if v.get("IsDefault")), default)
    return terminal.ask_choice("Which VPC should be used?", rows, options, default, ["VPC", "CIDR Block"])


def ask_subnet(
    terminal: Terminal, gateway: EC2Gateway, vpc_id: str, default_subnet_id: str = ""
) -> str:
    subnets = gateway.get_subnets_by_vpc(vpc_id)
    if not subnets:
        raise NotFoundError(f"No subnets in VPC '{vpc_id}'")
    options = [s["SubnetId"] for s in subnets]
    rows = [
        [display_name(s, "SubnetId"), s.get("AvailabilityZone", ""), s.get("CidrBlock", "")]
        for s in subnets
    ]
    default = default_subnet_id if default_subnet_id in options else options[0]
    return terminal.ask_choice(
        "Which subnet should be used?",
        rows,
        options,
        default,
        ["Subnet", "Availability Zone", "CIDR Block"],
    )


def ask_subnet_placeholder(terminal: Terminal, gateway: EC2Gateway, default_zone: str = "") -> str:
    """Pick the availability zone the new subnet should be in."""
    zones = gateway.get_availability_zones()
    options = [z["ZoneName"] for z in zones]
    rows = [[z["ZoneName"], z.get("ZoneId", "")] for z in zones]
    default = default_zone if default_zone in options else options[0]
    return terminal.ask_choice("Availability Zone", rows, options, default, ["Zone Name", "Zone ID"])


def ask_security_groups(
    terminal: Terminal, groups: list[dict], default_ids: Sequence[str] = ()
) -> list[str]:
    """Pick any number of groups; PLACEHOLDER_NEW asks for a new SSH group."""
    options = [g["GroupId"] for g in groups]
    rows = [[display_name(g, "GroupId"), g.get("Description", "")] for g in groups]
    options.append(PLACEHOLDER_NEW)
    rows.append(["Create a new security group that enables SSH", ""])
    return terminal.ask_multi_choice(
        "Security Group(s)",
        rows,
        options,
        [gid for gid in default_ids if gid in options],
        ["Security Group", "Description"],
    )


def choose_security_groups(
    terminal: Terminal, gateway: EC2Gateway, vpc_id: str, default_ids: Sequence[str] = ()
) -> list[str]:
    """Ask for security groups in a VPC, creating the SSH group right away if picked."""
    groups = gateway.get_security_groups_by_vpc(vpc_id)
    selected = ask_security_groups(terminal, groups, default_ids)
    return [
        gateway.create_security_group_for_ssh(vpc_id) if gid == PLACEHOLDER_NEW else gid
        for gid in selected
    ]


def ask_security_group_placeholder(terminal: Terminal) -> str:
    return terminal.ask_choice(
        "Security Group(s)",
        [["Use the default security group"], ["Create and use a new security group for SSH"]],
        [PLACEHOLDER_ALL, PLACEHOLDER_NEW],
        PLACEHOLDER_ALL,
    )


def ask_boot_script(terminal: Terminal, default: str = "") -> str:
    """Ask for a boot script path, or "" for none."""
    if not terminal.ask_yes_no(
        "Would you like to add a filepath to the instance boot script?", bool(default)
    ):
        return ""
    answer = terminal.ask_text(
        "Filepath to instance boot script (absolute file path, 'none' to skip)",
        default,
        [lambda value: value.lower() == "none" or Path(value).is_file()],
    )
    return "" if answer.lower() == "none" else answer


def ask_user_tags(terminal: Terminal, default: dict[str, str] | None = None) -> dict[str, str]:
    default = default or {}
    if not terminal.ask_yes_no(
        "Would you like to add tags to instances and persisted volumes?", bool(default)
    ):
        return {}
    answer = terminal.ask_text(
        "Tags to instances and persisted volumes (format: key1|value1,key2|value2)",
        format_tag_string(default),
        [validate_tag_string],
    )
    return parse_tag_string(answer)


def format_hourly_price(price: float | None) -> str:
    if price is None:
        return "N/A"
    return f"${round(price, 4)}/hr"


def _price_or_none(lookup: Callable[[str], float | None], instance_type: str) -> float | None:
    try:
        return lookup(instance_type)
    except ProviderError as e:
        warn(f"{e}. Price shown as N/A.")
        return None


def ask_capacity_type(
    terminal: Terminal, gateway: EC2Gateway, instance_type: str, default: str = ""
) -> str:
    """Ask On-Demand or Spot, showing the hourly price of each for instance_type."""
    on_demand_price = _price_or_none(gateway.get_on_demand_price, instance_type)
    spot_price = _price_or_none(gateway.get_spot_price, instance_type)
    question = (
        f"Select capacity type for '{instance_type}'. Spot instances are available at up to a "
        "90% discount compared to On-Demand instances,\nbut they may get interrupted by EC2 "
        "with a 2-minute warning"
    )
    return terminal.ask_choice(
        question,
        [[ON_DEMAND, format_hourly_price(on_demand_price)], [SPOT, format_hourly_price(spot_price)]],
        list(CAPACITY_TYPES),
        default if default in CAPACITY_TYPES else ON_DEMAND,
        ["Capacity Type", "Price"],
    )


def ask_confirmation(
    terminal: Terminal, rows: list[list[str]], field_options: list[str]
) -> str:
    """Show the numbered configuration table and return Yes, No or a field label."""
    return terminal.ask_choice(
        "Please confirm if you would like to launch instance with following options "
        "(Yes/No, or a number to change that option):",
        rows,
        field_options,
        RESPONSE_NO,
        headers=["Option", "Configurations", "Values"],
        extra_options=[RESPONSE_YES, RESPONSE_NO],
        numbered=False,
    )


def ask_save_config(terminal: Terminal) -> bool:
    return terminal.ask_yes_no(
        "Do you want to save the configuration above as a JSON file that can be used in "
        "non-interactive mode?"
    )


def _instance_row(instance: dict) -> list[str]:
    tags = ", ".join(
        f"{t['Key']}={t['Value']}" for t in instance.get("Tags", []) if t["Key"] != "Name"
    )
    return [display_name(instance, "InstanceId"), instance["State"]["Name"], tags]


def ask_instance_id(terminal: Terminal, gateway: EC2Gateway) -> str:
    """Pick a running instance to connect to."""
    instances = gateway.get_instances_by_state(["running"])
    if not instances:
        raise NotFoundError("No instance available to connect")
    return terminal.ask_choice(
        "Select the instance you want to connect to:",
        [_instance_row(i) for i in instances],
        [i["InstanceId"] for i in instances],
        headers=["Instance", "State", "Tags"],
    )


def ask_instance_to_terminate(
    terminal: Terminal, gateway: EC2Gateway, added_ids: Sequence[str]
) -> str | None:
    """Pick one more instance to terminate, or None when done.

    :raises NotFoundError: If there is nothing to terminate at all
    """
    instances = gateway.get_instances_by_state(["pending", "running", "stopping", "stopped"])
    remaining = [i for i in instances if i["InstanceId"] not in added_ids]
    if not remaining and not added_ids:
        raise NotFoundError("No instance available in selected region for termination")
    if not remaining:
        return None

    options = [i["InstanceId"] for i in remaining]
    rows = [_instance_row(i) for i in remaining]
    question = "Select the instance you want to terminate:"
    if added_ids:
        options.append(RESPONSE_NO)
        rows.append(["Don't add any more instance id", "", ""])
        question = "If you wish to terminate multiple instance(s), add from the following:"
    answer = terminal.ask_choice(question, rows, options, headers=["Instance", "State", "Tags"])
    return None if answer == RESPONSE_NO else answer


def ask_termination_confirmation(terminal: Terminal, instance_ids: Sequence[str]) -> bool:
    return terminal.ask_yes_no(
        f"Are you sure you want to terminate {len(instance_ids)} instance(s): "
        f"{', '.join(instance_ids)}?"
    )
