"""Type definitions for launchvm."""

from copy import deepcopy
from dataclasses import asdict, dataclass, field, fields
from typing import Literal, TypedDict

from .errors import InvalidError

CapacityType = Literal["On-Demand", "Spot"]
ON_DEMAND: CapacityType = "On-Demand"
SPOT: CapacityType = "Spot"
CAPACITY_TYPES: list[CapacityType] = [ON_DEMAND, SPOT]


def normalize_capacity_type(value: str) -> CapacityType:
    """Map a capacity type to its canonical spelling, case-insensitively.

    :raises InvalidError: If value is not a known capacity type
    """
    for capacity_type in CAPACITY_TYPES:
        if value.lower() == capacity_type.lower():
            return capacity_type
    raise InvalidError(
        f"Unknown capacity type '{value}', expected one of: {', '.join(CAPACITY_TYPES)}"
    )


PlaceholderToken = Literal["new", "all", "none"]
PLACEHOLDER_NEW: PlaceholderToken = "new"
PLACEHOLDER_ALL: PlaceholderToken = "all"
PLACEHOLDER_NONE: PlaceholderToken = "none"
PLACEHOLDER_TOKENS = (PLACEHOLDER_NEW, PLACEHOLDER_ALL, PLACEHOLDER_NONE)


class Tag(TypedDict):
    Key: str
    Value: str


class TagSpecification(TypedDict):
    """Tags applied to one resource type at creation time."""

    ResourceType: str
    Tags: list[Tag]


@dataclass(frozen=True)
class Concrete:
    """Reference to a resource that already exists."""

    id: str


@dataclass(frozen=True)
class Placeholder:
    """Stand-in for a resource created later by the network stack.

    For subnets the value is an availability zone name, for security groups
    it is one of ``PLACEHOLDER_TOKENS``.
    """

    value: str


ResourceRef = Concrete | Placeholder


@dataclass
class FlatConfig:
    """Flat, serializable description of what to launch.

    Empty strings, zero and empty collections mean "not set" so that the
    merge layers can tell which fields still need a value.
    """

    region: str = ""
    image_id: str = ""
    instance_type: str = ""
    subnet_id: str = ""
    launch_template_id: str = ""
    launch_template_version: str = ""
    security_group_ids: list[str] = field(default_factory=list)
    new_network: bool = False
    auto_termination_timer_minutes: int = 0
    keep_ebs_volume_after_termination: bool = False
    iam_instance_profile: str = ""
    boot_script_file_path: str = ""
    user_tags: dict[str, str] = field(default_factory=dict)
    capacity_type: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "FlatConfig":
        """Build a config from decoded JSON, rejecting mistyped values.

        Files written by simple-ec2 (``Region``, ``ImageId``, ``NewVPC``...)
        are read too; their null lists and maps count as unset.

        :param data: Mapping keyed by field name; unknown keys are ignored
        :return: New FlatConfig with the capacity type normalized
        :raises InvalidError: If data is not a mapping, a value has the wrong
            type or the capacity type is unknown
        """
        if not isinstance(data, dict):
            raise InvalidError(f"Config must be a JSON object, got {type(data).__name__}")
        data = {SIMPLE_EC2_KEYS.get(key, key): value for key, value in data.items()}
        values = {}
        for f in fields(cls):
            value = data.get(f.name)
            if value is None:
                continue
            expected = _FIELD_TYPES[f.name]
            if not isinstance(value, expected):
                raise InvalidError(
                    f"Config field '{f.name}' must be {expected.__name__}, got {type(value).__name__}"
                )
            values[f.name] = deepcopy(value)
        if not all(isinstance(v, str) for v in values.get("security_group_ids", [])):
            raise InvalidError("Config field 'security_group_ids' must be a list of strings")
        if values.get("capacity_type"):
            values["capacity_type"] = normalize_capacity_type(values["capacity_type"])
        return cls(**values)

    def copy(self) -> "FlatConfig":
        return deepcopy(self)

    def subnet_ref(self) -> ResourceRef | None:
        if not self.subnet_id:
            return None
        if self.new_network:
            return Placeholder(self.subnet_id)
        return Concrete(self.subnet_id)

    def security_group_refs(self) -> list[ResourceRef]:
        refs: list[ResourceRef] = []
        for group_id in self.security_group_ids:
            if self.new_network and group_id.lower() in PLACEHOLDER_TOKENS:
                refs.append(Placeholder(group_id.lower()))
            else:
                refs.append(Concrete(group_id))
        return refs


_FIELD_TYPES: dict[str, type] = {
    "region": str,
    "image_id": str,
    "instance_type": str,
    "subnet_id": str,
    "launch_template_id": str,
    "launch_template_version": str,
    "security_group_ids": list,
    "new_network": bool,
    "auto_termination_timer_minutes": int,
    "keep_ebs_volume_after_termination": bool,
    "iam_instance_profile": str,
    "boot_script_file_path": str,
    "user_tags": dict,
    "capacity_type": str,
}

# Keys in config files saved by simple-ec2
SIMPLE_EC2_KEYS = {
    "Region": "region",
    "ImageId": "image_id",
    "InstanceType": "instance_type",
    "SubnetId": "subnet_id",
    "LaunchTemplateId": "launch_template_id",
    "LaunchTemplateVersion": "launch_template_version",
    "SecurityGroupIds": "security_group_ids",
    "NewVPC": "new_network",
    "AutoTerminationTimerMinutes": "auto_termination_timer_minutes",
    "KeepEbsVolumeAfterTermination": "keep_ebs_volume_after_termination",
    "IamInstanceProfile": "iam_instance_profile",
    "BootScriptFilePath": "boot_script_file_path",
    "UserTags": "user_tags",
    "CapacityType": "capacity_type",
}


@dataclass(frozen=True)
class ResolvedConfig:
    """A FlatConfig snapshot plus the AWS objects it refers to.

    ``vpc``, ``subnet`` and ``security_groups`` are None when a new network
    is requested, since those resources do not exist yet.
    """

    flat: FlatConfig
    image: dict
    instance_type_info: dict
    tag_specs: list[TagSpecification]
    vpc: dict | None = None
    subnet: dict | None = None
    security_groups: list[dict] | None = None
