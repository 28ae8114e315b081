"""Turn a FlatConfig into concrete AWS objects, and derive defaults."""

from .errors import InvalidError, NotFoundError
from .providers import EC2Gateway
from .tags import get_managed_tags, to_tag_list
from .types import ON_DEMAND, FlatConfig, ResolvedConfig, TagSpecification
from .utils import log

DEFAULT_INSTANCE_TYPE = "t2.micro"
DEFAULT_ARCHITECTURE = "x86_64"

ROOT_DEVICE_EBS = "ebs"
ROOT_DEVICE_INSTANCE_STORE = "instance-store"

# Image name patterns per OS, keyed by root device type
OS_IMAGE_PATTERNS: dict[str, dict[str, str]] = {
    "Amazon Linux": {
        ROOT_DEVICE_EBS: "amzn-ami-hvm-????.??.?.????????.?-*-gp2",
        ROOT_DEVICE_INSTANCE_STORE: "amzn-ami-hvm-????.??.?.????????.?-*-s3",
    },
    "Amazon Linux 2": {
        ROOT_DEVICE_EBS: "amzn2-ami-hvm-2.?.????????.?-*-gp2",
    },
    "Red Hat": {
        ROOT_DEVICE_EBS: "RHEL-?.?.?_HVM-????????-*-?-Hourly2-GP2",
    },
    "SUSE Linux": {
        ROOT_DEVICE_EBS: "suse-sles-??-sp?-v????????-hvm-ssd-*",
    },
    "Ubuntu": {
        ROOT_DEVICE_EBS: "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-*-server-????????",
        ROOT_DEVICE_INSTANCE_STORE: "ubuntu/images/hvm-instance/ubuntu-jammy-22.04-*-server-????????",
    },
    "Windows": {
        ROOT_DEVICE_EBS: "Windows_Server-????-English-Full-Base-????.??.??",
    },
}

IMAGE_PRIORITY = ["Amazon Linux 2", "Ubuntu", "Amazon Linux", "Red Hat", "SUSE Linux", "Windows"]

LINUX_PLATFORMS = {
    "Linux/UNIX",
    "Red Hat Enterprise Linux",
    "SUSE Linux",
    "Linux with SQL Server Standard",
    "Linux with SQL Server Web",
    "Linux with SQL Server Enterprise",
}


def is_linux(platform_details: str | None) -> bool:
    return platform_details in LINUX_PLATFORMS


def has_ebs_volume(image: dict | None) -> bool:
    if not image:
        return False
    return any("Ebs" in mapping for mapping in image.get("BlockDeviceMappings", []))


def root_device_type_for(instance_type_info: dict) -> str:
    """Prefer instance-store when the instance type ships local storage."""
    if instance_type_info.get("InstanceStorageSupported"):
        return ROOT_DEVICE_INSTANCE_STORE
    return ROOT_DEVICE_EBS


def supported_architectures(instance_type_info: dict) -> list[str]:
    return instance_type_info.get("ProcessorInfo", {}).get(
        "SupportedArchitectures", [DEFAULT_ARCHITECTURE]
    )


def build_tag_specs(user_tags: dict[str, str], image: dict) -> list[TagSpecification]:
    """Managed tags merged with user tags, for the instance and its EBS volumes.

    :param user_tags: User tags; these win on key collision
    :param image: Resolved image, decides whether volumes are tagged
    :return: Tag specifications for run_instances / launch templates
    """
    tags = to_tag_list({**get_managed_tags(), **user_tags})
    specs: list[TagSpecification] = [{"ResourceType": "instance", "Tags": tags}]
    if image.get("RootDeviceType") == ROOT_DEVICE_EBS:
        specs.append({"ResourceType": "volume", "Tags": list(tags)})
    return specs


class ConfigResolver:
    def __init__(self, gateway: EC2Gateway):
        self.gateway = gateway

    def resolve(self, flat: FlatConfig) -> ResolvedConfig:
        """Look up every AWS object flat refers to.

        Network objects are skipped when a new network is requested. The
        first failing lookup aborts resolution.

        :param flat: Configuration to resolve
        :return: Fresh ResolvedConfig holding a snapshot of flat
        :raises NotFoundError: If a referenced subnet, VPC, security group,
            image or instance type does not exist
        """
        vpc = subnet = security_groups = None
        if not flat.new_network:
            if not flat.subnet_id:
                raise NotFoundError("No subnet configured")
            subnet = self.gateway.get_subnet_by_id(flat.subnet_id)
            vpc = self.gateway.get_vpc_by_id(subnet["VpcId"])
            security_groups = self.gateway.get_security_groups_by_ids(flat.security_group_ids)

        if not flat.image_id:
            raise NotFoundError("No image configured")
        image = self.gateway.get_image_by_id(flat.image_id)
        if not flat.instance_type:
            raise NotFoundError("No instance type configured")
        instance_type_info = self.gateway.get_instance_type(flat.instance_type)

        return ResolvedConfig(
            flat=flat.copy(),
            image=image,
            instance_type_info=instance_type_info,
            tag_specs=build_tag_specs(flat.user_tags, image),
            vpc=vpc,
            subnet=subnet,
            security_groups=security_groups,
        )

    def latest_images(self, root_device_type: str, architectures: list[str]) -> dict[str, dict]:
        """Newest available image per OS for a root device type.

        :param root_device_type: "ebs" or "instance-store"
        :param architectures: CPU architectures the instance type supports
        :return: OS name to image, only OSes with a match
        """
        images = {}
        for os_name, patterns in OS_IMAGE_PATTERNS.items():
            pattern = patterns.get(root_device_type)
            if not pattern:
                continue
            candidates = self.gateway.get_images(
                [
                    {"Name": "name", "Values": [pattern]},
                    {"Name": "state", "Values": ["available"]},
                    {"Name": "root-device-type", "Values": [root_device_type]},
                    {"Name": "architecture", "Values": architectures},
                ]
            )
            if candidates:
                images[os_name] = max(candidates, key=lambda image: image["CreationDate"])
        return images

    def default_image(self, instance_type_info: dict) -> dict:
        latest = self.latest_images(
            root_device_type_for(instance_type_info), supported_architectures(instance_type_info)
        )
        for os_name in IMAGE_PRIORITY:
            if os_name in latest:
                return latest[os_name]
        raise NotFoundError(
            f"No default image found for instance type '{instance_type_info.get('InstanceType')}'"
        )

    def default_instance_type(self) -> str:
        free_tier = self.gateway.get_default_free_tier_instance_type()
        return free_tier["InstanceType"] if free_tier else DEFAULT_INSTANCE_TYPE

    def derive_defaults(self, instance_type: str | None = None) -> FlatConfig:
        """Build a complete configuration from what the account offers.

        :param instance_type: Use this instance type instead of the free tier
            default, so the image matches it
        :return: FlatConfig; network fields stay empty without a default VPC
        """
        defaults = FlatConfig(region=self.gateway.region, capacity_type=ON_DEMAND)
        defaults.instance_type = instance_type or self.default_instance_type()

        instance_type_info = self.gateway.get_instance_type(defaults.instance_type)
        defaults.image_id = self.default_image(instance_type_info)["ImageId"]

        vpc = self.gateway.get_default_vpc()
        if vpc is None:
            log("No default VPC found, network settings are left empty")
            return defaults

        subnets = self.gateway.get_subnets_by_vpc(vpc["VpcId"])
        if subnets:
            defaults.subnet_id = subnets[0]["SubnetId"]
            defaults.security_group_ids = [
                self.gateway.get_default_security_group(vpc["VpcId"])["GroupId"]
            ]
        return defaults

    def find_instance_types(self, vcpus: int, memory_gib: int) -> list[dict]:
        """Instance types close to the requested vCPUs and memory.

        Matches default vCPUs within one of vcpus and memory within one GiB
        of memory_gib, on x86_64.

        :raises InvalidError: If vcpus or memory_gib is not positive
        :raises NotFoundError: If nothing matches
        """
        if vcpus <= 0:
            raise InvalidError(f"Invalid vCPUs: {vcpus}")
        if memory_gib <= 0:
            raise InvalidError(f"Invalid memory: {memory_gib}")

        candidates = self.gateway.get_instance_types(
            [{"Name": "processor-info.supported-architecture", "Values": [DEFAULT_ARCHITECTURE]}]
        )
        matches = []
        for info in candidates:
            cpus = info.get("VCpuInfo", {}).get("DefaultVCpus", 0)
            memory = info.get("MemoryInfo", {}).get("SizeInMiB", 0) / 1024
            if vcpus - 1 <= cpus <= vcpus + 1 and memory_gib - 1 <= memory <= memory_gib + 1:
                matches.append(info)
        if not matches:
            raise NotFoundError(
                f"No instance types with about {vcpus} vCPUs and {memory_gib} GiB memory"
            )
        return sorted(matches, key=lambda info: info["InstanceType"])
