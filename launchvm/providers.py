"""AWS provider gateway: a narrow boto3 wrapper around EC2 and IAM.

Every list/describe call is drained across all pages before it returns, and
every botocore ClientError leaves this module as a ProviderError (or a
NotFoundError when the API reports a missing id).
"""

import json
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound
from dotenv import load_dotenv

from .errors import NotFoundError, ProviderError
from .tags import get_managed_tags, to_tag_list
from .utils import log, warn

DEFAULT_REGION = "us-east-2"

SSH_GROUP_DESCRIPTION = "Created by launchvm for SSH connection to instances"
SSH_GROUP_NAME_TAG = "launchvm SSH Security Group"

# The Price List API is only served from a few regions
PRICING_REGION = "us-east-1"
SPOT_PRODUCT_DESCRIPTION = "Linux/UNIX"
EXPIRED_TOKEN_CODES = ("ExpiredToken", "ExpiredTokenException")


class EC2Gateway:
    """EC2 and IAM calls needed to resolve, provision and launch instances."""

    def __init__(self, session: boto3.Session, region: str | None = None):
        self.session = session
        self.region = region or session.region_name or DEFAULT_REGION
        self.ec2 = session.client("ec2", region_name=self.region)

    def change_region(self, region: str) -> None:
        if region and region != self.region:
            log(f"Switching to region '{region}'")
            self.region = region
            self.ec2 = self.session.client("ec2", region_name=region)

    def client(self, service: str):
        return self.session.client(service, region_name=self.region)

    def _drain(
        self,
        client,
        operation: str,
        key: str,
        context: str,
        not_found_codes: tuple[str, ...] = (),
        **params,
    ) -> list[dict]:
        """Call a list/describe operation and concatenate every page.

        :param client: boto3 client
        :param operation: Snake-case operation name, e.g. "describe_subnets"
        :param key: Response key holding the items, e.g. "Subnets"
        :param context: Prefix for the ProviderError message
        :param not_found_codes: Error codes that mean "no such id" and yield []
        :return: All items from all pages
        """
        try:
            if client.can_paginate(operation):
                items = []
                for page in client.get_paginator(operation).paginate(**params):
                    items.extend(page.get(key, []))
                return items
            return getattr(client, operation)(**params).get(key, [])
        except ClientError as e:
            if e.response["Error"]["Code"] in not_found_codes:
                return []
            raise ProviderError(f"{context}: {e}") from e

    def _call(self, client, operation: str, context: str, **params) -> dict:
        try:
            return getattr(client, operation)(**params)
        except ClientError as e:
            raise ProviderError(f"{context}: {e}") from e

    # Regions and zones

    def get_enabled_regions(self) -> list[dict]:
        regions = self._drain(
            self.ec2, "describe_regions", "Regions", "Describing regions failed", AllRegions=False
        )
        if not regions:
            raise ProviderError("No enabled region available")
        return sorted(regions, key=lambda r: r["RegionName"])

    def get_availability_zones(self) -> list[dict]:
        zones = self._drain(
            self.ec2,
            "describe_availability_zones",
            "AvailabilityZones",
            "Describing availability zones failed",
            Filters=[{"Name": "state", "Values": ["available"]}],
        )
        if not zones:
            raise ProviderError(f"No availability zone available in '{self.region}'")
        return zones

    # Launch templates

    def get_launch_templates(self) -> list[dict]:
        return self._drain(
            self.ec2,
            "describe_launch_templates",
            "LaunchTemplates",
            "Describing launch templates failed",
        )

    def get_launch_template_by_id(self, template_id: str) -> dict:
        templates = self._drain(
            self.ec2,
            "describe_launch_templates",
            "LaunchTemplates",
            "Describing launch template failed",
            not_found_codes=("InvalidLaunchTemplateId.NotFound", "InvalidLaunchTemplateId.Malformed"),
            LaunchTemplateIds=[template_id],
        )
        if not templates:
            raise NotFoundError(f"Launch template '{template_id}' not found")
        return templates[0]

    def get_launch_template_versions(
        self, template_id: str, version: str | None = None
    ) -> list[dict]:
        """Get versions of a launch template, sorted by version number.

        :param template_id: Launch template id
        :param version: Only this version when given
        :return: Version dicts, lowest version number first
        """
        params = {"LaunchTemplateId": template_id}
        if version:
            params["Versions"] = [version]
        versions = self._drain(
            self.ec2,
            "describe_launch_template_versions",
            "LaunchTemplateVersions",
            "Describing launch template versions failed",
            not_found_codes=(
                "InvalidLaunchTemplateId.NotFound",
                "InvalidLaunchTemplateId.Malformed",
                "InvalidLaunchTemplateId.VersionNotFound",
            ),
            **params,
        )
        if not versions:
            suffix = f" version '{version}'" if version else ""
            raise NotFoundError(f"Launch template '{template_id}'{suffix} not found")
        return sorted(versions, key=lambda v: v["VersionNumber"])

    def create_launch_template(self, template_data: dict) -> str:
        token = uuid4().hex
        response = self._call(
            self.ec2,
            "create_launch_template",
            "Creating launch template failed",
            LaunchTemplateName=f"LaunchVMTemplate-{token}",
            VersionDescription=f"Launch Template {token}",
            LaunchTemplateData=template_data,
        )
        template_id = response["LaunchTemplate"]["LaunchTemplateId"]
        log(f"Created launch template '{template_id}'")
        return template_id

    def delete_launch_template(self, template_id: str) -> None:
        self._call(
            self.ec2,
            "delete_launch_template",
            "Deleting launch template failed",
            LaunchTemplateId=template_id,
        )
        log(f"Deleted launch template '{template_id}'")

    # Instance types

    def get_instance_types(self, filters: list[dict] | None = None) -> list[dict]:
        params = {"Filters": filters} if filters else {}
        return self._drain(
            self.ec2,
            "describe_instance_types",
            "InstanceTypes",
            "Describing instance types failed",
            **params,
        )

    def get_instance_type(self, instance_type: str) -> dict:
        types = self._drain(
            self.ec2,
            "describe_instance_types",
            "InstanceTypes",
            "Describing instance type failed",
            not_found_codes=("InvalidInstanceType",),
            InstanceTypes=[instance_type],
        )
        if not types:
            raise NotFoundError(f"Instance type '{instance_type}' not found")
        return types[0]

    def get_default_free_tier_instance_type(self) -> dict | None:
        types = self.get_instance_types(
            [{"Name": "free-tier-eligible", "Values": ["true"]}]
        )
        return types[0] if types else None

    # Images

    def get_images(self, filters: list[dict]) -> list[dict]:
        return self._drain(
            self.ec2, "describe_images", "Images", "Describing images failed", Filters=filters
        )

    def get_image_by_id(self, image_id: str) -> dict:
        images = self._drain(
            self.ec2,
            "describe_images",
            "Images",
            "Describing image failed",
            not_found_codes=("InvalidAMIID.Malformed", "InvalidAMIID.NotFound"),
            Filters=[
                {"Name": "image-id", "Values": [image_id]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        if not images:
            raise NotFoundError(f"Image '{image_id}' not found")
        return images[0]

    # Networking

    def get_vpcs(self) -> list[dict]:
        return self._drain(self.ec2, "describe_vpcs", "Vpcs", "Describing VPCs failed")

    def get_vpc_by_id(self, vpc_id: str) -> dict:
        vpcs = self._drain(
            self.ec2,
            "describe_vpcs",
            "Vpcs",
            "Describing VPC failed",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )
        if not vpcs:
            raise NotFoundError(f"VPC '{vpc_id}' not found")
        return vpcs[0]

    def get_default_vpc(self) -> dict | None:
        return next((v for v in self.get_vpcs() if v.get("IsDefault")), None)

    def get_subnets_by_vpc(self, vpc_id: str) -> list[dict]:
        return self._drain(
            self.ec2,
            "describe_subnets",
            "Subnets",
            "Describing subnets failed",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )

    def get_subnets_by_ids(self, subnet_ids: list[str]) -> list[dict]:
        return self._drain(
            self.ec2,
            "describe_subnets",
            "Subnets",
            "Describing subnets failed",
            Filters=[{"Name": "subnet-id", "Values": subnet_ids}],
        )

    def get_subnet_by_id(self, subnet_id: str) -> dict:
        subnets = self.get_subnets_by_ids([subnet_id])
        if not subnets:
            raise NotFoundError(f"Subnet '{subnet_id}' not found")
        return subnets[0]

    def get_security_groups_by_vpc(self, vpc_id: str) -> list[dict]:
        return self._drain(
            self.ec2,
            "describe_security_groups",
            "SecurityGroups",
            "Describing security groups failed",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )

    def get_security_groups_by_ids(self, group_ids: list[str]) -> list[dict]:
        """Look up security groups, keeping the order of group_ids.

        :raises NotFoundError: If any id does not exist
        """
        if not group_ids:
            return []
        groups = self._drain(
            self.ec2,
            "describe_security_groups",
            "SecurityGroups",
            "Describing security groups failed",
            Filters=[{"Name": "group-id", "Values": group_ids}],
        )
        by_id = {g["GroupId"]: g for g in groups}
        missing = [gid for gid in group_ids if gid not in by_id]
        if missing:
            raise NotFoundError(f"Security group(s) not found: {', '.join(missing)}")
        return [by_id[gid] for gid in group_ids]

    def get_default_security_group(self, vpc_id: str) -> dict:
        groups = self._drain(
            self.ec2,
            "describe_security_groups",
            "SecurityGroups",
            "Describing security groups failed",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "group-name", "Values": ["default"]},
            ],
        )
        if not groups:
            raise NotFoundError(f"No default security group in VPC '{vpc_id}'")
        return groups[0]

    def create_security_group_for_ssh(self, vpc_id: str) -> str:
        """Create a security group allowing inbound SSH from anywhere.

        :param vpc_id: VPC to create the group in
        :return: New security group id
        """
        managed_tags = get_managed_tags()
        response = self._call(
            self.ec2,
            "create_security_group",
            "Creating security group failed",
            GroupName=f"launchvm SSH-{uuid4()}",
            Description=SSH_GROUP_DESCRIPTION,
            VpcId=vpc_id,
            TagSpecifications=[
                {
                    "ResourceType": "security-group",
                    "Tags": to_tag_list({**managed_tags, "Name": SSH_GROUP_NAME_TAG}),
                }
            ],
        )
        sg_id = response["GroupId"]
        self._call(
            self.ec2,
            "authorize_security_group_ingress",
            "Authorizing SSH ingress failed",
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": 22,
                    "ToPort": 22,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                    "Ipv6Ranges": [{"CidrIpv6": "::/0"}],
                }
            ],
        )
        log(f"Created security group '{sg_id}' for SSH in VPC '{vpc_id}'")
        return sg_id

    # Instances

    def run_instances(self, request: dict) -> list[str]:
        response = self._call(self.ec2, "run_instances", "Launching instance failed", **request)
        return [instance["InstanceId"] for instance in response["Instances"]]

    def create_fleet(self, request: dict) -> list[str]:
        """Request an instant fleet and return the launched instance ids.

        :raises ProviderError: If the call fails or the fleet reports errors
        """
        response = self._call(self.ec2, "create_fleet", "Requesting fleet failed", **request)
        errors = response.get("Errors") or []
        if errors:
            raise ProviderError(f"Fleet request failed: {errors[0].get('ErrorMessage', errors[0])}")
        instance_ids = []
        for instance in response.get("Instances", []):
            instance_ids.extend(instance.get("InstanceIds", []))
        return instance_ids

    def get_instances(self, filters: list[dict], instance_ids: list[str] | None = None) -> list[dict]:
        params: dict = {"Filters": filters}
        if instance_ids:
            params["InstanceIds"] = instance_ids
        reservations = self._drain(
            self.ec2,
            "describe_instances",
            "Reservations",
            "Describing instances failed",
            **params,
        )
        return [i for r in reservations for i in r.get("Instances", [])]

    def get_instances_by_state(self, states: list[str]) -> list[dict]:
        return self.get_instances([{"Name": "instance-state-name", "Values": states}])

    def get_instance_by_id(self, instance_id: str) -> dict:
        instances = self._drain(
            self.ec2,
            "describe_instances",
            "Reservations",
            "Describing instance failed",
            not_found_codes=("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"),
            InstanceIds=[instance_id],
        )
        found = [i for r in instances for i in r.get("Instances", [])]
        if not found:
            raise NotFoundError(f"Instance '{instance_id}' not found")
        return found[0]

    def terminate_instances(self, instance_ids: list[str]) -> None:
        self._call(
            self.ec2,
            "terminate_instances",
            "Terminating instances failed",
            InstanceIds=instance_ids,
        )
        for instance_id in instance_ids:
            log(f"Terminating instance '{instance_id}'")

    # IAM

    def get_instance_profiles(self) -> list[dict]:
        return self._drain(
            self.session.client("iam"),
            "list_instance_profiles",
            "InstanceProfiles",
            "Listing IAM instance profiles failed",
        )

    # Pricing

    def get_spot_price_history(self, instance_type: str, days: int = 1) -> list[dict]:
        start_time = datetime.now(timezone.utc) - timedelta(days=days)
        return self._drain(
            self.ec2,
            "describe_spot_price_history",
            "SpotPriceHistory",
            "Describing spot price history failed",
            InstanceTypes=[instance_type],
            ProductDescriptions=[SPOT_PRODUCT_DESCRIPTION],
            StartTime=start_time,
        )

    def get_spot_price(self, instance_type: str) -> float | None:
        """Average Linux spot price per hour over the last day, across zones."""
        prices = [float(item["SpotPrice"]) for item in self.get_spot_price_history(instance_type)]
        if not prices:
            return None
        return sum(prices) / len(prices)

    def get_on_demand_price(self, instance_type: str) -> float | None:
        """Shared-tenancy Linux on-demand price per hour in the current region.

        :return: USD per hour, or None when the price list has no match
        """
        products = self._drain(
            self.session.client("pricing", region_name=PRICING_REGION),
            "get_products",
            "PriceList",
            "Getting on-demand price failed",
            ServiceCode="AmazonEC2",
            Filters=[
                {"Type": "TERM_MATCH", "Field": field, "Value": value}
                for field, value in [
                    ("instanceType", instance_type),
                    ("regionCode", self.region),
                    ("tenancy", "Shared"),
                    ("operatingSystem", "Linux"),
                    ("preInstalledSw", "NA"),
                    ("capacitystatus", "Used"),
                ]
            ],
        )
        for product in products:
            terms = json.loads(product).get("terms", {}).get("OnDemand", {})
            for term in terms.values():
                for dimension in term.get("priceDimensions", {}).values():
                    usd = dimension.get("pricePerUnit", {}).get("USD")
                    if usd and float(usd) > 0:
                        return float(usd)
        return None

    # Credentials

    def check_credentials(self) -> str:
        """Fail fast on missing, expired or invalid credentials.

        :return: AWS account id
        :raises ProviderError: If STS rejects the credentials
        """
        try:
            identity = self.client("sts").get_caller_identity()
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code in EXPIRED_TOKEN_CODES:
                profile = self.session.profile_name
                login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
                raise ProviderError(f"AWS credentials expired. Run:\n  {login_cmd}") from e
            raise ProviderError(f"AWS authentication failed ({code}): {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"AWS authentication failed: {e}") from e
        return identity["Account"]

    # EC2 Instance Connect

    def send_ssh_public_key(
        self, instance_id: str, availability_zone: str, os_user: str, public_key: str
    ) -> None:
        """Push a one-time SSH public key, valid for 60 seconds."""
        response = self._call(
            self.client("ec2-instance-connect"),
            "send_ssh_public_key",
            "Sending SSH public key failed",
            InstanceId=instance_id,
            AvailabilityZone=availability_zone,
            InstanceOSUser=os_user,
            SSHPublicKey=public_key,
        )
        if not response.get("Success"):
            raise ProviderError(f"Sending SSH public key to '{instance_id}' was rejected")


def get_gateway(region: str | None = None, aws_profile: str | None = None) -> EC2Gateway:
    """Build a gateway for the configured AWS account and check its credentials.

    Settings in a .env file are loaded first. The region comes from the flag,
    then AWS_REGION, then the profile (AWS_DEFAULT_REGION, ~/.aws/config).
    An unknown profile falls back to the default credential chain.

    :param region: Region flag
    :param aws_profile: Profile flag, else AWS_PROFILE
    :raises ProviderError: If the credentials do not work
    """
    load_dotenv()
    region = region or os.getenv("AWS_REGION") or None
    profile = aws_profile or os.getenv("AWS_PROFILE") or None
    try:
        session = boto3.Session(profile_name=profile, region_name=region)
    except ProfileNotFound:
        warn(f"AWS profile '{profile}' not found, using default credential chain...")
        os.environ.pop("AWS_PROFILE", None)
        session = boto3.Session(region_name=region)

    gateway = EC2Gateway(session, region=region)
    account = gateway.check_credentials()
    log(f"AWS: account={account}  region={gateway.region}  profile={session.profile_name}")
    return gateway
