"""CloudFormation network stack: a fresh VPC with one public subnet per zone."""

import json
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError, WaiterError

from .errors import ProviderError
from .tags import get_managed_tags, to_tag_list
from .utils import log

STACK_NAME_PREFIX = "launchvm"
REQUIRED_AVAILABILITY_ZONES = 3
RESOURCE_TYPE_VPC = "AWS::EC2::VPC"
RESOURCE_TYPE_SUBNET = "AWS::EC2::Subnet"


def _public_subnet(index: int) -> dict:
    return {
        "Type": RESOURCE_TYPE_SUBNET,
        "Properties": {
            "VpcId": {"Ref": "VPC"},
            "AvailabilityZone": {"Ref": f"AZ{index}"},
            "CidrBlock": f"10.0.{index}.0/24",
            "MapPublicIpOnLaunch": True,
        },
    }


def _route_table_association(index: int) -> dict:
    return {
        "Type": "AWS::EC2::SubnetRouteTableAssociation",
        "Properties": {
            "SubnetId": {"Ref": f"Subnet{index}"},
            "RouteTableId": {"Ref": "PublicRouteTable"},
        },
    }


def build_network_template() -> dict:
    """VPC 10.0.0.0/16 with an internet gateway and three public subnets."""
    resources = {
        "VPC": {
            "Type": RESOURCE_TYPE_VPC,
            "Properties": {
                "CidrBlock": "10.0.0.0/16",
                "EnableDnsSupport": True,
                "EnableDnsHostnames": True,
            },
        },
        "InternetGateway": {"Type": "AWS::EC2::InternetGateway"},
        "GatewayAttachment": {
            "Type": "AWS::EC2::VPCGatewayAttachment",
            "Properties": {
                "VpcId": {"Ref": "VPC"},
                "InternetGatewayId": {"Ref": "InternetGateway"},
            },
        },
        "PublicRouteTable": {
            "Type": "AWS::EC2::RouteTable",
            "Properties": {"VpcId": {"Ref": "VPC"}},
        },
        "PublicRoute": {
            "Type": "AWS::EC2::Route",
            "DependsOn": "GatewayAttachment",
            "Properties": {
                "RouteTableId": {"Ref": "PublicRouteTable"},
                "DestinationCidrBlock": "0.0.0.0/0",
                "GatewayId": {"Ref": "InternetGateway"},
            },
        },
    }
    for i in range(REQUIRED_AVAILABILITY_ZONES):
        resources[f"Subnet{i}"] = _public_subnet(i)
        resources[f"Subnet{i}RouteTableAssociation"] = _route_table_association(i)

    return {
        "AWSTemplateFormatVersion": "2010-09-09",
        "Description": "Network created by launchvm",
        "Parameters": {
            f"AZ{i}": {"Type": "String"} for i in range(REQUIRED_AVAILABILITY_ZONES)
        },
        "Resources": resources,
    }


def new_stack_name() -> str:
    return f"{STACK_NAME_PREFIX}-{uuid4().hex[:12]}"


def pick_zones(availability_zones: list[dict], required_zone: str = "") -> list[str]:
    """Pick REQUIRED_AVAILABILITY_ZONES zone names, wrapping around if fewer exist.

    :param availability_zones: Zones from describe_availability_zones
    :param required_zone: Zone that must get a subnet; it is placed first
    :return: Zone names in AZ0..AZn parameter order
    """
    names = [zone["ZoneName"] for zone in availability_zones]
    if required_zone:
        names = [required_zone] + [name for name in names if name != required_zone]
    return [names[i % len(names)] for i in range(REQUIRED_AVAILABILITY_ZONES)]


class StackProvisioner:
    def __init__(self, session: boto3.Session, region: str | None = None):
        self.cfn = session.client("cloudformation", region_name=region)

    def create_network(
        self,
        availability_zones: list[dict],
        required_zone: str = "",
        stack_name: str | None = None,
    ) -> tuple[str, list[str]]:
        """Create the network stack and return its VPC and subnet ids.

        :param availability_zones: Zones from describe_availability_zones
        :param required_zone: Zone that must get one of the subnets
        :param stack_name: Name for the stack, generated when not given
        :return: (vpc_id, subnet_ids)
        :raises ProviderError: If stack creation fails or yields no VPC/subnets
        """
        if not availability_zones:
            raise ProviderError("No availability zones to create the network in")
        stack_name = stack_name or new_stack_name()
        zones = pick_zones(availability_zones, required_zone)

        log(f"Creating CloudFormation stack '{stack_name}' in {', '.join(zones)}...")
        try:
            self.cfn.create_stack(
                StackName=stack_name,
                TemplateBody=json.dumps(build_network_template()),
                Parameters=[
                    {"ParameterKey": f"AZ{i}", "ParameterValue": zone}
                    for i, zone in enumerate(zones)
                ],
                Tags=to_tag_list(get_managed_tags()),
            )
        except ClientError as e:
            raise ProviderError(f"Creating stack '{stack_name}' failed: {e}") from e

        try:
            self.cfn.get_waiter("stack_create_complete").wait(StackName=stack_name)
        except WaiterError as e:
            reason = self._failure_reason(stack_name) or str(e)
            raise ProviderError(f"Stack creation failed: {reason}") from e
        log(f"CloudFormation stack '{stack_name}' created")

        return self._network_resources(stack_name)

    def _failure_reason(self, stack_name: str) -> str | None:
        try:
            events = []
            paginator = self.cfn.get_paginator("describe_stack_events")
            for page in paginator.paginate(StackName=stack_name):
                events.extend(page.get("StackEvents", []))
        except ClientError:
            return None
        for event in events:
            if event.get("ResourceStatus") == "CREATE_FAILED":
                return f"{event['LogicalResourceId']}: {event.get('ResourceStatusReason', '')}"
        return None

    def _network_resources(self, stack_name: str) -> tuple[str, list[str]]:
        try:
            resources = self.cfn.describe_stack_resources(StackName=stack_name)["StackResources"]
        except ClientError as e:
            raise ProviderError(f"Describing stack '{stack_name}' failed: {e}") from e

        vpc_id = None
        subnet_ids = []
        for resource in resources:
            if resource["ResourceType"] == RESOURCE_TYPE_VPC:
                vpc_id = resource["PhysicalResourceId"]
            elif resource["ResourceType"] == RESOURCE_TYPE_SUBNET:
                subnet_ids.append(resource["PhysicalResourceId"])

        if vpc_id is None or not subnet_ids:
            raise ProviderError(f"Stack '{stack_name}' has no VPC or subnets")
        return vpc_id, subnet_ids

    def delete_network(self, name: str) -> None:
        log(f"Deleting CloudFormation stack '{name}'...")
        try:
            self.cfn.delete_stack(StackName=name)
            self.cfn.get_waiter("stack_delete_complete").wait(StackName=name)
        except (ClientError, WaiterError) as e:
            raise ProviderError(f"Deleting stack '{name}' failed: {e}") from e
        log(f"CloudFormation stack '{name}' deleted")
