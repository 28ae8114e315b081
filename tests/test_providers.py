"""Tests for the EC2 gateway with a mocked boto3 session."""

import json
import os
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, ProfileNotFound

from launchvm.errors import NotFoundError, ProviderError
from launchvm.providers import EC2Gateway, get_gateway


def client_error(code: str, operation: str = "Describe") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)


@pytest.fixture
def ec2():
    client = MagicMock()
    client.can_paginate.return_value = True
    return client


@pytest.fixture
def gw(ec2):
    session = MagicMock()
    session.region_name = "us-east-2"
    session.client.return_value = ec2
    return EC2Gateway(session)


def set_pages(ec2, *pages):
    ec2.get_paginator.return_value.paginate.return_value = list(pages)


def test_drains_every_page(gw, ec2):
    set_pages(
        ec2,
        {"Subnets": [{"SubnetId": "subnet-1"}]},
        {"Subnets": [{"SubnetId": "subnet-2"}, {"SubnetId": "subnet-3"}]},
    )

    subnets = gw.get_subnets_by_vpc("vpc-1")

    assert [s["SubnetId"] for s in subnets] == ["subnet-1", "subnet-2", "subnet-3"]
    ec2.get_paginator.assert_called_with("describe_subnets")


def test_unpaginated_operation_called_directly(gw, ec2):
    ec2.can_paginate.return_value = False
    ec2.describe_regions.return_value = {
        "Regions": [{"RegionName": "us-west-2"}, {"RegionName": "eu-west-1"}]
    }

    regions = gw.get_enabled_regions()

    assert [r["RegionName"] for r in regions] == ["eu-west-1", "us-west-2"]


def test_client_error_becomes_provider_error(gw, ec2):
    ec2.get_paginator.return_value.paginate.side_effect = client_error("UnauthorizedOperation")

    with pytest.raises(ProviderError, match="Describing VPCs failed"):
        gw.get_vpcs()


def test_missing_image_is_not_found(gw, ec2):
    ec2.get_paginator.return_value.paginate.side_effect = client_error("InvalidAMIID.NotFound")

    with pytest.raises(NotFoundError, match="ami-missing"):
        gw.get_image_by_id("ami-missing")


def test_missing_subnet_is_not_found(gw, ec2):
    set_pages(ec2, {"Subnets": []})
    with pytest.raises(NotFoundError, match="subnet-nope"):
        gw.get_subnet_by_id("subnet-nope")


def test_security_groups_keep_requested_order(gw, ec2):
    set_pages(ec2, {"SecurityGroups": [{"GroupId": "sg-b"}, {"GroupId": "sg-a"}]})
    groups = gw.get_security_groups_by_ids(["sg-a", "sg-b"])
    assert [g["GroupId"] for g in groups] == ["sg-a", "sg-b"]


def test_security_groups_missing_id(gw, ec2):
    set_pages(ec2, {"SecurityGroups": [{"GroupId": "sg-a"}]})
    with pytest.raises(NotFoundError, match="sg-gone"):
        gw.get_security_groups_by_ids(["sg-a", "sg-gone"])


def test_create_security_group_for_ssh(gw, ec2):
    """Test that the SSH group opens TCP 22 to every IPv4 and IPv6 address."""
    ec2.create_security_group.return_value = {"GroupId": "sg-ssh"}

    group_id = gw.create_security_group_for_ssh("vpc-1")

    assert group_id == "sg-ssh"
    create_kwargs = ec2.create_security_group.call_args.kwargs
    assert create_kwargs["VpcId"] == "vpc-1"
    tags = {t["Key"]: t["Value"] for t in create_kwargs["TagSpecifications"][0]["Tags"]}
    assert tags["CreatedBy"] == "launchvm"
    assert "CreatedTime" in tags

    ec2.authorize_security_group_ingress.assert_called_once()
    (permission,) = ec2.authorize_security_group_ingress.call_args.kwargs["IpPermissions"]
    assert permission["IpProtocol"] == "tcp"
    assert permission["FromPort"] == permission["ToPort"] == 22
    assert permission["IpRanges"] == [{"CidrIp": "0.0.0.0/0"}]
    assert permission["Ipv6Ranges"] == [{"CidrIpv6": "::/0"}]


def test_create_fleet_returns_instance_ids(gw, ec2):
    ec2.create_fleet.return_value = {
        "Errors": [],
        "Instances": [{"InstanceIds": ["i-1", "i-2"]}],
    }
    assert gw.create_fleet({"Type": "instant"}) == ["i-1", "i-2"]


def test_create_fleet_with_errors_raises(gw, ec2):
    ec2.create_fleet.return_value = {
        "Errors": [{"ErrorCode": "InsufficientInstanceCapacity", "ErrorMessage": "No capacity"}],
        "Instances": [],
    }
    with pytest.raises(ProviderError, match="No capacity"):
        gw.create_fleet({"Type": "instant"})


def test_run_instances_error(gw, ec2):
    ec2.run_instances.side_effect = client_error("InvalidParameterValue", "RunInstances")
    with pytest.raises(ProviderError, match="Launching instance failed"):
        gw.run_instances({"MinCount": 1, "MaxCount": 1})


def test_launch_template_versions_sorted(gw, ec2):
    set_pages(
        ec2,
        {"LaunchTemplateVersions": [{"VersionNumber": 3}, {"VersionNumber": 1}]},
        {"LaunchTemplateVersions": [{"VersionNumber": 2}]},
    )
    versions = gw.get_launch_template_versions("lt-1")
    assert [v["VersionNumber"] for v in versions] == [1, 2, 3]


def test_change_region_rebuilds_client(gw):
    gw.change_region("eu-west-1")
    assert gw.region == "eu-west-1"
    gw.session.client.assert_called_with("ec2", region_name="eu-west-1")


def test_spot_price_averages_history(gw, ec2):
    set_pages(
        ec2,
        {"SpotPriceHistory": [{"SpotPrice": "0.0030", "AvailabilityZone": "us-east-2a"}]},
        {"SpotPriceHistory": [{"SpotPrice": "0.0040", "AvailabilityZone": "us-east-2b"}]},
    )

    assert gw.get_spot_price("t2.micro") == pytest.approx(0.0035)
    kwargs = ec2.get_paginator.return_value.paginate.call_args.kwargs
    assert kwargs["InstanceTypes"] == ["t2.micro"]
    assert kwargs["ProductDescriptions"] == ["Linux/UNIX"]


def test_spot_price_without_history(gw, ec2):
    set_pages(ec2, {"SpotPriceHistory": []})
    assert gw.get_spot_price("t2.micro") is None


def test_on_demand_price_reads_price_list(gw, ec2):
    product = {
        "terms": {
            "OnDemand": {
                "TERM1": {"priceDimensions": {"DIM1": {"pricePerUnit": {"USD": "0.0116000000"}}}}
            }
        }
    }
    set_pages(ec2, {"PriceList": [json.dumps(product)]})

    assert gw.get_on_demand_price("t2.micro") == pytest.approx(0.0116)
    gw.session.client.assert_any_call("pricing", region_name="us-east-1")
    filters = ec2.get_paginator.return_value.paginate.call_args.kwargs["Filters"]
    assert {"Type": "TERM_MATCH", "Field": "regionCode", "Value": "us-east-2"} in filters
    assert {"Type": "TERM_MATCH", "Field": "instanceType", "Value": "t2.micro"} in filters


def test_on_demand_price_error(gw, ec2):
    ec2.get_paginator.return_value.paginate.side_effect = client_error("AccessDeniedException")
    with pytest.raises(ProviderError, match="on-demand price"):
        gw.get_on_demand_price("t2.micro")


def test_check_credentials_returns_account(gw, ec2):
    ec2.get_caller_identity.return_value = {"Account": "123456789012"}
    assert gw.check_credentials() == "123456789012"


def test_check_credentials_expired_token(gw, ec2):
    gw.session.profile_name = "dev"
    ec2.get_caller_identity.side_effect = client_error("ExpiredToken", "GetCallerIdentity")

    with pytest.raises(ProviderError, match="aws sso login --profile dev"):
        gw.check_credentials()


def test_get_gateway_uses_region_flag(monkeypatch):
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    session = MagicMock()
    session.region_name = "ap-southeast-2"
    session.client.return_value.get_caller_identity.return_value = {"Account": "1"}

    with patch("launchvm.providers.load_dotenv"), patch(
        "launchvm.providers.boto3.Session", return_value=session
    ) as session_cls:
        gateway = get_gateway("ap-southeast-2")

    session_cls.assert_called_once_with(profile_name=None, region_name="ap-southeast-2")
    assert gateway.region == "ap-southeast-2"


def test_get_gateway_unknown_profile_falls_back(monkeypatch):
    monkeypatch.setenv("AWS_PROFILE", "missing")
    monkeypatch.delenv("AWS_REGION", raising=False)
    session = MagicMock()
    session.region_name = "us-west-2"
    session.client.return_value.get_caller_identity.return_value = {"Account": "1"}

    with patch("launchvm.providers.load_dotenv"), patch(
        "launchvm.providers.boto3.Session",
        side_effect=[ProfileNotFound(profile="missing"), session],
    ) as session_cls:
        gateway = get_gateway()

    assert session_cls.call_args_list[0].kwargs["profile_name"] == "missing"
    session_cls.assert_called_with(region_name=None)
    assert gateway.region == "us-west-2"
    assert "AWS_PROFILE" not in os.environ
