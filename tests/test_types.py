"""Tests for config references and tag helpers."""

import pytest

from launchvm.errors import InvalidError
from launchvm.tags import (
    display_name,
    format_tag_string,
    parse_key_value_tags,
    parse_tag_string,
    tags_to_filters,
)
from launchvm.types import Concrete, FlatConfig, Placeholder


def test_refs_for_existing_network():
    flat = FlatConfig(subnet_id="subnet-1", security_group_ids=["sg-1", "sg-2"])
    assert flat.subnet_ref() == Concrete("subnet-1")
    assert flat.security_group_refs() == [Concrete("sg-1"), Concrete("sg-2")]


def test_refs_for_new_network():
    flat = FlatConfig(new_network=True, subnet_id="us-east-2a", security_group_ids=["New"])
    assert flat.subnet_ref() == Placeholder("us-east-2a")
    assert flat.security_group_refs() == [Placeholder("new")]


def test_placeholder_tokens_are_ids_without_new_network():
    flat = FlatConfig(security_group_ids=["new"])
    assert flat.security_group_refs() == [Concrete("new")]


def test_no_subnet_ref():
    assert FlatConfig().subnet_ref() is None


def test_copy_is_deep():
    flat = FlatConfig(user_tags={"a": "1"}, security_group_ids=["sg-1"])
    copied = flat.copy()
    copied.user_tags["b"] = "2"
    copied.security_group_ids.append("sg-2")
    assert flat.user_tags == {"a": "1"}
    assert flat.security_group_ids == ["sg-1"]


def test_from_dict_rejects_non_object():
    with pytest.raises(InvalidError):
        FlatConfig.from_dict(["region"])


def test_from_dict_rejects_non_string_group_ids():
    with pytest.raises(InvalidError, match="security_group_ids"):
        FlatConfig.from_dict({"security_group_ids": ["sg-1", 2]})


def test_parse_tag_string():
    assert parse_tag_string(" team | infra ,env|dev") == {"team": "infra", "env": "dev"}
    assert parse_tag_string("") == {}
    assert format_tag_string({"team": "infra", "env": "dev"}) == "team|infra,env|dev"


def test_parse_tag_string_invalid():
    with pytest.raises(InvalidError):
        parse_tag_string("team|infra|extra")


def test_parse_key_value_tags():
    assert parse_key_value_tags(["Project=demo", "url=a=b"]) == {"Project": "demo", "url": "a=b"}
    with pytest.raises(InvalidError):
        parse_key_value_tags(["=value"])


def test_tags_to_filters():
    assert tags_to_filters({"Project": "demo"}) == [{"Name": "tag:Project", "Values": ["demo"]}]


def test_display_name():
    assert display_name({"VpcId": "vpc-1", "Tags": [{"Key": "Name", "Value": "main"}]}, "VpcId") == "main(vpc-1)"
    assert display_name({"VpcId": "vpc-1"}, "VpcId") == "vpc-1"
