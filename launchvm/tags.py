"""Tag helpers shared by resolution, provisioning and the terminal prompts."""

from datetime import datetime

from .errors import InvalidError
from .types import Tag

MANAGED_BY = "launchvm"


def get_managed_tags() -> dict[str, str]:
    """Tags stamped on every resource launchvm creates."""
    now = datetime.now().astimezone()
    return {
        "CreatedBy": MANAGED_BY,
        "CreatedTime": now.strftime("%Y-%m-%d %H:%M:%S %Z"),
    }


def to_tag_list(tags: dict[str, str]) -> list[Tag]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def tags_to_filters(tags: dict[str, str]) -> list[dict]:
    """Build EC2 filters that match the exact key/value pairs.

    :param tags: Tag key to value
    :return: Filters of the form {"Name": "tag:<key>", "Values": [<value>]}
    """
    return [{"Name": f"tag:{key}", "Values": [value]} for key, value in tags.items()]


def get_tag_name(tags: list[dict] | None) -> str | None:
    for tag in tags or []:
        if tag.get("Key") == "Name":
            return tag.get("Value")
    return None


def display_name(resource: dict, id_key: str) -> str:
    """Format a resource as 'Name(id)' when it has a Name tag, else just the id."""
    resource_id = resource[id_key]
    name = get_tag_name(resource.get("Tags"))
    return f"{name}({resource_id})" if name else resource_id


def validate_tag_string(text: str) -> bool:
    """Check the 'key1|value1,key2|value2' format used at the prompt."""
    return all(len(pair.split("|")) == 2 for pair in text.split(","))


def parse_tag_string(text: str) -> dict[str, str]:
    """Parse 'key1|value1,key2|value2' into a dict, trimming whitespace.

    :raises InvalidError: If any pair is not exactly 'key|value'
    """
    if not text.strip():
        return {}
    if not validate_tag_string(text):
        raise InvalidError(f"Invalid tag string '{text}', expected key1|value1,key2|value2")
    tags = {}
    for pair in text.split(","):
        key, value = pair.split("|")
        tags[key.strip()] = value.strip()
    return tags


def format_tag_string(tags: dict[str, str]) -> str:
    return ",".join(f"{key}|{value}" for key, value in tags.items())


def parse_key_value_tags(values: list[str]) -> dict[str, str]:
    """Parse command-line KEY=VALUE tags.

    :raises InvalidError: If an entry has no '=' or an empty key
    """
    tags = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise InvalidError(f"Invalid tag '{item}', expected KEY=VALUE")
        tags[key.strip()] = value.strip()
    return tags
