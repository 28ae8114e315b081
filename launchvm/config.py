"""Saved launch configuration and flag precedence.

Precedence: flags override the saved file, and derived defaults only fill
fields still empty after that. Interactive questions are skipped for fields
set by flags and preselect the file value for every other field.
"""

import json
from pathlib import Path

from .errors import InvalidError, NotFoundError
from .types import FlatConfig, normalize_capacity_type
from .utils import log

CONFIG_DIR_NAME = ".launchvm"
DEFAULT_CONFIG_NAME = "launchvm.json"


class ConfigStore:
    """JSON files holding a FlatConfig, keyed by field name."""

    def __init__(self, directory: Path | None = None):
        self.directory = directory or Path.home() / CONFIG_DIR_NAME

    def path(self, name: str | None = None) -> Path:
        return self.directory / (name or DEFAULT_CONFIG_NAME)

    def load(self, name: str | None = None) -> FlatConfig:
        """Load a saved configuration.

        :param name: File name inside the config directory
        :return: Loaded FlatConfig
        :raises NotFoundError: If the file does not exist
        :raises InvalidError: If the file is not a valid config
        """
        path = self.path(name)
        if not path.exists():
            raise NotFoundError(f"Config file '{path}' not found")
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidError(f"Config file '{path}' is malformed: {e}") from e
        return FlatConfig.from_dict(data)

    def save(self, flat: FlatConfig, name: str | None = None) -> Path:
        path = self.path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(flat.to_dict(), indent=2))
        log(f"Saved config to '{path}'")
        return path


def override_with_flags(flat: FlatConfig, flags: FlatConfig) -> FlatConfig:
    """Copy every non-empty flag value onto flat, in place.

    :param flat: Config loaded from file (or derived defaults)
    :param flags: Config built from command-line flags
    :return: The mutated flat
    """
    if flags.region:
        flat.region = flags.region
    if flags.image_id:
        flat.image_id = flags.image_id
    if flags.instance_type:
        flat.instance_type = flags.instance_type
    if flags.subnet_id:
        flat.subnet_id = flags.subnet_id
    if flags.launch_template_id:
        flat.launch_template_id = flags.launch_template_id
    if flags.launch_template_version:
        flat.launch_template_version = flags.launch_template_version
    if flags.security_group_ids:
        flat.security_group_ids = list(flags.security_group_ids)
    if flags.new_network:
        flat.new_network = True
    if flags.auto_termination_timer_minutes:
        flat.auto_termination_timer_minutes = flags.auto_termination_timer_minutes
    if flags.keep_ebs_volume_after_termination:
        flat.keep_ebs_volume_after_termination = True
    if flags.iam_instance_profile:
        flat.iam_instance_profile = flags.iam_instance_profile
    if flags.boot_script_file_path:
        flat.boot_script_file_path = flags.boot_script_file_path
    if flags.user_tags:
        flat.user_tags = dict(flags.user_tags)
    if flags.capacity_type:
        flat.capacity_type = flags.capacity_type
    return flat


def fill_missing(flat: FlatConfig, defaults: FlatConfig) -> FlatConfig:
    """Fill only the fields of flat that are still empty, in place.

    A default subnet and its default security group come from the same VPC,
    so they are only taken together when flat names neither.
    """
    flat.region = flat.region or defaults.region
    flat.instance_type = flat.instance_type or defaults.instance_type
    flat.image_id = flat.image_id or defaults.image_id
    flat.capacity_type = flat.capacity_type or defaults.capacity_type
    if not flat.new_network:
        if not flat.subnet_id and not flat.security_group_ids:
            flat.security_group_ids = list(defaults.security_group_ids)
        flat.subnet_id = flat.subnet_id or defaults.subnet_id
    return flat


def validate_launch_flags(flags: FlatConfig) -> None:
    """Check flag combinations before any AWS call, normalizing capacity type.

    :raises InvalidError: On the first rule that fails
    """
    if flags.launch_template_version and not flags.launch_template_id:
        raise InvalidError("A launch template version requires a launch template id")
    if flags.boot_script_file_path and not Path(flags.boot_script_file_path).is_file():
        raise InvalidError(f"Boot script '{flags.boot_script_file_path}' does not exist")
    if flags.auto_termination_timer_minutes < 0:
        raise InvalidError("Auto-termination timer must not be negative")
    if flags.capacity_type:
        flags.capacity_type = normalize_capacity_type(flags.capacity_type)
