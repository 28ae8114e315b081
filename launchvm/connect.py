"""SSH into an instance with a one-time key pushed through EC2 Instance Connect."""

import paramiko
from fabric import Connection

from .errors import InvalidError
from .providers import EC2Gateway
from .utils import log

OS_USER = "ec2-user"
KEY_BITS = 2048


def generate_key() -> tuple[paramiko.RSAKey, str]:
    """New RSA key and its OpenSSH public key line."""
    key = paramiko.RSAKey.generate(KEY_BITS)
    return key, f"{key.get_name()} {key.get_base64()}"


def connect_instance(gateway: EC2Gateway, instance_id: str, os_user: str = OS_USER) -> None:
    """Open an interactive shell on a running instance.

    :param gateway: Gateway in the instance's region
    :param instance_id: Instance to connect to
    :param os_user: Login user on the instance
    :raises NotFoundError: If the instance does not exist
    :raises InvalidError: If the instance has no public DNS name
    :raises ProviderError: If the key cannot be pushed
    """
    instance = gateway.get_instance_by_id(instance_id)
    dns_name = instance.get("PublicDnsName")
    if not dns_name:
        raise InvalidError(f"Instance '{instance_id}' has no public DNS name")
    availability_zone = instance["Placement"]["AvailabilityZone"]

    key, public_key = generate_key()
    gateway.send_ssh_public_key(instance_id, availability_zone, os_user, public_key)
    log(f"Connecting to {os_user}@{dns_name}...")

    with Connection(
        dns_name,
        user=os_user,
        connect_kwargs={"pkey": key, "look_for_keys": False, "allow_agent": False},
    ) as c:
        c.shell()
