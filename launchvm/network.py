"""Provision a new network and swap placeholders for real resource ids."""

from .errors import InvalidError, LaunchVMError, NotFoundError, ProviderError
from .providers import EC2Gateway
from .stack import StackProvisioner, new_stack_name
from .types import PLACEHOLDER_ALL, PLACEHOLDER_NEW, FlatConfig, Placeholder
from .utils import log, warn


class NetworkProvisioner:
    def __init__(self, gateway: EC2Gateway, stack: StackProvisioner):
        self.gateway = gateway
        self.stack = stack

    def provision_network(self, flat: FlatConfig, request: dict | None = None) -> None:
        """Create the requested network and rewrite flat with concrete ids.

        After this call flat no longer asks for a new network, so resolving
        it again behaves like any existing-network configuration.

        :param flat: Config with new_network set; subnet_id holds the
            availability zone and security_group_ids a single placeholder
        :param request: In-flight RunInstances request (or a request with
            NetworkInterfaces) to point at the new network, if any
        :raises InvalidError: If flat does not ask for a new network or holds
            an unknown security group placeholder
        :raises NotFoundError: If the zone is unavailable or no new subnet lands
            in it; the stack is deleted again when it already exists
        """
        if not flat.new_network:
            raise InvalidError("Network provisioning requested without a new network")
        subnet_ref = flat.subnet_ref()
        group_refs = flat.security_group_refs()
        if not isinstance(subnet_ref, Placeholder):
            raise InvalidError("New network requires an availability zone for the subnet")
        if len(group_refs) != 1 or not isinstance(group_refs[0], Placeholder):
            raise InvalidError("New network requires exactly one security group placeholder")
        if group_refs[0].value not in (PLACEHOLDER_ALL, PLACEHOLDER_NEW):
            raise InvalidError(f"Unknown security group placeholder '{group_refs[0].value}'")

        zones = self.gateway.get_availability_zones()
        if subnet_ref.value not in [zone["ZoneName"] for zone in zones]:
            raise NotFoundError(f"Availability zone '{subnet_ref.value}' not available")

        stack_name = new_stack_name()
        vpc_id, subnet_ids = self.stack.create_network(zones, subnet_ref.value, stack_name)
        try:
            subnet_id = self._subnet_in_zone(subnet_ids, subnet_ref.value)
            group_ids = self._resolve_group_placeholder(vpc_id, group_refs[0])
        except LaunchVMError:
            self._delete_stack(stack_name)
            raise

        if request is not None:
            if request.get("NetworkInterfaces"):
                request["NetworkInterfaces"][0]["SubnetId"] = subnet_id
                request["NetworkInterfaces"][0]["Groups"] = list(group_ids)
            else:
                request["SubnetId"] = subnet_id
                request["SecurityGroupIds"] = list(group_ids)

        flat.new_network = False
        flat.subnet_id = subnet_id
        flat.security_group_ids = group_ids
        log(f"Using new VPC '{vpc_id}', subnet '{subnet_id}', security group(s) {group_ids}")

    def _subnet_in_zone(self, subnet_ids: list[str], zone_name: str) -> str:
        for subnet in self.gateway.get_subnets_by_ids(subnet_ids):
            if subnet["AvailabilityZone"] == zone_name:
                return subnet["SubnetId"]
        raise NotFoundError(f"No new subnet in availability zone '{zone_name}'")

    def _resolve_group_placeholder(self, vpc_id: str, placeholder: Placeholder) -> list[str]:
        if placeholder.value == PLACEHOLDER_ALL:
            groups = self.gateway.get_security_groups_by_vpc(vpc_id)
            if not groups:
                raise NotFoundError(f"No security groups in new VPC '{vpc_id}'")
            return [group["GroupId"] for group in groups]
        return [self.gateway.create_security_group_for_ssh(vpc_id)]

    def _delete_stack(self, stack_name: str) -> None:
        try:
            self.stack.delete_network(stack_name)
        except ProviderError as e:
            warn(f"{e}. Delete stack '{stack_name}' manually.")
