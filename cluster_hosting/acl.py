"""Network ACL rule computation and dual-slot rotation.

Each network owns two ACLs, slot ``a`` and slot ``b``.  Exactly one is
associated with the node subnet.  Updates rewrite the complete rule set into
the inactive slot and then switch the subnet association over to it, so the
subnet never sees a partially written rule set.
"""

from dataclasses import dataclass
from typing import Protocol

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.network import AddressRule, NetworkOptions

logger = get_logger(__name__)

SLOTS = ("a", "b")

PROTOCOL_ALL = "-1"
PROTOCOL_TCP = "6"
PROTOCOL_UDP = "17"

SSH_PORT = 22

# Rule number bands; the provider evaluates rules lowest number first.
INTERNAL_BAND = (1, 999)
SSH_BAND = (1000, 1999)
INGRESS_BAND = (2000, 32000)
EGRESS_BAND = (2000, 32000)
TCP_RETURN_RULE = 32765
UDP_RETURN_RULE = 32766
DEFAULT_DENY_RULE = 32767

EPHEMERAL_PORTS = (1024, 65535)


@dataclass(frozen=True)
class AclRule:
    """A single network ACL entry."""

    number: int
    egress: bool
    action: str
    cidr: str
    protocol: str = PROTOCOL_TCP
    from_port: int | None = None
    to_port: int | None = None

    def to_entry(self, acl_id: str) -> dict:
        """Keyword arguments for ``create_network_acl_entry``."""
        entry = {
            "NetworkAclId": acl_id,
            "RuleNumber": self.number,
            "Egress": self.egress,
            "Protocol": self.protocol,
            "RuleAction": self.action,
            "CidrBlock": self.cidr,
        }
        if self.from_port is not None:
            entry["PortRange"] = {"From": self.from_port, "To": self.to_port}
        return entry


class _Band:
    """Hands out sequential rule numbers inside a band."""

    def __init__(self, name: str, bounds: tuple[int, int]):
        self.name = name
        self.next_number, self.last_number = bounds

    def take(self) -> int:
        if self.next_number > self.last_number:
            raise ConfigurationError(
                f"Too many network ACL rules for the {self.name} band",
                "Reduce the number of ingress rules or address rules.",
            )
        number = self.next_number
        self.next_number += 1
        return number


def _port_rules(
    band: _Band, address_rules: list[AddressRule], port: int, protocol: str = PROTOCOL_TCP
) -> list[AclRule]:
    """Rules admitting a port for the listed addresses.

    An empty list admits everyone.  A list that does not end in an "any" rule
    is exhaustive, so unlisted addresses are explicitly denied for the port.
    """
    address_rules = address_rules or [AddressRule()]
    rules = [
        AclRule(band.take(), False, rule.action, rule.cidr, protocol, port, port)
        for rule in address_rules
    ]
    if not any(rule.is_any for rule in address_rules):
        rules.append(AclRule(band.take(), False, "deny", "0.0.0.0/0", protocol, port, port))
    return rules


def compute_acl_rules(network: NetworkOptions, vpc_cidr: str, ssh_enabled: bool) -> list[AclRule]:
    """Compute the complete rule set for the node subnet.

    Args:
        network: Cluster network policy
        vpc_cidr: VPC address range; traffic inside the VPC is always allowed
        ssh_enabled: Whether external SSH access is currently enabled

    Returns:
        Ingress and egress rules ordered by rule number

    Raises:
        ConfigurationError: If a category overflows its band
    """
    rules = [
        AclRule(INTERNAL_BAND[0], False, "allow", vpc_cidr, PROTOCOL_ALL),
        AclRule(INTERNAL_BAND[0], True, "allow", vpc_cidr, PROTOCOL_ALL),
    ]

    if ssh_enabled:
        rules += _port_rules(_Band("ssh", SSH_BAND), network.management_address_rules, SSH_PORT)

    ingress_band = _Band("ingress", INGRESS_BAND)
    for ingress_rule in network.cluster_ingress_rules():
        rules += _port_rules(ingress_band, ingress_rule.address_rules, ingress_rule.node_port)

    # Replies to connections the nodes open through the NAT gateway
    rules.append(AclRule(TCP_RETURN_RULE, False, "allow", "0.0.0.0/0", PROTOCOL_TCP, *EPHEMERAL_PORTS))
    rules.append(AclRule(UDP_RETURN_RULE, False, "allow", "0.0.0.0/0", PROTOCOL_UDP, *EPHEMERAL_PORTS))

    egress_band = _Band("egress", EGRESS_BAND)
    for address_rule in network.egress_address_rules:
        rules.append(
            AclRule(egress_band.take(), True, address_rule.action, address_rule.cidr, PROTOCOL_ALL)
        )
    if not any(rule.is_any for rule in network.egress_address_rules):
        rules.append(AclRule(egress_band.take(), True, "allow", "0.0.0.0/0", PROTOCOL_ALL))

    return sorted(rules, key=lambda r: (r.egress, r.number))


def other_slot(slot: str) -> str:
    return SLOTS[1] if slot == SLOTS[0] else SLOTS[0]


class AclBackend(Protocol):
    """Provider operations needed to rotate a pair of ACLs."""

    def active_slot(self) -> str | None:
        """Return the slot associated with the subnet, or None when neither is."""
        ...

    def write_rules(self, slot: str, rules: list[AclRule]) -> None:
        """Replace every rule in the slot's ACL with the given rules."""
        ...

    def activate(self, slot: str) -> None:
        """Associate the slot's ACL with the subnet."""
        ...


class AclRotator:
    """Applies rule sets by writing the inactive ACL and swapping it in."""

    def __init__(self, backend: AclBackend):
        self.backend = backend

    def update_ingress_egress(self, rules: list[AclRule]) -> str:
        """Make the given rule set active on the subnet.

        The rules must be the complete desired set, not a delta.  Interrupting
        this call at any point leaves the subnet associated with a fully
        written ACL, and calling it again converges.

        Returns:
            The newly active slot
        """
        active = self.backend.active_slot()
        target = SLOTS[0] if active is None else other_slot(active)

        logger.info(f"Writing {len(rules)} network ACL rule(s) to inactive slot '{target}'")
        self.backend.write_rules(target, rules)

        logger.info(f"Switching subnet network ACL from slot '{active}' to '{target}'")
        self.backend.activate(target)
        return target
