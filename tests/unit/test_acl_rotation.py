"""Unit tests for network ACL rule computation and slot rotation."""

import pytest

from cluster_hosting.acl import (
    DEFAULT_DENY_RULE,
    PROTOCOL_ALL,
    PROTOCOL_TCP,
    TCP_RETURN_RULE,
    UDP_RETURN_RULE,
    AclRotator,
    AclRule,
    compute_acl_rules,
    other_slot,
)
from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.models.network import NetworkOptions

VPC_CIDR = "10.100.0.0/16"


class RecordingBackend:
    """Two in-memory ACLs and a subnet association that can fail mid-write."""

    def __init__(self):
        self.acls = {"a": [], "b": []}
        self.active = None
        self.fail_after = None
        self.history = []

    def active_slot(self):
        return self.active

    def write_rules(self, slot, rules):
        self.acls[slot] = []
        for rule in rules:
            if self.fail_after is not None and len(self.acls[slot]) >= self.fail_after:
                raise RuntimeError("interrupted")
            self.acls[slot].append(rule)

    def activate(self, slot):
        self.active = slot
        self.history.append((slot, list(self.acls[slot])))

    @property
    def subnet_rules(self):
        return self.acls[self.active] if self.active else None


def rule(number):
    return AclRule(number, False, "allow", "0.0.0.0/0", PROTOCOL_TCP, number, number)


def test_first_update_uses_slot_a():
    """Test that a subnet on neither slot is moved to slot a."""
    backend = RecordingBackend()

    assert AclRotator(backend).update_ingress_egress([rule(1)]) == "a"
    assert backend.subnet_rules == [rule(1)]


def test_updates_alternate_slots():
    """Test that each update writes the inactive slot and swaps it in."""
    backend = RecordingBackend()
    rotator = AclRotator(backend)

    assert rotator.update_ingress_egress([rule(1)]) == "a"
    assert rotator.update_ingress_egress([rule(1), rule(2)]) == "b"
    assert rotator.update_ingress_egress([rule(3)]) == "a"
    assert backend.subnet_rules == [rule(3)]


def test_interrupted_update_keeps_complete_rules_active():
    """Test that an update interrupted mid-write never exposes a partial rule set."""
    backend = RecordingBackend()
    rotator = AclRotator(backend)
    rule_a = rule(2000)
    rule_b = rule(2001)

    rotator.update_ingress_egress([rule_a])

    backend.fail_after = 1
    with pytest.raises(RuntimeError):
        rotator.update_ingress_egress([rule_a, rule_b])

    assert backend.active == "a"
    assert backend.subnet_rules == [rule_a]

    backend.fail_after = None
    assert rotator.update_ingress_egress([rule_a, rule_b]) == "b"
    assert backend.subnet_rules == [rule_a, rule_b]


def test_every_activation_is_complete():
    """Test that every ACL swapped onto the subnet holds the full requested set."""
    backend = RecordingBackend()
    rotator = AclRotator(backend)
    requested = [[rule(1)], [rule(1), rule(2)], [rule(2)], []]

    for rules in requested:
        rotator.update_ingress_egress(rules)

    assert [rules for _, rules in backend.history] == requested
    assert [slot for slot, _ in backend.history] == ["a", "b", "a", "b"]


def test_other_slot():
    assert other_slot("a") == "b"
    assert other_slot("b") == "a"


def test_default_rules():
    """Test the rules for a network with no address restrictions."""
    rules = compute_acl_rules(NetworkOptions(), VPC_CIDR, ssh_enabled=False)
    ingress = [r for r in rules if not r.egress]
    egress = [r for r in rules if r.egress]

    assert ingress == [
        AclRule(1, False, "allow", VPC_CIDR, PROTOCOL_ALL),
        AclRule(2000, False, "allow", "0.0.0.0/0", PROTOCOL_TCP, 6443, 6443),
        AclRule(TCP_RETURN_RULE, False, "allow", "0.0.0.0/0", PROTOCOL_TCP, 1024, 65535),
        AclRule(UDP_RETURN_RULE, False, "allow", "0.0.0.0/0", "17", 1024, 65535),
    ]
    assert egress == [
        AclRule(1, True, "allow", VPC_CIDR, PROTOCOL_ALL),
        AclRule(2000, True, "allow", "0.0.0.0/0", PROTOCOL_ALL),
    ]


def test_ssh_rules_only_when_enabled():
    """Test that SSH rules appear in their band only while SSH is enabled."""
    network = NetworkOptions(management_address_rules=[{"address": "203.0.113.0/24"}])

    disabled = compute_acl_rules(network, VPC_CIDR, ssh_enabled=False)
    enabled = compute_acl_rules(network, VPC_CIDR, ssh_enabled=True)

    assert not [r for r in disabled if 1000 <= r.number <= 1999]
    ssh = [r for r in enabled if 1000 <= r.number <= 1999]
    assert ssh == [
        AclRule(1000, False, "allow", "203.0.113.0/24", PROTOCOL_TCP, 22, 22),
        AclRule(1001, False, "deny", "0.0.0.0/0", PROTOCOL_TCP, 22, 22),
    ]


def test_exhaustive_address_list_denies_the_rest():
    """Test that rules not ending in 'any' get a trailing deny for the port."""
    network = NetworkOptions(
        ingress_rules=[
            {
                "name": "web",
                "external_port": 80,
                "node_port": 30080,
                "address_rules": [
                    {"address": "198.51.100.9", "action": "deny"},
                    {"address": "198.51.100.0/24"},
                ],
            },
            {
                "name": "open",
                "external_port": 443,
                "node_port": 30443,
                "address_rules": [{"address": "192.0.2.1", "action": "deny"}, {"address": "any"}],
            },
        ]
    )

    rules = [
        r
        for r in compute_acl_rules(network, VPC_CIDR, False)
        if 2000 <= r.number <= 32000 and not r.egress
    ]

    assert [(r.number, r.action, r.cidr, r.from_port) for r in rules] == [
        (2000, "allow", "0.0.0.0/0", 6443),
        (2001, "deny", "198.51.100.9/32", 30080),
        (2002, "allow", "198.51.100.0/24", 30080),
        (2003, "deny", "0.0.0.0/0", 30080),
        (2004, "deny", "192.0.2.1/32", 30443),
        (2005, "allow", "0.0.0.0/0", 30443),
    ]


def test_egress_rules():
    """Test that egress rules are numbered in order with a final allow unless 'any' is listed."""
    network = NetworkOptions(egress_address_rules=[{"address": "10.0.0.0/8", "action": "deny"}])
    egress = [r for r in compute_acl_rules(network, VPC_CIDR, False) if r.egress]
    assert [(r.number, r.action, r.cidr) for r in egress] == [
        (1, "allow", VPC_CIDR),
        (2000, "deny", "10.0.0.0/8"),
        (2001, "allow", "0.0.0.0/0"),
    ]

    network = NetworkOptions(egress_address_rules=[{"address": "any", "action": "deny"}])
    egress = [r for r in compute_acl_rules(network, VPC_CIDR, False) if r.egress]
    assert [(r.number, r.action) for r in egress] == [(1, "allow"), (2000, "deny")]


def test_rules_never_use_default_deny_number():
    """Test that computed rules leave the provider's default rule alone."""
    rules = compute_acl_rules(NetworkOptions(), VPC_CIDR, ssh_enabled=True)
    assert all(r.number < DEFAULT_DENY_RULE for r in rules)


def test_band_overflow():
    """Test that a category too large for its band is a configuration error."""
    addresses = [{"address": f"10.{i // 256}.{i % 256}.0/24"} for i in range(1000)]
    network = NetworkOptions(management_address_rules=addresses)

    with pytest.raises(ConfigurationError, match="ssh band"):
        compute_acl_rules(network, VPC_CIDR, ssh_enabled=True)


def test_rule_entry():
    """Test the provider entry for a rule with and without ports."""
    entry = AclRule(2000, False, "allow", "0.0.0.0/0", PROTOCOL_TCP, 80, 80).to_entry("acl-1")
    assert entry == {
        "NetworkAclId": "acl-1",
        "RuleNumber": 2000,
        "Egress": False,
        "Protocol": "6",
        "RuleAction": "allow",
        "CidrBlock": "0.0.0.0/0",
        "PortRange": {"From": 80, "To": 80},
    }
    assert "PortRange" not in AclRule(1, True, "allow", VPC_CIDR, PROTOCOL_ALL).to_entry("acl-1")
