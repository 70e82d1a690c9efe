"""Unit tests for the cluster definition models."""

from ipaddress import IPv4Address, ip_network

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from cluster_hosting.exceptions import ValidationError
from cluster_hosting.models.cluster import AwsHostingOptions, ClusterDefinition, HostingOptions
from cluster_hosting.models.network import AddressRule, HealthCheckOptions, NetworkOptions
from cluster_hosting.models.node import NodeDefinition


def test_load_and_save_round_trip(tmp_path, aws_definition):
    """Test that a saved definition loads back unchanged."""
    path = tmp_path / "cluster.yaml"
    aws_definition.save(str(path))

    loaded = ClusterDefinition.load(str(path))
    assert loaded == aws_definition


def test_load_invalid_yaml(tmp_path):
    """Test that unparsable YAML raises a ValidationError."""
    path = tmp_path / "cluster.yaml"
    path.write_text("name: [unclosed")

    with pytest.raises(ValidationError) as exc_info:
        ClusterDefinition.load(str(path))
    assert "not valid YAML" in exc_info.value.message


def test_load_invalid_definition(tmp_path, aws_definition_data):
    """Test that schema errors raise a ValidationError with the pydantic details."""
    aws_definition_data["nodes"][0]["role"] = "master"
    path = tmp_path / "cluster.yaml"
    path.write_text(yaml.safe_dump(aws_definition_data))

    with pytest.raises(ValidationError) as exc_info:
        ClusterDefinition.load(str(path))
    assert "role must be one of" in exc_info.value.details


def test_load_non_mapping(tmp_path):
    """Test that a YAML list is rejected."""
    path = tmp_path / "cluster.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ValidationError):
        ClusterDefinition.load(str(path))


def test_duplicate_node_names(aws_definition_data):
    """Test that node names must be unique."""
    aws_definition_data["nodes"].append({"name": "cp-1", "role": "worker"})

    with pytest.raises(PydanticValidationError, match="duplicate node names: cp-1"):
        ClusterDefinition(**aws_definition_data)


def test_control_plane_required(aws_definition_data):
    """Test that a cluster needs at least one control-plane node."""
    aws_definition_data["nodes"] = [{"name": "worker-1", "role": "worker"}]

    with pytest.raises(PydanticValidationError, match="at least one control-plane"):
        ClusterDefinition(**aws_definition_data)


@pytest.mark.parametrize("name", ["my.cluster", "my_cluster", "prod-1", "A1"])
def test_valid_cluster_names(aws_definition_data, name):
    """Test cluster names accepted by the definition."""
    aws_definition_data["name"] = name
    assert ClusterDefinition(**aws_definition_data).name == name


@pytest.mark.parametrize("name", ["", "-prod", "prod.", "my cluster", "prod/1"])
def test_invalid_cluster_names(aws_definition_data, name):
    """Test cluster names rejected by the definition."""
    aws_definition_data["name"] = name
    with pytest.raises(PydanticValidationError):
        ClusterDefinition(**aws_definition_data)


@pytest.mark.parametrize("name", ["Node1", "-node", "node-", "node_1", "n" * 64])
def test_invalid_node_names(name):
    """Test that node names must be single lowercase DNS labels."""
    with pytest.raises(PydanticValidationError):
        NodeDefinition(name=name, role="worker")


def test_selected_environment_needs_options():
    """Test that the selected environment's options block is required."""
    with pytest.raises(PydanticValidationError, match="hosting.aws options are required"):
        HostingOptions(environment="aws")


def test_unknown_environment():
    """Test that only registered environment names are accepted."""
    with pytest.raises(PydanticValidationError):
        HostingOptions(environment="hyperv")


def test_environment_is_case_insensitive():
    """Test that the environment name is normalized."""
    options = HostingOptions(
        environment="AWS", aws={"region": "us-west-2", "availability_zone": "us-west-2a"}
    )
    assert options.environment == "aws"


def test_aws_subnets_must_fit_vpc():
    """Test that subnets outside the VPC or overlapping each other are rejected."""
    with pytest.raises(PydanticValidationError, match="not inside vpc_subnet"):
        AwsHostingOptions(region="r", availability_zone="z", node_subnet="10.200.0.0/24")
    with pytest.raises(PydanticValidationError, match="overlaps"):
        AwsHostingOptions(
            region="r", availability_zone="z", public_subnet="10.100.0.0/23", node_subnet="10.100.1.0/24"
        )


def test_ssh_port_range_order():
    """Test that the SSH port range must not be reversed."""
    with pytest.raises(PydanticValidationError, match="must not exceed"):
        NetworkOptions(first_external_ssh_port=2300, last_external_ssh_port=2211)


def test_ingress_port_inside_ssh_range():
    """Test that ingress rules may not use external SSH ports."""
    with pytest.raises(PydanticValidationError, match="inside the external SSH port range"):
        NetworkOptions(ingress_rules=[{"name": "web", "external_port": 2215, "node_port": 30080}])


def test_ingress_rule_reserved_name_and_port():
    """Test that user rules cannot shadow the built-in API rule."""
    with pytest.raises(PydanticValidationError):
        NetworkOptions(ingress_rules=[{"name": "kubeapi", "external_port": 8443, "node_port": 8443}])
    with pytest.raises(PydanticValidationError):
        NetworkOptions(ingress_rules=[{"name": "api", "external_port": 6443, "node_port": 6443}])


def test_cluster_ingress_rules_start_with_api_rule():
    """Test that the API rule is always first and targets the control-plane."""
    network = NetworkOptions(
        management_address_rules=[{"address": "203.0.113.0/24"}],
        ingress_rules=[{"name": "web", "external_port": 80, "node_port": 30080}],
    )

    rules = network.cluster_ingress_rules()
    assert [r.name for r in rules] == ["kubeapi", "web"]
    assert rules[0].target == "control-plane"
    assert rules[0].external_port == 6443
    assert rules[0].address_rules[0].cidr == "203.0.113.0/24"


def test_address_rules():
    """Test address normalization to CIDRs."""
    assert AddressRule().cidr == "0.0.0.0/0"
    assert AddressRule(address="ANY").is_any
    assert AddressRule(address="198.51.100.7").cidr == "198.51.100.7/32"
    assert AddressRule(address="198.51.100.7/24").cidr == "198.51.100.0/24"

    with pytest.raises(PydanticValidationError):
        AddressRule(address="2001:db8::/32")
    with pytest.raises(PydanticValidationError):
        AddressRule(address="not-an-address")
    with pytest.raises(PydanticValidationError):
        AddressRule(action="reject")


def test_health_check_limits():
    """Test the load balancer health check limits."""
    assert HealthCheckOptions(interval_seconds=30).interval_seconds == 30

    with pytest.raises(PydanticValidationError):
        HealthCheckOptions(interval_seconds=15)
    with pytest.raises(PydanticValidationError):
        HealthCheckOptions(threshold_count=11)


def test_assign_node_addresses(aws_definition):
    """Test that addresses start at .10, control-plane first, each role by name."""
    aws_definition.assign_node_addresses(ip_network("10.100.0.0/24"))

    addresses = {n.name: str(n.address) for n in aws_definition.nodes}
    assert addresses == {
        "cp-1": "10.100.0.10",
        "cp-2": "10.100.0.11",
        "cp-3": "10.100.0.12",
        "worker-1": "10.100.0.13",
        "worker-2": "10.100.0.14",
    }


def test_explicit_addresses_are_kept(aws_definition):
    """Test that explicit addresses are kept and skipped by automatic assignment."""
    aws_definition.get_node("worker-1").address = IPv4Address("10.100.0.10")
    aws_definition.assign_node_addresses(ip_network("10.100.0.0/24"))

    assert str(aws_definition.get_node("worker-1").address) == "10.100.0.10"
    assert str(aws_definition.get_node("cp-1").address) == "10.100.0.11"


@pytest.mark.parametrize("address", ["10.100.0.5", "10.100.0.255", "10.100.1.10"])
def test_unusable_explicit_address(aws_definition, address):
    """Test that reserved or out-of-subnet addresses are rejected."""
    aws_definition.get_node("cp-1").address = IPv4Address(address)

    with pytest.raises(ValidationError, match="not usable"):
        aws_definition.assign_node_addresses(ip_network("10.100.0.0/24"))


def test_duplicate_explicit_address(aws_definition):
    """Test that two nodes cannot share an address."""
    aws_definition.get_node("cp-1").address = IPv4Address("10.100.0.20")
    aws_definition.get_node("cp-2").address = IPv4Address("10.100.0.20")

    with pytest.raises(ValidationError, match="share address"):
        aws_definition.assign_node_addresses(ip_network("10.100.0.0/24"))


def test_subnet_exhausted(aws_definition):
    """Test that a subnet too small for every node is reported."""
    with pytest.raises(ValidationError, match="no free address"):
        aws_definition.assign_node_addresses(ip_network("10.100.0.0/29"))


def test_workers_are_default_ingress_nodes(aws_definition):
    """Test that workers receive ingress traffic when no node was chosen."""
    ingress = aws_definition.ensure_ingress_nodes()
    assert [n.name for n in ingress] == ["worker-1", "worker-2"]


def test_control_plane_ingress_without_workers(aws_definition_data):
    """Test that a control-plane only cluster routes ingress to the control-plane."""
    aws_definition_data["nodes"] = [{"name": "cp-1", "role": "control-plane"}]
    definition = ClusterDefinition(**aws_definition_data)

    assert [n.name for n in definition.ensure_ingress_nodes()] == ["cp-1"]


def test_explicit_ingress_nodes_are_kept(aws_definition_data):
    """Test that an explicit ingress choice is not overridden."""
    aws_definition_data["nodes"][0]["ingress"] = True
    definition = ClusterDefinition(**aws_definition_data)

    assert [n.name for n in definition.ensure_ingress_nodes()] == ["cp-2"]


def test_sorted_nodes(aws_definition):
    """Test node ordering used across allocation."""
    assert [n.name for n in aws_definition.sorted_nodes] == [
        "cp-1",
        "cp-2",
        "cp-3",
        "worker-1",
        "worker-2",
    ]
