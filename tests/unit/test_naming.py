"""Unit tests for resource naming and tags."""

import pytest

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.naming import (
    CLUSTER_TAG,
    ENVIRONMENT_TAG,
    NAME_TAG,
    ClusterResourceNames,
    build_tags,
    ec2_tags,
    load_balancer_name,
    qualified_name,
    resource_name,
    tag_specification,
    tags_to_dict,
    target_group_name,
)


def test_periods_become_dashes():
    """Test that a dotted cluster name yields a dashed provider name."""
    assert resource_name("my.cluster", "elb") == "my-cluster-elb"


def test_load_balancer_name():
    assert load_balancer_name("my.cluster") == "my-cluster-elb"
    assert load_balancer_name("internal") == "x-internal-elb"


def test_underscores_become_dashes():
    """Test that underscores and periods map to the same name."""
    assert resource_name("my_cluster", "elb") == resource_name("my.cluster", "elb")


def test_reserved_internal_prefix_is_escaped():
    """Test that names starting with 'internal-' get an 'x-' prefix."""
    assert resource_name("internal", "elb") == "x-internal-elb"
    assert resource_name("internal.apps", "elb") == "x-internal-apps-elb"


def test_name_length_limit():
    """Test that names over the limit are rejected rather than truncated."""
    cluster = "c" * 28

    assert resource_name(cluster, "elb") == f"{cluster}-elb"
    with pytest.raises(ConfigurationError) as exc_info:
        resource_name(cluster + "c", "elb")
    assert "32 character limit" in exc_info.value.message


def test_custom_length_limit():
    """Test that a custom limit is honored."""
    with pytest.raises(ConfigurationError):
        resource_name("cluster", "elb", max_length=8)


def test_target_group_names():
    """Test target group names for each target population."""
    assert target_group_name("prod", "control-plane", "tcp", 6443) == "prod-cp-tcp-6443"
    assert target_group_name("prod", "ingress", "tcp", 8080) == "prod-ing-tcp-8080"
    assert target_group_name("prod", "ssh", "tcp", 2211) == "prod-ssh-tcp-2211"


def test_http_target_groups_use_tcp():
    """Test that HTTP and HTTPS rules are named as TCP forwarding."""
    assert target_group_name("prod", "ingress", "HTTP", 80) == "prod-ing-tcp-80"
    assert target_group_name("prod", "ingress", "https", 443) == "prod-ing-tcp-443"


def test_qualified_names():
    """Test the name tag values of per-cluster resources."""
    names = ClusterResourceNames("my.cluster")

    assert qualified_name("my.cluster", "vpc") == "my.cluster.vpc"
    assert names.vpc == "my.cluster.vpc"
    assert names.node_subnet == "my.cluster.node-subnet"
    assert names.network_acl("b") == "my.cluster.network-acl-b"
    assert names.node("cp-1") == "my.cluster.cp-1"
    assert names.volume("cp-1", "data") == "my.cluster.cp-1.data"
    assert names.load_balancer == "my-cluster-elb"


def test_build_tags():
    """Test the standard tag set."""
    tags = build_tags("prod.vpc", "prod", "production", {"extra": "1"})

    assert tags == {
        NAME_TAG: "prod.vpc",
        CLUSTER_TAG: "prod",
        ENVIRONMENT_TAG: "production",
        "extra": "1",
    }


def test_tag_conversions():
    """Test conversion between tag mappings and provider tag lists."""
    tags = {NAME_TAG: "prod.vpc", CLUSTER_TAG: "prod"}

    assert tags_to_dict(ec2_tags(tags)) == tags
    assert tags_to_dict(None) == {}

    spec = tag_specification("vpc", tags)
    assert spec[0]["ResourceType"] == "vpc"
    assert tags_to_dict(spec[0]["Tags"]) == tags
