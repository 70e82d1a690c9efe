"""Property-based tests for provider resource names."""

import re

import pytest
from hypothesis import given
from hypothesis import strategies as st

from cluster_hosting.exceptions import ConfigurationError
from cluster_hosting.naming import LOAD_BALANCER_NAME_LIMIT, resource_name, target_group_name

cluster_names = st.from_regex(r"[a-z0-9]([a-z0-9._-]{0,40}[a-z0-9])?", fullmatch=True)
base_names = st.sampled_from(["elb", "cp-tcp-6443", "ing-tcp-80", "ssh-tcp-2211"])


@given(cluster=cluster_names, base=base_names)
def test_names_are_deterministic_and_provider_safe(cluster, base):
    """Names are stable, free of '.' and '_', never reserved and within the limit."""
    try:
        name = resource_name(cluster, base)
    except ConfigurationError:
        assert len(f"{cluster}-{base}") > LOAD_BALANCER_NAME_LIMIT - 2
        return

    assert name == resource_name(cluster, base)
    assert re.fullmatch(r"[a-z0-9-]+", name)
    assert not name.startswith("internal-")
    assert len(name) <= LOAD_BALANCER_NAME_LIMIT
    assert name.endswith(base)


@given(cluster=cluster_names)
def test_separators_collapse(cluster):
    """Clusters differing only by '.', '_' or '-' share provider names."""
    dashed = re.sub(r"[._]", "-", cluster)
    try:
        expected = resource_name(dashed, "elb")
    except ConfigurationError:
        with pytest.raises(ConfigurationError):
            resource_name(cluster, "elb")
        return

    assert resource_name(cluster, "elb") == expected
    assert resource_name(cluster.replace("-", "_"), "elb") == expected


@given(port=st.integers(min_value=1, max_value=65535), protocol=st.sampled_from(["tcp", "http", "https", "TCP"]))
def test_target_group_protocol_is_tcp(port, protocol):
    """The load balancer forwards every protocol as TCP."""
    assert target_group_name("web", "ingress", protocol, port) == f"web-ing-tcp-{port}"
