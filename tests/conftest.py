"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings

from fakes import FakeAws

from cluster_hosting import login
from cluster_hosting.hosting.aws.manager import AwsHostingManager
from cluster_hosting.models.cluster import ClusterDefinition
from cluster_hosting.setup import SetupController

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


@pytest.fixture(autouse=True)
def login_folder(monkeypatch, tmp_path):
    """Keep cluster logins written by tests out of the home directory."""
    folder = tmp_path / "logins"
    monkeypatch.setattr(login, "DEFAULT_LOGIN_FOLDER", folder)
    return folder


@pytest.fixture
def aws_definition_data():
    """Three control-plane nodes and two workers hosted on AWS."""
    return {
        "name": "test-cluster",
        "purpose": "test",
        "nodes": [
            {"name": "cp-2", "role": "control-plane"},
            {"name": "cp-1", "role": "control-plane"},
            {"name": "cp-3", "role": "control-plane"},
            {"name": "worker-2", "role": "worker"},
            {"name": "worker-1", "role": "worker"},
        ],
        "network": {
            "first_external_ssh_port": 2211,
            "last_external_ssh_port": 2220,
            "ingress_rules": [
                {"name": "http", "protocol": "http", "external_port": 80, "node_port": 30080},
                {"name": "https", "protocol": "https", "external_port": 443, "node_port": 30443},
            ],
        },
        "hosting": {
            "environment": "aws",
            "aws": {"region": "us-west-2", "availability_zone": "us-west-2a"},
        },
    }


@pytest.fixture
def aws_definition(aws_definition_data):
    return ClusterDefinition(**aws_definition_data)


@pytest.fixture
def xenserver_definition_data():
    """Two nodes spread across two XenServer hosts."""
    return {
        "name": "lab",
        "nodes": [
            {"name": "cp-1", "role": "control-plane", "vm": {"host": "xen-1", "memory_gib": 8}},
            {"name": "worker-1", "role": "worker", "vm": {"host": "xen-2", "memory_gib": 16}},
        ],
        "hosting": {
            "environment": "xenserver",
            "vm_name_prefix": "lab-",
            "xenserver": {
                "hosts": [
                    {"name": "xen-1", "address": "192.168.1.10", "password": "pw"},
                    {"name": "xen-2", "address": "192.168.1.11", "password": "pw"},
                ],
            },
        },
    }


@pytest.fixture
def xenserver_definition(xenserver_definition_data):
    return ClusterDefinition(**xenserver_definition_data)


@pytest.fixture
def fake_aws():
    """An empty in-memory AWS account."""
    return FakeAws()


@pytest.fixture
def make_aws_manager(fake_aws):
    """Build validated AWS managers backed by the fake account."""

    def make(definition: ClusterDefinition) -> AwsHostingManager:
        manager = AwsHostingManager(
            definition,
            operation_timeout=5,
            poll_interval=0,
            client_factory=fake_aws.client_factory,
            admin_password="s3cret",
        )
        manager.validate()
        return manager

    return make


@pytest.fixture
def aws_manager(aws_definition, make_aws_manager):
    return make_aws_manager(aws_definition)


@pytest.fixture
def provision():
    """Run a manager's provisioning steps; returns the finished controller."""

    def run(manager, max_parallel: int = 4) -> SetupController:
        controller = SetupController("provision", manager.definition.nodes, max_parallel=max_parallel)
        manager.add_provisioning_steps(controller)
        controller.run()
        return controller

    return run
