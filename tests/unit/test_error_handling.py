"""Tests for error handling across components."""

import pytest

from cluster_hosting.exceptions import (
    CapacityError,
    ClusterHostingError,
    ConfigurationError,
    ConflictError,
    InstanceStateError,
    OperationTimeoutError,
    PartialNodeFailure,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from cluster_hosting.logging_config import get_logger, setup_logging
from cluster_hosting.models.cluster import ClusterDefinition


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = ConflictError("Load balancer exists", "Choose a different cluster name")

    assert error.message == "Load balancer exists"
    assert error.details == "Choose a different cluster name"
    assert "Load balancer exists" in str(error)
    assert "Choose a different cluster name" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ValidationError("Invalid input")

    assert error.message == "Invalid input"
    assert error.details is None
    assert str(error) == "Invalid input"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from ClusterHostingError."""
    for error_type in (
        ValidationError,
        ConfigurationError,
        ConflictError,
        ProviderError,
        CapacityError,
        InstanceStateError,
        PartialNodeFailure,
    ):
        assert issubclass(error_type, ClusterHostingError)

    assert issubclass(TransientProviderError, ProviderError)
    assert issubclass(OperationTimeoutError, TransientProviderError)


def test_provider_error_keeps_code():
    """Test that provider errors carry the provider's error code."""
    error = ProviderError("describe failed", code="InvalidVpcID.NotFound")

    assert error.code == "InvalidVpcID.NotFound"
    assert ProviderError("no code").code is None


def test_partial_node_failure_lists_nodes():
    """Test that a partial failure names every failed node and its error."""
    error = PartialNodeFailure(
        "node instances",
        {"worker-2": RuntimeError("boom"), "cp-1": InstanceStateError("terminated")},
    )

    assert error.message == "Step 'node instances' failed on node(s): cp-1, worker-2"
    assert "worker-2: boom" in error.details
    assert set(error.failures) == {"cp-1", "worker-2"}


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_to_file(tmp_path):
    """Test that a log file is created in a missing directory."""
    log_file = tmp_path / "logs" / "hosting.log"
    setup_logging(log_file=log_file)

    get_logger("test").warning("written to file")
    assert log_file.exists()


def test_definition_errors_mention_path():
    """Test that definition load errors name the file."""
    with pytest.raises(ValidationError) as exc_info:
        ClusterDefinition.load("nonexistent.yaml")

    error_msg = str(exc_info.value)
    assert "not found" in error_msg.lower()
    assert "nonexistent.yaml" in error_msg


def test_exception_can_be_caught_as_base_class():
    """Test that specific exceptions can be caught as ClusterHostingError."""
    try:
        raise CapacityError("Test error")
    except ClusterHostingError as e:
        assert isinstance(e, CapacityError)
        assert e.message == "Test error"
