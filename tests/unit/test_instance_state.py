"""Unit tests for instance state codes."""

import pytest

from cluster_hosting.models.resources import InstanceState


def test_is_stopped_means_stopped():
    """Test that only the Stopped state counts as stopped.

    Stopping (64) is a transition, not a resting state; a stopped check that
    matched it would start an instance that is still shutting down.
    """
    assert InstanceState.STOPPED.is_stopped
    assert InstanceState.STOPPED == 80
    assert not InstanceState.STOPPING.is_stopped
    assert not InstanceState.RUNNING.is_stopped


def test_high_byte_is_ignored():
    """Test that the provider-internal high byte of the state code is masked."""
    assert InstanceState.from_code(0x0110) == InstanceState.RUNNING
    assert InstanceState.from_code(0x0250) == InstanceState.STOPPED
    assert InstanceState.from_code(48) == InstanceState.TERMINATED


def test_unknown_code_is_rejected():
    """Test that unknown codes are not silently accepted."""
    with pytest.raises(ValueError):
        InstanceState.from_code(99)


@pytest.mark.parametrize(
    "state",
    [InstanceState.SHUTTING_DOWN, InstanceState.STOPPING, InstanceState.TERMINATED],
)
def test_unexpected_states(state):
    """Test the states provisioning never drives an instance into."""
    assert state.is_unexpected


@pytest.mark.parametrize("state", [InstanceState.PENDING, InstanceState.RUNNING, InstanceState.STOPPED])
def test_expected_states(state):
    """Test the states provisioning can recover from."""
    assert not state.is_unexpected
