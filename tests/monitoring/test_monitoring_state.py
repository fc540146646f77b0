import pytest

from nodefleet.bootstrap.monitoring.state import MonitoringFacility, MonitoringState
from nodefleet.errors import InvalidTransitionError


def test_new_host_lifecycle():
    f = MonitoringFacility.absent()
    pending = f.allocate("aws_node_i-9")
    active = pending.activate("aws_node_i-9")

    assert pending.state is MonitoringState.PENDING and pending.is_pending
    assert active.is_active and active.node_id == "aws_node_i-9"
    # transitions never mutate
    assert f.state is MonitoringState.ABSENT


def test_reuse_recorded_host():
    f = MonitoringFacility.from_recorded("aws_node_i-9")
    assert f.is_active
    assert f.describe() == "active(aws_node_i-9)"
    assert MonitoringFacility.from_recorded(None) == MonitoringFacility.absent()


def test_recorded_pending_host_stays_pending():
    f = MonitoringFacility.from_recorded("aws_node_i-9", "pending")
    assert f.is_pending and f.has_host
    assert f.activate("aws_node_i-9").is_active
    assert MonitoringFacility.from_recorded("aws_node_i-9", "active").is_active
    assert not MonitoringFacility.absent().has_host


def test_activate_other_node_than_pending():
    pending = MonitoringFacility.absent().allocate("aws_node_i-1")
    with pytest.raises(InvalidTransitionError):
        pending.activate("aws_node_i-2")


@pytest.mark.parametrize(
    "facility, action",
    [
        (MonitoringFacility(MonitoringState.ACTIVE, "n"), lambda f: f.activate("n")),
        (MonitoringFacility(MonitoringState.ACTIVE, "n"), lambda f: f.allocate("m")),
        (MonitoringFacility(MonitoringState.PENDING, "n"), lambda f: f.allocate("n")),
    ],
)
def test_illegal_transitions(facility, action):
    with pytest.raises(InvalidTransitionError):
        action(facility)


def test_inconsistent_states_rejected():
    with pytest.raises(ValueError):
        MonitoringFacility(MonitoringState.ABSENT, "n")
    with pytest.raises(ValueError):
        MonitoringFacility(MonitoringState.PENDING, None)
