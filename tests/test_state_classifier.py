"""Driver state classifier tests"""

import pytest

from dms_engine.data_structures import DriverState
from dms_engine.state_classifier import classify_driver_state


@pytest.mark.parametrize("ear, motion, expected", [
    (0.30, 0.0, DriverState.ACTIVE),
    (0.10, 0.0, DriverState.SLEEPING),
    # closed eyes win over agitation
    (0.10, 5.0, DriverState.SLEEPING),
    (0.30, 2.5, DriverState.TENSION),
    (0.17, 2.5, DriverState.TENSION),
    # still face + partially closed eyes
    (0.18, 0.2, DriverState.SLEEPING),
    # moderate motion with low ratio falls through
    (0.18, 1.0, DriverState.ACTIVE),
    # boundaries are strict
    (0.15, 0.0, DriverState.SLEEPING),
    (0.30, 2.0, DriverState.ACTIVE),
    (0.20, 0.2, DriverState.ACTIVE),
    (0.19, 0.5, DriverState.ACTIVE),
])
def test_classification(ear, motion, expected):
    assert classify_driver_state(ear, motion) is expected


def test_no_motion_data_is_not_tension():
    assert classify_driver_state(0.30, 0.0) is not DriverState.TENSION


def test_state_values_match_dashboard_names():
    assert [s.value for s in DriverState] == ["Active", "Tension", "Sleeping"]
