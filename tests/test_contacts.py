import math

import numpy as np
import pytest

from ContactLocator import _side_estimate, locate_contact_points, vertical_support
from DropModels import ErrorKind, MeasurementError


def _substrate(half_gap, extent=150.0):
    xs = np.arange(-extent, extent, 0.5)
    xs = xs[np.abs(xs) > half_gap]
    return np.column_stack([xs, np.zeros_like(xs)])


@pytest.mark.parametrize("cap_name, theta", [("obtuse_cap", 100.0), ("acute_cap", 70.0)])
def test_contacts_on_circular_cap(cap_name, theta, request):
    cap = request.getfixturevalue(cap_name)
    expected = 50.0 * math.sin(math.radians(theta))
    aligned = np.vstack([cap, _substrate(expected)])

    contacts = locate_contact_points(cap, aligned)
    assert contacts.estimator == "primary"
    assert contacts.left_x == pytest.approx(-expected, abs=1.5)
    assert contacts.right_x == pytest.approx(expected, abs=1.5)
    assert contacts.span == pytest.approx(2.0 * expected, abs=3.0)
    assert contacts.left_support >= 3
    assert contacts.right_support >= 3


def test_vertical_support(obtuse_cap):
    assert vertical_support(obtuse_cap, -49.0) > 3
    assert vertical_support(obtuse_cap, -120.0) == 0


def test_missing_flank_raises():
    column = np.column_stack([np.zeros(30), -np.arange(1.0, 31.0)])
    with pytest.raises(MeasurementError) as excinfo:
        locate_contact_points(column, column)
    assert excinfo.value.kind == ErrorKind.CONTACT_POINT_FAILURE
    assert excinfo.value.stage == "contact_points"


def test_empty_arc_raises():
    with pytest.raises(MeasurementError):
        locate_contact_points(np.empty((0, 2)), np.empty((0, 2)))


def test_equal_height_prefers_point_farther_from_apex():
    side = np.array([[-10.0, -1.0], [-20.0, -1.0], [-15.0, -3.0]])
    x, support = _side_estimate(side, 0.0, near_band=10.0, relaxed_band=20.0,
                                min_points=1, top_k=1)
    assert x == pytest.approx(-20.0)
    assert support == 3
