import math

import numpy as np
import pytest

from Baseline import (bottom_band_height, estimate_baseline, from_baseline_frame,
                      to_baseline_frame)
from DropModels import BaselineModel


def test_bottom_band_is_clamped():
    assert bottom_band_height(30) == 8.0
    assert bottom_band_height(150) == 15.0
    assert bottom_band_height(1000) == 22.0


def test_recovers_tilted_substrate():
    rng = np.random.default_rng(1)
    xs = np.arange(0.0, 300.0, 1.0)
    line = np.column_stack([xs, 0.1 * xs + 150.0 + rng.normal(0.0, 0.2, xs.size)])
    t = np.linspace(np.pi, 2.0 * np.pi, 120)
    arc = np.column_stack([220.0 + 30.0 * np.cos(t), 172.0 + 130.0 * np.sin(t)])
    baseline = estimate_baseline(np.vstack([line, arc]))

    assert not baseline.is_fallback
    assert baseline.slope == pytest.approx(0.1, abs=0.01)
    assert baseline.angle_deg == pytest.approx(math.degrees(math.atan(0.1)), abs=0.6)
    assert baseline.rms_residual < 0.5
    assert baseline.inlier_count >= 8


def test_steep_line_falls_back_to_flat_baseline():
    xs = np.arange(0.0, 100.0, 1.0)
    contour = np.column_stack([xs, xs + 20.0])
    baseline = estimate_baseline(contour)
    assert baseline.is_fallback
    assert baseline.slope == 0.0
    assert baseline.intercept == pytest.approx(119.0)


def test_estimate_is_deterministic():
    rng = np.random.default_rng(3)
    pts = np.column_stack([rng.uniform(0, 200, 300), 100.0 + rng.normal(0.0, 1.0, 300)])
    assert estimate_baseline(pts) == estimate_baseline(pts)


@pytest.mark.parametrize("slope", [-0.3, 0.0, 0.05, 0.25])
def test_frame_transform_round_trip(slope):
    baseline = BaselineModel(slope=slope, intercept=123.4, angle_deg=math.degrees(math.atan(slope)),
                             rms_residual=0.0)
    pts = np.random.default_rng(0).uniform(-500.0, 500.0, (50, 2))
    back = from_baseline_frame(to_baseline_frame(pts, baseline), baseline)
    np.testing.assert_allclose(back, pts, atol=1e-9)


def test_baseline_maps_to_zero_and_drop_above():
    baseline = BaselineModel(slope=0.2, intercept=100.0, angle_deg=math.degrees(math.atan(0.2)),
                             rms_residual=0.0)
    xs = np.array([0.0, 50.0, 200.0])
    on_line = to_baseline_frame(np.column_stack([xs, baseline.y_at(xs)]), baseline)
    np.testing.assert_allclose(on_line[:, 1], 0.0, atol=1e-9)

    above = to_baseline_frame([[50.0, baseline.y_at(50.0) - 10.0]], baseline)
    assert above[0, 1] < 0
