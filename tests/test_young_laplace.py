import math

import numpy as np
import pytest

from DropModels import FitError, Method, ScaleCalibration
from conftest import cap_points
from YoungLaplace import (bond_number, compute_physical_metrics, fit_contour,
                          fit_young_laplace, integrate_profile, integrate_profiles)

SCALE = 80.0


@pytest.fixture(scope="module")
def synthetic_drop():
    """Mirrored Young-Laplace profile (b=1, Bo=0.55) cut at a target depth, in pixels."""
    profile = integrate_profile(1.0, 0.55, num_steps=700, max_arc_length=5.0)
    depth = min(1.35, 0.9 * profile[:, 1].max())
    part = profile[profile[:, 1] <= depth]
    xs = np.concatenate([-part[::-1, 0], part[:, 0]]) * SCALE
    ys = -(depth - np.concatenate([part[::-1, 1], part[:, 1]])) * SCALE
    true_angle = math.degrees(np.interp(depth, profile[:, 1], profile[:, 2]))
    return xs, ys, true_angle


def test_profile_starts_at_apex():
    profile = integrate_profile(1.0, 0.55)
    np.testing.assert_allclose(profile[0], [1e-8, 0.0, 0.0], atol=1e-12)
    assert np.all(np.diff(profile[:, 1]) >= 0)


def test_zero_bond_number_gives_sphere():
    profile = integrate_profile(1.0, 0.0, num_steps=500, max_arc_length=3.0)
    x, z = profile[:, 0], profile[:, 1]
    np.testing.assert_allclose(x ** 2 + (z - 1.0) ** 2, 1.0, atol=5e-3)


def test_batch_matches_single_profile():
    batch = integrate_profiles([1.0, 1.3], [0.4, 0.9], num_steps=300, max_arc_length=3.0)
    single = integrate_profile(1.3, 0.9, num_steps=300, max_arc_length=3.0)
    second = batch[:, 1]
    second = second[np.isfinite(second[:, 0])]
    np.testing.assert_allclose(second, single)


def test_profile_stops_past_horizontal_tangent():
    profile = integrate_profile(1.0, 0.0, num_steps=500, max_arc_length=6.0)
    assert profile[-2, 2] <= math.pi
    assert len(profile) < 501


def test_fit_recovers_synthetic_profile(synthetic_drop):
    xs, ys, true_angle = synthetic_drop
    fit = fit_young_laplace(xs, ys)
    assert fit.method == Method.YOUNG_LAPLACE
    assert fit.r_squared > 0.75
    assert fit.raw_params['residual'] < 0.1
    assert fit.raw_params['bond_number'] > 0
    assert fit.angle_deg == pytest.approx(true_angle, abs=2.5)
    assert not fit.raw_params['budget_exhausted']
    assert len(fit.curves) == 1


@pytest.mark.parametrize("theta", [60.0, 90.0, 120.0])
def test_fit_recovers_spherical_cap(theta):
    cap = cap_points(theta, 60.0, n=1440)
    cap = cap[cap[:, 1] < -2.0]
    fit = fit_contour(cap)
    assert fit.residual < 0.02
    assert fit.contact_angle == pytest.approx(theta, abs=2.5)
    assert not fit.budget_exhausted


def test_search_budget_keeps_best_candidate(synthetic_drop):
    xs, ys, _ = synthetic_drop
    fit = fit_contour(np.column_stack([xs, ys]), max_evaluations=20)
    assert fit.budget_exhausted
    assert fit.evaluations == 20
    assert math.isfinite(fit.contact_angle)


def test_fit_rejects_too_few_points():
    with pytest.raises(FitError):
        fit_young_laplace(np.arange(5.0), -np.full(5, 10.0))


def test_bond_number():
    assert bond_number(1e-3) == pytest.approx(998.0 * 9.81 * 1e-6 / 0.0728)


def test_physical_metrics_calibrated():
    cal = ScaleCalibration(4e-6, 0.02, "stage micrometer")
    m = compute_physical_metrics(100.0, cal)
    assert m.is_calibrated
    assert m.pixel_size_um == pytest.approx(4.0)
    assert m.drop_radius_mm == pytest.approx(0.4)
    assert m.bond_number == pytest.approx(bond_number(4e-4))
    assert m.bond_number_uncertainty == pytest.approx(m.bond_number * 0.04)
    assert m.scale_source == "stage micrometer"


def test_physical_metrics_uncalibrated():
    m = compute_physical_metrics(50.0)
    assert not m.is_calibrated
    assert m.pixel_size_um == pytest.approx(10.0)
    assert m.drop_radius_mm == pytest.approx(0.5)
    assert m.bond_number_uncertainty is None


def test_scale_calibration_rejects_bad_values():
    with pytest.raises(ValueError):
        ScaleCalibration(0.0)
    with pytest.raises(ValueError):
        ScaleCalibration(1e-6, -0.1)
