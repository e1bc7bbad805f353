import math

import pytest

from DropModels import ContactPoints, FitResult, InvalidReason, Method
from FitValidation import count_valid, validate_fit, validate_fits

CONTACTS = ContactPoints(-49.0, 49.0)


def _circle(**params):
    base = dict(center_x=0.0, center_y=-8.7, radius=50.0,
                left_intersection=-49.2, right_intersection=49.2)
    base.update(params)
    return FitResult(Method.CIRCLE, 100.0, r_squared=0.99, raw_params=base)


def test_valid_circle_passes():
    fit = validate_fit(_circle(), CONTACTS)
    assert fit.is_valid
    assert fit.invalid_reason is None


@pytest.mark.parametrize("params, reason", [
    (dict(radius=1.5), InvalidReason.DEGENERATE_RADIUS),
    (dict(center_y=60.0), InvalidReason.CIRCLE_BELOW_BASELINE),
    (dict(left_intersection=-70.0), InvalidReason.CONTACT_MISMATCH),
    (dict(right_intersection=math.nan), InvalidReason.CONTACT_MISMATCH),
])
def test_circle_rejections(params, reason):
    fit = validate_fit(_circle(**params), CONTACTS)
    assert not fit.is_valid
    assert fit.invalid_reason == reason


def test_circle_contact_tolerance_scales_with_span():
    wide = ContactPoints(-200.0, 200.0)
    params = dict(radius=210.0, center_y=-60.0, left_intersection=-230.0, right_intersection=200.0)
    assert validate_fit(_circle(**params), wide).is_valid


def test_low_r_squared_circle():
    fit = FitResult(Method.CIRCLE, 100.0, r_squared=0.5, raw_params=_circle().raw_params)
    assert validate_fit(fit, CONTACTS).invalid_reason == InvalidReason.LOW_R_SQUARED


@pytest.mark.parametrize("a, b, reason", [
    (50.0, 0.0, InvalidReason.DEGENERATE_AXES),
    (100.0, 20.0, InvalidReason.EXCESSIVE_ASPECT_RATIO),
    (55.0, 50.0, None),
])
def test_ellipse_rules(a, b, reason):
    fit = FitResult(Method.ELLIPSE, 100.0, 99.0, 101.0, r_squared=0.95,
                    raw_params={'semi_major': a, 'semi_minor': b})
    assert validate_fit(fit, CONTACTS).invalid_reason == reason


@pytest.mark.parametrize("support, left, right, r2, reason", [
    (8, 100.0, 100.0, 0.99, InvalidReason.INSUFFICIENT_SUPPORT),
    (40, 60.0, 120.0, 0.99, InvalidReason.SIDE_DISAGREEMENT),
    (40, 100.0, 102.0, 0.5, InvalidReason.LOW_R_SQUARED),
    (40, 100.0, 102.0, 0.99, None),
])
def test_polynomial_rules(support, left, right, r2, reason):
    fit = FitResult(Method.POLYNOMIAL, 0.5 * (left + right), left, right, r_squared=r2,
                    raw_params={'support': support})
    assert validate_fit(fit, CONTACTS).invalid_reason == reason


@pytest.mark.parametrize("bo, residual, r2, reason", [
    (0.0, 0.05, 0.9, InvalidReason.INVALID_BOND_NUMBER),
    (0.4, 0.5, 0.9, InvalidReason.HIGH_RESIDUAL),
    (0.4, 0.05, 0.5, InvalidReason.LOW_R_SQUARED),
    (0.4, 0.05, 0.9, None),
])
def test_young_laplace_rules(bo, residual, r2, reason):
    fit = FitResult(Method.YOUNG_LAPLACE, 100.0, r_squared=r2,
                    raw_params={'bond_number': bo, 'residual': residual})
    assert validate_fit(fit, CONTACTS).invalid_reason == reason


@pytest.mark.parametrize("angle", [0.5, 179.5, math.nan])
def test_angle_out_of_range(angle):
    fit = FitResult(Method.YOUNG_LAPLACE, angle, r_squared=0.9,
                    raw_params={'bond_number': 0.4, 'residual': 0.05})
    assert validate_fit(fit, CONTACTS).invalid_reason == InvalidReason.ANGLE_OUT_OF_RANGE


def test_failed_fit_passes_through():
    failed = FitResult.failed(Method.ELLIPSE, "singular matrix")
    assert validate_fit(failed, CONTACTS) is failed
    assert failed.raw_params['error'] == "singular matrix"


def test_count_valid():
    fits = validate_fits([_circle(), _circle(radius=1.0), FitResult.failed(Method.POLYNOMIAL, "x")],
                         CONTACTS)
    assert count_valid(fits) == 1
