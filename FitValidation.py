import math
from dataclasses import replace

from DropModels import ContactPoints, FitResult, InvalidReason, Method

MIN_ANGLE_DEG = 1.0
MAX_ANGLE_DEG = 179.0

CIRCLE_MIN_RADIUS = 2.0
CIRCLE_MIN_R_SQUARED = 0.72
CIRCLE_CONTACT_TOLERANCE = 5.0
CIRCLE_CONTACT_FRACTION = 0.16

ELLIPSE_MAX_AXIS_RATIO = 4.5
ELLIPSE_MIN_R_SQUARED = 0.72

POLYNOMIAL_MIN_SUPPORT = 12
POLYNOMIAL_MAX_SIDE_DIFFERENCE = 45.0
POLYNOMIAL_MIN_R_SQUARED = 0.78

YOUNG_LAPLACE_MAX_RESIDUAL = 0.35
YOUNG_LAPLACE_MIN_R_SQUARED = 0.68


def _finite(value):
    return value is not None and math.isfinite(value)


def _circle_reason(fit, contacts):
    p = fit.raw_params
    radius = p.get('radius', math.nan)
    if not _finite(radius) or radius <= CIRCLE_MIN_RADIUS:
        return InvalidReason.DEGENERATE_RADIUS
    # the circle has to rise above the baseline (aligned y < 0) to describe a drop
    if not _finite(p.get('center_y')) or p['center_y'] - radius >= 0:
        return InvalidReason.CIRCLE_BELOW_BASELINE
    tolerance = max(CIRCLE_CONTACT_TOLERANCE, CIRCLE_CONTACT_FRACTION * contacts.span)
    left_i = p.get('left_intersection', math.nan)
    right_i = p.get('right_intersection', math.nan)
    if not (_finite(left_i) and _finite(right_i)):
        return InvalidReason.CONTACT_MISMATCH
    if abs(left_i - contacts.left_x) > tolerance or abs(right_i - contacts.right_x) > tolerance:
        return InvalidReason.CONTACT_MISMATCH
    if fit.r_squared < CIRCLE_MIN_R_SQUARED:
        return InvalidReason.LOW_R_SQUARED
    return None


def _ellipse_reason(fit, contacts):
    p = fit.raw_params
    a = p.get('semi_major', math.nan)
    b = p.get('semi_minor', math.nan)
    if not (_finite(a) and _finite(b)) or a <= 0 or b <= 0:
        return InvalidReason.DEGENERATE_AXES
    if a / b > ELLIPSE_MAX_AXIS_RATIO:
        return InvalidReason.EXCESSIVE_ASPECT_RATIO
    if fit.r_squared < ELLIPSE_MIN_R_SQUARED:
        return InvalidReason.LOW_R_SQUARED
    return None


def _polynomial_reason(fit, contacts):
    if fit.raw_params.get('support', 0) < POLYNOMIAL_MIN_SUPPORT:
        return InvalidReason.INSUFFICIENT_SUPPORT
    left, right = fit.angle_left_deg, fit.angle_right_deg
    if _finite(left) and _finite(right) and abs(left - right) > POLYNOMIAL_MAX_SIDE_DIFFERENCE:
        return InvalidReason.SIDE_DISAGREEMENT
    if fit.r_squared < POLYNOMIAL_MIN_R_SQUARED:
        return InvalidReason.LOW_R_SQUARED
    return None


def _young_laplace_reason(fit, contacts):
    bo = fit.raw_params.get('bond_number', math.nan)
    if not _finite(bo) or bo <= 0:
        return InvalidReason.INVALID_BOND_NUMBER
    residual = fit.raw_params.get('residual', math.nan)
    if not _finite(residual) or residual > YOUNG_LAPLACE_MAX_RESIDUAL:
        return InvalidReason.HIGH_RESIDUAL
    if fit.r_squared < YOUNG_LAPLACE_MIN_R_SQUARED:
        return InvalidReason.LOW_R_SQUARED
    return None


_RULES = {
    Method.CIRCLE: _circle_reason,
    Method.ELLIPSE: _ellipse_reason,
    Method.POLYNOMIAL: _polynomial_reason,
    Method.YOUNG_LAPLACE: _young_laplace_reason,
}


def validate_fit(fit: FitResult, contacts: ContactPoints) -> FitResult:
    """Return the fit marked valid or rejected with the first failing rule."""
    if not fit.is_valid:
        return fit
    reason = _RULES[fit.method](fit, contacts)
    if reason is None and not (_finite(fit.angle_deg) and
                               MIN_ANGLE_DEG <= fit.angle_deg <= MAX_ANGLE_DEG):
        reason = InvalidReason.ANGLE_OUT_OF_RANGE
    if reason is None:
        return fit
    return replace(fit, is_valid=False, invalid_reason=reason)


def validate_fits(fits, contacts):
    return [validate_fit(fit, contacts) for fit in fits]


def count_valid(fits):
    return sum(1 for fit in fits if fit.is_valid)
