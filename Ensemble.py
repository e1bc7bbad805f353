import math
import numpy as np

from DropModels import EnsembleResult, Method

HIGH_QUALITY_R_SQUARED = 0.85
OUTLIER_SCALE_DEG = 18.0
YOUNG_LAPLACE_BOOST = 1.1
YOUNG_LAPLACE_BOOST_R_SQUARED = 0.7
POLYNOMIAL_LOW_SUPPORT = 12
POLYNOMIAL_LOW_SUPPORT_PENALTY = 0.7
NO_INFORMATION_ANGLE = 90.0


def method_weight(fit, median_angle):
    r2 = fit.r_squared
    if r2 >= HIGH_QUALITY_R_SQUARED:
        weight = r2 ** 2 + 0.05
    else:
        weight = 0.35 * r2
    weight *= math.exp(-abs(fit.angle_deg - median_angle) / OUTLIER_SCALE_DEG)

    if fit.method == Method.YOUNG_LAPLACE and r2 > YOUNG_LAPLACE_BOOST_R_SQUARED:
        weight *= YOUNG_LAPLACE_BOOST
    if fit.method == Method.POLYNOMIAL and fit.raw_params.get('support', 0) < POLYNOMIAL_LOW_SUPPORT:
        weight *= POLYNOMIAL_LOW_SUPPORT_PENALTY
    return weight


def _weighted_side(fits, weights, attr, default):
    pairs = [(w, getattr(f, attr)) for f, w in zip(fits, weights)
             if getattr(f, attr) is not None and math.isfinite(getattr(f, attr))]
    total = sum(w for w, _ in pairs)
    if total <= 1e-12:
        return default
    return sum(w * a for w, a in pairs) / total


def _fallback(valid, median_angle):
    for fit in valid:
        if fit.method == Method.POLYNOMIAL:
            left = fit.angle_left_deg if fit.angle_left_deg is not None else fit.angle_deg
            right = fit.angle_right_deg if fit.angle_right_deg is not None else fit.angle_deg
            return EnsembleResult(fit.angle_deg, left, right, {Method.POLYNOMIAL: 1.0}, "polynomial")
    share = 1.0 / len(valid)
    return EnsembleResult(median_angle, median_angle, median_angle,
                          {fit.method: share for fit in valid}, "median")


def combine_methods(fits, min_total_weight=1e-9):
    """
    Quality- and agreement-weighted mean of the valid fits.

    Falls back to the polynomial fit, then the median of valid angles, then
    90 degrees when no method carries weight.
    """
    valid = [f for f in fits if f.is_valid and math.isfinite(f.angle_deg)]
    if not valid:
        return EnsembleResult(NO_INFORMATION_ANGLE, NO_INFORMATION_ANGLE, NO_INFORMATION_ANGLE,
                              {}, "none")

    angles = np.array([f.angle_deg for f in valid])
    median_angle = float(np.median(angles))
    raw = np.array([method_weight(f, median_angle) for f in valid])
    total = float(raw.sum())
    if not math.isfinite(total) or total < min_total_weight:
        return _fallback(valid, median_angle)

    weights = raw / total
    angle = float(np.sum(weights * angles))
    return EnsembleResult(
        angle=angle,
        angle_left=float(_weighted_side(valid, weights, 'angle_left_deg', angle)),
        angle_right=float(_weighted_side(valid, weights, 'angle_right_deg', angle)),
        method_weights={f.method: float(w) for f, w in zip(valid, weights)},
        strategy="weighted",
    )
