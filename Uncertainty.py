import math
import numpy as np
from statsmodels.robust.scale import mad
from tqdm.auto import tqdm

from DropModels import FitError, UncertaintyResult
from FitValidation import (CIRCLE_MIN_R_SQUARED, CIRCLE_MIN_RADIUS,
                           ELLIPSE_MAX_AXIS_RATIO, ELLIPSE_MIN_R_SQUARED)
from ShapeFits import circle_contact_angle, circle_fit, ellipse_contact_angles, ellipse_fit

BOOTSTRAP_MAX_DEG = 15.0
DISAGREEMENT_MAX_DEG = 15.0
EDGE_MIN_DEG = 0.12
EDGE_MAX_DEG = 1.5
COMBINED_MIN_DEG = 0.25
COMBINED_MAX_DEG = 20.0


def _resample_circle_angle(xs, ys):
    try:
        _, cy, r, r_squared, _ = circle_fit(xs, ys)
    except (FitError, np.linalg.LinAlgError):
        return None
    if r_squared < CIRCLE_MIN_R_SQUARED or r <= CIRCLE_MIN_RADIUS:
        return None
    return circle_contact_angle(cy, r)


def _resample_ellipse_angle(xs, ys, contacts):
    try:
        p = ellipse_fit(xs, ys)
    except (FitError, np.linalg.LinAlgError):
        return None
    if p.r_squared < ELLIPSE_MIN_R_SQUARED or p.semi_major / p.semi_minor > ELLIPSE_MAX_AXIS_RATIO:
        return None
    left, right = ellipse_contact_angles(p, contacts.left_x, contacts.right_x, samples=720)
    return 0.5 * (left + right)


def bootstrap_uncertainty(xs, ys, contacts, n_samples=100, min_successes=12,
                          min_ellipse_points=12, seed=0, verbose=False):
    """Half width of the 95% bootstrap interval of the circle/ellipse angle."""
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    n = len(xs)
    if n < 3:
        return 0.0, 0

    rng = np.random.default_rng(seed)
    sample_angles = []
    for _ in tqdm(range(n_samples), desc="Bootstrap", position=1, leave=False,
                  dynamic_ncols=True, disable=not verbose):
        idx = rng.integers(0, n, n)
        bx, by = xs[idx], ys[idx]
        angles = [_resample_circle_angle(bx, by)]
        if n >= min_ellipse_points:
            angles.append(_resample_ellipse_angle(bx, by, contacts))
        angles = [a for a in angles if a is not None and math.isfinite(a)]
        if angles:
            sample_angles.append(float(np.mean(angles)))

    if len(sample_angles) < min_successes:
        return 0.0, len(sample_angles)
    lo, hi = np.percentile(sample_angles, [2.5, 97.5])
    return float(np.clip((hi - lo) / 2.0, 0.0, BOOTSTRAP_MAX_DEG)), len(sample_angles)


def method_disagreement(angles):
    a = np.asarray(angles, dtype=float)
    a = a[np.isfinite(a)]
    if len(a) < 2:
        return 0.0
    spread = float(mad(a))
    if spread < 1e-9:
        spread = float(np.std(a, ddof=1))
    return float(np.clip(spread, 0.0, DISAGREEMENT_MAX_DEG))


def edge_localization_uncertainty(aligned_contour, contacts, drop_radius, window=8.0,
                                  band=2.2, fallback_spread=0.0):
    pts = np.asarray(aligned_contour, dtype=float).reshape(-1, 2)
    x, y = pts[:, 0], pts[:, 1]
    spreads = []
    for x_c in (contacts.left_x, contacts.right_x):
        near = (np.abs(x - x_c) <= window) & (np.abs(y) <= band)
        if np.sum(near) >= 3:
            spreads.append(float(np.std(y[near])))
    spread = float(np.mean(spreads)) if spreads else fallback_spread
    angle = math.degrees(math.atan(spread / max(drop_radius, 1.0)))
    return float(np.clip(angle, EDGE_MIN_DEG, EDGE_MAX_DEG))


def estimate_uncertainty(xs, ys, contacts, fits, aligned_contour, drop_radius,
                         baseline_rms=0.0, n_bootstrap=100, seed=0, verbose=False):
    bootstrap, successes = bootstrap_uncertainty(xs, ys, contacts, n_samples=n_bootstrap,
                                                 seed=seed, verbose=verbose)
    disagreement = method_disagreement([f.angle_deg for f in fits if f.is_valid])
    edge = edge_localization_uncertainty(aligned_contour, contacts, drop_radius,
                                         fallback_spread=baseline_rms)
    combined = math.sqrt(bootstrap ** 2 + disagreement ** 2 + edge ** 2)
    return UncertaintyResult(
        combined=float(np.clip(combined, COMBINED_MIN_DEG, COMBINED_MAX_DEG)),
        bootstrap=bootstrap,
        method_disagreement=disagreement,
        edge_localization=edge,
        bootstrap_samples=successes,
    )
