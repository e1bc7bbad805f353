import math
import numpy as np

from DropModels import BaselineModel

MAX_TILT_DEG = 20.0


def bottom_band_height(contour_height, fraction=0.1, min_band=8.0, max_band=22.0):
    return float(np.clip(fraction * contour_height, min_band, max_band))


def _flat_baseline(contour, band_points, inlier_tolerance):
    y_max = float(np.max(contour[:, 1]))
    resid = band_points[:, 1] - y_max
    near = np.abs(resid) <= inlier_tolerance
    rms = float(np.sqrt(np.mean(resid[near] ** 2))) if np.any(near) else 0.0
    return BaselineModel(slope=0.0, intercept=y_max, angle_deg=0.0, rms_residual=rms,
                         inlier_count=int(np.sum(near)), is_fallback=True)


def estimate_baseline(
    contour,
    n_trials=160,
    inlier_tolerance=2.2,
    max_tilt_deg=MAX_TILT_DEG,
    min_pair_dx=6.0,
    min_inliers=8,
    distance_penalty=0.35,
    seed=0,
):
    """RANSAC line through the bottom band of the contour, refined by ordinary least squares."""
    contour = np.asarray(contour, dtype=float).reshape(-1, 2)
    if len(contour) < 2:
        raise ValueError("Baseline estimation needs at least two contour points")

    ys = contour[:, 1]
    band = bottom_band_height(ys.max() - ys.min())
    band_pts = contour[ys >= ys.max() - band]
    if len(band_pts) < 2:
        return _flat_baseline(contour, band_pts, inlier_tolerance)

    rng = np.random.default_rng(seed)
    i = rng.integers(0, len(band_pts), n_trials)
    j = rng.integers(0, len(band_pts), n_trials)
    p, q = band_pts[i], band_pts[j]
    dx = q[:, 0] - p[:, 0]
    dy = q[:, 1] - p[:, 1]

    usable = np.abs(dx) >= min_pair_dx
    slope = np.where(usable, dy / np.where(usable, dx, 1.0), 0.0)
    usable &= np.abs(np.degrees(np.arctan(slope))) <= max_tilt_deg
    intercept = p[:, 1] - slope * p[:, 0]

    # perpendicular distance of every band point to every candidate line
    dist = np.abs(slope[:, None] * band_pts[None, :, 0] - band_pts[None, :, 1] + intercept[:, None])
    dist /= np.sqrt(1.0 + slope[:, None] ** 2)
    inliers = dist <= inlier_tolerance
    counts = inliers.sum(axis=1)
    mean_dist = np.where(inliers, dist, 0.0).sum(axis=1) / np.maximum(counts, 1)
    score = np.where(usable, counts - distance_penalty * mean_dist, -np.inf)

    best = int(np.argmax(score))
    if not np.isfinite(score[best]) or counts[best] < min_inliers:
        return _flat_baseline(contour, band_pts, inlier_tolerance)

    x_in, y_in = band_pts[inliers[best]].T
    fit_slope, fit_intercept = np.polyfit(x_in, y_in, 1)
    tilt = math.degrees(math.atan(fit_slope))
    if abs(tilt) > max_tilt_deg:
        return _flat_baseline(contour, band_pts, inlier_tolerance)

    resid = y_in - (fit_slope * x_in + fit_intercept)
    return BaselineModel(
        slope=float(fit_slope),
        intercept=float(fit_intercept),
        angle_deg=tilt,
        rms_residual=float(np.sqrt(np.mean(resid ** 2))),
        inlier_count=int(len(x_in)),
    )


def to_baseline_frame(points, baseline: BaselineModel):
    """Rotate and shift image points so the baseline becomes y = 0 with the drop at y < 0."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    t = math.atan(baseline.slope)
    c, s = math.cos(t), math.sin(t)
    dx = pts[:, 0]
    dy = pts[:, 1] - baseline.intercept
    return np.column_stack([dx * c + dy * s, -dx * s + dy * c])


def from_baseline_frame(points, baseline: BaselineModel):
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    t = math.atan(baseline.slope)
    c, s = math.cos(t), math.sin(t)
    u, v = pts[:, 0], pts[:, 1]
    return np.column_stack([u * c - v * s, u * s + v * c + baseline.intercept])
