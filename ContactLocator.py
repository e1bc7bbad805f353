import numpy as np

from DropModels import ContactPoints, ErrorKind, MeasurementError


def _side_estimate(side, apex_x, near_band, relaxed_band, min_points, top_k):
    if len(side) == 0:
        return np.nan, 0

    dist_y = np.abs(side[:, 1])
    near = dist_y <= near_band
    if np.sum(near) < min_points:
        near = dist_y <= relaxed_band
    pts = side[near]
    if len(pts) == 0:
        return np.nan, 0

    # closest to the baseline first; at equal height the point farther from the apex comes first
    order = np.lexsort((-np.abs(pts[:, 0] - apex_x), np.abs(pts[:, 1])))
    top = pts[order[:top_k]]
    rank = np.arange(len(top))
    weights = (1.0 / (0.35 + np.abs(top[:, 1]))) * (1.0 + (len(top) - rank) / len(top))
    return float(np.sum(weights * top[:, 0]) / np.sum(weights)), len(pts)


def vertical_support(arc, x, window=8.0, min_height=7.0):
    return int(np.sum((arc[:, 1] < -min_height) & (np.abs(arc[:, 0] - x) <= window)))


def _supported_pair(arc, left_x, right_x, min_separation, window, min_height, min_support):
    if not (np.isfinite(left_x) and np.isfinite(right_x)):
        return False
    if right_x - left_x <= min_separation:
        return False
    return (vertical_support(arc, left_x, window, min_height) >= min_support and
            vertical_support(arc, right_x, window, min_height) >= min_support)


def locate_contact_points(
    arc,
    aligned_contour,
    near_band=6.0,
    relaxed_band=14.0,
    min_points=3,
    top_k=8,
    min_separation=6.0,
    support_window=8.0,
    support_height=7.0,
    min_support=3,
    fallback_band=5.0,
):
    """
    Aligned-frame x positions where the drop arc meets the baseline.

    The primary estimate is a weighted mean of the lowest points on each side
    of the apex. When it is not finite, not separated or not backed by points
    higher up the flank, the innermost near-baseline contour points are used.
    """
    arc = np.asarray(arc, dtype=float).reshape(-1, 2)
    aligned_contour = np.asarray(aligned_contour, dtype=float).reshape(-1, 2)
    if len(arc) == 0:
        raise MeasurementError(ErrorKind.CONTACT_POINT_FAILURE, "contact_points",
                               "no drop arc to locate contact points on")

    check = dict(min_separation=min_separation, window=support_window,
                 min_height=support_height, min_support=min_support)
    apex_x = arc[np.argmin(arc[:, 1]), 0]

    left_x, left_n = _side_estimate(arc[arc[:, 0] < apex_x], apex_x,
                                    near_band, relaxed_band, min_points, top_k)
    right_x, right_n = _side_estimate(arc[arc[:, 0] > apex_x], apex_x,
                                      near_band, relaxed_band, min_points, top_k)
    if _supported_pair(arc, left_x, right_x, **check):
        return ContactPoints(left_x, right_x, estimator="primary",
                             left_support=left_n, right_support=right_n)

    near = aligned_contour[np.abs(aligned_contour[:, 1]) <= fallback_band]
    left_side = near[near[:, 0] < apex_x]
    right_side = near[near[:, 0] > apex_x]
    if len(left_side) and len(right_side):
        left_x = float(left_side[:, 0].max())
        right_x = float(right_side[:, 0].min())
        if _supported_pair(arc, left_x, right_x, **check):
            return ContactPoints(left_x, right_x, estimator="fallback",
                                 left_support=len(left_side), right_support=len(right_side))

    raise MeasurementError(ErrorKind.CONTACT_POINT_FAILURE, "contact_points",
                           "could not locate contact points reliably; check that both "
                           "drop edges meet a visible substrate line")
