import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from Baseline import bottom_band_height

# Scoring weights, overridable per call through ``weights``.
COMPONENT_WEIGHTS = {
    'size': 1.0,
    'height': 8.0,
    'near_bottom': 0.25,
    'border': 2.2,
    'center': 40.0,
    'width': 180.0,
}

ISOLATION_WEIGHTS = {
    'size': 1.0,
    'height': 6.0,
    'near_baseline': 1.8,
    'center': 35.0,
    'width': 120.0,
    'imbalance': 25.0,
}


def cluster_points(points, radius):
    """Group points into connected sets where neighbours are closer than ``radius``, largest first."""
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    n = len(points)
    if n == 0:
        return []

    tree = cKDTree(points)
    pairs = tree.query_pairs(r=radius, output_type='ndarray')
    graph = coo_matrix((np.ones(len(pairs)), (pairs[:, 0], pairs[:, 1])), shape=(n, n))
    _, labels = connected_components(graph, directed=False)

    order = np.argsort(labels, kind='stable')
    groups = np.split(order, np.cumsum(np.bincount(labels))[:-1])
    return sorted(groups, key=len, reverse=True)


def _width_penalty(span, reference, onset):
    if reference <= 0:
        return 0.0
    return float(np.clip((span / reference - onset) / (1.0 - onset), 0.0, 1.0))


def component_score(pts, width, height, border_band=12.0, min_height=12.0,
                    short_penalty=1000.0, weights=None):
    w = COMPONENT_WEIGHTS if weights is None else weights
    x, y = pts[:, 0], pts[:, 1]
    comp_height = float(np.ptp(y))
    comp_width = float(np.ptp(x))

    near_bottom = int(np.sum(y >= y.max() - bottom_band_height(comp_height)))
    border_touches = int(np.sum(
        (x < border_band) | (x > width - 1 - border_band) |
        (y < border_band) | (y > height - 1 - border_band)
    ))
    center_penalty = abs(float(x.mean()) - (width - 1) / 2.0) / max(width / 2.0, 1.0)
    width_penalty = _width_penalty(comp_width, width, 0.85)

    score = (w['size'] * len(pts)
             + w['height'] * comp_height
             + w['near_bottom'] * near_bottom
             - w['border'] * border_touches
             - w['center'] * center_penalty
             - w['width'] * width_penalty)
    if comp_height < min_height:
        score -= short_penalty

    return score, {
        'size': len(pts),
        'height': comp_height,
        'width': comp_width,
        'near_bottom': near_bottom,
        'border_touches': border_touches,
        'center_penalty': center_penalty,
        'width_penalty': width_penalty,
    }


def select_droplet_component(points, width, height, link_radius=3.0, min_component_size=12,
                             border_band=12.0, min_height=12.0, weights=None):
    """
    Pick the edge component most likely to be the drop (with its substrate line).

    Returns the component points and a summary dict of the winning score.
    """
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    groups = cluster_points(points, link_radius)
    if not groups:
        return points, {'n_components': 0, 'score': float('nan'), 'fallback': True}

    candidates = [g for g in groups if len(g) >= min_component_size]
    if not candidates:
        return points[groups[0]], {'n_components': len(groups), 'score': float('nan'), 'fallback': True}

    best_idx, best_score, best_info = None, -np.inf, None
    for idx in candidates:
        score, info = component_score(points[idx], width, height, border_band=border_band,
                                      min_height=min_height, weights=weights)
        if score > best_score:
            best_idx, best_score, best_info = idx, score, info

    best_info.update({'n_components': len(groups), 'score': float(best_score), 'fallback': False})
    return points[best_idx], best_info


def flank_support(arc, near_band=10.0):
    """Counts of near-baseline points left and right of the arc apex."""
    apex_x = arc[np.argmin(arc[:, 1]), 0]
    near = arc[:, 1] > -near_band
    left = int(np.sum(near & (arc[:, 0] < apex_x)))
    right = int(np.sum(near & (arc[:, 0] > apex_x)))
    return left, right


def isolate_droplet(aligned, min_clearance=0.8, min_points=20, link_radius=4.8,
                    min_candidate_size=14, near_band=10.0, flank_penalty=500.0, weights=None):
    """
    Separate the drop arc from other above-baseline points of the aligned contour.

    Returns the arc and a flag telling whether the full above-baseline set had
    to be used instead.
    """
    w = ISOLATION_WEIGHTS if weights is None else weights
    aligned = np.asarray(aligned, dtype=float).reshape(-1, 2)
    above = aligned[aligned[:, 1] < -min_clearance]
    if len(above) < min_points:
        return above, True

    x_all = aligned[:, 0]
    full_center = (x_all.min() + x_all.max()) / 2.0
    full_width = max(float(np.ptp(x_all)), 1.0)

    best_idx, best_score = None, -np.inf
    for idx in cluster_points(above, link_radius):
        if len(idx) < min_candidate_size:
            continue
        arc = above[idx]
        left, right = flank_support(arc, near_band)
        imbalance = abs(left - right) / max(left + right, 1)
        center_penalty = abs(float(arc[:, 0].mean()) - full_center) / (full_width / 2.0)

        score = (w['size'] * len(arc)
                 + w['height'] * float(np.ptp(arc[:, 1]))
                 + w['near_baseline'] * (left + right)
                 - w['center'] * center_penalty
                 - w['width'] * _width_penalty(float(np.ptp(arc[:, 0])), full_width, 0.9)
                 - w['imbalance'] * imbalance)
        if left == 0 or right == 0:
            score -= flank_penalty
        if score > best_score:
            best_idx, best_score = idx, score

    if best_idx is None:
        return above, True

    arc = above[best_idx]
    left, right = flank_support(arc, near_band)
    if left < 2 or right < 2:
        return above, True
    return arc, False
