import math
from typing import NamedTuple

import numpy as np
import statsmodels.api as sm
from numpy.polynomial import polynomial as P

from DropModels import FitError, FitResult, Method


def slope_to_contact_angle(dy_dx, is_left_side):
    """
    Interior contact angle from the surface slope at a contact point.

    The slope is taken with height increasing upward from the baseline. On the
    left contact a rising surface (positive slope) encloses the liquid at an
    acute angle, on the right contact a falling one does; otherwise the
    supplementary angle is returned.
    """
    angle = math.degrees(math.atan(abs(dy_dx)))
    interior = (is_left_side and dy_dx > 0) or (not is_left_side and dy_dx < 0)
    return float(np.clip(angle if interior else 180.0 - angle, 0.0, 180.0))


# ---------------------------------------------------------------- circle

def circle_fit(xs, ys):
    """
    Algebraic (Kasa) circle fit on centred and scaled points.

    Returns (cx, cy, r, r_squared, rmse) where r_squared = exp(-25 (rmse/r)^2)
    and rmse is the radial RMS residual.
    """
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if len(x) < 3:
        raise FitError(f"Circle fit needs at least 3 points, got {len(x)}")

    mx, my = x.mean(), y.mean()
    scale = float(np.max(np.hypot(x - mx, y - my)))
    if not np.isfinite(scale) or scale < 1e-9:
        raise FitError("Circle fit points are coincident")

    u = (x - mx) / scale
    v = (y - my) / scale
    A = np.column_stack([2.0 * u, 2.0 * v, np.ones_like(u)])
    (a, b, c), *_ = np.linalg.lstsq(A, u * u + v * v, rcond=None)
    radicand = c + a * a + b * b
    if not np.isfinite(radicand) or radicand <= 0:
        raise FitError("Negative radicand in circle fit")

    r = math.sqrt(radicand) * scale
    cx = mx + a * scale
    cy = my + b * scale
    rmse = float(np.sqrt(np.mean((np.hypot(x - cx, y - cy) - r) ** 2)))
    r_squared = math.exp(-25.0 * (rmse / r) ** 2)
    return float(cx), float(cy), float(r), r_squared, rmse


def circle_contact_angle(cy, r, baseline_y=0.0):
    return 180.0 - math.degrees(math.acos(float(np.clip((baseline_y - cy) / r, -1.0, 1.0))))


def circle_baseline_intersections(cx, cy, r, baseline_y=0.0):
    d = r * r - (baseline_y - cy) ** 2
    if not np.isfinite(d) or d < 0:
        return math.nan, math.nan
    half = math.sqrt(d)
    return cx - half, cx + half


def fit_circle(xs, ys, contacts=None, baseline_y=0.0):
    cx, cy, r, r_squared, rmse = circle_fit(xs, ys)
    angle = circle_contact_angle(cy, r, baseline_y)
    if not np.isfinite(angle):
        raise FitError("Circle contact angle is not finite")
    left_i, right_i = circle_baseline_intersections(cx, cy, r, baseline_y)

    # sample from the top of the circle outward so the kept arc is contiguous
    t = 1.5 * np.pi + np.linspace(-np.pi, np.pi, 361)
    arc = np.column_stack([cx + r * np.cos(t), cy + r * np.sin(t)])
    arc = arc[arc[:, 1] <= baseline_y]

    return FitResult(
        method=Method.CIRCLE,
        angle_deg=angle,
        r_squared=float(np.clip(r_squared, 0.0, 1.0)),
        raw_params={
            'center_x': cx,
            'center_y': cy,
            'radius': r,
            'rmse': rmse,
            'left_intersection': left_i,
            'right_intersection': right_i,
            'n_points': len(xs),
        },
        curves=(arc,),
    )


# ---------------------------------------------------------------- ellipse

class EllipseParams(NamedTuple):
    center_x: float
    center_y: float
    semi_major: float
    semi_minor: float
    rotation: float
    r_squared: float
    rms_distance: float


# inverse of the constraint matrix [[0, 0, 2], [0, -1, 0], [2, 0, 0]]
_C_INV = np.array([[0.0, 0.0, 0.5], [0.0, -1.0, 0.0], [0.5, 0.0, 0.0]])


def _constrained_eigenvector(M, iterations=100):
    vec = np.ones(3) / math.sqrt(3.0)
    for _ in range(iterations):
        nxt = M @ vec
        norm = np.linalg.norm(nxt)
        if not np.isfinite(norm) or norm < 1e-300:
            break
        vec = nxt / norm

    lam = vec @ M @ vec
    converged = np.linalg.norm(M @ vec - lam * vec) <= 1e-6 * max(np.linalg.norm(M), 1e-300)
    if converged and 4.0 * vec[0] * vec[2] - vec[1] ** 2 > 0:
        return vec

    # power iteration landed on a non-elliptical eigenvalue; pick the constrained one directly
    vals, vecs = np.linalg.eig(M)
    real = np.abs(np.imag(vals)) <= 1e-9 * max(np.max(np.abs(vals)), 1e-300)
    vecs = np.real(vecs)
    cond = 4.0 * vecs[0] * vecs[2] - vecs[1] ** 2
    candidates = np.flatnonzero(real & (cond > 0))
    if candidates.size == 0:
        raise FitError("No elliptical solution for the conic fit")
    return vecs[:, candidates[0]]


def _ellipse_points(p, t):
    c, s = math.cos(p.rotation), math.sin(p.rotation)
    ca, sa = p.semi_major * np.cos(t), p.semi_minor * np.sin(t)
    return p.center_x + ca * c - sa * s, p.center_y + ca * s + sa * c


def _ellipse_tangent(p, t):
    c, s = math.cos(p.rotation), math.sin(p.rotation)
    da, db = -p.semi_major * np.sin(t), p.semi_minor * np.cos(t)
    return da * c - db * s, da * s + db * c


def _ellipse_distances(x, y, cx, cy, a, b, rotation):
    # first-order (Sampson) distance to the ellipse
    c, s = math.cos(rotation), math.sin(rotation)
    dx, dy = x - cx, y - cy
    u = dx * c + dy * s
    v = -dx * s + dy * c
    g = (u / a) ** 2 + (v / b) ** 2 - 1.0
    grad = 2.0 * np.hypot(u / a ** 2, v / b ** 2)
    return np.abs(g) / np.maximum(grad, 1e-12)


def ellipse_fit(xs, ys, iterations=100):
    """Direct least-squares ellipse fit (Fitzgibbon, Halir-Flusser partition) on normalized points."""
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if len(x) < 6:
        raise FitError(f"Ellipse fit needs at least 6 points, got {len(x)}")

    mx, my = x.mean(), y.mean()
    scale = float(np.max(np.hypot(x - mx, y - my)))
    if not np.isfinite(scale) or scale < 1e-9:
        raise FitError("Ellipse fit points are coincident")
    u = (x - mx) / scale
    v = (y - my) / scale

    D1 = np.column_stack([u * u, u * v, v * v])
    D2 = np.column_stack([u, v, np.ones_like(u)])
    S1 = D1.T @ D1
    S2 = D1.T @ D2
    S3 = D2.T @ D2
    T = -np.linalg.solve(S3, S2.T)
    M = _C_INV @ (S1 + S2 @ T)

    a1 = _constrained_eigenvector(M, iterations)
    A, B, C = a1
    D, E, F = T @ a1

    den = B * B - 4.0 * A * C
    if not np.isfinite(den) or den >= 0:
        raise FitError("Conic is not an ellipse")
    u0 = (2.0 * C * D - B * E) / den
    v0 = (2.0 * A * E - B * D) / den
    f0 = A * u0 * u0 + B * u0 * v0 + C * v0 * v0 + D * u0 + E * v0 + F

    lam, vecs = np.linalg.eigh(np.array([[A, B / 2.0], [B / 2.0, C]]))
    with np.errstate(divide='ignore', invalid='ignore'):
        axes_sq = -f0 / lam
    if not np.all(np.isfinite(axes_sq)) or np.any(axes_sq <= 0):
        raise FitError("Degenerate ellipse axes")
    axes = np.sqrt(axes_sq) * scale

    major = int(np.argmax(axes))
    semi_major, semi_minor = float(axes[major]), float(axes[1 - major])
    rotation = math.atan2(vecs[1, major], vecs[0, major])
    cx, cy = mx + u0 * scale, my + v0 * scale

    dist = _ellipse_distances(x, y, cx, cy, semi_major, semi_minor, rotation)
    rms = float(np.sqrt(np.mean(dist ** 2)))
    r_squared = math.exp(-25.0 * (rms / (0.5 * (semi_major + semi_minor))) ** 2)
    return EllipseParams(float(cx), float(cy), semi_major, semi_minor, rotation, r_squared, rms)


def ellipse_contact_angles(params, left_x, right_x, baseline_y=0.0, samples=2048):
    t = np.linspace(0.0, 2.0 * np.pi, samples, endpoint=False)
    px, py = _ellipse_points(params, t)
    angles = []
    for x_c, is_left in ((left_x, True), (right_x, False)):
        k = int(np.argmin((px - x_c) ** 2 + (py - baseline_y) ** 2))
        dx, dy = _ellipse_tangent(params, t[k])
        # aligned y grows downward, heights grow upward
        if abs(dx) < 1e-12:
            slope = math.copysign(math.inf, -dy)
        else:
            slope = -dy / dx
        angles.append(slope_to_contact_angle(slope, is_left))
    return angles[0], angles[1]


def fit_ellipse(xs, ys, contacts, baseline_y=0.0, iterations=100):
    p = ellipse_fit(xs, ys, iterations=iterations)
    left, right = ellipse_contact_angles(p, contacts.left_x, contacts.right_x, baseline_y)
    if not (np.isfinite(left) and np.isfinite(right)):
        raise FitError("Ellipse contact angles are not finite")

    t = np.linspace(0.0, 2.0 * np.pi, 361)
    px, py = _ellipse_points(p, t)
    shift = 180 - int(np.argmin(py))
    arc = np.roll(np.column_stack([px, py]), shift, axis=0)
    arc = arc[arc[:, 1] <= baseline_y]

    return FitResult(
        method=Method.ELLIPSE,
        angle_deg=0.5 * (left + right),
        angle_left_deg=left,
        angle_right_deg=right,
        r_squared=float(np.clip(p.r_squared, 0.0, 1.0)),
        raw_params={
            'center_x': p.center_x,
            'center_y': p.center_y,
            'semi_major': p.semi_major,
            'semi_minor': p.semi_minor,
            'rotation_deg': math.degrees(p.rotation),
            'axis_ratio': p.semi_major / p.semi_minor,
            'rms_distance': p.rms_distance,
        },
        curves=(arc,),
    )


# ---------------------------------------------------------------- polynomial tangent

class SideTangent(NamedTuple):
    angle: float
    slope: float
    r_squared: float
    n_points: int
    degree: int
    fit_x_of_y: bool
    curve: np.ndarray


def polynomial_angle_detailed(points, contact_x, contact_y, is_left_side,
                              degree=3, use_weighting=True, weight_scale=28.0, orientation_ratio=1.2):
    """
    Contact angle from a weighted local polynomial through one flank.

    ``points`` are (x, height) pairs with height measured upward from the
    baseline. The polynomial is fitted as x(height) when the heights spread
    wider than ``orientation_ratio`` times the x spread, else as height(x), and
    differentiated at the contact.
    """
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(pts) < 4:
        raise FitError(f"Polynomial tangent needs at least 4 points, got {len(pts)}")

    x, h = pts[:, 0], pts[:, 1]
    fit_x_of_y = bool(np.ptp(h) > orientation_ratio * np.ptp(x))
    if fit_x_of_y:
        ind, dep, ind_contact = h, x, contact_y
    else:
        ind, dep, ind_contact = x, h, contact_x

    center = float(ind.mean())
    scale = float(np.max(np.abs(ind - center)))
    if scale < 1e-12:
        raise FitError("Flank points have no spread")
    t = (ind - center) / scale
    deg = int(max(1, min(degree, 5, (len(pts) - 1) // 2)))

    if use_weighting:
        weights = np.exp(-np.hypot(x - contact_x, h - contact_y) / weight_scale)
    else:
        weights = np.ones_like(x)

    res = sm.WLS(dep, np.vander(t, deg + 1, increasing=True), weights=weights).fit()
    coef = np.asarray(res.params)
    r_squared = float(res.rsquared) if np.isfinite(res.rsquared) else 0.0

    tc = (ind_contact - center) / scale
    deriv = P.polyval(tc, P.polyder(coef)) / scale
    if fit_x_of_y:
        slope = math.inf if abs(deriv) < 1e-12 else 1.0 / deriv
    else:
        slope = float(deriv)
    if math.isnan(slope):
        raise FitError("Polynomial tangent slope is not finite")

    ind_s = np.linspace(min(ind.min(), ind_contact), max(ind.max(), ind_contact), 40)
    dep_s = P.polyval((ind_s - center) / scale, coef)
    curve = np.column_stack([dep_s, ind_s]) if fit_x_of_y else np.column_stack([ind_s, dep_s])

    return SideTangent(
        angle=slope_to_contact_angle(slope, is_left_side),
        slope=slope,
        r_squared=float(np.clip(r_squared, 0.0, 1.0)),
        n_points=len(pts),
        degree=deg,
        fit_x_of_y=fit_x_of_y,
        curve=curve,
    )


def flank_band(x, h, side, contact_x, local_radius=40.0, corner_clearance=4.0,
               flank_fraction=0.6, min_points=6):
    """
    Mask of the flank points used for the tangent fit on one side.

    Points closer to the baseline than ``corner_clearance`` sit in the
    blur-rounded corner where the drop meets the substrate, and points above
    ``flank_fraction`` of the drop height run into the apex where the flank
    turns over. Falls back to every side point near the contact, then to the
    whole side, when the band is too thin.
    """
    drop_height = float(h.max())
    low = min(corner_clearance, 0.3 * drop_height)
    high = min(local_radius, max(flank_fraction * drop_height, low + 1.0))
    near = side & (np.hypot(x - contact_x, h) <= local_radius)
    band = near & (h >= low) & (h <= high)
    if np.sum(band) >= min_points:
        return band
    if np.sum(near) >= min_points:
        return near
    return side


def fit_polynomial(xs, ys, contacts, degree=3, local_radius=40.0, min_side_points=6,
                   corner_clearance=4.0, flank_fraction=0.6):
    x = np.asarray(xs, dtype=float)
    h = -np.asarray(ys, dtype=float)
    apex_x = x[np.argmax(h)]

    sides = []
    for is_left, x_c in ((True, contacts.left_x), (False, contacts.right_x)):
        side = (x < apex_x) if is_left else (x > apex_x)
        band = flank_band(x, h, side, x_c, local_radius, corner_clearance,
                          flank_fraction, min_side_points)
        sides.append(polynomial_angle_detailed(np.column_stack([x[band], h[band]]),
                                               x_c, 0.0, is_left, degree=degree))
    left, right = sides

    support = left.n_points + right.n_points
    r_squared = (left.r_squared * left.n_points + right.r_squared * right.n_points) / support
    curves = tuple(np.column_stack([s.curve[:, 0], -s.curve[:, 1]]) for s in sides)

    return FitResult(
        method=Method.POLYNOMIAL,
        angle_deg=0.5 * (left.angle + right.angle),
        angle_left_deg=left.angle,
        angle_right_deg=right.angle,
        r_squared=float(r_squared),
        raw_params={
            'support': support,
            'left_points': left.n_points,
            'right_points': right.n_points,
            'left_slope': left.slope,
            'right_slope': right.slope,
            'left_r_squared': left.r_squared,
            'right_r_squared': right.r_squared,
            'degree': max(left.degree, right.degree),
        },
        curves=curves,
    )
