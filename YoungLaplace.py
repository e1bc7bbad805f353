import math
import time
from typing import NamedTuple

import numpy as np
from tqdm.auto import tqdm

from DropModels import FitError, FitResult, Method, PhysicalMetrics

# Water against air at room temperature
SURFACE_TENSION = 0.0728      # N/m
DENSITY_DIFFERENCE = 998.0    # kg/m^3
GRAVITY = 9.81                # m/s^2
FALLBACK_METERS_PER_PIXEL = 10e-6

# 12x12 coarse grid + two 8x8 refinement passes + 40 compass rounds of 9 candidates
MAX_EVALUATIONS = 12 * 12 + 2 * 8 * 8 + 40 * 9
BOND_FLOOR = 1e-3
APEX_FLOOR = 0.45

_COMPASS = np.array([(i, j) for i in (-1, 0, 1) for j in (-1, 0, 1) if i or j], dtype=float)


def bond_number(radius_m, surface_tension=SURFACE_TENSION,
                density_difference=DENSITY_DIFFERENCE, gravity=GRAVITY):
    return density_difference * gravity * radius_m ** 2 / surface_tension


def compute_physical_metrics(radius_pixels, calibration=None,
                             surface_tension=SURFACE_TENSION,
                             density_difference=DENSITY_DIFFERENCE):
    if calibration is None:
        mpp = FALLBACK_METERS_PER_PIXEL
        source = "fallback"
    else:
        mpp = calibration.meters_per_pixel
        source = calibration.source

    radius_m = radius_pixels * mpp
    bo = bond_number(radius_m, surface_tension, density_difference)
    bo_unc = None
    if calibration is not None:
        # Bo scales with R^2, so the relative error doubles
        bo_unc = bo * 2.0 * calibration.relative_uncertainty

    return PhysicalMetrics(
        is_calibrated=calibration is not None,
        meters_per_pixel=mpp,
        pixel_size_um=mpp * 1e6,
        drop_radius_px=float(radius_pixels),
        drop_radius_mm=radius_m * 1e3,
        bond_number=bo,
        bond_number_uncertainty=bo_unc,
        scale_source=source,
    )


# ---------------------------------------------------------------- profile integration

def _derivatives(x, z, phi, apex, bond):
    with np.errstate(divide='ignore', invalid='ignore'):
        sin_over_x = np.where(np.abs(x) < 1e-10, np.cos(phi), np.sin(phi) / x)
    return np.cos(phi), np.sin(phi), 2.0 / apex - bond * z - sin_over_x


def integrate_profiles(apex_curvatures, bond_numbers, num_steps=500, max_arc_length=3.0):
    """
    RK4 integration of a batch of dimensionless Young-Laplace profiles from the apex.

    Returns an array of shape (num_steps + 1, n, 3) holding (x, z, phi) per
    step, with z measured downward from the apex. A profile stops when x
    leaves the positive axis, a value is not finite, or phi passes pi; later
    rows are NaN.
    """
    b, bo = np.broadcast_arrays(np.atleast_1d(np.asarray(apex_curvatures, dtype=float)),
                                np.atleast_1d(np.asarray(bond_numbers, dtype=float)))
    n = b.size
    ds = max_arc_length / num_steps

    out = np.full((num_steps + 1, n, 3), np.nan)
    x = np.full(n, 1e-8)
    z = np.zeros(n)
    phi = np.zeros(n)
    out[0] = np.column_stack([x, z, phi])
    alive = np.ones(n, dtype=bool)

    with np.errstate(all='ignore'):
        for step in range(1, num_steps + 1):
            k1 = _derivatives(x, z, phi, b, bo)
            k2 = _derivatives(x + 0.5 * ds * k1[0], z + 0.5 * ds * k1[1], phi + 0.5 * ds * k1[2], b, bo)
            k3 = _derivatives(x + 0.5 * ds * k2[0], z + 0.5 * ds * k2[1], phi + 0.5 * ds * k2[2], b, bo)
            k4 = _derivatives(x + ds * k3[0], z + ds * k3[1], phi + ds * k3[2], b, bo)

            x_new = x + ds / 6.0 * (k1[0] + 2 * k2[0] + 2 * k3[0] + k4[0])
            z_new = z + ds / 6.0 * (k1[1] + 2 * k2[1] + 2 * k3[1] + k4[1])
            phi_new = phi + ds / 6.0 * (k1[2] + 2 * k2[2] + 2 * k3[2] + k4[2])

            alive &= (x_new > 0) & np.isfinite(x_new) & np.isfinite(z_new) & np.isfinite(phi_new)
            if not alive.any():
                break
            x = np.where(alive, x_new, x)
            z = np.where(alive, z_new, z)
            phi = np.where(alive, phi_new, phi)
            out[step, alive] = np.column_stack([x, z, phi])[alive]

            alive &= phi <= np.pi
            if not alive.any():
                break
    return out


def integrate_profile(apex_curvature, bond_number, num_steps=500, max_arc_length=3.0):
    profile = integrate_profiles(apex_curvature, bond_number, num_steps, max_arc_length)[:, 0, :]
    return profile[np.isfinite(profile[:, 0])]


# ---------------------------------------------------------------- inverse fit

class YoungLaplaceFit(NamedTuple):
    contact_angle: float
    apex_curvature: float
    bond_number: float
    residual: float
    r_squared: float
    center_x: float
    apex_y: float
    scale: float
    target_depth: float
    max_arc_length: float
    evaluations: int
    budget_exhausted: bool


class _Candidate(NamedTuple):
    apex_curvature: float
    bond_number: float
    residual: float


class _SearchBudget:
    def __init__(self, max_evaluations, time_budget_s):
        self.remaining = math.inf if max_evaluations is None else int(max_evaluations)
        self.deadline = math.inf if time_budget_s is None else time.perf_counter() + time_budget_s
        self.evaluations = 0
        self.exhausted = False

    def consume(self):
        if self.remaining <= 0 or time.perf_counter() > self.deadline:
            self.exhausted = True
            return False
        self.remaining -= 1
        self.evaluations += 1
        return True


def _residual_stats(profile, exp_x, exp_z):
    order = np.argsort(profile[:, 1], kind='stable')
    zp = profile[order, 1]
    xp = profile[order, 0]
    inside = (exp_z >= zp[0]) & (exp_z <= zp[-1])
    if not np.any(inside):
        return math.inf, math.inf
    d = np.interp(exp_z[inside], zp, xp) - exp_x[inside]
    return float(np.sqrt(np.mean(d ** 2))), float(np.sum(d ** 2))


def _contact_angle_from_profile(profile, target_depth):
    x, z = profile[:, 0], profile[:, 1]
    if len(profile) < 3:
        return math.nan
    target = min(max(target_depth, 1e-4), float(z.max()) - 1e-4)
    crossing = np.flatnonzero((z[:-1] <= target) & (z[1:] >= target))
    idx = int(crossing[0]) if crossing.size else len(z) - 2
    i1 = max(0, idx - 1)
    i2 = min(len(z) - 1, idx + 2)
    dx = x[i2] - x[i1]
    dz = z[i2] - z[i1]
    if math.hypot(dx, dz) < 1e-12:
        return math.nan
    return float(np.clip(math.degrees(math.atan2(dz, dx)), 0.0, 180.0))


def _score_batch(b_flat, bo_flat, exp_x, exp_z, target, max_arc, num_steps, budget, best,
                 indices=None):
    profiles = integrate_profiles(b_flat, bo_flat, num_steps, max_arc)
    for k in (range(len(b_flat)) if indices is None else indices):
        if not budget.consume():
            break
        prof = profiles[:, k]
        prof = prof[np.isfinite(prof[:, 0])]
        if len(prof) < 10 or prof[:, 1].max() < 0.75 * target:
            continue
        rms, _ = _residual_stats(prof, exp_x, exp_z)
        if not np.isfinite(rms):
            continue
        if best is None or rms < best.residual:
            best = _Candidate(float(b_flat[k]), float(bo_flat[k]), rms)
    return best


def _grid_search(bond_values, apex_values, exp_x, exp_z, target, max_arc, num_steps,
                 budget, best, desc, verbose):
    if budget.exhausted:
        return best
    bo_grid, b_grid = np.meshgrid(bond_values, apex_values, indexing='ij')
    bo_flat, b_flat = bo_grid.ravel(), b_grid.ravel()
    progress = tqdm(range(len(b_flat)), desc=desc, position=1, leave=False,
                    dynamic_ncols=True, disable=not verbose)
    return _score_batch(b_flat, bo_flat, exp_x, exp_z, target, max_arc, num_steps,
                        budget, best, indices=progress)


def _compass_search(exp_x, exp_z, target, max_arc, num_steps, budget, best, verbose,
                    max_iterations=40, tolerance=1e-3):
    """
    Local descent on (apex curvature, Bond number) from the best grid candidate.

    Each round integrates the eight neighbours of the current best, plus the
    best shifted by the sum of the moves made since the last failure, as one
    batch. The step shrinks by half whenever nothing improves the residual.
    The accumulated move follows the valley where the two parameters trade
    off, down to nearly spherical profiles below the grid's Bond floor.
    """
    if best is None or budget.exhausted:
        return best
    db = 0.02
    dbo = max(0.02, 0.25 * best.bond_number)
    velocity = np.zeros(2)
    for _ in tqdm(range(max_iterations), desc="Young-Laplace polish", position=1, leave=False,
                  dynamic_ncols=True, disable=not verbose):
        if max(db, dbo) < tolerance or budget.exhausted:
            break
        offsets = np.vstack([_COMPASS * (db, dbo), velocity])
        b_flat = np.maximum(best.apex_curvature + offsets[:, 0], APEX_FLOOR)
        bo_flat = np.maximum(best.bond_number + offsets[:, 1], BOND_FLOOR)
        moved = _score_batch(b_flat, bo_flat, exp_x, exp_z, target, max_arc, num_steps,
                             budget, best)
        if moved is best:
            db *= 0.5
            dbo *= 0.5
            velocity[:] = 0.0
        else:
            velocity += (moved.apex_curvature - best.apex_curvature,
                         moved.bond_number - best.bond_number)
        best = moved
    return best


def fit_contour(
    points,
    baseline_y=0.0,
    drop_radius_pixels=None,
    coarse_steps=12,
    refine_steps=8,
    refine_passes=2,
    polish_iterations=40,
    search_steps=420,
    final_steps=550,
    max_evaluations=MAX_EVALUATIONS,
    time_budget_s=10.0,
    verbose=False,
):
    """
    Fit a sessile-drop Young-Laplace profile to aligned contour points.

    Points are in the baseline frame (drop at y < baseline_y). Apex curvature
    and Bond number are searched on a coarse grid, refined on two finer grids
    around the best candidate, then polished by a compass search that may go
    below the grid's Bond floor. When the evaluation or time budget runs out
    the best candidate so far is used.
    """
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    drop = pts[pts[:, 1] < baseline_y - 2.0]
    if len(drop) < 10:
        raise FitError(f"Young-Laplace fit needs at least 10 drop points, got {len(drop)}")

    apex_y = float(drop[:, 1].min())
    height = baseline_y - apex_y
    width = float(np.ptp(drop[:, 0]))
    if height <= 0 or width <= 0:
        raise FitError("Drop has no height or width")

    band = drop[drop[:, 1] <= apex_y + 0.18 * height]
    center_x = float(band[:, 0].mean())
    scale = drop_radius_pixels if drop_radius_pixels and drop_radius_pixels > 0 else width / 2.0
    scale = max(scale, 5.0)

    aspect = height / (width / 2.0)
    if aspect > 1.5:
        bo_est = 0.1
    elif aspect > 1.0:
        bo_est = 0.5
    elif aspect > 0.5:
        bo_est = 1.0
    else:
        bo_est = 2.0

    target = float(np.clip(height / scale, 0.05, 4.0))
    max_arc = float(np.clip(2.4 * target + 0.8, 2.6, 8.0))
    exp_x = np.abs(drop[:, 0] - center_x) / scale
    exp_z = (drop[:, 1] - apex_y) / scale

    budget = _SearchBudget(max_evaluations, time_budget_s)
    search = dict(exp_x=exp_x, exp_z=exp_z, target=target, max_arc=max_arc,
                  num_steps=search_steps, budget=budget, verbose=verbose)

    bo_min = max(0.01, 0.25 * bo_est)
    bo_max = max(bo_min + 0.05, 3.0 * bo_est)
    best = _grid_search(np.linspace(bo_min, bo_max, coarse_steps),
                        np.linspace(0.65, 1.75, coarse_steps),
                        best=None, desc="Young-Laplace coarse", **search)

    for bo_half, b_half in ((0.45, 0.20), (0.20, 0.08))[:refine_passes]:
        if best is None:
            break
        bo_span = bo_half * max(0.05, best.bond_number)
        bond_values = np.linspace(max(0.005, best.bond_number - bo_span),
                                  best.bond_number + bo_span, refine_steps)
        apex_values = np.linspace(max(APEX_FLOOR, best.apex_curvature - b_half),
                                  best.apex_curvature + b_half, refine_steps)
        best = _grid_search(bond_values, apex_values, best=best,
                            desc="Young-Laplace refine", **search)

    best = _compass_search(exp_x, exp_z, target, max_arc, search_steps, budget, best,
                           verbose, max_iterations=polish_iterations)

    if best is None:
        raise FitError("No Young-Laplace profile reached the drop height")

    profile = integrate_profile(best.apex_curvature, best.bond_number, final_steps, max_arc)
    rms, ss_res = _residual_stats(profile, exp_x, exp_z)
    ss_tot = float(np.sum((exp_x - exp_x.mean()) ** 2))
    r_squared = float(np.clip(1.0 - ss_res / ss_tot, 0.0, 1.0)) if ss_tot > 1e-12 else 0.0

    return YoungLaplaceFit(
        contact_angle=_contact_angle_from_profile(profile, target),
        apex_curvature=best.apex_curvature,
        bond_number=best.bond_number,
        residual=rms,
        r_squared=r_squared,
        center_x=center_x,
        apex_y=apex_y,
        scale=scale,
        target_depth=target,
        max_arc_length=max_arc,
        evaluations=budget.evaluations,
        budget_exhausted=budget.exhausted,
    )


def fit_young_laplace(xs, ys, contacts=None, baseline_y=0.0, max_evaluations=MAX_EVALUATIONS,
                      time_budget_s=10.0, verbose=False):
    fit = fit_contour(np.column_stack([xs, ys]), baseline_y=baseline_y,
                      max_evaluations=max_evaluations, time_budget_s=time_budget_s,
                      verbose=verbose)
    if not np.isfinite(fit.contact_angle):
        raise FitError("Young-Laplace profile gave no contact angle")

    profile = integrate_profile(fit.apex_curvature, fit.bond_number, 550, fit.max_arc_length)
    profile = profile[profile[:, 1] <= fit.target_depth]
    ys_curve = fit.apex_y + profile[:, 1] * fit.scale
    right = np.column_stack([fit.center_x + profile[:, 0] * fit.scale, ys_curve])
    left = np.column_stack([fit.center_x - profile[:, 0] * fit.scale, ys_curve])

    return FitResult(
        method=Method.YOUNG_LAPLACE,
        angle_deg=fit.contact_angle,
        r_squared=fit.r_squared,
        raw_params={
            'apex_curvature': fit.apex_curvature,
            'bond_number': fit.bond_number,
            'residual': fit.residual,
            'scale_px': fit.scale,
            'center_x': fit.center_x,
            'apex_y': fit.apex_y,
            'evaluations': fit.evaluations,
            'budget_exhausted': fit.budget_exhausted,
        },
        curves=(np.vstack([left[::-1], right]),),
    )
