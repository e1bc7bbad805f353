import math
import time
from datetime import timedelta

import numpy as np

from Baseline import estimate_baseline, from_baseline_frame, to_baseline_frame
from ComponentSelection import isolate_droplet, select_droplet_component
from ContactLocator import locate_contact_points
from DropModels import (ErrorKind, FitResult, MeasurementError, MeasurementFailure,
                        MeasurementResult, Method, OverlayGeometry)
from Ensemble import combine_methods
from FitValidation import count_valid, validate_fits
from ShapeFits import fit_circle, fit_ellipse, fit_polynomial
from SubPixelEdge import detect_edges, normalize_intensity, suppress_border
from Uncertainty import estimate_uncertainty
from YoungLaplace import MAX_EVALUATIONS, compute_physical_metrics, fit_young_laplace

MIN_CONTOUR_POINTS = 20
MIN_ISOLATED_POINTS = 24
MIN_FIT_POINTS = 10
FIT_CLEARANCE = 2.0
TANGENT_LENGTH = 50.0


def classify_surface(angle):
    if angle < 90.0:
        return "Hydrophilic"
    if angle < 150.0:
        return "Hydrophobic"
    return "Superhydrophobic"


def run_fit_engines(xs, ys, contacts, poly_degree=3, poly_radius=40.0,
                    yl_time_budget_s=10.0, yl_max_evaluations=MAX_EVALUATIONS, verbose=False):
    """Run every fit engine independently; a numerical failure only marks that method."""
    engines = [
        (Method.CIRCLE, lambda: fit_circle(xs, ys, contacts)),
        (Method.ELLIPSE, lambda: fit_ellipse(xs, ys, contacts)),
        (Method.POLYNOMIAL, lambda: fit_polynomial(xs, ys, contacts, degree=poly_degree,
                                                   local_radius=poly_radius)),
        (Method.YOUNG_LAPLACE, lambda: fit_young_laplace(xs, ys, contacts,
                                                         max_evaluations=yl_max_evaluations,
                                                         time_budget_s=yl_time_budget_s,
                                                         verbose=verbose)),
    ]
    fits = []
    for method, engine in engines:
        try:
            fit = engine()
        except Exception as e:
            if verbose:
                print(f"Error fitting {method.value}: {e}")
            fit = FitResult.failed(method, str(e))
        fits.append(fit)
    return fits


def _drop_radius(fits, contacts):
    for fit in fits:
        if fit.method == Method.CIRCLE and fit.is_valid:
            return float(fit.raw_params['radius'])
    return contacts.span / 2.0


def _tangent_segment(contact_x, angle, is_left, length=TANGENT_LENGTH):
    theta = math.radians(angle)
    dx = math.cos(theta) if is_left else -math.cos(theta)
    return np.array([[contact_x, 0.0], [contact_x + length * dx, -length * math.sin(theta)]])


def build_overlay_geometry(contour, baseline, contacts, fits, ensemble):
    x0, x1 = float(contour[:, 0].min()), float(contour[:, 0].max())
    baseline_line = np.array([[x0, float(baseline.y_at(x0))], [x1, float(baseline.y_at(x1))]])
    contact_points = from_baseline_frame([[contacts.left_x, 0.0], [contacts.right_x, 0.0]], baseline)

    curves = {}
    for fit in fits:
        drawn = [from_baseline_frame(c, baseline) for c in fit.curves if len(c)]
        if drawn:
            curves[fit.method] = drawn

    tangents = {
        'left': from_baseline_frame(_tangent_segment(contacts.left_x, ensemble.angle_left, True), baseline),
        'right': from_baseline_frame(_tangent_segment(contacts.right_x, ensemble.angle_right, False), baseline),
    }
    return OverlayGeometry(contour, baseline_line, contact_points, curves, tangents)


def _measure(width, height, intensity, calibration, low_threshold, high_threshold, sigma,
             border_margin, poly_degree, poly_radius, n_bootstrap, yl_time_budget_s,
             yl_max_evaluations, seed, verbose):
    gray, inverted = normalize_intensity(width, height, intensity)
    if verbose and inverted:
        print("Dark background detected, intensity inverted")

    edges, subpixel = detect_edges(gray, low_threshold=low_threshold,
                                   high_threshold=high_threshold, sigma=sigma)
    edges = suppress_border(edges, gray.shape[1], gray.shape[0], margin=border_margin)
    if verbose:
        print(f"Edge points detected: {len(edges)} ({'sub-pixel' if subpixel else 'integer fallback'})")

    contour, component = select_droplet_component(edges, gray.shape[1], gray.shape[0])
    if len(contour) < MIN_CONTOUR_POINTS:
        raise MeasurementError(ErrorKind.INSUFFICIENT_CONTOUR, "component_selection",
                               f"only {len(contour)} edge points found on the drop outline; "
                               "check focus, contrast and lighting")
    if verbose:
        print(f"Selected component: {len(contour)} points out of {component['n_components']} components")

    baseline = estimate_baseline(contour, seed=seed)
    if verbose:
        kind = "flat fallback" if baseline.is_fallback else f"{baseline.inlier_count} inliers"
        print(f"Baseline tilt {baseline.angle_deg:.2f}°, rms {baseline.rms_residual:.3f} px ({kind})")

    aligned = to_baseline_frame(contour, baseline)
    arc, isolation_fallback = isolate_droplet(aligned)
    if len(arc) < MIN_ISOLATED_POINTS:
        raise MeasurementError(ErrorKind.ISOLATION_FAILURE, "droplet_isolation",
                               f"only {len(arc)} drop points above the baseline; "
                               "the drop may be too small or the baseline misplaced")

    contacts = locate_contact_points(arc, aligned)
    if verbose:
        print(f"Contact points: x={contacts.left_x:.2f}, x={contacts.right_x:.2f} ({contacts.estimator})")

    fit_pts = arc[arc[:, 1] < -FIT_CLEARANCE]
    if len(fit_pts) < MIN_FIT_POINTS:
        raise MeasurementError(ErrorKind.INSUFFICIENT_FIT_POINTS, "fitting",
                               f"only {len(fit_pts)} points above the baseline to fit")
    xs, ys = fit_pts[:, 0].copy(), fit_pts[:, 1].copy()

    fits = run_fit_engines(xs, ys, contacts, poly_degree=poly_degree, poly_radius=poly_radius,
                           yl_time_budget_s=yl_time_budget_s,
                           yl_max_evaluations=yl_max_evaluations, verbose=verbose)
    fits = validate_fits(fits, contacts)
    if verbose:
        print(f"Valid methods: {count_valid(fits)}/{len(fits)}")
        for fit in fits:
            status = "ok" if fit.is_valid else f"rejected ({fit.invalid_reason.value})"
            print(f"  {fit.method.value:<14s} {fit.angle_deg:7.2f}°  R²={fit.r_squared:.3f}  {status}")

    ensemble = combine_methods(fits)
    drop_radius = _drop_radius(fits, contacts)
    uncertainty = estimate_uncertainty(xs, ys, contacts, fits, aligned, drop_radius,
                                       baseline_rms=baseline.rms_residual,
                                       n_bootstrap=n_bootstrap, seed=seed, verbose=verbose)

    contour_summary = {
        'edge_points': len(edges),
        'component_points': len(contour),
        'isolated_points': len(arc),
        'fit_points': len(fit_pts),
        'inverted': inverted,
        'subpixel': subpixel,
        'isolation_fallback': isolation_fallback,
        'contact_estimator': contacts.estimator,
    }

    return MeasurementResult(
        angle=ensemble.angle,
        angle_left=ensemble.angle_left,
        angle_right=ensemble.angle_right,
        hysteresis=abs(ensemble.angle_left - ensemble.angle_right),
        uncertainty=uncertainty,
        per_method={fit.method: fit for fit in fits},
        ensemble=ensemble,
        baseline=baseline,
        contacts=contacts,
        contour=contour_summary,
        physical=compute_physical_metrics(drop_radius, calibration),
        overlay=build_overlay_geometry(contour, baseline, contacts, fits, ensemble),
        surface_type=classify_surface(ensemble.angle),
    )


def measure_contact_angle(
    width,
    height,
    intensity,
    calibration=None,
    *,
    low_threshold=10.0,
    high_threshold=25.0,
    sigma=1.4,
    border_margin=5.0,
    poly_degree=3,
    poly_radius=40.0,
    n_bootstrap=100,
    yl_time_budget_s=10.0,
    yl_max_evaluations=MAX_EVALUATIONS,
    seed=0,
    verbose=False,
):
    """
    Measure the sessile-drop contact angle of one 8-bit grayscale silhouette.

    ``intensity`` holds ``width * height`` values in row-major order.
    Returns a MeasurementResult, or a MeasurementFailure naming the stage that
    lacked information.
    """
    start = time.time()
    try:
        result = _measure(width, height, intensity, calibration, low_threshold, high_threshold,
                          sigma, border_margin, poly_degree, poly_radius, n_bootstrap,
                          yl_time_budget_s, yl_max_evaluations, seed, verbose)
    except MeasurementError as e:
        if verbose:
            print(f"Measurement failed at {e.stage}: {e.reason}")
        return MeasurementFailure(e.kind, e.stage, e.reason)

    if verbose:
        print(f"Contact angle: {result.angle:.2f}° ± {result.uncertainty.combined:.2f}°")
        print(f"Measurement completed {str(timedelta(seconds=round(time.time() - start)))}")
    return result


def _fmt(value, width=8):
    if value is None or not math.isfinite(value):
        return "-".rjust(width)
    return f"{value:{width}.2f}"


def format_report(result):
    if not result.ok:
        return "\n".join([
            "=" * 80,
            "MEASUREMENT FAILED",
            "=" * 80,
            f"Stage: {result.stage}",
            f"Error: {result.kind.value}",
            f"Reason: {result.reason}",
        ])

    u = result.uncertainty
    p = result.physical
    lines = [
        "=" * 80,
        "OVERALL RESULT",
        "=" * 80,
        f"Contact angle: {result.angle:.2f}° ± {u.combined:.2f}°",
        f"Left / right: {result.angle_left:.2f}° / {result.angle_right:.2f}°",
        f"Hysteresis: {result.hysteresis:.2f}°",
        f"Surface type: {result.surface_type}",
        f"Valid methods: {len(result.valid_methods)}/{len(result.per_method)}",
        f"Baseline tilt: {result.baseline.angle_deg:.2f}° (rms {result.baseline.rms_residual:.3f} px)",
        "",
        "=" * 80,
        "PER-METHOD RESULTS",
        "=" * 80,
        "Method         | Angle (°) | Left (°) | Right (°) |   R²   | Weight | Status",
        "-" * 80,
    ]
    for method, fit in result.per_method.items():
        weight = result.ensemble.method_weights.get(method, 0.0)
        status = "valid" if fit.is_valid else fit.invalid_reason.value
        lines.append(
            f"{method.value:<14s} | {_fmt(fit.angle_deg, 9)} | {_fmt(fit.angle_left_deg)} | "
            f"{_fmt(fit.angle_right_deg, 9)} | {fit.r_squared:6.3f} | {weight:6.3f} | {status}"
        )
    lines += [
        "",
        "=" * 80,
        "UNCERTAINTY",
        "=" * 80,
        f"Combined: {u.combined:.2f}°",
        f"Bootstrap: {u.bootstrap:.2f}° ({u.bootstrap_samples} samples)",
        f"Method disagreement: {u.method_disagreement:.2f}°",
        f"Edge localization: {u.edge_localization:.2f}°",
        "",
        "=" * 80,
        "PHYSICAL SCALE",
        "=" * 80,
        f"Calibrated: {'yes' if p.is_calibrated else 'no (approximate, 10 µm/px assumed)'}",
        f"Pixel size: {p.pixel_size_um:.3f} µm",
        f"Drop radius: {p.drop_radius_mm:.4f} mm",
        f"Bond number: {p.bond_number:.4f}"
        + (f" ± {p.bond_number_uncertainty:.4f}" if p.bond_number_uncertainty is not None else ""),
    ]
    return "\n".join(lines)
