"""
Result types shared by the sessile-drop measurement stages.

All coordinates are pixels. "Aligned" coordinates are expressed in the baseline
frame: the substrate line is y = 0 and the drop sits at y < 0.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


class Method(str, Enum):
    CIRCLE = "circle"
    ELLIPSE = "ellipse"
    POLYNOMIAL = "polynomial"
    YOUNG_LAPLACE = "young_laplace"


class InvalidReason(str, Enum):
    FIT_FAILED = "fit_failed"
    ANGLE_OUT_OF_RANGE = "angle_out_of_range"
    DEGENERATE_RADIUS = "degenerate_radius"
    CIRCLE_BELOW_BASELINE = "circle_below_baseline"
    CONTACT_MISMATCH = "contact_mismatch"
    DEGENERATE_AXES = "degenerate_axes"
    EXCESSIVE_ASPECT_RATIO = "excessive_aspect_ratio"
    INSUFFICIENT_SUPPORT = "insufficient_support"
    SIDE_DISAGREEMENT = "side_disagreement"
    INVALID_BOND_NUMBER = "invalid_bond_number"
    HIGH_RESIDUAL = "high_residual"
    LOW_R_SQUARED = "low_r_squared"


class ErrorKind(str, Enum):
    DECODE_FAILURE = "decode_failure"
    INSUFFICIENT_CONTOUR = "insufficient_contour"
    ISOLATION_FAILURE = "isolation_failure"
    CONTACT_POINT_FAILURE = "contact_point_failure"
    INSUFFICIENT_FIT_POINTS = "insufficient_fit_points"


class FitError(ValueError):
    """Numerical failure inside a single fit engine."""


class MeasurementError(Exception):
    """Terminal abort of the measurement pipeline at a given stage."""

    def __init__(self, kind: ErrorKind, stage: str, reason: str):
        super().__init__(reason)
        self.kind = kind
        self.stage = stage
        self.reason = reason


@dataclass(frozen=True)
class BaselineModel:
    """
    Substrate line ``y = slope * x + intercept`` in image coordinates.

    Attributes
    ----------
    slope, intercept : float
        Line parameters.
    angle_deg : float
        Tilt of the line, ``degrees(atan(slope))``. Never exceeds 20 degrees in
        magnitude.
    rms_residual : float
        RMS vertical residual of the inliers used for the final fit.
    inlier_count : int
        Number of band points supporting the line.
    is_fallback : bool
        True when RANSAC failed and a flat line at the lowest contour point
        was used instead.
    """
    slope: float
    intercept: float
    angle_deg: float
    rms_residual: float
    inlier_count: int = 0
    is_fallback: bool = False

    def y_at(self, x):
        return self.slope * np.asarray(x, dtype=float) + self.intercept


@dataclass(frozen=True)
class ContactPoints:
    left_x: float
    right_x: float
    estimator: str = "primary"
    left_support: int = 0
    right_support: int = 0

    @property
    def span(self) -> float:
        return self.right_x - self.left_x


@dataclass(frozen=True)
class FitResult:
    """
    Output of one fit engine, possibly rejected by the validity gate.

    ``curves`` holds the fitted geometry sampled as aligned-frame polylines for
    overlay drawing. ``raw_params`` holds the engine's diagnostic parameters.
    """
    method: Method
    angle_deg: float
    angle_left_deg: Optional[float] = None
    angle_right_deg: Optional[float] = None
    r_squared: float = 0.0
    raw_params: Dict[str, float] = field(default_factory=dict)
    curves: Tuple[np.ndarray, ...] = field(default=(), repr=False, compare=False)
    is_valid: bool = True
    invalid_reason: Optional[InvalidReason] = None

    @classmethod
    def failed(cls, method: Method, message: str) -> "FitResult":
        return cls(
            method=method,
            angle_deg=math.nan,
            r_squared=0.0,
            raw_params={"error": message},
            is_valid=False,
            invalid_reason=InvalidReason.FIT_FAILED,
        )

    def to_dict(self):
        return {
            "angle": self.angle_deg,
            "angle_left": self.angle_left_deg,
            "angle_right": self.angle_right_deg,
            "r_squared": self.r_squared,
            "is_valid": self.is_valid,
            "invalid_reason": self.invalid_reason.value if self.invalid_reason else None,
            "params": dict(self.raw_params),
        }


@dataclass(frozen=True)
class EnsembleResult:
    angle: float
    angle_left: float
    angle_right: float
    method_weights: Dict[Method, float]
    strategy: str = "weighted"


@dataclass(frozen=True)
class UncertaintyResult:
    combined: float
    bootstrap: float
    method_disagreement: float
    edge_localization: float
    bootstrap_samples: int = 0

    def to_dict(self):
        return {
            "combined": self.combined,
            "bootstrap": self.bootstrap,
            "method_disagreement": self.method_disagreement,
            "edge": self.edge_localization,
        }


@dataclass(frozen=True)
class ScaleCalibration:
    meters_per_pixel: float
    relative_uncertainty: float = 0.0
    source: str = "manual"

    def __post_init__(self):
        if not math.isfinite(self.meters_per_pixel) or self.meters_per_pixel <= 0:
            raise ValueError(f"meters_per_pixel must be positive, got {self.meters_per_pixel}")
        if not math.isfinite(self.relative_uncertainty) or self.relative_uncertainty < 0:
            raise ValueError(
                f"relative_uncertainty must be non-negative, got {self.relative_uncertainty}")


@dataclass(frozen=True)
class PhysicalMetrics:
    is_calibrated: bool
    meters_per_pixel: float
    pixel_size_um: float
    drop_radius_px: float
    drop_radius_mm: float
    bond_number: float
    bond_number_uncertainty: Optional[float] = None
    scale_source: str = "fallback"

    def to_dict(self):
        return {
            "is_calibrated": self.is_calibrated,
            "pixel_size_um": self.pixel_size_um,
            "drop_radius_mm": self.drop_radius_mm,
            "bond_number": self.bond_number,
            "bond_number_uncertainty": self.bond_number_uncertainty,
            "scale_source": self.scale_source,
        }


@dataclass(frozen=True)
class OverlayGeometry:
    """Drawable geometry in image coordinates. Nothing here is rendered."""
    contour_points: np.ndarray
    baseline_line: np.ndarray
    contact_points: np.ndarray
    fitted_curves_by_method: Dict[Method, List[np.ndarray]]
    tangent_segments: Dict[str, np.ndarray]

    def to_dict(self):
        return {
            "contour_points": self.contour_points.tolist(),
            "baseline_line": self.baseline_line.tolist(),
            "contact_points": self.contact_points.tolist(),
            "fitted_curves_by_method": {
                m.value: [c.tolist() for c in curves]
                for m, curves in self.fitted_curves_by_method.items()
            },
            "tangent_segments": {k: v.tolist() for k, v in self.tangent_segments.items()},
        }


@dataclass(frozen=True)
class MeasurementResult:
    angle: float
    angle_left: float
    angle_right: float
    hysteresis: float
    uncertainty: UncertaintyResult
    per_method: Dict[Method, FitResult]
    ensemble: EnsembleResult
    baseline: BaselineModel
    contacts: ContactPoints
    contour: Dict[str, object]
    physical: PhysicalMetrics
    overlay: OverlayGeometry
    surface_type: str
    ok: bool = True

    @property
    def valid_methods(self) -> List[Method]:
        return [m for m, fit in self.per_method.items() if fit.is_valid]

    def to_dict(self):
        return {
            "ok": True,
            "angle": self.angle,
            "angle_left": self.angle_left,
            "angle_right": self.angle_right,
            "hysteresis": self.hysteresis,
            "surface_type": self.surface_type,
            "uncertainty": self.uncertainty.to_dict(),
            "per_method": {m.value: fit.to_dict() for m, fit in self.per_method.items()},
            "method_weights": {m.value: w for m, w in self.ensemble.method_weights.items()},
            "baseline": {"tilt": self.baseline.angle_deg, "rms": self.baseline.rms_residual},
            "contacts": {"left_x": self.contacts.left_x, "right_x": self.contacts.right_x},
            "contour": dict(self.contour),
            "physical": self.physical.to_dict(),
            "overlay": self.overlay.to_dict(),
        }


@dataclass(frozen=True)
class MeasurementFailure:
    kind: ErrorKind
    stage: str
    reason: str
    ok: bool = False

    def to_dict(self):
        return {"ok": False, "error": self.kind.value, "stage": self.stage, "reason": self.reason}
