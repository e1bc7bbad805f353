import math
import numpy as np
from scipy import ndimage

from DropModels import ErrorKind, MeasurementError

# Neighbour offsets for the four quantized gradient axes: 0, 45, 90 and 135 degrees.
_AXIS_DX = np.array([1, 1, 0, -1])
_AXIS_DY = np.array([0, 1, 1, 1])


def normalize_intensity(width, height, intensity, threshold=127.0):
    """Reshape the 8-bit buffer to a (height, width) grid with a dark silhouette on a bright background."""
    try:
        width = int(width)
        height = int(height)
        grid = np.asarray(intensity, dtype=float)
    except (TypeError, ValueError) as e:
        raise MeasurementError(ErrorKind.DECODE_FAILURE, "decode",
                               f"intensity buffer could not be read: {e}")

    if width <= 0 or height <= 0:
        raise MeasurementError(ErrorKind.DECODE_FAILURE, "decode",
                               f"invalid image size {width}x{height}")
    if grid.size != width * height:
        raise MeasurementError(ErrorKind.DECODE_FAILURE, "decode",
                               f"expected {width * height} intensity values, got {grid.size}")
    if not np.all(np.isfinite(grid)) or grid.min() < 0 or grid.max() > 255:
        raise MeasurementError(ErrorKind.DECODE_FAILURE, "decode",
                               "intensity values must be finite and within 0-255")

    grid = grid.reshape(height, width)
    inverted = bool(grid.mean() < threshold)
    if inverted:
        grid = 255.0 - grid
    return grid, inverted


def _kernel_radius(sigma):
    size = int(math.ceil(3.0 * sigma))
    if size % 2 == 0:
        size += 1
    size = min(max(size, 3), 7)
    return size // 2


def gaussian_blur(gray, sigma=1.4):
    gray = np.asarray(gray, dtype=float)
    if sigma <= 0:
        return gray.copy()
    radius = _kernel_radius(sigma)
    # mode='nearest' clamps at the border instead of padding with zeros
    return ndimage.gaussian_filter(gray, sigma, mode='nearest', truncate=radius / sigma)


def sobel_gradients(blurred):
    gx = ndimage.sobel(blurred, axis=1, mode='nearest') / 8.0
    gy = ndimage.sobel(blurred, axis=0, mode='nearest') / 8.0
    return gx, gy, np.hypot(gx, gy)


def _subpixel_maxima(gx, gy, mag, low_threshold, high_threshold):
    h, w = mag.shape
    if h < 5 or w < 5:
        return np.empty((0, 2))

    interior = np.zeros(mag.shape, dtype=bool)
    interior[2:h - 2, 2:w - 2] = True
    ys, xs = np.nonzero(interior & (mag > low_threshold))
    if ys.size == 0:
        return np.empty((0, 2))

    theta = np.mod(np.arctan2(gy[ys, xs], gx[ys, xs]), np.pi)
    axis = np.floor((theta + np.pi / 8) / (np.pi / 4)).astype(int) % 4
    dx = _AXIS_DX[axis]
    dy = _AXIS_DY[axis]

    m = mag[ys, xs]
    m_fwd = mag[ys + dy, xs + dx]
    m_back = mag[ys - dy, xs - dx]
    is_max = (m >= m_fwd) & (m >= m_back)

    # hysteresis: the pixel itself or one of its 8 neighbours must be strong
    strong = ndimage.maximum_filter(mag, size=3, mode='nearest')[ys, xs] > high_threshold
    keep = is_max & strong

    # vertex of the parabola through (-1, m_back), (0, m), (+1, m_fwd)
    denom = 2.0 * (m_fwd + m_back - 2.0 * m)
    with np.errstate(divide='ignore', invalid='ignore'):
        offset = np.where(np.abs(denom) > 1e-12, (m_back - m_fwd) / denom, 0.0)
    offset = np.clip(offset, -0.5, 0.5)

    points = np.column_stack([xs + offset * dx, ys + offset * dy])
    return points[keep]


def sobel_threshold_edges(mag, threshold=8.75):
    h, w = mag.shape
    mask = np.zeros(mag.shape, dtype=bool)
    mask[1:h - 1, 1:w - 1] = mag[1:h - 1, 1:w - 1] > threshold
    ys, xs = np.nonzero(mask)
    return np.column_stack([xs, ys]).astype(float)


def detect_edges(gray, low_threshold=10.0, high_threshold=25.0, sigma=1.4,
                 min_edge_points=40, fallback_threshold=8.75):
    """
    Sub-pixel edge points of the intensity grid as an (N, 2) array of (x, y).

    Thresholds apply to the Sobel response divided by 8, which is close to the
    intensity change per pixel. Returns the points and whether sub-pixel
    refinement was used; with fewer than ``min_edge_points`` maxima the integer
    Sobel-threshold edges are returned instead.
    """
    blurred = gaussian_blur(gray, sigma)
    gx, gy, mag = sobel_gradients(blurred)
    points = _subpixel_maxima(gx, gy, mag, low_threshold, high_threshold)
    if len(points) >= min_edge_points:
        return points, True
    return sobel_threshold_edges(mag, fallback_threshold), False


def suppress_border(points, width, height, margin=5.0):
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    x, y = points[:, 0], points[:, 1]
    keep = (x >= margin) & (x <= width - 1 - margin) & (y >= margin) & (y <= height - 1 - margin)
    return points[keep]
