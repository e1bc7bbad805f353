import math

import numpy as np
import pytest
from skimage.draw import disk


def make_drop_image(theta_deg=100.0, radius=70.0, width=320, height=240, baseline_row=170,
                    center_x=160.0, background=210, foreground=30, noise=2.0, frame_rows=0, seed=0):
    """
    Backlit sessile drop: a dark circular cap resting on a dark substrate.

    The substrate fills every row from ``baseline_row`` down, so the surface
    edge lies at ``baseline_row - 0.5``. ``frame_rows`` darkens a band along the
    top of the image to mimic a visible frame border.
    """
    img = np.full((height, width), float(background))
    edge_y = baseline_row - 0.5
    center_y = edge_y + radius * math.cos(math.radians(theta_deg))
    rr, cc = disk((center_y, center_x), radius, shape=img.shape)
    img[rr, cc] = foreground
    img[baseline_row:, :] = foreground
    if frame_rows:
        img[:frame_rows, :] = foreground
    if noise:
        img += np.random.default_rng(seed).normal(0.0, noise, img.shape)
    return np.clip(np.rint(img), 0, 255).astype(np.uint8)


def cap_points(theta_deg, radius, n=720, clearance=0.8):
    """Circle cap in the aligned frame (baseline y = 0, drop at y < 0)."""
    cy = radius * math.cos(math.radians(theta_deg))
    t = np.linspace(0.0, 2.0 * np.pi, n, endpoint=False)
    pts = np.column_stack([radius * np.cos(t), cy + radius * np.sin(t)])
    return pts[pts[:, 1] < -clearance]


@pytest.fixture
def drop_image():
    return make_drop_image()


@pytest.fixture
def obtuse_cap():
    return cap_points(100.0, 50.0)


@pytest.fixture
def acute_cap():
    return cap_points(70.0, 50.0)
