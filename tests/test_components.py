import numpy as np

from ComponentSelection import (cluster_points, component_score, flank_support,
                                isolate_droplet, select_droplet_component)
from conftest import cap_points


def _drop_with_substrate(cx=160.0, base_y=150.0, radius=60.0):
    t = np.linspace(np.pi, 2.0 * np.pi, 190)
    arc = np.column_stack([cx + radius * np.cos(t), base_y + radius * np.sin(t)])
    xs = np.concatenate([np.arange(10.0, cx - radius, 1.0), np.arange(cx + radius + 1, 310.0, 1.0)])
    line = np.column_stack([xs, np.full_like(xs, base_y)])
    return np.vstack([arc, line])


def test_cluster_points_separates_groups():
    a = np.column_stack([np.arange(0.0, 30.0, 1.0), np.zeros(30)])
    b = np.column_stack([np.arange(0.0, 10.0, 1.0), np.full(10, 50.0)])
    groups = cluster_points(np.vstack([b, a]), radius=3.0)
    assert [len(g) for g in groups] == [30, 10]


def test_cluster_points_empty():
    assert cluster_points(np.empty((0, 2)), 3.0) == []


def test_short_component_is_penalized():
    line = np.column_stack([np.arange(50.0, 250.0, 0.5), np.full(400, 100.0)])
    score, info = component_score(line, 320, 240)
    assert info['height'] == 0
    assert score < 0


def test_select_prefers_drop_over_frame_line():
    drop = _drop_with_substrate()
    frame = np.column_stack([np.arange(6.0, 314.0, 0.5), np.full(616, 8.0)])
    selected, info = select_droplet_component(np.vstack([frame, drop]), 320, 240)
    assert len(selected) == len(drop)
    assert selected[:, 1].min() > 50
    assert info['n_components'] == 2
    assert not info['fallback']


def test_flank_support_counts_both_sides(obtuse_cap):
    left, right = flank_support(obtuse_cap)
    assert left > 5
    assert right > 5


def test_isolate_droplet_drops_stray_blob(obtuse_cap):
    line = np.column_stack([np.arange(-150.0, 150.0, 1.0), np.zeros(300)])
    blob = np.column_stack([np.linspace(-140, -135, 20), np.full(20, -3.0)])
    arc, fallback = isolate_droplet(np.vstack([obtuse_cap, line, blob]))
    assert not fallback
    assert len(arc) == len(obtuse_cap)
    assert arc[:, 0].min() > -60


def test_isolate_droplet_small_set_is_flagged_as_fallback():
    pts = np.column_stack([np.arange(10.0), np.full(10, -5.0)])
    arc, fallback = isolate_droplet(pts)
    assert len(arc) == 10
    assert fallback


def test_isolate_droplet_one_sided_arc_falls_back():
    quarter = cap_points(90.0, 50.0)
    quarter = quarter[quarter[:, 0] <= 0]
    arc, fallback = isolate_droplet(quarter)
    assert fallback
    assert len(arc) == len(quarter)
