"""
tests/test_spline_optimization.py - uniform B-spline and receding-horizon optimizer
"""

import logging

import numpy as np
import pytest

from drone.nav.seedPlanning import plan_seed_trajectory
from drone.nav.splineOptimization import (
    SplineOptimizer,
    SplineOptimizerParams,
    UniformBSpline,
    uniform_basis_matrix,
)


@pytest.fixture
def seed(limits):
    return plan_seed_trajectory([(0.0, 0.0, 0.0), (5.0, 0.0, 0.0)], limits)


@pytest.fixture
def obstacle_volume(volume, sphere_cloud):
    volume.insert(sphere_cloud((2.5, 0.0, 0.0), 0.3, n=3000), np.zeros(3))
    return volume


class TestUniformBSpline:

    def test_cubic_basis_matrix(self):
        M = uniform_basis_matrix(4)
        expected = np.array([
            [1.0, 4.0, 1.0, 0.0],
            [-3.0, 0.0, 3.0, 0.0],
            [3.0, -6.0, 3.0, 0.0],
            [-1.0, 3.0, -3.0, 1.0],
        ]) / 6.0
        np.testing.assert_allclose(M, expected, atol=1e-12)

    @pytest.mark.parametrize("k", [3, 4, 5, 6, 7])
    def test_partition_of_unity(self, k):
        M = uniform_basis_matrix(k)
        sums = M.sum(axis=1)
        np.testing.assert_allclose(sums[0], 1.0, atol=1e-12)
        np.testing.assert_allclose(sums[1:], 0.0, atol=1e-9)

    def test_linear_control_points_give_constant_velocity(self):
        ctrl = np.zeros((12, 3))
        ctrl[:, 0] = 0.2 * np.arange(12)
        spl = UniformBSpline(ctrl, dt=0.5, order=6)
        for t in np.linspace(0.0, spl.duration, 9):
            np.testing.assert_allclose(spl.evaluate(t, 1), [0.4, 0.0, 0.0], atol=1e-9)
            np.testing.assert_allclose(spl.evaluate(t, 2), 0.0, atol=1e-9)
        Q = spl.jerk_cost_matrix()
        np.testing.assert_allclose(Q @ ctrl[:6], 0.0, atol=1e-8)

    def test_jerk_matrix_is_psd(self):
        spl = UniformBSpline(np.zeros((6, 3)), dt=0.5, order=6)
        Q = spl.jerk_cost_matrix()
        np.testing.assert_allclose(Q, Q.T, atol=1e-9)
        assert np.min(np.linalg.eigvalsh(Q)) > -1e-6

    def test_rejects_bad_construction(self):
        with pytest.raises(ValueError):
            UniformBSpline(np.zeros((3, 3)), dt=0.5, order=6)
        with pytest.raises(ValueError):
            UniformBSpline(np.zeros((8, 3)), dt=0.0, order=6)


class TestSeeded:

    def test_rest_at_both_ends(self, seed, limits):
        opt = SplineOptimizer(seed, limits)
        spl = opt.spline
        np.testing.assert_allclose(spl.evaluate(0.0), [0.0, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(spl.evaluate(0.0, 1), 0.0, atol=1e-9)
        np.testing.assert_allclose(spl.evaluate(opt.duration), [5.0, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(spl.evaluate(opt.duration, 1), 0.0, atol=1e-9)

    def test_initial_window(self, seed, limits):
        opt = SplineOptimizer(seed, limits)
        assert opt.frozen_count == 5
        assert opt.window == (5, 12)
        assert opt.duration >= seed.duration

    def test_sample_positions_end_at_goal(self, seed, limits):
        opt = SplineOptimizer(seed, limits)
        pts = opt.sample_positions(0.25)
        np.testing.assert_allclose(pts[0], [0.0, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(pts[-1], [5.0, 0.0, 0.0], atol=1e-9)

    def test_setpoint_heading_follows_motion(self, limits):
        seed_y = plan_seed_trajectory([(0.0, 0.0, 1.0), (0.0, 3.0, 1.0)], limits)
        opt = SplineOptimizer(seed_y, limits)
        sp = opt.setpoint(opt.duration / 2, stamp=12.0)
        assert sp.stamp == 12.0
        assert sp.velocity[1] > 0.0
        assert sp.yaw == pytest.approx(np.pi / 2, abs=1e-3)

    def test_bad_params(self, seed, limits):
        with pytest.raises(ValueError):
            SplineOptimizer(seed, limits, SplineOptimizerParams(num_opt_points=0))


class TestAdvance:

    def test_freezes_consumed_points(self, seed, limits):
        opt = SplineOptimizer(seed, limits)
        opt.advance(0.0)
        assert opt.frozen_count == 6            # segment 0 needs control points 0..5
        opt.advance(2.1)
        assert opt.frozen_count == 4 + 6
        assert opt.window[0] == opt.frozen_count

    def test_clock_never_goes_back(self, seed, limits):
        opt = SplineOptimizer(seed, limits)
        opt.advance(5.0)
        frozen = opt.frozen_count
        opt.advance(1.0)
        assert opt.time == 5.0
        assert opt.frozen_count == frozen

    def test_idle_after_the_end(self, seed, limits, volume):
        opt = SplineOptimizer(seed, limits)
        opt.advance(opt.duration + 1.0)
        assert opt.finished()
        lo, hi = opt.window
        assert lo == hi
        res = opt.optimize(volume.snapshot())
        assert res.status == "idle"


class TestOptimize:

    def test_empty_field_keeps_straight_line(self, seed, limits, volume):
        opt = SplineOptimizer(seed, limits)
        res = opt.optimize(volume.snapshot())
        assert res.status in ("converged", "stalled")
        assert res.cost_after <= res.cost_before
        np.testing.assert_allclose(opt.control_points[:, 1:], 0.0, atol=1e-9)

    def test_frozen_prefix_never_revisited(self, seed, limits, obstacle_volume):
        opt = SplineOptimizer(seed, limits)
        last_frozen = opt.frozen_count
        for t in np.arange(0.0, opt.duration, 0.5):
            opt.advance(t)
            assert opt.frozen_count >= last_frozen
            last_frozen = opt.frozen_count

            before = opt.control_points
            res = opt.optimize(obstacle_volume.snapshot())
            after = opt.control_points

            np.testing.assert_array_equal(after[:opt.frozen_count], before[:opt.frozen_count])
            np.testing.assert_array_equal(after[-5:], before[-5:])       # goal anchor
            assert res.cost_after <= res.cost_before
            assert np.all(np.isfinite(after))

    def test_stalled_is_reported_not_raised(self, seed, limits, volume, sphere_cloud, caplog):
        volume.insert(sphere_cloud((2.5, 0.2, 0.0), 0.3, n=3000), np.zeros(3))
        opt = SplineOptimizer(seed, limits, SplineOptimizerParams(max_iterations=1))

        # put the window over the obstacle
        t = 0.0
        while opt.spline.evaluate(opt.window[0] * opt.p.dt)[0] < 1.8:
            t += 0.5
            opt.advance(t)

        with caplog.at_level(logging.WARNING, logger="spline_optimization"):
            res = opt.optimize(volume.snapshot())
        assert res.status == "stalled"
        assert res.iterations <= 1
        assert "stalled" in caplog.text
        assert res.cost_after <= res.cost_before


def _mirrored_sphere(sphere_cloud, center, radius, n=1500):
    """Sphere surface mirrored in y and z, so the field is exactly symmetric about the x axis."""
    c = np.asarray(center, dtype=np.float64)
    rel = sphere_cloud((0.0, 0.0, 0.0), radius, n=n)
    parts = [rel * np.array([1.0, sy, sz]) for sy in (1.0, -1.0) for sz in (1.0, -1.0)]
    return np.concatenate(parts, axis=0) + c[None, :]


def _window_over(opt, x):
    t = 0.0
    while opt.spline.evaluate(opt.window[0] * opt.p.dt)[0] < x:
        t += 0.5
        opt.advance(t)


class TestSidestep:

    def test_no_sidestep_when_clear(self, seed, limits, volume):
        opt = SplineOptimizer(seed, limits)
        w0, w1 = opt.window
        assert opt._detour_start(volume.snapshot(), w0, w1, opt._affected_segments(w0, w1)) is None

    def test_obstacle_dead_ahead_goes_left(self, seed, limits, volume, sphere_cloud):
        volume.insert(_mirrored_sphere(sphere_cloud, (2.5, 0.0, 0.0), 0.3), np.zeros(3))
        snap = volume.snapshot()
        opt = SplineOptimizer(seed, limits)
        _window_over(opt, 1.8)

        w0, w1 = opt.window
        start = opt._detour_start(snap, w0, w1, opt._affected_segments(w0, w1))
        assert start is not None
        shift = start.reshape(-1, 3) - opt.control_points[w0:w1]

        np.testing.assert_allclose(shift[:, 0], 0.0, atol=1e-12)
        np.testing.assert_allclose(shift[:, 2], 0.0, atol=1e-12)
        assert np.all(shift[:, 1] >= 0.0)
        assert shift[-1, 1] > 0.3
        d, _ = snap.query_distance_gradient(start.reshape(-1, 3)[-1:])
        assert d[0] >= opt.p.distance_threshold

    @pytest.mark.parametrize("offset_y", [0.0, 0.1, 0.17])
    def test_receding_horizon_clears_sphere(self, seed, limits, volume, sphere_cloud, offset_y):
        center, radius = np.array([2.5, offset_y, 0.0]), 0.3
        volume.insert(sphere_cloud(center, radius, n=3000), np.zeros(3))
        snap = volume.snapshot()

        opt = SplineOptimizer(seed, limits)
        for t in np.arange(0.0, opt.duration + 0.5, 0.5):
            opt.advance(t)
            res = opt.optimize(snap)
            assert res.cost_after <= res.cost_before

        path = opt.sample_positions(0.05)
        assert np.min(np.linalg.norm(path - center, axis=1)) > radius
        assert np.all(volume.query_distance(path) > 0.0)
        np.testing.assert_allclose(path[-1], [5.0, 0.0, 0.0], atol=1e-9)
