"""
tests/test_pipeline.py - context, worker steps and the end-to-end avoidance loop
"""

import numpy as np
import pytest

from drone.nav.mapping.depth_projection import DepthFrame
from drone.nav.mapping.distance_volume import OCCUPIED, VolumeIngestThread
from drone.nav.splineOptimization import OptimizationResult, Setpoint, SplineOptimizer, SplinePlannerThread
from drone.utils.utils import yaw_to_quat
from sim_depth_source import SimDepthCamera, SimDepthSource, parse_spheres

OBSTACLE = ((2.5, 0.0, 0.0), 0.3)


def _pose_at(xyz, yaw=0.0):
    return np.concatenate([yaw_to_quat(yaw), np.asarray(xyz, dtype=np.float64)])


class TestContext:

    def test_depth_slot_overwrites(self, ctx):
        a = DepthFrame(depth=np.zeros((2, 2)), stamp=0.0)
        b = DepthFrame(depth=np.zeros((2, 2)), stamp=1.0)
        ctx.submit_depth(a)
        ctx.submit_depth(b)
        assert ctx.frames_overwritten == 1
        assert ctx.take_depth() is b
        assert ctx.take_depth() is None

    def test_goal_sequence(self, ctx):
        assert ctx.latest_goal() is None
        s1 = ctx.set_goal((1.0, 2.0, 3.0))
        s2 = ctx.set_goal((4.0, 5.0, 6.0))
        assert s2 == s1 + 1
        seq, goal = ctx.latest_goal()
        assert seq == s2
        np.testing.assert_allclose(goal, [4.0, 5.0, 6.0])

    def test_goal_must_be_finite(self, ctx):
        with pytest.raises(ValueError):
            ctx.set_goal((np.nan, 0.0, 0.0))

    def test_vehicle_position(self, ctx):
        assert ctx.vehicle_position() is None
        ctx.set_pose(0.0, _pose_at((1.0, 2.0, 3.0)))
        np.testing.assert_allclose(ctx.vehicle_position(), [1.0, 2.0, 3.0])


class TestSimCamera:

    def test_renders_sphere_depth_on_axis(self):
        cam = SimDepthCamera([((0.0, 0.0, 3.0), 0.5)])
        depth = cam.render(np.eye(4))                  # optical frame == world
        v, u = int(round(cam.intr.cy)), int(round(cam.intr.cx))
        assert depth[v, u] / cam.intr.depth_scale == pytest.approx(2.5, abs=0.01)
        assert depth[0, 0] == 0

    def test_parse_spheres(self):
        assert parse_spheres([[1.0, 2.0, 3.0, 0.4]]) == [((1.0, 2.0, 3.0), 0.4)]
        assert parse_spheres(None) == []
        with pytest.raises(ValueError):
            parse_spheres([[1.0, 2.0, 3.0]])


class TestVolumeIngest:

    def test_frame_with_pose_is_inserted(self, ctx, projector):
        source = SimDepthSource(ctx, [OBSTACLE])
        ingest = VolumeIngestThread(ctx, projector, hz=0)
        source.step(now=0.0)
        assert ingest.step()
        assert ingest.frames_inserted == 1

        occ = ctx.volume.occupied_points()
        assert occ.shape[0] > 0
        radial = np.linalg.norm(occ - np.array(OBSTACLE[0]), axis=1)
        assert np.all(np.abs(radial - OBSTACLE[1]) < 0.1)

    def test_rerun_logs_depth_and_voxels(self, ctx, projector, monkeypatch):
        import drone.nav.mapping.distance_volume as dv

        depth_calls, voxel_calls = [], []
        monkeypatch.setattr(dv, "log_depth", lambda depth, scale: depth_calls.append((depth, scale)))
        monkeypatch.setattr(dv, "log_voxels", lambda centers, res: voxel_calls.append(centers))

        source = SimDepthSource(ctx, [OBSTACLE])
        ingest = VolumeIngestThread(ctx, projector, hz=0, log_to_rerun=True)
        frame = source.step(now=0.0)
        assert ingest.step()

        assert len(depth_calls) == 1
        assert depth_calls[0][0] is frame.depth
        assert depth_calls[0][1] == projector.intrinsics.depth_scale
        assert len(voxel_calls) == 1 and voxel_calls[0].shape[0] > 0

    def test_nothing_pending(self, ctx, projector):
        ingest = VolumeIngestThread(ctx, projector, hz=0)
        assert not ingest.step()
        assert ingest.frames_dropped == 0

    def test_dropped_frame_leaves_volume_unchanged(self, ctx, projector):
        source = SimDepthSource(ctx, [OBSTACLE])
        ingest = VolumeIngestThread(ctx, projector, hz=0)
        frame = source.step(now=0.0)
        ingest.step()

        vol = ctx.volume
        state, dist, offset = vol._state.copy(), vol._dist.copy(), vol.offset.copy()

        # no pose anywhere near this stamp
        ctx.submit_depth(DepthFrame(depth=frame.depth, stamp=10.0))
        assert not ingest.step()
        assert ingest.frames_dropped == 1
        np.testing.assert_array_equal(vol._state, state)
        np.testing.assert_array_equal(vol._dist, dist)
        np.testing.assert_array_equal(vol.offset, offset)

    def test_follows_vehicle(self, ctx, projector):
        ingest = VolumeIngestThread(ctx, projector, hz=0)
        source = SimDepthSource(ctx, [OBSTACLE])
        source.step(now=0.0)
        ingest.step()
        np.testing.assert_array_equal(ctx.volume.current_center(), [0, 0, 0])

        ctx.set_pose(1.0, _pose_at((0.55, 0.0, 0.0)))
        ctx.submit_depth(DepthFrame(depth=np.zeros((360, 500), dtype=np.uint16), stamp=1.0))
        ingest.step()
        np.testing.assert_array_equal(ctx.volume.current_center(), [5, 0, 0])


class TestPlannerStep:

    def test_no_goal_no_output(self, ctx, limits):
        planner = SplinePlannerThread(ctx, limits=limits, hz=0)
        assert planner.step(now=0.0) is None

    def test_goal_waits_for_pose(self, ctx, limits):
        planner = SplinePlannerThread(ctx, limits=limits, hz=0)
        ctx.set_goal((5.0, 0.0, 0.0))
        assert planner.step(now=0.0) is None
        assert planner.get_optimizer() is None

        ctx.set_pose(0.0, _pose_at((0.0, 0.0, 0.0)))
        assert planner.step(now=0.5) is not None

    def test_publishes_setpoint(self, ctx, limits):
        sent = []
        planner = SplinePlannerThread(ctx, limits=limits, hz=0, publish_fn=sent.append)
        ctx.set_pose(0.0, _pose_at((0.0, 0.0, 1.0)))
        ctx.set_goal((5.0, 0.0, 1.0))

        sp = planner.step(now=100.0)
        assert isinstance(sp, Setpoint)
        assert sp.stamp == 100.0
        np.testing.assert_allclose(sp.position, [0.0, 0.0, 1.0], atol=1e-9)
        assert sent == [sp]
        assert ctx.latest_setpoint() is sp
        assert planner.last_result is not None
        assert sp.status == planner.last_result.status

    def test_stalled_pass_is_published_with_its_status(self, ctx, limits, monkeypatch):
        def stalled(opt, dfield):
            return OptimizationResult(status="stalled", window=opt.window)

        monkeypatch.setattr(SplineOptimizer, "optimize", stalled)
        sent = []
        planner = SplinePlannerThread(ctx, limits=limits, hz=0, publish_fn=sent.append)
        ctx.set_pose(0.0, _pose_at((0.0, 0.0, 0.0)))
        ctx.set_goal((5.0, 0.0, 0.0))

        sp = planner.step(now=0.0)
        assert sp is not None
        assert sp.status == "stalled"
        assert sent[0].status == "stalled"
        assert ctx.latest_setpoint().status == "stalled"
        assert planner.last_result.status == "stalled"

    def test_superseded_goal_is_not_published(self, ctx, limits, monkeypatch):
        sent = []
        planner = SplinePlannerThread(ctx, limits=limits, hz=0, publish_fn=sent.append)
        ctx.set_pose(0.0, _pose_at((0.0, 0.0, 0.0)))
        ctx.set_goal((5.0, 0.0, 0.0))

        real_snapshot = ctx.volume.snapshot

        def snapshot_and_new_goal():
            ctx.set_goal((0.0, 5.0, 0.0))
            return real_snapshot()

        monkeypatch.setattr(ctx.volume, "snapshot", snapshot_and_new_goal)
        assert planner.step(now=0.0) is None
        assert sent == []
        assert ctx.latest_setpoint() is None

    def test_infeasible_seed_keeps_previous_spline(self, ctx, limits):
        planner = SplinePlannerThread(ctx, limits=limits, hz=0)
        ctx.set_pose(0.0, _pose_at((0.0, 0.0, 0.0)))
        ctx.set_goal((5.0, 0.0, 0.0))
        planner.step(now=0.0)
        first = planner.get_optimizer()
        assert first is not None

        ctx.set_goal((0.0, 0.0, 0.0))                   # zero-length seed
        sp = planner.step(now=1.0)
        assert planner.get_optimizer() is first
        assert sp is not None

    def test_new_goal_reseeds_and_restarts_clock(self, ctx, limits):
        planner = SplinePlannerThread(ctx, limits=limits, hz=0)
        ctx.set_pose(0.0, _pose_at((0.0, 0.0, 0.0)))
        ctx.set_goal((5.0, 0.0, 0.0))
        planner.step(now=0.0)
        planner.step(now=3.0)
        first = planner.get_optimizer()
        assert first.time == pytest.approx(3.0)

        ctx.set_goal((0.0, 4.0, 0.0))
        planner.step(now=4.0)
        second = planner.get_optimizer()
        assert second is not first
        assert second.time == pytest.approx(0.0)
        np.testing.assert_allclose(second.sample_positions(0.5)[-1], [0.0, 4.0, 0.0], atol=1e-9)


class TestEndToEnd:

    def test_start_to_goal_around_sphere(self, ctx, projector, limits):
        source = SimDepthSource(ctx, [OBSTACLE])
        ingest = VolumeIngestThread(ctx, projector, hz=0)
        planner = SplinePlannerThread(ctx, limits=limits, hz=0)

        source.step(now=0.0)
        ingest.step()
        assert np.any(ctx.volume._state == OCCUPIED)

        ctx.set_goal((5.0, 0.0, 0.0))
        assert planner.step(now=0.0) is not None
        opt = planner.get_optimizer()
        assert opt.duration >= 5.0 / 0.3

        t = 0.0
        statuses = set()
        flown = []
        while not opt.finished(t):
            t += 1.0
            source.step(now=t)
            ingest.step()
            sp = planner.step(now=t)
            assert sp is not None
            assert sp.status == planner.last_result.status
            statuses.add(sp.status)
            flown.append(sp.position)
            assert planner.last_result.cost_after <= planner.last_result.cost_before

        assert ingest.frames_dropped == 0
        assert statuses <= {"converged", "stalled", "idle"}
        np.testing.assert_allclose(ctx.latest_setpoint().position, [5.0, 0.0, 0.0], atol=1e-6)

        path = opt.sample_positions(0.05)
        assert np.all(np.isfinite(path))
        center, radius = np.array(OBSTACLE[0]), OBSTACLE[1]
        assert np.min(np.linalg.norm(path - center, axis=1)) > radius
        assert np.min(np.linalg.norm(np.array(flown) - center, axis=1)) > radius

        near = path[np.abs(path[:, 0] - center[0]) < 0.6]
        assert near.shape[0] > 0
        assert np.all(ctx.volume.query_distance(near) > 0.0)
