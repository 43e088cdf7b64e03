#!/usr/bin/env python3
"""
Obstacle-avoidance node:
  - Wraps shared state in a PipelineContext (volume, poses, latest depth, goal, setpoint).
  - Spins background threads for volume ingest (depth -> distance volume) and
    the spline planner (seed -> receding-horizon optimization -> setpoints).
  - Drives them from a simulated depth camera so the loop runs without hardware.
"""

import argparse
import logging
import time
from typing import List, Optional, Sequence

import numpy as np

from drone.nav.context import PipelineContext
from drone.nav.mapping.depth_projection import CameraIntrinsics, DepthProjector
from drone.nav.mapping.distance_volume import VolumeIngestThread, VolumeParams
from drone.nav.seedPlanning import KinodynamicLimits
from drone.nav.splineOptimization import Setpoint, SplineOptimizerParams, SplinePlannerThread
from drone.utils.logging import rerun_init
from drone.utils.utils import body_T_optical
from sim_depth_source import SimDepthSource, parse_spheres

log = logging.getLogger("avoid_node")


class AvoidNode:
    """
    Shared avoidance container:
      - Owns the context and the producer / consumer threads.
      - Forwards every published setpoint to `on_setpoint` (flight controller hook).
    """

    def __init__(
        self,
        *,
        goal: Sequence[float],
        target_hz: float = 15.0,
        control_hz: float = 10.0,
        duration_s: float = 0.0,
        volume_params: Optional[VolumeParams] = None,
        limits: Optional[KinodynamicLimits] = None,
        opt_params: Optional[SplineOptimizerParams] = None,
        obstacles: Optional[List] = None,
        use_rerun: bool = False,
    ):
        self.goal = np.asarray(goal, dtype=np.float64).reshape(3)
        self.duration_s = duration_s
        self.use_rerun = bool(use_rerun)

        self.ctx = PipelineContext(volume_params)
        self.projector = DepthProjector(intrinsics=CameraIntrinsics(), T_body_cam=body_T_optical())

        self.ingest = VolumeIngestThread(self.ctx, self.projector, hz=target_hz, log_to_rerun=self.use_rerun)
        self.planner = SplinePlannerThread(
            self.ctx,
            limits=limits,
            params=opt_params,
            hz=control_hz,
            publish_fn=self.on_setpoint,
            log_to_rerun=self.use_rerun,
        )
        self.source = SimDepthSource(self.ctx, obstacles or [], fps=target_hz)

        self.running = False
        self.setpoints_sent = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def run(self):
        self.running = True
        if self.use_rerun:
            self._init_rerun()

        self.source.start()
        self.ingest.start()
        self.planner.start()
        self.ctx.set_goal(self.goal)

        start = time.time()
        try:
            while self.running:
                if self.duration_s and (time.time() - start) >= self.duration_s:
                    break
                opt = self.planner.get_optimizer()
                if opt is not None and opt.finished():
                    log.info("Goal reached")
                    break
                self._log_status()
                time.sleep(0.25)
        except KeyboardInterrupt:
            log.info("Ctrl+C received; shutting down.")
        finally:
            self.stop()

    def stop(self):
        self.running = False
        self.planner.stop()
        self.ingest.stop()
        self.source.stop()
        log.info("Stopped. frames=%d dropped=%d setpoints=%d",
                 self.ingest.frames_inserted, self.ingest.frames_dropped, self.setpoints_sent)

    def on_setpoint(self, sp: Setpoint):
        # Flight controller hook
        self.setpoints_sent += 1

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _init_rerun(self):
        try:
            rerun_init(spawn=True)
        except Exception as e:
            log.warning("rerun_init failed (continuing): %s", e)

    def _log_status(self):
        sp = self.ctx.latest_setpoint()
        if sp is None:
            return
        log.debug(
            "pos=%s vel=%.2f status=%s frozen=%s",
            np.round(sp.position, 2).tolist(),
            float(np.linalg.norm(sp.velocity)),
            sp.status,
            None if self.planner.get_optimizer() is None else self.planner.get_optimizer().frozen_count,
        )
        if self.ingest.last_error:
            log.warning("Ingest error: %s", self.ingest.last_error)
            self.ingest.last_error = None


def main():
    parser = argparse.ArgumentParser("Avoidance node (sim depth + distance volume + spline planner)")
    parser.add_argument("--hz", type=float, default=15.0, help="depth / ingest rate (Hz)")
    parser.add_argument("--control-hz", type=float, default=10.0, help="control cycle rate (Hz)")
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="stop after N seconds (0 = run until the goal is reached or Ctrl+C)",
    )
    parser.add_argument("--goal", type=float, nargs=3, default=[5.0, 0.0, 0.0], metavar=("X", "Y", "Z"))
    parser.add_argument(
        "--obstacle",
        type=float,
        nargs=4,
        action="append",
        metavar=("X", "Y", "Z", "R"),
        help="sphere obstacle for the simulated camera (repeatable)",
    )
    parser.add_argument("--resolution", type=float, default=0.1, help="voxel size (m)")
    parser.add_argument("--pow", type=int, default=6, help="volume edge = 2**pow voxels")
    parser.add_argument("--max-velocity", type=float, default=0.3)
    parser.add_argument("--max-acceleration", type=float, default=0.5)
    parser.add_argument("--rerun", action="store_true", help="stream volume / spline to rerun")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    obstacles = parse_spheres(args.obstacle)
    if args.obstacle is None:
        obstacles = [((2.5, 0.0, 0.0), 0.3)]

    node = AvoidNode(
        goal=args.goal,
        target_hz=args.hz,
        control_hz=args.control_hz,
        duration_s=args.duration,
        volume_params=VolumeParams(resolution=args.resolution, pow=args.pow),
        limits=KinodynamicLimits(max_velocity=args.max_velocity, max_acceleration=args.max_acceleration),
        opt_params=SplineOptimizerParams(),
        obstacles=obstacles,
        use_rerun=args.rerun,
    )
    node.run()


if __name__ == "__main__":
    main()
