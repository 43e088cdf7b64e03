#!/usr/bin/env python3
# Simulated depth camera + vehicle for running the avoidance loop without hardware.
# - Renders sphere obstacles into a uint16 depth image (raw = meters * depth_scale)
# - Vehicle tracks the latest published setpoint perfectly
# - Feeds poses and depth frames into the PipelineContext at a fixed rate

import logging
import threading
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np
from loop_rate_limiters import RateLimiter

from drone.nav.context import PipelineContext
from drone.nav.mapping.depth_projection import CameraIntrinsics, DepthFrame
from drone.utils.utils import body_T_optical, pose_to_matrix, yaw_to_quat

log = logging.getLogger("sim_depth_source")

Sphere = Tuple[Sequence[float], float]     # (center xyz, radius)


class SimDepthCamera:
    def __init__(self, spheres: Sequence[Sphere], intrinsics: Optional[CameraIntrinsics] = None,
                 width: int = 500, height: int = 360, max_range_m: float = 5.0):
        self.intr = intrinsics or CameraIntrinsics()
        self.W, self.H = int(width), int(height)
        self.max_range_m = float(max_range_m)
        self.centers = np.array([s[0] for s in spheres], dtype=np.float64).reshape(-1, 3)
        self.radii = np.array([s[1] for s in spheres], dtype=np.float64).reshape(-1)

        # Camera-frame rays with unit z, so ray parameter t == depth
        v, u = np.mgrid[0:self.H, 0:self.W].astype(np.float64)
        self._rays = np.stack([
            (u - self.intr.cx) / self.intr.fx,
            (v - self.intr.cy) / self.intr.fy,
            np.ones_like(u),
        ], axis=-1).reshape(-1, 3)

    def render(self, T_world_cam: np.ndarray) -> np.ndarray:
        """(H,W) uint16 depth, 0 where nothing is hit within range."""
        T = np.asarray(T_world_cam, dtype=np.float64)
        o = T[:3, 3]
        d = self._rays @ T[:3, :3].T                       # (P,3) world directions
        depth = np.full(d.shape[0], np.inf)

        a = np.sum(d * d, axis=1)
        for c, r in zip(self.centers, self.radii):
            oc = o - c
            b = 2.0 * (d @ oc)
            cc = float(oc @ oc) - r * r
            disc = b * b - 4.0 * a * cc
            hit = disc >= 0.0
            t = np.full(d.shape[0], np.inf)
            t[hit] = (-b[hit] - np.sqrt(disc[hit])) / (2.0 * a[hit])
            t[t <= 0.0] = np.inf
            depth = np.minimum(depth, t)

        depth[depth > self.max_range_m] = 0.0
        raw = np.round(depth * self.intr.depth_scale)
        raw = np.clip(raw, 0, np.iinfo(np.uint16).max)
        return raw.reshape(self.H, self.W).astype(np.uint16)


class SimDepthSource:
    """
    Producer thread mirroring a camera driver: each tick moves the simulated
    vehicle to the latest setpoint, then publishes its pose and a depth frame
    with the same stamp.
    """

    def __init__(self, ctx: PipelineContext, spheres: Sequence[Sphere], fps: float = 15.0,
                 start_position=(0.0, 0.0, 0.0), T_body_cam: Optional[np.ndarray] = None,
                 intrinsics: Optional[CameraIntrinsics] = None):
        self.ctx = ctx
        self.camera = SimDepthCamera(spheres, intrinsics)
        self.T_body_cam = body_T_optical() if T_body_cam is None else np.asarray(T_body_cam, dtype=np.float64)
        self.position = np.asarray(start_position, dtype=np.float64).reshape(3).copy()
        self.yaw = 0.0

        self.rate = RateLimiter(fps, name="sim depth")
        self._running = False
        self._thr: Optional[threading.Thread] = None
        self.frames = 0

    def pose_qt(self) -> np.ndarray:
        return np.concatenate([yaw_to_quat(self.yaw), self.position])

    def step(self, now: Optional[float] = None) -> DepthFrame:
        now = time.monotonic() if now is None else float(now)

        sp = self.ctx.latest_setpoint()
        if sp is not None:
            self.position = np.asarray(sp.position, dtype=np.float64).copy()
            self.yaw = float(sp.yaw)

        pose = self.pose_qt()
        self.ctx.set_pose(now, pose)
        T_world_cam = pose_to_matrix(pose) @ self.T_body_cam
        frame = DepthFrame(depth=self.camera.render(T_world_cam), stamp=now)
        self.ctx.submit_depth(frame)
        self.frames += 1
        return frame

    def start(self):
        if self._running: return
        self._running = True
        self._thr = threading.Thread(target=self._loop, name="SimDepth", daemon=True)
        self._thr.start()

    def stop(self):
        self._running = False
        if self._thr is not None:
            self._thr.join(timeout=1.0)
            self._thr = None

    def _loop(self):
        log.info("Sim depth source started: %d obstacle(s)", self.camera.radii.size)
        while self._running:
            try:
                self.step()
            except Exception:
                log.exception("Sim depth step failed")
            self.rate.sleep()


def parse_spheres(values: Optional[List[List[float]]]) -> List[Sphere]:
    out: List[Sphere] = []
    for v in values or []:
        if len(v) != 4:
            raise ValueError(f"obstacle needs X Y Z R, got {v}")
        out.append(((v[0], v[1], v[2]), v[3]))
    return out
