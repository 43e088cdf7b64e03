# context.py
# Shared state between the producers (depth frames, poses, goals) and the
# control cycle. Built once at startup and handed to every worker.
# - depth: single slot, newer frames overwrite unconsumed ones
# - goal:  single slot with a sequence number, latest wins
# - volume: the DistanceVolume (its own RLock guards ingest vs. queries)

from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

import numpy as np

from drone.nav.mapping.depth_projection import DepthFrame, PoseBuffer
from drone.nav.mapping.distance_volume import DistanceVolume, VolumeParams

log = logging.getLogger("context")


class PipelineContext:
    def __init__(self, volume_params: Optional[VolumeParams] = None, pose_history: int = 200,
                 pose_tolerance_s: float = 0.05):
        self.volume = DistanceVolume(volume_params)
        self.poses = PoseBuffer(maxlen=pose_history, tolerance_s=pose_tolerance_s)

        self._depth_lock = threading.Lock()
        self._depth: Optional[DepthFrame] = None
        self.frames_overwritten = 0

        self._goal_lock = threading.Lock()
        self._goal: Optional[np.ndarray] = None
        self._goal_seq = 0

        self._sp_lock = threading.Lock()
        self._setpoint = None

    # ---- Pose ------------------------------------------------------------------
    def set_pose(self, stamp: float, pose_qt: np.ndarray) -> None:
        self.poses.add(stamp, pose_qt)

    def vehicle_position(self) -> Optional[np.ndarray]:
        latest = self.poses.latest()
        if latest is None:
            return None
        return latest[1][4:7].copy()

    # ---- Depth -----------------------------------------------------------------
    def submit_depth(self, frame: DepthFrame) -> None:
        with self._depth_lock:
            if self._depth is not None:
                self.frames_overwritten += 1
            self._depth = frame

    def take_depth(self) -> Optional[DepthFrame]:
        with self._depth_lock:
            frame, self._depth = self._depth, None
            return frame

    # ---- Goal ------------------------------------------------------------------
    def set_goal(self, goal_xyz) -> int:
        g = np.asarray(goal_xyz, dtype=np.float64).reshape(3)
        if not np.all(np.isfinite(g)):
            raise ValueError(f"goal must be finite, got {g}")
        with self._goal_lock:
            self._goal = g
            self._goal_seq += 1
            seq = self._goal_seq
        log.info("New goal #%d: %s", seq, g.tolist())
        return seq

    def latest_goal(self) -> Optional[Tuple[int, np.ndarray]]:
        with self._goal_lock:
            if self._goal is None:
                return None
            return self._goal_seq, self._goal.copy()

    # ---- Output ----------------------------------------------------------------
    def publish_setpoint(self, setpoint) -> None:
        with self._sp_lock:
            self._setpoint = setpoint

    def latest_setpoint(self):
        with self._sp_lock:
            return self._setpoint
