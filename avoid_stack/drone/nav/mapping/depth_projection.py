# depth_projection.py
# - Depth frame + stamped pose -> world-frame point cloud (one PointCloudFrame per frame)
# - Pose history with SLERP lookup; a missing pose drops the frame, never blocks
# - Back-projection on a fixed pixel stride, transform applied with torch (GPU if available)

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Tuple

import numpy as np
import torch
from scipy.spatial.transform import Rotation as R, Slerp

from drone.utils.utils import pose_to_matrix

DEVICE = torch.device("cuda") if torch.cuda.is_available() else torch.device("cpu")

log = logging.getLogger("depth_projection")


class MissingTransform(LookupError):
    """No pose is available for the requested stamp; the frame must be dropped."""


# ---- Parameters / containers -------------------------------------------------
@dataclass
class CameraIntrinsics:
    fx: float = 457.815979003906
    fy: float = 457.815979003906
    cx: float = 249.322647094727
    cy: float = 179.5
    depth_scale: float = 5000.0   # raw units per meter
    stride: int = 4               # use every Nth row / column


@dataclass
class DepthFrame:
    depth: np.ndarray             # (H,W) raw range samples, 0 = no return
    stamp: float                  # seconds


@dataclass
class PointCloudFrame:
    points: np.ndarray            # (N,3) float32, WORLD
    origin: np.ndarray            # (3,) sensor origin, WORLD
    stamp: float = 0.0

    def __len__(self):
        return int(self.points.shape[0])


# ---- Pose history ---------------------------------------------------------------
class PoseBuffer:
    """
    Thread-safe history of stamped WORLD_T_BODY poses.

    lookup() interpolates between the two poses bracketing the stamp
    (linear translation, SLERP rotation). Stamps older than the history or
    newer than the latest pose by more than tolerance_s raise MissingTransform.
    """

    def __init__(self, maxlen: int = 200, tolerance_s: float = 0.05):
        self.tolerance_s = float(tolerance_s)
        self._lock = threading.Lock()
        self._stamps: Deque[float] = deque(maxlen=maxlen)
        self._poses: Deque[np.ndarray] = deque(maxlen=maxlen)

    def __len__(self):
        with self._lock:
            return len(self._stamps)

    def add(self, stamp: float, pose_qt: np.ndarray) -> None:
        pose_qt = np.asarray(pose_qt, dtype=np.float64).reshape(-1)
        if pose_qt.size < 7:
            raise ValueError(f"pose must have at least 7 elements, got {pose_qt.size}")
        with self._lock:
            if self._stamps and stamp <= self._stamps[-1]:
                # Out-of-order or duplicate stamp: keep the newest only
                if stamp == self._stamps[-1]:
                    self._poses[-1] = pose_qt[:7].copy()
                return
            self._stamps.append(float(stamp))
            self._poses.append(pose_qt[:7].copy())

    def latest(self) -> Optional[Tuple[float, np.ndarray]]:
        with self._lock:
            if not self._stamps:
                return None
            return self._stamps[-1], self._poses[-1].copy()

    def lookup(self, stamp: float) -> np.ndarray:
        """Return 4x4 WORLD_T_BODY at `stamp` or raise MissingTransform."""
        with self._lock:
            stamps = np.fromiter(self._stamps, dtype=np.float64)
            poses = list(self._poses)

        if stamps.size == 0:
            raise MissingTransform("no poses received yet")

        stamp = float(stamp)
        if stamp < stamps[0] - self.tolerance_s or stamp > stamps[-1] + self.tolerance_s:
            raise MissingTransform(
                f"stamp {stamp:.3f} outside pose history [{stamps[0]:.3f}, {stamps[-1]:.3f}]"
            )
        if stamp <= stamps[0]:
            return pose_to_matrix(poses[0])
        if stamp >= stamps[-1]:
            return pose_to_matrix(poses[-1])

        i = int(np.searchsorted(stamps, stamp, side="right"))
        t0, t1 = stamps[i - 1], stamps[i]
        p0, p1 = poses[i - 1], poses[i]
        alpha = (stamp - t0) / (t1 - t0)

        rots = R.from_quat(np.stack([p0[:4], p1[:4]]))
        rot = Slerp([t0, t1], rots)([stamp])[0]
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = rot.as_matrix()
        T[:3, 3] = (1.0 - alpha) * p0[4:7] + alpha * p1[4:7]
        return T


# ---- Math helpers (torch) -------------------------------------------------------
def apply_transform(points: torch.Tensor, T_4x4: torch.Tensor) -> torch.Tensor:
    """Apply 4x4 transform to Nx3 points (torch) -> Nx3."""
    assert T_4x4.shape == (4, 4)
    ones = torch.ones((points.shape[0], 1), dtype=points.dtype, device=points.device)
    homog = torch.cat([points, ones], dim=1)  # (N,4)
    return (homog @ T_4x4.T)[:, :3]


@torch.no_grad()
def depth_to_points_torch(
    depth: np.ndarray,
    T_world_cam: np.ndarray,
    intrinsics: CameraIntrinsics,
    device: torch.device = DEVICE,
) -> np.ndarray:
    """
    Back-project a raw depth image into WORLD points.

    depth:        H x W raw samples; depth_m = raw / depth_scale, 0 = no return
    T_world_cam:  4x4 camera (optical frame) -> world
    returns:      (N,3) float32 numpy array
    """
    raw = np.asarray(depth)
    if raw.ndim != 2:
        raise ValueError(f"depth must be (H,W), got {raw.shape}")
    stride = max(1, int(intrinsics.stride))

    # --- Subsample on a fixed stride ---
    sub = raw[::stride, ::stride].astype(np.float32)
    v = np.arange(0, raw.shape[0], stride, dtype=np.float32)[:, None]  # (h, 1)
    u = np.arange(0, raw.shape[1], stride, dtype=np.float32)[None, :]  # (1, w)

    valid = np.isfinite(sub) & (sub > 0.0)
    if not np.any(valid):
        return np.zeros((0, 3), dtype=np.float32)

    # --- Back-project to camera frame ---
    Z = sub / float(intrinsics.depth_scale)
    X = (u - float(intrinsics.cx)) * Z / float(intrinsics.fx)
    Y = (v - float(intrinsics.cy)) * Z / float(intrinsics.fy)

    pts_cam = np.stack([X[valid], Y[valid], Z[valid]], axis=1)  # (N, 3)
    pts_cam_t = torch.from_numpy(pts_cam).to(device=device, dtype=torch.float32)

    # --- Transform CAM -> WORLD ---
    T = torch.from_numpy(np.asarray(T_world_cam, dtype=np.float32)).to(device)
    pts_world = apply_transform(pts_cam_t, T)
    return pts_world.detach().cpu().numpy()


# ---- Projector ------------------------------------------------------------------
@dataclass
class DepthProjector:
    """
    Turns DepthFrames into PointCloudFrames.

    T_body_cam maps the camera optical frame into the body frame whose pose is
    stored in the PoseBuffer (identity when the pose source already reports
    the camera pose).
    """
    intrinsics: CameraIntrinsics = field(default_factory=CameraIntrinsics)
    T_body_cam: np.ndarray = field(default_factory=lambda: np.eye(4, dtype=np.float64))
    device: torch.device = DEVICE

    def camera_pose(self, stamp: float, poses: PoseBuffer) -> np.ndarray:
        return poses.lookup(stamp) @ np.asarray(self.T_body_cam, dtype=np.float64)

    def project(self, frame: DepthFrame, poses: PoseBuffer) -> PointCloudFrame:
        T_world_cam = self.camera_pose(frame.stamp, poses)  # may raise MissingTransform
        pts = depth_to_points_torch(frame.depth, T_world_cam, self.intrinsics, device=self.device)
        origin = T_world_cam[:3, 3].astype(np.float64).copy()
        return PointCloudFrame(points=pts, origin=origin, stamp=float(frame.stamp))
