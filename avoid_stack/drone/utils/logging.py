import numpy as np
import rerun as rr
from typing import Optional, Tuple


def rerun_init(app_id: str = "avoid_stack", spawn: bool = False):
    rr.init(app_id, spawn=spawn)
    rr.log(
        "world/axis",
        rr.Transform3D(translation=[0, 0, 0], rotation=rr.Quaternion(xyzw=[0, 0, 0, 1])),
        static=True,
    )
    rr.log("world", rr.ViewCoordinates.RIGHT_HAND_Z_UP, static=True)

def log_voxels(
    centers: np.ndarray,
    resolution: float,
    color: Tuple[int, int, int] = (255, 255, 255),
    log_path: str = "world/volume/occupied",
):
    """Render voxel centers (N,3) as solid boxes of edge `resolution`."""
    centers = np.asarray(centers, dtype=np.float32).reshape(-1, 3)
    if centers.shape[0] == 0:
        rr.log(log_path, rr.Clear(recursive=False))
        return
    half = np.full((centers.shape[0], 3), resolution / 2.0, dtype=np.float32)
    colors = np.tile(np.array(color, dtype=np.uint8), (centers.shape[0], 1))
    rr.log(log_path, rr.Boxes3D(centers=centers, half_sizes=half, colors=colors, fill_mode="solid"))

def log_path_3d(
    points: np.ndarray,
    log_path: str = "world/path3d",
    color: Tuple[int, int, int] = (255, 0, 0),
):
    """Render an (N,3) polyline."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    if pts.shape[0] < 2:
        return
    rr.log(log_path, rr.LineStrips3D([pts], colors=[color]))

def log_setpoint(position: np.ndarray, velocity: Optional[np.ndarray] = None,
                 log_path: str = "world/setpoint"):
    p = np.asarray(position, dtype=np.float32).reshape(1, 3)
    rr.log(log_path, rr.Points3D(p, colors=[(0, 255, 0)], radii=0.05))
    if velocity is not None:
        v = np.asarray(velocity, dtype=np.float32).reshape(1, 3)
        rr.log(f"{log_path}/velocity", rr.Arrows3D(origins=p, vectors=v, colors=[(0, 200, 255)]))

def log_depth(depth: np.ndarray, depth_scale: float, log_path: str = "camera/depth"):
    rr.log(log_path, rr.DepthImage(np.asarray(depth), meter=float(depth_scale)))
