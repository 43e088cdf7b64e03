import numpy as np
from scipy.spatial.transform import Rotation as R

# Pose helpers. Poses travel as [qx, qy, qz, qw, tx, ty, tz] (WORLD_T_BODY).
def pose_to_matrix(pose: np.ndarray) -> np.ndarray:
    pose = np.asarray(pose, dtype=np.float64).reshape(-1)
    if pose.size < 7:
        raise ValueError(f"Expected 7 values [qx,qy,qz,qw,tx,ty,tz], got {pose.size}")
    quat, translation = pose[:4], pose[4:7]
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R.from_quat(quat).as_matrix()
    T[:3, 3] = translation
    return T

def yaw_from_R(Rm: np.ndarray) -> float:
    """Heading about the world Z axis (Z is up)."""
    Rm = np.asarray(Rm, dtype=np.float64)
    if Rm.shape == (4, 4):
        Rm = Rm[:3, :3]
    if Rm.shape != (3, 3):
        raise ValueError(f"Expected (3,3) or (4,4), got {Rm.shape}")
    angle = np.arctan2(Rm[1, 0], Rm[0, 0])
    return float(np.arctan2(np.sin(angle), np.cos(angle)))

def yaw_from_velocity(v: np.ndarray, fallback: float = 0.0, min_speed: float = 1e-3) -> float:
    v = np.asarray(v, dtype=np.float64).reshape(-1)
    if float(np.hypot(v[0], v[1])) < min_speed:
        return float(fallback)
    return float(np.arctan2(v[1], v[0]))

def yaw_to_quat(yaw: float) -> np.ndarray:
    """[qx, qy, qz, qw] for a pure heading rotation."""
    return R.from_euler("z", float(yaw)).as_quat()


# Camera optical frame (x right, y down, z forward) expressed in the body
# frame (x forward, y left, z up).
BODY_R_OPTICAL = np.array(
    [
        [0.0, 0.0, 1.0],
        [-1.0, 0.0, 0.0],
        [0.0, -1.0, 0.0],
    ],
    dtype=np.float64,
)

def body_T_optical(translation=(0.0, 0.0, 0.0)) -> np.ndarray:
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = BODY_R_OPTICAL
    T[:3, 3] = np.asarray(translation, dtype=np.float64)
    return T
