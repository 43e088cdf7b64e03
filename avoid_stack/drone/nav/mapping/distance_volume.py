# distance_volume.py
# Egocentric 3D occupancy + Euclidean distance volume that slides with the vehicle.
# Fixed (2^POW)^3 arrays addressed toroidally: a world voxel w lives in slot (w & mask),
# `offset` is the world voxel of the window's low corner. Moving the window clears
# one layer per step and never reallocates.
#
# unknown : -1
# free    :  0
# occupied:  1

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.ndimage import distance_transform_edt
from loop_rate_limiters import RateLimiter

from drone.nav.mapping.depth_projection import DepthProjector, MissingTransform, PointCloudFrame
from drone.utils.logging import log_depth, log_voxels

log = logging.getLogger("distance_volume")


# ---- Voxel codes (exported) ---------------------------------------------------
UNKNOWN: int  = -1
FREE: int     = 0
OCCUPIED: int = 1

__all__ = [
    "VolumeParams",
    "DistanceVolume",
    "DistanceField",
    "VolumeIngestThread",
    "UNKNOWN", "FREE", "OCCUPIED",
]

# Trilinear corner offsets, ordered so bit 2/1/0 = x/y/z
_CORNERS = np.array([[(c >> 2) & 1, (c >> 1) & 1, c & 1] for c in range(8)], dtype=np.int64)


# ---- Parameters ---------------------------------------------------------------
@dataclass
class VolumeParams:
    resolution: float = 0.1          # voxel edge (meters)
    pow: int = 6                     # edge = 2**pow voxels
    truncation_m: float = 1.0        # distances are capped here ("far")

    # Ray carving
    carve_step_frac: float = 0.5     # sample spacing along rays, in voxels

    # Distance policy: recompute right after every insert / recenter (else call update_distance())
    update_distance_on_insert: bool = True

    @property
    def size(self) -> int:
        return 1 << int(self.pow)


# ---- Read-only snapshot -------------------------------------------------------
class DistanceField:
    """
    Consistent copy of the distance volume in logical layout (index 0 = offset).
    Handed to the optimizer so one optimization pass sees one field.
    """

    def __init__(self, distance: np.ndarray, offset: np.ndarray, resolution: float, far: float):
        self.distance = distance
        self.offset = np.asarray(offset, dtype=np.int64).copy()
        self.resolution = float(resolution)
        self.far = float(far)
        self.size = int(distance.shape[0])

    def _lookup(self, widx: np.ndarray) -> np.ndarray:
        rel = widx - self.offset
        inside = np.all((rel >= 0) & (rel < self.size), axis=-1)
        out = np.full(widx.shape[:-1], self.far, dtype=np.float64)
        if np.any(inside):
            r = rel[inside]
            out[inside] = self.distance[r[:, 0], r[:, 1], r[:, 2]]
        return out

    def query_distance(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64)
        widx = np.floor(pts.reshape(-1, 3) / self.resolution).astype(np.int64)
        return self._lookup(widx).reshape(pts.shape[:-1])

    def query_distance_gradient(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return _trilinear(points, self._lookup, self.resolution)


def _trilinear(points: np.ndarray, lookup: Callable[[np.ndarray], np.ndarray],
               resolution: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Trilinear interpolation of voxel-center distances.
    Returns (distance (N,), gradient (N,3)).
    """
    pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
    g = pts / resolution - 0.5                 # voxel centers sit at (w + 0.5) * res
    base = np.floor(g).astype(np.int64)
    f = g - base                               # (N,3) in [0,1)

    corners = base[:, None, :] + _CORNERS[None, :, :]      # (N,8,3)
    vals = lookup(corners)                                  # (N,8)

    wx = np.where(_CORNERS[None, :, 0] == 1, f[:, 0:1], 1.0 - f[:, 0:1])
    wy = np.where(_CORNERS[None, :, 1] == 1, f[:, 1:2], 1.0 - f[:, 1:2])
    wz = np.where(_CORNERS[None, :, 2] == 1, f[:, 2:3], 1.0 - f[:, 2:3])
    sx = np.where(_CORNERS[None, :, 0] == 1, 1.0, -1.0)
    sy = np.where(_CORNERS[None, :, 1] == 1, 1.0, -1.0)
    sz = np.where(_CORNERS[None, :, 2] == 1, 1.0, -1.0)

    dist = np.sum(vals * wx * wy * wz, axis=1)
    grad = np.stack([
        np.sum(vals * sx * wy * wz, axis=1),
        np.sum(vals * wx * sy * wz, axis=1),
        np.sum(vals * wx * wy * sz, axis=1),
    ], axis=1) / resolution
    return dist, grad


# ---- Core volume --------------------------------------------------------------
class DistanceVolume:
    """
    Bounded, vehicle-centered occupancy + distance volume.

    Inputs:
      - insert(points, sensor_origin): world points from one depth frame.
      - recenter(target): world voxel the window should be centered on.

    Queries outside [offset, offset + N) per axis read UNKNOWN / far.
    All public operations take self.lock (re-entrant), so a caller may hold it
    across recenter + insert to publish both at once.
    """

    def __init__(self, params: Optional[VolumeParams] = None):
        self.p = params or VolumeParams()
        if self.p.resolution <= 0:
            raise ValueError("resolution must be > 0")
        if not 1 <= int(self.p.pow) <= 10:
            raise ValueError("pow must be in [1, 10]")
        if self.p.truncation_m <= 0:
            raise ValueError("truncation_m must be > 0")

        self.N = self.p.size
        self.mask = self.N - 1
        self.res = float(self.p.resolution)
        self.far = float(self.p.truncation_m)
        self._trunc_cells = int(np.ceil(self.far / self.res))

        # Storage (slot = world index & mask)
        shape = (self.N, self.N, self.N)
        self._state = np.full(shape, UNKNOWN, dtype=np.int8)
        self._dist  = np.full(shape, self.far, dtype=np.float32)
        self._tick  = np.zeros(shape, dtype=np.uint32)

        self.offset = np.zeros(3, dtype=np.int64) - self.N // 2
        self.tick = 0
        self.lock = threading.RLock()

        # Pending distance update, inclusive world-index bounds
        self._dirty_lo: Optional[np.ndarray] = None
        self._dirty_hi: Optional[np.ndarray] = None

    # ---- Addressing -----------------------------------------------------------
    @property
    def voxel_count(self) -> int:
        return int(self._state.size)

    def world_to_index(self, points: np.ndarray) -> np.ndarray:
        pts = np.asarray(points, dtype=np.float64)
        return np.floor(pts / self.res).astype(np.int64)

    def index_to_world(self, widx: np.ndarray) -> np.ndarray:
        return (np.asarray(widx, dtype=np.float64) + 0.5) * self.res

    def current_center(self) -> np.ndarray:
        with self.lock:
            return self.offset + self.N // 2

    def is_inside(self, widx: np.ndarray) -> np.ndarray:
        rel = np.asarray(widx, dtype=np.int64) - self.offset
        return np.all((rel >= 0) & (rel < self.N), axis=-1)

    def _slots(self, widx: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        s = widx & self.mask
        return s[..., 0], s[..., 1], s[..., 2]

    # ---- Window motion ----------------------------------------------------------
    def reset(self, center_index: np.ndarray) -> None:
        """Forget everything and center the window on `center_index`."""
        with self.lock:
            self._state.fill(UNKNOWN)
            self._dist.fill(self.far)
            self._tick.fill(0)
            self.offset = np.asarray(center_index, dtype=np.int64).reshape(3) - self.N // 2
            self._dirty_lo = self._dirty_hi = None
            log.info("Volume reset, center=%s", self.current_center().tolist())

    def recenter(self, target_center: np.ndarray) -> int:
        """
        Slide the window one layer per axis per step until it is centered on
        target_center. Returns the number of steps taken.
        """
        target = np.asarray(target_center, dtype=np.int64).reshape(3)
        steps = 0
        with self.lock:
            diff = target - self.current_center()
            if np.any(np.abs(diff) >= self.N):
                # Nothing survives a jump of a full edge; clearing at once is equivalent
                self.reset(target)
                return int(np.max(np.abs(diff)))
            while np.any(diff != 0):
                self._move_volume(np.sign(diff))
                steps += 1
                diff = target - self.current_center()
            if steps and self.p.update_distance_on_insert:
                self.update_distance()
        return steps

    def _move_volume(self, direction: np.ndarray) -> None:
        for axis in range(3):
            d = int(direction[axis])
            if d == 0:
                continue
            if d > 0:
                leaving = int(self.offset[axis])              # low layer leaves ...
                entering = leaving + self.N                   # ... same slot comes back on top
            else:
                leaving = int(self.offset[axis]) + self.N - 1
                entering = int(self.offset[axis]) - 1
            slot = leaving & self.mask

            sl = [slice(None)] * 3
            sl[axis] = slot
            sl = tuple(sl)
            had_obstacles = bool(np.any(self._state[sl] == OCCUPIED))
            self._state[sl] = UNKNOWN
            self._dist[sl] = self.far
            self._tick[sl] = 0
            self.offset[axis] += d

            # Distances next to the new layer (and next to a removed obstacle) are stale
            self._mark_layer_dirty(axis, entering)
            if had_obstacles:
                self._mark_layer_dirty(axis, leaving)

    def _mark_layer_dirty(self, axis: int, world_coord: int) -> None:
        lo = self.offset.copy()
        hi = self.offset + self.N - 1
        lo[axis] = hi[axis] = world_coord
        self._mark_dirty(lo, hi)

    def _mark_dirty(self, lo: np.ndarray, hi: np.ndarray) -> None:
        if self._dirty_lo is None:
            self._dirty_lo = np.asarray(lo, dtype=np.int64).copy()
            self._dirty_hi = np.asarray(hi, dtype=np.int64).copy()
        else:
            self._dirty_lo = np.minimum(self._dirty_lo, lo)
            self._dirty_hi = np.maximum(self._dirty_hi, hi)

    # ---- Ingestion -----------------------------------------------------------------
    def insert(self, points: np.ndarray, sensor_origin: np.ndarray) -> int:
        """
        Ray-carving update from one point cloud.

        Endpoints inside the window become OCCUPIED, voxels crossed by the ray
        from sensor_origin become FREE. A frame's own endpoints win over its
        carving, and newer observations overwrite older ones, so inserting the
        same frame twice leaves the same occupancy/distance state.

        Returns the number of voxels whose occupied-ness changed.
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        pts = pts[np.all(np.isfinite(pts), axis=1)]
        origin = np.asarray(sensor_origin, dtype=np.float64).reshape(3)

        with self.lock:
            self.tick += 1
            if pts.shape[0] == 0:
                return 0

            hit_w = np.unique(self.world_to_index(pts), axis=0)
            hit_w_in = hit_w[self.is_inside(hit_w)]

            free_w = self._carve(origin, self.index_to_world(hit_w))

            touched = np.concatenate([free_w, hit_w_in], axis=0)
            if touched.shape[0] == 0:
                return 0
            ts = self._slots(touched)
            before = self._state[ts] == OCCUPIED

            # Carve first, then endpoints: a voxel both crossed and hit ends up OCCUPIED
            if free_w.shape[0]:
                fs = self._slots(free_w)
                self._state[fs] = FREE
                self._tick[fs] = self.tick
            if hit_w_in.shape[0]:
                hs = self._slots(hit_w_in)
                self._state[hs] = OCCUPIED
                self._tick[hs] = self.tick

            after = self._state[ts] == OCCUPIED
            flipped = np.unique(touched[before != after], axis=0)
            if flipped.shape[0]:
                self._mark_dirty(flipped.min(axis=0), flipped.max(axis=0))

            if self.p.update_distance_on_insert:
                self.update_distance()
            return int(flipped.shape[0])

    def _carve(self, origin: np.ndarray, ends: np.ndarray) -> np.ndarray:
        """Unique in-window voxels sampled along origin -> end rays (ends excluded)."""
        if ends.shape[0] == 0:
            return np.zeros((0, 3), dtype=np.int64)

        vec = ends - origin[None, :]
        length = np.linalg.norm(vec, axis=1)

        # Nothing beyond the volume diagonal can be inside the window
        max_len = np.sqrt(3.0) * self.N * self.res
        clip = length > max_len
        if np.any(clip):
            vec[clip] *= (max_len / length[clip])[:, None]
            length[clip] = max_len

        step = self.res * float(self.p.carve_step_frac)
        n = np.maximum(1, np.ceil(length / step).astype(np.int64))
        ray_id = np.repeat(np.arange(n.size), n)
        first = np.repeat(np.cumsum(n) - n, n)
        j = np.arange(ray_id.size, dtype=np.int64) - first
        t = j / n[ray_id]                       # [0, 1) per ray

        samples = origin[None, :] + t[:, None] * vec[ray_id]
        w = self.world_to_index(samples)
        w = w[self.is_inside(w)]
        if w.shape[0] == 0:
            return w
        return np.unique(w, axis=0)

    # ---- Distance propagation ---------------------------------------------------------
    def update_distance(self) -> None:
        """
        Recompute distances around the dirty region.

        Any voxel whose truncated distance can have changed lies within one
        truncation radius of a changed voxel, and every obstacle that can
        matter to it lies within one more radius, so the exact transform is
        evaluated on the dirty box grown by 2r and written back on the box
        grown by r.
        """
        with self.lock:
            if self._dirty_lo is None:
                return
            r = self._trunc_cells
            lo_rel = self._dirty_lo - self.offset
            hi_rel = self._dirty_hi - self.offset
            self._dirty_lo = self._dirty_hi = None

            in_lo = np.clip(lo_rel - r, 0, self.N - 1)
            in_hi = np.clip(hi_rel + r, 0, self.N - 1)
            out_lo = np.clip(lo_rel - 2 * r, 0, self.N - 1)
            out_hi = np.clip(hi_rel + 2 * r, 0, self.N - 1)
            if np.any(hi_rel + r < 0) or np.any(lo_rel - r > self.N - 1):
                return  # dirty region no longer near the window

            ix = [(self.offset[a] + np.arange(out_lo[a], out_hi[a] + 1)) & self.mask for a in range(3)]
            block = self._state[np.ix_(*ix)]
            occ = block == OCCUPIED
            if np.any(occ):
                d = distance_transform_edt(~occ, sampling=self.res)
                d = np.minimum(d, self.far).astype(np.float32)
            else:
                d = np.full(block.shape, self.far, dtype=np.float32)

            a0 = in_lo - out_lo
            a1 = in_hi - out_lo + 1
            ox = [ix[a][a0[a]:a1[a]] for a in range(3)]
            self._dist[np.ix_(*ox)] = d[a0[0]:a1[0], a0[1]:a1[1], a0[2]:a1[2]]

    # ---- Queries ------------------------------------------------------------------------
    def _lookup(self, widx: np.ndarray) -> np.ndarray:
        inside = self.is_inside(widx)
        out = np.full(widx.shape[:-1], self.far, dtype=np.float64)
        if np.any(inside):
            out[inside] = self._dist[self._slots(widx[inside])]
        return out

    def query_distance(self, points: np.ndarray) -> np.ndarray:
        """Stored distance of the containing voxel; far outside the window. (N,3) -> (N,)"""
        pts = np.asarray(points, dtype=np.float64)
        with self.lock:
            out = self._lookup(self.world_to_index(pts.reshape(-1, 3)))
        return out.reshape(pts.shape[:-1])

    def query_distance_gradient(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        with self.lock:
            return _trilinear(points, self._lookup, self.res)

    def query_state(self, points: np.ndarray) -> np.ndarray:
        """Occupancy code of the containing voxel; UNKNOWN outside the window."""
        pts = np.asarray(points, dtype=np.float64)
        with self.lock:
            widx = self.world_to_index(pts.reshape(-1, 3))
            inside = self.is_inside(widx)
            out = np.full(widx.shape[0], UNKNOWN, dtype=np.int8)
            if np.any(inside):
                out[inside] = self._state[self._slots(widx[inside])]
        return out.reshape(pts.shape[:-1])

    def snapshot(self) -> DistanceField:
        with self.lock:
            shift = tuple(int(-(o & self.mask)) for o in self.offset)
            logical = np.roll(self._dist, shift, axis=(0, 1, 2))
            return DistanceField(logical, self.offset, self.res, self.far)

    # ---- Visualization helpers ------------------------------------------------------------
    def _centers_with_state(self, code: int) -> np.ndarray:
        with self.lock:
            slots = np.argwhere(self._state == code)
            if slots.shape[0] == 0:
                return np.zeros((0, 3), dtype=np.float64)
            # Slot -> the unique in-window world index with those low bits
            widx = self.offset + ((slots - self.offset) & self.mask)
            return self.index_to_world(widx)

    def occupied_points(self) -> np.ndarray:
        return self._centers_with_state(OCCUPIED)

    def free_points(self) -> np.ndarray:
        return self._centers_with_state(FREE)


# ---- Ingest worker ------------------------------------------------------------------------
class VolumeIngestThread:
    """
    Consumes the newest depth frame from the context at a fixed rate:
    project -> recenter on the sensor -> insert. Frames without a pose are
    dropped whole; the volume is untouched.
    """

    def __init__(self, ctx, projector: DepthProjector, hz: float = 15.0, log_to_rerun: bool = False):
        self.ctx = ctx
        self.volume: DistanceVolume = ctx.volume
        self.projector = projector
        self.log_to_rerun = bool(log_to_rerun)
        self._rate = RateLimiter(hz, name="volume_ingest") if (hz and hz > 0) else None

        self._thr: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()
        self._initialized = False

        self.frames_inserted = 0
        self.frames_dropped = 0
        self.last_error: Optional[str] = None

    def start(self):
        if self._thr and self._thr.is_alive():
            return
        self._stop_evt.clear()
        self._thr = threading.Thread(target=self._loop, name="VolumeIngest", daemon=True)
        self._thr.start()

    def stop(self, join_timeout: Optional[float] = 1.5):
        self._stop_evt.set()
        if self._thr:
            self._thr.join(timeout=join_timeout)
        self._thr = None

    def step(self) -> bool:
        """Process the newest pending frame, if any. Returns True if inserted."""
        frame = self.ctx.take_depth()
        if frame is None:
            return False
        try:
            cloud = self.projector.project(frame, self.ctx.poses)
        except MissingTransform as e:
            self.frames_dropped += 1
            log.info("Dropping depth frame @%.3f: %s", frame.stamp, e)
            return False
        if self.log_to_rerun:
            log_depth(frame.depth, self.projector.intrinsics.depth_scale)
        self.integrate(cloud)
        return True

    def integrate(self, cloud: PointCloudFrame) -> None:
        vol = self.volume
        t0 = time.perf_counter()
        with vol.lock:
            center = vol.world_to_index(cloud.origin)
            if not self._initialized:
                vol.reset(center)
                self._initialized = True
            else:
                vol.recenter(center)
            vol.insert(cloud.points, cloud.origin)
        self.frames_inserted += 1
        log.debug("Inserted %d points in %.1f ms", len(cloud), 1e3 * (time.perf_counter() - t0))

        if self.log_to_rerun:
            log_voxels(vol.occupied_points(), vol.res)

    # ---------- internal ----------
    def _loop(self):
        while not self._stop_evt.is_set():
            try:
                self.step()
            except Exception as e:
                # Keep the worker alive on transient errors
                self.last_error = f"ingest failed: {e}"
                log.exception("Volume ingest step failed")

            if self._rate is not None:
                self._rate.sleep()
            else:
                time.sleep(0.001)
