# splineOptimization.py
# Receding-horizon B-spline optimizer.
# - Uniform B-spline of order k (degree k-1) in matrix form, knot spacing dt
# - Control points: (k-1) x start | seed sampled every dt | (k-1) x goal
# - Each pass moves only the window [frozen, frozen + num_opt_points) against
#   jerk + distance-field repulsion + velocity/acceleration limit penalties
# - advance(t) freezes every control point that shaped elapsed time
#
# Planner thread: reseeds on a new goal, then advance -> optimize -> publish each cycle.

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from math import comb, factorial
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.optimize import minimize
from loop_rate_limiters import RateLimiter

from drone.nav.seedPlanning import InfeasibleSeed, KinodynamicLimits, PolynomialTrajectory, plan_seed_trajectory
from drone.utils.logging import log_path_3d, log_setpoint
from drone.utils.utils import yaw_from_velocity

log = logging.getLogger("spline_optimization")


# ---- Spline ---------------------------------------------------------------------
def uniform_basis_matrix(k: int) -> np.ndarray:
    """
    (k,k) matrix M with p(u) = [1, u, ..., u^(k-1)] @ M @ P[s:s+k] on segment s.
    Row i multiplies u^i, column j weights control point s+j.
    """
    M = np.zeros((k, k))
    for i in range(k):
        for j in range(k):
            acc = 0.0
            for s in range(j, k):
                acc += (-1) ** (s - j) * comb(k, s - j) * float(k - s - 1) ** (k - 1 - i)
            M[i, j] = comb(k - 1, k - 1 - i) * acc / factorial(k - 1)
    return M

def _power_rows(u: np.ndarray, k: int, derivative: int = 0) -> np.ndarray:
    """(n,k) rows of d^m/du^m [1, u, ..., u^(k-1)]."""
    u = np.atleast_1d(np.asarray(u, dtype=np.float64))
    out = np.zeros((u.size, k))
    for i in range(derivative, k):
        out[:, i] = factorial(i) / factorial(i - derivative) * u ** (i - derivative)
    return out


class UniformBSpline:
    def __init__(self, control_points: np.ndarray, dt: float, order: int = 6):
        self.ctrl = np.array(control_points, dtype=np.float64).reshape(-1, 3)
        self.dt = float(dt)
        self.k = int(order)
        if self.k < 2:
            raise ValueError("order must be >= 2")
        if self.dt <= 0:
            raise ValueError("dt must be > 0")
        if self.ctrl.shape[0] < self.k:
            raise ValueError(f"need at least {self.k} control points, got {self.ctrl.shape[0]}")
        self.M = uniform_basis_matrix(self.k)

    @property
    def num_segments(self) -> int:
        return self.ctrl.shape[0] - self.k + 1

    @property
    def duration(self) -> float:
        return self.num_segments * self.dt

    def segment(self, t: float) -> Tuple[int, float]:
        t = min(max(float(t), 0.0), self.duration)
        s = min(int(np.floor(t / self.dt)), self.num_segments - 1)
        return s, t / self.dt - s

    def basis(self, u, derivative: int = 0) -> np.ndarray:
        """(n,k) weights on the k control points of a segment, physical time units."""
        return _power_rows(u, self.k, derivative) @ self.M / (self.dt ** derivative)

    def evaluate(self, t: float, derivative: int = 0) -> np.ndarray:
        s, u = self.segment(t)
        return (self.basis(u, derivative) @ self.ctrl[s:s + self.k])[0]

    def jerk_cost_matrix(self) -> np.ndarray:
        """Q with trace(P_s^T Q P_s) = integral over one segment of |p'''(t)|^2 dt."""
        k = self.k
        D3 = np.zeros((k, k))                   # power coeffs -> third-derivative power coeffs
        for i in range(k - 3):
            D3[i, i + 3] = factorial(i + 3) / factorial(i)
        idx = np.arange(k)
        Hh = 1.0 / (idx[:, None] + idx[None, :] + 1.0)
        B3 = D3 @ self.M
        return (B3.T @ Hh @ B3) / self.dt ** 5


# ---- Parameters / results ----------------------------------------------------------
@dataclass
class SplineOptimizerParams:
    dt: float = 0.5
    order: int = 6
    num_opt_points: int = 7
    distance_threshold: float = 0.3      # repulsion starts below this clearance (m)

    smoothness_weight: float = 0.1
    distance_weight: float = 50.0
    limit_weight: float = 10.0
    limit_activation: float = 0.9        # penalty starts at this fraction of a limit

    samples_per_segment: int = 4
    max_iterations: int = 30

    # Sidestep start: lateral search step and reach (m)
    detour_step: float = 0.1
    max_detour: float = 2.0


@dataclass
class OptimizationResult:
    status: str                          # "converged" | "stalled" | "idle"
    iterations: int = 0
    cost_before: float = 0.0
    cost_after: float = 0.0
    window: Tuple[int, int] = (0, 0)


@dataclass
class Setpoint:
    stamp: float
    position: np.ndarray
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    yaw: float = 0.0
    status: str = "idle"                 # status of the pass that produced it


# ---- Optimizer -----------------------------------------------------------------------
class SplineOptimizer:
    """
    Spline state for one goal. Built from a seed trajectory; discarded when the
    goal changes.

    Control points [0, frozen) are never modified again. The last (order - 1)
    control points anchor the goal and are never optimized.
    """

    def __init__(self, seed: PolynomialTrajectory, limits: Optional[KinodynamicLimits] = None,
                 params: Optional[SplineOptimizerParams] = None):
        self.p = params or SplineOptimizerParams()
        self.limits = limits or KinodynamicLimits()
        k = int(self.p.order)
        if self.p.num_opt_points < 1:
            raise ValueError("num_opt_points must be >= 1")
        if self.p.samples_per_segment < 1:
            raise ValueError("samples_per_segment must be >= 1")

        start = seed.evaluate(0.0)
        goal = seed.evaluate(seed.duration)
        ts = np.arange(self.p.dt, seed.duration, self.p.dt)
        inner = [seed.evaluate(t) for t in ts]
        pts = [start] * (k - 1) + inner + [goal] * (k - 1)
        self.spline = UniformBSpline(np.stack(pts, axis=0), self.p.dt, k)

        self._frozen = k - 1
        self._t = 0.0
        self._last_yaw = 0.0

        heading = goal - start
        norm = float(np.linalg.norm(heading))
        self._heading = heading / norm if norm > 1e-9 else np.array([1.0, 0.0, 0.0])

        # Constant per-pass pieces
        u = np.arange(self.p.samples_per_segment, dtype=np.float64) / self.p.samples_per_segment
        self._Bp = self.spline.basis(u, 0)
        self._Bv = self.spline.basis(u, 1)
        self._Ba = self.spline.basis(u, 2)
        self._Q = self.spline.jerk_cost_matrix()

        log.info("Spline seeded: %d control points, %.2fs", self.spline.ctrl.shape[0], self.duration)

    # ---- State ------------------------------------------------------------------------
    @property
    def control_points(self) -> np.ndarray:
        return self.spline.ctrl.copy()

    @property
    def frozen_count(self) -> int:
        return self._frozen

    @property
    def window(self) -> Tuple[int, int]:
        k = self.spline.k
        hi = self.spline.ctrl.shape[0] - (k - 1)
        lo = min(self._frozen, hi)
        return lo, min(lo + int(self.p.num_opt_points), hi)

    @property
    def duration(self) -> float:
        return self.spline.duration

    @property
    def time(self) -> float:
        return self._t

    def finished(self, t: Optional[float] = None) -> bool:
        return (self._t if t is None else float(t)) >= self.duration

    def advance(self, t: float) -> None:
        """Move the spline clock to t (never backwards) and freeze consumed control points."""
        self._t = max(self._t, float(t))
        s, _ = self.spline.segment(self._t)
        hi = self.spline.ctrl.shape[0] - (self.spline.k - 1)
        self._frozen = min(max(self._frozen, s + self.spline.k), hi)

    def setpoint(self, t: float, stamp: Optional[float] = None, status: str = "idle") -> Setpoint:
        pos = self.spline.evaluate(t, 0)
        vel = self.spline.evaluate(t, 1)
        self._last_yaw = yaw_from_velocity(vel, fallback=self._last_yaw)
        return Setpoint(
            stamp=float(t if stamp is None else stamp),
            position=pos,
            velocity=vel,
            yaw=self._last_yaw,
            status=status,
        )

    def sample_positions(self, step: float = 0.1) -> np.ndarray:
        ts = np.append(np.arange(0.0, self.duration, step), self.duration)
        return np.stack([self.spline.evaluate(t) for t in ts], axis=0)

    # ---- Optimization ---------------------------------------------------------------------
    def _affected_segments(self, w0: int, w1: int) -> np.ndarray:
        k = self.spline.k
        lo = max(w0 - k + 1, 0)
        hi = min(w1 - 1, self.spline.num_segments - 1)
        return np.arange(lo, hi + 1, dtype=np.int64)

    def _cost(self, x: np.ndarray, dfield, w0: int, w1: int, segs: np.ndarray):
        p = self.p
        k = self.spline.k
        P = self.spline.ctrl.copy()
        P[w0:w1] = x.reshape(-1, 3)

        idx = segs[:, None] + np.arange(k)[None, :]          # (S,k)
        Ps = P[idx]                                          # (S,k,3)
        gPs = np.zeros_like(Ps)

        # (a) integrated squared jerk
        QP = np.einsum("ij,sjd->sid", self._Q, Ps)
        cost = p.smoothness_weight * float(np.sum(Ps * QP))
        gPs += 2.0 * p.smoothness_weight * QP

        # (b) soft barrier on the distance field
        pos = np.einsum("nk,skd->snd", self._Bp, Ps)
        d, g = dfield.query_distance_gradient(pos.reshape(-1, 3))
        pen = np.where(d < p.distance_threshold, p.distance_threshold - d, 0.0)
        cost += p.distance_weight * float(np.sum(pen * pen))
        gpos = (-2.0 * p.distance_weight * pen)[:, None] * g
        gPs += np.einsum("nk,snd->skd", self._Bp, gpos.reshape(pos.shape))

        # (c) velocity / acceleration approaching the limits
        for B, lim in ((self._Bv, self.limits.max_velocity), (self._Ba, self.limits.max_acceleration)):
            vec = np.einsum("nk,skd->snd", B, Ps)
            sq = np.sum(vec * vec, axis=-1)
            ex = np.maximum(0.0, sq - (p.limit_activation * lim) ** 2)
            cost += p.limit_weight * float(np.sum(ex * ex))
            gPs += np.einsum("nk,snd->skd", B, (4.0 * p.limit_weight * ex)[..., None] * vec)

        grad = np.zeros_like(P)
        np.add.at(grad, idx, gPs)
        return cost, grad[w0:w1].ravel()

    def _detour_start(self, dfield, w0: int, w1: int, segs: np.ndarray) -> Optional[np.ndarray]:
        """
        Alternative start for a window whose curve runs within distance_threshold
        of an obstacle. From the first blocked control point to the end of the
        window, points are shifted sideways (across the direction of travel) by
        the smallest multiple of detour_step that clears them; the points before
        it ramp into the shift.

        The side comes from the distance gradient at the blocked samples. An
        obstacle dead ahead gives no sideways gradient, so the left of travel
        is used instead.
        """
        p = self.p
        k = self.spline.k
        P = self.spline.ctrl
        Ps = P[segs[:, None] + np.arange(k)[None, :]]
        pos = np.einsum("nk,skd->snd", self._Bp, Ps).reshape(-1, 3)
        d, g = dfield.query_distance_gradient(pos)
        blocked = d < p.distance_threshold
        if not np.any(blocked):
            return None

        # Each sample is mostly shaped by the middle control points of its segment
        owner = np.repeat(segs, self._Bp.shape[0]) + k // 2
        j0 = int(np.clip(owner[blocked].min(), w0, w1 - 1)) - w0

        t = self._heading
        gb = g[blocked]
        side = np.sum(gb - np.outer(gb @ t, t), axis=0)
        if np.linalg.norm(side) < 0.1 * gb.shape[0]:
            side = np.cross([0.0, 0.0, 1.0], t)
            if np.linalg.norm(side) < 1e-6:
                side = np.array([0.0, 1.0, 0.0])
        side = side / np.linalg.norm(side)

        wts = np.zeros(w1 - w0)
        wts[j0:] = 1.0
        n_ramp = min(j0, k - 1)
        wts[j0 - n_ramp:j0] = np.arange(1, n_ramp + 1) / (n_ramp + 1.0)

        Pw = P[w0:w1]
        step = float(p.detour_step)
        for a in np.arange(step, p.max_detour + 0.5 * step, step):
            shifted = Pw + a * wts[:, None] * side[None, :]
            dd, _ = dfield.query_distance_gradient(shifted[j0:])
            if np.all(dd >= p.distance_threshold + step):
                return shifted.ravel()
        return None

    def optimize(self, dfield) -> OptimizationResult:
        """
        One bounded pass over the current window against `dfield` (anything with
        query_distance_gradient, normally a DistanceVolume snapshot).

        L-BFGS-B runs from the current window and, when the curve is blocked,
        from a sidestepping start as well; the cheaper outcome wins. Installs
        the best point found; never a worse or non-finite one.
        """
        w0, w1 = self.window
        segs = self._affected_segments(w0, w1)
        if w1 <= w0 or segs.size == 0:
            return OptimizationResult(status="idle", window=(w0, w1))

        x0 = self.spline.ctrl[w0:w1].ravel().copy()
        cost0, _ = self._cost(x0, dfield, w0, w1, segs)

        starts = [x0]
        detour = self._detour_start(dfield, w0, w1, segs)
        if detour is not None:
            starts.append(detour)

        best = None
        for xs in starts:
            res = minimize(
                self._cost, xs, args=(dfield, w0, w1, segs),
                jac=True, method="L-BFGS-B",
                options={"maxiter": int(self.p.max_iterations)},
            )
            if not (np.all(np.isfinite(res.x)) and np.isfinite(res.fun)):
                continue
            if best is None or res.fun < best.fun:
                best = res

        if best is None:
            log.warning("Optimization stalled on window [%d, %d): non-finite cost", w0, w1)
            return OptimizationResult(status="stalled", cost_before=float(cost0),
                                      cost_after=float(cost0), window=(w0, w1))

        status = "converged" if best.success else "stalled"
        cost1 = float(best.fun)
        if cost1 <= cost0:
            self.spline.ctrl[w0:w1] = best.x.reshape(-1, 3)
        else:
            cost1 = cost0

        if status == "stalled":
            log.warning("Optimization stalled on window [%d, %d): %s", w0, w1, best.message)
        return OptimizationResult(
            status=status,
            iterations=int(best.nit),
            cost_before=float(cost0),
            cost_after=cost1,
            window=(w0, w1),
        )


# ---- Control-cycle worker -------------------------------------------------------------------
class SplinePlannerThread:
    """
    Periodic control cycle over the shared context:
      new goal -> seed from the vehicle position -> fresh SplineOptimizer
      every cycle -> advance to elapsed time -> optimize on a volume snapshot -> publish
    A pass whose goal was replaced meanwhile is discarded, not published.
    """

    def __init__(self, ctx,
                 limits: Optional[KinodynamicLimits] = None,
                 params: Optional[SplineOptimizerParams] = None,
                 hz: float = 10.0,
                 publish_fn: Optional[Callable[[Setpoint], None]] = None,
                 log_to_rerun: bool = False):
        self.ctx = ctx
        self.limits = limits or KinodynamicLimits()
        self.params = params or SplineOptimizerParams()
        self.publish_fn = publish_fn
        self.log_to_rerun = bool(log_to_rerun)
        self._rate = RateLimiter(hz, name="spline_planner") if (hz and hz > 0) else None

        self._lock = threading.Lock()
        self._thr: Optional[threading.Thread] = None
        self._running = False

        self._optimizer: Optional[SplineOptimizer] = None
        self._goal_seq = 0
        self._t0 = 0.0
        self._last_result: Optional[OptimizationResult] = None

    # --- public API ---
    def get_optimizer(self) -> Optional[SplineOptimizer]:
        with self._lock:
            return self._optimizer

    @property
    def last_result(self) -> Optional[OptimizationResult]:
        with self._lock:
            return self._last_result

    def start(self):
        if self._running: return
        self._running = True
        self._thr = threading.Thread(target=self._loop, name="SplinePlanner", daemon=True)
        self._thr.start()

    def stop(self):
        self._running = False
        if self._thr is not None:
            self._thr.join(timeout=1.0)
            self._thr = None

    def step(self, now: Optional[float] = None) -> Optional[Setpoint]:
        """One control cycle. Returns the published setpoint, or None."""
        now = time.monotonic() if now is None else float(now)
        goal = self.ctx.latest_goal()
        if goal is None:
            return None
        seq, goal_xyz = goal

        if seq != self._goal_seq:
            self._reseed(seq, goal_xyz, now)

        with self._lock:
            opt = self._optimizer
        if opt is None:
            return None

        t = now - self._t0
        opt.advance(t)
        result = opt.optimize(self.ctx.volume.snapshot())
        with self._lock:
            self._last_result = result
        sp = opt.setpoint(t, stamp=now, status=result.status)

        latest = self.ctx.latest_goal()
        if latest is not None and latest[0] != seq:
            log.debug("Goal %d superseded during pass, dropping setpoint", seq)
            return None

        self.ctx.publish_setpoint(sp)
        if self.publish_fn is not None:
            self.publish_fn(sp)
        if self.log_to_rerun:
            log_path_3d(opt.sample_positions(0.2), log_path="world/spline")
            log_setpoint(sp.position, sp.velocity)
        return sp

    # --- internals ---
    def _reseed(self, seq: int, goal_xyz: np.ndarray, now: float):
        start = self.ctx.vehicle_position()
        if start is None:
            log.info("Goal %d pending: no vehicle pose yet", seq)
            return
        self._goal_seq = seq
        try:
            seed = plan_seed_trajectory([start, goal_xyz], self.limits)
        except InfeasibleSeed as e:
            log.warning("Seed for goal %d rejected, keeping previous spline: %s", seq, e)
            return
        opt = SplineOptimizer(seed, self.limits, self.params)
        with self._lock:
            self._optimizer = opt
        self._t0 = now
        log.info("Goal %d: %s -> %s, seed %.2fs", seq, np.round(start, 2).tolist(),
                 np.round(goal_xyz, 2).tolist(), seed.duration)

    def _loop(self):
        while self._running:
            try:
                self.step()
            except Exception:
                log.exception("Spline planner cycle failed")
            if self._rate is not None:
                self._rate.sleep()
            else:
                time.sleep(0.001)
