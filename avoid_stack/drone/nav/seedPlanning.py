# seedPlanning.py
# Minimum-snap piecewise polynomial through waypoints, time-scaled to respect
# velocity / acceleration limits. Used as the initial guess for the B-spline optimizer.
#
# - Each segment: degree-9 polynomial per axis in normalized time tau in [0,1]
# - Ends: position fixed, velocity / acceleration / jerk = 0
# - Inner waypoints: position fixed, derivatives 1..4 continuous
# - Coefficients from one equality-constrained QP (KKT system) per axis

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import factorial
from typing import List, Optional, Sequence

import numpy as np
from numpy.polynomial import polynomial as P
from scipy.linalg import LinAlgError, solve

log = logging.getLogger("seed_planning")

N_COEFFS = 10           # degree 9
MIN_DERIV = 4           # snap
END_DERIVS = 4          # fixed at both ends: position .. jerk
CONT_DERIVS = 4         # continuous across inner waypoints: velocity .. snap


class InfeasibleSeed(ValueError):
    """No seed trajectory can be built for the given waypoints / limits."""


@dataclass
class KinodynamicLimits:
    max_velocity: float = 0.3        # m/s
    max_acceleration: float = 0.5    # m/s^2

    def validate(self):
        for name in ("max_velocity", "max_acceleration"):
            v = float(getattr(self, name))
            if not np.isfinite(v) or v <= 0.0:
                raise InfeasibleSeed(f"{name} must be finite and > 0, got {v}")


# ---- Trajectory container -------------------------------------------------------
class PolynomialTrajectory:
    """
    Piecewise polynomial, continuous up to snap.

    coeffs[i] is (N_COEFFS, 3): ascending powers of tau for segment i.
    Physical derivative m of segment i is (d^m/dtau^m) / T_i^m.
    """

    def __init__(self, coeffs: Sequence[np.ndarray], durations: Sequence[float], samples_per_segment: int = 200):
        self.coeffs: List[np.ndarray] = [np.asarray(c, dtype=np.float64) for c in coeffs]
        self.durations = np.asarray(durations, dtype=np.float64)
        self.samples_per_segment = int(samples_per_segment)
        self._starts = np.concatenate([[0.0], np.cumsum(self.durations)[:-1]])

    @property
    def duration(self) -> float:
        return float(np.sum(self.durations))

    @property
    def num_segments(self) -> int:
        return len(self.coeffs)

    def _segment(self, t: float):
        t = min(max(float(t), 0.0), self.duration)
        i = int(np.searchsorted(self._starts, t, side="right")) - 1
        i = min(max(i, 0), self.num_segments - 1)
        tau = (t - self._starts[i]) / self.durations[i]
        return i, min(max(tau, 0.0), 1.0)

    def _segment_eval(self, i: int, tau, derivative: int = 0) -> np.ndarray:
        c = self.coeffs[i]
        if derivative:
            c = P.polyder(c, derivative, axis=0)
        # polyval over (K,3) coefficients -> (3, ...) ; move axis last
        out = P.polyval(tau, c)
        return np.moveaxis(out, 0, -1) / (self.durations[i] ** derivative)

    def evaluate(self, t: float, derivative: int = 0) -> np.ndarray:
        """Position (or its derivative) at time t, clamped to [0, duration]."""
        i, tau = self._segment(t)
        return self._segment_eval(i, tau, derivative)

    def sample(self, step: float, derivative: int = 0) -> np.ndarray:
        if step <= 0:
            raise ValueError("step must be > 0")
        ts = np.arange(0.0, self.duration, step)
        ts = np.append(ts, self.duration)
        return np.stack([self.evaluate(t, derivative) for t in ts], axis=0)

    def segment_peak(self, i: int, derivative: int) -> float:
        tau = np.linspace(0.0, 1.0, self.samples_per_segment)
        vals = self._segment_eval(i, tau, derivative)
        return float(np.max(np.linalg.norm(vals, axis=1)))

    def max_velocity(self) -> float:
        return max(self.segment_peak(i, 1) for i in range(self.num_segments))

    def max_acceleration(self) -> float:
        return max(self.segment_peak(i, 2) for i in range(self.num_segments))


# ---- QP pieces -------------------------------------------------------------------
def _deriv_row(m: int, tau: float) -> np.ndarray:
    """Row r with r @ c = d^m/dtau^m of sum c_k tau^k at tau."""
    row = np.zeros(N_COEFFS)
    for k in range(m, N_COEFFS):
        row[k] = factorial(k) / factorial(k - m) * (tau ** (k - m))
    return row

def _snap_cost(T: float) -> np.ndarray:
    """Q with c^T Q c = integral_0^T |d^4 p/dt^4|^2 dt for one segment."""
    Q = np.zeros((N_COEFFS, N_COEFFS))
    r = MIN_DERIV
    for j in range(r, N_COEFFS):
        for k in range(r, N_COEFFS):
            cj = factorial(j) / factorial(j - r)
            ck = factorial(k) / factorial(k - r)
            Q[j, k] = cj * ck / (j + k - 2 * r + 1)
    return Q * T ** (1 - 2 * r)

def _solve_coefficients(waypoints: np.ndarray, durations: np.ndarray) -> List[np.ndarray]:
    S = durations.size
    n = N_COEFFS * S
    t_ref = float(np.mean(durations))

    H = np.zeros((n, n))
    for i, T in enumerate(durations):
        # Common rescale keeps the system well conditioned; the minimizer is unchanged
        H[i * N_COEFFS:(i + 1) * N_COEFFS, i * N_COEFFS:(i + 1) * N_COEFFS] = _snap_cost(T / t_ref)

    rows, rhs_idx = [], []      # rhs_idx: waypoint index for position rows, -1 for zero rows

    def add(entries, wp=-1):
        row = np.zeros(n)
        for seg, r in entries:
            row[seg * N_COEFFS:(seg + 1) * N_COEFFS] += r
        rows.append(row)
        rhs_idx.append(wp)

    # Start and goal: position + zero velocity / acceleration / jerk
    for m in range(END_DERIVS):
        add([(0, _deriv_row(m, 0.0))], 0 if m == 0 else -1)
        add([(S - 1, _deriv_row(m, 1.0))], S if m == 0 else -1)

    # Inner waypoints
    for i in range(S - 1):
        add([(i, _deriv_row(0, 1.0))], i + 1)
        add([(i + 1, _deriv_row(0, 0.0))], i + 1)
        for m in range(1, CONT_DERIVS + 1):
            add([(i, _deriv_row(m, 1.0) / (durations[i] / t_ref) ** m),
                 (i + 1, -_deriv_row(m, 0.0) / (durations[i + 1] / t_ref) ** m)])

    A = np.stack(rows, axis=0)
    nc = A.shape[0]
    K = np.zeros((n + nc, n + nc))
    K[:n, :n] = 2.0 * H
    K[:n, n:] = A.T
    K[n:, :n] = A

    b = np.zeros((nc, 3))
    for r, wp in enumerate(rhs_idx):
        if wp >= 0:
            b[r] = waypoints[wp]
    rhs = np.zeros((n + nc, 3))
    rhs[n:] = b

    try:
        sol = solve(K, rhs)             # all three axes at once
    except LinAlgError as e:
        raise InfeasibleSeed(f"polynomial system is singular: {e}") from e
    if not np.all(np.isfinite(sol)):
        raise InfeasibleSeed("polynomial system produced non-finite coefficients")
    return [sol[i * N_COEFFS:(i + 1) * N_COEFFS] for i in range(S)]


def _initial_duration(d: float, v: float, a: float) -> float:
    """Rest-to-rest trapezoidal (or triangular) profile time for distance d."""
    if d <= v * v / a:
        return 2.0 * np.sqrt(d / a)
    return d / v + v / a


# ---- Planner -----------------------------------------------------------------------
def plan_seed_trajectory(
    waypoints: Sequence[Sequence[float]],
    limits: Optional[KinodynamicLimits] = None,
    max_iterations: int = 50,
) -> PolynomialTrajectory:
    """
    Smooth trajectory through `waypoints` (>= 2, WORLD meters) starting and
    ending at rest, whose sampled speed / acceleration stay within `limits`.

    Segment times start from a trapezoidal profile per segment, and segments
    that exceed a limit are stretched until every one is feasible.
    """
    limits = limits or KinodynamicLimits()
    limits.validate()

    wps = np.asarray(waypoints, dtype=np.float64)
    if wps.ndim != 2 or wps.shape[1] != 3:
        raise InfeasibleSeed(f"waypoints must be (K,3), got {wps.shape}")
    if wps.shape[0] < 2:
        raise InfeasibleSeed("need at least a start and a goal waypoint")
    if not np.all(np.isfinite(wps)):
        raise InfeasibleSeed("waypoints contain non-finite values")

    lengths = np.linalg.norm(np.diff(wps, axis=0), axis=1)
    if np.any(lengths <= 1e-9):
        raise InfeasibleSeed("consecutive waypoints coincide")

    v_lim, a_lim = float(limits.max_velocity), float(limits.max_acceleration)
    durations = np.array([_initial_duration(d, v_lim, a_lim) for d in lengths])

    for it in range(max_iterations):
        traj = PolynomialTrajectory(_solve_coefficients(wps, durations), durations)
        ratios = np.array([
            max(traj.segment_peak(i, 1) / v_lim, np.sqrt(traj.segment_peak(i, 2) / a_lim))
            for i in range(traj.num_segments)
        ])
        if np.all(ratios <= 1.0):
            log.debug("Seed feasible after %d iteration(s), T=%.2fs", it + 1, traj.duration)
            return traj

        if it < max_iterations // 2:
            # Stretch offending segments only
            durations = np.where(ratios > 1.0, durations * ratios * 1.01, durations)
        else:
            # Uniform stretch scales every speed by 1/k and acceleration by 1/k^2
            durations = durations * float(np.max(ratios)) * 1.01

    raise InfeasibleSeed(f"limits not met after {max_iterations} time-scaling iterations")
