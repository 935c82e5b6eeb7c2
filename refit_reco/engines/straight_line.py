from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from refit_reco.engine import (
    DetPlane,
    EngineError,
    Extrapolation,
    FitOutcome,
    FittedTrajectory,
    FittingEngine,
    MeasuredState,
)
from refit_reco.kernels import average_states, chi2 as _chi2, kalman_gain, symmetrize
from refit_reco.measurements import Measurement
from refit_reco.seeds import SeedState

__all__ = ["StraightLineEngine", "StraightLineTrajectory", "charge_from_pdg"]

logger = logging.getLogger(__name__)

# PDG code -> charge for the usual track hypotheses
_PDG_CHARGE: Dict[int, int] = {
    11: -1, -11: 1,
    13: -1, -13: 1,
    211: 1, -211: -1,
    321: 1, -321: -1,
    2212: 1, -2212: -1,
}

_I6 = np.eye(6)
_I3 = np.eye(3)


def charge_from_pdg(pdg: int) -> int:
    """Charge of a particle hypothesis; raises :class:`EngineError` if unknown."""
    try:
        return _PDG_CHARGE[int(pdg)]
    except KeyError:
        raise EngineError(f"unsupported particle hypothesis {pdg}") from None


def transport(state: np.ndarray, cov: np.ndarray, plane: DetPlane,
              charge: float = 1.0) -> Tuple[MeasuredState, float]:
    r"""
    Move a straight-line state onto ``plane``.

    With direction :math:`\hat d = p/|p|` and plane normal :math:`\hat n`, the
    signed path length is :math:`s = \hat n\cdot(o - x)/(\hat n\cdot\hat d)`.
    The 6x6 Jacobian of :math:`(x', p') = (x + s\hat d,\ p)` is

    .. math::

        \frac{\partial x'}{\partial x} = A,\qquad
        \frac{\partial x'}{\partial p} = \frac{s}{|p|}\,A\,(I - \hat d\hat d^\top),
        \qquad A = I - \frac{\hat d\,\hat n^\top}{\hat n\cdot\hat d},

    so the transported position covariance has no component along
    :math:`\hat n`.

    Raises
    ------
    EngineError
        If the momentum vanishes or is parallel to the plane.
    """
    x = np.asarray(state, dtype=np.float64)
    pos, p = x[:3], x[3:]
    pnorm = float(np.linalg.norm(p))
    if not np.isfinite(pnorm) or pnorm < 1e-12:
        raise EngineError("vanishing momentum")
    d = p / pnorm
    n = plane.normal
    nd = float(n @ d)
    if abs(nd) < 1e-9:
        raise EngineError("track parallel to target plane")
    s = float(n @ (plane.origin - pos)) / nd

    A = _I3 - np.outer(d, n) / nd
    J = _I6.copy()
    J[:3, :3] = A
    J[:3, 3:] = (s / pnorm) * A @ (_I3 - np.outer(d, d))

    out = np.concatenate([pos + s * d, p])
    C = symmetrize(J @ cov @ J.T)
    if not (np.all(np.isfinite(out)) and np.all(np.isfinite(C))):
        raise EngineError("non-finite transported state")
    return MeasuredState(plane, out, C, charge), s


def _direction(state: MeasuredState) -> np.ndarray:
    p = state.mom
    pnorm = float(np.linalg.norm(p))
    if pnorm < 1e-12:
        raise EngineError("vanishing momentum")
    return p / pnorm


class StraightLineTrajectory(FittedTrajectory):
    """Per-point forward, backward and smoothed states of a straight-line fit."""

    __slots__ = ("_keys", "_fwd", "_bwd", "_smoothed", "_chi2", "_ndf", "_charge")

    def __init__(self, keys: List[int], forward: List[MeasuredState], backward: List[MeasuredState],
                 smoothed: List[MeasuredState], chi2: float, ndf: float, charge: float) -> None:
        self._keys = list(keys)
        self._fwd = forward
        self._bwd = backward
        self._smoothed = smoothed
        self._chi2 = float(chi2)
        self._ndf = float(ndf)
        self._charge = float(charge)

    @property
    def n_points(self) -> int:
        return len(self._keys)

    @property
    def cluster_keys(self) -> List[int]:
        return list(self._keys)

    @property
    def chi2(self) -> float:
        return self._chi2

    @property
    def ndf(self) -> float:
        return self._ndf

    @property
    def charge(self) -> float:
        return self._charge

    def _at(self, states: List[MeasuredState], point_id: int) -> Optional[MeasuredState]:
        if not (0 <= int(point_id) < len(states)):
            return None
        return states[int(point_id)]

    def fitted_state(self, point_id: int) -> Optional[MeasuredState]:
        return self._at(self._smoothed, point_id)

    def forward_update(self, point_id: int) -> Optional[MeasuredState]:
        return self._at(self._fwd, point_id)

    def backward_update(self, point_id: int) -> Optional[MeasuredState]:
        return self._at(self._bwd, point_id)

    def propagate_to_plane(self, state: MeasuredState, plane: DetPlane) -> Optional[Extrapolation]:
        try:
            out, s = transport(state.state, state.cov, plane, state.charge)
        except EngineError as e:
            logger.debug("propagate_to_plane failed: %s", e)
            return None
        return Extrapolation(out, s)

    def propagate_to_point(self, state: MeasuredState, point) -> Optional[Extrapolation]:
        try:
            d = _direction(state)
            plane = DetPlane.from_normal(point, d)
            out, s = transport(state.state, state.cov, plane, state.charge)
        except (EngineError, ValueError) as e:
            logger.debug("propagate_to_point failed: %s", e)
            return None
        return Extrapolation(out, s)

    def propagate_to_line(self, state: MeasuredState, point, direction) -> Optional[Extrapolation]:
        r"""
        Closest approach to the line :math:`L + t\,\hat e`.

        The target plane has its origin at the line's closest point,
        :math:`\hat u = \hat d\times\hat e` and :math:`\hat v = \hat e`; the
        local :math:`u` of the transported state is the signed transverse
        distance to the line.
        """
        try:
            d = _direction(state)
            L = np.asarray(point, dtype=np.float64).reshape(3)
            e = np.asarray(direction, dtype=np.float64).reshape(3)
            e = e / np.linalg.norm(e)
            b = float(d @ e)
            denom = 1.0 - b * b
            if denom < 1e-12:
                raise EngineError("track parallel to line")
            w = state.pos - L
            t = (float(e @ w) - b * float(d @ w)) / denom
            plane = DetPlane(L + t * e, np.cross(d, e), e)
            out, s = transport(state.state, state.cov, plane, state.charge)
        except (EngineError, ValueError) as e:
            logger.debug("propagate_to_line failed: %s", e)
            return None
        return Extrapolation(out, s)


class StraightLineEngine(FittingEngine):
    r"""
    Field-free Kalman filter and smoother over planar measurements.

    Reference engine used for commissioning and tests: no magnetic field,
    no material effects, global 6D state :math:`(x, y, z, p_x, p_y, p_z)`.

    Each iteration runs

    1. a forward filter from the start state through every measurement plane,
    2. a backward filter starting from the last forward update with its
       covariance multiplied by ``blow_up``,
    3. smoothing: at every point but the last, the precision-weighted average
       of the forward update and the backward prediction.

    The first iteration starts at the seed with the diagonal of the seed
    covariance times ``blow_up``; later ones restart from the previous
    smoothed state at the first point with the same covariance. The reported
    :math:`\chi^2` is the sum of forward innovations of the last iteration and
    :math:`\mathrm{ndf} = \sum \dim(m_i) - 5`.

    Parameters
    ----------
    n_iterations : int, optional
        Number of forward/backward iterations (default ``2``).
    blow_up : float, optional
        Covariance inflation factor (default ``1e3``).
    """

    def __init__(self, n_iterations: int = 2, blow_up: float = 1e3) -> None:
        if int(n_iterations) < 1:
            raise ValueError("n_iterations must be >= 1")
        self.n_iterations = int(n_iterations)
        self.blow_up = float(blow_up)

    @staticmethod
    def _H(plane: DetPlane) -> np.ndarray:
        H = np.zeros((2, 6))
        H[:, :3] = plane.projector()
        return H

    def _update(self, pred: MeasuredState, meas: Measurement) -> Tuple[MeasuredState, float]:
        # Joseph-form Kalman update on the measurement plane
        H = self._H(meas.plane)
        R = meas.covariance
        r = -meas.plane.to_local(pred.pos)
        S = H @ pred.cov @ H.T + R
        K = kalman_gain(pred.cov, H, S)
        x = pred.state + K @ r
        IKH = _I6 - K @ H
        C = symmetrize(IKH @ pred.cov @ IKH.T + K @ R @ K.T)
        return MeasuredState(meas.plane, x, C, pred.charge), _chi2(r, S)

    def _forward(self, start: MeasuredState, measurements: Sequence[Measurement]):
        preds, updates, total = [], [], 0.0
        state = start
        for meas in measurements:
            pred, _ = transport(state.state, state.cov, meas.plane, state.charge)
            upd, c2 = self._update(pred, meas)
            preds.append(pred)
            updates.append(upd)
            total += c2
            state = upd
        return preds, updates, total

    def _backward(self, start: MeasuredState, measurements: Sequence[Measurement]):
        n = len(measurements)
        preds: List[Optional[MeasuredState]] = [None] * n
        updates: List[Optional[MeasuredState]] = [None] * n
        state = start
        for i in range(n - 1, -1, -1):
            pred, _ = transport(state.state, state.cov, measurements[i].plane, state.charge)
            upd, _ = self._update(pred, measurements[i])
            preds[i] = pred
            updates[i] = upd
            state = upd
        return preds, updates

    def fit(self, seed: SeedState, measurements: Sequence[Measurement], pdg: int) -> FitOutcome:
        charge = charge_from_pdg(pdg)
        n = len(measurements)
        ndf = 2 * n - 5
        if ndf <= 0:
            return FitOutcome(status=1, message=f"too few measurements ({n})")

        C0 = np.diag(np.diag(np.asarray(seed.covariance, dtype=np.float64))) * self.blow_up
        x0 = np.concatenate([np.asarray(seed.position, dtype=np.float64),
                             np.asarray(seed.momentum, dtype=np.float64)])
        pnorm = float(np.linalg.norm(x0[3:]))
        if pnorm < 1e-12:
            raise EngineError("seed momentum vanishes")
        start = MeasuredState(DetPlane.from_normal(x0[:3], x0[3:] / pnorm), x0, C0, charge)

        smoothed: List[MeasuredState] = []
        fwd_upd: List[MeasuredState] = []
        bwd_upd: List[MeasuredState] = []
        total = 0.0
        for it in range(self.n_iterations):
            _, fwd_upd, total = self._forward(start, measurements)
            last = fwd_upd[-1]
            back_start = MeasuredState(last.plane, last.state, last.cov * self.blow_up, charge)
            bwd_pred, bwd_upd = self._backward(back_start, measurements)

            smoothed = []
            for i in range(n - 1):
                x, C = average_states(fwd_upd[i].state, fwd_upd[i].cov, bwd_pred[i].state, bwd_pred[i].cov)
                smoothed.append(MeasuredState(measurements[i].plane, x, C, charge))
            smoothed.append(fwd_upd[-1])

            first = smoothed[0]
            start = MeasuredState(first.plane, first.state, C0, charge)
            logger.debug("iteration %d: chi2=%.4g ndf=%d", it, total, ndf)

        if not np.isfinite(total) or not all(np.all(np.isfinite(s.state)) for s in smoothed):
            return FitOutcome(status=2, message="non-finite fit result")

        trajectory = StraightLineTrajectory(
            keys=[m.cluster_key for m in measurements],
            forward=fwd_upd,
            backward=bwd_upd,
            smoothed=smoothed,
            chi2=total,
            ndf=ndf,
            charge=charge,
        )
        return FitOutcome(status=0, trajectory=trajectory)
