from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from refit_reco.engine import FittedTrajectory, MeasuredState
from refit_reco.kernels import symmetrize

__all__ = ["DcaResult", "rotation_to_rz", "pos_cov_xyz_to_rz", "compute_dca"]

logger = logging.getLogger(__name__)

_BEAM_AXIS = np.array([0.0, 0.0, 1.0])
_PARALLEL_TOL = 1e-5


@dataclass(eq=False)
class DcaResult:
    r"""
    Distance-of-closest-approach observables of one fitted track.

    ``dca2d`` is the signed transverse distance to the beam line, ``dca`` the
    3D distance to the reference point. ``dca3d_xy`` / ``dca3d_z`` are the
    components of the point-of-closest-approach offset in the rotated
    (transverse, longitudinal) frame; they are NaN when that rotation is
    undefined. ``vertex_state`` is the full fitted state at the closest
    approach to the reference point.
    """
    dca2d: float
    dca2d_error: float
    dca: float
    dca_error: float
    vertex_state: MeasuredState
    dca3d_xy: float = math.nan
    dca3d_z: float = math.nan
    dca3d_xy_error: float = math.nan
    dca3d_z_error: float = math.nan


def rotation_to_rz(n) -> Optional[np.ndarray]:
    r"""
    Rotation about the beam axis taking the transverse DCA direction to :math:`x`.

    With :math:`r = n\times\hat z` (perpendicular to both the momentum and the
    beam axis) and :math:`\varphi = -\operatorname{atan2}(r_y, r_x)`:

    .. math::

        R = \begin{pmatrix}\cos\varphi & -\sin\varphi & 0\\
                           \sin\varphi & \cos\varphi & 0\\
                           0 & 0 & 1\end{pmatrix}.

    Returns ``None`` when :math:`|r| < 10^{-5}` (momentum along the beam axis).
    """
    n = np.asarray(n, dtype=np.float64).reshape(3)
    r = np.cross(n, _BEAM_AXIS)
    if not np.all(np.isfinite(r)) or np.linalg.norm(r) < _PARALLEL_TOL:
        return None
    phi = -math.atan2(r[1], r[0])
    return Rotation.from_euler("z", phi).as_matrix()


def pos_cov_xyz_to_rz(n, pos_in, cov_in) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    r"""
    Rotate a position offset and its covariance into the (r, ., z) frame.

    Applies :math:`x' = R x` and :math:`C' = R C R^\top` with ``R`` from
    :func:`rotation_to_rz`. The transform is orthogonal, so the trace and
    symmetry of :math:`C` are preserved.

    Parameters
    ----------
    n : (3,) array_like
        Momentum direction at the point of closest approach.
    pos_in : (3,) array_like
        Position offset (fit position minus reference position).
    cov_in : (3, 3) array_like
        Covariance of the offset.

    Returns
    -------
    (pos_out, cov_out) or None
        ``None`` for malformed inputs or a degenerate direction.
    """
    pos = np.asarray(pos_in, dtype=np.float64)
    cov = np.asarray(cov_in, dtype=np.float64)
    if pos.size != 3:
        logger.debug("pos_in must have 3 entries, got shape %s", pos.shape)
        return None
    if cov.shape != (3, 3):
        logger.debug("cov_in must be 3x3, got shape %s", cov.shape)
        return None
    R = rotation_to_rz(n)
    if R is None:
        logger.debug("momentum is parallel to the beam axis")
        return None
    return R @ pos.reshape(3), symmetrize(R @ cov @ R.T)


def compute_dca(trajectory: FittedTrajectory, vertex, vertex_cov=None) -> Optional[DcaResult]:
    r"""
    DCA to the beam line and to ``vertex`` for a fitted trajectory.

    Two independent extrapolations from the first fitted point:

    1. to the beam line (the :math:`z` axis through the origin): the local
       :math:`u` coordinate is the 2D DCA and :math:`\sigma^2_u` its variance;
    2. to ``vertex``: :math:`\mathrm{dca}=\sqrt{u^2+v^2}` with variance
       :math:`\sigma^2_u+\sigma^2_v`, plus the full state used as the track's
       reference position and momentum.

    If either extrapolation fails the result is ``None`` (the track is
    dropped). If only the frame rotation is degenerate, the rotated DCA
    components stay NaN.

    Parameters
    ----------
    trajectory : FittedTrajectory
    vertex : (3,) array_like
        Reference point.
    vertex_cov : (3, 3) array_like, optional
        Its covariance (zero by default).
    """
    vertex = np.asarray(vertex, dtype=np.float64).reshape(3)
    V = np.zeros((3, 3)) if vertex_cov is None else np.asarray(vertex_cov, dtype=np.float64)

    beam = trajectory.extrapolate_to_line(np.zeros(3), _BEAM_AXIS)
    if beam is None:
        logger.debug("extrapolation to beam line failed")
        return None
    u = float(beam.state.local[0])
    du2 = float(beam.state.local_cov[0, 0])
    dvr2 = float(beam.state.plane.u @ V @ beam.state.plane.u)

    at_vertex = trajectory.extrapolate_to_point(vertex)
    if at_vertex is None:
        logger.debug("extrapolation to vertex failed")
        return None
    state = at_vertex.state
    local = state.local
    local_cov = state.local_cov
    H = state.plane.projector()
    V_local = H @ V @ H.T

    result = DcaResult(
        dca2d=u,
        dca2d_error=math.sqrt(max(du2 + dvr2, 0.0)),
        dca=float(np.hypot(local[0], local[1])),
        dca_error=math.sqrt(max(float(local_cov[0, 0] + local_cov[1, 1] + np.trace(V_local)), 0.0)),
        vertex_state=state,
    )

    rotated = pos_cov_xyz_to_rz(state.mom, state.pos - vertex, state.cov[:3, :3] + V)
    if rotated is None:
        logger.debug("DCA frame rotation undefined; rotated DCA left unset")
        return result
    pos_out, cov_out = rotated
    result.dca3d_xy = float(pos_out[0])
    result.dca3d_z = float(pos_out[2])
    result.dca3d_xy_error = math.sqrt(max(float(cov_out[0, 0]), 0.0))
    result.dca3d_z_error = math.sqrt(max(float(cov_out[2, 2]), 0.0))
    return result
