from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy.linalg import pinvh, solve_triangular

__all__ = [
    "robust_cholesky",
    "kalman_gain",
    "chi2",
    "symmetrize",
    "average_states",
    "equilibrated_pinv",
    "pack_upper",
    "unpack_upper",
]

_IU6 = np.triu_indices(6)


def robust_cholesky(S: np.ndarray) -> np.ndarray:
    r"""
    Robust Cholesky factorization with small diagonal *jitter* and SPD fallback.

    Attempts ``np.linalg.cholesky(S)``; on failure, retries with
    :math:`S+\varepsilon\,s\,I` where :math:`s=\max(\mathrm{diag}\,S, 1)` and
    :math:`\varepsilon` is escalated geometrically. If all retries fail, an
    eigenvalue floor is applied:

    .. math::
        S_\text{fix} = V\;\mathrm{diag}(\max(w,\; w_\max\,10^{-15}))\;V^\top.

    Parameters
    ----------
    S : ndarray, shape (n, n)
        Symmetric covariance (not necessarily strictly SPD).

    Returns
    -------
    L : ndarray, shape (n, n)
        Lower-triangular factor with :math:`L L^\top \approx S`.
    """
    S = np.asarray(S, dtype=np.float64)
    try:
        return np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        n = S.shape[0]
        scale = max(float(np.max(np.abs(np.diag(S)))), 1.0)
        I = np.eye(n, dtype=np.float64)
        eps = 1e-12
        for _ in range(8):
            try:
                return np.linalg.cholesky(S + eps * scale * I)
            except np.linalg.LinAlgError:
                eps *= 10.0
        w, V = np.linalg.eigh(symmetrize(S))
        w = np.clip(w, max(float(w.max()), 1e-300) * 1e-15, None)
        return np.linalg.cholesky((V * w) @ V.T)


def _cho_solve(L: np.ndarray, B: np.ndarray) -> np.ndarray:
    # S X = B with S = L L^T : two triangular solves
    Y = solve_triangular(L, B, lower=True, check_finite=False)
    return solve_triangular(L.T, Y, lower=False, check_finite=False)


def kalman_gain(P: np.ndarray, H: np.ndarray, S: np.ndarray) -> np.ndarray:
    r"""
    Gain :math:`K = P H^\top S^{-1}` via Cholesky solves.

    Parameters
    ----------
    P : ndarray, shape (d, d)
        Predicted covariance.
    H : ndarray, shape (m, d)
        Measurement Jacobian.
    S : ndarray, shape (m, m)
        Innovation covariance :math:`S = H P H^\top + R`.

    Returns
    -------
    K : ndarray, shape (d, m)
    """
    L = robust_cholesky(S)
    PHt = np.asarray(P, dtype=np.float64) @ np.asarray(H, dtype=np.float64).T
    return _cho_solve(L, PHt.T).T


def chi2(residual: np.ndarray, S: np.ndarray) -> float:
    r"""Mahalanobis :math:`\chi^2 = r^\top S^{-1} r` of a single residual."""
    r = np.asarray(residual, dtype=np.float64).reshape(-1)
    if r.size == 0:
        return 0.0
    L = robust_cholesky(S)
    y = solve_triangular(L, r, lower=True, check_finite=False)
    return float(y @ y)


def symmetrize(C: np.ndarray) -> np.ndarray:
    """Return :math:`(C + C^\\top)/2`."""
    C = np.asarray(C, dtype=np.float64)
    return 0.5 * (C + C.T)


def equilibrated_pinv(S: np.ndarray, rtol: float = 1e-12) -> np.ndarray:
    r"""
    Pseudo-inverse of a symmetric PSD matrix after diagonal equilibration.

    With :math:`D=\mathrm{diag}(S)^{-1/2}` (zero-variance coordinates get
    :math:`0`), returns :math:`D\,(DSD)^{+}D`. Equilibration keeps well
    measured coordinates (:math:`\sim 10^{-7}`) and free ones
    (:math:`\sim 10^{8}`) on the same footing, so that only genuine null
    directions fall below ``rtol``.
    """
    S = symmetrize(S)
    d = np.sqrt(np.clip(np.diag(S), 0.0, None))
    scale = np.divide(1.0, d, out=np.zeros_like(d), where=d > 0.0)
    St = S * np.outer(scale, scale)
    return pinvh(St, rtol=rtol) * np.outer(scale, scale)


def average_states(x1: np.ndarray, C1: np.ndarray,
                   x2: np.ndarray, C2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Precision-weighted average of two Gaussian estimates of the same quantity.

    Written in gain form so that neither :math:`C_1` nor :math:`C_2` has to be
    invertible on its own; :math:`(C_1+C_2)^{-1}` is taken as the
    :func:`equilibrated_pinv`, since states transported onto one plane share
    a null direction along the plane normal:

    .. math::

        K &= C_1 (C_1 + C_2)^{-1},\\
        \bar x &= x_1 + K (x_2 - x_1),\\
        \bar C &= (I - K)\, C_1,

    which equals :math:`(C_1^{-1}+C_2^{-1})^{-1}` and
    :math:`\bar C (C_1^{-1}x_1 + C_2^{-1}x_2)` whenever the inverses exist.

    Parameters
    ----------
    x1, x2 : ndarray, shape (d,)
        State vectors expressed on the same plane / in the same frame.
    C1, C2 : ndarray, shape (d, d)
        Their covariances.

    Returns
    -------
    x : ndarray, shape (d,)
    C : ndarray, shape (d, d)
        Symmetrized combined covariance.
    """
    x1 = np.asarray(x1, dtype=np.float64)
    x2 = np.asarray(x2, dtype=np.float64)
    C1 = np.asarray(C1, dtype=np.float64)
    C2 = np.asarray(C2, dtype=np.float64)
    K = C1 @ equilibrated_pinv(C1 + C2)
    x = x1 + K @ (x2 - x1)
    C = (np.eye(C1.shape[0]) - K) @ C1
    return x, symmetrize(C)


def pack_upper(C: np.ndarray) -> np.ndarray:
    """Pack the 21 upper-triangle entries (row major) of a 6x6 matrix."""
    C = np.asarray(C, dtype=np.float64)
    if C.shape != (6, 6):
        raise ValueError(f"expected a 6x6 matrix, got {C.shape}")
    return C[_IU6].copy()


def unpack_upper(packed: np.ndarray) -> np.ndarray:
    """Inverse of :func:`pack_upper`; the lower triangle mirrors the upper one."""
    packed = np.asarray(packed, dtype=np.float64).reshape(-1)
    if packed.size != 21:
        raise ValueError(f"expected 21 packed entries, got {packed.size}")
    C = np.zeros((6, 6), dtype=np.float64)
    C[_IU6] = packed
    return C + np.triu(C, 1).T
