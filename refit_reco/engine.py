r"""
Capability interface of the external trajectory-fitting engine.

The refit pipeline never looks inside the Kalman machinery of an engine; it
only needs a fit call and a handful of state queries on the result:

- smoothed (fitted) state at a measurement point,
- forward-updated and backward-updated states at a measurement point,
- transport of a state to a plane, a point, or a line.

Every query returns either a result or ``None``. Engine implementations are
free to raise :class:`EngineError` internally but must not leak it through the
query methods; :meth:`FittingEngine.fit` may raise it and the fit driver treats
that as a failed fit.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, NamedTuple, Optional, Sequence

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from refit_reco.measurements import Measurement
    from refit_reco.seeds import SeedState

__all__ = [
    "EngineError",
    "DetPlane",
    "MeasuredState",
    "Extrapolation",
    "FitOutcome",
    "FittedTrajectory",
    "FittingEngine",
]


class EngineError(RuntimeError):
    """Numerical failure inside a fitting engine."""


def _unit(a, what: str) -> np.ndarray:
    a = np.asarray(a, dtype=np.float64).reshape(3)
    n = float(np.linalg.norm(a))
    if not np.isfinite(n) or n < 1e-12:
        raise ValueError(f"degenerate {what} vector")
    return a / n


@dataclass(frozen=True, eq=False)
class DetPlane:
    r"""
    Oriented detector plane :math:`\{o + a\,\hat u + b\,\hat v\}`.

    ``v`` is re-orthogonalized against ``u`` on construction, so
    :math:`(\hat u, \hat v, \hat n = \hat u\times\hat v)` is a right-handed
    orthonormal frame.
    """
    origin: np.ndarray
    u: np.ndarray
    v: np.ndarray

    def __post_init__(self) -> None:
        o = np.asarray(self.origin, dtype=np.float64).reshape(3)
        u = _unit(self.u, "plane u")
        v = np.asarray(self.v, dtype=np.float64).reshape(3)
        v = _unit(v - (v @ u) * u, "plane v")
        object.__setattr__(self, "origin", o)
        object.__setattr__(self, "u", u)
        object.__setattr__(self, "v", v)

    @classmethod
    def from_normal(cls, origin, normal) -> "DetPlane":
        """Plane through ``origin`` with an arbitrary in-plane basis."""
        w = _unit(normal, "plane normal")
        arbitrary = np.array([1.0, 0.0, 0.0]) if abs(w[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
        u = np.cross(arbitrary, w)
        u /= np.linalg.norm(u)
        return cls(origin, u, np.cross(w, u))

    @property
    def normal(self) -> np.ndarray:
        return np.cross(self.u, self.v)

    def projector(self) -> np.ndarray:
        """2x3 matrix mapping global offsets to local :math:`(u, v)`."""
        return np.vstack([self.u, self.v])

    def to_local(self, point) -> np.ndarray:
        return self.projector() @ (np.asarray(point, dtype=np.float64) - self.origin)


@dataclass(frozen=True, eq=False)
class MeasuredState:
    r"""
    Track state on a plane.

    Attributes
    ----------
    plane : DetPlane
        Plane the state is expressed on.
    state : (6,) ndarray
        Global :math:`(x, y, z, p_x, p_y, p_z)`.
    cov : (6, 6) ndarray
        Global 6D covariance.
    charge : float
        Charge hypothesis.
    """
    plane: DetPlane
    state: np.ndarray
    cov: np.ndarray
    charge: float = 1.0

    @property
    def pos(self) -> np.ndarray:
        return self.state[:3]

    @property
    def mom(self) -> np.ndarray:
        return self.state[3:]

    @property
    def local(self) -> np.ndarray:
        """Local :math:`(u, v)` of the state position on its plane."""
        return self.plane.to_local(self.pos)

    @property
    def local_cov(self) -> np.ndarray:
        """2x2 covariance of the local :math:`(u, v)` coordinates."""
        H = self.plane.projector()
        return H @ self.cov[:3, :3] @ H.T


class Extrapolation(NamedTuple):
    state: MeasuredState
    path_length: float


@dataclass
class FitOutcome:
    """Result of one engine call; ``status == 0`` means success."""
    status: int
    trajectory: Optional["FittedTrajectory"] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 0 and self.trajectory is not None


class FittedTrajectory(abc.ABC):
    r"""
    Fitted track returned by a :class:`FittingEngine`.

    Points are indexed ``0 .. n_points - 1`` in fit order; each carries one
    measurement whose cluster key is ``cluster_keys[i]``.
    """

    @property
    @abc.abstractmethod
    def n_points(self) -> int: ...

    @property
    @abc.abstractmethod
    def cluster_keys(self) -> List[int]: ...

    @property
    @abc.abstractmethod
    def chi2(self) -> float: ...

    @property
    @abc.abstractmethod
    def ndf(self) -> float: ...

    @property
    @abc.abstractmethod
    def charge(self) -> float: ...

    @abc.abstractmethod
    def fitted_state(self, point_id: int) -> Optional[MeasuredState]:
        """Smoothed state at a point (forward and backward information)."""

    @abc.abstractmethod
    def forward_update(self, point_id: int) -> Optional[MeasuredState]:
        """Filtered state at a point using the preceding measurements and its own."""

    @abc.abstractmethod
    def backward_update(self, point_id: int) -> Optional[MeasuredState]:
        """Filtered state at a point using the following measurements and its own."""

    @abc.abstractmethod
    def propagate_to_plane(self, state: MeasuredState, plane: DetPlane) -> Optional[Extrapolation]:
        """Transport ``state`` onto ``plane``; path length is signed."""

    @abc.abstractmethod
    def propagate_to_point(self, state: MeasuredState, point) -> Optional[Extrapolation]:
        """Transport ``state`` to its point of closest approach to ``point``."""

    @abc.abstractmethod
    def propagate_to_line(self, state: MeasuredState, point, direction) -> Optional[Extrapolation]:
        """Transport ``state`` to its point of closest approach to a line."""

    def extrapolate_to_point(self, point, point_id: int = 0) -> Optional[Extrapolation]:
        """Closest approach to ``point`` starting from the smoothed state at ``point_id``."""
        start = self.fitted_state(point_id)
        if start is None:
            return None
        return self.propagate_to_point(start, point)

    def extrapolate_to_line(self, point, direction, point_id: int = 0) -> Optional[Extrapolation]:
        """Closest approach to a line starting from the smoothed state at ``point_id``."""
        start = self.fitted_state(point_id)
        if start is None:
            return None
        return self.propagate_to_line(start, point, direction)


class FittingEngine(abc.ABC):
    """Fits an ordered list of measurements starting from a seed."""

    @abc.abstractmethod
    def fit(self, seed: "SeedState", measurements: Sequence["Measurement"], pdg: int) -> FitOutcome:
        """Run one fit. May raise :class:`EngineError`."""
