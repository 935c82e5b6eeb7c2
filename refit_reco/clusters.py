from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

import refit_reco.cluster_keys as ck

__all__ = ["Cluster", "ClusterStore", "GeometryService", "PositionCorrector"]

# (cluster_key, raw global position, crossing) -> corrected global position
PositionCorrector = Callable[[int, np.ndarray, int], np.ndarray]

_REQUIRED_COLUMNS = ("cluster_key", "x", "y", "z", "rphi_error", "z_error")


@dataclass(frozen=True, slots=True, eq=False)
class Cluster:
    r"""
    One reconstructed spatial measurement.

    Attributes
    ----------
    key : int
        Unique cluster key (see :mod:`refit_reco.cluster_keys`).
    position : (3,) ndarray
        Raw global position :math:`(x, y, z)` in cm, before any crossing
        dependent correction.
    rphi_error : float
        In-plane (:math:`r\phi`) uncertainty in cm.
    z_error : float
        Longitudinal uncertainty in cm.
    """
    key: int
    position: np.ndarray
    rphi_error: float
    z_error: float

    @property
    def trkr_id(self) -> int:
        return ck.trkr_id(self.key)

    @property
    def layer(self) -> int:
        return ck.layer(self.key)


class ClusterStore:
    r"""
    Event-scoped, read-only cluster container backed by a :class:`pandas.DataFrame`.

    The frame must provide the columns ``cluster_key, x, y, z, rphi_error, z_error``.
    Arrays are materialized once into contiguous NumPy blocks and indexed by
    cluster key; the input frame is never mutated.

    Parameters
    ----------
    clusters : pandas.DataFrame
        Cluster table.
    corrector : callable, optional
        ``corrector(key, xyz, crossing) -> xyz`` applied by
        :meth:`global_position` (distortion and crossing corrections). When
        omitted the raw positions are returned.

    Raises
    ------
    KeyError
        If a required column is missing.
    ValueError
        If cluster keys are not unique.
    """

    __slots__ = ("_keys", "_xyz", "_rphi", "_zerr", "_index", "_corrector")

    def __init__(self, clusters: pd.DataFrame, corrector: Optional[PositionCorrector] = None) -> None:
        missing = [c for c in _REQUIRED_COLUMNS if c not in clusters.columns]
        if missing:
            raise KeyError(f"Missing required column(s): {', '.join(missing)}")

        self._keys = [int(k) for k in clusters["cluster_key"].tolist()]
        self._xyz = np.ascontiguousarray(clusters[["x", "y", "z"]].to_numpy(dtype=np.float64))
        self._rphi = clusters["rphi_error"].to_numpy(dtype=np.float64, copy=True)
        self._zerr = clusters["z_error"].to_numpy(dtype=np.float64, copy=True)
        self._index: Dict[int, int] = {int(k): i for i, k in enumerate(self._keys)}
        if len(self._index) != len(self._keys):
            raise ValueError("Duplicate cluster keys in cluster table.")
        self._corrector = corrector

    @classmethod
    def from_records(cls, records, corrector: Optional[PositionCorrector] = None) -> "ClusterStore":
        """Build a store from an iterable of dicts with the required columns."""
        frame = pd.DataFrame.from_records(list(records), columns=list(_REQUIRED_COLUMNS))
        return cls(frame, corrector=corrector)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, key: object) -> bool:
        try:
            return int(key) in self._index  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False

    def __iter__(self) -> Iterator[int]:
        return iter(self._index)

    def find(self, cluster_key: int) -> Optional[Cluster]:
        """Return the cluster for ``cluster_key`` or ``None`` if unknown."""
        i = self._index.get(int(cluster_key))
        if i is None:
            return None
        return Cluster(
            key=int(cluster_key),
            position=self._xyz[i].copy(),
            rphi_error=float(self._rphi[i]),
            z_error=float(self._zerr[i]),
        )

    def global_position(self, cluster_key: int, crossing: int) -> Optional[np.ndarray]:
        r"""
        Corrected global position of a cluster for a given bunch crossing.

        Parameters
        ----------
        cluster_key : int
            Cluster to look up.
        crossing : int
            Bunch-crossing id the cluster is associated with.

        Returns
        -------
        (3,) ndarray or None
            Corrected :math:`(x, y, z)`, or ``None`` if the cluster is unknown.
        """
        i = self._index.get(int(cluster_key))
        if i is None:
            return None
        xyz = self._xyz[i].copy()
        if self._corrector is not None:
            xyz = np.asarray(self._corrector(int(cluster_key), xyz, int(crossing)), dtype=np.float64)
        return xyz

    def to_frame(self) -> pd.DataFrame:
        """Cluster table with derived ``trkr_id``, ``layer`` and radius columns."""
        keys = self._keys
        return pd.DataFrame({
            "cluster_key": keys,
            "trkr_id": [ck.trkr_id(k) for k in keys],
            "layer": [ck.layer(k) for k in keys],
            "hitset_key": [ck.hitset_key(k) for k in keys],
            "x": self._xyz[:, 0],
            "y": self._xyz[:, 1],
            "z": self._xyz[:, 2],
            "r": np.hypot(self._xyz[:, 0], self._xyz[:, 1]),
            "rphi_error": self._rphi,
            "z_error": self._zerr,
        })


class GeometryService(Mapping):
    r"""
    Detector surface orientation lookup.

    Maps a hitset key to the global-frame unit vectors :math:`(\hat u, \hat v)`
    spanning the sensor surface: :math:`\hat u` is the local :math:`x` axis and
    :math:`\hat v` the local :math:`y` axis.
    """

    __slots__ = ("_surfaces",)

    def __init__(self, surfaces: Optional[Mapping[int, Tuple[np.ndarray, np.ndarray]]] = None) -> None:
        self._surfaces: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
        for key, (u, v) in (surfaces or {}).items():
            self.register(key, u, v)

    def register(self, hitsetkey: int, u, v) -> None:
        """Add (or replace) a surface; basis vectors are normalized."""
        u = np.asarray(u, dtype=np.float64).reshape(3)
        v = np.asarray(v, dtype=np.float64).reshape(3)
        nu, nv = np.linalg.norm(u), np.linalg.norm(v)
        if nu == 0.0 or nv == 0.0:
            raise ValueError(f"Degenerate surface basis for hitset {hitsetkey}")
        self._surfaces[int(hitsetkey)] = (u / nu, v / nv)

    def __getitem__(self, hitsetkey: int) -> Tuple[np.ndarray, np.ndarray]:
        return self._surfaces[int(hitsetkey)]

    def __iter__(self) -> Iterator[int]:
        return iter(self._surfaces)

    def __len__(self) -> int:
        return len(self._surfaces)

    def surface_basis(self, cluster_key: int) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Basis vectors of the surface holding ``cluster_key``, or ``None``."""
        return self._surfaces.get(ck.hitset_key(cluster_key))

    @classmethod
    def from_clusters(cls, store: ClusterStore) -> "GeometryService":
        r"""
        Infer barrel-tangent surfaces for every non-TPC hitset in ``store``.

        For a hitset with clusters at azimuths :math:`\phi_j`, the surface is
        taken tangent to the barrel at the circular mean azimuth
        :math:`\bar\phi`:

        .. math::

            \hat u = (-\sin\bar\phi,\ \cos\bar\phi,\ 0),\qquad
            \hat v = (0,\ 0,\ 1).

        This coarse model is adequate for synthetic events and commissioning;
        production geometry should be registered explicitly.
        """
        frame = store.to_frame()
        frame = frame[frame["trkr_id"] != int(ck.TrkrId.TPC)]
        out = cls()
        for hsk, df in frame.groupby("hitset_key", sort=True):
            phi = np.arctan2(df["y"].to_numpy(), df["x"].to_numpy())
            phi_bar = float(np.arctan2(np.sin(phi).mean(), np.cos(phi).mean()))
            out.register(int(hsk), (-np.sin(phi_bar), np.cos(phi_bar), 0.0), (0.0, 0.0, 1.0))
        return out
