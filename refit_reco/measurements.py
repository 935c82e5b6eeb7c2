from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

import refit_reco.cluster_keys as ck
from refit_reco.clusters import Cluster, ClusterStore, GeometryService
from refit_reco.config import FitterConfig
from refit_reco.engine import DetPlane

__all__ = [
    "DetectorKind",
    "Measurement",
    "MeasurementSet",
    "DisabledCluster",
    "detector_kind",
    "pixel_measurement",
    "projective_measurement",
    "build_measurements",
]

logger = logging.getLogger(__name__)

_Z_AXIS = np.array([0.0, 0.0, 1.0])


class DetectorKind(Enum):
    """Shape of the measurement a subsystem provides."""
    PIXEL = "pixel"            # two in-plane directions from the sensor geometry
    PROJECTIVE = "projective"  # one precise direction from a radial-normal surface


_KIND_BY_TRKR: Dict[int, DetectorKind] = {
    int(ck.TrkrId.MVTX): DetectorKind.PIXEL,
    int(ck.TrkrId.INTT): DetectorKind.PIXEL,
    int(ck.TrkrId.MICROMEGAS): DetectorKind.PIXEL,
    int(ck.TrkrId.TPC): DetectorKind.PROJECTIVE,
}


def detector_kind(cluster_key: int) -> Optional[DetectorKind]:
    """Measurement shape for a cluster key, ``None`` for unknown subsystems."""
    return _KIND_BY_TRKR.get(ck.trkr_id(cluster_key))


@dataclass(frozen=True, eq=False)
class Measurement:
    r"""
    Planar measurement built from one cluster.

    Attributes
    ----------
    cluster_key : int
        Originating cluster.
    kind : DetectorKind
        Variant that built it.
    position : (3,) ndarray
        Corrected global cluster position; origin of ``plane``.
    basis : tuple of (3,) ndarray
        The in-plane vectors the variant was built from: ``(u, v)`` for
        :attr:`DetectorKind.PIXEL`, ``(n,)`` (the surface normal) for
        :attr:`DetectorKind.PROJECTIVE`.
    plane : DetPlane
        Measurement plane, local :math:`u` is the :math:`r\phi` direction.
    sigma_u, sigma_v : float
        :math:`r\phi` and :math:`z` uncertainties.
    """
    cluster_key: int
    kind: DetectorKind
    position: np.ndarray
    basis: Tuple[np.ndarray, ...]
    plane: DetPlane
    sigma_u: float
    sigma_v: float

    @property
    def radius(self) -> float:
        return float(np.hypot(self.position[0], self.position[1]))

    @property
    def dim(self) -> int:
        return 2

    @property
    def covariance(self) -> np.ndarray:
        return np.diag([self.sigma_u ** 2, self.sigma_v ** 2])


def pixel_measurement(cluster_key: int, position, u, v,
                      sigma_rphi: float, sigma_z: float) -> Measurement:
    """Measurement on a sensor with two known in-plane directions."""
    pos = np.asarray(position, dtype=np.float64).reshape(3)
    plane = DetPlane(pos, u, v)
    return Measurement(
        cluster_key=int(cluster_key),
        kind=DetectorKind.PIXEL,
        position=pos,
        basis=(plane.u, plane.v),
        plane=plane,
        sigma_u=float(sigma_rphi),
        sigma_v=float(sigma_z),
    )


def projective_measurement(cluster_key: int, position, normal,
                           sigma_rphi: float, sigma_z: float) -> Measurement:
    r"""
    Measurement on a surface known only by its normal.

    The local frame is :math:`\hat u = \hat z\times\hat n` (:math:`r\phi`)
    and :math:`\hat v = \hat z`.

    Raises
    ------
    ValueError
        If ``normal`` is parallel to the beam axis.
    """
    pos = np.asarray(position, dtype=np.float64).reshape(3)
    n = np.asarray(normal, dtype=np.float64).reshape(3)
    plane = DetPlane(pos, np.cross(_Z_AXIS, n), _Z_AXIS)
    return Measurement(
        cluster_key=int(cluster_key),
        kind=DetectorKind.PROJECTIVE,
        position=pos,
        basis=(n / np.linalg.norm(n),),
        plane=plane,
        sigma_u=float(sigma_rphi),
        sigma_v=float(sigma_z),
    )


def _build_pixel(cluster: Cluster, position: np.ndarray, geometry: GeometryService) -> Optional[Measurement]:
    basis = geometry.surface_basis(cluster.key)
    if basis is None:
        return None
    u, v = basis
    return pixel_measurement(cluster.key, position, u, v, cluster.rphi_error, cluster.z_error)


def _build_projective(cluster: Cluster, position: np.ndarray, geometry: GeometryService) -> Optional[Measurement]:
    normal = np.array([position[0], position[1], 0.0])
    return projective_measurement(cluster.key, position, normal, cluster.rphi_error, cluster.z_error)


_BUILDERS: Dict[DetectorKind, Callable[[Cluster, np.ndarray, GeometryService], Optional[Measurement]]] = {
    DetectorKind.PIXEL: _build_pixel,
    DetectorKind.PROJECTIVE: _build_projective,
}


@dataclass(frozen=True, eq=False)
class DisabledCluster:
    """A cluster on a disabled layer, kept for interpolation."""
    cluster_key: int
    position: np.ndarray

    @property
    def radius(self) -> float:
        return float(np.hypot(self.position[0], self.position[1]))

    @property
    def layer(self) -> int:
        return ck.layer(self.cluster_key)


@dataclass
class MeasurementSet:
    r"""
    Output of :func:`build_measurements`.

    Attributes
    ----------
    measurements : list of Measurement
        Enabled-layer measurements, ordered by increasing radius.
    disabled : list of DisabledCluster
        Clusters skipped because their layer is disabled, ordered by radius.
    n_silicon, n_micromegas : int
        Cluster counts over the whole candidate (disabled layers included).
    rejection : str or None
        Reason the candidate must not be fitted, ``None`` when it can be.
    """
    measurements: List[Measurement] = field(default_factory=list)
    disabled: List[DisabledCluster] = field(default_factory=list)
    n_silicon: int = 0
    n_micromegas: int = 0
    rejection: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None

    @property
    def cluster_keys(self) -> List[int]:
        return [m.cluster_key for m in self.measurements]


def build_measurements(
    cluster_keys: Sequence[int],
    crossing: int,
    clusters: ClusterStore,
    geometry: GeometryService,
    config: FitterConfig,
) -> MeasurementSet:
    r"""
    Turn a candidate's clusters into radius-ordered, detector-typed measurements.

    Pipeline
    --------
    1. Look up the corrected global position of every cluster and count
       silicon (MVTX, INTT) and micromegas clusters.
    2. Stable-sort the clusters by transverse radius
       :math:`r=\sqrt{x^2+y^2}`, ascending.
    3. In silicon+micromegas mode, reject the candidate if it has no silicon
       cluster, or (with ``use_micromegas``) no micromegas cluster.
    4. Skip clusters on disabled layers (recorded in ``disabled``) and build
       one measurement per remaining cluster, dispatching on
       :func:`detector_kind`.

    Parameters
    ----------
    cluster_keys : sequence of int
        Candidate cluster keys, unique.
    crossing : int
        Bunch crossing used for position corrections.
    clusters : ClusterStore
    geometry : GeometryService
    config : FitterConfig

    Returns
    -------
    MeasurementSet
        With ``rejection`` set when the candidate must not reach the fitter
        (missing cluster, insufficient coverage, missing geometry, unknown
        subsystem or no measurement at all).
    """
    out = MeasurementSet()
    entries: List[Tuple[float, Cluster, np.ndarray]] = []
    seen = set()
    for key in cluster_keys:
        key = int(key)
        if key in seen:
            logger.debug("Duplicate cluster key %d ignored", key)
            continue
        seen.add(key)

        tid = ck.trkr_id(key)
        if tid in ck.SILICON_IDS:
            out.n_silicon += 1
        elif tid == ck.TrkrId.MICROMEGAS:
            out.n_micromegas += 1

        cluster = clusters.find(key)
        position = clusters.global_position(key, crossing) if cluster is not None else None
        if cluster is None or position is None:
            out.rejection = f"cluster {key} not found"
            return out
        entries.append((float(np.hypot(position[0], position[1])), cluster, position))

    entries.sort(key=lambda e: e[0])

    if config.fit_silicon_mms:
        if out.n_silicon == 0:
            out.rejection = "no silicon cluster"
            return out
        if config.use_micromegas and out.n_micromegas == 0:
            out.rejection = "no micromegas cluster"
            return out

    for r, cluster, position in entries:
        if config.is_disabled(cluster.layer):
            out.disabled.append(DisabledCluster(cluster.key, position))
            continue

        kind = detector_kind(cluster.key)
        if kind is None:
            out.rejection = f"unknown subsystem {cluster.trkr_id} for cluster {cluster.key}"
            return out
        try:
            meas = _BUILDERS[kind](cluster, position, geometry)
        except ValueError as e:
            out.rejection = f"degenerate measurement for cluster {cluster.key}: {e}"
            return out
        if meas is None:
            out.rejection = f"no surface for cluster {cluster.key}"
            return out
        out.measurements.append(meas)
        logger.debug("layer %d cluster %d radius %.4f", cluster.layer, cluster.key, r)

    if not out.measurements:
        out.rejection = "no measurement on enabled layers"
    return out
