from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from refit_reco.config import FitterConfig
from refit_reco.measurements import Measurement
from refit_reco.tracks import TrackCandidate, TrackMap

__all__ = ["SeedState", "TrackSeed", "SeedLink", "make_seed", "candidates_from_seeds"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SeedState:
    """Initial trajectory guess handed to the fitting engine."""
    position: np.ndarray
    momentum: np.ndarray
    covariance: np.ndarray


def make_seed(measurements: Sequence[Measurement], config: FitterConfig) -> SeedState:
    r"""
    Loose seed for the fit.

    The position is the coordinate origin, the momentum has the fixed
    magnitude ``config.seed_momentum`` and points along the azimuth and polar
    angle of the innermost measurement, and every entry of the 6x6 covariance
    equals ``config.seed_covariance``. Only the direction matters for
    convergence.
    """
    p = float(config.seed_momentum)
    momentum = np.array([p, 0.0, 0.0])
    if measurements:
        x, y, z = measurements[0].position
        if np.hypot(np.hypot(x, y), z) > 0.0:
            phi = np.arctan2(y, x)
            theta = np.arctan2(np.hypot(x, y), z)
            momentum = p * np.array([np.sin(theta) * np.cos(phi),
                                     np.sin(theta) * np.sin(phi),
                                     np.cos(theta)])
    return SeedState(
        position=np.zeros(3),
        momentum=momentum,
        covariance=np.full((6, 6), float(config.seed_covariance)),
    )


@dataclass(eq=False)
class TrackSeed:
    r"""
    Pattern-recognition seed of one subsystem.

    Attributes
    ----------
    cluster_keys : list of int
    crossing : int or None
        Assigned bunch crossing; ``None`` when undetermined.
    position : (3,) ndarray
        Seed position estimate.
    q_over_r : float
        Signed curvature; its sign gives the charge.
    momentum : (3,) ndarray
        Seed momentum estimate.
    """
    cluster_keys: List[int] = field(default_factory=list)
    crossing: Optional[int] = None
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    q_over_r: float = 0.0
    momentum: np.ndarray = field(default_factory=lambda: np.zeros(3))


@dataclass(frozen=True)
class SeedLink:
    """Association of one silicon seed with one TPC seed (indices may be missing)."""
    silicon_index: Optional[int]
    tpc_index: Optional[int]


def _get(seeds: Sequence[Optional[TrackSeed]], index: Optional[int]) -> Optional[TrackSeed]:
    if index is None or not (0 <= index < len(seeds)):
        return None
    return seeds[index]


def candidates_from_seeds(
    links: Sequence[Optional[SeedLink]],
    silicon_seeds: Sequence[Optional[TrackSeed]],
    tpc_seeds: Sequence[Optional[TrackSeed]],
    track_map: Optional[TrackMap] = None,
) -> TrackMap:
    r"""
    Reset ``track_map`` and fill it with one candidate per usable seed link.

    A link is skipped when its silicon seed is missing, has no crossing, or
    its TPC seed is missing. Accepted links get sequential ids starting at 0.
    The position comes from the silicon seed; charge
    (:math:`\mathrm{sign}(q/R)`) and momentum from the TPC seed.
    """
    out = track_map if track_map is not None else TrackMap()
    out.reset()
    track_id = 0
    for link in links:
        if link is None:
            continue
        si = _get(silicon_seeds, link.silicon_index)
        if si is None or si.crossing is None:
            continue
        tpc = _get(tpc_seeds, link.tpc_index)
        if tpc is None:
            continue

        keys: List[int] = []
        seen = set()
        for key in list(si.cluster_keys) + list(tpc.cluster_keys):
            if int(key) not in seen:
                seen.add(int(key))
                keys.append(int(key))

        out.insert(TrackCandidate(
            id=track_id,
            crossing=int(si.crossing),
            charge=1 if tpc.q_over_r > 0 else -1,
            position=np.array(si.position, dtype=np.float64),
            momentum=np.array(tpc.momentum, dtype=np.float64),
            cluster_keys=keys,
        ))
        track_id += 1
    logger.debug("Built %d track candidates from %d seed links", len(out), len(links))
    return out
