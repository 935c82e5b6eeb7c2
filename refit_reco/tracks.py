from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, MutableMapping, Optional, Union

import numpy as np
import pandas as pd

from refit_reco.engine import MeasuredState
from refit_reco.kernels import pack_upper, unpack_upper

__all__ = ["TrackCandidate", "TrackState", "OutputTrack", "TrackMap"]

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class TrackCandidate:
    r"""
    Track hypothesis handed over by pattern recognition.

    Attributes
    ----------
    id : int
        Identifier, also the key in :class:`TrackMap`.
    crossing : int
        Bunch-crossing id of the silicon seed.
    charge : int
        :math:`\pm 1`.
    position : (3,) ndarray
        Reference position (silicon seed).
    momentum : (3,) ndarray
        Reference momentum (TPC seed).
    cluster_keys : list of int
        Silicon seed keys followed by TPC seed keys, without duplicates.
    """
    id: int
    crossing: int
    charge: int
    position: np.ndarray
    momentum: np.ndarray
    cluster_keys: List[int] = field(default_factory=list)

    @property
    def pt(self) -> float:
        return float(np.hypot(self.momentum[0], self.momentum[1]))


@dataclass(frozen=True, eq=False)
class TrackState:
    r"""
    Immutable snapshot of a track at one path length.

    The 6x6 covariance of :math:`(x, y, z, p_x, p_y, p_z)` is stored packed as
    its 21 upper-triangle entries; :attr:`covariance` mirrors it into a full
    symmetric matrix.
    """
    path_length: float
    position: np.ndarray
    momentum: np.ndarray
    errors: np.ndarray
    cluster_key: Optional[int] = None

    def __post_init__(self) -> None:
        for name, size in (("position", 3), ("momentum", 3), ("errors", 21)):
            arr = np.array(getattr(self, name), dtype=np.float64).reshape(size)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)
        object.__setattr__(self, "path_length", float(self.path_length))

    @classmethod
    def placeholder(cls) -> "TrackState":
        """Empty state at path length zero."""
        return cls(0.0, np.zeros(3), np.zeros(3), np.zeros(21))

    @classmethod
    def from_measured(cls, path_length: float, state: MeasuredState,
                      cluster_key: Optional[int] = None) -> "TrackState":
        return cls(
            path_length=path_length,
            position=state.pos,
            momentum=state.mom,
            errors=pack_upper(state.cov),
            cluster_key=None if cluster_key is None else int(cluster_key),
        )

    @property
    def covariance(self) -> np.ndarray:
        return unpack_upper(self.errors)

    @property
    def r(self) -> float:
        return float(np.hypot(self.position[0], self.position[1]))

    @property
    def phi(self) -> float:
        return float(np.arctan2(self.position[1], self.position[0]))


@dataclass(slots=True, eq=False)
class OutputTrack:
    r"""
    Refitted track record.

    ``states`` is kept ordered by path length and always holds the
    placeholder state at path length zero. DCA fields default to NaN.
    """
    id: int
    crossing: int
    charge: float
    position: np.ndarray
    momentum: np.ndarray
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((6, 6)))
    chisq: float = math.nan
    ndf: float = math.nan
    dca2d: float = math.nan
    dca2d_error: float = math.nan
    dca: float = math.nan
    dca_error: float = math.nan
    dca3d_xy: float = math.nan
    dca3d_z: float = math.nan
    dca3d_xy_error: float = math.nan
    dca3d_z_error: float = math.nan
    cluster_keys: List[int] = field(default_factory=list)
    states: List[TrackState] = field(default_factory=lambda: [TrackState.placeholder()])

    @classmethod
    def from_candidate(cls, candidate: TrackCandidate) -> "OutputTrack":
        """Fresh record carrying the candidate's identity and reference kinematics."""
        return cls(
            id=candidate.id,
            crossing=candidate.crossing,
            charge=candidate.charge,
            position=np.array(candidate.position, dtype=np.float64),
            momentum=np.array(candidate.momentum, dtype=np.float64),
            cluster_keys=list(candidate.cluster_keys),
        )

    @property
    def pt(self) -> float:
        return float(np.hypot(self.momentum[0], self.momentum[1]))

    def clear_states(self) -> None:
        """Drop every state but a fresh placeholder."""
        self.states = [TrackState.placeholder()]

    def insert_state(self, state: TrackState) -> bool:
        """
        Insert ``state`` at its path-length position.

        Returns ``False`` (and leaves the track untouched) when a state with
        the same path length already exists.
        """
        keys = [s.path_length for s in self.states]
        i = bisect.bisect_left(keys, state.path_length)
        if i < len(keys) and keys[i] == state.path_length:
            logger.debug("track %d: state at path length %.6g already present", self.id, state.path_length)
            return False
        self.states.insert(i, state)
        return True

    def find_state(self, cluster_key: int) -> Optional[TrackState]:
        for s in self.states:
            if s.cluster_key == cluster_key:
                return s
        return None

    def states_frame(self) -> pd.DataFrame:
        """One row per state, ordered by path length."""
        rows = [
            {
                "track_id": self.id,
                "path_length": s.path_length,
                "x": s.position[0], "y": s.position[1], "z": s.position[2],
                "px": s.momentum[0], "py": s.momentum[1], "pz": s.momentum[2],
                "r": s.r, "phi": s.phi,
                "cluster_key": s.cluster_key,
            }
            for s in self.states
        ]
        df = pd.DataFrame(rows)
        df["cluster_key"] = df["cluster_key"].astype("Int64")
        return df


Track = Union[TrackCandidate, OutputTrack]


class TrackMap(MutableMapping):
    r"""
    Event track collection keyed by track id.

    Iteration walks a snapshot of the keys, so entries may be replaced or
    erased while iterating.
    """

    __slots__ = ("_tracks",)

    def __init__(self) -> None:
        self._tracks: Dict[int, Track] = {}

    def __getitem__(self, key: int) -> Track:
        return self._tracks[key]

    def __setitem__(self, key: int, track: Track) -> None:
        self._tracks[int(key)] = track

    def __delitem__(self, key: int) -> None:
        del self._tracks[key]

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._tracks))

    def __len__(self) -> int:
        return len(self._tracks)

    def insert(self, track: Track) -> None:
        self._tracks[int(track.id)] = track

    def erase(self, key: int) -> None:
        self._tracks.pop(key, None)

    def reset(self) -> None:
        self._tracks.clear()

    def output_tracks(self) -> List[OutputTrack]:
        return [t for t in self._tracks.values() if isinstance(t, OutputTrack)]

    def states_frame(self) -> pd.DataFrame:
        """Concatenated :meth:`OutputTrack.states_frame` of every refitted track."""
        frames = [t.states_frame() for t in self.output_tracks()]
        if not frames:
            return pd.DataFrame(columns=["track_id", "path_length", "x", "y", "z",
                                         "px", "py", "pz", "r", "phi", "cluster_key"])
        return pd.concat(frames, ignore_index=True)

    def tracks_frame(self) -> pd.DataFrame:
        """One summary row per refitted track."""
        rows = [
            {
                "track_id": t.id,
                "crossing": t.crossing,
                "charge": t.charge,
                "x": t.position[0], "y": t.position[1], "z": t.position[2],
                "px": t.momentum[0], "py": t.momentum[1], "pz": t.momentum[2],
                "pt": t.pt,
                "chisq": t.chisq,
                "ndf": t.ndf,
                "dca2d": t.dca2d, "dca2d_error": t.dca2d_error,
                "dca": t.dca, "dca_error": t.dca_error,
                "dca3d_xy": t.dca3d_xy, "dca3d_xy_error": t.dca3d_xy_error,
                "dca3d_z": t.dca3d_z, "dca3d_z_error": t.dca3d_z_error,
                "n_states": len(t.states) - 1,
            }
            for t in self.output_tracks()
        ]
        return pd.DataFrame(rows)
