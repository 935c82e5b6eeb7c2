r"""
States for clusters on layers excluded from the fit.

For a disabled cluster at radius :math:`r_c`, let ``id`` be the first fit
point (in fit order) whose smoothed radius exceeds :math:`r_c`:

- the forward update at ``id - 1`` (or at the running anchor when ``id`` is
  0) is extrapolated to the cluster position; the path length is offset by
  the backward update's extrapolation to the vertex so that it shares the
  origin of the other track states;
- when ``id`` is an interior point, the backward update at ``id`` is moved
  onto the same plane and both estimates are combined with
  :func:`refit_reco.kernels.average_states`.

Fit points are assumed to be ordered by increasing radius. When they are not
(e.g. looping tracks), ``id`` is chosen by path length instead: the cluster's
path length is estimated from its nearest fit point and ``id`` is the first
point beyond it.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree

from refit_reco.engine import FittedTrajectory, MeasuredState
from refit_reco.kernels import average_states
from refit_reco.measurements import DisabledCluster
from refit_reco.tracks import TrackState

__all__ = ["interpolate_disabled_layers"]

logger = logging.getLogger(__name__)


def _radius(state: Optional[MeasuredState]) -> Optional[float]:
    if state is None:
        return None
    return float(np.hypot(state.pos[0], state.pos[1]))


def _first_beyond(values: Sequence[Optional[float]], threshold: float, start: int) -> int:
    for i in range(start, len(values)):
        if values[i] is not None and values[i] > threshold:
            return i
    return len(values)


class _PathLengthAnchor:
    """Fallback anchor search for fit points that are not ordered in radius."""

    def __init__(self, trajectory: FittedTrajectory, states: List[Optional[MeasuredState]], vertex) -> None:
        self.trajectory = trajectory
        self.ids: List[int] = []
        self.paths: List[float] = []
        points = []
        for i, s in enumerate(states):
            if s is None:
                continue
            back = trajectory.propagate_to_point(s, vertex)
            if back is None:
                continue
            self.ids.append(i)
            self.paths.append(-back.path_length)
            points.append(s.pos)
        self.states = states
        self.tree = cKDTree(np.asarray(points)) if points else None
        self.all_paths: List[Optional[float]] = [None] * len(states)
        for i, p in zip(self.ids, self.paths):
            self.all_paths[i] = p

    def __call__(self, position: np.ndarray) -> int:
        if self.tree is None:
            return len(self.states)
        _, k = self.tree.query(position)
        i = self.ids[int(k)]
        s = self.states[i]
        d = s.mom / np.linalg.norm(s.mom)
        path = self.paths[int(k)] + float(d @ (position - s.pos))
        return _first_beyond(self.all_paths, path, 0)


def interpolate_disabled_layers(
    trajectory: FittedTrajectory,
    disabled: Sequence[DisabledCluster],
    vertex,
) -> List[TrackState]:
    """
    One synthesized :class:`TrackState` per disabled layer that can be reached.

    Clusters are handled in increasing radius. Failures are local to one
    cluster: its state is omitted and the others are still attempted. When a
    layer holds several clusters of the candidate only the innermost one is
    interpolated.
    """
    if not disabled:
        return []
    vertex = np.asarray(vertex, dtype=np.float64).reshape(3)
    n = trajectory.n_points
    smoothed = [trajectory.fitted_state(i) for i in range(n)]
    radii = [_radius(s) for s in smoothed]

    known = [r for r in radii if r is not None]
    monotonic = all(b >= a for a, b in zip(known, known[1:]))
    anchor = None
    if not monotonic:
        logger.warning("fit points are not ordered in radius; anchoring disabled layers by path length")
        anchor = _PathLengthAnchor(trajectory, smoothed, vertex)

    out: List[TrackState] = []
    done_layers = set()
    id_min = 0
    for cluster in sorted(disabled, key=lambda c: c.radius):
        if cluster.layer in done_layers:
            logger.debug("layer %d already interpolated, cluster %d ignored", cluster.layer, cluster.cluster_key)
            continue

        if anchor is None:
            idx = _first_beyond(radii, cluster.radius, id_min)
            if idx > 0:
                id_min = idx - 1
        else:
            # path-length anchors are not monotonic in radius order
            idx = anchor(cluster.position)
            id_min = max(idx - 1, 0)

        fwd = trajectory.forward_update(id_min)
        if fwd is None:
            logger.debug("no forward update at %d for disabled layer %d", id_min, cluster.layer)
            continue
        ext = trajectory.propagate_to_point(fwd, cluster.position)
        bwd_ref = trajectory.backward_update(id_min)
        back = trajectory.propagate_to_point(bwd_ref, vertex) if bwd_ref is not None else None
        if ext is None or back is None:
            logger.debug("failed to forward extrapolate from %d to disabled layer %d", id_min, cluster.layer)
            continue
        path_length = ext.path_length - back.path_length
        state = ext.state

        if 0 < idx < n:
            bwd = trajectory.backward_update(idx)
            moved = trajectory.propagate_to_plane(bwd, state.plane) if bwd is not None else None
            if moved is None:
                logger.debug("failed to backward extrapolate from %d to disabled layer %d", idx, cluster.layer)
                continue
            try:
                x, C = average_states(state.state, state.cov, moved.state.state, moved.state.cov)
            except np.linalg.LinAlgError as e:
                logger.debug("averaging failed for disabled layer %d: %s", cluster.layer, e)
                continue
            state = MeasuredState(state.plane, x, C, state.charge)

        out.append(TrackState.from_measured(path_length, state, cluster.cluster_key))
        done_layers.add(cluster.layer)
    return out
