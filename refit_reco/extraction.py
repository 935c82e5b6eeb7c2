from __future__ import annotations

import logging
from typing import List

import numpy as np

from refit_reco.engine import FittedTrajectory
from refit_reco.tracks import TrackState

__all__ = ["extract_states"]

logger = logging.getLogger(__name__)


def extract_states(trajectory: FittedTrajectory, vertex: np.ndarray) -> List[TrackState]:
    r"""
    One output state per fitted point, in fit order.

    For point :math:`i` the smoothed state is taken and its path length is
    :math:`-s_i`, where :math:`s_i` is the signed path length from the point
    back to its closest approach to ``vertex``. The state carries the cluster
    key of the point's measurement.

    A point whose state or path length cannot be obtained is skipped (logged)
    without affecting the others.
    """
    out: List[TrackState] = []
    keys = trajectory.cluster_keys
    for i in range(trajectory.n_points):
        state = trajectory.fitted_state(i)
        if state is None:
            logger.debug("point %d: no fitted state, skipped", i)
            continue
        back = trajectory.propagate_to_point(state, vertex)
        if back is None:
            logger.debug("point %d: extrapolation to vertex failed, skipped", i)
            continue
        out.append(TrackState.from_measured(-back.path_length, state, keys[i]))
    return out
