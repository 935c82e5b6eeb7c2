from __future__ import annotations

import logging
from typing import Optional, Sequence

from refit_reco.engine import FittedTrajectory, FittingEngine
from refit_reco.measurements import Measurement
from refit_reco.seeds import SeedState

__all__ = ["FitDriver"]

logger = logging.getLogger(__name__)


class FitDriver:
    r"""
    One engine call per candidate.

    A non-zero engine status and any exception raised by the engine
    (typically :class:`~refit_reco.engine.EngineError`) both mean *fit
    failed*; the caller drops the candidate. There is no retry: the fit is
    deterministic for fixed inputs.

    Parameters
    ----------
    engine : FittingEngine
        Trajectory-fitting engine.
    pdg : int, optional
        Particle hypothesis (default :math:`\pi^+`, ``211``).
    """

    __slots__ = ("engine", "pdg", "n_calls", "n_failed")

    def __init__(self, engine: FittingEngine, pdg: int = 211) -> None:
        if not isinstance(engine, FittingEngine):
            raise TypeError(f"engine must be a FittingEngine, got {type(engine).__name__}")
        self.engine = engine
        self.pdg = int(pdg)
        self.n_calls = 0
        self.n_failed = 0

    def fit(self, seed: SeedState, measurements: Sequence[Measurement],
            track_id: Optional[int] = None) -> Optional[FittedTrajectory]:
        """Fit ``measurements``; return the trajectory or ``None`` on failure."""
        self.n_calls += 1
        try:
            outcome = self.engine.fit(seed, measurements, self.pdg)
        except Exception as e:
            self.n_failed += 1
            logger.warning("Track fitting failed (track %s): %s", track_id, e)
            return None
        if not outcome.ok:
            self.n_failed += 1
            logger.warning("Track fitting failed (track %s): status %d %s",
                           track_id, outcome.status, outcome.message)
            return None
        traj = outcome.trajectory
        logger.debug("track %s: chi2=%.4g ndf=%.0f", track_id, traj.chi2, traj.ndf)
        return traj
