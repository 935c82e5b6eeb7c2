r"""
Per-event track refit.

For every track candidate of an event:

1. build radius-ordered measurements (:mod:`refit_reco.measurements`),
2. build a loose seed (:func:`refit_reco.seeds.make_seed`),
3. fit once (:class:`refit_reco.fit_driver.FitDriver`),
4. assemble the output record: DCA observables and reference state at the
   vertex (:mod:`refit_reco.dca`), one state per fitted point
   (:mod:`refit_reco.extraction`) and one per disabled layer
   (:mod:`refit_reco.interpolation`).

A candidate that fails any step is erased from the event's track map; a
successful one is replaced by its :class:`~refit_reco.tracks.OutputTrack`.
Nothing raised by a single track escapes :meth:`TrackRefitter.process_event`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from refit_reco.clusters import ClusterStore, GeometryService
from refit_reco.config import FitterConfig
from refit_reco.dca import compute_dca
from refit_reco.engine import FittedTrajectory, FittingEngine
from refit_reco.extraction import extract_states
from refit_reco.fit_driver import FitDriver
from refit_reco.interpolation import interpolate_disabled_layers
from refit_reco.measurements import MeasurementSet, build_measurements
from refit_reco.seeds import SeedLink, TrackSeed, candidates_from_seeds, make_seed
from refit_reco.tracks import OutputTrack, TrackCandidate, TrackMap

__all__ = ["Event", "TrackRefitter", "make_output_track", "refit_candidates"]

logger = logging.getLogger(__name__)


@dataclass
class Event:
    r"""
    Inputs of one event.

    Attributes
    ----------
    clusters : ClusterStore
        Event-scoped cluster container.
    geometry : GeometryService or None
        Surface lookup; inferred from ``clusters`` when ``None``.
    links : list of SeedLink
        Silicon/TPC seed associations.
    silicon_seeds, tpc_seeds : list of TrackSeed
        Seeds referenced by ``links``.
    """
    clusters: ClusterStore
    geometry: Optional[GeometryService] = None
    links: List[SeedLink] = field(default_factory=list)
    silicon_seeds: List[TrackSeed] = field(default_factory=list)
    tpc_seeds: List[TrackSeed] = field(default_factory=list)


def _dump_states(track: OutputTrack) -> None:
    for s in track.states:
        logger.debug("track %d: path %.4f r %.4f phi %.4f z %.4f key %s",
                     track.id, s.path_length, s.r, s.phi, s.position[2], s.cluster_key)


def make_output_track(
    candidate: TrackCandidate,
    trajectory: FittedTrajectory,
    measurements: MeasurementSet,
    config: FitterConfig,
) -> Optional[OutputTrack]:
    r"""
    Turn a fitted candidate into an :class:`OutputTrack`.

    Identity fields (id, crossing, cluster keys) come from ``candidate``.
    Charge, :math:`\chi^2` and ndf come from the fit; position, momentum and
    the 6x6 covariance are those of the fitted state at the closest approach
    to the configured vertex.

    Returns
    -------
    OutputTrack or None
        ``None`` when the DCA extrapolations fail; the track must then be
        dropped.
    """
    vertex = config.vertex_position
    dca = compute_dca(trajectory, vertex, config.vertex_cov)
    if dca is None:
        logger.debug("track %d: DCA extrapolation failed, track dropped", candidate.id)
        return None

    out = OutputTrack.from_candidate(candidate)
    out.charge = trajectory.charge
    out.chisq = trajectory.chi2
    out.ndf = trajectory.ndf

    vs = dca.vertex_state
    out.position = vs.pos.copy()
    out.momentum = vs.mom.copy()
    out.covariance = vs.cov.copy()

    out.dca2d = dca.dca2d
    out.dca2d_error = dca.dca2d_error
    out.dca = dca.dca
    out.dca_error = dca.dca_error
    out.dca3d_xy = dca.dca3d_xy
    out.dca3d_z = dca.dca3d_z
    out.dca3d_xy_error = dca.dca3d_xy_error
    out.dca3d_z_error = dca.dca3d_z_error

    out.clear_states()
    for state in extract_states(trajectory, vertex):
        out.insert_state(state)
    for state in interpolate_disabled_layers(trajectory, measurements.disabled, vertex):
        out.insert_state(state)

    if logger.isEnabledFor(logging.DEBUG):
        _dump_states(out)
    return out


class TrackRefitter:
    r"""
    Refits every track candidate of an event.

    Parameters
    ----------
    engine : FittingEngine
        Trajectory-fitting engine; anything else raises :class:`TypeError`.
    config : FitterConfig, optional
        Refit configuration (defaults when omitted).

    Attributes
    ----------
    n_events : int
        Number of :meth:`process_event` calls so far.
    driver : FitDriver
        Engine wrapper, also holding the fit call and failure counters.
    """

    def __init__(self, engine: FittingEngine, config: Optional[FitterConfig] = None) -> None:
        self.config = config if config is not None else FitterConfig()
        self.driver = FitDriver(engine, pdg=self.config.primary_pid_guess)
        self.n_events = 0

    def refit(
        self,
        candidate: TrackCandidate,
        clusters: ClusterStore,
        geometry: GeometryService,
    ) -> Optional[OutputTrack]:
        """Run the full chain for one candidate; ``None`` means drop it."""
        if not candidate.pt > self.config.fit_min_pt:
            logger.debug("track %d: pt %.4g below threshold, not fitted", candidate.id, candidate.pt)
            return None

        measurements = build_measurements(
            candidate.cluster_keys, candidate.crossing, clusters, geometry, self.config
        )
        if not measurements.ok:
            logger.debug("track %d rejected: %s", candidate.id, measurements.rejection)
            return None

        seed = make_seed(measurements.measurements, self.config)
        trajectory = self.driver.fit(seed, measurements.measurements, track_id=candidate.id)
        if trajectory is None:
            return None
        return make_output_track(candidate, trajectory, measurements, self.config)

    def refit_map(self, track_map: TrackMap, clusters: ClusterStore,
                  geometry: GeometryService) -> TrackMap:
        """Replace fitted candidates of ``track_map`` in place and erase the rest."""
        for key in track_map:
            candidate = track_map[key]
            if isinstance(candidate, OutputTrack):
                continue
            out = self.refit(candidate, clusters, geometry)
            if out is None:
                track_map.erase(key)
            else:
                track_map[key] = out
        return track_map

    def process_event(self, event: Event) -> TrackMap:
        """
        Assemble candidates from the event's seeds and refit them.

        Returns
        -------
        TrackMap
            Holding only :class:`OutputTrack` entries.
        """
        self.n_events += 1
        logger.debug("Processing event %d", self.n_events)

        geometry = event.geometry
        if geometry is None:
            geometry = GeometryService.from_clusters(event.clusters)

        track_map = candidates_from_seeds(event.links, event.silicon_seeds, event.tpc_seeds)
        n_candidates = len(track_map)
        calls, failed = self.driver.n_calls, self.driver.n_failed
        self.refit_map(track_map, event.clusters, geometry)
        logger.info(
            "Event %d: %d candidates, %d fits, %d failed, %d tracks kept",
            self.n_events, n_candidates, self.driver.n_calls - calls,
            self.driver.n_failed - failed, len(track_map),
        )
        return track_map


def refit_candidates(refitter: TrackRefitter, candidates: Sequence[TrackCandidate],
                     clusters: ClusterStore, geometry: GeometryService) -> TrackMap:
    """Refit an explicit list of candidates into a fresh :class:`TrackMap`."""
    track_map = TrackMap()
    for candidate in candidates:
        track_map.insert(candidate)
    return refitter.refit_map(track_map, clusters, geometry)
