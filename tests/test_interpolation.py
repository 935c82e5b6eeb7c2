import logging

import numpy as np
import pytest

from conftest import CROSSING
from refit_reco.cluster_keys import TrkrId, layer, make_cluster_key, make_hitset_key
from refit_reco.config import FitterConfig
from refit_reco.engines.straight_line import StraightLineTrajectory
from refit_reco.extraction import extract_states
from refit_reco.interpolation import interpolate_disabled_layers
from refit_reco.measurements import DisabledCluster, build_measurements, pixel_measurement
from refit_reco.seeds import SeedState, make_seed


def _fit(keys, clusters, geometry, engine, config):
    msset = build_measurements(keys, CROSSING, clusters, geometry, config)
    outcome = engine.fit(make_seed(msset.measurements, config), msset.measurements, 211)
    assert outcome.ok
    return msset, outcome.trajectory


def test_no_disabled_clusters(fitted):
    _, traj = fitted
    assert interpolate_disabled_layers(traj, [], np.zeros(3)) == []


def test_interior_layer_is_interpolated(track_keys, clusters, geometry, engine):
    msset, traj = _fit(track_keys, clusters, geometry, engine, FitterConfig().with_disabled_layer(30))
    states = interpolate_disabled_layers(traj, msset.disabled, np.zeros(3))
    assert len(states) == 1
    state = states[0]
    assert layer(state.cluster_key) == 30
    np.testing.assert_allclose(state.position, msset.disabled[0].position, atol=1e-6)
    assert state.path_length == pytest.approx(np.linalg.norm(msset.disabled[0].position), abs=1e-6)

    fitted_paths = {layer(s.cluster_key): s.path_length for s in extract_states(traj, np.zeros(3))}
    assert fitted_paths[29] < state.path_length < fitted_paths[31]


def test_layers_outside_fit_range(track_keys, clusters, geometry, engine):
    # innermost and outermost layers: forward extrapolation only
    cfg = FitterConfig().with_disabled_layers([0, 46])
    msset, traj = _fit(track_keys, clusters, geometry, engine, cfg)
    states = interpolate_disabled_layers(traj, msset.disabled, np.zeros(3))
    assert sorted(layer(s.cluster_key) for s in states) == [0, 46]
    for s, d in zip(sorted(states, key=lambda s: s.path_length), msset.disabled):
        np.testing.assert_allclose(s.position, d.position, atol=1e-5)


def test_one_state_per_layer(fitted):
    _, traj = fitted
    hsk = make_hitset_key(TrkrId.TPC, 30)
    s10, s11 = traj.fitted_state(10), traj.fitted_state(11)
    mid = 0.5 * (s10.pos + s11.pos)
    disabled = [DisabledCluster(make_cluster_key(hsk, 1), mid),
                DisabledCluster(make_cluster_key(hsk, 2), mid * 1.001)]
    states = interpolate_disabled_layers(traj, disabled, np.zeros(3))
    assert [s.cluster_key for s in states] == [make_cluster_key(hsk, 1)]


def test_non_monotonic_radius_falls_back_to_path_length(engine, caplog):
    # straight line passing at 5 cm from the beam: radii decrease, then increase
    xs = np.arange(-18.0, 19.0, 4.0)
    measurements = []
    for i, x in enumerate(xs):
        key = make_cluster_key(make_hitset_key(TrkrId.TPC, 7 + i), 0)
        measurements.append(pixel_measurement(key, (x, 5.0, 0.5 * x), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0), 0.01, 0.01))
    seed = SeedState(position=np.array([-20.0, 5.0, -10.0]), momentum=np.array([10.0, 0.0, 5.0]),
                     covariance=np.full((6, 6), 100.0))
    outcome = engine.fit(seed, measurements, 211)
    assert outcome.ok
    traj = outcome.trajectory

    key = make_cluster_key(make_hitset_key(TrkrId.TPC, 40), 0)
    cluster = DisabledCluster(key, np.array([0.5, 5.0, 0.25]))
    with caplog.at_level(logging.WARNING, logger="refit_reco.interpolation"):
        states = interpolate_disabled_layers(traj, [cluster], np.zeros(3))
    assert "not ordered in radius" in caplog.text
    assert len(states) == 1
    np.testing.assert_allclose(states[0].position, cluster.position, atol=1e-6)
    # path length is measured from the closest approach to the vertex
    assert states[0].path_length == pytest.approx(0.5 * np.sqrt(1.25), abs=1e-6)


def test_failed_extrapolation_skips_layer(fitted):
    _, traj = fitted
    key = make_cluster_key(make_hitset_key(TrkrId.TPC, 30), 0)
    # NaN position: extrapolation cannot succeed
    bad = DisabledCluster(key, np.array([np.nan, np.nan, np.nan]))
    good_key = make_cluster_key(make_hitset_key(TrkrId.TPC, 31), 0)
    good = DisabledCluster(good_key, traj.fitted_state(20).pos.copy())
    states = interpolate_disabled_layers(traj, [bad, good], np.zeros(3))
    assert [s.cluster_key for s in states] == [good_key]


class RecordingTrajectory(StraightLineTrajectory):
    def __init__(self, traj):
        super().__init__(traj.cluster_keys, traj._fwd, traj._bwd, traj._smoothed,
                         traj.chi2, traj.ndf, traj.charge)
        self.forward_ids = []

    def forward_update(self, point_id):
        self.forward_ids.append(point_id)
        return super().forward_update(point_id)


def test_path_length_anchor_restarts_for_each_cluster(engine):
    xs = np.arange(-18.0, 19.0, 4.0)
    measurements = []
    for i, x in enumerate(xs):
        key = make_cluster_key(make_hitset_key(TrkrId.TPC, 7 + i), 0)
        measurements.append(pixel_measurement(key, (x, 5.0, 0.5 * x), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0), 0.01, 0.01))
    seed = SeedState(position=np.array([-20.0, 5.0, -10.0]), momentum=np.array([10.0, 0.0, 5.0]),
                     covariance=np.full((6, 6), 100.0))
    outcome = engine.fit(seed, measurements, 211)
    assert outcome.ok
    traj = RecordingTrajectory(outcome.trajectory)

    # the outer cluster sits before the first fit point along the track
    inner = DisabledCluster(make_cluster_key(make_hitset_key(TrkrId.TPC, 40), 0), np.array([15.5, 5.0, 7.75]))
    outer = DisabledCluster(make_cluster_key(make_hitset_key(TrkrId.TPC, 41), 0), np.array([-19.0, 5.0, -9.5]))
    states = interpolate_disabled_layers(traj, [outer, inner], np.zeros(3))

    assert traj.forward_ids == [8, 0]
    by_key = {s.cluster_key: s for s in states}
    np.testing.assert_allclose(by_key[outer.cluster_key].position, outer.position, atol=1e-6)
    np.testing.assert_allclose(by_key[inner.cluster_key].position, inner.position, atol=1e-6)
    assert by_key[outer.cluster_key].path_length == pytest.approx(-19.0 * np.sqrt(1.25), abs=1e-6)
