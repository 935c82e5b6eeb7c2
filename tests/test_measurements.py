import numpy as np
import pytest

from conftest import CROSSING, TAN_LAMBDA
from refit_reco.cluster_keys import TrkrId, layer, make_cluster_key, make_hitset_key
from refit_reco.clusters import ClusterStore, GeometryService
from refit_reco.config import FitterConfig
from refit_reco.measurements import (
    DetectorKind,
    build_measurements,
    detector_kind,
    pixel_measurement,
    projective_measurement,
)


def test_detector_kind_dispatch():
    hs = lambda det: make_cluster_key(make_hitset_key(det, 1), 0)
    assert detector_kind(hs(TrkrId.MVTX)) is DetectorKind.PIXEL
    assert detector_kind(hs(TrkrId.INTT)) is DetectorKind.PIXEL
    assert detector_kind(hs(TrkrId.MICROMEGAS)) is DetectorKind.PIXEL
    assert detector_kind(hs(TrkrId.TPC)) is DetectorKind.PROJECTIVE
    assert detector_kind(hs(9)) is None


def test_projective_frame():
    m = projective_measurement(1, (0.0, 30.0, 2.0), (0.0, 30.0, 0.0), 0.015, 0.05)
    # u = z x n points along -x at phi = 90 deg
    np.testing.assert_allclose(m.plane.u, [-1.0, 0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(m.plane.v, [0.0, 0.0, 1.0])
    np.testing.assert_allclose(m.plane.normal, [0.0, 1.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(m.covariance, np.diag([0.015 ** 2, 0.05 ** 2]))
    assert m.radius == pytest.approx(30.0)
    with pytest.raises(ValueError):
        projective_measurement(1, (0.0, 0.0, 2.0), (0.0, 0.0, 1.0), 0.015, 0.05)


def test_pixel_measurement_keeps_basis():
    m = pixel_measurement(7, (2.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0), 5e-4, 5e-4)
    assert m.kind is DetectorKind.PIXEL
    assert m.cluster_key == 7
    np.testing.assert_allclose(m.plane.origin, [2.0, 0.0, 0.0])
    assert m.dim == 2


def test_sorted_by_radius(track_keys, clusters, geometry):
    shuffled = list(reversed(track_keys))
    msset = build_measurements(shuffled, CROSSING, clusters, geometry, FitterConfig())
    assert msset.ok
    assert len(msset.measurements) == 43
    radii = [m.radius for m in msset.measurements]
    assert all(b >= a for a, b in zip(radii, radii[1:]))
    assert msset.n_silicon == 3 and msset.n_micromegas == 0
    kinds = [m.kind for m in msset.measurements]
    assert kinds[:3] == [DetectorKind.PIXEL] * 3
    assert set(kinds[3:]) == {DetectorKind.PROJECTIVE}


def test_duplicate_keys_ignored(track_keys, clusters, geometry):
    msset = build_measurements(track_keys + track_keys[:5], CROSSING, clusters, geometry, FitterConfig())
    assert len(msset.measurements) == 43


def test_disabled_layer_skipped(track_keys, clusters, geometry):
    cfg = FitterConfig().with_disabled_layer(30)
    msset = build_measurements(track_keys, CROSSING, clusters, geometry, cfg)
    assert len(msset.measurements) == 42
    assert all(layer(m.cluster_key) != 30 for m in msset.measurements)
    assert [layer(d.cluster_key) for d in msset.disabled] == [30]
    assert msset.disabled[0].radius == pytest.approx(np.hypot(*msset.disabled[0].position[:2]))


def test_missing_cluster_rejects(track_keys, clusters, geometry):
    ghost = make_cluster_key(make_hitset_key(TrkrId.TPC, 50), 0)
    msset = build_measurements(track_keys + [ghost], CROSSING, clusters, geometry, FitterConfig())
    assert not msset.ok
    assert "not found" in msset.rejection


def test_missing_surface_rejects(track_keys, clusters):
    msset = build_measurements(track_keys, CROSSING, clusters, GeometryService(), FitterConfig())
    assert not msset.ok
    assert "surface" in msset.rejection


def test_silicon_mms_rejects_without_silicon(straight_event, clusters, geometry):
    cfg = FitterConfig().with_fit_silicon_mms(True)
    msset = build_measurements(straight_event["tpc_keys"][0], CROSSING, clusters, geometry, cfg)
    assert msset.rejection == "no silicon cluster"


def test_silicon_mms_requires_micromegas(track_keys, clusters, geometry):
    cfg = FitterConfig().with_fit_silicon_mms(True)
    msset = build_measurements(track_keys, CROSSING, clusters, geometry, cfg)
    assert msset.rejection == "no micromegas cluster"

    relaxed = FitterConfig(use_micromegas=False).with_fit_silicon_mms(True)
    msset = build_measurements(track_keys, CROSSING, clusters, geometry, relaxed)
    assert msset.ok
    assert len(msset.measurements) == 3
    assert len(msset.disabled) == 40


def test_all_layers_disabled_rejects(track_keys, clusters, geometry):
    cfg = FitterConfig().with_disabled_layers(range(0, 60))
    msset = build_measurements(track_keys, CROSSING, clusters, geometry, cfg)
    assert msset.rejection == "no measurement on enabled layers"


def test_unknown_subsystem_rejects():
    key = make_cluster_key(make_hitset_key(9, 3), 0)
    store = ClusterStore.from_records([
        {"cluster_key": key, "x": 5.0, "y": 0.0, "z": 0.0, "rphi_error": 0.1, "z_error": 0.1},
    ])
    msset = build_measurements([key], 0, store, GeometryService(), FitterConfig())
    assert "unknown subsystem" in msset.rejection


def test_corrected_positions_are_used(track_keys):
    base = [{"cluster_key": k, "x": 0.0, "y": 0.0, "z": 0.0, "rphi_error": 0.01, "z_error": 0.01}
            for k in track_keys]
    # the corrector places every cluster on a line; raw positions are all zero
    def corrector(key, xyz, crossing):
        r = 2.0 + layer(key)
        return np.array([r, 0.0, r * TAN_LAMBDA])

    store = ClusterStore.from_records(base, corrector=corrector)
    geo = GeometryService()
    for k in track_keys[:3]:
        geo.register(k >> 32, (0.0, 1.0, 0.0), (0.0, 0.0, 1.0))
    msset = build_measurements(track_keys, CROSSING, store, geo, FitterConfig())
    assert msset.ok
    assert msset.measurements[0].radius == pytest.approx(2.0)
    assert msset.measurements[-1].radius == pytest.approx(2.0 + 46)
