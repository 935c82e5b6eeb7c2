import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

from refit_reco.cluster_keys import TrkrId, make_cluster_key, make_hitset_key
from refit_reco.clusters import ClusterStore, GeometryService
from refit_reco.config import FitterConfig
from refit_reco.engines.straight_line import StraightLineEngine
from refit_reco.measurements import build_measurements
from refit_reco.refitter import Event
from refit_reco.seeds import SeedLink, TrackSeed, make_seed

PHI0 = 0.3
TAN_LAMBDA = 0.2
CROSSING = 5
# (subsystem, layer, radius [cm])
SILICON_LAYERS = ((TrkrId.MVTX, 0, 2.0), (TrkrId.MVTX, 1, 4.0), (TrkrId.INTT, 2, 8.0))
TPC_LAYERS = tuple(range(7, 47))
MICROMEGAS_LAYER = (TrkrId.MICROMEGAS, 55, 80.0)


def tpc_radius(layer: int) -> float:
    return 30.0 + (layer - 7) * 45.0 / 39.0


def direction(phi: float = PHI0) -> np.ndarray:
    d = np.array([np.cos(phi), np.sin(phi), TAN_LAMBDA])
    return d / np.linalg.norm(d)


def _point(r: float, phi: float) -> np.ndarray:
    return np.array([r * np.cos(phi), r * np.sin(phi), r * TAN_LAMBDA])


def _cluster(detector, layer, index, r, phi, rphi_error, z_error):
    key = make_cluster_key(make_hitset_key(detector, layer), index)
    x, y, z = _point(r, phi)
    return key, {"cluster_key": key, "x": x, "y": y, "z": z,
                 "rphi_error": rphi_error, "z_error": z_error}


def make_event(n_tracks: int = 1, with_micromegas: bool = False, silicon: bool = True,
               spread: float = 0.8) -> dict:
    r"""
    Straight tracks from the origin, one per azimuth ``PHI0 + i * spread``.

    Track ``i`` owns cluster index ``i`` on every layer. Returns the
    :class:`Event` together with the per-track cluster keys.
    """
    records, silicon_seeds, tpc_seeds, links = [], [], [], []
    si_keys_all, tpc_keys_all, mm_keys_all = [], [], []
    for i in range(n_tracks):
        phi = PHI0 + i * spread
        si_keys, tpc_keys, mm_keys = [], [], []
        if silicon:
            for det, layer, r in SILICON_LAYERS:
                key, rec = _cluster(det, layer, i, r, phi, 5e-4, 5e-4)
                si_keys.append(key)
                records.append(rec)
        for layer in TPC_LAYERS:
            key, rec = _cluster(TrkrId.TPC, layer, i, tpc_radius(layer), phi, 0.015, 0.05)
            tpc_keys.append(key)
            records.append(rec)
        if with_micromegas:
            det, layer, r = MICROMEGAS_LAYER
            key, rec = _cluster(det, layer, i, r, phi, 0.02, 0.02)
            mm_keys.append(key)
            records.append(rec)

        silicon_seeds.append(TrackSeed(cluster_keys=si_keys, crossing=CROSSING,
                                       position=np.zeros(3)))
        tpc_seeds.append(TrackSeed(cluster_keys=tpc_keys + mm_keys, q_over_r=0.01,
                                   momentum=np.array([np.cos(phi), np.sin(phi), TAN_LAMBDA])))
        links.append(SeedLink(i, i))
        si_keys_all.append(si_keys)
        tpc_keys_all.append(tpc_keys)
        mm_keys_all.append(mm_keys)

    clusters = ClusterStore.from_records(records)
    event = Event(clusters=clusters, geometry=None, links=links,
                  silicon_seeds=silicon_seeds, tpc_seeds=tpc_seeds)
    return {"event": event, "silicon_keys": si_keys_all, "tpc_keys": tpc_keys_all,
            "mm_keys": mm_keys_all}


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def straight_event():
    return make_event()


@pytest.fixture
def clusters(straight_event):
    return straight_event["event"].clusters


@pytest.fixture
def geometry(clusters):
    return GeometryService.from_clusters(clusters)


@pytest.fixture
def track_keys(straight_event):
    return straight_event["silicon_keys"][0] + straight_event["tpc_keys"][0]


@pytest.fixture
def engine():
    return StraightLineEngine()


@pytest.fixture
def fitted(track_keys, clusters, geometry, engine):
    """Measurements and trajectory of the single straight track, fitted with defaults."""
    config = FitterConfig()
    msset = build_measurements(track_keys, CROSSING, clusters, geometry, config)
    seed = make_seed(msset.measurements, config)
    outcome = engine.fit(seed, msset.measurements, 211)
    assert outcome.ok, outcome.message
    return msset, outcome.trajectory
