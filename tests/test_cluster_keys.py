import pytest

import refit_reco.cluster_keys as ck
from refit_reco.cluster_keys import TrkrId


def test_key_fields_roundtrip():
    hsk = ck.make_hitset_key(TrkrId.TPC, 30, extra=0x1234)
    key = ck.make_cluster_key(hsk, 77)
    assert ck.hitset_key(key) == hsk
    assert ck.trkr_id(key) == TrkrId.TPC
    assert ck.layer(key) == 30
    assert ck.cluster_index(key) == 77


def test_key_is_64_bit():
    key = ck.make_cluster_key(ck.make_hitset_key(TrkrId.MICROMEGAS, 255, 0xFFFF), 0xFFFFFFFF)
    assert 0 < key < 2 ** 64
    assert ck.layer(key) == 255
    assert ck.trkr_id(key) == TrkrId.MICROMEGAS


@pytest.mark.parametrize("args", [(256, 0), (1, 256), (-1, 0)])
def test_hitset_key_range_checks(args):
    with pytest.raises(ValueError):
        ck.make_hitset_key(*args)


def test_cluster_index_range_check():
    with pytest.raises(ValueError):
        ck.make_cluster_key(ck.make_hitset_key(TrkrId.MVTX, 0), 2 ** 32)


def test_tpc_layers_and_silicon_ids():
    assert ck.TPC_LAYERS[0] == 7 and ck.TPC_LAYERS[-1] == 54
    assert len(ck.TPC_LAYERS) == 48
    assert TrkrId.MVTX in ck.SILICON_IDS and TrkrId.INTT in ck.SILICON_IDS
    assert TrkrId.TPC not in ck.SILICON_IDS
