import logging
import pstats

import pytest

from refit_reco.profiling import _resolve_sort_key, prof


@pytest.mark.parametrize("name,key", [
    ("tottime", pstats.SortKey.TIME),
    ("cumtime", pstats.SortKey.CUMULATIVE),
    ("ncalls", pstats.SortKey.CALLS),
    ("file", pstats.SortKey.FILENAME),
    ("nfl", pstats.SortKey.NFL),
    ("stdname", pstats.SortKey.STDNAME),
    ("LINE", pstats.SortKey.LINE),
    ("nonsense", pstats.SortKey.TIME),
])
def test_sort_key_names(name, key):
    assert _resolve_sort_key(name) is key


def test_sort_key_passthrough():
    assert _resolve_sort_key(pstats.SortKey.PCALLS) is pstats.SortKey.PCALLS


def test_disabled_profiler_yields_none():
    with prof(False) as pr:
        assert pr is None


def test_report_to_file(tmp_path):
    out = tmp_path / "prof.txt"
    with prof(True, sort="file", limit=5, out_path=str(out)):
        sum(i * i for i in range(1000))
    text = out.read_text(encoding="utf-8")
    assert text.startswith("[prof] elapsed=")
    assert "sort=file" in text


def test_report_to_logger(caplog):
    log = logging.getLogger("refit_reco.tests.prof")
    with caplog.at_level(logging.INFO, logger="refit_reco.tests.prof"):
        with prof(True, logger=log, limit=None):
            sorted(range(100), reverse=True)
    assert "[prof] elapsed=" in caplog.text
