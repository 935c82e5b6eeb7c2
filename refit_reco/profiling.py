from __future__ import annotations

import cProfile
import io
import logging
import pstats
import time
from contextlib import contextmanager
from typing import Optional, Union

__all__ = ["prof"]

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "pcalls": pstats.SortKey.PCALLS,
    "name": pstats.SortKey.NAME,
    "stdname": pstats.SortKey.STDNAME,
    "nfl": pstats.SortKey.NFL,
    "file": pstats.SortKey.FILENAME,
    "line": pstats.SortKey.LINE,
}


def _resolve_sort_key(sort: Union[str, pstats.SortKey]) -> pstats.SortKey:
    """Map ``"tottime"``, ``"cumtime"``, ... to :class:`pstats.SortKey`; unknown names sort by total time."""
    if isinstance(sort, pstats.SortKey):
        return sort
    return _SORT_KEYS.get(str(sort).lower(), pstats.SortKey.TIME)


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: Union[str, pstats.SortKey] = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
):
    r"""
    CPU profiler context manager around :class:`cProfile.Profile`.

    When ``enable`` is ``False`` the block runs unprofiled and ``None`` is
    yielded. Otherwise the text report (header with the elapsed wall time
    :math:`\Delta t = t_1 - t_0`) is written to ``out_path``, or logged via
    ``logger.info``, or printed.

    Parameters
    ----------
    enable : bool, default: False
    sort : str or pstats.SortKey, default: ``"tottime"``
    limit : int or None, default: 25
        Row limit of the report; ``None`` prints all rows.
    out_path : str, optional
    logger : logging.Logger, optional

    Examples
    --------
    >>> with prof(True, sort="cumtime", limit=10):
    ...     refitter.process_event(event)
    """
    if not enable:
        yield None
        return

    pr = cProfile.Profile()
    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        t1 = time.perf_counter()

        s = io.StringIO()
        ps = pstats.Stats(pr, stream=s)
        ps.strip_dirs()
        ps.sort_stats(_resolve_sort_key(sort))
        ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={t1 - t0:.6f}s sort={sort} limit={limit}\n" + s.getvalue()

        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(text)
        elif logger is not None:
            logger.info(text)
        else:
            print(text, end="")
