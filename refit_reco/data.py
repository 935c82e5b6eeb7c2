from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional

import numpy as np
import orjson
import pandas as pd

from refit_reco.clusters import ClusterStore, GeometryService
from refit_reco.refitter import Event
from refit_reco.seeds import SeedLink, TrackSeed

__all__ = ["load_event", "event_from_dict", "event_to_dict", "dump_event"]

logger = logging.getLogger(__name__)


def _seed(data: Mapping[str, Any]) -> TrackSeed:
    crossing = data.get("crossing")
    return TrackSeed(
        cluster_keys=[int(k) for k in data.get("cluster_keys", [])],
        crossing=None if crossing is None else int(crossing),
        position=np.asarray(data.get("position", (0.0, 0.0, 0.0)), dtype=np.float64).reshape(3),
        q_over_r=float(data.get("q_over_r", 0.0)),
        momentum=np.asarray(data.get("momentum", (0.0, 0.0, 0.0)), dtype=np.float64).reshape(3),
    )


def _optional_index(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def event_from_dict(data: Mapping[str, Any]) -> Event:
    r"""
    Build an :class:`~refit_reco.refitter.Event` from plain mappings.

    Expected layout::

        {
          "clusters": [{"cluster_key", "x", "y", "z", "rphi_error", "z_error"}, ...],
          "surfaces": [{"hitset_key", "u": [3], "v": [3]}, ...],          # optional
          "silicon_seeds": [{"cluster_keys", "crossing", "position"}, ...],
          "tpc_seeds": [{"cluster_keys", "q_over_r", "momentum"}, ...],
          "links": [{"silicon_index", "tpc_index"}, ...]                   # optional
        }

    Without ``surfaces`` the geometry is inferred from the clusters at refit
    time. Without ``links`` the i-th silicon seed is paired with the i-th TPC
    seed.

    Raises
    ------
    KeyError
        If ``clusters`` or a required cluster column is missing.
    ValueError
        On malformed entries.
    """
    if "clusters" not in data:
        raise KeyError("Event has no 'clusters' table.")
    clusters = ClusterStore(pd.DataFrame.from_records(list(data["clusters"])))

    geometry = None
    surfaces = data.get("surfaces")
    if surfaces:
        geometry = GeometryService()
        for s in surfaces:
            geometry.register(int(s["hitset_key"]), s["u"], s["v"])

    silicon = [_seed(s) for s in data.get("silicon_seeds", [])]
    tpc = [_seed(s) for s in data.get("tpc_seeds", [])]
    if "links" in data:
        links = [SeedLink(_optional_index(l.get("silicon_index")), _optional_index(l.get("tpc_index")))
                 for l in data["links"]]
    else:
        links = [SeedLink(i, i) for i in range(min(len(silicon), len(tpc)))]

    logger.debug("Event: %d clusters, %d surfaces, %d silicon / %d TPC seeds, %d links",
                 len(clusters), len(surfaces or ()), len(silicon), len(tpc), len(links))
    return Event(clusters=clusters, geometry=geometry, links=links,
                 silicon_seeds=silicon, tpc_seeds=tpc)


def load_event(event_path: Path) -> Event:
    """
    Read an event JSON file with :mod:`orjson` (see :func:`event_from_dict`).

    Raises
    ------
    ValueError
        If the file cannot be parsed.
    """
    event_path = Path(event_path)
    try:
        data = orjson.loads(event_path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {event_path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Failed to parse {event_path}: expected a JSON object")
    return event_from_dict(data)


def _seed_dict(seed: TrackSeed) -> dict:
    return {
        "cluster_keys": [int(k) for k in seed.cluster_keys],
        "crossing": seed.crossing,
        "position": [float(x) for x in seed.position],
        "q_over_r": float(seed.q_over_r),
        "momentum": [float(x) for x in seed.momentum],
    }


def event_to_dict(event: Event) -> dict:
    """Inverse of :func:`event_from_dict`."""
    frame = event.clusters.to_frame()
    clusters: List[dict] = [
        {
            "cluster_key": int(row.cluster_key),
            "x": float(row.x), "y": float(row.y), "z": float(row.z),
            "rphi_error": float(row.rphi_error), "z_error": float(row.z_error),
        }
        for row in frame.itertuples(index=False)
    ]
    out = {
        "clusters": clusters,
        "silicon_seeds": [_seed_dict(s) for s in event.silicon_seeds],
        "tpc_seeds": [_seed_dict(s) for s in event.tpc_seeds],
        "links": [{"silicon_index": l.silicon_index, "tpc_index": l.tpc_index} for l in event.links],
    }
    if event.geometry is not None:
        out["surfaces"] = [
            {"hitset_key": int(k), "u": [float(x) for x in u], "v": [float(x) for x in v]}
            for k, (u, v) in event.geometry.items()
        ]
    return out


def dump_event(event: Event, event_path: Path) -> None:
    """Write ``event`` as JSON."""
    Path(event_path).write_bytes(orjson.dumps(event_to_dict(event), option=orjson.OPT_INDENT_2))
